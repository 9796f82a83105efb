"""
Unit tests for membership evaluation.

Tests cover:
- Missing and unsaved memberships
- Denying membership states
- Action on self
- Role coverage
- Administrator requirement
"""

import pytest

from backend.vault_server.access import AccessRequest, evaluate_membership
from backend.vault_server.core import ids, states
from backend.vault_server.core.roles import (
    CATEGORY_STORE,
    FUNCTION_ALL,
    FUNCTION_CREATE,
    FUNCTION_READ,
    SUBCATEGORY_OBJECT,
    SUBCATEGORY_USER,
    role,
)
from backend.vault_server.errors import AuthorizationError
from backend.vault_server.orm.memberships import ObjectUserRegistry

STORE = ids.make_id(ids.DATA_GROUP, ids.OTYPE_STORE, 7, 1)
USER = ids.make_id(ids.DATA_GROUP, ids.OTYPE_USER, 3, 9)
OTHER = ids.make_id(ids.DATA_GROUP, ids.OTYPE_USER, 3, 10)

OBJECT_READ = role(CATEGORY_STORE | SUBCATEGORY_OBJECT, FUNCTION_READ)
OBJECT_CREATE = role(CATEGORY_STORE | SUBCATEGORY_OBJECT, FUNCTION_CREATE)


def membership(roles=(OBJECT_READ,), state=0):
    """Membership as loaded from the object's shard."""
    m = ObjectUserRegistry(STORE, USER)
    m.set_username("alice")
    m.add_roles(list(roles))
    m.set_states(state)
    m._mark_stored()
    return m


def request(roles=(), **kwargs):
    return AccessRequest(user=USER, object_id=STORE, roles=tuple(roles), **kwargs)


class TestEvaluateMembership:
    """Tests for evaluate_membership()."""

    def test_member_with_role(self):
        m = membership()
        assert evaluate_membership(m, request([OBJECT_READ])) is m

    def test_no_membership(self):
        with pytest.raises(AuthorizationError) as exc:
            evaluate_membership(None, request())
        assert exc.value.code == 4051

    def test_unsaved_membership(self):
        with pytest.raises(AuthorizationError):
            evaluate_membership(ObjectUserRegistry(STORE, USER), request())

    @pytest.mark.parametrize(
        "state", [states.STATE_INACTIVE, states.STATE_BLOCKED, states.STATE_DELETE]
    )
    def test_denied_state_always_denies(self, state):
        """No role set overrides a denying membership state."""
        m = membership(roles=[role(CATEGORY_STORE | sub, FUNCTION_ALL) for sub in range(8)], state=state)

        with pytest.raises(AuthorizationError) as exc:
            evaluate_membership(m, request())
        assert exc.value.code == 4053

    def test_readonly_is_not_denied(self):
        m = membership(state=states.STATE_READONLY)
        assert evaluate_membership(m, request([OBJECT_READ])) is m

    def test_action_on_self(self):
        with pytest.raises(AuthorizationError) as exc:
            evaluate_membership(membership(), request(target_user=USER))
        assert exc.value.code == 4004

    def test_action_on_other(self):
        m = membership(roles=[role(CATEGORY_STORE | SUBCATEGORY_USER, FUNCTION_ALL)])
        assert evaluate_membership(m, request(target_user=OTHER)) is m

    def test_missing_function(self):
        with pytest.raises(AuthorizationError) as exc:
            evaluate_membership(membership(), request([OBJECT_CREATE]))
        assert exc.value.code == 4003

    def test_every_role_must_be_covered(self):
        user_read = role(CATEGORY_STORE | SUBCATEGORY_USER, FUNCTION_READ)
        with pytest.raises(AuthorizationError):
            evaluate_membership(membership(), request([OBJECT_READ, user_read]))

    def test_admin_required(self):
        with pytest.raises(AuthorizationError):
            evaluate_membership(membership(), request(admin_required=True))

        admin = membership(state=states.STATE_SYSTEM)
        assert evaluate_membership(admin, request(admin_required=True)) is admin
