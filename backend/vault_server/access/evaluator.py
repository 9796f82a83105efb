"""
Access control for organizations and stores.

Every business operation on an org or store passes through here before it
touches data:

    1. Object state: the org (and for a store, its org-store entry) must
       not be BLOCKED or DELETE. The system organization is exempt.
    2. Membership: registry_object_users(object, user) must exist and its
       state must not hold INACTIVE, BLOCKED or DELETE.
    3. Not-self: operations on another user refuse to act on the caller.
    4. Roles: every required role must be covered by the membership's
       entry of the same category.
    5. Admin: when requested, the membership must carry the SYSTEM marker.

Invariants:
    - A membership in a denied state never passes, whatever its roles
    - Role-changing flows keep at least one roles manager per object
    - Checks never modify rows

How to change safely:
    - Add new checks as separate steps so existing error codes stay stable
    - Keep the ordering: object state before membership before roles
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass, field

from ..core import ids, states
from ..core.roles import role_category, role_functions
from ..errors import AuthorizationError, NotFoundError
from ..orm.memberships import (
    ObjectUserRegistry,
    OrgStoreRegistry,
    count_invite_managers,
    count_role_managers,
)
from ..orm.orgs import Store
from ..orm.registries import OrgRegistry
from ..storage.router import ShardRouter

logger = logging.getLogger(__name__)

CODE_ACCESS_DENIED = 4003
CODE_NOT_ON_SELF = 4004
CODE_NOT_REGISTERED = 4051
CODE_MEMBERSHIP_BLOCKED = 4053
CODE_LAST_ROLES_MANAGER = 4061
CODE_LAST_INVITE_MANAGER = 4062
CODE_ORG_NOT_FOUND = 4100
CODE_ORG_BLOCKED = 4103
CODE_STORE_NOT_FOUND = 4200
CODE_STORE_BLOCKED = 4203

_OBJECT_DENY = states.STATE_BLOCKED | states.STATE_DELETE


@dataclass(frozen=True)
class AccessRequest:
    """What a caller wants to do on an object.

    Attributes:
        user: Session user global id
        object_id: Target org or store global id
        roles: Roles that must all be covered by the membership
        target_user: User the operation acts on (refused when it is the caller)
        admin_required: Membership must carry the SYSTEM marker
    """

    user: int
    object_id: int
    roles: tuple[int, ...] = field(default_factory=tuple)
    target_user: int | None = None
    admin_required: bool = False


def evaluate_membership(
    membership: ObjectUserRegistry | None, request: AccessRequest
) -> ObjectUserRegistry:
    """Steps 2 to 5 against an already loaded membership.

    Returns:
        The membership, once every step passed

    Raises:
        AuthorizationError: On the first failed step
    """
    if membership is None or membership.is_new():
        raise AuthorizationError(
            "User not registered with object",
            user=request.user,
            object_id=request.object_id,
            code=CODE_NOT_REGISTERED,
        )

    if membership.has_any_states(states.STATE_DENY_ACCESS):
        raise AuthorizationError(
            "User Access Blocked",
            user=request.user,
            object_id=request.object_id,
            code=CODE_MEMBERSHIP_BLOCKED,
        )

    if request.target_user is not None and request.target_user == request.user:
        raise AuthorizationError(
            "Action Not Permitted on SELF",
            user=request.user,
            object_id=request.object_id,
            code=CODE_NOT_ON_SELF,
        )

    for r in request.roles:
        held = membership.roles.get_category_role(role_category(r))
        if not held or (role_functions(held) & role_functions(r)) != role_functions(r):
            raise AuthorizationError(
                f"Missing role {r:#010x}",
                user=request.user,
                object_id=request.object_id,
                code=CODE_ACCESS_DENIED,
            )

    if request.admin_required and not membership.is_system():
        raise AuthorizationError(
            "Administrator access required",
            user=request.user,
            object_id=request.object_id,
            code=CODE_ACCESS_DENIED,
        )
    return membership


class AccessEvaluator:
    """Runs the access checks against the registries.

    Example:
        >>> evaluator = AccessEvaluator(router)
        >>> membership = evaluator.authorize(
        ...     AccessRequest(user=session_user, object_id=store_id, roles=(STORE_OBJECT_READ,))
        ... )
    """

    def __init__(self, router: ShardRouter) -> None:
        self.router = router

    def check_object(self, object_id: int) -> None:
        """Refuse access to blocked or deleted orgs and stores.

        Raises:
            NotFoundError: If the org or store does not exist
            AuthorizationError: If it is blocked or marked deleted
        """
        otype = ids.type_of(object_id)
        if otype == ids.OTYPE_ORG:
            self._check_org(object_id)
        elif otype == ids.OTYPE_STORE:
            self._check_store(object_id)

    def _check_org(self, org_id: int) -> OrgRegistry:
        registry = OrgRegistry()
        with self.router.registry() as conn:
            found = registry.by_id(conn, org_id)
        if not found:
            raise NotFoundError("Organization does not exist", code=CODE_ORG_NOT_FOUND)
        if not registry.is_system_org() and registry.has_any_states(_OBJECT_DENY):
            raise AuthorizationError(
                "Organization Access Blocked", object_id=org_id, code=CODE_ORG_BLOCKED
            )
        return registry

    def _check_store(self, store_id: int) -> None:
        store = Store()
        with self.router.connect(store_id) as conn:
            found = store.by_id(conn, ids.local(store_id))
        if not found or store.org is None:
            raise NotFoundError("Store does not exist", code=CODE_STORE_NOT_FOUND)

        self._check_org(store.org)

        entry = OrgStoreRegistry()
        with self.router.connect(store.org) as conn:
            found = entry.by_id(conn, store.org, store_id)
        if not found:
            raise NotFoundError("Store does not exist", code=CODE_STORE_NOT_FOUND)
        if entry.has_any_states(_OBJECT_DENY):
            raise AuthorizationError(
                "Store Access Blocked", object_id=store_id, code=CODE_STORE_BLOCKED
            )

    def membership(self, object_id: int, user: int) -> ObjectUserRegistry | None:
        """Membership row of ``user`` in ``object_id`` (None when absent)."""
        m = ObjectUserRegistry()
        with self.router.connect(object_id) as conn:
            if not m.by_key(conn, object_id, user):
                return None
        return m

    def authorize(self, request: AccessRequest) -> ObjectUserRegistry:
        """Run every check for ``request``.

        Returns:
            The caller's membership row

        Raises:
            NotFoundError: If the object does not exist
            AuthorizationError: If any check fails
        """
        self.check_object(request.object_id)
        membership = self.membership(request.object_id, request.user)
        try:
            return evaluate_membership(membership, request)
        except AuthorizationError as e:
            logger.info(
                "Access denied",
                extra={
                    "user": ids.id_to_string(request.user),
                    "object": ids.id_to_string(request.object_id),
                    "code": e.code,
                },
            )
            raise

    def check(
        self,
        user: int,
        object_id: int,
        roles: Iterable[int] = (),
        *,
        target_user: int | None = None,
        admin_required: bool = False,
    ) -> ObjectUserRegistry:
        """Shorthand for authorize(AccessRequest(...))."""
        return self.authorize(
            AccessRequest(
                user=user,
                object_id=object_id,
                roles=tuple(roles),
                target_user=target_user,
                admin_required=admin_required,
            )
        )


def guard_last_managers(
    conn: sqlite3.Connection,
    membership: ObjectUserRegistry,
    was_roles_manager: bool,
    was_invite_manager: bool,
    removing: bool = False,
) -> None:
    """Refuse a change that would leave the object without managers.

    Call on the object's shard before flushing (or deleting) the membership.

    Args:
        conn: Connection to the object's shard
        membership: Membership with the pending role change applied
        was_roles_manager: Stored row was a roles manager
        was_invite_manager: Stored row was an invitation manager
        removing: The membership is about to be deleted

    Raises:
        AuthorizationError: 4061 for the last roles manager, 4062 for the
            last invitation manager
    """
    object_id = membership.object
    user = membership.user
    if object_id is None or user is None:
        return

    loses_roles = was_roles_manager and (removing or not membership.is_roles_manager())
    if loses_roles and count_role_managers(conn, object_id, exclude_user=user) == 0:
        raise AuthorizationError(
            "Last Objects Roles Manager", user=user, object_id=object_id, code=CODE_LAST_ROLES_MANAGER
        )

    loses_invites = was_invite_manager and (removing or not membership.is_invitation_manager())
    if loses_invites and count_invite_managers(conn, object_id, exclude_user=user) == 0:
        raise AuthorizationError(
            "Last Objects Invitation Manager",
            user=user,
            object_id=object_id,
            code=CODE_LAST_INVITE_MANAGER,
        )
