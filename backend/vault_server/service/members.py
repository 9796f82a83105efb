"""
Membership administration for organizations and stores.

A membership is the ``registry_object_users(object, user)`` row on the
object's shard, mirrored by ``registry_user_objects(user, object)`` on the
user's shard. Roles checked against a membership belong to the category of
the object: SYSTEM for the system organization, ORG for organizations and
STORE for stores.

Invariants:
    - Operations on another member refuse to act on the caller (4004)
    - Role changes and removals keep at least one roles manager and one
      invitation manager per object (4061 / 4062)
    - Roles outside the object's category are rejected
    - Removal deletes the object side first, then the user side

How to change safely:
    - New member operations must pass through ``_authorize`` so the
      category rules stay in one place
"""

from __future__ import annotations

import logging

from ..access import guard_last_managers
from ..core import ids
from ..core.roles import (
    CATEGORY_ORG,
    CATEGORY_STORE,
    CATEGORY_SYSTEM,
    FUNCTION_DELETE,
    FUNCTION_LIST,
    FUNCTION_READ,
    FUNCTION_UPDATE,
    SUBCATEGORY_ROLES,
    SUBCATEGORY_USER,
    RoleSet,
    role,
    role_category,
    role_is_valid,
)
from ..errors import NotFoundError, ValidationError
from ..orm.base import transaction
from ..orm.memberships import (
    ObjectUserRegistry,
    delete_object_user,
    delete_user_object,
    list_object_users,
)
from ..query.conditions import QueryConditions
from ..query.results import QueryResults
from .base import ServiceBase, state_changes

logger = logging.getLogger(__name__)

CODE_MEMBER_NOT_FOUND = 4051

ACTION_ORG_USER_DELETE = "org:user:delete"


def object_category(object_id: int) -> int:
    """Role category that governs access to ``object_id``."""
    if object_id == ids.SYSTEM_ORGANIZATION:
        return CATEGORY_SYSTEM
    otype = ids.type_of(object_id)
    if otype == ids.OTYPE_ORG:
        return CATEGORY_ORG
    if otype == ids.OTYPE_STORE:
        return CATEGORY_STORE
    raise ValidationError("Object is not an organization or store", "object")


def parse_roles(roles: str | list[int] | RoleSet, category: int) -> RoleSet:
    """Role set from a CSV string or a list, restricted to ``category``."""
    if isinstance(roles, str):
        parsed = RoleSet.from_csv(roles)
    else:
        parsed = RoleSet(roles)
    for r in parsed:
        if not role_is_valid(r) or role_category(r) & 0xFF00 != category:
            raise ValidationError(f"Role {r:#010x} does not apply to this object", "roles")
    return parsed


class MemberService(ServiceBase):
    """List, inspect, re-role, block and remove members of an org or store."""

    def _authorize(
        self, session_user: int, object_id: int, subcategory: int, function: int, target: int | None
    ) -> ObjectUserRegistry:
        category = object_category(object_id)
        return self.access.check(
            session_user, object_id, [role(category | subcategory, function)], target_user=target
        )

    def _load_member(self, object_id: int, user: int) -> ObjectUserRegistry:
        membership = ObjectUserRegistry()
        with self.router.connect(object_id) as conn:
            found = membership.by_key(conn, object_id, user)
        if not found:
            raise NotFoundError("User not registered with object", code=CODE_MEMBER_NOT_FOUND)
        return membership

    async def list_members(
        self,
        session_user: int,
        object_id: int,
        conditions: QueryConditions | None = None,
        count: bool = False,
    ) -> QueryResults[ObjectUserRegistry]:
        self._session_user(session_user)
        self._authorize(session_user, object_id, SUBCATEGORY_USER, FUNCTION_LIST, None)
        with self.router.connect(object_id) as conn:
            return list_object_users(conn, object_id, conditions, count)

    async def get_member(
        self, session_user: int, object_id: int, user_ref: str | int | ids.Ref
    ) -> ObjectUserRegistry:
        """Membership row of a user; members may always read their own."""
        self._session_user(session_user)
        user = self._find_user(user_ref)
        if user.id == session_user:
            return self.access.check(session_user, object_id)
        self._authorize(session_user, object_id, SUBCATEGORY_USER, FUNCTION_READ, None)
        return self._load_member(object_id, user.id)

    async def set_member_roles(
        self,
        session_user: int,
        object_id: int,
        user_ref: str | int | ids.Ref,
        roles: str | list[int] | RoleSet,
    ) -> ObjectUserRegistry:
        """Replace the role set of another member.

        Raises:
            ValidationError: If a role does not belong to the object
            AuthorizationError: 4004 on self, 4061 / 4062 when the change
                would leave the object without managers
        """
        self._session_user(session_user)
        user = self._find_user(user_ref)
        self._authorize(session_user, object_id, SUBCATEGORY_ROLES, FUNCTION_UPDATE, user.id)
        role_set = parse_roles(roles, object_category(object_id))

        membership = ObjectUserRegistry()
        with self.router.connect(object_id) as conn:
            if not membership.by_key(conn, object_id, user.id):
                raise NotFoundError("User not registered with object", code=CODE_MEMBER_NOT_FOUND)
            was_roles_manager = membership.is_roles_manager()
            was_invite_manager = membership.is_invitation_manager()
            if not membership.set_roles(role_set):
                return membership
            with transaction(conn):
                guard_last_managers(conn, membership, was_roles_manager, was_invite_manager)
                membership.flush(conn)

        logger.info(
            "Changed member roles",
            extra={
                "object": ids.id_to_string(object_id),
                "user": ids.id_to_string(user.id),
                "roles": membership.roles.to_csv(),
            },
        )
        return membership

    async def set_member_state(
        self,
        session_user: int,
        object_id: int,
        user_ref: str | int | ids.Ref,
        set_bits: int = 0,
        clear_bits: int = 0,
    ) -> ObjectUserRegistry:
        """Set / clear function state bits (block, lock) of another member."""
        self._session_user(session_user)
        user = self._find_user(user_ref)
        self._authorize(session_user, object_id, SUBCATEGORY_USER, FUNCTION_UPDATE, user.id)

        set_bits, clear_bits = state_changes(set_bits, clear_bits)
        membership = self._load_member(object_id, user.id)
        membership.set_states(set_bits)
        membership.clear_states(clear_bits)
        if membership.is_dirty():
            with self.router.connect(object_id) as conn:
                membership.flush(conn)
            logger.info(
                "Changed member state",
                extra={
                    "object": ids.id_to_string(object_id),
                    "user": ids.id_to_string(user.id),
                    "state": membership.state,
                },
            )
        return membership

    async def remove_member(
        self, session_user: int, object_id: int, user_ref: str | int | ids.Ref
    ) -> ObjectUserRegistry:
        """Drop another user's membership.

        Removing an organization member also queues ``org:user:delete`` so
        the user's store memberships under that organization are cleaned up.
        """
        self._session_user(session_user)
        user = self._find_user(user_ref)
        self._authorize(session_user, object_id, SUBCATEGORY_USER, FUNCTION_DELETE, user.id)

        membership = ObjectUserRegistry()
        with self.router.connect(object_id) as conn:
            if not membership.by_key(conn, object_id, user.id):
                raise NotFoundError("User not registered with object", code=CODE_MEMBER_NOT_FOUND)
            with transaction(conn):
                guard_last_managers(
                    conn,
                    membership,
                    membership.is_roles_manager(),
                    membership.is_invitation_manager(),
                    removing=True,
                )
                delete_object_user(conn, object_id, user.id)

        with self.router.connect(user.id) as conn:
            delete_user_object(conn, user.id, object_id)

        logger.info(
            "Removed member",
            extra={"object": ids.id_to_string(object_id), "user": ids.id_to_string(user.id)},
        )

        if ids.type_of(object_id) == ids.OTYPE_ORG:
            await self.cascade(
                ACTION_ORG_USER_DELETE,
                session_user,
                {"org": ids.id_to_string(object_id), "user": ids.id_to_string(user.id)},
            )
        return membership
