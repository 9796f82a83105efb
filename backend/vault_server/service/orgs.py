"""
Organization administration.

Organizations are created by the system administrator on a random data
shard. The creator becomes the first member with the organization creator
roles, which makes them roles and invitation manager.

Invariants:
    - Canonical org row first, then ``registry_orgs``, then the creator's
      membership on the org shard, then the user side link
    - Aliases are unique across organizations (4010)
    - The system organization cannot be renamed, blocked or deleted
    - Deletion is soft: DELETE|BLOCKED on the registry plus a
      ``system:org:delete`` cascade action
"""

from __future__ import annotations

import logging

from ..core import ids, states
from ..core.roles import (
    CATEGORY_ORG,
    CATEGORY_SYSTEM,
    FUNCTION_CREATE,
    FUNCTION_DELETE,
    FUNCTION_LIST,
    FUNCTION_READ,
    FUNCTION_UPDATE,
    ORG_CREATOR_ROLES,
    SUBCATEGORY_CONF,
    SUBCATEGORY_ORG,
    SUBCATEGORY_STORE,
    role,
)
from ..core.validators import is_valid_alias, is_valid_name
from ..errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from ..orm.memberships import ObjectUserRegistry, OrgStoreRegistry, UserObjectRegistry, list_org_stores
from ..orm.orgs import Organization
from ..orm.registries import OrgRegistry, list_orgs
from ..query.conditions import QueryConditions
from ..query.results import QueryResults
from .base import CODE_ORG_NOT_FOUND, ServiceBase, state_changes

logger = logging.getLogger(__name__)

SYSTEM_ORG_CREATE = role(CATEGORY_SYSTEM | SUBCATEGORY_ORG, FUNCTION_CREATE)
SYSTEM_ORG_READ = role(CATEGORY_SYSTEM | SUBCATEGORY_ORG, FUNCTION_READ)
SYSTEM_ORG_LIST = role(CATEGORY_SYSTEM | SUBCATEGORY_ORG, FUNCTION_LIST)
SYSTEM_ORG_UPDATE = role(CATEGORY_SYSTEM | SUBCATEGORY_ORG, FUNCTION_UPDATE)
SYSTEM_ORG_DELETE = role(CATEGORY_SYSTEM | SUBCATEGORY_ORG, FUNCTION_DELETE)

ORG_CONF_UPDATE = role(CATEGORY_ORG | SUBCATEGORY_CONF, FUNCTION_UPDATE)
ORG_STORE_LIST = role(CATEGORY_ORG | SUBCATEGORY_STORE, FUNCTION_LIST)

CODE_ALIAS_EXISTS = 4010

ACTION_ORG_DELETE = "system:org:delete"


def validate_org_fields(alias: str | None, name: str | None) -> None:
    if alias is not None and not is_valid_alias(alias.strip().lower()):
        raise ValidationError("Value is not a valid alias", "alias")
    if name is not None and name.strip() and not is_valid_name(name):
        raise ValidationError("Value is not a valid name", "name")


class OrgService(ServiceBase):
    """Create, read, update, state, delete and list organizations."""

    def _member_or_admin(self, session_user: int, org_id: int, org_roles: list[int], admin_role: int) -> None:
        """Pass as a member holding ``org_roles`` or as a system administrator."""
        try:
            self.access.check(session_user, org_id, org_roles)
        except AuthorizationError as denied:
            try:
                self.access.check(session_user, ids.SYSTEM_ORGANIZATION, [admin_role])
            except AuthorizationError:
                raise denied from None

    def _check_alias(self, alias: str) -> None:
        taken = OrgRegistry()
        with self.router.registry() as conn:
            if taken.by_alias(conn, alias):
                raise ConflictError("Alias already Exists", code=CODE_ALIAS_EXISTS)

    async def create_org(self, session_user: int, alias: str, name: str = "") -> OrgRegistry:
        """Create an organization and make the caller its first manager.

        Raises:
            AuthorizationError: If the caller lacks system org CREATE
            ValidationError: On a malformed alias or name
            ConflictError: If the alias is taken (4010)
        """
        caller = self._session_user(session_user)
        self.access.check(session_user, ids.SYSTEM_ORGANIZATION, [SYSTEM_ORG_CREATE])
        validate_org_fields(alias, name)
        self._check_alias(alias.strip().lower())

        org = Organization()
        org.set_alias(alias)
        org.set_name(name)
        org.set_creator(session_user)

        shard = self.router.pick_data_shard()
        with self.router.connect_to(ids.DATA_GROUP, shard) as conn:
            org.flush(conn)

        registry = OrgRegistry.from_org(org, ids.DATA_GROUP, shard)
        with self.router.registry() as conn:
            registry.flush(conn)
        org.clear_update_registry()

        membership = ObjectUserRegistry(registry.id, session_user)
        membership.set_username(caller.username)
        membership.add_roles(ORG_CREATOR_ROLES)
        with self.router.connect(registry.id) as conn:
            membership.flush(conn)

        link = UserObjectRegistry(session_user, registry.id)
        link.set_alias(registry.alias)
        with self.router.connect(session_user) as conn:
            link.flush(conn)

        logger.info(
            "Created organization",
            extra={"org": ids.id_to_string(registry.id), "creator": ids.id_to_string(session_user)},
        )
        return registry

    async def get_org(self, session_user: int, ref: str | int | ids.Ref) -> OrgRegistry:
        """Registry entry of an organization the caller belongs to."""
        self._session_user(session_user)
        registry = self._find_org(ref)
        self._member_or_admin(session_user, registry.id, [], SYSTEM_ORG_READ)
        return registry

    async def get_org_details(self, session_user: int, ref: str | int | ids.Ref) -> Organization:
        """Canonical row, with creator and modifier."""
        registry = await self.get_org(session_user, ref)
        org = Organization()
        with self.router.connect(registry.id) as conn:
            found = org.by_id(conn, ids.local(registry.id))
        if not found:
            raise NotFoundError("Organization does not exist", code=CODE_ORG_NOT_FOUND)
        return org

    async def update_org(
        self,
        session_user: int,
        ref: str | int | ids.Ref,
        *,
        alias: str | None = None,
        name: str | None = None,
    ) -> OrgRegistry:
        """Rename an organization; canonical row first, registry second."""
        self._session_user(session_user)
        registry = self._find_org(ref)
        self._member_or_admin(session_user, registry.id, [ORG_CONF_UPDATE], SYSTEM_ORG_UPDATE)
        if registry.is_system_org() and alias is not None:
            raise AuthorizationError("System organization alias is fixed", user=session_user)

        validate_org_fields(alias, name)
        if alias is not None and alias.strip().lower() != registry.alias:
            self._check_alias(alias.strip().lower())

        org = Organization()
        with self.router.connect(registry.id) as conn:
            if not org.by_id(conn, ids.local(registry.id)):
                raise NotFoundError("Organization does not exist", code=CODE_ORG_NOT_FOUND)
            if alias is not None:
                org.set_alias(alias)
            if name is not None:
                org.set_name(name)
            if not org.is_dirty():
                return registry
            org.set_modifier(session_user)
            org.flush(conn)

        if org.update_registry:
            registry.update_from(org)
            with self.router.registry() as conn:
                registry.flush(conn)
            org.clear_update_registry()

        logger.info("Updated organization", extra={"org": ids.id_to_string(registry.id)})
        return registry

    async def set_org_state(
        self,
        session_user: int,
        ref: str | int | ids.Ref,
        set_bits: int = 0,
        clear_bits: int = 0,
    ) -> OrgRegistry:
        """Set / clear function state bits; system administrators only."""
        self._session_user(session_user)
        registry = self._find_org(ref)
        self.access.check(session_user, ids.SYSTEM_ORGANIZATION, [SYSTEM_ORG_UPDATE])
        if registry.is_system_org():
            raise AuthorizationError("System organization state is fixed", user=session_user)

        set_bits, clear_bits = state_changes(set_bits, clear_bits)
        registry.set_states(set_bits)
        registry.clear_states(clear_bits)
        if registry.is_dirty():
            with self.router.registry() as conn:
                registry.flush(conn)
            logger.info(
                "Changed organization state",
                extra={"org": ids.id_to_string(registry.id), "state": registry.state},
            )
        return registry

    async def block_org(self, session_user: int, ref: str | int | ids.Ref, blocked: bool) -> OrgRegistry:
        if blocked:
            return await self.set_org_state(session_user, ref, set_bits=states.STATE_BLOCKED)
        return await self.set_org_state(session_user, ref, clear_bits=states.STATE_BLOCKED)

    async def lock_org(self, session_user: int, ref: str | int | ids.Ref, locked: bool) -> OrgRegistry:
        if locked:
            return await self.set_org_state(session_user, ref, set_bits=states.STATE_READONLY)
        return await self.set_org_state(session_user, ref, clear_bits=states.STATE_READONLY)

    async def delete_org(self, session_user: int, ref: str | int | ids.Ref) -> OrgRegistry:
        """Mark an organization deleted and queue the cascade."""
        self._session_user(session_user)
        registry = self._find_org(ref)
        self.access.check(session_user, ids.SYSTEM_ORGANIZATION, [SYSTEM_ORG_DELETE])
        if registry.is_system_org():
            raise AuthorizationError("System organization cannot be deleted", user=session_user)

        registry.set_states(states.STATE_DELETE | states.STATE_BLOCKED)
        with self.router.registry() as conn:
            registry.flush(conn)
        logger.info("Marked organization deleted", extra={"org": ids.id_to_string(registry.id)})

        await self.cascade(ACTION_ORG_DELETE, session_user, {"org": ids.id_to_string(registry.id)})
        return registry

    async def list_orgs(
        self,
        session_user: int,
        conditions: QueryConditions | None = None,
        count: bool = False,
    ) -> QueryResults[OrgRegistry]:
        self._session_user(session_user)
        self.access.check(session_user, ids.SYSTEM_ORGANIZATION, [SYSTEM_ORG_LIST])
        with self.router.registry() as conn:
            return list_orgs(conn, conditions, count)

    async def list_org_stores(
        self,
        session_user: int,
        ref: str | int | ids.Ref,
        conditions: QueryConditions | None = None,
        count: bool = False,
    ) -> QueryResults[OrgStoreRegistry]:
        """Stores registered under an organization."""
        self._session_user(session_user)
        registry = self._find_org(ref)
        self.access.check(session_user, registry.id, [ORG_STORE_LIST])
        with self.router.connect(registry.id) as conn:
            return list_org_stores(conn, registry.id, conditions, count)
