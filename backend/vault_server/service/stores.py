"""
Store administration and store sessions.

A store belongs to one organization. Its canonical row lives on a random
data shard; the organization keeps a ``registry_org_stores`` entry on its
own shard. Each member holds the store key wrapped under their password
hash. Opening a store session unwraps that key once and keeps it in the
caller's server-side session map under ``_s:<store>``.

Invariants:
    - Store row first, then the org-store entry, then the creator's
      membership (with the wrapped key), then the user side link
    - Store aliases are unique inside their organization (4010)
    - The unwrapped key only ever lives in the session map
    - Every use of a store session extends it; an expired or malformed
      token is dropped and answered with 4202

How to change safely:
    - ``session_data`` is the mutable session map of one client; callers
      persist it after the call
"""

from __future__ import annotations

import logging
from typing import Any

from ..core import ids, states
from ..core.roles import (
    CATEGORY_ORG,
    CATEGORY_STORE,
    FUNCTION_CREATE,
    FUNCTION_DELETE,
    FUNCTION_READ,
    FUNCTION_UPDATE,
    STORE_CREATOR_ROLES,
    SUBCATEGORY_CONF,
    SUBCATEGORY_STORE,
    role,
)
from ..errors import AuthorizationError, ConflictError, CryptoError, NotFoundError, ValidationError
from ..orm.memberships import ObjectUserRegistry, OrgStoreRegistry, UserObjectRegistry
from ..orm.orgs import Store
from ..session.store import drop_store_session, get_store_session, put_store_session
from ..session.token import StoreSession
from .base import CODE_INVALID_CREDENTIALS, CODE_STORE_NOT_FOUND, ServiceBase, as_ref, state_changes
from .orgs import validate_org_fields

logger = logging.getLogger(__name__)

ORG_STORE_CREATE = role(CATEGORY_ORG | SUBCATEGORY_STORE, FUNCTION_CREATE)
ORG_STORE_READ = role(CATEGORY_ORG | SUBCATEGORY_STORE, FUNCTION_READ)
ORG_STORE_UPDATE = role(CATEGORY_ORG | SUBCATEGORY_STORE, FUNCTION_UPDATE)
ORG_STORE_DELETE = role(CATEGORY_ORG | SUBCATEGORY_STORE, FUNCTION_DELETE)
STORE_CONF_UPDATE = role(CATEGORY_STORE | SUBCATEGORY_CONF, FUNCTION_UPDATE)

CODE_ALIAS_EXISTS = 4010
CODE_STORE_CLOSED = 4202

ACTION_STORE_DELETE = "org:store:delete"


def use_store_session(data: dict[str, Any], store_id: int, extend_by: int) -> StoreSession:
    """Import, validate and extend the caller's session for ``store_id``.

    The extended token is written back into ``data``.

    Raises:
        AuthorizationError: 4202 if there is no usable session
    """
    try:
        session = get_store_session(data, store_id, extend_by)
    except ValidationError:
        drop_store_session(data, store_id)
        logger.warning("Dropped malformed store session", extra={"store": ids.id_to_string(store_id)})
        session = None

    if session is None or session.store != store_id:
        raise AuthorizationError("Store is Closed", object_id=store_id, code=CODE_STORE_CLOSED)
    if session.is_expired():
        drop_store_session(data, store_id)
        logger.info("Store session expired", extra={"store": ids.id_to_string(store_id)})
        raise AuthorizationError("Store is Closed", object_id=store_id, code=CODE_STORE_CLOSED)

    session.extend()
    put_store_session(data, session)
    return session


class StoreService(ServiceBase):
    """Create, read, update, state and delete stores; open and close sessions."""

    def _resolve_store(
        self, store_ref: str | int | ids.Ref, org_ref: str | int | ids.Ref | None = None
    ) -> OrgStoreRegistry:
        """Org-store entry of a store given by id, or by alias inside an org."""
        if org_ref is None:
            ref = as_ref(store_ref)
            if not isinstance(ref, ids.IdRef):
                raise ValidationError("Store must be referenced by id", "store")
            return self._store_entry(ref.value)
        org = self._find_org(org_ref)
        return self._find_org_store(org.id, store_ref)

    def _member_or_org_manager(
        self, session_user: int, entry: OrgStoreRegistry, store_roles: list[int], org_role: int
    ) -> None:
        """Pass as a store member holding ``store_roles`` or through the org role."""
        try:
            self.access.check(session_user, entry.store, store_roles)
        except AuthorizationError as denied:
            try:
                self.access.check(session_user, entry.org, [org_role])
            except AuthorizationError:
                raise denied from None

    async def create_store(
        self,
        session_user: int,
        org_ref: str | int | ids.Ref,
        alias: str,
        hexhash: str,
        name: str = "",
    ) -> OrgStoreRegistry:
        """Create a store under an organization.

        The caller's password hash wraps the freshly generated store key.

        Raises:
            AuthorizationError: Without org STORE CREATE or on a wrong hash (3001)
            ConflictError: If the alias is taken inside the org (4010)
        """
        caller = self._session_user(session_user)
        org = self._find_org(org_ref)
        self.access.check(session_user, org.id, [ORG_STORE_CREATE])
        self._assert_credentials(caller, hexhash)
        validate_org_fields(alias, name)

        taken = OrgStoreRegistry()
        with self.router.connect(org.id) as conn:
            if taken.by_alias(conn, org.id, alias):
                raise ConflictError("Alias already Exists", code=CODE_ALIAS_EXISTS)

        store = Store()
        store.set_org(org.id)
        store.set_alias(alias)
        store.set_name(name)
        store.set_creator(session_user)

        shard = self.router.pick_data_shard()
        with self.router.connect_to(ids.DATA_GROUP, shard) as conn:
            store.flush(conn)
        store_id = ids.make_id(ids.DATA_GROUP, ids.OTYPE_STORE, shard, store.id)

        entry = OrgStoreRegistry(org.id, store_id)
        entry.set_alias(store.alias)
        entry.set_name(store.name)
        with self.router.connect(org.id) as conn:
            entry.flush(conn)
        store.clear_update_registry()

        membership = ObjectUserRegistry(store_id, session_user)
        membership.set_username(caller.username)
        membership.add_roles(STORE_CREATOR_ROLES)
        membership.create_store_key(hexhash)
        with self.router.connect(store_id) as conn:
            membership.flush(conn)

        link = UserObjectRegistry(session_user, store_id)
        link.set_alias(store.alias)
        with self.router.connect(session_user) as conn:
            link.flush(conn)

        logger.info(
            "Created store",
            extra={
                "store": ids.id_to_string(store_id),
                "org": ids.id_to_string(org.id),
                "creator": ids.id_to_string(session_user),
            },
        )
        return entry

    async def get_store(
        self,
        session_user: int,
        store_ref: str | int | ids.Ref,
        org_ref: str | int | ids.Ref | None = None,
    ) -> OrgStoreRegistry:
        """Org-store entry; store members and org store readers may read it."""
        self._session_user(session_user)
        entry = self._resolve_store(store_ref, org_ref)
        self._member_or_org_manager(session_user, entry, [], ORG_STORE_READ)
        return entry

    async def update_store(
        self,
        session_user: int,
        store_ref: str | int | ids.Ref,
        org_ref: str | int | ids.Ref | None = None,
        *,
        alias: str | None = None,
        name: str | None = None,
    ) -> OrgStoreRegistry:
        """Rename a store; store row first, org-store entry second."""
        self._session_user(session_user)
        entry = self._resolve_store(store_ref, org_ref)
        self._member_or_org_manager(session_user, entry, [STORE_CONF_UPDATE], ORG_STORE_UPDATE)
        validate_org_fields(alias, name)

        if alias is not None and alias.strip().lower() != entry.alias:
            taken = OrgStoreRegistry()
            with self.router.connect(entry.org) as conn:
                if taken.by_alias(conn, entry.org, alias):
                    raise ConflictError("Alias already Exists", code=CODE_ALIAS_EXISTS)

        store = Store()
        with self.router.connect(entry.store) as conn:
            if not store.by_id(conn, ids.local(entry.store)):
                raise NotFoundError("Store does not exist", code=CODE_STORE_NOT_FOUND)
            if alias is not None:
                store.set_alias(alias)
            if name is not None:
                store.set_name(name)
            if not store.is_dirty():
                return entry
            store.set_modifier(session_user)
            store.flush(conn)

        if store.update_registry:
            entry.set_alias(store.alias)
            entry.set_name(store.name)
            with self.router.connect(entry.org) as conn:
                entry.flush(conn)
            store.clear_update_registry()

        logger.info("Updated store", extra={"store": ids.id_to_string(entry.store)})
        return entry

    async def set_store_state(
        self,
        session_user: int,
        store_ref: str | int | ids.Ref,
        org_ref: str | int | ids.Ref | None = None,
        set_bits: int = 0,
        clear_bits: int = 0,
    ) -> OrgStoreRegistry:
        """Block / lock a store; an org level decision."""
        self._session_user(session_user)
        entry = self._resolve_store(store_ref, org_ref)
        self.access.check(session_user, entry.org, [ORG_STORE_UPDATE])

        set_bits, clear_bits = state_changes(set_bits, clear_bits)
        entry.set_states(set_bits)
        entry.clear_states(clear_bits)
        if entry.is_dirty():
            with self.router.connect(entry.org) as conn:
                entry.flush(conn)
            logger.info(
                "Changed store state",
                extra={"store": ids.id_to_string(entry.store), "state": entry.state},
            )
        return entry

    async def block_store(
        self, session_user: int, store_ref: str | int | ids.Ref, blocked: bool
    ) -> OrgStoreRegistry:
        if blocked:
            return await self.set_store_state(session_user, store_ref, set_bits=states.STATE_BLOCKED)
        return await self.set_store_state(session_user, store_ref, clear_bits=states.STATE_BLOCKED)

    async def lock_store(
        self, session_user: int, store_ref: str | int | ids.Ref, locked: bool
    ) -> OrgStoreRegistry:
        if locked:
            return await self.set_store_state(session_user, store_ref, set_bits=states.STATE_READONLY)
        return await self.set_store_state(session_user, store_ref, clear_bits=states.STATE_READONLY)

    async def delete_store(
        self,
        session_user: int,
        store_ref: str | int | ids.Ref,
        org_ref: str | int | ids.Ref | None = None,
    ) -> OrgStoreRegistry:
        """Mark a store deleted and queue the cascade."""
        self._session_user(session_user)
        entry = self._resolve_store(store_ref, org_ref)
        self.access.check(session_user, entry.org, [ORG_STORE_DELETE])

        entry.set_states(states.STATE_DELETE | states.STATE_BLOCKED)
        with self.router.connect(entry.org) as conn:
            entry.flush(conn)
        logger.info("Marked store deleted", extra={"store": ids.id_to_string(entry.store)})

        await self.cascade(
            ACTION_STORE_DELETE,
            session_user,
            {"org": ids.id_to_string(entry.org), "store": ids.id_to_string(entry.store)},
        )
        return entry

    # Sessions

    async def open_session(
        self,
        session_user: int,
        store_ref: str | int | ids.Ref,
        hexhash: str,
        session_data: dict[str, Any],
    ) -> StoreSession:
        """Unwrap the caller's store key and install a store session.

        Raises:
            AuthorizationError: 3001 on a wrong hash, or when the caller
                cannot access the store
        """
        caller = self._session_user(session_user)
        entry = self._resolve_store(store_ref)
        self._assert_credentials(caller, hexhash)
        membership = self.access.check(session_user, entry.store)

        try:
            key = membership.store_key(hexhash)
        except CryptoError as e:
            # Key wrapped under a hash that is no longer the user's
            raise AuthorizationError(
                "Invalid Login Credentials",
                user=session_user,
                object_id=entry.store,
                code=CODE_INVALID_CREDENTIALS,
            ) from e

        session = StoreSession(entry.store, key, self.config.session.store_session_extend_minutes)
        put_store_session(session_data, session)
        logger.info(
            "Opened store session",
            extra={"store": ids.id_to_string(entry.store), "user": ids.id_to_string(session_user)},
        )
        return session

    async def close_session(
        self, session_user: int, store_ref: str | int | ids.Ref, session_data: dict[str, Any]
    ) -> bool:
        """Forget the caller's store session; False if none was open."""
        self._session_user(session_user)
        ref = as_ref(store_ref)
        if not isinstance(ref, ids.IdRef):
            raise ValidationError("Store must be referenced by id", "store")
        closed = drop_store_session(session_data, ref.value)
        if closed:
            logger.info(
                "Closed store session",
                extra={"store": ids.id_to_string(ref.value), "user": ids.id_to_string(session_user)},
            )
        return closed

    def use_session(self, store_id: int, session_data: dict[str, Any]) -> StoreSession:
        return use_store_session(
            session_data, store_id, self.config.session.store_session_extend_minutes
        )
