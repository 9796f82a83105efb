"""
Shared plumbing for the service layer.

Services are async facades over the synchronous ORM: every method opens the
shard connections it needs through the router, runs the ORM calls inside
``with`` blocks and releases the connections before awaiting the broker.

Invariants:
    - Canonical rows are written before their registry rows
    - An action is stored before it is published and marked QUEUED only
      after the broker acknowledged it
    - The session user is re-read from the registry on every call

How to change safely:
    - Never hold a shard connection across an ``await``
    - Keep error codes stable; the HTTP layer maps them to messages
"""

from __future__ import annotations

import logging
from typing import Any

from ..access import AccessEvaluator
from ..broker.base import ActionPublisher
from ..config import VaultConfig
from ..core import ids, states
from ..errors import AuthorizationError, NotFoundError, PublishError
from ..orm.actions import Action
from ..orm.memberships import OrgStoreRegistry
from ..orm.orgs import Store
from ..orm.registries import OrgRegistry, UserRegistry
from ..orm.users import User
from ..storage.router import ShardRouter

logger = logging.getLogger(__name__)

CODE_INVALID_CREDENTIALS = 3001
CODE_SESSION_USER_INVALID = 3002
CODE_USER_NOT_FOUND = 4000
CODE_USER_INACTIVE = 4001
CODE_USER_DISABLED = 4002
CODE_ORG_NOT_FOUND = 4100
CODE_STORE_NOT_FOUND = 4200


def as_ref(value: str | int | ids.Ref) -> ids.Ref:
    """Accept a parsed reference, a global id or a route parameter."""
    if isinstance(value, (ids.IdRef, ids.AliasRef, ids.EmailRef)):
        return value
    return ids.parse_ref(value)


class ServiceBase:
    """Dependencies and lookups shared by every service."""

    def __init__(
        self,
        router: ShardRouter,
        publisher: ActionPublisher,
        config: VaultConfig,
        access: AccessEvaluator | None = None,
    ) -> None:
        self.router = router
        self.publisher = publisher
        self.config = config
        self.access = access or AccessEvaluator(router)

    # Users

    def _find_user(self, ref: str | int | ids.Ref) -> UserRegistry:
        registry = UserRegistry()
        with self.router.registry() as conn:
            found = registry.find(conn, as_ref(ref))
        if not found:
            raise NotFoundError("User does not exist", code=CODE_USER_NOT_FOUND)
        return registry

    def _session_user(self, user_id: int) -> UserRegistry:
        """Registry row of the calling user, refused when it cannot act."""
        registry = UserRegistry()
        with self.router.registry() as conn:
            found = registry.by_id(conn, user_id)
        if not found:
            raise AuthorizationError(
                "Session User Invalid", user=user_id, code=CODE_SESSION_USER_INVALID
            )
        if registry.is_blocked():
            raise AuthorizationError("User account disabled", user=user_id, code=CODE_USER_DISABLED)
        if not registry.is_active():
            raise AuthorizationError("User account inactive", user=user_id, code=CODE_USER_INACTIVE)
        return registry

    def _assert_credentials(self, registry: UserRegistry, hexhash: str) -> None:
        if not registry.test_hash(hexhash):
            raise AuthorizationError(
                "Invalid Login Credentials", user=registry.id, code=CODE_INVALID_CREDENTIALS
            )

    def _load_user(self, user_id: int) -> User:
        user = User()
        with self.router.connect(user_id) as conn:
            found = user.by_id(conn, ids.local(user_id))
        if not found:
            raise NotFoundError("User does not exist", code=CODE_USER_NOT_FOUND)
        return user

    # Organizations and stores

    def _find_org(self, ref: str | int | ids.Ref) -> OrgRegistry:
        registry = OrgRegistry()
        with self.router.registry() as conn:
            found = registry.find(conn, as_ref(ref))
        if not found:
            raise NotFoundError("Organization does not exist", code=CODE_ORG_NOT_FOUND)
        return registry

    def _find_org_store(self, org_id: int, ref: str | int | ids.Ref) -> OrgStoreRegistry:
        entry = OrgStoreRegistry()
        with self.router.connect(org_id) as conn:
            found = entry.find(conn, org_id, as_ref(ref))
        if not found:
            raise NotFoundError("Store does not exist", code=CODE_STORE_NOT_FOUND)
        return entry

    def _load_store(self, store_id: int) -> Store:
        if ids.type_of(store_id) != ids.OTYPE_STORE:
            raise NotFoundError("Store does not exist", code=CODE_STORE_NOT_FOUND)
        store = Store()
        with self.router.connect(store_id) as conn:
            found = store.by_id(conn, ids.local(store_id))
        if not found:
            raise NotFoundError("Store does not exist", code=CODE_STORE_NOT_FOUND)
        return store

    def _store_entry(self, store_id: int) -> OrgStoreRegistry:
        """The org side registry entry of a store."""
        store = self._load_store(store_id)
        if store.org is None:
            raise NotFoundError("Store does not exist", code=CODE_STORE_NOT_FOUND)
        return self._find_org_store(store.org, ids.IdRef(store_id))

    # Actions

    async def dispatch(self, action: Action) -> Action:
        """Store, publish and mark an action queued.

        Raises:
            PublishError: If the broker refused the message; the action
                stays REGISTERED for a worker to retry
        """
        with self.router.registry() as conn:
            action.flush(conn)

        try:
            await self.publisher.publish(self.config.kafka.topic, action.message())
        except PublishError as e:
            logger.error(
                "Action left registered",
                extra={"guid": action.guid, "action_type": action.type, "code": e.code},
            )
            raise

        action.set_state_queued()
        with self.router.registry() as conn:
            action.flush(conn)

        logger.info("Action queued", extra={"guid": action.guid, "action_type": action.type})
        return action

    async def cascade(self, action_type: str, creator: int, params: dict[str, Any]) -> Action:
        """Publish a cleanup action for a soft deleted object."""
        action = Action(action_type, creator)
        for name, value in params.items():
            action.set_param(name, value)
        return await self.dispatch(action)


def state_changes(set_bits: int, clear_bits: int) -> tuple[int, int]:
    """Restrict caller supplied state changes to the function range."""
    return states.function_bits(set_bits), states.function_bits(clear_bits)
