"""
User administration.

Users are created by the system administrator (or from an accepted
invitation) on a random data shard; the global registry row follows the
canonical insert.

Invariants:
    - Canonical insert before registry insert, canonical update before
      registry update
    - Username and email are unique across the registry (4010 / 4011)
    - Deletion is soft: DELETE|BLOCKED on the registry row plus a
      ``system:user:delete`` cascade action
    - Only function state bits can be changed from outside
"""

from __future__ import annotations

import logging

from ..core import crypto, ids, states
from ..core.roles import (
    CATEGORY_SYSTEM,
    FUNCTION_CREATE,
    FUNCTION_DELETE,
    FUNCTION_LIST,
    FUNCTION_READ,
    FUNCTION_UPDATE,
    SUBCATEGORY_USER,
    role,
)
from ..core.validators import is_valid_alias, is_valid_email, is_valid_name
from ..errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from ..orm.memberships import UserObjectRegistry, list_user_objects
from ..orm.registries import UserRegistry, list_users
from ..orm.users import User
from ..query.conditions import QueryConditions
from ..query.results import QueryResults
from .base import ServiceBase, as_ref, state_changes

logger = logging.getLogger(__name__)

SYSTEM_USER_CREATE = role(CATEGORY_SYSTEM | SUBCATEGORY_USER, FUNCTION_CREATE)
SYSTEM_USER_READ = role(CATEGORY_SYSTEM | SUBCATEGORY_USER, FUNCTION_READ)
SYSTEM_USER_LIST = role(CATEGORY_SYSTEM | SUBCATEGORY_USER, FUNCTION_LIST)
SYSTEM_USER_UPDATE = role(CATEGORY_SYSTEM | SUBCATEGORY_USER, FUNCTION_UPDATE)
SYSTEM_USER_DELETE = role(CATEGORY_SYSTEM | SUBCATEGORY_USER, FUNCTION_DELETE)

CODE_ALIAS_EXISTS = 4010
CODE_EMAIL_EXISTS = 4011
CODE_OBJECT_NOT_LINKED = 4051

ACTION_USER_DELETE = "system:user:delete"


def validate_user_fields(username: str | None, email: str | None, name: str | None) -> None:
    if username is not None and not is_valid_alias(username.strip().lower()):
        raise ValidationError("Value is not a valid user name", "username")
    if email is not None and not is_valid_email(email.strip().lower()):
        raise ValidationError("Value is not a valid email address", "email")
    if name is not None and name.strip() and not is_valid_name(name):
        raise ValidationError("Value is not a valid name", "name")


class UserService(ServiceBase):
    """Create, read, update, state and delete users."""

    def _check_unique(self, username: str | None, email: str | None, exclude: int | None = None) -> None:
        taken = UserRegistry()
        with self.router.registry() as conn:
            if username is not None and taken.by_username(conn, username) and taken.id != exclude:
                raise ConflictError("Alias already Exists", code=CODE_ALIAS_EXISTS)
            if email is not None and taken.by_email(conn, email) and taken.id != exclude:
                raise ConflictError("Email already registered", code=CODE_EMAIL_EXISTS)

    def register_user(
        self, creator: int, username: str, email: str, hexhash: str, name: str = ""
    ) -> UserRegistry:
        """Insert a user on a random data shard and register it.

        No access check; callers decide who may create users.

        Raises:
            ValidationError: On malformed fields or password hash
            ConflictError: If the username or email is taken
        """
        validate_user_fields(username, email, name)
        if not crypto.is_valid_password_hash(hexhash):
            raise ValidationError("Value is not a valid password hash", "hash")
        self._check_unique(username, email)

        user = User()
        user.set_username(username)
        user.set_email(email)
        user.set_name(name)
        user.set_hash(hexhash)
        user.set_creator(creator)

        shard = self.router.pick_data_shard()
        with self.router.connect_to(ids.DATA_GROUP, shard) as conn:
            user.flush(conn)

        registry = UserRegistry.from_user(user, ids.DATA_GROUP, shard)
        with self.router.registry() as conn:
            registry.flush(conn)
        user.clear_update_registry()

        logger.info(
            "Created user",
            extra={"user": ids.id_to_string(registry.id), "creator": ids.id_to_string(creator)},
        )
        return registry

    async def create_user(
        self,
        session_user: int,
        username: str,
        email: str,
        hexhash: str,
        name: str = "",
    ) -> UserRegistry:
        """Create a user as the system administrator.

        Raises:
            AuthorizationError: If the caller lacks system user CREATE
            ValidationError: On malformed input
            ConflictError: If the username (4010) or email (4011) is taken
        """
        self._session_user(session_user)
        self.access.check(session_user, ids.SYSTEM_ORGANIZATION, [SYSTEM_USER_CREATE])
        return self.register_user(session_user, username, email, hexhash, name)

    async def get_user(self, session_user: int, ref: str | int | ids.Ref) -> UserRegistry:
        """Registry entry of a user; reading oneself needs no role."""
        self._session_user(session_user)
        registry = self._find_user(ref)
        if registry.id != session_user:
            self.access.check(session_user, ids.SYSTEM_ORGANIZATION, [SYSTEM_USER_READ])
        return registry

    async def get_profile(self, session_user: int) -> User:
        """Canonical row of the caller."""
        self._session_user(session_user)
        return self._load_user(session_user)

    async def update_user(
        self,
        session_user: int,
        ref: str | int | ids.Ref,
        *,
        username: str | None = None,
        email: str | None = None,
        name: str | None = None,
    ) -> UserRegistry:
        """Change username, email or display name.

        Users may change their own profile; anybody else needs system
        user UPDATE.
        """
        self._session_user(session_user)
        registry = self._find_user(ref)
        if registry.id != session_user:
            self.access.check(session_user, ids.SYSTEM_ORGANIZATION, [SYSTEM_USER_UPDATE])

        validate_user_fields(username, email, name)
        self._check_unique(
            username if username is not None and username.strip().lower() != registry.username else None,
            email if email is not None and email.strip().lower() != registry.email else None,
            exclude=registry.id,
        )

        user = self._load_user(registry.id)
        if username is not None:
            user.set_username(username)
        if email is not None:
            user.set_email(email)
        if name is not None:
            user.set_name(name)
        if not user.is_dirty():
            return registry

        user.set_modifier(session_user)
        with self.router.connect(registry.id) as conn:
            user.flush(conn)

        if user.update_registry:
            registry.update_from(user)
            with self.router.registry() as conn:
                registry.flush(conn)
            user.clear_update_registry()

        logger.info("Updated user", extra={"user": ids.id_to_string(registry.id)})
        return registry

    async def set_user_state(
        self,
        session_user: int,
        ref: str | int | ids.Ref,
        set_bits: int = 0,
        clear_bits: int = 0,
    ) -> UserRegistry:
        """Set / clear function state bits of another user."""
        self._session_user(session_user)
        registry = self._find_user(ref)
        self.access.check(
            session_user, ids.SYSTEM_ORGANIZATION, [SYSTEM_USER_UPDATE], target_user=registry.id
        )
        if registry.id == ids.SYSTEM_ADMINISTRATOR:
            raise AuthorizationError("System administrator state is fixed", user=session_user)

        set_bits, clear_bits = state_changes(set_bits, clear_bits)
        registry.set_states(set_bits)
        registry.clear_states(clear_bits)
        if registry.is_dirty():
            with self.router.registry() as conn:
                registry.flush(conn)
            logger.info(
                "Changed user state",
                extra={"user": ids.id_to_string(registry.id), "state": registry.state},
            )
        return registry

    async def block_user(self, session_user: int, ref: str | int | ids.Ref, blocked: bool) -> UserRegistry:
        if blocked:
            return await self.set_user_state(session_user, ref, set_bits=states.STATE_BLOCKED)
        return await self.set_user_state(session_user, ref, clear_bits=states.STATE_BLOCKED)

    async def lock_user(self, session_user: int, ref: str | int | ids.Ref, locked: bool) -> UserRegistry:
        if locked:
            return await self.set_user_state(session_user, ref, set_bits=states.STATE_READONLY)
        return await self.set_user_state(session_user, ref, clear_bits=states.STATE_READONLY)

    async def delete_user(self, session_user: int, ref: str | int | ids.Ref) -> UserRegistry:
        """Mark a user deleted and queue the cascade.

        Raises:
            PublishError: If the cascade action could not be queued; the
                user stays marked deleted
        """
        self._session_user(session_user)
        registry = self._find_user(ref)
        self.access.check(
            session_user, ids.SYSTEM_ORGANIZATION, [SYSTEM_USER_DELETE], target_user=registry.id
        )
        if registry.id == ids.SYSTEM_ADMINISTRATOR:
            raise AuthorizationError("System administrator cannot be deleted", user=session_user)

        registry.set_states(states.STATE_DELETE | states.STATE_BLOCKED)
        with self.router.registry() as conn:
            registry.flush(conn)
        logger.info("Marked user deleted", extra={"user": ids.id_to_string(registry.id)})

        await self.cascade(ACTION_USER_DELETE, session_user, {"user": ids.id_to_string(registry.id)})
        return registry

    async def list_users(
        self,
        session_user: int,
        conditions: QueryConditions | None = None,
        count: bool = False,
    ) -> QueryResults[UserRegistry]:
        self._session_user(session_user)
        self.access.check(session_user, ids.SYSTEM_ORGANIZATION, [SYSTEM_USER_LIST])
        with self.router.registry() as conn:
            return list_users(conn, conditions, count)

    async def list_objects(
        self,
        session_user: int,
        object_type: int | None = None,
        conditions: QueryConditions | None = None,
        count: bool = False,
    ) -> QueryResults[UserObjectRegistry]:
        """Orgs and stores the caller belongs to."""
        self._session_user(session_user)
        with self.router.connect(session_user) as conn:
            return list_user_objects(conn, session_user, object_type, conditions, count)

    async def set_favorite(
        self, session_user: int, object_ref: str | int | ids.Ref, favorite: bool
    ) -> UserObjectRegistry:
        """Flag one of the caller's orgs or stores as favorite."""
        self._session_user(session_user)
        ref = as_ref(object_ref)
        if not isinstance(ref, ids.IdRef):
            raise ValidationError("Object must be referenced by id", "object")

        link = UserObjectRegistry()
        with self.router.connect(session_user) as conn:
            if not link.by_key(conn, session_user, ref.value):
                raise NotFoundError("User not registered with object", code=CODE_OBJECT_NOT_LINKED)
            link.set_favorite(favorite)
            link.flush(conn)
        return link
