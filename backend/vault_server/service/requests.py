"""
Password recovery, reset and change.

Recovery is a two step flow. ``recover`` records a ``password:reset``
request for the user and publishes an ``email:password:reset`` action
carrying the request GUID; ``reset`` redeems that GUID with a new password
hash.

Invariants:
    - At most one active reset request per user: a repeated recover call
      reuses it and only sends the email again
    - The first action of a request shares the request GUID; resends get
      their own GUID with the request GUID as parent
    - A redeemed request is CLOSED and cannot be used twice
    - A password change re-wraps every store key before the user row, so
      a failed change can be retried with the same hashes

How to change safely:
    - Unknown emails must keep answering like known ones; the caller
      cannot tell which addresses are registered
"""

from __future__ import annotations

import logging

from ..core import crypto, ids
from ..core.roles import CATEGORY_SYSTEM, FUNCTION_LIST, SUBCATEGORY_USER, role
from ..core.validators import is_valid_email
from ..errors import AuthorizationError, CryptoError, NotFoundError, ValidationError
from ..orm.actions import STATE_REGISTERED, Action
from ..orm.memberships import ObjectUserRegistry, user_objects
from ..orm.registries import UserRegistry
from ..orm.requests import (
    REQUEST_PASSWORD_RESET,
    STATE_CLOSED,
    Request,
    RequestRegistry,
    count_requests_by_type,
    expire_requests_by_type,
    list_requests,
)
from ..query.conditions import QueryConditions
from ..query.results import QueryResults
from .base import ServiceBase

logger = logging.getLogger(__name__)

SYSTEM_USER_LIST = role(CATEGORY_SYSTEM | SUBCATEGORY_USER, FUNCTION_LIST)

CODE_CONTACT_ADMIN = 1099
CODE_REQUEST_NOT_FOUND = 4500
CODE_REQUEST_EXPIRED = 4591

ACTION_PASSWORD_RESET = "email:password:reset"
EMAIL_TEMPLATE_PASSWORD_RESET = "password-reset"


def _check_hash(hexhash: str, field_name: str = "hash") -> None:
    if not crypto.is_valid_password_hash(hexhash):
        raise ValidationError("Value is not a valid password hash", field_name)


class RequestService(ServiceBase):
    """User intents that travel through the action broker."""

    def _load_request(self, registry: RequestRegistry) -> Request:
        request = Request()
        with self.router.connect(registry.id) as conn:
            found = request.by_id(conn, ids.local(registry.id))
        if not found:
            raise NotFoundError("Request does not exist", code=CODE_REQUEST_NOT_FOUND)
        return request

    def _reset_action(self, request: Request, registry: RequestRegistry, user: UserRegistry) -> Action:
        """The email action for ``request``; resends get a fresh GUID."""
        existing = Action()
        with self.router.registry() as conn:
            found = existing.by_guid(conn, request.guid)
        if found and existing.state == STATE_REGISTERED:
            # Earlier publish failed; retry the same action
            return existing

        if found:
            action = Action(ACTION_PASSWORD_RESET, request.creator)
            action.set_parent(request.guid)
        else:
            action = Action(ACTION_PASSWORD_RESET, request.creator, guid=request.guid)
        for name, value in request.params.to_dict().items():
            action.set_param(name, value)
        action.set_param("template", EMAIL_TEMPLATE_PASSWORD_RESET)
        for name, value in request.props.to_dict().items():
            action.set_prop(name, value)
        action.set_prop("to", user.email)
        action.set_prop("expiration", registry.expiration_utc())
        return action

    async def recover(self, email: str) -> RequestRegistry | None:
        """Start a password recovery for the account behind ``email``.

        Returns:
            The active reset request, or None when no account uses the email

        Raises:
            AuthorizationError: 1099 if the account is blocked or deleted
            PublishError: If the email action could not be queued; the
                request stays active and a later call retries
        """
        if not email or not is_valid_email(email.strip().lower()):
            raise ValidationError("Value is not a valid email address", "email")

        user = UserRegistry()
        with self.router.registry() as conn:
            found = user.by_email(conn, email)
        if not found:
            logger.info("Password recovery for unknown email")
            return None
        if user.is_blocked() or user.is_deleted():
            raise AuthorizationError(
                "Contact System Administrator.", user=user.id, code=CODE_CONTACT_ADMIN
            )

        registry = RequestRegistry()
        with self.router.registry() as conn:
            expire_requests_by_type(conn, REQUEST_PASSWORD_RESET, user.id)
            reuse = count_requests_by_type(
                conn, REQUEST_PASSWORD_RESET, True, user.id
            ) > 0 and registry.by_last_active(conn, REQUEST_PASSWORD_RESET, user.id)

        if reuse:
            request = self._load_request(registry)
            logger.info(
                "Reusing password reset request",
                extra={"guid": registry.guid, "user": ids.id_to_string(user.id)},
            )
        else:
            request = Request(REQUEST_PASSWORD_RESET, ids.SYSTEM_ADMINISTRATOR)
            request.set_object(user.id)
            request.set_expires_in(self.config.session.request_expiry_days)
            request.set_param("user", ids.id_to_string(user.id))
            request.set_param("name", user.name or user.username)
            with self.router.connect(user.id) as conn:
                request.flush(conn)
            registry = RequestRegistry.from_request(
                request, ids.shard_group(user.id), ids.shard(user.id)
            )
            with self.router.registry() as conn:
                registry.flush(conn)
            logger.info(
                "Created password reset request",
                extra={"guid": registry.guid, "user": ids.id_to_string(user.id)},
            )

        await self.dispatch(self._reset_action(request, registry, user))
        return registry

    async def reset(self, guid: str, new_hash: str) -> UserRegistry:
        """Redeem a reset request with a new password hash.

        Store keys wrapped under the old hash become unreadable; the user
        has to be re-invited to those stores.

        Raises:
            NotFoundError: 4500 for an unknown, used or foreign request
            ValidationError: 4591 once the request expired
        """
        _check_hash(new_hash)
        registry = RequestRegistry()
        with self.router.registry() as conn:
            found = registry.by_guid(conn, guid or "")
        if not found or registry.request_type != REQUEST_PASSWORD_RESET or not registry.is_active():
            raise NotFoundError("Request does not exist", code=CODE_REQUEST_NOT_FOUND)
        if registry.is_expired():
            raise ValidationError("Request Expired!", "guid", code=CODE_REQUEST_EXPIRED)

        user_registry = self._find_user(ids.IdRef(registry.object))
        if not user_registry.is_active() or user_registry.is_blocked():
            raise AuthorizationError(
                "Contact System Administrator.", user=user_registry.id, code=CODE_CONTACT_ADMIN
            )
        user = self._load_user(user_registry.id)
        user.replace_hash(new_hash)
        user.set_modifier(user_registry.id)
        with self.router.connect(user_registry.id) as conn:
            user.flush(conn)
        user_registry.update_from(user)
        with self.router.registry() as conn:
            user_registry.flush(conn)
        user.clear_update_registry()

        registry.set_state(STATE_CLOSED)
        with self.router.registry() as conn:
            registry.flush(conn)

        logger.info(
            "Password reset",
            extra={"guid": registry.guid, "user": ids.id_to_string(user_registry.id)},
        )
        return user_registry

    async def change_password(self, session_user: int, old_hash: str, new_hash: str) -> UserRegistry:
        """Move the caller's validation blob and store keys to a new hash.

        Raises:
            AuthorizationError: 3001 if ``old_hash`` is wrong
        """
        caller = self._session_user(session_user)
        _check_hash(new_hash)
        self._assert_credentials(caller, old_hash)

        with self.router.connect(session_user) as conn:
            stores = user_objects(conn, session_user, ids.OTYPE_STORE)

        rewrapped = 0
        for link in stores:
            membership = ObjectUserRegistry()
            with self.router.connect(link.object) as conn:
                if not membership.by_key(conn, link.object, session_user):
                    continue
                if not membership.has_store_key():
                    continue
                try:
                    membership.rewrap_store_key(old_hash, new_hash)
                except CryptoError:
                    logger.warning(
                        "Store key not readable with current password",
                        extra={
                            "store": ids.id_to_string(link.object),
                            "user": ids.id_to_string(session_user),
                        },
                    )
                    continue
                membership.flush(conn)
                rewrapped += 1

        user = self._load_user(session_user)
        user.update_hash(old_hash, new_hash)
        user.set_modifier(session_user)
        with self.router.connect(session_user) as conn:
            user.flush(conn)
        caller.update_from(user)
        with self.router.registry() as conn:
            caller.flush(conn)
        user.clear_update_registry()

        logger.info(
            "Password changed",
            extra={"user": ids.id_to_string(session_user), "store_keys": rewrapped},
        )
        return caller

    async def list_requests(
        self,
        session_user: int,
        conditions: QueryConditions | None = None,
        count: bool = False,
    ) -> QueryResults[RequestRegistry]:
        """Registered requests; system administrators only."""
        self._session_user(session_user)
        self.access.check(session_user, ids.SYSTEM_ORGANIZATION, [SYSTEM_USER_LIST])
        with self.router.registry() as conn:
            return list_requests(conn, conditions, count)

