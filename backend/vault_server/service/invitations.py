"""
Invitations to organizations and stores.

An invitation is created by a member holding INVITE CREATE on the object.
The canonical row lives on the object's shard, the lookup row on the
registry shard, and an ``invite:org`` / ``invite:store`` action carries the
email. The invitation UID is the secret the invitee presents to accept it.

Store invitations also hand over the store key: the inviter's key is
re-sealed in a ``ciphers`` row under a fresh key (the pick) that travels in
the invitation. Accepting opens the cipher with the pick and wraps the
store key under the invitee's own password hash.

Invariants:
    - One pending, unexpired invitation per (object, invitee email) (4302)
    - Nobody invites themselves (4004) or an existing member (4050)
    - Store invitees already belong to the store's organization
    - State only moves from PENDING to ACCEPTED, DECLINED or REVOKED
    - A stored invitation whose email could not be queued stays valid; the
      caller gets warning 2490
    - The UID hashes creator, object, invitee and the creation second; a
      second invitation with the same inputs in the same second is refused
      with retryable 4303 and leaves nothing behind
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..core import ids
from ..core.roles import (
    FUNCTION_CREATE,
    FUNCTION_DELETE,
    FUNCTION_LIST,
    SUBCATEGORY_INVITE,
    role,
)
from ..core.validators import is_valid_email
from ..errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PublishError,
    ValidationError,
)
from ..orm.actions import Action
from ..orm.invitations import (
    Invitation,
    InvitationRegistry,
    has_pending_invitation,
    list_invitations,
)
from ..orm.keys import Key, delete_key
from ..orm.memberships import ObjectUserRegistry, UserObjectRegistry
from ..orm.registries import UserRegistry
from ..query.conditions import QueryConditions
from ..query.results import QueryResults
from .base import CODE_USER_NOT_FOUND, ServiceBase
from .members import object_category, parse_roles
from .users import UserService

logger = logging.getLogger(__name__)

CODE_OK = 1000
CODE_INVITE_NOT_SENT = 2490
CODE_NOT_ON_SELF = 4004
CODE_ALREADY_MEMBER = 4050
CODE_NOT_ORG_MEMBER = 4051
CODE_ACCEPT_NEEDS_SESSION = 4300
CODE_ACCEPT_NEEDS_PASSWORD = 4301
CODE_INVITE_PENDING = 4302
CODE_INVITE_RETRY = 4303
CODE_INVALID_INVITATION = 4390
CODE_INVITE_EXPIRED = 4391
CODE_INVITE_NOT_PENDING = 4392

# Organization: ORG|STORE READ. Store: STORE|OBJECT READ and STORE|TEMPLATE READ+LIST.
DEFAULT_ORG_ROLES = "33882113"
DEFAULT_STORE_ROLES = "50724865,50790403"

ACTION_INVITE_ORG = "invite:org"
ACTION_INVITE_STORE = "invite:store"


@dataclass
class InvitationResult:
    """A stored invitation and whether its email was queued."""

    invitation: Invitation
    registry: InvitationRegistry
    queued: bool = True

    @property
    def code(self) -> int:
        return CODE_OK if self.queued else CODE_INVITE_NOT_SENT


@dataclass
class NewAccount:
    """Account details supplied by an unregistered invitee."""

    username: str
    hexhash: str
    name: str = ""


class InvitationService(ServiceBase):
    """Create, accept, decline, revoke and list invitations."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.users = UserService(self.router, self.publisher, self.config, self.access)

    # Creation

    def _new_invitation(
        self,
        caller: UserRegistry,
        object_id: int,
        invitee_email: str,
        message: str,
        roles: str | list[int] | None,
        default_roles: str,
        expires_in: int | None,
    ) -> Invitation:
        email = (invitee_email or "").strip().lower()
        if not is_valid_email(email):
            raise ValidationError("Value is not a valid email address", "invitee")
        if email == caller.email:
            raise AuthorizationError(
                "Invalid Invite: Invitee is equal to Invited",
                user=caller.id,
                object_id=object_id,
                code=CODE_NOT_ON_SELF,
            )

        with self.router.registry() as conn:
            if has_pending_invitation(conn, object_id, email):
                raise ConflictError("Invitation already Pending", code=CODE_INVITE_PENDING)

        invitee = UserRegistry()
        with self.router.registry() as conn:
            known = invitee.by_email(conn, email)
        if known and self.access.membership(object_id, invitee.id) is not None:
            raise ConflictError("User already registered with object", code=CODE_ALREADY_MEMBER)

        invitation = Invitation()
        invitation.set_creator(caller.id)
        invitation.set_object(object_id)
        invitation.set_invitee_email(email)
        invitation.set_message(message or "")
        invitation.set_roles(parse_roles(roles or default_roles, object_category(object_id)))
        invitation.set_expires_in(expires_in or self.config.session.invitation_expiry_days)
        return invitation

    def _store_invitation(self, invitation: Invitation) -> InvitationRegistry:
        object_id = invitation.object
        with self.router.connect(object_id) as conn:
            try:
                invitation.flush(conn)
            except ConflictError as e:
                logger.warning(
                    "Invitation UID collision",
                    extra={"object": ids.id_to_string(object_id), "error": str(e)},
                )
                if invitation.key:
                    with self.router.connect(invitation.key) as key_conn:
                        delete_key(key_conn, ids.local(invitation.key))
                raise ConflictError(
                    "Invitation UID in use, retry", code=CODE_INVITE_RETRY
                ) from e
        registry = InvitationRegistry.from_invitation(
            invitation, ids.shard_group(object_id), ids.shard(object_id)
        )
        with self.router.registry() as conn:
            registry.flush(conn)
        return registry

    async def _send(
        self,
        action_type: str,
        template: str,
        caller: UserRegistry,
        invitation: Invitation,
        registry: InvitationRegistry,
        object_name: str,
        store_name: str | None = None,
    ) -> InvitationResult:
        action = Action(action_type, caller.id)
        action.set_param("template", template)
        action.set_param("code", invitation.uid)
        action.set_param("by_user", caller.name or caller.username)
        action.set_param("at_user", caller.email)
        action.set_param("message", invitation.message)
        action.set_param("object_name", object_name)
        if store_name is not None:
            action.set_param("store_name", store_name)
        action.set_prop("to", invitation.invitee_email)
        action.set_prop("expiration", invitation.expiration_utc())

        try:
            await self.dispatch(action)
        except PublishError:
            logger.warning("Invitation stored but not sent", extra={"uid": invitation.uid})
            return InvitationResult(invitation, registry, queued=False)
        return InvitationResult(invitation, registry)

    async def create_org_invitation(
        self,
        session_user: int,
        org_ref: str | int | ids.Ref,
        invitee_email: str,
        message: str = "",
        roles: str | list[int] | None = None,
        expires_in: int | None = None,
    ) -> InvitationResult:
        """Invite an email address into an organization.

        Raises:
            AuthorizationError: Without org INVITE CREATE, or on self (4004)
            ConflictError: 4302 for a pending invitation, 4050 for a member
        """
        caller = self._session_user(session_user)
        org = self._find_org(org_ref)
        category = object_category(org.id)
        self.access.check(session_user, org.id, [role(category | SUBCATEGORY_INVITE, FUNCTION_CREATE)])

        invitation = self._new_invitation(
            caller, org.id, invitee_email, message, roles, DEFAULT_ORG_ROLES, expires_in
        )
        registry = self._store_invitation(invitation)
        logger.info(
            "Invited to organization",
            extra={"uid": invitation.uid, "org": ids.id_to_string(org.id)},
        )
        return await self._send(
            ACTION_INVITE_ORG, "org-invitation", caller, invitation, registry, org.name or org.alias
        )

    async def create_store_invitation(
        self,
        session_user: int,
        store_id: int,
        hexhash: str,
        invitee_email: str,
        message: str = "",
        roles: str | list[int] | None = None,
        expires_in: int | None = None,
    ) -> InvitationResult:
        """Invite a member of the store's organization into the store.

        ``hexhash`` is the inviter's password hash; it opens the store key
        that is handed over through the invitation.

        Raises:
            AuthorizationError: Without store INVITE CREATE, on a wrong hash
                (3001), or if the invitee is not in the organization (4051)
            NotFoundError: If no user has the invitee email (4000)
        """
        caller = self._session_user(session_user)
        entry = self._store_entry(store_id)
        membership = self.access.check(
            session_user, store_id, [role(object_category(store_id) | SUBCATEGORY_INVITE, FUNCTION_CREATE)]
        )
        self._assert_credentials(caller, hexhash)

        invitee = UserRegistry()
        with self.router.registry() as conn:
            known = invitee.by_email(conn, (invitee_email or "").strip().lower())
        if not known:
            raise NotFoundError("User does not exist", code=CODE_USER_NOT_FOUND)
        if self.access.membership(entry.org, invitee.id) is None:
            raise AuthorizationError(
                "User not registered with object",
                user=invitee.id,
                object_id=entry.org,
                code=CODE_NOT_ORG_MEMBER,
            )

        invitation = self._new_invitation(
            caller, store_id, invitee_email, message, roles, DEFAULT_STORE_ROLES, expires_in
        )

        store_key = membership.store_key(hexhash)
        pick, key = Key.new_key(session_user, store_key, invitation.expiration)
        shard = self.router.pick_data_shard()
        with self.router.connect_to(ids.DATA_GROUP, shard) as conn:
            key.flush(conn)
        invitation.set_key(ids.make_id(ids.DATA_GROUP, ids.OTYPE_KEY, shard, key.id), pick)

        registry = self._store_invitation(invitation)
        logger.info(
            "Invited to store",
            extra={"uid": invitation.uid, "store": ids.id_to_string(store_id)},
        )
        org = self._find_org(ids.IdRef(entry.org))
        return await self._send(
            ACTION_INVITE_STORE,
            "store-invitation",
            caller,
            invitation,
            registry,
            org.name or org.alias,
            store_name=entry.alias,
        )

    # Lookup

    def _pending(self, uid: str) -> tuple[InvitationRegistry, Invitation]:
        """Registry and canonical row of a pending, unexpired invitation."""
        registry = InvitationRegistry()
        with self.router.registry() as conn:
            found = registry.by_uid(conn, uid or "")
        if not found:
            raise NotFoundError("Invalid Invitation ID!", code=CODE_INVALID_INVITATION)
        if not registry.is_active():
            raise ValidationError("Invitation no longer Pending", "uid", code=CODE_INVITE_NOT_PENDING)
        if registry.is_expired():
            raise ValidationError("Invitation Expired!", "uid", code=CODE_INVITE_EXPIRED)

        invitation = Invitation()
        with self.router.connect(registry.id) as conn:
            found = invitation.by_uid(conn, registry.uid)
        if not found:
            raise NotFoundError("Invalid Invitation ID!", code=CODE_INVALID_INVITATION)
        return registry, invitation

    async def get_invitation(self, uid: str) -> InvitationRegistry:
        """Public view of an invitation; the UID itself is the credential."""
        registry = InvitationRegistry()
        with self.router.registry() as conn:
            found = registry.by_uid(conn, uid or "")
        if not found:
            raise NotFoundError("Invalid Invitation ID!", code=CODE_INVALID_INVITATION)
        return registry

    # Lifecycle

    def _link(self, user: int, object_id: int, alias: str) -> None:
        link = UserObjectRegistry()
        with self.router.connect(user) as conn:
            if link.by_key(conn, user, object_id):
                return
            link = UserObjectRegistry(user, object_id)
            link.set_alias(alias)
            link.flush(conn)

    def _accept_org(self, user: UserRegistry, invitation: Invitation) -> ObjectUserRegistry:
        org_id = invitation.object
        self.access.check_object(org_id)
        org = self._find_org(ids.IdRef(org_id))

        membership = ObjectUserRegistry()
        with self.router.connect(org_id) as conn:
            if membership.by_key(conn, org_id, user.id):
                membership.add_roles(invitation.roles)
            else:
                membership = ObjectUserRegistry(org_id, user.id)
                membership.set_username(user.username)
                membership.set_roles(invitation.roles)
            membership.flush(conn)

        self._link(user.id, org_id, org.alias)
        return membership

    def _accept_store(
        self, user: UserRegistry, invitation: Invitation, hexhash: str | None
    ) -> ObjectUserRegistry:
        store_id = invitation.object
        if not hexhash:
            raise AuthorizationError(
                "Invitation Accept, requires Session and Password by the invitee!",
                user=user.id,
                object_id=store_id,
                code=CODE_ACCEPT_NEEDS_PASSWORD,
            )
        self._assert_credentials(user, hexhash)
        self.access.check_object(store_id)
        entry = self._store_entry(store_id)
        if self.access.membership(store_id, user.id) is not None:
            raise ConflictError("User already registered with object", code=CODE_ALREADY_MEMBER)
        if invitation.key is None or not invitation.key_pick:
            raise ValidationError("Invitation has no store key", "invitation")

        key = Key()
        with self.router.connect(invitation.key) as conn:
            if not key.by_id(conn, ids.local(invitation.key)):
                raise NotFoundError("Invalid Invitation ID!", code=CODE_INVALID_INVITATION)
        store_key = key.decrypt_key(invitation.key_pick)
        if not store_key:
            raise ValidationError("Invitation has no store key", "invitation")

        membership = ObjectUserRegistry(store_id, user.id)
        membership.set_username(user.username)
        membership.set_roles(invitation.roles)
        membership.set_store_key(hexhash, store_key)
        with self.router.connect(store_id) as conn:
            membership.flush(conn)

        with self.router.connect(invitation.key) as conn:
            delete_key(conn, ids.local(invitation.key))

        self._link(user.id, store_id, entry.alias)
        return membership

    async def accept(
        self,
        session_user: int | None,
        uid: str,
        hexhash: str | None = None,
        account: NewAccount | None = None,
    ) -> ObjectUserRegistry:
        """Accept an invitation as the invitee.

        Without a session, an organization invitation may be accepted by
        creating the invitee's account from ``account``.

        Raises:
            NotFoundError: 4390 for an unknown UID
            ValidationError: 4392 if no longer pending, 4391 once expired
            AuthorizationError: 4390 when the caller is not the invitee,
                4300 / 4301 when a session or password is missing
        """
        registry, invitation = self._pending(uid)
        is_store = ids.type_of(invitation.object) == ids.OTYPE_STORE

        if session_user is None:
            if account is None or is_store:
                raise AuthorizationError(
                    "Invitation Accept, requires Session by the invitee!",
                    object_id=invitation.object,
                    code=CODE_ACCEPT_NEEDS_PASSWORD if is_store else CODE_ACCEPT_NEEDS_SESSION,
                )
            created = self.users.register_user(
                invitation.creator,
                account.username,
                invitation.invitee_email,
                account.hexhash,
                account.name,
            )
            session_user = created.id

        user = self._session_user(session_user)
        if user.email != invitation.invitee_email:
            raise AuthorizationError(
                "Invalid Invitation ID!",
                user=session_user,
                object_id=invitation.object,
                code=CODE_INVALID_INVITATION,
            )

        if is_store:
            membership = self._accept_store(user, invitation, hexhash)
        else:
            membership = self._accept_org(user, invitation)

        registry.set_accepted()
        with self.router.registry() as conn:
            registry.flush(conn)
        logger.info(
            "Invitation accepted",
            extra={
                "uid": registry.uid,
                "object": ids.id_to_string(invitation.object),
                "user": ids.id_to_string(user.id),
            },
        )
        return membership

    async def decline(self, session_user: int, uid: str) -> InvitationRegistry:
        """Refuse an invitation addressed to the caller."""
        user = self._session_user(session_user)
        registry, invitation = self._pending(uid)
        if user.email != invitation.invitee_email:
            raise AuthorizationError(
                "Invalid Invitation ID!",
                user=session_user,
                object_id=invitation.object,
                code=CODE_INVALID_INVITATION,
            )
        registry.set_declined()
        with self.router.registry() as conn:
            registry.flush(conn)
        logger.info("Invitation declined", extra={"uid": registry.uid})
        return registry

    async def revoke(self, session_user: int, uid: str) -> InvitationRegistry:
        """Withdraw a pending invitation; its creator or an invitation manager."""
        self._session_user(session_user)
        registry = InvitationRegistry()
        with self.router.registry() as conn:
            found = registry.by_uid(conn, uid or "")
        if not found:
            raise NotFoundError("Invalid Invitation ID!", code=CODE_INVALID_INVITATION)
        if registry.creator != session_user:
            category = object_category(registry.object)
            self.access.check(
                session_user, registry.object, [role(category | SUBCATEGORY_INVITE, FUNCTION_DELETE)]
            )
        if not registry.is_active():
            raise ValidationError("Invitation no longer Pending", "uid", code=CODE_INVITE_NOT_PENDING)

        registry.set_revoked()
        with self.router.registry() as conn:
            registry.flush(conn)
        logger.info("Invitation revoked", extra={"uid": registry.uid})
        return registry

    async def list_invitations(
        self,
        session_user: int,
        object_id: int,
        conditions: QueryConditions | None = None,
        count: bool = False,
    ) -> QueryResults[InvitationRegistry]:
        self._session_user(session_user)
        category = object_category(object_id)
        self.access.check(session_user, object_id, [role(category | SUBCATEGORY_INVITE, FUNCTION_LIST)])
        with self.router.registry() as conn:
            return list_invitations(conn, object_id, conditions, count)
