"""
Integration tests for organization and store invitations.

Tests cover:
- Creation, the queued email action and the 2490 warning
- Refusals: pending duplicates, members, self, outsiders
- Accept, decline and revoke transitions
- Expiry
- UID collisions within one second (retryable 4303)
- Account creation through an organization invitation
- Store key hand-over
"""

from datetime import datetime, timedelta, timezone

import pytest

from backend.vault_server.core import ids
from backend.vault_server.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from backend.vault_server.orm.invitations import (
    INVITE_ACCEPTED,
    INVITE_DECLINED,
    INVITE_PENDING,
    INVITE_REVOKED,
)
from backend.vault_server.service import NewAccount

from tests.conftest import ADMIN_EMAIL, ADMIN_PASSWORD, join_org, password_hash


def expire(router, uid):
    with router.registry() as conn:
        conn.execute(
            "UPDATE registry_invites SET expiration = '2000-01-01 00:00:00' WHERE uid = ?", (uid,)
        )


class Clock:
    """Stand-in for the invitation module clock, frozen until advanced."""

    def __init__(self):
        self.now = datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock(monkeypatch):
    frozen = Clock()
    monkeypatch.setattr("backend.vault_server.orm.invitations.utcnow", frozen)
    return frozen


class TestCreateOrgInvitation:
    """Tests for create_org_invitation()."""

    @pytest.mark.asyncio
    async def test_queues_email(self, vault, admin, acme, publisher, config):
        result = await vault.invitations.create_org_invitation(
            admin, "acme", "Alice@Example.com", message="Welcome"
        )

        assert result.queued is True
        assert result.code == 1000
        assert result.registry.state == INVITE_PENDING
        assert result.invitation.invitee_email == "alice@example.com"

        message = publisher.messages(config.kafka.topic)[-1]
        assert message["type"] == "invite:org"
        assert message["params"]["code"] == result.invitation.uid
        assert message["params"]["object_name"] == "Acme Inc"
        assert message["props"]["to"] == "alice@example.com"

        found = await vault.invitations.get_invitation(result.invitation.uid)
        assert found.object == acme.id

    @pytest.mark.asyncio
    async def test_broker_down_keeps_invitation(self, vault, admin, acme, publisher, config):
        publisher.inject_failure(RuntimeError("down"))

        result = await vault.invitations.create_org_invitation(admin, acme.id, "alice@example.com")

        assert result.queued is False
        assert result.code == 2490
        assert publisher.message_count(config.kafka.topic) == 0
        found = await vault.invitations.get_invitation(result.invitation.uid)
        assert found.state == INVITE_PENDING

    @pytest.mark.asyncio
    async def test_pending_duplicate(self, vault, admin, acme):
        await vault.invitations.create_org_invitation(admin, acme.id, "alice@example.com")

        with pytest.raises(ConflictError) as exc:
            await vault.invitations.create_org_invitation(admin, acme.id, "ALICE@example.com")
        assert exc.value.code == 4302

    @pytest.mark.asyncio
    async def test_expired_invitation_allows_new_one(self, vault, router, admin, acme, clock):
        first = await vault.invitations.create_org_invitation(admin, acme.id, "alice@example.com")
        expire(router, first.invitation.uid)
        clock.advance(1)

        second = await vault.invitations.create_org_invitation(admin, acme.id, "alice@example.com")

        assert second.invitation.uid != first.invitation.uid

    @pytest.mark.asyncio
    async def test_reinvite_in_same_second_is_retryable(self, vault, router, admin, acme, clock):
        first = await vault.invitations.create_org_invitation(admin, acme.id, "alice@example.com")
        expire(router, first.invitation.uid)

        with pytest.raises(ConflictError) as exc:
            await vault.invitations.create_org_invitation(admin, acme.id, "alice@example.com")
        assert exc.value.code == 4303

        clock.advance(1)
        retried = await vault.invitations.create_org_invitation(admin, acme.id, "alice@example.com")
        assert retried.registry.state == INVITE_PENDING

    @pytest.mark.asyncio
    async def test_existing_member(self, vault, admin, acme, make_user):
        alice = await make_user("alice")
        await join_org(vault, admin, acme.id, alice)

        with pytest.raises(ConflictError) as exc:
            await vault.invitations.create_org_invitation(admin, acme.id, alice.email)
        assert exc.value.code == 4050

    @pytest.mark.asyncio
    async def test_not_on_self(self, vault, admin, acme):
        with pytest.raises(AuthorizationError) as exc:
            await vault.invitations.create_org_invitation(admin, acme.id, ADMIN_EMAIL)
        assert exc.value.code == 4004

    @pytest.mark.asyncio
    async def test_needs_invite_role(self, vault, admin, acme, make_user):
        alice = await make_user("alice")
        await join_org(vault, admin, acme.id, alice)

        with pytest.raises(AuthorizationError) as exc:
            await vault.invitations.create_org_invitation(alice.id, acme.id, "bob@example.com")
        assert exc.value.code == 4003

    @pytest.mark.asyncio
    @pytest.mark.parametrize("email", ["", "not-an-email"])
    async def test_invalid_email(self, vault, admin, acme, email):
        with pytest.raises(ValidationError):
            await vault.invitations.create_org_invitation(admin, acme.id, email)

    @pytest.mark.asyncio
    async def test_list(self, vault, admin, acme):
        await vault.invitations.create_org_invitation(admin, acme.id, "alice@example.com")
        await vault.invitations.create_org_invitation(admin, acme.id, "bob@example.com")

        results = await vault.invitations.list_invitations(admin, acme.id, count=True)

        assert {i.invitee_email for i in results} == {"alice@example.com", "bob@example.com"}
        assert results.max_count == 2


class TestLifecycle:
    """Tests for accept(), decline() and revoke()."""

    @pytest.mark.asyncio
    async def test_accept(self, vault, admin, acme, make_user):
        alice = await make_user("alice")
        result = await vault.invitations.create_org_invitation(admin, acme.id, alice.email)

        membership = await vault.invitations.accept(alice.id, result.invitation.uid)

        assert membership.user == alice.id
        assert (await vault.invitations.get_invitation(result.invitation.uid)).state == INVITE_ACCEPTED
        linked = await vault.users.list_objects(alice.id, ids.OTYPE_ORG)
        assert [o.alias for o in linked] == ["acme"]

        with pytest.raises(ValidationError) as exc:
            await vault.invitations.accept(alice.id, result.invitation.uid)
        assert exc.value.code == 4392

    @pytest.mark.asyncio
    async def test_only_invitee_accepts(self, vault, admin, acme, make_user):
        await make_user("alice")
        bob = await make_user("bob")
        result = await vault.invitations.create_org_invitation(admin, acme.id, "alice@example.com")

        with pytest.raises(AuthorizationError) as exc:
            await vault.invitations.accept(bob.id, result.invitation.uid)
        assert exc.value.code == 4390

    @pytest.mark.asyncio
    async def test_unknown_uid(self, vault, make_user):
        alice = await make_user("alice")

        with pytest.raises(NotFoundError) as exc:
            await vault.invitations.accept(alice.id, "no-such-invitation")
        assert exc.value.code == 4390

    @pytest.mark.asyncio
    async def test_expired(self, vault, router, admin, acme, make_user):
        alice = await make_user("alice")
        result = await vault.invitations.create_org_invitation(admin, acme.id, alice.email)
        expire(router, result.invitation.uid)

        with pytest.raises(ValidationError) as exc:
            await vault.invitations.accept(alice.id, result.invitation.uid)
        assert exc.value.code == 4391

    @pytest.mark.asyncio
    async def test_decline(self, vault, admin, acme, make_user):
        alice = await make_user("alice")
        result = await vault.invitations.create_org_invitation(admin, acme.id, alice.email)

        declined = await vault.invitations.decline(alice.id, result.invitation.uid)

        assert declined.state == INVITE_DECLINED
        with pytest.raises(ValidationError) as exc:
            await vault.invitations.accept(alice.id, result.invitation.uid)
        assert exc.value.code == 4392

    @pytest.mark.asyncio
    async def test_revoke(self, vault, admin, acme):
        result = await vault.invitations.create_org_invitation(admin, acme.id, "alice@example.com")

        revoked = await vault.invitations.revoke(admin, result.invitation.uid)

        assert revoked.state == INVITE_REVOKED
        with pytest.raises(ValidationError) as exc:
            await vault.invitations.revoke(admin, result.invitation.uid)
        assert exc.value.code == 4392

    @pytest.mark.asyncio
    async def test_revoke_needs_creator_or_manager(self, vault, admin, acme, make_user):
        alice = await make_user("alice")
        await join_org(vault, admin, acme.id, alice)
        result = await vault.invitations.create_org_invitation(admin, acme.id, "bob@example.com")

        with pytest.raises(AuthorizationError):
            await vault.invitations.revoke(alice.id, result.invitation.uid)


class TestAcceptWithoutSession:
    """Tests for accepting as an unregistered invitee."""

    @pytest.mark.asyncio
    async def test_creates_account(self, vault, admin, acme):
        result = await vault.invitations.create_org_invitation(admin, acme.id, "dave@example.com")

        membership = await vault.invitations.accept(
            None, result.invitation.uid, account=NewAccount("dave", password_hash("dave"), "Dave")
        )

        dave = await vault.users.get_user(admin, "dave")
        assert dave.email == "dave@example.com"
        assert dave.test_password("dave")
        assert membership.user == dave.id

    @pytest.mark.asyncio
    async def test_requires_account_details(self, vault, admin, acme):
        result = await vault.invitations.create_org_invitation(admin, acme.id, "dave@example.com")

        with pytest.raises(AuthorizationError) as exc:
            await vault.invitations.accept(None, result.invitation.uid)
        assert exc.value.code == 4300


class TestStoreInvitation:
    """Tests for store invitations and the key hand-over."""

    @pytest.mark.asyncio
    async def test_key_hand_over(self, vault, admin, acme, store, make_user, publisher, config):
        bob = await make_user("bob")
        await join_org(vault, admin, acme.id, bob)

        result = await vault.invitations.create_store_invitation(
            admin, store.store, password_hash(ADMIN_PASSWORD), bob.email
        )
        message = publisher.messages(config.kafka.topic)[-1]
        assert message["type"] == "invite:store"
        assert message["params"]["store_name"] == "vault"
        assert result.invitation.key is not None

        membership = await vault.invitations.accept(
            bob.id, result.invitation.uid, hexhash=password_hash("bob")
        )
        assert membership.has_store_key()

        bob_data = {}
        bob_session = await vault.stores.open_session(bob.id, store.store, password_hash("bob"), bob_data)
        admin_session = await vault.stores.open_session(
            admin, store.store, password_hash(ADMIN_PASSWORD), {}
        )
        assert bob_session.key == admin_session.key

    @pytest.mark.asyncio
    async def test_invitee_must_be_org_member(self, vault, admin, store, make_user):
        bob = await make_user("bob")

        with pytest.raises(AuthorizationError) as exc:
            await vault.invitations.create_store_invitation(
                admin, store.store, password_hash(ADMIN_PASSWORD), bob.email
            )
        assert exc.value.code == 4051

    @pytest.mark.asyncio
    async def test_unknown_invitee(self, vault, admin, store):
        with pytest.raises(NotFoundError) as exc:
            await vault.invitations.create_store_invitation(
                admin, store.store, password_hash(ADMIN_PASSWORD), "ghost@example.com"
            )
        assert exc.value.code == 4000

    @pytest.mark.asyncio
    async def test_inviter_hash_checked(self, vault, admin, acme, store, make_user):
        bob = await make_user("bob")
        await join_org(vault, admin, acme.id, bob)

        with pytest.raises(AuthorizationError) as exc:
            await vault.invitations.create_store_invitation(
                admin, store.store, password_hash("wrong"), bob.email
            )
        assert exc.value.code == 3001

    @pytest.mark.asyncio
    async def test_accept_requires_password(self, vault, admin, acme, store, make_user):
        bob = await make_user("bob")
        await join_org(vault, admin, acme.id, bob)
        result = await vault.invitations.create_store_invitation(
            admin, store.store, password_hash(ADMIN_PASSWORD), bob.email
        )

        with pytest.raises(AuthorizationError) as exc:
            await vault.invitations.accept(bob.id, result.invitation.uid)
        assert exc.value.code == 4301

        with pytest.raises(AuthorizationError) as exc:
            await vault.invitations.accept(
                None, result.invitation.uid, account=NewAccount("bob2", password_hash("bob"))
            )
        assert exc.value.code == 4301

        still = await vault.invitations.get_invitation(result.invitation.uid)
        assert still.state == INVITE_PENDING
