"""
Integration tests for password recovery, reset and change.

Tests cover:
- Recovery request reuse and the emitted actions
- Unknown and blocked accounts
- Redeeming a reset request once
- Expired requests
- Password change re-wrapping store keys
- Redelivery of actions left registered
"""

import pytest

from backend.vault_server.errors import (
    AuthorizationError,
    NotFoundError,
    PublishError,
    ValidationError,
)
from backend.vault_server.orm.actions import STATE_QUEUED, Action

from tests.conftest import ADMIN_PASSWORD, password_hash


def request_rows(router) -> int:
    with router.registry() as conn:
        return conn.execute("SELECT COUNT(*) FROM registry_requests").fetchone()[0]


class TestRecover:
    """Tests for RequestService.recover()."""

    @pytest.mark.asyncio
    async def test_emits_email_action(self, vault, make_user, publisher, config):
        alice = await make_user("alice", "Alice")

        registry = await vault.requests.recover("alice@example.com")

        message = publisher.messages(config.kafka.topic)[-1]
        assert message["guid"] == registry.guid
        assert message["type"] == "email:password:reset"
        assert message["props"]["to"] == "alice@example.com"
        assert message["params"]["name"] == "Alice"
        assert registry.object == alice.id

    @pytest.mark.asyncio
    async def test_repeat_reuses_request(self, vault, router, make_user, publisher, config):
        await make_user("alice")

        first = await vault.requests.recover("alice@example.com")
        second = await vault.requests.recover("ALICE@example.com")

        assert second.guid == first.guid
        assert request_rows(router) == 1

        messages = publisher.messages(config.kafka.topic)
        assert len(messages) == 2
        assert messages[0]["guid"] == first.guid
        assert messages[1]["guid"] != first.guid
        resend = Action()
        with router.registry() as conn:
            assert resend.by_guid(conn, messages[1]["guid"])
        assert resend.parent == first.guid

    @pytest.mark.asyncio
    async def test_failed_publish_is_retried(self, vault, make_user, publisher, config):
        await make_user("alice")
        publisher.inject_failure(RuntimeError("down"))

        with pytest.raises(PublishError):
            await vault.requests.recover("alice@example.com")
        assert publisher.message_count(config.kafka.topic) == 0

        registry = await vault.requests.recover("alice@example.com")

        messages = publisher.messages(config.kafka.topic)
        assert [m["guid"] for m in messages] == [registry.guid]

    @pytest.mark.asyncio
    async def test_unknown_email(self, vault, admin, publisher, config):
        assert await vault.requests.recover("nobody@example.com") is None
        assert publisher.message_count(config.kafka.topic) == 0

    @pytest.mark.asyncio
    async def test_invalid_email(self, vault, admin):
        with pytest.raises(ValidationError):
            await vault.requests.recover("nobody")

    @pytest.mark.asyncio
    async def test_blocked_account(self, vault, admin, make_user):
        await make_user("alice")
        await vault.users.block_user(admin, "alice", True)

        with pytest.raises(AuthorizationError) as exc:
            await vault.requests.recover("alice@example.com")
        assert exc.value.code == 1099

    @pytest.mark.asyncio
    async def test_list_requests(self, vault, admin, make_user):
        await make_user("alice")
        await vault.requests.recover("alice@example.com")

        results = await vault.requests.list_requests(admin, count=True)

        assert results.max_count == 1


class TestReset:
    """Tests for RequestService.reset()."""

    @pytest.mark.asyncio
    async def test_reset_once(self, vault, make_user):
        alice = await make_user("alice")
        registry = await vault.requests.recover("alice@example.com")

        updated = await vault.requests.reset(registry.guid, password_hash("new-secret"))

        assert updated.id == alice.id
        profile = await vault.users.get_profile(alice.id)
        assert profile.test_password("new-secret")
        assert not profile.test_password("alice")
        assert profile.modifier == alice.id

        with pytest.raises(NotFoundError) as exc:
            await vault.requests.reset(registry.guid, password_hash("again"))
        assert exc.value.code == 4500

    @pytest.mark.asyncio
    async def test_new_request_after_reset(self, vault, make_user):
        await make_user("alice")
        first = await vault.requests.recover("alice@example.com")
        await vault.requests.reset(first.guid, password_hash("new-secret"))

        second = await vault.requests.recover("alice@example.com")

        assert second.guid != first.guid

    @pytest.mark.asyncio
    async def test_unknown_guid(self, vault, admin):
        with pytest.raises(NotFoundError) as exc:
            await vault.requests.reset("00000000-0000-0000-0000-000000000000", password_hash("x"))
        assert exc.value.code == 4500

    @pytest.mark.asyncio
    async def test_bad_hash(self, vault, make_user):
        await make_user("alice")
        registry = await vault.requests.recover("alice@example.com")

        with pytest.raises(ValidationError):
            await vault.requests.reset(registry.guid, "not-a-hash")

    @pytest.mark.asyncio
    async def test_expired(self, vault, router, make_user):
        await make_user("alice")
        registry = await vault.requests.recover("alice@example.com")
        with router.registry() as conn:
            conn.execute(
                "UPDATE registry_requests SET expiration = '2000-01-01 00:00:00' WHERE guid = ?",
                (registry.guid,),
            )

        with pytest.raises(ValidationError) as exc:
            await vault.requests.reset(registry.guid, password_hash("new"))
        assert exc.value.code == 4591


class TestChangePassword:
    """Tests for RequestService.change_password()."""

    @pytest.mark.asyncio
    async def test_rewraps_store_keys(self, vault, admin, store):
        old, new = password_hash(ADMIN_PASSWORD), password_hash("rotated")
        before = await vault.stores.open_session(admin, store.store, old, {})

        await vault.requests.change_password(admin, old, new)

        after = await vault.stores.open_session(admin, store.store, new, {})
        assert after.key == before.key
        with pytest.raises(AuthorizationError) as exc:
            await vault.stores.open_session(admin, store.store, old, {})
        assert exc.value.code == 3001

    @pytest.mark.asyncio
    async def test_wrong_old_password(self, vault, make_user):
        alice = await make_user("alice")

        with pytest.raises(AuthorizationError) as exc:
            await vault.requests.change_password(alice.id, password_hash("wrong"), password_hash("new"))
        assert exc.value.code == 3001

        profile = await vault.users.get_profile(alice.id)
        assert profile.test_password("alice")


class TestRedelivery:
    """Tests for SystemService.republish_actions()."""

    @pytest.mark.asyncio
    async def test_registered_action_is_republished(
        self, vault, router, admin, acme, publisher, config
    ):
        publisher.inject_failure(RuntimeError("down"))
        result = await vault.invitations.create_org_invitation(admin, acme.id, "alice@example.com")
        assert result.queued is False

        assert await vault.system.republish_actions() == 1

        messages = publisher.messages(config.kafka.topic)
        assert [m["type"] for m in messages] == ["invite:org"]
        action = Action()
        with router.registry() as conn:
            assert action.by_guid(conn, messages[0]["guid"])
        assert action.state == STATE_QUEUED

        assert await vault.system.republish_actions() == 0

    @pytest.mark.asyncio
    async def test_broker_still_down(self, vault, admin, acme, publisher, config):
        publisher.inject_failure(RuntimeError("down"))
        await vault.invitations.create_org_invitation(admin, acme.id, "alice@example.com")
        await publisher.close()

        assert await vault.system.republish_actions() == 0

        await publisher.connect()
        assert await vault.system.republish_actions() == 1
        assert publisher.message_count(config.kafka.topic) == 1
