"""
Integration tests for bootstrap and user administration.

Tests cover:
- Idempotent bootstrap of the system administrator and organization
- User creation across data shards and the registry
- Password checks against the validation blob
- Profile updates, uniqueness, states and deletion
- Listing with filters
"""

import pytest

from backend.vault_server.core import ids, states
from backend.vault_server.errors import AuthorizationError, ConflictError, ValidationError
from backend.vault_server.query.conditions import QueryConditions
from backend.vault_server.query.filters import Filter, fn, ident
from backend.vault_server.orm.registries import map_user_field

from tests.conftest import ADMIN_EMAIL, password_hash


class TestBootstrap:
    """Tests for SystemService.bootstrap()."""

    @pytest.mark.asyncio
    async def test_creates_system_entities(self, vault):
        report = await vault.system.bootstrap(ADMIN_EMAIL, password_hash("pw"))

        assert report.admin_created and report.org_created and report.membership_created
        admin = await vault.users.get_user(ids.SYSTEM_ADMINISTRATOR, ids.SYSTEM_ADMINISTRATOR)
        assert admin.username == "admin"
        assert admin.email == ADMIN_EMAIL

        org = await vault.orgs.get_org(ids.SYSTEM_ADMINISTRATOR, "system")
        assert org.id == ids.SYSTEM_ORGANIZATION

        membership = vault.access.membership(ids.SYSTEM_ORGANIZATION, ids.SYSTEM_ADMINISTRATOR)
        assert membership.is_admin_user()
        assert membership.roles.is_roles_manager()

    @pytest.mark.asyncio
    async def test_second_run_changes_nothing(self, vault):
        await vault.system.bootstrap(ADMIN_EMAIL, password_hash("pw"))
        report = await vault.system.bootstrap(ADMIN_EMAIL, password_hash("pw"))

        assert report.changed is False


class TestCreateUser:
    """Tests for user creation."""

    @pytest.mark.asyncio
    async def test_password_check(self, vault, admin):
        """The stored blob opens only with the right password."""
        created = await vault.users.create_user(
            admin, "alice", "alice@example.com", password_hash("secret"), "Alice"
        )

        user = await vault.users.get_profile(created.id)

        assert user.test_password("secret") is True
        assert user.test_password("wrong") is False
        assert created.test_password("secret") is True

    @pytest.mark.asyncio
    async def test_registry_matches_canonical_row(self, vault, router, make_user):
        """Registry and home shard rows agree after creation."""
        alice = await make_user("alice", "Alice")

        assert ids.shard_group(alice.id) == ids.DATA_GROUP
        assert ids.type_of(alice.id) == ids.OTYPE_USER
        with router.connect(alice.id) as conn:
            row = conn.execute(
                "SELECT username, email, name FROM users WHERE id = ?", (ids.local(alice.id),)
            ).fetchone()
        assert tuple(row) == (alice.username, alice.email, alice.name)

        with router.registry() as conn:
            row = conn.execute(
                "SELECT username FROM registry_users WHERE id_user = ?", (ids.to_db(alice.id),)
            ).fetchone()
        assert row["username"] == "alice"

    @pytest.mark.asyncio
    async def test_duplicates(self, vault, admin, make_user):
        await make_user("alice")

        with pytest.raises(ConflictError) as exc:
            await vault.users.create_user(admin, "alice", "other@example.com", password_hash("x"))
        assert exc.value.code == 4010

        with pytest.raises(ConflictError) as exc:
            await vault.users.create_user(admin, "alice2", "ALICE@example.com", password_hash("x"))
        assert exc.value.code == 4011

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "username,email,hexhash",
        [
            ("a", "a@example.com", "0" * 64),
            ("alice", "not-an-email", "0" * 64),
            ("alice", "alice@example.com", "xyz"),
        ],
    )
    async def test_invalid_fields(self, vault, admin, username, email, hexhash):
        with pytest.raises(ValidationError):
            await vault.users.create_user(admin, username, email, hexhash)

    @pytest.mark.asyncio
    async def test_only_admin_creates(self, vault, make_user):
        alice = await make_user("alice")

        with pytest.raises(AuthorizationError):
            await vault.users.create_user(alice.id, "bob", "bob@example.com", password_hash("bob"))


class TestUpdateUser:
    """Tests for profile changes and states."""

    @pytest.mark.asyncio
    async def test_self_update_refreshes_registry(self, vault, make_user):
        alice = await make_user("alice")

        updated = await vault.users.update_user(alice.id, alice.id, name="Alice A.", email="a@example.org")

        assert updated.name == "Alice A."
        assert (await vault.users.get_user(alice.id, "a@example.org")).id == alice.id

    @pytest.mark.asyncio
    async def test_other_user_needs_admin(self, vault, make_user):
        alice = await make_user("alice")
        bob = await make_user("bob")

        with pytest.raises(AuthorizationError):
            await vault.users.update_user(alice.id, bob.id, name="Bobby")

    @pytest.mark.asyncio
    async def test_block_and_unblock(self, vault, admin, make_user):
        alice = await make_user("alice")

        await vault.users.block_user(admin, "alice", True)
        with pytest.raises(AuthorizationError) as exc:
            await vault.users.get_profile(alice.id)
        assert exc.value.code == 4002

        await vault.users.block_user(admin, "alice", False)
        assert (await vault.users.get_profile(alice.id)).username == "alice"

    @pytest.mark.asyncio
    async def test_marker_bits_are_ignored(self, vault, admin, make_user):
        await make_user("alice")

        registry = await vault.users.set_user_state(admin, "alice", set_bits=states.STATE_SYSTEM)

        assert not registry.is_system()

    @pytest.mark.asyncio
    async def test_admin_state_is_fixed(self, vault, admin):
        with pytest.raises(AuthorizationError):
            await vault.users.block_user(admin, ids.SYSTEM_ADMINISTRATOR, True)

    @pytest.mark.asyncio
    async def test_delete_queues_cascade(self, vault, admin, publisher, config, make_user):
        alice = await make_user("alice")

        deleted = await vault.users.delete_user(admin, alice.id)

        assert deleted.is_deleted()
        messages = publisher.messages(config.kafka.topic)
        assert messages[-1]["type"] == "system:user:delete"
        assert messages[-1]["params"]["user"] == ids.id_to_string(alice.id)


class TestListing:
    """Tests for user and user-object listings."""

    @pytest.mark.asyncio
    async def test_filtered_listing(self, vault, admin, make_user):
        for name in ("alice", "albert", "bob"):
            await make_user(name)

        conditions = QueryConditions.build(
            node=Filter(fn("CONTAINS", ident("username"), "al*")),
            sort=[("username", False)],
            map_field=map_user_field,
        )
        results = await vault.users.list_users(admin, conditions, count=True)

        assert [u.username for u in results] == ["albert", "alice"]
        assert results.max_count == 2

    @pytest.mark.asyncio
    async def test_favorites(self, vault, admin):
        acme = await vault.orgs.create_org(admin, "acme", "Acme")

        link = await vault.users.set_favorite(admin, acme.id, True)
        assert link.favorite is True

        results = await vault.users.list_objects(admin, ids.OTYPE_ORG)
        assert {o.alias for o in results} == {"system", "acme"}
