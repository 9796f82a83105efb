"""
Integration tests for organizations, stores and store sessions.

Tests cover:
- Organization creation across the registry and a data shard
- Alias uniqueness, renames and the fixed system organization
- Store creation, lookup by id and alias, state and deletion
- Opening, reusing and closing store sessions
"""

import pytest

from backend.vault_server.core import ids, states
from backend.vault_server.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from backend.vault_server.orm.objects import StoreObject, StoreTemplateObject
from backend.vault_server.session.token import StoreSession, session_key

from tests.conftest import ADMIN_PASSWORD, join_org, join_store, note, password_hash


class TestOrganizations:
    """Tests for OrgService."""

    @pytest.mark.asyncio
    async def test_create_org_layout(self, vault, router, admin):
        acme = await vault.orgs.create_org(admin, "acme", "Acme Inc")

        assert ids.shard_group(acme.id) == ids.DATA_GROUP
        assert ids.type_of(acme.id) == ids.OTYPE_ORG

        with router.registry() as conn:
            row = conn.execute(
                "SELECT alias FROM registry_orgs WHERE id_org = ?", (ids.to_db(acme.id),)
            ).fetchone()
            link = conn.execute(
                "SELECT alias FROM registry_user_objects WHERE id_user = ? AND id_object = ?",
                (ids.to_db(admin), ids.to_db(acme.id)),
            ).fetchone()
        assert row["alias"] == "acme"
        assert link["alias"] == "acme"

        with router.connect(acme.id) as conn:
            row = conn.execute("SELECT alias, name FROM orgs WHERE id = ?", (ids.local(acme.id),)).fetchone()
        assert tuple(row) == ("acme", "Acme Inc")

        details = await vault.orgs.get_org_details(admin, "acme")
        assert details.creator == admin

    @pytest.mark.asyncio
    async def test_creator_manages_members(self, vault, admin, acme):
        membership = vault.access.membership(acme.id, admin)

        assert membership.roles.is_roles_manager()
        assert membership.roles.is_invitation_manager()

    @pytest.mark.asyncio
    async def test_alias_is_unique(self, vault, admin, acme):
        with pytest.raises(ConflictError) as exc:
            await vault.orgs.create_org(admin, "ACME", "Other")
        assert exc.value.code == 4010

    @pytest.mark.asyncio
    async def test_invalid_alias(self, vault, admin):
        with pytest.raises(ValidationError):
            await vault.orgs.create_org(admin, "-bad", "Bad")

    @pytest.mark.asyncio
    async def test_only_admin_creates(self, vault, make_user):
        alice = await make_user("alice")

        with pytest.raises(AuthorizationError):
            await vault.orgs.create_org(alice.id, "mine")

    @pytest.mark.asyncio
    async def test_rename_updates_registry(self, vault, admin, acme):
        await vault.orgs.update_org(admin, acme.id, alias="acme-corp", name="Acme Corp")

        renamed = await vault.orgs.get_org(admin, "acme-corp")
        assert renamed.id == acme.id
        assert renamed.name == "Acme Corp"
        with pytest.raises(NotFoundError):
            await vault.orgs.get_org(admin, "acme")

    @pytest.mark.asyncio
    async def test_system_org_is_fixed(self, vault, admin):
        with pytest.raises(AuthorizationError):
            await vault.orgs.update_org(admin, "system", alias="other")
        with pytest.raises(AuthorizationError):
            await vault.orgs.block_org(admin, "system", True)
        with pytest.raises(AuthorizationError):
            await vault.orgs.delete_org(admin, "system")

    @pytest.mark.asyncio
    async def test_blocked_org_refuses_members(self, vault, admin, acme, make_user):
        alice = await make_user("alice")
        await join_org(vault, admin, acme.id, alice)

        await vault.orgs.block_org(admin, acme.id, True)

        with pytest.raises(AuthorizationError) as exc:
            await vault.orgs.get_org(alice.id, acme.id)
        assert exc.value.code == 4103

    @pytest.mark.asyncio
    async def test_delete_queues_cascade(self, vault, admin, acme, publisher, config):
        deleted = await vault.orgs.delete_org(admin, acme.id)

        assert deleted.is_deleted() and deleted.is_blocked()
        message = publisher.messages(config.kafka.topic)[-1]
        assert message["type"] == "system:org:delete"
        assert message["params"]["org"] == ids.id_to_string(acme.id)

    @pytest.mark.asyncio
    async def test_non_member_cannot_read(self, vault, acme, make_user):
        alice = await make_user("alice")

        with pytest.raises(AuthorizationError) as exc:
            await vault.orgs.get_org(alice.id, "acme")
        assert exc.value.code == 4051

    @pytest.mark.asyncio
    async def test_list_orgs(self, vault, admin, acme):
        await vault.orgs.create_org(admin, "globex", "Globex")

        results = await vault.orgs.list_orgs(admin, count=True)

        assert {o.alias for o in results} == {"system", "acme", "globex"}
        assert results.max_count == 3


class TestStores:
    """Tests for StoreService administration."""

    @pytest.mark.asyncio
    async def test_create_store(self, vault, router, admin, acme, store):
        assert store.org == acme.id
        assert ids.type_of(store.store) == ids.OTYPE_STORE

        membership = vault.access.membership(store.store, admin)
        assert membership.has_store_key()
        assert membership.roles.is_roles_manager()

        by_alias = await vault.stores.get_store(admin, "vault", org_ref="acme")
        by_id = await vault.stores.get_store(admin, store.store)
        assert by_alias.store == by_id.store == store.store

        listed = await vault.orgs.list_org_stores(admin, acme.id)
        assert [s.alias for s in listed] == ["vault"]

    @pytest.mark.asyncio
    async def test_wrong_hash_is_refused(self, vault, admin, acme):
        with pytest.raises(AuthorizationError) as exc:
            await vault.stores.create_store(admin, acme.id, "docs", password_hash("wrong"))
        assert exc.value.code == 3001

    @pytest.mark.asyncio
    async def test_alias_unique_in_org(self, vault, admin, acme, store):
        with pytest.raises(ConflictError):
            await vault.stores.create_store(admin, acme.id, "vault", password_hash(ADMIN_PASSWORD))

        other = await vault.orgs.create_org(admin, "globex")
        again = await vault.stores.create_store(admin, other.id, "vault", password_hash(ADMIN_PASSWORD))
        assert again.store != store.store

    @pytest.mark.asyncio
    async def test_store_by_alias_needs_org(self, vault, admin, store):
        with pytest.raises(ValidationError):
            await vault.stores.get_store(admin, "vault")

    @pytest.mark.asyncio
    async def test_rename(self, vault, admin, store):
        updated = await vault.stores.update_store(admin, store.store, name="Main Vault")

        assert updated.name == "Main Vault"
        assert (await vault.stores.get_store(admin, store.store)).name == "Main Vault"

    @pytest.mark.asyncio
    async def test_block_store(self, vault, admin, store):
        await vault.stores.block_store(admin, store.store, True)

        with pytest.raises(AuthorizationError) as exc:
            await vault.objects.list_objects(admin, store.store)
        assert exc.value.code == 4203

        await vault.stores.block_store(admin, store.store, False)
        assert len(await vault.objects.list_objects(admin, store.store)) == 0

    @pytest.mark.asyncio
    async def test_delete_store(self, vault, admin, acme, store, publisher, config):
        deleted = await vault.stores.delete_store(admin, store.store)

        assert deleted.has_all_states(states.STATE_DELETE | states.STATE_BLOCKED)
        message = publisher.messages(config.kafka.topic)[-1]
        assert message["type"] == "org:store:delete"
        assert message["params"] == {
            "org": ids.id_to_string(acme.id),
            "store": ids.id_to_string(store.store),
        }


class TestStoreSessions:
    """Tests for opening, using and closing store sessions."""

    @pytest.mark.asyncio
    async def test_open_installs_token(self, vault, admin, store):
        data = {}

        session = await vault.stores.open_session(
            admin, store.store, password_hash(ADMIN_PASSWORD), data
        )

        assert data[session_key(store.store)] == session.export()
        assert len(session.key) == 32

    @pytest.mark.asyncio
    async def test_wrong_hash(self, vault, admin, store):
        data = {}
        with pytest.raises(AuthorizationError) as exc:
            await vault.stores.open_session(admin, store.store, password_hash("nope"), data)
        assert exc.value.code == 3001
        assert data == {}

    @pytest.mark.asyncio
    async def test_use_extends_and_close_forgets(self, vault, admin, store):
        data = {}
        await vault.stores.open_session(admin, store.store, password_hash(ADMIN_PASSWORD), data)

        session = vault.stores.use_session(store.store, data)
        assert session.store == store.store

        assert await vault.stores.close_session(admin, store.store, data) is True
        assert await vault.stores.close_session(admin, store.store, data) is False
        with pytest.raises(AuthorizationError) as exc:
            vault.stores.use_session(store.store, data)
        assert exc.value.code == 4202

    @pytest.mark.asyncio
    async def test_expired_token_is_dropped(self, vault, admin, store):
        data = {}
        session = await vault.stores.open_session(
            admin, store.store, password_hash(ADMIN_PASSWORD), data
        )
        expired = StoreSession(store.store, session.key, 5, expiration=1)
        data[session_key(store.store)] = expired.export()

        with pytest.raises(AuthorizationError) as exc:
            vault.stores.use_session(store.store, data)
        assert exc.value.code == 4202
        assert session_key(store.store) not in data

    @pytest.mark.asyncio
    async def test_malformed_token_is_dropped(self, vault, store):
        data = {session_key(store.store): "garbage"}

        with pytest.raises(AuthorizationError):
            vault.stores.use_session(store.store, data)
        assert data == {}

    @pytest.mark.asyncio
    async def test_member_token_opens_objects(
        self, vault, router, admin, acme, store, note_template, make_user, config
    ):
        """A member's session token, re-imported later, opens stored objects."""
        admin_data = {}
        await vault.stores.open_session(admin, store.store, password_hash(ADMIN_PASSWORD), admin_data)
        obj = await vault.objects.create_object(
            admin, store.store, note("Launch codes", text="0000"), admin_data
        )

        bob = await make_user("bob")
        await join_org(vault, admin, acme.id, bob)
        await join_store(vault, store.store, bob, roles=[0x0301FFFF, 0x0303FFFF])

        bob_data = {}
        await vault.stores.open_session(bob.id, store.store, password_hash("bob"), bob_data)

        imported = StoreSession.import_token(
            bob_data[session_key(store.store)], config.session.store_session_extend_minutes
        )
        stored = StoreObject()
        with router.connect(store.store) as conn:
            assert stored.by_key(conn, ids.local(store.store), obj.id)
        body = StoreTemplateObject.decrypt(imported.key, stored.object)
        assert body.title == "Launch codes"
        assert body.values["text"] == "0000"
