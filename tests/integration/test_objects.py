"""
Integration tests for folders and encrypted store objects.

Tests cover:
- Folder trees, moves and recursive deletion
- Sealing and opening JSON bodies through a store session
- Template checks on bodies
- Read-only stores and read-only members
"""

import pytest

from backend.vault_server.core import ids, states
from backend.vault_server.errors import AuthorizationError, NotFoundError, ValidationError
from backend.vault_server.orm.objects import ROOT_FOLDER, StoreObject

from tests.conftest import ADMIN_PASSWORD, join_org, join_store, note, password_hash


@pytest.fixture
async def session_data(vault, admin, store):
    """Administrator session map with the store open."""
    data = {}
    await vault.stores.open_session(admin, store.store, password_hash(ADMIN_PASSWORD), data)
    return data


class TestFolders:
    """Tests for folder handling."""

    @pytest.mark.asyncio
    async def test_nested_folders(self, vault, admin, store):
        docs = await vault.objects.create_folder(admin, store.store, "Docs")
        inner = await vault.objects.create_folder(admin, store.store, "Inner", parent=docs.id)

        assert docs.parent == ROOT_FOLDER
        assert inner.parent == docs.id

        top = await vault.objects.list_objects(admin, store.store, parent=ROOT_FOLDER)
        assert [o.title for o in top] == ["Docs"]
        children = await vault.objects.list_objects(admin, store.store, parent=docs.id)
        assert [o.id for o in children] == [inner.id]

    @pytest.mark.asyncio
    async def test_unknown_parent(self, vault, admin, store):
        with pytest.raises(NotFoundError) as exc:
            await vault.objects.create_folder(admin, store.store, "Lost", parent=999)
        assert exc.value.code == 4250

    @pytest.mark.asyncio
    async def test_rename_folder(self, vault, admin, store):
        docs = await vault.objects.create_folder(admin, store.store, "Docs")

        renamed = await vault.objects.update_object(admin, store.store, docs.id, title="Papers")

        assert renamed.title == "Papers"
        assert renamed.modifier == admin

    @pytest.mark.asyncio
    async def test_move_cycle_refused(self, vault, admin, store):
        a = await vault.objects.create_folder(admin, store.store, "A")
        b = await vault.objects.create_folder(admin, store.store, "B", parent=a.id)

        with pytest.raises(ValidationError):
            await vault.objects.move_object(admin, store.store, a.id, b.id)
        with pytest.raises(ValidationError):
            await vault.objects.move_object(admin, store.store, a.id, a.id)

        moved = await vault.objects.move_object(admin, store.store, b.id, ROOT_FOLDER)
        assert moved.parent == ROOT_FOLDER

    @pytest.mark.asyncio
    async def test_recursive_delete(self, vault, admin, store, note_template, session_data):
        a = await vault.objects.create_folder(admin, store.store, "A")
        b = await vault.objects.create_folder(admin, store.store, "B", parent=a.id)
        await vault.objects.create_object(admin, store.store, note("Deep"), session_data, parent=b.id)
        keep = await vault.objects.create_folder(admin, store.store, "Keep")

        removed = await vault.objects.delete_object(admin, store.store, a.id)

        assert removed == 3
        remaining = await vault.objects.list_objects(admin, store.store)
        assert [o.id for o in remaining] == [keep.id]


class TestJsonObjects:
    """Tests for sealed JSON objects."""

    @pytest.mark.asyncio
    async def test_sealed_at_rest(self, vault, router, admin, store, note_template, session_data):
        obj = await vault.objects.create_object(
            admin, store.store, note("Bank", pin="1234"), session_data
        )

        assert obj.title == "Bank"
        stored = StoreObject()
        with router.connect(store.store) as conn:
            assert stored.by_key(conn, ids.local(store.store), obj.id)
        assert b"1234" not in stored.object

        opened = await vault.objects.get_object(admin, store.store, obj.id, session_data)
        assert opened.body.values["pin"] == "1234"
        assert opened.entry.title == "Bank"

    @pytest.mark.asyncio
    async def test_needs_session(self, vault, admin, store, note_template, session_data):
        with pytest.raises(AuthorizationError) as exc:
            await vault.objects.create_object(admin, store.store, note("Bank"), {})
        assert exc.value.code == 4202

        obj = await vault.objects.create_object(admin, store.store, note("Bank"), session_data)
        with pytest.raises(AuthorizationError) as exc:
            await vault.objects.get_object(admin, store.store, obj.id)
        assert exc.value.code == 4202

    @pytest.mark.asyncio
    async def test_folders_open_without_session(self, vault, admin, store):
        docs = await vault.objects.create_folder(admin, store.store, "Docs")

        opened = await vault.objects.get_object(admin, store.store, docs.id)

        assert opened.body is None

    @pytest.mark.asyncio
    async def test_template_must_be_registered(self, vault, admin, store, note_template, session_data):
        with pytest.raises(NotFoundError) as exc:
            await vault.objects.create_object(
                admin,
                store.store,
                {"template": {"name": "card", "version": 1}, "values": {"__title": "x"}},
                session_data,
            )
        assert exc.value.code == 4400

        with pytest.raises(NotFoundError):
            await vault.objects.create_object(admin, store.store, note("x", version=2), session_data)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            "not json",
            "[]",
            '{"values": {"__title": "x"}}',
            '{"template": {"name": "note", "version": 0}, "values": {"__title": "x"}}',
            '{"template": {"name": "note", "version": 1}, "values": {}}',
        ],
    )
    async def test_malformed_body(self, vault, admin, store, note_template, session_data, body):
        with pytest.raises(ValidationError):
            await vault.objects.create_object(admin, store.store, body, session_data)

    @pytest.mark.asyncio
    async def test_replace_body(self, vault, admin, store, note_template, session_data):
        obj = await vault.objects.create_object(admin, store.store, note("Old"), session_data)

        updated = await vault.objects.update_object(
            admin, store.store, obj.id, body=note("New", text="v2"), session_data=session_data
        )

        assert updated.title == "New"
        opened = await vault.objects.get_object(admin, store.store, obj.id, session_data)
        assert opened.body.values["text"] == "v2"

        with pytest.raises(ValidationError):
            await vault.objects.update_object(admin, store.store, obj.id, title="Renamed")

    @pytest.mark.asyncio
    async def test_move_into_object_refused(self, vault, admin, store, note_template, session_data):
        obj = await vault.objects.create_object(admin, store.store, note("Bank"), session_data)
        docs = await vault.objects.create_folder(admin, store.store, "Docs")

        with pytest.raises(ValidationError) as exc:
            await vault.objects.move_object(admin, store.store, docs.id, obj.id)
        assert exc.value.code == 4251

        moved = await vault.objects.move_object(admin, store.store, obj.id, docs.id)
        assert moved.parent == docs.id


class TestReadOnly:
    """Tests for read-only stores and members."""

    @pytest.mark.asyncio
    async def test_locked_store(self, vault, admin, store):
        await vault.stores.lock_store(admin, store.store, True)

        with pytest.raises(AuthorizationError) as exc:
            await vault.objects.create_folder(admin, store.store, "Docs")
        assert exc.value.code == 4204

        assert len(await vault.objects.list_objects(admin, store.store)) == 0

    @pytest.mark.asyncio
    async def test_readonly_member(self, vault, admin, acme, store, make_user):
        bob = await make_user("bob")
        await join_org(vault, admin, acme.id, bob)
        await join_store(vault, store.store, bob, roles=[0x0306FFFF])
        await vault.objects.create_folder(bob.id, store.store, "Bob's")

        await vault.members.set_member_state(
            admin, store.store, "bob", set_bits=states.STATE_READONLY
        )

        with pytest.raises(AuthorizationError) as exc:
            await vault.objects.create_folder(bob.id, store.store, "More")
        assert exc.value.code == 4054
        assert len(await vault.objects.list_objects(bob.id, store.store)) == 1

    @pytest.mark.asyncio
    async def test_reader_cannot_write(self, vault, admin, acme, store, make_user):
        bob = await make_user("bob")
        await join_org(vault, admin, acme.id, bob)
        await join_store(vault, store.store, bob)

        with pytest.raises(AuthorizationError) as exc:
            await vault.objects.create_folder(bob.id, store.store, "Docs")
        assert exc.value.code == 4003
