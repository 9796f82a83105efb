"""
Integration tests for filtered listings over real shards.

Tests cover:
- Literal ``%`` inside CONTAINS patterns
- ``:hex`` global ids in EQ and IN filters on users and org stores
- Object filters on parent folder, title and creator
"""

import pytest

from backend.vault_server.core import ids
from backend.vault_server.orm.memberships import map_org_store_field, map_org_store_value
from backend.vault_server.orm.objects import map_object_field, map_object_value
from backend.vault_server.orm.registries import map_user_field, map_user_value
from backend.vault_server.query.conditions import QueryConditions
from backend.vault_server.query.filters import Filter, fn, ident

from tests.conftest import ADMIN_PASSWORD, password_hash


def users_where(f):
    return QueryConditions.build(
        node=Filter(f), sort=[("username", False)], map_field=map_user_field, map_value=map_user_value
    )


def stores_where(f):
    return QueryConditions.build(
        node=Filter(f), map_field=map_org_store_field, map_value=map_org_store_value
    )


def objects_where(f):
    return QueryConditions.build(
        node=Filter(f), sort=[("title", False)], map_field=map_object_field, map_value=map_object_value
    )


class TestUserListing:
    """Tests for filtered list_users()."""

    @pytest.mark.asyncio
    async def test_contains_literal_percent(self, vault, admin, make_user):
        await make_user("bob", "100% Bob")
        await make_user("carl", "1000 Bob")
        await make_user("dora", "100 Bob")

        results = await vault.users.list_users(
            admin, users_where(fn("CONTAINS", ident("name"), "*100%*")), count=True
        )

        assert [u.username for u in results] == ["bob"]
        assert results.max_count == 1

    @pytest.mark.asyncio
    async def test_contains_still_wildcards(self, vault, admin, make_user):
        await make_user("bob", "100% Bob")
        await make_user("carl", "1000 Bob")

        results = await vault.users.list_users(admin, users_where(fn("CONTAINS", ident("name"), "*Bob")))

        assert [u.username for u in results] == ["bob", "carl"]

    @pytest.mark.asyncio
    async def test_eq_global_id(self, vault, admin, make_user):
        alice = await make_user("alice")
        await make_user("bob")

        results = await vault.users.list_users(
            admin, users_where(fn("EQ", ident("id"), ids.id_to_string(alice.id)))
        )

        assert [u.id for u in results] == [alice.id]

    @pytest.mark.asyncio
    async def test_in_global_ids(self, vault, admin, make_user):
        alice = await make_user("alice")
        bob = await make_user("bob")
        await make_user("carl")

        wanted = [ids.id_to_string(alice.id), ids.id_to_string(bob.id)]
        results = await vault.users.list_users(admin, users_where(fn("IN", ident("id"), wanted)))

        assert [u.username for u in results] == ["alice", "bob"]


class TestOrgStoreListing:
    """Tests for filtered list_org_stores()."""

    @pytest.mark.asyncio
    async def test_eq_store_id(self, vault, admin, acme, store):
        await vault.stores.create_store(
            admin, acme.id, "archive", password_hash(ADMIN_PASSWORD), "Archive"
        )

        results = await vault.orgs.list_org_stores(
            admin, acme.id, stores_where(fn("EQ", ident("id"), ids.id_to_string(store.store)))
        )

        assert [s.store for s in results] == [store.store]

    @pytest.mark.asyncio
    async def test_state_as_string(self, vault, admin, acme, store):
        results = await vault.orgs.list_org_stores(
            admin, acme.id, stores_where(fn("NEQ", ident("state"), str(store.state)))
        )

        assert len(results) == 0


class TestObjectListing:
    """Tests for filtered objects.list_objects()."""

    @pytest.mark.asyncio
    async def test_parent_filter(self, vault, admin, store):
        docs = await vault.objects.create_folder(admin, store.store, "Docs")
        inner = await vault.objects.create_folder(admin, store.store, "Inner", parent=docs.id)
        await vault.objects.create_folder(admin, store.store, "Other")

        results = await vault.objects.list_objects(
            admin, store.store, conditions=objects_where(fn("EQ", ident("parent"), str(docs.id)))
        )

        assert [o.id for o in results] == [inner.id]

    @pytest.mark.asyncio
    async def test_title_with_percent(self, vault, admin, store):
        await vault.objects.create_folder(admin, store.store, "50% off")
        await vault.objects.create_folder(admin, store.store, "500 off")

        results = await vault.objects.list_objects(
            admin, store.store, conditions=objects_where(fn("CONTAINS", ident("title"), "50%*"))
        )

        assert [o.title for o in results] == ["50% off"]

    @pytest.mark.asyncio
    async def test_creator_global_id(self, vault, admin, store, make_user):
        await vault.objects.create_folder(admin, store.store, "A")
        await vault.objects.create_folder(admin, store.store, "B")
        alice = await make_user("alice")

        by_admin = fn("EQ", ident("creator"), ids.id_to_string(admin))
        by_alice = fn("EQ", ident("creator"), ids.id_to_string(alice.id))

        mine = await vault.objects.list_objects(admin, store.store, conditions=objects_where(by_admin))
        theirs = await vault.objects.list_objects(admin, store.store, conditions=objects_where(by_alice))

        assert [o.title for o in mine] == ["A", "B"]
        assert len(theirs) == 0
