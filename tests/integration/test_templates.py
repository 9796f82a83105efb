"""
Integration tests for the template catalog and object template registries.
"""

import pytest

from backend.vault_server.errors import AuthorizationError, NotFoundError, ValidationError

from tests.conftest import join_org


class TestCatalog:
    """Tests for catalog templates."""

    @pytest.mark.asyncio
    async def test_versions(self, vault, admin):
        first = await vault.templates.create_template(admin, "Note", "Note", {"text": {}})
        second = await vault.templates.create_template(admin, "note", "Note v2", '{"text": {}, "tags": {}}')

        assert (first.name, first.version) == ("note", 1)
        assert second.version == 2
        assert (await vault.templates.get_template(admin, "note")).version == 2
        assert (await vault.templates.get_template(admin, "note", 1)).title == "Note"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name,model", [("-bad", {}), ("note", "[1, 2]"), ("note", "{oops")])
    async def test_invalid(self, vault, admin, name, model):
        with pytest.raises(ValidationError):
            await vault.templates.create_template(admin, name, "T", model)

    @pytest.mark.asyncio
    async def test_admin_only(self, vault, make_user):
        alice = await make_user("alice")

        with pytest.raises(AuthorizationError):
            await vault.templates.create_template(alice.id, "note", "Note", {})

    @pytest.mark.asyncio
    async def test_delete(self, vault, admin):
        await vault.templates.create_template(admin, "note", "Note", {})
        await vault.templates.create_template(admin, "note", "Note", {})

        assert await vault.templates.delete_template(admin, "note", 1) == 1
        assert await vault.templates.delete_template(admin, "note") == 1
        with pytest.raises(NotFoundError) as exc:
            await vault.templates.get_template(admin, "note")
        assert exc.value.code == 4400

    @pytest.mark.asyncio
    async def test_list(self, vault, admin):
        for name in ("note", "card", "login"):
            await vault.templates.create_template(admin, name, name.title(), {})

        results = await vault.templates.list_templates(admin)

        assert [t.name for t in results] == ["card", "login", "note"]


class TestObjectTemplates:
    """Tests for org and store template registries."""

    @pytest.mark.asyncio
    async def test_store_picks_from_org(self, vault, admin, acme, store):
        await vault.templates.create_template(admin, "note", "Note", {})

        with pytest.raises(NotFoundError):
            await vault.templates.attach_store_template(admin, store.store, "note")

        await vault.templates.attach_org_template(admin, acme.id, "note")
        attached = await vault.templates.attach_store_template(admin, store.store, "note")

        assert attached.template == "note"
        assert attached.title == "Note"
        assert [t.template for t in await vault.templates.list_store_templates(admin, store.store)] == ["note"]
        assert (await vault.templates.get_store_template(admin, store.store, "note")).version == 1

    @pytest.mark.asyncio
    async def test_attach_is_idempotent(self, vault, admin, acme):
        await vault.templates.create_template(admin, "note", "Note", {})

        await vault.templates.attach_org_template(admin, acme.id, "note")
        await vault.templates.attach_org_template(admin, acme.id, "note")

        assert len(await vault.templates.list_org_templates(admin, acme.id)) == 1

    @pytest.mark.asyncio
    async def test_detach(self, vault, admin, acme, store, note_template):
        assert await vault.templates.detach_store_template(admin, store.store, "note") is True
        assert await vault.templates.detach_org_template(admin, acme.id, "note") is True

        with pytest.raises(NotFoundError):
            await vault.templates.detach_org_template(admin, acme.id, "note")

    @pytest.mark.asyncio
    async def test_member_without_template_role(self, vault, admin, acme, make_user):
        await vault.templates.create_template(admin, "note", "Note", {})
        alice = await make_user("alice")
        await join_org(vault, admin, acme.id, alice)

        with pytest.raises(AuthorizationError):
            await vault.templates.attach_org_template(alice.id, acme.id, "note")
