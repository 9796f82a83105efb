"""
System templates and the templates made available in orgs and stores.

Templates form a catalog on the registry shard managed from the system
organization. An organization picks templates from the catalog; a store
picks from the templates of its organization. Each pick is a
``registry_object_templates`` row on the object's shard.

Invariants:
    - (name, version) is unique; a new definition is the next version
    - A store can only use templates attached to its organization
    - Template management in an org or a store is governed by org TEMPLATE roles
"""

from __future__ import annotations

import logging
from typing import Any

from ..core import ids
from ..core.roles import (
    CATEGORY_ORG,
    CATEGORY_STORE,
    CATEGORY_SYSTEM,
    FUNCTION_CREATE,
    FUNCTION_DELETE,
    FUNCTION_LIST,
    FUNCTION_READ,
    SUBCATEGORY_OBJECT,
    SUBCATEGORY_TEMPLATE,
    role,
)
from ..core.validators import is_valid_template_name
from ..errors import NotFoundError, ValidationError
from ..orm.memberships import (
    ObjectTemplateRegistry,
    delete_object_template,
    list_object_templates,
)
from ..orm.templates import Template, delete_template, latest_version, list_templates
from ..query.conditions import QueryConditions
from ..query.results import QueryResults
from .base import ServiceBase

logger = logging.getLogger(__name__)

SYSTEM_TEMPLATE_CREATE = role(CATEGORY_SYSTEM | SUBCATEGORY_TEMPLATE, FUNCTION_CREATE)
SYSTEM_TEMPLATE_DELETE = role(CATEGORY_SYSTEM | SUBCATEGORY_TEMPLATE, FUNCTION_DELETE)
ORG_TEMPLATE_CREATE = role(CATEGORY_ORG | SUBCATEGORY_TEMPLATE, FUNCTION_CREATE)
ORG_TEMPLATE_DELETE = role(CATEGORY_ORG | SUBCATEGORY_TEMPLATE, FUNCTION_DELETE)
ORG_TEMPLATE_LIST = role(CATEGORY_ORG | SUBCATEGORY_TEMPLATE, FUNCTION_LIST)
STORE_OBJECT_READ = role(CATEGORY_STORE | SUBCATEGORY_OBJECT, FUNCTION_READ)
STORE_OBJECT_LIST = role(CATEGORY_STORE | SUBCATEGORY_OBJECT, FUNCTION_LIST)

CODE_TEMPLATE_NOT_FOUND = 4400


def _check_name(name: str) -> str:
    name = (name or "").strip().lower()
    if not is_valid_template_name(name):
        raise ValidationError("Value is not a valid template name", "name")
    return name


class TemplateService(ServiceBase):
    """Template catalog and per-object template registries."""

    def _template(self, name: str, version: int = 0) -> Template:
        template = Template()
        with self.router.registry() as conn:
            found = template.by_name_version(conn, _check_name(name), version)
        if not found:
            raise NotFoundError("Template does not exist", code=CODE_TEMPLATE_NOT_FOUND)
        return template

    def _attached(self, object_id: int, name: str) -> ObjectTemplateRegistry:
        entry = ObjectTemplateRegistry()
        with self.router.connect(object_id) as conn:
            found = entry.by_key(conn, object_id, _check_name(name))
        if not found:
            raise NotFoundError("Template not registered with object", code=CODE_TEMPLATE_NOT_FOUND)
        return entry

    # Catalog

    async def create_template(
        self,
        session_user: int,
        name: str,
        title: str,
        model: str | dict[str, Any],
        description: str = "",
    ) -> Template:
        """Publish the next version of ``name`` in the catalog."""
        self._session_user(session_user)
        self.access.check(session_user, ids.SYSTEM_ORGANIZATION, [SYSTEM_TEMPLATE_CREATE])
        name = _check_name(name)

        template = Template()
        template.set_name(name)
        template.set_title(title or "")
        template.set_description(description or "")
        template.set_model(model)
        template.set_creator(session_user)
        with self.router.registry() as conn:
            template.set_version(latest_version(conn, name) + 1)
            template.flush(conn)
        return template

    async def get_template(self, session_user: int, name: str, version: int = 0) -> Template:
        """A catalog entry; ``version`` 0 means the latest."""
        self._session_user(session_user)
        return self._template(name, version)

    async def delete_template(self, session_user: int, name: str, version: int | None = None) -> int:
        """Remove one version, or all versions, of a catalog template.

        Objects already sealed with the template keep their bodies.
        """
        self._session_user(session_user)
        self.access.check(session_user, ids.SYSTEM_ORGANIZATION, [SYSTEM_TEMPLATE_DELETE])
        name = _check_name(name)
        with self.router.registry() as conn:
            removed = delete_template(conn, name, version)
        if not removed:
            raise NotFoundError("Template does not exist", code=CODE_TEMPLATE_NOT_FOUND)
        logger.info("Deleted template", extra={"template": name, "version": version, "rows": removed})
        return removed

    async def list_templates(
        self,
        session_user: int,
        conditions: QueryConditions | None = None,
        count: bool = False,
    ) -> QueryResults[Template]:
        self._session_user(session_user)
        with self.router.registry() as conn:
            return list_templates(conn, conditions, count)

    # Organizations

    async def attach_org_template(
        self, session_user: int, org_ref: str | int | ids.Ref, name: str
    ) -> ObjectTemplateRegistry:
        """Pick the latest catalog version of ``name`` for an organization."""
        self._session_user(session_user)
        org = self._find_org(org_ref)
        self.access.check(session_user, org.id, [ORG_TEMPLATE_CREATE])
        template = self._template(name)

        entry = ObjectTemplateRegistry(org.id, template.name)
        entry.set_title(template.title)
        with self.router.connect(org.id) as conn:
            existing = ObjectTemplateRegistry()
            if existing.by_key(conn, org.id, template.name):
                return existing
            entry.flush(conn)
        logger.info(
            "Template attached",
            extra={"object": ids.id_to_string(org.id), "template": template.name},
        )
        return entry

    async def detach_org_template(
        self, session_user: int, org_ref: str | int | ids.Ref, name: str
    ) -> bool:
        self._session_user(session_user)
        org = self._find_org(org_ref)
        self.access.check(session_user, org.id, [ORG_TEMPLATE_DELETE])
        entry = self._attached(org.id, name)
        with self.router.connect(org.id) as conn:
            removed = delete_object_template(conn, org.id, entry.template)
        logger.info(
            "Template detached",
            extra={"object": ids.id_to_string(org.id), "template": entry.template},
        )
        return removed

    async def list_org_templates(
        self,
        session_user: int,
        org_ref: str | int | ids.Ref,
        conditions: QueryConditions | None = None,
        count: bool = False,
    ) -> QueryResults[ObjectTemplateRegistry]:
        self._session_user(session_user)
        org = self._find_org(org_ref)
        self.access.check(session_user, org.id, [ORG_TEMPLATE_LIST])
        with self.router.connect(org.id) as conn:
            return list_object_templates(conn, org.id, conditions, count)

    # Stores

    async def attach_store_template(
        self, session_user: int, store_id: int, name: str
    ) -> ObjectTemplateRegistry:
        """Make a template of the store's organization usable in the store."""
        self._session_user(session_user)
        entry = self._store_entry(store_id)
        self.access.check_object(store_id)
        self.access.check(session_user, entry.org, [ORG_TEMPLATE_CREATE])
        source = self._attached(entry.org, name)

        registry = ObjectTemplateRegistry(store_id, source.template)
        registry.set_title(source.title)
        with self.router.connect(store_id) as conn:
            existing = ObjectTemplateRegistry()
            if existing.by_key(conn, store_id, source.template):
                return existing
            registry.flush(conn)
        logger.info(
            "Template attached",
            extra={"object": ids.id_to_string(store_id), "template": source.template},
        )
        return registry

    async def detach_store_template(self, session_user: int, store_id: int, name: str) -> bool:
        self._session_user(session_user)
        entry = self._store_entry(store_id)
        self.access.check(session_user, entry.org, [ORG_TEMPLATE_DELETE])
        attached = self._attached(store_id, name)
        with self.router.connect(store_id) as conn:
            removed = delete_object_template(conn, store_id, attached.template)
        logger.info(
            "Template detached",
            extra={"object": ids.id_to_string(store_id), "template": attached.template},
        )
        return removed

    async def list_store_templates(
        self,
        session_user: int,
        store_id: int,
        conditions: QueryConditions | None = None,
        count: bool = False,
    ) -> QueryResults[ObjectTemplateRegistry]:
        self._session_user(session_user)
        self.access.check(session_user, store_id, [STORE_OBJECT_LIST])
        with self.router.connect(store_id) as conn:
            return list_object_templates(conn, store_id, conditions, count)

    async def get_store_template(
        self, session_user: int, store_id: int, name: str, version: int = 0
    ) -> Template:
        """Definition of a template usable in the store."""
        self._session_user(session_user)
        self.access.check(session_user, store_id, [STORE_OBJECT_READ])
        attached = self._attached(store_id, name)
        return self._template(attached.template, version)
