"""
Store objects: folders and encrypted JSON documents.

Objects are rows of the ``objects`` table on the store's shard, keyed by
(store local id, object id). Folders carry only a title. JSON objects hold
a templated body sealed under the store key, which is taken from the
caller's open store session.

Invariants:
    - Creating, reading or replacing a JSON body needs an open store session
    - Parents are folders of the same store; ROOT_FOLDER (0) is the top
    - A JSON body names a template version registered with the store
    - A folder never ends up inside itself or one of its descendants
    - Writes are refused on read-only stores (4204) and for read-only
      members (4054)
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any

from ..core import ids, states
from ..core.roles import (
    CATEGORY_STORE,
    FUNCTION_CREATE,
    FUNCTION_DELETE,
    FUNCTION_LIST,
    FUNCTION_READ,
    FUNCTION_UPDATE,
    SUBCATEGORY_OBJECT,
    role,
)
from ..errors import AuthorizationError, NotFoundError, ValidationError
from ..orm.base import transaction
from ..orm.memberships import ObjectUserRegistry, object_template_exists
from ..orm.objects import (
    OBJECT_TYPE_FOLDER,
    OBJECT_TYPE_JSON,
    ROOT_FOLDER,
    StoreObject,
    StoreTemplateObject,
    child_folders,
    delete_folder,
    delete_object,
    list_objects,
)
from ..orm.templates import Template
from ..query.conditions import QueryConditions
from ..query.results import QueryResults
from .base import ServiceBase
from .stores import use_store_session

logger = logging.getLogger(__name__)

STORE_OBJECT_CREATE = role(CATEGORY_STORE | SUBCATEGORY_OBJECT, FUNCTION_CREATE)
STORE_OBJECT_READ = role(CATEGORY_STORE | SUBCATEGORY_OBJECT, FUNCTION_READ)
STORE_OBJECT_LIST = role(CATEGORY_STORE | SUBCATEGORY_OBJECT, FUNCTION_LIST)
STORE_OBJECT_UPDATE = role(CATEGORY_STORE | SUBCATEGORY_OBJECT, FUNCTION_UPDATE)
STORE_OBJECT_DELETE = role(CATEGORY_STORE | SUBCATEGORY_OBJECT, FUNCTION_DELETE)

CODE_MEMBER_READONLY = 4054
CODE_STORE_READONLY = 4204
CODE_OBJECT_NOT_FOUND = 4250
CODE_NOT_A_FOLDER = 4251
CODE_TEMPLATE_NOT_FOUND = 4400


@dataclass
class OpenedObject:
    """A store object and, for JSON objects, its decrypted body."""

    entry: StoreObject
    body: StoreTemplateObject | None = None


def _delete_tree(conn: sqlite3.Connection, store: int, folder: int) -> int:
    removed = 0
    for child in child_folders(conn, store, folder):
        removed += _delete_tree(conn, store, child)
    return removed + delete_folder(conn, store, folder)


def parse_body(body: str | bytes | dict[str, Any]) -> StoreTemplateObject:
    if isinstance(body, dict):
        body = json.dumps(body)
    return StoreTemplateObject.from_json(body)


class ObjectService(ServiceBase):
    """Folders and encrypted documents inside a store."""

    def _check_writable(self, store_id: int, membership: ObjectUserRegistry) -> None:
        if membership.has_any_states(states.STATE_READONLY):
            raise AuthorizationError(
                "User in Read Only Mode",
                user=membership.user,
                object_id=store_id,
                code=CODE_MEMBER_READONLY,
            )
        if self._store_entry(store_id).is_readonly():
            raise AuthorizationError(
                "Store Read Only Mode", object_id=store_id, code=CODE_STORE_READONLY
            )

    def _load(self, store_id: int, object_id: int) -> StoreObject:
        obj = StoreObject()
        with self.router.connect(store_id) as conn:
            found = obj.by_key(conn, ids.local(store_id), object_id)
        if not found:
            raise NotFoundError("Store Object does not exist", code=CODE_OBJECT_NOT_FOUND)
        return obj

    def _load_folder(self, store_id: int, folder_id: int) -> StoreObject:
        folder = self._load(store_id, folder_id)
        if not folder.is_folder():
            raise ValidationError("Store Object is not a Folder", "parent", code=CODE_NOT_A_FOLDER)
        return folder

    def _new_child(self, store_id: int, parent: int) -> StoreObject:
        if parent == ROOT_FOLDER:
            obj = StoreObject()
            obj.set_store(ids.local(store_id))
            return obj
        return StoreObject.child_of(self._load_folder(store_id, parent))

    def _check_template(self, store_id: int, body: StoreTemplateObject) -> None:
        with self.router.connect(store_id) as conn:
            attached = object_template_exists(conn, store_id, body.template)
        if not attached:
            raise NotFoundError("Template not registered with store", code=CODE_TEMPLATE_NOT_FOUND)
        template = Template()
        with self.router.registry() as conn:
            found = template.by_name_version(conn, body.template, body.version)
        if not found:
            raise NotFoundError("Template does not exist", code=CODE_TEMPLATE_NOT_FOUND)

    async def create_folder(
        self, session_user: int, store_id: int, title: str, parent: int = ROOT_FOLDER
    ) -> StoreObject:
        self._session_user(session_user)
        membership = self.access.check(session_user, store_id, [STORE_OBJECT_CREATE])
        self._check_writable(store_id, membership)

        folder = self._new_child(store_id, parent)
        folder.set_type(OBJECT_TYPE_FOLDER)
        folder.set_title(title)
        folder.set_creator(session_user)
        with self.router.connect(store_id) as conn:
            folder.flush(conn)

        logger.info(
            "Created folder",
            extra={"store": ids.id_to_string(store_id), "object": folder.id, "parent": parent},
        )
        return folder

    async def create_object(
        self,
        session_user: int,
        store_id: int,
        body: str | bytes | dict[str, Any],
        session_data: dict[str, Any],
        parent: int = ROOT_FOLDER,
    ) -> StoreObject:
        """Seal a templated JSON body under the store key and store it.

        Raises:
            AuthorizationError: 4202 without an open store session
            ValidationError: On a malformed body or one too big to store
            NotFoundError: 4400 if the body names an unknown template
        """
        self._session_user(session_user)
        membership = self.access.check(session_user, store_id, [STORE_OBJECT_CREATE])
        self._check_writable(store_id, membership)
        session = use_store_session(
            session_data, store_id, self.config.session.store_session_extend_minutes
        )

        parsed = parse_body(body)
        self._check_template(store_id, parsed)

        obj = self._new_child(store_id, parent)
        obj.set_type(OBJECT_TYPE_JSON)
        obj.set_title(parsed.title)
        obj.set_object(parsed.encrypt(session.key))
        obj.set_creator(session_user)
        with self.router.connect(store_id) as conn:
            obj.flush(conn)

        logger.info(
            "Created object",
            extra={
                "store": ids.id_to_string(store_id),
                "object": obj.id,
                "template": parsed.template,
            },
        )
        return obj

    async def get_object(
        self,
        session_user: int,
        store_id: int,
        object_id: int,
        session_data: dict[str, Any] | None = None,
    ) -> OpenedObject:
        """Load an object; JSON bodies are decrypted with the session key."""
        self._session_user(session_user)
        self.access.check(session_user, store_id, [STORE_OBJECT_READ])
        obj = self._load(store_id, object_id)
        if obj.is_folder():
            return OpenedObject(obj)

        session = use_store_session(
            session_data if session_data is not None else {},
            store_id,
            self.config.session.store_session_extend_minutes,
        )
        return OpenedObject(obj, StoreTemplateObject.decrypt(session.key, obj.object))

    async def update_object(
        self,
        session_user: int,
        store_id: int,
        object_id: int,
        *,
        title: str | None = None,
        body: str | bytes | dict[str, Any] | None = None,
        session_data: dict[str, Any] | None = None,
    ) -> StoreObject:
        """Rename a folder, or replace the body (and so the title) of a JSON object."""
        self._session_user(session_user)
        membership = self.access.check(session_user, store_id, [STORE_OBJECT_UPDATE])
        self._check_writable(store_id, membership)
        obj = self._load(store_id, object_id)

        if obj.is_folder():
            if body is not None:
                raise ValidationError("Folders have no body", "object")
            if title is not None:
                obj.set_title(title)
        elif body is not None:
            session = use_store_session(
                session_data if session_data is not None else {},
                store_id,
                self.config.session.store_session_extend_minutes,
            )
            parsed = parse_body(body)
            self._check_template(store_id, parsed)
            obj.set_title(parsed.title)
            obj.set_object(parsed.encrypt(session.key))
        elif title is not None:
            raise ValidationError("JSON object titles come from their body", "title")

        if not obj.is_dirty():
            return obj
        obj.set_modifier(session_user)
        with self.router.connect(store_id) as conn:
            obj.flush(conn)
        logger.info(
            "Updated object", extra={"store": ids.id_to_string(store_id), "object": obj.id}
        )
        return obj

    async def move_object(
        self, session_user: int, store_id: int, object_id: int, parent: int
    ) -> StoreObject:
        """Move an object or folder into another folder of the same store."""
        self._session_user(session_user)
        membership = self.access.check(session_user, store_id, [STORE_OBJECT_UPDATE])
        self._check_writable(store_id, membership)
        obj = self._load(store_id, object_id)

        ancestor = parent
        while ancestor != ROOT_FOLDER:
            if ancestor == object_id:
                raise ValidationError("Folder cannot be moved into itself", "parent")
            ancestor = self._load_folder(store_id, ancestor).parent

        obj.set_parent(parent)
        if not obj.is_dirty():
            return obj
        obj.set_modifier(session_user)
        with self.router.connect(store_id) as conn:
            obj.flush(conn)
        logger.info(
            "Moved object",
            extra={"store": ids.id_to_string(store_id), "object": obj.id, "parent": parent},
        )
        return obj

    async def delete_object(self, session_user: int, store_id: int, object_id: int) -> int:
        """Delete an object, or a folder with everything inside it.

        Returns:
            Number of rows removed
        """
        self._session_user(session_user)
        membership = self.access.check(session_user, store_id, [STORE_OBJECT_DELETE])
        self._check_writable(store_id, membership)
        obj = self._load(store_id, object_id)

        with self.router.connect(store_id) as conn, transaction(conn):
            if obj.is_folder():
                removed = _delete_tree(conn, ids.local(store_id), object_id)
            else:
                removed = int(delete_object(conn, ids.local(store_id), object_id))
        logger.info(
            "Deleted object",
            extra={"store": ids.id_to_string(store_id), "object": object_id, "rows": removed},
        )
        return removed

    async def list_objects(
        self,
        session_user: int,
        store_id: int,
        parent: int | None = None,
        conditions: QueryConditions | None = None,
        count: bool = False,
    ) -> QueryResults[StoreObject]:
        """Objects of a store, or of one folder when ``parent`` is given."""
        self._session_user(session_user)
        self.access.check(session_user, store_id, [STORE_OBJECT_LIST])
        if parent is not None and parent != ROOT_FOLDER:
            self._load_folder(store_id, parent)
        with self.router.connect(store_id) as conn:
            return list_objects(conn, ids.local(store_id), parent, conditions, count)
