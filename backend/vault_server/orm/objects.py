"""
Store objects: a tree of folders and encrypted JSON bodies.

Objects live on the shard of their store and are keyed by
(store local id, object local id). Bodies are sealed with the store data
key before they reach this module; only the size limit is enforced here.

Invariants:
    - type is immutable once stored, parent is not (move)
    - A body (plaintext JSON or sealed) never exceeds MAX_OBJECT_SIZE bytes
    - delete_folder removes direct children, then the folder; callers
      walk nested folders first
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any

from ..core import crypto, ids
from ..errors import CryptoError, StorageError, ValidationError
from ..query.conditions import QueryConditions
from ..query.results import QueryResults
from .base import AuditedEntity, count_rows, fetch_all, fetch_one, list_rows, run, value_mapper

logger = logging.getLogger(__name__)

OBJECT_TYPE_FOLDER = 0
OBJECT_TYPE_JSON = 1

ROOT_FOLDER = 0
MAX_OBJECT_SIZE = 65535

TITLE_FIELD = "__title"

_COLUMNS = (
    "id",
    "id_store",
    "id_parent",
    "type",
    "title",
    "object",
    "creator",
    "created",
    "modifier",
    "modified",
)

_FIELD_MAP = {
    "id": "id",
    "parent": "id_parent",
    "type": "type",
    "title": "title",
    "creator": "creator",
    "created": "created",
    "modified": "modified",
}


def map_object_field(name: str) -> str:
    return _FIELD_MAP.get(name, "")


# Object and parent ids are local to the store
map_object_value = value_mapper(id_columns=("creator",), int_columns=("id", "id_parent", "type"))


class StoreObject(AuditedEntity):
    """Folder or JSON object inside a store."""

    def __init__(self) -> None:
        super().__init__()
        self._reset()

    def _reset(self) -> None:
        self._store: int | None = None
        self._parent = ROOT_FOLDER
        self._id: int | None = None
        self._title = ""
        self._type = OBJECT_TYPE_FOLDER
        self._object: bytes | None = None
        self._reset_audit()
        self._stored = False
        self._dirty = False

    @classmethod
    def child_of(cls, parent: StoreObject) -> StoreObject:
        """New object placed inside ``parent``.

        Raises:
            ValidationError: If the parent is not a folder
        """
        if parent.type != OBJECT_TYPE_FOLDER:
            raise ValidationError("Parent is Not a Folder Object", "parent")
        child = cls()
        child._store = parent.store
        child._parent = parent.id or ROOT_FOLDER
        return child

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> StoreObject:
        o = cls()
        o._assign(row)
        return o

    def _assign(self, row: sqlite3.Row) -> None:
        self._id = row["id"]
        self._store = row["id_store"]
        self._parent = row["id_parent"]
        self._type = row["type"]
        self._title = row["title"]
        self._object = bytes(row["object"]) if row["object"] is not None else None
        self._load_audit(row)
        self._stored = True

    @property
    def store(self) -> int | None:
        return self._store

    @property
    def parent(self) -> int:
        return self._parent

    @property
    def id(self) -> int | None:
        return self._id

    @property
    def title(self) -> str:
        return self._title

    @property
    def type(self) -> int:
        return self._type

    @property
    def object(self) -> bytes | None:
        return self._object

    def is_folder(self) -> bool:
        return self._type == OBJECT_TYPE_FOLDER

    def is_valid(self) -> bool:
        if self._store is None or not self._title:
            return False
        if self._type not in (OBJECT_TYPE_FOLDER, OBJECT_TYPE_JSON):
            return False
        if self._type == OBJECT_TYPE_JSON and not self._object:
            return False
        if self.is_new():
            return self._creator is not None
        return self._id is not None

    def by_id(self, conn: sqlite3.Connection, local_id: int) -> bool:
        self._reset()
        row = fetch_one(conn, f"SELECT {', '.join(_COLUMNS)} FROM objects WHERE id = ?", (local_id,))
        if row is None:
            return False
        self._assign(row)
        return True

    def by_key(self, conn: sqlite3.Connection, store: int, local_id: int) -> bool:
        self._reset()
        row = fetch_one(
            conn,
            f"SELECT {', '.join(_COLUMNS)} FROM objects WHERE id_store = ? AND id = ?",
            (store, local_id),
        )
        if row is None:
            return False
        self._assign(row)
        return True

    def set_store(self, store: int) -> int | None:
        self._require_new("Parent store")
        current = self._store
        self._store = store
        self._touch()
        return current

    def set_parent(self, parent: int) -> int:
        current = self._parent
        if parent != current:
            self._parent = parent
            self._touch()
        return current

    def set_title(self, title: str) -> str:
        current = self._title
        value = title.strip()
        if value != current:
            self._title = value
            self._touch()
        return current

    def set_type(self, otype: int) -> int:
        self._require_new("Object type")
        if otype not in (OBJECT_TYPE_FOLDER, OBJECT_TYPE_JSON):
            raise ValidationError(f"Invalid object type [{otype}]", "type")
        current = self._type
        self._type = otype
        self._touch()
        return current

    def set_object(self, body: bytes | None) -> bytes | None:
        if body is not None and len(body) > MAX_OBJECT_SIZE:
            raise ValidationError("Object too big", "object")
        current = self._object
        self._object = body
        self._touch()
        return current

    def flush(self, conn: sqlite3.Connection, force: bool = False) -> bool:
        if not force and not self._dirty:
            return False
        self._check_audit()
        if not self.is_valid():
            raise ValidationError("Invalid store object", "object")

        if self.is_new():
            cursor = run(
                conn,
                "INSERT INTO objects (id_store, id_parent, type, title, object, creator) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    self._store,
                    self._parent,
                    self._type,
                    self._title,
                    self._object,
                    ids.to_db(self._creator),
                ),
            )
            if cursor.lastrowid is None:
                raise StorageError("No row id returned for new object")
            self._id = cursor.lastrowid
        else:
            run(
                conn,
                "UPDATE objects SET id_parent = ?, title = ?, object = ?, modifier = ?, "
                "modified = CURRENT_TIMESTAMP WHERE id_store = ? AND id = ?",
                (
                    self._parent,
                    self._title,
                    self._object,
                    ids.to_db(self._modifier),
                    self._store,
                    self._id,
                ),
            )

        self._mark_stored()
        return True


def delete_folder(conn: sqlite3.Connection, store: int, folder: int) -> int:
    """Delete the direct children of ``folder`` and then the folder itself.

    Returns:
        Number of rows removed
    """
    removed = run(
        conn, "DELETE FROM objects WHERE id_store = ? AND id_parent = ?", (store, folder)
    ).rowcount
    removed += run(
        conn, "DELETE FROM objects WHERE id_store = ? AND id = ?", (store, folder)
    ).rowcount
    logger.info(
        "Deleted folder",
        extra={"store_local_id": store, "folder": folder, "rows": removed},
    )
    return removed


def delete_object(conn: sqlite3.Connection, store: int, local_id: int) -> bool:
    return run(conn, "DELETE FROM objects WHERE id_store = ? AND id = ?", (store, local_id)).rowcount > 0


def child_folders(conn: sqlite3.Connection, store: int, folder: int) -> list[int]:
    """Ids of the folders directly inside ``folder``."""
    rows = fetch_all(
        conn,
        "SELECT id FROM objects WHERE id_store = ? AND id_parent = ? AND type = ?",
        (store, folder, OBJECT_TYPE_FOLDER),
    )
    return [row["id"] for row in rows]


def count_objects(
    conn: sqlite3.Connection,
    store: int,
    parent: int | None = None,
    conditions: QueryConditions | None = None,
) -> int:
    where, args = _scope(store, parent)
    return count_rows(conn, "objects", where, args, conditions)


def list_objects(
    conn: sqlite3.Connection,
    store: int,
    parent: int | None = None,
    conditions: QueryConditions | None = None,
    count: bool = False,
) -> QueryResults[StoreObject]:
    """List the objects of a store, optionally restricted to one folder."""
    where, args = _scope(store, parent)
    return list_rows(
        conn,
        table="objects",
        columns=_COLUMNS,
        where=where,
        args=args,
        conditions=conditions,
        default_sort="id",
        build=StoreObject.from_row,
        count=count,
    )


def _scope(store: int, parent: int | None) -> tuple[list[str], list[Any]]:
    where = ["id_store = ?"]
    args: list[Any] = [store]
    if parent is not None:
        where.append("id_parent = ?")
        args.append(parent)
    return where, args


class StoreTemplateObject:
    """Templated JSON body: ``{"template": {"name", "version"}, "values": {...}}``.

    ``values`` must carry a non-empty ``__title`` string; it becomes the
    object title.
    """

    def __init__(
        self,
        template: str = "",
        version: int = 0,
        values: dict[str, Any] | None = None,
    ) -> None:
        self.template = template.strip().lower()
        self.version = version
        self.values: dict[str, Any] = values if values is not None else {}
        self.title = ""
        if values is not None and isinstance(values.get(TITLE_FIELD), str):
            self.title = values[TITLE_FIELD].strip()

    def is_valid(self) -> bool:
        return bool(self.template) and self.version > 0 and bool(self.title)

    def to_json(self) -> str:
        return json.dumps(
            {"template": {"name": self.template, "version": self.version}, "values": self.values},
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, text: str | bytes) -> StoreTemplateObject:
        """Parse a body.

        Raises:
            ValidationError: On malformed JSON or missing header fields
        """
        if not text:
            raise ValidationError("Nothing to Unmarshal", "object")
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid JSON object ({e.msg})", "object") from e
        if not isinstance(data, dict):
            raise ValidationError("JSON object expected", "object")

        template = data.get("template")
        if not isinstance(template, dict):
            raise ValidationError("JSON Missing 'template' structure", "object")
        name = template.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("JSON 'template.name' is not an non-empty string", "object")
        version = template.get("version")
        if isinstance(version, bool) or not isinstance(version, (int, float)) or int(version) < 1:
            raise ValidationError("JSON 'template.version' is not valid", "object")

        values = data.get("values")
        if not isinstance(values, dict):
            raise ValidationError("JSON Missing 'values' structure", "object")
        title = values.get(TITLE_FIELD)
        if not isinstance(title, str) or not title.strip():
            raise ValidationError(f"JSON '{TITLE_FIELD}' is not an non-empty string", "object")

        return cls(name, int(version), values)

    def encrypt(self, key: bytes) -> bytes:
        """Seal the JSON body under the store key.

        Raises:
            ValidationError: If the plaintext or ciphertext exceeds the size limit
        """
        plaintext = self.to_json().encode("utf-8")
        if len(plaintext) > MAX_OBJECT_SIZE:
            raise ValidationError("Object too big", "object")
        sealed = crypto.seal(key, plaintext)
        if len(sealed) > MAX_OBJECT_SIZE:
            raise ValidationError("Encrypted Object too big", "object")
        return sealed

    @classmethod
    def decrypt(cls, key: bytes, sealed: bytes | None) -> StoreTemplateObject:
        """Open a sealed body.

        Raises:
            CryptoError: If the key is missing or does not open the body
        """
        if not key:
            raise CryptoError("Missing Decryption Key")
        if not sealed:
            raise CryptoError("Missing Encrypted Bytes")
        if len(sealed) > MAX_OBJECT_SIZE:
            raise ValidationError("Encrypted Object too big", "object")
        return cls.from_json(crypto.open_sealed(key, sealed).decode("utf-8"))
