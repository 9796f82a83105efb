"""
System templates: named, versioned JSON models for store objects.

A template row is immutable; publishing a change means inserting the next
version under the same name.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any

from ..core import ids
from ..core.values import MapWrapper
from ..errors import ImmutableEntityError, StorageError, ValidationError
from ..query.conditions import QueryConditions
from ..query.results import QueryResults
from .base import AuditedEntity, fetch_one, fetch_value, list_rows, run, value_mapper

logger = logging.getLogger(__name__)

_COLUMNS = ("id", "name", "version", "title", "description", "model", "creator", "created")

_FIELD_MAP = {
    "id": "id",
    "name": "name",
    "version": "version",
    "title": "title",
    "created": "created",
}


def map_template_field(name: str) -> str:
    return _FIELD_MAP.get(name, "")


map_template_value = value_mapper(int_columns=("id", "version"))


class Template(AuditedEntity):
    """One version of a named template."""

    def __init__(self) -> None:
        super().__init__()
        self._reset()

    def _reset(self) -> None:
        self._id: int | None = None
        self._name = ""
        self._version = 0
        self._title = ""
        self._description = ""
        self._model = ""
        self._reset_audit()
        self._stored = False
        self._dirty = False

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Template:
        t = cls()
        t._assign(row)
        return t

    def _assign(self, row: sqlite3.Row) -> None:
        self._id = row["id"]
        self._name = row["name"]
        self._version = row["version"]
        self._title = row["title"]
        self._description = row["description"] or ""
        self._model = row["model"]
        self._load_audit(row)
        self._stored = True

    @property
    def id(self) -> int | None:
        return self._id

    @property
    def name(self) -> str:
        return self._name

    @property
    def version(self) -> int:
        return self._version

    @property
    def title(self) -> str:
        return self._title

    @property
    def description(self) -> str:
        return self._description

    @property
    def model(self) -> str:
        return self._model

    def is_valid(self) -> bool:
        return bool(self._name and self._title and self._version >= 1 and self._model)

    def _load(self, conn: sqlite3.Connection, sql: str, args: tuple[Any, ...]) -> bool:
        self._reset()
        row = fetch_one(conn, f"SELECT {', '.join(_COLUMNS)} FROM templates {sql}", args)
        if row is None:
            return False
        self._assign(row)
        return True

    def by_id(self, conn: sqlite3.Connection, local_id: int) -> bool:
        return self._load(conn, "WHERE id = ?", (local_id,))

    def by_name_latest(self, conn: sqlite3.Connection, name: str) -> bool:
        return self._load(
            conn, "WHERE name = ? ORDER BY version DESC LIMIT 1", (name.strip().lower(),)
        )

    def by_name_version(self, conn: sqlite3.Connection, name: str, version: int) -> bool:
        if version == 0:
            return self.by_name_latest(conn, name)
        return self._load(conn, "WHERE name = ? AND version = ?", (name.strip().lower(), version))

    def _set(self, attr: str, value: Any) -> Any:
        if self._stored:
            raise ImmutableEntityError("Template is immutable")
        current = getattr(self, attr)
        setattr(self, attr, value)
        self._touch()
        return current

    def set_name(self, name: str) -> str:
        return self._set("_name", name.strip().lower())

    def set_version(self, version: int) -> int:
        if version < 1:
            raise ValidationError("Template version must be >= 1", "version")
        return self._set("_version", version)

    def set_title(self, title: str) -> str:
        return self._set("_title", title.strip())

    def set_description(self, description: str) -> str:
        return self._set("_description", description.strip())

    def set_model(self, model: str | dict[str, Any]) -> str:
        """Set the JSON model (a dict or its JSON text).

        Raises:
            ValidationError: If the text is not a JSON object
        """
        if isinstance(model, dict):
            text = json.dumps(model, separators=(",", ":"), sort_keys=True)
        else:
            try:
                decoded = json.loads(model)
            except json.JSONDecodeError as e:
                raise ValidationError(f"Invalid template model ({e.msg})", "model") from e
            if not isinstance(decoded, dict):
                raise ValidationError("Template model must be a JSON object", "model")
            text = model
        return self._set("_model", text)

    def export_model(self) -> dict[str, Any]:
        """Model with the canonical ``__title`` field guaranteed present."""
        wrapped = MapWrapper()
        wrapped.import_json(self._model or "{}")
        if not wrapped.has("fields.__title"):
            wrapped.set("fields.__title.label", "Title")
            wrapped.set("fields.__title.type", "string")
            wrapped.set("fields.__title.settings.max-length", 40)
            wrapped.set("fields.__title.settings.required", True)
            wrapped.set("fields.__title.checks.allow-empty", False)
            wrapped.set("fields.__title.transforms.trim", True)
            wrapped.set("fields.__title.transforms.single-space-between", True)
        return wrapped.to_dict()

    def flush(self, conn: sqlite3.Connection, force: bool = False) -> bool:
        if not force and not self._dirty:
            return False
        if self._stored:
            raise ImmutableEntityError("Template is immutable")
        if self._creator is None:
            raise ValidationError("Creation user not set", "creator")
        if not self.is_valid():
            raise ValidationError("Invalid template", "template")
        cursor = run(
            conn,
            "INSERT INTO templates (name, version, title, description, model, creator) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                self._name,
                self._version,
                self._title,
                self._description,
                self._model,
                ids.to_db(self._creator),
            ),
        )
        if cursor.lastrowid is None:
            raise StorageError("No row id returned for new template")
        self._id = cursor.lastrowid
        self._mark_stored()
        logger.info("Created template", extra={"template": self._name, "version": self._version})
        return True


def latest_version(conn: sqlite3.Connection, name: str) -> int:
    """Highest stored version of ``name`` (0 when none)."""
    return int(
        fetch_value(conn, "SELECT MAX(version) FROM templates WHERE name = ?", (name.strip().lower(),))
        or 0
    )


def delete_template(conn: sqlite3.Connection, name: str, version: int | None = None) -> int:
    """Delete one version of a template, or every version when ``version`` is None."""
    if version is None:
        cursor = run(conn, "DELETE FROM templates WHERE name = ?", (name.strip().lower(),))
    else:
        cursor = run(
            conn,
            "DELETE FROM templates WHERE name = ? AND version = ?",
            (name.strip().lower(), version),
        )
    return cursor.rowcount


def list_templates(
    conn: sqlite3.Connection,
    conditions: QueryConditions | None = None,
    count: bool = False,
) -> QueryResults[Template]:
    return list_rows(
        conn,
        table="templates",
        columns=_COLUMNS,
        where=[],
        args=[],
        conditions=conditions,
        default_sort="name",
        build=Template.from_row,
        count=count,
    )
