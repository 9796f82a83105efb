"""
Canonical organization and store rows.

Organizations live on a data shard picked at creation; a store lives on
its own shard and references its parent org by global id. The org only
reaches its stores through ``registry_org_stores`` on the org's shard.
"""

from __future__ import annotations

import logging
import sqlite3

from ..core import ids
from ..errors import StorageError, ValidationError
from .base import AuditedEntity, fetch_one, run

logger = logging.getLogger(__name__)


class _AliasedEntity(AuditedEntity):
    """Shared alias / name handling for orgs and stores."""

    TABLE = ""

    def __init__(self) -> None:
        super().__init__()
        self._reset()

    def _reset(self) -> None:
        self._id: int | None = None
        self._alias = ""
        self._name = ""
        self._update_registry = False
        self._reset_audit()
        self._stored = False
        self._dirty = False

    @property
    def id(self) -> int | None:
        return self._id

    @property
    def alias(self) -> str:
        return self._alias

    @property
    def name(self) -> str:
        return self._name

    @property
    def update_registry(self) -> bool:
        return self._update_registry

    def clear_update_registry(self) -> None:
        self._update_registry = False

    def set_alias(self, alias: str) -> str:
        current = self._alias
        value = alias.strip().lower()
        if value != current:
            self._alias = value
            self._touch()
            self._update_registry = True
        return current

    def set_name(self, name: str) -> str:
        current = self._name
        value = name.strip()
        if value != current:
            self._name = value
            self._touch()
            self._update_registry = True
        return current

    def _assign(self, row: sqlite3.Row) -> None:
        self._id = row["id"]
        self._alias = row["alias"]
        self._name = row["name"] or ""
        self._load_audit(row)
        self._stored = True

    def _insert(self, conn: sqlite3.Connection, columns: list[str], values: list[object]) -> None:
        if self._id is not None:
            columns = ["id", *columns]
            values = [self._id, *values]
        cursor = run(
            conn,
            f"INSERT INTO {self.TABLE} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' * len(columns))})",
            values,
        )
        if self._id is None:
            if cursor.lastrowid is None:
                raise StorageError(f"No row id returned for new {self.TABLE} row")
            self._id = cursor.lastrowid

    def _update(self, conn: sqlite3.Connection) -> None:
        if self._id is None:
            raise ValidationError("ID not set", "id")
        run(
            conn,
            f"UPDATE {self.TABLE} SET alias = ?, name = ?, modifier = ?, "
            "modified = CURRENT_TIMESTAMP WHERE id = ?",
            (self._alias, self._name, ids.to_db(self._modifier), self._id),
        )


class Organization(_AliasedEntity):
    """Organization row."""

    TABLE = "orgs"

    def is_valid(self) -> bool:
        if not self._alias:
            return False
        if self.is_new():
            return self._creator is not None
        return self._id is not None

    def _load(self, conn: sqlite3.Connection, where: str, value: object) -> bool:
        self._reset()
        row = fetch_one(
            conn,
            f"SELECT id, alias, name, creator, created, modifier, modified FROM orgs WHERE {where} = ?",
            (value,),
        )
        if row is None:
            return False
        self._assign(row)
        return True

    def by_id(self, conn: sqlite3.Connection, local_id: int) -> bool:
        return self._load(conn, "id", local_id)

    def by_alias(self, conn: sqlite3.Connection, alias: str) -> bool:
        return self._load(conn, "alias", alias.strip().lower())

    def set_id(self, local_id: int) -> int | None:
        self._require_new("Organization ID")
        current = self._id
        self._id = local_id
        self._touch()
        return current

    def flush(self, conn: sqlite3.Connection, force: bool = False) -> bool:
        if not force and not self._dirty:
            return False
        self._check_audit()
        if not self.is_valid():
            raise ValidationError("Invalid organization", "org")
        if self.is_new():
            self._insert(
                conn, ["alias", "name", "creator"], [self._alias, self._name, ids.to_db(self._creator)]
            )
        else:
            self._update(conn)
        self._mark_stored()
        logger.debug("Flushed organization", extra={"org_local_id": self._id})
        return True


class Store(_AliasedEntity):
    """Store row; ``org`` is the parent organization's global id."""

    TABLE = "stores"

    def _reset(self) -> None:
        super()._reset()
        self._org: int | None = None

    @property
    def org(self) -> int | None:
        return self._org

    def set_org(self, org_id: int) -> int | None:
        self._require_new("Store organization")
        current = self._org
        self._org = org_id
        self._touch()
        return current

    def set_id(self, local_id: int) -> int | None:
        self._require_new("Store ID")
        current = self._id
        self._id = local_id
        self._touch()
        return current

    def is_valid(self) -> bool:
        if not self._alias or self._org is None:
            return False
        if self.is_new():
            return self._creator is not None
        return self._id is not None

    def _load(self, conn: sqlite3.Connection, where: str, args: tuple[object, ...]) -> bool:
        self._reset()
        row = fetch_one(
            conn,
            "SELECT id, id_org, alias, name, creator, created, modifier, modified "
            f"FROM stores WHERE {where}",
            args,
        )
        if row is None:
            return False
        self._assign(row)
        self._org = ids.from_db(row["id_org"])
        return True

    def by_id(self, conn: sqlite3.Connection, local_id: int) -> bool:
        return self._load(conn, "id = ?", (local_id,))

    def by_alias(self, conn: sqlite3.Connection, org_id: int, alias: str) -> bool:
        return self._load(conn, "id_org = ? AND alias = ?", (ids.to_db(org_id), alias.strip().lower()))

    def flush(self, conn: sqlite3.Connection, force: bool = False) -> bool:
        if not force and not self._dirty:
            return False
        self._check_audit()
        if not self.is_valid():
            raise ValidationError("Invalid store", "store")
        if self.is_new():
            self._insert(
                conn,
                ["id_org", "alias", "name", "creator"],
                [ids.to_db(self._org), self._alias, self._name, ids.to_db(self._creator)],
            )
        else:
            self._update(conn)
        self._mark_stored()
        logger.debug("Flushed store", extra={"store_local_id": self._id})
        return True
