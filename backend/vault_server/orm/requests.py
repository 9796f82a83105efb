"""
Requests: persistent proofs of a user intent (e.g. "reset password for X").

The canonical request lives on the shard of the object it refers to and is
immutable once stored. Its lifecycle is tracked on the global
``registry_requests`` row (registry shard):

    ACTIVE (0) -> QUEUED (0xF0) -> CLOSED (0xFF)

A registry row counts as active while ``state < 90``.

Invariants:
    - guid is a UUID v4 assigned at creation and never changes
    - A registry row's id is the global id of its canonical request
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Any

from ..core import ids
from ..core.timeutil import (
    days_from_now,
    is_expired,
    parse_db_timestamp,
    to_db_timestamp,
    to_rfc3339,
    utcnow,
)
from ..core.values import MapWrapper
from ..errors import ImmutableEntityError, StorageError, ValidationError
from ..query.conditions import QueryConditions
from ..query.results import QueryResults
from .base import Entity, fetch_one, fetch_value, list_rows, run, value_mapper

logger = logging.getLogger(__name__)

STATE_ACTIVE = 0x0000
STATE_QUEUED = 0x00F0
STATE_CLOSED = 0x00FF

ACTIVE_STATE_LIMIT = 90

REQUEST_PASSWORD_RESET = "password:reset"


class Request(Entity):
    """Canonical request row."""

    def __init__(self, request_type: str = "", creator: int | None = None) -> None:
        super().__init__()
        self._reset()
        if request_type:
            self._guid = str(uuid.uuid4())
            self._type = request_type
            self._creator = creator
            self._dirty = True

    def _reset(self) -> None:
        self._id: int | None = None
        self._guid = ""
        self._type = ""
        self._object: int | None = None
        self._params = MapWrapper()
        self._props = MapWrapper()
        self._expiration: datetime | None = None
        self._creator: int | None = None
        self._created: datetime | None = None
        self._stored = False
        self._dirty = False

    @property
    def id(self) -> int | None:
        return self._id

    @property
    def guid(self) -> str:
        return self._guid

    @property
    def type(self) -> str:
        return self._type

    @property
    def object(self) -> int | None:
        return self._object

    @property
    def params(self) -> MapWrapper:
        return self._params

    @property
    def props(self) -> MapWrapper:
        return self._props

    @property
    def expiration(self) -> datetime | None:
        return self._expiration

    def expiration_utc(self) -> str | None:
        return to_rfc3339(self._expiration)

    @property
    def creator(self) -> int | None:
        return self._creator

    @property
    def created(self) -> datetime | None:
        return self._created

    def is_valid(self) -> bool:
        ok = bool(self._guid and self._type) and self._creator is not None
        return ok if self.is_new() else ok and self._id is not None

    def is_expired(self) -> bool:
        return is_expired(self._expiration)

    def _load(self, conn: sqlite3.Connection, column: str, value: Any) -> bool:
        self._reset()
        row = fetch_one(
            conn,
            "SELECT id, guid, type, object, params, props, expiration, creator, created "
            f"FROM requests WHERE {column} = ?",
            (value,),
        )
        if row is None:
            return False
        self._id = row["id"]
        self._guid = row["guid"]
        self._type = row["type"]
        self._object = ids.from_db(row["object"])
        self._params.import_json(row["params"])
        self._props.import_json(row["props"])
        self._expiration = parse_db_timestamp(row["expiration"])
        self._creator = ids.from_db(row["creator"])
        self._created = parse_db_timestamp(row["created"])
        self._stored = True
        return True

    def by_id(self, conn: sqlite3.Connection, local_id: int) -> bool:
        return self._load(conn, "id", local_id)

    def by_guid(self, conn: sqlite3.Connection, guid: str) -> bool:
        return self._load(conn, "guid", guid.strip().lower())

    def set_object(self, object_id: int) -> int | None:
        self._require_new("Request")
        current = self._object
        self._object = object_id
        self._touch()
        return current

    def set_expiration(self, expiration: datetime) -> None:
        self._require_new("Request")
        self._expiration = expiration
        self._touch()

    def set_expires_in(self, days: int) -> None:
        self.set_expiration(days_from_now(days))

    def set_param(self, path: str, value: Any) -> None:
        self._require_new("Request")
        self._params.set(path, value)
        self._touch()

    def set_prop(self, path: str, value: Any) -> None:
        self._require_new("Request")
        self._props.set(path, value)
        self._touch()

    def flush(self, conn: sqlite3.Connection, force: bool = False) -> bool:
        if not force and not self._dirty:
            return False
        if self._stored:
            raise ImmutableEntityError("Request is immutable")
        if not self.is_valid():
            raise ValidationError("Invalid request", "request")
        cursor = run(
            conn,
            "INSERT INTO requests (guid, type, object, params, props, expiration, creator) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                self._guid,
                self._type,
                ids.to_db(self._object),
                None if self._params.is_empty() else self._params.export_json(),
                None if self._props.is_empty() else self._props.export_json(),
                to_db_timestamp(self._expiration) if self._expiration else None,
                ids.to_db(self._creator),
            ),
        )
        if cursor.lastrowid is None:
            raise StorageError("No row id returned for new request")
        self._id = cursor.lastrowid
        self._params.mark_clean()
        self._props.mark_clean()
        self._mark_stored()
        return True


_REGISTRY_COLUMNS = (
    "id_request",
    "guid",
    "type",
    "object",
    "expiration",
    "state",
    "creator",
    "created",
    "modified",
)

_REGISTRY_FIELD_MAP = {
    "id": "id_request",
    "guid": "guid",
    "type": "type",
    "object": "object",
    "expiration": "expiration",
    "state": "state",
    "creator": "creator",
    "created": "created",
}


def map_request_field(name: str) -> str:
    return _REGISTRY_FIELD_MAP.get(name, "")


map_request_value = value_mapper(
    id_columns=("id_request", "object", "creator"), int_columns=("state",)
)


class RequestRegistry(Entity):
    """Global request lookup row."""

    def __init__(self) -> None:
        super().__init__()
        self._reset()

    def _reset(self) -> None:
        self._id: int | None = None
        self._guid = ""
        self._type = ""
        self._object: int | None = None
        self._expiration: datetime | None = None
        self._state = STATE_ACTIVE
        self._creator: int | None = None
        self._created: datetime | None = None
        self._stored = False
        self._dirty = False

    @classmethod
    def from_request(cls, request: Request, group: int, shard: int) -> RequestRegistry:
        """Registry row for a stored request placed on (group, shard)."""
        if request.id is None or not request.stored:
            raise ValidationError("Request not stored", "request")
        r = cls()
        r._id = ids.make_id(group, ids.OTYPE_REQUEST, shard, request.id)
        r._guid = request.guid
        r._type = request.type
        r._object = request.object
        r._expiration = request.expiration
        r._creator = request.creator
        r._dirty = True
        return r

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> RequestRegistry:
        r = cls()
        r._assign(row)
        return r

    def _assign(self, row: sqlite3.Row) -> None:
        self._id = ids.from_db(row["id_request"])
        self._guid = row["guid"]
        self._type = row["type"]
        self._object = ids.from_db(row["object"])
        self._expiration = parse_db_timestamp(row["expiration"])
        self._state = row["state"]
        self._creator = ids.from_db(row["creator"])
        self._created = parse_db_timestamp(row["created"])
        self._stored = True

    @property
    def id(self) -> int | None:
        return self._id

    @property
    def guid(self) -> str:
        return self._guid

    @property
    def request_type(self) -> str:
        return self._type

    @property
    def object(self) -> int | None:
        return self._object

    @property
    def expiration(self) -> datetime | None:
        return self._expiration

    def expiration_utc(self) -> str | None:
        return to_rfc3339(self._expiration)

    @property
    def state(self) -> int:
        return self._state

    @property
    def creator(self) -> int | None:
        return self._creator

    @property
    def created(self) -> datetime | None:
        return self._created

    def is_valid(self) -> bool:
        return self._id is not None and bool(self._guid and self._type)

    def is_active(self) -> bool:
        return self._state < ACTIVE_STATE_LIMIT

    def is_expired(self) -> bool:
        return is_expired(self._expiration)

    def _load(self, conn: sqlite3.Connection, where: str, args: tuple[Any, ...]) -> bool:
        self._reset()
        row = fetch_one(
            conn,
            f"SELECT {', '.join(_REGISTRY_COLUMNS)} FROM registry_requests {where}",
            args,
        )
        if row is None:
            return False
        self._assign(row)
        return True

    def by_id(self, conn: sqlite3.Connection, gid: int) -> bool:
        return self._load(conn, "WHERE id_request = ?", (ids.to_db(gid),))

    def by_guid(self, conn: sqlite3.Connection, guid: str) -> bool:
        return self._load(conn, "WHERE guid = ?", (guid.strip().lower(),))

    def by_last_active(
        self,
        conn: sqlite3.Connection,
        request_type: str,
        object_id: int | None = None,
        creator: int | None = None,
    ) -> bool:
        """Load the most recently created active request matching the filter."""
        where, args = _type_scope(request_type, object_id)
        where.append("state < ?")
        args.append(ACTIVE_STATE_LIMIT)
        if creator is not None:
            where.append("creator = ?")
            args.append(ids.to_db(creator))
        return self._load(
            conn,
            f"WHERE {' AND '.join(where)} ORDER BY created DESC, id_request DESC LIMIT 1",
            tuple(args),
        )

    def set_state(self, state: int) -> int:
        current = self._state
        if state != current:
            self._state = state
            self._dirty = True
        return current

    def flush(self, conn: sqlite3.Connection, force: bool = False) -> bool:
        if not force and not self._dirty:
            return False
        if not self.is_valid():
            raise ValidationError("Invalid request registry entry", "request")
        if self.is_new():
            run(
                conn,
                "INSERT INTO registry_requests (id_request, guid, type, object, expiration, "
                "state, creator) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    ids.to_db(self._id),
                    self._guid,
                    self._type,
                    ids.to_db(self._object),
                    to_db_timestamp(self._expiration) if self._expiration else None,
                    self._state,
                    ids.to_db(self._creator),
                ),
            )
        else:
            run(
                conn,
                "UPDATE registry_requests SET state = ?, modified = CURRENT_TIMESTAMP "
                "WHERE id_request = ?",
                (self._state, ids.to_db(self._id)),
            )
        self._mark_stored()
        return True


def _type_scope(request_type: str, object_id: int | None) -> tuple[list[str], list[Any]]:
    where = ["type = ?"]
    args: list[Any] = [request_type]
    if object_id is not None:
        where.append("object = ?")
        args.append(ids.to_db(object_id))
    return where, args


def count_requests_by_type(
    conn: sqlite3.Connection, request_type: str, active: bool = True, object_id: int | None = None
) -> int:
    where, args = _type_scope(request_type, object_id)
    if active:
        where.append("state < ?")
        args.append(ACTIVE_STATE_LIMIT)
    return int(
        fetch_value(conn, f"SELECT COUNT(*) FROM registry_requests WHERE {' AND '.join(where)}", args)
        or 0
    )


def expire_requests_by_type(
    conn: sqlite3.Connection, request_type: str, object_id: int | None = None
) -> int:
    """Close active requests of this type/object whose expiration has passed.

    Returns:
        Number of rows closed
    """
    where, args = _type_scope(request_type, object_id)
    where.extend(["state < ?", "expiration IS NOT NULL", "expiration < ?"])
    args.extend([ACTIVE_STATE_LIMIT, to_db_timestamp(utcnow())])
    cursor = run(
        conn,
        "UPDATE registry_requests SET state = ?, modified = CURRENT_TIMESTAMP "
        f"WHERE {' AND '.join(where)}",
        [STATE_CLOSED, *args],
    )
    if cursor.rowcount:
        logger.info(
            "Expired stale requests",
            extra={"request_type": request_type, "count": cursor.rowcount},
        )
    return cursor.rowcount


def list_requests(
    conn: sqlite3.Connection,
    conditions: QueryConditions | None = None,
    count: bool = False,
) -> QueryResults[RequestRegistry]:
    return list_rows(
        conn,
        table="registry_requests",
        columns=_REGISTRY_COLUMNS,
        where=[],
        args=[],
        conditions=conditions,
        default_sort="created",
        build=RequestRegistry.from_row,
        count=count,
    )
