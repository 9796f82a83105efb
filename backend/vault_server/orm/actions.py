"""
Actions: dispatchable work items handed to the action broker.

An action is inserted REGISTERED, published, and only then moved to
QUEUED. A worker marks it PROCESSED. Rows live on the registry shard.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Any

from ..core import ids
from ..core.timeutil import parse_db_timestamp
from ..core.values import MapWrapper
from ..errors import ImmutableEntityError, ValidationError
from .base import Entity, fetch_all, fetch_one, run

logger = logging.getLogger(__name__)

STATE_REGISTERED = 0x0000
STATE_QUEUED = 0x0010
STATE_PROCESSED = 0x00FF


class Action(Entity):
    """Action row keyed by guid."""

    def __init__(
        self,
        action_type: str = "",
        creator: int | None = None,
        guid: str | None = None,
    ) -> None:
        super().__init__()
        self._reset()
        if action_type:
            self._guid = guid or str(uuid.uuid4())
            self._type = action_type
            self._creator = creator
            self._dirty = True

    def _reset(self) -> None:
        self._guid = ""
        self._parent = ""
        self._type = ""
        self._params = MapWrapper()
        self._props = MapWrapper()
        self._state = STATE_REGISTERED
        self._creator: int | None = None
        self._created: datetime | None = None
        self._modified: datetime | None = None
        self._stored = False
        self._dirty = False

    @property
    def guid(self) -> str:
        return self._guid

    @property
    def parent(self) -> str:
        return self._parent

    @property
    def type(self) -> str:
        return self._type

    @property
    def params(self) -> MapWrapper:
        return self._params

    @property
    def props(self) -> MapWrapper:
        return self._props

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
        return bool(self._guid and self._type) and self._creator is not None

    def by_guid(self, conn: sqlite3.Connection, guid: str) -> bool:
        self._reset()
        row = fetch_one(
            conn,
            "SELECT guid, parent, type, params, props, state, creator, created, modified "
            "FROM actions WHERE guid = ?",
            (guid.strip().lower(),),
        )
        if row is None:
            return False
        self._assign(row)
        return True

    def _assign(self, row: sqlite3.Row) -> None:
        self._guid = row["guid"]
        self._parent = row["parent"] or ""
        self._type = row["type"]
        self._params.import_json(row["params"])
        self._props.import_json(row["props"])
        self._state = row["state"]
        self._creator = ids.from_db(row["creator"])
        self._created = parse_db_timestamp(row["created"])
        self._modified = parse_db_timestamp(row["modified"])
        self._stored = True

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Action:
        a = cls()
        a._assign(row)
        return a

    def set_parent(self, guid: str) -> str:
        self._require_new("Action parent")
        current = self._parent
        self._parent = guid
        self._touch()
        return current

    def set_state(self, state: int) -> int:
        current = self._state
        if state != current:
            self._state = state
            self._touch()
        return current

    def set_state_queued(self) -> int:
        return self.set_state(STATE_QUEUED)

    def set_param(self, path: str, value: Any) -> None:
        self._require_new("Action parameters")
        self._params.set(path, value)
        self._touch()

    def set_prop(self, path: str, value: Any) -> None:
        self._require_new("Action properties")
        self._props.set(path, value)
        self._touch()

    def message(self) -> dict[str, Any]:
        """Broker envelope for this action."""
        return {
            "guid": self._guid,
            "type": self._type,
            "params": self._params.to_dict(),
            "props": self._props.to_dict(),
        }

    def flush(self, conn: sqlite3.Connection, force: bool = False) -> bool:
        if not force and not self._dirty:
            return False
        if not self.is_valid():
            raise ValidationError("Invalid action", "action")
        if self.is_new():
            run(
                conn,
                "INSERT INTO actions (guid, parent, type, params, props, state, creator) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    self._guid,
                    self._parent or None,
                    self._type,
                    None if self._params.is_empty() else self._params.export_json(),
                    None if self._props.is_empty() else self._props.export_json(),
                    self._state,
                    ids.to_db(self._creator),
                ),
            )
        else:
            if self._params.is_modified() or self._props.is_modified():
                raise ImmutableEntityError("Action payload is immutable")
            run(
                conn,
                "UPDATE actions SET state = ?, modified = CURRENT_TIMESTAMP WHERE guid = ?",
                (self._state, self._guid),
            )
        self._params.mark_clean()
        self._props.mark_clean()
        self._mark_stored()
        return True


def registered_actions(conn: sqlite3.Connection, limit: int = 100) -> list[Action]:
    """Actions still waiting to be published (oldest first)."""
    rows = fetch_all(
        conn,
        "SELECT guid, parent, type, params, props, state, creator, created, modified "
        "FROM actions WHERE state = ? ORDER BY created, guid LIMIT ?",
        (STATE_REGISTERED, limit),
    )
    return [Action.from_row(r) for r in rows]
