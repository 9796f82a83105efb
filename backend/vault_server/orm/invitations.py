"""
Invitations: canonical rows (on the invited object's shard) and the global
``registry_invites`` lookup (registry shard).

The canonical invitation is immutable once stored. Its lifecycle lives in
the registry row state:

    PENDING -> ACCEPTED | DECLINED | REVOKED

Transitions only happen from PENDING.
"""

from __future__ import annotations

import hashlib
import logging
import sqlite3
from datetime import datetime
from typing import Any

from ..core import ids
from ..core.roles import RoleSet
from ..core.timeutil import (
    days_from_now,
    is_expired,
    parse_db_timestamp,
    to_db_timestamp,
    to_rfc3339,
    utcnow,
)
from ..errors import ImmutableEntityError, StorageError, ValidationError
from ..query.conditions import QueryConditions
from ..query.results import QueryResults
from .base import Entity, fetch_one, fetch_value, list_rows, run, value_mapper

logger = logging.getLogger(__name__)

INVITE_PENDING = 0
INVITE_ACCEPTED = 1
INVITE_DECLINED = 2
INVITE_REVOKED = 3


class Invitation(Entity):
    """Canonical invitation row."""

    def __init__(self) -> None:
        super().__init__()
        self._reset()

    def _reset(self) -> None:
        self._id: int | None = None
        self._uid = ""
        self._creator: int | None = None
        self._invitee_email = ""
        self._object: int | None = None
        self._message = ""
        self._key: int | None = None
        self._key_pick: bytes | None = None
        self._roles = RoleSet()
        self._expiration: datetime | None = None
        self._created: datetime | None = None
        self._stored = False
        self._dirty = False

    @property
    def id(self) -> int | None:
        return self._id

    @property
    def uid(self) -> str:
        return self._uid

    @property
    def creator(self) -> int | None:
        return self._creator

    @property
    def invitee_email(self) -> str:
        return self._invitee_email

    @property
    def object(self) -> int | None:
        return self._object

    @property
    def message(self) -> str:
        return self._message

    @property
    def key(self) -> int | None:
        return self._key

    @property
    def key_pick(self) -> bytes | None:
        return self._key_pick

    @property
    def roles(self) -> RoleSet:
        return self._roles

    @property
    def expiration(self) -> datetime | None:
        return self._expiration

    def expiration_utc(self) -> str | None:
        return to_rfc3339(self._expiration)

    @property
    def created(self) -> datetime | None:
        return self._created

    def is_valid(self) -> bool:
        return (
            self._creator is not None
            and bool(self._invitee_email)
            and self._object is not None
            and self._expiration is not None
        )

    def by_id(self, conn: sqlite3.Connection, local_id: int) -> bool:
        return self._load(conn, "id", local_id)

    def by_uid(self, conn: sqlite3.Connection, uid: str) -> bool:
        return self._load(conn, "uid", uid)

    def _load(self, conn: sqlite3.Connection, column: str, value: Any) -> bool:
        self._reset()
        row = fetch_one(
            conn,
            "SELECT id, uid, id_creator, invitee_email, id_object, message, id_key, key_pick, "
            f"roles, expiration, created FROM invites WHERE {column} = ?",
            (value,),
        )
        if row is None:
            return False
        self._id = row["id"]
        self._uid = row["uid"]
        self._creator = ids.from_db(row["id_creator"])
        self._invitee_email = row["invitee_email"]
        self._object = ids.from_db(row["id_object"])
        self._message = row["message"] or ""
        self._key = ids.from_db(row["id_key"])
        self._key_pick = bytes(row["key_pick"]) if row["key_pick"] is not None else None
        self._roles = RoleSet.from_csv(row["roles"] or "")
        self._expiration = parse_db_timestamp(row["expiration"])
        self._created = parse_db_timestamp(row["created"])
        self._stored = True
        return True

    # Setters (all refused once stored)

    def set_creator(self, user_id: int) -> int | None:
        self._require_new("Invitation")
        current = self._creator
        self._creator = user_id
        self._touch()
        return current

    def set_invitee_email(self, email: str) -> str:
        self._require_new("Invitation")
        current = self._invitee_email
        self._invitee_email = email.strip().lower()
        self._touch()
        return current

    def set_object(self, object_id: int) -> int | None:
        self._require_new("Invitation")
        current = self._object
        self._object = object_id
        self._touch()
        return current

    def set_message(self, message: str) -> str:
        self._require_new("Invitation")
        current = self._message
        self._message = message.strip()
        self._touch()
        return current

    def set_key(self, key_id: int, pick: bytes) -> None:
        self._require_new("Invitation")
        if not pick:
            raise ValidationError("Key Missing Lock", "key_pick")
        self._key = key_id
        self._key_pick = pick
        self._touch()

    def set_expiration(self, expiration: datetime) -> None:
        self._require_new("Invitation")
        self._expiration = expiration
        self._touch()

    def set_expires_in(self, days: int) -> None:
        self.set_expiration(days_from_now(days))

    def set_roles(self, roles: RoleSet) -> None:
        self._require_new("Invitation")
        self._roles = roles.copy()
        self._touch()

    def roles_from_csv(self, csv: str) -> bool:
        self._require_new("Invitation")
        self._roles = RoleSet.from_csv(csv)
        self._touch()
        return not self._roles.is_empty()

    def _create_uid(self) -> str:
        source = "%X:%X:%s:%X" % (
            self._creator or 0,
            self._object or 0,
            self._invitee_email,
            int(utcnow().timestamp()),
        )
        return hashlib.sha1(source.encode("utf-8")).hexdigest()

    def flush(self, conn: sqlite3.Connection, force: bool = False) -> bool:
        if not force and not self._dirty:
            return False
        if self._stored:
            raise ImmutableEntityError("Registered Invitation is immutable")
        if not self.is_valid():
            raise ValidationError("Invalid invitation", "invitation")
        self._uid = self._create_uid()
        cursor = run(
            conn,
            "INSERT INTO invites (uid, id_creator, invitee_email, id_object, message, id_key, "
            "key_pick, roles, expiration) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                self._uid,
                ids.to_db(self._creator),
                self._invitee_email,
                ids.to_db(self._object),
                self._message,
                ids.to_db(self._key),
                self._key_pick,
                self._roles.to_csv() or None,
                to_db_timestamp(self._expiration) if self._expiration else None,
            ),
        )
        if cursor.lastrowid is None:
            raise StorageError("No row id returned for new invitation")
        self._id = cursor.lastrowid
        self._mark_stored()
        logger.info("Created invitation", extra={"uid": self._uid})
        return True


_REGISTRY_COLUMNS = (
    "id_invite",
    "uid",
    "id_creator",
    "invitee_email",
    "id_object",
    "expiration",
    "state",
    "created",
    "modified",
)

_REGISTRY_FIELD_MAP = {
    "id": "id_invite",
    "uid": "uid",
    "creator": "id_creator",
    "invitee": "invitee_email",
    "object": "id_object",
    "expiration": "expiration",
    "state": "state",
    "created": "created",
}


def map_invitation_field(name: str) -> str:
    return _REGISTRY_FIELD_MAP.get(name, "")


map_invitation_value = value_mapper(
    id_columns=("id_invite", "id_creator", "id_object"), int_columns=("state",)
)


class InvitationRegistry(Entity):
    """Global invitation lookup row."""

    def __init__(self) -> None:
        super().__init__()
        self._reset()

    def _reset(self) -> None:
        self._id: int | None = None
        self._uid = ""
        self._creator: int | None = None
        self._object: int | None = None
        self._invitee_email = ""
        self._expiration: datetime | None = None
        self._state = INVITE_PENDING
        self._created: datetime | None = None
        self._stored = False
        self._dirty = False

    @classmethod
    def from_invitation(cls, invitation: Invitation, group: int, shard: int) -> InvitationRegistry:
        """Registry row for a stored invitation placed on (group, shard)."""
        if invitation.id is None or not invitation.stored:
            raise ValidationError("Invitation not stored", "invitation")
        r = cls()
        r._id = ids.make_id(group, ids.OTYPE_INVITATION, shard, invitation.id)
        r._uid = invitation.uid
        r._creator = invitation.creator
        r._object = invitation.object
        r._invitee_email = invitation.invitee_email
        r._expiration = invitation.expiration
        r._dirty = True
        return r

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> InvitationRegistry:
        r = cls()
        r._assign(row)
        return r

    def _assign(self, row: sqlite3.Row) -> None:
        self._id = ids.from_db(row["id_invite"])
        self._uid = row["uid"]
        self._creator = ids.from_db(row["id_creator"])
        self._object = ids.from_db(row["id_object"])
        self._invitee_email = row["invitee_email"]
        self._expiration = parse_db_timestamp(row["expiration"])
        self._state = row["state"]
        self._created = parse_db_timestamp(row["created"])
        self._stored = True

    @property
    def id(self) -> int | None:
        return self._id

    @property
    def uid(self) -> str:
        return self._uid

    @property
    def creator(self) -> int | None:
        return self._creator

    @property
    def object(self) -> int | None:
        return self._object

    @property
    def invitee_email(self) -> str:
        return self._invitee_email

    @property
    def expiration(self) -> datetime | None:
        return self._expiration

    def expiration_utc(self) -> str | None:
        return to_rfc3339(self._expiration)

    @property
    def state(self) -> int:
        return self._state

    @property
    def created(self) -> datetime | None:
        return self._created

    def is_valid(self) -> bool:
        return self._id is not None and bool(self._uid) and self._object is not None

    def is_active(self) -> bool:
        return self._state == INVITE_PENDING

    def is_expired(self) -> bool:
        return is_expired(self._expiration)

    def _load(self, conn: sqlite3.Connection, column: str, value: Any) -> bool:
        self._reset()
        row = fetch_one(
            conn,
            f"SELECT {', '.join(_REGISTRY_COLUMNS)} FROM registry_invites WHERE {column} = ?",
            (value,),
        )
        if row is None:
            return False
        self._assign(row)
        return True

    def by_id(self, conn: sqlite3.Connection, gid: int) -> bool:
        return self._load(conn, "id_invite", ids.to_db(gid))

    def by_uid(self, conn: sqlite3.Connection, uid: str) -> bool:
        return self._load(conn, "uid", uid.strip().lower())

    def _transition(self, state: int) -> int:
        current = self._state
        if current == INVITE_PENDING:
            self._state = state
            self._dirty = True
        return current

    def set_accepted(self) -> int:
        return self._transition(INVITE_ACCEPTED)

    def set_declined(self) -> int:
        return self._transition(INVITE_DECLINED)

    def set_revoked(self) -> int:
        return self._transition(INVITE_REVOKED)

    def flush(self, conn: sqlite3.Connection, force: bool = False) -> bool:
        if not force and not self._dirty:
            return False
        if not self.is_valid():
            raise ValidationError("Invalid invitation registry entry", "invitation")
        if self.is_new():
            run(
                conn,
                "INSERT INTO registry_invites (id_invite, uid, id_creator, invitee_email, "
                "id_object, expiration, state) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    ids.to_db(self._id),
                    self._uid,
                    ids.to_db(self._creator),
                    self._invitee_email,
                    ids.to_db(self._object),
                    to_db_timestamp(self._expiration) if self._expiration else None,
                    self._state,
                ),
            )
        else:
            run(
                conn,
                "UPDATE registry_invites SET state = ?, modified = CURRENT_TIMESTAMP "
                "WHERE id_invite = ?",
                (self._state, ids.to_db(self._id)),
            )
        self._mark_stored()
        return True


def has_pending_invitation(conn: sqlite3.Connection, object_id: int, invitee_email: str) -> bool:
    """True if an unexpired pending invitation exists for (object, email)."""
    if not object_id or not invitee_email:
        raise ValidationError("Invitation Missing Required Values", "invitation")
    count = fetch_value(
        conn,
        "SELECT COUNT(*) FROM registry_invites WHERE id_object = ? AND invitee_email = ? "
        "AND state = ? AND (expiration IS NULL OR expiration > ?)",
        (
            ids.to_db(object_id),
            invitee_email.strip().lower(),
            INVITE_PENDING,
            to_db_timestamp(utcnow()),
        ),
    )
    return bool(count)


def list_invitations(
    conn: sqlite3.Connection,
    object_id: int | None = None,
    conditions: QueryConditions | None = None,
    count: bool = False,
) -> QueryResults[InvitationRegistry]:
    where: list[str] = []
    args: list[Any] = []
    if object_id is not None:
        where.append("id_object = ?")
        args.append(ids.to_db(object_id))
    return list_rows(
        conn,
        table="registry_invites",
        columns=_REGISTRY_COLUMNS,
        where=where,
        args=args,
        conditions=conditions,
        default_sort="created",
        build=InvitationRegistry.from_row,
        count=count,
    )
