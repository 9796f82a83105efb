"""
Global user and organization registries (registry shard).

Each row's primary key is the global id of the canonical entity, so a
lookup by alias or email yields the id and the id yields the shard.

Invariants:
    - A registry row is written after its canonical row, never before
    - username / alias / email are lowercase
    - The user registry carries a copy of the password validation blob so
      credentials can be checked without touching the user's shard
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Any

from ..core import crypto, ids
from ..core.states import StateMixin
from ..core.timeutil import parse_db_timestamp
from ..errors import CryptoError, ImmutableEntityError, ValidationError
from ..query.conditions import QueryConditions
from ..query.results import QueryResults
from .base import Entity, fetch_one, list_rows, run, value_mapper
from .orgs import Organization
from .users import User

logger = logging.getLogger(__name__)

_USER_COLUMNS = ("id_user", "username", "email", "name", "state", "ciphertext", "created", "modified")

_USER_FIELD_MAP = {
    "id": "id_user",
    "username": "username",
    "email": "email",
    "name": "name",
    "state": "state",
    "created": "created",
    "modified": "modified",
}


def map_user_field(name: str) -> str:
    return _USER_FIELD_MAP.get(name, "")


map_user_value = value_mapper(id_columns=("id_user",), int_columns=("state",))


class UserRegistry(StateMixin, Entity):
    """``registry_users`` row."""

    def __init__(self) -> None:
        super().__init__()
        self._reset()

    def _reset(self) -> None:
        self._id: int | None = None
        self._username = ""
        self._email = ""
        self._name = ""
        self._state = 0
        self._ciphertext: bytes | None = None
        self._created: datetime | None = None
        self._modified: datetime | None = None
        self._stored = False
        self._dirty = False

    @classmethod
    def from_user(cls, user: User, group: int, shard: int) -> UserRegistry:
        """New registry row mirroring a stored user on (group, shard)."""
        if user.id is None or not user.stored:
            raise ValidationError("User not stored", "user")
        r = cls()
        r._id = ids.make_id(group, ids.OTYPE_USER, shard, user.id)
        r.update_from(user)
        return r

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> UserRegistry:
        r = cls()
        r._assign(row)
        return r

    def _assign(self, row: sqlite3.Row) -> None:
        self._id = ids.from_db(row["id_user"])
        self._username = row["username"]
        self._email = row["email"]
        self._name = row["name"] or ""
        self._state = row["state"]
        self._ciphertext = bytes(row["ciphertext"]) if row["ciphertext"] is not None else None
        self._created = parse_db_timestamp(row["created"])
        self._modified = parse_db_timestamp(row["modified"])
        self._stored = True

    @property
    def id(self) -> int | None:
        return self._id

    @property
    def username(self) -> str:
        return self._username

    @property
    def email(self) -> str:
        return self._email

    @property
    def name(self) -> str:
        return self._name

    @property
    def created(self) -> datetime | None:
        return self._created

    def is_valid(self) -> bool:
        return self._id is not None and bool(self._username and self._email)

    def _load(self, conn: sqlite3.Connection, column: str, value: Any) -> bool:
        self._reset()
        row = fetch_one(
            conn,
            f"SELECT {', '.join(_USER_COLUMNS)} FROM registry_users WHERE {column} = ?",
            (value,),
        )
        if row is None:
            return False
        self._assign(row)
        return True

    def by_id(self, conn: sqlite3.Connection, gid: int) -> bool:
        return self._load(conn, "id_user", ids.to_db(gid))

    def by_username(self, conn: sqlite3.Connection, username: str) -> bool:
        return self._load(conn, "username", username.strip().lower())

    def by_email(self, conn: sqlite3.Connection, email: str) -> bool:
        return self._load(conn, "email", email.strip().lower())

    def find(self, conn: sqlite3.Connection, ref: ids.Ref) -> bool:
        if isinstance(ref, ids.IdRef):
            return self.by_id(conn, ref.value)
        if isinstance(ref, ids.EmailRef):
            return self.by_email(conn, ref.value)
        return self.by_username(conn, ref.value)

    def update_from(self, user: User) -> None:
        """Copy the registry-visible fields of the canonical user."""
        self._username = user.username
        self._email = user.email
        self._name = user.name
        self._ciphertext = user.ciphertext
        self._dirty = True

    def test_hash(self, hexhash: str) -> bool:
        if not self._ciphertext or not crypto.is_valid_password_hash(hexhash):
            return False
        try:
            crypto.open_sealed(bytes.fromhex(hexhash.strip()), self._ciphertext)
        except CryptoError:
            return False
        return True

    def test_password(self, password: str) -> bool:
        return self.test_hash(crypto.sha256(password).hex())

    def flush(self, conn: sqlite3.Connection, force: bool = False) -> bool:
        if not force and not self._dirty:
            return False
        if not self.is_valid():
            raise ValidationError("Invalid user registry entry", "user")
        if self.is_new():
            run(
                conn,
                "INSERT INTO registry_users (id_user, username, email, name, state, ciphertext) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    ids.to_db(self._id),
                    self._username,
                    self._email,
                    self._name,
                    self._state,
                    self._ciphertext,
                ),
            )
        else:
            run(
                conn,
                "UPDATE registry_users SET username = ?, email = ?, name = ?, state = ?, "
                "ciphertext = ?, modified = CURRENT_TIMESTAMP WHERE id_user = ?",
                (
                    self._username,
                    self._email,
                    self._name,
                    self._state,
                    self._ciphertext,
                    ids.to_db(self._id),
                ),
            )
        self._mark_stored()
        return True


def list_users(
    conn: sqlite3.Connection, conditions: QueryConditions | None = None, count: bool = False
) -> QueryResults[UserRegistry]:
    return list_rows(
        conn,
        table="registry_users",
        columns=_USER_COLUMNS,
        where=[],
        args=[],
        conditions=conditions,
        default_sort="username",
        build=UserRegistry.from_row,
        count=count,
    )


_ORG_COLUMNS = ("id_org", "alias", "name", "state", "created", "modified")

_ORG_FIELD_MAP = {
    "id": "id_org",
    "alias": "alias",
    "name": "name",
    "state": "state",
    "created": "created",
}


def map_org_field(name: str) -> str:
    return _ORG_FIELD_MAP.get(name, "")


map_org_value = value_mapper(id_columns=("id_org",), int_columns=("state",))


class OrgRegistry(StateMixin, Entity):
    """``registry_orgs`` row."""

    def __init__(self) -> None:
        super().__init__()
        self._reset()

    def _reset(self) -> None:
        self._id: int | None = None
        self._alias = ""
        self._name = ""
        self._state = 0
        self._created: datetime | None = None
        self._stored = False
        self._dirty = False

    @classmethod
    def from_org(cls, org: Organization, group: int, shard: int) -> OrgRegistry:
        if org.id is None or not org.stored:
            raise ValidationError("Organization not stored", "org")
        r = cls()
        r.set_id(ids.make_id(group, ids.OTYPE_ORG, shard, org.id))
        r.update_from(org)
        return r

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> OrgRegistry:
        r = cls()
        r._assign(row)
        return r

    def _assign(self, row: sqlite3.Row) -> None:
        self._id = ids.from_db(row["id_org"])
        self._alias = row["alias"]
        self._name = row["name"] or ""
        self._state = row["state"]
        self._created = parse_db_timestamp(row["created"])
        self._stored = True

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
    def created(self) -> datetime | None:
        return self._created

    def is_valid(self) -> bool:
        return self._id is not None and bool(self._alias)

    def is_system_org(self) -> bool:
        return self._id == ids.SYSTEM_ORGANIZATION

    def set_id(self, gid: int) -> int | None:
        if self._stored:
            raise ImmutableEntityError("Organization ID is immutable")
        current = self._id
        self._id = gid
        self._dirty = True
        return current

    def update_from(self, org: Organization) -> None:
        self._alias = org.alias
        self._name = org.name
        self._dirty = True

    def _load(self, conn: sqlite3.Connection, column: str, value: Any) -> bool:
        self._reset()
        row = fetch_one(
            conn,
            f"SELECT {', '.join(_ORG_COLUMNS)} FROM registry_orgs WHERE {column} = ?",
            (value,),
        )
        if row is None:
            return False
        self._assign(row)
        return True

    def by_id(self, conn: sqlite3.Connection, gid: int) -> bool:
        return self._load(conn, "id_org", ids.to_db(gid))

    def by_alias(self, conn: sqlite3.Connection, alias: str) -> bool:
        return self._load(conn, "alias", alias.strip().lower())

    def find(self, conn: sqlite3.Connection, ref: ids.Ref) -> bool:
        if isinstance(ref, ids.IdRef):
            return self.by_id(conn, ref.value)
        if isinstance(ref, ids.AliasRef):
            return self.by_alias(conn, ref.value)
        return False

    def flush(self, conn: sqlite3.Connection, force: bool = False) -> bool:
        if not force and not self._dirty:
            return False
        if not self.is_valid():
            raise ValidationError("Invalid organization registry entry", "org")
        if self.is_new():
            run(
                conn,
                "INSERT INTO registry_orgs (id_org, alias, name, state) VALUES (?, ?, ?, ?)",
                (ids.to_db(self._id), self._alias, self._name, self._state),
            )
        else:
            run(
                conn,
                "UPDATE registry_orgs SET alias = ?, name = ?, state = ?, "
                "modified = CURRENT_TIMESTAMP WHERE id_org = ?",
                (self._alias, self._name, self._state, ids.to_db(self._id)),
            )
        self._mark_stored()
        return True


def list_orgs(
    conn: sqlite3.Connection, conditions: QueryConditions | None = None, count: bool = False
) -> QueryResults[OrgRegistry]:
    return list_rows(
        conn,
        table="registry_orgs",
        columns=_ORG_COLUMNS,
        where=[],
        args=[],
        conditions=conditions,
        default_sort="alias",
        build=OrgRegistry.from_row,
        count=count,
    )
