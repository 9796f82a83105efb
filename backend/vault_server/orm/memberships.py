"""
Shard-local registries linking users, organizations, stores and templates.

    registry_org_stores        (org, store)    on the org's shard
    registry_object_users      (object, user)  on the object's shard
    registry_user_objects      (user, object)  on the user's shard
    registry_object_templates  (object, name)  on the object's shard

Invariants:
    - registry_object_users(O, U) exists iff registry_user_objects(U, O) exists;
      callers write both, object side first
    - mgr_roles / mgr_invites are derived from the role set on every flush
    - A membership's wrapped store key is set once, when the row is new;
      afterwards it can only be re-wrapped under a new password hash
"""

from __future__ import annotations

import logging
import sqlite3
import time
from datetime import datetime
from typing import Any

from ..core import crypto, ids
from ..core.roles import RoleSet
from ..core.states import StateMixin
from ..core.timeutil import parse_db_timestamp
from ..errors import ImmutableEntityError, ValidationError
from ..query.conditions import QueryConditions
from ..query.results import QueryResults
from .base import Entity, fetch_all, fetch_one, fetch_value, list_rows, run, value_mapper

logger = logging.getLogger(__name__)


class _KeyedRow(StateMixin, Entity):
    """Row with a two-part key that is immutable once stored."""

    def _check_key(self, what: str) -> None:
        if self._stored:
            raise ImmutableEntityError(f"{what} key is immutable")


# ---------------------------------------------------------------------------
# Organization stores
# ---------------------------------------------------------------------------

_ORG_STORE_COLUMNS = ("id_org", "id_store", "alias", "name", "state", "created", "modified")

_ORG_STORE_FIELD_MAP = {
    "id": "id_store",
    "alias": "alias",
    "name": "name",
    "state": "state",
    "created": "created",
}


def map_org_store_field(name: str) -> str:
    return _ORG_STORE_FIELD_MAP.get(name, "")


map_org_store_value = value_mapper(id_columns=("id_store",), int_columns=("state",))


class OrgStoreRegistry(_KeyedRow):
    """``registry_org_stores`` row."""

    def __init__(self, org: int | None = None, store: int | None = None) -> None:
        super().__init__()
        self._reset()
        if org is not None and store is not None:
            self.set_key(org, store)

    def _reset(self) -> None:
        self._org: int | None = None
        self._store: int | None = None
        self._alias = ""
        self._name = ""
        self._state = 0
        self._created: datetime | None = None
        self._stored = False
        self._dirty = False

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> OrgStoreRegistry:
        r = cls()
        r._assign(row)
        return r

    def _assign(self, row: sqlite3.Row) -> None:
        self._org = ids.from_db(row["id_org"])
        self._store = ids.from_db(row["id_store"])
        self._alias = row["alias"]
        self._name = row["name"] or ""
        self._state = row["state"]
        self._created = parse_db_timestamp(row["created"])
        self._stored = True

    @property
    def org(self) -> int | None:
        return self._org

    @property
    def store(self) -> int | None:
        return self._store

    @property
    def alias(self) -> str:
        return self._alias

    @property
    def name(self) -> str:
        return self._name

    def is_valid(self) -> bool:
        return self._org is not None and self._store is not None and bool(self._alias)

    def set_key(self, org: int, store: int) -> None:
        self._check_key("Organization store")
        self._org = org
        self._store = store
        self._dirty = True

    def set_alias(self, alias: str) -> str:
        current = self._alias
        self._alias = alias.strip().lower()
        self._dirty = self._dirty or current != self._alias
        return current

    def set_name(self, name: str) -> str:
        current = self._name
        self._name = name.strip()
        self._dirty = self._dirty or current != self._name
        return current

    def _load(self, conn: sqlite3.Connection, where: str, args: tuple[Any, ...]) -> bool:
        self._reset()
        row = fetch_one(
            conn,
            f"SELECT {', '.join(_ORG_STORE_COLUMNS)} FROM registry_org_stores WHERE {where}",
            args,
        )
        if row is None:
            return False
        self._assign(row)
        return True

    def by_id(self, conn: sqlite3.Connection, org: int, store: int) -> bool:
        return self._load(conn, "id_org = ? AND id_store = ?", (ids.to_db(org), ids.to_db(store)))

    def by_alias(self, conn: sqlite3.Connection, org: int, alias: str) -> bool:
        return self._load(conn, "id_org = ? AND alias = ?", (ids.to_db(org), alias.strip().lower()))

    def find(self, conn: sqlite3.Connection, org: int, ref: ids.Ref) -> bool:
        if isinstance(ref, ids.IdRef):
            return self.by_id(conn, org, ref.value)
        if isinstance(ref, ids.AliasRef):
            return self.by_alias(conn, org, ref.value)
        return False

    def flush(self, conn: sqlite3.Connection, force: bool = False) -> bool:
        if not force and not self._dirty:
            return False
        if not self.is_valid():
            raise ValidationError("Invalid organization store entry", "store")
        if self.is_new():
            run(
                conn,
                "INSERT INTO registry_org_stores (id_org, id_store, alias, name, state) "
                "VALUES (?, ?, ?, ?, ?)",
                (ids.to_db(self._org), ids.to_db(self._store), self._alias, self._name, self._state),
            )
        else:
            run(
                conn,
                "UPDATE registry_org_stores SET alias = ?, name = ?, state = ?, "
                "modified = CURRENT_TIMESTAMP WHERE id_org = ? AND id_store = ?",
                (self._alias, self._name, self._state, ids.to_db(self._org), ids.to_db(self._store)),
            )
        self._mark_stored()
        return True


def list_org_stores(
    conn: sqlite3.Connection,
    org: int,
    conditions: QueryConditions | None = None,
    count: bool = False,
) -> QueryResults[OrgStoreRegistry]:
    return list_rows(
        conn,
        table="registry_org_stores",
        columns=_ORG_STORE_COLUMNS,
        where=["id_org = ?"],
        args=[ids.to_db(org)],
        conditions=conditions,
        default_sort="alias",
        build=OrgStoreRegistry.from_row,
        count=count,
    )


# ---------------------------------------------------------------------------
# Object users (membership)
# ---------------------------------------------------------------------------

_OBJECT_USER_COLUMNS = (
    "id_object",
    "id_user",
    "username",
    "state",
    "roles",
    "mgr_roles",
    "mgr_invites",
    "ciphertext",
    "created",
    "modified",
)

_OBJECT_USER_FIELD_MAP = {
    "id": "id_user",
    "user": "id_user",
    "username": "username",
    "state": "state",
    "created": "created",
}


def map_object_user_field(name: str) -> str:
    return _OBJECT_USER_FIELD_MAP.get(name, "")


map_object_user_value = value_mapper(id_columns=("id_user",), int_columns=("state",))


class ObjectUserRegistry(_KeyedRow):
    """Membership of a user in an organization or store."""

    def __init__(self, object_id: int | None = None, user: int | None = None) -> None:
        super().__init__()
        self._reset()
        if object_id is not None and user is not None:
            self.set_key(object_id, user)

    def _reset(self) -> None:
        self._object: int | None = None
        self._user: int | None = None
        self._username = ""
        self._state = 0
        self._roles = RoleSet()
        self._ciphertext: bytes | None = None
        self._created: datetime | None = None
        self._stored = False
        self._dirty = False

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ObjectUserRegistry:
        r = cls()
        r._assign(row)
        return r

    def _assign(self, row: sqlite3.Row) -> None:
        self._object = ids.from_db(row["id_object"])
        self._user = ids.from_db(row["id_user"])
        self._username = row["username"]
        self._state = row["state"]
        self._roles = RoleSet.from_csv(row["roles"])
        self._ciphertext = bytes(row["ciphertext"]) if row["ciphertext"] is not None else None
        self._created = parse_db_timestamp(row["created"])
        self._stored = True

    @property
    def object(self) -> int | None:
        return self._object

    @property
    def user(self) -> int | None:
        return self._user

    @property
    def username(self) -> str:
        return self._username

    @property
    def roles(self) -> RoleSet:
        return self._roles

    @property
    def created(self) -> datetime | None:
        return self._created

    def is_valid(self) -> bool:
        return self._object is not None and self._user is not None and bool(self._username)

    def is_system_organization(self) -> bool:
        return self._object == ids.SYSTEM_ORGANIZATION

    def is_admin_user(self) -> bool:
        return self.is_system_organization() and self.is_system()

    def has_store_key(self) -> bool:
        return bool(self._ciphertext)

    def set_key(self, object_id: int, user: int) -> None:
        self._check_key("Object user")
        self._object = object_id
        self._user = user
        self._dirty = True

    def set_username(self, username: str) -> str:
        current = self._username
        self._username = username.strip().lower()
        self._dirty = self._dirty or current != self._username
        return current

    # Roles (every mutation marks the row dirty when it changes something)

    def _mark(self, changed: bool) -> bool:
        if changed:
            self._dirty = True
        return changed

    def add_role(self, r: int) -> bool:
        return self._mark(self._roles.add_role(r))

    def add_roles(self, roles: list[int] | RoleSet) -> bool:
        return self._mark(self._roles.add_roles(roles))

    def remove_role(self, r: int) -> bool:
        return self._mark(self._roles.remove_role(r))

    def remove_roles(self, roles: list[int] | RoleSet) -> bool:
        return self._mark(self._roles.remove_roles(roles))

    def remove_category(self, category: int) -> bool:
        return self._mark(self._roles.remove_category(category))

    def remove_all_roles(self) -> bool:
        return self._mark(self._roles.remove_all())

    def set_roles(self, roles: RoleSet) -> bool:
        changed = roles != self._roles
        self._roles = roles.copy()
        return self._mark(changed)

    def roles_from_csv(self, csv: str) -> bool:
        return self.set_roles(RoleSet.from_csv(csv))

    def is_roles_manager(self) -> bool:
        return self._roles.is_roles_manager()

    def is_invitation_manager(self) -> bool:
        return self._roles.is_invitation_manager()

    # Store key envelope

    def store_key(self, hexhash: str) -> bytes:
        """Unwrap the store key with the member's password hash.

        Raises:
            CryptoError: If the hash is malformed or does not open the key
        """
        return self.store_key_bytes(crypto.hash_from_hex(hexhash))

    def store_key_bytes(self, key: bytes) -> bytes:
        if not self._ciphertext:
            raise ValidationError("Membership has no store key", "store_key")
        return crypto.open_sealed(key, self._ciphertext)

    def set_store_key(self, hexhash: str, store_key: bytes) -> None:
        """Wrap ``store_key`` under the member's password hash (new rows only)."""
        if self._stored:
            raise ImmutableEntityError("Store KEY is immutable")
        self._ciphertext = crypto.seal(crypto.hash_from_hex(hexhash), store_key)
        self._dirty = True

    def create_store_key(self, hexhash: str) -> bytes:
        """Generate a fresh store key, wrap it and return it."""
        salt = crypto.random_alphanumeric_punctuation(128)
        store_key = crypto.sha256(f"{self._user}:{salt}:{self._object}:{time.time_ns()}")
        self.set_store_key(hexhash, store_key)
        return store_key

    def rewrap_store_key(self, old_hexhash: str, new_hexhash: str) -> None:
        """Move the wrapped key from the old password hash to the new one."""
        plain = self.store_key(old_hexhash)
        self._ciphertext = crypto.seal(crypto.hash_from_hex(new_hexhash), plain)
        self._dirty = True

    def _load(self, conn: sqlite3.Connection, object_id: int, user: int) -> bool:
        self._reset()
        row = fetch_one(
            conn,
            f"SELECT {', '.join(_OBJECT_USER_COLUMNS)} FROM registry_object_users "
            "WHERE id_object = ? AND id_user = ?",
            (ids.to_db(object_id), ids.to_db(user)),
        )
        if row is None:
            return False
        self._assign(row)
        return True

    def by_key(self, conn: sqlite3.Connection, object_id: int, user: int) -> bool:
        return self._load(conn, object_id, user)

    def flush(self, conn: sqlite3.Connection, force: bool = False) -> bool:
        if not force and not self._dirty:
            return False
        if not self.is_valid():
            raise ValidationError("Invalid object user entry", "user")

        csv = self._roles.to_csv() or None
        mgr_roles = 1 if csv and self._roles.is_roles_manager() else 0
        mgr_invites = 1 if csv and self._roles.is_invitation_manager() else 0

        if self.is_new():
            run(
                conn,
                "INSERT INTO registry_object_users (id_object, id_user, username, state, roles, "
                "mgr_roles, mgr_invites, ciphertext) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    ids.to_db(self._object),
                    ids.to_db(self._user),
                    self._username,
                    self._state,
                    csv,
                    mgr_roles,
                    mgr_invites,
                    self._ciphertext,
                ),
            )
        else:
            run(
                conn,
                "UPDATE registry_object_users SET username = ?, state = ?, roles = ?, "
                "mgr_roles = ?, mgr_invites = ?, ciphertext = ?, modified = CURRENT_TIMESTAMP "
                "WHERE id_object = ? AND id_user = ?",
                (
                    self._username,
                    self._state,
                    csv,
                    mgr_roles,
                    mgr_invites,
                    self._ciphertext,
                    ids.to_db(self._object),
                    ids.to_db(self._user),
                ),
            )
        self._mark_stored()
        return True


def delete_object_user(conn: sqlite3.Connection, object_id: int, user: int) -> bool:
    cursor = run(
        conn,
        "DELETE FROM registry_object_users WHERE id_object = ? AND id_user = ?",
        (ids.to_db(object_id), ids.to_db(user)),
    )
    return cursor.rowcount > 0


def delete_object_users(conn: sqlite3.Connection, object_id: int) -> int:
    return run(
        conn, "DELETE FROM registry_object_users WHERE id_object = ?", (ids.to_db(object_id),)
    ).rowcount


def count_role_managers(conn: sqlite3.Connection, object_id: int, exclude_user: int | None = None) -> int:
    """Members of ``object_id`` flagged as roles managers."""
    return _count_flag(conn, "mgr_roles", object_id, exclude_user)


def count_invite_managers(
    conn: sqlite3.Connection, object_id: int, exclude_user: int | None = None
) -> int:
    return _count_flag(conn, "mgr_invites", object_id, exclude_user)


def _count_flag(conn: sqlite3.Connection, flag: str, object_id: int, exclude_user: int | None) -> int:
    sql = f"SELECT COUNT(*) FROM registry_object_users WHERE id_object = ? AND {flag} = 1"
    args: list[Any] = [ids.to_db(object_id)]
    if exclude_user is not None:
        sql += " AND id_user != ?"
        args.append(ids.to_db(exclude_user))
    return int(fetch_value(conn, sql, args) or 0)


def object_members(conn: sqlite3.Connection, user: int) -> list[ObjectUserRegistry]:
    """Every membership row of ``user`` on this shard."""
    rows = fetch_all(
        conn,
        f"SELECT {', '.join(_OBJECT_USER_COLUMNS)} FROM registry_object_users WHERE id_user = ?",
        (ids.to_db(user),),
    )
    return [ObjectUserRegistry.from_row(r) for r in rows]


def list_object_users(
    conn: sqlite3.Connection,
    object_id: int,
    conditions: QueryConditions | None = None,
    count: bool = False,
) -> QueryResults[ObjectUserRegistry]:
    return list_rows(
        conn,
        table="registry_object_users",
        columns=_OBJECT_USER_COLUMNS,
        where=["id_object = ?"],
        args=[ids.to_db(object_id)],
        conditions=conditions,
        default_sort="username",
        build=ObjectUserRegistry.from_row,
        count=count,
    )


# ---------------------------------------------------------------------------
# User objects
# ---------------------------------------------------------------------------

_USER_OBJECT_COLUMNS = ("id_user", "id_object", "type", "alias", "favorite", "created", "modified")

_USER_OBJECT_FIELD_MAP = {
    "id": "id_object",
    "object": "id_object",
    "type": "type",
    "alias": "alias",
    "favorite": "favorite",
    "created": "created",
}


def map_user_object_field(name: str) -> str:
    return _USER_OBJECT_FIELD_MAP.get(name, "")


map_user_object_value = value_mapper(id_columns=("id_object",), int_columns=("type", "favorite"))


class UserObjectRegistry(Entity):
    """An object (org or store) a user belongs to."""

    def __init__(self, user: int | None = None, object_id: int | None = None) -> None:
        super().__init__()
        self._reset()
        if user is not None and object_id is not None:
            self.set_key(user, object_id)

    def _reset(self) -> None:
        self._user: int | None = None
        self._object: int | None = None
        self._alias = ""
        self._favorite = False
        self._created: datetime | None = None
        self._stored = False
        self._dirty = False

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> UserObjectRegistry:
        r = cls()
        r._assign(row)
        return r

    def _assign(self, row: sqlite3.Row) -> None:
        self._user = ids.from_db(row["id_user"])
        self._object = ids.from_db(row["id_object"])
        self._alias = row["alias"]
        self._favorite = bool(row["favorite"])
        self._created = parse_db_timestamp(row["created"])
        self._stored = True

    @property
    def user(self) -> int | None:
        return self._user

    @property
    def object(self) -> int | None:
        return self._object

    @property
    def type(self) -> int:
        return ids.type_of(self._object) if self._object is not None else 0

    @property
    def alias(self) -> str:
        return self._alias

    @property
    def favorite(self) -> bool:
        return self._favorite

    def is_valid(self) -> bool:
        return self._user is not None and self._object is not None and bool(self._alias)

    def is_system_organization(self) -> bool:
        return self._object == ids.SYSTEM_ORGANIZATION

    def set_key(self, user: int, object_id: int) -> None:
        if self._stored:
            raise ImmutableEntityError("User object key is immutable")
        self._user = user
        self._object = object_id
        self._dirty = True

    def set_alias(self, alias: str) -> str:
        current = self._alias
        self._alias = alias.strip().lower()
        self._dirty = self._dirty or current != self._alias
        return current

    def set_favorite(self, favorite: bool) -> bool:
        current = self._favorite
        self._favorite = favorite
        self._dirty = self._dirty or current != favorite
        return current

    def by_key(self, conn: sqlite3.Connection, user: int, object_id: int) -> bool:
        self._reset()
        row = fetch_one(
            conn,
            f"SELECT {', '.join(_USER_OBJECT_COLUMNS)} FROM registry_user_objects "
            "WHERE id_user = ? AND id_object = ?",
            (ids.to_db(user), ids.to_db(object_id)),
        )
        if row is None:
            return False
        self._assign(row)
        return True

    def flush(self, conn: sqlite3.Connection, force: bool = False) -> bool:
        if not force and not self._dirty:
            return False
        if not self.is_valid():
            raise ValidationError("Invalid user object entry", "object")
        if self.is_new():
            run(
                conn,
                "INSERT INTO registry_user_objects (id_user, id_object, type, alias, favorite) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    ids.to_db(self._user),
                    ids.to_db(self._object),
                    self.type,
                    self._alias,
                    int(self._favorite),
                ),
            )
        else:
            run(
                conn,
                "UPDATE registry_user_objects SET alias = ?, favorite = ?, "
                "modified = CURRENT_TIMESTAMP WHERE id_user = ? AND id_object = ?",
                (self._alias, int(self._favorite), ids.to_db(self._user), ids.to_db(self._object)),
            )
        self._mark_stored()
        return True


def delete_user_object(conn: sqlite3.Connection, user: int, object_id: int) -> bool:
    cursor = run(
        conn,
        "DELETE FROM registry_user_objects WHERE id_user = ? AND id_object = ?",
        (ids.to_db(user), ids.to_db(object_id)),
    )
    return cursor.rowcount > 0


def user_objects(
    conn: sqlite3.Connection, user: int, object_type: int | None = None
) -> list[UserObjectRegistry]:
    """Every object link of ``user`` on this shard, unpaginated."""
    sql = f"SELECT {', '.join(_USER_OBJECT_COLUMNS)} FROM registry_user_objects WHERE id_user = ?"
    args: list[Any] = [ids.to_db(user)]
    if object_type is not None:
        sql += " AND type = ?"
        args.append(object_type)
    return [UserObjectRegistry.from_row(r) for r in fetch_all(conn, sql, args)]


def list_user_objects(
    conn: sqlite3.Connection,
    user: int,
    object_type: int | None = None,
    conditions: QueryConditions | None = None,
    count: bool = False,
) -> QueryResults[UserObjectRegistry]:
    where = ["id_user = ?"]
    args: list[Any] = [ids.to_db(user)]
    if object_type is not None:
        where.append("type = ?")
        args.append(object_type)
    return list_rows(
        conn,
        table="registry_user_objects",
        columns=_USER_OBJECT_COLUMNS,
        where=where,
        args=args,
        conditions=conditions,
        default_sort="alias",
        build=UserObjectRegistry.from_row,
        count=count,
    )


# ---------------------------------------------------------------------------
# Object templates
# ---------------------------------------------------------------------------

_OBJECT_TEMPLATE_COLUMNS = ("id_object", "template", "title", "created")


def map_object_template_field(name: str) -> str:
    return {"template": "template", "name": "template", "title": "title"}.get(name, "")


class ObjectTemplateRegistry(Entity):
    """Template made available inside an org or store."""

    def __init__(self, object_id: int | None = None, template: str = "") -> None:
        super().__init__()
        self._object = object_id
        self._template = template.strip().lower()
        self._title = ""
        self._created: datetime | None = None
        if object_id is not None and template:
            self._dirty = True

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ObjectTemplateRegistry:
        r = cls()
        r._assign(row)
        return r

    def _assign(self, row: sqlite3.Row) -> None:
        self._object = ids.from_db(row["id_object"])
        self._template = row["template"]
        self._title = row["title"]
        self._created = parse_db_timestamp(row["created"])
        self._stored = True
        self._dirty = False

    @property
    def object(self) -> int | None:
        return self._object

    @property
    def template(self) -> str:
        return self._template

    @property
    def title(self) -> str:
        return self._title

    def is_valid(self) -> bool:
        return self._object is not None and bool(self._template) and bool(self._title)

    def set_title(self, title: str) -> str:
        current = self._title
        self._title = title.strip()
        self._dirty = self._dirty or current != self._title
        return current

    def by_key(self, conn: sqlite3.Connection, object_id: int, template: str) -> bool:
        row = fetch_one(
            conn,
            f"SELECT {', '.join(_OBJECT_TEMPLATE_COLUMNS)} FROM registry_object_templates "
            "WHERE id_object = ? AND template = ?",
            (ids.to_db(object_id), template.strip().lower()),
        )
        if row is None:
            return False
        self._assign(row)
        return True

    def flush(self, conn: sqlite3.Connection, force: bool = False) -> bool:
        if not force and not self._dirty:
            return False
        if not self.is_valid():
            raise ValidationError("Invalid object template entry", "template")
        if self.is_new():
            run(
                conn,
                "INSERT INTO registry_object_templates (id_object, template, title) VALUES (?, ?, ?)",
                (ids.to_db(self._object), self._template, self._title),
            )
        else:
            run(
                conn,
                "UPDATE registry_object_templates SET title = ? WHERE id_object = ? AND template = ?",
                (self._title, ids.to_db(self._object), self._template),
            )
        self._mark_stored()
        return True


def object_template_exists(conn: sqlite3.Connection, object_id: int, template: str) -> bool:
    count = fetch_value(
        conn,
        "SELECT COUNT(*) FROM registry_object_templates WHERE id_object = ? AND template = ?",
        (ids.to_db(object_id), template.strip().lower()),
    )
    return bool(count)


def delete_object_template(conn: sqlite3.Connection, object_id: int, template: str) -> bool:
    cursor = run(
        conn,
        "DELETE FROM registry_object_templates WHERE id_object = ? AND template = ?",
        (ids.to_db(object_id), template.strip().lower()),
    )
    return cursor.rowcount > 0


def list_object_templates(
    conn: sqlite3.Connection,
    object_id: int,
    conditions: QueryConditions | None = None,
    count: bool = False,
) -> QueryResults[ObjectTemplateRegistry]:
    return list_rows(
        conn,
        table="registry_object_templates",
        columns=_OBJECT_TEMPLATE_COLUMNS,
        where=["id_object = ?"],
        args=[ids.to_db(object_id)],
        conditions=conditions,
        default_sort="template",
        build=ObjectTemplateRegistry.from_row,
        count=count,
    )
