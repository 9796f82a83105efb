"""
Shared plumbing for canonical entities and registry rows.

Every entity tracks two flags:
    stored  a row exists for it in its table
    dirty   in-memory state differs from the last flush

Invariants:
    - flush() is a no-op unless forced or dirty
    - Key-class fields cannot change once stored
    - sqlite3 errors never escape raw: unique violations become
      ConflictError, everything else StorageError

How to change safely:
    - Listing helpers interpolate only mapped column names; keep values
      in the argument list
    - Id columns list their value mapper entry; a filter on ``:hex`` text
      would otherwise never match the signed integer
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from typing import Any, TypeVar

from ..core import ids
from ..core.timeutil import parse_db_timestamp
from ..errors import ConflictError, ImmutableEntityError, StorageError, ValidationError
from ..query.conditions import QueryConditions, order_by_sql
from ..query.results import DEFAULT_MAX_LIMIT, QueryResults

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run(conn: sqlite3.Connection, sql: str, args: Sequence[Any] = ()) -> sqlite3.Cursor:
    """Execute one statement.

    Raises:
        ConflictError: On a UNIQUE / PRIMARY KEY violation
        StorageError: On any other database error
    """
    try:
        return conn.execute(sql, tuple(args))
    except sqlite3.IntegrityError as e:
        logger.info("Constraint violation", extra={"error": str(e)})
        raise ConflictError(f"Entry already exists ({e})") from e
    except sqlite3.Error as e:
        logger.error("Query failed", extra={"error": str(e), "sql": sql.split("\n")[0][:80]})
        raise StorageError(f"Database Error: {e}") from e


def fetch_one(
    conn: sqlite3.Connection, sql: str, args: Sequence[Any] = ()
) -> sqlite3.Row | None:
    return run(conn, sql, args).fetchone()


def fetch_all(conn: sqlite3.Connection, sql: str, args: Sequence[Any] = ()) -> list[sqlite3.Row]:
    return run(conn, sql, args).fetchall()


def fetch_value(conn: sqlite3.Connection, sql: str, args: Sequence[Any] = ()) -> Any:
    row = fetch_one(conn, sql, args)
    return None if row is None else row[0]


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Explicit write transaction on an autocommit connection."""
    run(conn, "BEGIN IMMEDIATE")
    try:
        yield conn
        run(conn, "COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise


class Entity:
    """Base for every row-backed object."""

    def __init__(self) -> None:
        self._dirty = False
        self._stored = False

    def is_dirty(self) -> bool:
        return self._dirty

    def is_new(self) -> bool:
        return not self._stored

    @property
    def stored(self) -> bool:
        return self._stored

    def _mark_stored(self) -> None:
        self._stored = True
        self._dirty = False

    def _require_new(self, what: str) -> None:
        if self._stored:
            raise ImmutableEntityError(f"{what} is immutable")

    def _touch(self) -> None:
        self._dirty = True


def _where_sql(clauses: list[str]) -> str:
    return f" WHERE {' AND '.join(clauses)}" if clauses else ""


def _id_literal(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return ids.to_db(value) if 0 <= value <= 0xFFFFFFFFFFFFFFFF else None
    if isinstance(value, str):
        try:
            return ids.to_db(ids.id_from_string(value))
        except ValueError:
            return None
    return None


def _int_literal(value: Any) -> int | None:
    if isinstance(value, int):
        return int(value)
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _each(value: Any, convert: Callable[[Any], int | None]) -> Any:
    if isinstance(value, str) and "," in value:
        value = [v.strip() for v in value.split(",") if v.strip()]
    if isinstance(value, (list, tuple)):
        items = [convert(v) for v in value]
        return None if not items or any(v is None for v in items) else items
    return convert(value)


def value_mapper(
    id_columns: Sequence[str] = (), int_columns: Sequence[str] = ()
) -> Callable[[str, Any], Any]:
    """Build a filter value mapper for one table.

    Global id columns take the ``:hex`` form (or the unsigned integer) and
    compare against the signed stored value; integer columns take numbers
    or numeric strings. Other columns pass through. None rejects the value.
    """
    id_set = frozenset(id_columns)
    int_set = frozenset(int_columns)

    def map_value(column: str, value: Any) -> Any:
        if column in id_set:
            return _each(value, _id_literal)
        if column in int_set:
            return _each(value, _int_literal)
        return value

    return map_value


def count_rows(
    conn: sqlite3.Connection,
    table: str,
    where: list[str],
    args: list[Any],
    conditions: QueryConditions | None = None,
) -> int:
    clauses = list(where)
    params = list(args)
    if conditions is not None:
        fragment, extra = conditions.where()
        if fragment:
            clauses.append(f"({fragment})")
            params.extend(extra)
    return int(fetch_value(conn, f"SELECT COUNT(*) FROM {table}{_where_sql(clauses)}", params) or 0)


def list_rows(
    conn: sqlite3.Connection,
    *,
    table: str,
    columns: Sequence[str],
    where: list[str],
    args: list[Any],
    conditions: QueryConditions | None,
    default_sort: str,
    build: Callable[[sqlite3.Row], T],
    count: bool = False,
    max_limit: int = DEFAULT_MAX_LIMIT,
) -> QueryResults[T]:
    """Run a paged listing query.

    Args:
        table: Table to read
        columns: Columns to select
        where: Fixed WHERE clauses (joined with AND)
        args: Arguments of the fixed clauses
        conditions: Caller filter, sort and paging
        default_sort: Column sorted on when the caller gives no sort
        build: Row to item converter
        count: Also compute the total matching count
        max_limit: Hard cap on rows per page

    Returns:
        QueryResults holding the built items
    """
    results: QueryResults[T] = QueryResults(max_limit=max_limit)
    clauses = list(where)
    params = list(args)

    if conditions is not None:
        if conditions.offset is not None:
            results.set_offset(conditions.offset)
        if conditions.limit is not None:
            results.set_limit(conditions.limit)
        fragment, extra = conditions.where()
        if fragment:
            clauses.append(f"({fragment})")
            params.extend(extra)

    sort = conditions.sort if conditions is not None and conditions.sort else []
    if sort:
        for o in sort:
            results.append_sort(o.field, o.descending)
        order = order_by_sql(sort)
    else:
        results.append_sort(default_sort, False)
        order = default_sort

    sql = f"SELECT {', '.join(columns)} FROM {table}{_where_sql(clauses)} ORDER BY {order}"
    limit = results.query_limit()
    if limit > 0:
        sql += " LIMIT ? OFFSET ?"
        params.extend([limit, results.query_offset()])

    for row in fetch_all(conn, sql, params):
        results.append(build(row))

    if count:
        results.set_max_count(count_rows(conn, table, where, list(args), conditions))

    return results


class AuditedEntity(Entity):
    """Entity with creator / modifier ids and database-assigned timestamps."""

    def __init__(self) -> None:
        super().__init__()
        self._reset_audit()

    def _reset_audit(self) -> None:
        self._creator: int | None = None
        self._created: datetime | None = None
        self._modifier: int | None = None
        self._modified: datetime | None = None

    def _load_audit(self, row: sqlite3.Row) -> None:
        keys = row.keys()
        self._creator = ids.from_db(row["creator"])
        self._created = parse_db_timestamp(row["created"])
        if "modifier" in keys:
            self._modifier = ids.from_db(row["modifier"])
        if "modified" in keys:
            self._modified = parse_db_timestamp(row["modified"])

    @property
    def creator(self) -> int | None:
        return self._creator

    @property
    def created(self) -> datetime | None:
        return self._created

    @property
    def modifier(self) -> int | None:
        return self._modifier

    @property
    def modified(self) -> datetime | None:
        return self._modified

    def set_creator(self, user_id: int) -> int | None:
        self._require_new("Creator")
        current = self._creator
        self._creator = user_id
        self._touch()
        return current

    def set_modifier(self, user_id: int) -> int | None:
        current = self._modifier
        self._modifier = user_id
        self._touch()
        return current

    def _check_audit(self) -> None:
        if self.is_new() and self._creator is None:
            raise ValidationError("Creation user not set", "creator")
        if not self.is_new() and self._modifier is None:
            raise ValidationError("Modification user not set", "modifier")
