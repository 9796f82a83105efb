"""
Query conditions (filter, sort, paging) applied to listing queries.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from .filters import FieldMapper, Filter, FilterTranslator, ValueMapper

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class OrderBy:
    field: str
    descending: bool = False


@dataclass
class QueryConditions:
    """Filter, sort and paging for one listing call.

    Sort fields pass through the same field mapper as the filter; fields that
    map to nothing are skipped.
    """

    filter: FilterTranslator | None = None
    sort: list[OrderBy] = field(default_factory=list)
    offset: int | None = None
    limit: int | None = None
    map_field: FieldMapper | None = None

    @classmethod
    def build(
        cls,
        node: Filter | None = None,
        sort: list[tuple[str, bool]] | None = None,
        offset: int | None = None,
        limit: int | None = None,
        map_field: FieldMapper | None = None,
        map_value: ValueMapper | None = None,
    ) -> QueryConditions:
        q = cls(
            filter=FilterTranslator(node, map_field, map_value) if node is not None else None,
            offset=offset,
            limit=limit,
            map_field=map_field,
        )
        for name, descending in sort or []:
            q.append_sort(name, descending)
        return q

    def append_sort(self, name: str, descending: bool = False) -> bool:
        column = self.map_field(name) if self.map_field else name
        if not column or not _IDENTIFIER.match(column):
            return False
        self.sort.append(OrderBy(column, descending))
        return True

    def set_offset(self, offset: int) -> None:
        if offset < 0:
            raise ValueError("Offset must be >= 0")
        self.offset = offset

    def set_limit(self, limit: int) -> None:
        if limit < 0:
            raise ValueError("Limit must be >= 0")
        self.limit = limit

    def where(self) -> tuple[str, list[Any]]:
        """Translated WHERE fragment, or ("", []) when absent or invalid."""
        if self.filter is None:
            return "", []
        self.filter.transpile()
        if not self.filter.is_valid:
            return "", []
        return self.filter.where, self.filter.args


def order_by_sql(sort: list[OrderBy]) -> str:
    return ", ".join(f"{o.field} DESC" if o.descending else o.field for o in sort)
