"""
Paged listing results.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Generic, TypeVar

from .conditions import OrderBy

T = TypeVar("T")

DEFAULT_MAX_LIMIT = 100


class QueryResults(Generic[T]):
    """Items of one page plus the paging metadata used to produce it.

    ``limit`` 0 means "no explicit limit"; the hard ``max_limit`` still caps
    the number of rows fetched.
    """

    def __init__(self, max_limit: int = 0) -> None:
        self.items: list[T] = []
        self.sorted: list[OrderBy] = []
        self._offset = 0
        self._limit = 0
        self._max_limit = 0
        self._max_count = 0
        if max_limit:
            self.set_max_limit(max_limit)

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self):
        return iter(self.items)

    def append(self, item: T) -> None:
        self.items.append(item)

    def append_sort(self, name: str, descending: bool = False) -> None:
        self.sorted.append(OrderBy(name, descending))

    @property
    def offset(self) -> int:
        return 0 if self._limit == 0 else self._offset

    def set_offset(self, offset: int) -> None:
        self._offset = max(0, offset)

    @property
    def limit(self) -> int:
        if self._limit == 0:
            return self.max_limit
        return self._limit

    def set_limit(self, limit: int) -> None:
        if self._max_limit == 0 or limit < self._max_limit:
            self._limit = max(0, limit)
        else:
            self._limit = self._max_limit

    @property
    def max_limit(self) -> int:
        if self._limit == 0:
            return self.count
        if self._max_limit == 0:
            return self._limit + self._offset
        return self._max_limit

    def set_max_limit(self, limit: int) -> None:
        if self._limit > limit:
            self._limit = limit
        self._max_limit = limit

    def query_limit(self) -> int:
        """Row limit for the SELECT (0 means unbounded)."""
        return self._limit or self._max_limit

    def query_offset(self) -> int:
        return self._offset

    @property
    def count(self) -> int:
        return len(self.items)

    @property
    def max_count(self) -> int:
        return self._max_count or self.count

    def set_max_count(self, count: int) -> None:
        self._max_count = count

    def to_dict(self, render: Callable[[T], Any] | None = None) -> dict[str, Any]:
        return {
            "items": [render(i) for i in self.items] if render else list(self.items),
            "sort": [{"field": o.field, "descending": o.descending} for o in self.sorted],
            "offset": self.offset,
            "limit": self.limit,
            "max_limit": self.max_limit,
            "count": self.count,
            "max_count": self.max_count,
        }
