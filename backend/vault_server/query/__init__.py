"""
Listing support: filter AST translation, query conditions and paged results.
"""

from .conditions import OrderBy, QueryConditions
from .filters import Filter, FilterTranslator, Function, Value, escape_value, fn, ident
from .results import DEFAULT_MAX_LIMIT, QueryResults

__all__ = [
    "DEFAULT_MAX_LIMIT",
    "Filter",
    "FilterTranslator",
    "Function",
    "OrderBy",
    "QueryConditions",
    "QueryResults",
    "Value",
    "escape_value",
    "fn",
    "ident",
]
