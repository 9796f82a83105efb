"""
Filter AST and the AST to SQL WHERE translator.

The upstream filter-expression parser produces a tree of Function and Value
nodes wrapped in a Filter. The translator walks that tree and emits a
parameterized WHERE fragment, remapping external field names and values to
their database counterparts.

Supported functions:
    NOT(f), AND(f1, f2), OR(f1, f2)
    EQ, NEQ, GT, GTE, LT, LTE, CONTAINS, IN over (identifier, value)

Invariants:
    - Field names only reach the SQL text after passing the field mapper
    - Values only travel as parameters, never inside the SQL text
    - A translation error leaves the translator invalid (no WHERE applied)
    - CONTAINS declares backslash as its LIKE escape, so an escaped ``%``
      matches only a literal percent sign
    - Output is computed once and cached until reset()

How to change safely:
    - New operators need both a dispatch entry and a test in test_query.py
    - Keep the escaping rules in escape_value(); callers rely on them
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

# Upstream lexers substitute '*' with the replacement character
WILDCARD_PLACEHOLDER = "\ufffd"

FieldMapper = Callable[[str], str]
ValueMapper = Callable[[str, Any], Any]


@dataclass(frozen=True)
class Value:
    """Leaf node: an identifier or a literal."""

    literal: Any
    identifier: bool = False


@dataclass(frozen=True)
class Function:
    """Function node: ``name(parameters...)``."""

    name: str
    parameters: tuple[Function | Value, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Filter:
    """Root of a parsed filter expression."""

    f: Function


def ident(name: str) -> Value:
    return Value(name, identifier=True)


def fn(name: str, *parameters: Function | Value | Any) -> Function:
    """Build a Function node; bare literals are wrapped in Value."""
    params = tuple(p if isinstance(p, (Function, Value)) else Value(p) for p in parameters)
    return Function(name.upper(), params)


def _null_field_mapper(name: str) -> str:
    return name


def _null_value_mapper(name: str, value: Any) -> Any:
    return value


def escape_value(value: Any, wildcards: bool = False) -> Any:
    """Escape a string value.

    Backslash, single and double quotes and ``%`` are backslash escaped.
    With ``wildcards`` set, ``*`` (or the upstream placeholder) becomes ``%``.
    """
    if not isinstance(value, str):
        return value
    s = value.replace("\\", "\\\\")
    s = s.replace('"', '\\"')
    s = s.replace("'", "\\'")
    s = s.replace("%", "\\%")
    if wildcards:
        s = s.replace("*", "%").replace(WILDCARD_PLACEHOLDER, "%")
    return s


class FilterTranslator:
    """Translate a Filter AST into a WHERE fragment plus arguments.

    Example:
        >>> t = FilterTranslator(Filter(fn("EQ", ident("alias"), "acme")))
        >>> t.transpile()
        ''
        >>> t.where, t.args
        ('alias = ?', ['acme'])
    """

    _BINARY = {
        "EQ": "=",
        "NEQ": "!=",
        "GT": ">",
        "GTE": ">=",
        "LT": "<",
        "LTE": "<=",
    }

    def __init__(
        self,
        node: Filter | None,
        map_field: FieldMapper | None = None,
        map_value: ValueMapper | None = None,
    ) -> None:
        if node is not None and not isinstance(node, Filter):
            logger.warning("Invalid AST node type, expecting Filter", extra={"type": type(node).__name__})
            node = None
        self.filter = node
        self.map_field = map_field or _null_field_mapper
        self.map_value = map_value or _null_value_mapper
        self._where: list[str] = []
        self._args: list[Any] = []
        self._valid = False
        self._processed = False

    def transpile(self) -> str:
        """Translate the filter.

        Returns:
            Empty string on success (or when already translated), otherwise
            an error message; on error the translator is left invalid.
        """
        if self._processed or self.filter is None:
            return ""
        self._where = []
        self._args = []
        message = self._function(self.filter.f)
        self._valid = message == ""
        self._processed = self._valid
        if message:
            logger.debug("Filter translation failed", extra={"error": message})
        return message

    def reset(self) -> None:
        self._where = []
        self._args = []
        self._valid = False
        self._processed = False

    @property
    def is_valid(self) -> bool:
        return self._valid

    @property
    def where(self) -> str:
        return "".join(self._where) if self._valid else ""

    @property
    def args(self) -> list[Any]:
        return list(self._args) if self._valid else []

    def _function(self, f: Function) -> str:
        name = f.name.upper()
        if name == "NOT":
            return self._not(f)
        if name in ("AND", "OR"):
            return self._binary_logical(f, name)
        if name in self._BINARY:
            return self._binary_operator(f, self._BINARY[name])
        if name == "CONTAINS":
            return self._contains(f)
        if name == "IN":
            return self._in(f)
        return f"Unsupported Function [{f.name}]"

    def _function_param(self, f: Function, index: int) -> Function | str:
        if len(f.parameters) <= index or not isinstance(f.parameters[index], Function):
            return f"Invalid Parameter [{index}] for [{f.name}]"
        return f.parameters[index]

    def _value_params(self, f: Function) -> tuple[Value, Value] | str:
        if len(f.parameters) != 2 or not all(isinstance(p, Value) for p in f.parameters):
            return f"Invalid Parameters for [{f.name}]"
        return f.parameters[0], f.parameters[1]

    def _not(self, f: Function) -> str:
        inner = self._function_param(f, 0)
        if isinstance(inner, str):
            return inner
        self._where.append("NOT(")
        message = self._function(inner)
        if message:
            return message
        self._where.append(")")
        return ""

    def _binary_logical(self, f: Function, op: str) -> str:
        left = self._function_param(f, 0)
        if isinstance(left, str):
            return left
        right = self._function_param(f, 1)
        if isinstance(right, str):
            return right

        self._where.append("(")
        message = self._function(left)
        if message:
            return message
        self._where.append(f") {op} (")
        message = self._function(right)
        if message:
            return message
        self._where.append(")")
        return ""

    def _mapped(self, f: Function) -> tuple[str, Any] | str:
        params = self._value_params(f)
        if isinstance(params, str):
            return params
        name, value = params
        column = self.map_field(str(name.literal))
        if not column:
            return f"Invalid Field [{name.literal}]"
        mapped = self.map_value(column, value.literal)
        if mapped is None:
            return f"Invalid Field [{name.literal}] Value [{value.literal}]"
        return column, mapped

    def _binary_operator(self, f: Function, op: str) -> str:
        mapped = self._mapped(f)
        if isinstance(mapped, str):
            return mapped
        column, value = mapped
        self._where.append(f"{column} {op} ?")
        self._args.append(escape_value(value))
        return ""

    def _contains(self, f: Function) -> str:
        mapped = self._mapped(f)
        if isinstance(mapped, str):
            return mapped
        column, value = mapped
        self._where.append(f"{column} LIKE ? ESCAPE '\\'")
        self._args.append(escape_value(value, wildcards=True))
        return ""

    def _in(self, f: Function) -> str:
        mapped = self._mapped(f)
        if isinstance(mapped, str):
            return mapped
        column, value = mapped
        if isinstance(value, str):
            values = [v.strip() for v in value.split(",") if v.strip()]
        elif isinstance(value, (list, tuple, set)):
            values = list(value)
        else:
            values = [value]
        if not values:
            return f"Invalid Field [{column}] Value [{value}]"
        self._where.append(f"{column} IN ({', '.join('?' for _ in values)})")
        self._args.extend(escape_value(v) for v in values)
        return ""
