"""
Unit tests for listing filters, conditions and results.

Tests cover:
- Filter translation to WHERE fragments
- Value escaping and wildcards
- Field mapping and error reporting
- Value mappers for global id and integer columns
- Sort handling in QueryConditions
- Paging metadata of QueryResults
"""

import pytest

from backend.vault_server.core import ids
from backend.vault_server.orm.base import value_mapper
from backend.vault_server.query.conditions import OrderBy, QueryConditions, order_by_sql
from backend.vault_server.query.filters import (
    Filter,
    FilterTranslator,
    escape_value,
    fn,
    ident,
)
from backend.vault_server.query.results import QueryResults

FIELDS = {"alias": "alias", "name": "name", "state": "state"}


def map_field(name):
    return FIELDS.get(name, "")


def translate(node):
    t = FilterTranslator(Filter(node), map_field)
    return t.transpile(), t


class TestFilterTranslator:
    """Tests for FilterTranslator."""

    def test_eq(self):
        message, t = translate(fn("EQ", ident("alias"), "acme"))

        assert message == ""
        assert t.is_valid
        assert t.where == "alias = ?"
        assert t.args == ["acme"]

    def test_contains_wildcards(self):
        message, t = translate(fn("CONTAINS", ident("name"), "a*b"))

        assert message == ""
        assert t.where == "name LIKE ? ESCAPE '\\'"
        assert t.args == ["a%b"]

    def test_and(self):
        message, t = translate(
            fn("AND", fn("EQ", ident("alias"), "acme"), fn("CONTAINS", ident("name"), "Inc*"))
        )

        assert message == ""
        assert t.where == "(alias = ?) AND (name LIKE ? ESCAPE '\\')"
        assert t.args == ["acme", "Inc%"]

    def test_not(self):
        message, t = translate(fn("NOT", fn("GT", ident("state"), 0)))

        assert message == ""
        assert t.where == "NOT(state > ?)"
        assert t.args == [0]

    def test_in_list(self):
        message, t = translate(fn("IN", ident("alias"), ["a", "b", "c"]))

        assert message == ""
        assert t.where == "alias IN (?, ?, ?)"
        assert t.args == ["a", "b", "c"]

    def test_in_csv(self):
        message, t = translate(fn("IN", ident("alias"), "a, b"))

        assert message == ""
        assert t.args == ["a", "b"]

    def test_unknown_field(self):
        message, t = translate(fn("EQ", ident("password"), "x"))

        assert message == "Invalid Field [password]"
        assert not t.is_valid
        assert t.where == ""
        assert t.args == []

    def test_unknown_function(self):
        message, _ = translate(fn("REGEX", ident("alias"), "x"))
        assert message == "Unsupported Function [REGEX]"

    def test_missing_parameter(self):
        message, _ = translate(fn("AND", fn("EQ", ident("alias"), "x")))
        assert message.startswith("Invalid Parameter")

    def test_literal_values_never_reach_sql(self):
        """Quotes stay in the argument list, escaped."""
        message, t = translate(fn("EQ", ident("name"), "x' OR '1'='1"))

        assert message == ""
        assert "'" not in t.where
        assert t.args == ["x\\' OR \\'1\\'=\\'1"]

    def test_value_mapper_can_refuse(self):
        t = FilterTranslator(
            Filter(fn("EQ", ident("state"), "blocked")),
            map_field,
            lambda column, value: value if isinstance(value, int) else None,
        )
        assert t.transpile() == "Invalid Field [state] Value [blocked]"


class TestEscape:
    """Tests for escape_value()."""

    def test_escapes(self):
        assert escape_value('a\\b"c\'d%e') == 'a\\\\b\\"c\\\'d\\%e'

    def test_wildcards_only_when_asked(self):
        assert escape_value("a*b") == "a*b"
        assert escape_value("a*b", wildcards=True) == "a%b"

    def test_non_strings_pass_through(self):
        assert escape_value(5) == 5


class TestValueMapper:
    """Tests for value_mapper()."""

    map_value = staticmethod(value_mapper(id_columns=("id_user",), int_columns=("state",)))

    def test_hex_id_becomes_stored_integer(self):
        gid = ids.make_id(15, ids.OTYPE_USER, 3, 9)

        assert self.map_value("id_user", ids.id_to_string(gid)) == ids.to_db(gid)
        assert self.map_value("id_user", ids.id_to_string(gid)) < 0

    def test_unsigned_integer_id(self):
        assert self.map_value("id_user", ids.SYSTEM_ADMINISTRATOR) == ids.SYSTEM_ADMINISTRATOR

    @pytest.mark.parametrize("value", ["alice", ":xyz", -1, True, 1.5])
    def test_bad_id_refused(self, value):
        assert self.map_value("id_user", value) is None

    def test_id_lists(self):
        a, b = ids.make_id(1, ids.OTYPE_USER, 1, 1), ids.make_id(1, ids.OTYPE_USER, 2, 2)

        assert self.map_value("id_user", [ids.id_to_string(a), ids.id_to_string(b)]) == [a, b]
        assert self.map_value("id_user", f"{ids.id_to_string(a)}, {ids.id_to_string(b)}") == [a, b]
        assert self.map_value("id_user", [ids.id_to_string(a), "bogus"]) is None

    def test_integers(self):
        assert self.map_value("state", "2") == 2
        assert self.map_value("state", 2.0) == 2
        assert self.map_value("state", "open") is None

    def test_other_columns_pass_through(self):
        assert self.map_value("name", ":1") == ":1"

    def test_translator_uses_mapped_value(self):
        t = FilterTranslator(
            Filter(fn("EQ", ident("id"), ":2a")),
            lambda name: {"id": "id_user"}.get(name, ""),
            self.map_value,
        )

        assert t.transpile() == ""
        assert (t.where, t.args) == ("id_user = ?", [42])


class TestQueryConditions:
    """Tests for QueryConditions."""

    def test_build(self):
        q = QueryConditions.build(
            node=Filter(fn("EQ", ident("alias"), "acme")),
            sort=[("name", False), ("alias", True), ("secret", False)],
            offset=10,
            limit=5,
            map_field=map_field,
        )

        assert q.where() == ("alias = ?", ["acme"])
        assert q.sort == [OrderBy("name"), OrderBy("alias", True)]
        assert order_by_sql(q.sort) == "name, alias DESC"
        assert (q.offset, q.limit) == (10, 5)

    def test_invalid_filter_yields_no_where(self):
        q = QueryConditions.build(node=Filter(fn("EQ", ident("nope"), 1)), map_field=map_field)
        assert q.where() == ("", [])

    def test_negative_paging(self):
        q = QueryConditions()
        with pytest.raises(ValueError):
            q.set_offset(-1)
        with pytest.raises(ValueError):
            q.set_limit(-1)


class TestQueryResults:
    """Tests for QueryResults."""

    def test_max_limit_caps_limit(self):
        r = QueryResults(max_limit=100)
        r.set_limit(500)

        assert r.limit == 100
        assert r.query_limit() == 100

    def test_no_limit_uses_max(self):
        r = QueryResults(max_limit=100)
        assert r.query_limit() == 100

    def test_to_dict(self):
        r = QueryResults(max_limit=100)
        r.set_limit(2)
        r.set_offset(4)
        r.append("a")
        r.append("b")
        r.append_sort("alias", True)
        r.set_max_count(9)

        assert r.to_dict(str.upper) == {
            "items": ["A", "B"],
            "sort": [{"field": "alias", "descending": True}],
            "offset": 4,
            "limit": 2,
            "max_limit": 100,
            "count": 2,
            "max_count": 9,
        }

    def test_offset_ignored_without_limit(self):
        r = QueryResults()
        r.set_offset(4)
        assert r.offset == 0
