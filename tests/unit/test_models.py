"""
Unit tests for HTTP request models and listing parameters.

Tests cover:
- JSON filter parsing
- ListQuery to QueryConditions conversion
- Body model validation
"""

import pydantic
import pytest

from backend.vault_server.api.models import (
    CreateInvitationRequest,
    ListQuery,
    StateRequest,
    parse_filter,
)
from backend.vault_server.core import ids
from backend.vault_server.errors import ValidationError
from backend.vault_server.orm.registries import map_org_field, map_org_value
from backend.vault_server.query.conditions import OrderBy
from backend.vault_server.query.filters import Function, Value


class TestParseFilter:
    """Tests for parse_filter()."""

    def test_tree(self):
        f = parse_filter(
            '{"fn": "and", "args": ['
            '{"fn": "EQ", "args": [{"id": "alias"}, "acme"]},'
            '{"fn": "IN", "args": [{"id": "state"}, [0, 4]]}]}'
        )

        assert f.f.name == "AND"
        eq, in_ = f.f.parameters
        assert eq == Function("EQ", (Value("alias", identifier=True), Value("acme")))
        assert in_.parameters[1] == Value([0, 4])

    @pytest.mark.parametrize(
        "text",
        [
            "not json",
            '"alias"',
            '{"fn": "EQ", "args": "alias"}',
            '{"fn": "EQ", "args": [{"id": 5}, "x"]}',
            '{"fn": "EQ", "args": [{"id": "alias"}, {"a": 1}]}',
        ],
    )
    def test_malformed(self, text):
        with pytest.raises(ValidationError):
            parse_filter(text)

    def test_depth_limit(self):
        text = '{"fn": "NOT", "args": [' * 20 + '{"fn": "EQ", "args": [{"id": "a"}, 1]}' + "]}" * 20
        with pytest.raises(ValidationError, match="too deep"):
            parse_filter(text)


class TestListQuery:
    """Tests for ListQuery.conditions()."""

    def test_conditions(self):
        query = ListQuery(
            sort="-alias,name,bogus",
            offset=5,
            limit=10,
            filter='{"fn": "CONTAINS", "args": [{"id": "name"}, "Inc*"]}',
        )

        conditions = query.conditions(map_org_field)

        assert conditions.sort == [OrderBy("alias", True), OrderBy("name")]
        assert (conditions.offset, conditions.limit) == (5, 10)
        assert conditions.where() == ("name LIKE ? ESCAPE '\\'", ["Inc%"])

    def test_empty(self):
        conditions = ListQuery().conditions(map_org_field)

        assert conditions.sort == []
        assert conditions.where() == ("", [])

    def test_value_mapper(self):
        """Global ids in a filter reach SQL as their stored integer."""
        query = ListQuery(filter='{"fn": "EQ", "args": [{"id": "id"}, ":200000000"]}')

        conditions = query.conditions(map_org_field, map_org_value)

        assert conditions.where() == ("id_org = ?", [ids.to_db(ids.SYSTEM_ORGANIZATION)])

    def test_negative_paging_refused(self):
        with pytest.raises(pydantic.ValidationError):
            ListQuery(offset=-1)


class TestBodies:
    """Tests for request body models."""

    def test_state_bounds(self):
        assert StateRequest(set=2).clear == 0
        with pytest.raises(pydantic.ValidationError):
            StateRequest(set=0x10000)

    def test_invitation_roles_csv_or_list(self):
        assert CreateInvitationRequest(invitee="a@b.io", roles="1,2").roles == "1,2"
        assert CreateInvitationRequest(invitee="a@b.io", roles=[1, 2]).roles == [1, 2]

    def test_invitation_expiry_bounds(self):
        with pytest.raises(pydantic.ValidationError):
            CreateInvitationRequest(invitee="a@b.io", expires_in=0)
