"""
Unit tests for state bits, timestamps, validators and JSON maps.

Tests cover:
- State bit helpers and the StateMixin change tracking
- Database and RFC 3339 timestamp handling
- Alias, email and template name validation
- Path addressed MapWrapper
"""

from datetime import datetime, timedelta, timezone

import pytest

from backend.vault_server.core import states, timeutil, validators
from backend.vault_server.core.values import MapWrapper


class _Stateful(states.StateMixin):
    def __init__(self, state=0):
        self._state = state
        self._dirty = False


class TestStates:
    """Tests for state bitfields."""

    def test_deny_access_bits(self):
        assert not states.is_active(states.STATE_INACTIVE)
        assert not states.is_active(states.STATE_BLOCKED)
        assert not states.is_active(states.STATE_DELETE)
        assert states.is_active(states.STATE_READONLY | states.STATE_SYSTEM)

    def test_deleted_counts_as_blocked(self):
        assert states.is_blocked(states.STATE_DELETE)

    def test_function_bits_drop_markers(self):
        assert states.function_bits(states.STATE_SYSTEM | states.STATE_BLOCKED) == states.STATE_BLOCKED

    def test_set_returns_previous_and_marks_dirty(self):
        entity = _Stateful(states.STATE_READONLY)

        previous = entity.set_states(states.STATE_BLOCKED)

        assert previous == states.STATE_READONLY
        assert entity.state == states.STATE_READONLY | states.STATE_BLOCKED
        assert entity._dirty is True

    def test_unchanged_state_stays_clean(self):
        """Setting bits that are already set is not a change."""
        entity = _Stateful(states.STATE_BLOCKED)

        entity.set_states(states.STATE_BLOCKED)
        entity.clear_states(states.STATE_READONLY)

        assert entity._dirty is False


class TestTimeutil:
    """Tests for timestamp helpers."""

    def test_parse_db_timestamp(self):
        parsed = timeutil.parse_db_timestamp("2024-01-02 03:04:05")
        assert parsed == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [None, "", "yesterday"])
    def test_parse_invalid(self, value):
        assert timeutil.parse_db_timestamp(value) is None

    def test_rfc3339(self):
        value = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert timeutil.to_rfc3339(value) == "2024-01-02T03:04:05Z"
        assert timeutil.to_rfc3339(None) is None

    def test_db_round_trip(self):
        value = datetime(2030, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
        assert timeutil.parse_db_timestamp(timeutil.to_db_timestamp(value)) == value

    def test_days_from_now(self):
        expiration = timeutil.days_from_now(1)
        assert not timeutil.is_expired(expiration)
        assert timeutil.is_expired(expiration, now=expiration + timedelta(seconds=1))

    def test_days_from_now_requires_positive(self):
        with pytest.raises(ValueError):
            timeutil.days_from_now(0)

    def test_missing_expiration_never_expires(self):
        assert timeutil.is_expired(None) is False


class TestValidators:
    """Tests for format validators."""

    @pytest.mark.parametrize("alias", ["acme", "a1", "my-org.eu", "user_42"])
    def test_valid_aliases(self, alias):
        assert validators.is_valid_alias(alias)

    @pytest.mark.parametrize("alias", ["", "a", "-acme", "Acme", "a b", "x" * 65])
    def test_invalid_aliases(self, alias):
        assert not validators.is_valid_alias(alias)

    def test_emails(self):
        assert validators.is_valid_email("alice@example.com")
        assert not validators.is_valid_email("alice")
        assert not validators.is_valid_email("alice@example")

    def test_template_names(self):
        assert validators.is_valid_template_name("login")
        assert validators.is_valid_template_name("note:v2")
        assert not validators.is_valid_template_name("Login")


class TestMapWrapper:
    """Tests for MapWrapper."""

    def test_set_creates_intermediate_objects(self):
        m = MapWrapper()
        m.set("a.b.c", 1)

        assert m.get("a.b.c") == 1
        assert m.to_dict() == {"a": {"b": {"c": 1}}}
        assert m.is_modified()

    def test_get_default(self):
        m = MapWrapper({"a": 1})
        assert m.get("a.b", "missing") == "missing"
        assert m.has("a")
        assert not m.has("b")

    def test_set_through_scalar_fails(self):
        m = MapWrapper({"a": 1})
        with pytest.raises(ValueError):
            m.set("a.b", 2)

    def test_delete(self):
        m = MapWrapper({"a": {"b": 1, "c": 2}})

        assert m.delete("a.b") is True
        assert m.delete("a.b") is False
        assert m.to_dict() == {"a": {"c": 2}}

    def test_json(self):
        m = MapWrapper()
        m.import_json('{"b": 1, "a": [1, 2]}')

        assert not m.is_modified()
        assert m.export_json() == '{"a":[1,2],"b":1}'

    def test_import_requires_object(self):
        with pytest.raises(ValueError):
            MapWrapper().import_json("[1, 2]")

    def test_copies_are_independent(self):
        source = {"a": {"b": 1}}
        m = MapWrapper(source)
        m.set("a.b", 2)

        assert source["a"]["b"] == 1
        assert m.to_dict() is not m.to_dict()
