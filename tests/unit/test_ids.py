"""
Unit tests for global identifiers.

Tests cover:
- Bit layout of group, shard, type and local id
- Signed storage conversion
- ``:hex`` rendering and parsing
- Route parameter references
"""

import pytest

from backend.vault_server.core import ids


class TestLayout:
    """Tests for make_id() and decode()."""

    def test_reference_layout(self):
        """Group, shard, type and local land in their documented bits."""
        gid = ids.make_id(2, 0xFE, 0xABC, 0x12345678)

        assert gid == 0x2ABC00FE12345678
        assert ids.shard_group(gid) == 2
        assert ids.shard(gid) == 0xABC
        assert ids.type_of(gid) == 0xFE
        assert ids.local(gid) == 0x12345678

    @pytest.mark.parametrize(
        "parts",
        [
            (0, 0, 0, 0),
            (1, ids.OTYPE_USER, 17, 1),
            (15, 0xFF, 0xFFF, 0xFFFFFFFF),
            (1, ids.OTYPE_STORE, 0x800, 0x7FFFFFFF),
        ],
    )
    def test_decode_inverts_make(self, parts):
        """decode(make_id(...)) returns the parts."""
        group, otype, shard, local = parts
        assert ids.decode(ids.make_id(group, otype, shard, local)) == (group, otype, shard, local)

    def test_reserved_bits_stay_zero(self):
        """Bits 47..40 are never set."""
        gid = ids.make_id(15, 0xFF, 0xFFF, 0xFFFFFFFF)
        assert (gid >> 40) & 0xFF == 0

    def test_inputs_are_masked(self):
        """Out of range parts do not bleed into neighbouring fields."""
        gid = ids.make_id(0x1F, 0x1FF, 0x1FFF, 0x1FFFFFFFF)
        assert ids.decode(gid) == (0xF, 0xFF, 0xFFF, 0xFFFFFFFF)

    def test_system_entities(self):
        """System administrator and organization live on the registry shard."""
        assert ids.decode(ids.SYSTEM_ADMINISTRATOR) == (0, ids.OTYPE_USER, 0, 0)
        assert ids.decode(ids.SYSTEM_ORGANIZATION) == (0, ids.OTYPE_ORG, 0, 0)
        assert ids.is_of_type(ids.SYSTEM_ORGANIZATION, ids.OTYPE_ORG)

    def test_system_entity_strings(self):
        """The type field starts at bit 32, so the strings are short."""
        assert ids.id_to_string(ids.SYSTEM_ADMINISTRATOR) == ":100000000"
        assert ids.id_to_string(ids.SYSTEM_ORGANIZATION) == ":200000000"
        assert ids.parse_ref(":200000000") == ids.IdRef(ids.SYSTEM_ORGANIZATION)


class TestStorage:
    """Tests for the signed SQLite representation."""

    def test_high_group_round_trips(self):
        """Ids with the top bit set survive the signed column."""
        gid = ids.make_id(0xF, ids.OTYPE_ORG, 1, 2)
        stored = ids.to_db(gid)

        assert stored < 0
        assert ids.from_db(stored) == gid

    def test_none_passes_through(self):
        assert ids.to_db(None) is None
        assert ids.from_db(None) is None


class TestStrings:
    """Tests for ``:hex`` ids."""

    def test_render_and_parse(self):
        gid = ids.make_id(1, ids.OTYPE_ORG, 5, 42)
        text = ids.id_to_string(gid)

        assert text == ":100500020000002a"
        assert ids.id_from_string(text) == gid

    @pytest.mark.parametrize("value", ["", ":", "abc", ":xyz", "1234"])
    def test_rejects_malformed(self, value):
        with pytest.raises(ValueError):
            ids.id_from_string(value)


class TestRefs:
    """Tests for parse_ref()."""

    def test_int_is_id(self):
        assert ids.parse_ref(42) == ids.IdRef(42)

    def test_hex_is_id(self):
        assert ids.parse_ref(":2a") == ids.IdRef(42)

    def test_email_is_lowercased(self):
        assert ids.parse_ref("Alice@Example.COM") == ids.EmailRef("alice@example.com")

    def test_alias_is_lowercased(self):
        assert ids.parse_ref(" Acme ") == ids.AliasRef("acme")

    def test_empty_is_refused(self):
        with pytest.raises(ValueError):
            ids.parse_ref("  ")
