"""
Global identifier codec for the object vault.

Every first-class entity is addressed by a 64-bit global id that carries the
location of its canonical row:

    bits 63..60  shard group   (4 bits)
    bits 59..48  shard id      (12 bits)
    bits 47..40  reserved      (always zero)
    bits 39..32  object type   (8 bits)
    bits 31..0   local id      (32 bits, the row id inside the shard)

Invariants:
    - Inputs are masked to their field width before assembly
    - Shard routing only looks at group and shard, never at the type
    - String form is ":" followed by lowercase hex without leading zeros

How to change safely:
    - The layout is persisted in every registry row; never move a field
    - New object types take unused type codes only
"""

from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass

# Field widths
GROUP_MASK = 0xF
SHARD_MASK = 0xFFF
TYPE_MASK = 0xFF
LOCAL_MASK = 0xFFFFFFFF

GROUP_SHIFT = 60
SHARD_SHIFT = 48
TYPE_SHIFT = 32

MAX_SHARD_ID = SHARD_MASK

# Object types
OTYPE_USER = 0x01
OTYPE_ORG = 0x02
OTYPE_STORE = 0x03
OTYPE_ACTION = 0xFB
OTYPE_REQUEST = 0xFC
OTYPE_KEY = 0xFD
OTYPE_INVITATION = 0xFE
OTYPE_OTHER = 0xFF

# Registry lives on group 0, shard 0; data shards on group 1
REGISTRY_GROUP = 0
REGISTRY_SHARD = 0
DATA_GROUP = 1


def make_id(group: int, otype: int, shard: int, local: int) -> int:
    """Assemble a global id from its parts."""
    return (
        ((group & GROUP_MASK) << GROUP_SHIFT)
        | ((shard & SHARD_MASK) << SHARD_SHIFT)
        | ((otype & TYPE_MASK) << TYPE_SHIFT)
        | (local & LOCAL_MASK)
    )


def shard_group(gid: int) -> int:
    return (gid >> GROUP_SHIFT) & GROUP_MASK


def shard(gid: int) -> int:
    return (gid >> SHARD_SHIFT) & SHARD_MASK


def type_of(gid: int) -> int:
    return (gid >> TYPE_SHIFT) & TYPE_MASK


def local(gid: int) -> int:
    return gid & LOCAL_MASK


def decode(gid: int) -> tuple[int, int, int, int]:
    """Split a global id into (group, type, shard, local)."""
    return shard_group(gid), type_of(gid), shard(gid), local(gid)


def is_of_type(gid: int, otype: int) -> bool:
    return type_of(gid) == (otype & TYPE_MASK)


# Rendered ":100000000" and ":200000000"; the type sits at bit 32
SYSTEM_ADMINISTRATOR = make_id(REGISTRY_GROUP, OTYPE_USER, REGISTRY_SHARD, 0)
SYSTEM_ORGANIZATION = make_id(REGISTRY_GROUP, OTYPE_ORG, REGISTRY_SHARD, 0)


class _ShardIdGenerator:
    """Process-wide PRNG for shard placement.

    Seeded once from the wall clock; not used for anything secret.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rng: random.Random | None = None

    def next_shard(self) -> int:
        with self._lock:
            if self._rng is None:
                self._rng = random.Random(time.time_ns())
            return self._rng.getrandbits(32) & SHARD_MASK

    def next_local(self) -> int:
        with self._lock:
            if self._rng is None:
                self._rng = random.Random(time.time_ns())
            return self._rng.getrandbits(32)


_generator = _ShardIdGenerator()


def random_shard_id() -> int:
    """Pick a shard id in [0, 4095]."""
    return _generator.next_shard()


def random_id(group: int, otype: int, local_id: int) -> int:
    """Global id on a random shard of ``group``."""
    return make_id(group, otype, random_shard_id(), local_id)


def to_db(gid: int | None) -> int | None:
    """Store an unsigned 64-bit id in a signed SQLite INTEGER column."""
    if gid is None:
        return None
    return gid - (1 << 64) if gid >= (1 << 63) else gid


def from_db(value: int | None) -> int | None:
    """Inverse of to_db()."""
    if value is None:
        return None
    return value + (1 << 64) if value < 0 else value


def id_to_string(gid: int) -> str:
    """Render a global id as ``:hex``."""
    return f":{gid:x}"


def id_from_string(value: str) -> int:
    """Parse the ``:hex`` form of a global id.

    Raises:
        ValueError: If the string is not a valid ``:hex`` id
    """
    value = value.strip()
    if not value.startswith(":") or len(value) < 2:
        raise ValueError(f"Invalid global id: {value!r}")
    gid = int(value[1:], 16)
    if gid < 0 or gid > 0xFFFFFFFFFFFFFFFF:
        raise ValueError(f"Global id out of range: {value!r}")
    return gid


@dataclass(frozen=True)
class IdRef:
    """Reference by global id."""

    value: int


@dataclass(frozen=True)
class AliasRef:
    """Reference by alias (username, org alias, store alias)."""

    value: str


@dataclass(frozen=True)
class EmailRef:
    """Reference by email address."""

    value: str


Ref = IdRef | AliasRef | EmailRef


def parse_ref(value: str | int) -> Ref:
    """Normalize a route parameter into a reference.

    ``":200000000"`` becomes an IdRef, anything with an ``@`` an EmailRef,
    everything else a lowercased AliasRef.

    Raises:
        ValueError: If the value is empty or a malformed id
    """
    if isinstance(value, int):
        return IdRef(value)

    value = value.strip()
    if not value:
        raise ValueError("Empty reference")
    if value.startswith(":"):
        return IdRef(id_from_string(value))
    if "@" in value:
        return EmailRef(value.lower())
    return AliasRef(value.lower())
