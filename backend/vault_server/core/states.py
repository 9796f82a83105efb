"""
State bitfields shared by users, organizations, stores and memberships.

    bits 11..0   function states (user settable)
    bits 15..12  markers (set by internal flows only)
"""

from __future__ import annotations

# Functions
STATE_INACTIVE = 0x0001
STATE_BLOCKED = 0x0002
STATE_READONLY = 0x0004

# Markers
STATE_SYSTEM = 0x1000
STATE_DELETE = 0x2000

# Masks
STATE_MASK_FUNCTIONS = 0x0FFF
STATE_MASK_MARKERS = 0xF000
STATE_MASK = 0xFFFF

# Any of these refuses access
STATE_DENY_ACCESS = STATE_INACTIVE | STATE_BLOCKED | STATE_DELETE


def has_any(state: int, test: int) -> bool:
    return (state & test) != 0


def has_all(state: int, test: int) -> bool:
    return (state & test) == test


def set_states(state: int, bits: int) -> int:
    return (state | bits) & STATE_MASK


def clear_states(state: int, bits: int) -> int:
    return state & ~bits & STATE_MASK


def function_bits(bits: int) -> int:
    """Restrict externally supplied bits to the function range."""
    return bits & STATE_MASK_FUNCTIONS


def is_active(state: int) -> bool:
    return not has_any(state, STATE_DENY_ACCESS)


def is_blocked(state: int) -> bool:
    return has_any(state, STATE_BLOCKED | STATE_DELETE)


def is_deleted(state: int) -> bool:
    return has_all(state, STATE_DELETE)


def is_readonly(state: int) -> bool:
    return has_all(state, STATE_READONLY)


def is_system(state: int) -> bool:
    return has_all(state, STATE_SYSTEM)


class StateMixin:
    """State accessors for entities holding ``_state`` and ``_dirty``."""

    _state: int
    _dirty: bool

    @property
    def state(self) -> int:
        return self._state

    def has_any_states(self, states: int) -> bool:
        return has_any(self._state, states)

    def has_all_states(self, states: int) -> bool:
        return has_all(self._state, states)

    def set_states(self, states: int) -> int:
        current = self._state
        self._state = set_states(current, states)
        if self._state != current:
            self._dirty = True
        return current

    def clear_states(self, states: int) -> int:
        current = self._state
        self._state = clear_states(current, states)
        if self._state != current:
            self._dirty = True
        return current

    def is_active(self) -> bool:
        return is_active(self._state)

    def is_blocked(self) -> bool:
        return is_blocked(self._state)

    def is_deleted(self) -> bool:
        return is_deleted(self._state)

    def is_readonly(self) -> bool:
        return is_readonly(self._state)

    def is_system(self) -> bool:
        return is_system(self._state)
