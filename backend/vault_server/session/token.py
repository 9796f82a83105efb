"""
Store-session tokens.

A store session binds a store id to its unwrapped data key for a few
minutes. It is serialized as::

    /<store-hex>/<key-hex>/<expiry-hex>/

and kept server side under ``_s:<store-hex>`` in the client's session map.

Invariants:
    - extend_by is always > 0 (minutes)
    - A token whose expiry is <= 0 never imports
    - Every successful use pushes the expiry extend_by minutes past now

How to change safely:
    - The text framing is read back by older processes during rollout;
      add fields only at the end
"""

from __future__ import annotations

import time

from ..errors import ValidationError

SESSION_KEY_PREFIX = "_s:"


def session_key(store_id: int) -> str:
    """Session map key holding the token for ``store_id``."""
    return f"{SESSION_KEY_PREFIX}{store_id:x}"


class StoreSession:
    """Unwrapped store key with a sliding expiry."""

    def __init__(self, store: int, key: bytes, extend_by: int, expiration: int | None = None) -> None:
        if not key:
            raise ValidationError("Store 'key' missing value", "key")
        if extend_by <= 0:
            raise ValidationError("Invalid Value for 'valid_for'", "extend_by")
        self._store = store
        self._key = key
        self._extend_by = extend_by
        self._expiration = 0
        if expiration is None:
            self.extend()
        else:
            self._expiration = expiration

    @classmethod
    def import_token(cls, value: str, extend_by: int) -> StoreSession:
        """Parse an exported token.

        Raises:
            ValidationError: On bad framing, bad hex, or a non-positive expiry
        """
        if extend_by <= 0:
            raise ValidationError("Invalid Value for 'valid_for'", "extend_by")
        value = (value or "").strip()
        if len(value) < 2 or value[0] != "/" or value[-1] != "/":
            raise ValidationError("Not a valid store session token", "token")
        parts = value[1:-1].split("/")
        if len(parts) != 3 or not all(parts):
            raise ValidationError("Not a valid store session token", "token")
        try:
            store = int(parts[0], 16)
            key = bytes.fromhex(parts[1])
            expiration = int(parts[2], 16)
        except ValueError as e:
            raise ValidationError(f"Not a valid store session token ({e})", "token") from e
        if store <= 0:
            raise ValidationError("Store session has no store", "token")
        if expiration <= 0:
            raise ValidationError("Store session has no expiration", "token")
        return cls(store, key, extend_by, expiration)

    @property
    def store(self) -> int:
        return self._store

    @property
    def key(self) -> bytes:
        return self._key

    @property
    def extend_by(self) -> int:
        return self._extend_by

    @property
    def expiration(self) -> int:
        return self._expiration

    def is_valid(self) -> bool:
        return self._store > 0 and bool(self._key) and self._expiration > 0 and self._extend_by > 0

    def is_expired(self, now: float | None = None) -> bool:
        if not self.is_valid():
            return True
        return self._expiration < int(now if now is not None else time.time())

    def extend(self, minutes: int = 0, now: float | None = None) -> int:
        """Move the expiry ``minutes`` (default extend_by) past now."""
        by = minutes or self._extend_by
        self._expiration = int(now if now is not None else time.time()) + by * 60
        return self._expiration

    def export(self) -> str:
        return f"/{self._store:x}/{self._key.hex()}/{self._expiration:x}/"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, StoreSession):
            return NotImplemented
        return (
            self._store == other._store
            and self._key == other._key
            and self._expiration == other._expiration
        )

    def __repr__(self) -> str:
        return f"StoreSession(store={self._store:#x}, expiration={self._expiration})"
