"""
Wrapped key blobs (``ciphers`` table).

A key row seals a payload (typically a store data key handed over through
an invitation) under a fresh random key. The random key is returned to the
caller once and never stored.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from datetime import datetime

from ..core import crypto, ids
from ..core.timeutil import days_from_now, parse_db_timestamp, to_db_timestamp, to_rfc3339
from ..errors import ImmutableEntityError, StorageError, ValidationError
from .base import Entity, fetch_one, run

logger = logging.getLogger(__name__)


class Key(Entity):
    """Immutable sealed payload."""

    def __init__(self) -> None:
        super().__init__()
        self._reset()

    def _reset(self) -> None:
        self._id: int | None = None
        self._ciphertext: bytes | None = None
        self._expiration: datetime | None = None
        self._creator: int | None = None
        self._created: datetime | None = None
        self._stored = False
        self._dirty = False

    @classmethod
    def new_key(cls, creator: int, payload: bytes, expiration: datetime) -> tuple[bytes, Key]:
        """Seal ``payload`` under a fresh key.

        Returns:
            (key, entity); the key is needed to open the payload later
        """
        k = cls()
        key = k.encrypt_key(creator, payload)
        k.set_expiration(expiration)
        return key, k

    @property
    def id(self) -> int | None:
        return self._id

    @property
    def ciphertext(self) -> bytes | None:
        return self._ciphertext

    @property
    def expiration(self) -> datetime | None:
        return self._expiration

    def expiration_utc(self) -> str | None:
        return to_rfc3339(self._expiration)

    @property
    def creator(self) -> int | None:
        return self._creator

    @property
    def created(self) -> datetime | None:
        return self._created

    def is_valid(self) -> bool:
        return bool(self._ciphertext) and self._creator is not None

    def by_id(self, conn: sqlite3.Connection, local_id: int) -> bool:
        self._reset()
        row = fetch_one(
            conn,
            "SELECT id, ciphertext, expiration, id_creator, created FROM ciphers WHERE id = ?",
            (local_id,),
        )
        if row is None:
            return False
        self._id = row["id"]
        self._ciphertext = bytes(row["ciphertext"])
        self._expiration = parse_db_timestamp(row["expiration"])
        self._creator = ids.from_db(row["id_creator"])
        self._created = parse_db_timestamp(row["created"])
        self._stored = True
        return True

    def set_expiration(self, expiration: datetime) -> None:
        self._require_new("Key")
        self._expiration = expiration
        self._touch()

    def set_expires_in(self, days: int) -> None:
        self.set_expiration(days_from_now(days))

    def encrypt_key(self, creator: int, payload: bytes) -> bytes:
        self._require_new("Key")
        self._creator = creator
        salt = crypto.random_alphanumeric_punctuation(128)
        key = crypto.sha256(f"{creator}:{salt}:{time.time_ns()}")
        self._ciphertext = crypto.seal(key, payload)
        self._touch()
        return key

    def decrypt_key(self, key: bytes) -> bytes | None:
        """Open the payload; None when nothing is stored.

        Raises:
            CryptoError: If ``key`` does not open the payload
        """
        if not self._ciphertext:
            return None
        return crypto.open_sealed(key, self._ciphertext)

    def flush(self, conn: sqlite3.Connection, force: bool = False) -> bool:
        if not force and not self._dirty:
            return False
        if self._stored:
            raise ImmutableEntityError("Key is immutable")
        if not self.is_valid():
            raise ValidationError("Invalid key", "key")
        cursor = run(
            conn,
            "INSERT INTO ciphers (ciphertext, expiration, id_creator) VALUES (?, ?, ?)",
            (
                self._ciphertext,
                to_db_timestamp(self._expiration) if self._expiration else None,
                ids.to_db(self._creator),
            ),
        )
        if cursor.lastrowid is None:
            raise StorageError("No row id returned for new key")
        self._id = cursor.lastrowid
        self._mark_stored()
        return True


def delete_key(conn: sqlite3.Connection, local_id: int) -> bool:
    return run(conn, "DELETE FROM ciphers WHERE id = ?", (local_id,)).rowcount > 0
