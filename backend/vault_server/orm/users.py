"""
Canonical user rows (``users`` table on the user's shard).

A user's password never reaches the database. At creation a random 32-byte
validation blob is sealed under the SHA-256 password hash; a hash is
correct exactly when it opens that blob.

Invariants:
    - username and email are stored lowercase and trimmed
    - The validation ciphertext is set once at creation; afterwards it is
      only re-wrapped (update_hash) or regenerated (replace_hash)
    - Alias, email and name changes raise update_registry

How to change safely:
    - The blob plaintext layout is opaque; changing it does not affect
      existing rows, but never store anything recoverable in it
"""

from __future__ import annotations

import logging
import sqlite3
from ..core import crypto, ids
from ..errors import CryptoError, StorageError, ValidationError
from .base import AuditedEntity, fetch_one, run

logger = logging.getLogger(__name__)

_COLUMNS = "id, username, email, name, ciphertext, creator, created, modifier, modified"


class User(AuditedEntity):
    """User record on its home shard."""

    TABLE = "users"

    def __init__(self) -> None:
        super().__init__()
        self._reset()

    def _reset(self) -> None:
        self._id: int | None = None
        self._username = ""
        self._email = ""
        self._name = ""
        self._ciphertext: bytes | None = None
        self._reset_audit()
        self._update_registry = False
        self._stored = False
        self._dirty = False

    # Properties

    @property
    def id(self) -> int | None:
        return self._id

    @property
    def username(self) -> str:
        return self._username

    @property
    def email(self) -> str:
        return self._email

    @property
    def name(self) -> str:
        return self._name

    @property
    def ciphertext(self) -> bytes | None:
        return self._ciphertext

    @property
    def update_registry(self) -> bool:
        return self._update_registry

    def is_valid(self) -> bool:
        ready = bool(self._username and self._email and self._ciphertext)
        if self.is_new():
            return ready and self._creator is not None
        return ready and self._id is not None

    # Loaders

    def _load(self, conn: sqlite3.Connection, where: str, value: object) -> bool:
        self._reset()
        row = fetch_one(conn, f"SELECT {_COLUMNS} FROM users WHERE {where} = ?", (value,))
        if row is None:
            return False
        self._id = row["id"]
        self._username = row["username"]
        self._email = row["email"]
        self._name = row["name"] or ""
        self._ciphertext = bytes(row["ciphertext"]) if row["ciphertext"] is not None else None
        self._load_audit(row)
        self._stored = True
        return True

    def by_id(self, conn: sqlite3.Connection, local_id: int) -> bool:
        return self._load(conn, "id", local_id)

    def by_username(self, conn: sqlite3.Connection, username: str) -> bool:
        return self._load(conn, "username", username.strip().lower())

    def by_email(self, conn: sqlite3.Connection, email: str) -> bool:
        return self._load(conn, "email", email.strip().lower())

    # Setters

    def set_id(self, local_id: int) -> int | None:
        self._require_new("User ID")
        current = self._id
        self._id = local_id
        self._touch()
        return current

    def set_username(self, username: str) -> str:
        current = self._username
        value = username.strip().lower()
        if value != current:
            self._username = value
            self._touch()
            self._update_registry = True
        return current

    def set_email(self, email: str) -> str:
        current = self._email
        value = email.strip().lower()
        if value != current:
            self._email = value
            self._touch()
            self._update_registry = True
        return current

    def set_name(self, name: str) -> str:
        current = self._name
        value = name.strip()
        if value != current:
            self._name = value
            self._touch()
            self._update_registry = True
        return current

    # Password hash handling

    def _validation_plaintext(self) -> bytes:
        if not self._username or not self._email:
            raise ValidationError("Username and email required before password", "hash")
        salt = crypto.random_alphanumeric_punctuation(128)
        return crypto.sha256(f"{self._username}:{salt}:{self._email}")

    def set_hash(self, hexhash: str) -> None:
        """Create the validation blob for a new user.

        Raises:
            ImmutableEntityError: If the user is already stored
            CryptoError: If ``hexhash`` is not a 32-byte hex hash
        """
        self._require_new("Password hash")
        key = crypto.hash_from_hex(hexhash)
        self._ciphertext = crypto.seal(key, self._validation_plaintext())
        self._touch()
        self._update_registry = True

    def update_hash(self, old_hexhash: str, new_hexhash: str) -> None:
        """Re-wrap the validation blob from the old hash to the new one.

        Raises:
            CryptoError: If the old hash does not open the blob
        """
        if self.is_new() or not self._ciphertext:
            raise ValidationError("Password hash has to be set first", "hash")
        plaintext = crypto.open_sealed(crypto.hash_from_hex(old_hexhash), self._ciphertext)
        self._ciphertext = crypto.seal(crypto.hash_from_hex(new_hexhash), plaintext)
        self._touch()
        self._update_registry = True

    def replace_hash(self, new_hexhash: str) -> None:
        """Regenerate the validation blob under a new hash (password reset)."""
        key = crypto.hash_from_hex(new_hexhash)
        self._ciphertext = crypto.seal(key, self._validation_plaintext())
        self._touch()
        self._update_registry = True

    def test_hash(self, hexhash: str) -> bool:
        if not hexhash or not crypto.is_valid_password_hash(hexhash):
            return False
        return self._test_key(bytes.fromhex(hexhash.strip()))

    def test_password(self, password: str) -> bool:
        return self._test_key(crypto.sha256(password))

    def _test_key(self, key: bytes) -> bool:
        if not self._ciphertext:
            return False
        try:
            crypto.open_sealed(key, self._ciphertext)
        except CryptoError:
            return False
        return True

    # Persistence

    def flush(self, conn: sqlite3.Connection, force: bool = False) -> bool:
        """Insert or update the row.

        Returns:
            True if a statement was executed

        Raises:
            ValidationError: If required fields are missing
            ConflictError: If username or email is taken on this shard
        """
        if not force and not self._dirty:
            return False

        if self.is_new():
            if self._creator is None:
                raise ValidationError("Creation user not set", "creator")
            if not self.is_valid():
                raise ValidationError("Invalid user", "user")
            columns = ["username", "email", "name", "ciphertext", "creator"]
            values: list[object] = [
                self._username,
                self._email,
                self._name,
                self._ciphertext,
                ids.to_db(self._creator),
            ]
            if self._id is not None:
                columns.insert(0, "id")
                values.insert(0, self._id)
            cursor = run(
                conn,
                f"INSERT INTO users ({', '.join(columns)}) VALUES ({', '.join('?' * len(columns))})",
                values,
            )
            if self._id is None:
                if cursor.lastrowid is None:
                    raise StorageError("No row id returned for new user")
                self._id = cursor.lastrowid
        else:
            if self._id is None:
                raise ValidationError("User ID not set", "id")
            if self._modifier is None:
                raise ValidationError("Modification user not set", "modifier")
            run(
                conn,
                """
                UPDATE users
                SET username = ?, email = ?, name = ?, ciphertext = ?, modifier = ?,
                    modified = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (
                    self._username,
                    self._email,
                    self._name,
                    self._ciphertext,
                    ids.to_db(self._modifier),
                    self._id,
                ),
            )

        self._mark_stored()
        logger.debug("Flushed user", extra={"user_local_id": self._id})
        return True

    def clear_update_registry(self) -> None:
        self._update_registry = False
