"""
Error types for the object vault core.

This module defines the exception taxonomy raised by every layer:
- VaultError: Base exception (message, numeric status code, details)
- ValidationError: Input failed a format, length or type check
- AuthorizationError: Session user may not perform the operation
- NotFoundError: No row matched the key
- ImmutableEntityError: Attempt to change something that is frozen once stored
- ConflictError: Alias or email already in use
- CryptoError: AEAD failure or bad key
- StorageError: Database or shard resolution failure
- PublishError: Action broker unreachable or rejected the message

Invariants:
    - All errors inherit from VaultError
    - The lowest layer raises the kind; only the outer boundary turns it
      into a status code and message
    - Messages never contain keys, hashes or passwords

How to change safely:
    - Add new kinds as subclasses so existing handlers keep catching them
    - New status codes must also be added to status.py
"""

from __future__ import annotations

from typing import Any


class VaultError(Exception):
    """Base exception for all vault errors.

    Attributes:
        message: Error message
        code: 4-digit status code
        details: Additional error context
    """

    default_code = 5999

    def __init__(
        self,
        message: str,
        code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(VaultError):
    """Input failed validation."""

    default_code = 3100

    def __init__(
        self,
        message: str,
        field_name: str | None = None,
        code: int | None = None,
    ) -> None:
        super().__init__(message, code=code, details={"field": field_name})
        self.field_name = field_name


class AuthorizationError(VaultError):
    """Session user is not allowed to act on the object."""

    default_code = 4003

    def __init__(
        self,
        message: str,
        user: int | None = None,
        object_id: int | None = None,
        code: int | None = None,
    ) -> None:
        super().__init__(
            message,
            code=code,
            details={
                "user": f":{user:x}" if user is not None else None,
                "object": f":{object_id:x}" if object_id is not None else None,
            },
        )
        self.user = user
        self.object_id = object_id


class NotFoundError(VaultError):
    """No row matched the requested key."""

    default_code = 4000


class ImmutableEntityError(VaultError):
    """Stored key field or immutable entity cannot be changed."""

    default_code = 4998


class ConflictError(VaultError):
    """Alias or email already registered."""

    default_code = 4010


class CryptoError(VaultError):
    """Encryption or decryption failed."""

    default_code = 5010


class StorageError(VaultError):
    """Database operation failed."""

    default_code = 5100


class ShardNotFoundError(StorageError):
    """Identifier does not resolve to a configured shard."""

    pass


class PublishError(VaultError):
    """Action could not be handed to the broker."""

    default_code = 5921

    def __init__(self, message: str, guid: str | None = None, code: int | None = None) -> None:
        super().__init__(message, code=code, details={"guid": guid})
        self.guid = guid
