"""
Unit tests for status codes and the error taxonomy.

Tests cover:
- Code to HTTP status and message mapping
- Unknown codes
- Default codes and payloads of VaultError subclasses
"""

import pytest

from backend.vault_server import status
from backend.vault_server.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PublishError,
    ValidationError,
    VaultError,
)


class TestStatusCodes:
    """Tests for code_to_message()."""

    @pytest.mark.parametrize(
        "code,http,message",
        [
            (1000, 200, "OK"),
            (2490, 200, "Failed to Send Invitation. Retry!"),
            (3001, 400, "Invalid Login Credentials"),
            (4202, 400, "Store is Closed"),
            (4303, 409, "Invitation UID in use, retry"),
            (5302, 500, "Failed Connecting to Queue Server"),
        ],
    )
    def test_known(self, code, http, message):
        assert status.code_to_message(code) == (http, message)

    @pytest.mark.parametrize("code", [0, 1500, 4999, 9000])
    def test_unknown(self, code):
        assert status.code_to_message(code) == (503, "Unknown Reason")

    def test_success_range(self):
        assert status.is_success(1000)
        assert status.is_success(2490)
        assert not status.is_success(3000)


class TestErrors:
    """Tests for the error classes."""

    @pytest.mark.parametrize(
        "error,code",
        [
            (ValidationError("bad"), 3100),
            (AuthorizationError("no"), 4003),
            (NotFoundError("gone"), 4000),
            (ConflictError("taken"), 4010),
            (PublishError("down", guid="g"), 5921),
        ],
    )
    def test_default_codes(self, error, code):
        assert error.code == code
        assert isinstance(error, VaultError)

    def test_explicit_code(self):
        assert ValidationError("expired", "uid", code=4391).code == 4391

    def test_every_default_code_is_known(self):
        for error in (ValidationError("x"), AuthorizationError("x"), NotFoundError("x")):
            http, _ = status.code_to_message(error.code)
            assert http != 503

    def test_to_dict(self):
        data = ValidationError("Invalid alias", "alias").to_dict()

        assert data["code"] == 3100
        assert data["message"] == "Invalid alias"
