"""
Request bodies and listing parameters of the HTTP API.

Bodies are validated with pydantic before they reach the services; the
services still validate formats (aliases, emails, hashes) themselves.

Listing endpoints accept ``sort`` (comma separated, ``-`` prefix for
descending), ``offset``, ``limit``, ``count`` and ``filter``. A filter is a
JSON expression tree::

    {"fn": "AND", "args": [
        {"fn": "EQ", "args": [{"id": "alias"}, "acme"]},
        {"fn": "CONTAINS", "args": [{"id": "name"}, "Inc*"]}
    ]}
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, Field

from ..errors import ValidationError
from ..query.conditions import QueryConditions
from ..query.filters import FieldMapper, Filter, Function, Value, ValueMapper

MAX_FILTER_DEPTH = 16


# --- Users ---


class CreateUserRequest(BaseModel):
    """Create a user (system administrators)."""

    username: str = Field(..., description="Unique lowercase alias")
    email: str = Field(..., description="Unique email address")
    hash: str = Field(..., description="Hex SHA-256 of the password")
    name: str = Field("", description="Display name")


class UpdateUserRequest(BaseModel):
    """Change profile fields; absent fields are left alone."""

    username: str | None = Field(None, description="New alias")
    email: str | None = Field(None, description="New email address")
    name: str | None = Field(None, description="New display name")


class StateRequest(BaseModel):
    """Set and clear function state bits."""

    set: int = Field(0, ge=0, le=0xFFFF, description="Bits to set")
    clear: int = Field(0, ge=0, le=0xFFFF, description="Bits to clear")


class FavoriteRequest(BaseModel):
    favorite: bool = Field(..., description="Favorite flag")


# --- Organizations and stores ---


class CreateOrgRequest(BaseModel):
    """Create an organization."""

    alias: str = Field(..., description="Unique organization alias")
    name: str = Field("", description="Display name")


class UpdateAliasedRequest(BaseModel):
    """Rename an organization or store."""

    alias: str | None = Field(None, description="New alias")
    name: str | None = Field(None, description="New display name")


class CreateStoreRequest(BaseModel):
    """Create a store inside an organization."""

    alias: str = Field(..., description="Store alias, unique inside the organization")
    name: str = Field("", description="Display name")
    hash: str = Field(..., description="Creator's password hash; wraps the store key")


class OpenStoreRequest(BaseModel):
    """Open a store session."""

    hash: str = Field(..., description="Caller's password hash")


# --- Members ---


class MemberRolesRequest(BaseModel):
    roles: list[int] | str = Field(..., description="Role list or CSV of decimal roles")


# --- Objects ---


class CreateFolderRequest(BaseModel):
    title: str = Field(..., min_length=1, description="Folder title")
    parent: int = Field(0, ge=0, description="Parent folder (0 for the store root)")


class CreateObjectRequest(BaseModel):
    """Create a templated JSON object."""

    body: dict[str, Any] = Field(..., description='{"template": {"name", "version"}, "values": {...}}')
    parent: int = Field(0, ge=0, description="Parent folder (0 for the store root)")


class UpdateObjectRequest(BaseModel):
    title: str | None = Field(None, description="New folder title")
    body: dict[str, Any] | None = Field(None, description="Replacement JSON body")


class MoveObjectRequest(BaseModel):
    parent: int = Field(..., ge=0, description="Target folder (0 for the store root)")


# --- Invitations ---


class CreateInvitationRequest(BaseModel):
    """Invite an email address into an organization or a store."""

    invitee: str = Field(..., description="Invitee email address")
    message: str = Field("", max_length=1024, description="Personal message")
    roles: list[int] | str | None = Field(None, description="Roles granted on accept")
    expires_in: int | None = Field(None, ge=1, le=365, description="Lifetime in days")
    hash: str | None = Field(None, description="Inviter's password hash (store invitations)")


class AcceptInvitationRequest(BaseModel):
    """Accept an invitation.

    Without a caller the account fields create the invitee's user.
    """

    hash: str | None = Field(None, description="Invitee's password hash")
    username: str | None = Field(None, description="Alias of the new account")
    name: str = Field("", description="Display name of the new account")


# --- Password ---


class RecoverRequest(BaseModel):
    email: str = Field(..., description="Account email")


class ResetRequest(BaseModel):
    hash: str = Field(..., description="New password hash")


class ChangePasswordRequest(BaseModel):
    old_hash: str = Field(..., description="Current password hash")
    new_hash: str = Field(..., description="New password hash")


# --- Templates ---


class CreateTemplateRequest(BaseModel):
    """Publish the next version of a catalog template."""

    name: str = Field(..., description="Template name")
    title: str = Field(..., min_length=1, description="Template title")
    description: str = Field("", description="Template description")
    model: dict[str, Any] = Field(..., description="JSON model")


# --- Listing ---


def _parse_node(data: Any, depth: int = 0) -> Function | Value:
    if depth > MAX_FILTER_DEPTH:
        raise ValidationError("Filter too deep", "filter")
    if isinstance(data, dict):
        if "id" in data and len(data) == 1:
            if not isinstance(data["id"], str):
                raise ValidationError("Filter identifier must be a string", "filter")
            return Value(data["id"], identifier=True)
        name = data.get("fn")
        args = data.get("args", [])
        if not isinstance(name, str) or not isinstance(args, list):
            raise ValidationError("Filter node needs 'fn' and 'args'", "filter")
        return Function(name.upper(), tuple(_parse_node(a, depth + 1) for a in args))
    if isinstance(data, list):
        return Value([_literal(v) for v in data])
    return Value(_literal(data))


def _literal(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        raise ValidationError("Filter literal must be a scalar", "filter")
    return value


def parse_filter(text: str) -> Filter:
    """Filter from its JSON expression text.

    Raises:
        ValidationError: On malformed JSON or a malformed tree
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid filter ({e.msg})", "filter") from e
    root = _parse_node(data)
    if not isinstance(root, Function):
        raise ValidationError("Filter root must be a function", "filter")
    return Filter(root)


class ListQuery(BaseModel):
    """Sort, paging and filter of a listing call."""

    sort: str | None = None
    offset: int | None = Field(None, ge=0)
    limit: int | None = Field(None, ge=0)
    count: bool = False
    filter: str | None = None

    def conditions(
        self, map_field: FieldMapper, map_value: ValueMapper | None = None
    ) -> QueryConditions:
        sort: list[tuple[str, bool]] = []
        for name in (self.sort or "").split(","):
            name = name.strip()
            if name:
                sort.append((name.lstrip("-"), name.startswith("-")))
        return QueryConditions.build(
            node=parse_filter(self.filter) if self.filter else None,
            sort=sort,
            offset=self.offset,
            limit=self.limit,
            map_field=map_field,
            map_value=map_value,
        )
