"""
HTTP API for the vault.

JSON endpoints over the service layer. Every response carries the status
code of the operation::

    {"code": 1000, "message": "OK", "data": {...}}

Errors keep the same envelope with ``details`` instead of ``data``; the
HTTP status comes from the status code table.

Invariants:
    - The caller is the global id in the X-Vault-User header; establishing
      that identity is the job of the gateway in front of this server
    - Store sessions live in the server-side session map named by the
      session cookie; the unwrapped store key never leaves the process
    - The session map is saved after the handler ran, also on errors

How to change safely:
    - Keep path parameters in ``:hex`` id form for stores and objects
    - New endpoints go through the same envelope and error middleware
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from aiohttp import web
from pydantic import BaseModel
from pydantic import ValidationError as ModelValidationError

from .. import status
from ..config import HttpConfig
from ..core import ids
from ..errors import AuthorizationError, ValidationError, VaultError
from ..orm.invitations import map_invitation_field, map_invitation_value
from ..orm.memberships import (
    map_object_template_field,
    map_object_user_field,
    map_object_user_value,
    map_org_store_field,
    map_org_store_value,
    map_user_object_field,
    map_user_object_value,
)
from ..orm.objects import map_object_field, map_object_value
from ..orm.registries import map_org_field, map_org_value, map_user_field, map_user_value
from ..orm.requests import map_request_field, map_request_value
from ..orm.templates import map_template_field, map_template_value
from ..query.results import QueryResults
from ..service import NewAccount, VaultService
from ..session.store import SessionStore
from . import exports
from .models import (
    AcceptInvitationRequest,
    ChangePasswordRequest,
    CreateFolderRequest,
    CreateInvitationRequest,
    CreateObjectRequest,
    CreateOrgRequest,
    CreateStoreRequest,
    CreateTemplateRequest,
    CreateUserRequest,
    FavoriteRequest,
    ListQuery,
    MemberRolesRequest,
    MoveObjectRequest,
    OpenStoreRequest,
    RecoverRequest,
    ResetRequest,
    StateRequest,
    UpdateAliasedRequest,
    UpdateObjectRequest,
    UpdateUserRequest,
)

logger = logging.getLogger(__name__)

USER_HEADER = "X-Vault-User"

CODE_OK = 1000
CODE_NOTHING_CHANGED = 2001
CODE_NOT_LOGGED_IN = 3000
CODE_SESSION_USER_INVALID = 3002
CODE_INVALID_URL_PARAMETERS = 3300
CODE_INVALID_JSON = 5201
CODE_INVALID_JSON_REQUEST = 5202
CODE_QUEUE_UNAVAILABLE = 5302
CODE_UNEXPECTED = 5900

M = TypeVar("M", bound=BaseModel)
Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def reply(data: Any = None, code: int = CODE_OK) -> web.Response:
    http_status, message = status.code_to_message(code)
    body: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        body["data"] = data
    return web.json_response(body, status=http_status)


def error_reply(error: VaultError) -> web.Response:
    http_status, message = status.code_to_message(error.code)
    body = {"code": error.code, "message": message, "details": error.details}
    if error.message != message:
        body["details"] = {**error.details, "reason": error.message}
    return web.json_response(body, status=http_status)


def listing(results: QueryResults, render: Callable[[Any], Any]) -> web.Response:
    return reply(results.to_dict(render))


def path_ref(request: web.Request, name: str) -> ids.Ref:
    try:
        return ids.parse_ref(request.match_info[name])
    except ValueError as e:
        raise ValidationError(f"Invalid reference ({e})", name, code=CODE_INVALID_URL_PARAMETERS) from e


def path_id(request: web.Request, name: str) -> int:
    ref = path_ref(request, name)
    if not isinstance(ref, ids.IdRef):
        raise ValidationError("Expected an id (:hex)", name, code=CODE_INVALID_URL_PARAMETERS)
    return ref.value


def path_int(request: web.Request, name: str) -> int:
    try:
        value = int(request.match_info[name])
    except ValueError as e:
        raise ValidationError("Expected an integer", name, code=CODE_INVALID_URL_PARAMETERS) from e
    if value < 0:
        raise ValidationError("Expected a positive integer", name, code=CODE_INVALID_URL_PARAMETERS)
    return value


def query_int(request: web.Request, name: str) -> int | None:
    value = request.query.get(name)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError as e:
        raise ValidationError("Expected an integer", name, code=CODE_INVALID_URL_PARAMETERS) from e


def list_query(request: web.Request) -> ListQuery:
    try:
        return ListQuery.model_validate(dict(request.query))
    except ModelValidationError as e:
        raise ValidationError(
            f"Invalid listing parameters ({e.error_count()} errors)",
            "query",
            code=CODE_INVALID_URL_PARAMETERS,
        ) from e


async def parse_body(request: web.Request, model: type[M]) -> M:
    """Validate the JSON body against ``model``; an empty body uses defaults."""
    if not request.body_exists:
        data: Any = {}
    else:
        try:
            data = await request.json()
        except json.JSONDecodeError as e:
            raise ValidationError("NOT a Valid JSON Request", "body", code=CODE_INVALID_JSON) from e
    try:
        return model.model_validate(data)
    except ModelValidationError as e:
        fields = ",".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise ValidationError(
            "JSON Request is Not Valid", fields or "body", code=CODE_INVALID_JSON_REQUEST
        ) from e


def caller(request: web.Request) -> int:
    """Global id of the calling user.

    Raises:
        AuthorizationError: 3000 without the header, 3002 when it is not an id
    """
    value = request.headers.get(USER_HEADER)
    if not value:
        raise AuthorizationError("Not Logged In!", code=CODE_NOT_LOGGED_IN)
    try:
        ref = ids.parse_ref(value)
    except ValueError:
        ref = None
    if not isinstance(ref, ids.IdRef):
        raise AuthorizationError("Session User Invalid", code=CODE_SESSION_USER_INVALID)
    return ref.value


def optional_caller(request: web.Request) -> int | None:
    if not request.headers.get(USER_HEADER):
        return None
    return caller(request)


def session_data(request: web.Request) -> dict[str, Any]:
    return request["session"]


class VaultHttpHandlers:
    """Request handlers bound to one VaultService."""

    def __init__(self, vault: VaultService) -> None:
        self.vault = vault

    # Health

    async def health(self, request: web.Request) -> web.Response:
        connected = self.vault.publisher.is_connected
        data = {"healthy": connected, "publisher_connected": connected}
        return reply(data, CODE_OK if connected else CODE_QUEUE_UNAVAILABLE)

    # Profile

    async def get_profile(self, request: web.Request) -> web.Response:
        user = caller(request)
        registry = await self.vault.users.get_user(user, ids.IdRef(user))
        profile = await self.vault.users.get_profile(user)
        return reply(exports.export_profile(profile, registry))

    async def change_password(self, request: web.Request) -> web.Response:
        user = caller(request)
        body = await parse_body(request, ChangePasswordRequest)
        registry = await self.vault.requests.change_password(user, body.old_hash, body.new_hash)
        return reply(exports.export_user(registry))

    async def list_my_objects(self, request: web.Request) -> web.Response:
        user = caller(request)
        q = list_query(request)
        conditions = q.conditions(map_user_object_field, map_user_object_value)
        results = await self.vault.users.list_objects(
            user, query_int(request, "type"), conditions, q.count
        )
        return listing(results, exports.export_user_object)

    async def set_favorite(self, request: web.Request) -> web.Response:
        user = caller(request)
        body = await parse_body(request, FavoriteRequest)
        link = await self.vault.users.set_favorite(user, path_ref(request, "object"), body.favorite)
        return reply(exports.export_user_object(link))

    # Users

    async def list_users(self, request: web.Request) -> web.Response:
        user = caller(request)
        q = list_query(request)
        conditions = q.conditions(map_user_field, map_user_value)
        results = await self.vault.users.list_users(user, conditions, q.count)
        return listing(results, exports.export_user)

    async def create_user(self, request: web.Request) -> web.Response:
        user = caller(request)
        body = await parse_body(request, CreateUserRequest)
        registry = await self.vault.users.create_user(user, body.username, body.email, body.hash, body.name)
        return reply(exports.export_user(registry))

    async def get_user(self, request: web.Request) -> web.Response:
        registry = await self.vault.users.get_user(caller(request), path_ref(request, "user"))
        return reply(exports.export_user(registry))

    async def update_user(self, request: web.Request) -> web.Response:
        user = caller(request)
        body = await parse_body(request, UpdateUserRequest)
        registry = await self.vault.users.update_user(
            user, path_ref(request, "user"), username=body.username, email=body.email, name=body.name
        )
        return reply(exports.export_user(registry))

    async def set_user_state(self, request: web.Request) -> web.Response:
        user = caller(request)
        body = await parse_body(request, StateRequest)
        registry = await self.vault.users.set_user_state(user, path_ref(request, "user"), body.set, body.clear)
        return reply(exports.export_user(registry))

    async def delete_user(self, request: web.Request) -> web.Response:
        registry = await self.vault.users.delete_user(caller(request), path_ref(request, "user"))
        return reply(exports.export_user(registry))

    # Organizations

    async def list_orgs(self, request: web.Request) -> web.Response:
        user = caller(request)
        q = list_query(request)
        conditions = q.conditions(map_org_field, map_org_value)
        results = await self.vault.orgs.list_orgs(user, conditions, q.count)
        return listing(results, exports.export_org)

    async def create_org(self, request: web.Request) -> web.Response:
        user = caller(request)
        body = await parse_body(request, CreateOrgRequest)
        org = await self.vault.orgs.create_org(user, body.alias, body.name)
        return reply(exports.export_org(org))

    async def get_org(self, request: web.Request) -> web.Response:
        user = caller(request)
        ref = path_ref(request, "org")
        registry = await self.vault.orgs.get_org(user, ref)
        details = await self.vault.orgs.get_org_details(user, ref)
        return reply(exports.export_org_details(details, registry))

    async def update_org(self, request: web.Request) -> web.Response:
        user = caller(request)
        body = await parse_body(request, UpdateAliasedRequest)
        org = await self.vault.orgs.update_org(user, path_ref(request, "org"), alias=body.alias, name=body.name)
        return reply(exports.export_org(org))

    async def set_org_state(self, request: web.Request) -> web.Response:
        user = caller(request)
        body = await parse_body(request, StateRequest)
        org = await self.vault.orgs.set_org_state(user, path_ref(request, "org"), body.set, body.clear)
        return reply(exports.export_org(org))

    async def delete_org(self, request: web.Request) -> web.Response:
        org = await self.vault.orgs.delete_org(caller(request), path_ref(request, "org"))
        return reply(exports.export_org(org))

    async def list_org_stores(self, request: web.Request) -> web.Response:
        user = caller(request)
        q = list_query(request)
        conditions = q.conditions(map_org_store_field, map_org_store_value)
        results = await self.vault.orgs.list_org_stores(
            user, path_ref(request, "org"), conditions, q.count
        )
        return listing(results, exports.export_store)

    async def create_store(self, request: web.Request) -> web.Response:
        user = caller(request)
        body = await parse_body(request, CreateStoreRequest)
        entry = await self.vault.stores.create_store(
            user, path_ref(request, "org"), body.alias, body.hash, body.name
        )
        return reply(exports.export_store(entry))

    # Stores

    async def get_store(self, request: web.Request) -> web.Response:
        entry = await self.vault.stores.get_store(caller(request), path_ref(request, "store"))
        return reply(exports.export_store(entry))

    async def update_store(self, request: web.Request) -> web.Response:
        user = caller(request)
        body = await parse_body(request, UpdateAliasedRequest)
        entry = await self.vault.stores.update_store(
            user, path_ref(request, "store"), alias=body.alias, name=body.name
        )
        return reply(exports.export_store(entry))

    async def set_store_state(self, request: web.Request) -> web.Response:
        user = caller(request)
        body = await parse_body(request, StateRequest)
        entry = await self.vault.stores.set_store_state(
            user, path_ref(request, "store"), set_bits=body.set, clear_bits=body.clear
        )
        return reply(exports.export_store(entry))

    async def delete_store(self, request: web.Request) -> web.Response:
        entry = await self.vault.stores.delete_store(caller(request), path_ref(request, "store"))
        return reply(exports.export_store(entry))

    async def open_store(self, request: web.Request) -> web.Response:
        user = caller(request)
        body = await parse_body(request, OpenStoreRequest)
        session = await self.vault.stores.open_session(
            user, path_ref(request, "store"), body.hash, session_data(request)
        )
        return reply(exports.export_session(session))

    async def close_store(self, request: web.Request) -> web.Response:
        closed = await self.vault.stores.close_session(
            caller(request), path_ref(request, "store"), session_data(request)
        )
        return reply({"closed": closed}, CODE_OK if closed else CODE_NOTHING_CHANGED)

    # Members

    async def list_members(self, request: web.Request) -> web.Response:
        user = caller(request)
        q = list_query(request)
        conditions = q.conditions(map_object_user_field, map_object_user_value)
        results = await self.vault.members.list_members(
            user, path_id(request, "object"), conditions, q.count
        )
        return listing(results, exports.export_member)

    async def get_member(self, request: web.Request) -> web.Response:
        member = await self.vault.members.get_member(
            caller(request), path_id(request, "object"), path_ref(request, "user")
        )
        return reply(exports.export_member(member))

    async def set_member_roles(self, request: web.Request) -> web.Response:
        user = caller(request)
        body = await parse_body(request, MemberRolesRequest)
        member = await self.vault.members.set_member_roles(
            user, path_id(request, "object"), path_ref(request, "user"), body.roles
        )
        return reply(exports.export_member(member))

    async def set_member_state(self, request: web.Request) -> web.Response:
        user = caller(request)
        body = await parse_body(request, StateRequest)
        member = await self.vault.members.set_member_state(
            user, path_id(request, "object"), path_ref(request, "user"), body.set, body.clear
        )
        return reply(exports.export_member(member))

    async def remove_member(self, request: web.Request) -> web.Response:
        member = await self.vault.members.remove_member(
            caller(request), path_id(request, "object"), path_ref(request, "user")
        )
        return reply(exports.export_member(member))

    # Invitations

    async def invite_to_org(self, request: web.Request) -> web.Response:
        user = caller(request)
        body = await parse_body(request, CreateInvitationRequest)
        result = await self.vault.invitations.create_org_invitation(
            user, path_ref(request, "org"), body.invitee, body.message, body.roles, body.expires_in
        )
        return reply(exports.export_invitation(result.registry), result.code)

    async def invite_to_store(self, request: web.Request) -> web.Response:
        user = caller(request)
        body = await parse_body(request, CreateInvitationRequest)
        if not body.hash:
            raise ValidationError("Inviter password hash required", "hash", code=CODE_INVALID_JSON_REQUEST)
        result = await self.vault.invitations.create_store_invitation(
            user,
            path_id(request, "store"),
            body.hash,
            body.invitee,
            body.message,
            body.roles,
            body.expires_in,
        )
        return reply(exports.export_invitation(result.registry), result.code)

    async def list_invitations(self, request: web.Request) -> web.Response:
        user = caller(request)
        q = list_query(request)
        conditions = q.conditions(map_invitation_field, map_invitation_value)
        results = await self.vault.invitations.list_invitations(
            user, path_id(request, "object"), conditions, q.count
        )
        return listing(results, exports.export_invitation)

    async def get_invitation(self, request: web.Request) -> web.Response:
        registry = await self.vault.invitations.get_invitation(request.match_info["uid"])
        return reply(exports.export_invitation(registry))

    async def accept_invitation(self, request: web.Request) -> web.Response:
        user = optional_caller(request)
        body = await parse_body(request, AcceptInvitationRequest)
        account = None
        if user is None and body.username and body.hash:
            account = NewAccount(body.username, body.hash, body.name)
        member = await self.vault.invitations.accept(user, request.match_info["uid"], body.hash, account)
        return reply(exports.export_member(member))

    async def decline_invitation(self, request: web.Request) -> web.Response:
        registry = await self.vault.invitations.decline(caller(request), request.match_info["uid"])
        return reply(exports.export_invitation(registry))

    async def revoke_invitation(self, request: web.Request) -> web.Response:
        registry = await self.vault.invitations.revoke(caller(request), request.match_info["uid"])
        return reply(exports.export_invitation(registry))

    # Objects

    async def list_objects(self, request: web.Request) -> web.Response:
        user = caller(request)
        q = list_query(request)
        results = await self.vault.objects.list_objects(
            user,
            path_id(request, "store"),
            query_int(request, "parent"),
            q.conditions(map_object_field, map_object_value),
            q.count,
        )
        return listing(results, exports.export_object)

    async def create_folder(self, request: web.Request) -> web.Response:
        user = caller(request)
        body = await parse_body(request, CreateFolderRequest)
        folder = await self.vault.objects.create_folder(user, path_id(request, "store"), body.title, body.parent)
        return reply(exports.export_object(folder))

    async def create_object(self, request: web.Request) -> web.Response:
        user = caller(request)
        body = await parse_body(request, CreateObjectRequest)
        obj = await self.vault.objects.create_object(
            user, path_id(request, "store"), body.body, session_data(request), body.parent
        )
        return reply(exports.export_object(obj))

    async def get_object(self, request: web.Request) -> web.Response:
        opened = await self.vault.objects.get_object(
            caller(request), path_id(request, "store"), path_int(request, "id"), session_data(request)
        )
        return reply(exports.export_opened(opened))

    async def update_object(self, request: web.Request) -> web.Response:
        user = caller(request)
        body = await parse_body(request, UpdateObjectRequest)
        obj = await self.vault.objects.update_object(
            user,
            path_id(request, "store"),
            path_int(request, "id"),
            title=body.title,
            body=body.body,
            session_data=session_data(request),
        )
        return reply(exports.export_object(obj))

    async def move_object(self, request: web.Request) -> web.Response:
        user = caller(request)
        body = await parse_body(request, MoveObjectRequest)
        obj = await self.vault.objects.move_object(
            user, path_id(request, "store"), path_int(request, "id"), body.parent
        )
        return reply(exports.export_object(obj))

    async def delete_object(self, request: web.Request) -> web.Response:
        removed = await self.vault.objects.delete_object(
            caller(request), path_id(request, "store"), path_int(request, "id")
        )
        return reply({"removed": removed})

    # Templates

    async def list_templates(self, request: web.Request) -> web.Response:
        user = caller(request)
        q = list_query(request)
        conditions = q.conditions(map_template_field, map_template_value)
        results = await self.vault.templates.list_templates(user, conditions, q.count)
        return listing(results, exports.export_template_summary)

    async def create_template(self, request: web.Request) -> web.Response:
        user = caller(request)
        body = await parse_body(request, CreateTemplateRequest)
        template = await self.vault.templates.create_template(
            user, body.name, body.title, body.model, body.description
        )
        return reply(exports.export_template(template))

    async def get_template(self, request: web.Request) -> web.Response:
        template = await self.vault.templates.get_template(
            caller(request), request.match_info["name"], query_int(request, "version") or 0
        )
        return reply(exports.export_template(template))

    async def delete_template(self, request: web.Request) -> web.Response:
        removed = await self.vault.templates.delete_template(
            caller(request), request.match_info["name"], query_int(request, "version")
        )
        return reply({"removed": removed})

    async def list_org_templates(self, request: web.Request) -> web.Response:
        user = caller(request)
        q = list_query(request)
        results = await self.vault.templates.list_org_templates(
            user, path_ref(request, "org"), q.conditions(map_object_template_field), q.count
        )
        return listing(results, exports.export_object_template)

    async def attach_org_template(self, request: web.Request) -> web.Response:
        entry = await self.vault.templates.attach_org_template(
            caller(request), path_ref(request, "org"), request.match_info["name"]
        )
        return reply(exports.export_object_template(entry))

    async def detach_org_template(self, request: web.Request) -> web.Response:
        removed = await self.vault.templates.detach_org_template(
            caller(request), path_ref(request, "org"), request.match_info["name"]
        )
        return reply({"removed": removed})

    async def list_store_templates(self, request: web.Request) -> web.Response:
        user = caller(request)
        q = list_query(request)
        results = await self.vault.templates.list_store_templates(
            user, path_id(request, "store"), q.conditions(map_object_template_field), q.count
        )
        return listing(results, exports.export_object_template)

    async def get_store_template(self, request: web.Request) -> web.Response:
        template = await self.vault.templates.get_store_template(
            caller(request),
            path_id(request, "store"),
            request.match_info["name"],
            query_int(request, "version") or 0,
        )
        return reply(exports.export_template(template))

    async def attach_store_template(self, request: web.Request) -> web.Response:
        entry = await self.vault.templates.attach_store_template(
            caller(request), path_id(request, "store"), request.match_info["name"]
        )
        return reply(exports.export_object_template(entry))

    async def detach_store_template(self, request: web.Request) -> web.Response:
        removed = await self.vault.templates.detach_store_template(
            caller(request), path_id(request, "store"), request.match_info["name"]
        )
        return reply({"removed": removed})

    # Password recovery and requests

    async def recover_password(self, request: web.Request) -> web.Response:
        body = await parse_body(request, RecoverRequest)
        await self.vault.requests.recover(body.email)
        # Same answer whether or not the email is registered
        return reply()

    async def reset_password(self, request: web.Request) -> web.Response:
        body = await parse_body(request, ResetRequest)
        await self.vault.requests.reset(request.match_info["guid"], body.hash)
        return reply()

    async def list_requests(self, request: web.Request) -> web.Response:
        user = caller(request)
        q = list_query(request)
        conditions = q.conditions(map_request_field, map_request_value)
        results = await self.vault.requests.list_requests(user, conditions, q.count)
        return listing(results, exports.export_request)


def create_http_app(
    vault: VaultService,
    sessions: SessionStore,
    config: HttpConfig | None = None,
) -> web.Application:
    """Create the aiohttp application.

    Args:
        vault: Service facade
        sessions: Server-side session map for store sessions
        config: HTTP configuration (cookie name)

    Returns:
        aiohttp Application instance
    """
    config = config or HttpConfig()
    h = VaultHttpHandlers(vault)
    app = web.Application()

    app.router.add_get("/v1/health", h.health)

    app.router.add_get("/v1/me", h.get_profile)
    app.router.add_put("/v1/me/password", h.change_password)
    app.router.add_get("/v1/me/objects", h.list_my_objects)
    app.router.add_put("/v1/me/objects/{object}/favorite", h.set_favorite)

    app.router.add_get("/v1/users", h.list_users)
    app.router.add_post("/v1/users", h.create_user)
    app.router.add_get("/v1/users/{user}", h.get_user)
    app.router.add_put("/v1/users/{user}", h.update_user)
    app.router.add_put("/v1/users/{user}/state", h.set_user_state)
    app.router.add_delete("/v1/users/{user}", h.delete_user)

    app.router.add_get("/v1/orgs", h.list_orgs)
    app.router.add_post("/v1/orgs", h.create_org)
    app.router.add_get("/v1/orgs/{org}", h.get_org)
    app.router.add_put("/v1/orgs/{org}", h.update_org)
    app.router.add_put("/v1/orgs/{org}/state", h.set_org_state)
    app.router.add_delete("/v1/orgs/{org}", h.delete_org)
    app.router.add_get("/v1/orgs/{org}/stores", h.list_org_stores)
    app.router.add_post("/v1/orgs/{org}/stores", h.create_store)
    app.router.add_post("/v1/orgs/{org}/invitations", h.invite_to_org)
    app.router.add_get("/v1/orgs/{org}/templates", h.list_org_templates)
    app.router.add_put("/v1/orgs/{org}/templates/{name}", h.attach_org_template)
    app.router.add_delete("/v1/orgs/{org}/templates/{name}", h.detach_org_template)

    app.router.add_get("/v1/stores/{store}", h.get_store)
    app.router.add_put("/v1/stores/{store}", h.update_store)
    app.router.add_put("/v1/stores/{store}/state", h.set_store_state)
    app.router.add_delete("/v1/stores/{store}", h.delete_store)
    app.router.add_post("/v1/stores/{store}/session", h.open_store)
    app.router.add_delete("/v1/stores/{store}/session", h.close_store)
    app.router.add_post("/v1/stores/{store}/invitations", h.invite_to_store)
    app.router.add_get("/v1/stores/{store}/templates", h.list_store_templates)
    app.router.add_get("/v1/stores/{store}/templates/{name}", h.get_store_template)
    app.router.add_put("/v1/stores/{store}/templates/{name}", h.attach_store_template)
    app.router.add_delete("/v1/stores/{store}/templates/{name}", h.detach_store_template)
    app.router.add_get("/v1/stores/{store}/objects", h.list_objects)
    app.router.add_post("/v1/stores/{store}/objects", h.create_object)
    app.router.add_post("/v1/stores/{store}/folders", h.create_folder)
    app.router.add_get("/v1/stores/{store}/objects/{id}", h.get_object)
    app.router.add_put("/v1/stores/{store}/objects/{id}", h.update_object)
    app.router.add_put("/v1/stores/{store}/objects/{id}/parent", h.move_object)
    app.router.add_delete("/v1/stores/{store}/objects/{id}", h.delete_object)

    app.router.add_get("/v1/objects/{object}/members", h.list_members)
    app.router.add_get("/v1/objects/{object}/members/{user}", h.get_member)
    app.router.add_put("/v1/objects/{object}/members/{user}/roles", h.set_member_roles)
    app.router.add_put("/v1/objects/{object}/members/{user}/state", h.set_member_state)
    app.router.add_delete("/v1/objects/{object}/members/{user}", h.remove_member)
    app.router.add_get("/v1/objects/{object}/invitations", h.list_invitations)

    app.router.add_get("/v1/invitations/{uid}", h.get_invitation)
    app.router.add_post("/v1/invitations/{uid}/accept", h.accept_invitation)
    app.router.add_post("/v1/invitations/{uid}/decline", h.decline_invitation)
    app.router.add_delete("/v1/invitations/{uid}", h.revoke_invitation)

    app.router.add_post("/v1/password/recover", h.recover_password)
    app.router.add_post("/v1/password/reset/{guid}", h.reset_password)
    app.router.add_get("/v1/requests", h.list_requests)

    # Outermost: the session map is saved whatever the handler answered
    @web.middleware
    async def session_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        session_id = request.cookies.get(config.session_cookie)
        data = await sessions.load(session_id) if session_id else None
        if data is None:
            session_id = None
            data = {}
        request["session"] = data

        response = await handler(request)

        if data:
            if session_id is None:
                session_id = await sessions.create()
            await sessions.save(session_id, data)
            response.set_cookie(config.session_cookie, session_id, httponly=True, samesite="Strict")
        elif session_id is not None:
            await sessions.delete(session_id)
            response.del_cookie(config.session_cookie)
        return response

    @web.middleware
    async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except VaultError as e:
            logger.info(
                "Request failed",
                extra={"method": request.method, "path": request.path, "code": e.code},
            )
            return error_reply(e)
        except Exception:
            logger.exception("HTTP handler error", extra={"method": request.method, "path": request.path})
            return error_reply(VaultError("Unexpected Server Error", code=CODE_UNEXPECTED))

    app.middlewares.append(session_middleware)
    app.middlewares.append(error_middleware)
    return app

