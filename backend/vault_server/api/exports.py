"""
JSON renderings of entities returned by the services.

Global ids are rendered in ``:hex`` form. Password material, wrapped keys
and sealed bodies never leave through these functions.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from ..core import ids
from ..core.timeutil import to_rfc3339
from ..orm.invitations import InvitationRegistry
from ..orm.memberships import (
    ObjectTemplateRegistry,
    ObjectUserRegistry,
    OrgStoreRegistry,
    UserObjectRegistry,
)
from ..orm.objects import StoreObject
from ..orm.orgs import Organization
from ..orm.registries import OrgRegistry, UserRegistry
from ..orm.requests import RequestRegistry
from ..orm.templates import Template
from ..orm.users import User
from ..service.objects import OpenedObject
from ..session.token import StoreSession


def gid(value: int | None) -> str | None:
    return ids.id_to_string(value) if value is not None else None


def ts(value: datetime | None) -> str | None:
    return to_rfc3339(value)


def export_user(r: UserRegistry) -> dict[str, Any]:
    return {
        "id": gid(r.id),
        "username": r.username,
        "email": r.email,
        "name": r.name,
        "state": r.state,
        "created": ts(r.created),
    }


def export_profile(u: User, registry: UserRegistry | None = None) -> dict[str, Any]:
    data = {
        "username": u.username,
        "email": u.email,
        "name": u.name,
        "creator": gid(u.creator),
        "created": ts(u.created),
        "modifier": gid(u.modifier),
        "modified": ts(u.modified),
    }
    if registry is not None:
        data["id"] = gid(registry.id)
        data["state"] = registry.state
    return data


def export_org(r: OrgRegistry) -> dict[str, Any]:
    return {
        "id": gid(r.id),
        "alias": r.alias,
        "name": r.name,
        "state": r.state,
        "created": ts(r.created),
    }


def export_org_details(o: Organization, registry: OrgRegistry) -> dict[str, Any]:
    data = export_org(registry)
    data.update(
        {
            "creator": gid(o.creator),
            "modifier": gid(o.modifier),
            "modified": ts(o.modified),
        }
    )
    return data


def export_store(e: OrgStoreRegistry) -> dict[str, Any]:
    return {
        "id": gid(e.store),
        "org": gid(e.org),
        "alias": e.alias,
        "name": e.name,
        "state": e.state,
    }


def export_member(m: ObjectUserRegistry) -> dict[str, Any]:
    return {
        "object": gid(m.object),
        "user": gid(m.user),
        "username": m.username,
        "roles": list(m.roles),
        "state": m.state,
        "created": ts(m.created),
    }


def export_user_object(link: UserObjectRegistry) -> dict[str, Any]:
    return {
        "object": gid(link.object),
        "type": link.type,
        "alias": link.alias,
        "favorite": link.favorite,
    }


def export_object(obj: StoreObject) -> dict[str, Any]:
    return {
        "store": obj.store,
        "id": obj.id,
        "parent": obj.parent,
        "type": obj.type,
        "title": obj.title,
        "creator": gid(obj.creator),
        "created": ts(obj.created),
        "modifier": gid(obj.modifier),
        "modified": ts(obj.modified),
    }


def export_opened(opened: OpenedObject) -> dict[str, Any]:
    data = export_object(opened.entry)
    if opened.body is not None:
        data["body"] = {
            "template": {"name": opened.body.template, "version": opened.body.version},
            "values": opened.body.values,
        }
    return data


def export_invitation(r: InvitationRegistry) -> dict[str, Any]:
    return {
        "uid": r.uid,
        "object": gid(r.object),
        "creator": gid(r.creator),
        "invitee": r.invitee_email,
        "state": r.state,
        "expiration": r.expiration_utc(),
        "created": ts(r.created),
    }


def export_request(r: RequestRegistry) -> dict[str, Any]:
    return {
        "guid": r.guid,
        "type": r.request_type,
        "object": gid(r.object),
        "state": r.state,
        "expiration": r.expiration_utc(),
        "created": ts(r.created),
    }


def export_template(t: Template) -> dict[str, Any]:
    return {
        "name": t.name,
        "version": t.version,
        "title": t.title,
        "description": t.description,
        "model": t.export_model(),
        "created": ts(t.created),
    }


def export_template_summary(t: Template) -> dict[str, Any]:
    return {"name": t.name, "version": t.version, "title": t.title, "created": ts(t.created)}


def export_object_template(r: ObjectTemplateRegistry) -> dict[str, Any]:
    return {"object": gid(r.object), "template": r.template, "title": r.title}


def export_session(s: StoreSession) -> dict[str, Any]:
    expiration = datetime.fromtimestamp(s.expiration, tz=timezone.utc)
    return {"store": gid(s.store), "expiration": ts(expiration)}
