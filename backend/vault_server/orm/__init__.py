"""
Entity repository and registries.

Every class here wraps one table row and is driven by an explicit
``sqlite3.Connection`` handed in by the caller (obtained from the shard
router). Entities never pick their own shard.

Modules:
    base          run/fetch helpers, Entity base classes, paged listing
    users         canonical users and the password validation blob
    orgs          canonical organizations and stores
    objects       store objects and templated JSON bodies
    templates     system templates
    keys          wrapped key blobs
    invitations   invitations and their global registry
    requests      requests and their global registry
    actions       broker work items
    registries    global user / organization registries
    memberships   shard-local registries (org stores, members, user objects,
                  object templates)
"""

from .actions import Action
from .base import Entity, transaction
from .invitations import Invitation, InvitationRegistry
from .keys import Key
from .memberships import (
    ObjectTemplateRegistry,
    ObjectUserRegistry,
    OrgStoreRegistry,
    UserObjectRegistry,
)
from .objects import StoreObject, StoreTemplateObject
from .orgs import Organization, Store
from .registries import OrgRegistry, UserRegistry
from .requests import Request, RequestRegistry
from .templates import Template
from .users import User

__all__ = [
    "Action",
    "Entity",
    "Invitation",
    "InvitationRegistry",
    "Key",
    "ObjectTemplateRegistry",
    "ObjectUserRegistry",
    "OrgRegistry",
    "OrgStoreRegistry",
    "Organization",
    "Request",
    "RequestRegistry",
    "Store",
    "StoreObject",
    "StoreTemplateObject",
    "Template",
    "User",
    "UserObjectRegistry",
    "UserRegistry",
    "transaction",
]
