"""
Service layer: the operations of the vault on top of the shard router.

Every operation takes the calling user's global id first (``session_user``)
except the public entry points: password recovery, reset, invitation
lookup and account creation through an invitation.

Invariants:
    - Services share one router, one publisher and one access evaluator
    - Canonical rows are flushed before their registry rows
    - Actions are stored before they are published

How to change safely:
    - New operations check the session user, then access, then validate input
"""

from __future__ import annotations

from ..access import AccessEvaluator
from ..broker import ActionPublisher
from ..config import VaultConfig
from ..storage import ShardRouter
from .base import ServiceBase
from .invitations import InvitationResult, InvitationService, NewAccount
from .members import MemberService
from .objects import ObjectService, OpenedObject
from .orgs import OrgService
from .requests import RequestService
from .stores import StoreService
from .system import BootstrapReport, SystemService
from .templates import TemplateService
from .users import UserService


class VaultService:
    """All services wired to the same router, publisher and configuration.

    Example:
        >>> vault = VaultService(router, publisher, config)
        >>> org = await vault.orgs.create_org(user_id, "acme", "Acme Inc")
        >>> store = await vault.stores.create_store(user_id, ":" + hex(org.id)[2:], "docs", hexhash)
    """

    def __init__(
        self,
        router: ShardRouter,
        publisher: ActionPublisher,
        config: VaultConfig,
    ) -> None:
        self.router = router
        self.publisher = publisher
        self.config = config
        self.access = AccessEvaluator(router)

        deps = (router, publisher, config, self.access)
        self.system = SystemService(*deps)
        self.users = UserService(*deps)
        self.orgs = OrgService(*deps)
        self.stores = StoreService(*deps)
        self.members = MemberService(*deps)
        self.objects = ObjectService(*deps)
        self.invitations = InvitationService(*deps)
        self.requests = RequestService(*deps)
        self.templates = TemplateService(*deps)


__all__ = [
    "BootstrapReport",
    "InvitationResult",
    "InvitationService",
    "MemberService",
    "NewAccount",
    "ObjectService",
    "OpenedObject",
    "OrgService",
    "RequestService",
    "ServiceBase",
    "StoreService",
    "SystemService",
    "TemplateService",
    "UserService",
    "VaultService",
]
