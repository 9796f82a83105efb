"""
System bootstrap and action redelivery.

Creates the well-known system entities on the registry shard:

    SYSTEM_ADMINISTRATOR   user "admin", local id 0
    SYSTEM_ORGANIZATION    org "system", local id 0

and registers the administrator with the system organization holding every
system role plus the SYSTEM state marker.

Actions whose publish failed stay REGISTERED on the registry shard;
``republish_actions`` hands them to the broker again, oldest first.

Invariants:
    - Bootstrap is idempotent: existing rows are left untouched
    - The administrator password is only ever supplied as a SHA-256 hex hash
    - An action moves to QUEUED only after the broker accepted it
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..core import ids, states
from ..core.roles import CATEGORY_SYSTEM, all_roles
from ..errors import PublishError
from ..orm.actions import registered_actions
from ..orm.memberships import ObjectUserRegistry, UserObjectRegistry
from ..orm.orgs import Organization
from ..orm.registries import OrgRegistry, UserRegistry
from ..orm.users import User
from .base import ServiceBase

logger = logging.getLogger(__name__)

ADMIN_USERNAME = "admin"
SYSTEM_ORG_ALIAS = "system"


@dataclass
class BootstrapReport:
    """What a bootstrap run created."""

    admin_created: bool = False
    org_created: bool = False
    membership_created: bool = False

    @property
    def changed(self) -> bool:
        return self.admin_created or self.org_created or self.membership_created


class SystemService(ServiceBase):
    """Bootstrap of the system entities and action redelivery."""

    async def bootstrap(
        self,
        admin_email: str,
        admin_hash: str,
        admin_name: str = "System Administrator",
    ) -> BootstrapReport:
        report = BootstrapReport()
        admin_id = ids.SYSTEM_ADMINISTRATOR
        org_id = ids.SYSTEM_ORGANIZATION

        with self.router.registry() as conn:
            user = User()
            if not user.by_id(conn, ids.local(admin_id)):
                user.set_id(ids.local(admin_id))
                user.set_username(ADMIN_USERNAME)
                user.set_email(admin_email)
                user.set_name(admin_name)
                user.set_hash(admin_hash)
                user.set_creator(admin_id)
                user.flush(conn)
                report.admin_created = True

            registry = UserRegistry()
            if not registry.by_id(conn, admin_id):
                registry = UserRegistry.from_user(user, ids.REGISTRY_GROUP, ids.REGISTRY_SHARD)
                registry.flush(conn)
                report.admin_created = True

            org = Organization()
            if not org.by_id(conn, ids.local(org_id)):
                org.set_id(ids.local(org_id))
                org.set_alias(SYSTEM_ORG_ALIAS)
                org.set_name("System Organization")
                org.set_creator(admin_id)
                org.flush(conn)
                report.org_created = True

            org_registry = OrgRegistry()
            if not org_registry.by_id(conn, org_id):
                org_registry = OrgRegistry.from_org(org, ids.REGISTRY_GROUP, ids.REGISTRY_SHARD)
                org_registry.flush(conn)
                report.org_created = True

            membership = ObjectUserRegistry()
            if not membership.by_key(conn, org_id, admin_id):
                membership = ObjectUserRegistry(org_id, admin_id)
                membership.set_username(registry.username)
                membership.add_roles(all_roles(CATEGORY_SYSTEM))
                membership.set_states(states.STATE_SYSTEM)
                membership.flush(conn)
                report.membership_created = True

            link = UserObjectRegistry()
            if not link.by_key(conn, admin_id, org_id):
                link = UserObjectRegistry(admin_id, org_id)
                link.set_alias(SYSTEM_ORG_ALIAS)
                link.flush(conn)
                report.membership_created = True

        if report.changed:
            logger.info(
                "System bootstrap applied",
                extra={
                    "admin": ids.id_to_string(admin_id),
                    "org": ids.id_to_string(org_id),
                    "admin_created": report.admin_created,
                    "org_created": report.org_created,
                },
            )
        return report

    async def republish_actions(self, limit: int = 100) -> int:
        """Publish actions left REGISTERED by an earlier broker failure.

        Stops at the first refusal; the remaining actions wait for the next
        pass.

        Returns:
            Number of actions moved to QUEUED
        """
        with self.router.registry() as conn:
            pending = registered_actions(conn, limit)

        queued = 0
        for action in pending:
            try:
                await self.dispatch(action)
            except PublishError:
                break
            queued += 1
        if pending:
            logger.info(
                "Republished registered actions",
                extra={"pending": len(pending), "queued": queued},
            )
        return queued
