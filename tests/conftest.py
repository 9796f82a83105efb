"""
Shared fixtures for the vault test suite.

Integration fixtures build a complete service stack over temporary SQLite
shards (a registry database plus two data shards) and the in-memory action
broker.
"""

from __future__ import annotations

import hashlib

import pytest

from backend.vault_server.broker import InMemoryActionPublisher
from backend.vault_server.config import (
    PublisherBackend,
    ShardsConfig,
    StorageConfig,
    VaultConfig,
)
from backend.vault_server.core import ids
from backend.vault_server.service import VaultService
from backend.vault_server.storage import ShardRouter

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "admin-secret"


def password_hash(password: str) -> str:
    """Hex SHA-256 of a password, the form clients send."""
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


@pytest.fixture
def config(tmp_path):
    """Configuration over a temporary data directory."""
    return VaultConfig(
        publisher_backend=PublisherBackend.MEMORY,
        storage=StorageConfig(data_dir=str(tmp_path), wal_mode=False),
        shards=ShardsConfig.local(2),
    )


@pytest.fixture
def router(config):
    """Shard router with every schema applied."""
    r = ShardRouter(config.shards, config.storage, config.pool)
    r.initialize()
    yield r
    r.close()


@pytest.fixture
async def publisher():
    """Connected in-memory action publisher."""
    p = InMemoryActionPublisher()
    await p.connect()
    yield p
    await p.close()


@pytest.fixture
def vault(router, publisher, config):
    """Service layer over the test router and publisher."""
    return VaultService(router, publisher, config)


@pytest.fixture
async def admin(vault):
    """Bootstrapped system administrator id."""
    await vault.system.bootstrap(ADMIN_EMAIL, password_hash(ADMIN_PASSWORD))
    return ids.SYSTEM_ADMINISTRATOR


@pytest.fixture
def make_user(vault, admin):
    """Factory creating users as the system administrator.

    The password of each user is its username.
    """

    async def _make(username: str, name: str = ""):
        return await vault.users.create_user(
            admin, username, f"{username}@example.com", password_hash(username), name
        )

    return _make


@pytest.fixture
async def acme(vault, admin):
    """Organization "acme" created by the administrator."""
    return await vault.orgs.create_org(admin, "acme", "Acme Inc")


@pytest.fixture
async def store(vault, admin, acme):
    """Store "vault" under acme; the administrator holds its key."""
    return await vault.stores.create_store(
        admin, acme.id, "vault", password_hash(ADMIN_PASSWORD), "Vault"
    )


@pytest.fixture
async def note_template(vault, admin, acme, store):
    """Template "note" published and made usable in the store."""
    template = await vault.templates.create_template(
        admin, "note", "Note", {"text": {"type": "string"}}
    )
    await vault.templates.attach_org_template(admin, acme.id, "note")
    await vault.templates.attach_store_template(admin, store.store, "note")
    return template


def note(title: str, version: int = 1, **values) -> dict:
    """Body of a "note" object."""
    return {"template": {"name": "note", "version": version}, "values": {"__title": title, **values}}


async def join_org(vault, inviter: int, org_id: int, user, roles=None):
    """Invite ``user`` into an organization and accept as them."""
    result = await vault.invitations.create_org_invitation(inviter, org_id, user.email, roles=roles)
    return await vault.invitations.accept(user.id, result.invitation.uid)


async def join_store(vault, store_id: int, user, roles=None):
    """Hand the store key to ``user`` through an administrator invitation.

    ``user`` must already belong to the store's organization.
    """
    result = await vault.invitations.create_store_invitation(
        ids.SYSTEM_ADMINISTRATOR, store_id, password_hash(ADMIN_PASSWORD), user.email, roles=roles
    )
    return await vault.invitations.accept(
        user.id, result.invitation.uid, hexhash=password_hash(user.username)
    )
