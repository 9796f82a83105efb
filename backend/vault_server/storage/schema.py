"""
SQLite schema for vault shard databases.

Every shard database receives the full DDL. The registry shard (group 0,
shard 0) is the only one whose global registry tables are populated; the
shard-local registries (org stores, object users, user objects, object
templates) live beside the entity whose shard they follow.

Table schema:
    users / orgs / stores / objects / templates / ciphers:
        - id INTEGER (shard-local id, AUTOINCREMENT)
        - created TEXT (DEFAULT CURRENT_TIMESTAMP)
        - modified TEXT (set by UPDATE)

    invites / requests:
        - immutable rows keyed by local id plus uid / guid

    actions:
        - guid TEXT PRIMARY KEY

    registry_*:
        - keyed by global ids (signed 64-bit storage, see core.ids.to_db)

Invariants:
    - Timestamps are written by the database, never by the application
    - DDL is idempotent (IF NOT EXISTS everywhere)

How to change safely:
    - Only add columns with defaults; bump SCHEMA_VERSION when doing so
"""

from __future__ import annotations

import logging
import sqlite3

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SHARD_DDL = """
    -- Schema version tracking
    CREATE TABLE IF NOT EXISTS schema_version (
        version INTEGER PRIMARY KEY,
        applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    );

    -- Users
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        ciphertext BLOB,
        creator INTEGER,
        created TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        modifier INTEGER,
        modified TEXT
    );

    -- Organizations
    CREATE TABLE IF NOT EXISTS orgs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        alias TEXT NOT NULL UNIQUE,
        name TEXT,
        creator INTEGER,
        created TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        modifier INTEGER,
        modified TEXT
    );

    -- Stores
    CREATE TABLE IF NOT EXISTS stores (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        id_org INTEGER NOT NULL,
        alias TEXT NOT NULL,
        name TEXT,
        creator INTEGER,
        created TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        modifier INTEGER,
        modified TEXT,
        UNIQUE (id_org, alias)
    );

    -- Store objects (folders and encrypted json bodies)
    CREATE TABLE IF NOT EXISTS objects (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        id_store INTEGER NOT NULL,
        id_parent INTEGER NOT NULL DEFAULT 0,
        type INTEGER NOT NULL DEFAULT 0,
        title TEXT NOT NULL,
        object BLOB,
        creator INTEGER,
        created TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        modifier INTEGER,
        modified TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_objects_parent ON objects(id_store, id_parent);

    -- Templates (one row per name/version)
    CREATE TABLE IF NOT EXISTS templates (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        version INTEGER NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        model TEXT NOT NULL,
        creator INTEGER,
        created TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (name, version)
    );

    -- Wrapped keys exchanged through invitations
    CREATE TABLE IF NOT EXISTS ciphers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        ciphertext BLOB NOT NULL,
        expiration TEXT,
        id_creator INTEGER,
        created TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    );

    -- Invitations
    CREATE TABLE IF NOT EXISTS invites (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        uid TEXT NOT NULL UNIQUE,
        id_creator INTEGER NOT NULL,
        invitee_email TEXT NOT NULL,
        id_object INTEGER NOT NULL,
        message TEXT,
        id_key INTEGER,
        key_pick TEXT,
        roles TEXT,
        expiration TEXT,
        created TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    );

    -- Requests
    CREATE TABLE IF NOT EXISTS requests (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        guid TEXT NOT NULL UNIQUE,
        type TEXT NOT NULL,
        object INTEGER,
        params TEXT,
        props TEXT,
        expiration TEXT,
        creator INTEGER,
        created TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        modifier INTEGER,
        modified TEXT
    );

    -- Actions
    CREATE TABLE IF NOT EXISTS actions (
        guid TEXT PRIMARY KEY,
        parent TEXT,
        type TEXT NOT NULL,
        params TEXT,
        props TEXT,
        state INTEGER NOT NULL DEFAULT 0,
        creator INTEGER,
        created TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        modified TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_actions_state ON actions(state);

    -- Global user registry
    CREATE TABLE IF NOT EXISTS registry_users (
        id_user INTEGER PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        state INTEGER NOT NULL DEFAULT 0,
        ciphertext BLOB,
        created TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        modified TEXT
    );

    -- Global organization registry
    CREATE TABLE IF NOT EXISTS registry_orgs (
        id_org INTEGER PRIMARY KEY,
        alias TEXT NOT NULL UNIQUE,
        name TEXT,
        state INTEGER NOT NULL DEFAULT 0,
        created TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        modified TEXT
    );

    -- Organization to store mapping (on the org's shard)
    CREATE TABLE IF NOT EXISTS registry_org_stores (
        id_org INTEGER NOT NULL,
        id_store INTEGER NOT NULL,
        alias TEXT NOT NULL,
        name TEXT,
        state INTEGER NOT NULL DEFAULT 0,
        created TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        modified TEXT,
        PRIMARY KEY (id_org, id_store),
        UNIQUE (id_org, alias)
    );

    -- Object membership (on the object's shard)
    CREATE TABLE IF NOT EXISTS registry_object_users (
        id_object INTEGER NOT NULL,
        id_user INTEGER NOT NULL,
        username TEXT NOT NULL,
        state INTEGER NOT NULL DEFAULT 0,
        roles TEXT,
        mgr_roles INTEGER NOT NULL DEFAULT 0,
        mgr_invites INTEGER NOT NULL DEFAULT 0,
        ciphertext BLOB,
        created TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        modified TEXT,
        PRIMARY KEY (id_object, id_user)
    );

    -- User to object mapping (on the user's shard)
    CREATE TABLE IF NOT EXISTS registry_user_objects (
        id_user INTEGER NOT NULL,
        id_object INTEGER NOT NULL,
        type INTEGER NOT NULL,
        alias TEXT NOT NULL,
        favorite INTEGER NOT NULL DEFAULT 0,
        created TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        modified TEXT,
        PRIMARY KEY (id_user, id_object)
    );

    -- Templates visible in an object (on the object's shard)
    CREATE TABLE IF NOT EXISTS registry_object_templates (
        id_object INTEGER NOT NULL,
        template TEXT NOT NULL,
        title TEXT NOT NULL,
        created TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (id_object, template)
    );

    -- Global invitation registry
    CREATE TABLE IF NOT EXISTS registry_invites (
        id_invite INTEGER PRIMARY KEY,
        uid TEXT NOT NULL UNIQUE,
        id_creator INTEGER NOT NULL,
        invitee_email TEXT NOT NULL,
        id_object INTEGER NOT NULL,
        expiration TEXT,
        state INTEGER NOT NULL DEFAULT 0,
        created TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        modified TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_registry_invites_object
        ON registry_invites(id_object, invitee_email);

    -- Global request registry
    CREATE TABLE IF NOT EXISTS registry_requests (
        id_request INTEGER PRIMARY KEY,
        guid TEXT NOT NULL UNIQUE,
        type TEXT NOT NULL,
        object INTEGER,
        expiration TEXT,
        state INTEGER NOT NULL DEFAULT 0,
        creator INTEGER,
        created TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        modified TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_registry_requests_type
        ON registry_requests(type, object, state);
"""


def create_schema(conn: sqlite3.Connection) -> None:
    """Apply the shard DDL and record the schema version."""
    conn.executescript(SHARD_DDL)
    conn.execute(
        "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
