"""
Vault Server Test Suite.

This package contains:
- unit/: Unit tests (no database, no broker)
- integration/: Integration tests (SQLite shards, in-memory action broker,
  aiohttp test client)
"""
