"""
Vault Server - sharded identity, access and encrypted-object core.

Organizations own stores, stores hold encrypted template-typed objects and
users hold roles within organizations and stores.

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌──────────────────┐
    │   Client    │────▶│  HTTP API   │────▶│  Service layer   │
    └─────────────┘     └─────────────┘     └────────┬─────────┘
                                                     │
                     ┌───────────────────────────────┼──────────────────┐
                     │                               │                  │
                     ▼                               ▼                  ▼
              ┌─────────────┐                ┌──────────────┐    ┌─────────────┐
              │  Registry   │                │ Data shards  │    │   Action    │
              │ (group 0/0) │                │  (group 1+)  │    │   broker    │
              └─────────────┘                └──────────────┘    └─────────────┘

Invariants:
    - Every global id carries the shard of its canonical row
    - Canonical rows are written before their registry rows
    - Passwords never reach storage; only SHA-256 hashes used as AEAD keys
    - Store data keys are wrapped per member and unwrapped only in process

How to change safely:
    - Identifier layout and role numbering are persisted; never renumber
    - New entity types need a type code, a table and a registry plan
"""

from ._version import __version__

__all__ = ["__version__"]
