"""
Storage module: shard routing, per-shard connection pools and schema.

Invariants:
    - Group 0 shard 0 hosts the global registries
    - Every shard database carries the same schema
"""

from .router import ShardPool, ShardRouter
from .schema import SCHEMA_VERSION, create_schema

__all__ = ["SCHEMA_VERSION", "ShardPool", "ShardRouter", "create_schema"]
