"""
Shard router for the vault databases.

Maps a global id (or an explicit group/shard pair) to the SQLite database
that holds it and hands out pooled connections to that database.

Invariants:
    - Routing looks only at the group and shard fields of an id
    - One pool per configured shard, created lazily and never destroyed
    - A connection handed out by connect() always goes back to its pool
    - Connections run in autocommit mode; callers open explicit
      transactions when they need one

How to change safely:
    - Changing shard ranges re-homes existing ids; never shrink a range
      that already holds rows
    - Keep pool limits in PoolConfig rather than hard-coding them here
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from ..config import PoolConfig, ShardConfig, ShardsConfig, StorageConfig
from ..core import ids
from ..errors import ShardNotFoundError, StorageError
from .schema import create_schema

logger = logging.getLogger(__name__)


@dataclass
class _PooledConnection:
    conn: sqlite3.Connection
    opened_at: float


class ShardPool:
    """Bounded connection pool for one shard database.

    Thread safety:
        acquire/release are guarded by a condition variable; acquire blocks
        while ``max_open`` connections are checked out.
    """

    def __init__(
        self,
        db_path: Path,
        shard: ShardConfig,
        storage: StorageConfig,
        pool: PoolConfig,
    ) -> None:
        self.db_path = db_path
        self.shard = shard
        self.storage = storage
        self.pool = pool
        self._idle: list[_PooledConnection] = []
        self._open = 0
        self._cond = threading.Condition()

    def _open_connection(self) -> _PooledConnection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.storage.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute(f"PRAGMA busy_timeout = {int(self.storage.busy_timeout_ms)}")
            if self.storage.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            for name, value in self.shard.connection.options.items():
                if not str(name).replace("_", "").isalnum():
                    raise StorageError(f"Invalid connection option [{name}]")
                conn.execute(f"PRAGMA {name} = {value}")
        except sqlite3.Error as e:
            raise StorageError(f"Failed to open database {self.db_path.name}: {e}") from e
        return _PooledConnection(conn=conn, opened_at=time.monotonic())

    def _expired(self, pooled: _PooledConnection) -> bool:
        return time.monotonic() - pooled.opened_at > self.pool.lifetime_seconds

    def acquire(self, timeout: float | None = None) -> _PooledConnection:
        """Take a connection, opening one if under ``max_open``.

        Raises:
            StorageError: If no connection frees up within ``timeout``
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                while self._idle:
                    pooled = self._idle.pop()
                    if not self._expired(pooled):
                        return pooled
                    self._open -= 1
                    pooled.conn.close()

                if self._open < self.pool.max_open:
                    self._open += 1
                    break

                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise StorageError(f"Connection pool exhausted for {self.db_path.name}")
                self._cond.wait(remaining)

        try:
            return self._open_connection()
        except StorageError:
            with self._cond:
                self._open -= 1
                self._cond.notify()
            raise

    def release(self, pooled: _PooledConnection) -> None:
        with self._cond:
            if pooled.conn.in_transaction:
                pooled.conn.rollback()
            if len(self._idle) < self.pool.max_idle and not self._expired(pooled):
                self._idle.append(pooled)
            else:
                self._open -= 1
                pooled.conn.close()
            self._cond.notify()

    def close(self) -> None:
        with self._cond:
            for pooled in self._idle:
                pooled.conn.close()
                self._open -= 1
            self._idle = []

    @property
    def open_count(self) -> int:
        return self._open

    @property
    def idle_count(self) -> int:
        return len(self._idle)


class ShardRouter:
    """Resolves ids to shard databases and owns the per-shard pools.

    Example:
        >>> router = ShardRouter(ShardsConfig.local(), StorageConfig(data_dir="/tmp/v"))
        >>> router.initialize()
        >>> with router.connect(org_id) as conn:
        ...     conn.execute("SELECT alias FROM orgs WHERE id = ?", (ids.local(org_id),))
    """

    def __init__(
        self,
        shards: ShardsConfig,
        storage: StorageConfig,
        pool: PoolConfig | None = None,
    ) -> None:
        self.shards = shards
        self.storage = storage
        self.pool_config = pool or PoolConfig()
        self.data_dir = Path(storage.data_dir)
        self._pools: dict[tuple[int, int], ShardPool] = {}
        self._lock = threading.Lock()

    def resolve(self, group: int, shard_id: int) -> tuple[int, ShardConfig]:
        """Find the shard covering ``shard_id`` in ``group``.

        Returns:
            Tuple of (index of the shard inside its group, shard config)

        Raises:
            ShardNotFoundError: If the group or a covering shard does not exist
        """
        if group < 0 or group >= len(self.shards.groups):
            raise ShardNotFoundError(f"Shard Group [{group}] Does not Exist")

        shards = self.shards.groups[group].shards
        if not shards:
            raise ShardNotFoundError(f"Shard Group [{group}] has No Shards")

        # Single shard groups skip the range check
        if len(shards) == 1:
            return 0, shards[0]

        for index, candidate in enumerate(shards):
            if candidate.covers(shard_id):
                return index, candidate

        raise ShardNotFoundError(f"No Shards in Group [{group}] cover shard [{shard_id:#x}]")

    def _get_pool(self, group: int, shard_id: int) -> ShardPool:
        index, shard = self.resolve(group, shard_id)
        key = (group, index)
        pool = self._pools.get(key)
        if pool is not None:
            return pool
        with self._lock:
            pool = self._pools.get(key)
            if pool is None:
                db_path = self.data_dir / f"{shard.connection.database}.db"
                pool = ShardPool(db_path, shard, self.storage, self.pool_config)
                self._pools[key] = pool
                logger.debug(
                    "Created shard pool",
                    extra={"group": group, "shard": index, "database": db_path.name},
                )
            return pool

    @contextmanager
    def connect_to(self, group: int, shard_id: int) -> Iterator[sqlite3.Connection]:
        """Connection to the shard covering ``(group, shard_id)``.

        Yields:
            SQLite connection (autocommit mode)

        Raises:
            ShardNotFoundError: If no shard covers the pair
            StorageError: If the pool cannot supply a connection
        """
        pool = self._get_pool(group, shard_id)
        pooled = pool.acquire(timeout=self.storage.busy_timeout_ms / 1000.0)
        try:
            yield pooled.conn
        finally:
            pool.release(pooled)

    @contextmanager
    def connect(self, gid: int) -> Iterator[sqlite3.Connection]:
        """Connection to the shard holding global id ``gid``."""
        with self.connect_to(ids.shard_group(gid), ids.shard(gid)) as conn:
            yield conn

    @contextmanager
    def registry(self) -> Iterator[sqlite3.Connection]:
        """Connection to the registry shard (group 0, shard 0)."""
        with self.connect_to(ids.REGISTRY_GROUP, ids.REGISTRY_SHARD) as conn:
            yield conn

    def initialize(self) -> None:
        """Create every configured shard database and apply the schema."""
        for group, shard in self.shards.databases():
            with self.connect_to(group, shard.start) as conn:
                create_schema(conn)
            logger.info(
                "Initialized shard database",
                extra={
                    "group": group,
                    "range": [shard.start, shard.end],
                    "database": shard.connection.database,
                },
            )

    def pick_data_shard(self, group: int = ids.DATA_GROUP) -> int:
        """Random shard id inside ``group`` that resolves to a configured shard."""
        if group >= len(self.shards.groups):
            raise ShardNotFoundError(f"Shard Group [{group}] Does not Exist")
        shards = self.shards.groups[group].shards
        if not shards:
            raise ShardNotFoundError(f"Shard Group [{group}] has No Shards")
        shard_id = ids.random_shard_id()
        if len(shards) == 1 or any(s.covers(shard_id) for s in shards):
            return shard_id
        # Range gaps: fall back to the start of a configured shard
        return shards[shard_id % len(shards)].start

    def close(self) -> None:
        """Close idle connections of every pool."""
        with self._lock:
            for pool in self._pools.values():
                pool.close()
