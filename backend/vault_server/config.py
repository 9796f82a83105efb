"""
Configuration management for the vault server.

Settings come from environment variables; the shard layout comes from a YAML or
JSON file named by VAULT_SHARDS_FILE (or a built-in single-machine layout for
local development).

Invariants:
    - All settings have sensible defaults for local development
    - A shard connection always names a database, user, host and non-zero port
    - Secrets (passwords, hashes) are never logged or put in error messages

How to change safely:
    - Add new settings with defaults that keep existing deployments working
    - Shard file keys mirror the documented layout; add keys, never rename them
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


class PublisherBackend(Enum):
    """Supported action broker backends."""

    KAFKA = "kafka"
    MEMORY = "memory"


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory holding one SQLite file per shard database
        wal_mode: SQLite WAL journal mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "/var/lib/vault"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("VAULT_DATA_DIR", "/var/lib/vault"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class PoolConfig:
    """Per-shard connection pool limits.

    Attributes:
        lifetime_seconds: Connections older than this are closed instead of reused
        max_open: Maximum connections open at once per shard
        max_idle: Maximum idle connections kept per shard
    """

    lifetime_seconds: float = 180.0
    max_open: int = 10
    max_idle: int = 2

    @classmethod
    def from_env(cls) -> PoolConfig:
        """Load configuration from environment variables."""
        return cls(
            lifetime_seconds=float(os.getenv("DB_POOL_LIFETIME_SECONDS", "180")),
            max_open=int(os.getenv("DB_POOL_MAX_OPEN", "10")),
            max_idle=int(os.getenv("DB_POOL_MAX_IDLE", "2")),
        )


@dataclass(frozen=True)
class SessionConfig:
    """Store session and request lifetime settings.

    Attributes:
        store_session_extend_minutes: Minutes a store session lives past its last use
        request_expiry_days: Lifetime of a password reset request
        invitation_expiry_days: Default lifetime of an invitation
    """

    store_session_extend_minutes: int = 5
    request_expiry_days: int = 1
    invitation_expiry_days: int = 7

    @classmethod
    def from_env(cls) -> SessionConfig:
        """Load configuration from environment variables."""
        return cls(
            store_session_extend_minutes=int(os.getenv("STORE_SESSION_EXTEND_MINUTES", "5")),
            request_expiry_days=int(os.getenv("REQUEST_EXPIRY_DAYS", "1")),
            invitation_expiry_days=int(os.getenv("INVITATION_EXPIRY_DAYS", "7")),
        )


@dataclass(frozen=True)
class KafkaConfig:
    """Kafka action broker configuration.

    Attributes:
        brokers: Comma-separated list of broker addresses
        topic: Queue (topic) actions are published to
        client_id: Producer client id
        sasl_mechanism: SASL authentication mechanism (PLAIN, SCRAM-SHA-256, etc.)
        sasl_username: SASL username (if authentication enabled)
        sasl_password: SASL password (if authentication enabled)
        security_protocol: Security protocol (PLAINTEXT, SSL, SASL_PLAINTEXT, SASL_SSL)
        ssl_cafile: Path to CA certificate file
        acks: Producer acknowledgment level ('all' for strongest durability)
        enable_idempotence: Enable idempotent producer
        request_timeout_ms: Producer request timeout
        retry_interval_seconds: Seconds between passes republishing registered actions
    """

    brokers: str = "localhost:9092"
    topic: str = "q.actions.inbox"
    client_id: str = "vault-server"
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    security_protocol: str = "PLAINTEXT"
    ssl_cafile: str | None = None
    acks: str = "all"
    enable_idempotence: bool = True
    request_timeout_ms: int = 30000
    retry_interval_seconds: int = 30

    @classmethod
    def from_env(cls) -> KafkaConfig:
        """Load configuration from environment variables."""
        return cls(
            brokers=os.getenv("KAFKA_BROKERS", "localhost:9092"),
            topic=os.getenv("ACTIONS_TOPIC", "q.actions.inbox"),
            client_id=os.getenv("KAFKA_CLIENT_ID", "vault-server"),
            sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM"),
            sasl_username=os.getenv("KAFKA_SASL_USERNAME"),
            sasl_password=os.getenv("KAFKA_SASL_PASSWORD"),
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
            ssl_cafile=os.getenv("KAFKA_SSL_CAFILE"),
            acks=os.getenv("KAFKA_ACKS", "all"),
            enable_idempotence=os.getenv("KAFKA_ENABLE_IDEMPOTENCE", "true").lower() == "true",
            request_timeout_ms=int(os.getenv("KAFKA_REQUEST_TIMEOUT_MS", "30000")),
            retry_interval_seconds=int(os.getenv("ACTIONS_RETRY_INTERVAL_SECONDS", "30")),
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP API configuration.

    Attributes:
        host: Bind host
        port: Bind port
        session_cookie: Name of the cookie carrying the server-side session id
    """

    host: str = "0.0.0.0"
    port: int = 8080
    session_cookie: str = "vault-session"

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8080")),
            session_cookie=os.getenv("SESSION_COOKIE", "vault-session"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass(frozen=True)
class ConnectionConfig:
    """Connection settings of one shard database.

    ``database`` names the SQLite file (``<data_dir>/<database>.db``);
    ``options`` are applied as PRAGMA statements on every new connection.
    """

    database: str
    user: str
    host: str
    port: int
    password: str = ""
    options: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any], path: str = "connection") -> ConnectionConfig:
        """Parse a ``connection`` block.

        Raises:
            ValueError: If a mandatory field is missing
        """
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping")
        server = data.get("server") or {}
        if not isinstance(server, dict):
            raise ValueError(f"{path}.server: expected a mapping")

        database = str(data.get("database") or "").strip()
        user = str(data.get("user") or "").strip()
        host = str(server.get("host") or "").strip()
        try:
            port = int(server.get("port") or 0)
        except (TypeError, ValueError):
            raise ValueError(f"{path}.server.port: not an integer")

        if not database:
            raise ValueError(f"{path}.database: Missing Database Name")
        if not user:
            raise ValueError(f"{path}.user: Missing Database User")
        if not host:
            raise ValueError(f"{path}.server.host: Missing Database Server Host")
        if port == 0:
            raise ValueError(f"{path}.server.port: Missing Database Server Port")

        options = data.get("options") or {}
        if not isinstance(options, dict):
            raise ValueError(f"{path}.options: expected a mapping")

        return cls(
            database=database,
            user=user,
            host=host,
            port=port,
            password=str(data.get("password") or ""),
            options=dict(options),
        )


@dataclass(frozen=True)
class ShardConfig:
    """One shard: the shard-id range it covers and its connection."""

    start: int
    end: int
    connection: ConnectionConfig

    def covers(self, shard_id: int) -> bool:
        return self.start <= shard_id <= self.end

    @classmethod
    def from_dict(cls, data: dict[str, Any], path: str = "shard") -> ShardConfig:
        """Parse a shard entry.

        ``range`` is ``[end]`` (meaning ``[0, end]``) or ``[start, end]``.

        Raises:
            ValueError: If the range or connection is invalid
        """
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping")

        values = data.get("range")
        if not isinstance(values, list) or len(values) not in (1, 2):
            raise ValueError(f"{path}.range: expected one or two integers")
        try:
            bounds = [int(v) for v in values]
        except (TypeError, ValueError):
            raise ValueError(f"{path}.range: expected one or two integers")
        start, end = (0, bounds[0]) if len(bounds) == 1 else (bounds[0], bounds[1])
        if start < 0 or end < start or end > 0xFFF:
            raise ValueError(f"{path}.range: invalid range [{start}, {end}]")

        connection = ConnectionConfig.from_dict(data.get("connection") or {}, f"{path}.connection")
        return cls(start=start, end=end, connection=connection)


@dataclass(frozen=True)
class ShardGroupConfig:
    """A shard group: ordered list of shards."""

    shards: tuple[ShardConfig, ...]

    @classmethod
    def from_dict(cls, data: dict[str, Any], path: str = "group") -> ShardGroupConfig:
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping")
        shards = data.get("shards") or []
        if not isinstance(shards, list):
            raise ValueError(f"{path}.shards: expected a list")
        return cls(
            shards=tuple(
                ShardConfig.from_dict(s, f"{path}.shards[{i}]") for i, s in enumerate(shards)
            )
        )


@dataclass(frozen=True)
class ShardsConfig:
    """Shard layout: shard groups indexed by their position.

    Group 0 shard 0 is the registry database.
    """

    groups: tuple[ShardGroupConfig, ...]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ShardsConfig:
        """Parse the ``shard-groups`` document.

        Raises:
            ValueError: If the document is malformed
        """
        if not isinstance(data, dict):
            raise ValueError("shards: expected a mapping")
        groups = data.get("shard-groups")
        if groups is None:
            groups = data.get("shard_groups")
        if not isinstance(groups, list) or not groups:
            raise ValueError("shard-groups: expected a non-empty list")
        return cls(
            groups=tuple(
                ShardGroupConfig.from_dict(g, f"shard-groups[{i}]") for i, g in enumerate(groups)
            )
        )

    @classmethod
    def from_file(cls, path: str | Path) -> ShardsConfig:
        """Load a YAML or JSON shard layout file."""
        path = Path(path)
        text = path.read_text(encoding="utf-8")
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
        return cls.from_dict(data)

    @classmethod
    def local(cls, shards_per_data_group: int = 1) -> ShardsConfig:
        """Single machine layout: a registry database plus one data group."""

        def _conn(database: str) -> dict[str, Any]:
            return {
                "database": database,
                "user": "vault",
                "server": {"host": "localhost", "port": 1},
            }

        width = 0x1000 // max(1, shards_per_data_group)
        data_shards = []
        for i in range(max(1, shards_per_data_group)):
            start = i * width
            end = 0xFFF if i == shards_per_data_group - 1 else start + width - 1
            data_shards.append({"range": [start, end], "connection": _conn(f"shard_1_{i}")})

        return cls.from_dict(
            {
                "shard-groups": [
                    {"shards": [{"range": [0], "connection": _conn("registry")}]},
                    {"shards": data_shards},
                ]
            }
        )

    @classmethod
    def from_env(cls) -> ShardsConfig:
        """Load the layout named by VAULT_SHARDS_FILE, or the local layout."""
        path = os.getenv("VAULT_SHARDS_FILE")
        if path:
            return cls.from_file(path)
        return cls.local()

    def databases(self) -> list[tuple[int, ShardConfig]]:
        """All (group index, shard) pairs."""
        return [(gi, s) for gi, g in enumerate(self.groups) for s in g.shards]


@dataclass
class VaultConfig:
    """Complete server configuration.

    Attributes:
        publisher_backend: Which action broker backend to use
        storage: Local storage configuration
        pool: Connection pool limits
        shards: Shard layout
        session: Session and request lifetimes
        kafka: Kafka configuration (if publisher_backend is KAFKA)
        http: HTTP API configuration
        observability: Logging configuration
    """

    publisher_backend: PublisherBackend = PublisherBackend.KAFKA
    storage: StorageConfig = field(default_factory=StorageConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    shards: ShardsConfig = field(default_factory=ShardsConfig.local)
    session: SessionConfig = field(default_factory=SessionConfig)
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> VaultConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("ACTIONS_BACKEND", "kafka").lower()
        try:
            backend = PublisherBackend(backend_str)
        except ValueError:
            raise ValueError(f"Invalid ACTIONS_BACKEND '{backend_str}'. Must be one of: kafka, memory")

        config = cls(
            publisher_backend=backend,
            storage=StorageConfig.from_env(),
            pool=PoolConfig.from_env(),
            shards=ShardsConfig.from_env(),
            session=SessionConfig.from_env(),
            kafka=KafkaConfig.from_env(),
            http=HttpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.publisher_backend == PublisherBackend.KAFKA:
            if not self.kafka.brokers:
                raise ValueError("KAFKA_BROKERS is required when ACTIONS_BACKEND=kafka")
            if not self.kafka.topic:
                raise ValueError("ACTIONS_TOPIC is required when ACTIONS_BACKEND=kafka")

        if self.pool.max_open < 1:
            raise ValueError("DB_POOL_MAX_OPEN must be at least 1")
        if self.pool.max_idle < 0 or self.pool.max_idle > self.pool.max_open:
            raise ValueError("DB_POOL_MAX_IDLE must be between 0 and DB_POOL_MAX_OPEN")
        if self.session.store_session_extend_minutes < 1:
            raise ValueError("STORE_SESSION_EXTEND_MINUTES must be at least 1")
        if self.kafka.retry_interval_seconds < 1:
            raise ValueError("ACTIONS_RETRY_INTERVAL_SECONDS must be at least 1")

        if not self.shards.groups or not self.shards.groups[0].shards:
            raise ValueError("shard-groups[0] must hold the registry shard")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first connection."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "publisher_backend": self.publisher_backend.value,
                "kafka_brokers": self.kafka.brokers
                if self.publisher_backend == PublisherBackend.KAFKA
                else None,
                "actions_topic": self.kafka.topic,
                "data_dir": self.storage.data_dir,
                "shard_groups": len(self.shards.groups),
                "shard_databases": len(self.shards.databases()),
                "http_port": self.http.port,
                "log_level": self.observability.log_level,
            },
        )
