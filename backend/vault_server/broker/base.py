"""
Base protocol and types for the action broker.

Actions (e.g. "send password reset email") are handed to an external
queue as JSON envelopes::

    {"guid": "...", "type": "email:password:reset", "params": {...}, "props": {...}}

This module defines the ActionPublisher protocol every backend implements,
the receipt returned on success and the factory that picks a backend from
configuration.

Invariants:
    - publish() returns only after the broker acknowledged the message
    - The action guid is the message key, so retries of one action land on
      the same partition
    - A failed publish raises PublishError; callers leave the action
      REGISTERED so a worker can retry it

How to change safely:
    - Protocol changes require updating every implementation
    - Envelope fields are consumed by external workers; add, never rename
"""

from __future__ import annotations

import json
import logging
from abc import abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..errors import PublishError

if TYPE_CHECKING:
    from ..config import VaultConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishReceipt:
    """Broker acknowledgment of one published action.

    Attributes:
        queue: Queue (topic) the action was written to
        guid: Action guid (message key)
        partition: Partition the broker placed the message on
        offset: Offset within the partition
        timestamp_ms: Broker timestamp of the write (milliseconds)
    """

    queue: str
    guid: str
    partition: int
    offset: int
    timestamp_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "queue": self.queue,
            "guid": self.guid,
            "partition": self.partition,
            "offset": self.offset,
            "timestamp_ms": self.timestamp_ms,
        }


def encode_message(message: dict[str, Any]) -> tuple[str, bytes]:
    """Validate an action envelope and serialize it.

    Returns:
        Tuple of (guid, JSON bytes)

    Raises:
        PublishError: If the envelope has no guid or type, or is not JSON
    """
    guid = message.get("guid")
    if not guid or not message.get("type"):
        raise PublishError("Action message requires 'guid' and 'type'", guid=guid, code=5920)
    try:
        payload = json.dumps(message, separators=(",", ":"), sort_keys=True).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise PublishError(f"Action message is not serializable: {e}", guid=guid, code=5920) from e
    return guid, payload


@runtime_checkable
class ActionPublisher(Protocol):
    """Protocol for action broker backends.

    Example:
        >>> publisher = KafkaActionPublisher(config.kafka)
        >>> await publisher.connect()
        >>> receipt = await publisher.publish("q.actions.inbox", action.message())
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the broker.

        Raises:
            PublishError: If the connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Flush pending messages and disconnect."""
        ...

    @abstractmethod
    async def publish(self, queue: str, message: dict[str, Any]) -> PublishReceipt:
        """Publish one action envelope.

        Args:
            queue: Queue (topic) name
            message: Envelope built by Action.message()

        Returns:
            PublishReceipt once the broker acknowledged the write

        Raises:
            PublishError: If not connected or the broker rejected the message
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the broker."""
        ...


def create_publisher(config: VaultConfig) -> ActionPublisher:
    """Create the publisher selected by ``config.publisher_backend``.

    Raises:
        ValueError: If the backend is not supported
    """
    from ..config import PublisherBackend
    from .kafka import KafkaActionPublisher
    from .memory import InMemoryActionPublisher

    if config.publisher_backend == PublisherBackend.KAFKA:
        return KafkaActionPublisher(config.kafka)
    if config.publisher_backend == PublisherBackend.MEMORY:
        return InMemoryActionPublisher()
    raise ValueError(f"Unsupported publisher backend: {config.publisher_backend}")
