"""
In-memory action publisher for tests and local development.

Invariants:
    - All published messages are lost on process exit
    - Messages of one queue keep publish order
    - An injected failure is raised by the next publish() only

How to change safely:
    - Keep the interface compatible with the ActionPublisher protocol
    - Add testing helpers freely; production never selects this backend
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import defaultdict
from typing import Any

from ..errors import PublishError
from .base import PublishReceipt, encode_message

logger = logging.getLogger(__name__)


class InMemoryActionPublisher:
    """ActionPublisher keeping every message in a per-queue list.

    Example:
        >>> publisher = InMemoryActionPublisher()
        >>> await publisher.connect()
        >>> await publisher.publish("q.actions.inbox", action.message())
        >>> publisher.messages("q.actions.inbox")[0]["type"]
        'email:password:reset'
    """

    def __init__(self) -> None:
        self._queues: dict[str, list[bytes]] = defaultdict(list)
        self._connected = False
        self._lock = asyncio.Lock()
        self._failure: Exception | None = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True
        logger.debug("InMemoryActionPublisher connected")

    async def close(self) -> None:
        self._connected = False
        logger.debug("InMemoryActionPublisher closed")

    async def publish(self, queue: str, message: dict[str, Any]) -> PublishReceipt:
        guid, payload = encode_message(message)
        if not self._connected:
            raise PublishError("Not connected", guid=guid, code=5302)

        async with self._lock:
            if self._failure is not None:
                failure, self._failure = self._failure, None
                raise PublishError(f"Publish failed: {failure}", guid=guid, code=5301) from failure
            records = self._queues[queue]
            records.append(payload)
            offset = len(records) - 1

        logger.debug("Action published in memory", extra={"guid": guid, "queue": queue, "offset": offset})
        return PublishReceipt(
            queue=queue,
            guid=guid,
            partition=0,
            offset=offset,
            timestamp_ms=int(time.time() * 1000),
        )

    # Testing helpers

    def inject_failure(self, exception: Exception) -> None:
        """Make the next publish() fail with ``exception``."""
        self._failure = exception

    def messages(self, queue: str) -> list[dict[str, Any]]:
        return [json.loads(p) for p in self._queues.get(queue, [])]

    def message_count(self, queue: str) -> int:
        return len(self._queues.get(queue, []))

    def clear(self, queue: str | None = None) -> None:
        if queue is None:
            self._queues.clear()
        else:
            self._queues.pop(queue, None)
