"""
Server-side session maps.

The HTTP layer hands each client an opaque session id (cookie). The id
maps to a small dict that holds, among other things, the client's store
sessions under ``_s:<store-hex>``. Unwrapped store keys therefore never
leave the process.

Invariants:
    - Session ids are 32 random bytes, url-safe encoded
    - A session idle for longer than ``idle_seconds`` is dropped on access

How to change safely:
    - Implement SessionStore for a shared backend before running more than
      one server process
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from .token import StoreSession, session_key

logger = logging.getLogger(__name__)

DEFAULT_IDLE_SECONDS = 3600


@runtime_checkable
class SessionStore(Protocol):
    """Per-client session map storage."""

    async def create(self) -> str:
        ...

    async def load(self, session_id: str) -> dict[str, Any] | None:
        ...

    async def save(self, session_id: str, data: dict[str, Any]) -> None:
        ...

    async def delete(self, session_id: str) -> None:
        ...


@dataclass
class _Entry:
    data: dict[str, Any] = field(default_factory=dict)
    touched: float = field(default_factory=time.monotonic)


class InMemorySessionStore:
    """Process-local SessionStore."""

    def __init__(self, idle_seconds: int = DEFAULT_IDLE_SECONDS) -> None:
        self._idle_seconds = idle_seconds
        self._entries: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    async def create(self) -> str:
        session_id = secrets.token_urlsafe(32)
        async with self._lock:
            self._entries[session_id] = _Entry()
        return session_id

    async def load(self, session_id: str) -> dict[str, Any] | None:
        async with self._lock:
            entry = self._entries.get(session_id)
            if entry is None:
                return None
            if time.monotonic() - entry.touched > self._idle_seconds:
                del self._entries[session_id]
                logger.debug("Dropped idle session")
                return None
            entry.touched = time.monotonic()
            return dict(entry.data)

    async def save(self, session_id: str, data: dict[str, Any]) -> None:
        async with self._lock:
            self._entries[session_id] = _Entry(dict(data))

    async def delete(self, session_id: str) -> None:
        async with self._lock:
            self._entries.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._entries)


def put_store_session(data: dict[str, Any], session: StoreSession) -> None:
    data[session_key(session.store)] = session.export()


def get_store_session(data: dict[str, Any], store_id: int, extend_by: int) -> StoreSession | None:
    """Import the store session for ``store_id``; None when absent."""
    token = data.get(session_key(store_id))
    if token is None:
        return None
    return StoreSession.import_token(token, extend_by)


def drop_store_session(data: dict[str, Any], store_id: int) -> bool:
    return data.pop(session_key(store_id), None) is not None
