"""
Store sessions and the server-side session map.
"""

from .store import (
    InMemorySessionStore,
    SessionStore,
    drop_store_session,
    get_store_session,
    put_store_session,
)
from .token import SESSION_KEY_PREFIX, StoreSession, session_key

__all__ = [
    "InMemorySessionStore",
    "SESSION_KEY_PREFIX",
    "SessionStore",
    "StoreSession",
    "drop_store_session",
    "get_store_session",
    "put_store_session",
    "session_key",
]
