# interfaces/__init__.py
"""
Interfaces Package

Contains data stores:
- session_store: Chat session persistence (Redis / in-memory)
"""

from .session_store import (
    SessionStore,
    InMemorySessionStore,
    RedisSessionStore,
    build_session_store,
    purge_expired_periodically,
)

__all__ = [
    "SessionStore",
    "InMemorySessionStore",
    "RedisSessionStore",
    "build_session_store",
    "purge_expired_periodically",
]
