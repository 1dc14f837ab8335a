"""Session store module.

Provides:
- SessionStoreBase: abstract store interface used by the state machine
- RedisSessionStore: production store (redis-py, WATCH/MULTI compare-and-set)
- FakeSessionStore: in-memory store for tests and local development
"""

from quire.store.sessions import FakeSessionStore, RedisSessionStore, SessionStoreBase

__all__ = [
    "FakeSessionStore",
    "RedisSessionStore",
    "SessionStoreBase",
]
