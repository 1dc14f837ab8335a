"""Publish session store.

The store owns the canonical PublishSession records. Callers always work on
copies: every read deserialises a fresh object and every write replaces the
whole record. Records carry a TTL; an expired record reads as absent.

Redis keys (prefix "quire:publish:"):
- session:{id}          JSON record (TTL: session TTL, terminal TTL once completed/failed)
- token:{id}            pending combined token, claimed at most once via GETDEL
- run:{run_id}          session id bound at runner attestation
- user:{user_id}:sessions   list of the user's most recent session ids

compare_and_set is the only mutation path for session records. The Redis
implementation uses WATCH/MULTI/EXEC so that concurrent writers to the same
session are serialised and the transition guard always sees the latest state.
"""

import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable

from redis import Redis
from redis.exceptions import RedisError, WatchError

from quire.errors import SessionNotFound, StoreUnavailable
from quire.logging import get_logger
from quire.schemas.publish import PublishSession

logger = get_logger(__name__)

KEY_PREFIX = "quire:publish:"
USER_SESSION_HISTORY = 20
MAX_CAS_ATTEMPTS = 10

# Transition callables return the new record, or the same object for a no-op.
Transition = Callable[[PublishSession], PublishSession]


class SessionStoreBase(ABC):
    """Abstract base class for session store implementations."""

    def __init__(self, session_ttl: int, terminal_ttl: int):
        self.session_ttl = session_ttl
        self.terminal_ttl = terminal_ttl

    def ttl_for(self, session: PublishSession) -> int:
        """Terminal sessions are kept longer so clients can still read the outcome."""
        return self.terminal_ttl if session.status.is_terminal else self.session_ttl

    @abstractmethod
    def insert(self, session: PublishSession) -> None:
        """Store a new session record.

        Raises:
            StoreUnavailable: If the write fails or the id already exists.
        """
        ...

    @abstractmethod
    def get(self, session_id: str) -> PublishSession | None:
        """Read a session snapshot, or None if unknown or expired.

        Raises:
            StoreUnavailable: If the store cannot be reached.
        """
        ...

    @abstractmethod
    def compare_and_set(self, session_id: str, transition: Transition) -> PublishSession:
        """Atomically apply `transition` to the current record.

        The transition may raise to reject the change; the exception
        propagates and nothing is written. Returning the same object it was
        given is a no-op.

        Raises:
            SessionNotFound: If the session is unknown or expired.
            StoreUnavailable: If the store cannot be reached.
        """
        ...

    @abstractmethod
    def put_handoff_token(self, session_id: str, token: str, ttl: int) -> None:
        """Stash a one-time combined token for the session."""
        ...

    @abstractmethod
    def take_handoff_token(self, session_id: str) -> str | None:
        """Atomically read and delete the stashed token.

        At most one caller ever receives a given token.
        """
        ...

    @abstractmethod
    def bind_run(self, run_id: str, session_id: str, ttl: int) -> None:
        """Map a GitHub run id to the session it attested for."""
        ...

    @abstractmethod
    def session_for_run(self, run_id: str) -> str | None:
        ...

    @abstractmethod
    def record_user_session(self, user_id: str, session_id: str) -> None:
        """Push a session id onto the user's bounded recent-sessions list."""
        ...

    @abstractmethod
    def list_user_sessions(self, user_id: str) -> list[str]:
        """Return the user's recent session ids, newest first."""
        ...

    @abstractmethod
    def ping(self) -> bool:
        ...


def _session_key(session_id: str) -> str:
    return f"{KEY_PREFIX}session:{session_id}"


def _token_key(session_id: str) -> str:
    return f"{KEY_PREFIX}token:{session_id}"


def _run_key(run_id: str) -> str:
    return f"{KEY_PREFIX}run:{run_id}"


def _user_key(user_id: str) -> str:
    return f"{KEY_PREFIX}user:{user_id}:sessions"


class RedisSessionStore(SessionStoreBase):
    """Production session store backed by Redis.

    The redis client is created once at process start (see app lifespan) and
    passed in; this class never opens or closes connections itself.
    """

    def __init__(
        self,
        redis_client: Redis,
        session_ttl: int,
        terminal_ttl: int,
        max_cas_attempts: int = MAX_CAS_ATTEMPTS,
    ):
        super().__init__(session_ttl, terminal_ttl)
        self._redis = redis_client
        self._max_cas_attempts = max_cas_attempts

    def insert(self, session: PublishSession) -> None:
        try:
            created = self._redis.set(
                _session_key(session.id), session.to_json(), nx=True, ex=self.ttl_for(session)
            )
        except RedisError as e:
            logger.error("session_store.insert_failed", session_id=session.id, error=str(e))
            raise StoreUnavailable() from e

        if not created:
            logger.error("session_store.id_collision", session_id=session.id)
            raise StoreUnavailable("Session could not be created")

    def get(self, session_id: str) -> PublishSession | None:
        try:
            raw = self._redis.get(_session_key(session_id))
        except RedisError as e:
            logger.error("session_store.read_failed", session_id=session_id, error=str(e))
            raise StoreUnavailable() from e

        if raw is None:
            return None
        return PublishSession.from_json(raw)

    def compare_and_set(self, session_id: str, transition: Transition) -> PublishSession:
        key = _session_key(session_id)
        try:
            with self._redis.pipeline() as pipe:
                for attempt in range(1, self._max_cas_attempts + 1):
                    try:
                        pipe.watch(key)
                        raw = pipe.get(key)
                        if raw is None:
                            raise SessionNotFound(session_id)

                        current = PublishSession.from_json(raw)
                        updated = transition(current)
                        if updated is current:
                            pipe.unwatch()
                            return current

                        pipe.multi()
                        pipe.set(key, updated.to_json(), ex=self.ttl_for(updated))
                        pipe.execute()
                        return updated
                    except WatchError:
                        # Another writer got there first; re-judge against the new state
                        logger.info(
                            "session_store.cas_conflict", session_id=session_id, attempt=attempt
                        )
                        continue
        except RedisError as e:
            logger.error("session_store.write_failed", session_id=session_id, error=str(e))
            raise StoreUnavailable() from e

        logger.error("session_store.cas_exhausted", session_id=session_id)
        raise StoreUnavailable("Session is being updated concurrently; try again")

    def put_handoff_token(self, session_id: str, token: str, ttl: int) -> None:
        try:
            self._redis.set(_token_key(session_id), token, ex=ttl)
        except RedisError as e:
            raise StoreUnavailable() from e

    def take_handoff_token(self, session_id: str) -> str | None:
        try:
            return self._redis.getdel(_token_key(session_id))
        except RedisError as e:
            raise StoreUnavailable() from e

    def bind_run(self, run_id: str, session_id: str, ttl: int) -> None:
        try:
            self._redis.set(_run_key(run_id), session_id, ex=ttl)
        except RedisError as e:
            raise StoreUnavailable() from e

    def session_for_run(self, run_id: str) -> str | None:
        try:
            return self._redis.get(_run_key(run_id))
        except RedisError as e:
            raise StoreUnavailable() from e

    def record_user_session(self, user_id: str, session_id: str) -> None:
        key = _user_key(user_id)
        try:
            pipe = self._redis.pipeline()
            pipe.lpush(key, session_id)
            pipe.ltrim(key, 0, USER_SESSION_HISTORY - 1)
            pipe.expire(key, self.terminal_ttl)
            pipe.execute()
        except RedisError as e:
            raise StoreUnavailable() from e

    def list_user_sessions(self, user_id: str) -> list[str]:
        try:
            return list(self._redis.lrange(_user_key(user_id), 0, -1))
        except RedisError as e:
            raise StoreUnavailable() from e

    def ping(self) -> bool:
        try:
            return bool(self._redis.ping())
        except RedisError:
            return False


class FakeSessionStore(SessionStoreBase):
    """In-memory session store for tests and local development without Redis.

    Values are kept serialised so readers never share objects with the store.
    A single lock makes compare_and_set and take_handoff_token atomic.
    """

    def __init__(
        self,
        session_ttl: int = 24 * 60 * 60,
        terminal_ttl: int = 7 * 24 * 60 * 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(session_ttl, terminal_ttl)
        self._clock = clock
        self._lock = threading.Lock()
        self._values: dict[str, tuple[str, float]] = {}  # key -> (value, expires_at)
        self._lists: dict[str, list[str]] = {}
        self.available = True

    def _check_available(self) -> None:
        if not self.available:
            raise StoreUnavailable()

    def _read(self, key: str) -> str | None:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._values[key]
            return None
        return value

    def _write(self, key: str, value: str, ttl: int) -> None:
        self._values[key] = (value, self._clock() + ttl)

    def insert(self, session: PublishSession) -> None:
        with self._lock:
            self._check_available()
            key = _session_key(session.id)
            if self._read(key) is not None:
                raise StoreUnavailable("Session could not be created")
            self._write(key, session.to_json(), self.ttl_for(session))

    def get(self, session_id: str) -> PublishSession | None:
        with self._lock:
            self._check_available()
            raw = self._read(_session_key(session_id))
        return PublishSession.from_json(raw) if raw is not None else None

    def compare_and_set(self, session_id: str, transition: Transition) -> PublishSession:
        key = _session_key(session_id)
        with self._lock:
            self._check_available()
            raw = self._read(key)
            if raw is None:
                raise SessionNotFound(session_id)
            current = PublishSession.from_json(raw)
            updated = transition(current)
            if updated is current:
                return current
            self._write(key, updated.to_json(), self.ttl_for(updated))
            return updated

    def put_handoff_token(self, session_id: str, token: str, ttl: int) -> None:
        with self._lock:
            self._check_available()
            self._write(_token_key(session_id), token, ttl)

    def take_handoff_token(self, session_id: str) -> str | None:
        with self._lock:
            self._check_available()
            key = _token_key(session_id)
            value = self._read(key)
            self._values.pop(key, None)
            return value

    def bind_run(self, run_id: str, session_id: str, ttl: int) -> None:
        with self._lock:
            self._check_available()
            self._write(_run_key(run_id), session_id, ttl)

    def session_for_run(self, run_id: str) -> str | None:
        with self._lock:
            self._check_available()
            return self._read(_run_key(run_id))

    def record_user_session(self, user_id: str, session_id: str) -> None:
        with self._lock:
            self._check_available()
            history = self._lists.setdefault(_user_key(user_id), [])
            history.insert(0, session_id)
            del history[USER_SESSION_HISTORY:]

    def list_user_sessions(self, user_id: str) -> list[str]:
        with self._lock:
            self._check_available()
            return list(self._lists.get(_user_key(user_id), []))

    def ping(self) -> bool:
        return self.available

    # Test helper methods

    def expire_session(self, session_id: str) -> None:
        """Drop a session as if its TTL had elapsed (test helper)."""
        with self._lock:
            self._values.pop(_session_key(session_id), None)

    def clear(self) -> None:
        """Remove everything (test helper)."""
        with self._lock:
            self._values.clear()
            self._lists.clear()
