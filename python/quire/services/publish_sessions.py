"""Publish session state machine.

Every mutation goes through the store's compare_and_set with a transition
function that re-judges legality against the latest stored record, so two
racing writers can never both win a conflicting transition.

Lifecycle:
    pending -> runner-attested -> in-progress -> completed | failed

- pending fails directly when dispatch or attestation never happens
- runner-attested may complete/fail without ever reporting progress
- completed and failed are terminal; nothing leaves them
- progress never goes backwards; a stale (lower) update is dropped whole
- complete/fail are idempotent for an identical payload and reject any other
"""

import secrets
import time
import uuid
from collections.abc import Callable
from typing import Any

from quire.errors import InvalidTransition, SessionNotFound
from quire.logging import get_logger, set_session_context
from quire.schemas.publish import (
    GithubRunInfo,
    PublishError,
    PublishResult,
    PublishSession,
    PublishStatus,
)
from quire.services.redact import hash_text, safe_kv
from quire.store import SessionStoreBase

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[PublishStatus, frozenset[PublishStatus]] = {
    PublishStatus.PENDING: frozenset({PublishStatus.RUNNER_ATTESTED, PublishStatus.FAILED}),
    PublishStatus.RUNNER_ATTESTED: frozenset(
        {PublishStatus.IN_PROGRESS, PublishStatus.COMPLETED, PublishStatus.FAILED}
    ),
    PublishStatus.IN_PROGRESS: frozenset(
        {PublishStatus.IN_PROGRESS, PublishStatus.COMPLETED, PublishStatus.FAILED}
    ),
    PublishStatus.COMPLETED: frozenset(),
    PublishStatus.FAILED: frozenset(),
}

DEFAULT_HANDOFF_TTL_S = 15 * 60


def validate_transition(current: PublishStatus, target: PublishStatus) -> bool:
    """Whether `current -> target` is a legal status change."""
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def now_ms() -> int:
    return int(time.time() * 1000)


def new_session_id() -> str:
    return f"pub_{uuid.uuid4().hex}"


def _guard(current: PublishSession, target: PublishStatus) -> None:
    if not validate_transition(current.status, target):
        raise InvalidTransition(current.status.value, target.value)


def _same_payload(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return a is b
    return a.model_dump(by_alias=True) == b.model_dump(by_alias=True)


class PublishSessionService:
    """Operations on publish sessions.

    Args:
        store: Session store (Redis in production, in-memory in tests).
        clock: Epoch-milliseconds clock, injectable for tests.
        handoff_ttl: Seconds an unclaimed combined token stays retrievable.
    """

    def __init__(
        self,
        store: SessionStoreBase,
        clock: Callable[[], int] = now_ms,
        handoff_ttl: int = DEFAULT_HANDOFF_TTL_S,
    ):
        self.store = store
        self._clock = clock
        self.handoff_ttl = handoff_ttl

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, session_id: str) -> PublishSession:
        session = self.store.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def get_owned(self, session_id: str, user_id: str) -> PublishSession:
        """Fetch a session the caller owns.

        Another user's session is reported exactly like a missing one.
        """
        session = self.get(session_id)
        if session.user_id != user_id:
            logger.info("publish.session_not_owned", session_id=session_id)
            raise SessionNotFound(session_id)
        return session

    def list_for_user(self, user_id: str) -> list[PublishSession]:
        """The user's recent sessions, newest first. Expired ids are skipped."""
        sessions = []
        for session_id in self.store.list_user_sessions(user_id):
            session = self.store.get(session_id)
            if session is not None and session.user_id == user_id:
                sessions.append(session)
        return sessions

    def session_for_run(self, run_id: str) -> str | None:
        return self.store.session_for_run(run_id)

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def create(
        self,
        user_id: str,
        content_id: str,
        format: str = "epub",
        metadata: dict[str, Any] | None = None,
    ) -> PublishSession:
        """Create a pending session with a fresh attestation nonce."""
        now = self._clock()
        session = PublishSession(
            id=new_session_id(),
            user_id=user_id,
            content_id=content_id,
            format=format,
            status=PublishStatus.PENDING,
            progress=0,
            message="Waiting for runner",
            nonce=secrets.token_urlsafe(32),
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        self.store.insert(session)
        self.store.record_user_session(user_id, session.id)

        set_session_context(session.id)
        logger.info(
            "publish.session_created",
            session_id=session.id,
            content_id=content_id,
            format=format,
        )
        return session

    def record_dispatch(
        self, session_id: str, workflow_run_id: str | None, workflow_url: str
    ) -> PublishSession:
        """Note where the dispatched workflow can be found (metadata only)."""

        def transition(current: PublishSession) -> PublishSession:
            if current.status.is_terminal:
                return current
            metadata = {**current.metadata, "workflowUrl": workflow_url}
            if workflow_run_id is not None:
                metadata["workflowRunId"] = workflow_run_id
            return current.model_copy(update={"metadata": metadata, "updated_at": self._clock()})

        return self.store.compare_and_set(session_id, transition)

    def attach_runner(
        self,
        session_id: str,
        run_info: GithubRunInfo,
        combined_token: str | None = None,
    ) -> PublishSession:
        """pending -> runner-attested.

        Consumes the attestation nonce, records the run identifiers, binds the
        run index, and stashes the combined token for one-time retrieval.
        """

        def transition(current: PublishSession) -> PublishSession:
            _guard(current, PublishStatus.RUNNER_ATTESTED)
            gh = current.gh.merged_with(run_info) if current.gh else run_info
            return current.model_copy(
                update={
                    "status": PublishStatus.RUNNER_ATTESTED,
                    "nonce": None,
                    "gh": gh,
                    "message": "Runner attested",
                    "updated_at": self._clock(),
                }
            )

        session = self._apply(session_id, transition)

        if run_info.run_id:
            self.store.bind_run(run_info.run_id, session_id, self.store.terminal_ttl)
        if combined_token is not None:
            self.store.put_handoff_token(session_id, combined_token, self.handoff_ttl)
            logger.info(
                "publish.combined_token_stashed",
                **safe_kv(session_id=session_id, token_sha256=hash_text(combined_token)),
            )
        return session

    def update_progress(
        self,
        session_id: str,
        progress: int | None = None,
        message: str | None = None,
        phase: str | None = None,
    ) -> PublishSession:
        """runner-attested | in-progress -> in-progress.

        `progress` is clamped to 0..100. A value below the stored one means the
        update arrived out of order; it is ignored entirely.
        """

        def transition(current: PublishSession) -> PublishSession:
            _guard(current, PublishStatus.IN_PROGRESS)

            if progress is None:
                value = current.progress
            else:
                value = max(0, min(100, progress))
                if value < current.progress:
                    logger.info(
                        "publish.stale_progress_ignored",
                        session_id=session_id,
                        stored=current.progress,
                        received=value,
                    )
                    return current

            return current.model_copy(
                update={
                    "status": PublishStatus.IN_PROGRESS,
                    "progress": value,
                    "message": message if message is not None else current.message,
                    "phase": phase if phase is not None else current.phase,
                    "updated_at": self._clock(),
                }
            )

        return self._apply(session_id, transition)

    def complete(
        self, session_id: str, result: PublishResult, message: str | None = None
    ) -> PublishSession:
        """-> completed, progress 100. Idempotent for an identical result."""

        def transition(current: PublishSession) -> PublishSession:
            if current.status == PublishStatus.COMPLETED:
                if _same_payload(current.result, result):
                    return current
                raise InvalidTransition(
                    current.status.value,
                    PublishStatus.COMPLETED.value,
                    "Session already completed with a different result",
                )
            _guard(current, PublishStatus.COMPLETED)
            now = self._clock()
            return current.model_copy(
                update={
                    "status": PublishStatus.COMPLETED,
                    "progress": 100,
                    "result": result,
                    "message": message or "Publish completed",
                    "updated_at": now,
                    "completed_at": current.completed_at or now,
                }
            )

        return self._apply(session_id, transition)

    def fail(
        self, session_id: str, error: PublishError, message: str | None = None
    ) -> PublishSession:
        """Any non-terminal -> failed. Idempotent for an identical error."""

        def transition(current: PublishSession) -> PublishSession:
            if current.status == PublishStatus.FAILED:
                if _same_payload(current.error, error):
                    return current
                raise InvalidTransition(
                    current.status.value,
                    PublishStatus.FAILED.value,
                    "Session already failed with a different error",
                )
            _guard(current, PublishStatus.FAILED)
            now = self._clock()
            return current.model_copy(
                update={
                    "status": PublishStatus.FAILED,
                    "error": error,
                    "message": message or error.message,
                    "updated_at": now,
                    "completed_at": current.completed_at or now,
                }
            )

        return self._apply(session_id, transition)

    def record_run_observation(self, session_id: str, run_info: GithubRunInfo) -> PublishSession:
        """Merge webhook-observed run details into `gh`. Status is untouched.

        Terminal sessions are left as they are.
        """

        def transition(current: PublishSession) -> PublishSession:
            if current.status.is_terminal:
                return current
            gh = current.gh.merged_with(run_info) if current.gh else run_info
            if current.gh is not None and gh == current.gh:
                return current
            return current.model_copy(update={"gh": gh, "updated_at": self._clock()})

        return self.store.compare_and_set(session_id, transition)

    def consume_combined_token(self, session_id: str) -> str | None:
        """Hand out the stashed combined token. At most one caller gets it."""
        token = self.store.take_handoff_token(session_id)
        if token is not None:
            logger.info("publish.combined_token_consumed", session_id=session_id)
        return token

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _apply(
        self,
        session_id: str,
        transition: Callable[[PublishSession], PublishSession],
    ) -> PublishSession:
        seen: dict[str, PublishSession] = {}

        def tracked(current: PublishSession) -> PublishSession:
            seen["current"] = current
            seen["updated"] = transition(current)
            return seen["updated"]

        try:
            session = self.store.compare_and_set(session_id, tracked)
        except InvalidTransition as e:
            logger.warning(
                "publish.transition_rejected",
                session_id=session_id,
                current=e.current,
                target=e.target,
            )
            raise

        # Same object back means the store skipped the write
        if seen and seen["updated"] is not seen["current"]:
            logger.info(
                "publish.session_transition",
                session_id=session_id,
                from_status=seen["current"].status.value,
                to_status=session.status.value,
                progress=session.progress,
            )
        return session
