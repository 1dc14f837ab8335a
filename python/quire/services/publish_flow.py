"""Publish flows invoked by the HTTP routes.

Routes are transport-only: each calls exactly one function here. These
functions combine the state machine with dispatch, attestation and token
handoff, and decide which errors reach the caller.
"""

import hmac
from typing import Any

from quire.auth.combined_token import CombinedTokenIssuer
from quire.auth.contexts import CiAuthContext
from quire.errors import (
    DispatchError,
    InvalidRequestError,
    InvalidTransition,
    SessionNotFound,
    SessionNotReady,
    TokenValidationError,
)
from quire.logging import get_logger, set_session_context
from quire.schemas.publish import (
    CreatePublishSessionRequest,
    FinalizePublishRequest,
    PublishError,
    PublishResult,
    PublishSession,
    PublishStatus,
    UpdatePublishRequest,
    session_status_out,
)
from quire.services.publish_sessions import PublishSessionService
from quire.services.workflow_dispatch import WorkflowDispatcherBase

logger = get_logger(__name__)

DISPATCH_FAILED_CODE = "DISPATCH_FAILED"


def start_publish(
    service: PublishSessionService,
    dispatcher: WorkflowDispatcherBase,
    user_id: str,
    request: CreatePublishSessionRequest,
) -> dict[str, Any]:
    """Create a session and dispatch its workflow.

    A failed dispatch fails the session, so it can never be attested later,
    and re-raises DispatchError (502). Clients retry with a new session.
    """
    session = service.create(user_id, request.content_id, request.format, request.metadata)

    try:
        dispatch = dispatcher.trigger(
            request.content_id,
            request.format,
            {**request.metadata, "session_id": session.id, "nonce": session.nonce},
        )
    except DispatchError as e:
        service.fail(
            session.id,
            PublishError(message="Failed to dispatch publish workflow", code=DISPATCH_FAILED_CODE),
        )
        logger.warning("publish.dispatch_failed", session_id=session.id, error=e.message)
        raise

    session = service.record_dispatch(session.id, dispatch.workflow_run_id, dispatch.workflow_url)
    return {
        "session": session_status_out(session),
        "workflowRunId": dispatch.workflow_run_id,
        "workflowUrl": dispatch.workflow_url,
    }


def list_sessions(service: PublishSessionService, user_id: str) -> list[dict[str, Any]]:
    return [session_status_out(s) for s in service.list_for_user(user_id)]


def session_status(service: PublishSessionService, session_id: str, user_id: str) -> dict[str, Any]:
    set_session_context(session_id)
    return session_status_out(service.get_owned(session_id, user_id))


def claim_combined_token(service: PublishSessionService, session_id: str, user_id: str) -> str:
    """One-time retrieval of the combined token by the session owner.

    Raises:
        SessionNotFound: Unknown session or not owned by the caller.
        SessionNotReady: Runner has not attested yet, or the token was already claimed.
    """
    set_session_context(session_id)
    session = service.get_owned(session_id, user_id)
    if session.status != PublishStatus.RUNNER_ATTESTED:
        raise SessionNotReady(session.status.value)

    token = service.consume_combined_token(session_id)
    if token is None:
        raise SessionNotReady(session.status.value, "Combined token not available")
    return token


def attest_runner(
    service: PublishSessionService,
    issuer: CombinedTokenIssuer,
    ctx: CiAuthContext,
    session_id: str,
    nonce: str,
) -> dict[str, Any]:
    """Bind a verified GitHub run to a pending session.

    The runner proves it was dispatched for this session by echoing the
    nonce from its workflow inputs. A wrong nonce reads as an unknown session.
    """
    set_session_context(session_id, ctx.run_id)

    if ctx.session_id is not None and ctx.session_id != session_id:
        logger.warning("auth_failure", reason="session_claim_mismatch")
        raise TokenValidationError()

    session = service.get(session_id)
    if session.status != PublishStatus.PENDING:
        # Nonce already consumed
        raise InvalidTransition(session.status.value, PublishStatus.RUNNER_ATTESTED.value)

    stored = (session.nonce or "").encode("utf-8")
    if not stored or not hmac.compare_digest(stored, nonce.encode("utf-8")):
        logger.warning("publish.attestation_rejected", session_id=session_id, reason="nonce_mismatch")
        raise SessionNotFound(session_id)

    run_info = ctx.run_info()
    token = issuer.issue(session, run_info)
    updated = service.attach_runner(session.id, run_info, combined_token=token)
    return {"sessionId": updated.id, "status": updated.status.value}


def apply_update(
    service: PublishSessionService,
    session_id: str,
    request: UpdatePublishRequest,
) -> dict[str, Any]:
    """Apply a runner progress report or terminal status.

    `session_id` comes from the verified credential, never from the body.
    """
    if request.status == PublishStatus.COMPLETED.value:
        if request.result is None:
            raise InvalidRequestError(message="result is required when status is completed")
        session = service.complete(session_id, request.result, request.message)
    elif request.status == PublishStatus.FAILED.value:
        if request.error is None:
            raise InvalidRequestError(message="error is required when status is failed")
        session = service.fail(session_id, request.error, request.message)
    else:
        session = service.update_progress(
            session_id, request.progress, request.message, request.phase
        )

    return _update_out(session)


def finalize(
    service: PublishSessionService,
    session_id: str,
    request: FinalizePublishRequest,
) -> dict[str, Any]:
    """Runner's final word: complete or fail the session."""
    if request.success:
        session = service.complete(session_id, request.result or PublishResult(), request.message)
    else:
        error = request.error or PublishError(
            message=request.message or "Publish failed", code="PUBLISH_FAILED"
        )
        session = service.fail(session_id, error, request.message)
    return _update_out(session)


def _update_out(session: PublishSession) -> dict[str, Any]:
    return {
        "sessionId": session.id,
        "status": session.status.value,
        "progress": session.progress,
        "message": session.message,
        "phase": session.phase,
        "updatedAt": session.updated_at,
    }
