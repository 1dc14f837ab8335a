"""Publish session routes for interactive users.

Routes are transport-only:
- Take the caller from the UserAuthContext set by AuthMiddleware
- Call exactly one publish_flow function
- Return success_response(...) or raise ApiError

IMPORTANT: Static routes (/publish/sessions/combined-token) must be
registered BEFORE dynamic routes (/publish/sessions/{session_id}/...).
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from quire.api.deps import get_dispatcher, get_session_service
from quire.auth.contexts import UserAuthContext
from quire.auth.middleware import get_user_context
from quire.responses import success_response
from quire.schemas.publish import CreatePublishSessionRequest
from quire.services import publish_flow
from quire.services.publish_sessions import PublishSessionService
from quire.services.workflow_dispatch import WorkflowDispatcherBase

router = APIRouter()


@router.post("/publish/sessions", status_code=201)
def create_publish_session(
    body: CreatePublishSessionRequest,
    user: Annotated[UserAuthContext, Depends(get_user_context)],
    service: Annotated[PublishSessionService, Depends(get_session_service)],
    dispatcher: Annotated[WorkflowDispatcherBase, Depends(get_dispatcher)],
) -> dict:
    """Create a publish session and dispatch its workflow.

    Returns the session snapshot plus where the workflow run can be found.
    A failed dispatch fails the session and answers 502.
    """
    result = publish_flow.start_publish(service, dispatcher, user.user_id, body)
    return success_response(result)


@router.get("/publish/sessions")
def list_publish_sessions(
    user: Annotated[UserAuthContext, Depends(get_user_context)],
    service: Annotated[PublishSessionService, Depends(get_session_service)],
) -> dict:
    """The caller's most recent sessions, newest first."""
    return success_response(publish_flow.list_sessions(service, user.user_id))


@router.get("/publish/sessions/combined-token")
def get_combined_token(
    session_id: Annotated[str, Query(alias="sessionId", min_length=1)],
    user: Annotated[UserAuthContext, Depends(get_user_context)],
    service: Annotated[PublishSessionService, Depends(get_session_service)],
) -> dict:
    """Hand the combined token to the session owner, once.

    425 until the runner has attested, and again after the token is claimed.
    """
    token = publish_flow.claim_combined_token(service, session_id, user.user_id)
    return success_response({"combinedToken": token})


@router.get("/publish/sessions/{session_id}/status")
def get_publish_session_status(
    session_id: str,
    user: Annotated[UserAuthContext, Depends(get_user_context)],
    service: Annotated[PublishSessionService, Depends(get_session_service)],
) -> dict:
    return success_response(publish_flow.session_status(service, session_id, user.user_id))
