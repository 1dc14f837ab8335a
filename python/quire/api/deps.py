"""FastAPI dependencies for route handlers.

Long-lived collaborators (session service, dispatcher, token issuer) are
built once in the app lifespan and stored on app.state; these accessors hand
them to routes so tests can substitute fakes through create_app.
"""

from fastapi import Request

from quire.auth.combined_token import CombinedTokenIssuer
from quire.config import get_settings
from quire.services.publish_sessions import PublishSessionService
from quire.services.workflow_dispatch import WorkflowDispatcherBase
from quire.store import SessionStoreBase

__all__ = [
    "get_dispatcher",
    "get_session_service",
    "get_session_store",
    "get_token_issuer",
    "get_webhook_secret",
]


def get_session_service(request: Request) -> PublishSessionService:
    return request.app.state.publish_sessions


def get_session_store(request: Request) -> SessionStoreBase:
    return request.app.state.publish_sessions.store


def get_dispatcher(request: Request) -> WorkflowDispatcherBase:
    return request.app.state.workflow_dispatcher


def get_token_issuer(request: Request) -> CombinedTokenIssuer:
    return request.app.state.combined_token_issuer


def get_webhook_secret(request: Request) -> str | None:
    override = getattr(request.app.state, "webhook_secret", None)
    return override if override is not None else get_settings().github_webhook_secret
