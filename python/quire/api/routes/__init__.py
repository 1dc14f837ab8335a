"""API route definitions.

Uses a factory pattern to avoid import-time settings loading.
This allows tests to import modules without requiring all environment
variables to be configured upfront.
"""

from fastapi import APIRouter

from quire.api.routes.health import router as health_router
from quire.api.routes.publish_callbacks import router as publish_callbacks_router
from quire.api.routes.publish_sessions import router as publish_sessions_router
from quire.api.routes.webhooks import router as webhooks_router


def create_api_router() -> APIRouter:
    """Create and configure the API router.

    Callback routes are registered before the user routes so the static
    /publish/sessions/{attest,update,finalize} paths are matched first.
    """
    api_router = APIRouter()
    api_router.include_router(health_router, tags=["health"])
    api_router.include_router(publish_callbacks_router, tags=["publish-callbacks"])
    api_router.include_router(publish_sessions_router, tags=["publish"])
    api_router.include_router(webhooks_router, tags=["webhooks"])
    return api_router


__all__ = ["create_api_router"]
