"""Authentication middleware for FastAPI.

Provides:
- AuthMiddleware: Global middleware for interactive-user bearer token verification
- get_user_context: Dependency for accessing the authenticated user
- parse_bearer_token: Shared Authorization header parsing

Runner callbacks and GitHub webhooks carry their own credentials (OIDC token,
combined token, HMAC signature) and are authenticated per-route; the
middleware lets them through untouched.
"""

from fastapi import Depends, Request
from fastapi.responses import Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from quire.auth.contexts import UserAuthContext
from quire.auth.verifier import TokenVerifier
from quire.errors import ApiError, ApiErrorCode
from quire.logging import get_logger
from quire.responses import error_json

logger = get_logger(__name__)

# Header names
AUTHORIZATION_HEADER = "authorization"

# Paths that don't require authentication
PUBLIC_PATHS = {"/health", "/health/ready", "/docs", "/redoc", "/openapi.json"}

# Paths authenticated by their own route dependencies
CALLBACK_PATHS = {
    "/publish/sessions/attest",
    "/publish/sessions/update",
    "/publish/sessions/finalize",
    "/webhooks/github",
}


def parse_bearer_token(auth_header: str | None) -> tuple[str | None, str | None]:
    """Split an Authorization header into (token, failure_reason)."""
    if not auth_header:
        return None, "missing_header"

    # Bearer prefix is case-insensitive
    if not auth_header.lower().startswith("bearer "):
        return None, "invalid_header_format"

    token = auth_header[7:].strip()
    if not token:
        return None, "invalid_header_format"

    return token, None


class AuthMiddleware(BaseHTTPMiddleware):
    """Authentication middleware for interactive user requests.

    Order of checks:
    1. Skip if public path or callback path
    2. Extract and parse bearer token
    3. Verify token via TokenVerifier
    4. Attach UserAuthContext to request state
    """

    def __init__(self, app: ASGIApp, verifier: TokenVerifier):
        """Initialize the auth middleware.

        Args:
            app: The ASGI application.
            verifier: TokenVerifier implementation for JWT verification.
        """
        super().__init__(app)
        self.verifier = verifier

    async def dispatch(self, request: Request, call_next) -> Response:
        """Process the request through auth checks."""
        path = request.url.path
        if path in PUBLIC_PATHS or path in CALLBACK_PATHS:
            return await call_next(request)

        token, reason = parse_bearer_token(request.headers.get(AUTHORIZATION_HEADER))
        if token is None:
            logger.warning("auth_failure", reason=reason, request_path=path)
            message = (
                "Authentication required"
                if reason == "missing_header"
                else "Invalid authorization header format"
            )
            return error_json(ApiErrorCode.E_UNAUTHENTICATED, message)

        # JWKS fetches block; keep them off the event loop
        try:
            payload = await run_in_threadpool(self.verifier.verify, token)
        except ApiError as e:
            return error_json(e.code, e.message, e.status_code)

        request.state.auth_context = UserAuthContext(user_id=str(payload["sub"]))

        return await call_next(request)


def get_user_context(request: Request) -> UserAuthContext:
    """FastAPI dependency to get the authenticated interactive user.

    Raises:
        ApiError: If no user context is set (middleware didn't run or path is public).
    """
    ctx = getattr(request.state, "auth_context", None)
    if not isinstance(ctx, UserAuthContext):
        raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Authentication required")
    return ctx


# Type alias for dependency injection
UserDep = Depends(get_user_context)
