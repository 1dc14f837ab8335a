"""X-Request-ID correlation and the per-request access log.

Added last in create_app so it wraps everything else: requests rejected by
AuthMiddleware, or by a runner-callback dependency, still carry the id in
both the response header and the error envelope.
"""

import re
import time
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from quire.auth.contexts import CiAuthContext, CombinedAuthContext, UserAuthContext
from quire.logging import clear_request_context, get_logger, set_request_context

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 128

_SAFE_ID = re.compile(r"^[A-Za-z0-9._-]+$")
_UUID = re.compile(r"^[0-9a-fA-F]{8}(-[0-9a-fA-F]{4}){3}-[0-9a-fA-F]{12}$")

logger = get_logger(__name__)


def is_valid_request_id(value: str) -> bool:
    return 0 < len(value.encode("utf-8")) <= MAX_REQUEST_ID_LENGTH and bool(_SAFE_ID.match(value))


def normalize_request_id(value: str) -> str:
    """Lowercase UUIDs so the same id always logs the same way."""
    return value.lower() if _UUID.match(value) else value


def resolve_request_id(incoming: str | None) -> str:
    """Caller's id when acceptable, otherwise a fresh UUID4."""
    if incoming and is_valid_request_id(incoming):
        return normalize_request_id(incoming)
    return str(uuid.uuid4())


def _caller_fields(request: Request) -> dict:
    ctx = getattr(request.state, "auth_context", None)
    if ctx is None:
        return {}
    if isinstance(ctx, UserAuthContext):
        return {"auth_type": ctx.type, "user_id": ctx.user_id}
    if isinstance(ctx, CiAuthContext):
        return {"auth_type": ctx.type, "repository": ctx.repository, "run_id": ctx.run_id}
    if isinstance(ctx, CombinedAuthContext):
        return {"auth_type": ctx.type, "session_id": ctx.session_id}
    return {"auth_type": getattr(ctx, "type", "unknown")}


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Assign the request id, echo it back, and log one line per request."""

    def __init__(self, app, log_requests: bool = True):
        super().__init__(app)
        self.log_requests = log_requests

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        started = time.perf_counter()
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id
        set_request_context(request_id, path=request.url.path, method=request.method)

        try:
            response = await call_next(request)
        except Exception:
            # unhandled_exception_handler renders the 500
            logger.exception("request_failed")
            raise
        else:
            response.headers[REQUEST_ID_HEADER] = request_id
            if self.log_requests:
                log = logger.warning if response.status_code >= 500 else logger.info
                log(
                    "request_completed",
                    status_code=response.status_code,
                    duration_ms=round((time.perf_counter() - started) * 1000, 2),
                    **_caller_fields(request),
                )
            return response
        finally:
            clear_request_context()
