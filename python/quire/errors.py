"""API error definitions.

All API errors are defined here with their corresponding HTTP status codes.
The publish-session taxonomy (SessionNotFound, InvalidTransition,
TokenValidationError, DispatchError, StoreUnavailable) are ApiError
subclasses so the route layer maps them without string inspection.
"""

from enum import Enum


class ApiErrorCode(str, Enum):
    """Standardized error codes for the API.

    Format: E_CATEGORY_NAME
    """

    # Authentication errors (401)
    E_UNAUTHENTICATED = "E_UNAUTHENTICATED"
    E_TOKEN_INVALID = "E_TOKEN_INVALID"

    # Not found errors (404)
    E_NOT_FOUND = "E_NOT_FOUND"
    E_SESSION_NOT_FOUND = "E_SESSION_NOT_FOUND"

    # Validation errors (400)
    E_INVALID_REQUEST = "E_INVALID_REQUEST"
    E_INVALID_TRANSITION = "E_INVALID_TRANSITION"

    # Too early (425)
    E_SESSION_NOT_READY = "E_SESSION_NOT_READY"

    # Server errors
    E_AUTH_UNAVAILABLE = "E_AUTH_UNAVAILABLE"  # 503
    E_INTERNAL = "E_INTERNAL"  # 500
    E_STORE_UNAVAILABLE = "E_STORE_UNAVAILABLE"  # 500
    E_DISPATCH_FAILED = "E_DISPATCH_FAILED"  # 502


# Error code to HTTP status mapping
ERROR_CODE_TO_STATUS: dict[ApiErrorCode, int] = {
    ApiErrorCode.E_UNAUTHENTICATED: 401,
    ApiErrorCode.E_TOKEN_INVALID: 401,
    ApiErrorCode.E_NOT_FOUND: 404,
    ApiErrorCode.E_SESSION_NOT_FOUND: 404,
    ApiErrorCode.E_INVALID_REQUEST: 400,
    ApiErrorCode.E_INVALID_TRANSITION: 400,
    ApiErrorCode.E_SESSION_NOT_READY: 425,
    ApiErrorCode.E_AUTH_UNAVAILABLE: 503,
    ApiErrorCode.E_INTERNAL: 500,
    ApiErrorCode.E_STORE_UNAVAILABLE: 500,
    ApiErrorCode.E_DISPATCH_FAILED: 502,
}


class ApiError(Exception):
    """Base exception for API errors.

    Attributes:
        code: The error code enum value
        message: Human-readable error message
        status_code: HTTP status code (derived from code)
    """

    def __init__(self, code: ApiErrorCode, message: str):
        self.code = code
        self.message = message
        self.status_code = ERROR_CODE_TO_STATUS.get(code, 500)
        super().__init__(message)


class NotFoundError(ApiError):
    """Resource not found error."""

    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_NOT_FOUND, message: str = "Not found"):
        super().__init__(code, message)


class InvalidRequestError(ApiError):
    """Invalid request error."""

    def __init__(
        self, code: ApiErrorCode = ApiErrorCode.E_INVALID_REQUEST, message: str = "Invalid request"
    ):
        super().__init__(code, message)


class SessionNotFound(NotFoundError):
    """Publish session id is unknown, expired, or not visible to the caller.

    Clients should treat this as "give up": polling again will not help.
    """

    def __init__(self, session_id: str | None = None, message: str = "Session not found"):
        super().__init__(ApiErrorCode.E_SESSION_NOT_FOUND, message)
        self.session_id = session_id


class InvalidTransition(ApiError):
    """Operation is not legal from the session's current status."""

    def __init__(self, current: str, target: str, message: str | None = None):
        super().__init__(
            ApiErrorCode.E_INVALID_TRANSITION,
            message or f"Cannot transition session from {current} to {target}",
        )
        self.current = current
        self.target = target


class TokenValidationError(ApiError):
    """Token failed signature, issuer, audience, scope or expiry checks.

    The message is deliberately generic; the specific reason is only logged.
    """

    def __init__(self, message: str = "Invalid or expired token"):
        super().__init__(ApiErrorCode.E_TOKEN_INVALID, message)


class DispatchError(ApiError):
    """The external CI dispatch call failed or timed out.

    Never implies the workflow is running; callers retry only with a new session.
    """

    def __init__(self, message: str = "Failed to dispatch publish workflow"):
        super().__init__(ApiErrorCode.E_DISPATCH_FAILED, message)


class StoreUnavailable(ApiError):
    """The session store could not be reached or did not confirm a write."""

    def __init__(self, message: str = "Session store unavailable"):
        super().__init__(ApiErrorCode.E_STORE_UNAVAILABLE, message)


class SessionNotReady(InvalidTransition):
    """Combined token requested before runner attestation, or already claimed.

    Surfaces as 425 so polling clients know to retry shortly.
    """

    def __init__(self, current: str, message: str = "Session not ready"):
        ApiError.__init__(self, ApiErrorCode.E_SESSION_NOT_READY, message)
        self.current = current
        self.target = "token-claimed"
