"""Authentication for CI-originated requests.

Runner callbacks present either a GitHub Actions OIDC token or a combined
token as a bearer credential. The unverified `iss` claim only selects which
verifier to run; nothing from an unverified token is trusted.

GitHub webhooks are authenticated by HMAC-SHA256 over the raw request body
(`x-hub-signature-256`). The signature is checked before the body is parsed
or the store is touched.
"""

import hashlib
import hmac

import jwt
from fastapi import Request
from jwt.exceptions import InvalidTokenError

from quire.auth.combined_token import CombinedTokenVerifier
from quire.auth.contexts import (
    CallbackAuthContext,
    CiAuthContext,
    CombinedAuthContext,
    session_id_from_context,
    unexpected_context,
)
from quire.auth.middleware import AUTHORIZATION_HEADER, parse_bearer_token
from quire.auth.verifier import GithubOidcVerifier
from quire.errors import ApiError, ApiErrorCode, SessionNotFound, TokenValidationError
from quire.logging import get_logger, set_session_context
from quire.store import SessionStoreBase

logger = get_logger(__name__)

SIGNATURE_HEADER = "x-hub-signature-256"
SIGNATURE_PREFIX = "sha256="


def peek_issuer(token: str) -> str | None:
    """Read `iss` without verifying anything. Routing only."""
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except InvalidTokenError:
        return None
    iss = claims.get("iss")
    return iss.rstrip("/") if isinstance(iss, str) else None


class CallbackAuthenticator:
    """Chooses and runs the verifier for a runner's bearer token."""

    def __init__(
        self,
        oidc_verifier: GithubOidcVerifier,
        combined_verifier: CombinedTokenVerifier | None = None,
    ):
        self.oidc_verifier = oidc_verifier
        self.combined_verifier = combined_verifier

    def authenticate(self, token: str, *, allow_combined: bool = True) -> CallbackAuthContext:
        """Verify a runner token.

        Raises:
            TokenValidationError: Unknown issuer, disallowed token type, or failed checks.
            ApiError(E_AUTH_UNAVAILABLE): GitHub's key server is unreachable.
        """
        issuer = peek_issuer(token)

        if issuer is not None and issuer == self.oidc_verifier.issuer:
            return self.oidc_verifier.verify_context(token)

        if self.combined_verifier is not None and issuer == self.combined_verifier.issuer:
            if not allow_combined:
                logger.warning("auth_failure", reason="combined_token_not_accepted")
                raise TokenValidationError()
            return self.combined_verifier.verify_context(token)

        logger.warning("auth_failure", reason="unknown_issuer", issuer=issuer)
        raise TokenValidationError()


def _bearer_from_request(request: Request) -> str:
    token, reason = parse_bearer_token(request.headers.get(AUTHORIZATION_HEADER))
    if token is None:
        logger.warning("auth_failure", reason=reason, request_path=request.url.path)
        raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Authentication required")
    return token


def _authenticate(request: Request, allow_combined: bool) -> CallbackAuthContext:
    authenticator: CallbackAuthenticator = request.app.state.callback_authenticator
    ctx = authenticator.authenticate(_bearer_from_request(request), allow_combined=allow_combined)
    request.state.auth_context = ctx
    return ctx


def require_ci_context(request: Request) -> CallbackAuthContext:
    """FastAPI dependency: GitHub OIDC token or combined token."""
    return _authenticate(request, allow_combined=True)


def require_oidc_context(request: Request) -> CiAuthContext:
    """FastAPI dependency: GitHub OIDC token only."""
    ctx = _authenticate(request, allow_combined=False)
    if not isinstance(ctx, CiAuthContext):
        raise TokenValidationError()
    return ctx


def resolve_callback_session_id(ctx: CallbackAuthContext, store: SessionStoreBase) -> str:
    """The session a verified runner token speaks for.

    Combined tokens name it (`sid`). OIDC tokens name it when the workflow
    minted them with a `session_id` claim; otherwise the run index bound at
    attestation is consulted.

    Raises:
        SessionNotFound: The run never attested (or its index expired).
    """
    if isinstance(ctx, CombinedAuthContext):
        session_id = session_id_from_context(ctx)
        run_id = (ctx.gh or {}).get("run_id")
    elif isinstance(ctx, CiAuthContext):
        run_id = ctx.run_id
        session_id = session_id_from_context(ctx) or store.session_for_run(ctx.run_id)
        if session_id is None:
            logger.warning("callback.unbound_run", run_id=ctx.run_id)
            raise SessionNotFound()
    else:
        unexpected_context(ctx)

    set_session_context(session_id, str(run_id) if run_id is not None else None)
    return session_id


def verify_webhook_signature(secret: str | None, body: bytes, header: str | None) -> None:
    """Check a GitHub webhook HMAC signature over the raw body.

    Raises:
        ApiError(E_UNAUTHENTICATED): Missing, malformed or mismatched signature,
            or no secret configured.
    """
    if not secret:
        logger.error("webhook.secret_not_configured")
        raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Invalid webhook signature")

    if not header or not header.startswith(SIGNATURE_PREFIX):
        logger.warning("webhook.signature_invalid", reason="missing_signature")
        raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Invalid webhook signature")

    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    provided = header[len(SIGNATURE_PREFIX) :]

    # Constant-time comparison to prevent timing attacks
    if not hmac.compare_digest(expected.encode("ascii"), provided.encode("ascii", "replace")):
        logger.warning("webhook.signature_invalid", reason="mismatch")
        raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Invalid webhook signature")
