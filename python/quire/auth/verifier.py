"""Token verification implementations.

Provides:
- TokenVerifier: Protocol for token verification
- JwksVerifier: JWT verification against a remote JWKS (shared machinery)
- UserTokenVerifier: interactive auth provider tokens
- GithubOidcVerifier: GitHub Actions OIDC identity tokens -> CiAuthContext

All verification failures raise TokenValidationError with a generic message;
the specific reason is logged as `auth_failure`. Only an unreachable key
server raises E_AUTH_UNAVAILABLE (503), so a slow JWKS endpoint is not
mistaken for a forged token.

Note: Test-only verifiers are in tests/support/test_verifier.py
"""

import threading
import time
from collections.abc import Sequence
from typing import Any, Protocol

import jwt
from jwt import PyJWK, PyJWKClient
from jwt.exceptions import (
    DecodeError,
    ExpiredSignatureError,
    ImmatureSignatureError,
    InvalidAudienceError,
    InvalidIssuerError,
    InvalidSignatureError,
    InvalidTokenError,
    MissingRequiredClaimError,
    PyJWKClientConnectionError,
    PyJWKClientError,
)

from quire.auth.contexts import CiAuthContext, UserAuthContext
from quire.errors import ApiError, ApiErrorCode, TokenValidationError
from quire.logging import get_logger

logger = get_logger(__name__)

# Clock skew allowance in seconds
CLOCK_SKEW_SECONDS = 30


class TokenVerifier(Protocol):
    """Protocol for token verification.

    Implementations must verify JWT tokens and return decoded claims.
    """

    def verify(self, token: str) -> dict[str, Any]:
        """Verify token and return decoded claims.

        Raises:
            TokenValidationError: Token is invalid, expired, or malformed.
            ApiError(E_AUTH_UNAVAILABLE): Infrastructure failure (JWKS unreachable).
        """
        ...


def _failure(reason: str, **extra: Any) -> TokenValidationError:
    logger.warning("auth_failure", reason=reason, **extra)
    return TokenValidationError()


def decode_verified(
    token: str,
    key: Any,
    *,
    algorithms: Sequence[str],
    issuer: str,
    audience: str | Sequence[str],
    required: Sequence[str],
    leeway: int = CLOCK_SKEW_SECONDS,
) -> dict[str, Any]:
    """Decode a JWT, mapping every PyJWT failure onto TokenValidationError.

    exp and nbf are always checked (PyJWT default) with `leeway` seconds of skew.
    """
    try:
        return jwt.decode(
            token,
            key,
            algorithms=list(algorithms),
            audience=audience,
            issuer=issuer,
            leeway=leeway,
            options={"require": list(required), "verify_aud": True},
        )
    except ExpiredSignatureError as e:
        raise _failure("expired_token") from e
    except ImmatureSignatureError as e:
        raise _failure("token_not_yet_valid") from e
    except InvalidSignatureError as e:
        raise _failure("invalid_signature") from e
    except InvalidIssuerError as e:
        raise _failure("invalid_issuer") from e
    except InvalidAudienceError as e:
        raise _failure("invalid_audience") from e
    except MissingRequiredClaimError as e:
        raise _failure("missing_claim", claim=e.claim) from e
    except DecodeError as e:
        raise _failure("decode_error", error=str(e)) from e
    except InvalidTokenError as e:
        raise _failure("invalid_token", error=str(e)) from e


class JwksVerifier:
    """Token verifier using a remote JWKS.

    Validates:
    - Signature via JWKS (key selected by `kid`)
    - exp / nbf with a small clock skew allowance
    - iss matches configured issuer (after normalization)
    - aud must be in configured audience list

    Keys are cached for `cache_ttl` seconds. An unknown `kid` forces a key
    refresh, but no more often than every `min_refresh_interval` seconds so
    junk tokens cannot make us hammer the key server. Each fetch is bounded by
    `fetch_timeout`.
    """

    def __init__(
        self,
        jwks_url: str,
        issuer: str,
        audiences: list[str],
        cache_ttl: int = 300,
        min_refresh_interval: int = 30,
        fetch_timeout: int = 5,
        algorithms: Sequence[str] = ("RS256", "ES256"),
        required_claims: Sequence[str] = ("exp", "iat", "iss"),
    ):
        self.jwks_url = jwks_url
        self.issuer = issuer.rstrip("/")
        self.audiences = audiences
        self.cache_ttl = cache_ttl
        self.min_refresh_interval = min_refresh_interval
        self.fetch_timeout = fetch_timeout
        self.algorithms = tuple(algorithms)
        self.required_claims = tuple(required_claims)

        # Thread-safe JWKS client with caching
        self._jwks_client: PyJWKClient | None = None
        self._jwks_lock = threading.Lock()
        self._last_refresh: float = float("-inf")

    def _get_jwks_client(self) -> PyJWKClient:
        """Get or create the JWKS client with lazy initialization."""
        with self._jwks_lock:
            if self._jwks_client is None:
                self._jwks_client = PyJWKClient(
                    self.jwks_url,
                    cache_keys=True,
                    lifespan=self.cache_ttl,
                    timeout=self.fetch_timeout,
                )
            return self._jwks_client

    def _may_refresh(self) -> bool:
        """Claim the right to force a key refresh (rate limited)."""
        with self._jwks_lock:
            now = time.monotonic()
            if now - self._last_refresh < self.min_refresh_interval:
                return False
            self._last_refresh = now
            return True

    def verify(self, token: str) -> dict[str, Any]:
        """Verify a JWT against the configured JWKS.

        Raises:
            TokenValidationError: Token is invalid.
            ApiError(E_AUTH_UNAVAILABLE): JWKS fetch failed.
        """
        signing_key = self._get_signing_key(token)
        return decode_verified(
            token,
            signing_key.key,
            algorithms=self.algorithms,
            issuer=self.issuer,
            audience=self.audiences,
            required=self.required_claims,
        )

    def _get_signing_key(self, token: str) -> PyJWK:
        """Get the signing key for the token, refreshing once on kid miss."""
        try:
            header = jwt.get_unverified_header(token)
        except InvalidTokenError as e:
            raise _failure("decode_error", error=str(e)) from e

        kid = header.get("kid")
        client = self._get_jwks_client()

        try:
            key = _match_key(client.get_signing_keys(), kid)
            if key is None and self._may_refresh():
                logger.info("jwks_refresh", reason="kid_miss", jwks_url=self.jwks_url)
                key = _match_key(client.get_signing_keys(refresh=True), kid)
        except PyJWKClientConnectionError as e:
            logger.warning("auth_failure", reason="jwks_unavailable", error=str(e))
            raise ApiError(
                ApiErrorCode.E_AUTH_UNAVAILABLE,
                "Authentication service unavailable",
            ) from e
        except PyJWKClientError as e:
            raise _failure("jwks_error", error=str(e)) from e

        if key is None:
            raise _failure("kid_not_found")
        return key


def _match_key(keys: list[PyJWK], kid: str | None) -> PyJWK | None:
    if kid is None:
        # Only unambiguous when the key set holds a single key
        return keys[0] if len(keys) == 1 else None
    for key in keys:
        if key.key_id == kid:
            return key
    return None


class UserTokenVerifier:
    """Verifier for the interactive auth provider's bearer JWTs."""

    def __init__(self, jwks: JwksVerifier):
        self.jwks = jwks

    def verify(self, token: str) -> dict[str, Any]:
        payload = self.jwks.verify(token)
        sub = payload.get("sub")
        if not sub or not isinstance(sub, str):
            raise _failure("missing_sub")
        return payload

    def verify_context(self, token: str) -> UserAuthContext:
        return UserAuthContext(user_id=self.verify(token)["sub"])


class GithubOidcVerifier:
    """Verifier for GitHub Actions OIDC identity tokens.

    Beyond the JWKS checks, requires the run-identifying claims and, when an
    allow list is configured, that the token was minted for one of the
    listed repositories.
    """

    REQUIRED_CLAIMS = ("exp", "iat", "iss", "repository", "workflow", "run_id")

    def __init__(self, jwks: JwksVerifier, allowed_repositories: list[str] | None = None):
        self.jwks = jwks
        self.allowed_repositories = {r.lower() for r in (allowed_repositories or [])}

    @property
    def issuer(self) -> str:
        return self.jwks.issuer

    def verify(self, token: str) -> dict[str, Any]:
        payload = self.jwks.verify(token)

        missing = [claim for claim in self.REQUIRED_CLAIMS if not payload.get(claim)]
        if missing:
            raise _failure("missing_claim", claim=",".join(missing))

        repository = str(payload["repository"])
        if self.allowed_repositories and repository.lower() not in self.allowed_repositories:
            raise _failure("repository_not_allowed", repository=repository)

        return payload

    def verify_context(self, token: str) -> CiAuthContext:
        payload = self.verify(token)

        def _opt(name: str) -> str | None:
            value = payload.get(name)
            return str(value) if value not in (None, "") else None

        return CiAuthContext(
            repository=str(payload["repository"]),
            workflow=str(payload["workflow"]),
            run_id=str(payload["run_id"]),
            run_number=_opt("run_number"),
            run_attempt=_opt("run_attempt"),
            repository_owner=_opt("repository_owner"),
            sha=_opt("sha"),
            ref=_opt("ref"),
            actor=_opt("actor"),
            job_workflow_ref=_opt("job_workflow_ref"),
            session_id=_opt("session_id") or _opt("sid"),
        )
