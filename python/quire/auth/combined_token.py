"""Combined token: mint and verify the short-lived runner handoff credential.

- EdDSA (Ed25519) signed with COMBINED_TOKEN_PRIVATE_KEY; verified with the public key
- Claims: iss, aud, sub=user_id, sid=session_id, content_id, scope=publish:update,
  jti=uuid, iat, nbf, exp=now+COMBINED_TOKEN_TTL_S, gh (run identifiers, optional)
- iss/aud keep these tokens distinct from user and GitHub OIDC tokens
- 30 seconds of clock skew tolerated on exp/nbf

Keys are PEM. Values coming from env files may carry escaped newlines ("\\n"),
which are unescaped before parsing.
"""

import time
from collections.abc import Callable
from typing import Any
from uuid import uuid4

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from quire.auth.contexts import CombinedAuthContext
from quire.auth.verifier import CLOCK_SKEW_SECONDS, decode_verified
from quire.errors import TokenValidationError
from quire.logging import get_logger
from quire.schemas.publish import GithubRunInfo, PublishSession
from quire.services.redact import hash_text, safe_kv

logger = get_logger(__name__)

COMBINED_TOKEN_SCOPE = "publish:update"
COMBINED_TOKEN_ALGORITHM = "EdDSA"


def _pem_bytes(pem: str) -> bytes:
    return pem.replace("\\n", "\n").strip().encode("utf-8")


def load_private_key(pem: str) -> Ed25519PrivateKey:
    """Parse an Ed25519 private key (PKCS#8 PEM)."""
    key = serialization.load_pem_private_key(_pem_bytes(pem), password=None)
    if not isinstance(key, Ed25519PrivateKey):
        raise ValueError("COMBINED_TOKEN_PRIVATE_KEY must be an Ed25519 key")
    return key


def load_public_key(pem: str) -> Ed25519PublicKey:
    """Parse an Ed25519 public key (SPKI PEM)."""
    key = serialization.load_pem_public_key(_pem_bytes(pem))
    if not isinstance(key, Ed25519PublicKey):
        raise ValueError("COMBINED_TOKEN_PUBLIC_KEY must be an Ed25519 key")
    return key


class CombinedTokenIssuer:
    """Mints combined tokens at runner attestation."""

    def __init__(
        self,
        private_key: Ed25519PrivateKey,
        issuer: str,
        audience: str,
        ttl_seconds: int = 15 * 60,
        clock: Callable[[], float] = time.time,
    ):
        self._private_key = private_key
        self.issuer = issuer.rstrip("/")
        self.audience = audience
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def issue(self, session: PublishSession, gh: GithubRunInfo | None = None) -> str:
        now = int(self._clock())
        payload: dict[str, Any] = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": session.user_id,
            "sid": session.id,
            "content_id": session.content_id,
            "scope": COMBINED_TOKEN_SCOPE,
            "jti": str(uuid4()),
            "iat": now,
            "nbf": now,
            "exp": now + self.ttl_seconds,
        }
        if gh is not None:
            payload["gh"] = gh.model_dump(
                exclude_none=True, include={"run_id", "run_number", "workflow", "repository"}
            )

        token = jwt.encode(payload, self._private_key, algorithm=COMBINED_TOKEN_ALGORITHM)
        logger.info(
            "combined_token.issued",
            **safe_kv(session_id=session.id, jti=payload["jti"], token_sha256=hash_text(token)),
        )
        return token


class CombinedTokenVerifier:
    """Verifies combined tokens presented on progress callbacks."""

    REQUIRED_CLAIMS = ("exp", "iat", "nbf", "iss", "aud", "sub", "sid", "jti", "scope")

    def __init__(
        self,
        public_key: Ed25519PublicKey,
        issuer: str,
        audience: str,
        leeway: int = CLOCK_SKEW_SECONDS,
    ):
        self._public_key = public_key
        self.issuer = issuer.rstrip("/")
        self.audience = audience
        self.leeway = leeway

    def verify(self, token: str) -> dict[str, Any]:
        """Verify signature, issuer, audience, expiry and scope.

        Raises:
            TokenValidationError: On any failure.
        """
        payload = decode_verified(
            token,
            self._public_key,
            algorithms=(COMBINED_TOKEN_ALGORITHM,),
            issuer=self.issuer,
            audience=self.audience,
            required=self.REQUIRED_CLAIMS,
            leeway=self.leeway,
        )
        if payload.get("scope") != COMBINED_TOKEN_SCOPE:
            logger.warning("auth_failure", reason="invalid_scope")
            raise TokenValidationError()
        return payload

    def verify_context(self, token: str) -> CombinedAuthContext:
        payload = self.verify(token)
        gh = payload.get("gh")
        return CombinedAuthContext(
            session_id=str(payload["sid"]),
            user_id=str(payload["sub"]),
            jti=str(payload["jti"]),
            content_id=payload.get("content_id"),
            gh=gh if isinstance(gh, dict) else None,
        )


def generate_ephemeral_keypair() -> tuple[Ed25519PrivateKey, Ed25519PublicKey]:
    """Throwaway signing keys for local/test runs without configured PEMs.

    Tokens minted with these keys stop verifying when the process restarts.
    """
    private_key = Ed25519PrivateKey.generate()
    return private_key, private_key.public_key()
