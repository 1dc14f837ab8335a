"""Test helpers for authentication and common test operations.

Provides:
- Token minting for interactive users (MockJwtVerifier keypair)
- Token minting for GitHub Actions runners (OIDC test keypair)
- Header generation for test requests
- Webhook signing
"""

import hashlib
import hmac
import json
import time
from typing import Any
from uuid import uuid4

import jwt

from tests.support.test_verifier import MockJwtVerifier, TestKeyPair

# Default test token settings
DEFAULT_ISSUER = "test-issuer"
DEFAULT_AUDIENCE = "test-audience"
DEFAULT_EXPIRES_IN = 3600  # 1 hour

GITHUB_OIDC_ISSUER = "https://token.actions.githubusercontent.com"
GITHUB_OIDC_AUDIENCE = "quire-publish"
GITHUB_REPOSITORY = "quire-books/publisher"
WEBHOOK_SECRET = "test-webhook-secret"

OIDC_KEYS = TestKeyPair("gh-test-key")


def mint_test_token(
    user_id: str,
    expires_in: int = DEFAULT_EXPIRES_IN,
    issuer: str = DEFAULT_ISSUER,
    audience: str = DEFAULT_AUDIENCE,
    **extra_claims: Any,
) -> str:
    """Mint a valid interactive-user JWT."""
    now = int(time.time())
    payload = {
        "sub": user_id,
        "iss": issuer,
        "aud": audience,
        "iat": now,
        "exp": now + expires_in,
        **extra_claims,
    }
    return jwt.encode(payload, MockJwtVerifier.get_private_key(), algorithm="RS256")


def auth_headers(user_id: str, **token_kwargs: Any) -> dict[str, str]:
    """Return headers dict with valid Authorization for the given user."""
    return {"Authorization": f"Bearer {mint_test_token(user_id, **token_kwargs)}"}


def mint_oidc_token(
    run_id: str = "4242",
    repository: str = GITHUB_REPOSITORY,
    expires_in: int = 300,
    keys: TestKeyPair = OIDC_KEYS,
    **overrides: Any,
) -> str:
    """Mint a GitHub Actions OIDC token signed with the test OIDC key."""
    now = int(time.time())
    payload = {
        "iss": GITHUB_OIDC_ISSUER,
        "aud": GITHUB_OIDC_AUDIENCE,
        "sub": f"repo:{repository}:ref:refs/heads/main",
        "iat": now,
        "nbf": now,
        "exp": now + expires_in,
        "repository": repository,
        "repository_owner": repository.split("/")[0],
        "workflow": "Publish content",
        "run_id": run_id,
        "run_number": "7",
        "run_attempt": "1",
        "sha": "0123456789abcdef0123456789abcdef01234567",
        "ref": "refs/heads/main",
        "actor": "quire-bot",
        **overrides,
    }
    payload = {k: v for k, v in payload.items() if v is not None}
    return jwt.encode(payload, keys.private_pem, algorithm="RS256", headers={"kid": keys.kid})


def oidc_headers(**token_kwargs: Any) -> dict[str, str]:
    return {"Authorization": f"Bearer {mint_oidc_token(**token_kwargs)}"}


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def sign_webhook(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def webhook_request(
    event: str, payload: dict[str, Any], secret: str = WEBHOOK_SECRET
) -> tuple[bytes, dict[str, str]]:
    """Serialise a webhook payload and build signed GitHub headers for it."""
    body = json.dumps(payload).encode()
    headers = {
        "content-type": "application/json",
        "x-github-event": event,
        "x-github-delivery": str(uuid4()),
        "x-hub-signature-256": sign_webhook(body, secret),
    }
    return body, headers


def create_test_user_id() -> str:
    return f"user_{uuid4().hex[:12]}"


class FakeClock:
    """Epoch-milliseconds clock advanced by hand."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms
