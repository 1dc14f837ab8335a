"""Unit tests for token verifiers.

Tests JwksVerifier, UserTokenVerifier and GithubOidcVerifier with an
in-memory key set (no HTTP), plus the JWKS fetch failure path.
"""

import time
from unittest.mock import MagicMock, patch

import jwt
import pytest
from jwt.exceptions import PyJWKClientConnectionError

from quire.auth.verifier import GithubOidcVerifier, JwksVerifier, UserTokenVerifier
from quire.errors import ApiError, ApiErrorCode, TokenValidationError
from tests.helpers import (
    GITHUB_OIDC_AUDIENCE,
    GITHUB_OIDC_ISSUER,
    GITHUB_REPOSITORY,
    OIDC_KEYS,
    mint_oidc_token,
)
from tests.support.test_verifier import LocalJwksVerifier, StaticJwksClient, TestKeyPair

ISSUER = "https://auth.example.com"
AUDIENCE = "quire-web"

USER_KEYS = TestKeyPair("user-key-1")


def mint_token(keys: TestKeyPair, sub: str = "user_123", **overrides) -> str:
    now = int(time.time())
    payload = {
        "sub": sub,
        "iss": ISSUER,
        "aud": AUDIENCE,
        "iat": now,
        "exp": now + 3600,
        **overrides,
    }
    return jwt.encode(payload, keys.private_pem, algorithm="RS256", headers={"kid": keys.kid})


class TestJwksVerifier:
    """Unit tests for JwksVerifier."""

    @pytest.fixture
    def jwks_client(self):
        return StaticJwksClient([USER_KEYS.to_pyjwk()])

    @pytest.fixture
    def verifier(self, jwks_client):
        return LocalJwksVerifier(jwks_client, issuer=ISSUER + "/", audiences=[AUDIENCE])

    def test_valid_token(self, verifier):
        """Valid token returns claims."""
        claims = verifier.verify(mint_token(USER_KEYS))

        assert claims["sub"] == "user_123"
        assert claims["iss"] == ISSUER
        assert claims["aud"] == AUDIENCE

    def test_invalid_signature(self, verifier):
        """Token signed with a different key under the same kid is rejected."""
        impostor = TestKeyPair(USER_KEYS.kid)

        with pytest.raises(TokenValidationError) as exc_info:
            verifier.verify(mint_token(impostor))

        assert exc_info.value.code == ApiErrorCode.E_TOKEN_INVALID
        assert exc_info.value.status_code == 401

    def test_expired_token(self, verifier):
        """Token expired beyond the clock skew allowance is rejected."""
        token = mint_token(USER_KEYS, exp=int(time.time()) - 120)

        with pytest.raises(TokenValidationError):
            verifier.verify(token)

    def test_expired_within_skew_is_accepted(self, verifier):
        token = mint_token(USER_KEYS, exp=int(time.time()) - 10)

        assert verifier.verify(token)["sub"] == "user_123"

    def test_not_yet_valid_token(self, verifier):
        token = mint_token(USER_KEYS, nbf=int(time.time()) + 300)

        with pytest.raises(TokenValidationError):
            verifier.verify(token)

    def test_wrong_issuer(self, verifier):
        with pytest.raises(TokenValidationError):
            verifier.verify(mint_token(USER_KEYS, iss="https://evil.example.com"))

    def test_wrong_audience(self, verifier):
        with pytest.raises(TokenValidationError):
            verifier.verify(mint_token(USER_KEYS, aud="someone-else"))

    def test_missing_exp(self, verifier):
        now = int(time.time())
        token = jwt.encode(
            {"sub": "u", "iss": ISSUER, "aud": AUDIENCE, "iat": now},
            USER_KEYS.private_pem,
            algorithm="RS256",
            headers={"kid": USER_KEYS.kid},
        )

        with pytest.raises(TokenValidationError):
            verifier.verify(token)

    def test_malformed_token(self, verifier):
        with pytest.raises(TokenValidationError):
            verifier.verify("not-a-jwt")

    def test_error_message_is_generic(self, verifier):
        with pytest.raises(TokenValidationError) as exc_info:
            verifier.verify(mint_token(USER_KEYS, aud="someone-else"))

        assert "audience" not in exc_info.value.message.lower()

    def test_unknown_kid_triggers_single_refresh(self, verifier, jwks_client):
        rotated = TestKeyPair("user-key-2")

        with pytest.raises(TokenValidationError):
            verifier.verify(mint_token(rotated))

        assert jwks_client.refresh_calls == 1

    def test_refresh_is_rate_limited(self, verifier, jwks_client):
        rotated = TestKeyPair("user-key-2")
        token = mint_token(rotated)

        for _ in range(5):
            with pytest.raises(TokenValidationError):
                verifier.verify(token)

        assert jwks_client.refresh_calls == 1

    def test_rotated_key_found_after_refresh(self, verifier, jwks_client):
        rotated = TestKeyPair("user-key-2")
        original_get = jwks_client.get_signing_keys

        def get_signing_keys(refresh: bool = False):
            if refresh:
                jwks_client.keys.append(rotated.to_pyjwk())
            return original_get(refresh)

        jwks_client.get_signing_keys = get_signing_keys

        assert verifier.verify(mint_token(rotated))["sub"] == "user_123"

    def test_jwks_unreachable_is_auth_unavailable(self):
        verifier = JwksVerifier(
            jwks_url="https://auth.example.com/jwks", issuer=ISSUER, audiences=[AUDIENCE]
        )
        client = MagicMock()
        client.get_signing_keys.side_effect = PyJWKClientConnectionError("timed out")

        with patch.object(verifier, "_get_jwks_client", return_value=client):
            with pytest.raises(ApiError) as exc_info:
                verifier.verify(mint_token(USER_KEYS))

        assert exc_info.value.code == ApiErrorCode.E_AUTH_UNAVAILABLE
        assert exc_info.value.status_code == 503

    def test_jwks_client_is_lazy_and_shared(self):
        verifier = JwksVerifier(
            jwks_url="https://auth.example.com/jwks",
            issuer=ISSUER,
            audiences=[AUDIENCE],
            fetch_timeout=2,
        )

        with patch("quire.auth.verifier.PyJWKClient") as client_cls:
            first = verifier._get_jwks_client()
            second = verifier._get_jwks_client()

        assert first is second
        client_cls.assert_called_once_with(
            "https://auth.example.com/jwks", cache_keys=True, lifespan=300, timeout=2
        )


class TestUserTokenVerifier:
    """Tests for the interactive user verifier."""

    @pytest.fixture
    def verifier(self):
        return UserTokenVerifier(
            LocalJwksVerifier(
                StaticJwksClient([USER_KEYS.to_pyjwk()]), issuer=ISSUER, audiences=[AUDIENCE]
            )
        )

    def test_context_carries_sub(self, verifier):
        ctx = verifier.verify_context(mint_token(USER_KEYS, sub="user_abc"))

        assert ctx.user_id == "user_abc"
        assert ctx.type == "user"

    def test_empty_sub_rejected(self, verifier):
        with pytest.raises(TokenValidationError):
            verifier.verify(mint_token(USER_KEYS, sub=""))


class TestGithubOidcVerifier:
    """Tests for GitHub Actions OIDC verification."""

    def test_valid_token_produces_ci_context(self, oidc_verifier: GithubOidcVerifier):
        ctx = oidc_verifier.verify_context(mint_oidc_token(run_id="777"))

        assert ctx.type == "github-oidc"
        assert ctx.run_id == "777"
        assert ctx.repository == GITHUB_REPOSITORY
        assert ctx.session_id is None

    def test_session_claim_is_read(self, oidc_verifier):
        ctx = oidc_verifier.verify_context(mint_oidc_token(session_id="pub_" + "b" * 32))

        assert ctx.session_id == "pub_" + "b" * 32

    def test_repository_outside_allow_list_rejected(self, oidc_verifier):
        with pytest.raises(TokenValidationError):
            oidc_verifier.verify(mint_oidc_token(repository="mallory/fork"))

    def test_allow_list_is_case_insensitive(self, oidc_verifier):
        token = mint_oidc_token(repository=GITHUB_REPOSITORY.upper())

        assert oidc_verifier.verify(token)["repository"] == GITHUB_REPOSITORY.upper()

    def test_missing_run_id_rejected(self, oidc_verifier):
        with pytest.raises(TokenValidationError):
            oidc_verifier.verify(mint_oidc_token(run_id=None))

    def test_wrong_audience_rejected(self, oidc_verifier):
        with pytest.raises(TokenValidationError):
            oidc_verifier.verify(mint_oidc_token(aud="sts.amazonaws.com"))

    def test_expired_token_rejected(self, oidc_verifier):
        now = int(time.time())
        token = mint_oidc_token(iat=now - 900, nbf=now - 900, exp=now - 300)

        with pytest.raises(TokenValidationError):
            oidc_verifier.verify(token)

    def test_no_allow_list_accepts_any_repository(self):
        verifier = GithubOidcVerifier(
            LocalJwksVerifier(
                StaticJwksClient([OIDC_KEYS.to_pyjwk()]),
                issuer=GITHUB_OIDC_ISSUER,
                audiences=[GITHUB_OIDC_AUDIENCE],
            )
        )

        assert verifier.verify(mint_oidc_token(repository="any/repo"))["repository"] == "any/repo"
