"""Tests for runner callback authentication and webhook signatures."""

import pytest

from quire.auth.callbacks import (
    CallbackAuthenticator,
    peek_issuer,
    resolve_callback_session_id,
    verify_webhook_signature,
)
from quire.auth.combined_token import CombinedTokenIssuer, CombinedTokenVerifier
from quire.auth.contexts import (
    CiAuthContext,
    CombinedAuthContext,
    UserAuthContext,
    session_id_from_context,
)
from quire.errors import ApiError, ApiErrorCode, SessionNotFound, TokenValidationError
from quire.schemas.publish import PublishSession
from tests.helpers import GITHUB_OIDC_ISSUER, mint_oidc_token, mint_test_token, sign_webhook

SESSION_ID = "pub_" + "d" * 32


def _session() -> PublishSession:
    return PublishSession(
        id=SESSION_ID, user_id="user_owner", content_id="book", created_at=1, updated_at=1
    )


@pytest.fixture
def authenticator(oidc_verifier, combined_verifier) -> CallbackAuthenticator:
    return CallbackAuthenticator(oidc_verifier, combined_verifier)


class TestPeekIssuer:
    def test_reads_issuer_without_verifying(self):
        assert peek_issuer(mint_oidc_token()) == GITHUB_OIDC_ISSUER

    def test_garbage_yields_none(self):
        assert peek_issuer("garbage") is None


class TestCallbackAuthenticator:
    """Verifier selection by token issuer."""

    def test_oidc_token_yields_ci_context(self, authenticator):
        ctx = authenticator.authenticate(mint_oidc_token(run_id="99"))

        assert isinstance(ctx, CiAuthContext)
        assert ctx.run_id == "99"

    def test_combined_token_yields_combined_context(self, authenticator, combined_issuer):
        ctx = authenticator.authenticate(combined_issuer.issue(_session()))

        assert isinstance(ctx, CombinedAuthContext)
        assert ctx.session_id == SESSION_ID

    def test_combined_token_refused_where_not_allowed(self, authenticator, combined_issuer):
        with pytest.raises(TokenValidationError):
            authenticator.authenticate(combined_issuer.issue(_session()), allow_combined=False)

    def test_user_token_rejected(self, authenticator):
        with pytest.raises(TokenValidationError):
            authenticator.authenticate(mint_test_token("user_a"))

    def test_forged_oidc_token_rejected(self, authenticator):
        from tests.support.test_verifier import TestKeyPair

        forged = mint_oidc_token(keys=TestKeyPair("gh-test-key"))

        with pytest.raises(TokenValidationError):
            authenticator.authenticate(forged)

    def test_combined_issuer_with_trailing_slash(self, oidc_verifier, combined_keys):
        issuer_url = "https://publish.quire.test/"
        issuer = CombinedTokenIssuer(combined_keys[0], issuer=issuer_url, audience="quire-runner")
        verifier = CombinedTokenVerifier(combined_keys[1], issuer=issuer_url, audience="quire-runner")
        token = issuer.issue(_session())

        ctx = CallbackAuthenticator(oidc_verifier, verifier).authenticate(token)

        assert isinstance(ctx, CombinedAuthContext)
        assert ctx.session_id == SESSION_ID
        assert peek_issuer(token) == verifier.issuer == "https://publish.quire.test"

    def test_without_combined_verifier_only_oidc_accepted(self, oidc_verifier, combined_issuer):
        authenticator = CallbackAuthenticator(oidc_verifier)

        with pytest.raises(TokenValidationError):
            authenticator.authenticate(combined_issuer.issue(_session()))


class TestResolveCallbackSessionId:
    """Which session a verified runner token speaks for."""

    def test_combined_token_names_session(self, store):
        ctx = CombinedAuthContext(session_id=SESSION_ID, user_id="u", jti="j")

        assert resolve_callback_session_id(ctx, store) == SESSION_ID

    def test_oidc_session_claim_wins(self, store):
        ctx = CiAuthContext(repository="o/r", workflow="w", run_id="1", session_id=SESSION_ID)

        assert resolve_callback_session_id(ctx, store) == SESSION_ID

    def test_oidc_falls_back_to_run_index(self, store):
        store.bind_run("321", SESSION_ID, ttl=60)
        ctx = CiAuthContext(repository="o/r", workflow="w", run_id="321")

        assert resolve_callback_session_id(ctx, store) == SESSION_ID

    def test_unbound_run_is_not_found(self, store):
        ctx = CiAuthContext(repository="o/r", workflow="w", run_id="404")

        with pytest.raises(SessionNotFound):
            resolve_callback_session_id(ctx, store)

    def test_other_context_types_fail_loudly(self, store):
        with pytest.raises(TypeError):
            resolve_callback_session_id(object(), store)  # type: ignore[arg-type]


class TestSessionIdFromContext:
    def test_combined(self):
        ctx = CombinedAuthContext(session_id=SESSION_ID, user_id="u", jti="j")
        assert session_id_from_context(ctx) == SESSION_ID

    def test_oidc_with_and_without_claim(self):
        assert session_id_from_context(CiAuthContext("o/r", "w", "1", session_id="pub_x")) == "pub_x"
        assert session_id_from_context(CiAuthContext("o/r", "w", "1")) is None

    def test_user_names_no_session(self):
        assert session_id_from_context(UserAuthContext(user_id="u")) is None

    def test_unknown_variant(self):
        with pytest.raises(TypeError, match="Unhandled auth context"):
            session_id_from_context("not-a-context")  # type: ignore[arg-type]


class TestVerifyWebhookSignature:
    body = b'{"action":"completed"}'

    def test_valid_signature_passes(self):
        verify_webhook_signature("s3cret", self.body, sign_webhook(self.body, "s3cret"))

    @pytest.mark.parametrize(
        "header",
        [None, "", "sha1=abc", "sha256=", "sha256=deadbeef"],
    )
    def test_bad_headers_rejected(self, header):
        with pytest.raises(ApiError) as exc_info:
            verify_webhook_signature("s3cret", self.body, header)

        assert exc_info.value.code == ApiErrorCode.E_UNAUTHENTICATED

    def test_wrong_secret_rejected(self):
        with pytest.raises(ApiError):
            verify_webhook_signature("s3cret", self.body, sign_webhook(self.body, "other"))

    def test_modified_body_rejected(self):
        header = sign_webhook(self.body, "s3cret")

        with pytest.raises(ApiError):
            verify_webhook_signature("s3cret", self.body + b" ", header)

    def test_unconfigured_secret_rejects_everything(self):
        with pytest.raises(ApiError) as exc_info:
            verify_webhook_signature(None, self.body, sign_webhook(self.body, "s3cret"))

        assert exc_info.value.status_code == 401
