"""Pytest configuration and fixtures for Quire tests.

Test isolation strategy:
- Every test gets a fresh in-memory FakeSessionStore and FakeWorkflowDispatcher
- Settings come from test environment defaults set below; the settings
  cache is cleared around every test
- App tests inject all collaborators through create_app, so no network,
  Redis or GitHub access ever happens
"""

import os
import sys
from collections.abc import Generator
from pathlib import Path

# Add repo root to sys.path for importing top-level packages (e.g., apps)
_repo_root = Path(__file__).parent.parent.parent
if str(_repo_root) not in sys.path:
    sys.path.insert(0, str(_repo_root))

os.environ.setdefault("QUIRE_ENV", "test")
os.environ.setdefault("USER_AUTH_JWKS_URL", "https://auth.test/.well-known/jwks.json")
os.environ.setdefault("USER_AUTH_ISSUER", "test-issuer")
os.environ.setdefault("USER_AUTH_AUDIENCES", "test-audience")

import pytest
from fastapi.testclient import TestClient

from quire.app import add_request_id_middleware, create_app
from quire.auth.combined_token import (
    CombinedTokenIssuer,
    CombinedTokenVerifier,
    generate_ephemeral_keypair,
)
from quire.auth.verifier import GithubOidcVerifier
from quire.config import clear_settings_cache
from quire.services.publish_sessions import PublishSessionService
from quire.services.workflow_dispatch import FakeWorkflowDispatcher
from quire.store import FakeSessionStore
from tests.helpers import (
    GITHUB_OIDC_AUDIENCE,
    GITHUB_OIDC_ISSUER,
    GITHUB_REPOSITORY,
    OIDC_KEYS,
    WEBHOOK_SECRET,
    FakeClock,
    create_test_user_id,
)
from tests.support.test_verifier import LocalJwksVerifier, MockJwtVerifier, StaticJwksClient

COMBINED_ISSUER = "quire-publish"
COMBINED_AUDIENCE = "quire-actions"


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Settings are cached per process; tests may change the environment."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> FakeSessionStore:
    return FakeSessionStore()


@pytest.fixture
def service(store: FakeSessionStore, clock: FakeClock) -> PublishSessionService:
    return PublishSessionService(store, clock=clock)


@pytest.fixture
def dispatcher() -> FakeWorkflowDispatcher:
    return FakeWorkflowDispatcher()


@pytest.fixture
def combined_keys():
    return generate_ephemeral_keypair()


@pytest.fixture
def combined_issuer(combined_keys) -> CombinedTokenIssuer:
    return CombinedTokenIssuer(combined_keys[0], issuer=COMBINED_ISSUER, audience=COMBINED_AUDIENCE)


@pytest.fixture
def combined_verifier(combined_keys) -> CombinedTokenVerifier:
    return CombinedTokenVerifier(combined_keys[1], issuer=COMBINED_ISSUER, audience=COMBINED_AUDIENCE)


@pytest.fixture
def oidc_verifier() -> GithubOidcVerifier:
    return GithubOidcVerifier(
        LocalJwksVerifier(
            StaticJwksClient([OIDC_KEYS.to_pyjwk()]),
            issuer=GITHUB_OIDC_ISSUER,
            audiences=[GITHUB_OIDC_AUDIENCE],
            algorithms=("RS256",),
        ),
        allowed_repositories=[GITHUB_REPOSITORY],
    )


@pytest.fixture
def app(store, dispatcher, oidc_verifier, combined_issuer, combined_verifier):
    """FastAPI app with the full middleware stack and fake collaborators."""
    app = create_app(
        token_verifier=MockJwtVerifier(),
        session_store=store,
        dispatcher=dispatcher,
        oidc_verifier=oidc_verifier,
        combined_token_issuer=combined_issuer,
        combined_token_verifier=combined_verifier,
        webhook_secret=WEBHOOK_SECRET,
    )
    add_request_id_middleware(app, log_requests=False)
    return app


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    """Test client for the fully wired app (auth middleware included)."""
    with TestClient(app) as client:
        yield client


@pytest.fixture
def test_user_id() -> str:
    return create_test_user_id()
