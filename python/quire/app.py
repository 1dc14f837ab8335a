"""FastAPI application creation and configuration.

This module creates and configures the FastAPI application instance.
It registers exception handlers, auth middleware, request-id middleware, and routes.

Authentication:
- Interactive users: bearer JWT verified against the auth provider's JWKS
  (AuthMiddleware, all non-public, non-callback paths)
- Runner callbacks: GitHub OIDC or combined token (per-route dependencies)
- GitHub webhooks: HMAC signature over the raw body

Middleware Ordering (Critical):
- Middleware runs in reverse order of registration
- RequestIDMiddleware is added LAST so it runs FIRST (outermost)
- This ensures all requests (including auth failures) get X-Request-ID

Actual execution order per request:
1. RequestIDMiddleware (sets request_id, starts timer)
2. AuthMiddleware (verifies user auth, sets auth_context)
3. JSON body check (skipped for webhooks)
4. Route handler

Resource Lifecycle:
- The redis client and the httpx.Client used for dispatch are created at
  startup, stored in app.state, and closed at shutdown
- Anything injected through create_app (tests) is used as-is
"""

import json
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from redis import Redis

from quire.api.routes import create_api_router
from quire.auth.callbacks import CallbackAuthenticator
from quire.auth.combined_token import (
    CombinedTokenIssuer,
    CombinedTokenVerifier,
    generate_ephemeral_keypair,
    load_private_key,
    load_public_key,
)
from quire.auth.middleware import AuthMiddleware
from quire.auth.verifier import GithubOidcVerifier, JwksVerifier, TokenVerifier, UserTokenVerifier
from quire.config import Settings, get_settings
from quire.errors import ApiErrorCode
from quire.logging import configure_logging, get_logger
from quire.middleware.request_id import RequestIDMiddleware
from quire.responses import error_json, register_exception_handlers
from quire.services.publish_sessions import PublishSessionService
from quire.services.workflow_dispatch import (
    FakeWorkflowDispatcher,
    GithubWorkflowDispatcher,
    WorkflowDispatcherBase,
)
from quire.store import FakeSessionStore, RedisSessionStore, SessionStoreBase

# Configure structured logging at import time
configure_logging()

logger = get_logger(__name__)

# Paths whose bodies must reach the handler unparsed
RAW_BODY_PREFIXES = ("/webhooks/",)


def create_token_verifier(settings: Settings) -> UserTokenVerifier:
    """Create the interactive user token verifier from settings."""
    return UserTokenVerifier(
        JwksVerifier(
            jwks_url=settings.user_auth_jwks_url,  # type: ignore
            issuer=settings.normalized_user_issuer,  # type: ignore
            audiences=settings.user_audience_list,
            cache_ttl=settings.jwks_cache_ttl_s,
            min_refresh_interval=settings.jwks_min_refresh_s,
            fetch_timeout=settings.jwks_fetch_timeout_s,
        )
    )


def create_oidc_verifier(settings: Settings) -> GithubOidcVerifier:
    """Create the GitHub Actions OIDC verifier from settings."""
    return GithubOidcVerifier(
        JwksVerifier(
            jwks_url=settings.effective_github_oidc_jwks_url,
            issuer=settings.normalized_github_oidc_issuer,
            audiences=[settings.github_oidc_audience],
            cache_ttl=settings.jwks_cache_ttl_s,
            min_refresh_interval=settings.jwks_min_refresh_s,
            fetch_timeout=settings.jwks_fetch_timeout_s,
            algorithms=("RS256",),
        ),
        allowed_repositories=settings.allowed_repository_list,
    )


def create_combined_token_pair(
    settings: Settings,
) -> tuple[CombinedTokenIssuer, CombinedTokenVerifier]:
    """Build the combined token issuer/verifier.

    Without configured keys (local/test only; enforced by Settings) a
    throwaway key pair is generated for this process.
    """
    if settings.combined_token_private_key and settings.combined_token_public_key:
        private_key = load_private_key(settings.combined_token_private_key)
        public_key = load_public_key(settings.combined_token_public_key)
    else:
        logger.warning("combined_token_ephemeral_keys", env=settings.quire_env.value)
        private_key, public_key = generate_ephemeral_keypair()

    issuer = CombinedTokenIssuer(
        private_key,
        issuer=settings.combined_token_issuer,
        audience=settings.combined_token_audience,
        ttl_seconds=settings.combined_token_ttl_s,
    )
    verifier = CombinedTokenVerifier(
        public_key,
        issuer=settings.combined_token_issuer,
        audience=settings.combined_token_audience,
    )
    return issuer, verifier


def _install_session_service(app: FastAPI, store: SessionStoreBase, settings: Settings) -> None:
    app.state.publish_sessions = PublishSessionService(
        store, handoff_ttl=settings.combined_token_handoff_ttl_s
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle resources.

    - Creates the redis client and Redis-backed session store (unless injected)
    - Creates a shared httpx.Client for workflow dispatch (unless injected)
    - Closes both on shutdown
    """
    settings = get_settings()
    redis_client: Redis | None = None
    http_client: httpx.Client | None = None

    if getattr(app.state, "publish_sessions", None) is None:
        if settings.redis_url:
            redis_client = Redis.from_url(
                settings.redis_url, decode_responses=True, socket_timeout=5
            )
            store: SessionStoreBase = RedisSessionStore(
                redis_client,
                session_ttl=settings.session_ttl_s,
                terminal_ttl=settings.terminal_session_ttl_s,
            )
            logger.info("session_store_initialized", backend="redis")
        else:
            store = FakeSessionStore(settings.session_ttl_s, settings.terminal_session_ttl_s)
            logger.warning("session_store_initialized", backend="memory")
        _install_session_service(app, store, settings)

    if getattr(app.state, "workflow_dispatcher", None) is None:
        if settings.dispatch_configured:
            http_client = httpx.Client(
                timeout=httpx.Timeout(settings.dispatch_timeout_s, connect=5.0),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=5),
            )
            app.state.workflow_dispatcher = GithubWorkflowDispatcher(
                http_client,
                token=settings.github_token,  # type: ignore
                owner=settings.github_repo_owner,  # type: ignore
                repo=settings.github_repo_name,  # type: ignore
                workflow=settings.github_workflow,
                ref=settings.github_ref,
                api_url=settings.github_api_url,
                timeout=settings.dispatch_timeout_s,
            )
            logger.info("workflow_dispatcher_initialized", workflow=settings.github_workflow)
        else:
            app.state.workflow_dispatcher = FakeWorkflowDispatcher()
            logger.warning("workflow_dispatcher_fake", env=settings.quire_env.value)

    yield

    if http_client is not None:
        http_client.close()
        logger.info("httpx_client_closed")
    if redis_client is not None:
        redis_client.close()
        logger.info("redis_client_closed")


def create_app(
    skip_auth_middleware: bool = False,
    token_verifier: TokenVerifier | None = None,
    session_store: SessionStoreBase | None = None,
    dispatcher: WorkflowDispatcherBase | None = None,
    oidc_verifier: GithubOidcVerifier | None = None,
    combined_token_issuer: CombinedTokenIssuer | None = None,
    combined_token_verifier: CombinedTokenVerifier | None = None,
    webhook_secret: str | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        skip_auth_middleware: If True, skip adding auth middleware (for testing).
        token_verifier: Optional custom user token verifier (for testing).
        session_store: Optional store; otherwise created in the lifespan.
        dispatcher: Optional workflow dispatcher; otherwise created in the lifespan.
        oidc_verifier: Optional GitHub OIDC verifier (for testing).
        combined_token_issuer: Optional issuer; must be paired with the verifier.
        combined_token_verifier: Optional verifier; must be paired with the issuer.
        webhook_secret: Optional webhook secret overriding GITHUB_WEBHOOK_SECRET.

    Returns:
        Configured FastAPI application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title="Quire Publish API",
        description="Publish session service: dispatches and tracks book publishing runs",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Collaborators built without I/O are ready before the first request
    if session_store is not None:
        _install_session_service(app, session_store, settings)
    if dispatcher is not None:
        app.state.workflow_dispatcher = dispatcher

    if combined_token_issuer is None or combined_token_verifier is None:
        combined_token_issuer, combined_token_verifier = create_combined_token_pair(settings)
    app.state.combined_token_issuer = combined_token_issuer
    app.state.callback_authenticator = CallbackAuthenticator(
        oidc_verifier or create_oidc_verifier(settings),
        combined_token_verifier,
    )
    if webhook_secret is not None:
        app.state.webhook_secret = webhook_secret

    register_exception_handlers(app)

    @app.middleware("http")
    async def catch_json_decode_errors(request: Request, call_next):
        """Catch JSON decode errors before they reach route handlers.

        Webhook bodies are left alone until their signature is verified.
        """
        if request.method in ("POST", "PUT", "PATCH") and not request.url.path.startswith(
            RAW_BODY_PREFIXES
        ):
            content_type = request.headers.get("content-type", "")
            if "application/json" in content_type:
                body = await request.body()
                if body:
                    try:
                        json.loads(body)
                    except json.JSONDecodeError:
                        return error_json(ApiErrorCode.E_INVALID_REQUEST, "Malformed JSON body")
        return await call_next(request)

    app.include_router(create_api_router())

    # Add auth middleware (runs on all requests except public and callback paths)
    if not skip_auth_middleware:
        app.add_middleware(
            AuthMiddleware,
            verifier=token_verifier or create_token_verifier(settings),
        )
        logger.info("auth_middleware_enabled", env=settings.quire_env.value)

    return app


def add_request_id_middleware(app: FastAPI, log_requests: bool = True) -> None:
    """Add request-id middleware to the app.

    This should be called AFTER all other middleware is added, so it runs FIRST.
    This ensures every response includes X-Request-ID, including auth failures.
    """
    app.add_middleware(RequestIDMiddleware, log_requests=log_requests)
    logger.info("request_id_middleware_enabled")
