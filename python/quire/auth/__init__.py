"""Authentication and authorization module.

This module provides:
- Token verification (JWKS verifiers for the user auth provider and GitHub OIDC)
- The combined token issuer/verifier for runner handoff
- Auth middleware for interactive users
- Callback dependencies for runner requests and webhook signatures

Note: Test-only verifiers are in tests/support/test_verifier.py
"""

from quire.auth.callbacks import (
    CallbackAuthenticator,
    require_ci_context,
    require_oidc_context,
    resolve_callback_session_id,
    verify_webhook_signature,
)
from quire.auth.combined_token import CombinedTokenIssuer, CombinedTokenVerifier
from quire.auth.contexts import (
    AuthContext,
    CallbackAuthContext,
    CiAuthContext,
    CombinedAuthContext,
    UserAuthContext,
    session_id_from_context,
)
from quire.auth.middleware import AuthMiddleware, get_user_context
from quire.auth.verifier import GithubOidcVerifier, JwksVerifier, TokenVerifier, UserTokenVerifier

__all__ = [
    "AuthContext",
    "AuthMiddleware",
    "CallbackAuthContext",
    "CallbackAuthenticator",
    "CiAuthContext",
    "CombinedAuthContext",
    "CombinedTokenIssuer",
    "CombinedTokenVerifier",
    "GithubOidcVerifier",
    "JwksVerifier",
    "TokenVerifier",
    "UserAuthContext",
    "UserTokenVerifier",
    "get_user_context",
    "require_ci_context",
    "require_oidc_context",
    "resolve_callback_session_id",
    "session_id_from_context",
    "verify_webhook_signature",
]
