"""Application settings loaded from environment variables.

Environment Configuration:
    QUIRE_ENV: Deployment environment (local | test | staging | prod)
    REDIS_URL: Redis connection string for the session store (required outside test)

Session lifetimes:
    SESSION_TTL_S: Lifetime of a non-terminal publish session (default 24h)
    TERMINAL_SESSION_TTL_S: Lifetime once completed/failed (default 7 days)
    COMBINED_TOKEN_HANDOFF_TTL_S: How long an unclaimed combined token waits

Interactive user auth (required in all environments):
    USER_AUTH_JWKS_URL: Full URL to the auth provider's JWKS endpoint
    USER_AUTH_ISSUER: Expected JWT issuer (trailing slash stripped)
    USER_AUTH_AUDIENCES: Comma-separated list of allowed audiences

GitHub Actions OIDC:
    GITHUB_OIDC_ISSUER, GITHUB_OIDC_AUDIENCE, GITHUB_OIDC_JWKS_URL
    GITHUB_ALLOWED_REPOSITORIES: Optional comma-separated "owner/repo" allow list

Combined token (Ed25519, PEM):
    COMBINED_TOKEN_PRIVATE_KEY, COMBINED_TOKEN_PUBLIC_KEY
    COMBINED_TOKEN_ISSUER, COMBINED_TOKEN_AUDIENCE, COMBINED_TOKEN_TTL_S

Workflow dispatch:
    GITHUB_TOKEN, GITHUB_REPO_OWNER, GITHUB_REPO_NAME, GITHUB_WORKFLOW, GITHUB_REF
    GITHUB_API_URL, DISPATCH_TIMEOUT_S

Webhooks:
    GITHUB_WEBHOOK_SECRET: Shared secret for x-hub-signature-256 verification
"""

from enum import Enum
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

DEFAULT_GITHUB_OIDC_ISSUER = "https://token.actions.githubusercontent.com"


class Environment(str, Enum):
    """Valid deployment environments."""

    LOCAL = "local"
    TEST = "test"
    STAGING = "staging"
    PROD = "prod"


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Application configuration.

    Validation rules:
    - USER_AUTH_JWKS_URL, USER_AUTH_ISSUER, USER_AUTH_AUDIENCES are always required
    - REDIS_URL is required outside the test environment
    - Combined token keys, GITHUB_WEBHOOK_SECRET and the dispatch target are
      required in staging and prod
    """

    quire_env: Environment = Field(default=Environment.LOCAL, alias="QUIRE_ENV")

    # Session store
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    session_ttl_s: int = Field(default=24 * 60 * 60, alias="SESSION_TTL_S")
    terminal_session_ttl_s: int = Field(default=7 * 24 * 60 * 60, alias="TERMINAL_SESSION_TTL_S")
    combined_token_handoff_ttl_s: int = Field(default=15 * 60, alias="COMBINED_TOKEN_HANDOFF_TTL_S")

    # Interactive user auth
    user_auth_jwks_url: str | None = Field(default=None, alias="USER_AUTH_JWKS_URL")
    user_auth_issuer: str | None = Field(default=None, alias="USER_AUTH_ISSUER")
    user_auth_audiences: str | None = Field(default=None, alias="USER_AUTH_AUDIENCES")

    # GitHub Actions OIDC
    github_oidc_issuer: str = Field(default=DEFAULT_GITHUB_OIDC_ISSUER, alias="GITHUB_OIDC_ISSUER")
    github_oidc_audience: str = Field(default="quire-publish", alias="GITHUB_OIDC_AUDIENCE")
    github_oidc_jwks_url: str | None = Field(default=None, alias="GITHUB_OIDC_JWKS_URL")
    github_allowed_repositories: str | None = Field(
        default=None, alias="GITHUB_ALLOWED_REPOSITORIES"
    )

    # JWKS fetching
    jwks_cache_ttl_s: int = Field(default=300, alias="JWKS_CACHE_TTL_S")
    jwks_min_refresh_s: int = Field(default=30, alias="JWKS_MIN_REFRESH_S")
    jwks_fetch_timeout_s: int = Field(default=5, alias="JWKS_FETCH_TIMEOUT_S")

    # Combined token
    combined_token_private_key: str | None = Field(
        default=None, alias="COMBINED_TOKEN_PRIVATE_KEY"
    )
    combined_token_public_key: str | None = Field(default=None, alias="COMBINED_TOKEN_PUBLIC_KEY")
    combined_token_issuer: str = Field(default="quire-publish", alias="COMBINED_TOKEN_ISSUER")
    combined_token_audience: str = Field(default="quire-actions", alias="COMBINED_TOKEN_AUDIENCE")
    combined_token_ttl_s: int = Field(default=15 * 60, alias="COMBINED_TOKEN_TTL_S")

    # Workflow dispatch
    github_token: str | None = Field(default=None, alias="GITHUB_TOKEN")
    github_repo_owner: str | None = Field(default=None, alias="GITHUB_REPO_OWNER")
    github_repo_name: str | None = Field(default=None, alias="GITHUB_REPO_NAME")
    github_workflow: str = Field(default="process-content.yml", alias="GITHUB_WORKFLOW")
    github_ref: str = Field(default="main", alias="GITHUB_REF")
    github_api_url: str = Field(default="https://api.github.com", alias="GITHUB_API_URL")
    dispatch_timeout_s: float = Field(default=10.0, alias="DISPATCH_TIMEOUT_S")

    # Webhooks
    github_webhook_secret: str | None = Field(default=None, alias="GITHUB_WEBHOOK_SECRET")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @model_validator(mode="after")
    def validate_required_settings(self) -> "Settings":
        """Ensure required settings are set for the selected environment."""
        missing_auth = []
        if not self.user_auth_jwks_url:
            missing_auth.append("USER_AUTH_JWKS_URL")
        if not self.user_auth_issuer:
            missing_auth.append("USER_AUTH_ISSUER")
        if not self.user_auth_audiences:
            missing_auth.append("USER_AUTH_AUDIENCES")

        if missing_auth:
            raise ValueError(f"Missing required user auth settings: {', '.join(missing_auth)}")

        if self.quire_env != Environment.TEST and not self.redis_url:
            raise ValueError(f"REDIS_URL is required for QUIRE_ENV={self.quire_env.value}")

        if self.quire_env in (Environment.STAGING, Environment.PROD):
            missing = []
            if not self.combined_token_private_key:
                missing.append("COMBINED_TOKEN_PRIVATE_KEY")
            if not self.combined_token_public_key:
                missing.append("COMBINED_TOKEN_PUBLIC_KEY")
            if not self.github_webhook_secret:
                missing.append("GITHUB_WEBHOOK_SECRET")
            if not self.dispatch_configured:
                missing.append("GITHUB_TOKEN/GITHUB_REPO_OWNER/GITHUB_REPO_NAME")
            if missing:
                raise ValueError(
                    f"{', '.join(missing)} required for QUIRE_ENV={self.quire_env.value}"
                )

        if self.terminal_session_ttl_s < self.session_ttl_s:
            raise ValueError("TERMINAL_SESSION_TTL_S must be >= SESSION_TTL_S")

        return self

    @property
    def user_audience_list(self) -> list[str]:
        """Parse comma-separated user audiences into a list."""
        return _split_csv(self.user_auth_audiences)

    @property
    def normalized_user_issuer(self) -> str | None:
        """Return user issuer with trailing slash stripped."""
        if self.user_auth_issuer:
            return self.user_auth_issuer.rstrip("/")
        return None

    @property
    def normalized_github_oidc_issuer(self) -> str:
        return self.github_oidc_issuer.rstrip("/")

    @property
    def effective_github_oidc_jwks_url(self) -> str:
        """Return the OIDC JWKS URL, derived from the issuer if not set."""
        return self.github_oidc_jwks_url or f"{self.normalized_github_oidc_issuer}/.well-known/jwks"

    @property
    def allowed_repository_list(self) -> list[str]:
        return _split_csv(self.github_allowed_repositories)

    @property
    def dispatch_configured(self) -> bool:
        """Whether enough GitHub settings exist to dispatch real workflows."""
        return bool(self.github_token and self.github_repo_owner and self.github_repo_name)


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If required settings are missing or invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache. Useful for testing."""
    get_settings.cache_clear()
