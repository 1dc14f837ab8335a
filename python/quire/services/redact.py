"""Keeping credentials out of logs.

Never logged verbatim: bearer tokens of any kind (user, GitHub OIDC,
combined), attestation nonces, webhook secrets and signatures, raw webhook
bodies. Log a digest or a length instead, under a key ending in one of
REDACTED_SUFFIXES, e.g. `token_sha256=hash_text(token)`.
"""

import hashlib
import os

from quire.logging import get_logger

logger = get_logger(__name__)

FORBIDDEN_KEYS = frozenset(
    {
        "authorization",
        "bearer",
        "combined_token",
        "nonce",
        "private_key",
        "raw_body",
        "secret",
        "signature",
        "token",
    }
)

REDACTED_SUFFIXES = ("_sha256", "_hash", "_length", "_chars")

# Environments where a violation is a bug to fix now, not a warning
_STRICT_ENVS = ("local", "test")


def hash_text(value: str) -> str:
    """Stable SHA-256 hex digest, for correlating a credential across log lines."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def safe_kv(*, _env: str | None = None, **kwargs) -> dict:
    """Return kwargs for a log call after checking none of them is a raw credential.

    A forbidden key raises ValueError in local/test and is reported (by key
    name only) in staging/prod. `_env` overrides QUIRE_ENV for tests.
    """
    violations = sorted(
        key for key in kwargs if key in FORBIDDEN_KEYS and not key.endswith(REDACTED_SUFFIXES)
    )
    if not violations:
        return kwargs

    env = _env or os.environ.get("QUIRE_ENV", "local")
    if env in _STRICT_ENVS:
        raise ValueError(f"Forbidden log keys without redacted suffix: {violations}")
    logger.warning("safe_kv_violation", forbidden_keys=violations)
    return kwargs
