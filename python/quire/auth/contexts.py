"""Authentication contexts.

Every authenticated request resolves to exactly one variant of AuthContext:
- UserAuthContext: interactive user (browser session bearer JWT)
- CiAuthContext: GitHub Actions job (OIDC identity token)
- CombinedAuthContext: runner holding this service's own combined token

Each variant carries a literal `type` discriminator. Code that accepts more
than one variant branches on isinstance and ends with `unexpected_context`,
so adding a variant fails loudly instead of falling through.
"""

from dataclasses import dataclass
from typing import Any, Literal, NoReturn

from quire.schemas.publish import GithubRunInfo


@dataclass(frozen=True)
class UserAuthContext:
    """Interactive user identity (JWT `sub`)."""

    user_id: str
    type: Literal["user"] = "user"


@dataclass(frozen=True)
class CiAuthContext:
    """Claims of a verified GitHub Actions OIDC token."""

    repository: str
    workflow: str
    run_id: str
    run_number: str | None = None
    run_attempt: str | None = None
    repository_owner: str | None = None
    sha: str | None = None
    ref: str | None = None
    actor: str | None = None
    job_workflow_ref: str | None = None
    session_id: str | None = None
    type: Literal["github-oidc"] = "github-oidc"

    def run_info(self) -> GithubRunInfo:
        """External job identifiers to record on the session."""
        return GithubRunInfo(
            run_id=self.run_id,
            run_number=self.run_number,
            run_attempt=self.run_attempt,
            workflow=self.workflow,
            repository=self.repository,
            sha=self.sha,
        )


@dataclass(frozen=True)
class CombinedAuthContext:
    """Claims of a verified combined token. The token fixes the session."""

    session_id: str
    user_id: str
    jti: str
    content_id: str | None = None
    gh: dict[str, Any] | None = None
    type: Literal["combined"] = "combined"


AuthContext = UserAuthContext | CiAuthContext | CombinedAuthContext
CallbackAuthContext = CiAuthContext | CombinedAuthContext


def unexpected_context(ctx: object) -> NoReturn:
    """Terminal branch for exhaustive AuthContext handling."""
    raise TypeError(f"Unhandled auth context variant: {type(ctx).__name__}")


def session_id_from_context(ctx: AuthContext) -> str | None:
    """Session named by the credential itself, if any.

    User tokens never name a session. OIDC tokens do only when the workflow
    requested one with a `session_id` claim.
    """
    if isinstance(ctx, CombinedAuthContext):
        return ctx.session_id
    if isinstance(ctx, CiAuthContext):
        return ctx.session_id
    if isinstance(ctx, UserAuthContext):
        return None
    unexpected_context(ctx)
