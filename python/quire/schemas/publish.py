"""Publish session Pydantic schemas.

Wire format is camelCase (the browser client and the CI workflow both speak
it); Python attributes are snake_case. The nested `gh` record keeps GitHub's
own snake_case field names.

A PublishSession is persisted whole (including the runner attestation
nonce) but is never returned to a client as-is: use `session_status_out`.
"""

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class PublishStatus(str, Enum):
    """Lifecycle states of a publish session."""

    PENDING = "pending"
    RUNNER_ATTESTED = "runner-attested"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PublishStatus.COMPLETED, PublishStatus.FAILED)


class CamelModel(BaseModel):
    """Base model serialising to camelCase while accepting either spelling."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# GitHub run information
# =============================================================================


class GithubJobStep(BaseModel):
    name: str
    status: str | None = None
    conclusion: str | None = None
    number: int | None = None


class GithubJobInfo(BaseModel):
    id: int | None = None
    name: str | None = None
    status: str | None = None
    conclusion: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    steps: list[GithubJobStep] = Field(default_factory=list)


class GithubRunInfo(BaseModel):
    """External job identifiers recorded on the session.

    Written only from the CI side (attestation, callbacks, webhooks).
    """

    run_id: str | None = None
    run_number: str | None = None
    run_attempt: str | None = None
    workflow: str | None = None
    repository: str | None = None
    sha: str | None = None
    html_url: str | None = None
    status: str | None = None
    conclusion: str | None = None
    job: GithubJobInfo | None = None

    def merged_with(self, other: "GithubRunInfo") -> "GithubRunInfo":
        """Return a copy where fields set on `other` override this record."""
        updates = other.model_dump(exclude_none=True, exclude={"job"})
        merged = self.model_copy(update=updates)
        if other.job is not None:
            merged.job = other.job
        return merged


# =============================================================================
# Terminal payloads
# =============================================================================


class PublishResult(CamelModel):
    """Successful outcome. Extra keys reported by the runner are preserved."""

    artifact_url: str | None = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class PublishError(CamelModel):
    """Failed outcome with an optional machine-readable code."""

    message: str
    code: str | None = None


# =============================================================================
# Session record
# =============================================================================


class PublishSession(CamelModel):
    """One publish attempt's durable state record."""

    id: str
    user_id: str
    content_id: str
    format: str = "epub"
    status: PublishStatus = PublishStatus.PENDING
    progress: int = 0
    phase: str | None = None
    message: str | None = None
    nonce: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    gh: GithubRunInfo | None = None
    result: PublishResult | None = None
    error: PublishError | None = None
    created_at: int
    updated_at: int
    completed_at: int | None = None

    def to_json(self) -> str:
        """Serialise for storage (includes the nonce)."""
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "PublishSession":
        return cls.model_validate_json(raw)


STATUS_OPTIONAL_KEYS = ("gh", "result", "error", "completedAt")


def session_status_out(session: PublishSession) -> dict[str, Any]:
    """Client-facing status snapshot.

    Excludes the attestation nonce and the free-form metadata bag; optional
    fields (gh, result, error, completedAt) are omitted when unset; progress,
    phase and message are always present, null when unset.
    """
    out = session.model_dump(mode="json", by_alias=True, exclude={"nonce", "metadata", "user_id"})
    for key in STATUS_OPTIONAL_KEYS:
        if out.get(key) is None:
            out.pop(key, None)
    return out


# =============================================================================
# Request bodies
# =============================================================================


class CreatePublishSessionRequest(CamelModel):
    """Body of POST /publish/sessions."""

    content_id: str = Field(min_length=1, max_length=200)
    format: Literal["epub", "pdf", "html"] = "epub"
    metadata: dict[str, Any] = Field(default_factory=dict)


class AttestRunnerRequest(CamelModel):
    """Body of POST /publish/sessions/attest."""

    session_id: str = Field(min_length=1)
    nonce: str = Field(min_length=1)


class UpdatePublishRequest(CamelModel):
    """Body of POST /publish/sessions/update.

    `result` is required for `completed`, `error` for `failed`; the route
    enforces this before touching the state machine.
    """

    status: Literal["in-progress", "completed", "failed"]
    progress: int | None = None
    message: str | None = None
    phase: str | None = None
    result: PublishResult | None = None
    error: PublishError | None = None


class FinalizePublishRequest(CamelModel):
    """Body of POST /publish/sessions/finalize."""

    success: bool
    message: str | None = None
    result: PublishResult | None = None
    error: PublishError | None = None
