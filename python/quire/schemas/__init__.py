"""Pydantic schemas for request/response models.

All schemas are re-exported here for convenient imports.
"""

from quire.schemas.publish import (
    AttestRunnerRequest,
    CreatePublishSessionRequest,
    FinalizePublishRequest,
    GithubJobInfo,
    GithubJobStep,
    GithubRunInfo,
    PublishError,
    PublishResult,
    PublishSession,
    PublishStatus,
    UpdatePublishRequest,
    session_status_out,
)

__all__ = [
    "AttestRunnerRequest",
    "CreatePublishSessionRequest",
    "FinalizePublishRequest",
    "GithubJobInfo",
    "GithubJobStep",
    "GithubRunInfo",
    "PublishError",
    "PublishResult",
    "PublishSession",
    "PublishStatus",
    "UpdatePublishRequest",
    "session_status_out",
]
