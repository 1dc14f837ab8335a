"""GitHub webhook event handling.

Called only after the webhook signature has been verified. Events are
correlated to a session by the `publish-{session_id}` marker the workflow
puts in its run name, falling back to the run index bound at attestation.

GitHub does not retry on our business errors, and a redelivery would not
change the outcome, so illegal transitions are logged and acknowledged.
"""

import re
from typing import Any

from quire.errors import InvalidTransition, SessionNotFound
from quire.logging import get_logger, set_session_context
from quire.schemas.publish import (
    GithubJobInfo,
    GithubJobStep,
    GithubRunInfo,
    PublishError,
    PublishResult,
    PublishStatus,
)
from quire.services.publish_sessions import PublishSessionService

logger = get_logger(__name__)

SESSION_MARKER = re.compile(r"publish-(pub_[0-9a-f]{32})")

HANDLED_EVENTS = frozenset({"workflow_run", "workflow_job"})


def _ack(handled: bool, session_id: str | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"received": True, "handled": handled}
    if session_id is not None:
        body["sessionId"] = session_id
    return body


def _session_from_names(*names: Any) -> str | None:
    for name in names:
        if isinstance(name, str):
            match = SESSION_MARKER.search(name)
            if match:
                return match.group(1)
    return None


def _correlate(service: PublishSessionService, run_id: Any, *names: Any) -> str | None:
    session_id = _session_from_names(*names)
    if session_id is None and run_id is not None:
        session_id = service.session_for_run(str(run_id))
    return session_id


def step_progress(steps: list[GithubJobStep]) -> int | None:
    """Percentage of job steps that finished successfully."""
    if not steps:
        return None
    done = sum(1 for step in steps if step.conclusion in ("success", "skipped"))
    return round(100 * done / len(steps))


def handle_github_event(
    service: PublishSessionService, event: str | None, payload: dict[str, Any]
) -> dict[str, Any]:
    """Dispatch a verified webhook delivery by its `x-github-event` name."""
    if event not in HANDLED_EVENTS:
        logger.info("webhook.event_ignored", github_event=event)
        return _ack(False)

    try:
        if event == "workflow_run":
            return _handle_workflow_run(service, payload)
        return _handle_workflow_job(service, payload)
    except (InvalidTransition, SessionNotFound) as e:
        logger.info("webhook.transition_skipped", github_event=event, reason=e.message)
        return _ack(False, getattr(e, "session_id", None))


def _handle_workflow_run(service: PublishSessionService, payload: dict[str, Any]) -> dict[str, Any]:
    run = payload.get("workflow_run") or {}
    run_id = run.get("id")
    session_id = _correlate(service, run_id, run.get("name"), run.get("display_title"))
    if session_id is None:
        logger.info("webhook.uncorrelated", github_event="workflow_run", run_id=run_id)
        return _ack(False)

    set_session_context(session_id, str(run_id) if run_id is not None else None)

    observed = GithubRunInfo(
        run_id=str(run_id) if run_id is not None else None,
        run_number=str(run["run_number"]) if run.get("run_number") is not None else None,
        run_attempt=str(run["run_attempt"]) if run.get("run_attempt") is not None else None,
        workflow=run.get("name"),
        repository=(payload.get("repository") or {}).get("full_name"),
        sha=run.get("head_sha"),
        html_url=run.get("html_url"),
        status=run.get("status"),
        conclusion=run.get("conclusion"),
    )
    session = service.record_run_observation(session_id, observed)

    action = payload.get("action")
    if action == "in_progress":
        if session.status == PublishStatus.RUNNER_ATTESTED:
            service.update_progress(session_id, message="Workflow running")
        return _ack(True, session_id)

    if action != "completed":
        return _ack(True, session_id)

    conclusion = run.get("conclusion")
    if conclusion == "success":
        if session.status == PublishStatus.COMPLETED:
            return _ack(True, session_id)
        service.complete(
            session_id,
            PublishResult(artifact_url=run.get("html_url")),
            "Workflow completed",
        )
    else:
        if session.status.is_terminal:
            return _ack(True, session_id)
        service.fail(
            session_id,
            PublishError(
                message=f"Workflow run concluded: {conclusion or 'unknown'}",
                code=f"WORKFLOW_{(conclusion or 'unknown').upper()}",
            ),
        )
    return _ack(True, session_id)


def _handle_workflow_job(service: PublishSessionService, payload: dict[str, Any]) -> dict[str, Any]:
    job = payload.get("workflow_job") or {}
    run_id = job.get("run_id")
    session_id = _correlate(service, run_id, job.get("workflow_name"), job.get("head_branch"))
    if session_id is None:
        logger.info("webhook.uncorrelated", github_event="workflow_job", run_id=run_id)
        return _ack(False)

    set_session_context(session_id, str(run_id) if run_id is not None else None)

    steps = [GithubJobStep.model_validate(step) for step in job.get("steps") or []]
    job_info = GithubJobInfo(
        id=job.get("id"),
        name=job.get("name"),
        status=job.get("status"),
        conclusion=job.get("conclusion"),
        started_at=job.get("started_at"),
        completed_at=job.get("completed_at"),
        steps=steps,
    )
    session = service.record_run_observation(
        session_id,
        GithubRunInfo(run_id=str(run_id) if run_id is not None else None, job=job_info),
    )

    progress = step_progress(steps)
    if progress is not None and session.status in (
        PublishStatus.RUNNER_ATTESTED,
        PublishStatus.IN_PROGRESS,
    ):
        running = next((s.name for s in steps if s.status == "in_progress"), None)
        service.update_progress(session_id, progress, phase=running)

    return _ack(True, session_id)
