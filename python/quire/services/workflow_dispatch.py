"""GitHub Actions workflow dispatch.

Provides a clean interface for starting the publish workflow with:
- One POST to the workflow_dispatch endpoint per session (no automatic retries)
- Run details when GitHub returns them (`return_run_details`)
- A fake dispatcher that records calls, for tests and local development

The session id travels as the `session_id` workflow input and inside
`publish_ref` (`publish-{session_id}`), which the workflow uses as its
run-name so webhooks can be correlated back to the session.
"""

import json
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from quire.errors import DispatchError
from quire.logging import get_logger

logger = get_logger(__name__)

GITHUB_API_VERSION = "2022-11-28"

# Inputs lifted out of the metadata bag into first-class workflow inputs
CORRELATION_KEYS = ("session_id", "nonce")


@dataclass(frozen=True)
class DispatchResult:
    """Where the dispatched run can be found.

    `workflow_run_id` is None when GitHub did not report run details; the
    run is then identified later by attestation or webhook.
    """

    workflow_run_id: str | None
    workflow_url: str


def publish_ref(session_id: str) -> str:
    return f"publish-{session_id}"


def build_workflow_inputs(content_id: str, format: str, metadata: dict[str, Any]) -> dict[str, str]:
    """Map a dispatch request onto workflow_dispatch inputs (all strings)."""
    session_id = metadata.get("session_id")
    if not session_id:
        raise ValueError("metadata must carry the session_id correlation id")

    extra = {k: v for k, v in metadata.items() if k not in CORRELATION_KEYS}
    return {
        "session_id": str(session_id),
        "nonce": str(metadata.get("nonce") or ""),
        "content_id": content_id,
        "format": format,
        "metadata": json.dumps(extra, separators=(",", ":"), sort_keys=True),
        "publish_ref": publish_ref(str(session_id)),
    }


class WorkflowDispatcherBase(ABC):
    """Abstract base class for workflow dispatcher implementations."""

    @abstractmethod
    def trigger(self, content_id: str, format: str, metadata: dict[str, Any]) -> DispatchResult:
        """Start the publish workflow.

        Args:
            content_id: Content to publish.
            format: Output format (epub, pdf, html).
            metadata: Must contain `session_id` and `nonce`; everything else is
                forwarded as a JSON string input.

        Raises:
            DispatchError: If GitHub rejected the request or did not answer in time.
        """
        ...


class GithubWorkflowDispatcher(WorkflowDispatcherBase):
    """Production dispatcher using the GitHub REST API.

    The httpx client is created once at process start (see app lifespan) and
    shared; this class never closes it.
    """

    def __init__(
        self,
        http_client: httpx.Client,
        token: str,
        owner: str,
        repo: str,
        workflow: str = "process-content.yml",
        ref: str = "main",
        api_url: str = "https://api.github.com",
        timeout: float = 10.0,
    ):
        self._client = http_client
        self._owner = owner
        self._repo = repo
        self._workflow = workflow
        self._ref = ref
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }

    @property
    def dispatch_url(self) -> str:
        return (
            f"{self._api_url}/repos/{self._owner}/{self._repo}"
            f"/actions/workflows/{self._workflow}/dispatches"
        )

    @property
    def runs_page_url(self) -> str:
        return f"https://github.com/{self._owner}/{self._repo}/actions/workflows/{self._workflow}"

    def trigger(self, content_id: str, format: str, metadata: dict[str, Any]) -> DispatchResult:
        inputs = build_workflow_inputs(content_id, format, metadata)
        session_id = inputs["session_id"]

        try:
            response = self._client.post(
                self.dispatch_url,
                headers=self._headers,
                json={"ref": self._ref, "inputs": inputs, "return_run_details": True},
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            logger.error("workflow_dispatch.timeout", session_id=session_id, workflow=self._workflow)
            raise DispatchError("Workflow dispatch timed out") from e
        except httpx.HTTPError as e:
            logger.error(
                "workflow_dispatch.transport_error", session_id=session_id, error=str(e)
            )
            raise DispatchError() from e

        if response.status_code == 204:
            logger.info("workflow_dispatch.accepted", session_id=session_id, run_details=False)
            return DispatchResult(workflow_run_id=None, workflow_url=self.runs_page_url)

        if response.status_code != 200:
            logger.error(
                "workflow_dispatch.rejected",
                session_id=session_id,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise DispatchError(f"Workflow dispatch failed with status {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            data = {}

        run_id = data.get("workflow_run_id")
        result = DispatchResult(
            workflow_run_id=str(run_id) if run_id is not None else None,
            workflow_url=data.get("html_url") or data.get("run_url") or self.runs_page_url,
        )
        logger.info(
            "workflow_dispatch.accepted",
            session_id=session_id,
            run_details=True,
            workflow_run_id=result.workflow_run_id,
        )
        return result


@dataclass
class DispatchCall:
    content_id: str
    format: str
    metadata: dict[str, Any]
    inputs: dict[str, str] = field(default_factory=dict)


class FakeWorkflowDispatcher(WorkflowDispatcherBase):
    """Dispatcher that records calls instead of contacting GitHub.

    Set `fail_with` to make the next triggers raise, e.g. DispatchError().
    """

    def __init__(self, base_url: str = "https://github.com/example/publish/actions/runs"):
        self._base_url = base_url.rstrip("/")
        self._lock = threading.Lock()
        self._next_run_id = 1000
        self.calls: list[DispatchCall] = []
        self.fail_with: Exception | None = None

    def trigger(self, content_id: str, format: str, metadata: dict[str, Any]) -> DispatchResult:
        inputs = build_workflow_inputs(content_id, format, metadata)
        with self._lock:
            self.calls.append(DispatchCall(content_id, format, dict(metadata), inputs))
            if self.fail_with is not None:
                raise self.fail_with
            self._next_run_id += 1
            run_id = str(self._next_run_id)
        return DispatchResult(workflow_run_id=run_id, workflow_url=f"{self._base_url}/{run_id}")

    @property
    def last_call(self) -> DispatchCall | None:
        return self.calls[-1] if self.calls else None
