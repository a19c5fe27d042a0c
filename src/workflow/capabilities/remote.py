"""HTTP adapters for capabilities running as remote services.

Each capability is reached with a POST to ``{base_url}/{capability}``
carrying the task, workspace, and stage inputs as JSON. Responses map to
StageResult values:

- 2xx with ``{"outcome": ..., "payload": ..., "reason": ...}`` → parsed result
- 429 → transient, rate limited
- 408, 5xx, connection errors → transient
- request timeouts → transient, timeout
- other 4xx or a malformed body → permanent

The adapters never raise for remote failures, so the orchestrator's
retry and circuit breaker logic sees every failure as a StageResult.
"""

import logging
from typing import Any, Dict, Optional, Type

import httpx
from pydantic import ValidationError

from src.workflow.capabilities.interfaces import Capability
from src.workflow.capabilities.models import (
    AnalysisOutcome,
    ChangeSet,
    FailureClass,
    IntegrationReference,
    ReviewVerdict,
    StageOutcome,
    StagePayload,
    StageResult,
)
from src.workflow.state.models import Task
from src.workflow.workspace.manager import Workspace

logger = logging.getLogger(__name__)

PAYLOAD_MODELS: Dict[Capability, Type[StagePayload]] = {
    Capability.ANALYZER: AnalysisOutcome,
    Capability.RESOLVER: ChangeSet,
    Capability.REVIEWER: ReviewVerdict,
    Capability.INTEGRATOR: IntegrationReference,
}

MAX_ERROR_BODY_CHARS = 500


class CapabilityResponseError(Exception):
    """Raised when a capability response body cannot be interpreted."""

    def __init__(self, capability: Capability, message: str):
        self.capability = capability
        super().__init__(f"{capability.value}: {message}")


class RemoteCapabilityClient:
    """Async HTTP client shared by the remote capability adapters.

    Attributes:
        base_url: Base URL of the capability service.
        token: Optional bearer token.
        timeout: Request timeout in seconds.
    """

    # HTTP status codes that indicate a transient failure
    RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._default_headers(),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def _default_headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "User-Agent": "IssueWorkflowOrchestrator/1.0",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "RemoteCapabilityClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def call(
        self,
        capability: Capability,
        task: Task,
        workspace: Workspace,
        inputs: Optional[Dict[str, Any]] = None,
    ) -> StageResult:
        """Invoke a remote capability and map the response to a StageResult."""
        body = {
            "task": task.model_dump(
                mode="json",
                include={"task_id", "source_ref", "title", "priority"},
            ),
            "workspace": {
                "path": str(workspace.path),
                "branch": workspace.branch,
                "base_revision": workspace.base_revision,
            },
            "inputs": inputs or {},
        }

        try:
            response = await self.client.post(f"/{capability.value}", json=body)
        except httpx.TimeoutException as exc:
            logger.warning(
                "Capability request timed out",
                extra={"capability": capability.value, "task_id": task.task_id},
            )
            return StageResult.transient(
                f"{capability.value} request timed out: {exc}",
                FailureClass.TIMEOUT,
            )
        except httpx.TransportError as exc:
            logger.warning(
                "Capability request failed",
                extra={
                    "capability": capability.value,
                    "task_id": task.task_id,
                    "error": str(exc),
                },
            )
            return StageResult.transient(
                f"{capability.value} unreachable: {exc}",
                FailureClass.ERROR,
            )

        return self._map_response(capability, response)

    def _map_response(
        self,
        capability: Capability,
        response: httpx.Response,
    ) -> StageResult:
        status = response.status_code

        if status == 429:
            return StageResult.transient(
                f"{capability.value} rate limited",
                FailureClass.RATE_LIMITED,
            )
        if status in self.RETRYABLE_STATUS_CODES or status >= 500:
            return StageResult.transient(
                f"{capability.value} returned HTTP {status}",
                FailureClass.ERROR,
            )
        if status >= 400:
            return StageResult.permanent(
                f"{capability.value} rejected request with HTTP {status}: "
                f"{response.text[:MAX_ERROR_BODY_CHARS]}"
            )

        try:
            return self._parse_result(capability, response.json())
        except (ValueError, CapabilityResponseError) as exc:
            logger.error(
                "Malformed capability response",
                extra={"capability": capability.value, "error": str(exc)},
            )
            return StageResult.permanent(
                f"Malformed {capability.value} response: {exc}"
            )

    def _parse_result(self, capability: Capability, data: Any) -> StageResult:
        if not isinstance(data, dict):
            raise CapabilityResponseError(capability, "response is not an object")

        try:
            outcome = StageOutcome(data.get("outcome"))
        except ValueError as exc:
            raise CapabilityResponseError(
                capability, f"unknown outcome {data.get('outcome')!r}"
            ) from exc

        reason = data.get("reason") or f"{capability.value} reported {outcome.value}"

        if outcome == StageOutcome.PERMANENT_FAILURE:
            return StageResult.permanent(reason)

        if outcome == StageOutcome.TRANSIENT_FAILURE:
            try:
                failure_class = FailureClass(data.get("failure_class") or "error")
            except ValueError:
                failure_class = FailureClass.ERROR
            return StageResult.transient(reason, failure_class)

        try:
            payload = PAYLOAD_MODELS[capability].model_validate(data.get("payload") or {})
        except ValidationError as exc:
            raise CapabilityResponseError(capability, f"invalid payload: {exc}") from exc
        return StageResult.success(payload)


class RemoteAnalyzer:
    cancellable = True

    def __init__(self, client: RemoteCapabilityClient):
        self.client = client

    async def analyze(self, task: Task, workspace: Workspace) -> StageResult:
        return await self.client.call(Capability.ANALYZER, task, workspace)


class RemoteResolver:
    cancellable = True

    def __init__(self, client: RemoteCapabilityClient):
        self.client = client

    async def resolve(
        self,
        task: Task,
        workspace: Workspace,
        analysis: Optional[AnalysisOutcome],
        feedback: Optional[ReviewVerdict] = None,
    ) -> StageResult:
        inputs = {
            "analysis": analysis.model_dump(mode="json") if analysis else None,
            "feedback": feedback.model_dump(mode="json") if feedback else None,
        }
        return await self.client.call(Capability.RESOLVER, task, workspace, inputs)


class RemoteReviewer:
    cancellable = True

    def __init__(self, client: RemoteCapabilityClient):
        self.client = client

    async def review(
        self,
        task: Task,
        workspace: Workspace,
        change_set: Optional[ChangeSet],
    ) -> StageResult:
        inputs = {"change_set": change_set.model_dump(mode="json") if change_set else None}
        return await self.client.call(Capability.REVIEWER, task, workspace, inputs)


class RemoteIntegrator:
    cancellable = True

    def __init__(self, client: RemoteCapabilityClient):
        self.client = client

    async def integrate(
        self,
        task: Task,
        workspace: Workspace,
        change_set: Optional[ChangeSet],
    ) -> StageResult:
        inputs = {"change_set": change_set.model_dump(mode="json") if change_set else None}
        return await self.client.call(Capability.INTEGRATOR, task, workspace, inputs)
