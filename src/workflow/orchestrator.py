"""Workflow orchestrator driving tasks through the issue-resolution pipeline.

Drives each admitted task through:
analyzing → resolving → reviewing → integrating → completed

Every stage is one capability call guarded by the capability's circuit
breaker, bounded by a stage timeout and the task's overall deadline, and
charged against a per-stage retry budget. The orchestrator reads only a
StageResult's outcome tag and its payload's ``advances`` flag to decide
the next state, appends exactly one history entry per result, and
persists it before starting the next call.

Terminal handling:
- completed: the workspace is destroyed after the state is persisted
- escalated: a human takes over; the workspace is parked
- aborted: cancelled or faulted; the workspace is parked

Each task owns its workspace for its whole life and releases it exactly
once. The orchestrator delegates all work to injected dependencies and
uses the event emitter for observability.
"""

import asyncio
import logging
import random
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel

from src.workflow.capabilities.interfaces import (
    STAGE_CAPABILITIES,
    Capability,
    CapabilitySet,
    is_cancellable,
)
from src.workflow.capabilities.models import (
    AnalysisOutcome,
    ChangeSet,
    FailureClass,
    IntegrationReference,
    ReviewVerdict,
    StageResult,
)
from src.workflow.events.emitter import EventEmitter
from src.workflow.events.models import EventType, WorkflowEvent
from src.workflow.recovery.circuit_breaker import CircuitBreakerRegistry, CircuitState
from src.workflow.recovery.retry import RetryPolicy
from src.workflow.state.machine import TaskStateMachine
from src.workflow.state.models import (
    NEXT_STATE,
    HistoryEntry,
    SubmissionAck,
    Task,
    TaskResult,
    TaskState,
    TaskStatus,
    WorkspaceHandle,
    is_terminal_state,
)
from src.workflow.workspace.manager import (
    ResourceExhaustedError,
    Workspace,
    WorkspaceCreationError,
    WorkspaceDisposition,
    WorkspaceManager,
)

logger = logging.getLogger(__name__)

DEFAULT_STAGE_TIMEOUTS: Dict[Capability, float] = {
    Capability.ANALYZER: 300.0,
    Capability.RESOLVER: 1800.0,
    Capability.REVIEWER: 600.0,
    Capability.INTEGRATOR: 300.0,
}


class CapabilityContractError(Exception):
    """Raised when a capability breaks its contract (wrong return type, self-cancel)."""

    def __init__(self, capability: Capability, message: str):
        self.capability = capability
        super().__init__(f"{capability.value}: {message}")


@dataclass(frozen=True)
class OrchestratorConfig:
    """Orchestration limits.

    Attributes:
        task_deadline_seconds: Time from admission after which a task escalates.
        max_rework_cycles: Blocking reviews that may send a task back to resolving.
        stage_timeouts: Per-capability call timeouts.
        unhealthy_success_rate: Success rate below which health is unhealthy.
        degraded_success_rate: Success rate below which health is degraded.
        max_error_count: Aborted tasks above which health is unhealthy.
        degraded_average_duration_seconds: Average task duration above which
            health is degraded.
    """

    task_deadline_seconds: float = 3600.0
    max_rework_cycles: int = 2
    stage_timeouts: Mapping[Capability, float] = field(
        default_factory=lambda: dict(DEFAULT_STAGE_TIMEOUTS)
    )
    unhealthy_success_rate: float = 0.7
    degraded_success_rate: float = 0.9
    max_error_count: int = 10
    degraded_average_duration_seconds: float = 1800.0

    def stage_timeout(self, capability: Capability) -> float:
        return self.stage_timeouts.get(capability, DEFAULT_STAGE_TIMEOUTS[capability])


@dataclass
class OrchestratorStats:
    """Running totals since the orchestrator started."""

    submitted: int = 0
    completed: int = 0
    escalated: int = 0
    aborted: int = 0
    total_duration_seconds: float = 0.0
    failure_reasons: Dict[str, int] = field(default_factory=dict)

    @property
    def finished(self) -> int:
        return self.completed + self.escalated + self.aborted

    @property
    def success_rate(self) -> float:
        if self.finished == 0:
            return 1.0
        return self.completed / self.finished

    @property
    def average_duration_seconds(self) -> float:
        if self.finished == 0:
            return 0.0
        return self.total_duration_seconds / self.finished


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class HealthReport(BaseModel):
    """Orchestrator health summary served by the /health endpoint."""

    status: HealthStatus
    active_tasks: int
    success_rate: float
    average_duration_seconds: float
    completed: int
    escalated: int
    aborted: int
    human_interventions: int
    open_circuits: List[str]
    open_workspaces: int


@dataclass
class _TaskRun:
    """In-flight bookkeeping for one admitted task."""

    task: Task
    workspace: Workspace
    started_at: float
    deadline: float
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    cancel_reason: Optional[str] = None
    runner: Optional[asyncio.Task] = None
    analysis: Optional[AnalysisOutcome] = None
    change_set: Optional[ChangeSet] = None
    feedback: Optional[ReviewVerdict] = None
    integration: Optional[IntegrationReference] = None
    rework_cycles: int = 0
    total_attempts: int = 0
    released: bool = False

    @property
    def task_id(self) -> str:
        return self.task.task_id

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()

    def request_cancel(self, reason: str) -> None:
        if not self.cancel_event.is_set():
            self.cancel_reason = reason
            self.cancel_event.set()


class WorkflowOrchestrator:
    """Drives tasks through the four-stage pipeline.

    Construct one instance at startup and hand it to the TaskScheduler.

    Attributes:
        capabilities: Analyzer, resolver, reviewer and integrator.
        workspace_manager: Leases per-task workspaces.
        state_machine: Validates and persists task transitions.
        breakers: One circuit breaker per capability.
        retry_policies: Retry policy per capability.
        event_emitter: Emits workflow events for observability.
        config: Orchestration limits.
    """

    def __init__(
        self,
        capabilities: CapabilitySet,
        workspace_manager: WorkspaceManager,
        state_machine: TaskStateMachine,
        breakers: CircuitBreakerRegistry,
        retry_policies: Mapping[Capability, RetryPolicy],
        event_emitter: EventEmitter,
        config: Optional[OrchestratorConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        self.capabilities = capabilities
        self.workspace_manager = workspace_manager
        self.state_machine = state_machine
        self.breakers = breakers
        self.retry_policies = dict(retry_policies)
        self.event_emitter = event_emitter
        self.config = config or OrchestratorConfig()
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()
        self._runs: Dict[str, _TaskRun] = {}
        self._task_locks: Dict[str, asyncio.Lock] = {}
        self._lock_holders: Dict[str, int] = {}
        self._stats = OrchestratorStats()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit(
        self,
        source_ref: str,
        title: Optional[str] = None,
        priority: int = 0,
        task_id: Optional[str] = None,
    ) -> SubmissionAck:
        """Create a QUEUED task.

        The task runs once the scheduler admits it.

        Raises:
            ValueError: If source_ref is empty.
            DuplicateTaskError: If task_id is already in use.
        """
        task = await self.state_machine.create(
            source_ref, title=title, priority=priority, task_id=task_id
        )
        self._stats.submitted += 1

        await self._safe_emit(
            WorkflowEvent(
                event_type=EventType.STATE_TRANSITION,
                task_id=task.task_id,
                source_ref=task.source_ref,
                details={
                    "from_state": "created",
                    "to_state": TaskState.QUEUED.value,
                    "reason": "submitted",
                },
            )
        )

        return SubmissionAck(
            task_id=task.task_id,
            source_ref=task.source_ref,
            priority=task.priority,
            state=task.current_state,
            submitted_at=task.created_at,
        )

    async def admit(self, task_id: str) -> Optional[asyncio.Task]:
        """Acquire a workspace for a queued task and start running it.

        Returns:
            The asyncio task running the pipeline, or None when the task
            is no longer queued or its workspace could not be created
            (the task is then aborted).

        Raises:
            ResourceExhaustedError: If the workspace cap is reached; the
                task stays QUEUED.
            TaskNotFoundError: If the task id is unknown.
        """
        async with self._task_lock(task_id):
            task = await self.state_machine.require(task_id)
            if task.current_state != TaskState.QUEUED:
                logger.info(
                    "Skipping admission of task that is no longer queued",
                    extra={"task_id": task_id, "state": task.current_state.value},
                )
                return None

            try:
                workspace = await self.workspace_manager.acquire(
                    task_id, lease_owner=f"orchestrator:{id(self)}"
                )
            except ResourceExhaustedError:
                raise
            except WorkspaceCreationError as exc:
                await self._abort_unadmitted(task, exc)
                return None

            try:
                task = await self.state_machine.admit(
                    task_id,
                    WorkspaceHandle(
                        workspace_id=workspace.workspace_id,
                        path=str(workspace.path),
                        branch=workspace.branch,
                        attempt=workspace.attempt,
                    ),
                )
            except Exception:
                await self.workspace_manager.release(
                    workspace, WorkspaceDisposition.KEEP
                )
                raise

            now = self._clock()
            run = _TaskRun(
                task=task,
                workspace=workspace,
                started_at=now,
                deadline=now + self.config.task_deadline_seconds,
            )
            self._runs[task_id] = run

        await self._emit_transition(
            task, TaskState.QUEUED, TaskState.ANALYZING, reason="admitted"
        )
        run.runner = asyncio.create_task(
            self._run_pipeline(run), name=f"workflow-task-{task_id}"
        )
        return run.runner

    async def status(self, task_id: str) -> TaskStatus:
        """Current state and full history of a task.

        Raises:
            TaskNotFoundError: If the task id is unknown.
        """
        task = await self.state_machine.require(task_id)
        return TaskStatus.from_task(task)

    async def cancel(self, task_id: str, reason: str = "cancel requested") -> bool:
        """Request cancellation of a task.

        Queued tasks abort immediately. Running tasks abort at the next
        safe point: cancellable capability calls are interrupted, others
        are allowed to return first. The workspace is parked.

        Returns:
            True if cancellation was requested, False if the task is
            already terminal.

        Raises:
            TaskNotFoundError: If the task id is unknown.
        """
        run = self._runs.get(task_id)
        if run is not None:
            run.request_cancel(reason)
            logger.info(
                "Cancellation requested",
                extra={"task_id": task_id, "reason": reason},
            )
            return True

        async with self._task_lock(task_id):
            task = await self.state_machine.require(task_id)
            if task.is_terminal:
                return False

            run = self._runs.get(task_id)
            if run is not None:
                run.request_cancel(reason)
                return True

            entry = HistoryEntry(
                from_state=task.current_state,
                to_state=TaskState.ABORTED,
                reason=reason,
                details={"cancelled": True},
            )
            result = TaskResult(final_state=TaskState.ABORTED, reason=reason)
            task = await self._complete(task, entry, result, category="cancelled")
            await self._emit_cancellation(task, entry)
            return True

    async def wait(self, task_id: str) -> Optional[TaskResult]:
        """Wait for a running task to finish and return its result.

        Returns None for a task that is still queued.
        """
        run = self._runs.get(task_id)
        if run is not None and run.runner is not None:
            await asyncio.shield(run.runner)
        task = await self.state_machine.require(task_id)
        return task.result

    def active_tasks(self) -> List[TaskStatus]:
        return [TaskStatus.from_task(run.task) for run in self._runs.values()]

    def stats(self) -> OrchestratorStats:
        return OrchestratorStats(
            submitted=self._stats.submitted,
            completed=self._stats.completed,
            escalated=self._stats.escalated,
            aborted=self._stats.aborted,
            total_duration_seconds=self._stats.total_duration_seconds,
            failure_reasons=dict(self._stats.failure_reasons),
        )

    def health(self) -> HealthReport:
        stats = self._stats
        open_circuits = self.breakers.open_circuits()

        status = HealthStatus.HEALTHY
        if (
            stats.success_rate < self.config.unhealthy_success_rate
            or stats.aborted > self.config.max_error_count
        ):
            status = HealthStatus.UNHEALTHY
        elif (
            stats.success_rate < self.config.degraded_success_rate
            or stats.average_duration_seconds > self.config.degraded_average_duration_seconds
            or open_circuits
        ):
            status = HealthStatus.DEGRADED

        return HealthReport(
            status=status,
            active_tasks=len(self._runs),
            success_rate=stats.success_rate,
            average_duration_seconds=stats.average_duration_seconds,
            completed=stats.completed,
            escalated=stats.escalated,
            aborted=stats.aborted,
            human_interventions=stats.escalated,
            open_circuits=open_circuits,
            open_workspaces=self.workspace_manager.open_count,
        )

    async def shutdown(self, reason: str = "orchestrator shutting down") -> None:
        """Cancel every running task and wait for them to finish."""
        runs = list(self._runs.values())
        for run in runs:
            run.request_cancel(reason)
        runners = [run.runner for run in runs if run.runner is not None]
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run_pipeline(self, run: _TaskRun) -> Optional[TaskResult]:
        """Run stages until the task is terminal, then release the workspace."""
        try:
            while not run.task.is_terminal:
                await self._run_stage(run)
        except asyncio.CancelledError:
            await self._abort_quietly(run, "task runner cancelled", category="cancelled")
            raise
        except Exception as exc:
            logger.exception(
                "Unexpected fault while running task",
                extra={
                    "task_id": run.task_id,
                    "state": run.task.current_state.value,
                },
            )
            await self._abort_on_fault(run, exc)
        finally:
            await self._release_workspace(run)
            self._runs.pop(run.task_id, None)
            if run.task_id not in self._lock_holders:
                self._task_locks.pop(run.task_id, None)

        return run.task.result

    async def _run_stage(self, run: _TaskRun) -> None:
        """Execute the current stage until it leaves its state."""
        state = run.task.current_state
        capability = STAGE_CAPABILITIES[state]
        policy = self.retry_policies.get(capability) or RetryPolicy()
        budget = policy.new_budget()

        while run.task.current_state == state:
            attempt = budget.attempts + 1

            if run.cancel_requested:
                await self._finish_cancelled(run)
                return

            remaining = run.deadline - self._clock()
            if remaining <= 0:
                await self._finish_deadline(run)
                return

            result, cancelled = await self._attempt(run, capability, remaining)
            if cancelled:
                await self._finish_cancelled(run, late_result=result)
                return

            run.total_attempts += 1
            now = self._clock()
            delay = budget.charge(result, now, self._rng)
            self._keep_payload(run, capability, result)
            to_state, reason, category = self._decide_transition(
                run, state, result, delay, now, budget.attempts
            )

            entry = HistoryEntry(
                from_state=state,
                to_state=to_state,
                outcome=result.outcome,
                attempt=attempt,
                failure_class=result.failure_class,
                reason=reason,
                details=self._entry_details(capability, result),
            )

            if is_terminal_state(to_state):
                await self._finish(run, entry, category=category)
                return

            await self._record(run, entry)

            if to_state == state:
                await self._safe_emit(
                    WorkflowEvent(
                        event_type=EventType.STAGE_RETRY,
                        task_id=run.task_id,
                        source_ref=run.task.source_ref,
                        details={
                            "stage": state.value,
                            "attempt": attempt,
                            "failure_class": (result.failure_class or FailureClass.ERROR).value,
                            "delay_seconds": delay,
                            "reason": result.reason,
                        },
                    )
                )
                await self._pause(run, delay or 0.0)

    def _decide_transition(
        self,
        run: _TaskRun,
        state: TaskState,
        result: StageResult,
        delay: Optional[float],
        now: float,
        attempts: int,
    ) -> Tuple[TaskState, Optional[str], Optional[str]]:
        """Pick the next state for a stage result.

        Returns:
            Tuple of (next state, reason, failure category for stats).
        """
        if result.is_success:
            if result.advances:
                return NEXT_STATE[state], None, None
            if state == TaskState.ANALYZING:
                return (
                    TaskState.ESCALATED,
                    "analysis judged the task infeasible",
                    "infeasible",
                )
            if state == TaskState.REVIEWING:
                if run.rework_cycles < self.config.max_rework_cycles:
                    run.rework_cycles += 1
                    return (
                        TaskState.RESOLVING,
                        f"review found blocking issues (rework {run.rework_cycles}"
                        f"/{self.config.max_rework_cycles})",
                        None,
                    )
                return (
                    TaskState.ESCALATED,
                    f"review still blocking after {run.rework_cycles} rework cycles",
                    "review_blocked",
                )
            return NEXT_STATE[state], None, None

        if result.is_permanent:
            return TaskState.ESCALATED, result.reason, f"{state.value}:permanent_failure"

        if delay is None:
            return (
                TaskState.ESCALATED,
                f"retry budget exhausted after {attempts} attempts: {result.reason}",
                f"{state.value}:retries_exhausted",
            )
        if now + delay >= run.deadline:
            return (
                TaskState.ESCALATED,
                f"task deadline exceeded before retry: {result.reason}",
                "deadline",
            )
        return state, result.reason, None

    async def _attempt(
        self,
        run: _TaskRun,
        capability: Capability,
        remaining: float,
    ) -> Tuple[Optional[StageResult], bool]:
        """Make one guarded capability call.

        Returns:
            Tuple of (result, cancelled). The result is None only when a
            cancellable call was interrupted by a cancel request.
        """
        breaker = self.breakers.get(capability.value)
        before = breaker.state

        if not breaker.allow():
            logger.warning(
                "Circuit open, rejecting capability call",
                extra={"task_id": run.task_id, "capability": capability.value},
            )
            return (
                StageResult.transient(
                    f"circuit open for {capability.value}",
                    FailureClass.CIRCUIT_OPEN,
                ),
                False,
            )

        probe = before != CircuitState.CLOSED
        implementation = self.capabilities.get(capability)
        cancellable = is_cancellable(implementation)
        timeout = min(self.config.stage_timeout(capability), remaining)

        call = asyncio.create_task(self._call_capability(run, capability, implementation))
        cancel_wait = asyncio.create_task(run.cancel_event.wait())
        timed_out = False
        cancelled = False
        try:
            done, _ = await asyncio.wait(
                {call, cancel_wait},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if call not in done:
                if cancel_wait in done:
                    cancelled = True
                else:
                    timed_out = True
                await self._settle_call(run, capability, call, cancellable)
        except asyncio.CancelledError:
            await self._settle_call(run, capability, call, cancellable)
            if probe:
                breaker.abandon_probe()
            raise
        finally:
            cancel_wait.cancel()

        if cancelled and call.cancelled():
            if probe:
                breaker.abandon_probe()
            await self._emit_circuit_change(run, capability, before)
            return None, True

        if timed_out:
            if not call.cancelled() and call.exception() is not None:
                logger.warning(
                    "Capability call failed after its timeout",
                    extra={
                        "task_id": run.task_id,
                        "capability": capability.value,
                        "error": str(call.exception()),
                    },
                )
            result = StageResult.transient(
                f"{capability.value} exceeded its {timeout:.1f}s stage timeout",
                FailureClass.TIMEOUT,
            )
            await self._safe_emit(
                WorkflowEvent(
                    event_type=EventType.TIMEOUT,
                    task_id=run.task_id,
                    source_ref=run.task.source_ref,
                    details={
                        "stage": run.task.current_state.value,
                        "capability": capability.value,
                        "timeout_seconds": timeout,
                    },
                )
            )
        else:
            try:
                if call.cancelled():
                    raise CapabilityContractError(capability, "call cancelled itself")
                result = call.result()
                if not isinstance(result, StageResult):
                    raise CapabilityContractError(
                        capability,
                        f"returned {type(result).__name__} instead of StageResult",
                    )
            except Exception as exc:
                breaker.record_fault(exc)
                await self._emit_circuit_change(run, capability, before)
                raise

        breaker.record(result)
        await self._emit_circuit_change(run, capability, before)
        return result, cancelled

    async def _call_capability(
        self,
        run: _TaskRun,
        capability: Capability,
        implementation: Any,
    ) -> StageResult:
        task, workspace = run.task, run.workspace
        if capability == Capability.ANALYZER:
            return await implementation.analyze(task, workspace)
        if capability == Capability.RESOLVER:
            return await implementation.resolve(task, workspace, run.analysis, run.feedback)
        if capability == Capability.REVIEWER:
            return await implementation.review(task, workspace, run.change_set)
        return await implementation.integrate(task, workspace, run.change_set)

    async def _settle_call(
        self,
        run: _TaskRun,
        capability: Capability,
        call: asyncio.Task,
        cancellable: bool,
    ) -> None:
        """Stop or wait out an abandoned call so it no longer touches the workspace."""
        if cancellable:
            call.cancel()
        else:
            logger.warning(
                "Waiting for non-cancellable capability call to return",
                extra={"task_id": run.task_id, "capability": capability.value},
            )
        await asyncio.wait({call})

    async def _pause(self, run: _TaskRun, delay: float) -> None:
        """Back off before a retry; a cancel request ends the pause early."""
        if delay <= 0:
            return
        sleeper = asyncio.create_task(self._sleep(delay))
        cancel_wait = asyncio.create_task(run.cancel_event.wait())
        try:
            await asyncio.wait(
                {sleeper, cancel_wait}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            sleeper.cancel()
            cancel_wait.cancel()

    def _keep_payload(
        self,
        run: _TaskRun,
        capability: Capability,
        result: StageResult,
    ) -> None:
        """Carry successful payloads forward to later stages."""
        if not result.is_success or result.payload is None:
            return
        payload = result.payload
        if capability == Capability.ANALYZER and isinstance(payload, AnalysisOutcome):
            run.analysis = payload
        elif capability == Capability.RESOLVER and isinstance(payload, ChangeSet):
            run.change_set = payload
        elif capability == Capability.REVIEWER and isinstance(payload, ReviewVerdict):
            run.feedback = None if payload.approved else payload
        elif capability == Capability.INTEGRATOR and isinstance(payload, IntegrationReference):
            run.integration = payload

    @staticmethod
    def _entry_details(capability: Capability, result: StageResult) -> Dict[str, Any]:
        details: Dict[str, Any] = {"capability": capability.value}
        if result.payload is not None:
            details["payload"] = result.payload.model_dump(mode="json")
        return details

    # ------------------------------------------------------------------
    # Terminal handling
    # ------------------------------------------------------------------

    async def _record(self, run: _TaskRun, entry: HistoryEntry) -> None:
        run.task = await self.state_machine.record(run.task_id, entry)
        await self._emit_transition(
            run.task, entry.from_state, entry.to_state, entry.reason, entry
        )

    async def _finish(
        self,
        run: _TaskRun,
        entry: HistoryEntry,
        category: Optional[str] = None,
        fatal: bool = False,
    ) -> None:
        result = TaskResult(
            final_state=entry.to_state,
            reason=entry.reason,
            requires_human_review=entry.to_state == TaskState.ESCALATED,
            fatal=fatal,
            integration=run.integration if entry.to_state == TaskState.COMPLETED else None,
            duration_seconds=max(0.0, self._clock() - run.started_at),
            total_attempts=run.total_attempts,
        )
        run.task = await self._complete(run.task, entry, result, category)

    async def _finish_cancelled(
        self,
        run: _TaskRun,
        late_result: Optional[StageResult] = None,
    ) -> None:
        details: Dict[str, Any] = {"cancelled": True}
        if late_result is not None:
            details["late_outcome"] = late_result.outcome.value
        entry = HistoryEntry(
            from_state=run.task.current_state,
            to_state=TaskState.ABORTED,
            reason=run.cancel_reason or "cancel requested",
            details=details,
        )
        await self._finish(run, entry, category="cancelled")
        await self._emit_cancellation(run.task, entry)

    async def _finish_deadline(self, run: _TaskRun) -> None:
        entry = HistoryEntry(
            from_state=run.task.current_state,
            to_state=TaskState.ESCALATED,
            failure_class=FailureClass.TIMEOUT,
            reason="task deadline exceeded",
            details={"deadline_seconds": self.config.task_deadline_seconds},
        )
        await self._safe_emit(
            WorkflowEvent(
                event_type=EventType.TIMEOUT,
                task_id=run.task_id,
                source_ref=run.task.source_ref,
                details={
                    "stage": run.task.current_state.value,
                    "timeout_seconds": self.config.task_deadline_seconds,
                    "scope": "task",
                },
            )
        )
        await self._finish(run, entry, category="deadline")

    async def _abort_on_fault(self, run: _TaskRun, exc: Exception) -> None:
        if run.task.is_terminal:
            return
        stage = run.task.current_state
        reason = f"{type(exc).__name__}: {exc}"
        entry = HistoryEntry(
            from_state=stage,
            to_state=TaskState.ABORTED,
            reason=reason,
            details={"fault": type(exc).__name__},
        )
        try:
            await self._finish(run, entry, category=f"fault:{type(exc).__name__}")
        except Exception:
            logger.exception(
                "Failed to record aborted state",
                extra={"task_id": run.task_id},
            )
        await self._emit_error(run.task, stage.value, reason, type(exc).__name__, fatal=False)

    async def _abort_quietly(self, run: _TaskRun, reason: str, category: str) -> None:
        if run.task.is_terminal:
            return
        entry = HistoryEntry(
            from_state=run.task.current_state,
            to_state=TaskState.ABORTED,
            reason=reason,
            details={"cancelled": True},
        )
        try:
            await self._finish(run, entry, category=category)
        except Exception:
            logger.exception(
                "Failed to record aborted state",
                extra={"task_id": run.task_id},
            )

    async def _abort_unadmitted(self, task: Task, exc: WorkspaceCreationError) -> None:
        """Abort a queued task whose workspace could not be created."""
        reason = f"workspace creation failed: {exc}"
        logger.error(
            "Workspace creation failed, aborting task",
            extra={"task_id": task.task_id, "error": str(exc)},
        )
        entry = HistoryEntry(
            from_state=TaskState.QUEUED,
            to_state=TaskState.ABORTED,
            reason=reason,
            details={"fatal": True},
        )
        result = TaskResult(final_state=TaskState.ABORTED, reason=reason, fatal=True)
        task = await self._complete(task, entry, result, category="workspace_creation")
        await self._emit_error(task, "workspace", reason, type(exc).__name__, fatal=True)

    async def _complete(
        self,
        task: Task,
        entry: HistoryEntry,
        result: TaskResult,
        category: Optional[str],
    ) -> Task:
        """Persist the terminal entry, update stats, and emit terminal events."""
        task = await self.state_machine.finish(task.task_id, entry, result)

        final = result.final_state
        if final == TaskState.COMPLETED:
            self._stats.completed += 1
        elif final == TaskState.ESCALATED:
            self._stats.escalated += 1
        else:
            self._stats.aborted += 1
        self._stats.total_duration_seconds += result.duration_seconds
        if category:
            self._stats.failure_reasons[category] = (
                self._stats.failure_reasons.get(category, 0) + 1
            )

        await self._emit_transition(task, entry.from_state, entry.to_state, entry.reason, entry)

        if final == TaskState.ESCALATED:
            await self._safe_emit(
                WorkflowEvent(
                    event_type=EventType.ESCALATION,
                    task_id=task.task_id,
                    source_ref=task.source_ref,
                    details={"from_state": entry.from_state.value, "reason": entry.reason},
                )
            )

        await self._safe_emit(
            WorkflowEvent(
                event_type=EventType.COMPLETION,
                task_id=task.task_id,
                source_ref=task.source_ref,
                details={
                    "final_state": final.value,
                    "duration_seconds": result.duration_seconds,
                    "total_attempts": result.total_attempts,
                },
            )
        )

        logger.info(
            "Task finished",
            extra={
                "task_id": task.task_id,
                "final_state": final.value,
                "reason": result.reason,
                "duration": result.duration_seconds,
            },
        )
        return task

    async def _release_workspace(self, run: _TaskRun) -> None:
        """Release the task's workspace exactly once."""
        if run.released:
            return
        run.released = True

        disposition = (
            WorkspaceDisposition.DESTROY
            if run.task.current_state == TaskState.COMPLETED
            else WorkspaceDisposition.KEEP
        )
        try:
            await self.workspace_manager.release(run.workspace, disposition)
        except Exception:
            logger.exception(
                "Failed to release workspace",
                extra={"task_id": run.task_id, "workspace": str(run.workspace.path)},
            )

    @asynccontextmanager
    async def _task_lock(self, task_id: str):
        """Serialize admit and cancel for one task.

        The lock is dropped once nobody holds or waits on it and the task
        has no running pipeline, so tasks that never run leave nothing behind.
        """
        lock = self._task_locks.setdefault(task_id, asyncio.Lock())
        self._lock_holders[task_id] = self._lock_holders.get(task_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_holders[task_id] - 1
            if remaining:
                self._lock_holders[task_id] = remaining
            else:
                del self._lock_holders[task_id]
                if task_id not in self._runs:
                    self._task_locks.pop(task_id, None)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _emit_transition(
        self,
        task: Task,
        from_state: TaskState,
        to_state: TaskState,
        reason: Optional[str] = None,
        entry: Optional[HistoryEntry] = None,
    ) -> None:
        details: Dict[str, Any] = {
            "from_state": from_state.value,
            "to_state": to_state.value,
            "reason": reason,
        }
        if entry is not None:
            details["attempt"] = entry.attempt
            details["outcome"] = entry.outcome.value if entry.outcome else None
        await self._safe_emit(
            WorkflowEvent(
                event_type=EventType.STATE_TRANSITION,
                task_id=task.task_id,
                source_ref=task.source_ref,
                timestamp=entry.timestamp if entry is not None else task.updated_at,
                details=details,
            )
        )

    async def _emit_cancellation(self, task: Task, entry: HistoryEntry) -> None:
        await self._safe_emit(
            WorkflowEvent(
                event_type=EventType.CANCELLATION,
                task_id=task.task_id,
                source_ref=task.source_ref,
                details={"from_state": entry.from_state.value, "reason": entry.reason},
            )
        )

    async def _emit_error(
        self,
        task: Task,
        stage: str,
        error_message: str,
        error_type: str,
        fatal: bool,
    ) -> None:
        await self._safe_emit(
            WorkflowEvent(
                event_type=EventType.ERROR,
                task_id=task.task_id,
                source_ref=task.source_ref,
                details={
                    "stage": stage,
                    "error_message": error_message,
                    "error_type": error_type,
                    "fatal": fatal,
                },
            )
        )

    async def _emit_circuit_change(
        self,
        run: _TaskRun,
        capability: Capability,
        before: CircuitState,
    ) -> None:
        after = self.breakers.get(capability.value).state
        if after == before:
            return
        await self._safe_emit(
            WorkflowEvent(
                event_type=EventType.CIRCUIT_STATE,
                task_id=run.task_id,
                source_ref=run.task.source_ref,
                details={
                    "capability": capability.value,
                    "from_state": before.value,
                    "to_state": after.value,
                },
            )
        )

    async def _safe_emit(self, event: WorkflowEvent) -> None:
        """Emit an event, logging failures so they never disturb a task."""
        try:
            await self.event_emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit workflow event",
                extra={
                    "event_type": event.event_type.value,
                    "task_id": event.task_id,
                },
            )
