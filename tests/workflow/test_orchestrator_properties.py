"""Property-based tests for the WorkflowOrchestrator.

Generates random capability behaviour and checks the invariants every
task run must satisfy regardless of what the capabilities do.

Testing Configuration:
- Library: Hypothesis (Python)
- Each example runs one or more tasks to a terminal state in a fresh event loop
"""

import asyncio
import random
import tempfile
from pathlib import Path
from typing import List
from unittest.mock import AsyncMock

from hypothesis import given, settings, strategies as st

from src.workflow.capabilities.interfaces import Capability, CapabilitySet
from src.workflow.capabilities.models import FailureClass, StageResult
from src.workflow.events.emitter import NullEventEmitter
from src.workflow.orchestrator import OrchestratorConfig, WorkflowOrchestrator
from src.workflow.recovery.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from src.workflow.recovery.retry import RetryPolicy
from src.workflow.state.machine import TaskStateMachine
from src.workflow.state.models import TaskState, is_terminal_state, replay_state
from src.workflow.state.repository import InMemoryTaskRepository
from src.workflow.workspace.manager import WorkspaceConfig, WorkspaceManager

from workflow_fakes import (
    FakeClock,
    ScriptedCapability,
    approved,
    blocking,
    changes,
    feasible,
    infeasible,
    integrated,
)


# =============================================================================
# Strategies
# =============================================================================

transient_results = st.sampled_from(list(FailureClass)).map(
    lambda failure_class: StageResult.transient(f"{failure_class.value} failure", failure_class)
)
permanent_results = st.just(StageResult.permanent("cannot be done"))
faults = st.just(RuntimeError("capability crashed"))


def stage_script(successes: st.SearchStrategy) -> st.SearchStrategy:
    """A short script of results for one capability."""
    return st.lists(
        st.one_of(successes, transient_results, permanent_results, faults),
        min_size=1,
        max_size=6,
    )


analyzer_scripts = stage_script(st.sampled_from([feasible(), infeasible()]))
resolver_scripts = stage_script(st.just(changes()))
reviewer_scripts = stage_script(st.sampled_from([approved(), blocking()]))
integrator_scripts = stage_script(st.just(integrated()))


def _build(tmp: Path, scripts: List[list], max_rework_cycles: int, max_attempts: int):
    clock = FakeClock()
    capabilities = CapabilitySet(
        analyzer=ScriptedCapability(*scripts[0]),
        resolver=ScriptedCapability(*scripts[1]),
        reviewer=ScriptedCapability(*scripts[2]),
        integrator=ScriptedCapability(*scripts[3]),
    )
    orchestrator = WorkflowOrchestrator(
        capabilities=capabilities,
        workspace_manager=WorkspaceManager(WorkspaceConfig(base_path=tmp, max_open=2)),
        state_machine=TaskStateMachine(InMemoryTaskRepository()),
        breakers=CircuitBreakerRegistry(
            CircuitBreakerConfig(failure_threshold=3, open_duration_seconds=30), clock=clock
        ),
        retry_policies={
            capability: RetryPolicy(max_attempts=max_attempts)
            for capability in Capability
        },
        event_emitter=NullEventEmitter(),
        config=OrchestratorConfig(max_rework_cycles=max_rework_cycles),
        sleep=clock.sleep,
        clock=clock,
        rng=random.Random(0),
    )
    return orchestrator, capabilities


async def _run_tasks(orchestrator: WorkflowOrchestrator, count: int):
    manager = orchestrator.workspace_manager
    manager.release = AsyncMock(wraps=manager.release)
    statuses = []
    for index in range(count):
        ack = await orchestrator.submit(f"acme/widgets#{index + 1}")
        runner = await orchestrator.admit(ack.task_id)
        if runner is not None:
            await runner
        statuses.append(await orchestrator.status(ack.task_id))
    return statuses


# =============================================================================
# Properties
# =============================================================================


@settings(max_examples=60, deadline=None)
@given(
    analyzer=analyzer_scripts,
    resolver=resolver_scripts,
    reviewer=reviewer_scripts,
    integrator=integrator_scripts,
    max_rework_cycles=st.integers(min_value=0, max_value=2),
    max_attempts=st.integers(min_value=1, max_value=4),
    task_count=st.integers(min_value=1, max_value=3),
)
def test_every_task_reaches_exactly_one_terminal_state(
    analyzer, resolver, reviewer, integrator, max_rework_cycles, max_attempts, task_count
):
    """Whatever capabilities return, each task ends terminal with a replayable history."""
    with tempfile.TemporaryDirectory() as tmp:
        orchestrator, _ = _build(
            Path(tmp), [analyzer, resolver, reviewer, integrator], max_rework_cycles, max_attempts
        )

        statuses = asyncio.run(_run_tasks(orchestrator, task_count))

        for status in statuses:
            assert status.is_terminal
            assert status.history, "admitted tasks always record at least one entry"
            assert is_terminal_state(status.history[-1].to_state)
            assert status.history[-1].to_state == status.current_state
            assert status.result.final_state == status.current_state
            # Only the final entry may target a terminal state
            assert not any(is_terminal_state(e.to_state) for e in status.history[:-1])
            assert replay_state(status.history, admitted=True) == status.current_state
            assert status.result.requires_human_review == (
                status.current_state == TaskState.ESCALATED
            )

        # One release per task, nothing left leased
        manager = orchestrator.workspace_manager
        assert manager.release.await_count == task_count
        assert manager.open_count == 0


@settings(max_examples=60, deadline=None)
@given(
    resolver=resolver_scripts,
    max_attempts=st.integers(min_value=1, max_value=4),
)
def test_permanent_failure_is_the_last_call_of_its_stage(resolver, max_attempts):
    """After a permanent failure, the stage's capability is never called again."""
    with tempfile.TemporaryDirectory() as tmp:
        orchestrator, capabilities = _build(
            Path(tmp), [[feasible()], resolver, [approved()], [integrated()]], 0, max_attempts
        )

        [status] = asyncio.run(_run_tasks(orchestrator, 1))

        calls = capabilities.resolver.call_count
        consumed = [resolver[min(call, len(resolver)) - 1] for call in range(1, calls + 1)]
        permanents = [
            index for index, item in enumerate(consumed)
            if isinstance(item, StageResult) and item.is_permanent
        ]
        if permanents:
            assert permanents[0] == calls - 1
            assert status.current_state == TaskState.ESCALATED
        assert calls <= max_attempts


@settings(max_examples=40, deadline=None)
@given(attempts=st.integers(min_value=1, max_value=5))
def test_transient_failures_never_exceed_attempt_budget(attempts):
    with tempfile.TemporaryDirectory() as tmp:
        orchestrator, capabilities = _build(
            Path(tmp),
            [[feasible()], [StageResult.transient("flaky")], [approved()], [integrated()]],
            0,
            attempts,
        )

        [status] = asyncio.run(_run_tasks(orchestrator, 1))

        assert status.current_state == TaskState.ESCALATED
        resolving = [e for e in status.history if e.from_state == TaskState.RESOLVING]
        # Attempts after the breaker opens are rejected without a call
        assert len(resolving) == attempts
        assert capabilities.resolver.call_count == min(attempts, 3)
