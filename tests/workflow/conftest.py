"""Shared fixtures for workflow tests.

The orchestrator is always exercised against real components (state
machine, in-memory repository, workspace manager on tmp_path, circuit
breakers) with scripted capabilities and a fake clock, so tests never
sleep for real.
"""

import random
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import pytest

from src.workflow.capabilities.interfaces import Capability, CapabilitySet
from src.workflow.orchestrator import OrchestratorConfig, WorkflowOrchestrator
from src.workflow.recovery.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from src.workflow.recovery.retry import RetryPolicy
from src.workflow.state.machine import TaskStateMachine
from src.workflow.state.repository import InMemoryTaskRepository
from src.workflow.workspace.backend import DirectoryBackend
from src.workflow.workspace.manager import WorkspaceConfig, WorkspaceManager

from workflow_fakes import (
    FakeClock,
    RecordingEventEmitter,
    ScriptedCapability,
    approved,
    changes,
    feasible,
    integrated,
)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def events() -> RecordingEventEmitter:
    return RecordingEventEmitter()


@pytest.fixture
def workspace_root(tmp_path: Path) -> Path:
    return tmp_path / "workspaces"


@pytest.fixture
def make_orchestrator(
    clock: FakeClock,
    events: RecordingEventEmitter,
    workspace_root: Path,
) -> Callable[..., WorkflowOrchestrator]:
    """Factory building an orchestrator over real components.

    Capabilities default to the happy path. Retry policies default to
    zero jitter so delays are deterministic.
    """

    def factory(
        analyzer: Optional[Any] = None,
        resolver: Optional[Any] = None,
        reviewer: Optional[Any] = None,
        integrator: Optional[Any] = None,
        max_open: int = 4,
        backend: Optional[Any] = None,
        config: Optional[OrchestratorConfig] = None,
        retry_policies: Optional[Dict[Capability, RetryPolicy]] = None,
        breaker_config: Optional[CircuitBreakerConfig] = None,
    ) -> WorkflowOrchestrator:
        capabilities = CapabilitySet(
            analyzer=analyzer or ScriptedCapability(feasible()),
            resolver=resolver or ScriptedCapability(changes()),
            reviewer=reviewer or ScriptedCapability(approved()),
            integrator=integrator or ScriptedCapability(integrated()),
        )
        policies = {
            capability: RetryPolicy(max_attempts=3, jitter_ratio=0.0)
            for capability in Capability
        }
        policies.update(retry_policies or {})

        return WorkflowOrchestrator(
            capabilities=capabilities,
            workspace_manager=WorkspaceManager(
                WorkspaceConfig(base_path=workspace_root, max_open=max_open),
                backend or DirectoryBackend(),
            ),
            state_machine=TaskStateMachine(InMemoryTaskRepository()),
            breakers=CircuitBreakerRegistry(breaker_config, clock=clock),
            retry_policies=policies,
            event_emitter=events,
            config=config,
            sleep=clock.sleep,
            clock=clock,
            rng=random.Random(7),
        )

    return factory
