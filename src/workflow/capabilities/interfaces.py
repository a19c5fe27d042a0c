"""Capability interfaces consumed by the orchestrator.

Each pipeline stage calls exactly one capability. Implementations are
opaque: they may call an LLM, run tools, or talk to a remote service.
They must return a StageResult; raising is treated as an unexpected
fault that aborts the task.

An implementation may declare ``cancellable = True`` when cancelling its
coroutine leaves the workspace untouched. For implementations that do
not, the orchestrator waits for the call to return before releasing the
workspace.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol, runtime_checkable

from src.workflow.capabilities.models import (
    AnalysisOutcome,
    ChangeSet,
    ReviewVerdict,
    StageResult,
)
from src.workflow.state.models import Task, TaskState
from src.workflow.workspace.manager import Workspace


class Capability(str, Enum):
    """The four capabilities the pipeline depends on."""

    ANALYZER = "analyzer"
    RESOLVER = "resolver"
    REVIEWER = "reviewer"
    INTEGRATOR = "integrator"


STAGE_CAPABILITIES = {
    TaskState.ANALYZING: Capability.ANALYZER,
    TaskState.RESOLVING: Capability.RESOLVER,
    TaskState.REVIEWING: Capability.REVIEWER,
    TaskState.INTEGRATING: Capability.INTEGRATOR,
}


@runtime_checkable
class Analyzer(Protocol):
    async def analyze(self, task: Task, workspace: Workspace) -> StageResult:
        """Judge whether the task can be resolved automatically."""
        ...


@runtime_checkable
class Resolver(Protocol):
    async def resolve(
        self,
        task: Task,
        workspace: Workspace,
        analysis: Optional[AnalysisOutcome],
        feedback: Optional[ReviewVerdict] = None,
    ) -> StageResult:
        """Produce a change set in the workspace.

        ``feedback`` carries the blocking review verdict on rework cycles.
        """
        ...


@runtime_checkable
class Reviewer(Protocol):
    async def review(
        self,
        task: Task,
        workspace: Workspace,
        change_set: Optional[ChangeSet],
    ) -> StageResult:
        """Review the change set and return a verdict."""
        ...


@runtime_checkable
class Integrator(Protocol):
    async def integrate(
        self,
        task: Task,
        workspace: Workspace,
        change_set: Optional[ChangeSet],
    ) -> StageResult:
        """Publish the change and return a reference to it."""
        ...


@dataclass
class CapabilitySet:
    """The capability implementations used by one orchestrator."""

    analyzer: Analyzer
    resolver: Resolver
    reviewer: Reviewer
    integrator: Integrator

    def get(self, capability: Capability) -> Any:
        return getattr(self, capability.value)


def is_cancellable(implementation: Any) -> bool:
    """Whether cancelling a call to this implementation is safe."""
    return bool(getattr(implementation, "cancellable", False))
