"""Fakes and result factories shared by the workflow tests."""

import asyncio
from pathlib import Path
from typing import Any, Iterable, List

from src.workflow.capabilities.models import (
    AnalysisOutcome,
    ChangeSet,
    IntegrationReference,
    ReviewVerdict,
    StageResult,
)
from src.workflow.events.emitter import EventEmitter
from src.workflow.events.models import EventType, WorkflowEvent
from src.workflow.workspace.backend import DirectoryBackend, WorkspaceBackendError


# ---------------------------------------------------------------------------
# Result factories
# ---------------------------------------------------------------------------


def feasible(summary: str = "null check missing in parser") -> StageResult:
    return StageResult.success(AnalysisOutcome(feasible=True, summary=summary))


def infeasible(summary: str = "needs a product decision") -> StageResult:
    return StageResult.success(AnalysisOutcome(feasible=False, summary=summary))


def changes(*files: str) -> StageResult:
    return StageResult.success(
        ChangeSet(files_changed=list(files) or ["src/parser.py"], summary="add guard")
    )


def approved() -> StageResult:
    return StageResult.success(ReviewVerdict(approved=True, score=92.0))


def blocking(*issues: str) -> StageResult:
    return StageResult.success(
        ReviewVerdict(approved=False, blocking_issues=list(issues) or ["missing test"])
    )


def integrated(number: int = 101) -> StageResult:
    return StageResult.success(
        IntegrationReference(url=f"https://github.com/acme/widgets/pull/{number}", number=number)
    )


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Monotonic clock driven by the test; sleeping advances it."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedCapability:
    """Capability fake that replays a script of results.

    Script items are StageResults, exceptions to raise, or async callables
    receiving the call arguments. The last item repeats once the script
    runs out.
    """

    def __init__(self, *script: Any, cancellable: bool = True):
        self.script = list(script) or [StageResult.success()]
        self.cancellable = cancellable
        self.calls: List[tuple] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def _next(self, *args: Any) -> StageResult:
        self.calls.append(args)
        item = self.script[min(len(self.calls), len(self.script)) - 1]
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return await item(*args)
        return item

    async def analyze(self, task, workspace):
        return await self._next(task, workspace)

    async def resolve(self, task, workspace, analysis, feedback=None):
        return await self._next(task, workspace, analysis, feedback)

    async def review(self, task, workspace, change_set):
        return await self._next(task, workspace, change_set)

    async def integrate(self, task, workspace, change_set):
        return await self._next(task, workspace, change_set)


class RecordingEventEmitter(EventEmitter):
    """Event emitter that keeps every event for assertions."""

    def __init__(self) -> None:
        self.events: List[WorkflowEvent] = []

    async def emit(self, event: WorkflowEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> List[WorkflowEvent]:
        return [event for event in self.events if event.event_type == event_type]


class FailingBackend(DirectoryBackend):
    """Directory backend whose create always fails."""

    async def create(self, path: Path, branch: str, base_revision: str) -> None:
        raise OSError(f"disk full while creating {path}")


class BranchTrackingBackend(DirectoryBackend):
    """Directory backend that also keeps a set of branches, like a repository."""

    def __init__(self, branches: Iterable[str] = ()):
        self.branches = set(branches)

    async def create(self, path: Path, branch: str, base_revision: str) -> None:
        if branch in self.branches:
            raise WorkspaceBackendError(f"Branch {branch} already exists")
        await super().create(path, branch, base_revision)
        self.branches.add(branch)

    async def destroy(self, path: Path, branch: str) -> None:
        await super().destroy(path, branch)
        self.branches.discard(branch)

    async def exists(self, path: Path, branch: str) -> bool:
        return path.exists() or branch in self.branches


class BlockingBackend(DirectoryBackend):
    """Directory backend whose create waits until ``proceed`` is set."""

    def __init__(self):
        self.started = asyncio.Event()
        self.proceed = asyncio.Event()

    async def create(self, path: Path, branch: str, base_revision: str) -> None:
        self.started.set()
        await self.proceed.wait()
        await super().create(path, branch, base_revision)


class HangingProcess:
    """Stand-in for a child process that never finishes on its own."""

    def __init__(self):
        self.returncode = None
        self.communicating = asyncio.Event()
        self.killed = False
        self.reaped = False

    async def communicate(self):
        self.communicating.set()
        await asyncio.Event().wait()

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9

    async def wait(self) -> int:
        self.reaped = True
        return self.returncode
