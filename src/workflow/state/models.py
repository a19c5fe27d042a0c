"""Workflow task state models.

This module defines the data models for the task state machine, including:
- TaskState: Enum of all states a task moves through
- HistoryEntry: Immutable record of one state change and the stage result behind it
- Task: Complete persisted state of a task
- TaskResult: Final outcome stored once a task reaches a terminal state
- VALID_TRANSITIONS: Map defining allowed state transitions

The models use Pydantic for validation, consistent with the rest of the
workflow package (events/models.py, config.py).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from src.workflow.capabilities.models import (
    FailureClass,
    IntegrationReference,
    StageOutcome,
)


class TaskState(str, Enum):
    """States that a workflow task progresses through.

    State Flow:
        queued → analyzing → resolving → reviewing → integrating → completed

    Every working state can retry itself, escalate to a human, or abort.
    Reviewing may send the task back to resolving when the reviewer finds
    blocking issues and rework cycles remain.

    Attributes:
        QUEUED: Submitted, waiting for a scheduler slot and a workspace.
        ANALYZING: Analyzer is judging feasibility.
        RESOLVING: Resolver is producing a change set in the workspace.
        REVIEWING: Reviewer is checking the change set.
        INTEGRATING: Integrator is publishing the change.
        COMPLETED: Change integrated; workspace destroyed.
        ESCALATED: Handed to a human; workspace parked for inspection.
        ABORTED: Cancelled or hit an unrecoverable fault.
    """

    QUEUED = "queued"
    ANALYZING = "analyzing"
    RESOLVING = "resolving"
    REVIEWING = "reviewing"
    INTEGRATING = "integrating"
    COMPLETED = "completed"
    ESCALATED = "escalated"
    ABORTED = "aborted"


# Working states in pipeline order
STAGE_STATES = (
    TaskState.ANALYZING,
    TaskState.RESOLVING,
    TaskState.REVIEWING,
    TaskState.INTEGRATING,
)

# State reached when a stage succeeds and its payload advances
NEXT_STATE: Dict[TaskState, TaskState] = {
    TaskState.ANALYZING: TaskState.RESOLVING,
    TaskState.RESOLVING: TaskState.REVIEWING,
    TaskState.REVIEWING: TaskState.INTEGRATING,
    TaskState.INTEGRATING: TaskState.COMPLETED,
}


class WorkspaceHandle(BaseModel):
    """Summary of the workspace leased to a task, as stored with the task."""

    workspace_id: str
    path: str
    branch: str
    attempt: int = Field(default=1, ge=1)


class HistoryEntry(BaseModel):
    """Record of one state change of a task.

    Entries are appended exactly once per capability result and once for
    each non-stage terminal event (cancel, deadline, fault, workspace
    failure). They are never modified after being appended.

    Attributes:
        from_state: State before the change.
        to_state: State after the change (may equal from_state for retries).
        outcome: Stage outcome that caused the change, None for non-stage events.
        attempt: 1-based attempt number within the stage execution, 0 for
                 non-stage events.
        failure_class: Failure class for transient failures.
        reason: Human-readable reason, set for failures and escalations.
        timestamp: When the entry was appended (UTC).
        details: Additional context (payload summary, fault type, etc.).
    """

    model_config = ConfigDict(frozen=True)

    from_state: TaskState = Field(..., description="State before the change")
    to_state: TaskState = Field(..., description="State after the change")
    outcome: Optional[StageOutcome] = Field(
        default=None,
        description="Stage outcome that triggered the change",
    )
    attempt: int = Field(default=0, ge=0)
    failure_class: Optional[FailureClass] = Field(default=None)
    reason: Optional[str] = Field(default=None)
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the entry was appended (UTC timezone)",
    )
    details: Dict[str, Any] = Field(default_factory=dict)


class TaskResult(BaseModel):
    """Final outcome of a task, stored together with its terminal entry."""

    final_state: TaskState
    reason: Optional[str] = None
    requires_human_review: bool = False
    fatal: bool = Field(
        default=False,
        description="True when the task aborted on a fatal error such as workspace creation failure",
    )
    integration: Optional[IntegrationReference] = None
    duration_seconds: float = Field(default=0.0, ge=0.0)
    total_attempts: int = Field(default=0, ge=0)


class Task(BaseModel):
    """Complete state of a workflow task.

    The task is persisted through a TaskRepository and uses optimistic
    locking via the version field. Once the task is terminal its history
    is frozen.

    Attributes:
        task_id: Unique identifier.
        source_ref: Reference to the originating issue, e.g. "owner/repo#42".
        title: Optional human-readable title.
        priority: Scheduling priority; higher values are admitted first.
        current_state: Current state in the workflow.
        history: Ordered, append-only list of history entries.
        workspace: Workspace leased to the task, once admitted.
        result: Final result, once terminal.
        admitted_at: When the scheduler admitted the task (UTC).
        created_at: When the task was submitted (UTC).
        updated_at: When the task was last persisted (UTC).
        version: Optimistic locking version.
    """

    task_id: str = Field(default_factory=lambda: uuid4().hex, min_length=1)
    source_ref: str = Field(..., min_length=1)
    title: Optional[str] = None
    priority: int = 0
    current_state: TaskState = TaskState.QUEUED
    history: List[HistoryEntry] = Field(default_factory=list)
    workspace: Optional[WorkspaceHandle] = None
    result: Optional[TaskResult] = None
    admitted_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: int = Field(default=1, ge=1)

    @property
    def is_terminal(self) -> bool:
        return is_terminal_state(self.current_state)


class SubmissionAck(BaseModel):
    """Acknowledgement returned when a task is submitted."""

    task_id: str
    source_ref: str
    priority: int = 0
    state: TaskState = TaskState.QUEUED
    submitted_at: datetime


class TaskStatus(BaseModel):
    """Read-only view of a task returned by the orchestrator."""

    task_id: str
    source_ref: str
    title: Optional[str] = None
    current_state: TaskState
    history: List[HistoryEntry]
    workspace: Optional[WorkspaceHandle] = None
    result: Optional[TaskResult] = None
    is_terminal: bool

    @classmethod
    def from_task(cls, task: Task) -> "TaskStatus":
        return cls(
            task_id=task.task_id,
            source_ref=task.source_ref,
            title=task.title,
            current_state=task.current_state,
            history=list(task.history),
            workspace=task.workspace,
            result=task.result,
            is_terminal=task.is_terminal,
        )


# Valid state transitions map
#
# Key design decisions:
# - Every working state may transition to itself (transient retry)
# - Every working state may escalate or abort
# - QUEUED only moves forward through admission, or aborts
# - REVIEWING may loop back to RESOLVING while rework cycles remain
# - COMPLETED, ESCALATED and ABORTED are terminal
VALID_TRANSITIONS: Dict[TaskState, List[TaskState]] = {
    TaskState.QUEUED: [
        TaskState.ANALYZING,
        TaskState.ABORTED,
    ],
    TaskState.ANALYZING: [
        TaskState.ANALYZING,
        TaskState.RESOLVING,
        TaskState.ESCALATED,
        TaskState.ABORTED,
    ],
    TaskState.RESOLVING: [
        TaskState.RESOLVING,
        TaskState.REVIEWING,
        TaskState.ESCALATED,
        TaskState.ABORTED,
    ],
    TaskState.REVIEWING: [
        TaskState.REVIEWING,
        TaskState.INTEGRATING,
        TaskState.RESOLVING,
        TaskState.ESCALATED,
        TaskState.ABORTED,
    ],
    TaskState.INTEGRATING: [
        TaskState.INTEGRATING,
        TaskState.COMPLETED,
        TaskState.ESCALATED,
        TaskState.ABORTED,
    ],
    TaskState.COMPLETED: [],
    TaskState.ESCALATED: [],
    TaskState.ABORTED: [],
}


class HistoryReplayError(ValueError):
    """Raised when a history cannot be replayed from the initial state."""


def is_valid_transition(from_state: TaskState, to_state: TaskState) -> bool:
    """Check if a state transition is valid.

    Example:
        >>> is_valid_transition(TaskState.QUEUED, TaskState.ANALYZING)
        True
        >>> is_valid_transition(TaskState.COMPLETED, TaskState.QUEUED)
        False
    """
    return to_state in VALID_TRANSITIONS.get(from_state, [])


def is_terminal_state(state: TaskState) -> bool:
    """Check if a state is terminal (has no outgoing transitions)."""
    return len(VALID_TRANSITIONS.get(state, [])) == 0


def replay_state(history: List[HistoryEntry], admitted: bool) -> TaskState:
    """Reconstruct the current state of a task from its history.

    Replay starts at QUEUED, moves to ANALYZING if the task was admitted
    (admission is not a history entry), then follows every entry. Each
    entry must start where the previous one ended and follow a valid
    transition.

    Args:
        history: Ordered history entries.
        admitted: Whether the task was admitted by the scheduler.

    Returns:
        The state the task is in after all entries.

    Raises:
        HistoryReplayError: If the history is inconsistent.
    """
    state = TaskState.QUEUED
    if admitted:
        state = TaskState.ANALYZING

    for index, entry in enumerate(history):
        if entry.from_state != state:
            raise HistoryReplayError(
                f"Entry {index} starts at {entry.from_state.value}, "
                f"expected {state.value}"
            )
        if not is_valid_transition(entry.from_state, entry.to_state):
            raise HistoryReplayError(
                f"Entry {index} has invalid transition "
                f"{entry.from_state.value} -> {entry.to_state.value}"
            )
        state = entry.to_state

    return state
