"""Task state machine and persistence.

Tasks progress through:
- queued → analyzing → resolving → reviewing → integrating → completed

with escalated and aborted as the other terminal states. State is
persisted in memory or in PostgreSQL with optimistic locking.
"""

from src.workflow.state.models import (
    NEXT_STATE,
    STAGE_STATES,
    VALID_TRANSITIONS,
    HistoryEntry,
    HistoryReplayError,
    SubmissionAck,
    Task,
    TaskResult,
    TaskState,
    TaskStatus,
    WorkspaceHandle,
    is_terminal_state,
    is_valid_transition,
    replay_state,
)
from src.workflow.state.machine import (
    DuplicateTaskError,
    InvalidTransitionError,
    TaskNotFoundError,
    TaskRepository,
    TaskStateMachine,
    VersionConflictError,
)
from src.workflow.state.repository import (
    DatabaseError,
    InMemoryTaskRepository,
    PostgresTaskRepository,
)

__all__ = [
    # Models
    "HistoryEntry",
    "HistoryReplayError",
    "NEXT_STATE",
    "STAGE_STATES",
    "SubmissionAck",
    "Task",
    "TaskResult",
    "TaskState",
    "TaskStatus",
    "VALID_TRANSITIONS",
    "WorkspaceHandle",
    "is_terminal_state",
    "is_valid_transition",
    "replay_state",
    # State machine
    "DuplicateTaskError",
    "InvalidTransitionError",
    "TaskNotFoundError",
    "TaskRepository",
    "TaskStateMachine",
    "VersionConflictError",
    # Repositories
    "DatabaseError",
    "InMemoryTaskRepository",
    "PostgresTaskRepository",
]
