"""Task state machine implementation.

The TaskStateMachine owns every mutation of a Task: creation, admission,
and appending history entries. It validates transitions against
VALID_TRANSITIONS, keeps the history append-only, and persists every
change with optimistic locking through a TaskRepository before returning,
so an entry is durable before the orchestrator starts the next
capability call.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Protocol, runtime_checkable

from src.workflow.state.models import (
    HistoryEntry,
    Task,
    TaskResult,
    TaskState,
    WorkspaceHandle,
    is_terminal_state,
    is_valid_transition,
)


logger = logging.getLogger(__name__)


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted.

    Attributes:
        from_state: The current state.
        to_state: The attempted target state.
        message: Human-readable error message.
    """

    def __init__(
        self,
        from_state: TaskState,
        to_state: TaskState,
        message: Optional[str] = None,
    ):
        self.from_state = from_state
        self.to_state = to_state
        self.message = message or (
            f"Invalid transition from {from_state.value} to {to_state.value}"
        )
        super().__init__(self.message)


class TaskNotFoundError(Exception):
    """Raised when a task id is unknown."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class DuplicateTaskError(Exception):
    """Raised when creating a task whose id already exists."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task already exists: {task_id}")


class VersionConflictError(Exception):
    """Raised when optimistic locking detects a concurrent update.

    Attributes:
        task_id: The task with the conflict.
        expected_version: The version that was expected.
    """

    def __init__(self, task_id: str, expected_version: int):
        self.task_id = task_id
        self.expected_version = expected_version
        super().__init__(
            f"Version conflict for task {task_id}: expected {expected_version}"
        )


@runtime_checkable
class TaskRepository(Protocol):
    """Protocol defining the interface for task persistence.

    Implementations live in repository.py (in-memory and PostgreSQL).
    """

    async def save(self, task: Task) -> None:
        """Persist a new task. Raises if the task id already exists."""
        ...

    async def get(self, task_id: str) -> Optional[Task]:
        """Get a task by id, or None if unknown."""
        ...

    async def list_by_state(self, state: TaskState) -> List[Task]:
        """List all tasks currently in the given state."""
        ...

    async def update_with_version(self, task: Task) -> bool:
        """Update a task only if the stored version is ``task.version - 1``.

        Returns:
            True if the update succeeded, False on version conflict.
        """
        ...


class TaskStateMachine:
    """State machine for managing task progression.

    The state machine enforces the following invariants:
    - Only valid transitions (as defined in VALID_TRANSITIONS) are allowed
    - History is append-only; each entry must start at the current state
    - Nothing is appended once a task is terminal
    - Each update increments the version for optimistic locking

    Example:
        >>> machine = TaskStateMachine(InMemoryTaskRepository())
        >>> task = await machine.create("owner/repo#123")
        >>> task = await machine.admit(task.task_id, handle)
        >>> task.current_state
        <TaskState.ANALYZING: 'analyzing'>
    """

    def __init__(self, repository: TaskRepository):
        self.repository = repository

    async def create(
        self,
        source_ref: str,
        title: Optional[str] = None,
        priority: int = 0,
        task_id: Optional[str] = None,
    ) -> Task:
        """Create and persist a new task in the QUEUED state.

        Raises:
            ValueError: If source_ref is empty.
            DuplicateTaskError: If task_id is already in use.
        """
        if not source_ref or not source_ref.strip():
            raise ValueError("source_ref cannot be empty")

        if task_id is not None and await self.repository.get(task_id) is not None:
            raise DuplicateTaskError(task_id)

        now = datetime.now(timezone.utc)
        fields = {
            "source_ref": source_ref,
            "title": title,
            "priority": priority,
            "created_at": now,
            "updated_at": now,
        }
        if task_id is not None:
            fields["task_id"] = task_id
        task = Task(**fields)

        logger.info(
            "Creating task",
            extra={
                "task_id": task.task_id,
                "source_ref": source_ref,
                "priority": priority,
            },
        )

        await self.repository.save(task)
        return task

    async def admit(self, task_id: str, workspace: WorkspaceHandle) -> Task:
        """Move a queued task into ANALYZING with its leased workspace.

        Admission is not recorded as a history entry; ``admitted_at`` marks it.

        Raises:
            TaskNotFoundError: If the task doesn't exist.
            InvalidTransitionError: If the task is not QUEUED.
            VersionConflictError: If a concurrent update occurred.
        """
        task = await self.require(task_id)

        if task.current_state != TaskState.QUEUED:
            raise InvalidTransitionError(task.current_state, TaskState.ANALYZING)

        now = datetime.now(timezone.utc)
        updated = task.model_copy(
            update={
                "current_state": TaskState.ANALYZING,
                "workspace": workspace,
                "admitted_at": now,
                "updated_at": now,
                "version": task.version + 1,
            }
        )

        logger.info(
            "Admitting task",
            extra={
                "task_id": task_id,
                "workspace": workspace.path,
                "branch": workspace.branch,
            },
        )

        await self._persist(task, updated)
        return updated

    async def record(self, task_id: str, entry: HistoryEntry) -> Task:
        """Append a non-terminal history entry and move to its target state.

        Raises:
            TaskNotFoundError: If the task doesn't exist.
            InvalidTransitionError: If the entry does not start at the
                current state, is not a valid transition, or targets a
                terminal state (use finish() for those).
            VersionConflictError: If a concurrent update occurred.
        """
        if is_terminal_state(entry.to_state):
            raise InvalidTransitionError(
                entry.from_state,
                entry.to_state,
                "Terminal transitions must be recorded with finish()",
            )
        return await self._append(task_id, entry, result=None)

    async def finish(
        self,
        task_id: str,
        entry: HistoryEntry,
        result: TaskResult,
    ) -> Task:
        """Append the terminal history entry together with the final result.

        Raises:
            InvalidTransitionError: If the entry does not target a terminal
                state, or result.final_state disagrees with it.
        """
        if not is_terminal_state(entry.to_state):
            raise InvalidTransitionError(
                entry.from_state,
                entry.to_state,
                f"{entry.to_state.value} is not a terminal state",
            )
        if result.final_state != entry.to_state:
            raise InvalidTransitionError(
                entry.from_state,
                entry.to_state,
                f"Result state {result.final_state.value} does not match "
                f"entry target {entry.to_state.value}",
            )
        return await self._append(task_id, entry, result=result)

    async def get(self, task_id: str) -> Optional[Task]:
        return await self.repository.get(task_id)

    async def require(self, task_id: str) -> Task:
        """Get a task, raising TaskNotFoundError if it is unknown."""
        task = await self.repository.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def list_by_state(self, state: TaskState) -> List[Task]:
        return await self.repository.list_by_state(state)

    async def _append(
        self,
        task_id: str,
        entry: HistoryEntry,
        result: Optional[TaskResult],
    ) -> Task:
        task = await self.require(task_id)
        from_state = task.current_state

        if entry.from_state != from_state or not is_valid_transition(
            from_state, entry.to_state
        ):
            logger.warning(
                "Invalid state transition attempted",
                extra={
                    "task_id": task_id,
                    "current_state": from_state.value,
                    "from_state": entry.from_state.value,
                    "to_state": entry.to_state.value,
                },
            )
            raise InvalidTransitionError(from_state, entry.to_state)

        update = {
            "current_state": entry.to_state,
            "history": task.history + [entry],
            "updated_at": entry.timestamp,
            "version": task.version + 1,
        }
        if result is not None:
            update["result"] = result
        updated = task.model_copy(update=update)

        logger.info(
            "Recording task transition",
            extra={
                "task_id": task_id,
                "from_state": from_state.value,
                "to_state": entry.to_state.value,
                "outcome": entry.outcome.value if entry.outcome else None,
                "attempt": entry.attempt,
                "version": updated.version,
            },
        )

        await self._persist(task, updated)
        return updated

    async def _persist(self, current: Task, updated: Task) -> None:
        success = await self.repository.update_with_version(updated)
        if not success:
            raise VersionConflictError(current.task_id, current.version)
