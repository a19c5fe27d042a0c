"""Task repositories.

Two implementations of the TaskRepository protocol:
- InMemoryTaskRepository: dict-backed store used for local runs and tests
- PostgresTaskRepository: asyncpg-backed store with connection pooling,
  atomic transactions, optimistic locking, and an append-only history table

The PostgreSQL schema lives in migrations/001_workflow_tasks.sql.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from src.workflow.state.models import (
    HistoryEntry,
    Task,
    TaskResult,
    TaskState,
    WorkspaceHandle,
)


logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Raised when a database operation fails.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.original_error = original_error
        super().__init__(message)


class InMemoryTaskRepository:
    """In-memory task repository with optimistic locking."""

    def __init__(self) -> None:
        self._tasks: Dict[str, Task] = {}

    async def save(self, task: Task) -> None:
        if task.task_id in self._tasks:
            raise DatabaseError(f"Task already exists: {task.task_id}")
        self._tasks[task.task_id] = task

    async def get(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    async def list_by_state(self, state: TaskState) -> List[Task]:
        return [
            task for task in self._tasks.values()
            if task.current_state == state
        ]

    async def list_all(self) -> List[Task]:
        return list(self._tasks.values())

    async def update_with_version(self, task: Task) -> bool:
        existing = self._tasks.get(task.task_id)
        if existing is None:
            return False
        if existing.version != task.version - 1:
            return False
        self._tasks[task.task_id] = task
        return True

    async def health_check(self) -> bool:
        return True


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _load_json(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        return json.loads(value)
    return value


class PostgresTaskRepository:
    """PostgreSQL implementation of the TaskRepository protocol.

    Tasks are stored one row per task in ``workflow_tasks``. History
    entries are stored in ``workflow_task_history`` keyed by
    ``(task_id, sequence)``; updates only ever insert the entries beyond
    the stored count, inside the same transaction as the versioned update.

    Example:
        >>> async with PostgresTaskRepository("postgresql://...") as repo:
        ...     task = await repo.get("3f2a...")
    """

    def __init__(
        self,
        connection_string: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ):
        self.connection_string = connection_string
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool, raising if not connected."""
        if self._pool is None:
            raise DatabaseError(
                "Database pool not initialized. Call connect() first."
            )
        return self._pool

    async def connect(self) -> None:
        """Initialize the connection pool.

        Raises:
            DatabaseError: If connection fails.
        """
        if self._pool is not None:
            logger.warning("Connection pool already initialized")
            return

        try:
            logger.info(
                "Connecting to PostgreSQL",
                extra={
                    "min_pool_size": self.min_pool_size,
                    "max_pool_size": self.max_pool_size,
                },
            )
            self._pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
            )
            logger.info("PostgreSQL connection pool established")
        except Exception as e:
            logger.error(
                "Failed to connect to PostgreSQL",
                extra={"error": str(e)},
            )
            raise DatabaseError(
                f"Failed to connect to PostgreSQL: {e}",
                original_error=e,
            ) from e

    async def disconnect(self) -> None:
        if self._pool is not None:
            logger.info("Closing PostgreSQL connection pool")
            await self._pool.close()
            self._pool = None

    async def __aenter__(self) -> "PostgresTaskRepository":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[asyncpg.Connection]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def save(self, task: Task) -> None:
        """Insert a new task and any initial history entries.

        Raises:
            DatabaseError: If the task exists or the insert fails.
        """
        try:
            async with self._transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO workflow_tasks (
                        task_id,
                        source_ref,
                        title,
                        priority,
                        current_state,
                        workspace,
                        result,
                        admitted_at,
                        created_at,
                        updated_at,
                        version
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                    """,
                    task.task_id,
                    task.source_ref,
                    task.title,
                    task.priority,
                    task.current_state.value,
                    self._dump(task.workspace),
                    self._dump(task.result),
                    task.admitted_at,
                    task.created_at,
                    task.updated_at,
                    task.version,
                )
                await self._insert_history(conn, task.task_id, task.history, 0)

                logger.info(
                    "Saved task",
                    extra={
                        "task_id": task.task_id,
                        "state": task.current_state.value,
                        "version": task.version,
                    },
                )

        except asyncpg.UniqueViolationError as e:
            raise DatabaseError(
                f"Task already exists: {task.task_id}",
                original_error=e,
            ) from e
        except Exception as e:
            logger.error(
                "Failed to save task",
                extra={"task_id": task.task_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to save task: {e}",
                original_error=e,
            ) from e

    async def get(self, task_id: str) -> Optional[Task]:
        """Get a task by id, rebuilding its history from the history table."""
        try:
            async with self.pool.acquire() as conn:
                return await self._fetch(conn, task_id)
        except Exception as e:
            logger.error(
                "Failed to get task",
                extra={"task_id": task_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to get task: {e}",
                original_error=e,
            ) from e

    async def list_by_state(self, state: TaskState) -> List[Task]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT task_id
                    FROM workflow_tasks
                    WHERE current_state = $1
                    ORDER BY created_at ASC
                    """,
                    state.value,
                )
                tasks = []
                for row in rows:
                    task = await self._fetch(conn, row["task_id"])
                    if task is not None:
                        tasks.append(task)
                return tasks
        except Exception as e:
            logger.error(
                "Failed to list tasks by state",
                extra={"state": state.value, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to list tasks by state: {e}",
                original_error=e,
            ) from e

    async def update_with_version(self, task: Task) -> bool:
        """Update a task with optimistic locking and append new history rows.

        Returns:
            True if the update succeeded, False on version conflict.

        Raises:
            DatabaseError: If the update fails for other reasons.
        """
        expected_version = task.version - 1

        try:
            async with self._transaction() as conn:
                result = await conn.execute(
                    """
                    UPDATE workflow_tasks
                    SET
                        current_state = $2,
                        workspace = $3,
                        result = $4,
                        admitted_at = $5,
                        updated_at = $6,
                        version = $7
                    WHERE task_id = $1 AND version = $8
                    """,
                    task.task_id,
                    task.current_state.value,
                    self._dump(task.workspace),
                    self._dump(task.result),
                    task.admitted_at,
                    task.updated_at,
                    task.version,
                    expected_version,
                )

                rows_affected = int(result.split()[-1])
                if rows_affected == 0:
                    logger.warning(
                        "Version conflict during task update",
                        extra={
                            "task_id": task.task_id,
                            "expected_version": expected_version,
                        },
                    )
                    return False

                existing_count = await conn.fetchval(
                    "SELECT COUNT(*) FROM workflow_task_history WHERE task_id = $1",
                    task.task_id,
                )
                new_entries = task.history[existing_count:]
                await self._insert_history(
                    conn, task.task_id, new_entries, existing_count
                )

                logger.debug(
                    "Updated task",
                    extra={
                        "task_id": task.task_id,
                        "state": task.current_state.value,
                        "version": task.version,
                        "new_entries": len(new_entries),
                    },
                )
                return True

        except Exception as e:
            logger.error(
                "Failed to update task",
                extra={"task_id": task.task_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to update task: {e}",
                original_error=e,
            ) from e

    async def health_check(self) -> bool:
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            logger.warning(
                "Database health check failed",
                extra={"error": str(e)},
            )
            return False

    async def _fetch(self, conn: asyncpg.Connection, task_id: str) -> Optional[Task]:
        row = await conn.fetchrow(
            """
            SELECT
                task_id,
                source_ref,
                title,
                priority,
                current_state,
                workspace,
                result,
                admitted_at,
                created_at,
                updated_at,
                version
            FROM workflow_tasks
            WHERE task_id = $1
            """,
            task_id,
        )
        if row is None:
            return None

        history_rows = await conn.fetch(
            """
            SELECT
                from_state,
                to_state,
                outcome,
                attempt,
                failure_class,
                reason,
                recorded_at,
                details
            FROM workflow_task_history
            WHERE task_id = $1
            ORDER BY sequence ASC
            """,
            task_id,
        )
        history = [
            HistoryEntry(
                from_state=hr["from_state"],
                to_state=hr["to_state"],
                outcome=hr["outcome"],
                attempt=hr["attempt"],
                failure_class=hr["failure_class"],
                reason=hr["reason"],
                timestamp=_utc(hr["recorded_at"]),
                details=_load_json(hr["details"]) or {},
            )
            for hr in history_rows
        ]

        workspace = _load_json(row["workspace"])
        result = _load_json(row["result"])

        return Task(
            task_id=row["task_id"],
            source_ref=row["source_ref"],
            title=row["title"],
            priority=row["priority"],
            current_state=TaskState(row["current_state"]),
            history=history,
            workspace=WorkspaceHandle(**workspace) if workspace else None,
            result=TaskResult(**result) if result else None,
            admitted_at=_utc(row["admitted_at"]),
            created_at=_utc(row["created_at"]),
            updated_at=_utc(row["updated_at"]),
            version=row["version"],
        )

    async def _insert_history(
        self,
        conn: asyncpg.Connection,
        task_id: str,
        entries: List[HistoryEntry],
        start_sequence: int,
    ) -> None:
        for offset, entry in enumerate(entries):
            await conn.execute(
                """
                INSERT INTO workflow_task_history (
                    task_id,
                    sequence,
                    from_state,
                    to_state,
                    outcome,
                    attempt,
                    failure_class,
                    reason,
                    recorded_at,
                    details
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                """,
                task_id,
                start_sequence + offset,
                entry.from_state.value,
                entry.to_state.value,
                entry.outcome.value if entry.outcome else None,
                entry.attempt,
                entry.failure_class.value if entry.failure_class else None,
                entry.reason,
                entry.timestamp,
                json.dumps(entry.details, default=str) if entry.details else None,
            )

    @staticmethod
    def _dump(model: Any) -> Optional[str]:
        if model is None:
            return None
        return model.model_dump_json()
