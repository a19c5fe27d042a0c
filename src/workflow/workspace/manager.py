"""Isolated workspace management.

The WorkspaceManager leases one disposable working tree per task and
enforces an exact cap on the number of leased workspaces. Acquisition
never waits: when the cap is reached it fails fast with
ResourceExhaustedError and the scheduler re-queues the task.

Slot reservation and name allocation happen under a lock; the slow tree
creation runs outside it on the reserved slot. A failed or cancelled
creation returns the slot and leaves cleanup of partial trees to the
backend, which never removes a branch or directory it did not create.
Names already taken on disk or in the repository are skipped, so a task
retried after a restart moves on to a fresh attempt. Release is
idempotent and never raises.
"""

import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple
from uuid import uuid4

from src.workflow.workspace.backend import (
    DirectoryBackend,
    WorkspaceBackend,
    WorkspaceBackendError,
)

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
MAX_NAME_SKIPS = 1000


@dataclass
class WorkspaceConfig:
    """Configuration for workspace management.

    Attributes:
        base_path: Root directory where workspaces are created.
        max_open: Maximum number of concurrently leased workspaces.
        base_revision: Revision new workspaces branch from.
        branch_prefix: Prefix for per-workspace branch names.
        retention_days: Days parked workspaces are kept before cleanup.
    """

    base_path: Path
    max_open: int = 4
    base_revision: str = "HEAD"
    branch_prefix: str = "ai-fix"
    retention_days: int = 7

    def __post_init__(self) -> None:
        self.base_path = Path(self.base_path)
        if self.max_open < 1:
            raise ValueError("max_open must be at least 1")


class WorkspaceDisposition(str, Enum):
    """What to do with a workspace on release."""

    KEEP = "keep"
    DESTROY = "destroy"


@dataclass(frozen=True)
class Workspace:
    """A working tree leased to one task.

    Attributes:
        workspace_id: Unique handle for this lease.
        task_id: Task holding the lease.
        path: Absolute path of the working tree.
        branch: Branch name derived from the task id and attempt.
        base_revision: Revision the tree was created from.
        attempt: Per-task counter used in the name.
        created_at: When the tree was created (UTC).
        lease_owner: Identifier of the lease holder.
    """

    workspace_id: str
    task_id: str
    path: Path
    branch: str
    base_revision: str
    attempt: int
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    lease_owner: Optional[str] = None


class ResourceExhaustedError(Exception):
    """Raised when the workspace cap is reached."""

    def __init__(self, max_open: int, task_id: Optional[str] = None):
        self.max_open = max_open
        self.task_id = task_id
        super().__init__(
            f"Workspace limit reached ({max_open} open)"
            + (f" for task {task_id}" if task_id else "")
        )


class WorkspaceCreationError(Exception):
    """Raised when a working tree cannot be created."""

    def __init__(self, task_id: str, message: str):
        self.task_id = task_id
        super().__init__(f"Failed to create workspace for task {task_id}: {message}")


class WorkspaceLeaseError(Exception):
    """Raised when a task that already holds a workspace asks for another."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} already holds a workspace")


def slugify_task_id(task_id: str) -> str:
    """Convert a task id into a string safe for paths and branch names."""
    slug = _UNSAFE_NAME_CHARS.sub("-", task_id).strip("-.")
    return slug[:64] or "task"


class WorkspaceManager:
    """Leases isolated working trees to tasks under an exact cap.

    Attributes:
        config: Workspace configuration.
        backend: Backend that creates and removes trees.
    """

    def __init__(
        self,
        config: WorkspaceConfig,
        backend: Optional[WorkspaceBackend] = None,
    ):
        self.config = config
        self.backend = backend or DirectoryBackend()
        self._lock = threading.Lock()
        self._leased: Dict[str, Workspace] = {}
        self._parked: Dict[str, Workspace] = {}
        self._pending_tasks: Set[str] = set()
        self._reserved_names: Set[str] = set()
        self._attempts: Dict[str, int] = {}

    @property
    def open_count(self) -> int:
        """Leased workspaces plus creations in progress."""
        with self._lock:
            return len(self._leased) + len(self._pending_tasks)

    def leased(self) -> List[Workspace]:
        with self._lock:
            return list(self._leased.values())

    def parked(self) -> List[Workspace]:
        with self._lock:
            return list(self._parked.values())

    async def acquire(self, task_id: str, lease_owner: Optional[str] = None) -> Workspace:
        """Create and lease a workspace for a task.

        Args:
            task_id: Task requesting the workspace.
            lease_owner: Optional identifier of the holder.

        Returns:
            The leased workspace.

        Raises:
            ResourceExhaustedError: If ``max_open`` workspaces are leased.
            WorkspaceLeaseError: If the task already holds a workspace.
            WorkspaceCreationError: If the tree cannot be created.
        """
        with self._lock:
            if task_id in self._pending_tasks or any(
                ws.task_id == task_id for ws in self._leased.values()
            ):
                raise WorkspaceLeaseError(task_id)
            if len(self._leased) + len(self._pending_tasks) >= self.config.max_open:
                raise ResourceExhaustedError(self.config.max_open, task_id)
            self._pending_tasks.add(task_id)

        name: Optional[str] = None
        created = False
        try:
            attempt, path, branch = await self._reserve_name(task_id)
            name = path.name
            await self.backend.create(path, branch, self.config.base_revision)
            created = True
        except Exception as exc:
            logger.error(
                "Workspace creation failed",
                extra={"task_id": task_id, "workspace": name, "error": str(exc)},
            )
            raise WorkspaceCreationError(task_id, str(exc)) from exc
        finally:
            # Also runs on cancellation, so the slot is never lost
            if not created:
                with self._lock:
                    self._pending_tasks.discard(task_id)
                    self._reserved_names.discard(name)

        workspace = Workspace(
            workspace_id=uuid4().hex,
            task_id=task_id,
            path=path,
            branch=branch,
            base_revision=self.config.base_revision,
            attempt=attempt,
            lease_owner=lease_owner,
        )

        with self._lock:
            self._pending_tasks.discard(task_id)
            self._leased[workspace.workspace_id] = workspace

        logger.info(
            "Workspace acquired",
            extra={
                "task_id": task_id,
                "workspace": str(path),
                "branch": branch,
                "attempt": attempt,
            },
        )
        return workspace

    async def release(
        self,
        workspace: Workspace,
        disposition: WorkspaceDisposition = WorkspaceDisposition.DESTROY,
    ) -> None:
        """Release a workspace, either parking it or destroying it.

        Releasing an unknown or already-released workspace is a no-op.
        A parked workspace may later be released again with DESTROY.
        Cleanup errors are logged, never raised.
        """
        with self._lock:
            held = self._leased.pop(workspace.workspace_id, None)
            if held is None and disposition == WorkspaceDisposition.DESTROY:
                held = self._parked.pop(workspace.workspace_id, None)
            elif held is not None and disposition == WorkspaceDisposition.KEEP:
                self._parked[held.workspace_id] = held

        if held is None:
            logger.debug(
                "Ignoring release of unknown workspace",
                extra={"workspace_id": workspace.workspace_id},
            )
            return

        logger.info(
            "Workspace released",
            extra={
                "task_id": held.task_id,
                "workspace": str(held.path),
                "disposition": disposition.value,
            },
        )

        if disposition == WorkspaceDisposition.DESTROY:
            await self._destroy_quietly(held.path, held.branch)
            with self._lock:
                self._reserved_names.discard(held.path.name)

    async def cleanup_parked(self, retention_days: Optional[int] = None) -> int:
        """Destroy parked workspaces older than the retention period.

        Returns:
            Number of workspaces removed.
        """
        days = retention_days if retention_days is not None else self.config.retention_days
        threshold = datetime.now(timezone.utc) - timedelta(days=days)

        with self._lock:
            expired = [
                ws for ws in self._parked.values()
                if ws.created_at < threshold
            ]

        for workspace in expired:
            await self.release(workspace, WorkspaceDisposition.DESTROY)

        logger.info(
            "Parked workspace cleanup complete",
            extra={"removed_count": len(expired)},
        )
        return len(expired)

    async def _reserve_name(self, task_id: str) -> Tuple[int, Path, str]:
        """Reserve the next attempt whose directory and branch are both free.

        Attempt counters live in memory, so after a restart the backend is
        asked whether a name is left over from an earlier run.
        """
        for _ in range(MAX_NAME_SKIPS):
            with self._lock:
                attempt, path, branch = self._allocate_name(task_id)
                self._reserved_names.add(path.name)
            try:
                taken = await self.backend.exists(path, branch)
            except BaseException:
                with self._lock:
                    self._reserved_names.discard(path.name)
                raise
            if not taken:
                return attempt, path, branch
            with self._lock:
                self._reserved_names.discard(path.name)
            logger.info(
                "Skipping workspace name left by an earlier run",
                extra={"task_id": task_id, "workspace": str(path), "branch": branch},
            )
        raise WorkspaceBackendError(
            f"No free workspace name for task {task_id} after {MAX_NAME_SKIPS} attempts"
        )

    def _allocate_name(self, task_id: str) -> Tuple[int, Path, str]:
        """Pick the next attempt number not reserved in this process. Caller holds the lock."""
        slug = slugify_task_id(task_id)
        attempt = self._attempts.get(slug, 0)
        while True:
            attempt += 1
            name = f"{slug}-{attempt}"
            if name not in self._reserved_names:
                break
        self._attempts[slug] = attempt
        path = self.config.base_path / name
        branch = f"{self.config.branch_prefix}/{name}"
        return attempt, path, branch

    async def _destroy_quietly(self, path: Path, branch: str) -> None:
        try:
            await self.backend.destroy(path, branch)
        except Exception:
            logger.exception(
                "Failed to remove workspace",
                extra={"workspace": str(path), "branch": branch},
            )
