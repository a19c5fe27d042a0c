"""Per-task isolated workspaces."""

from src.workflow.workspace.backend import (
    DirectoryBackend,
    GitWorktreeBackend,
    WorkspaceBackend,
    WorkspaceBackendError,
)
from src.workflow.workspace.manager import (
    ResourceExhaustedError,
    Workspace,
    WorkspaceConfig,
    WorkspaceCreationError,
    WorkspaceDisposition,
    WorkspaceLeaseError,
    WorkspaceManager,
    slugify_task_id,
)

__all__ = [
    "DirectoryBackend",
    "GitWorktreeBackend",
    "ResourceExhaustedError",
    "Workspace",
    "WorkspaceBackend",
    "WorkspaceBackendError",
    "WorkspaceConfig",
    "WorkspaceCreationError",
    "WorkspaceDisposition",
    "WorkspaceLeaseError",
    "WorkspaceManager",
    "slugify_task_id",
]
