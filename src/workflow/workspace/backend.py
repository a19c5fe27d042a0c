"""Workspace backends that create and remove working trees.

- GitWorktreeBackend: one `git worktree` per workspace on its own branch
- DirectoryBackend: plain directories, for local runs and tests

Both tolerate trees that are already partly or fully gone on destroy. A
failed create undoes only what that call made; a branch or directory that
existed before the call is never touched.
"""

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Protocol, Tuple, runtime_checkable

logger = logging.getLogger(__name__)

WORKSPACE_DIR_PERMISSIONS = 0o755
GIT_COMMAND_TIMEOUT_SECONDS = 120


class WorkspaceBackendError(Exception):
    """Raised when a backend cannot create or remove a working tree."""

    pass


@runtime_checkable
class WorkspaceBackend(Protocol):
    """Creates and destroys working trees at given paths."""

    async def create(self, path: Path, branch: str, base_revision: str) -> None:
        ...

    async def destroy(self, path: Path, branch: str) -> None:
        ...

    async def exists(self, path: Path, branch: str) -> bool:
        """Whether the path or the branch is already taken."""
        ...


class DirectoryBackend:
    """Backend that creates empty directories without version control."""

    async def create(self, path: Path, branch: str, base_revision: str) -> None:
        try:
            path.mkdir(parents=True, exist_ok=False)
        except OSError as exc:
            raise WorkspaceBackendError(
                f"Failed to create workspace at {path}: {exc}"
            ) from exc

        try:
            path.chmod(WORKSPACE_DIR_PERMISSIONS)
        except OSError as exc:
            shutil.rmtree(path, ignore_errors=True)
            raise WorkspaceBackendError(
                f"Failed to set permissions on {path}: {exc}"
            ) from exc

    async def destroy(self, path: Path, branch: str) -> None:
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            logger.debug(
                "Workspace already removed",
                extra={"workspace": str(path)},
            )
        except OSError as exc:
            raise WorkspaceBackendError(
                f"Failed to remove workspace at {path}: {exc}"
            ) from exc

    async def exists(self, path: Path, branch: str) -> bool:
        return path.exists()


class GitWorktreeBackend:
    """Backend that creates one git worktree per workspace.

    Each workspace gets a fresh branch created from ``base_revision``
    with ``git worktree add -b``. Destroy removes the worktree, prunes
    stale worktree metadata, and deletes the branch.

    Attributes:
        repository_path: Path to the main repository checkout.
        timeout_seconds: Timeout for each git command.
    """

    def __init__(
        self,
        repository_path: Path,
        timeout_seconds: float = GIT_COMMAND_TIMEOUT_SECONDS,
    ):
        self.repository_path = Path(repository_path)
        self.timeout_seconds = timeout_seconds

    async def create(self, path: Path, branch: str, base_revision: str) -> None:
        """Create a worktree at ``path`` on a new ``branch``.

        If ``worktree add`` fails or times out, the partial worktree and
        the branch it created are removed before raising.

        Raises:
            WorkspaceBackendError: If git fails, times out, or the path or
                branch already exists.
        """
        if path.exists():
            raise WorkspaceBackendError(f"Workspace path {path} already exists")
        if await self._branch_exists(branch):
            raise WorkspaceBackendError(f"Branch {branch} already exists")

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise WorkspaceBackendError(
                f"Failed to create workspace parent {path.parent}: {exc}"
            ) from exc

        try:
            returncode, _, stderr = await self._run_git(
                "worktree", "add", "-b", branch, str(path), base_revision
            )
        except WorkspaceBackendError:
            await self._undo_partial_create(path, branch)
            raise
        if returncode != 0:
            await self._undo_partial_create(path, branch)
            raise WorkspaceBackendError(
                f"git worktree add failed for {branch}: {stderr}"
            )

        logger.info(
            "Created git worktree",
            extra={"workspace": str(path), "branch": branch, "base": base_revision},
        )

    async def destroy(self, path: Path, branch: str) -> None:
        """Remove the worktree and its branch, tolerating missing pieces."""
        await self._remove_worktree(path)
        await self._run_git("worktree", "prune")

        returncode, _, stderr = await self._run_git("branch", "-D", branch)
        if returncode != 0 and "not found" not in stderr:
            raise WorkspaceBackendError(
                f"Failed to delete branch {branch}: {stderr}"
            )

    async def exists(self, path: Path, branch: str) -> bool:
        """Whether the directory or the branch survives from an earlier run."""
        return path.exists() or await self._branch_exists(branch)

    async def _branch_exists(self, branch: str) -> bool:
        returncode, _, _ = await self._run_git(
            "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"
        )
        return returncode == 0

    async def _remove_worktree(self, path: Path) -> None:
        if not path.exists():
            return
        returncode, _, stderr = await self._run_git(
            "worktree", "remove", "--force", str(path)
        )
        if returncode != 0:
            logger.warning(
                "git worktree remove failed, deleting directory",
                extra={"workspace": str(path), "error": stderr},
            )
            shutil.rmtree(path, ignore_errors=True)

    async def _undo_partial_create(self, path: Path, branch: str) -> None:
        """Remove what a failed ``worktree add`` left behind.

        Only called after create checked that neither the path nor the
        branch existed, so anything found here belongs to this call.
        """
        try:
            await self._remove_worktree(path)
            await self._run_git("worktree", "prune")
            if await self._branch_exists(branch):
                await self._run_git("branch", "-D", branch)
        except WorkspaceBackendError as exc:
            logger.warning(
                "Failed to clean up partial worktree",
                extra={"workspace": str(path), "branch": branch, "error": str(exc)},
            )

    async def _run_git(self, *args: str) -> Tuple[int, str, str]:
        """Run a git command in the repository.

        The child process is killed and reaped if the command times out
        or the caller is cancelled.

        Returns:
            Tuple of (return code, stdout, stderr).

        Raises:
            WorkspaceBackendError: If git cannot be executed or times out.
        """
        try:
            process = await asyncio.create_subprocess_exec(
                "git",
                "-C",
                str(self.repository_path),
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise WorkspaceBackendError(f"Failed to execute git: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            await _kill(process)
            raise WorkspaceBackendError(
                f"git {args[0]} timed out after {self.timeout_seconds}s"
            ) from exc
        except asyncio.CancelledError:
            await _kill(process)
            raise

        return (
            process.returncode,
            stdout.decode(errors="replace").strip(),
            stderr.decode(errors="replace").strip(),
        )


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    await process.wait()
