"""Per-project clones and per-task git worktrees."""

import asyncio
import logging
import re
from collections import defaultdict
from pathlib import Path

from clanker_orchestrator.errors import CloneError, InvalidRequest, WorktreeError
from clanker_orchestrator.integrations.git import (
    GitError,
    branch_exists,
    clone,
    delete_branch,
    pull,
    worktree_add,
    worktree_remove,
)

logger = logging.getLogger(__name__)

_PROJECT_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def validate_project_name(name: str) -> str:
    """Project names become directory names, so they must be a single safe path component."""
    if not name or not _PROJECT_NAME.match(name):
        raise InvalidRequest(f"Invalid project name: {name!r}")
    return name


def branch_name(task_id: int) -> str:
    return f"clanker/{task_id}"


class WorkspaceManager:
    """Lays out one clone per project and one exclusive worktree per task.

    ``<root>/<project>/repo`` is shared by all tasks of a project;
    ``<root>/<project>/worktrees/task-<id>`` belongs to exactly one task.
    Callers hold ``lock(project)`` around anything that mutates the clone.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).absolute()
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def lock(self, project: str) -> asyncio.Lock:
        return self._locks[project]

    def project_dir(self, project: str) -> Path:
        return self.root / validate_project_name(project)

    def repo_path(self, project: str) -> Path:
        return self.project_dir(project) / "repo"

    def worktree_path(self, project: str, task_id: int) -> Path:
        return self.project_dir(project) / "worktrees" / f"task-{task_id}"

    def log_path(self, project: str, task_id: int) -> Path:
        return self.project_dir(project) / "logs" / f"task-{task_id}.log"

    def has_repository(self, project: str) -> bool:
        return (self.repo_path(project) / ".git").exists()

    async def ensure_repository(self, project: str, upstream: str) -> Path:
        """Clone the upstream unless a clone already exists."""
        repo = self.repo_path(project)
        if self.has_repository(project):
            return repo

        repo.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Cloning %s into %s", upstream, repo)
        try:
            await clone(upstream, repo)
        except GitError as e:
            raise CloneError(f"Failed to clone {upstream}: {e.stderr.strip() or e}") from e
        return repo

    async def pull_latest(self, repo_path: str | Path) -> bool:
        """Best-effort fast-forward. Returns False instead of raising."""
        try:
            await pull(repo_path)
            return True
        except GitError as e:
            logger.warning("Could not pull latest into %s: %s", repo_path, e)
            return False

    async def create_worktree(self, repo_path: str | Path, worktree_path: str | Path, task_id: int) -> Path:
        """Check out a fresh branch for the task from the clone's HEAD."""
        wt_path = Path(worktree_path)
        branch = branch_name(task_id)

        if wt_path.exists():
            raise WorktreeError(f"Worktree directory already exists: {wt_path}")
        if await branch_exists(repo_path, branch):
            raise WorktreeError(f"Branch already exists: {branch}")

        wt_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            await worktree_add(repo_path, wt_path, branch)
        except GitError as e:
            raise WorktreeError(f"Failed to create worktree for task {task_id}: {e.stderr.strip() or e}") from e

        logger.info("Created worktree %s on %s", wt_path, branch)
        return wt_path

    async def remove_worktree(self, project: str, task_id: int) -> None:
        """Tear down an abandoned task's worktree and branch. Failures are logged."""
        repo = self.repo_path(project)
        wt_path = self.worktree_path(project, task_id)
        branch = branch_name(task_id)

        if wt_path.exists():
            try:
                await worktree_remove(repo, wt_path, force=True)
            except GitError as e:
                logger.warning("Could not remove worktree %s: %s", wt_path, e)

        if await branch_exists(repo, branch):
            try:
                await delete_branch(repo, branch, force=True)
            except GitError as e:
                logger.warning("Could not delete branch %s: %s", branch, e)
