"""Git subprocess wrappers for clones, worktrees and autopush commits.

The asyncio variants are used from the server's event loop so long clones
and pulls do not block request handling. The blocking variants are used by
the autopush worker, which runs in its own process.
"""

import asyncio
import subprocess
from pathlib import Path


class GitError(Exception):
    """Raised when a git command fails."""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr


def _failure(args: list[str], stderr: str) -> GitError:
    return GitError(f"git {' '.join(args)} failed: {stderr.strip()}", stderr=stderr)


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise _failure(args, e.stderr or "") from e
    except OSError as e:
        raise GitError(f"git {' '.join(args)} could not run: {e}") from e


async def run_git_async(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a git command without blocking the event loop. Raises GitError on failure."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=str(cwd) if cwd is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise GitError(f"git {' '.join(args)} could not run: {e}") from e

    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        raise _failure(args, stderr.decode(errors="replace"))
    return stdout.decode(errors="replace").strip()


# ── Repository and worktree operations (async) ───────────────────────────────


async def clone(upstream: str, dest: str | Path) -> str:
    """Clone an upstream repository into dest."""
    return await run_git_async(["clone", upstream, str(dest)])


async def pull(repo_path: str | Path) -> str:
    """Fast-forward the checked-out branch from its upstream."""
    return await run_git_async(["pull", "--ff-only"], cwd=repo_path)


async def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    start_point: str = "HEAD",
) -> str:
    """Create a new branch at start_point and check it out into worktree_path."""
    return await run_git_async(
        ["worktree", "add", "-b", branch, str(worktree_path), start_point],
        cwd=repo_path,
    )


async def worktree_remove(repo_path: str | Path, worktree_path: str | Path, force: bool = False) -> str:
    """Remove a git worktree."""
    args = ["worktree", "remove", str(worktree_path)]
    if force:
        args.append("--force")
    return await run_git_async(args, cwd=repo_path)


async def branch_exists(repo_path: str | Path, branch: str) -> bool:
    """Check if a branch exists."""
    try:
        await run_git_async(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], cwd=repo_path)
        return True
    except GitError:
        return False


async def delete_branch(repo_path: str | Path, branch: str, force: bool = False) -> str:
    """Delete a branch."""
    flag = "-D" if force else "-d"
    return await run_git_async(["branch", flag, branch], cwd=repo_path)


# ── Working directory operations (blocking) ──────────────────────────────────


def get_status(cwd: str | Path) -> str:
    """Get porcelain git status of a working directory."""
    return run_git(["status", "--porcelain"], cwd=cwd)


def commit_all(cwd: str | Path, message: str) -> str:
    """Stage every change in the working directory and commit it."""
    run_git(["add", "-A"], cwd=cwd)
    return run_git(["commit", "-m", message], cwd=cwd)


def push(cwd: str | Path, branch: str | None = None) -> str:
    """Push to origin. With a branch, also set it as the upstream."""
    if branch:
        return run_git(["push", "-u", "origin", branch], cwd=cwd)
    return run_git(["push"], cwd=cwd)
