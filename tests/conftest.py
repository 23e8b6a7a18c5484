"""Shared fixtures: throwaway git repositories and orchestrator configs."""

import os
import socket
import subprocess
import sys
from pathlib import Path

import pytest

from clanker_orchestrator.config import Config

GIT_ENV = {
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}

# Serves the working directory, which the supervisor sets to the task worktree.
HTTP_BACKEND = f"{sys.executable} -m http.server {{port}} --bind 127.0.0.1"


def git(args: list[str], cwd) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        check=True,
        env={**os.environ, **GIT_ENV},
    )
    return result.stdout.strip()


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def upstream_repo(tmp_path) -> Path:
    """A repository with one commit on main, usable as a clone source."""
    repo = tmp_path / "upstream"
    repo.mkdir()
    git(["init"], repo)
    git(["checkout", "-b", "main"], repo)
    (repo / "README.md").write_text("# Test")
    git(["add", "."], repo)
    git(["commit", "-m", "init"], repo)
    return repo


@pytest.fixture
def config(tmp_path) -> Config:
    """Config isolated under tmp_path that runs a tiny HTTP server as the backend."""
    return Config(
        state_path=tmp_path / "state" / "state.json",
        workspace_dir=tmp_path / "workspaces",
        port_start=free_port(),
        backend_command=HTTP_BACKEND,
        readiness_timeout=10.0,
        readiness_interval=0.05,
        stop_timeout=2.0,
        bootstrap_session=False,
        autopush_enabled=False,
        reconcile_on_startup=False,
    )
