"""Tests for the autopush worker."""

import pytest

from clanker_orchestrator.core.autopush import Autopusher
from clanker_orchestrator.integrations.git import GitError

from conftest import GIT_ENV, git


@pytest.fixture(autouse=True)
def git_identity(monkeypatch):
    for key, value in GIT_ENV.items():
        monkeypatch.setenv(key, value)


@pytest.fixture
def task_checkout(tmp_path, upstream_repo):
    """A clone of a bare remote with the task branch checked out."""
    remote = tmp_path / "remote.git"
    git(["clone", "--bare", str(upstream_repo), str(remote)], tmp_path)
    work = tmp_path / "work"
    git(["clone", str(remote), str(work)], tmp_path)
    git(["checkout", "-b", "clanker/1000"], work)
    return work, remote


class TestAutopusher:
    def test_clean_tree_is_skipped(self, task_checkout):
        work, remote = task_checkout
        pusher = Autopusher(work, "clanker/1000", interval=0.1)
        assert pusher.run_cycle() is False
        assert git(["ls-remote", str(remote), "refs/heads/clanker/1000"], work) == ""

    def test_commits_and_pushes_changes(self, task_checkout):
        work, remote = task_checkout
        (work / "feature.py").write_text("print('hi')\n")

        pusher = Autopusher(work, "clanker/1000", interval=0.1)
        assert pusher.run_cycle() is True

        assert git(["status", "--porcelain"], work) == ""
        assert git(["log", "-1", "--format=%s"], work).startswith("autopush: ")
        remote_head = git(["rev-parse", "refs/heads/clanker/1000"], remote)
        assert remote_head == git(["rev-parse", "HEAD"], work)

    def test_push_failure_raises(self, task_checkout, tmp_path):
        work, _ = task_checkout
        git(["remote", "set-url", "origin", str(tmp_path / "gone.git")], work)
        (work / "feature.py").write_text("x = 1\n")

        with pytest.raises(GitError):
            Autopusher(work, "clanker/1000").run_cycle()

    def test_stopped_loop_exits(self, task_checkout):
        work, _ = task_checkout
        pusher = Autopusher(work, "clanker/1000", interval=60)
        pusher.stop()
        pusher.run_forever()
