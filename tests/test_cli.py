"""Tests for the CLI."""

import json

import pytest
from click.testing import CliRunner

from clanker_orchestrator.cli import main
from clanker_orchestrator.core.store import StateStore
from clanker_orchestrator.db.models import DONE

from conftest import GIT_ENV, git


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """A state file with one project and two tasks, pointed to by CLANKER_STATE_PATH."""
    state_path = tmp_path / "state.json"
    monkeypatch.setenv("CLANKER_STATE_PATH", str(state_path))

    store = StateStore(state_path)
    store.load()
    store.open_project("demo", "https://example.com/demo.git")
    store.create_task("demo", "Write docs")
    second = store.create_task("demo", "Fix bug")
    store.update_task("demo", second.id, {"status": DONE, "cost": 1.5, "pr_number": 12})

    return CliRunner()


class TestHelp:
    def test_main_help(self):
        result = CliRunner().invoke(main, ["--help"])
        assert result.exit_code == 0
        for command in ("serve", "tasks", "projects", "autopush", "mcp"):
            assert command in result.output


class TestStateCommands:
    def test_projects(self, cli_env):
        result = cli_env.invoke(main, ["projects"])
        assert result.exit_code == 0
        assert "demo: https://example.com/demo.git (2 tasks)" in result.output

    def test_tasks(self, cli_env):
        result = cli_env.invoke(main, ["tasks", "demo"])
        assert result.exit_code == 0
        assert "1000: Write docs (not_started)" in result.output
        assert "1001: Fix bug (done) $1.50 [PR #12]" in result.output

    def test_tasks_json(self, cli_env):
        result = cli_env.invoke(main, ["tasks", "demo", "--json"])
        assert result.exit_code == 0
        tasks = json.loads(result.output)
        assert [t["id"] for t in tasks] == [1000, 1001]
        assert tasks[1]["pr_number"] == 12

    def test_unknown_project(self, cli_env):
        result = cli_env.invoke(main, ["tasks", "nope"])
        assert result.exit_code == 1

    def test_corrupt_state_file(self, tmp_path, monkeypatch):
        state_path = tmp_path / "state.json"
        state_path.write_text("{broken")
        monkeypatch.setenv("CLANKER_STATE_PATH", str(state_path))
        result = CliRunner().invoke(main, ["projects"])
        assert result.exit_code == 1

    def test_no_projects(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CLANKER_STATE_PATH", str(tmp_path / "missing.json"))
        result = CliRunner().invoke(main, ["projects"])
        assert result.exit_code == 0
        assert "No projects found." in result.output


class TestAutopushCommand:
    def test_single_cycle_on_clean_tree(self, upstream_repo):
        result = CliRunner().invoke(
            main, ["autopush", str(upstream_repo), "--branch", "clanker/1000", "--once"]
        )
        assert result.exit_code == 0
        assert "Nothing to push." in result.output

    def test_single_cycle_pushes(self, tmp_path, upstream_repo, monkeypatch):
        for key, value in GIT_ENV.items():
            monkeypatch.setenv(key, value)
        remote = tmp_path / "remote.git"
        git(["clone", "--bare", str(upstream_repo), str(remote)], tmp_path)
        work = tmp_path / "work"
        git(["clone", str(remote), str(work)], tmp_path)
        git(["checkout", "-b", "clanker/1000"], work)
        (work / "notes.md").write_text("notes")

        result = CliRunner().invoke(main, ["autopush", str(work), "--branch", "clanker/1000", "--once"])
        assert result.exit_code == 0, result.output
        assert "Pushed changes." in result.output
        assert git(["ls-remote", str(remote), "refs/heads/clanker/1000"], work) != ""
