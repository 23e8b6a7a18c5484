"""Tests for orchestrator behaviour that the HTTP tests do not reach."""

import asyncio
import shlex
import sys
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest

from clanker_orchestrator.core.orchestrator import Orchestrator
from clanker_orchestrator.db.models import DONE, NOT_STARTED, RUNNING
from clanker_orchestrator.db.storage import save_state
from clanker_orchestrator.errors import NotFound, UpstreamUnavailable

# Listens only after a second, so provisioning stays in flight long enough to race with.
SLOW_BACKEND = (
    f"sh -c \"sleep 1; exec {shlex.quote(sys.executable)} -m http.server {{port}} --bind 127.0.0.1\""
)


@pytest.fixture
def orchestrator(config):
    orch = Orchestrator(config)
    orch.store.load()
    return orch


class TestSessionBootstrap:
    @pytest.mark.asyncio
    async def test_uses_backend_session_id(self, orchestrator):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"id": "ses_from_backend"})

        orchestrator._http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        session_id = await orchestrator._bootstrap_session(4100, Path("/work/tree"))

        assert session_id == "ses_from_backend"
        assert seen[0].method == "POST"
        assert seen[0].url.path == "/session"
        assert seen[0].url.params["directory"] == "/work/tree"

    @pytest.mark.asyncio
    async def test_failure_keeps_provisional_id(self, orchestrator):
        orchestrator._http = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(500, text="nope"))
        )
        assert await orchestrator._bootstrap_session(4100, Path("/work/tree")) is None

    @pytest.mark.asyncio
    async def test_missing_id_is_ignored(self, orchestrator):
        orchestrator._http = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"title": "x"}))
        )
        assert await orchestrator._bootstrap_session(4100, Path("/work/tree")) is None


class TestNotifications:
    @pytest.mark.asyncio
    async def test_terminal_status_notifies_slack(self, orchestrator, config):
        config.slack_bot_token = "xoxb-test"
        config.slack_channel = "#clankers"
        orchestrator.store.open_project("demo", "https://example.com/demo.git")
        task = orchestrator.store.create_task("demo", "Fix it")

        with patch("clanker_orchestrator.integrations.slack.send_message") as mock_send:
            updated = await orchestrator.update_task("demo", task.id, {"status": DONE})

        assert updated.status == DONE
        mock_send.assert_called_once()
        sent_config, text, blocks = mock_send.call_args.args
        assert sent_config is config
        assert "done" in text
        assert "Fix it" in blocks[0]["text"]["text"]

    @pytest.mark.asyncio
    async def test_unconfigured_slack_is_skipped(self, orchestrator):
        orchestrator.store.open_project("demo", "https://example.com/demo.git")
        task = orchestrator.store.create_task("demo")

        with patch("clanker_orchestrator.integrations.slack.send_message") as mock_send:
            await orchestrator.update_task("demo", task.id, {"status": DONE})
        mock_send.assert_not_called()

    @pytest.mark.asyncio
    async def test_slack_failure_does_not_fail_update(self, orchestrator, config):
        config.slack_bot_token = "xoxb-test"
        config.slack_channel = "#clankers"
        orchestrator.store.open_project("demo", "https://example.com/demo.git")
        task = orchestrator.store.create_task("demo")

        with patch(
            "clanker_orchestrator.integrations.slack.send_message",
            side_effect=RuntimeError("slack down"),
        ):
            updated = await orchestrator.update_task("demo", task.id, {"status": DONE})
        assert updated.status == DONE


class TestLifecycle:
    def test_resolve_backend_without_process(self, orchestrator):
        with pytest.raises(UpstreamUnavailable):
            orchestrator.resolve_backend("demo", 1000)

    @pytest.mark.asyncio
    async def test_create_clanker_unknown_project(self, orchestrator):
        with pytest.raises(NotFound):
            await orchestrator.create_clanker("nope")

    @pytest.mark.asyncio
    async def test_shutdown_releases_active_tasks(self, orchestrator):
        orchestrator.store.open_project("demo", "https://example.com/demo.git")
        task = orchestrator.store.create_task("demo")
        orchestrator.store.bind_port("demo", task.id, 4000)
        assert orchestrator.store.get_task("demo", task.id).status == RUNNING

        await orchestrator.shutdown()

        released = orchestrator.store.get_task("demo", task.id)
        assert released.status == NOT_STARTED
        assert released.port is None

    @pytest.mark.asyncio
    async def test_init_reconciles_whole_issued_port_range(self, orchestrator, config):
        config.reconcile_on_startup = True
        save_state(config.state_path, {}, config.port_start + 1500)
        calls = []
        with patch.object(
            orchestrator.supervisor,
            "reconcile_on_startup",
            side_effect=lambda next_port: calls.append(("reconcile", next_port)),
        ), patch.object(orchestrator.store, "load", side_effect=lambda: calls.append(("load", None))):
            await orchestrator.init()
        assert calls == [("reconcile", config.port_start + 1500), ("load", None)]

    @pytest.mark.asyncio
    async def test_init_on_cold_start(self, orchestrator, config):
        config.reconcile_on_startup = True
        with patch.object(orchestrator.supervisor, "reconcile_on_startup") as mock_reconcile:
            await orchestrator.init()
        mock_reconcile.assert_called_once_with(None)


async def _wait_until(predicate, timeout: float = 10.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.02)

    await asyncio.wait_for(poll(), timeout)


class TestProvisioning:
    @pytest.mark.asyncio
    async def test_concurrent_creations_get_distinct_resources(self, orchestrator, upstream_repo):
        await orchestrator.open_project("demo", str(upstream_repo))
        try:
            results = await asyncio.gather(
                orchestrator.create_clanker("demo", "first"),
                orchestrator.create_clanker("demo", "second"),
            )
            ids = sorted(task_id for task_id, _ in results)
            ports = {port for _, port in results}

            assert ids == [1000, 1001]
            assert len(ports) == 2
            worktrees = {orchestrator.workspace.worktree_path("demo", task_id) for task_id in ids}
            assert len(worktrees) == 2
            assert all((wt / "README.md").exists() for wt in worktrees)
            assert orchestrator.supervisor.live_ports() == {
                ("demo", task_id): port for task_id, port in results
            }
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_reactivation_during_creation_starts_one_backend(self, orchestrator, config, upstream_repo):
        config.backend_command = SLOW_BACKEND
        await orchestrator.open_project("demo", str(upstream_repo))
        supervisor = orchestrator.supervisor

        try:
            with patch.object(supervisor, "_spawn", wraps=supervisor._spawn) as spawn:
                creating = asyncio.create_task(orchestrator.create_clanker("demo"))
                await _wait_until(lambda: orchestrator.workspace.worktree_path("demo", 1000).exists())

                updated = await orchestrator.update_task("demo", 1000, {"status": RUNNING})
                task_id, port = await creating

            assert spawn.call_count == 1
            assert updated.status == RUNNING
            assert updated.port == port
            assert supervisor.live_ports() == {("demo", task_id): port}
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_done_during_creation_is_not_overwritten(self, orchestrator, config, upstream_repo):
        config.backend_command = SLOW_BACKEND
        await orchestrator.open_project("demo", str(upstream_repo))

        try:
            creating = asyncio.create_task(orchestrator.create_clanker("demo"))
            await _wait_until(lambda: orchestrator.workspace.worktree_path("demo", 1000).exists())

            updated = await orchestrator.update_task("demo", 1000, {"status": DONE})
            await creating

            assert updated.status == DONE
            task = orchestrator.store.get_task("demo", 1000)
            assert task.status == DONE
            assert task.port is None
            assert not orchestrator.supervisor.is_alive("demo", 1000)
            assert orchestrator.supervisor.live_ports() == {}
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_failure_after_start_stops_backend(self, orchestrator, upstream_repo):
        await orchestrator.open_project("demo", str(upstream_repo))

        try:
            with patch.object(orchestrator.store, "bind_port", side_effect=OSError("disk full")):
                with pytest.raises(OSError):
                    await orchestrator.create_clanker("demo")

            assert orchestrator.supervisor.live_ports() == {}
            assert orchestrator.list_tasks("demo") == []
            assert orchestrator.get_project("demo").next_task_id == 1001
            assert not orchestrator.workspace.worktree_path("demo", 1000).exists()
            with pytest.raises(UpstreamUnavailable):
                orchestrator.resolve_backend("demo", 1000)
        finally:
            await orchestrator.shutdown()
