"""Orchestrator service: owns the registries and drives task provisioning."""

import asyncio
import logging
from collections import defaultdict
from pathlib import Path

import httpx

from clanker_orchestrator.config import Config
from clanker_orchestrator.core.store import StateStore
from clanker_orchestrator.core.supervisor import LOOPBACK, ProcessSupervisor
from clanker_orchestrator.core.workspace import WorkspaceManager, validate_project_name
from clanker_orchestrator.db.models import NOT_STARTED, RUNNING, TERMINAL_STATUSES, Project, Task
from clanker_orchestrator.db.storage import load_state
from clanker_orchestrator.errors import (
    InvalidRequest,
    SpawnError,
    UpstreamUnavailable,
    WorktreeError,
)
from clanker_orchestrator.integrations import slack as slack_mod
from clanker_orchestrator.web.proxy import ProxyRouter

logger = logging.getLogger(__name__)

SESSION_TIMEOUT_SECONDS = 10.0


class Orchestrator:
    """Single owner of projects, tasks, live ports and supervised processes.

    ``init()`` must complete before any backend is started: it clears
    backends left over from a previous run and only then loads state.
    """

    def __init__(
        self,
        config: Config,
        store: StateStore | None = None,
        workspace: WorkspaceManager | None = None,
        supervisor: ProcessSupervisor | None = None,
        proxy_client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self.store = store or StateStore(config.state_path, config.task_id_start, config.port_start)
        self.workspace = workspace or WorkspaceManager(config.workspace_dir)
        self.supervisor = supervisor or ProcessSupervisor(config, self.store.ports)
        self.proxy = ProxyRouter(self.resolve_backend, client=proxy_client)
        self._http = httpx.AsyncClient(timeout=SESSION_TIMEOUT_SECONDS)
        self._task_locks: dict[tuple[str, int], asyncio.Lock] = defaultdict(asyncio.Lock)

    # ── Lifecycle ───────────────────────────────────────────────────────────

    async def init(self):
        if self.config.reconcile_on_startup:
            _, next_port = load_state(self.store.path)
            await asyncio.to_thread(self.supervisor.reconcile_on_startup, next_port)
        self.store.load()

    async def shutdown(self):
        await self.supervisor.shutdown()
        for project in self.store.list_projects():
            for task in project.tasks:
                if task.is_active or task.port is not None:
                    self.store.release_port(project.name, task.id, NOT_STARTED)
        self.store.save()
        await self.proxy.aclose()
        await self._http.aclose()

    # ── Projects ────────────────────────────────────────────────────────────

    async def open_project(self, name: str, upstream: str | None) -> Project:
        """Ensure the project's clone exists and register it. First upstream wins."""
        validate_project_name(name)
        async with self.workspace.lock(name):
            if self.store.has_project(name):
                existing = self.store.get_project(name)
                await self.workspace.ensure_repository(name, existing.upstream)
                return self.store.open_project(name, upstream or existing.upstream)

            if not upstream:
                raise InvalidRequest("upstream is required to open a new project")
            await self.workspace.ensure_repository(name, upstream)
            return self.store.open_project(name, upstream)

    def get_project(self, name: str) -> Project:
        return self.store.get_project(name)

    # ── Tasks ───────────────────────────────────────────────────────────────

    def list_tasks(self, project: str) -> list[Task]:
        return self.store.list_tasks(project)

    async def create_clanker(self, project: str, prompt: str | None = None) -> tuple[int, int]:
        """Provision a task end to end. Returns ``(task_id, port)``.

        A clone failure happens before an id is issued. Any later failure
        discards the task and stops whatever was started for it; its id
        stays consumed. Updates to the task wait until provisioning ends.
        """
        upstream = self.store.get_project(project).upstream

        async with self.workspace.lock(project):
            repo = await self.workspace.ensure_repository(project, upstream)
            await self.workspace.pull_latest(repo)

            task = self.store.create_task(project, prompt)
            provisioning = self._task_locks[(project, task.id)]
            await provisioning.acquire()

            worktree = self.workspace.worktree_path(project, task.id)
            try:
                await self.workspace.create_worktree(repo, worktree, task.id)
            except BaseException:
                self.store.discard_task(project, task.id)
                provisioning.release()
                raise

        try:
            port = await self._launch(project, task.id, worktree)
        except BaseException:
            await self._stop_processes(project, task.id)
            self.store.discard_task(project, task.id)
            async with self.workspace.lock(project):
                await self.workspace.remove_worktree(project, task.id)
            raise
        finally:
            provisioning.release()

        return task.id, port

    async def update_task(self, project: str, task_id: int, patch: dict) -> Task:
        """Apply a status/log update and bring the task's processes in line with it."""
        async with self._task_locks[(project, task_id)]:
            previous = self.store.get_task(project, task_id)
            task = self.store.update_task(project, task_id, patch)

            if task.status != previous.status:
                if not task.is_active:
                    await self._stop_processes(project, task_id)
                elif not self.supervisor.is_alive(project, task_id):
                    task = await self._resume(project, task)

                if task.status in TERMINAL_STATUSES:
                    await self._notify(task)

        return task

    def resolve_backend(self, project: str, task_id: int) -> tuple[int, Path]:
        port = self.supervisor.port_for(project, task_id)
        if port is None:
            raise UpstreamUnavailable(f"No backend running for {project}:{task_id}")
        return port, self.workspace.worktree_path(project, task_id)

    # ── Internals ───────────────────────────────────────────────────────────

    async def _launch(self, project: str, task_id: int, worktree: Path, status: str | None = None) -> int:
        port = await self.supervisor.start_backend(
            project, task_id, worktree, log_path=self.workspace.log_path(project, task_id)
        )
        self.store.bind_port(project, task_id, port, status=status or RUNNING)

        if self.config.bootstrap_session:
            session_id = await self._bootstrap_session(port, worktree)
            if session_id:
                self.store.update_task(project, task_id, {"sessionID": session_id})

        if self.config.autopush_enabled:
            try:
                await self.supervisor.start_autopush(project, task_id, worktree)
            except SpawnError as e:
                logger.warning("Autopush not started for %s:%d: %s", project, task_id, e)

        return port

    async def _resume(self, project: str, task: Task) -> Task:
        worktree = self.workspace.worktree_path(project, task.id)
        try:
            if not worktree.exists():
                raise WorktreeError(f"Worktree missing for task {project}:{task.id}: {worktree}")
            await self._launch(project, task.id, worktree, status=task.status)
        except BaseException:
            await self._stop_processes(project, task.id)
            self.store.release_port(project, task.id, NOT_STARTED)
            raise
        return self.store.get_task(project, task.id)

    async def _stop_processes(self, project: str, task_id: int):
        await self.supervisor.stop_autopush(project, task_id)
        await self.supervisor.stop_backend(project, task_id)

    async def _bootstrap_session(self, port: int, worktree: Path) -> str | None:
        """Ask the backend for a session. Failure keeps the provisional session id."""
        try:
            response = await self._http.post(
                f"http://{LOOPBACK}:{port}/session",
                params={"directory": str(worktree)},
                json={},
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Session bootstrap on port %d failed: %s", port, e)
            return None

        session_id = data.get("id") if isinstance(data, dict) else None
        if not isinstance(session_id, str) or not session_id:
            logger.warning("Session bootstrap on port %d returned no id", port)
            return None
        return session_id

    async def _notify(self, task: Task):
        """Post a terminal status change to Slack (best-effort)."""
        if not slack_mod.is_configured(self.config):
            return
        try:
            await asyncio.to_thread(slack_mod.notify_task_status, self.config, task)
        except Exception:
            logger.exception("Failed to send Slack notification for %s:%d", task.project, task.id)
