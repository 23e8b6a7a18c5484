"""Project and task registry with write-through persistence."""

import logging
import secrets
import time
from pathlib import Path

from clanker_orchestrator.core.ports import DEFAULT_PORT_START, PortAllocator
from clanker_orchestrator.db.models import (
    ACTIVE_STATUSES,
    NOT_STARTED,
    RUNNING,
    STATUSES,
    Project,
    Task,
)
from clanker_orchestrator.db.storage import load_state, save_state
from clanker_orchestrator.errors import InvalidRequest, NotFound

logger = logging.getLogger(__name__)

DEFAULT_TASK_ID_START = 1000


def new_session_id() -> str:
    """Provisional session id, replaced once the backend issues a real one."""
    return f"ses_{int(time.time() * 1000)}{secrets.token_hex(5)}"


class StateStore:
    """Single source of truth for projects and tasks.

    Every durable mutation ends with a full rewrite of the state file. Reads
    return copies so callers can never mutate the registry behind its back.
    """

    def __init__(
        self,
        path: str | Path,
        task_id_start: int = DEFAULT_TASK_ID_START,
        port_start: int = DEFAULT_PORT_START,
    ):
        self.path = Path(path)
        self.task_id_start = task_id_start
        self.ports = PortAllocator(port_start)
        self._projects: dict[str, Project] = {}

    # ── Persistence ─────────────────────────────────────────────────────────

    def load(self) -> None:
        """Load the state file, dropping every persisted process binding."""
        projects, next_port = load_state(self.path)

        reset = []
        for project in projects.values():
            for task in project.tasks:
                if task.is_active or task.port is not None:
                    if task.is_active:
                        task.status = NOT_STARTED
                    task.port = None
                    task.touch()
                    reset.append(f"{project.name}:{task.id}")

        self._projects = projects
        if next_port is not None:
            self.ports.advance_to(next_port)

        logger.info(
            "Loaded %d project(s) from %s, next port %d",
            len(projects), self.path, self.ports.next_port,
        )
        if reset:
            logger.info("Reset %d task(s) with stale process bindings: %s", len(reset), ", ".join(reset))
            self.save()

    def save(self) -> None:
        save_state(self.path, self._projects, self.ports.next_port)

    # ── Projects ────────────────────────────────────────────────────────────

    def has_project(self, name: str) -> bool:
        return name in self._projects

    def open_project(self, name: str, upstream: str) -> Project:
        """Register a project. An existing project is returned unchanged."""
        project = self._projects.get(name)
        if project is not None:
            if upstream and upstream != project.upstream:
                logger.info(
                    "Project %s already tracks %s, ignoring upstream %s",
                    name, project.upstream, upstream,
                )
            return project.copy()

        project = Project(name=name, upstream=upstream, next_task_id=self.task_id_start)
        self._projects[name] = project
        self.save()
        logger.info("Opened project %s (%s)", name, upstream)
        return project.copy()

    def get_project(self, name: str) -> Project:
        return self._project(name).copy()

    def list_projects(self) -> list[Project]:
        return [p.copy() for p in self._projects.values()]

    # ── Tasks ───────────────────────────────────────────────────────────────

    def create_task(self, project_name: str, prompt: str | None = None) -> Task:
        """Allocate the next id and register a not-started task."""
        project = self._project(project_name)

        task_id = project.next_task_id
        project.next_task_id += 1

        task = Task(
            id=task_id,
            project=project_name,
            title=prompt or f"Task {task_id}",
            prompt=prompt,
            session_id=new_session_id(),
        )
        project.tasks.append(task)
        self.save()
        logger.info("Created task %s:%d", project_name, task_id)
        return task.copy()

    def get_task(self, project_name: str, task_id: int) -> Task:
        return self._task(project_name, task_id).copy()

    def list_tasks(self, project_name: str) -> list[Task]:
        return [t.copy() for t in self._project(project_name).tasks]

    def update_task(self, project_name: str, task_id: int, patch: dict) -> Task:
        """Apply a partial update. Logs are appended, never replaced."""
        task = self._task(project_name, task_id)
        changes = _validate_patch(patch)

        if "status" in changes:
            task.status = changes["status"]
            if not task.is_active:
                task.port = None
        if "logs" in changes:
            task.logs.extend(changes["logs"])
        if "title" in changes:
            task.title = changes["title"]
        if "contextusage" in changes:
            task.context_usage = changes["contextusage"]
        if "cost" in changes:
            task.cost = changes["cost"]
        if "pr_number" in changes:
            task.pr_number = changes["pr_number"]
        if "sessionID" in changes:
            task.session_id = changes["sessionID"]

        task.touch()
        self.save()
        return task.copy()

    def bind_port(self, project_name: str, task_id: int, port: int, status: str = RUNNING) -> Task:
        """Record a live backend for the task. The status must be an active one."""
        if status not in ACTIVE_STATUSES:
            raise InvalidRequest(f"A bound task cannot be {status!r}")
        task = self._task(project_name, task_id)
        task.port = port
        task.status = status
        task.touch()
        self.save()
        return task.copy()

    def release_port(self, project_name: str, task_id: int, status: str | None = None) -> Task:
        """Clear the task's backend binding, leaving the active states."""
        task = self._task(project_name, task_id)
        task.port = None
        if status is not None:
            task.status = status
        elif task.is_active:
            task.status = NOT_STARTED
        task.touch()
        self.save()
        return task.copy()

    def discard_task(self, project_name: str, task_id: int) -> None:
        """Drop a task whose provisioning failed. Its id stays consumed."""
        project = self._project(project_name)
        project.tasks = [t for t in project.tasks if t.id != task_id]
        self.save()
        logger.info("Discarded task %s:%d", project_name, task_id)

    # ── Internals ───────────────────────────────────────────────────────────

    def _project(self, name: str) -> Project:
        project = self._projects.get(name)
        if project is None:
            raise NotFound(f"Project not found: {name}")
        return project

    def _task(self, project_name: str, task_id: int) -> Task:
        task = self._project(project_name).find_task(task_id)
        if task is None:
            raise NotFound(f"Task not found: {project_name}:{task_id}")
        return task


def _validate_patch(patch: dict) -> dict:
    if not isinstance(patch, dict):
        raise InvalidRequest("Task update must be a JSON object")

    changes = {}

    if (status := patch.get("status")) is not None:
        if status not in STATUSES:
            raise InvalidRequest(f"Invalid status: {status!r}")
        changes["status"] = status

    if (logs := patch.get("logs")) is not None:
        if not isinstance(logs, list) or not all(isinstance(line, str) for line in logs):
            raise InvalidRequest("logs must be a list of strings")
        changes["logs"] = logs

    if (title := patch.get("title")) is not None:
        if not isinstance(title, str):
            raise InvalidRequest("title must be a string")
        changes["title"] = title

    if (usage := patch.get("contextusage")) is not None:
        if not _is_number(usage) or not 0 <= usage <= 100:
            raise InvalidRequest("contextusage must be a number between 0 and 100")
        changes["contextusage"] = float(usage)

    if (cost := patch.get("cost")) is not None:
        if not _is_number(cost) or cost < 0:
            raise InvalidRequest("cost must be a non-negative number")
        changes["cost"] = float(cost)

    if "pr_number" in patch:
        pr_number = patch["pr_number"]
        if pr_number is not None and (isinstance(pr_number, bool) or not isinstance(pr_number, int)):
            raise InvalidRequest("pr_number must be an integer")
        changes["pr_number"] = pr_number

    if (session_id := patch.get("sessionID")) is not None:
        if not isinstance(session_id, str):
            raise InvalidRequest("sessionID must be a string")
        changes["sessionID"] = session_id

    return changes


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
