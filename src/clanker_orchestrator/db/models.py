"""Data models for the clanker orchestrator."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

NOT_STARTED = "not_started"
RUNNING = "running"
WAITING = "waiting"
DONE = "done"
FAILED = "failed"
MERGED = "merged"

STATUSES = (NOT_STARTED, RUNNING, WAITING, DONE, FAILED, MERGED)
ACTIVE_STATUSES = frozenset({RUNNING, WAITING})
TERMINAL_STATUSES = frozenset({DONE, FAILED, MERGED})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Task:
    id: int
    project: str
    title: str
    prompt: str | None = None
    status: str = NOT_STARTED
    context_usage: float = 0.0
    cost: float = 0.0
    pr_number: int | None = None
    session_id: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    port: int | None = None
    logs: list[str] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def touch(self) -> None:
        self.updated_at = max(utcnow(), self.created_at)

    def copy(self) -> "Task":
        return replace(self, logs=list(self.logs))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "project": self.project,
            "prompt": self.prompt,
            "status": self.status,
            "contextusage": self.context_usage,
            "cost": self.cost,
            "pr_number": self.pr_number,
            "sessionID": self.session_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "port": self.port,
            "logs": list(self.logs),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Task":
        return cls(
            id=int(data["id"]),
            project=data["project"],
            title=data.get("title") or f"Task {data['id']}",
            prompt=data.get("prompt"),
            status=data.get("status", NOT_STARTED),
            context_usage=float(data.get("contextusage", 0.0)),
            cost=float(data.get("cost", 0.0)),
            pr_number=data.get("pr_number"),
            session_id=data.get("sessionID", ""),
            created_at=_parse_dt(data.get("created_at")),
            updated_at=_parse_dt(data.get("updated_at")),
            port=data.get("port"),
            logs=list(data.get("logs", [])),
        )


@dataclass
class Project:
    name: str
    upstream: str
    tasks: list[Task] = field(default_factory=list)
    next_task_id: int = 1

    def find_task(self, task_id: int) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def copy(self) -> "Project":
        return replace(self, tasks=[t.copy() for t in self.tasks])

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "upstream": self.upstream,
            "tasks": [t.to_dict() for t in self.tasks],
            "nextTaskId": self.next_task_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Project":
        return cls(
            name=data["name"],
            upstream=data.get("upstream", ""),
            tasks=[Task.from_dict(t) for t in data.get("tasks", [])],
            next_task_id=int(data.get("nextTaskId", 1)),
        )


def _parse_dt(val: str | None) -> datetime:
    if val is None:
        return utcnow()
    parsed = datetime.fromisoformat(val)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
