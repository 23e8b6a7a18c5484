"""Durable state file: one JSON document rewritten atomically."""

import json
import logging
import os
import tempfile
from pathlib import Path

from clanker_orchestrator.db.models import Project
from clanker_orchestrator.errors import StateFileError

logger = logging.getLogger(__name__)


def load_state(path: Path) -> tuple[dict[str, Project], int | None]:
    """Load projects and the persisted next port. A missing file is a cold start."""
    if not path.exists():
        logger.info("No state file at %s, starting cold", path)
        return {}, None

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        projects = {
            name: Project.from_dict(data) for name, data in raw.get("projects", [])
        }
        next_port = raw.get("nextPort")
    except (OSError, ValueError, KeyError, TypeError) as e:
        raise StateFileError(f"Cannot read state file {path}: {e}") from e

    return projects, int(next_port) if next_port is not None else None


def save_state(path: Path, projects: dict[str, Project], next_port: int) -> None:
    """Serialize the registry and replace the state file in one rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "projects": [[name, p.to_dict()] for name, p in projects.items()],
        "nextPort": next_port,
    }
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
