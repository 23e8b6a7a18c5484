"""Autopush loop: periodically commit and push a task worktree's changes.

Runs inside its own process (``clanker autopush``) so that a slow push never
stalls the orchestrator. The supervisor starts and terminates that process.
"""

import logging
import signal
import threading
from datetime import datetime, timezone
from pathlib import Path

from clanker_orchestrator.integrations.git import GitError, commit_all, get_status, push

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 30.0


class Autopusher:
    """Commits pending changes in a worktree and pushes them to the task branch."""

    def __init__(self, worktree: str | Path, branch: str, interval: float = DEFAULT_INTERVAL):
        self.worktree = Path(worktree)
        self.branch = branch
        self.interval = interval
        self._stop_event = threading.Event()

    def run_cycle(self) -> bool:
        """One pass. Returns True if a commit was made."""
        if not get_status(self.worktree):
            return False

        message = f"autopush: {datetime.now(timezone.utc).isoformat(timespec='seconds')}"
        commit_all(self.worktree, message)
        logger.info("Committed pending changes in %s", self.worktree)

        try:
            push(self.worktree, self.branch)
        except GitError as e:
            logger.warning("Tracking push of %s failed, retrying plain push: %s", self.branch, e)
            push(self.worktree)
        return True

    def run_forever(self):
        """Loop until stopped, logging and skipping failed cycles."""
        logger.info(
            "Autopush started for %s on %s every %.0fs", self.worktree, self.branch, self.interval
        )
        while not self._stop_event.is_set():
            try:
                self.run_cycle()
            except GitError as e:
                logger.warning("Autopush cycle failed for %s: %s", self.worktree, e)
            except Exception:
                logger.exception("Unexpected error in autopush loop")
            self._stop_event.wait(self.interval)
        logger.info("Autopush stopped for %s", self.worktree)

    def stop(self, *_args):
        self._stop_event.set()

    def install_signal_handlers(self):
        signal.signal(signal.SIGTERM, self.stop)
        signal.signal(signal.SIGINT, self.stop)
