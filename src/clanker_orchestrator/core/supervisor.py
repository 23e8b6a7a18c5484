"""Backend and autopush process supervision."""

import asyncio
import logging
import os
import shlex
import signal
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path

from clanker_orchestrator.config import Config
from clanker_orchestrator.core.ports import PortAllocator
from clanker_orchestrator.core.workspace import branch_name
from clanker_orchestrator.errors import SpawnError

logger = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"
BACKEND = "backend"
AUTOPUSH = "autopush"

_DIAGNOSTIC_BYTES = 2000


@dataclass
class ManagedProcess:
    project: str
    task_id: int
    kind: str
    process: asyncio.subprocess.Process
    port: int | None = None
    log_path: Path | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    def is_alive(self) -> bool:
        return self.process.returncode is None


class ProcessSupervisor:
    """Registry of the processes started for each ``(project, task_id)``.

    At most one backend and one autopush process exist per task. Backends
    are only registered once they accept connections on their port, so the
    registry doubles as the live port-assignment index used by the proxy.
    """

    def __init__(self, config: Config, ports: PortAllocator):
        self.config = config
        self.ports = ports
        self._backends: dict[tuple[str, int], ManagedProcess] = {}
        self._autopush: dict[tuple[str, int], ManagedProcess] = {}

    # ── Queries ─────────────────────────────────────────────────────────────

    def is_alive(self, project: str, task_id: int) -> bool:
        managed = self._backends.get((project, task_id))
        return managed is not None and managed.is_alive()

    def port_for(self, project: str, task_id: int) -> int | None:
        """Port of the task's backend, or None if it has none or it exited."""
        managed = self._backends.get((project, task_id))
        if managed is None or not managed.is_alive():
            return None
        return managed.port

    def live_ports(self) -> dict[tuple[str, int], int]:
        return {
            key: m.port for key, m in self._backends.items() if m.is_alive() and m.port is not None
        }

    def has_autopush(self, project: str, task_id: int) -> bool:
        managed = self._autopush.get((project, task_id))
        return managed is not None and managed.is_alive()

    # ── Backends ────────────────────────────────────────────────────────────

    async def start_backend(
        self,
        project: str,
        task_id: int,
        working_dir: str | Path,
        log_path: Path | None = None,
    ) -> int:
        """Spawn the task's backend on a fresh port and wait until it listens."""
        key = (project, task_id)
        existing = self._backends.get(key)
        if existing is not None and existing.is_alive():
            return existing.port

        port = self.ports.allocate()
        argv = self.backend_argv(port, working_dir)
        env = {
            **os.environ,
            "CLANKER_PROJECT": project,
            "CLANKER_TASK_ID": str(task_id),
            "CLANKER_API_URL": self.config.api_url,
        }

        logger.info("Starting backend for %s:%d on port %d: %s", project, task_id, port, shlex.join(argv))
        process = await self._spawn(argv, cwd=working_dir, env=env, log_path=log_path)
        managed = ManagedProcess(project, task_id, BACKEND, process, port=port, log_path=log_path)

        try:
            await self._wait_until_ready(managed)
        except SpawnError:
            await self._terminate(managed)
            raise

        self._backends[key] = managed
        logger.info("Backend for %s:%d ready on port %d (pid %d)", project, task_id, port, managed.pid)
        return port

    async def stop_backend(self, project: str, task_id: int) -> bool:
        """Terminate and deregister the task's backend. Returns False if there was none."""
        managed = self._backends.pop((project, task_id), None)
        if managed is None:
            return False
        await self._terminate(managed)
        logger.info("Stopped backend for %s:%d (port %s)", project, task_id, managed.port)
        return True

    def backend_argv(self, port: int, working_dir: str | Path) -> list[str]:
        return [
            part.format(port=port, directory=str(working_dir))
            for part in shlex.split(self.config.backend_command)
        ]

    async def _wait_until_ready(self, managed: ManagedProcess):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.readiness_timeout

        while True:
            if not managed.is_alive():
                raise SpawnError(
                    f"Backend for {managed.project}:{managed.task_id} exited with code "
                    f"{managed.process.returncode} before listening on port {managed.port}"
                    f"{_diagnostic(managed.log_path)}"
                )
            if await _port_open(managed.port):
                return
            if loop.time() >= deadline:
                raise SpawnError(
                    f"Backend for {managed.project}:{managed.task_id} not listening on port "
                    f"{managed.port} after {self.config.readiness_timeout:.1f}s"
                    f"{_diagnostic(managed.log_path)}"
                )
            await asyncio.sleep(self.config.readiness_interval)

    # ── Autopush ────────────────────────────────────────────────────────────

    async def start_autopush(self, project: str, task_id: int, worktree_path: str | Path) -> int:
        """Start the task's autopush loop, replacing any loop already running. Returns its pid."""
        await self.stop_autopush(project, task_id)

        argv = self.autopush_argv(worktree_path, branch_name(task_id))
        process = await self._spawn(argv, cwd=worktree_path, env=None, log_path=None)
        self._autopush[(project, task_id)] = ManagedProcess(project, task_id, AUTOPUSH, process)
        logger.info("Started autopush for %s:%d (pid %d)", project, task_id, process.pid)
        return process.pid

    async def stop_autopush(self, project: str, task_id: int) -> bool:
        managed = self._autopush.pop((project, task_id), None)
        if managed is None:
            return False
        await self._terminate(managed)
        logger.info("Stopped autopush for %s:%d", project, task_id)
        return True

    def autopush_argv(self, worktree_path: str | Path, branch: str) -> list[str]:
        return [
            sys.executable, "-m", "clanker_orchestrator.cli", "autopush", str(worktree_path),
            "--branch", branch,
            "--interval", str(self.config.autopush_interval),
        ]

    # ── Lifecycle ───────────────────────────────────────────────────────────

    async def shutdown(self):
        """Stop every supervised process."""
        managed = list(self._backends.values()) + list(self._autopush.values())
        self._backends.clear()
        self._autopush.clear()
        if managed:
            await asyncio.gather(*(self._terminate(m) for m in managed))
            logger.info("Stopped %d supervised process(es)", len(managed))

    def reconcile_on_startup(self, next_port: int | None = None) -> list[int]:
        """Kill backends a previous run left listening in the managed port range.

        The range starts at ``port_start`` and covers ``reconcile_span`` ports
        or every port up to the persisted ``next_port``, whichever reaches
        further. If the listeners cannot be discovered, falls back to killing
        processes by name. Returns the pids that were signalled.
        """
        low = self.config.port_start
        high = max(low + self.config.reconcile_span, next_port or 0) - 1

        try:
            pids = _listening_pids(low, high)
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning("Could not list listeners on ports %d-%d (%s), sweeping by name", low, high, e)
            self._kill_by_name()
            return []

        pids = [pid for pid in pids if pid != os.getpid()]
        signalled = []
        for pid in pids:
            try:
                os.kill(pid, signal.SIGTERM)
                signalled.append(pid)
            except ProcessLookupError:
                pass
            except PermissionError:
                logger.warning("Not allowed to terminate stale process %d", pid)

        if signalled:
            logger.info("Terminated %d stale backend(s) on ports %d-%d: %s", len(signalled), low, high, signalled)
            _wait_for_exit(signalled, self.config.stop_timeout)
        return signalled

    def _kill_by_name(self):
        pattern = self.config.backend_process_name
        try:
            subprocess.run(["pkill", "-TERM", "-f", pattern], capture_output=True, text=True, timeout=10)
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning("Sweep of stale %r processes failed: %s", pattern, e)

    # ── Process plumbing ────────────────────────────────────────────────────

    async def _spawn(
        self,
        argv: list[str],
        cwd: str | Path,
        env: dict | None,
        log_path: Path | None,
    ) -> asyncio.subprocess.Process:
        log_file = None
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_file = open(log_path, "ab")
        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=log_file if log_file is not None else asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnError(f"Could not launch {argv[0]!r}: {e}") from e
        finally:
            if log_file is not None:
                log_file.close()

    async def _terminate(self, managed: ManagedProcess):
        """SIGTERM the process group, escalating to SIGKILL after the stop timeout."""
        process = managed.process
        if process.returncode is not None:
            return

        _signal_group(process.pid, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.stop_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "%s for %s:%d ignored SIGTERM, killing pid %d",
                managed.kind, managed.project, managed.task_id, process.pid,
            )
            _signal_group(process.pid, signal.SIGKILL)
            await process.wait()


def _signal_group(pid: int, sig: int):
    # Children run as session leaders, so their pid is also their process group id.
    try:
        os.killpg(pid, sig)
    except ProcessLookupError:
        pass


async def _port_open(port: int) -> bool:
    try:
        _, writer = await asyncio.open_connection(LOOPBACK, port)
    except OSError:
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


def _diagnostic(log_path: Path | None) -> str:
    if log_path is None or not log_path.exists():
        return ""
    with open(log_path, "rb") as f:
        f.seek(0, os.SEEK_END)
        f.seek(max(0, f.tell() - _DIAGNOSTIC_BYTES))
        tail = f.read().decode(errors="replace").strip()
    return f": {tail}" if tail else ""


def _listening_pids(low: int, high: int) -> list[int]:
    result = subprocess.run(
        ["lsof", "-t", "-nP", f"-iTCP:{low}-{high}", "-sTCP:LISTEN"],
        capture_output=True,
        text=True,
        timeout=10,
    )
    # lsof exits 1 when nothing matches
    if result.returncode not in (0, 1):
        raise subprocess.CalledProcessError(result.returncode, result.args, result.stdout, result.stderr)
    return sorted({int(line) for line in result.stdout.split() if line.strip().isdigit()})


def _is_pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True


def _wait_for_exit(pids: list[int], timeout: float):
    deadline = time.monotonic() + timeout
    remaining = list(pids)
    while remaining and time.monotonic() < deadline:
        remaining = [pid for pid in remaining if _is_pid_alive(pid)]
        if remaining:
            time.sleep(0.1)
    for pid in remaining:
        logger.warning("Stale process %d survived SIGTERM, killing", pid)
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
