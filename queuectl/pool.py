import json
import logging
import os
import signal
import subprocess
import sys
from pathlib import Path
from typing import Callable, List, Optional

from .config import config_path
from .errors import ProcessSignalError, ValidationError
from .storage import db_path

logger = logging.getLogger(__name__)

DEFAULT_PID_FILE = ".worker_pids.json"
DEFAULT_LOG_DIR = "worker-logs"


def pid_file_path() -> str:
    return os.environ.get("QUEUECTL_PIDS", DEFAULT_PID_FILE)


def log_dir_path() -> str:
    return os.environ.get("QUEUECTL_LOG_DIR", DEFAULT_LOG_DIR)


def pid_alive(pid: int) -> bool:
    """Signal 0 checks the pid exists; nothing is delivered."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by someone else
        return True
    return True


def is_worker_process(pid: int) -> bool:
    """Check ``pid`` still runs ``queuectl worker run`` and was not reused.

    Relies on /proc; where it is missing the pid is taken at its word.
    """
    if not os.path.isdir("/proc"):
        return True
    try:
        with open(f"/proc/{pid}/cmdline", "rb") as f:
            args = f.read().decode(errors="replace").split("\0")
    except FileNotFoundError:
        return False
    except OSError:
        return True
    return any("queuectl" in arg for arg in args) and "worker" in args and "run" in args


def worker_alive(pid: int) -> bool:
    return pid_alive(pid) and is_worker_process(pid)


def spawn_worker(ordinal: int, log_dir: Optional[str] = None) -> int:
    """Start a detached ``queuectl worker run`` process and return its pid."""
    directory = Path(log_dir or log_dir_path())
    directory.mkdir(parents=True, exist_ok=True)

    env = dict(os.environ)
    env["QUEUECTL_DB"] = os.path.abspath(db_path())
    env["QUEUECTL_CONFIG"] = os.path.abspath(config_path())

    with open(directory / f"worker-{ordinal}.log", "a") as log:
        process = subprocess.Popen(
            [sys.executable, "-m", "queuectl", "worker", "run", "--id", str(ordinal)],
            stdin=subprocess.DEVNULL,
            stdout=log,
            stderr=subprocess.STDOUT,
            env=env,
            start_new_session=True,
        )
    return process.pid


class WorkerRegistry:
    """Tracking record of spawned worker pids, kept as a JSON list on disk."""

    def __init__(self, path: str = DEFAULT_PID_FILE, is_alive: Callable[[int], bool] = worker_alive):
        self.path = path
        self.is_alive = is_alive

    def pids(self) -> List[int]:
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable worker record %s: %s", self.path, e)
            return []
        if not isinstance(data, list):
            logger.warning("Ignoring malformed worker record %s", self.path)
            return []
        return [int(pid) for pid in data]

    def add(self, pids: List[int]) -> None:
        """Append ``pids`` and swap the whole record in with one rename."""
        existing = self.pids()
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(existing + list(pids), f)
        os.replace(tmp_path, self.path)

    def alive(self) -> List[int]:
        return [pid for pid in self.pids() if self.is_alive(pid)]

    def clear(self) -> None:
        if os.path.exists(self.path):
            os.remove(self.path)


class WorkerPool:
    def __init__(self, registry: WorkerRegistry, spawner: Callable[[int], int] = spawn_worker):
        self.registry = registry
        self.spawner = spawner

    def start(self, count: int = 1) -> List[int]:
        """Spawn ``count`` worker processes and record their pids."""
        if isinstance(count, bool) or not isinstance(count, int) or count < 1:
            raise ValidationError(f"Worker count must be a positive integer, got {count!r}")

        first = len(self.registry.pids()) + 1
        pids = []
        for ordinal in range(first, first + count):
            pid = self.spawner(ordinal)
            logger.info("Worker %d started (pid %d)", ordinal, pid)
            pids.append(pid)
        self.registry.add(pids)
        return pids

    def stop(self) -> int:
        """Ask every tracked worker to finish its current job and exit.

        Returns the number of workers signalled. Workers that are already
        gone are logged and skipped; with nothing tracked this does nothing.
        """
        pids = self.registry.pids()
        if not pids:
            logger.info("No active workers to stop")
            return 0

        signalled = 0
        for pid in pids:
            try:
                self._terminate(pid)
                signalled += 1
                logger.info("Sent stop signal to worker pid %d", pid)
            except ProcessSignalError as e:
                logger.warning(str(e))
        self.registry.clear()
        return signalled

    def active_workers(self) -> List[int]:
        return self.registry.alive()

    def _terminate(self, pid: int) -> None:
        if not self.registry.is_alive(pid):
            raise ProcessSignalError(pid, "process already exited or pid reused by another program")
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            raise ProcessSignalError(pid, "process already exited")
        except PermissionError as e:
            raise ProcessSignalError(pid, str(e))
