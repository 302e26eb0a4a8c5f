import logging
import os
from pathlib import Path
from typing import Optional

from .errors import LockHeld

logger = logging.getLogger(__name__)


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user.
        return True
    return True


class PidLock:
    """Host-local mutual exclusion between orchestrator runs, keyed by a PID file."""

    def __init__(self, path: str):
        self.path = Path(path)
        self._held = False

    def _read_pid(self) -> Optional[int]:
        try:
            return int(self.path.read_text().strip())
        except (OSError, ValueError):
            return None

    def acquire(self) -> None:
        if self.path.exists():
            pid = self._read_pid()
            if pid and pid != os.getpid() and pid_alive(pid):
                logger.error("Another instance is already running with PID %s. Exiting.", pid)
                raise LockHeld(pid)
            logger.warning("Stale lock file found. Removing.")
            self.path.unlink(missing_ok=True)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(f"{os.getpid()}\n")
        self._held = True

    def release(self) -> None:
        if self._held and self._read_pid() == os.getpid():
            self.path.unlink(missing_ok=True)
        self._held = False

    def __enter__(self) -> "PidLock":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()
