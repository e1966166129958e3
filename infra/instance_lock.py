"""
Single Instance Lock

PID file guard so two bot processes never manage the same positions file.
A lock left behind by a dead process is reclaimed on the next start.
"""

import atexit
import os
from pathlib import Path
import logging

logger = logging.getLogger(__name__)


class SingleInstanceLock:
    """
    File-based single instance lock using PID files.

    Usage:
        with SingleInstanceLock("data/memetrader.pid"):
            run()
    """

    def __init__(self, lock_file: str):
        self.lock_file = Path(lock_file)
        self.acquired = False
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        atexit.register(self.release)

    @staticmethod
    def _is_process_running(pid: int) -> bool:
        try:
            # Signal 0 only checks existence
            os.kill(pid, 0)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but owned by someone else
            return True

    def _existing_pid(self) -> int:
        try:
            return int(self.lock_file.read_text().strip())
        except (ValueError, OSError):
            return 0

    def acquire(self) -> bool:
        """
        Returns:
            True if lock acquired, False if another live instance holds it
        """
        if self.acquired:
            return True

        for _ in range(2):
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                existing_pid = self._existing_pid()
                if existing_pid and existing_pid != os.getpid() and self._is_process_running(existing_pid):
                    logger.error(
                        f"Another instance is running (PID={existing_pid}). Lock file: {self.lock_file}"
                    )
                    return False
                logger.warning(f"Removing stale lock file {self.lock_file} (PID={existing_pid or 'unknown'})")
                self.lock_file.unlink(missing_ok=True)
                continue

            with os.fdopen(fd, "w") as f:
                f.write(str(os.getpid()))
            self.acquired = True
            logger.info(f"Lock acquired (PID={os.getpid()}, file={self.lock_file})")
            return True

        logger.error(f"Could not acquire lock file {self.lock_file}")
        return False

    def release(self) -> None:
        """Release the lock (delete PID file)"""
        if not self.acquired:
            return
        self.acquired = False
        if self._existing_pid() == os.getpid():
            self.lock_file.unlink(missing_ok=True)
            logger.info(f"Lock released (file={self.lock_file})")

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Another instance holds {self.lock_file}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
