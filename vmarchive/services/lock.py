"""
Advisory inter-process lock on a sidecar file.

The lock is an ``flock`` on ``<resource>.lock``. The kernel drops it when the
holding process exits, so a crash never leaves a stale lock behind.
"""
import fcntl
import logging
import os
import time
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1


class LockError(Exception):
    """Raised when a lock cannot be used."""
    pass


class LockTimeoutError(LockError):
    """Raised when the resource stays busy for the whole timeout."""
    pass


class AdvisoryLock:
    """
    Handle on the lock of one resource.

    Usage:
        with AdvisoryLock(path).acquire(timeout=60):
            ...
    """

    def __init__(self, resource: Union[str, Path], suffix: str = ".lock"):
        self.resource = Path(resource)
        self.lock_path = self.resource.with_name(self.resource.name + suffix)
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def lock(self, timeout: float = -1) -> None:
        """
        Acquire the lock.

        Args:
            timeout: 0 tries once, a negative value blocks until acquired,
                a positive value polls until that many seconds have passed

        Raises:
            LockError: If this handle already holds the lock or the lock
                file cannot be opened
            LockTimeoutError: If the lock stays busy
        """
        if self.held:
            raise LockError(f"Lock {self.lock_path} is already held by this handle")

        try:
            fd = os.open(str(self.lock_path), os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise LockError(f"Cannot open lock file {self.lock_path}: {e}") from e

        try:
            if timeout < 0:
                fcntl.flock(fd, fcntl.LOCK_EX)
            else:
                self._poll(fd, timeout)
        except BaseException:
            os.close(fd)
            raise

        self._fd = fd
        logger.debug(f"Acquired lock {self.lock_path}")

    def _poll(self, fd: int, timeout: float) -> None:
        deadline = time.monotonic() + timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except BlockingIOError:
                pass
            if time.monotonic() >= deadline:
                raise LockTimeoutError(
                    f"Timed out after {timeout}s waiting for lock {self.lock_path}"
                )
            time.sleep(POLL_INTERVAL)

    def unlock(self) -> None:
        """Release the lock. Does nothing if it is not held."""
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        logger.debug(f"Released lock {self.lock_path}")

    def acquire(self, timeout: float = -1) -> "AdvisoryLock":
        """Lock and return self for use in a ``with`` statement."""
        self.lock(timeout)
        return self

    def __enter__(self) -> "AdvisoryLock":
        if not self.held:
            self.lock()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.unlock()
        return False

    def __del__(self):
        if getattr(self, "_fd", None) is not None:
            self.unlock()
