"""
Common handle for profile files.

A profile owns a ConfigStore bound to one path and can lock that path
against other processes through an AdvisoryLock sidecar.
"""
import logging
import shutil
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional, Union

from vmarchive.services.configstore import ConfigStore, FileNotSetError
from vmarchive.services.lock import AdvisoryLock

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


def format_timestamp_ms(timestamp_ms: int) -> str:
    """Human readable local time of a millisecond timestamp."""
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%a %b %d %H:%M:%S %Y")


class ProfileError(Exception):
    """Base class for profile content errors."""
    pass


class DirtyProfileError(ProfileError):
    """Raised when a profile was left half-edited by an interrupted run."""
    pass


class ProfileMismatchError(ProfileError):
    """Raised when a profile belongs to a different machine than expected."""
    pass


class GenerationStateError(ProfileError):
    """Raised on an invalid generation status transition."""
    pass


class ProfileFile:
    """Profile handle: a ConfigStore plus its backing path."""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.store = ConfigStore(path)

    @classmethod
    def load(cls, path: Union[str, Path]):
        """Create a handle and read the file at ``path``."""
        profile = cls(path)
        profile.read()
        return profile

    @property
    def path(self) -> Optional[Path]:
        return self.store.path

    @property
    def directory(self) -> Path:
        if self.path is None:
            raise FileNotSetError("Profile has no path")
        return self.path.parent

    def exists(self) -> bool:
        return self.path is not None and self.path.is_file()

    def read(self, path: Optional[Union[str, Path]] = None) -> None:
        self.store.read(path)

    def reload(self) -> None:
        self.store.read()

    def write(self, path: Optional[Union[str, Path]] = None) -> None:
        self.store.write(path)

    def make_backup(self) -> Optional[Path]:
        """
        Copy the current file to ``<file>.bak``.

        Returns:
            Path of the copy, or None when there is no file yet
        """
        if not self.exists():
            return None
        backup_path = self.path.with_name(self.path.name + ".bak")
        shutil.copyfile(self.path, backup_path)
        logger.debug(f"Backed up {self.path} to {backup_path}")
        return backup_path

    @contextmanager
    def locked(self, timeout: float = -1) -> Iterator["ProfileFile"]:
        """
        Hold the profile lock for the duration of a ``with`` block.

        Raises:
            LockTimeoutError: If another process keeps the lock
        """
        if self.path is None:
            raise FileNotSetError("Cannot lock a profile without a path")
        lock = AdvisoryLock(self.path)
        lock.lock(timeout)
        try:
            yield self
        finally:
            lock.unlock()
