"""
Exclusive advisory lock held by a vault session.
"""

import os
import time
import logging
import platform
from pathlib import Path
from typing import Optional, Union

from . import config
from .errors import VaultBusyError, VaultIOError

logger = logging.getLogger(__name__)

if platform.system() == "Windows":
    import msvcrt
else:
    import fcntl


class VaultLock:
    """
    Lock on ``<vault>.lock`` taken for a whole Open -> Commit/Abort span.

    Uses ``fcntl.flock`` on POSIX and ``msvcrt.locking`` on Windows. The lock
    dies with the process, so a crashed session never leaves it held. Lock
    files are left in place when their vault is deleted or renamed.
    """

    def __init__(self, path: Union[str, Path], timeout: float = config.LOCK_TIMEOUT_DEFAULT_SECONDS):
        self.path = Path(path)
        self.timeout = timeout
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def _try_lock(self, fd: int) -> bool:
        try:
            if platform.system() == "Windows":
                msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
            else:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            return False
        return True

    def _is_current(self, fd: int) -> bool:
        """Whether ``fd`` still refers to the file at ``self.path``."""
        try:
            on_disk = os.stat(str(self.path))
        except FileNotFoundError:
            return False
        opened = os.fstat(fd)
        return (on_disk.st_dev, on_disk.st_ino) == (opened.st_dev, opened.st_ino)

    def _unlock(self, fd: int) -> None:
        try:
            if platform.system() == "Windows":
                os.lseek(fd, 0, os.SEEK_SET)
                msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
            else:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def acquire(self) -> None:
        """
        Take the lock, waiting up to ``timeout`` seconds.

        A lock taken on a file that was unlinked or replaced in the meantime
        is dropped and taken again on the current file, so two holders can
        never lock different inodes under the same name.

        Raises:
            VaultBusyError: If another session keeps holding the lock
        """
        if self._fd is not None:
            return
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                fd = os.open(str(self.path), os.O_RDWR | os.O_CREAT, config.FILE_MODE)
            except OSError as e:
                raise VaultIOError(f"Failed to open lock file {self.path}: {e}") from e

            while not self._try_lock(fd):
                if time.monotonic() >= deadline:
                    os.close(fd)
                    raise VaultBusyError(f"Vault is in use by another session (lock {self.path}).")
                time.sleep(config.LOCK_POLL_INTERVAL_SECONDS)
            if self._is_current(fd):
                break
            logger.debug(f"Lock file {self.path} was replaced while waiting; retrying")
            self._unlock(fd)
        self._fd = fd
        logger.debug(f"Acquired lock {self.path}")

    def release(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        self._unlock(fd)
        logger.debug(f"Released lock {self.path}")

    def __enter__(self) -> "VaultLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
