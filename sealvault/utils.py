import platform
import os
import stat
import tempfile
import logging
from pathlib import Path
from typing import Callable, List, Optional, Union

from . import config

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

if platform.system() == "Windows":
    try:
        import win32security
        import win32api
        import win32con
        import win32file
        WINDOWS_SECURITY_AVAILABLE = True
    except ImportError:
        logger.warning("pywin32 not fully installed, cannot set Windows file permissions securely.")
        WINDOWS_SECURITY_AVAILABLE = False
else:
    WINDOWS_SECURITY_AVAILABLE = False


def _set_windows_permissions(path: str) -> bool:
    """
    Replace the DACL of a file or directory so that only the current user
    has access to it.
    """
    if not WINDOWS_SECURITY_AVAILABLE:
        logger.warning(f"Skipping Windows permission hardening for {path}: pywin32 not available.")
        return False

    try:
        current_user_name = win32api.GetUserName()
        current_user_sid, _, _ = win32security.LookupAccountName(None, current_user_name)

        dacl = win32security.ACL()
        dacl.AddAccessAllowedAce(
            win32security.ACL_REVISION,
            win32con.GENERIC_READ | win32con.GENERIC_WRITE | win32con.GENERIC_EXECUTE | win32con.DELETE,
            current_user_sid
        )

        # FILE_FLAG_BACKUP_SEMANTICS is required to open a directory handle
        handle = win32file.CreateFile(
            path,
            win32con.WRITE_DAC,
            win32file.FILE_SHARE_READ | win32file.FILE_SHARE_WRITE | win32file.FILE_SHARE_DELETE,
            None,
            win32con.OPEN_EXISTING,
            win32file.FILE_FLAG_BACKUP_SEMANTICS,
            None
        )
        try:
            win32security.SetSecurityInfo(
                handle,
                win32security.SE_FILE_OBJECT,
                win32security.DACL_SECURITY_INFORMATION | win32security.PROTECTED_DACL_SECURITY_INFORMATION,
                None,
                None,
                dacl,
                None
            )
        finally:
            win32file.CloseHandle(handle)
    except win32api.error as e:
        logger.warning(f"Failed to restrict Windows permissions for {path}: {e}")
        return False
    return True


def restrict_permissions(path: PathLike) -> bool:
    """
    Make a file or directory accessible to its owner only.

    Returns:
        True if the permissions were applied
    """
    path = str(path)
    if platform.system() == "Windows":
        return _set_windows_permissions(path)
    mode = config.DIR_MODE if os.path.isdir(path) else config.FILE_MODE
    os.chmod(path, mode)
    return True


def ensure_private_dir(path: PathLike) -> Path:
    """Create a directory (and parents) and restrict it to the owner."""
    path = Path(path)
    path.mkdir(mode=config.DIR_MODE, parents=True, exist_ok=True)
    restrict_permissions(path)
    return path


def fsync_dir(path: PathLike) -> None:
    """Flush a directory entry so that a rename inside it is durable."""
    if platform.system() == "Windows":
        return
    fd = os.open(str(path), os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def write_all(fd: int, data) -> None:
    view = memoryview(data)
    try:
        while view:
            written = os.write(fd, view)
            view = view[written:]
    finally:
        view.release()


def atomic_write(path: PathLike, data, verify: Optional[Callable[[Path], None]] = None) -> None:
    """
    Replace ``path`` with ``data`` without ever exposing a partial file.

    The data goes to an owner-only temporary file in the same directory,
    which is flushed to disk, optionally checked by ``verify`` and then
    renamed over the target. If anything fails before the rename the target
    is left as it was and the temporary file is removed.

    Args:
        path: File to create or replace
        data: Bytes-like content, written unbuffered
        verify: Called with the temporary file path before the rename;
            raising aborts the write
    """
    path = Path(path)
    fd, tmp_name = tempfile.mkstemp(prefix=config.TEMP_PREFIX, dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        try:
            restrict_permissions(tmp_path)
            write_all(fd, data)
            os.fsync(fd)
        finally:
            os.close(fd)
        if verify is not None:
            verify(tmp_path)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        raise
    fsync_dir(path.parent)


def overwrite_file(path: PathLike) -> None:
    """Overwrite a regular file's content with zeros in place and flush it."""
    size = os.path.getsize(path)
    chunk = bytes(min(size, config.PURGE_CHUNK_SIZE))
    fd = os.open(str(path), os.O_WRONLY)
    try:
        remaining = size
        while remaining > 0:
            step = min(remaining, len(chunk))
            write_all(fd, chunk[:step])
            remaining -= step
        os.fsync(fd)
    finally:
        os.close(fd)


def secure_purge(path: PathLike) -> List[str]:
    """
    Remove a file or directory tree, overwriting file content first.

    Files that cannot be overwritten are still deleted; each such fallback
    is logged and returned as a warning message. Failure to delete raises
    OSError.

    Returns:
        Warning messages for files that were only unlinked
    """
    path = Path(path)
    warnings: List[str] = []
    if not os.path.lexists(path):
        return warnings

    if path.is_dir() and not path.is_symlink():
        for root, dirs, files in os.walk(path, topdown=False):
            for name in files:
                warnings.extend(_purge_file(Path(root) / name))
            for name in dirs:
                sub = Path(root) / name
                if sub.is_symlink():
                    sub.unlink()
                else:
                    sub.rmdir()
        path.rmdir()
    else:
        warnings.extend(_purge_file(path))
    return warnings


def _purge_file(path: Path) -> List[str]:
    try:
        mode = os.lstat(path).st_mode
        if stat.S_ISREG(mode):
            if not os.access(path, os.W_OK):
                os.chmod(path, config.FILE_MODE)
            overwrite_file(path)
    except OSError as e:
        message = f"Could not overwrite {path} before deletion, falling back to unlink: {e}"
        logger.warning(message)
        path.unlink()
        return [message]
    path.unlink()
    return []
