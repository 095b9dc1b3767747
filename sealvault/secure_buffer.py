"""
Swap-locked, self-wiping container for passwords and passphrases.

Python cannot guarantee that no copy of a secret ever exists: immutable
``bytes`` and ``str`` objects produced by subprocess pipes, JSON parsing or
``getpass`` cannot be zeroed. SecureBuffer keeps the one long-lived copy in
a fixed-size bytearray that is pinned in RAM and zeroed on release, and only
hands out short-lived views of it.
"""

import ctypes
import getpass
import hmac
import logging
import platform
from contextlib import contextmanager
from typing import Iterator, Optional, Union

logger = logging.getLogger(__name__)


def _load_lock_functions():
    """Resolve (lock, unlock) callables for the current platform, or None."""
    try:
        if platform.system() == "Windows":
            kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)
            lock, unlock = kernel32.VirtualLock, kernel32.VirtualUnlock
            lock.restype = unlock.restype = ctypes.c_int
            return (lambda addr, size: lock(ctypes.c_void_p(addr), ctypes.c_size_t(size)) != 0,
                    lambda addr, size: unlock(ctypes.c_void_p(addr), ctypes.c_size_t(size)) != 0)
        libc = ctypes.CDLL(None, use_errno=True)
        lock, unlock = libc.mlock, libc.munlock
        lock.restype = unlock.restype = ctypes.c_int
        return (lambda addr, size: lock(ctypes.c_void_p(addr), ctypes.c_size_t(size)) == 0,
                lambda addr, size: unlock(ctypes.c_void_p(addr), ctypes.c_size_t(size)) == 0)
    except (OSError, AttributeError) as e:
        logger.warning(f"Memory locking is not available on this platform: {e}")
        return None


_LOCK_FUNCTIONS = _load_lock_functions()


class SecureBuffer:
    """
    Holds one secret byte sequence.

    The bytes are reachable only through ``use()``; rendering, pickling,
    copying and hashing are refused. The buffer is zeroed by ``wipe()``, on
    leaving a ``with`` block and when garbage collected.
    """

    __slots__ = ("_data", "_cbuf", "_size", "_locked", "__weakref__")

    def __init__(self, data: Union[bytes, bytearray, memoryview, str] = b""):
        """
        Args:
            data: Secret to protect. A bytearray is taken over: its content
                is copied in and the source is zeroed.
        """
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._size = len(data)
        self._data = bytearray(self._size)
        self._data[:] = data
        if isinstance(data, bytearray):
            data[:] = bytes(len(data))
        self._cbuf = None
        self._locked = False
        if self._size:
            self._cbuf = (ctypes.c_char * self._size).from_buffer(self._data)
            self._lock_memory()

    @classmethod
    def prompt(cls, prompt: str = "Passphrase: ") -> "SecureBuffer":
        """Read a secret from the terminal without echo."""
        return cls(getpass.getpass(prompt))

    def _lock_memory(self) -> None:
        if _LOCK_FUNCTIONS is None:
            logger.warning("Secret buffer is not swap-locked: no memory locking primitive available.")
            return
        lock, _ = _LOCK_FUNCTIONS
        if lock(ctypes.addressof(self._cbuf), self._size):
            self._locked = True
        else:
            logger.warning(f"Failed to swap-lock secret buffer of {self._size} bytes; it may be paged to disk.")

    @property
    def wiped(self) -> bool:
        return self._data is None

    def __len__(self) -> int:
        return self._size

    @contextmanager
    def use(self) -> Iterator[memoryview]:
        """Lend a read-only view of the secret for the duration of the block."""
        if self._data is None:
            raise ValueError("SecureBuffer has been wiped")
        base = memoryview(self._data)
        view = base.toreadonly()
        try:
            yield view
        finally:
            view.release()
            base.release()

    def wipe(self) -> None:
        """Zero the secret and release its memory lock."""
        if self._data is None:
            return
        try:
            if self._cbuf is not None:
                ctypes.memset(ctypes.addressof(self._cbuf), 0, self._size)
                if self._locked and _LOCK_FUNCTIONS is not None:
                    _, unlock = _LOCK_FUNCTIONS
                    if not unlock(ctypes.addressof(self._cbuf), self._size):
                        logger.debug("munlock failed for secret buffer")
        finally:
            self._cbuf = None
            self._data = None
            self._locked = False

    def __enter__(self) -> "SecureBuffer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.wipe()

    def __del__(self):
        try:
            self.wipe()
        except Exception:
            # Interpreter shutdown may have torn down ctypes already.
            pass

    def __eq__(self, other) -> bool:
        if not isinstance(other, SecureBuffer):
            return NotImplemented
        with self.use() as a, other.use() as b:
            return hmac.compare_digest(a, b)

    __hash__ = None

    def __repr__(self) -> str:
        state = "wiped" if self._data is None else f"{self._size} bytes"
        return f"SecureBuffer(<redacted>, {state})"

    __str__ = __repr__

    def __reduce_ex__(self, protocol):
        raise TypeError("SecureBuffer cannot be serialized")

    def __copy__(self):
        raise TypeError("SecureBuffer cannot be copied")

    def __deepcopy__(self, memo):
        raise TypeError("SecureBuffer cannot be copied")


def wipe_all(*buffers: Optional[SecureBuffer]) -> None:
    """Wipe every buffer given, skipping None."""
    for buf in buffers:
        if buf is not None:
            buf.wipe()
