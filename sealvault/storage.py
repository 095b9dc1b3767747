"""
Account index and per-account records inside a decrypted vault tree.

Layout of a tree:

    accounts            one account name per line, in insertion order
    <name>/data         JSON record with "username" and base64 "password"

The index decides which accounts exist. Record directories that are not
indexed are ignored, so every two-step change is ordered to leave at worst
an orphaned directory behind, never an index entry without a record.
"""

import os
import json
import base64
import binascii
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Union

from . import config
from .errors import CorruptArchiveError, DuplicateError, InvalidNameError, NotFoundError, VaultIOError
from .secure_buffer import SecureBuffer
from .utils import atomic_write, ensure_private_dir, overwrite_file, secure_purge

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

_FORBIDDEN_NAME_CHARS = ("/", "\\", "\0", "\n", "\r")


def validate_name(name: str, kind: str = "Account") -> str:
    """
    Check that a name can be used as an index line and a directory name.

    Raises:
        InvalidNameError: If the name is empty, padded with whitespace,
            reserved or contains separators or line breaks
    """
    if not isinstance(name, str) or not name:
        raise InvalidNameError(f"{kind} name cannot be empty.")
    if name != name.strip():
        raise InvalidNameError(f"{kind} name `{name}` has leading or trailing whitespace.")
    if any(c in name for c in _FORBIDDEN_NAME_CHARS):
        raise InvalidNameError(f"{kind} name `{name}` contains a path separator or line break.")
    if name in (".", "..", config.INDEX_FILE):
        raise InvalidNameError(f"{kind} name `{name}` is reserved.")
    return name


@dataclass
class AccountRecord:
    """Username and password of one account."""
    username: str
    password: SecureBuffer

    def wipe(self) -> None:
        self.password.wipe()

    def __enter__(self) -> "AccountRecord":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.wipe()


def encode_record(username: str, password: SecureBuffer) -> bytearray:
    """Serialize a record into a bytearray the caller must zero."""
    with password.use() as view:
        encoded = bytearray(base64.b64encode(view))
    try:
        out = bytearray(b'{"username": ')
        out += json.dumps(username).encode("utf-8")
        out += b', "password": "'
        out += encoded
        out += b'"}\n'
        return out
    finally:
        encoded[:] = bytes(len(encoded))


def decode_record(data: bytes) -> AccountRecord:
    """
    Parse a record file.

    Raises:
        CorruptArchiveError: If the record is not valid JSON or lacks fields
    """
    try:
        doc = json.loads(data.decode("utf-8"))
        username = doc["username"]
        password = bytearray(base64.b64decode(doc["password"], validate=True))
    except (UnicodeDecodeError, ValueError, KeyError, TypeError, binascii.Error) as e:
        raise CorruptArchiveError(f"Malformed account record: {e}") from e
    if not isinstance(username, str):
        raise CorruptArchiveError("Malformed account record: username is not text")
    return AccountRecord(username=username, password=SecureBuffer(password))


class AccountStore:
    """Keeps the index and record files of one decrypted tree consistent."""

    def __init__(self, tree: PathLike):
        """
        Initialize the store over an expanded tree.

        Args:
            tree: Root of the decrypted vault tree
        """
        self.tree = Path(tree)
        self._names: List[str] = []
        self.reload()

    @property
    def index_path(self) -> Path:
        return self.tree / config.INDEX_FILE

    def record_path(self, name: str) -> Path:
        return self.tree / name / config.RECORD_FILE

    def reload(self) -> None:
        """Re-read the index from disk."""
        try:
            text = self.index_path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise CorruptArchiveError(f"Vault tree {self.tree} has no `{config.INDEX_FILE}` index") from e
        except UnicodeDecodeError as e:
            raise CorruptArchiveError(f"Account index is not valid UTF-8: {e}") from e
        except OSError as e:
            raise VaultIOError(f"Failed to read account index: {e}") from e

        names = [line for line in text.split("\n") if line != ""]
        if len(set(names)) != len(names):
            raise CorruptArchiveError("Account index lists the same account more than once")
        for name in names:
            try:
                validate_name(name)
            except InvalidNameError as e:
                raise CorruptArchiveError(f"Account index holds an invalid name: {e}") from e
        self._names = names

    def validate(self) -> None:
        """
        Check that every indexed account has a readable record.

        Raises:
            CorruptArchiveError: On a missing or malformed record
        """
        for name in self._names:
            with self._read_record(name):
                pass

    def __len__(self) -> int:
        return len(self._names)

    def __contains__(self, name: str) -> bool:
        return name in self._names

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._names))

    def list(self) -> List[str]:
        """Account names in insertion order."""
        return list(self._names)

    def _require(self, name: str) -> None:
        if name not in self._names:
            raise NotFoundError(f"Account `{name}` does not exist.")

    def _read_record(self, name: str) -> AccountRecord:
        path = self.record_path(name)
        try:
            data = path.read_bytes()
        except FileNotFoundError as e:
            raise CorruptArchiveError(f"Account `{name}` is indexed but has no record file") from e
        except OSError as e:
            raise VaultIOError(f"Failed to read record of `{name}`: {e}") from e
        return decode_record(data)

    def _write_index(self, names: List[str]) -> None:
        data = "".join(f"{n}\n" for n in names).encode("utf-8")
        try:
            atomic_write(self.index_path, data)
        except OSError as e:
            raise VaultIOError(f"Failed to write account index: {e}") from e
        self._names = list(names)

    def _write_record(self, name: str, username: str, password: SecureBuffer) -> None:
        """Write a record wholesale, scrubbing the previous file first."""
        path = self.record_path(name)
        payload = encode_record(username, password)
        try:
            ensure_private_dir(path.parent)

            def scrub_previous(_tmp: Path) -> None:
                if path.exists():
                    overwrite_file(path)

            atomic_write(path, payload, verify=scrub_previous)
        except OSError as e:
            raise VaultIOError(f"Failed to write record of `{name}`: {e}") from e
        finally:
            payload[:] = bytes(len(payload))

    def get(self, name: str) -> AccountRecord:
        """
        Get the record of an account.

        The caller owns the returned record and should wipe it when done.

        Raises:
            NotFoundError: If the account is not indexed, even when a
                directory of that name exists
        """
        self._require(name)
        return self._read_record(name)

    def add(self, name: str, username: str, password: SecureBuffer) -> None:
        """
        Add a new account.

        The record is written before the index entry.

        Raises:
            DuplicateError: If the account is already indexed
        """
        validate_name(name)
        if name in self._names:
            raise DuplicateError(f"Account `{name}` already exists.")
        stray = self.tree / name
        if stray.exists():
            logger.warning(f"Replacing orphaned directory for account `{name}`")
            self._purge(stray)
        self._write_record(name, username, password)
        self._write_index(self._names + [name])
        logger.info(f"Added account `{name}`")

    def remove(self, name: str) -> None:
        """
        Remove an account.

        The index entry goes first, then the record directory is purged.

        Raises:
            NotFoundError: If the account is not indexed
        """
        self._require(name)
        self._write_index([n for n in self._names if n != name])
        self._purge(self.tree / name)
        logger.info(f"Removed account `{name}`")

    def change_username(self, name: str, new_username: str) -> None:
        """Replace the username of an account, rewriting its record."""
        self._require(name)
        with self._read_record(name) as record:
            self._write_record(name, new_username, record.password)
        logger.info(f"Changed username of account `{name}`")

    def change_password(self, name: str, new_password: SecureBuffer) -> None:
        """Replace the password of an account, rewriting its record."""
        self._require(name)
        with self._read_record(name) as record:
            self._write_record(name, record.username, new_password)
        logger.info(f"Changed password of account `{name}`")

    def rename(self, old_name: str, new_name: str) -> None:
        """
        Rename an account, keeping its position in the index.

        Raises:
            NotFoundError: If ``old_name`` is not indexed
            DuplicateError: If ``new_name`` is already indexed
        """
        self._require(old_name)
        validate_name(new_name)
        if new_name in self._names:
            raise DuplicateError(f"Account `{new_name}` already exists.")
        target = self.tree / new_name
        if target.exists():
            logger.warning(f"Replacing orphaned directory for account `{new_name}`")
            self._purge(target)
        try:
            os.rename(self.tree / old_name, target)
        except OSError as e:
            raise VaultIOError(f"Failed to rename account `{old_name}`: {e}") from e
        self._write_index([new_name if n == old_name else n for n in self._names])
        logger.info(f"Renamed account `{old_name}` to `{new_name}`")

    def _purge(self, path: Path) -> None:
        try:
            secure_purge(path)
        except OSError as e:
            raise VaultIOError(f"Failed to delete {path}: {e}") from e
