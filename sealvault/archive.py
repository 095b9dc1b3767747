"""
Conversion between an encrypted vault blob and a plaintext directory tree.

The tree is packed as a gzip-compressed tar bundle in memory and handed to
the encryption capability; nothing but ciphertext ever reaches the vault
directory. Expanded trees are created owner-only and validated against the
account index before the vault is considered open.
"""

import io
import os
import gzip
import hmac
import hashlib
import logging
import tarfile
from pathlib import Path, PurePosixPath
from typing import Optional, Union

from . import config
from .crypto import EncryptionCapability
from .errors import CorruptArchiveError, DecryptionError, EncryptionError, VaultIOError
from .secure_buffer import SecureBuffer
from .storage import AccountStore
from .utils import atomic_write, ensure_private_dir, restrict_permissions, write_all

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _zero(stream: io.BytesIO) -> None:
    """Zero the internal buffer of a BytesIO holding plaintext."""
    view = stream.getbuffer()
    try:
        view[:] = bytes(len(view))
    finally:
        view.release()


class ArchiveCodec:
    """Seals directory trees into vault blobs and expands them back."""

    def __init__(self, capability: EncryptionCapability):
        self.capability = capability

    # ------------------------------------------------------------------
    # Bundling
    # ------------------------------------------------------------------

    def bundle(self, tree: PathLike) -> SecureBuffer:
        """
        Pack a tree into a tar+gzip bundle.

        Members are added in sorted order with ownership and timestamps
        stripped, so identical trees give identical bundles.
        """
        tree = Path(tree)
        raw = io.BytesIO()
        try:
            with gzip.GzipFile(fileobj=raw, mode="wb", mtime=0) as gz:
                with tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tar:
                    for path in sorted(tree.rglob("*")):
                        rel = path.relative_to(tree).as_posix()
                        info = tar.gettarinfo(str(path), arcname=rel)
                        info.uid = info.gid = 0
                        info.uname = info.gname = ""
                        info.mtime = 0
                        if info.isdir():
                            info.mode = config.DIR_MODE
                            tar.addfile(info)
                        elif info.isfile():
                            info.mode = config.FILE_MODE
                            with open(path, "rb") as fh:
                                tar.addfile(info, fh)
                        else:
                            raise CorruptArchiveError(f"Refusing to archive non-regular file {path}")
            with raw.getbuffer() as view:
                return SecureBuffer(view)
        except OSError as e:
            raise VaultIOError(f"Failed to bundle {tree}: {e}") from e
        finally:
            _zero(raw)

    def expand(self, bundle: SecureBuffer, tree: PathLike) -> None:
        """
        Unpack a bundle into ``tree``, which must not exist yet.

        Raises:
            CorruptArchiveError: If the bundle is not a valid archive or holds
                anything other than relative regular files and directories
        """
        tree = Path(tree)
        with bundle.use() as view:
            raw = io.BytesIO(view)
        try:
            ensure_private_dir(tree)
            with tarfile.open(fileobj=raw, mode="r:gz") as tar:
                members = tar.getmembers()
                if len(members) > config.ARCHIVE_MAX_MEMBERS:
                    raise CorruptArchiveError(f"Archive holds {len(members)} members, more than allowed")
                for member in members:
                    target = self._member_target(tree, member)
                    if member.isdir():
                        ensure_private_dir(target)
                    elif member.isfile():
                        ensure_private_dir(target.parent)
                        self._extract_file(tar, member, target)
                    else:
                        raise CorruptArchiveError(f"Archive member `{member.name}` is not a file or directory")
        except (tarfile.TarError, EOFError, gzip.BadGzipFile, UnicodeDecodeError) as e:
            raise CorruptArchiveError(f"Decrypted vault is not a valid archive: {e}") from e
        except OSError as e:
            raise VaultIOError(f"Failed to expand archive into {tree}: {e}") from e
        finally:
            _zero(raw)

    @staticmethod
    def _member_target(tree: Path, member: tarfile.TarInfo) -> Path:
        name = PurePosixPath(member.name)
        if name.is_absolute() or ".." in name.parts or not name.parts or "\\" in member.name:
            raise CorruptArchiveError(f"Archive member `{member.name}` escapes the vault tree")
        return tree.joinpath(*name.parts)

    @staticmethod
    def _extract_file(tar: tarfile.TarFile, member: tarfile.TarInfo, target: Path) -> None:
        source = tar.extractfile(member)
        if source is None:
            raise CorruptArchiveError(f"Archive member `{member.name}` has no content")
        fd = os.open(str(target), os.O_WRONLY | os.O_CREAT | os.O_EXCL, config.FILE_MODE)
        buf = bytearray(config.PURGE_CHUNK_SIZE)
        try:
            with source:
                while True:
                    n = source.readinto(buf)
                    if not n:
                        break
                    write_all(fd, memoryview(buf)[:n])
        finally:
            os.close(fd)
            buf[:] = bytes(len(buf))
        restrict_permissions(target)

    # ------------------------------------------------------------------
    # Vault blobs
    # ------------------------------------------------------------------

    def decrypt(self, vault_path: PathLike, recipient: str, tree: PathLike,
                passphrase: Optional[SecureBuffer] = None) -> AccountStore:
        """
        Decrypt a vault blob into ``tree`` and validate it.

        Returns:
            AccountStore loaded over the expanded tree
        """
        with self.capability.decrypt(vault_path, recipient, passphrase) as bundle:
            self.expand(bundle, tree)
        store = AccountStore(tree)
        store.validate()
        logger.debug(f"Decrypted {vault_path} into {tree} ({len(store)} accounts)")
        return store

    def encrypt(self, tree: PathLike, recipient: str, dest: PathLike, verify: bool = False,
                passphrase: Optional[SecureBuffer] = None) -> None:
        """
        Seal ``tree`` for ``recipient`` and atomically replace ``dest``.

        Args:
            verify: Decrypt the new artifact before it replaces ``dest`` and
                compare it with the bundle that was encrypted
            passphrase: Needed for verification by backends that do not prompt
        """
        with self.bundle(tree) as bundle:
            with bundle.use() as view:
                digest = hashlib.sha256(view).digest()
            ciphertext = self.capability.encrypt(bundle, recipient)

        def check(tmp_path: Path) -> None:
            try:
                roundtrip = self.capability.decrypt(tmp_path, recipient, passphrase)
            except DecryptionError as e:
                raise EncryptionError(f"New artifact for {dest} could not be decrypted back: {e}") from e
            with roundtrip, roundtrip.use() as view:
                matches = hmac.compare_digest(hashlib.sha256(view).digest(), digest)
            if not matches:
                raise EncryptionError(f"Verification of the new artifact for {dest} failed")
            logger.debug(f"Verified new artifact for {dest}")

        try:
            atomic_write(dest, ciphertext, verify=check if verify else None)
        except OSError as e:
            raise VaultIOError(f"Failed to write {dest}: {e}") from e

    def create(self, recipient: str, dest: PathLike, workdir: PathLike) -> None:
        """Seal an empty vault (empty account index) at ``dest``."""
        workdir = Path(workdir)
        try:
            ensure_private_dir(workdir)
            (workdir / config.INDEX_FILE).touch(mode=config.FILE_MODE)
        except OSError as e:
            raise VaultIOError(f"Failed to prepare {workdir}: {e}") from e
        self.encrypt(workdir, recipient, dest)
