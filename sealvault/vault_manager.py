"""
Vault lifecycle: Open -> mutate -> Commit/Abort.

A vault is a single encrypted blob. Opening it takes the vault lock and
decrypts the blob into an owner-only ephemeral tree; every mutation works on
that tree through an AccountStore. Commit re-encrypts the tree into a
temporary artifact, optionally decrypts it back to verify it, and only then
renames it over the blob. Abort discards the tree. Both paths purge the tree
and release the lock, whatever happened before.
"""

import os
import time
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from . import config
from .archive import ArchiveCodec
from .config import VaultConfig
from .crypto import EncryptionCapability
from .errors import (
    DuplicateError,
    InvalidStateError,
    NotFoundError,
    RecipientNotFoundError,
    TwoFactorError,
    VaultIOError,
)
from .locking import VaultLock
from .secure_buffer import SecureBuffer
from .storage import AccountRecord, AccountStore, validate_name
from .totp import TwoFactorManager
from .utils import atomic_write, ensure_private_dir, secure_purge

logger = logging.getLogger(__name__)


class VaultState(Enum):
    SEALED = "SEALED"
    OPEN = "OPEN"


@dataclass(frozen=True)
class Vault:
    """An encrypted vault file and the recipient it is sealed for."""
    name: str
    path: Path
    recipient: str

    def _sibling(self, suffix: str) -> Path:
        return self.path.with_name(self.path.name + suffix)

    @property
    def backup_path(self) -> Path:
        return self._sibling(config.BACKUP_SUFFIX)

    @property
    def lock_path(self) -> Path:
        return self._sibling(config.LOCK_SUFFIX)

    @property
    def tree_path(self) -> Path:
        return self._sibling(config.OPEN_TREE_SUFFIX)

    @property
    def recipient_path(self) -> Path:
        return self.path.with_name(self.name + config.RECIPIENT_SUFFIX)

    @property
    def totp_path(self) -> Path:
        return self.path.with_name(self.name + config.TOTP_SUFFIX)


class VaultManager:
    """Owns the Open/Commit/Abort state machine for one vault at a time."""

    def __init__(self, vault_config: VaultConfig, capability: EncryptionCapability):
        """
        Args:
            vault_config: Locations and lifecycle settings
            capability: Backend used to encrypt and decrypt vault blobs
        """
        self.config = vault_config
        self.capability = capability
        self.codec = ArchiveCodec(capability)
        self.state = VaultState.SEALED
        self.last_warnings: List[str] = []
        self._vault: Optional[Vault] = None
        self._store: Optional[AccountStore] = None
        self._lock: Optional[VaultLock] = None
        self._passphrase: Optional[SecureBuffer] = None
        self.two_factor = TwoFactorManager(vault_config, capability)
        self._verified_until: Dict[str, float] = {}

    # ------------------------------------------------------------------
    # Vault lookup
    # ------------------------------------------------------------------

    def vault_path(self, name: str) -> Path:
        validate_name(name, "Vault")
        return self.config.vaults_dir / f"{name}{config.VAULT_SUFFIX}"

    def vault(self, name: str) -> Vault:
        """
        Resolve an existing vault by name.

        Raises:
            NotFoundError: If the vault or its recipient record is missing
        """
        path = self.vault_path(name)
        if not path.is_file():
            raise NotFoundError(f"Vault `{name}` does not exist. Check for typos or create it.")
        recipient_path = path.with_name(name + config.RECIPIENT_SUFFIX)
        try:
            recipient = recipient_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError as e:
            raise NotFoundError(f"Vault `{name}` has no recipient record at {recipient_path}") from e
        except OSError as e:
            raise VaultIOError(f"Failed to read {recipient_path}: {e}") from e
        if not recipient:
            raise NotFoundError(f"Vault `{name}` has an empty recipient record")
        return Vault(name=name, path=path, recipient=recipient)

    def list_vaults(self) -> List[str]:
        vaults_dir = self.config.vaults_dir
        if not vaults_dir.is_dir():
            return []
        return sorted(p.name[:-len(config.VAULT_SUFFIX)] for p in vaults_dir.iterdir()
                      if p.is_file() and p.name.endswith(config.VAULT_SUFFIX))

    @property
    def store(self) -> AccountStore:
        self._require_open()
        return self._store

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _require_open(self) -> None:
        if self.state is not VaultState.OPEN:
            raise InvalidStateError("No vault is open.")

    def _require_sealed(self) -> None:
        if self.state is not VaultState.SEALED:
            raise InvalidStateError(f"Vault `{self._vault.name}` is still open; commit or abort it first.")

    def open(self, vault: Vault, passphrase: Optional[SecureBuffer] = None) -> AccountStore:
        """
        Decrypt a vault into its ephemeral tree.

        A tree left behind by a crashed session is purged first. On any
        failure, including interruption, the tree is purged, the lock is
        released and the vault stays sealed.

        Args:
            vault: Vault to open
            passphrase: Unlocks the recipient's private key when the backend
                needs it; the caller keeps ownership of the buffer

        Raises:
            VaultBusyError: If another session holds the vault
            NotFoundError: If the vault file is missing
            TwoFactorError: If the vault requires a one-time code that was
                not verified by this manager recently
            DecryptionError, CorruptArchiveError, RecipientNotFoundError
        """
        self._require_sealed()
        if not vault.path.is_file():
            raise NotFoundError(f"Vault `{vault.name}` does not exist.")

        lock = VaultLock(vault.lock_path, self.config.lock_timeout)
        lock.acquire()
        self._lock = lock
        self._vault = vault
        self._passphrase = passphrase
        try:
            if not vault.path.is_file():
                raise NotFoundError(f"Vault `{vault.name}` was removed while waiting for its lock.")
            self._require_two_factor(vault)
            if os.path.lexists(vault.tree_path):
                logger.warning(f"Purging stale plaintext tree {vault.tree_path} left by an interrupted session")
                self._purge_tree(vault.tree_path, strict=True)
            store = self.codec.decrypt(vault.path, vault.recipient, vault.tree_path, passphrase)
        except BaseException:
            self._finish()
            raise
        self._store = store
        self.state = VaultState.OPEN
        logger.info(f"Opened vault `{vault.name}`")
        return store

    def commit(self) -> List[str]:
        """
        Seal the open tree back into the vault.

        The new artifact is written next to the vault, verified when
        configured, and renamed over it. Any failure before the rename
        aborts the session and leaves the vault byte-identical.

        Returns:
            Cleanup warnings raised after the vault was replaced
        """
        self._require_open()
        vault = self._vault
        try:
            self.codec.encrypt(vault.tree_path, vault.recipient, vault.path,
                               verify=self.config.verify_commit, passphrase=self._passphrase)
        except BaseException:
            logger.error(f"Commit of vault `{vault.name}` failed; vault left unchanged")
            self._finish()
            raise
        warnings = self._finish()
        logger.info(f"Committed vault `{vault.name}`")
        return warnings

    def abort(self) -> List[str]:
        """
        Discard the open tree without writing back.

        Returns:
            Cleanup warnings
        """
        self._require_open()
        name = self._vault.name
        warnings = self._finish()
        logger.info(f"Aborted session on vault `{name}`")
        return warnings

    @contextmanager
    def session(self, vault: Vault, passphrase: Optional[SecureBuffer] = None,
                read_only: bool = False) -> Iterator[AccountStore]:
        """
        Open a vault for the duration of a ``with`` block.

        Commits on normal exit (aborts instead when ``read_only``) and
        aborts when the block raises.
        """
        store = self.open(vault, passphrase)
        try:
            yield store
        except BaseException:
            if self.state is VaultState.OPEN:
                self.abort()
            raise
        if self.state is VaultState.OPEN:
            if read_only:
                self.abort()
            else:
                self.commit()

    def _purge_tree(self, tree: Path, strict: bool = False) -> List[str]:
        try:
            return secure_purge(tree)
        except OSError as e:
            if strict:
                raise VaultIOError(f"Failed to purge plaintext tree {tree}: {e}") from e
            message = f"Failed to purge plaintext tree {tree}: {e}"
            logger.error(message)
            return [message]

    def _finish(self) -> List[str]:
        """Purge the tree and release the lock; never skips either step."""
        warnings: List[str] = []
        try:
            if self._vault is not None:
                warnings = self._purge_tree(self._vault.tree_path)
        finally:
            try:
                if self._lock is not None:
                    self._lock.release()
            finally:
                self._lock = None
                self._vault = None
                self._store = None
                self._passphrase = None
                self.state = VaultState.SEALED
                self.last_warnings = warnings
        return warnings

    # ------------------------------------------------------------------
    # Two-factor gate
    # ------------------------------------------------------------------

    def _require_two_factor(self, vault: Vault) -> None:
        if not self.two_factor.is_required(vault):
            return
        until = self._verified_until.get(vault.name)
        if until is None or time.monotonic() >= until:
            self._verified_until.pop(vault.name, None)
            raise TwoFactorError(f"Vault `{vault.name}` requires a one-time code.")

    def verify_two_factor(self, vault: Vault, code: str,
                          passphrase: Optional[SecureBuffer] = None) -> None:
        """
        Check a one-time code and let this manager open ``vault`` for
        ``TOTP_VERIFIED_SECONDS``.

        Raises:
            TwoFactorError: If the code is wrong
        """
        if not self.two_factor.verify(vault, code, passphrase):
            logger.warning(f"Rejected one-time code for vault `{vault.name}`")
            raise TwoFactorError(f"Invalid one-time code for vault `{vault.name}`.")
        self._verified_until[vault.name] = time.monotonic() + config.TOTP_VERIFIED_SECONDS

    def enable_two_factor(self, vault: Vault,
                          passphrase: Optional[SecureBuffer] = None) -> Tuple[SecureBuffer, str]:
        """
        Require a one-time code to open ``vault`` from now on.

        The vault is opened first, so only a holder of the recipient's key
        can turn the gate on.

        Returns:
            The new base32 secret (the caller must wipe it) and its
            provisioning URI
        """
        if self.two_factor.is_enabled(vault):
            raise DuplicateError(f"Two-factor authentication is already enabled for vault `{vault.name}`.")
        self.open(vault, passphrase)
        try:
            secret, uri = self.two_factor.enable(vault)
        finally:
            self.abort()
        self._verified_until[vault.name] = time.monotonic() + config.TOTP_VERIFIED_SECONDS
        return secret, uri

    def disable_two_factor(self, vault: Vault, code: str,
                           passphrase: Optional[SecureBuffer] = None) -> None:
        """Stop requiring one-time codes for ``vault`` after checking ``code``."""
        self._require_sealed()
        with VaultLock(vault.lock_path, self.config.lock_timeout):
            if not self.two_factor.is_required(vault):
                raise NotFoundError(f"Two-factor authentication is not enabled for vault `{vault.name}`.")
            self.verify_two_factor(vault, code, passphrase)
            self.last_warnings = self.two_factor.disable(vault)
        self._verified_until.pop(vault.name, None)

    # ------------------------------------------------------------------
    # Whole-vault operations
    # ------------------------------------------------------------------

    def _write_recipient(self, path: Path, recipient: str) -> None:
        atomic_write(path, f"{recipient}\n".encode("utf-8"))

    def create_vault(self, name: str, recipient: str) -> Vault:
        """
        Create an empty vault sealed for ``recipient``.

        Raises:
            DuplicateError: If a vault with this name exists
            RecipientNotFoundError: If the backend does not know the recipient
        """
        self._require_sealed()
        path = self.vault_path(name)
        if path.exists():
            raise DuplicateError(f"Vault `{name}` already exists.")
        if not self.capability.has_recipient(recipient):
            raise RecipientNotFoundError(f"The recipient `{recipient}` does not exist in the {self.capability.name} keyring.")

        try:
            ensure_private_dir(self.config.vaults_dir)
        except OSError as e:
            raise VaultIOError(f"Failed to create {self.config.vaults_dir}: {e}") from e
        vault = Vault(name=name, path=path, recipient=recipient)
        with VaultLock(vault.lock_path, self.config.lock_timeout):
            if path.exists():
                raise DuplicateError(f"Vault `{name}` already exists.")
            try:
                self._purge_tree(vault.tree_path, strict=True)
                self._write_recipient(vault.recipient_path, recipient)
                self.codec.create(recipient, path, vault.tree_path)
            except BaseException:
                if vault.recipient_path.exists() and not path.exists():
                    vault.recipient_path.unlink()
                raise
            finally:
                self._purge_tree(vault.tree_path)
        logger.info(f"Vault `{name}` created successfully at {path}")
        return vault

    def delete_vault(self, vault: Vault) -> None:
        """
        Remove a vault together with its backup, recipient record and
        two-factor secret. The lock file stays so that waiting sessions keep
        contending on the same file.
        """
        self._require_sealed()
        with VaultLock(vault.lock_path, self.config.lock_timeout):
            if not vault.path.exists():
                raise NotFoundError(f"Vault `{vault.name}` does not exist.")
            self._require_two_factor(vault)
            self._purge_tree(vault.tree_path, strict=True)
            try:
                for path in (vault.path, vault.backup_path, vault.recipient_path):
                    if path.exists():
                        path.unlink()
            except OSError as e:
                raise VaultIOError(f"Failed to delete vault `{vault.name}`: {e}") from e
            self.last_warnings = self.two_factor.disable(vault)
        self._verified_until.pop(vault.name, None)
        logger.info(f"Vault `{vault.name}` deleted successfully.")

    def backup(self, vault: Vault) -> Path:
        """
        Copy the sealed vault to its backup file, replacing any older backup.

        Returns:
            Path of the backup
        """
        self._require_sealed()
        with VaultLock(vault.lock_path, self.config.lock_timeout):
            try:
                atomic_write(vault.backup_path, vault.path.read_bytes())
            except FileNotFoundError as e:
                raise NotFoundError(f"Vault `{vault.name}` does not exist.") from e
            except OSError as e:
                raise VaultIOError(f"Failed to back up vault `{vault.name}`: {e}") from e
        logger.info(f"Backup created successfully at {vault.backup_path}")
        return vault.backup_path

    def restore(self, vault: Vault) -> None:
        """
        Overwrite the sealed vault with its backup.

        This cannot be undone unless another copy of the vault exists.

        Raises:
            NotFoundError: If there is no backup
            TwoFactorError: If the vault requires a one-time code
        """
        self._require_sealed()
        with VaultLock(vault.lock_path, self.config.lock_timeout):
            self._require_two_factor(vault)
            try:
                atomic_write(vault.path, vault.backup_path.read_bytes())
            except FileNotFoundError as e:
                raise NotFoundError(f"Backup does not exist at {vault.backup_path}") from e
            except OSError as e:
                raise VaultIOError(f"Failed to restore vault `{vault.name}`: {e}") from e
        logger.info(f"Backup installed successfully from {vault.backup_path} to {vault.path}")

    def rename(self, vault: Vault, new_name: str, passphrase: Optional[SecureBuffer] = None) -> Vault:
        """
        Rename a vault by committing its content under the new name.

        The new blob is complete before the old one is removed. Backup,
        recipient record and two-factor secret follow the vault. The old
        vault's lock is held until its files are gone.

        Raises:
            DuplicateError: If a vault named ``new_name`` exists
        """
        new_path = self.vault_path(new_name)
        if new_path.exists():
            raise DuplicateError(f"Vault `{new_name}` already exists.")
        target = Vault(name=new_name, path=new_path, recipient=vault.recipient)

        self.open(vault, passphrase)
        new_lock = VaultLock(target.lock_path, self.config.lock_timeout)
        try:
            new_lock.acquire()
            if new_path.exists():
                raise DuplicateError(f"Vault `{new_name}` already exists.")
            try:
                self._write_recipient(target.recipient_path, target.recipient)
                self.codec.encrypt(vault.tree_path, vault.recipient, new_path,
                                   verify=self.config.verify_commit, passphrase=passphrase)
            except BaseException:
                if not new_path.exists() and target.recipient_path.exists():
                    target.recipient_path.unlink()
                raise
        except BaseException:
            new_lock.release()
            self._finish()
            raise

        cleanup: List[str] = []
        try:
            self.two_factor.move(vault, target)
            if vault.name in self._verified_until:
                self._verified_until[new_name] = self._verified_until.pop(vault.name)
            if vault.backup_path.exists():
                os.replace(vault.backup_path, target.backup_path)
            vault.path.unlink()
            vault.recipient_path.unlink()
        except (OSError, VaultIOError) as e:
            message = f"Vault renamed but cleanup of `{vault.name}` files failed: {e}"
            logger.warning(message)
            cleanup.append(message)
        finally:
            try:
                warnings = self._finish()
            finally:
                new_lock.release()
        self.last_warnings = warnings + cleanup
        logger.info(f"Vault `{vault.name}` renamed to `{new_name}` successfully.")
        return target

    def change_recipient(self, vault: Vault, new_recipient: str,
                         passphrase: Optional[SecureBuffer] = None,
                         new_passphrase: Optional[SecureBuffer] = None) -> Vault:
        """
        Re-seal a vault, and its two-factor secret if any, for a different
        recipient.

        Args:
            passphrase: Unlocks the current recipient's key
            new_passphrase: Unlocks the new recipient's key for verification

        Raises:
            RecipientNotFoundError: If the backend does not know ``new_recipient``
        """
        if not self.capability.has_recipient(new_recipient):
            raise RecipientNotFoundError(f"The recipient `{new_recipient}` does not exist in the {self.capability.name} keyring.")
        self.open(vault, passphrase)
        try:
            self.codec.encrypt(vault.tree_path, new_recipient, vault.path,
                               verify=self.config.verify_commit, passphrase=new_passphrase)
        except BaseException:
            self._finish()
            raise
        # The blob is already sealed for the new recipient; the lock is kept
        # until the recipient record and the two-factor secret match it.
        try:
            if self.two_factor.is_enabled(vault):
                self.two_factor.reseal(vault, new_recipient, passphrase)
            self._write_recipient(vault.recipient_path, new_recipient)
        except (OSError, VaultIOError) as e:
            self._finish()
            raise VaultIOError(
                f"Vault `{vault.name}` is now sealed for `{new_recipient}` but its recipient "
                f"record or two-factor secret could not be updated: {e}") from e
        except BaseException:
            self._finish()
            raise
        self._finish()
        logger.info(f"Vault `{vault.name}` is now sealed for `{new_recipient}`")
        return Vault(name=vault.name, path=vault.path, recipient=new_recipient)

    # ------------------------------------------------------------------
    # Account operations, one session each
    # ------------------------------------------------------------------

    def list_accounts(self, vault: Vault, passphrase: Optional[SecureBuffer] = None) -> List[str]:
        with self.session(vault, passphrase, read_only=True) as store:
            return store.list()

    def get_account(self, vault: Vault, name: str,
                    passphrase: Optional[SecureBuffer] = None) -> AccountRecord:
        """Read one account. The caller must wipe the returned record."""
        with self.session(vault, passphrase, read_only=True) as store:
            return store.get(name)

    def add_account(self, vault: Vault, name: str, username: str, password: SecureBuffer,
                    passphrase: Optional[SecureBuffer] = None) -> None:
        with self.session(vault, passphrase) as store:
            store.add(name, username, password)

    def remove_account(self, vault: Vault, name: str, passphrase: Optional[SecureBuffer] = None) -> None:
        with self.session(vault, passphrase) as store:
            store.remove(name)

    def change_username(self, vault: Vault, name: str, new_username: str,
                        passphrase: Optional[SecureBuffer] = None) -> None:
        with self.session(vault, passphrase) as store:
            store.change_username(name, new_username)

    def change_password(self, vault: Vault, name: str, new_password: SecureBuffer,
                        passphrase: Optional[SecureBuffer] = None) -> None:
        with self.session(vault, passphrase) as store:
            store.change_password(name, new_password)

    def rename_account(self, vault: Vault, old_name: str, new_name: str,
                       passphrase: Optional[SecureBuffer] = None) -> None:
        with self.session(vault, passphrase) as store:
            store.rename(old_name, new_name)
