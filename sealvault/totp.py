"""
Optional two-factor gate for vaults, based on time-based one-time passwords.

The shared secret of a vault is encrypted for the vault's recipient and
stored next to it as ``<name>.totp``. A ledger in the data directory records
every vault that requires a code, so removing the secret file locks the
vault instead of switching the gate off.
"""

import os
import re
import logging
from pathlib import Path
from typing import List, Optional, Tuple

import pyotp

from . import config
from .config import VaultConfig
from .crypto import EncryptionCapability
from .errors import DuplicateError, NotFoundError, TwoFactorError, VaultIOError
from .locking import VaultLock
from .secure_buffer import SecureBuffer
from .utils import atomic_write, ensure_private_dir, secure_purge

logger = logging.getLogger(__name__)

_CODE_PATTERN = re.compile(rf"[0-9]{{{config.TOTP_DIGITS}}}")


def _totp(view: memoryview) -> pyotp.TOTP:
    return pyotp.TOTP(bytes(view).decode("ascii"),
                      digits=config.TOTP_DIGITS,
                      interval=config.TOTP_INTERVAL_SECONDS,
                      issuer=config.TOTP_ISSUER)


class TwoFactorManager:
    """Enables, disables and checks the one-time-code gate of each vault."""

    def __init__(self, vault_config: VaultConfig, capability: EncryptionCapability):
        self.config = vault_config
        self.capability = capability

    @property
    def ledger_path(self) -> Path:
        return self.config.data_dir / config.TOTP_LEDGER_FILE

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def required_vaults(self) -> List[str]:
        """Names of the vaults recorded as requiring a one-time code."""
        try:
            text = self.ledger_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as e:
            raise VaultIOError(f"Failed to read {self.ledger_path}: {e}") from e
        return sorted({line.strip() for line in text.splitlines() if line.strip()})

    def _update_ledger(self, add: Tuple[str, ...] = (), remove: Tuple[str, ...] = ()) -> None:
        ensure_private_dir(self.config.data_dir)
        lock_path = self.ledger_path.with_name(self.ledger_path.name + config.LOCK_SUFFIX)
        with VaultLock(lock_path, config.TOTP_LEDGER_LOCK_TIMEOUT_SECONDS):
            names = set(self.required_vaults())
            updated = (names | set(add)) - set(remove)
            if updated == names:
                return
            data = "".join(f"{name}\n" for name in sorted(updated))
            try:
                atomic_write(self.ledger_path, data.encode("utf-8"))
            except OSError as e:
                raise VaultIOError(f"Failed to update {self.ledger_path}: {e}") from e

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_enabled(self, vault) -> bool:
        return vault.totp_path.is_file()

    def is_required(self, vault) -> bool:
        """
        Whether opening ``vault`` needs a one-time code.

        A secret file missing from the ledger is put back into it.
        """
        if vault.name in self.required_vaults():
            return True
        if self.is_enabled(vault):
            logger.warning(f"Vault `{vault.name}` has a 2FA secret but no ledger entry; restoring it")
            self._update_ledger(add=(vault.name,))
            return True
        return False

    def verify(self, vault, code: str, passphrase: Optional[SecureBuffer] = None) -> bool:
        """
        Check a one-time code against the vault's secret.

        Whitespace inside the code is ignored. Codes from the previous and
        the next time step are accepted as well.

        Raises:
            TwoFactorError: If the vault requires a code but its secret is gone
        """
        code = "".join(code.split())
        if not _CODE_PATTERN.fullmatch(code):
            return False
        if not self.is_enabled(vault):
            raise TwoFactorError(f"Vault `{vault.name}` requires a one-time code but its secret "
                                 f"is missing at {vault.totp_path}")
        with self.capability.decrypt(vault.totp_path, vault.recipient, passphrase) as secret:
            with secret.use() as view:
                totp = _totp(view)
        return totp.verify(code, valid_window=config.TOTP_VALID_WINDOW)

    # ------------------------------------------------------------------
    # Changes
    # ------------------------------------------------------------------

    def enable(self, vault) -> Tuple[SecureBuffer, str]:
        """
        Generate a secret for ``vault`` and start requiring codes.

        Returns:
            The base32 secret, which the caller must wipe, and its
            ``otpauth://`` provisioning URI for authenticator apps

        Raises:
            DuplicateError: If two-factor authentication is already enabled
        """
        if self.is_enabled(vault):
            raise DuplicateError(f"Two-factor authentication is already enabled for vault `{vault.name}`.")
        secret = SecureBuffer(pyotp.random_base32())
        try:
            with secret.use() as view:
                uri = _totp(view).provisioning_uri(name=vault.name, issuer_name=config.TOTP_ISSUER)
            try:
                atomic_write(vault.totp_path, self.capability.encrypt(secret, vault.recipient))
            except OSError as e:
                raise VaultIOError(f"Failed to write {vault.totp_path}: {e}") from e
            self._update_ledger(add=(vault.name,))
        except BaseException:
            secret.wipe()
            raise
        logger.info(f"Two-factor authentication enabled for vault `{vault.name}`")
        return secret, uri

    def disable(self, vault) -> List[str]:
        """
        Stop requiring codes for ``vault`` and purge its secret.

        Returns:
            Purge warnings
        """
        self._update_ledger(remove=(vault.name,))
        warnings = secure_purge(vault.totp_path)
        logger.info(f"Two-factor authentication disabled for vault `{vault.name}`")
        return warnings

    def move(self, vault, target) -> None:
        """Carry the secret and ledger entry of ``vault`` over to ``target``."""
        if not self.is_required(vault):
            return
        self._update_ledger(add=(target.name,))
        if vault.totp_path.exists():
            try:
                os.replace(vault.totp_path, target.totp_path)
            except OSError as e:
                raise VaultIOError(f"Failed to move {vault.totp_path}: {e}") from e
        self._update_ledger(remove=(vault.name,))

    def reseal(self, vault, new_recipient: str, passphrase: Optional[SecureBuffer] = None) -> None:
        """
        Re-encrypt the secret of ``vault`` for ``new_recipient``.

        Raises:
            NotFoundError: If the vault has no secret
        """
        if not self.is_enabled(vault):
            raise NotFoundError(f"Vault `{vault.name}` has no two-factor secret.")
        with self.capability.decrypt(vault.totp_path, vault.recipient, passphrase) as secret:
            ciphertext = self.capability.encrypt(secret, new_recipient)
        try:
            atomic_write(vault.totp_path, ciphertext)
        except OSError as e:
            raise VaultIOError(f"Failed to write {vault.totp_path}: {e}") from e
