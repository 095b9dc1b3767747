"""
SealVault Password Store

Accounts live in a single vault file encrypted for a public-key recipient.
A session decrypts the vault into an owner-only ephemeral tree, applies
changes there, and commits by re-encrypting and atomically replacing the
vault. Secrets in memory are held in wipeable SecureBuffer objects.

THREAT MODEL:
Protects the vault at rest and limits how long plaintext exists on disk and
in memory. It does not protect against an attacker who already controls the
user account or the running process.
"""

from .config import APP_VERSION as __version__
from .config import VaultConfig
from .crypto import EncryptionCapability, GpgCapability, KeyringCapability
from .errors import VaultError
from .secure_buffer import SecureBuffer
from .storage import AccountRecord, AccountStore
from .totp import TwoFactorManager
from .vault_manager import Vault, VaultManager, VaultState

__all__ = [
    "__version__",
    "AccountRecord",
    "AccountStore",
    "EncryptionCapability",
    "GpgCapability",
    "KeyringCapability",
    "SecureBuffer",
    "TwoFactorManager",
    "Vault",
    "VaultConfig",
    "VaultError",
    "VaultManager",
    "VaultState",
]
