"""
Configuration constants for the SealVault application.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

# Application Metadata
APP_VERSION = "1.0.0"  # Use: Current version of the application. Type: str. Range: Semantic versioning string (e.g., "1.0.0")
APP_NAME = "SealVault"  # Use: Name of the application, shown by the command-line front end. Type: str. Range: Any valid string.

# File and Directory Names
CONFIG_DIR_NAME = ".sealvault"  # Use: Name of the hidden directory within the user's home directory where SealVault keeps its vaults and keyring. Type: str. Range: Any valid directory name.
VAULTS_DIR_NAME = "vaults"  # Use: Subdirectory of the data directory holding encrypted vault files. Type: str. Range: Any valid directory name.
KEYRING_DIR_NAME = "keyring"  # Use: Subdirectory of the data directory holding key pairs for the built-in keyring backend. Type: str. Range: Any valid directory name.
VAULT_SUFFIX = ".vault"  # Use: File suffix of an encrypted vault blob. Type: str. Range: Any suffix starting with a dot.
BACKUP_SUFFIX = ".bak"  # Use: Suffix appended to the vault file name for its backup copy. Type: str. Range: Any suffix starting with a dot.
RECIPIENT_SUFFIX = ".recipient"  # Use: Suffix of the sidecar file recording the recipient identity a vault is encrypted for. Type: str. Range: Any suffix starting with a dot.
LOCK_SUFFIX = ".lock"  # Use: Suffix appended to the vault file name for its advisory lock file. Type: str. Range: Any suffix starting with a dot.
OPEN_TREE_SUFFIX = ".open"  # Use: Suffix appended to the vault file name for the ephemeral plaintext tree of an open session. Type: str. Range: Any suffix starting with a dot.
TEMP_PREFIX = ".sealvault-"  # Use: Prefix of temporary files created next to a file being replaced atomically. Type: str. Range: Any string valid in a filename.
INDEX_FILE = "accounts"  # Use: Name of the account index at the root of a decrypted vault tree. Type: str. Range: Any valid filename.
RECORD_FILE = "data"  # Use: Name of the record file inside each account directory. Type: str. Range: Any valid filename.

# Security Settings
DIR_MODE = 0o700  # Use: Permission mode for directories holding vault material. Type: int. Range: Owner-only modes.
FILE_MODE = 0o600  # Use: Permission mode for vault blobs, backups, sidecars and plaintext record files. Type: int. Range: Owner-only modes.
PURGE_CHUNK_SIZE = 64 * 1024  # Use: Chunk size in bytes used when overwriting plaintext files before deletion. Type: int. Range: Positive integer.
ARCHIVE_MAX_MEMBERS = 10000  # Use: Upper bound on tar members accepted when expanding a decrypted vault. Type: int. Range: Positive integer.
VERIFY_COMMIT_DEFAULT = True  # Use: Whether a commit decrypts its new artifact back before replacing the vault. Type: bool. Range: True or False.

# Locking Settings
LOCK_TIMEOUT_DEFAULT_SECONDS = 0.0  # Use: Default time to wait for a contended vault lock before failing. 0 fails immediately. Type: float. Range: 0 or positive.
LOCK_POLL_INTERVAL_SECONDS = 0.1  # Use: Delay between attempts while waiting for a contended vault lock. Type: float. Range: Positive float.

# GnuPG Settings
GPG_BINARY = "gpg"  # Use: Name or path of the GnuPG executable used by the GnuPG backend. Type: str. Range: Executable name or absolute path.
GPG_TIMEOUT_SECONDS = 120  # Use: Timeout for a single GnuPG invocation, including interactive passphrase entry. Type: int. Range: Positive integer.

# Keyring Backend Settings
KEYRING_PUBLIC_SUFFIX = ".pub"  # Use: Suffix of public key files in the keyring directory. Type: str. Range: Any suffix starting with a dot.
KEYRING_PRIVATE_SUFFIX = ".key"  # Use: Suffix of passphrase-protected private key files in the keyring directory. Type: str. Range: Any suffix starting with a dot.

# Two-Factor Authentication Settings
TOTP_SUFFIX = ".totp"  # Use: Suffix of the file holding a vault's encrypted one-time-password secret. Type: str. Range: Any suffix starting with a dot.
TOTP_LEDGER_FILE = "totp_ledger"  # Use: File in the data directory listing the vaults that require a one-time code, one name per line. Type: str. Range: Any valid filename.
TOTP_ISSUER = "SealVault"  # Use: Issuer name shown by authenticator apps for provisioned vaults. Type: str. Range: Any valid string.
TOTP_INTERVAL_SECONDS = 30  # Use: Time step of one-time codes. Type: int. Range: Positive integer (authenticator apps expect 30).
TOTP_DIGITS = 6  # Use: Number of digits in a one-time code. Type: int. Range: 6 to 8.
TOTP_VALID_WINDOW = 1  # Use: Number of time steps before and after the current one in which a code is still accepted. Type: int. Range: 0 or positive.
TOTP_VERIFIED_SECONDS = 300  # Use: How long a verified one-time code unlocks its vault for the same manager. Type: int. Range: Positive integer.
TOTP_LEDGER_LOCK_TIMEOUT_SECONDS = 5.0  # Use: Time to wait for another process updating the two-factor ledger. Type: float. Range: 0 or positive.

# Password Generator Settings
PASSWORD_GENERATOR_DEFAULT_LENGTH = 16  # Use: Default length for generated passwords. Type: int. Range: 1 to PASSWORD_GENERATOR_MAX_LENGTH.
PASSWORD_GENERATOR_MAX_LENGTH = 4096  # Use: Maximum allowed length for generated passwords. Type: int. Range: Positive integer.
PASSWORD_GENERATOR_AMBIGUOUS_CHARS = "0O1lI"  # Use: Characters considered ambiguous and can be excluded from generated passwords. Type: str. Range: Any string of characters.

# Environment Variables
ENV_HOME = "SEALVAULT_HOME"  # Use: Environment variable overriding the data directory. Type: str. Range: Any variable name.
ENV_LOCK_TIMEOUT = "SEALVAULT_LOCK_TIMEOUT"  # Use: Environment variable overriding the lock timeout in seconds. Type: str. Range: Any variable name.
ENV_VERIFY = "SEALVAULT_VERIFY"  # Use: Environment variable disabling commit verification when set to 0/false/no. Type: str. Range: Any variable name.


def default_data_dir() -> Path:
    """Get the default data directory in the user's home."""
    return Path(os.path.expanduser("~")) / CONFIG_DIR_NAME


@dataclass
class VaultConfig:
    """Explicit settings handed to the vault manager."""
    data_dir: Path = field(default_factory=default_data_dir)
    lock_timeout: float = LOCK_TIMEOUT_DEFAULT_SECONDS
    verify_commit: bool = VERIFY_COMMIT_DEFAULT

    def __post_init__(self):
        self.data_dir = Path(self.data_dir)
        if self.lock_timeout < 0:
            raise ValueError(f"lock_timeout must be >= 0, got {self.lock_timeout}")

    @property
    def vaults_dir(self) -> Path:
        return self.data_dir / VAULTS_DIR_NAME

    @property
    def keyring_dir(self) -> Path:
        return self.data_dir / KEYRING_DIR_NAME

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Build a configuration from SEALVAULT_* environment variables."""
        home = os.environ.get(ENV_HOME)
        data_dir = Path(os.path.expanduser(home)) if home else default_data_dir()
        lock_timeout = float(os.environ.get(ENV_LOCK_TIMEOUT, LOCK_TIMEOUT_DEFAULT_SECONDS))
        verify = os.environ.get(ENV_VERIFY, "1").strip().lower() not in ("0", "false", "no")
        return cls(data_dir=data_dir, lock_timeout=lock_timeout, verify_commit=verify)
