"""
Exception hierarchy for SealVault.

Every error carries the process exit code the command-line front end uses
when the error escapes an operation.
"""


class VaultError(Exception):
    """Base class for all vault errors."""
    exit_code = 1


class UserInputError(VaultError):
    """Invalid name, length or other caller-supplied value."""
    exit_code = 2


class InvalidNameError(UserInputError):
    """Account or vault name that cannot be stored safely."""


class InvalidLengthError(UserInputError):
    """Password length outside the accepted range."""


class DuplicateError(UserInputError):
    """An account or vault with the same name already exists."""


class NotFoundError(VaultError):
    """Account, vault or backup is absent."""
    exit_code = 3


class VaultBusyError(VaultError):
    """Another session holds the vault lock."""
    exit_code = 4


class DecryptionError(VaultError):
    """The encryption capability could not decrypt the vault."""
    exit_code = 5


class EncryptionError(VaultError):
    """The encryption capability could not produce or verify ciphertext."""
    exit_code = 6


class CorruptArchiveError(VaultError):
    """Decrypted tree failed structural validation."""
    exit_code = 7


class VaultIOError(VaultError):
    """Filesystem failure while handling vault files."""
    exit_code = 8


class RecipientNotFoundError(VaultError):
    """The recipient identity is unknown to the encryption capability."""
    exit_code = 9


class InvalidStateError(VaultError):
    """Lifecycle operation called in the wrong state."""
    exit_code = 10


class TwoFactorError(VaultError):
    """A required one-time code is missing, wrong or cannot be checked."""
    exit_code = 11
