"""
Encryption capabilities for sealing vault archives.

A capability turns a plaintext bundle into ciphertext for a recipient and
back. The vault manager only talks to the EncryptionCapability interface, so
the GnuPG command-line backend and the library-bound keyring backend are
interchangeable.
"""

import os
import re
import struct
import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from . import config
from .errors import (
    DecryptionError,
    EncryptionError,
    InvalidNameError,
    RecipientNotFoundError,
    VaultIOError,
)
from .secure_buffer import SecureBuffer
from .utils import atomic_write, ensure_private_dir

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class EncryptionCapability(ABC):
    """Public-key encryption used to seal and unseal vault archives."""

    name = "abstract"

    @abstractmethod
    def encrypt(self, plaintext: SecureBuffer, recipient: str) -> bytes:
        """
        Encrypt a plaintext bundle for a recipient.

        Raises:
            RecipientNotFoundError: If the recipient is unknown
            EncryptionError: If encryption fails
        """

    @abstractmethod
    def decrypt(self, path: PathLike, recipient: str,
                passphrase: Optional[SecureBuffer] = None) -> SecureBuffer:
        """
        Decrypt the ciphertext stored at ``path``.

        Args:
            path: Encrypted file
            recipient: Identity the file was encrypted for
            passphrase: Passphrase unlocking the recipient's private key,
                if the backend does not prompt for it itself

        Raises:
            DecryptionError: Wrong passphrase, missing key or tool failure
        """

    @abstractmethod
    def has_recipient(self, recipient: str) -> bool:
        """Check whether the recipient's public key is available."""


class GpgCapability(EncryptionCapability):
    """Delegates to the GnuPG command-line tool."""

    name = "gpg"

    _RECIPIENT_ERRORS = ("no public key", "unusable public key", "skipped", "not found")

    def __init__(self, binary: str = config.GPG_BINARY, timeout: int = config.GPG_TIMEOUT_SECONDS,
                 homedir: Optional[PathLike] = None):
        self.binary = binary
        self.timeout = timeout
        self.homedir = str(homedir) if homedir else None

    def _command(self, *args: str) -> list:
        cmd = [self.binary]
        if self.homedir:
            cmd += ["--homedir", self.homedir]
        cmd += list(args)
        return cmd

    def _run(self, cmd: list, error_cls, stdin=None):
        try:
            if stdin is None:
                return subprocess.run(cmd, stdin=subprocess.DEVNULL, capture_output=True,
                                      timeout=self.timeout)
            return subprocess.run(cmd, input=stdin, capture_output=True, timeout=self.timeout)
        except FileNotFoundError as e:
            raise error_cls(f"GnuPG executable `{self.binary}` was not found") from e
        except subprocess.TimeoutExpired as e:
            raise error_cls(f"GnuPG did not finish within {self.timeout} seconds") from e

    @staticmethod
    def _stderr(result) -> str:
        return (result.stderr or b"").decode("utf-8", errors="replace").strip()

    def has_recipient(self, recipient: str) -> bool:
        result = self._run(self._command("--batch", "--with-colons", "--list-keys", "--", recipient),
                           RecipientNotFoundError)
        return result.returncode == 0

    def encrypt(self, plaintext: SecureBuffer, recipient: str) -> bytes:
        cmd = self._command("--batch", "--yes", "--quiet", "--trust-model", "always",
                            "--encrypt", "--recipient", recipient, "--output", "-")
        with plaintext.use() as view:
            result = self._run(cmd, EncryptionError, stdin=view)
        if result.returncode != 0:
            stderr = self._stderr(result)
            if any(marker in stderr.lower() for marker in self._RECIPIENT_ERRORS):
                raise RecipientNotFoundError(f"Recipient `{recipient}` is not in the GnuPG keyring: {stderr}")
            raise EncryptionError(f"GnuPG failed to encrypt for `{recipient}`: {stderr}")
        if not result.stdout:
            raise EncryptionError("GnuPG produced no ciphertext")
        return result.stdout

    def decrypt(self, path: PathLike, recipient: str,
                passphrase: Optional[SecureBuffer] = None) -> SecureBuffer:
        if passphrase is None:
            # Leave pinentry to gpg-agent
            result = self._run(self._command("--quiet", "--decrypt", "--", str(path)), DecryptionError)
        else:
            cmd = self._command("--batch", "--yes", "--quiet", "--pinentry-mode", "loopback",
                                "--passphrase-fd", "0", "--decrypt", "--", str(path))
            with passphrase.use() as view:
                result = self._run(cmd, DecryptionError, stdin=view)
        if result.returncode != 0:
            raise DecryptionError(f"GnuPG failed to decrypt {path}: {self._stderr(result)}")
        return SecureBuffer(result.stdout)


class KeyringCapability(EncryptionCapability):
    """
    Library-bound backend built on ``cryptography``.

    Each recipient has an X25519 key pair in the keyring directory. The
    private key is stored as PKCS#8 PEM encrypted with the recipient's
    passphrase. Ciphertext layout:

        MAGIC | version | ephemeral public key | nonce | AES-256-GCM payload

    The header is authenticated as associated data.
    """

    name = "keyring"

    MAGIC_BYTES = b'SVKR'
    VERSION = 1
    NONCE_SIZE = 12
    KEY_SIZE = 32
    PUBLIC_KEY_SIZE = 32
    HKDF_INFO = b"sealvault-keyring-v1"

    _HEADER = struct.Struct('<4sI')
    _SAFE_RECIPIENT = re.compile(r"^[A-Za-z0-9@._+\-]+$")

    def __init__(self, keyring_dir: PathLike):
        self.keyring_dir = Path(keyring_dir)

    def _key_path(self, recipient: str, suffix: str) -> Path:
        if not recipient or not self._SAFE_RECIPIENT.match(recipient) or recipient in (".", ".."):
            raise InvalidNameError(f"Invalid recipient identity `{recipient}`")
        return self.keyring_dir / f"{recipient}{suffix}"

    def has_recipient(self, recipient: str) -> bool:
        return self._key_path(recipient, config.KEYRING_PUBLIC_SUFFIX).is_file()

    def generate_identity(self, recipient: str, passphrase: Optional[SecureBuffer] = None) -> None:
        """
        Create a key pair for ``recipient``.

        Args:
            recipient: Identity name, used as the key file stem
            passphrase: Protects the private key; None stores it unencrypted
        """
        public_path = self._key_path(recipient, config.KEYRING_PUBLIC_SUFFIX)
        private_path = self._key_path(recipient, config.KEYRING_PRIVATE_SUFFIX)
        if public_path.exists() or private_path.exists():
            raise EncryptionError(f"An identity named `{recipient}` already exists in {self.keyring_dir}")

        private_key = X25519PrivateKey.generate()
        if passphrase is not None and len(passphrase):
            with passphrase.use() as view:
                encryption = serialization.BestAvailableEncryption(bytes(view))
        else:
            encryption = serialization.NoEncryption()
        private_pem = bytearray(private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=encryption,
        ))
        public_pem = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        try:
            ensure_private_dir(self.keyring_dir)
            atomic_write(private_path, private_pem)
            atomic_write(public_path, public_pem)
        except OSError as e:
            raise VaultIOError(f"Failed to write identity `{recipient}`: {e}") from e
        finally:
            private_pem[:] = bytes(len(private_pem))
        logger.info(f"Created keyring identity `{recipient}` in {self.keyring_dir}")

    def _load_public_key(self, recipient: str) -> X25519PublicKey:
        path = self._key_path(recipient, config.KEYRING_PUBLIC_SUFFIX)
        try:
            data = path.read_bytes()
        except FileNotFoundError as e:
            raise RecipientNotFoundError(f"Recipient `{recipient}` is not in keyring {self.keyring_dir}") from e
        except OSError as e:
            raise VaultIOError(f"Failed to read public key {path}: {e}") from e
        key = serialization.load_pem_public_key(data)
        if not isinstance(key, X25519PublicKey):
            raise RecipientNotFoundError(f"Key for `{recipient}` is not an X25519 public key")
        return key

    def _load_private_key(self, recipient: str, passphrase: Optional[SecureBuffer]) -> X25519PrivateKey:
        path = self._key_path(recipient, config.KEYRING_PRIVATE_SUFFIX)
        if not path.exists():
            if not self.has_recipient(recipient):
                raise RecipientNotFoundError(f"Recipient `{recipient}` is not in keyring {self.keyring_dir}")
            raise DecryptionError(f"No private key for `{recipient}` in {self.keyring_dir}")
        pem = bytearray(path.read_bytes())
        try:
            if passphrase is not None and len(passphrase):
                with passphrase.use() as view:
                    key = serialization.load_pem_private_key(bytes(pem), password=bytes(view))
            else:
                key = serialization.load_pem_private_key(bytes(pem), password=None)
        except (ValueError, TypeError) as e:
            raise DecryptionError(f"Could not unlock private key for `{recipient}`: bad passphrase") from e
        finally:
            pem[:] = bytes(len(pem))
        if not isinstance(key, X25519PrivateKey):
            raise DecryptionError(f"Key for `{recipient}` is not an X25519 private key")
        return key

    def _derive_key(self, shared_secret: bytes, ephemeral_public: bytes, recipient_public: bytes) -> bytes:
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=self.KEY_SIZE,
            salt=ephemeral_public + recipient_public,
            info=self.HKDF_INFO,
        )
        return hkdf.derive(shared_secret)

    @staticmethod
    def _raw_public(key: X25519PublicKey) -> bytes:
        return key.public_bytes(encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw)

    def encrypt(self, plaintext: SecureBuffer, recipient: str) -> bytes:
        recipient_key = self._load_public_key(recipient)
        ephemeral = X25519PrivateKey.generate()
        ephemeral_public = self._raw_public(ephemeral.public_key())
        key = self._derive_key(ephemeral.exchange(recipient_key), ephemeral_public,
                               self._raw_public(recipient_key))
        nonce = os.urandom(self.NONCE_SIZE)
        header = self._HEADER.pack(self.MAGIC_BYTES, self.VERSION) + ephemeral_public + nonce
        try:
            with plaintext.use() as view:
                ciphertext = AESGCM(key).encrypt(nonce, view, header)
        except (ValueError, OverflowError) as e:
            raise EncryptionError(f"Encryption for `{recipient}` failed: {e}") from e
        return header + ciphertext

    def decrypt(self, path: PathLike, recipient: str,
                passphrase: Optional[SecureBuffer] = None) -> SecureBuffer:
        try:
            blob = Path(path).read_bytes()
        except OSError as e:
            raise DecryptionError(f"Failed to read {path}: {e}") from e

        header_size = self._HEADER.size + self.PUBLIC_KEY_SIZE + self.NONCE_SIZE
        if len(blob) < header_size:
            raise DecryptionError(f"{path} is too short to be a keyring ciphertext")
        magic, version = self._HEADER.unpack_from(blob)
        if magic != self.MAGIC_BYTES:
            raise DecryptionError(f"{path}: magic bytes mismatch, expected {self.MAGIC_BYTES!r}, got {magic!r}")
        if version != self.VERSION:
            raise DecryptionError(f"{path}: unsupported version {version}")

        offset = self._HEADER.size
        ephemeral_public = blob[offset:offset + self.PUBLIC_KEY_SIZE]
        offset += self.PUBLIC_KEY_SIZE
        nonce = blob[offset:offset + self.NONCE_SIZE]

        private_key = self._load_private_key(recipient, passphrase)
        shared = private_key.exchange(X25519PublicKey.from_public_bytes(ephemeral_public))
        key = self._derive_key(shared, ephemeral_public, self._raw_public(private_key.public_key()))
        try:
            plaintext = AESGCM(key).decrypt(nonce, blob[header_size:], blob[:header_size])
        except InvalidTag as e:
            raise DecryptionError(f"Authentication failed while decrypting {path}") from e
        return SecureBuffer(plaintext)
