"""Tests for the keyring backend and the GnuPG backend (with gpg mocked)."""

import subprocess

import pytest

from sealvault.crypto import GpgCapability, KeyringCapability
from sealvault.errors import (
    DecryptionError,
    EncryptionError,
    InvalidNameError,
    RecipientNotFoundError,
)
from sealvault.secure_buffer import SecureBuffer

from .conftest import OTHER_RECIPIENT, RECIPIENT


def _plain(buf: SecureBuffer) -> bytes:
    with buf.use() as view:
        return bytes(view)


class TestKeyringCapability:
    """X25519 + AES-GCM sealing with key files in a keyring directory."""

    def test_roundtrip(self, keyring, tmp_path, passphrase):
        blob = tmp_path / "blob"
        with SecureBuffer(b"payload") as plaintext:
            blob.write_bytes(keyring.encrypt(plaintext, RECIPIENT))
        with keyring.decrypt(blob, RECIPIENT, passphrase) as out:
            assert _plain(out) == b"payload"

    def test_ciphertext_header(self, keyring):
        with SecureBuffer(b"payload") as plaintext:
            data = keyring.encrypt(plaintext, RECIPIENT)
        assert data[:4] == KeyringCapability.MAGIC_BYTES
        assert b"payload" not in data

    def test_encryption_is_randomized(self, keyring):
        with SecureBuffer(b"payload") as plaintext:
            assert keyring.encrypt(plaintext, RECIPIENT) != keyring.encrypt(plaintext, RECIPIENT)

    def test_has_recipient(self, keyring):
        assert keyring.has_recipient(RECIPIENT)
        assert not keyring.has_recipient(OTHER_RECIPIENT)

    def test_unknown_recipient(self, keyring):
        with SecureBuffer(b"payload") as plaintext:
            with pytest.raises(RecipientNotFoundError):
                keyring.encrypt(plaintext, OTHER_RECIPIENT)

    def test_wrong_passphrase(self, keyring, tmp_path):
        blob = tmp_path / "blob"
        with SecureBuffer(b"payload") as plaintext:
            blob.write_bytes(keyring.encrypt(plaintext, RECIPIENT))
        with SecureBuffer(b"not it") as wrong:
            with pytest.raises(DecryptionError):
                keyring.decrypt(blob, RECIPIENT, wrong)

    def test_missing_passphrase(self, keyring, tmp_path):
        blob = tmp_path / "blob"
        with SecureBuffer(b"payload") as plaintext:
            blob.write_bytes(keyring.encrypt(plaintext, RECIPIENT))
        with pytest.raises(DecryptionError):
            keyring.decrypt(blob, RECIPIENT, None)

    def test_tampered_ciphertext(self, keyring, tmp_path, passphrase):
        blob = tmp_path / "blob"
        with SecureBuffer(b"payload") as plaintext:
            data = bytearray(keyring.encrypt(plaintext, RECIPIENT))
        data[-1] ^= 0x01
        blob.write_bytes(bytes(data))
        with pytest.raises(DecryptionError):
            keyring.decrypt(blob, RECIPIENT, passphrase)

    def test_bad_magic(self, keyring, tmp_path, passphrase):
        blob = tmp_path / "blob"
        blob.write_bytes(b"XXXX" + bytes(100))
        with pytest.raises(DecryptionError):
            keyring.decrypt(blob, RECIPIENT, passphrase)

    def test_wrong_recipient_key(self, keyring, tmp_path):
        keyring.generate_identity(OTHER_RECIPIENT)
        blob = tmp_path / "blob"
        with SecureBuffer(b"payload") as plaintext:
            blob.write_bytes(keyring.encrypt(plaintext, RECIPIENT))
        with pytest.raises(DecryptionError):
            keyring.decrypt(blob, OTHER_RECIPIENT, None)

    def test_unprotected_identity(self, keyring, tmp_path):
        keyring.generate_identity(OTHER_RECIPIENT)
        blob = tmp_path / "blob"
        with SecureBuffer(b"payload") as plaintext:
            blob.write_bytes(keyring.encrypt(plaintext, OTHER_RECIPIENT))
        with keyring.decrypt(blob, OTHER_RECIPIENT) as out:
            assert _plain(out) == b"payload"

    def test_duplicate_identity(self, keyring):
        with pytest.raises(EncryptionError):
            keyring.generate_identity(RECIPIENT)

    @pytest.mark.parametrize("recipient", ["", "../escape", "a/b", ".."])
    def test_invalid_identity_name(self, keyring, recipient):
        with pytest.raises(InvalidNameError):
            keyring.generate_identity(recipient)


class FakeGpg:
    """Stands in for subprocess.run and records each gpg invocation."""

    def __init__(self, returncode=0, stdout=b"", stderr=b""):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.calls = []

    def __call__(self, cmd, input=None, **kwargs):
        self.calls.append({"cmd": cmd, "input": None if input is None else bytes(input), "kwargs": kwargs})
        return subprocess.CompletedProcess(cmd, self.returncode, self.stdout, self.stderr)


@pytest.fixture
def gpg():
    return GpgCapability(binary="gpg", homedir="/tmp/gnupg-home")


class TestGpgCapability:
    """The gpg command line and how its failures are classified."""

    def test_encrypt_command(self, gpg, monkeypatch):
        fake = FakeGpg(stdout=b"CIPHERTEXT")
        monkeypatch.setattr("sealvault.crypto.subprocess.run", fake)
        with SecureBuffer(b"bundle") as plaintext:
            assert gpg.encrypt(plaintext, RECIPIENT) == b"CIPHERTEXT"
        call = fake.calls[0]
        assert call["cmd"][:3] == ["gpg", "--homedir", "/tmp/gnupg-home"]
        assert "--encrypt" in call["cmd"]
        assert call["cmd"][call["cmd"].index("--recipient") + 1] == RECIPIENT
        assert call["input"] == b"bundle"

    def test_encrypt_unknown_recipient(self, gpg, monkeypatch):
        fake = FakeGpg(returncode=2, stderr=b"gpg: carol: skipped: No public key\n")
        monkeypatch.setattr("sealvault.crypto.subprocess.run", fake)
        with SecureBuffer(b"bundle") as plaintext:
            with pytest.raises(RecipientNotFoundError):
                gpg.encrypt(plaintext, "carol")

    def test_encrypt_failure(self, gpg, monkeypatch):
        fake = FakeGpg(returncode=2, stderr=b"gpg: write error\n")
        monkeypatch.setattr("sealvault.crypto.subprocess.run", fake)
        with SecureBuffer(b"bundle") as plaintext:
            with pytest.raises(EncryptionError):
                gpg.encrypt(plaintext, RECIPIENT)

    def test_encrypt_empty_output(self, gpg, monkeypatch):
        monkeypatch.setattr("sealvault.crypto.subprocess.run", FakeGpg(stdout=b""))
        with SecureBuffer(b"bundle") as plaintext:
            with pytest.raises(EncryptionError):
                gpg.encrypt(plaintext, RECIPIENT)

    def test_missing_binary(self, gpg, monkeypatch):
        def not_found(*args, **kwargs):
            raise FileNotFoundError("gpg")

        monkeypatch.setattr("sealvault.crypto.subprocess.run", not_found)
        with SecureBuffer(b"bundle") as plaintext:
            with pytest.raises(EncryptionError):
                gpg.encrypt(plaintext, RECIPIENT)

    def test_timeout(self, gpg, monkeypatch):
        def too_slow(cmd, **kwargs):
            raise subprocess.TimeoutExpired(cmd, 1)

        monkeypatch.setattr("sealvault.crypto.subprocess.run", too_slow)
        with pytest.raises(DecryptionError):
            gpg.decrypt("/tmp/x.vault", RECIPIENT)

    def test_decrypt_with_agent(self, gpg, monkeypatch):
        fake = FakeGpg(stdout=b"PLAINTEXT")
        monkeypatch.setattr("sealvault.crypto.subprocess.run", fake)
        with gpg.decrypt("/tmp/x.vault", RECIPIENT) as out:
            assert _plain(out) == b"PLAINTEXT"
        cmd = fake.calls[0]["cmd"]
        assert "--pinentry-mode" not in cmd
        assert cmd[-1] == "/tmp/x.vault"

    def test_decrypt_with_passphrase_on_stdin(self, gpg, monkeypatch, passphrase):
        fake = FakeGpg(stdout=b"PLAINTEXT")
        monkeypatch.setattr("sealvault.crypto.subprocess.run", fake)
        with gpg.decrypt("/tmp/x.vault", RECIPIENT, passphrase) as out:
            assert _plain(out) == b"PLAINTEXT"
        call = fake.calls[0]
        assert call["cmd"][call["cmd"].index("--pinentry-mode") + 1] == "loopback"
        assert call["cmd"][call["cmd"].index("--passphrase-fd") + 1] == "0"
        with passphrase.use() as view:
            assert call["input"] == bytes(view)
        # never on the command line
        assert all(bytes(arg, "utf-8") != call["input"] for arg in call["cmd"])

    def test_decrypt_failure(self, gpg, monkeypatch):
        monkeypatch.setattr("sealvault.crypto.subprocess.run",
                            FakeGpg(returncode=2, stderr=b"gpg: decryption failed: Bad passphrase\n"))
        with pytest.raises(DecryptionError):
            gpg.decrypt("/tmp/x.vault", RECIPIENT)

    def test_has_recipient(self, gpg, monkeypatch):
        monkeypatch.setattr("sealvault.crypto.subprocess.run", FakeGpg(returncode=0))
        assert gpg.has_recipient(RECIPIENT)
        monkeypatch.setattr("sealvault.crypto.subprocess.run", FakeGpg(returncode=2))
        assert not gpg.has_recipient("carol")
