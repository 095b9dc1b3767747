"""Shared fixtures: a throwaway data directory, a keyring identity and a manager."""

import pytest

from sealvault.config import VaultConfig
from sealvault.crypto import KeyringCapability
from sealvault.secure_buffer import SecureBuffer
from sealvault.vault_manager import VaultManager

RECIPIENT = "alice@example.org"
OTHER_RECIPIENT = "bob@example.org"
PASSPHRASE = "correct horse battery staple"


@pytest.fixture
def vault_config(tmp_path):
    return VaultConfig(data_dir=tmp_path / "data")


@pytest.fixture
def keyring(vault_config):
    """KeyringCapability with a passphrase-protected identity for RECIPIENT."""
    capability = KeyringCapability(vault_config.keyring_dir)
    with SecureBuffer(PASSPHRASE) as passphrase:
        capability.generate_identity(RECIPIENT, passphrase)
    return capability


@pytest.fixture
def passphrase():
    buf = SecureBuffer(PASSPHRASE)
    yield buf
    buf.wipe()


@pytest.fixture
def manager(vault_config, keyring):
    return VaultManager(vault_config, keyring)


@pytest.fixture
def vault(manager):
    """An empty vault named `personal` sealed for RECIPIENT."""
    return manager.create_vault("personal", RECIPIENT)


@pytest.fixture
def tree(tmp_path):
    """An expanded, empty vault tree."""
    root = tmp_path / "tree"
    root.mkdir(mode=0o700)
    (root / "accounts").write_bytes(b"")
    return root
