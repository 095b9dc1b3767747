"""Tests for VaultConfig and its environment overrides."""

from pathlib import Path

import pytest

from sealvault import config
from sealvault.config import VaultConfig


class TestVaultConfig:

    def test_defaults(self):
        cfg = VaultConfig(data_dir="/tmp/sv")
        assert cfg.data_dir == Path("/tmp/sv")
        assert cfg.vaults_dir == Path("/tmp/sv") / config.VAULTS_DIR_NAME
        assert cfg.keyring_dir == Path("/tmp/sv") / config.KEYRING_DIR_NAME
        assert cfg.lock_timeout == config.LOCK_TIMEOUT_DEFAULT_SECONDS
        assert cfg.verify_commit is True

    def test_negative_timeout(self):
        with pytest.raises(ValueError):
            VaultConfig(data_dir="/tmp/sv", lock_timeout=-1)

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv(config.ENV_HOME, str(tmp_path))
        monkeypatch.setenv(config.ENV_LOCK_TIMEOUT, "2.5")
        monkeypatch.setenv(config.ENV_VERIFY, "no")
        cfg = VaultConfig.from_env()
        assert cfg.data_dir == tmp_path
        assert cfg.lock_timeout == 2.5
        assert cfg.verify_commit is False

    def test_from_env_defaults(self, monkeypatch):
        for var in (config.ENV_HOME, config.ENV_LOCK_TIMEOUT, config.ENV_VERIFY):
            monkeypatch.delenv(var, raising=False)
        cfg = VaultConfig.from_env()
        assert cfg.data_dir == config.default_data_dir()
        assert cfg.verify_commit is True
