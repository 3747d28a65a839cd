"""
Tests for configuration loading and the encrypted funder key.
"""

import os
import sys
import stat
from pathlib import Path

import base58
import pytest
import yaml

sys.path.insert(0, str(Path(__file__).parent.parent))

from solswarm.config import DEFAULT_CONFIG, Config, ConfigManager, apply_env_overrides
from solswarm.errors import InvalidKeyEncodingError
from solswarm.security import DecryptionError

FAST_KDF = 1000
PASSWORD = "test_password_123"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("SOLANA_RPC_URL", "RPC_URL", "WALLET_STORE", "FUNDING_SECRET_KEY"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def funder_secret(make_keypair):
    return base58.b58encode(bytes(make_keypair(50))).decode()


class TestConfig:

    def test_defaults(self):
        config = Config()

        assert config.fee_reserve_lamports == 5000
        assert config.confirm_timeout_seconds == 60
        assert config.max_workers == 1
        assert config.slippage_bps == 300
        assert config.commitment == "confirmed"
        assert not config.dry_run

    def test_from_dict_ignores_unknown_keys(self):
        config = Config.from_dict({"rpc_url": "http://x", "chain_id": 8453})
        assert config.rpc_url == "http://x"
        assert not hasattr(config, "chain_id")

    def test_template_matches_defaults(self):
        assert Config.from_dict(yaml.safe_load(DEFAULT_CONFIG)) == Config()

    def test_env_overrides(self):
        config = apply_env_overrides(Config(), {"RPC_URL": "http://b", "SOLANA_RPC_URL": "http://a",
                                                "WALLET_STORE": "/tmp/w.json"})
        assert config.rpc_url == "http://a"
        assert config.wallet_store == "/tmp/w.json"

    def test_no_overrides(self):
        config = Config()
        assert apply_env_overrides(config, {}) is config


class TestConfigManager:

    def test_create_and_load(self, tmp_path):
        manager = ConfigManager(tmp_path / "solswarm.yaml", kdf_iterations=FAST_KDF)
        manager.create_config({"rpc_url": "http://localhost:8899", "max_workers": 4})

        config = manager.load_config()

        assert config.rpc_url == "http://localhost:8899"
        assert config.max_workers == 4
        if os.name != 'nt':
            assert stat.S_IMODE(manager.config_path.stat().st_mode) == 0o600

    def test_missing_file_uses_defaults(self, tmp_path):
        assert ConfigManager(tmp_path / "missing.yaml").load_config() == Config()

    def test_env_applied_on_load(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SOLANA_RPC_URL", "http://env")
        manager = ConfigManager(tmp_path / "solswarm.yaml")

        assert manager.load_config().rpc_url == "http://env"
        assert manager.load_config(apply_env=False).rpc_url == Config().rpc_url

    def test_update_config(self, tmp_path):
        manager = ConfigManager(tmp_path / "solswarm.yaml")
        manager.create_config({})

        manager.update_config({"slippage_bps": 50})

        assert manager.load_config().slippage_bps == 50

    def test_read_raw_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ConfigManager(tmp_path / "missing.yaml").read_raw_config()


class TestFunderKey:

    def test_encrypted_round_trip(self, tmp_path, funder_secret):
        manager = ConfigManager(tmp_path / "solswarm.yaml", kdf_iterations=FAST_KDF)
        config = manager.create_config({}, funder_secret, PASSWORD)

        raw = manager.read_raw_config()
        assert funder_secret not in str(raw)
        assert manager.funder_secret(config, PASSWORD) == funder_secret

    def test_wrong_password(self, tmp_path, funder_secret):
        manager = ConfigManager(tmp_path / "solswarm.yaml", kdf_iterations=FAST_KDF)
        config = manager.create_config({}, funder_secret, PASSWORD)

        with pytest.raises(DecryptionError):
            manager.funder_secret(config, "wrong_password")

    def test_needs_password(self, tmp_path, funder_secret):
        manager = ConfigManager(tmp_path / "solswarm.yaml", kdf_iterations=FAST_KDF)
        config = manager.create_config({}, funder_secret, PASSWORD)

        with pytest.raises(ValueError):
            manager.funder_secret(config)

    def test_environment_wins(self, tmp_path, monkeypatch, funder_secret):
        monkeypatch.setenv("FUNDING_SECRET_KEY", funder_secret)
        manager = ConfigManager(tmp_path / "solswarm.yaml")

        assert manager.funder_secret(Config()) == funder_secret

    def test_not_configured(self, tmp_path):
        with pytest.raises(ValueError):
            ConfigManager(tmp_path / "solswarm.yaml").funder_secret(Config(), PASSWORD)

    def test_invalid_secret_rejected_on_create(self, tmp_path):
        manager = ConfigManager(tmp_path / "solswarm.yaml", kdf_iterations=FAST_KDF)
        with pytest.raises(InvalidKeyEncodingError):
            manager.create_config({}, "not a key", PASSWORD)

    def test_rotate_password(self, tmp_path, funder_secret):
        manager = ConfigManager(tmp_path / "solswarm.yaml", kdf_iterations=FAST_KDF)
        manager.create_config({}, funder_secret, PASSWORD)

        manager.rotate_password(PASSWORD, "another_password")

        config = manager.load_config()
        assert manager.funder_secret(config, "another_password") == funder_secret
        with pytest.raises(DecryptionError):
            manager.funder_secret(config, PASSWORD)
