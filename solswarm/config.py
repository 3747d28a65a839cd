"""
Configuration Management Module

YAML configuration for the fleet, with the funder's secret key stored
Fernet-encrypted under a password-derived key. Environment variables
override the file for deployment-specific values.
"""

import os
from pathlib import Path
from typing import Dict, Any, Optional
from dataclasses import dataclass, asdict, replace

import yaml

from solswarm.security import KDF_ITERATIONS, decrypt_secret, encrypt_secret, validate_password
from solswarm.utils import logger
from solswarm.wallet import decode_secret_key

# Environment overrides: variable -> config field
ENV_OVERRIDES = {
    "SOLANA_RPC_URL": "rpc_url",
    "RPC_URL": "rpc_url",
    "WALLET_STORE": "wallet_store",
}
FUNDER_SECRET_ENV = "FUNDING_SECRET_KEY"


@dataclass
class Config:
    """Fleet configuration settings."""

    # Network
    rpc_url: str = "https://api.mainnet-beta.solana.com"
    commitment: str = "confirmed"

    # Storage
    wallet_store: str = "./wallets.json"

    # Transactions
    fee_reserve_lamports: int = 5000
    confirm_timeout_seconds: float = 60.0
    poll_interval_seconds: float = 0.5
    max_workers: int = 1

    # Swaps (Jupiter)
    swap_api_url: str = "https://lite-api.jup.ag/swap/v1"
    swap_api_key: Optional[str] = None
    slippage_bps: int = 300

    # Security
    encrypted_funder_key: Optional[str] = None
    salt: Optional[str] = None

    # Operation
    dry_run: bool = False
    log_level: str = "INFO"
    log_file: str = "./solswarm.log"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create Config from dictionary."""
        # Filter only valid fields
        valid_fields = {k: v for k, v in (data or {}).items() if k in cls.__dataclass_fields__}
        return cls(**valid_fields)


def apply_env_overrides(config: Config, environ: Optional[Dict[str, str]] = None) -> Config:
    """Return a copy of ``config`` with environment overrides applied."""
    environ = os.environ if environ is None else environ
    updates = {}
    # Later entries lose to earlier ones (SOLANA_RPC_URL beats RPC_URL)
    for var, field_name in reversed(list(ENV_OVERRIDES.items())):
        if environ.get(var):
            updates[field_name] = environ[var]
    return replace(config, **updates) if updates else config


class ConfigManager:
    """Manages configuration file with an encrypted funder key."""

    def __init__(self, config_path: Path = Path("./solswarm.yaml"), kdf_iterations: int = KDF_ITERATIONS):
        self.config_path = Path(config_path)
        self._kdf_iterations = kdf_iterations

    def create_config(
        self,
        config_data: Dict[str, Any],
        funder_secret: Optional[str] = None,
        password: Optional[str] = None,
    ) -> Config:
        """Create new configuration, encrypting the funder secret if given."""
        config_data = dict(config_data)
        if funder_secret:
            if password is None:
                raise ValueError("A password is required to store the funder key")
            encrypted, salt = self._encrypt_funder_secret(funder_secret, password)
            config_data["encrypted_funder_key"] = encrypted
            config_data["salt"] = salt

        config = Config.from_dict(config_data)
        self._save_config(config)

        logger.info(f"Configuration created at {self.config_path}")
        return config

    def _encrypt_funder_secret(self, funder_secret: str, password: str):
        validate_password(password)
        secret = funder_secret.strip()
        # Fail here rather than at the first funding run
        decode_secret_key(secret)
        return encrypt_secret(secret, password, self._kdf_iterations)

    def load_config(self, apply_env: bool = True) -> Config:
        """Load configuration, falling back to defaults when the file is missing."""
        if self.config_path.exists():
            config = Config.from_dict(self.read_raw_config())
        else:
            logger.debug(f"No config at {self.config_path}, using defaults")
            config = Config()

        return apply_env_overrides(config) if apply_env else config

    def funder_secret(self, config: Config, password: Optional[str] = None) -> str:
        """
        Resolve the funder's secret key.

        ``FUNDING_SECRET_KEY`` wins over the encrypted copy in the config.

        Raises:
            ValueError: If no funder key is configured, or it is encrypted and
                no password was supplied
            DecryptionError: On a wrong password
        """
        env_secret = os.environ.get(FUNDER_SECRET_ENV)
        if env_secret:
            return env_secret.strip()

        if not (config.encrypted_funder_key and config.salt):
            raise ValueError(f"No funder key configured (set {FUNDER_SECRET_ENV} or store one in the config)")
        if password is None:
            raise ValueError("The stored funder key is encrypted; a password is required")

        return decrypt_secret(config.encrypted_funder_key, config.salt, password, self._kdf_iterations)

    def read_raw_config(self) -> Dict[str, Any]:
        """Read config without decrypting (for status checks)."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        with open(self.config_path, 'r') as f:
            return yaml.safe_load(f) or {}

    def _save_config(self, config: Config):
        """Save configuration to YAML file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, 'w') as f:
            yaml.dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)

        # Owner read/write only
        os.chmod(self.config_path, 0o600)
        logger.info(f"Configuration saved to {self.config_path}")

    def update_config(self, updates: Dict[str, Any]) -> Config:
        """Update configuration values."""
        data = self.read_raw_config()
        data.update(updates)

        config = Config.from_dict(data)
        self._save_config(config)

        logger.info("Configuration updated")
        return config

    def rotate_password(self, old_password: str, new_password: str):
        """Re-encrypt the stored funder key under a new password."""
        config = Config.from_dict(self.read_raw_config())
        if not (config.encrypted_funder_key and config.salt):
            raise ValueError("No encrypted funder key to rotate")

        secret = decrypt_secret(config.encrypted_funder_key, config.salt, old_password, self._kdf_iterations)
        encrypted, salt = self._encrypt_funder_secret(secret, new_password)
        self._save_config(replace(config, encrypted_funder_key=encrypted, salt=salt))

        logger.info("Password rotated successfully")


# Default configuration template
DEFAULT_CONFIG = """
# Solana swarm fleet configuration
# This file may contain an encrypted funder key - keep it secure!

rpc_url: https://api.mainnet-beta.solana.com
commitment: confirmed

# Fleet key store (JSON list of {publicKey, secretKey, encoding})
wallet_store: ./wallets.json

# Transactions
fee_reserve_lamports: 5000
confirm_timeout_seconds: 60
poll_interval_seconds: 0.5
max_workers: 1

# Swaps (Jupiter)
swap_api_url: https://lite-api.jup.ag/swap/v1
swap_api_key: null
slippage_bps: 300

# Operation Settings
dry_run: false
log_level: INFO
log_file: ./solswarm.log

# Encrypted credentials (DO NOT MODIFY)
encrypted_funder_key: null
salt: null
""".strip()
