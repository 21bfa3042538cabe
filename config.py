"""
Configuration Management Module

Handles secure storage of configuration with encrypted keypairs.
Uses Fernet symmetric encryption with password-derived keys.
"""

import os
import base64
from pathlib import Path
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, asdict, field

import yaml
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from solders.keypair import Keypair

from utils import SecurityError

import logging
logger = logging.getLogger(__name__)


BURNER_MODES = ("disabled", "hybrid", "burner_only")


@dataclass
class Config:
    """Wallet pool configuration settings."""

    # Network
    rpc_url: str = "https://api.mainnet-beta.solana.com"
    confirm_timeout_seconds: float = 60.0

    # Wallet roster
    wallet_file: str = "./wallets.json"
    num_wallets_to_generate: int = 10
    fund_amount: float = 0.05                 # SOL per wallet
    min_sol_buffer: float = 0.0005
    funding_max_attempts: int = 3
    funding_chunk_size: int = 50
    verify_tolerance_bps: int = 100           # ±1% balance-delta band

    # Batch selection
    batch_size: int = 20
    concurrency: int = 10
    auto_scale: bool = False
    shuffle_wallets: bool = True
    min_wallet_cooldown_ms: int = 300_000
    max_wallet_cooldown_ms: int = 1_800_000
    min_inter_batch_delay_ms: int = 5_000
    max_inter_batch_delay_ms: int = 15_000

    # Seasoning
    enable_seasoning: bool = False
    seasoning_min_txs: int = 3
    seasoning_max_txs: int = 10
    seasoning_delay_ms: List[int] = field(default_factory=lambda: [2_000, 10_000])

    # Burner wallets
    burner_mode: str = "disabled"             # disabled | hybrid | burner_only
    max_burner_wallets: int = 50
    burner_lifetime_txs: int = 5
    burner_fund_amount: float = 0.02
    burner_creation_interval_s: float = 30.0
    burner_disposal_delay_s: float = 10.0
    burner_min_balance: float = 0.001
    burner_ratio: float = 0.3
    burner_emergency_ratio: float = 0.7
    enable_burner_seasoning: bool = False
    burner_seasoning_min_txs: int = 1
    burner_seasoning_max_txs: int = 3
    burner_max_funding_failures: int = 10
    burner_failure_pause_s: float = 300.0

    # Circuit breaker
    enable_circuit_breaker: bool = True
    max_consecutive_failures: int = 10
    max_failure_rate_percent: float = 50.0
    failure_rate_window: int = 10
    emergency_stop_loss_percent: float = 30.0
    balance_check_interval: int = 5

    # Rebalancing
    enable_rebalancing: bool = True
    rebalance_interval: int = 50              # cycles
    min_wallet_balance: float = 0.005
    target_wallet_balance: float = 0.05
    dust_threshold: float = 0.001
    max_retention_percent: float = 10.0

    # Encrypted credentials
    encrypted_master_key: Optional[str] = None
    encrypted_sink_key: Optional[str] = None
    encrypted_relayer_keys: List[str] = field(default_factory=list)
    salt: Optional[str] = None

    # Operation
    log_level: str = "INFO"
    log_file: Optional[str] = "./wallet_pool.log"
    metrics_log_file: Optional[str] = None
    stats_interval: int = 10                  # cycles

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create Config from dictionary."""
        valid_fields = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**valid_fields)

    def validate(self):
        """Raise ValueError describing the first out-of-range setting."""
        positive = (
            "num_wallets_to_generate", "fund_amount", "funding_max_attempts",
            "funding_chunk_size", "batch_size", "concurrency", "max_burner_wallets",
            "burner_lifetime_txs", "burner_fund_amount", "max_consecutive_failures",
            "failure_rate_window", "balance_check_interval", "rebalance_interval",
            "target_wallet_balance", "confirm_timeout_seconds",
        )
        for name in positive:
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")

        pairs = (
            ("min_wallet_cooldown_ms", "max_wallet_cooldown_ms"),
            ("min_inter_batch_delay_ms", "max_inter_batch_delay_ms"),
            ("seasoning_min_txs", "seasoning_max_txs"),
            ("burner_seasoning_min_txs", "burner_seasoning_max_txs"),
            ("min_wallet_balance", "target_wallet_balance"),
        )
        for low, high in pairs:
            if getattr(self, low) > getattr(self, high):
                raise ValueError(f"{low} must not exceed {high}")

        if len(self.seasoning_delay_ms) != 2 or self.seasoning_delay_ms[0] > self.seasoning_delay_ms[1]:
            raise ValueError("seasoning_delay_ms must be a [min, max] pair")

        for name in ("burner_ratio", "burner_emergency_ratio"):
            value = getattr(self, name)
            if not 0 < value <= 1:
                raise ValueError(f"{name} must be in (0, 1], got {value}")

        for name in ("max_failure_rate_percent", "emergency_stop_loss_percent", "max_retention_percent"):
            value = getattr(self, name)
            if not 0 <= value <= 100:
                raise ValueError(f"{name} must be a percentage, got {value}")

        if self.min_sol_buffer < 0:
            raise ValueError(f"min_sol_buffer must not be negative, got {self.min_sol_buffer}")

        if not 0 <= self.verify_tolerance_bps < 10_000:
            raise ValueError(f"verify_tolerance_bps out of range: {self.verify_tolerance_bps}")

        if self.burner_mode not in BURNER_MODES:
            raise ValueError(f"burner_mode must be one of {BURNER_MODES}, got {self.burner_mode!r}")


@dataclass
class PoolKeys:
    """Decrypted keypairs used by the pool at runtime."""
    master: Optional[Keypair] = None
    sink: Optional[Keypair] = None
    relayers: List[Keypair] = field(default_factory=list)


class ConfigManager:
    """Manages configuration file with encrypted secrets."""

    def __init__(self, config_path: Path = Path("./pool_config.yaml")):
        self.config_path = Path(config_path)
        self._kdf_iterations = 480000  # OWASP recommended minimum

    def _derive_key(self, password: str, salt: bytes) -> bytes:
        """Derive encryption key from password using PBKDF2."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self._kdf_iterations,
        )
        return base64.urlsafe_b64encode(kdf.derive(password.encode()))

    @staticmethod
    def _encrypt_secret(secret_key: str, fernet: Fernet) -> str:
        """Encrypt a base58 keypair string."""
        secret_clean = secret_key.strip()
        try:
            Keypair.from_base58_string(secret_clean)
        except Exception:
            raise ValueError("Secret key must be a base58-encoded 64-byte keypair")

        encrypted = fernet.encrypt(secret_clean.encode())
        return base64.b64encode(encrypted).decode()

    @staticmethod
    def _decrypt_secret(encrypted_key: str, fernet: Fernet) -> str:
        encrypted_bytes = base64.b64decode(encrypted_key.encode())
        return fernet.decrypt(encrypted_bytes).decode()

    def create_config(
        self,
        config_data: Dict[str, Any],
        password: str,
        master_key: Optional[str] = None,
        sink_key: Optional[str] = None,
        relayer_keys: Optional[List[str]] = None
    ) -> Config:
        """Create new configuration with encrypted keypairs."""
        salt = os.urandom(16)
        fernet = Fernet(self._derive_key(password, salt))

        config_data = dict(config_data)
        config_data["encrypted_master_key"] = self._encrypt_secret(master_key, fernet) if master_key else None
        config_data["encrypted_sink_key"] = self._encrypt_secret(sink_key, fernet) if sink_key else None
        config_data["encrypted_relayer_keys"] = [self._encrypt_secret(k, fernet) for k in relayer_keys or []]
        config_data["salt"] = base64.b64encode(salt).decode()

        config = Config.from_dict(config_data)
        config.validate()

        self._save_config(config)

        logger.info(f"Configuration created at {self.config_path}")
        return config

    def load_config(self) -> Config:
        """Load and validate configuration (secrets stay encrypted)."""
        config = Config.from_dict(self.read_raw_config() or {})
        config.validate()
        logger.info("Configuration loaded successfully")
        return config

    def load_keys(self, config: Config, password: str) -> PoolKeys:
        """
        Decrypt the master, sink and relayer keypairs for runtime use.

        Raises:
            SecurityError: wrong password or tampered ciphertext
        """
        if not config.salt:
            return PoolKeys()

        fernet = Fernet(self._derive_key(password, base64.b64decode(config.salt)))

        def _keypair(encrypted: Optional[str]) -> Optional[Keypair]:
            if not encrypted:
                return None
            try:
                return Keypair.from_base58_string(self._decrypt_secret(encrypted, fernet))
            except InvalidToken:
                raise SecurityError("Invalid password or corrupted key material")

        keys = PoolKeys(
            master=_keypair(config.encrypted_master_key),
            sink=_keypair(config.encrypted_sink_key),
            relayers=[_keypair(k) for k in config.encrypted_relayer_keys],
        )
        logger.info(f"Decrypted keys: master={'yes' if keys.master else 'no'}, "
                    f"sink={'yes' if keys.sink else 'no'}, relayers={len(keys.relayers)}")
        return keys

    def read_raw_config(self) -> Dict[str, Any]:
        """Read config without decrypting (for status checks)."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        with open(self.config_path, 'r') as f:
            return yaml.safe_load(f)

    def _save_config(self, config: Config):
        """Save configuration to YAML file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, 'w') as f:
            yaml.dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)

        # Set restrictive permissions (owner read/write only)
        os.chmod(self.config_path, 0o600)

        logger.info(f"Configuration saved to {self.config_path}")

    def update_config(self, updates: Dict[str, Any]):
        """Update non-secret configuration values."""
        data = self.read_raw_config()
        data.update(updates)

        config = Config.from_dict(data)
        config.validate()
        self._save_config(config)

        logger.info("Configuration updated")

    def rotate_password(self, old_password: str, new_password: str):
        """Change encryption password."""
        config = self.load_config()
        keys = self.load_keys(config, old_password)

        data = self.read_raw_config()
        self.create_config(
            data,
            new_password,
            master_key=str(keys.master) if keys.master else None,
            sink_key=str(keys.sink) if keys.sink else None,
            relayer_keys=[str(k) for k in keys.relayers],
        )

        logger.info("Password rotated successfully")


# Default configuration template
DEFAULT_CONFIG = """
# Wallet Pool Configuration
# This file contains encrypted credentials - keep it secure!

rpc_url: https://api.mainnet-beta.solana.com
confirm_timeout_seconds: 60

# Wallet roster
wallet_file: ./wallets.json
num_wallets_to_generate: 10
fund_amount: 0.05
min_sol_buffer: 0.0005
funding_max_attempts: 3
verify_tolerance_bps: 100

# Batch selection
batch_size: 20
concurrency: 10
auto_scale: false
shuffle_wallets: true
min_wallet_cooldown_ms: 300000
max_wallet_cooldown_ms: 1800000

# Seasoning
enable_seasoning: false
seasoning_min_txs: 3
seasoning_max_txs: 10

# Burner wallets (disabled | hybrid | burner_only)
burner_mode: disabled
max_burner_wallets: 50
burner_lifetime_txs: 5
burner_fund_amount: 0.02

# Circuit breaker
enable_circuit_breaker: true
max_consecutive_failures: 10
max_failure_rate_percent: 50
failure_rate_window: 10
emergency_stop_loss_percent: 30

# Rebalancing
enable_rebalancing: true
rebalance_interval: 50
min_wallet_balance: 0.005
target_wallet_balance: 0.05
dust_threshold: 0.001

# Operation
log_level: INFO
log_file: ./wallet_pool.log

# Encrypted credentials (DO NOT MODIFY)
encrypted_master_key: null
encrypted_sink_key: null
encrypted_relayer_keys: []
salt: null
""".strip()
