"""
Tip Settlement Configuration

Loads tip_config.yaml and overlays secrets from the environment (.env).

Sections:
- chain: RPC endpoint, token + paymaster addresses, explorer host
- gas_sponsorship: threshold and top-up amounts (native currency, decimal strings)
- settlement: confirmation timeout, polling, standing allowance, gas limits
- storage: SQLite database path
- logging: level and optional log file
"""

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import yaml
from dotenv import load_dotenv
from loguru import logger


DEFAULT_CONFIG_PATH = "tip_config.yaml"

# Environment variable -> (section, key)
ENV_OVERRIDES = {
    'ETHEREUM_PROVIDER_URL': ('chain', 'rpc_url'),
    'RLUSD_CONTRACT_ADDRESS': ('chain', 'token_address'),
    'PAYMASTER_CONTRACT_ADDRESS': ('chain', 'paymaster_address'),
    'ADMIN_PRIVATE_KEY': ('chain', 'admin_private_key'),
    'EXPLORER_HOST': ('chain', 'explorer_host'),
    'TIP_DB_PATH': ('storage', 'db_path'),
    'TIP_LOG_LEVEL': ('logging', 'level'),
    'TIP_LOG_FILE': ('logging', 'file'),
}


@dataclass(frozen=True)
class ChainConfig:
    rpc_url: str = ""
    token_address: str = ""
    paymaster_address: str = ""
    admin_private_key: str = field(default="", repr=False)
    explorer_host: str = "sepolia.etherscan.io"
    token_symbol: str = "RLUSD"
    native_symbol: str = "ETH"
    request_timeout_seconds: int = 30


@dataclass(frozen=True)
class GasSponsorshipConfig:
    min_balance: str = "0.01"
    top_up_amount: str = "0.015"
    retry_top_up_amount: str = "0.02"
    propagation_delay_seconds: float = 5.0
    native_transfer_gas_limit: int = 21000


@dataclass(frozen=True)
class SettlementConfig:
    confirmation_timeout_seconds: float = 60.0
    poll_interval_seconds: float = 2.0
    standing_allowance: str = "1000000"
    approve_gas_limit: int = 100000
    transfer_gas_limit: int = 300000
    fallback_transfer_gas: int = 300000


@dataclass(frozen=True)
class StorageConfig:
    db_path: str = "tip_ledger.db"


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = None


@dataclass(frozen=True)
class TipConfig:
    """Complete, immutable configuration"""
    chain: ChainConfig = field(default_factory=ChainConfig)
    gas: GasSponsorshipConfig = field(default_factory=GasSponsorshipConfig)
    settlement: SettlementConfig = field(default_factory=SettlementConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def validate(self):
        """
        Check the secrets needed to talk to the chain

        Raises:
            ValueError: If a required chain setting is missing
        """
        missing = [
            name for name, value in (
                ('rpc_url', self.chain.rpc_url),
                ('token_address', self.chain.token_address),
                ('paymaster_address', self.chain.paymaster_address),
                ('admin_private_key', self.chain.admin_private_key),
            ) if not value
        ]
        if missing:
            raise ValueError(f"Missing chain configuration: {', '.join(missing)}")


def _section(raw: Dict, name: str) -> Dict:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        logger.warning(f"Config section '{name}' is not a mapping, ignoring it")
        return {}
    return dict(value)


def _known_fields(cls, values: Dict) -> Dict:
    known = cls.__dataclass_fields__.keys()
    unknown = set(values) - set(known)
    if unknown:
        logger.warning(f"Ignoring unknown {cls.__name__} keys: {sorted(unknown)}")
    return {k: v for k, v in values.items() if k in known}


def load_config(
    config_path: str = DEFAULT_CONFIG_PATH,
    env_file: Optional[str] = ".env",
    environ: Optional[Dict[str, str]] = None,
) -> TipConfig:
    """
    Load configuration from YAML and environment

    Args:
        config_path: Path to tip_config.yaml
        env_file: .env file to load first (None to skip)
        environ: Environment mapping (defaults to os.environ)

    Returns:
        TipConfig
    """
    if env_file:
        load_dotenv(env_file)
    environ = os.environ if environ is None else environ

    raw: Dict = {}
    path = Path(config_path)
    if path.exists():
        try:
            with open(path, 'r', encoding='utf-8') as f:
                raw = yaml.safe_load(f) or {}
            logger.info(f"Loaded tip config from {path}")
        except yaml.YAMLError as e:
            logger.error(f"Error parsing {path}: {e}")
            raise
    else:
        logger.warning(f"Config file {path} not found, using defaults")

    sections = {
        name: _section(raw, name)
        for name in ('chain', 'gas_sponsorship', 'settlement', 'storage', 'logging')
    }

    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            sections[section][key] = value

    return TipConfig(
        chain=ChainConfig(**_known_fields(ChainConfig, sections['chain'])),
        gas=GasSponsorshipConfig(**_known_fields(GasSponsorshipConfig, sections['gas_sponsorship'])),
        settlement=SettlementConfig(**_known_fields(SettlementConfig, sections['settlement'])),
        storage=StorageConfig(**_known_fields(StorageConfig, sections['storage'])),
        logging=LoggingConfig(**_known_fields(LoggingConfig, sections['logging'])),
    )


def configure_logging(config: LoggingConfig):
    """Install loguru sinks for the service"""
    logger.remove()
    logger.add(sys.stderr, level=config.level.upper())
    if config.file:
        logger.add(config.file, level=config.level.upper(), rotation="10 MB", retention=5)
    logger.debug(f"Logging configured at {config.level.upper()}")
