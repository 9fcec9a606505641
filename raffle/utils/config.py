"""
Configuration Management
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from eth_account import Account

from raffle.lottery.models import OracleConfig, RaffleConfig
from raffle.utils.common import to_wei
from raffle.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_FILE = Path(__file__).parent.parent.parent / "config" / "raffle.conf"

ENV_PREFIXES = {
    "RAFFLE_": "raffle",
    "ORACLE_": "oracle",
    "OPERATOR_": "operator",
    "BLOCKCHAIN_": "blockchain",
    "LEDGER_": "ledger",
    "SERVER_": "server",
    "LOGGING_": "logging",
    "NETWORK_": "network",
}

# Per-chain deployment presets, keyed by chain id.
NETWORK_CONFIG: Dict[int, Dict[str, Any]] = {
    31337: {
        "name": "localhost",
        "raffle_entrance_fee": "0.01",
        "gas_lane": "0x474e34a077df58807dbe9c96d3c009b23b3c6d0cce433e59bbf5b34f823bc56c",
        "subscription_id": 0,
        "callback_gas_limit": 500000,
        "keepers_update_interval": 30,
    },
    11155111: {
        "name": "sepolia",
        "vrf_coordinator_v2": "0x8103B0A8A00be2DDC778e6e7eaa21791Cd364625",
        "raffle_entrance_fee": "0.01",
        "gas_lane": "0x474e34a077df58807dbe9c96d3c009b23b3c6d0cce433e59bbf5b34f823bc56c",
        "subscription_id": 0,
        "callback_gas_limit": 500000,
        "keepers_update_interval": 30,
    },
}

DEVELOPMENT_CHAINS = ("hardhat", "localhost")


def load_config(config_file: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from files and environment variables"""
    config: Dict[str, Any] = {}

    config_path = Path(config_file) if config_file else DEFAULT_CONFIG_FILE
    if config_path.exists():
        try:
            with open(config_path, "r") as f:
                config.update(json.load(f))
            logger.info(f"Loaded configuration from {config_path}")
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading config file: {e}")
    else:
        logger.warning(f"Config file {config_path} not found. Will only use environment variables.")

    # Override with environment variables, defined in .env
    config = _apply_env_overrides(config)
    logger.debug(f"Configuration after applying environment overrides: {json.dumps(config, indent=2, default=str)}")

    return config


def _apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides to configuration"""
    for key, value in os.environ.items():
        # Convert key from ENV_VAR_NAME to section.key format
        for prefix, section in ENV_PREFIXES.items():
            if key.startswith(prefix):
                config.setdefault(section, {})[key[len(prefix):].lower()] = value
                break

    return config


def save_config(config: Dict[str, Any], config_file: Optional[str] = None) -> None:
    """Save configuration to file"""
    config_path = Path(config_file) if config_file else DEFAULT_CONFIG_FILE
    config_path.parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, "w") as f:
        json.dump(config, f, indent=2)

    logger.info(f"Configuration saved to {config_path}")


def get_config_value(config: Dict[str, Any], key_path: str, default=None):
    """Get configuration value by dot-separated key path"""
    keys = key_path.split(".")
    value = config

    try:
        for key in keys:
            value = value[key]
        return value
    except (KeyError, TypeError):
        return default


def get_network(config: Dict[str, Any]) -> Dict[str, Any]:
    """Return the preset for ``network.chain_id`` (default 31337)."""
    chain_id = int(get_config_value(config, "network.chain_id", 31337))
    preset = NETWORK_CONFIG.get(chain_id)
    if preset is None:
        raise ValueError(f"No network preset for chain id {chain_id}")
    return {"chain_id": chain_id, **preset}


def is_development_chain(config: Dict[str, Any]) -> bool:
    return get_network(config)["name"] in DEVELOPMENT_CHAINS


def build_raffle_config(
    config: Dict[str, Any],
    *,
    coordinator_address: Optional[str] = None,
    subscription_id: Optional[int] = None,
) -> RaffleConfig:
    """Build a :class:`RaffleConfig` from ``raffle.*``/``oracle.*`` over the network preset.

    ``coordinator_address`` and ``subscription_id`` take precedence over both,
    which is how a locally deployed coordinator is wired in.
    """
    network = get_network(config)
    raffle_cfg = config.get("raffle", {})
    oracle_cfg = config.get("oracle", {})

    entrance_fee = to_wei(raffle_cfg.get("entrance_fee", network["raffle_entrance_fee"]))
    interval = int(raffle_cfg.get("interval", network["keepers_update_interval"]))
    address = raffle_cfg.get("address") or Account.create().address

    coordinator = coordinator_address or oracle_cfg.get("coordinator_address") or network.get("vrf_coordinator_v2")
    if not coordinator:
        raise ValueError(f"No VRF coordinator configured for network {network['name']}")
    if subscription_id is None:
        subscription_id = int(oracle_cfg.get("subscription_id", network["subscription_id"]))

    oracle = OracleConfig(
        coordinator_address=coordinator,
        subscription_id=subscription_id,
        gas_lane=oracle_cfg.get("gas_lane", network["gas_lane"]),
        callback_gas_limit=int(oracle_cfg.get("callback_gas_limit", network["callback_gas_limit"])),
        request_confirmations=int(oracle_cfg.get("request_confirmations", 3)),
        num_words=int(oracle_cfg.get("num_words", 1)),
    )
    return RaffleConfig(address=address, entrance_fee=entrance_fee, interval=interval, oracle=oracle)
