"""
Bridge Settings

Loads settings from bridge_config.yaml, then applies environment overrides
(a .env file in the working directory is loaded first).
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from dotenv import load_dotenv
from loguru import logger


@dataclass
class BridgeSettings:
    """Runtime settings"""
    db_path: str = "bridge_transfers.db"
    quote_api_base: str = "https://api.arc.market"
    quote_api_key: Optional[str] = None
    rpc_timeout_seconds: float = 4.0
    transfer_speed: str = "FAST"
    log_level: str = "INFO"
    networks: Dict[str, Dict] = field(default_factory=dict)
    step_aliases: Dict[str, List[str]] = field(default_factory=dict)


ENV_OVERRIDES = {
    'BRIDGE_DB_PATH': 'db_path',
    'BRIDGE_QUOTE_API_BASE': 'quote_api_base',
    'BRIDGE_QUOTE_API_KEY': 'quote_api_key',
    'BRIDGE_LOG_LEVEL': 'log_level',
    'BRIDGE_RPC_TIMEOUT_SECONDS': 'rpc_timeout_seconds',
}


def _load_yaml(config_path: Path) -> Dict:
    if not config_path.exists():
        logger.debug(f"Config file {config_path} not found, using defaults")
        return {}

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Failed to load config from {config_path}: {e}, using defaults")
        return {}

    if not isinstance(config, dict):
        logger.warning(f"Config file {config_path} is not a mapping, using defaults")
        return {}
    return config


def load_settings(config_path: str = "bridge_config.yaml", load_env_file: bool = True) -> BridgeSettings:
    """
    Load settings

    Args:
        config_path: Path to YAML config
        load_env_file: Load a .env file before reading environment overrides

    Returns:
        BridgeSettings
    """
    if load_env_file:
        load_dotenv()

    config = _load_yaml(Path(config_path))
    settings = BridgeSettings()

    for key in ('db_path', 'quote_api_base', 'quote_api_key', 'transfer_speed', 'log_level'):
        if config.get(key) is not None:
            setattr(settings, key, str(config[key]))

    if config.get('rpc_timeout_seconds') is not None:
        settings.rpc_timeout_seconds = float(config['rpc_timeout_seconds'])

    networks = config.get('networks') or {}
    if isinstance(networks, dict):
        settings.networks = networks
    else:
        logger.warning("Config 'networks' must be a mapping, ignoring")

    aliases = config.get('step_aliases') or {}
    if isinstance(aliases, dict):
        settings.step_aliases = {
            step_id: [names] if isinstance(names, str) else list(names or [])
            for step_id, names in aliases.items()
        }
    else:
        logger.warning("Config 'step_aliases' must be a mapping, ignoring")

    for env_var, attribute in ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if not value:
            continue
        if attribute == 'rpc_timeout_seconds':
            try:
                settings.rpc_timeout_seconds = float(value)
            except ValueError:
                logger.warning(f"Ignoring invalid {env_var}={value!r}")
        else:
            setattr(settings, attribute, value)

    return settings
