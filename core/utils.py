# utils.py

import asyncio
import functools
import os
from typing import Any, Dict, Optional

import ccxt.async_support as ccxt
import yaml
from dotenv import load_dotenv

from config.logging_config import get_logger


# --- Custom Exceptions ---
class ArbitrageBotError(Exception):
    """Base exception for the arbitrage bot."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class ConfigError(ArbitrageBotError):
    """Custom exception for configuration file errors."""
    pass


class VenueInitError(ArbitrageBotError):
    """Custom exception for errors during venue client initialization."""
    pass


class VenueError(ArbitrageBotError):
    """A venue call failed (network, missing pool, bad payload)."""
    def __init__(self, message: str, venue: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.venue = venue


class ValidationError(ArbitrageBotError):
    """Raised when inputs or an opportunity fail validation."""
    pass


# --- Decorator for CCXT Retries ---
def retry_ccxt_call(max_retries: int = 3, delay: float = 1.0):
    """Decorator to retry async CCXT API calls with exponential backoff."""
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            logger = get_logger(__name__)
            wait = delay
            for i in range(max_retries):
                try:
                    return await func(*args, **kwargs)
                except (ccxt.NetworkError, ccxt.ExchangeNotAvailable, ccxt.RequestTimeout) as e:
                    logger.warning(f"CCXT call failed (network issue): {e}. Retrying... ({i+1}/{max_retries})")
                    if i == max_retries - 1:
                        logger.error(f"CCXT call failed after {max_retries} retries.")
                        raise
                    await asyncio.sleep(wait)
                    wait *= 2
                except ccxt.ExchangeError as e:
                    logger.error(f"CCXT call failed (non-recoverable): {e}")
                    raise
        return wrapper
    return decorator


# --- Configuration Loading ---
REQUIRED_TRADING_KEYS = ['pairs', 'trade_amount_in', 'profit_threshold', 'scan_interval_s']


def validate_config(config):
    """Validates the structure of the config file. Raises ConfigError on the first problem."""
    if not isinstance(config, dict):
        raise ConfigError("CRITICAL ERROR: config.yaml must contain a mapping at the top level.")

    if "trading_parameters" not in config or not isinstance(config["trading_parameters"], dict):
        raise ConfigError("CRITICAL ERROR: Missing or invalid section 'trading_parameters' in config.yaml.")

    params = config['trading_parameters']
    for key in REQUIRED_TRADING_KEYS:
        if key not in params:
            raise ConfigError(f"CRITICAL ERROR: Missing required key '{key}' in 'trading_parameters'.")

    pairs = params['pairs']
    if not isinstance(pairs, list) or not pairs:
        raise ConfigError("CRITICAL ERROR: 'trading_parameters.pairs' must be a non-empty list.")
    for entry in pairs:
        if not isinstance(entry, dict) or 'asset_a' not in entry or 'asset_b' not in entry:
            raise ConfigError(f"CRITICAL ERROR: Invalid pair entry {entry!r}; 'asset_a' and 'asset_b' are required.")

    if int(params['trade_amount_in']) <= 0:
        raise ConfigError("CRITICAL ERROR: 'trade_amount_in' must be positive.")

    venues = config.get('venues')
    if not isinstance(venues, dict) or len(venues) < 2:
        raise ConfigError("CRITICAL ERROR: At least two venues must be configured under 'venues'.")
    for name, venue_cfg in venues.items():
        if not isinstance(venue_cfg, dict) or 'type' not in venue_cfg:
            raise ConfigError(f"CRITICAL ERROR: Venue '{name}' needs a 'type'.")
        if 'fees' not in venue_cfg:
            raise ConfigError(f"CRITICAL ERROR: Venue '{name}' needs a 'fees' section.")

    return True


def load_config(filepath: str = None):
    """Loads and validates the configuration file."""
    if filepath is None:
        base_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))  # project root
        filepath = os.path.join(base_dir, "config", "config.yaml")
    try:
        with open(filepath, 'r') as f:
            config = yaml.safe_load(f)
        validate_config(config)
        return config
    except FileNotFoundError:
        raise ConfigError(f"CRITICAL ERROR: Configuration file '{filepath}' not found.")
    except yaml.YAMLError as e:
        raise ConfigError(f"CRITICAL ERROR: Could not decode '{filepath}'. YAML error: {e}")


def _env_flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def apply_env_overrides(config: Dict[str, Any], dotenv_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Loads the .env file and injects runtime toggles and venue secrets into the config.
    DRY_RUN and EMERGENCY_STOP_FILE override trading_parameters; <VENUE>_API_KEY,
    <VENUE>_SECRET and <VENUE>_PASSWORD are copied into the venue's credentials.
    """
    load_dotenv(dotenv_path)
    params = config.setdefault('trading_parameters', {})

    dry_run = os.getenv("DRY_RUN")
    if dry_run is not None and dry_run.strip():
        params['dry_run'] = _env_flag(dry_run)

    stop_file = os.getenv("EMERGENCY_STOP_FILE")
    if stop_file:
        params['emergency_stop_file'] = stop_file

    for venue_name, venue_cfg in (config.get('venues') or {}).items():
        upper_name = venue_name.upper()
        credentials = venue_cfg.setdefault('credentials', {})
        api_key = os.getenv(f"{upper_name}_API_KEY")
        secret = os.getenv(f"{upper_name}_SECRET")
        password = os.getenv(f"{upper_name}_PASSWORD")
        if api_key:
            credentials['apiKey'] = api_key
        if secret:
            credentials['secret'] = secret
        if password:
            credentials['password'] = password

    return config
