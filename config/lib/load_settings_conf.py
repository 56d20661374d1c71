"""Settings configuration loader module.

This module handles loading and parsing of the settings.conf file which holds
the payment mode, ledger network, polling budget, cache TTL and rate limits.

The settings file uses INI format with a [DEFAULT] section containing key-value
pairs. Any key may be overridden from the environment (see ENV_OVERRIDES),
which is how deployments switch between simulated and ledger-backed payments
without editing the file.

Example settings.conf:
    [DEFAULT]
    payment_mode = production
    network = solana-devnet
    platform_wallet = 9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin
    tx_poll_max_attempts = 10
    tx_poll_interval_ms = 2000

Raises:
    SettingsError: If the settings file is invalid or a setting fails validation
"""
import logging
import os
import re
from configparser import ConfigParser, Error as ConfigParserError
from pathlib import Path
from typing import Dict, Any, List, Mapping, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

BASE58_PATTERN = re.compile(r'^[1-9A-HJ-NP-Za-km-z]{32,44}$')

PAYMENT_MODES = ('mock', 'production')
STORAGE_BACKENDS = ('memory', 'postgres')

NETWORK_ALIASES = {
    'devnet': 'solana-devnet',
    'solana-devnet': 'solana-devnet',
    'mainnet': 'solana-mainnet',
    'mainnet-beta': 'solana-mainnet',
    'solana-mainnet': 'solana-mainnet',
}

# Default settings
DEFAULTS = {
    'payment_mode': 'mock',
    'network': 'solana-devnet',
    'devnet_rpc_url': 'https://api.devnet.solana.com',
    'mainnet_rpc_url': 'https://api.mainnet-beta.solana.com',
    'usdc_mint_devnet': '4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU',
    'usdc_mint_mainnet': 'EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v',
    'tx_poll_max_attempts': '10',
    'tx_poll_interval_ms': '2000',
    'balance_cache_duration': '30',  # seconds
    'mock_default_balance': '1000',
    'mock_tx_id_prefix': 'MOCK',
    'mock_instant_settlement': 'true',
    'platform_wallet': '',
    'failed_purchase_limit': '3',
    'storage_backend': 'memory',
    'db_url': 'postgresql://postgres@localhost:5432/bazaar?sslmode=disable',
    'purchase_rate_limit': '10',
    'purchase_rate_window': '60',
    'listing_rate_limit': '5',
    'listing_rate_window': '3600',
    'upload_rate_limit': '20',
    'upload_rate_window': '3600',
}

# Environment variables that override settings.conf values
ENV_OVERRIDES = {
    'PAYMENT_MODE': 'payment_mode',
    'SOLANA_NETWORK': 'network',
    'SOLANA_DEVNET_RPC': 'devnet_rpc_url',
    'SOLANA_MAINNET_RPC': 'mainnet_rpc_url',
    'USDC_MINT_DEVNET': 'usdc_mint_devnet',
    'USDC_MINT_MAINNET': 'usdc_mint_mainnet',
    'TX_POLL_MAX_ATTEMPTS': 'tx_poll_max_attempts',
    'TX_POLL_INTERVAL_MS': 'tx_poll_interval_ms',
    'BALANCE_CACHE_DURATION': 'balance_cache_duration',
    'MOCK_DEFAULT_BALANCE': 'mock_default_balance',
    'MOCK_TX_ID_PREFIX': 'mock_tx_id_prefix',
    'MOCK_INSTANT_SETTLEMENT': 'mock_instant_settlement',
    'PLATFORM_WALLET': 'platform_wallet',
    'STORAGE_BACKEND': 'storage_backend',
    'DATABASE_URL': 'db_url',
}

INT_SETTINGS = (
    'tx_poll_max_attempts',
    'tx_poll_interval_ms',
    'balance_cache_duration',
    'failed_purchase_limit',
    'purchase_rate_limit',
    'purchase_rate_window',
    'listing_rate_limit',
    'listing_rate_window',
    'upload_rate_limit',
    'upload_rate_window',
)


class ConfigValidationError:
    """Helper class to format configuration validation errors"""
    def __init__(self):
        self.missing: List[str] = []
        self.invalid: List[str] = []
        self.missing_sections: List[str] = []

    def has_errors(self) -> bool:
        """Check if any errors exist"""
        return bool(self.missing or self.invalid or self.missing_sections)

    def format_message(self) -> str:
        """Format error message in a clean, readable way"""
        messages = []

        if self.missing_sections:
            messages.append("Missing required sections:")
            messages.extend(f"  - {item}" for item in self.missing_sections)

        if self.missing:
            if messages:
                messages.append("")
            messages.append("Missing required settings:")
            messages.extend(f"  - {item}" for item in self.missing)

        if self.invalid:
            if messages:
                messages.append("")
            messages.append("Invalid settings:")
            messages.extend(f"  - {item}" for item in self.invalid)

        return "\n".join(messages)


class SettingsError(Exception):
    """Raised when there are issues loading or parsing the settings configuration."""
    pass


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in ('1', 'true', 'yes', 'on'):
        return True
    if lowered in ('0', 'false', 'no', 'off'):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


def load_settings_conf(
    settings_path: str = ".",
    env: Optional[Mapping[str, str]] = None
) -> Dict[str, Any]:
    """Load, merge and validate settings.

    Values come from DEFAULTS, then settings.conf in ``settings_path`` (if
    present), then environment overrides.

    Args:
        settings_path: Directory containing settings.conf
        env: Environment mapping, defaults to os.environ

    Returns:
        Dictionary containing validated settings

    Raises:
        SettingsError: If parsing or validation fails
    """
    config_path = Path(settings_path) / 'settings.conf'
    env = os.environ if env is None else env
    settings: Dict[str, Any] = dict(DEFAULTS)

    if config_path.exists():
        try:
            parser = ConfigParser()
            parser.read(config_path)
        except ConfigParserError as e:
            raise SettingsError(f"Error parsing settings.conf: {str(e)}")

        errors = ConfigValidationError()
        if not parser.defaults():
            errors.missing_sections.append('[DEFAULT]')
            raise SettingsError(
                "Settings Configuration Validation Failed\n\n" +
                errors.format_message()
            )
        settings.update(dict(parser['DEFAULT']))
    else:
        logger.info(f"No settings file at {config_path}, using defaults")

    for env_key, setting_key in ENV_OVERRIDES.items():
        if env.get(env_key):
            settings[setting_key] = env[env_key]

    return validate_settings(settings)


def validate_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    """Validate loaded settings.

    Args:
        settings: Dictionary of settings to validate

    Returns:
        Validated and processed settings

    Raises:
        SettingsError: If validation fails
    """
    errors = ConfigValidationError()
    settings = dict(settings)

    for key in INT_SETTINGS:
        if key not in settings:
            errors.missing.append(key)
            continue
        try:
            settings[key] = int(settings[key])
        except (TypeError, ValueError):
            errors.invalid.append(f"{key}: must be an integer, got {settings[key]!r}")

    try:
        settings['mock_instant_settlement'] = _parse_bool(
            settings.get('mock_instant_settlement', 'true')
        )
    except ValueError as e:
        errors.invalid.append(f"mock_instant_settlement: {e}")

    try:
        settings['mock_default_balance'] = float(settings.get('mock_default_balance', 0))
        if settings['mock_default_balance'] < 0:
            errors.invalid.append("mock_default_balance: must not be negative")
    except (TypeError, ValueError):
        errors.invalid.append("mock_default_balance: must be a number")

    mode = str(settings.get('payment_mode', '')).strip().lower()
    if mode not in PAYMENT_MODES:
        errors.invalid.append(f"payment_mode: must be one of {', '.join(PAYMENT_MODES)}")
    settings['payment_mode'] = mode

    network = NETWORK_ALIASES.get(str(settings.get('network', '')).strip().lower())
    if network is None:
        errors.invalid.append(f"network: unknown network {settings.get('network')!r}")
    else:
        settings['network'] = network

    backend = str(settings.get('storage_backend', '')).strip().lower()
    if backend not in STORAGE_BACKENDS:
        errors.invalid.append(
            f"storage_backend: must be one of {', '.join(STORAGE_BACKENDS)}"
        )
    settings['storage_backend'] = backend

    for key in ('usdc_mint_devnet', 'usdc_mint_mainnet'):
        if not BASE58_PATTERN.match(str(settings.get(key, ''))):
            errors.invalid.append(f"{key}: not a valid base58 address")

    for key in ('devnet_rpc_url', 'mainnet_rpc_url'):
        if not _is_http_url(str(settings.get(key, ''))):
            errors.invalid.append(f"{key}: not a valid http(s) URL")

    # Numeric ranges
    if isinstance(settings.get('tx_poll_max_attempts'), int) and settings['tx_poll_max_attempts'] < 1:
        errors.invalid.append("tx_poll_max_attempts: must be at least 1")
    if isinstance(settings.get('tx_poll_interval_ms'), int) and settings['tx_poll_interval_ms'] < 100:
        errors.invalid.append("tx_poll_interval_ms: must be at least 100ms")
    if isinstance(settings.get('balance_cache_duration'), int) and settings['balance_cache_duration'] < 0:
        errors.invalid.append("balance_cache_duration: must not be negative")
    for key in INT_SETTINGS[3:]:
        if isinstance(settings.get(key), int) and settings[key] < 1:
            errors.invalid.append(f"{key}: must be at least 1")

    platform_wallet = str(settings.get('platform_wallet', '')).strip()
    settings['platform_wallet'] = platform_wallet
    if mode == 'production':
        if not platform_wallet:
            errors.missing.append('platform_wallet (required in production mode)')
        elif not BASE58_PATTERN.match(platform_wallet):
            errors.invalid.append("platform_wallet: not a valid base58 address")

    if errors.has_errors():
        raise SettingsError(
            "Settings Configuration Validation Failed\n\n" +
            errors.format_message()
        )

    return settings
