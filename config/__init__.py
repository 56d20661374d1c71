"""Configuration module for loading and managing application settings"""
from typing import Dict, Any
from .lib.load_settings_conf import (
    load_settings_conf, validate_settings, SettingsError, DEFAULTS
)

__all__ = [
    'settings_conf', 'load_settings_conf', 'validate_settings',
    'get_config_summary', 'rpc_url_for', 'asset_for', 'SettingsError', 'DEFAULTS'
]


def rpc_url_for(settings: Dict[str, Any]) -> str:
    """Ledger RPC endpoint for the configured network."""
    if settings['network'] == 'solana-mainnet':
        return settings['mainnet_rpc_url']
    return settings['devnet_rpc_url']


def asset_for(settings: Dict[str, Any]) -> str:
    """USDC mint for the configured network."""
    if settings['network'] == 'solana-mainnet':
        return settings['usdc_mint_mainnet']
    return settings['usdc_mint_devnet']


def get_config_summary(settings: Dict[str, Any]) -> str:
    """Get a human readable summary of the active payment configuration."""
    if settings['payment_mode'] == 'mock':
        return (
            f"Mode: mock, default balance: {settings['mock_default_balance']} USDC, "
            f"instant settlement: {settings['mock_instant_settlement']}"
        )
    return (
        f"Mode: production, network: {settings['network']}, "
        f"rpc: {rpc_url_for(settings)}, asset: {asset_for(settings)}, "
        f"polling: {settings['tx_poll_max_attempts']} x {settings['tx_poll_interval_ms']}ms"
    )


try:
    settings_conf: Dict[str, Any] = load_settings_conf()
except SettingsError as e:
    # Re-raise the error but provide more context
    raise SettingsError(
        f"Configuration Error\n"
        "=================\n\n"
        f"{str(e)}\n\n"
        "Please ensure settings.conf and the environment are properly configured.\n"
        "See settings.conf.example for the available settings."
    ) from e
