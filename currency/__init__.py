"""Currency module for balances, purchase challenges and payment history.

This module provides:
- The CurrencyAdapter contract and its models
- MockCurrencyAdapter, simulated balances for development and tests
- X402CurrencyAdapter, on-ledger USDC verified through the facilitator
- create_currency_adapter, the only place the payment mode is inspected
"""
import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel

from config import asset_for, rpc_url_for
from facilitator import PaymentFacilitator
from ledger import LedgerClient, create_ledger_client

from .base import (
    CurrencyAdapter, CurrencyBalance, CurrencyError, CurrencyTransaction, CurrencyType,
    InsufficientBalanceError, NotSupportedError, PurchaseInitiation, PurchaseParams,
    PurchaseResult, TransactionHistory, TransactionType, VerifyParams
)
from .cache import BalanceCache, BalanceCacheEntry
from .mock import MockCurrencyAdapter
from .x402 import X402CurrencyAdapter

logger = logging.getLogger(__name__)


class CurrencyConfig(BaseModel):
    mode: str = 'mock'
    network: str = 'solana-devnet'
    rpc_url: str = 'https://api.devnet.solana.com'
    asset: Optional[str] = None
    max_poll_attempts: int = 10
    poll_interval_ms: int = 2000
    balance_cache_seconds: int = 30
    mock_default_balance: float = 1000
    mock_tx_id_prefix: str = 'MOCK'
    mock_instant_settlement: bool = True

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> 'CurrencyConfig':
        """Build from validated settings (see config.load_settings_conf)."""
        return cls(
            mode=settings['payment_mode'],
            network=settings['network'],
            rpc_url=rpc_url_for(settings),
            asset=asset_for(settings),
            max_poll_attempts=settings['tx_poll_max_attempts'],
            poll_interval_ms=settings['tx_poll_interval_ms'],
            balance_cache_seconds=settings['balance_cache_duration'],
            mock_default_balance=settings['mock_default_balance'],
            mock_tx_id_prefix=settings['mock_tx_id_prefix'],
            mock_instant_settlement=settings['mock_instant_settlement'],
        )


def create_currency_adapter(
    config: CurrencyConfig,
    ledger: Optional[LedgerClient] = None
) -> CurrencyAdapter:
    """Create the currency adapter for ``config.mode``.

    Args:
        config: Currency configuration
        ledger: Ledger client for production mode; built from ``config.rpc_url``
            when omitted

    Raises:
        ValueError: If the mode is unknown
    """
    if config.mode == 'mock':
        logger.info(f"Using mock currency adapter (default balance {config.mock_default_balance})")
        return MockCurrencyAdapter(
            default_balance=str(config.mock_default_balance),
            tx_id_prefix=config.mock_tx_id_prefix,
            instant_settlement=config.mock_instant_settlement,
        )

    if config.mode == 'production':
        ledger = ledger or create_ledger_client(config.rpc_url)
        facilitator = PaymentFacilitator(
            ledger,
            network=config.network,
            asset=config.asset,
            max_poll_attempts=config.max_poll_attempts,
            poll_interval_ms=config.poll_interval_ms,
        )
        logger.info(f"Using x402 currency adapter on {config.network}")
        return X402CurrencyAdapter(
            facilitator,
            ledger,
            cache_ttl_seconds=config.balance_cache_seconds,
        )

    raise ValueError(f"Unknown payment mode: {config.mode}")


# Export public interface
__all__ = [
    'CurrencyAdapter',
    'CurrencyBalance',
    'CurrencyConfig',
    'CurrencyError',
    'CurrencyTransaction',
    'CurrencyType',
    'InsufficientBalanceError',
    'NotSupportedError',
    'PurchaseInitiation',
    'PurchaseParams',
    'PurchaseResult',
    'TransactionHistory',
    'TransactionType',
    'VerifyParams',
    'BalanceCache',
    'BalanceCacheEntry',
    'MockCurrencyAdapter',
    'X402CurrencyAdapter',
    'create_currency_adapter',
]
