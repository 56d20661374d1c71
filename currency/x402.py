"""Ledger-backed currency adapter.

Balances are read from the ledger through a TTL cache; purchases are paid
with x402 challenges and verified by the PaymentFacilitator. Balances belong
to the ledger, so direct deduct/add are refused.
"""
import logging
import time
from decimal import Decimal
from typing import Callable, List

from facilitator import PaymentFacilitator
from ledger import LedgerClient
from protocol import (
    create_payment_requirements, create_payment_required_response,
    smallest_unit_to_usdc, usdc_to_smallest_unit
)

from .base import (
    CurrencyAdapter, CurrencyBalance, CurrencyTransaction, CurrencyType,
    NotSupportedError, PurchaseInitiation, PurchaseParams, PurchaseResult,
    TransactionHistory, VerifyParams, DEFAULT_PAGE_LIMIT
)
from .cache import BalanceCache

logger = logging.getLogger(__name__)


class X402CurrencyAdapter(CurrencyAdapter):
    """Currency adapter backed by on-ledger USDC."""

    def __init__(
        self,
        facilitator: PaymentFacilitator,
        ledger: LedgerClient,
        cache_ttl_seconds: float = 30,
        payment_timeout_seconds: int = 300,
        clock: Callable[[], float] = time.monotonic
    ):
        self.facilitator = facilitator
        self.ledger = ledger
        self.network = facilitator.network
        self.asset = facilitator.asset
        self.payment_timeout_seconds = payment_timeout_seconds
        self._cache = BalanceCache(cache_ttl_seconds, clock=clock)
        self._history = TransactionHistory()

    def _balance(self, account_id: str, units: int) -> CurrencyBalance:
        return CurrencyBalance(
            account_id=account_id,
            amount=smallest_unit_to_usdc(units),
            currency=CurrencyType.USDC,
        )

    async def get_balance(self, account_id: str) -> CurrencyBalance:
        async with self._cache.locked(account_id):
            entry = self._cache.fresh(account_id)
            if entry is not None:
                return self._balance(account_id, entry.amount)

            try:
                units = await self.ledger.get_token_balance(account_id, self.asset)
            except Exception as e:
                stale = self._cache.last_known(account_id)
                logger.error(
                    f"Balance lookup failed for {account_id}, "
                    f"returning {'cached' if stale else 'zero'} balance: {e}"
                )
                return self._balance(account_id, stale.amount if stale else 0)

            self._cache.store(account_id, units)
            return self._balance(account_id, units)

    async def deduct(self, account_id: str, amount: Decimal) -> str:
        raise NotSupportedError(
            "deduct() is not supported in production mode: balances are held on the ledger"
        )

    async def add(self, account_id: str, amount: Decimal) -> str:
        raise NotSupportedError(
            "add() is not supported in production mode: balances are held on the ledger"
        )

    async def initiate_purchase(self, params: PurchaseParams) -> PurchaseInitiation:
        requirements = create_payment_requirements(
            params.amount,
            pay_to=params.recipient,
            resource=params.resource,
            network=self.network,
            asset=self.asset,
            description=params.description,
            timeout_seconds=self.payment_timeout_seconds,
        )
        return PurchaseInitiation(
            status=402,
            payment_required=True,
            requirements=create_payment_required_response(requirements),
        )

    async def verify_purchase(self, params: VerifyParams) -> PurchaseResult:
        result = await self.facilitator.verify_payment(
            params.payment_header,
            usdc_to_smallest_unit(params.expected_amount),
            params.expected_recipient,
            self.network,
        )
        return PurchaseResult(
            success=result.success,
            tx_reference=result.tx_reference,
            network_id=result.network_id,
            error=result.error,
            error_code=result.error_code,
        )

    async def record_transaction(self, tx: CurrencyTransaction) -> None:
        await self._history.append(tx)
        await self._cache.invalidate(tx.account_id)
        logger.info(f"Recorded {tx.type.value} {tx.tx_reference} for {tx.account_id}")

    async def get_transactions(
        self,
        account_id: str,
        page: int = 1,
        limit: int = DEFAULT_PAGE_LIMIT,
        sort_order: str = 'desc'
    ) -> List[CurrencyTransaction]:
        return await self._history.page(account_id, page, limit, sort_order)
