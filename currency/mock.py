"""Simulated currency adapter for development and tests.

Every account starts with ``default_balance`` mock USDC. With instant
settlement the purchase is debited when it is initiated and no payment proof
is needed; otherwise a 402 challenge is issued on the ``mock`` network and
any proof verifies.
"""
import asyncio
import logging
import time
from decimal import Decimal
from typing import Callable, Dict, List, Union
from uuid import uuid4

from protocol import create_payment_requirements, create_payment_required_response

from .base import (
    CurrencyAdapter, CurrencyBalance, CurrencyError, CurrencyTransaction, CurrencyType,
    InsufficientBalanceError, PurchaseInitiation, PurchaseParams, PurchaseResult,
    TransactionHistory, VerifyParams, DEFAULT_PAGE_LIMIT
)

logger = logging.getLogger(__name__)

MOCK_NETWORK = 'mock'
MOCK_ASSET = 'MOCK_USDC'


class MockCurrencyAdapter(CurrencyAdapter):
    """In-process balances with synthetic transaction references."""

    def __init__(
        self,
        default_balance: Union[Decimal, int, float, str] = 1000,
        tx_id_prefix: str = 'MOCK',
        instant_settlement: bool = True,
        clock: Callable[[], float] = time.time
    ):
        self.default_balance = Decimal(str(default_balance))
        self.tx_id_prefix = tx_id_prefix
        self.instant_settlement = instant_settlement
        self._clock = clock
        self._balances: Dict[str, Decimal] = {}
        self._lock = asyncio.Lock()
        self._history = TransactionHistory()

    def generate_tx_id(self) -> str:
        """Synthetic reference: {prefix}_{millis}_{random}."""
        return f"{self.tx_id_prefix}_{int(self._clock() * 1000)}_{uuid4().hex[:9]}"

    def _check_amount(self, amount: Decimal) -> Decimal:
        amount = Decimal(str(amount))
        if not amount.is_finite() or amount <= 0:
            raise CurrencyError(f"Amount must be positive, got {amount}")
        return amount

    async def get_balance(self, account_id: str) -> CurrencyBalance:
        async with self._lock:
            amount = self._balances.setdefault(account_id, self.default_balance)
        return CurrencyBalance(
            account_id=account_id,
            amount=amount,
            currency=CurrencyType.MOCK_USDC,
        )

    async def deduct(self, account_id: str, amount: Decimal) -> str:
        amount = self._check_amount(amount)
        async with self._lock:
            available = self._balances.setdefault(account_id, self.default_balance)
            if available < amount:
                raise InsufficientBalanceError(account_id, available, amount)
            self._balances[account_id] = available - amount
        tx_id = self.generate_tx_id()
        logger.debug(f"Deducted {amount} mock USDC from {account_id} ({tx_id})")
        return tx_id

    async def add(self, account_id: str, amount: Decimal) -> str:
        amount = self._check_amount(amount)
        async with self._lock:
            current = self._balances.setdefault(account_id, self.default_balance)
            self._balances[account_id] = current + amount
        tx_id = self.generate_tx_id()
        logger.debug(f"Added {amount} mock USDC to {account_id} ({tx_id})")
        return tx_id

    async def initiate_purchase(self, params: PurchaseParams) -> PurchaseInitiation:
        if self.instant_settlement:
            tx_id = await self.deduct(params.buyer_id, params.amount)
            return PurchaseInitiation(
                status=200, payment_required=False, tx_id=tx_id, network_id=MOCK_NETWORK
            )

        requirements = create_payment_requirements(
            params.amount,
            pay_to=params.recipient,
            resource=params.resource,
            network=MOCK_NETWORK,
            asset=MOCK_ASSET,
            description=params.description,
        )
        return PurchaseInitiation(
            status=402,
            payment_required=True,
            requirements=create_payment_required_response(requirements),
        )

    async def verify_purchase(self, params: VerifyParams) -> PurchaseResult:
        return PurchaseResult(
            success=True,
            tx_reference=self.generate_tx_id(),
            network_id=MOCK_NETWORK,
        )

    async def record_transaction(self, tx: CurrencyTransaction) -> None:
        await self._history.append(tx)

    async def get_transactions(
        self,
        account_id: str,
        page: int = 1,
        limit: int = DEFAULT_PAGE_LIMIT,
        sort_order: str = 'desc'
    ) -> List[CurrencyTransaction]:
        return await self._history.page(account_id, page, limit, sort_order)
