"""Currency adapter contract, models and errors.

Both the simulated and the ledger-backed adapter implement CurrencyAdapter;
callers never branch on which one they hold.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from errors import BazaarError, ErrorCodes
from protocol import PaymentRequiredResponse

logger = logging.getLogger(__name__)

DEFAULT_PAGE_LIMIT = 20
SORT_ORDERS = ('asc', 'desc')


class CurrencyError(BazaarError):
    """Base exception for currency errors"""
    pass


class NotSupportedError(CurrencyError):
    """Raised for operations the active currency mode cannot perform"""
    code = ErrorCodes.NOT_SUPPORTED
    status_code = 400


class InsufficientBalanceError(CurrencyError):
    """Raised when a simulated account cannot cover a deduction"""
    code = ErrorCodes.INSUFFICIENT_BALANCE
    status_code = 402

    def __init__(self, account_id: str, available: Decimal, requested: Decimal):
        self.account_id = account_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient balance for {account_id}: "
            f"available {available}, requested {requested}",
            details={'available': str(available), 'requested': str(requested)}
        )


class CurrencyType(str, Enum):
    USDC = "USDC"
    MOCK_USDC = "MOCK_USDC"


class TransactionType(str, Enum):
    MYSTERY_BOX_PURCHASE = "mystery_box_purchase"
    LISTING_PURCHASE = "listing_purchase"
    LISTING_SALE = "listing_sale"
    REFUND = "refund"
    TEST_CREDIT = "test_credit"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CurrencyBalance(BaseModel):
    account_id: str
    amount: Decimal
    currency: CurrencyType
    observed_at: datetime = Field(default_factory=_utcnow)


class PurchaseParams(BaseModel):
    buyer_id: str
    recipient: str
    amount: Decimal
    resource: str
    description: str = ''


class PurchaseInitiation(BaseModel):
    """Either a 402 challenge or, for instant simulated settlement, a tx id."""
    status: int
    payment_required: bool
    requirements: Optional[PaymentRequiredResponse] = None
    tx_id: Optional[str] = None
    network_id: str = ''


class VerifyParams(BaseModel):
    payment_header: Optional[str]
    expected_amount: Decimal
    expected_recipient: str
    buyer_id: Optional[str] = None


class PurchaseResult(BaseModel):
    success: bool
    tx_reference: str = ''
    network_id: str = ''
    error: Optional[str] = None
    error_code: Optional[str] = None


class CurrencyTransaction(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    account_id: str
    type: TransactionType
    amount: Decimal
    tx_reference: str
    network_id: str = ''
    timestamp: datetime = Field(default_factory=_utcnow)
    listing_id: Optional[str] = None
    tier_id: Optional[str] = None
    item_ids: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TransactionHistory:
    """Per-account append-only transaction log with offset pagination."""

    def __init__(self):
        self._by_account: Dict[str, List[CurrencyTransaction]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, tx: CurrencyTransaction) -> None:
        async with self._lock:
            self._by_account[tx.account_id].append(tx)

    async def page(
        self,
        account_id: str,
        page: int = 1,
        limit: int = DEFAULT_PAGE_LIMIT,
        sort_order: str = 'desc'
    ) -> List[CurrencyTransaction]:
        """Return one page of an account's history, sorted by timestamp.

        Raises:
            CurrencyError: If page, limit or sort_order is invalid
        """
        if page < 1 or limit < 1:
            raise CurrencyError("page and limit must be at least 1")
        if sort_order not in SORT_ORDERS:
            raise CurrencyError(f"sort_order must be one of {', '.join(SORT_ORDERS)}")

        async with self._lock:
            items = list(self._by_account.get(account_id, ()))

        # list.sort is stable in both directions
        items.sort(key=lambda tx: tx.timestamp, reverse=(sort_order == 'desc'))
        offset = (page - 1) * limit
        return items[offset:offset + limit]


class CurrencyAdapter(ABC):
    """Balance, purchase and history operations over one currency backend."""

    @abstractmethod
    async def get_balance(self, account_id: str) -> CurrencyBalance:
        """Current balance; never raises for transport failures."""

    @abstractmethod
    async def deduct(self, account_id: str, amount: Decimal) -> str:
        """Debit an account directly and return a transaction id."""

    @abstractmethod
    async def add(self, account_id: str, amount: Decimal) -> str:
        """Credit an account directly and return a transaction id."""

    @abstractmethod
    async def initiate_purchase(self, params: PurchaseParams) -> PurchaseInitiation:
        """Issue a payment challenge (or settle instantly where supported)."""

    @abstractmethod
    async def verify_purchase(self, params: VerifyParams) -> PurchaseResult:
        """Verify payment proof for a purchase."""

    @abstractmethod
    async def record_transaction(self, tx: CurrencyTransaction) -> None:
        """Append to the account's history and invalidate its cached balance."""

    @abstractmethod
    async def get_transactions(
        self,
        account_id: str,
        page: int = 1,
        limit: int = DEFAULT_PAGE_LIMIT,
        sort_order: str = 'desc'
    ) -> List[CurrencyTransaction]:
        """Paginated history; empty for unknown accounts."""
