"""Storage module for marketplace persistence.

This module provides:
- The StorageAdapter contract used by every manager
- Atomic trade operations (UpdateListing, RecordTransaction, RecordPendingTransfer)
- MemoryStorageAdapter for development and tests
- PostgresStorageAdapter on the asyncpg pool from the database module

Implementations must make two things atomic: the conditional listing state
change (compare-and-swap on the current state) and the failure counter
increment together with the auto-pull it may trigger.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel

from errors import BazaarError, ErrorCodes

from .models import (
    Listing, ListingState, MysteryBoxPurchase, MysteryBoxTier, PaginatedListings,
    PaginationOptions, PendingTransfer, PendingTransferKind, SortBy, TradeKind,
    Transaction, TransactionStatus, new_id, utcnow
)


class StorageError(BazaarError):
    """Base exception for storage errors"""
    code = ErrorCodes.STORAGE_ERROR
    status_code = 500


class ListingStateConflictError(StorageError):
    """Raised when a listing is not in the state an operation expected"""
    code = ErrorCodes.LISTING_NOT_AVAILABLE
    status_code = 409


class ListingAlreadySoldError(ListingStateConflictError):
    """Raised when another purchase already sold the listing"""
    code = ErrorCodes.LISTING_ALREADY_SOLD
    status_code = 409

    def __init__(self, listing_id: str):
        self.listing_id = listing_id
        super().__init__(f"Listing {listing_id} already sold")


class DuplicateTransactionError(StorageError):
    """Raised when a transaction reference has already been recorded"""
    code = ErrorCodes.DUPLICATE_TRANSACTION
    status_code = 409

    def __init__(self, tx_reference: str):
        self.tx_reference = tx_reference
        super().__init__(f"Duplicate transaction reference: {tx_reference}")


class UpdateListing(BaseModel):
    """Move a listing from ``expected_state`` to ``new_state``."""
    listing_id: str
    expected_state: ListingState
    new_state: ListingState


class RecordTransaction(BaseModel):
    transaction: Transaction


class RecordPendingTransfer(BaseModel):
    pending: PendingTransfer


TradeOperation = Union[UpdateListing, RecordTransaction, RecordPendingTransfer]


def sort_listings(listings: Iterable[Listing], sort_by: SortBy) -> List[Listing]:
    """Pinned listings first, then by ``sort_by``; ties broken newest first."""
    ordered = sorted(listings, key=lambda l: (l.created_at, l.id), reverse=True)
    if sort_by == SortBy.PRICE_LOW:
        ordered.sort(key=lambda l: l.price)
    elif sort_by == SortBy.PRICE_HIGH:
        ordered.sort(key=lambda l: l.price, reverse=True)
    ordered.sort(key=lambda l: not l.pinned)
    return ordered


def paginate(ordered: Sequence[Listing], options: PaginationOptions) -> PaginatedListings:
    """Cursor pagination; the cursor is the id of the last listing already seen."""
    start = 0
    if options.cursor:
        for index, listing in enumerate(ordered):
            if listing.id == options.cursor:
                start = index + 1
                break
    page = list(ordered[start:start + options.limit])
    has_more = start + options.limit < len(ordered)
    return PaginatedListings(
        items=page,
        next_cursor=page[-1].id if page and has_more else None,
        has_more=has_more,
    )


class StorageAdapter(ABC):
    """Persistence contract for listings, transactions, tiers and markers."""

    # Listings

    @abstractmethod
    async def create_listing(self, listing: Listing) -> Listing:
        pass

    @abstractmethod
    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        pass

    @abstractmethod
    async def get_active_listings(
        self,
        options: Optional[PaginationOptions] = None,
        now: Optional[datetime] = None
    ) -> PaginatedListings:
        """On-market, unexpired listings; pinned first."""

    @abstractmethod
    async def get_listings_by_seller(self, seller_id: str) -> List[Listing]:
        pass

    @abstractmethod
    async def transition_listing(
        self,
        listing_id: str,
        from_states: Iterable[ListingState],
        to_state: ListingState,
        **changes: Any
    ) -> Optional[Listing]:
        """Compare-and-swap the listing state.

        Returns the updated listing, or None if the listing is missing or its
        current state is not one of ``from_states``.
        """

    @abstractmethod
    async def update_listing(self, listing_id: str, **changes: Any) -> Optional[Listing]:
        """Update non-state fields (pinned, reports_count, ...)."""

    @abstractmethod
    async def record_purchase_failure(
        self,
        listing_id: str,
        limit: int,
        at: Optional[datetime] = None
    ) -> Tuple[Optional[Listing], bool]:
        """Increment the failure counter of an on-market listing and pull it
        once the counter reaches ``limit``, as one write.

        Returns:
            (listing, counted). Listings that are not on the market are
            returned unchanged with counted False; listing is None if missing.
        """

    @abstractmethod
    async def increment_reports(self, listing_id: str) -> Optional[Listing]:
        pass

    # Transactions

    @abstractmethod
    async def record_transaction(self, transaction: Transaction) -> Transaction:
        """Raises DuplicateTransactionError if tx_reference was seen before."""

    @abstractmethod
    async def get_transaction_by_reference(self, tx_reference: str) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def get_transactions_by_account(self, account_id: str) -> List[Transaction]:
        """Transactions where the account bought or sold, newest first."""

    # Mystery boxes

    @abstractmethod
    async def save_mystery_box_tier(self, tier: MysteryBoxTier) -> MysteryBoxTier:
        pass

    @abstractmethod
    async def get_mystery_box_tier(self, tier_id: str) -> Optional[MysteryBoxTier]:
        pass

    @abstractmethod
    async def get_mystery_box_tiers(self) -> List[MysteryBoxTier]:
        pass

    @abstractmethod
    async def record_mystery_box_purchase(self, purchase: MysteryBoxPurchase) -> MysteryBoxPurchase:
        pass

    @abstractmethod
    async def get_mystery_box_purchases(self, buyer_id: str) -> List[MysteryBoxPurchase]:
        pass

    # Pending transfers

    @abstractmethod
    async def get_pending_transfer(self, pending_id: str) -> Optional[PendingTransfer]:
        pass

    @abstractmethod
    async def get_pending_transfers(self) -> List[PendingTransfer]:
        """Unresolved markers, oldest first."""

    @abstractmethod
    async def update_pending_transfer(self, pending_id: str, **changes: Any) -> Optional[PendingTransfer]:
        pass

    # Trades

    @abstractmethod
    async def execute_atomic_trade(self, operations: Sequence[TradeOperation]) -> None:
        """Apply every operation or none of them.

        Raises:
            ListingAlreadySoldError: An UpdateListing found the listing sold
            ListingStateConflictError: An UpdateListing found another state
            DuplicateTransactionError: A RecordTransaction reused a reference
        """


from .memory import MemoryStorageAdapter  # noqa: E402
from .postgres import PostgresStorageAdapter  # noqa: E402

# Export public interface
__all__ = [
    'StorageAdapter',
    'MemoryStorageAdapter',
    'PostgresStorageAdapter',
    'StorageError',
    'ListingStateConflictError',
    'ListingAlreadySoldError',
    'DuplicateTransactionError',
    'UpdateListing',
    'RecordTransaction',
    'RecordPendingTransfer',
    'TradeOperation',
    'sort_listings',
    'paginate',
    'Listing',
    'ListingState',
    'MysteryBoxPurchase',
    'MysteryBoxTier',
    'PaginatedListings',
    'PaginationOptions',
    'PendingTransfer',
    'PendingTransferKind',
    'SortBy',
    'TradeKind',
    'Transaction',
    'TransactionStatus',
    'new_id',
    'utcnow',
]
