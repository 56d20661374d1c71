"""In-memory StorageAdapter.

One asyncio.Lock serializes every write, which gives the compare-and-swap and
all-or-nothing semantics the contract asks for within a single process.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from . import (
    StorageAdapter, StorageError, ListingStateConflictError, ListingAlreadySoldError,
    DuplicateTransactionError, UpdateListing, RecordTransaction, RecordPendingTransfer,
    TradeOperation, sort_listings, paginate
)
from .models import (
    Listing, ListingState, MysteryBoxPurchase, MysteryBoxTier, PaginatedListings,
    PaginationOptions, PendingTransfer, Transaction, utcnow
)

logger = logging.getLogger(__name__)


class MemoryStorageAdapter(StorageAdapter):
    """Dict-backed storage for development and tests."""

    def __init__(self):
        self._listings: Dict[str, Listing] = {}
        self._transactions: Dict[str, Transaction] = {}
        self._tx_by_reference: Dict[str, str] = {}
        self._tiers: Dict[str, MysteryBoxTier] = {}
        self._purchases: Dict[str, MysteryBoxPurchase] = {}
        self._pending: Dict[str, PendingTransfer] = {}
        self._lock = asyncio.Lock()

    # Listings

    async def create_listing(self, listing: Listing) -> Listing:
        async with self._lock:
            if listing.id in self._listings:
                raise StorageError(f"Listing {listing.id} already exists")
            self._listings[listing.id] = listing
        return listing

    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        return self._listings.get(listing_id)

    async def get_active_listings(
        self,
        options: Optional[PaginationOptions] = None,
        now: Optional[datetime] = None
    ) -> PaginatedListings:
        options = options or PaginationOptions()
        now = now or utcnow()
        active = [l for l in self._listings.values() if l.is_purchasable(now)]
        return paginate(sort_listings(active, options.sort_by), options)

    async def get_listings_by_seller(self, seller_id: str) -> List[Listing]:
        listings = [l for l in self._listings.values() if l.seller_id == seller_id]
        return sorted(listings, key=lambda l: l.created_at, reverse=True)

    def _apply(self, listing: Listing, **changes: Any) -> Listing:
        updated = listing.model_copy(update={**changes, 'updated_at': utcnow()})
        self._listings[listing.id] = updated
        return updated

    async def transition_listing(
        self,
        listing_id: str,
        from_states: Iterable[ListingState],
        to_state: ListingState,
        **changes: Any
    ) -> Optional[Listing]:
        allowed = set(from_states)
        async with self._lock:
            listing = self._listings.get(listing_id)
            if listing is None or listing.state not in allowed:
                return None
            return self._apply(listing, state=to_state, **changes)

    async def update_listing(self, listing_id: str, **changes: Any) -> Optional[Listing]:
        if 'state' in changes:
            raise StorageError("Use transition_listing to change listing state")
        async with self._lock:
            listing = self._listings.get(listing_id)
            if listing is None:
                return None
            return self._apply(listing, **changes)

    async def record_purchase_failure(
        self,
        listing_id: str,
        limit: int,
        at: Optional[datetime] = None
    ) -> Tuple[Optional[Listing], bool]:
        async with self._lock:
            listing = self._listings.get(listing_id)
            if listing is None or listing.state != ListingState.ON_MARKET:
                return listing, False
            count = listing.failed_purchase_count + 1
            changes: Dict[str, Any] = {
                'failed_purchase_count': count,
                'last_failure_at': at or utcnow(),
            }
            if count >= limit:
                changes['state'] = ListingState.PULLED
            return self._apply(listing, **changes), True

    async def increment_reports(self, listing_id: str) -> Optional[Listing]:
        async with self._lock:
            listing = self._listings.get(listing_id)
            if listing is None:
                return None
            return self._apply(listing, reports_count=listing.reports_count + 1)

    # Transactions

    async def record_transaction(self, transaction: Transaction) -> Transaction:
        async with self._lock:
            self._check_reference(transaction.tx_reference, set())
            self._store_transaction(transaction)
        return transaction

    def _check_reference(self, tx_reference: str, staged: set) -> None:
        if tx_reference in self._tx_by_reference or tx_reference in staged:
            raise DuplicateTransactionError(tx_reference)

    def _store_transaction(self, transaction: Transaction) -> None:
        self._transactions[transaction.id] = transaction
        self._tx_by_reference[transaction.tx_reference] = transaction.id

    async def get_transaction_by_reference(self, tx_reference: str) -> Optional[Transaction]:
        tx_id = self._tx_by_reference.get(tx_reference)
        return self._transactions.get(tx_id) if tx_id else None

    async def get_transactions_by_account(self, account_id: str) -> List[Transaction]:
        matches = [
            tx for tx in self._transactions.values()
            if account_id in (tx.buyer_id, tx.seller_id)
        ]
        return sorted(matches, key=lambda tx: tx.created_at, reverse=True)

    # Mystery boxes

    async def save_mystery_box_tier(self, tier: MysteryBoxTier) -> MysteryBoxTier:
        async with self._lock:
            self._tiers[tier.id] = tier
        return tier

    async def get_mystery_box_tier(self, tier_id: str) -> Optional[MysteryBoxTier]:
        return self._tiers.get(tier_id)

    async def get_mystery_box_tiers(self) -> List[MysteryBoxTier]:
        return list(self._tiers.values())

    async def record_mystery_box_purchase(self, purchase: MysteryBoxPurchase) -> MysteryBoxPurchase:
        async with self._lock:
            self._purchases[purchase.id] = purchase
        return purchase

    async def get_mystery_box_purchases(self, buyer_id: str) -> List[MysteryBoxPurchase]:
        return [p for p in self._purchases.values() if p.buyer_id == buyer_id]

    # Pending transfers

    async def get_pending_transfer(self, pending_id: str) -> Optional[PendingTransfer]:
        return self._pending.get(pending_id)

    async def get_pending_transfers(self) -> List[PendingTransfer]:
        pending = [p for p in self._pending.values() if not p.resolved]
        return sorted(pending, key=lambda p: p.created_at)

    async def update_pending_transfer(self, pending_id: str, **changes: Any) -> Optional[PendingTransfer]:
        async with self._lock:
            pending = self._pending.get(pending_id)
            if pending is None:
                return None
            updated = pending.model_copy(update=changes)
            self._pending[pending_id] = updated
            return updated

    # Trades

    async def execute_atomic_trade(self, operations: Sequence[TradeOperation]) -> None:
        async with self._lock:
            # Check every precondition before touching anything
            staged_references: set = set()
            for op in operations:
                if isinstance(op, UpdateListing):
                    listing = self._listings.get(op.listing_id)
                    if listing is None:
                        raise StorageError(f"Listing {op.listing_id} not found")
                    if listing.state != op.expected_state:
                        if listing.state == ListingState.SOLD:
                            raise ListingAlreadySoldError(op.listing_id)
                        raise ListingStateConflictError(
                            f"Listing {op.listing_id} is {listing.state.value}, "
                            f"expected {op.expected_state.value}"
                        )
                elif isinstance(op, RecordTransaction):
                    self._check_reference(op.transaction.tx_reference, staged_references)
                    staged_references.add(op.transaction.tx_reference)
                elif isinstance(op, RecordPendingTransfer):
                    if op.pending.id in self._pending:
                        raise StorageError(f"Pending transfer {op.pending.id} already exists")
                else:
                    raise StorageError(f"Unknown trade operation: {type(op).__name__}")

            for op in operations:
                if isinstance(op, UpdateListing):
                    self._apply(self._listings[op.listing_id], state=op.new_state)
                elif isinstance(op, RecordTransaction):
                    self._store_transaction(op.transaction)
                else:
                    self._pending[op.pending.id] = op.pending

        logger.debug(f"Committed atomic trade with {len(operations)} operation(s)")
