"""Trade execution for verified payments.

For a payment the facilitator has confirmed, TradeExecutor commits in one
storage operation:
- the listing moving on_market -> sold (listing trades only)
- the Transaction keyed by the ledger reference
- a PendingTransfer marker for the item move that follows

It then transfers the listed item (or generates and grants a mystery box
reward) and resolves the marker. If any of that fails the sale stays
committed, the marker stays pending with the error and
ReconciliationRequiredError is raised; nothing is compensated automatically.
A generated reward is stored on the marker, and the marker notes once it was
granted. Admins retry markers with retry_pending_transfer.
"""
import logging
from decimal import Decimal
from typing import Any, List, Optional

from errors import BazaarError, ErrorCodes
from items import ItemAdapter
from mystery_box import MysteryBoxManager
from storage import (
    StorageAdapter, Listing, ListingState, MysteryBoxPurchase, MysteryBoxTier,
    PendingTransfer, PendingTransferKind, RecordPendingTransfer, RecordTransaction,
    TradeKind, Transaction, UpdateListing, utcnow
)

logger = logging.getLogger(__name__)


class TradeError(BazaarError):
    """Base exception for trade errors"""
    code = ErrorCodes.STORAGE_ERROR
    status_code = 500


class ReconciliationRequiredError(TradeError):
    """Raised when a committed trade could not move the item.

    The payment is recorded and the listing (if any) is sold; the pending
    transfer must be retried by an admin.
    """
    code = ErrorCodes.RECONCILIATION_REQUIRED
    status_code = 500

    def __init__(self, message: str, pending: PendingTransfer, transaction: Optional[Transaction]):
        self.pending = pending
        self.transaction = transaction
        super().__init__(
            message,
            details={'pending_transfer_id': pending.id, 'tx_reference': pending.tx_reference}
        )


class PendingTransferNotFoundError(TradeError):
    """Raised when a pending transfer does not exist or is already resolved"""
    code = ErrorCodes.VALIDATION_ERROR
    status_code = 404


class TradeExecutor:
    """Commits verified purchases and moves the purchased items."""

    def __init__(
        self,
        storage: StorageAdapter,
        items: ItemAdapter,
        mystery_boxes: MysteryBoxManager
    ):
        self.storage = storage
        self.items = items
        self.mystery_boxes = mystery_boxes

    async def execute_listing_trade(
        self,
        listing: Listing,
        buyer_id: str,
        buyer_wallet: str,
        tx_reference: str,
        network_id: str = ''
    ) -> Transaction:
        """Sell a listing for a verified payment.

        Args:
            listing: Listing being bought
            buyer_id: Buyer username
            buyer_wallet: Wallet that paid
            tx_reference: Ledger reference of the payment
            network_id: Network the payment settled on

        Returns:
            The recorded Transaction

        Raises:
            ListingAlreadySoldError: If a concurrent purchase won the listing
            ListingStateConflictError: If the listing left the market
            DuplicateTransactionError: If the reference was already used
            ReconciliationRequiredError: If the item transfer failed after commit
        """
        transaction = Transaction(
            kind=TradeKind.LISTING_PURCHASE,
            listing_id=listing.id,
            buyer_id=buyer_id,
            buyer_wallet=buyer_wallet,
            seller_id=listing.seller_id,
            amount=listing.price,
            tx_reference=tx_reference,
            network_id=network_id,
            items=[{'id': listing.item_id, 'type': listing.item_type, **listing.item_data}],
        )
        pending = PendingTransfer(
            kind=PendingTransferKind.TRANSFER,
            tx_reference=tx_reference,
            buyer_id=buyer_id,
            buyer_wallet=buyer_wallet,
            seller_id=listing.seller_id,
            listing_id=listing.id,
            item_id=listing.item_id,
        )

        await self.storage.execute_atomic_trade([
            UpdateListing(
                listing_id=listing.id,
                expected_state=ListingState.ON_MARKET,
                new_state=ListingState.SOLD,
            ),
            RecordTransaction(transaction=transaction),
            RecordPendingTransfer(pending=pending),
        ])
        logger.info(f"Listing {listing.id} sold to {buyer_id} ({tx_reference})")

        try:
            await self.items.transfer_item(listing.item_id, listing.seller_id, buyer_id)
        except Exception as e:
            pending = await self._mark_failed(pending, e)
            raise ReconciliationRequiredError(
                f"Listing {listing.id} was paid ({tx_reference}) but item "
                f"{listing.item_id} could not be transferred: {e}",
                pending,
                transaction
            ) from e

        await self._resolve(pending)
        return transaction

    async def execute_mystery_box_trade(
        self,
        tier: MysteryBoxTier,
        buyer_id: str,
        buyer_wallet: str,
        tx_reference: str,
        network_id: str = '',
        seller_id: Optional[str] = None
    ) -> MysteryBoxPurchase:
        """Record a verified mystery box payment and grant the reward.

        The generated item and the fact that it was granted are written to
        the pending marker as each step completes, so a retry grants the same
        item once instead of drawing a new one.

        Raises:
            DuplicateTransactionError: If the reference was already used
            ReconciliationRequiredError: If any step after the commit failed
        """
        transaction = Transaction(
            kind=TradeKind.MYSTERY_BOX_PURCHASE,
            tier_id=tier.id,
            buyer_id=buyer_id,
            buyer_wallet=buyer_wallet,
            seller_id=seller_id,
            amount=tier.price_usdc,
            tx_reference=tx_reference,
            network_id=network_id,
        )
        pending = PendingTransfer(
            kind=PendingTransferKind.GRANT,
            tx_reference=tx_reference,
            buyer_id=buyer_id,
            buyer_wallet=buyer_wallet,
            tier_id=tier.id,
        )

        await self.storage.execute_atomic_trade([
            RecordTransaction(transaction=transaction),
            RecordPendingTransfer(pending=pending),
        ])

        try:
            purchase = await self._deliver_reward(pending, tier, transaction.amount)
        except Exception as e:
            pending = await self._mark_failed(pending, e)
            raise ReconciliationRequiredError(
                f"Mystery box {tier.id} was paid ({tx_reference}) but the reward "
                f"could not be delivered: {e}",
                pending,
                transaction
            ) from e

        await self._resolve(pending)
        return purchase

    async def _deliver_reward(
        self,
        pending: PendingTransfer,
        tier: MysteryBoxTier,
        price_usdc: Decimal
    ) -> MysteryBoxPurchase:
        item = pending.item
        if item is None:
            item = await self.mystery_boxes.generate_item(tier)
            pending = await self._update(pending, item=item, item_id=item.get('id'))
        if not pending.item_granted:
            await self.mystery_boxes.grant_item(item, pending.buyer_id)
            pending = await self._update(pending, item_granted=True)
        return await self.mystery_boxes.record_purchase(
            tier, pending.buyer_id, pending.tx_reference, item,
            buyer_wallet=pending.buyer_wallet, price_usdc=price_usdc,
        )

    async def get_pending_transfers(self) -> List[PendingTransfer]:
        return await self.storage.get_pending_transfers()

    async def retry_pending_transfer(self, pending_id: str) -> PendingTransfer:
        """Retry the item move behind a pending marker.

        Transfers are repeated as-is. Grants resume from the first step that
        did not complete: the stored item is granted if it was generated, and
        the purchase is recorded if the grant already happened.

        Raises:
            PendingTransferNotFoundError: If the marker is missing or resolved
            ReconciliationRequiredError: If the retry fails again
        """
        pending = await self.storage.get_pending_transfer(pending_id)
        if pending is None or pending.resolved:
            raise PendingTransferNotFoundError(f"No pending transfer {pending_id}")
        transaction = await self.storage.get_transaction_by_reference(pending.tx_reference)

        try:
            if pending.kind == PendingTransferKind.TRANSFER:
                await self.items.transfer_item(pending.item_id, pending.seller_id, pending.buyer_id)
            else:
                tier = await self.mystery_boxes.get_tier(pending.tier_id)
                price = transaction.amount if transaction is not None else tier.price_usdc
                await self._deliver_reward(pending, tier, price)
        except Exception as e:
            pending = await self._mark_failed(pending, e)
            raise ReconciliationRequiredError(
                f"Retry of pending transfer {pending_id} failed: {e}",
                pending,
                transaction
            ) from e

        logger.info(f"Pending transfer {pending_id} reconciled")
        return await self._resolve(pending)

    async def _update(self, pending: PendingTransfer, **changes: Any) -> PendingTransfer:
        updated = await self.storage.update_pending_transfer(pending.id, **changes)
        return updated or pending.model_copy(update=changes)

    async def _current(self, pending: PendingTransfer) -> PendingTransfer:
        return await self.storage.get_pending_transfer(pending.id) or pending

    async def _mark_failed(self, pending: PendingTransfer, error: Exception) -> PendingTransfer:
        logger.error(
            f"Item delivery failed after commit of {pending.tx_reference}; "
            f"pending transfer {pending.id} needs reconciliation: {error}"
        )
        pending = await self._current(pending)
        return await self._update(pending, attempts=pending.attempts + 1, last_error=str(error))

    async def _resolve(self, pending: PendingTransfer) -> PendingTransfer:
        pending = await self._current(pending)
        return await self._update(
            pending, attempts=pending.attempts + 1, resolved_at=utcnow(), last_error=None
        )


# Export public interface
__all__ = [
    'TradeExecutor',
    'TradeError',
    'ReconciliationRequiredError',
    'PendingTransferNotFoundError',
]
