"""Marketplace purchase orchestration.

Ties the managers together for the two things a buyer can pay for:

    request -> availability check -> (no proof) 402 challenge
            -> (proof) verify + settle -> atomic trade -> item moved

Failed verifications caused by the payment itself (wrong amount, recipient
or asset, or no settlement) count against the listing; malformed proofs do
not. With simulated instant settlement the challenge step settles directly,
and the buyer is refunded if the trade then loses the listing.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel

from currency import (
    CurrencyAdapter, CurrencyConfig, CurrencyTransaction, PurchaseParams, PurchaseResult,
    TransactionType, VerifyParams, create_currency_adapter
)
from errors import BazaarError, ErrorCodes
from facilitator import VerificationErrors
from items import InMemoryItemAdapter, ItemAdapter
from ledger import LedgerClient
from listings import ListingCallback, ListingManager, DEFAULT_FAILED_PURCHASE_LIMIT
from mystery_box import MysteryBoxManager
from protocol import PaymentRequiredResponse
from ratelimit import MemoryCounterStore, RateLimiter
from storage import (
    DuplicateTransactionError, Listing, ListingStateConflictError, MemoryStorageAdapter,
    MysteryBoxPurchase, PostgresStorageAdapter, StorageAdapter, Transaction
)
from trades import ReconciliationRequiredError, TradeExecutor

logger = logging.getLogger(__name__)

DEFAULT_PLATFORM_WALLET = 'platform'


class PaymentVerificationError(BazaarError):
    """Raised when payment proof does not verify"""
    code = ErrorCodes.PAYMENT_VERIFICATION_FAILED
    status_code = 402

    def __init__(self, result: PurchaseResult, listing: Optional[Listing] = None):
        self.result = result
        self.listing = listing
        details: Dict[str, Any] = {'reason': result.error_code}
        if listing is not None:
            details['failed_purchase_count'] = listing.failed_purchase_count
            details['listing_state'] = listing.state.value
        super().__init__(result.error or "Payment verification failed", details=details)


class PurchaseOutcome(BaseModel):
    """402 challenge or completed purchase."""
    status: int
    payment_required: Optional[PaymentRequiredResponse] = None
    transaction: Optional[Transaction] = None
    mystery_box_purchase: Optional[MysteryBoxPurchase] = None
    item: Optional[Dict[str, Any]] = None


class Marketplace:
    """Purchase flows for listings and mystery boxes."""

    def __init__(
        self,
        storage: StorageAdapter,
        currency: CurrencyAdapter,
        listings: ListingManager,
        mystery_boxes: MysteryBoxManager,
        trades: TradeExecutor,
        platform_wallet: str = DEFAULT_PLATFORM_WALLET,
        rate_limiter: Optional[RateLimiter] = None
    ):
        self.storage = storage
        self.currency = currency
        self.listings = listings
        self.mystery_boxes = mystery_boxes
        self.trades = trades
        self.platform_wallet = platform_wallet or DEFAULT_PLATFORM_WALLET
        self.rate_limiter = rate_limiter

    @classmethod
    def build(
        cls,
        storage: StorageAdapter,
        items: ItemAdapter,
        currency: CurrencyAdapter,
        platform_wallet: str = DEFAULT_PLATFORM_WALLET,
        rate_limiter: Optional[RateLimiter] = None,
        failed_purchase_limit: int = DEFAULT_FAILED_PURCHASE_LIMIT,
        on_listing_pulled: Optional[ListingCallback] = None
    ) -> 'Marketplace':
        """Wire the managers over one storage and item system."""
        listings = ListingManager(
            storage, items,
            failed_purchase_limit=failed_purchase_limit,
            on_listing_pulled=on_listing_pulled,
        )
        mystery_boxes = MysteryBoxManager(storage, items)
        trades = TradeExecutor(storage, items, mystery_boxes)
        return cls(
            storage, currency, listings, mystery_boxes, trades,
            platform_wallet=platform_wallet, rate_limiter=rate_limiter,
        )

    async def _rate_limit(self, action: str, identity: str) -> None:
        if self.rate_limiter is not None:
            await self.rate_limiter.hit(action, identity)

    async def create_listing(self, seller_id: str, **params: Any) -> Listing:
        """Create a listing for review, subject to the listing rate limit."""
        await self._rate_limit('listing', seller_id)
        return await self.listings.create_listing(seller_id=seller_id, **params)

    async def _settle(
        self,
        buyer_id: str,
        recipient: str,
        amount: Decimal,
        resource: str,
        description: str,
        payment_header: Optional[str],
        listing: Optional[Listing] = None
    ):
        """Return (outcome, None) for a challenge or (None, PurchaseResult) when paid."""
        if not payment_header:
            initiation = await self.currency.initiate_purchase(PurchaseParams(
                buyer_id=buyer_id,
                recipient=recipient,
                amount=amount,
                resource=resource,
                description=description,
            ))
            if initiation.payment_required:
                return PurchaseOutcome(status=402, payment_required=initiation.requirements), None
            return None, PurchaseResult(
                success=True, tx_reference=initiation.tx_id, network_id=initiation.network_id
            )

        result = await self.currency.verify_purchase(VerifyParams(
            payment_header=payment_header,
            expected_amount=amount,
            expected_recipient=recipient,
            buyer_id=buyer_id,
        ))
        if result.success:
            return None, result

        if listing is not None and (
            result.error_code in VerificationErrors.PAYMENT_MISMATCH
            or result.error_code in VerificationErrors.SETTLEMENT
        ):
            listing = await self.listings.record_purchase_failure(listing.id)
        raise PaymentVerificationError(result, listing)

    async def _refund(self, buyer_id: str, amount: Decimal, tx_reference: str) -> None:
        refund_id = await self.currency.add(buyer_id, amount)
        await self.currency.record_transaction(CurrencyTransaction(
            account_id=buyer_id,
            type=TransactionType.REFUND,
            amount=amount,
            tx_reference=refund_id,
            metadata={'refunded_tx_reference': tx_reference},
        ))
        logger.info(f"Refunded {amount} to {buyer_id} for {tx_reference}")

    async def purchase_listing(
        self,
        listing_id: str,
        buyer_id: str,
        buyer_wallet: str,
        payment_header: Optional[str] = None
    ) -> PurchaseOutcome:
        """Buy a listing.

        Without ``payment_header`` this returns a 402 challenge (or settles
        instantly in simulated mode). With it, the proof is verified and the
        trade committed.

        Raises:
            RateLimitExceededError: If the buyer is making too many attempts
            ListingNotFoundError: If the listing doesn't exist
            ListingNotAvailableError: If the listing is not on the market
            PaymentVerificationError: If the proof does not verify
            ListingAlreadySoldError: If another purchase won the listing
            DuplicateTransactionError: If the payment was already used
            ReconciliationRequiredError: If the item could not be transferred
        """
        await self._rate_limit('purchase', buyer_id)
        listing = await self.listings.ensure_purchasable(listing_id, buyer_id)

        challenge, paid = await self._settle(
            buyer_id,
            recipient=listing.seller_wallet,
            amount=listing.price,
            resource=f"listing:{listing.id}",
            description=f"Purchase {listing.title}",
            payment_header=payment_header,
            listing=listing,
        )
        if challenge is not None:
            return challenge

        try:
            transaction = await self.trades.execute_listing_trade(
                listing, buyer_id, buyer_wallet, paid.tx_reference, paid.network_id
            )
        except (ListingStateConflictError, DuplicateTransactionError):
            if not payment_header:
                await self._refund(buyer_id, listing.price, paid.tx_reference)
            raise
        except ReconciliationRequiredError as e:
            await self._record_listing_payment(listing, buyer_id, e.transaction)
            raise

        await self._record_listing_payment(listing, buyer_id, transaction)
        return PurchaseOutcome(status=200, transaction=transaction, item=transaction.items[0])

    async def _record_listing_payment(
        self,
        listing: Listing,
        buyer_id: str,
        transaction: Transaction
    ) -> None:
        common = {
            'amount': transaction.amount,
            'tx_reference': transaction.tx_reference,
            'network_id': transaction.network_id,
            'listing_id': listing.id,
            'item_ids': [listing.item_id],
        }
        await self.currency.record_transaction(CurrencyTransaction(
            account_id=buyer_id, type=TransactionType.LISTING_PURCHASE, **common
        ))
        await self.currency.record_transaction(CurrencyTransaction(
            account_id=listing.seller_id, type=TransactionType.LISTING_SALE, **common
        ))

    async def purchase_mystery_box(
        self,
        tier_id: str,
        buyer_id: str,
        buyer_wallet: str,
        payment_header: Optional[str] = None
    ) -> PurchaseOutcome:
        """Buy a mystery box; payment goes to the platform wallet.

        Raises:
            RateLimitExceededError: If the buyer is making too many attempts
            TierNotFoundError: If the tier doesn't exist
            PaymentVerificationError: If the proof does not verify
            DuplicateTransactionError: If the payment was already used
            ReconciliationRequiredError: If the reward could not be delivered
        """
        await self._rate_limit('purchase', buyer_id)
        tier = await self.mystery_boxes.get_tier(tier_id)

        challenge, paid = await self._settle(
            buyer_id,
            recipient=self.platform_wallet,
            amount=tier.price_usdc,
            resource=f"mystery-box:{tier.id}",
            description=f"{tier.name} mystery box",
            payment_header=payment_header,
        )
        if challenge is not None:
            return challenge

        try:
            purchase = await self.trades.execute_mystery_box_trade(
                tier, buyer_id, buyer_wallet, paid.tx_reference, paid.network_id
            )
        except DuplicateTransactionError:
            if not payment_header:
                await self._refund(buyer_id, tier.price_usdc, paid.tx_reference)
            raise
        except ReconciliationRequiredError:
            await self._record_box_payment(tier.id, buyer_id, tier.price_usdc, paid, None)
            raise

        await self._record_box_payment(tier.id, buyer_id, tier.price_usdc, paid, purchase)
        transaction = await self.storage.get_transaction_by_reference(paid.tx_reference)
        return PurchaseOutcome(
            status=200,
            transaction=transaction,
            mystery_box_purchase=purchase,
            item=purchase.generated_item,
        )

    async def _record_box_payment(
        self,
        tier_id: str,
        buyer_id: str,
        amount: Decimal,
        paid: PurchaseResult,
        purchase: Optional[MysteryBoxPurchase]
    ) -> None:
        item_ids = [purchase.generated_item['id']] if purchase and 'id' in purchase.generated_item else []
        await self.currency.record_transaction(CurrencyTransaction(
            account_id=buyer_id,
            type=TransactionType.MYSTERY_BOX_PURCHASE,
            amount=amount,
            tx_reference=paid.tx_reference,
            network_id=paid.network_id,
            tier_id=tier_id,
            item_ids=item_ids,
        ))


async def create_marketplace(
    settings: Dict[str, Any],
    items: Optional[ItemAdapter] = None,
    ledger: Optional[LedgerClient] = None,
    on_listing_pulled: Optional[ListingCallback] = None
) -> Marketplace:
    """Build a Marketplace from validated settings.

    Args:
        settings: Output of config.load_settings_conf
        items: Game item system; an in-memory one is used when omitted
        ledger: Ledger client for production mode
        on_listing_pulled: Called with listings pulled after failed purchases
    """
    if settings['storage_backend'] == 'postgres':
        storage: StorageAdapter = await PostgresStorageAdapter.connect(settings['db_url'])
    else:
        storage = MemoryStorageAdapter()

    if items is None:
        logger.warning("No item system configured, using in-memory items")
        items = InMemoryItemAdapter()

    currency = create_currency_adapter(CurrencyConfig.from_settings(settings), ledger=ledger)
    rate_limiter = RateLimiter.from_settings(MemoryCounterStore(), settings)

    logger.info(f"Marketplace ready ({settings['storage_backend']} storage)")
    return Marketplace.build(
        storage,
        items,
        currency,
        platform_wallet=settings['platform_wallet'],
        rate_limiter=rate_limiter,
        failed_purchase_limit=settings['failed_purchase_limit'],
        on_listing_pulled=on_listing_pulled,
    )


# Export public interface
__all__ = ['Marketplace', 'PurchaseOutcome', 'PaymentVerificationError', 'create_marketplace']
