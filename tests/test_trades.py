"""Tests for atomic trade execution and reconciliation."""
import asyncio
from decimal import Decimal

import pytest

from listings import ListingManager
from mystery_box import MysteryBoxManager
from storage import (
    DuplicateTransactionError, ListingAlreadySoldError, ListingState, MemoryStorageAdapter,
    MysteryBoxTier, PendingTransferKind, StorageError, TradeKind
)
from trades import PendingTransferNotFoundError, ReconciliationRequiredError, TradeExecutor

from tests.fakes import BUYER, BUYER_WALLET, NETWORK, SELLER, FlakyItemAdapter, put_on_market

TIER = MysteryBoxTier(
    id='starter', name='Starter', price_usdc=Decimal('1'), rarity_weights={'common': 1}
)


def make_executor(storage, items):
    return TradeExecutor(storage, items, MysteryBoxManager(storage, items))


@pytest.fixture
def executor(storage, items):
    return make_executor(storage, items)


@pytest.mark.asyncio
async def test_listing_trade(executor, storage, items, on_market):
    """Test a trade sells the listing, records the payment and moves the item."""
    transaction = await executor.execute_listing_trade(
        on_market, BUYER, BUYER_WALLET, 'sig-1', NETWORK
    )

    assert transaction.kind == TradeKind.LISTING_PURCHASE
    assert transaction.amount == Decimal('2.5')
    assert transaction.seller_id == SELLER
    assert transaction.items[0]['id'] == 'sword-1'
    assert (await storage.get_listing(on_market.id)).state == ListingState.SOLD
    assert await storage.get_transaction_by_reference('sig-1') == transaction
    assert items.items['sword-1']['owner'] == BUYER
    assert 'sword-1' not in items.locked
    assert await executor.get_pending_transfers() == []


@pytest.mark.asyncio
async def test_listing_sold_once(executor, on_market):
    await executor.execute_listing_trade(on_market, BUYER, BUYER_WALLET, 'sig-1')

    with pytest.raises(ListingAlreadySoldError):
        await executor.execute_listing_trade(on_market, 'buyer2', BUYER_WALLET, 'sig-2')


@pytest.mark.asyncio
async def test_concurrent_purchases_have_one_winner(executor, storage, on_market):
    """Test only one of several simultaneous trades commits."""
    results = await asyncio.gather(*[
        executor.execute_listing_trade(on_market, f'buyer{n}', BUYER_WALLET, f'sig-{n}')
        for n in range(5)
    ], return_exceptions=True)

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert all(isinstance(e, ListingAlreadySoldError) for e in losers)
    assert len(await storage.get_transactions_by_account(SELLER)) == 1


@pytest.mark.asyncio
async def test_duplicate_reference_changes_nothing(executor, storage, listing_manager, on_market):
    """Test a reused payment reference leaves the second listing on the market."""
    await executor.execute_listing_trade(on_market, BUYER, BUYER_WALLET, 'sig-1')
    second = await put_on_market(listing_manager, 'sword-2')

    with pytest.raises(DuplicateTransactionError):
        await executor.execute_listing_trade(second, BUYER, BUYER_WALLET, 'sig-1')

    assert (await storage.get_listing(second.id)).state == ListingState.ON_MARKET
    assert len(await storage.get_transactions_by_account(BUYER)) == 1


@pytest.mark.asyncio
async def test_failed_transfer_leaves_pending_marker(storage):
    """Test a committed sale whose item move fails is kept for reconciliation."""
    items = FlakyItemAdapter(fail_transfers=1)
    items.add_item('sword-1', SELLER)
    executor = make_executor(storage, items)
    listing = await put_on_market(ListingManager(storage, items))

    with pytest.raises(ReconciliationRequiredError) as exc_info:
        await executor.execute_listing_trade(listing, BUYER, BUYER_WALLET, 'sig-1')

    error = exc_info.value
    assert error.status_code == 500
    assert error.transaction.tx_reference == 'sig-1'
    assert (await storage.get_listing(listing.id)).state == ListingState.SOLD
    assert items.items['sword-1']['owner'] == SELLER

    [pending] = await executor.get_pending_transfers()
    assert pending.id == error.pending.id
    assert pending.kind == PendingTransferKind.TRANSFER
    assert pending.attempts == 1
    assert "item service unavailable" in pending.last_error

    resolved = await executor.retry_pending_transfer(pending.id)

    assert resolved.resolved
    assert resolved.attempts == 2
    assert items.items['sword-1']['owner'] == BUYER
    assert await executor.get_pending_transfers() == []

    with pytest.raises(PendingTransferNotFoundError):
        await executor.retry_pending_transfer(pending.id)


@pytest.mark.asyncio
async def test_retry_unknown_pending_transfer(executor):
    with pytest.raises(PendingTransferNotFoundError):
        await executor.retry_pending_transfer('missing')


@pytest.mark.asyncio
async def test_mystery_box_trade(executor, storage, items):
    await executor.mystery_boxes.add_tier(TIER)

    purchase = await executor.execute_mystery_box_trade(TIER, BUYER, BUYER_WALLET, 'sig-7', NETWORK)

    transaction = await storage.get_transaction_by_reference('sig-7')
    assert transaction.kind == TradeKind.MYSTERY_BOX_PURCHASE
    assert transaction.tier_id == 'starter'
    assert purchase.tx_reference == 'sig-7'
    assert items.get_granted_items(BUYER) == [purchase.generated_item]


@pytest.mark.asyncio
async def test_mystery_box_duplicate_reference(executor, storage, items):
    await executor.mystery_boxes.add_tier(TIER)
    await executor.execute_mystery_box_trade(TIER, BUYER, BUYER_WALLET, 'sig-7')

    with pytest.raises(DuplicateTransactionError):
        await executor.execute_mystery_box_trade(TIER, BUYER, BUYER_WALLET, 'sig-7')

    assert len(items.get_granted_items(BUYER)) == 1


@pytest.mark.asyncio
async def test_mystery_box_grant_failure_and_retry(storage):
    items = FlakyItemAdapter(fail_grants=1)
    executor = make_executor(storage, items)
    await executor.mystery_boxes.add_tier(TIER)

    with pytest.raises(ReconciliationRequiredError) as exc_info:
        await executor.execute_mystery_box_trade(TIER, BUYER, BUYER_WALLET, 'sig-7')

    pending = await storage.get_pending_transfer(exc_info.value.pending.id)
    assert pending.kind == PendingTransferKind.GRANT
    assert pending.item['id'] == pending.item_id
    assert not pending.item_granted
    assert pending.attempts == 1
    assert pending.last_error == "Failed to grant item: item service unavailable"
    assert not pending.resolved
    assert await storage.get_transaction_by_reference('sig-7') is not None

    resolved = await executor.retry_pending_transfer(pending.id)

    [purchase] = await executor.mystery_boxes.get_purchases_by_buyer(BUYER)
    assert items.get_granted_items(BUYER) == [pending.item]
    assert purchase.generated_item == pending.item
    assert resolved.resolved and resolved.item_granted
    assert resolved.attempts == 2


class FailingPurchaseStorage(MemoryStorageAdapter):
    """Memory storage whose next mystery box purchase records fail."""

    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures

    async def record_mystery_box_purchase(self, purchase):
        if self.failures:
            self.failures -= 1
            raise StorageError("purchase table unavailable")
        return await super().record_mystery_box_purchase(purchase)


@pytest.mark.asyncio
async def test_mystery_box_record_failure_grants_once():
    """Test a failed purchase record after the grant is reconciled without a second item."""
    storage = FailingPurchaseStorage()
    items = FlakyItemAdapter()
    executor = make_executor(storage, items)
    await executor.mystery_boxes.add_tier(TIER)

    with pytest.raises(ReconciliationRequiredError) as exc_info:
        await executor.execute_mystery_box_trade(TIER, BUYER, BUYER_WALLET, 'sig-8')

    [pending] = await storage.get_pending_transfers()
    assert pending.id == exc_info.value.pending.id
    assert pending.item_granted
    assert pending.attempts == 1
    assert pending.last_error == "purchase table unavailable"
    assert exc_info.value.transaction.tx_reference == 'sig-8'

    await executor.retry_pending_transfer(pending.id)

    [purchase] = await executor.mystery_boxes.get_purchases_by_buyer(BUYER)
    assert items.get_granted_items(BUYER) == [pending.item]
    assert purchase.generated_item == pending.item
    assert await storage.get_pending_transfers() == []


@pytest.mark.asyncio
async def test_mystery_box_generation_failure_is_reconciled(storage):
    """Test a generation failure leaves a marker with no item to grant yet."""
    items = FlakyItemAdapter()
    executor = make_executor(storage, items)
    await executor.mystery_boxes.add_tier(TIER)
    original_generate = items.generate_random_item

    async def offline(tier_id, weights):
        raise RuntimeError("generator offline")

    items.generate_random_item = offline
    with pytest.raises(ReconciliationRequiredError):
        await executor.execute_mystery_box_trade(TIER, BUYER, BUYER_WALLET, 'sig-9')

    [pending] = await storage.get_pending_transfers()
    assert pending.item is None and not pending.item_granted
    assert items.get_granted_items(BUYER) == []

    items.generate_random_item = original_generate
    await executor.retry_pending_transfer(pending.id)

    assert len(items.get_granted_items(BUYER)) == 1
    assert await storage.get_pending_transfers() == []
