"""Tests for the in-memory storage adapter and shared query helpers."""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from storage import (
    DuplicateTransactionError, Listing, ListingState, MemoryStorageAdapter, PaginationOptions,
    PendingTransfer, PendingTransferKind, RecordPendingTransfer, RecordTransaction, SortBy,
    StorageError, TradeKind, Transaction, UpdateListing
)

from tests.fakes import BUYER, SELLER, SELLER_WALLET

BASE_TIME = datetime(2024, 6, 1, tzinfo=timezone.utc)


def make_listing(n, price='1', **overrides):
    fields = dict(
        id=f'listing-{n}',
        seller_id=SELLER,
        seller_wallet=SELLER_WALLET,
        title=f'Item {n}',
        item_id=f'item-{n}',
        item_type='weapon',
        price=Decimal(price),
        state=ListingState.ON_MARKET,
        approved=True,
        created_at=BASE_TIME + timedelta(minutes=n),
    )
    fields.update(overrides)
    return Listing(**fields)


def make_transaction(reference, listing_id=None):
    return Transaction(
        kind=TradeKind.LISTING_PURCHASE,
        listing_id=listing_id,
        buyer_id=BUYER,
        seller_id=SELLER,
        amount=Decimal('1'),
        tx_reference=reference,
    )


def ids(page):
    return [listing.id for listing in page.items]


@pytest.mark.asyncio
async def test_cursor_pagination(storage):
    for n in range(5):
        await storage.create_listing(make_listing(n))

    first = await storage.get_active_listings(PaginationOptions(limit=2))
    second = await storage.get_active_listings(PaginationOptions(limit=2, cursor=first.next_cursor))
    last = await storage.get_active_listings(PaginationOptions(limit=2, cursor=second.next_cursor))

    assert ids(first) == ['listing-4', 'listing-3']
    assert first.has_more and first.next_cursor == 'listing-3'
    assert ids(second) == ['listing-2', 'listing-1']
    assert ids(last) == ['listing-0']
    assert not last.has_more
    assert last.next_cursor is None


@pytest.mark.asyncio
async def test_unknown_cursor_starts_over(storage):
    await storage.create_listing(make_listing(1))

    page = await storage.get_active_listings(PaginationOptions(cursor='gone'))

    assert ids(page) == ['listing-1']


@pytest.mark.asyncio
@pytest.mark.parametrize('sort_by, expected', [
    (SortBy.NEWEST, ['listing-4', 'listing-3', 'listing-2', 'listing-1', 'listing-0']),
    (SortBy.PRICE_LOW, ['listing-1', 'listing-4', 'listing-2', 'listing-3', 'listing-0']),
    (SortBy.PRICE_HIGH, ['listing-0', 'listing-3', 'listing-2', 'listing-4', 'listing-1']),
])
async def test_sorting(storage, sort_by, expected):
    for n, price in enumerate(['5', '1', '3', '4', '2']):
        await storage.create_listing(make_listing(n, price))

    page = await storage.get_active_listings(PaginationOptions(sort_by=sort_by))

    assert ids(page) == expected


@pytest.mark.asyncio
async def test_pinned_first_under_any_sort(storage):
    for n, price in enumerate(['5', '1', '3']):
        await storage.create_listing(make_listing(n, price, pinned=(n == 0)))

    page = await storage.get_active_listings(PaginationOptions(sort_by=SortBy.PRICE_LOW))

    assert ids(page) == ['listing-0', 'listing-1', 'listing-2']


@pytest.mark.asyncio
async def test_only_purchasable_listings_are_active(storage):
    await storage.create_listing(make_listing(1))
    await storage.create_listing(make_listing(2, state=ListingState.IN_REVIEW, approved=False))
    await storage.create_listing(make_listing(3, state=ListingState.SOLD))
    await storage.create_listing(
        make_listing(4, expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
    )

    page = await storage.get_active_listings()

    assert ids(page) == ['listing-1']


@pytest.mark.parametrize('requested, clamped', [(500, 100), (0, 1), (-3, 1), (25, 25)])
def test_limit_is_clamped(requested, clamped):
    assert PaginationOptions(limit=requested).limit == clamped


def test_on_market_requires_approval():
    with pytest.raises(ValidationError):
        make_listing(1, approved=False)


@pytest.mark.asyncio
async def test_transition_is_compare_and_swap(storage):
    await storage.create_listing(make_listing(1))

    sold = await storage.transition_listing('listing-1', [ListingState.ON_MARKET], ListingState.SOLD)
    again = await storage.transition_listing('listing-1', [ListingState.ON_MARKET], ListingState.SOLD)
    missing = await storage.transition_listing('nope', [ListingState.ON_MARKET], ListingState.SOLD)

    assert sold.state == ListingState.SOLD
    assert sold.updated_at > sold.created_at
    assert again is None
    assert missing is None


@pytest.mark.asyncio
async def test_update_listing_cannot_change_state(storage):
    await storage.create_listing(make_listing(1))

    with pytest.raises(StorageError):
        await storage.update_listing('listing-1', state=ListingState.SOLD)

    assert await storage.update_listing('nope', pinned=True) is None


@pytest.mark.asyncio
async def test_failure_counter_only_on_market(storage):
    await storage.create_listing(make_listing(1, state=ListingState.SOLD))

    listing, counted = await storage.record_purchase_failure('listing-1', limit=3)
    missing, missing_counted = await storage.record_purchase_failure('nope', limit=3)

    assert not counted
    assert listing.failed_purchase_count == 0
    assert missing is None and not missing_counted


@pytest.mark.asyncio
async def test_duplicate_reference_rejected(storage):
    await storage.record_transaction(make_transaction('ref-1'))

    with pytest.raises(DuplicateTransactionError) as exc_info:
        await storage.record_transaction(make_transaction('ref-1'))

    assert exc_info.value.tx_reference == 'ref-1'


@pytest.mark.asyncio
async def test_atomic_trade_rolls_back_on_conflict(storage):
    """Test no operation is applied when a later one fails."""
    await storage.create_listing(make_listing(1))
    await storage.record_transaction(make_transaction('ref-1'))
    pending = PendingTransfer(kind=PendingTransferKind.TRANSFER, tx_reference='ref-1', buyer_id=BUYER)

    with pytest.raises(DuplicateTransactionError):
        await storage.execute_atomic_trade([
            UpdateListing(
                listing_id='listing-1',
                expected_state=ListingState.ON_MARKET,
                new_state=ListingState.SOLD,
            ),
            RecordTransaction(transaction=make_transaction('ref-1', 'listing-1')),
            RecordPendingTransfer(pending=pending),
        ])

    assert (await storage.get_listing('listing-1')).state == ListingState.ON_MARKET
    assert await storage.get_pending_transfers() == []


@pytest.mark.asyncio
async def test_atomic_trade_rejects_same_reference_twice(storage):
    with pytest.raises(DuplicateTransactionError):
        await storage.execute_atomic_trade([
            RecordTransaction(transaction=make_transaction('ref-2')),
            RecordTransaction(transaction=make_transaction('ref-2')),
        ])

    assert await storage.get_transaction_by_reference('ref-2') is None


@pytest.mark.asyncio
async def test_atomic_trade_missing_listing(storage):
    with pytest.raises(StorageError):
        await storage.execute_atomic_trade([
            UpdateListing(
                listing_id='nope',
                expected_state=ListingState.ON_MARKET,
                new_state=ListingState.SOLD,
            ),
        ])


@pytest.mark.asyncio
async def test_transactions_by_account(storage):
    first = make_transaction('ref-1')
    second = make_transaction('ref-2').model_copy(update={'created_at': first.created_at + timedelta(seconds=1)})
    await storage.record_transaction(first)
    await storage.record_transaction(second)

    assert [tx.tx_reference for tx in await storage.get_transactions_by_account(SELLER)] == [
        'ref-2', 'ref-1'
    ]
    assert len(await storage.get_transactions_by_account(BUYER)) == 2
    assert await storage.get_transactions_by_account('stranger') == []
