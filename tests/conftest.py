"""Shared fixtures for the marketplace tests."""
import random

import pytest
import pytest_asyncio

from currency import X402CurrencyAdapter
from facilitator import PaymentFacilitator
from items import InMemoryItemAdapter
from listings import ListingManager
from marketplace import Marketplace
from storage import MemoryStorageAdapter

from tests.fakes import (
    FakeClock, FakeLedgerClient, FakeSleep, NETWORK, PLATFORM_WALLET, SELLER, put_on_market
)


@pytest.fixture
def ledger():
    return FakeLedgerClient()


@pytest.fixture
def sleep():
    return FakeSleep()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def facilitator(ledger, sleep):
    return PaymentFacilitator(
        ledger, NETWORK, max_poll_attempts=3, poll_interval_ms=500, sleep=sleep
    )


@pytest.fixture
def x402_currency(facilitator, ledger, clock):
    return X402CurrencyAdapter(facilitator, ledger, cache_ttl_seconds=30, clock=clock)


@pytest.fixture
def storage():
    return MemoryStorageAdapter()


@pytest.fixture
def items():
    item_adapter = InMemoryItemAdapter(rng=random.Random(42))
    for n in range(1, 6):
        item_adapter.add_item(f'sword-{n}', SELLER, name=f'Sword {n}')
    return item_adapter


@pytest.fixture
def pulled_listings():
    return []


@pytest.fixture
def listing_manager(storage, items, pulled_listings):
    return ListingManager(storage, items, failed_purchase_limit=3,
                          on_listing_pulled=pulled_listings.append)


@pytest.fixture
def marketplace(storage, items, x402_currency, pulled_listings):
    return Marketplace.build(
        storage, items, x402_currency,
        platform_wallet=PLATFORM_WALLET,
        on_listing_pulled=pulled_listings.append,
    )


@pytest_asyncio.fixture
async def on_market(listing_manager):
    """An approved listing for sword-1 priced at 2.5 USDC."""
    return await put_on_market(listing_manager)
