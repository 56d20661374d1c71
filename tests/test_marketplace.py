"""End-to-end purchase flows through the Marketplace."""
from decimal import Decimal

import pytest
import pytest_asyncio

from config import DEFAULTS, validate_settings
from currency import InsufficientBalanceError, MockCurrencyAdapter, TransactionType
from facilitator import VerificationErrors
from listings import ListingError, ListingNotAvailableError
from marketplace import Marketplace, PaymentVerificationError, create_marketplace
from mystery_box import TierNotFoundError
from ratelimit import MemoryCounterStore, RateLimit, RateLimitExceededError, RateLimiter
from storage import (
    DuplicateTransactionError, ListingAlreadySoldError, ListingState, MysteryBoxTier, TradeKind
)
from trades import ReconciliationRequiredError

from tests.fakes import (
    BUYER, BUYER_WALLET, PLATFORM_WALLET, SELLER, SELLER_WALLET, FakeClock, FlakyItemAdapter,
    make_payment_header, put_on_market
)

PRICE_UNITS = '2500000'


@pytest.fixture
def mock_marketplace(storage, items):
    return Marketplace.build(
        storage, items, MockCurrencyAdapter(clock=FakeClock(1700000000)),
        platform_wallet=PLATFORM_WALLET,
    )


@pytest_asyncio.fixture
async def starter_tier(marketplace):
    return await marketplace.mystery_boxes.add_tier(MysteryBoxTier(
        id='starter', name='Starter', price_usdc=Decimal('1'), rarity_weights={'common': 1},
    ))


class TestListingPurchase:
    @pytest.mark.asyncio
    async def test_challenge_without_payment(self, marketplace, on_market):
        """Test a request without proof gets a 402 challenge for the seller's wallet."""
        outcome = await marketplace.purchase_listing(on_market.id, BUYER, BUYER_WALLET)

        assert outcome.status == 402
        accepted = outcome.payment_required.to_wire()['accepts'][0]
        assert accepted['payTo'] == SELLER_WALLET
        assert accepted['maxAmountRequired'] == PRICE_UNITS
        assert accepted['resource'] == f'listing:{on_market.id}'
        assert outcome.transaction is None

    @pytest.mark.asyncio
    async def test_paid_purchase(self, marketplace, ledger, items, on_market):
        """Test a settled payment sells the listing and records both sides."""
        ledger.settle('sig-1')

        outcome = await marketplace.purchase_listing(
            on_market.id, BUYER, BUYER_WALLET, make_payment_header(amount=PRICE_UNITS)
        )

        assert outcome.status == 200
        assert outcome.transaction.tx_reference == 'sig-1'
        assert outcome.item['id'] == 'sword-1'
        assert items.items['sword-1']['owner'] == BUYER
        assert (await marketplace.listings.get_listing(on_market.id)).state == ListingState.SOLD

        [bought] = await marketplace.currency.get_transactions(BUYER)
        [sold] = await marketplace.currency.get_transactions(SELLER)
        assert bought.type == TransactionType.LISTING_PURCHASE
        assert sold.type == TransactionType.LISTING_SALE
        assert bought.amount == sold.amount == Decimal('2.5')
        assert bought.item_ids == ['sword-1']

    @pytest.mark.asyncio
    async def test_underpayments_pull_listing(self, marketplace, ledger, items, on_market,
                                              pulled_listings):
        """Test repeated payment mismatches pull the listing."""
        ledger.settle('sig-1')
        header = make_payment_header(amount='2000000')

        counts = []
        for _ in range(3):
            with pytest.raises(PaymentVerificationError) as exc_info:
                await marketplace.purchase_listing(on_market.id, BUYER, BUYER_WALLET, header)
            assert exc_info.value.status_code == 402
            assert exc_info.value.details['reason'] == VerificationErrors.INSUFFICIENT_AMOUNT
            counts.append(exc_info.value.details['failed_purchase_count'])

        assert counts == [1, 2, 3]
        assert exc_info.value.details['listing_state'] == 'pulled'
        assert str(exc_info.value) == "Insufficient amount: expected 2500000, got 2000000"
        assert [listing.id for listing in pulled_listings] == [on_market.id]
        assert 'sword-1' not in items.locked

        with pytest.raises(ListingNotAvailableError):
            await marketplace.purchase_listing(
                on_market.id, BUYER, BUYER_WALLET, make_payment_header(amount=PRICE_UNITS)
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize('header, reason', [
        ('garbage', VerificationErrors.INVALID_ENCODING),
        (make_payment_header(network='solana-mainnet'), VerificationErrors.NETWORK_MISMATCH),
        (make_payment_header(version=2), VerificationErrors.UNSUPPORTED_VERSION),
    ])
    async def test_protocol_errors_do_not_count(self, marketplace, on_market, header, reason):
        """Test malformed proofs are refused without penalizing the listing."""
        with pytest.raises(PaymentVerificationError) as exc_info:
            await marketplace.purchase_listing(on_market.id, BUYER, BUYER_WALLET, header)

        assert exc_info.value.details['reason'] == reason
        listing = await marketplace.listings.get_listing(on_market.id)
        assert listing.failed_purchase_count == 0

    @pytest.mark.asyncio
    async def test_missing_settlement_counts(self, marketplace, ledger, on_market):
        with pytest.raises(PaymentVerificationError) as exc_info:
            await marketplace.purchase_listing(
                on_market.id, BUYER, BUYER_WALLET, make_payment_header(amount=PRICE_UNITS)
            )

        assert exc_info.value.details['reason'] == VerificationErrors.SETTLEMENT_NOT_FOUND
        assert exc_info.value.details['failed_purchase_count'] == 1
        assert len(ledger.lookups) == 3

    @pytest.mark.asyncio
    async def test_payment_replay_is_refused(self, marketplace, ledger, listing_manager, on_market):
        """Test one ledger payment cannot buy two listings."""
        ledger.settle('sig-1')
        header = make_payment_header(amount=PRICE_UNITS)
        await marketplace.purchase_listing(on_market.id, BUYER, BUYER_WALLET, header)
        second = await put_on_market(listing_manager, 'sword-2')

        with pytest.raises(DuplicateTransactionError):
            await marketplace.purchase_listing(second.id, BUYER, BUYER_WALLET, header)

        assert (await marketplace.listings.get_listing(second.id)).state == ListingState.ON_MARKET

    @pytest.mark.asyncio
    async def test_seller_cannot_buy_own_listing(self, marketplace, on_market):
        with pytest.raises(ListingError):
            await marketplace.purchase_listing(on_market.id, SELLER, SELLER_WALLET)

    @pytest.mark.asyncio
    async def test_reconciliation_still_records_payment(self, storage, x402_currency, ledger):
        """Test a paid purchase whose item move fails keeps the payment on record."""
        items = FlakyItemAdapter(fail_transfers=1)
        items.add_item('sword-1', SELLER)
        marketplace = Marketplace.build(storage, items, x402_currency, platform_wallet=PLATFORM_WALLET)
        listing = await put_on_market(marketplace.listings)
        ledger.settle('sig-1')

        with pytest.raises(ReconciliationRequiredError):
            await marketplace.purchase_listing(
                listing.id, BUYER, BUYER_WALLET, make_payment_header(amount=PRICE_UNITS)
            )

        [bought] = await marketplace.currency.get_transactions(BUYER)
        assert bought.tx_reference == 'sig-1'
        assert len(await marketplace.trades.get_pending_transfers()) == 1


class TestMysteryBoxPurchase:
    @pytest.mark.asyncio
    async def test_challenge_pays_platform(self, marketplace, starter_tier):
        outcome = await marketplace.purchase_mystery_box('starter', BUYER, BUYER_WALLET)

        assert outcome.status == 402
        accepted = outcome.payment_required.to_wire()['accepts'][0]
        assert accepted['payTo'] == PLATFORM_WALLET
        assert accepted['maxAmountRequired'] == '1000000'
        assert accepted['resource'] == 'mystery-box:starter'

    @pytest.mark.asyncio
    async def test_paid_mystery_box(self, marketplace, ledger, items, starter_tier):
        ledger.settle('sig-box')
        header = make_payment_header(signature='sig-box', to=PLATFORM_WALLET)

        outcome = await marketplace.purchase_mystery_box('starter', BUYER, BUYER_WALLET, header)

        assert outcome.status == 200
        assert outcome.transaction.kind == TradeKind.MYSTERY_BOX_PURCHASE
        assert outcome.mystery_box_purchase.tx_reference == 'sig-box'
        assert outcome.item['rarity'] == 'common'
        assert items.get_granted_items(BUYER) == [outcome.item]

        [recorded] = await marketplace.currency.get_transactions(BUYER)
        assert recorded.type == TransactionType.MYSTERY_BOX_PURCHASE
        assert recorded.item_ids == [outcome.item['id']]

    @pytest.mark.asyncio
    async def test_payment_to_seller_wallet_is_refused(self, marketplace, ledger, starter_tier):
        ledger.settle('sig-box')
        header = make_payment_header(signature='sig-box', to=SELLER_WALLET)

        with pytest.raises(PaymentVerificationError) as exc_info:
            await marketplace.purchase_mystery_box('starter', BUYER, BUYER_WALLET, header)

        assert exc_info.value.details == {'reason': VerificationErrors.RECIPIENT_MISMATCH}

    @pytest.mark.asyncio
    async def test_unknown_tier(self, marketplace):
        with pytest.raises(TierNotFoundError):
            await marketplace.purchase_mystery_box('gold', BUYER, BUYER_WALLET)


class TestInstantSettlement:
    @pytest.mark.asyncio
    async def test_purchase_without_header(self, mock_marketplace, on_market):
        """Test simulated payments settle on the first request."""
        outcome = await mock_marketplace.purchase_listing(on_market.id, BUYER, BUYER_WALLET)

        assert outcome.status == 200
        assert outcome.transaction.tx_reference.startswith('MOCK_1700000000000_')
        assert outcome.transaction.network_id == 'mock'
        balance = await mock_marketplace.currency.get_balance(BUYER)
        assert balance.amount == Decimal('997.5')

    @pytest.mark.asyncio
    async def test_lost_listing_is_refunded(self, mock_marketplace, on_market, monkeypatch):
        """Test the buyer gets the money back when the trade loses the listing."""
        async def sold_elsewhere(listing, *args, **kwargs):
            raise ListingAlreadySoldError(listing.id)

        monkeypatch.setattr(mock_marketplace.trades, 'execute_listing_trade', sold_elsewhere)

        with pytest.raises(ListingAlreadySoldError):
            await mock_marketplace.purchase_listing(on_market.id, BUYER, BUYER_WALLET)

        balance = await mock_marketplace.currency.get_balance(BUYER)
        assert balance.amount == Decimal('1000')
        [refund] = await mock_marketplace.currency.get_transactions(BUYER)
        assert refund.type == TransactionType.REFUND
        assert refund.amount == Decimal('2.5')

    @pytest.mark.asyncio
    async def test_insufficient_mock_balance(self, storage, items, on_market):
        marketplace = Marketplace.build(storage, items, MockCurrencyAdapter(default_balance='1'))

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await marketplace.purchase_listing(on_market.id, BUYER, BUYER_WALLET)

        assert exc_info.value.status_code == 402
        assert (await marketplace.listings.get_listing(on_market.id)).state == ListingState.ON_MARKET


class TestRateLimits:
    @pytest.mark.asyncio
    async def test_purchase_attempts_are_limited(self, storage, items, x402_currency, on_market):
        limiter = RateLimiter(MemoryCounterStore(), {'purchase': RateLimit(max_requests=2, window_seconds=60)})
        marketplace = Marketplace.build(storage, items, x402_currency, rate_limiter=limiter)

        for _ in range(2):
            assert (await marketplace.purchase_listing(on_market.id, BUYER, BUYER_WALLET)).status == 402

        with pytest.raises(RateLimitExceededError):
            await marketplace.purchase_listing(on_market.id, BUYER, BUYER_WALLET)

        assert (await marketplace.purchase_listing(on_market.id, 'buyer2', BUYER_WALLET)).status == 402

    @pytest.mark.asyncio
    async def test_listing_creation_is_limited(self, storage, items, x402_currency):
        limiter = RateLimiter(MemoryCounterStore(), {'listing': RateLimit(max_requests=1, window_seconds=3600)})
        marketplace = Marketplace.build(storage, items, x402_currency, rate_limiter=limiter)
        params = dict(seller_wallet=SELLER_WALLET, item_type='weapon', title='Sword', price='1')

        await marketplace.create_listing(SELLER, item_id='sword-1', **params)

        with pytest.raises(RateLimitExceededError):
            await marketplace.create_listing(SELLER, item_id='sword-2', **params)


@pytest.mark.asyncio
async def test_create_marketplace_from_settings():
    settings = validate_settings({**DEFAULTS, 'failed_purchase_limit': '5'})

    marketplace = await create_marketplace(settings)

    assert isinstance(marketplace.currency, MockCurrencyAdapter)
    assert marketplace.listings.failed_purchase_limit == 5
    assert marketplace.platform_wallet == 'platform'
    assert marketplace.rate_limiter.limits['purchase'].max_requests == 10
