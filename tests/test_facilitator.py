"""Tests for x402 payment verification."""
import pytest

from facilitator import PaymentFacilitator, VerificationErrors

from tests.fakes import ASSET, NETWORK, SELLER_WALLET, make_payment_header

PRICE = 1000000


@pytest.mark.asyncio
async def test_verify_settled_payment(facilitator, ledger):
    """Test a correct, settled payment verifies."""
    ledger.settle('sig-1')

    result = await facilitator.verify_payment(make_payment_header(), PRICE, SELLER_WALLET)

    assert result.success
    assert result.tx_reference == 'sig-1'
    assert result.network_id == NETWORK
    assert result.error is None


@pytest.mark.asyncio
async def test_overpayment_and_recipient_case_are_accepted(facilitator, ledger):
    """Test paying more than required to a differently cased address passes."""
    ledger.settle('sig-1')
    header = make_payment_header(amount='1500000', to=SELLER_WALLET.lower())

    result = await facilitator.verify_payment(header, PRICE, SELLER_WALLET)

    assert result.success


@pytest.mark.asyncio
async def test_asset_comparison_ignores_case(facilitator, ledger):
    ledger.settle('sig-1')
    header = make_payment_header(mint=ASSET.upper())

    result = await facilitator.verify_payment(header, PRICE, SELLER_WALLET)

    assert result.success
    assert result.error_code is None


@pytest.mark.asyncio
@pytest.mark.parametrize('header_kwargs, code, message', [
    ({'amount': '1.5'}, VerificationErrors.INVALID_PAYLOAD, "Invalid payload structure"),
    ({'version': 2}, VerificationErrors.UNSUPPORTED_VERSION, "Unsupported version: 2"),
    ({'scheme': 'upto'}, VerificationErrors.UNSUPPORTED_SCHEME, "Unsupported scheme: upto"),
    ({'network': 'solana-mainnet'}, VerificationErrors.NETWORK_MISMATCH,
     "Network mismatch: expected solana-devnet, got solana-mainnet"),
    ({'amount': '999999'}, VerificationErrors.INSUFFICIENT_AMOUNT,
     "Insufficient amount: expected 1000000, got 999999"),
    ({'to': 'SomeoneElse1111111111111111111111'}, VerificationErrors.RECIPIENT_MISMATCH,
     f"Recipient mismatch: expected {SELLER_WALLET}, got SomeoneElse1111111111111111111111"),
    ({'mint': 'FakeMint111111111111111111111111'}, VerificationErrors.ASSET_MISMATCH,
     f"Asset mismatch: expected {ASSET}, got FakeMint111111111111111111111111"),
])
async def test_verification_failures(facilitator, ledger, header_kwargs, code, message):
    """Test each check reports its own error without touching the ledger."""
    ledger.settle('sig-1')

    result = await facilitator.verify_payment(
        make_payment_header(**header_kwargs), PRICE, SELLER_WALLET
    )

    assert not result.success
    assert result.error_code == code
    assert result.error == message
    assert ledger.lookups == []


@pytest.mark.asyncio
async def test_invalid_encoding(facilitator):
    """Test an undecodable header fails with an encoding error."""
    result = await facilitator.verify_payment('not-a-header', PRICE, SELLER_WALLET)

    assert result.error_code == VerificationErrors.INVALID_ENCODING
    assert result.error.startswith("Invalid encoding:")


@pytest.mark.asyncio
async def test_first_failing_check_wins(facilitator):
    """Test checks run in order: version is reported before amount and recipient."""
    header = make_payment_header(version=3, amount='1', to='Nobody11111111111111111111111111')

    result = await facilitator.verify_payment(header, PRICE, SELLER_WALLET)

    assert result.error_code == VerificationErrors.UNSUPPORTED_VERSION


@pytest.mark.asyncio
async def test_expected_network_must_match_configured(facilitator, ledger):
    """Test a caller expecting another network is refused."""
    ledger.settle('sig-1')

    result = await facilitator.verify_payment(
        make_payment_header(), PRICE, SELLER_WALLET, network='solana-mainnet'
    )

    assert result.error_code == VerificationErrors.NETWORK_MISMATCH


@pytest.mark.asyncio
async def test_settlement_not_found_polls_budget(facilitator, ledger, sleep):
    """Test an unsettled payment is polled max_poll_attempts times with no trailing sleep."""
    result = await facilitator.verify_payment(make_payment_header(), PRICE, SELLER_WALLET)

    assert not result.success
    assert result.error_code == VerificationErrors.SETTLEMENT_NOT_FOUND
    assert result.error == "Settlement not found for sig-1 after 3 attempts"
    assert ledger.lookups == ['sig-1'] * 3
    assert sleep.calls == [0.5, 0.5]


@pytest.mark.asyncio
async def test_lookup_errors_count_as_not_settled(facilitator, ledger, sleep):
    """Test transient ledger errors are retried within the budget."""
    ledger.settle('sig-1')
    ledger.failing_lookups = 2

    result = await facilitator.verify_payment(make_payment_header(), PRICE, SELLER_WALLET)

    assert result.success
    assert len(ledger.lookups) == 3
    assert sleep.calls == [0.5, 0.5]


@pytest.mark.asyncio
async def test_errored_transaction_is_not_settled(facilitator, ledger):
    """Test a transfer that failed on the ledger does not verify."""
    ledger.settle('sig-1', errored=True)

    result = await facilitator.verify_payment(make_payment_header(), PRICE, SELLER_WALLET)

    assert result.error_code == VerificationErrors.SETTLEMENT_NOT_FOUND


@pytest.mark.asyncio
async def test_settled_on_first_poll_does_not_sleep(facilitator, ledger, sleep):
    """Test no sleep happens when the first lookup succeeds."""
    ledger.settle('sig-1')

    await facilitator.verify_payment(make_payment_header(), PRICE, SELLER_WALLET)

    assert sleep.calls == []


def test_invalid_configuration(ledger):
    """Test the poll budget and network are validated."""
    with pytest.raises(ValueError):
        PaymentFacilitator(ledger, NETWORK, max_poll_attempts=0)
    with pytest.raises(ValueError):
        PaymentFacilitator(ledger, 'bitcoin')


def test_default_asset_is_usdc_for_network(ledger):
    """Test the asset defaults to the network's USDC mint."""
    assert PaymentFacilitator(ledger, NETWORK).asset == ASSET
