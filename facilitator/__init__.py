"""Payment facilitator for the x402 protocol.

Verifies an X-Payment header against the amount, recipient and asset a
resource was priced at, then confirms settlement by polling the ledger.

Checks run in a fixed order and the first failure is returned:
1. header decodes
2. payload structure
3. protocol version
4. scheme
5. network
6. amount (smallest-unit integers, overpayment accepted)
7. recipient (case-insensitive)
8. asset
9. settlement on the ledger, within max_poll_attempts x poll_interval_ms

The facilitator persists nothing and never raises for a failed verification;
it returns a VerificationResult with ``error`` and ``error_code`` set.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, Union

from ledger import LedgerClient
from protocol import (
    X402_VERSION, SUPPORTED_SCHEME, USDC_MINTS, DecodeError, VerificationResult,
    decode_payment_header, is_valid_payment_payload
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_POLL_ATTEMPTS = 10
DEFAULT_POLL_INTERVAL_MS = 2000


class VerificationErrors:
    """error_code values on a failed VerificationResult"""
    INVALID_ENCODING = 'INVALID_ENCODING'
    INVALID_PAYLOAD = 'INVALID_PAYLOAD'
    UNSUPPORTED_VERSION = 'UNSUPPORTED_VERSION'
    UNSUPPORTED_SCHEME = 'UNSUPPORTED_SCHEME'
    NETWORK_MISMATCH = 'NETWORK_MISMATCH'
    INSUFFICIENT_AMOUNT = 'INSUFFICIENT_AMOUNT'
    RECIPIENT_MISMATCH = 'RECIPIENT_MISMATCH'
    ASSET_MISMATCH = 'ASSET_MISMATCH'
    SETTLEMENT_NOT_FOUND = 'SETTLEMENT_NOT_FOUND'

    # Client sent something unusable; the listing is not at fault
    PROTOCOL = frozenset({
        INVALID_ENCODING, INVALID_PAYLOAD, UNSUPPORTED_VERSION,
        UNSUPPORTED_SCHEME, NETWORK_MISMATCH,
    })
    PAYMENT_MISMATCH = frozenset({INSUFFICIENT_AMOUNT, RECIPIENT_MISMATCH, ASSET_MISMATCH})
    SETTLEMENT = frozenset({SETTLEMENT_NOT_FOUND})


class PaymentFacilitator:
    """Verifies x402 payments against a single ledger network."""

    def __init__(
        self,
        ledger: LedgerClient,
        network: str,
        asset: Optional[str] = None,
        max_poll_attempts: int = DEFAULT_MAX_POLL_ATTEMPTS,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        """Initialize facilitator.

        Args:
            ledger: Ledger used to confirm settlement
            network: Network payments must be made on (e.g. solana-devnet)
            asset: Token identifier payments must use; defaults to USDC on ``network``
            max_poll_attempts: Ledger lookups before giving up
            poll_interval_ms: Sleep between lookups
            sleep: Awaitable sleep, replaceable in tests

        Raises:
            ValueError: If the network has no known asset or the poll budget is invalid
        """
        if max_poll_attempts < 1:
            raise ValueError("max_poll_attempts must be at least 1")
        if poll_interval_ms < 0:
            raise ValueError("poll_interval_ms must not be negative")

        self.ledger = ledger
        self.network = network
        self.asset = asset or USDC_MINTS.get(network)
        if not self.asset:
            raise ValueError(f"No asset configured for network {network}")
        self.max_poll_attempts = max_poll_attempts
        self.poll_interval_ms = poll_interval_ms
        self._sleep = sleep

    def _fail(self, code: str, message: str, tx_reference: str = '') -> VerificationResult:
        logger.warning(f"Payment verification failed ({code}): {message}")
        return VerificationResult(
            success=False,
            tx_reference=tx_reference,
            network_id=self.network,
            error=message,
            error_code=code,
        )

    async def verify_payment(
        self,
        payment_header: Optional[str],
        expected_amount: Union[int, str],
        expected_recipient: str,
        network: Optional[str] = None
    ) -> VerificationResult:
        """Verify a payment header and confirm its settlement.

        Args:
            payment_header: Raw X-Payment header value
            expected_amount: Required amount in smallest units
            expected_recipient: Address the transfer must pay
            network: Network the caller expects; must match the configured one

        Returns:
            VerificationResult; ``tx_reference`` is the ledger signature on success
        """
        decoded = decode_payment_header(payment_header)
        if isinstance(decoded, DecodeError):
            return self._fail(
                VerificationErrors.INVALID_ENCODING,
                f"Invalid encoding: {decoded.reason}"
            )

        transfer = decoded.payload
        signature = transfer.signature

        if not is_valid_payment_payload(decoded):
            return self._fail(
                VerificationErrors.INVALID_PAYLOAD,
                "Invalid payload structure",
                signature
            )

        if decoded.x402_version != X402_VERSION:
            return self._fail(
                VerificationErrors.UNSUPPORTED_VERSION,
                f"Unsupported version: {decoded.x402_version}",
                signature
            )

        if decoded.scheme != SUPPORTED_SCHEME:
            return self._fail(
                VerificationErrors.UNSUPPORTED_SCHEME,
                f"Unsupported scheme: {decoded.scheme}",
                signature
            )

        if decoded.network != self.network or (network and network != self.network):
            return self._fail(
                VerificationErrors.NETWORK_MISMATCH,
                f"Network mismatch: expected {self.network}, got {decoded.network}",
                signature
            )

        required = int(expected_amount)
        paid = int(transfer.amount)
        if paid < required:
            return self._fail(
                VerificationErrors.INSUFFICIENT_AMOUNT,
                f"Insufficient amount: expected {required}, got {paid}",
                signature
            )

        if transfer.to.lower() != expected_recipient.lower():
            return self._fail(
                VerificationErrors.RECIPIENT_MISMATCH,
                f"Recipient mismatch: expected {expected_recipient}, got {transfer.to}",
                signature
            )

        if transfer.mint.lower() != self.asset.lower():
            return self._fail(
                VerificationErrors.ASSET_MISMATCH,
                f"Asset mismatch: expected {self.asset}, got {transfer.mint}",
                signature
            )

        if not await self.wait_for_settlement(signature):
            return self._fail(
                VerificationErrors.SETTLEMENT_NOT_FOUND,
                f"Settlement not found for {signature} after "
                f"{self.max_poll_attempts} attempts",
                signature
            )

        logger.info(f"Payment {signature} verified on {self.network} ({paid} units)")
        return VerificationResult(
            success=True,
            tx_reference=signature,
            network_id=self.network,
        )

    async def wait_for_settlement(self, signature: str) -> bool:
        """Poll the ledger until the transfer is settled without error.

        Lookup failures count as "not settled yet". There is no sleep after
        the final attempt.
        """
        for attempt in range(1, self.max_poll_attempts + 1):
            try:
                tx = await self.ledger.get_transaction_by_signature(signature)
                if tx is not None and tx.settled and not tx.errored:
                    return True
                logger.debug(
                    f"Settlement poll {attempt}/{self.max_poll_attempts} for {signature}: "
                    f"{'errored' if tx is not None and tx.errored else 'not settled'}"
                )
            except Exception as e:
                logger.debug(
                    f"Settlement poll {attempt}/{self.max_poll_attempts} for {signature} "
                    f"failed: {e}"
                )

            if attempt < self.max_poll_attempts:
                await self._sleep(self.poll_interval_ms / 1000)

        return False


# Export public interface
__all__ = ['PaymentFacilitator', 'VerificationErrors']
