"""x402 protocol codec.

This module provides functionality for:
- Encoding and decoding the X-Payment header
- Structural validation of decoded payment payloads
- Building payment requirements and 402 challenge envelopes
- Extracting the payment header from request headers

Decoding never raises for malformed input; it returns a DecodeError.
"""
import base64
import binascii
import json
import logging
from decimal import Decimal
from typing import Any, Mapping, Optional, Union

from pydantic import ValidationError

from .conversion import (
    USDC_DECIMALS, usdc_to_smallest_unit, smallest_unit_to_usdc, format_usdc,
    is_valid_usdc_amount
)
from .models import (
    PaymentRequirements, PaymentRequiredResponse, PaymentPayload, TransferPayload,
    DecodeError, VerificationResult
)

logger = logging.getLogger(__name__)

X402_VERSION = 1
SUPPORTED_SCHEME = 'exact'
PAYMENT_HEADER = 'X-Payment'

USDC_MINTS = {
    'solana-devnet': '4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU',
    'solana-mainnet': 'EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v',
}

TRANSFER_FIELDS = ('signature', 'from', 'to', 'amount', 'mint')


def encode_payment_header(payload: PaymentPayload) -> str:
    """Encode a payment payload as a base64 JSON header value."""
    wire = json.dumps(payload.model_dump(by_alias=True), separators=(',', ':'))
    return base64.b64encode(wire.encode('utf-8')).decode('ascii')


def decode_payment_header(header: Optional[str]) -> Union[PaymentPayload, DecodeError]:
    """Decode an X-Payment header value.

    Args:
        header: Base64 encoded JSON payload

    Returns:
        The decoded PaymentPayload, or a DecodeError describing the rejection
    """
    if not header or not isinstance(header, str):
        return DecodeError(reason="Payment header is empty")

    try:
        raw = base64.b64decode(header.strip(), validate=True)
        data = json.loads(raw.decode('utf-8'))
    except (binascii.Error, ValueError) as e:
        return DecodeError(reason=f"Payment header is not valid base64 JSON: {e}")

    if not isinstance(data, dict):
        return DecodeError(reason="Payment header must decode to an object")

    version = data.get('x402Version')
    if version is None:
        return DecodeError(reason="Missing x402Version")
    if not isinstance(version, int) or isinstance(version, bool):
        return DecodeError(reason=f"x402Version must be an integer, got {version!r}")

    if not isinstance(data.get('scheme'), str) or not data['scheme']:
        return DecodeError(reason="Missing payment scheme")

    transfer = data.get('payload')
    if not isinstance(transfer, dict):
        return DecodeError(reason="Missing transfer payload")

    signature = transfer.get('signature')
    if not isinstance(signature, str) or not signature.strip():
        return DecodeError(reason="Missing transfer signature")

    try:
        return PaymentPayload.model_validate(data)
    except ValidationError as e:
        return DecodeError(reason=f"Malformed payment payload: {e.error_count()} invalid field(s)")


def is_valid_payment_payload(payload: Any) -> bool:
    """Check that every field of a payment payload is present and well formed.

    Accepts a PaymentPayload or its wire-form mapping.
    """
    if isinstance(payload, PaymentPayload):
        data = payload.model_dump(by_alias=True)
    elif isinstance(payload, Mapping):
        data = payload
    else:
        return False

    version = data.get('x402Version')
    if not isinstance(version, int) or isinstance(version, bool):
        return False
    for key in ('scheme', 'network'):
        if not isinstance(data.get(key), str) or not data[key].strip():
            return False

    transfer = data.get('payload')
    if not isinstance(transfer, Mapping):
        return False
    for key in TRANSFER_FIELDS:
        value = transfer.get(key)
        if not isinstance(value, str) or not value.strip():
            return False

    # Smallest-unit integer, no sign, no decimal point
    amount = transfer['amount']
    return amount.isascii() and amount.isdigit()


def create_payment_requirements(
    amount_usdc: Union[Decimal, int, float, str],
    pay_to: str,
    resource: str,
    network: str,
    asset: str,
    description: str = '',
    mime_type: str = 'application/json',
    timeout_seconds: int = 300
) -> PaymentRequirements:
    """Build the requirements a client must satisfy to pay for ``resource``.

    Raises:
        ValueError: If the amount cannot be converted to smallest units
    """
    return PaymentRequirements(
        scheme=SUPPORTED_SCHEME,
        network=network,
        max_amount_required=str(usdc_to_smallest_unit(amount_usdc)),
        resource=resource,
        description=description,
        mime_type=mime_type,
        pay_to=pay_to,
        max_timeout_seconds=timeout_seconds,
        asset=asset,
    )


def create_payment_required_response(
    requirements: PaymentRequirements,
    error: Optional[str] = None
) -> PaymentRequiredResponse:
    return PaymentRequiredResponse(
        x402_version=X402_VERSION,
        accepts=[requirements],
        error=error,
    )


def extract_payment_header(headers: Optional[Mapping[str, str]]) -> Optional[str]:
    """Find the payment header regardless of case."""
    if not headers:
        return None
    wanted = PAYMENT_HEADER.lower()
    for key, value in headers.items():
        if key.lower() == wanted and value:
            return value
    return None


# Export public interface
__all__ = [
    'X402_VERSION',
    'SUPPORTED_SCHEME',
    'PAYMENT_HEADER',
    'USDC_MINTS',
    'USDC_DECIMALS',
    'PaymentRequirements',
    'PaymentRequiredResponse',
    'PaymentPayload',
    'TransferPayload',
    'DecodeError',
    'VerificationResult',
    'encode_payment_header',
    'decode_payment_header',
    'is_valid_payment_payload',
    'create_payment_requirements',
    'create_payment_required_response',
    'extract_payment_header',
    'usdc_to_smallest_unit',
    'smallest_unit_to_usdc',
    'format_usdc',
    'is_valid_usdc_amount',
]
