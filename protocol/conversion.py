"""USDC amount conversion helpers.

Amounts cross the wire and the ledger as integers in the smallest unit
(1 USDC = 1,000,000). Display values are Decimal, never float.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

USDC_DECIMALS = 6
MIN_USDC_AMOUNT = Decimal('0.01')
MAX_USDC_AMOUNT = Decimal('1000000')

Amount = Union[Decimal, int, float, str]


def _to_decimal(amount: Amount) -> Decimal:
    try:
        return Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid USDC amount: {amount!r}") from e


def usdc_to_smallest_unit(amount: Amount) -> int:
    """Convert a USDC amount to an integer number of smallest units.

    Raises:
        ValueError: If the amount is negative, not finite, or not a number
    """
    value = _to_decimal(amount)
    if not value.is_finite():
        raise ValueError(f"Invalid USDC amount: {amount!r} is not finite")
    if value < 0:
        raise ValueError(f"Invalid USDC amount: {amount!r} is negative")
    scaled = value.scaleb(USDC_DECIMALS)
    return int(scaled.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def smallest_unit_to_usdc(amount: Union[int, str]) -> Decimal:
    """Convert smallest units back to a USDC Decimal."""
    return Decimal(int(amount)).scaleb(-USDC_DECIMALS)


def format_usdc(amount: Amount) -> str:
    return f"{_to_decimal(amount).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)} USDC"


def is_valid_usdc_amount(amount: Amount) -> bool:
    """Check an amount is a finite price between 0.01 and 1,000,000 USDC."""
    try:
        value = _to_decimal(amount)
    except ValueError:
        return False
    if not value.is_finite():
        return False
    return MIN_USDC_AMOUNT <= value <= MAX_USDC_AMOUNT
