"""
Money helpers.

Amounts are persisted as integer minor units (pence) and handled in Python
as Decimal with two fractional digits. Nothing on the authorize, capture
and refund path goes through float.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Union

CENT = Decimal('0.01')

Amount = Union[Decimal, int, str]


def quantize(amount: Amount) -> Decimal:
    """Round to two fractional digits, half away from zero."""
    return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor(amount: Amount) -> int:
    """Decimal('12.50') -> 1250"""
    return int(quantize(amount) * 100)


def from_minor(minor: int) -> Decimal:
    """1250 -> Decimal('12.50')"""
    return (Decimal(int(minor)) / 100).quantize(CENT)


def percent_of(amount: Amount, rate: Decimal) -> Decimal:
    """Apply a rate and round the result to the cent."""
    return quantize(Decimal(str(amount)) * rate)


def format_amount(amount: Amount) -> str:
    return f"{quantize(amount):.2f}"
