"""
MONEY HANDLING - MINOR UNITS & DECIMAL CONVERSION

This module provides:
1. Integer minor-unit storage (kobo/cents) for every ledger amount
2. Decimal conversion at the gateway boundary only
3. Value validation (no zero or negative amounts)
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Iterable, Union
import logging

from settlement.errors import ValidationError

logger = logging.getLogger(__name__)

MINOR_UNITS_PER_MAJOR = 100
QUANTIZE_PATTERN = Decimal('0.01')


def to_decimal(value: Union[float, int, str, Decimal]) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Floats go through str() to avoid binary precision artifacts.
    """
    if isinstance(value, bool):
        raise ValidationError(f"Cannot convert {type(value)} to Decimal")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value)
        except InvalidOperation:
            raise ValidationError(f"Not a number: {value!r}")
    raise ValidationError(f"Cannot convert {type(value)} to Decimal")


def to_minor_units(value: Union[float, int, str, Decimal]) -> int:
    """
    Convert a major-unit amount (e.g. 150.25 NGN) to integer minor units (15025).
    Rounds half-up at the second decimal place.
    """
    major = to_decimal(value).quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)
    return int(major * MINOR_UNITS_PER_MAJOR)


def from_minor_units(amount: int) -> Decimal:
    """Convert integer minor units back to a 2-place Decimal in major units."""
    return (Decimal(amount) / MINOR_UNITS_PER_MAJOR).quantize(QUANTIZE_PATTERN)


def validate_positive(value: Union[int, Decimal], field_name: str) -> None:
    """
    Validate that an amount is strictly positive (> 0).
    Raises ValidationError if validation fails.
    """
    if to_decimal(value) <= Decimal('0'):
        raise ValidationError(
            f"Amount '{field_name}' must be positive: {value}",
            field=field_name
        )


def sum_minor_units(amounts: Iterable[int]) -> int:
    """Sum minor-unit amounts; integers keep the total exact."""
    total = 0
    for amount in amounts:
        total += int(amount)
    return total


def format_amount(amount: int, currency: str) -> str:
    """Human-readable amount for notifications, e.g. 'NGN 10,000.00'."""
    return f"{currency} {from_minor_units(amount):,.2f}"
