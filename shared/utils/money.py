"""
shared/utils/money.py
Fixed-point money helpers. Amounts are Decimal with exactly two places;
binary floats never reach arithmetic or comparisons.
"""

from decimal import Decimal, InvalidOperation
from typing import Union

from shared.errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Union[Decimal, int, str], field: str = "amount") -> Decimal:
    """Coerce to a 2dp Decimal. Sub-cent precision raises ValidationError."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a decimal number", {"field": field})
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number", {"field": field})
    if amount != amount.quantize(CENT):
        raise ValidationError(f"{field} must have at most 2 decimal places", {"field": field})
    return amount.quantize(CENT)


def positive_money(value: Union[Decimal, int, str], field: str = "amount") -> Decimal:
    amount = to_money(value, field)
    if amount <= ZERO:
        raise ValidationError(f"{field} must be greater than zero", {"field": field})
    return amount


def format_money(value: Decimal) -> str:
    return f"{value.quantize(CENT):.2f}"
