"""Decimal helpers for currency arithmetic."""

from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def money(value) -> Decimal:
    """Round to cents, halves away from zero."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def extend(quantity, rate) -> Decimal:
    """quantity × rate rounded to cents."""
    return money(to_decimal(quantity) * to_decimal(rate))
