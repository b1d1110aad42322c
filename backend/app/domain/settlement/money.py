"""
Money helpers.

All settlement arithmetic is Decimal, quantized to cents (ROUND_HALF_UP).
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Any) -> Decimal:
    """
    Coerce to a cent-quantized Decimal (floats go through str to avoid binary noise).

    Raises:
        ValueError: not a number, or NaN / Infinity
    """
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value)
        if not amount.is_finite():
            raise ValueError(f"Not a money amount: {value!r}")
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError):
        raise ValueError(f"Not a money amount: {value!r}")


def to_rate(value: Any) -> Decimal:
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)
