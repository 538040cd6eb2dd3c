"""Numeric and money helper utilities."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional, Union

__all__ = ["cents_to_euros", "euros_to_cents", "safe_decimal"]

Number = Union[Decimal, int, float, str]

_CENT = Decimal("0.01")


def safe_decimal(value: Any) -> Optional[Decimal]:
    """Best-effort conversion to Decimal returning None on failure."""

    if value is None or isinstance(value, bool):
        return None
    try:
        # str() keeps floats like 29.9 from dragging binary noise along.
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def euros_to_cents(euros: Number) -> int:
    """Convert a euro amount to integer cents, rounding half up."""

    amount = safe_decimal(euros)
    if amount is None:
        raise ValueError(f"Invalid euro amount: {euros!r}")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cents_to_euros(cents: int) -> Decimal:
    """Convert integer cents back to a two-decimal euro amount."""

    return (Decimal(int(cents)) / 100).quantize(_CENT)
