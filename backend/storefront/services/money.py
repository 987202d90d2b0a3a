# Overview: Decimal helpers for cent amounts and percentages.

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_EVEN, InvalidOperation
from typing import Any


HUNDRED = Decimal("100")
PERCENT_QUANT = Decimal("0.01")


def round_cents(value: Decimal) -> int:
    """Round a Decimal amount of cents to a whole cent, half-to-even."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_EVEN))


def to_percent(value: Any) -> Decimal:
    """
    Coerce a stored or client-supplied percentage to Decimal with two places.

    Raises ValueError for anything that is not a finite number in [0, 100].
    """
    if isinstance(value, bool) or value is None:
        raise ValueError("percentage must be a number")
    try:
        pct = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"percentage must be a number, got {value!r}")
    if not pct.is_finite():
        raise ValueError("percentage must be finite")
    if pct < 0 or pct > HUNDRED:
        raise ValueError(f"percentage must be between 0 and 100, got {pct}")
    return pct.quantize(PERCENT_QUANT, rounding=ROUND_HALF_EVEN)


def format_cents(cents: int) -> str:
    """12345 -> '123.45' (sign kept)."""
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(cents), 100)
    return f"{sign}{whole}.{frac:02d}"
