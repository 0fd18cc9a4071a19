"""Money conversion helpers.

Storage / API unit: major units as ``Decimal`` (e.g. ``Decimal("27.00")``).
Gateway unit: integer minor units (cents). 100 minor = 1 major.

The payment operations module is the only caller that crosses between the
two; everything at rest stays in major units.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Union

MINOR_PER_MAJOR: int = 100
CENT = Decimal("0.01")

Amount = Union[Decimal, int, str, float]


def quantize(amount: Amount) -> Decimal:
    """Round to whole cents, half-up."""
    return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Amount) -> int:
    """Convert a major-unit amount to integer cents (round half-up)."""
    return int(quantize(amount) * MINOR_PER_MAJOR)


def from_minor_units(minor: int) -> Decimal:
    """Convert integer cents back to a major-unit Decimal."""
    return quantize(Decimal(int(minor)) / MINOR_PER_MAJOR)


def percent_of(amount: Amount, rate: Amount) -> Decimal:
    """``amount * rate`` rounded to cents, e.g. tax on a subtotal."""
    return quantize(Decimal(str(amount)) * Decimal(str(rate)))
