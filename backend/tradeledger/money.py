# Overview: Integer-cent money arithmetic with half-up rounding.

"""
All money in the engine is integer cents and all tax rates are integer basis
points (1% = 100 bps). Intermediate products are kept exact as Fractions and
rounded half-up (away from zero) exactly once, at the point a value is stored.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from fractions import Fraction

BPS_PER_UNIT = 10_000


def round_half_up(value: Fraction | int) -> int:
    """Round an exact rational amount of cents half-up, away from zero."""
    frac = Fraction(value)
    sign = -1 if frac < 0 else 1
    frac = abs(frac)
    return sign * ((2 * frac.numerator + frac.denominator) // (2 * frac.denominator))


def percent_to_bps(percent) -> int:
    """Convert a tax percentage ("10", 10, 12.5, Decimal("18.00")) to basis points."""
    try:
        d = Decimal(str(percent))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"invalid percentage: {percent!r}") from exc
    bps = (d * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(bps)


def tax_on(amount_cents: int, rate_bps: int) -> Fraction:
    """Exact (unrounded) tax on an amount of cents."""
    return Fraction(amount_cents * rate_bps, BPS_PER_UNIT)


def to_cents(amount) -> int:
    """Convert a currency amount ("47.20", Decimal, float) into integer cents."""
    try:
        d = Decimal(str(amount))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"invalid amount: {amount!r}") from exc
    return int((d * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_cents(cents: int | None) -> str | None:
    if cents is None:
        return None
    sign = "-" if cents < 0 else ""
    cents = abs(cents)
    return f"{sign}{cents // 100}.{cents % 100:02d}"
