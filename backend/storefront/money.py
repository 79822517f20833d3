"""
Money helpers.

Amounts are integer cents everywhere. Percentages are basis points
(1000 bps = 10%). Computed amounts round to the nearest cent, half-up.
"""

from __future__ import annotations

BPS_DENOMINATOR = 10_000
MAX_DISCOUNT_BPS = BPS_DENOMINATOR


def apply_bps(amount_cents: int, bps: int) -> int:
    """Return ``amount_cents * bps / 10000`` rounded half-up to the cent."""
    return (amount_cents * bps + BPS_DENOMINATOR // 2) // BPS_DENOMINATOR


def discounted_price(amount_cents: int, discount_bps: int) -> int:
    return max(0, amount_cents - apply_bps(amount_cents, discount_bps))


def format_cents(amount_cents: int) -> str:
    sign = "-" if amount_cents < 0 else ""
    amount_cents = abs(amount_cents)
    return f"{sign}{amount_cents // 100}.{amount_cents % 100:02d}"
