from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


def to_money(value) -> Decimal:
    """
    Normalize an amount to a 2-place Decimal, rounding half-up.

    Floats are routed through str() so 0.1 stays 0.10 instead of
    0.1000000000000000055511151231257827.
    """
    if value is None:
        return ZERO
    if isinstance(value, bool):
        raise ValueError("Money amount must be numeric")
    if isinstance(value, float):
        value = str(value)
    try:
        d = Decimal(value)
    except (InvalidOperation, TypeError):
        raise ValueError(f"Invalid money amount: {value!r}")
    if not d.is_finite():
        raise ValueError(f"Invalid money amount: {value!r}")
    return d.quantize(CENT, rounding=ROUND_HALF_UP)


def clamp_zero(amount: Decimal) -> Decimal:
    return max(ZERO, to_money(amount))


def percent_of(amount, percent) -> Decimal:
    return to_money(to_money(amount) * Decimal(str(percent)) / HUNDRED)


def ratio_percent(part, whole) -> Decimal:
    """part / whole * 100, rounded to 2 places. Caller guards whole > 0."""
    return (Decimal(part) / Decimal(whole) * HUNDRED).quantize(CENT, rounding=ROUND_HALF_UP)
