from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, ROUND_UP
from typing import Any, Optional


Q2 = Decimal("0.01")
Q0 = Decimal("1")
ZERO = Decimal("0")

_STEP_ROUNDING = {
    "nearest": ROUND_HALF_UP,
    "up": ROUND_CEILING,
    "down": ROUND_FLOOR,
}


def to_decimal(raw: Any, default: Optional[Decimal] = ZERO) -> Optional[Decimal]:
    """
    Lenient numeric parse used for every cashier-entered amount.
    Accepts "," as the decimal separator; anything unparseable (or NaN/inf) yields `default`.
    """
    if raw is None or isinstance(raw, bool):
        return default
    if isinstance(raw, Decimal):
        v = raw
    else:
        s = str(raw).strip().replace(",", ".")
        if not s:
            return default
        try:
            v = Decimal(s)
        except (InvalidOperation, ValueError):
            return default
    if not v.is_finite():
        return default
    return v


def round_usd(x: Any) -> Decimal:
    # USD is always rounded up to the cent so a sale never under-collects.
    return to_decimal(x).quantize(Q2, rounding=ROUND_UP)


def round_sos(x: Any) -> Decimal:
    return to_decimal(x).quantize(Q0, rounding=ROUND_HALF_UP)


def to_usd_equivalent(sos_amount: Any, rate: Any) -> Decimal:
    r = to_decimal(rate)
    if r <= 0:
        return ZERO.quantize(Q2)
    return round_usd(to_decimal(sos_amount) / r)


def to_sos_equivalent(usd_amount: Any, rate: Any) -> Decimal:
    return round_sos(to_decimal(usd_amount) * to_decimal(rate))


def round_sos_step(value: Any, mode: str = "nearest", step: Decimal = Decimal("1000")) -> Decimal:
    """Round an SOS amount to a note step (1000 by default) the way a cashier would hand it over."""
    v = to_decimal(value)
    if step <= 0:
        return round_sos(v)
    rounding = _STEP_ROUNDING.get(mode, ROUND_HALF_UP)
    return (v / step).quantize(Q0, rounding=rounding) * step


def rounding_direction(raw: Decimal, chosen: Decimal, *, paying_out: bool = False) -> str:
    """
    GAIN/LOSS from the shop's point of view.
    Collecting more than the raw amount is a gain; paying out more is a loss.
    """
    diff = chosen - raw
    if paying_out:
        diff = -diff
    if diff > 0:
        return "GAIN"
    if diff < 0:
        return "LOSS"
    return "NONE"


def format_usd(x: Any) -> str:
    return f"{round_usd(x):,.2f}"


def format_sos(x: Any) -> str:
    return f"{round_sos(x):,.0f}"
