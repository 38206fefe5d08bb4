from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


# Cashier rounding for SOS amounts (to the configured note step).
RoundMode = Annotated[Literal["nearest", "up", "down"], BeforeValidator(_to_lower_str)]

# "A" returns change in SOS (customer overpaid in USD), "B" returns change in USD.
ChangeOption = Annotated[Literal["A", "B"], BeforeValidator(_to_upper_str)]
