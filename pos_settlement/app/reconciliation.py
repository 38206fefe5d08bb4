"""
Payment reconciliation: two independently entered cash tenders (USD and SOS) projected
onto a single USD unit of account against the cart total.

Nothing here mutates its inputs or raises; every value is recomputed from the tender,
the total and the rate on each call so the derived amounts cannot drift.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Union

from .models import Rate
from .money import (
    ZERO,
    round_sos,
    round_sos_step,
    round_usd,
    rounding_direction,
    to_decimal,
    to_sos_equivalent,
    to_usd_equivalent,
)


@dataclass(frozen=True)
class TenderState:
    usd_amount: Decimal = Decimal("0.00")
    sos_amount: Decimal = Decimal("0")

    @classmethod
    def from_raw(cls, usd: Any = None, sos: Any = None) -> "TenderState":
        # Cashier input is coerced, never rejected: garbage and negatives become zero.
        return cls(
            usd_amount=max(ZERO, round_usd(to_decimal(usd))),
            sos_amount=max(ZERO, round_sos(to_decimal(sos))),
        )


# Which currencies were handed over.

@dataclass(frozen=True)
class Unpaid:
    pass


@dataclass(frozen=True)
class SingleTender:
    currency: str


@dataclass(frozen=True)
class DualTender:
    pass


TenderShape = Union[Unpaid, SingleTender, DualTender]


def tender_shape(tender: TenderState) -> TenderShape:
    has_usd = tender.usd_amount > 0
    has_sos = tender.sos_amount > 0
    if has_usd and has_sos:
        return DualTender()
    if has_usd:
        return SingleTender("USD")
    if has_sos:
        return SingleTender("SOS")
    return Unpaid()


class SettlementStatus(str, Enum):
    UNDERPAID = "underpaid"
    EXACT = "exact"
    SINGLE_TENDER_OVERPAY = "single_tender_overpay"
    DUAL_TENDER_OVERPAY = "dual_tender_overpay"


@dataclass(frozen=True)
class Settlement:
    total_usd: Decimal
    tender: TenderState
    rate: Rate
    paid_usd_equivalent: Decimal
    remaining_usd: Decimal
    remaining_sos: Decimal
    overpaid_usd: Decimal
    shape: TenderShape
    status: SettlementStatus

    @property
    def has_usd(self) -> bool:
        return self.tender.usd_amount > 0

    @property
    def has_sos(self) -> bool:
        return self.tender.sos_amount > 0

    @property
    def can_complete(self) -> bool:
        return self.status in {SettlementStatus.EXACT, SettlementStatus.SINGLE_TENDER_OVERPAY}

    def to_dict(self) -> dict:
        return {
            "total_usd": self.total_usd,
            "usd_tendered": self.tender.usd_amount,
            "sos_tendered": self.tender.sos_amount,
            "paid_usd_equivalent": self.paid_usd_equivalent,
            "remaining_usd": self.remaining_usd,
            "remaining_sos": self.remaining_sos,
            "overpaid_usd": self.overpaid_usd,
            "has_usd": self.has_usd,
            "has_sos": self.has_sos,
            "status": self.status.value,
        }


def reconcile(total_usd: Any, tender: TenderState, rate: Rate) -> Settlement:
    total = round_usd(total_usd)
    paid = round_usd(tender.usd_amount + to_usd_equivalent(tender.sos_amount, rate.sell))
    remaining_usd = round_usd(max(ZERO, total - paid))
    remaining_sos = to_sos_equivalent(remaining_usd, rate.sell)
    overpaid_usd = round_usd(max(ZERO, paid - total))
    shape = tender_shape(tender)

    if remaining_usd > 0:
        status = SettlementStatus.UNDERPAID
    elif overpaid_usd > 0 and isinstance(shape, DualTender):
        status = SettlementStatus.DUAL_TENDER_OVERPAY
    elif overpaid_usd > 0:
        status = SettlementStatus.SINGLE_TENDER_OVERPAY
    else:
        status = SettlementStatus.EXACT

    return Settlement(
        total_usd=total,
        tender=tender,
        rate=rate,
        paid_usd_equivalent=paid,
        remaining_usd=remaining_usd,
        remaining_sos=remaining_sos,
        overpaid_usd=overpaid_usd,
        shape=shape,
        status=status,
    )


def sos_needed(
    total_usd: Any,
    usd_tendered: Any,
    rate: Rate,
    mode: str = "nearest",
    step: Decimal = Decimal("1000"),
) -> dict:
    """
    SOS the cashier should ask for once the USD part is counted, rounded to a note step.
    `direction` is the shop's gain or loss from that rounding.
    """
    usd_part = max(ZERO, round_usd(usd_tendered))
    usd_still_needed = round_usd(max(ZERO, round_usd(total_usd) - usd_part))
    raw = to_sos_equivalent(usd_still_needed, rate.sell)
    chosen = round_sos_step(raw, mode, step)
    return {
        "mode": mode,
        "rate_used": rate.sell,
        "base_needed_native": raw,
        "chosen_target_native": chosen,
        "diff_native": abs(chosen - raw),
        "direction": rounding_direction(raw, chosen),
    }
