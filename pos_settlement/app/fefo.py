from __future__ import annotations

from datetime import date
from typing import Iterable, Optional, Sequence

from .models import Lot


def pick_lot(lots: Sequence[Lot]) -> Optional[Lot]:
    """
    First lot (in supplied order) with stock; otherwise the first lot so the line still
    carries a lot reference for a backorder; None when there are no lots at all.
    """
    if not lots:
        return None
    for lot in lots:
        if lot.on_hand > 0:
            return lot
    return lots[0]


def fefo_order(lots: Iterable[Lot]) -> list[Lot]:
    # Stable: lots sharing an expiry (or undated lots, which go last) keep the service order.
    return sorted(lots, key=lambda l: (l.expiry_date is None, l.expiry_date or date.max))
