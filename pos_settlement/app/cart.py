from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_FLOOR
from enum import Enum
from typing import Any, Callable, Optional, Sequence

from .errors import CartClosedError, CollaboratorError, LineNotFoundError, SagaPendingError
from .exchange import ExchangeIntent
from .fefo import pick_lot
from .jsonlog import json_log
from .lot_cache import LotCache
from .models import Lot, Product
from .money import ZERO, round_usd, to_decimal
from .reconciliation import TenderState

NO_LOT_SUMMARY = "No lot selected"

LotFetcher = Callable[[str], Sequence[Lot]]


class CartState(str, Enum):
    EMPTY = "empty"
    ACTIVE = "active"
    SUBMITTED = "submitted"
    DISCARDED = "discarded"


TERMINAL_STATES = {CartState.SUBMITTED, CartState.DISCARDED}


@dataclass
class Line:
    product_id: str
    display_name: str
    quantity: int
    unit_price: Decimal
    batch_id: Optional[str] = None
    store_id: Optional[str] = None
    expiry_date: Optional[date] = None
    on_hand: Optional[int] = None
    lot_summary: str = NO_LOT_SUMMARY

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity

    @property
    def has_lot(self) -> bool:
        return bool(self.batch_id and self.store_id)

    def assign_lot(self, lot: Optional[Lot]) -> None:
        if lot is None:
            self.batch_id = None
            self.store_id = None
            self.expiry_date = None
            self.on_hand = None
            self.lot_summary = NO_LOT_SUMMARY
            return
        self.batch_id = lot.batch_id
        self.store_id = lot.store_id
        self.expiry_date = lot.expiry_date
        self.on_hand = lot.on_hand
        self.lot_summary = lot.summary()

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "name": self.display_name,
            "qty": self.quantity,
            "unit_price_usd": self.unit_price,
            "subtotal_usd": round_usd(self.subtotal),
            "batch_id": self.batch_id,
            "store_id": self.store_id,
            "expiry_date": self.expiry_date,
            "on_hand": self.on_hand,
            "lot_summary": self.lot_summary,
        }


def parse_quantity(raw: Any) -> int:
    # Lenient: anything unparseable, zero or negative becomes 1.
    v = to_decimal(raw, None)
    if v is None:
        return 1
    return max(1, int(v.to_integral_value(rounding=ROUND_FLOOR)))


def parse_unit_price(raw: Any) -> Decimal:
    return round_usd(max(ZERO, to_decimal(raw)))


class Cart:
    """
    One sale in progress: its lines, customer and tendered cash.

    Lines are kept in insertion order, one per product. The subtotal is derived on every
    read. Once submitted or discarded the cart rejects every further change.
    """

    def __init__(
        self,
        lot_cache: LotCache,
        fetch_lots: LotFetcher,
        *,
        cart_id: Optional[str] = None,
        label: str = "",
    ) -> None:
        self.id = cart_id or uuid.uuid4().hex
        self.label = label or self.id[:6]
        self._lot_cache = lot_cache
        self._fetch_lots = fetch_lots
        self._lines: dict[str, Line] = {}
        self._terminal: Optional[CartState] = None
        self._lock = threading.RLock()
        self.customer_id: Optional[str] = None
        self.tender = TenderState()
        self.accepted_exchange: Optional[ExchangeIntent] = None
        self.sale_id: Optional[str] = None
        # Set while an exchange for this cart is posted (or may be) but its sale is not.
        self.open_saga_id: Optional[str] = None

    @property
    def state(self) -> CartState:
        if self._terminal is not None:
            return self._terminal
        return CartState.ACTIVE if self._lines else CartState.EMPTY

    @property
    def is_open(self) -> bool:
        return self._terminal is None

    @property
    def lines(self) -> list[Line]:
        return list(self._lines.values())

    def line(self, product_id: str) -> Line:
        ln = self._lines.get(product_id)
        if ln is None:
            raise LineNotFoundError(product_id)
        return ln

    def _ensure_open(self) -> None:
        if self._terminal is not None:
            raise CartClosedError(self.id, self._terminal.value)

    def _changed(self) -> None:
        # Any change to lines or tender invalidates a previously accepted change/exchange.
        self.accepted_exchange = None

    def _lots_for(self, product_id: str, *, force: bool = False) -> list[Lot]:
        try:
            return self._lot_cache.get_or_fetch(product_id, self._fetch_lots, force=force)
        except CollaboratorError as ex:
            # Not fatal: the line shows "No lot selected" until a lot is picked or fetched.
            json_log("warning", "cart.lots.fetch_failed", cart_id=self.id, product_id=product_id, error=str(ex))
            return []

    def add_product(self, product: Product, *, fetch_lots: bool = True) -> int:
        """
        Add one unit of `product`, returning the line's new quantity.
        With `fetch_lots=False` the line is created without a lot and the caller
        delivers the lookup later through `apply_lot_lookup`.
        """
        with self._lock:
            self._ensure_open()
            existing = self._lines.get(product.id)
            if existing is not None:
                existing.quantity += 1
                self._changed()
                return existing.quantity

        lots = self._lots_for(product.id) if fetch_lots else []

        with self._lock:
            self._ensure_open()
            existing = self._lines.get(product.id)
            if existing is not None:
                existing.quantity += 1
                self._changed()
                return existing.quantity
            line = Line(
                product_id=product.id,
                display_name=product.display_name,
                quantity=1,
                unit_price=parse_unit_price(product.price_usd),
            )
            line.assign_lot(pick_lot(lots))
            self._lines[product.id] = line
            self._changed()
            return 1

    def set_quantity(self, product_id: str, raw_value: Any) -> int:
        with self._lock:
            self._ensure_open()
            ln = self.line(product_id)
            ln.quantity = parse_quantity(raw_value)
            self._changed()
            return ln.quantity

    def set_unit_price(self, product_id: str, raw_value: Any) -> Decimal:
        with self._lock:
            self._ensure_open()
            ln = self.line(product_id)
            ln.unit_price = parse_unit_price(raw_value)
            self._changed()
            return ln.unit_price

    def remove_line(self, product_id: str) -> None:
        with self._lock:
            self._ensure_open()
            if self._lines.pop(product_id, None) is not None:
                self._changed()

    def reassign_lot(self, product_id: str, lot: Optional[Lot]) -> Line:
        with self._lock:
            self._ensure_open()
            ln = self.line(product_id)
            ln.assign_lot(lot)
            return ln

    def apply_lot_lookup(self, product_id: str, lots: Sequence[Lot]) -> bool:
        """
        Deliver a lot lookup that completed after the line was created.
        Only fills a line that still has no lot; returns whether anything changed.
        """
        with self._lock:
            if self._terminal is not None:
                return False
            ln = self._lines.get(product_id)
            if ln is None or ln.has_lot:
                return False
            lot = pick_lot(list(lots))
            if lot is None:
                return False
            ln.assign_lot(lot)
            return True

    def refresh_lots(self, product_id: str) -> list[Lot]:
        """
        Re-read lots for a product, bypassing the cache. The line keeps its lot when that
        lot is still listed (with fresh on-hand), otherwise it gets a new FEFO pick.
        """
        with self._lock:
            self._ensure_open()
            ln = self.line(product_id)
        lots = self._lots_for(product_id, force=True)
        with self._lock:
            self._ensure_open()
            current = None
            if ln.has_lot:
                current = next(
                    (l for l in lots if l.batch_id == ln.batch_id and l.store_id == ln.store_id),
                    None,
                )
            ln.assign_lot(current or pick_lot(lots))
        return lots

    def lines_missing_lots(self) -> list[Line]:
        return [ln for ln in self._lines.values() if not ln.has_lot]

    def subtotal(self) -> Decimal:
        with self._lock:
            return round_usd(sum((ln.subtotal for ln in self._lines.values()), ZERO))

    def set_customer(self, customer_id: Optional[str]) -> None:
        with self._lock:
            self._ensure_open()
            self.customer_id = (customer_id or "").strip() or None

    def set_tender(self, usd: Any = None, sos: Any = None) -> TenderState:
        with self._lock:
            self._ensure_open()
            self.tender = TenderState.from_raw(usd, sos)
            self._changed()
            return self.tender

    def accept_exchange(self, intent: ExchangeIntent) -> None:
        with self._lock:
            self._ensure_open()
            self.ensure_no_open_saga()
            self.accepted_exchange = intent

    def ensure_no_open_saga(self) -> None:
        if self.open_saga_id is not None:
            raise SagaPendingError(self.id, self.open_saga_id)

    def hold_for_saga(self, saga_id: str) -> None:
        with self._lock:
            self.open_saga_id = saga_id

    def release_saga(self, saga_id: str) -> None:
        # The exchange never posted; its consumed intent goes with the hold.
        with self._lock:
            if self.open_saga_id == saga_id:
                self.open_saga_id = None
                self.accepted_exchange = None

    def mark_submitted(self, sale_id: str) -> None:
        with self._lock:
            self._ensure_open()
            self._terminal = CartState.SUBMITTED
            self.sale_id = sale_id
            self.open_saga_id = None

    def discard(self) -> None:
        with self._lock:
            self._ensure_open()
            self._terminal = CartState.DISCARDED

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "id": self.id,
                "label": self.label,
                "state": self.state.value,
                "customer_id": self.customer_id,
                "lines": [ln.to_dict() for ln in self._lines.values()],
                "subtotal_usd": self.subtotal(),
                "usd_tendered": self.tender.usd_amount,
                "sos_tendered": self.tender.sos_amount,
                "accepted_exchange": self.accepted_exchange.to_dict() if self.accepted_exchange else None,
                "sale_id": self.sale_id,
                "open_saga_id": self.open_saga_id,
            }
