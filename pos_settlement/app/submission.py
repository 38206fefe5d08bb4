"""
Submitting a finished cart: post the change exchange (if any), then the sale.

The exchange must commit before the sale that references its adjusted tender is
posted. There is no compensating call for an exchange, so if the sale then fails the
saga is persisted as `orphaned_exchange` and only the sale step may be retried. An
exchange call that times out leaves the saga `exchange_unknown` until an operator
records whether it posted; either way the cart posts no further exchange meanwhile.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

from . import saga_store as ss
from .cart import Cart
from .errors import (
    BusinessRejectionError,
    CollaboratorError,
    ExchangeFailedError,
    ExchangeOutcomeUnknownError,
    OrphanedExchangeError,
    SaleRejectedError,
    SubmissionBlockedError,
)
from .exchange import ExchangeIntent, adjusted_tender
from .jsonlog import json_log
from .models import Rate
from .money import round_sos, round_usd
from .reconciliation import Settlement, SettlementStatus, TenderState, reconcile, sos_needed

Poster = Callable[[dict], str]


@dataclass(frozen=True)
class SubmissionResult:
    saga: ss.SettlementSaga
    sale_id: str
    exchange_id: Optional[str] = None


def payments_for(tender: TenderState, rate: Rate) -> list[dict]:
    payments: list[dict] = []
    if tender.usd_amount > 0:
        payments.append({"method": "CASH_USD", "amount_usd": round_usd(tender.usd_amount)})
    if tender.sos_amount > 0:
        payments.append({"method": "CASH_SOS", "amount_native": round_sos(tender.sos_amount), "rate_used": rate.sell})
    return payments


def check_ready(cart: Cart, settlement: Settlement, intent: Optional[ExchangeIntent]) -> None:
    """Raise with the first reason this cart cannot be sold yet."""
    if not cart.is_open:
        raise SubmissionBlockedError(f"cart is {cart.state.value}")
    cart.ensure_no_open_saga()
    if not cart.lines:
        raise SubmissionBlockedError("add at least one product line")
    missing = cart.lines_missing_lots()
    if missing:
        raise SubmissionBlockedError(f'select batch/store for "{missing[0].display_name}"')
    if not cart.customer_id:
        raise SubmissionBlockedError("pick a customer")
    if settlement.status == SettlementStatus.UNDERPAID:
        raise SubmissionBlockedError(f"underpaid by ${settlement.remaining_usd}")
    if settlement.overpaid_usd <= 0:
        if intent is not None:
            raise SubmissionBlockedError("change was confirmed but nothing is overpaid; confirm again")
        return
    if intent is None:
        if settlement.status == SettlementStatus.DUAL_TENDER_OVERPAY:
            raise SubmissionBlockedError(
                "overpaid with both USD and SOS; choose which currency the change comes from"
            )
        raise SubmissionBlockedError("select how change is returned to continue")
    if intent.consumed:
        raise SubmissionBlockedError("this change exchange was already submitted")
    if intent.overpaid_usd != settlement.overpaid_usd or intent.rate != settlement.rate:
        raise SubmissionBlockedError("amounts or rate changed since change was confirmed; confirm again")


class SaleSubmitter:
    def __init__(
        self,
        post_exchange: Poster,
        post_sale: Poster,
        store: ss.SagaStore,
        round_step: Decimal = Decimal("1000"),
    ) -> None:
        self._post_exchange = post_exchange
        self._post_sale = post_sale
        self._store = store
        self._round_step = round_step

    def _record(self, saga: ss.SettlementSaga) -> None:
        # The remote calls are the source of truth; a lost saga write must not undo them.
        try:
            self._store.save(saga)
        except Exception as ex:
            json_log("error", "saga.persist_failed", saga_id=saga.id, status=saga.status, error=str(ex))

    def sale_body(
        self,
        cart: Cart,
        settlement: Settlement,
        tender: TenderState,
        exchange_id: Optional[str],
        *,
        exchanged: bool = False,
    ) -> dict:
        body = {
            "customer_id": cart.customer_id,
            "lines": [
                {
                    "product_id": ln.product_id,
                    "qty": ln.quantity,
                    "unit_price_usd": round_usd(ln.unit_price),
                    "batch_id": ln.batch_id,
                    "store_id": ln.store_id,
                }
                for ln in cart.lines
            ],
            "payments": payments_for(tender, settlement.rate),
            "total_usd": settlement.total_usd,
            "status": "COMPLETED",
        }
        if exchanged or exchange_id:
            body["exchange_id"] = exchange_id
        else:
            body["rounding_meta"] = sos_needed(
                settlement.total_usd,
                settlement.tender.usd_amount,
                settlement.rate,
                step=self._round_step,
            )
        return body

    def submit(self, cart: Cart, rate: Rate) -> SubmissionResult:
        settlement = reconcile(cart.subtotal(), cart.tender, rate)
        intent = cart.accepted_exchange
        check_ready(cart, settlement, intent)

        saga = ss.SettlementSaga(id=uuid.uuid4().hex, cart_id=cart.id, customer_id=cart.customer_id)
        tender = cart.tender
        if intent is not None:
            tender = adjusted_tender(cart.tender, intent)
            saga.exchange_status = ss.PENDING
            saga.exchange_request = intent.request_body(customer_id=cart.customer_id)
        # Nothing has been posted yet, so a failed first write simply aborts.
        self._store.save(saga)

        exchange_id = None
        if intent is not None:
            intent.consume()
            cart.hold_for_saga(saga.id)
            try:
                exchange_id = self._post_exchange(saga.exchange_request)
            except BusinessRejectionError as ex:
                saga.exchange_status = ss.FAILED
                saga.status = ss.EXCHANGE_FAILED
                saga.error = str(ex)
                self._record(saga)
                cart.release_saga(saga.id)
                json_log("warning", "submission.exchange_failed", saga_id=saga.id, cart_id=cart.id, error=str(ex))
                raise ExchangeFailedError(saga.id, ex) from ex
            except CollaboratorError as ex:
                # Timeout or upstream failure: the exchange may have committed.
                saga.exchange_status = ss.UNKNOWN
                saga.status = ss.EXCHANGE_UNKNOWN
                saga.error = str(ex)
                saga.sale_request = self.sale_body(cart, settlement, tender, None, exchanged=True)
                self._record(saga)
                json_log("error", "submission.exchange_unknown", saga_id=saga.id, cart_id=cart.id, error=str(ex))
                raise ExchangeOutcomeUnknownError(saga.id, ex) from ex
            saga.exchange_id = exchange_id
            saga.exchange_status = ss.COMMITTED
            saga.status = ss.EXCHANGE_COMMITTED
            self._record(saga)
            json_log("info", "submission.exchange_committed", saga_id=saga.id, exchange_id=exchange_id)

        saga.sale_request = self.sale_body(cart, settlement, tender, exchange_id, exchanged=intent is not None)
        return self._post_sale_step(saga, cart)

    def _post_sale_step(self, saga: ss.SettlementSaga, cart: Optional[Cart]) -> SubmissionResult:
        try:
            sale_id = self._post_sale(saga.sale_request)
        except CollaboratorError as ex:
            saga.sale_status = ss.FAILED
            saga.error = str(ex)
            if saga.exchange_status == ss.COMMITTED:
                saga.status = ss.ORPHANED_EXCHANGE
                self._record(saga)
                json_log(
                    "error",
                    "submission.orphaned_exchange",
                    saga_id=saga.id,
                    exchange_id=saga.exchange_id,
                    cart_id=saga.cart_id,
                    error=str(ex),
                )
                raise OrphanedExchangeError(saga.id, saga.exchange_id, ex) from ex
            saga.status = ss.SALE_REJECTED
            self._record(saga)
            json_log("warning", "submission.sale_failed", saga_id=saga.id, cart_id=saga.cart_id, error=str(ex))
            raise SaleRejectedError(saga.id, ex) from ex

        saga.sale_id = sale_id
        saga.sale_status = ss.COMMITTED
        saga.status = ss.COMPLETED
        saga.error = None
        self._record(saga)
        if cart is not None and cart.is_open:
            cart.mark_submitted(sale_id)
        json_log("info", "submission.completed", saga_id=saga.id, sale_id=sale_id, exchange_id=saga.exchange_id)
        return SubmissionResult(saga=saga, sale_id=sale_id, exchange_id=saga.exchange_id)

    def retry_sale(self, saga_id: str, cart: Optional[Cart] = None) -> SubmissionResult:
        """Re-post only the sale of an orphaned saga, reusing its committed exchange."""
        saga = self._store.get(saga_id)
        if saga is None:
            raise SubmissionBlockedError(f"saga {saga_id} not found")
        if saga.status != ss.ORPHANED_EXCHANGE or not saga.sale_request:
            raise SubmissionBlockedError(f"saga {saga_id} is {saga.status}; only orphaned exchanges can be retried")
        if cart is not None and cart.id != saga.cart_id:
            raise SubmissionBlockedError("saga belongs to a different cart")
        return self._post_sale_step(saga, cart)

    def resolve_unknown_exchange(
        self,
        saga_id: str,
        exchange_id: Optional[str],
        cart: Optional[Cart] = None,
    ) -> ss.SettlementSaga:
        """
        Record what the shop backend shows for an exchange whose post timed out.

        With an `exchange_id` the exchange committed: the saga becomes orphaned and only
        its sale may be retried. Without one it never posted: the saga fails and the cart
        may confirm change again.
        """
        saga = self._store.get(saga_id)
        if saga is None:
            raise SubmissionBlockedError(f"saga {saga_id} not found")
        if saga.status != ss.EXCHANGE_UNKNOWN:
            raise SubmissionBlockedError(f"saga {saga_id} is {saga.status}; its exchange outcome is already known")
        if cart is not None and cart.id != saga.cart_id:
            raise SubmissionBlockedError("saga belongs to a different cart")

        exchange_id = (exchange_id or "").strip() or None
        if exchange_id:
            saga.exchange_id = exchange_id
            saga.exchange_status = ss.COMMITTED
            saga.status = ss.ORPHANED_EXCHANGE
            saga.sale_request = {**(saga.sale_request or {}), "exchange_id": exchange_id}
        else:
            saga.exchange_status = ss.FAILED
            saga.status = ss.EXCHANGE_FAILED
        # The operator's answer must be stored before the cart is released.
        self._store.save(saga)
        if cart is not None and saga.status == ss.EXCHANGE_FAILED:
            cart.release_saga(saga.id)
        json_log(
            "warning",
            "submission.exchange_resolved",
            saga_id=saga.id,
            cart_id=saga.cart_id,
            status=saga.status,
            exchange_id=saga.exchange_id,
        )
        return saga
