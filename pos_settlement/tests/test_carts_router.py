from concurrent.futures import Future
from decimal import Decimal

import pytest
from fastapi import HTTPException

from pos_settlement.app.cart_registry import CartRegistry
from pos_settlement.app.engine import Engine
from pos_settlement.app.errors import (
    AmbiguousTenderError,
    ExchangeOutcomeUnknownError,
    OrphanedExchangeError,
    SagaPendingError,
    ServiceUnavailableError,
)
from pos_settlement.app.lot_cache import LotCache
from pos_settlement.app.models import CashAccount, Lot
from pos_settlement.app.rates import RateBook
from pos_settlement.app.routers import carts as carts_router
from pos_settlement.app.routers.carts import (
    CartOpenIn,
    ChangeIn,
    CustomerIn,
    ExchangeOutcomeIn,
    LineUpdateIn,
    LotPickIn,
    ProductIn,
    TenderIn,
    TransferIn,
)
from pos_settlement.app.submission import SaleSubmitter
from pos_settlement.app.transfers import StockTransferCoordinator


class _InlineExecutor:
    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as ex:
            future.set_exception(ex)
        return future

    def shutdown(self, wait=True, cancel_futures=False):
        return None


class _FakeClient:
    def __init__(self):
        self.lots = {
            "p1": [
                Lot(batch_id="B1", store_id="S1", store_name="Main", on_hand=0),
                Lot(batch_id="B2", store_id="S2", store_name="Annex", on_hand=6),
            ]
        }
        self.rate = {"accounting": "27000", "sell": "27000", "buy": "27500"}
        self.posted = []
        self.sale_error = None
        self.exchange_error = None

    def get_lots(self, product_id):
        return list(self.lots.get(product_id, []))

    def get_latest_rate(self, as_of=None):
        return dict(self.rate)

    def get_cash_accounts(self):
        return [
            CashAccount(id="1", name="Cash_USD", account_type="CASH_ON_HAND"),
            CashAccount(id="2", name="Cash_SOS", account_type="CASH_ON_HAND"),
        ]

    def post_exchange(self, body):
        self.posted.append(("exchange", body))
        if self.exchange_error:
            raise self.exchange_error
        return "X-1"

    def post_sale(self, body):
        self.posted.append(("sale", body))
        if self.sale_error:
            raise self.sale_error
        return "S-1"

    def post_transfer(self, body):
        self.posted.append(("transfer", body))
        return "T-1"


class _MemStore:
    def __init__(self):
        self.sagas = {}

    def save(self, saga):
        self.sagas[saga.id] = saga

    def get(self, saga_id):
        return self.sagas.get(saga_id)

    def list_orphaned(self, limit=100):
        return [s for s in self.sagas.values() if s.status in ("orphaned_exchange", "exchange_unknown")][:limit]


def _engine():
    client = _FakeClient()
    sagas = _MemStore()
    cache = LotCache()
    return Engine(
        client=client,
        lot_cache=cache,
        registry=CartRegistry(cache, client.get_lots, executor=_InlineExecutor()),
        rates=RateBook(client.get_latest_rate),
        transfers=StockTransferCoordinator(client.post_transfer, cache),
        submitter=SaleSubmitter(client.post_exchange, client.post_sale, sagas),
        sagas=sagas,
        round_step=Decimal("1000"),
    )


def _ready_cart(engine, usd="12", sos=None):
    cart_id = carts_router.open_cart(CartOpenIn(label="till-1"), engine)["cart"]["id"]
    carts_router.add_line(cart_id, ProductIn(id="p1", name="Rice", price_usd="10"), engine)
    carts_router.set_customer(cart_id, CustomerIn(customer_id="c-1"), engine)
    carts_router.set_tender(cart_id, TenderIn(usd=usd, sos=sos), engine)
    return cart_id


def test_full_sale_with_change_in_sos():
    engine = _engine()
    cart_id = _ready_cart(engine, usd="12")

    out = carts_router.get_settlement(cart_id, "nearest", engine)
    assert out["settlement"]["status"] == "single_tender_overpay"
    assert out["settlement"]["overpaid_usd"] == Decimal("2.00")
    assert out["change_options"]["A"]["change_amount"] == Decimal("54000")
    assert out["previews"]["A"]["header"] == "Extra detected: $2.00"

    confirmed = carts_router.confirm_change(cart_id, ChangeIn(), engine)
    assert confirmed["exchange"]["option"] == "A"
    assert confirmed["rate_stale"] is False

    res = carts_router.submit_cart(cart_id, engine)
    assert res["sale_id"] == "S-1"
    assert res["exchange_id"] == "X-1"
    assert [kind for kind, _ in engine.client.posted] == ["exchange", "sale"]
    assert carts_router.get_cart(cart_id, engine)["cart"]["state"] == "submitted"


def test_add_line_picks_lot_with_stock():
    engine = _engine()
    cart_id = _ready_cart(engine)
    line = carts_router.get_cart(cart_id, engine)["cart"]["lines"][0]
    assert line["batch_id"] == "B2"
    assert line["lot_summary"] == "Annex • B2 • 6"


def test_update_and_remove_line():
    engine = _engine()
    cart_id = _ready_cart(engine)

    out = carts_router.update_line(cart_id, "p1", LineUpdateIn(qty="0", unit_price_usd="3.333"), engine)
    line = out["cart"]["lines"][0]
    assert line["qty"] == 1
    assert line["unit_price_usd"] == Decimal("3.34")

    out = carts_router.remove_line(cart_id, "p1", engine)
    assert out["cart"]["lines"] == []
    assert out["cart"]["state"] == "empty"


def test_pick_lot_must_exist():
    engine = _engine()
    cart_id = _ready_cart(engine)

    out = carts_router.pick_line_lot(cart_id, "p1", LotPickIn(batch_id="B1", store_id="S1"), engine)
    assert out["cart"]["lines"][0]["batch_id"] == "B1"

    with pytest.raises(HTTPException) as exc:
        carts_router.pick_line_lot(cart_id, "p1", LotPickIn(batch_id="B9", store_id="S1"), engine)
    assert exc.value.status_code == 404


def test_dual_tender_change_requires_option():
    engine = _engine()
    cart_id = _ready_cart(engine, usd="5", sos="150000")

    with pytest.raises(AmbiguousTenderError):
        carts_router.confirm_change(cart_id, ChangeIn(), engine)

    out = carts_router.confirm_change(cart_id, ChangeIn(option="b"), engine)
    assert out["exchange"]["option"] == "B"
    assert out["cart"]["accepted_exchange"]["change_currency"] == "USD"


def test_transfer_invalidates_lots():
    engine = _engine()
    _ready_cart(engine)
    assert engine.lot_cache.peek("p1") is not None

    out = carts_router.request_transfer(
        TransferIn(product_id="p1", batch_id="B2", from_store_id="S2", to_store_id="S1", qty="2"), engine
    )

    assert out["transfer_id"] == "T-1"
    assert engine.lot_cache.peek("p1") is None


def test_orphaned_sale_can_be_listed_and_retried():
    engine = _engine()
    cart_id = _ready_cart(engine, usd="12")
    carts_router.confirm_change(cart_id, ChangeIn(option="A", round_mode="UP"), engine)
    engine.client.sale_error = ServiceUnavailableError("sale.post", "timeout")

    with pytest.raises(OrphanedExchangeError) as exc:
        carts_router.submit_cart(cart_id, engine)
    saga_id = exc.value.saga_id

    orphaned = carts_router.list_orphaned_sagas(100, engine)["sagas"]
    assert [s["id"] for s in orphaned] == [saga_id]

    engine.client.sale_error = None
    out = carts_router.retry_orphaned_sale(saga_id, engine)
    assert out["sale_id"] == "S-1"
    assert [kind for kind, _ in engine.client.posted] == ["exchange", "sale", "sale"]

    with pytest.raises(HTTPException):
        carts_router.retry_orphaned_sale("missing", engine)


def test_exchange_timeout_is_resolved_by_operator_then_sale_retried():
    engine = _engine()
    cart_id = _ready_cart(engine, usd="12")
    carts_router.confirm_change(cart_id, ChangeIn(option="A"), engine)
    engine.client.exchange_error = ServiceUnavailableError("exchange.post", "timeout")

    with pytest.raises(ExchangeOutcomeUnknownError) as exc:
        carts_router.submit_cart(cart_id, engine)
    saga_id = exc.value.saga_id

    engine.client.exchange_error = None
    with pytest.raises(SagaPendingError):
        carts_router.confirm_change(cart_id, ChangeIn(option="A"), engine)
    assert carts_router.get_cart(cart_id, engine)["cart"]["open_saga_id"] == saga_id
    assert [s["status"] for s in carts_router.list_orphaned_sagas(100, engine)["sagas"]] == ["exchange_unknown"]

    out = carts_router.record_exchange_outcome(saga_id, ExchangeOutcomeIn(exchange_id="X-7"), engine)
    assert out["saga"]["status"] == "orphaned_exchange"
    assert out["saga"]["exchange_id"] == "X-7"

    res = carts_router.retry_orphaned_sale(saga_id, engine)
    assert res["exchange_id"] == "X-7"
    assert [kind for kind, _ in engine.client.posted] == ["exchange", "sale"]
    assert engine.client.posted[-1][1]["exchange_id"] == "X-7"

    with pytest.raises(HTTPException):
        carts_router.record_exchange_outcome("missing", ExchangeOutcomeIn(), engine)


def test_list_activate_and_close_carts():
    engine = _engine()
    first = carts_router.open_cart(CartOpenIn(label="one"), engine)["cart"]["id"]
    second = carts_router.open_cart(CartOpenIn(label="two"), engine)["cart"]["id"]

    assert carts_router.list_carts(engine)["active_id"] == second
    assert carts_router.activate_cart(first, engine)["active"] is True

    out = carts_router.close_cart(first, engine)
    assert out["active_id"] == second
    assert [c["id"] for c in carts_router.list_carts(engine)["carts"]] == [second]


def test_list_lots_and_refresh_rate():
    engine = _engine()
    lots = carts_router.list_lots("p1", False, engine)["lots"]
    assert [l["batch_id"] for l in lots] == ["B1", "B2"]

    rate = carts_router.refresh_rate(engine)["rate"]
    assert rate["sell"] == Decimal("27000")
    assert rate["stale"] is False
