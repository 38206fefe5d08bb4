from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from ..engine import Engine, get_engine
from ..exchange import change_options, preview_text, resolve, resolve_for_tender
from ..models import Product
from ..reconciliation import reconcile, sos_needed
from ..validation import ChangeOption, RoundMode

router = APIRouter(prefix="/carts", tags=["carts"])


class CartOpenIn(BaseModel):
    label: str = ""


class ProductIn(BaseModel):
    id: str
    name: str = ""
    sku: str = ""
    price_usd: Any = None


class LineUpdateIn(BaseModel):
    # Raw cashier input; coerced by the cart rather than validated here.
    qty: Any = None
    unit_price_usd: Any = None


class LotPickIn(BaseModel):
    batch_id: str
    store_id: str


class CustomerIn(BaseModel):
    customer_id: Optional[str] = None


class TenderIn(BaseModel):
    usd: Any = None
    sos: Any = None


class ChangeIn(BaseModel):
    option: Optional[ChangeOption] = None
    round_mode: Optional[RoundMode] = None


class ExchangeOutcomeIn(BaseModel):
    # Exchange id the shop backend shows for this saga; empty when it never posted.
    exchange_id: Optional[str] = None


class TransferIn(BaseModel):
    product_id: str
    batch_id: str
    from_store_id: str
    to_store_id: str
    qty: Any


def _cart_out(engine: Engine, cart) -> dict:
    return {"cart": cart.to_dict(), "active": engine.registry.active_id == cart.id}


def _saga_cart(engine: Engine, cart_id: str):
    # The cart may already be closed, or gone after a restart.
    return next((c for c in engine.registry.carts() if c.id == cart_id), None)


@router.get("")
def list_carts(engine: Engine = Depends(get_engine)):
    return {
        "carts": [c.to_dict() for c in engine.registry.carts()],
        "active_id": engine.registry.active_id,
    }


@router.post("")
def open_cart(data: CartOpenIn, engine: Engine = Depends(get_engine)):
    cart = engine.registry.open(data.label)
    return _cart_out(engine, cart)


@router.get("/lots/{product_id}")
def list_lots(product_id: str, refresh: bool = Query(False), engine: Engine = Depends(get_engine)):
    lots = engine.lot_cache.get_or_fetch(product_id, engine.client.get_lots, force=refresh)
    return {"lots": [l.model_dump() for l in lots]}


@router.post("/rates/refresh")
def refresh_rate(engine: Engine = Depends(get_engine)):
    return {"rate": engine.rates.refresh().to_dict()}


@router.post("/transfers")
def request_transfer(data: TransferIn, engine: Engine = Depends(get_engine)):
    transfer_id = engine.transfers.request_transfer(
        data.product_id, data.batch_id, data.from_store_id, data.to_store_id, data.qty
    )
    return {"ok": True, "transfer_id": transfer_id}


@router.get("/sagas/orphaned")
def list_orphaned_sagas(limit: int = Query(100, ge=1, le=500), engine: Engine = Depends(get_engine)):
    return {"sagas": [s.to_dict() for s in engine.sagas.list_orphaned(limit)]}


@router.post("/sagas/{saga_id}/retry")
def retry_orphaned_sale(saga_id: str, engine: Engine = Depends(get_engine)):
    saga = engine.sagas.get(saga_id)
    if saga is None:
        raise HTTPException(status_code=404, detail="saga not found")
    cart = _saga_cart(engine, saga.cart_id)
    res = engine.submitter.retry_sale(saga_id, cart)
    return {"ok": True, "sale_id": res.sale_id, "exchange_id": res.exchange_id, "saga": res.saga.to_dict()}


@router.post("/sagas/{saga_id}/exchange-outcome")
def record_exchange_outcome(saga_id: str, data: ExchangeOutcomeIn, engine: Engine = Depends(get_engine)):
    saga = engine.sagas.get(saga_id)
    if saga is None:
        raise HTTPException(status_code=404, detail="saga not found")
    cart = _saga_cart(engine, saga.cart_id)
    saga = engine.submitter.resolve_unknown_exchange(saga_id, data.exchange_id, cart)
    return {"ok": True, "saga": saga.to_dict()}


@router.get("/{cart_id}")
def get_cart(cart_id: str, engine: Engine = Depends(get_engine)):
    return _cart_out(engine, engine.registry.get(cart_id))


@router.post("/{cart_id}/activate")
def activate_cart(cart_id: str, engine: Engine = Depends(get_engine)):
    return _cart_out(engine, engine.registry.switch(cart_id))


@router.delete("/{cart_id}")
def close_cart(cart_id: str, engine: Engine = Depends(get_engine)):
    engine.registry.close(cart_id)
    return {"ok": True, "active_id": engine.registry.active_id}


@router.post("/{cart_id}/lines")
def add_line(cart_id: str, data: ProductIn, engine: Engine = Depends(get_engine)):
    product = Product(**data.model_dump(exclude_none=True))
    qty, _pending = engine.registry.add_product(product, cart_id)
    return {"qty": qty, **_cart_out(engine, engine.registry.get(cart_id))}


@router.patch("/{cart_id}/lines/{product_id}")
def update_line(cart_id: str, product_id: str, data: LineUpdateIn, engine: Engine = Depends(get_engine)):
    cart = engine.registry.get(cart_id)
    if data.qty is not None:
        cart.set_quantity(product_id, data.qty)
    if data.unit_price_usd is not None:
        cart.set_unit_price(product_id, data.unit_price_usd)
    return _cart_out(engine, cart)


@router.delete("/{cart_id}/lines/{product_id}")
def remove_line(cart_id: str, product_id: str, engine: Engine = Depends(get_engine)):
    cart = engine.registry.get(cart_id)
    cart.remove_line(product_id)
    return _cart_out(engine, cart)


@router.post("/{cart_id}/lines/{product_id}/lot")
def pick_line_lot(cart_id: str, product_id: str, data: LotPickIn, engine: Engine = Depends(get_engine)):
    cart = engine.registry.get(cart_id)
    lots = engine.lot_cache.get_or_fetch(product_id, engine.client.get_lots)
    lot = next((l for l in lots if l.batch_id == data.batch_id and l.store_id == data.store_id), None)
    if lot is None:
        raise HTTPException(status_code=404, detail="lot not found for product")
    cart.reassign_lot(product_id, lot)
    return _cart_out(engine, cart)


@router.post("/{cart_id}/lines/{product_id}/refresh-lots")
def refresh_line_lots(cart_id: str, product_id: str, engine: Engine = Depends(get_engine)):
    cart = engine.registry.get(cart_id)
    lots = cart.refresh_lots(product_id)
    return {"lots": [l.model_dump() for l in lots], **_cart_out(engine, cart)}


@router.put("/{cart_id}/customer")
def set_customer(cart_id: str, data: CustomerIn, engine: Engine = Depends(get_engine)):
    cart = engine.registry.get(cart_id)
    cart.set_customer(data.customer_id)
    return _cart_out(engine, cart)


@router.put("/{cart_id}/tender")
def set_tender(cart_id: str, data: TenderIn, engine: Engine = Depends(get_engine)):
    cart = engine.registry.get(cart_id)
    cart.set_tender(data.usd, data.sos)
    return _cart_out(engine, cart)


@router.get("/{cart_id}/settlement")
def get_settlement(
    cart_id: str,
    round_mode: RoundMode = Query("nearest"),
    engine: Engine = Depends(get_engine),
):
    cart = engine.registry.get(cart_id)
    snap = engine.rates.current()
    settlement = reconcile(cart.subtotal(), cart.tender, snap.rate)
    options = change_options(settlement)
    return {
        "settlement": settlement.to_dict(),
        "rate": snap.to_dict(),
        "sos_needed": sos_needed(
            settlement.total_usd, cart.tender.usd_amount, snap.rate, round_mode, engine.round_step
        ),
        "change_options": {k: q.to_dict() for k, q in options.items()},
        "previews": {k: preview_text(settlement, q) for k, q in options.items()},
    }


@router.post("/{cart_id}/change")
def confirm_change(cart_id: str, data: ChangeIn, engine: Engine = Depends(get_engine)):
    """
    Confirm how change is returned. Without an explicit option the tender decides
    (USD only -> change in SOS, SOS only -> change in USD); a dual-currency overpay
    needs the option spelled out.
    """
    cart = engine.registry.get(cart_id)
    snap = engine.rates.current()
    settlement = reconcile(cart.subtotal(), cart.tender, snap.rate)
    accounts = engine.client.get_cash_accounts()
    if data.option:
        intent = resolve(data.option, settlement, accounts, round_mode=data.round_mode, round_step=engine.round_step)
    else:
        intent = resolve_for_tender(settlement, accounts, round_mode=data.round_mode, round_step=engine.round_step)
    cart.accept_exchange(intent)
    return {"exchange": intent.to_dict(), "rate_stale": snap.stale, **_cart_out(engine, cart)}


@router.post("/{cart_id}/submit")
def submit_cart(cart_id: str, engine: Engine = Depends(get_engine)):
    cart = engine.registry.get(cart_id)
    intent = cart.accepted_exchange
    # An accepted change is priced at the rate it was confirmed with.
    rate = intent.rate if intent is not None else engine.rates.current().rate
    res = engine.submitter.submit(cart, rate)
    return {"ok": True, "sale_id": res.sale_id, "exchange_id": res.exchange_id, "saga": res.saga.to_dict()}
