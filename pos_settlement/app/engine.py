from __future__ import annotations

import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .cart_registry import CartRegistry
from .collaborators import ShopApiClient
from .config import settings
from .lot_cache import LotCache
from .rates import RateBook
from .saga_store import PgSagaStore, SagaStore
from .submission import SaleSubmitter
from .transfers import StockTransferCoordinator


@dataclass
class Engine:
    client: ShopApiClient
    lot_cache: LotCache
    registry: CartRegistry
    rates: RateBook
    transfers: StockTransferCoordinator
    submitter: SaleSubmitter
    sagas: SagaStore
    round_step: Decimal


def build_engine(client: Optional[ShopApiClient] = None, sagas: Optional[SagaStore] = None) -> Engine:
    client = client or ShopApiClient()
    sagas = sagas or PgSagaStore()
    lot_cache = LotCache(ttl_seconds=settings.lot_cache_ttl_s)
    return Engine(
        client=client,
        lot_cache=lot_cache,
        registry=CartRegistry(lot_cache, client.get_lots, max_workers=settings.lot_fetch_workers),
        rates=RateBook(client.get_latest_rate),
        transfers=StockTransferCoordinator(client.post_transfer, lot_cache),
        submitter=SaleSubmitter(client.post_exchange, client.post_sale, sagas, round_step=settings.sos_round_step),
        sagas=sagas,
        round_step=settings.sos_round_step,
    )


_engine: Optional[Engine] = None
_engine_lock = threading.Lock()


def get_engine() -> Engine:
    global _engine
    with _engine_lock:
        if _engine is None:
            _engine = build_engine()
        return _engine


def shutdown_engine() -> None:
    global _engine
    with _engine_lock:
        if _engine is not None:
            _engine.registry.shutdown()
            _engine = None
