from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

from .cart import Cart, LotFetcher
from .errors import CartNotFoundError, CollaboratorError
from .jsonlog import json_log
from .lot_cache import LotCache
from .models import Product


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class CartRegistry:
    """
    Open cart tabs, exactly one of them active.

    Switching tabs is a pointer swap. Lot lookups run on a thread pool and carry the
    token of the cart that asked; a result that arrives after that cart was parked or
    closed is dropped (the shared lot cache still keeps it).
    """

    def __init__(
        self,
        lot_cache: LotCache,
        fetch_lots: LotFetcher,
        *,
        max_workers: int = 4,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.lot_cache = lot_cache
        self._fetch_lots = fetch_lots
        self._executor = executor or ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="lot-lookup")
        self._carts: dict[str, Cart] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._active_id: Optional[str] = None
        self._lock = threading.RLock()

    @property
    def active_id(self) -> Optional[str]:
        return self._active_id

    @property
    def active(self) -> Cart:
        with self._lock:
            if self._active_id is None:
                raise CartNotFoundError("active")
            return self._carts[self._active_id]

    def get(self, cart_id: str) -> Cart:
        with self._lock:
            cart = self._carts.get(cart_id)
            if cart is None:
                raise CartNotFoundError(cart_id)
            return cart

    def carts(self) -> list[Cart]:
        with self._lock:
            return list(self._carts.values())

    def open(self, label: str = "", *, activate: bool = True) -> Cart:
        cart = Cart(self.lot_cache, self._fetch_lots, label=label)
        with self._lock:
            self._carts[cart.id] = cart
            self._tokens[cart.id] = CancellationToken()
            if activate or self._active_id is None:
                self._activate(cart.id)
        json_log("info", "carts.opened", cart_id=cart.id, label=cart.label)
        return cart

    def _activate(self, cart_id: str) -> None:
        previous = self._active_id
        if previous == cart_id:
            return
        if previous is not None and previous in self._tokens:
            # Lookups still in flight for the parked cart must not land on it.
            self._tokens[previous].cancel()
            self._tokens[previous] = CancellationToken()
        self._active_id = cart_id

    def switch(self, cart_id: str) -> Cart:
        with self._lock:
            cart = self.get(cart_id)
            self._activate(cart_id)
        # Lines parked before their lookup finished get another chance now.
        for ln in cart.lines_missing_lots():
            self.lookup_lots(cart, ln.product_id)
        return cart

    def close(self, cart_id: str) -> None:
        with self._lock:
            cart = self._carts.pop(cart_id, None)
            if cart is None:
                raise CartNotFoundError(cart_id)
            token = self._tokens.pop(cart_id, None)
            if token is not None:
                token.cancel()
            if cart.is_open:
                cart.discard()
            if self._active_id == cart_id:
                self._active_id = next(iter(self._carts), None)
        json_log("info", "carts.closed", cart_id=cart_id, state=cart.state.value)

    def add_product(self, product: Product, cart_id: Optional[str] = None) -> tuple[int, Optional[Future]]:
        """
        Add a product to a cart (the active one by default) without blocking on the
        lot service. Returns the new quantity and the pending lookup, if one was started.
        """
        cart = self.get(cart_id) if cart_id else self.active
        if self.lot_cache.peek(product.id) is not None:
            return cart.add_product(product), None
        qty = cart.add_product(product, fetch_lots=False)
        if qty != 1:
            return qty, None
        return qty, self.lookup_lots(cart, product.id)

    def lookup_lots(self, cart: Cart, product_id: str, *, force: bool = False) -> Future:
        with self._lock:
            token = self._tokens.get(cart.id)
        future = self._executor.submit(self.lot_cache.get_or_fetch, product_id, self._fetch_lots, force=force)
        future.add_done_callback(lambda f: self._deliver(cart, token, product_id, f))
        return future

    def _deliver(self, cart: Cart, token: Optional[CancellationToken], product_id: str, future: Future) -> None:
        if future.cancelled():
            return
        try:
            lots = future.result()
        except CollaboratorError as ex:
            json_log("warning", "carts.lots.fetch_failed", cart_id=cart.id, product_id=product_id, error=str(ex))
            return
        with self._lock:
            if token is None or token.cancelled or self._active_id != cart.id:
                json_log("info", "carts.lots.stale_result_dropped", cart_id=cart.id, product_id=product_id)
                return
            cart.apply_lot_lookup(product_id, lots)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
