"""
Shop-wide lot snapshots, keyed by product id.

Every open cart tab reads through the same cache, so invalidating a product after a
stock transfer is visible to all of them. Entries expire after `ttl_seconds` and can
be dropped explicitly (manual refresh, transfer).
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Sequence

from .fefo import fefo_order
from .models import Lot


@dataclass
class _Entry:
    lots: tuple[Lot, ...]
    expires_at: float


class LotCache:
    def __init__(self, ttl_seconds: float = 300, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def peek(self, product_id: str) -> Optional[list[Lot]]:
        with self._lock:
            entry = self._entries.get(product_id)
            if entry is None or self._clock() >= entry.expires_at:
                return None
            return list(entry.lots)

    def put(self, product_id: str, lots: Sequence[Lot]) -> list[Lot]:
        ordered = fefo_order(lots)
        with self._lock:
            self._entries[product_id] = _Entry(lots=tuple(ordered), expires_at=self._clock() + self._ttl)
        return list(ordered)

    def get_or_fetch(
        self,
        product_id: str,
        fetch: Callable[[str], Sequence[Lot]],
        *,
        force: bool = False,
    ) -> list[Lot]:
        """
        Cached lots for a product, fetching on miss, expiry or `force`.
        Fetch failures propagate and leave the cache untouched.
        """
        if not force:
            cached = self.peek(product_id)
            if cached is not None:
                self.hits += 1
                return cached
        self.misses += 1
        # The fetch runs outside the lock so lookups for other products are not serialized.
        lots = fetch(product_id)
        return self.put(product_id, lots)

    def invalidate(self, product_id: str) -> bool:
        with self._lock:
            return self._entries.pop(product_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
