from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Optional

from pydantic import ValidationError

from .errors import CollaboratorError, RateUnavailableError
from .jsonlog import json_log
from .models import Rate

RateFetcher = Callable[[Optional[date]], dict]


@dataclass(frozen=True)
class RateSnapshot:
    rate: Rate
    fetched_at: datetime
    stale: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "accounting": self.rate.accounting,
            "sell": self.rate.sell,
            "buy": self.rate.buy,
            "fetched_at": self.fetched_at,
            "stale": self.stale,
            "error": self.error,
        }


class RateBook:
    """
    Holds the last usable exchange rate.

    A failed or unusable fetch (sell/buy not positive) never replaces a good rate: the
    last one is kept and flagged stale. With nothing to fall back on, change/exchange
    math is refused instead of running against a zero rate.
    """

    def __init__(self, fetch: RateFetcher, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)) -> None:
        self._fetch = fetch
        self._clock = clock
        self._lock = threading.Lock()
        self._snapshot: Optional[RateSnapshot] = None

    def refresh(self, as_of: Optional[date] = None) -> RateSnapshot:
        try:
            raw = self._fetch(as_of)
            rate = Rate(**raw)
        except (CollaboratorError, ValidationError, TypeError) as ex:
            return self._keep_last(ex)
        snap = RateSnapshot(rate=rate, fetched_at=self._clock())
        with self._lock:
            self._snapshot = snap
        return snap

    def _keep_last(self, ex: Exception) -> RateSnapshot:
        err = str(ex).splitlines()[0] if str(ex) else ex.__class__.__name__
        with self._lock:
            last = self._snapshot
            if last is None:
                json_log("error", "rates.unavailable", error=err)
                raise RateUnavailableError(f"no usable exchange rate: {err}") from ex
            json_log("warning", "rates.stale", error=err, fetched_at=last.fetched_at)
            self._snapshot = RateSnapshot(rate=last.rate, fetched_at=last.fetched_at, stale=True, error=err)
            return self._snapshot

    def current(self) -> RateSnapshot:
        with self._lock:
            snap = self._snapshot
        if snap is None:
            return self.refresh()
        return snap
