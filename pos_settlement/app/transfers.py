from __future__ import annotations

from typing import Any, Callable

from .cart import Line
from .errors import BusinessRejectionError, CollaboratorError, TransferFailedError
from .jsonlog import json_log
from .lot_cache import LotCache
from .money import to_decimal

TransferPoster = Callable[[dict], str]


def shortfall(line: Line) -> int:
    """Units the line's lot cannot cover (0 when covered or when no lot is assigned)."""
    if not line.has_lot or line.on_hand is None:
        return 0
    return max(0, line.quantity - line.on_hand)


class StockTransferCoordinator:
    def __init__(self, post_transfer: TransferPoster, lot_cache: LotCache) -> None:
        self._post_transfer = post_transfer
        self._lot_cache = lot_cache

    def request_transfer(
        self,
        product_id: str,
        batch_id: str,
        from_store_id: str,
        to_store_id: str,
        qty: Any,
    ) -> str:
        q = to_decimal(qty)
        if q <= 0:
            raise TransferFailedError(
                product_id,
                BusinessRejectionError("transfer.post", "quantity must be greater than zero"),
            )
        if from_store_id == to_store_id:
            raise TransferFailedError(
                product_id,
                BusinessRejectionError("transfer.post", "source and destination store are the same"),
            )
        body = {
            "product_id": product_id,
            "batch_id": batch_id,
            "from_store_id": from_store_id,
            "to_store_id": to_store_id,
            "qty": int(q) if q == q.to_integral_value() else q,
        }
        try:
            transfer_id = self._post_transfer(body)
        except CollaboratorError as ex:
            json_log("warning", "transfer.failed", product_id=product_id, batch_id=batch_id, error=str(ex))
            raise TransferFailedError(product_id, ex) from ex

        # On-hand changed for every till, not just the one that asked.
        self._lot_cache.invalidate(product_id)
        json_log(
            "info",
            "transfer.posted",
            transfer_id=transfer_id,
            product_id=product_id,
            batch_id=batch_id,
            from_store_id=from_store_id,
            to_store_id=to_store_id,
            qty=body["qty"],
        )
        return transfer_id
