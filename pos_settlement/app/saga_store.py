from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Protocol

from .db import get_conn


# Saga status values.
PENDING = "pending"
EXCHANGE_COMMITTED = "exchange_committed"
COMPLETED = "completed"
EXCHANGE_FAILED = "exchange_failed"
SALE_REJECTED = "sale_rejected"
ORPHANED_EXCHANGE = "orphaned_exchange"
EXCHANGE_UNKNOWN = "exchange_unknown"

# Sagas an operator has to act on before the cart can be sold.
NEEDS_OPERATOR = (ORPHANED_EXCHANGE, EXCHANGE_UNKNOWN)

# Per-step status values.
NOT_REQUIRED = "not_required"
COMMITTED = "committed"
FAILED = "failed"
UNKNOWN = "unknown"


@dataclass
class SettlementSaga:
    """Progress of one exchange-then-sale submission."""

    id: str
    cart_id: str
    customer_id: Optional[str] = None
    status: str = PENDING
    exchange_status: str = NOT_REQUIRED
    exchange_id: Optional[str] = None
    sale_status: str = PENDING
    sale_id: Optional[str] = None
    exchange_request: Optional[dict] = None
    sale_request: Optional[dict] = None
    error: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "cart_id": self.cart_id,
            "customer_id": self.customer_id,
            "status": self.status,
            "exchange_status": self.exchange_status,
            "exchange_id": self.exchange_id,
            "sale_status": self.sale_status,
            "sale_id": self.sale_id,
            "error": self.error,
            "updated_at": self.updated_at,
        }


class SagaStore(Protocol):
    def save(self, saga: SettlementSaga) -> None: ...

    def get(self, saga_id: str) -> Optional[SettlementSaga]: ...

    def list_orphaned(self, limit: int = 100) -> list[SettlementSaga]: ...


_COLUMNS = """
    id, cart_id, customer_id, status, exchange_status, exchange_id,
    sale_status, sale_id, exchange_request, sale_request, error, updated_at
"""


def _from_row(row: dict) -> SettlementSaga:
    def _json(v):
        if v is None or isinstance(v, dict):
            return v
        return json.loads(v)

    return SettlementSaga(
        id=str(row["id"]),
        cart_id=str(row["cart_id"]),
        customer_id=row.get("customer_id"),
        status=row["status"],
        exchange_status=row["exchange_status"],
        exchange_id=row.get("exchange_id"),
        sale_status=row["sale_status"],
        sale_id=row.get("sale_id"),
        exchange_request=_json(row.get("exchange_request")),
        sale_request=_json(row.get("sale_request")),
        error=row.get("error"),
        updated_at=row["updated_at"],
    )


class PgSagaStore:
    """Sagas in Postgres, so an orphaned exchange survives a till restart."""

    def save(self, saga: SettlementSaga) -> None:
        saga.touch()
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO settlement_sagas ({_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s::jsonb, %s, %s)
                    ON CONFLICT (id) DO UPDATE
                    SET customer_id = EXCLUDED.customer_id,
                        status = EXCLUDED.status,
                        exchange_status = EXCLUDED.exchange_status,
                        exchange_id = EXCLUDED.exchange_id,
                        sale_status = EXCLUDED.sale_status,
                        sale_id = EXCLUDED.sale_id,
                        exchange_request = EXCLUDED.exchange_request,
                        sale_request = EXCLUDED.sale_request,
                        error = EXCLUDED.error,
                        updated_at = EXCLUDED.updated_at
                    """,
                    (
                        saga.id,
                        saga.cart_id,
                        saga.customer_id,
                        saga.status,
                        saga.exchange_status,
                        saga.exchange_id,
                        saga.sale_status,
                        saga.sale_id,
                        json.dumps(saga.exchange_request, default=str) if saga.exchange_request is not None else None,
                        json.dumps(saga.sale_request, default=str) if saga.sale_request is not None else None,
                        saga.error,
                        saga.updated_at,
                    ),
                )

    def get(self, saga_id: str) -> Optional[SettlementSaga]:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {_COLUMNS} FROM settlement_sagas WHERE id = %s", (saga_id,))
                row = cur.fetchone()
                return _from_row(row) if row else None

    def list_orphaned(self, limit: int = 100) -> list[SettlementSaga]:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_COLUMNS}
                    FROM settlement_sagas
                    WHERE status = ANY(%s)
                    ORDER BY updated_at ASC
                    LIMIT %s
                    """,
                    (list(NEEDS_OPERATOR), limit),
                )
                return [_from_row(r) for r in cur.fetchall()]
