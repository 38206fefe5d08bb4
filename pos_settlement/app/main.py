import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .db import close_pools
from .engine import shutdown_engine
from .errors import (
    AccountResolutionError,
    AmbiguousTenderError,
    BusinessRejectionError,
    CartClosedError,
    CartNotFoundError,
    ExchangeFailedError,
    ExchangeOutcomeUnknownError,
    LineNotFoundError,
    OrphanedExchangeError,
    RateUnavailableError,
    SagaPendingError,
    SaleRejectedError,
    ServiceUnavailableError,
    SettlementError,
    TransferFailedError,
)
from .jsonlog import json_log
from .routers.carts import router as carts_router

app = FastAPI(title="POS Settlement Agent", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


_CART_COLLECTION_PATHS = {"lots", "rates", "transfers", "sagas"}


def _cart_id(path: str) -> Optional[str]:
    # /carts/<id>/... ; the fixed sub-resources under /carts are not cart ids.
    parts = path.strip("/").split("/")
    if len(parts) >= 2 and parts[0] == "carts" and parts[1] not in _CART_COLLECTION_PATHS:
        return parts[1]
    return None


def _status_for(exc: SettlementError) -> int:
    if isinstance(exc, (CartNotFoundError, LineNotFoundError)):
        return 404
    if isinstance(
        exc,
        (CartClosedError, AmbiguousTenderError, OrphanedExchangeError, ExchangeOutcomeUnknownError, SagaPendingError),
    ):
        return 409
    if isinstance(exc, RateUnavailableError):
        return 503
    if isinstance(exc, ServiceUnavailableError):
        return 502
    if isinstance(exc, (ExchangeFailedError, SaleRejectedError, TransferFailedError)):
        # Upstream said no (4xx) vs upstream could not be reached.
        return 400 if isinstance(exc.cause, BusinessRejectionError) else 502
    if isinstance(exc, AccountResolutionError):
        return 422
    return 400


# 4xx: the operator changes something first. 5xx: the same request can be retried.
@app.exception_handler(SettlementError)
def _settlement_error(req: Request, exc: SettlementError):
    status = _status_for(exc)
    content = {"detail": str(exc), "error": exc.__class__.__name__}
    for attr in ("saga_id", "exchange_id"):
        if getattr(exc, attr, None):
            content[attr] = getattr(exc, attr)
    needs_operator = isinstance(exc, (OrphanedExchangeError, ExchangeOutcomeUnknownError))
    level = "error" if needs_operator or status >= 500 else "warning"
    json_log(
        level,
        "agent.request.rejected",
        cart_id=_cart_id(req.url.path),
        request_id=_current_request_id(req),
        path=req.url.path,
        status_code=status,
        error=str(exc),
    )
    return JSONResponse(status_code=status, content=content)


@app.exception_handler(RequestValidationError)
def _request_validation_error(req: Request, exc: RequestValidationError):
    errors = exc.errors()
    json_log(
        "warning",
        "agent.request.invalid",
        request_id=_current_request_id(req),
        path=req.url.path,
        fields=[".".join(str(p) for p in e.get("loc", ())) for e in errors],
    )
    content = {"detail": "invalid request"}
    if settings.env in {"local", "dev"}:
        content["errors"] = errors
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log(
        "error",
        "agent.request.crashed",
        request_id=rid,
        cart_id=_cart_id(req.url.path),
        path=req.url.path,
        error_type=exc.__class__.__name__,
        error=str(exc),
    )
    content = {"detail": "unexpected till agent error", "request_id": rid}
    if settings.env in {"local", "dev"}:
        content["error"] = f"{exc.__class__.__name__}: {exc}"
    return JSONResponse(status_code=500, content=content)


# Every request gets an id (the till UI may send its own) and one log line naming the cart.
@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    path = request.url.path
    fields = {"request_id": rid, "method": request.method, "path": path, "cart_id": _cart_id(path)}
    started = time.monotonic()

    try:
        response = await call_next(request)
    except Exception as exc:
        json_log("error", "agent.request.failed", elapsed_ms=_elapsed_ms(started), error=str(exc), **fields)
        raise

    response.headers["X-Request-Id"] = rid
    if path != "/health":
        json_log("info", "agent.request", status_code=response.status_code, elapsed_ms=_elapsed_ms(started), **fields)
    return response


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


# The till UI runs on its own dev server during development.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(carts_router)


@app.get("/health")
def health():
    return {
        "ok": True,
        "env": settings.env,
        "version": settings.api_version,
        "started_at": STARTED_AT_UTC.isoformat(),
    }


@app.on_event("shutdown")
def _shutdown():
    shutdown_engine()
    close_pools()
