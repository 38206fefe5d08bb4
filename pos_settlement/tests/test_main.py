import pytest

from pos_settlement.app import main
from pos_settlement.app.errors import (
    AccountResolutionError,
    BusinessRejectionError,
    CartClosedError,
    CartNotFoundError,
    ExchangeFailedError,
    ExchangeOutcomeUnknownError,
    LineNotFoundError,
    OrphanedExchangeError,
    RateUnavailableError,
    SagaPendingError,
    ServiceUnavailableError,
    SubmissionBlockedError,
    TransferFailedError,
)


@pytest.mark.parametrize(
    "exc,status",
    [
        (CartNotFoundError("c"), 404),
        (LineNotFoundError("p"), 404),
        (CartClosedError("c", "submitted"), 409),
        (OrphanedExchangeError("s", "X-1", ServiceUnavailableError("sale.post", "timeout")), 409),
        (ExchangeOutcomeUnknownError("s", ServiceUnavailableError("exchange.post", "timeout")), 409),
        (SagaPendingError("c", "s"), 409),
        (RateUnavailableError("no rate"), 503),
        (ServiceUnavailableError("lots.fetch", "down"), 502),
        (BusinessRejectionError("sale.post", "no"), 400),
        (ExchangeFailedError("s", ServiceUnavailableError("exchange.post", "down")), 502),
        (ExchangeFailedError("s", BusinessRejectionError("exchange.post", "no")), 400),
        (TransferFailedError("p", BusinessRejectionError("transfer.post", "no")), 400),
        (AccountResolutionError("SOS"), 422),
        (SubmissionBlockedError("pick a customer"), 400),
    ],
)
def test_settlement_errors_map_to_status(exc, status):
    assert main._status_for(exc) == status


def test_health():
    out = main.health()
    assert out["ok"] is True
    assert out["version"] == main.settings.api_version


def test_carts_routes_are_mounted():
    paths = {getattr(r, "path", "") for r in main.app.routes}
    assert "/carts/{cart_id}/submit" in paths
    assert "/carts/sagas/{saga_id}/retry" in paths


@pytest.mark.parametrize(
    "path,cart_id",
    [
        ("/carts/abc123/submit", "abc123"),
        ("/carts/abc123", "abc123"),
        ("/carts/sagas/orphaned", None),
        ("/carts/lots/p1", None),
        ("/carts", None),
        ("/health", None),
    ],
)
def test_cart_id_from_path(path, cart_id):
    assert main._cart_id(path) == cart_id
