"""
HTTP client for the shop backend: lots, rates, cash accounts, exchanges, sales and
stock transfers.

Failures are split by what the operator can do about them:
- ServiceUnavailableError: unreachable, timed out, 5xx or an unreadable response.
- BusinessRejectionError: the service answered and said no (4xx or `ok: false`).
"""

from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from datetime import date
from typing import Any, Optional
from urllib.parse import quote, urlencode

from pydantic import ValidationError

from .config import settings
from .errors import BusinessRejectionError, ServiceUnavailableError
from .exchange import CASH_ON_HAND
from .jsonlog import json_log
from .models import CashAccount, Lot


def _error_message(body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        for key in ("error", "detail", "message"):
            if body.get(key):
                return str(body[key])
    return fallback


def _rows(body: Any) -> list:
    # List endpoints answer either with a bare list or with {"data": [...]}.
    if isinstance(body, list):
        return body
    if isinstance(body, dict) and isinstance(body.get("data"), list):
        return body["data"]
    return []


def _first_id(body: Any, *keys: str) -> Optional[str]:
    if not isinstance(body, dict):
        return None
    for key in keys:
        nested = body.get(key)
        if isinstance(nested, dict) and nested.get("id"):
            return str(nested["id"])
    for key in ("id",) + tuple(f"{k}_id" for k in keys):
        if body.get(key):
            return str(body[key])
    return None


class ShopApiClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout_s: Optional[float] = None,
    ) -> None:
        self.base_url = (base_url or settings.shop_api_base_url).rstrip("/")
        self.token = settings.shop_api_token if token is None else token
        self.timeout_s = settings.shop_api_timeout_s if timeout_s is None else timeout_s

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _request(self, operation: str, method: str, path: str, payload: Optional[dict] = None) -> Any:
        url = f"{self.base_url}{path}"
        data = json.dumps(payload, default=str).encode("utf-8") if payload is not None else None
        req = urllib.request.Request(url, data=data, headers=self._headers(), method=method)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                raw = resp.read().decode("utf-8") if resp else ""
                status = resp.status
        except urllib.error.HTTPError as ex:
            raw = ex.read().decode("utf-8", errors="replace") if ex.fp else ""
            body = self._decode(raw)
            msg = _error_message(body, f"HTTP {ex.code}")
            json_log("warning", "shop_api.http_error", operation=operation, status_code=ex.code, error=msg)
            if 400 <= ex.code < 500:
                raise BusinessRejectionError(operation, msg, status_code=ex.code) from ex
            raise ServiceUnavailableError(operation, msg, status_code=ex.code) from ex
        except (urllib.error.URLError, socket.timeout, OSError) as ex:
            reason = getattr(ex, "reason", None) or ex
            json_log("warning", "shop_api.unreachable", operation=operation, url=url, error=str(reason))
            raise ServiceUnavailableError(operation, f"service unreachable: {reason}") from ex

        body = self._decode(raw)
        if raw and body is None:
            raise ServiceUnavailableError(operation, "response is not JSON", status_code=status)
        if isinstance(body, dict) and body.get("ok") is False:
            raise BusinessRejectionError(operation, _error_message(body, "rejected"), status_code=status)
        return body

    @staticmethod
    def _decode(raw: str) -> Any:
        if not raw:
            return {}
        try:
            return json.loads(raw)
        except ValueError:
            return None

    def get_lots(self, product_id: str) -> list[Lot]:
        body = self._request("lots.fetch", "GET", f"/api/batches/product/{quote(product_id, safe='')}")
        rows = body.get("lots") if isinstance(body, dict) else body
        try:
            return [Lot(**r) for r in (rows or [])]
        except (ValidationError, TypeError) as ex:
            raise ServiceUnavailableError("lots.fetch", f"malformed lot row: {ex}") from ex

    def get_latest_rate(self, as_of: Optional[date] = None) -> dict:
        params = {"limit": "1", "order": "as_of_date", "dir": "DESC"}
        if as_of is not None:
            params["as_of"] = as_of.isoformat()
        body = self._request("rates.fetch", "GET", f"/api/exchange-rates?{urlencode(params)}")
        rows = _rows(body)
        if not rows:
            raise BusinessRejectionError("rates.fetch", "NO_EXCHANGE_RATE")
        row = rows[0]
        return {
            "accounting": row.get("rate_accounting"),
            "sell": row.get("rate_sell_usd_to_sos"),
            "buy": row.get("rate_buy_usd_with_sos"),
        }

    def get_cash_accounts(self) -> list[CashAccount]:
        body = self._request("accounts.fetch", "GET", "/api/accounts?limit=200")
        out: list[CashAccount] = []
        for r in _rows(body):
            if not isinstance(r, dict) or not r.get("name"):
                continue
            kind = r.get("account_type")
            if isinstance(r.get("AccountType"), dict):
                kind = r["AccountType"].get("name")
            if str(kind or "").strip().upper() != CASH_ON_HAND:
                continue
            out.append(CashAccount(id=str(r.get("id") or ""), name=str(r["name"]), account_type=CASH_ON_HAND))
        return out

    def post_exchange(self, body: dict) -> str:
        res = self._request("exchange.post", "POST", "/api/exchange", body)
        ex_id = _first_id(res, "exchange")
        if not ex_id:
            raise ServiceUnavailableError("exchange.post", "response did not include an exchange id")
        return ex_id

    def post_sale(self, body: dict) -> str:
        res = self._request("sale.post", "POST", "/api/sales", body)
        sale_id = _first_id(res, "sale")
        if not sale_id:
            raise ServiceUnavailableError("sale.post", "response did not include a sale id")
        return sale_id

    def post_transfer(self, body: dict) -> str:
        res = self._request("transfer.post", "POST", "/api/stock-transfers", body)
        transfer_id = _first_id(res, "transfer")
        if not transfer_id:
            raise ServiceUnavailableError("transfer.post", "response did not include a transfer id")
        return transfer_id
