import os
from decimal import Decimal
from typing import List


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def _env_int(self, name: str, default: int) -> int:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            return default
        try:
            return int(raw)
        except ValueError:
            return default

    def _env_float(self, name: str, default: float) -> float:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            return default
        try:
            return float(raw)
        except ValueError:
            return default

    def __init__(self) -> None:
        self.env = os.getenv("APP_ENV", "local")
        # Shop backend that owns lots, rates, accounts, exchanges, sales and transfers.
        self.shop_api_base_url = (os.getenv("SHOP_API_BASE_URL") or "http://localhost:4000").strip().rstrip("/")
        self.shop_api_token = (os.getenv("SHOP_API_TOKEN") or "").strip()
        self.shop_api_timeout_s = self._env_float("SHOP_API_TIMEOUT_S", 10.0)
        # Lot snapshots go stale as other tills sell; keep the window short.
        self.lot_cache_ttl_s = self._env_int("LOT_CACHE_TTL_S", 300)
        self.lot_fetch_workers = self._env_int("LOT_FETCH_WORKERS", 4)
        self.sos_round_step = Decimal(str(self._env_int("SOS_ROUND_STEP", 1000)))
        self.db_url = (
            os.getenv("APP_DATABASE_URL") or os.getenv("DATABASE_URL") or "postgresql://localhost/pos_settlement"
        ).strip()
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:8081", "http://127.0.0.1:8081"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"


settings = Settings()
