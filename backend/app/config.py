import os
from typing import List


def _truthy(raw: str) -> bool:
    return str(raw or "").strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv("APP_DATABASE_URL") or os.getenv("DATABASE_URL") or "postgresql://localhost/retail_ledger"
        # Comma-separated list of allowed CORS origins for the back-office SPA.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:5173", "http://127.0.0.1:5173"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"
        self.pool_min_size = _env_int("DB_POOL_MIN_SIZE", 1)
        self.pool_max_size = _env_int("DB_POOL_MAX_SIZE", 10)
        # Row locks wait at most this long before the statement fails with LockNotAvailable.
        self.lock_timeout_ms = _env_int("DB_LOCK_TIMEOUT_MS", 5000)
        self.tenant_schema_prefix = os.getenv("TENANT_SCHEMA_PREFIX", "tenant_").strip() or "tenant_"
        self.session_days = _env_int("SESSION_DAYS", 1)
        # Returning a sale does not put its units back on the shelf unless explicitly enabled.
        self.restock_on_return = _truthy(os.getenv("RESTOCK_ON_RETURN", ""))


settings = Settings()
