from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    app_env: str
    db_path: str
    db_busy_timeout: float
    log_level: str
    openai_api_key: str
    embedding_model: str
    embedding_dimensions: int
    embedding_fallback: bool
    task_lease_seconds: int
    retry_delay_cap: float
    worker_autostart: bool
    worker_poll_interval: float
    search_cache_ttl: float
    search_cache_size: int

    @property
    def has_remote_embeddings(self) -> bool:
        return bool(self.openai_api_key)

    @staticmethod
    def from_env() -> "Settings":
        def _b(name: str, default: str) -> bool:
            return os.getenv(name, default).strip() in ("1", "true", "True", "yes", "YES")

        def _i(name: str, default: str) -> int:
            return int(os.getenv(name, default).strip())

        def _f(name: str, default: str) -> float:
            return float(os.getenv(name, default).strip())

        return Settings(
            app_env=os.getenv("APP_ENV", "dev").strip(),
            db_path=os.getenv("DB_PATH", "/app/_local/data/linkvault.db").strip(),
            db_busy_timeout=_f("DB_BUSY_TIMEOUT", "30"),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
            openai_api_key=os.getenv("OPENAI_API_KEY", "").strip(),
            embedding_model=os.getenv("EMBEDDING_MODEL", "text-embedding-3-large").strip(),
            embedding_dimensions=_i("EMBEDDING_DIMENSIONS", "3072"),
            embedding_fallback=_b("EMBEDDING_FALLBACK", "1"),
            task_lease_seconds=_i("TASK_LEASE_SECONDS", "300"),
            retry_delay_cap=_f("TASK_RETRY_DELAY_CAP", "60"),
            worker_autostart=_b("WORKER_AUTOSTART", "0"),
            worker_poll_interval=_f("WORKER_POLL_INTERVAL", "5"),
            search_cache_ttl=_f("SEARCH_CACHE_TTL", "30"),
            search_cache_size=_i("SEARCH_CACHE_SIZE", "256"),
        )
