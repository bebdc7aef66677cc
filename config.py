"""Runtime configuration.

All values come from environment variables (or an optional ``.env`` file in
the working directory); the defaults below are suitable for a local run with
no Redis, in which case the cache and job queue fall back to in-process
memory backends.
"""
from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_name:  str = "token-price-service"
    app_host:  str = "127.0.0.1"
    app_port:  int = 3000
    log_level: str = "INFO"
    cors_origins: list[str] = ["*"]

    # ── Storage ───────────────────────────────────────────────────────────────
    db_path: Path = Path("data/prices.db")

    # ── Upstream (Alchemy) ────────────────────────────────────────────────────
    alchemy_api_key:    str = ""
    alchemy_prices_url: str = "https://api.g.alchemy.com/prices/v1"
    upstream_timeout_seconds: float = 20.0

    # Point-query retry loop
    upstream_max_attempts:     int   = 3
    upstream_backoff_base:     float = 1.0
    upstream_backoff_max:      float = 10.0

    # ── Cache ─────────────────────────────────────────────────────────────────
    # Empty REDIS_URL → in-process memory cache and queue (single process only)
    redis_url:         str = ""
    cache_ttl_seconds: int = 300

    # ── Backfill queue / worker ───────────────────────────────────────────────
    queue_name:              str   = "history-fetcher"
    run_worker:              bool  = False
    worker_concurrency:      int   = 5
    rate_limit_max:          int   = 290
    rate_limit_period:       float = 3600.0
    job_attempts:            int   = 5
    job_backoff_base:        float = 5.0
    stall_interval:          float = 30.0
    max_stalled_count:       int   = 3
    stagger_delay:           float = 0.1
    batch_priority:          int   = 10
    keep_completed:          int   = 50
    keep_failed:             int   = 100
    poll_interval:           float = 1.0

    @property
    def database_url(self) -> str:
        return f"sqlite:///{self.db_path}"


settings = Settings()
