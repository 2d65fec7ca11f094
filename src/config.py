from __future__ import annotations

from decimal import Decimal
from functools import cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    database_url: str = "sqlite:///paper_trading.db"

    market_data_base_url: str = "https://api.coingecko.com/api/v3"
    market_data_api_key: str | None = None
    price_cache_dir: str | None = None

    starting_balance: Decimal = Decimal("100000")

    sync_interval_ms: int = 30_000
    max_concurrent_updates: int = 5
    retry_attempts: int = 3
    retry_delay_ms: int = 5_000
    leaderboard_cooldown_ms: int = 60_000
    stale_after_failures: int = 3

    cache_fresh_ttl_ms: int = 15 * 60 * 1000
    cache_stale_ttl_ms: int = 2 * 60 * 60 * 1000
    cache_tag: str = "1"
    rate_limit_per_minute: int = 30
    request_timeout_ms: int = 15_000
    backoff_base_ms: int = 1_000
    backoff_factor: float = 2.0
    backoff_max_ms: int = 60_000

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@cache
def config() -> AppSettings:
    return AppSettings()
