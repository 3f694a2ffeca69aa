"""Application configuration loaded from environment variables."""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Wallet
    wallet_address: Optional[str] = Field(
        default=None,
        description="Coldkey address refreshed by the scheduler (optional)"
    )

    # Chain
    subtensor_url: str = Field(
        default="wss://entrypoint-finney.opentensor.ai:443",
        description="Subtensor websocket endpoint"
    )
    chain_read_concurrency: int = Field(
        default=16,
        description="Max in-flight hotkey aggregations"
    )
    strict_fixed_point_decode: bool = Field(
        default=False,
        description="Raise on malformed fixed-point values instead of reading them as zero"
    )

    # Trusted Stake API
    api_base_url: str = Field(
        default="https://api.app.trustedstake.ai",
        description="Trusted Stake REST API base URL"
    )
    api_rate_limit_per_minute: int = Field(default=120)
    staking_history_page_size: int = Field(default=1000)
    staking_history_max_pages: int = Field(default=100)
    stats_page_size: int = Field(default=1000)
    stats_max_pages: int = Field(default=50)
    stats_page_delay_seconds: float = Field(default=0.2)

    # CoinGecko
    coingecko_base_url: str = Field(default="https://api.coingecko.com/api/v3")
    coingecko_api_key: Optional[str] = Field(default=None, description="CoinGecko API key")

    # HTTP resilience
    api_max_retries: int = Field(default=3)
    api_initial_backoff_seconds: float = Field(default=1.0)
    api_backoff_multiplier: float = Field(default=2.0)
    api_max_backoff_seconds: float = Field(default=30.0)
    api_connect_timeout_seconds: float = Field(default=10.0)
    api_read_timeout_seconds: float = Field(default=30.0)
    enable_retry_after: bool = Field(default=True)
    retry_after_max_wait_seconds: int = Field(default=60)

    # Redis
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL"
    )
    enable_response_cache: bool = Field(
        default=True,
        description="Cache price and subnet responses in Redis"
    )

    # PnL
    pnl_cache_max_entries: int = Field(
        default=128,
        description="LRU bound for memoized PnL results"
    )
    pnl_executor: str = Field(
        default="process",
        description="Where PnL runs: 'process' (worker pool) or 'inline'"
    )
    pnl_max_workers: int = Field(default=1)

    # Scheduler intervals
    portfolio_refresh_seconds: int = Field(default=60)
    stats_refresh_seconds: int = Field(default=30)
    stats_timeframe: str = Field(default="daily")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
