"""Application configuration."""

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Binance endpoints (USDT-M futures)
    rest_base_url: str = "https://fapi.binance.com"
    ws_base_url: str = "wss://fstream.binance.com/stream?streams="
    binance_api_key: str = ""
    requests_per_minute: int = 1200

    # Timeframes accepted by the API
    valid_timeframes: list[str] = [
        "1m", "3m", "5m", "15m", "30m", "1h", "2h", "4h", "6h", "12h", "1d", "1w", "1M",
    ]
    default_timeframe: str = "1h"

    # Symbol universe (empty = discover from exchangeInfo)
    symbols: list[str] = []
    max_symbols: int = 200

    # Streaming
    batch_size: int = 60  # streams per combined connection
    history_window: int = 500  # closes kept per symbol
    batch_queue_size: int = 10000
    subscriber_queue_size: int = 1000
    forward_partial_candles: bool = False
    teardown_idle_managers: bool = True

    # Indicator periods
    ema_periods: list[int] = [12, 26, 50, 100, 200]
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9
    rsi_period: int = 14

    # Connection recovery (seconds)
    backoff_min: float = 1.0
    backoff_max: float = 60.0
    keepalive_interval: float = 120.0
    handshake_timeout: float = 20.0
    auto_ping_idle_timeout: float = 30.0
    auto_ping_reply_timeout: float = 10.0

    # Historical seed
    seed_timeout: float = 15.0
    seed_concurrency: int = 10

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: str = "INFO"

    def is_valid_timeframe(self, timeframe: str) -> bool:
        """Check if a timeframe identifier is recognized."""
        return timeframe in self.valid_timeframes


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
