"""In-memory storage layer."""

from market_stream.storage.history_cache import PriceHistoryCache, DEFAULT_CAPACITY

__all__ = [
    "PriceHistoryCache",
    "DEFAULT_CAPACITY",
]
