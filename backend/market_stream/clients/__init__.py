"""Exchange clients."""

from market_stream.clients.binance_rest import BinanceRestClient, RateLimiter
from market_stream.clients.binance_ws_kline import (
    Backoff,
    BatchConnectionManager,
    ConnectionState,
    KlineBatchConnection,
    make_batches,
    stream_name,
)

__all__ = [
    "BinanceRestClient",
    "RateLimiter",
    "Backoff",
    "BatchConnectionManager",
    "ConnectionState",
    "KlineBatchConnection",
    "make_batches",
    "stream_name",
]
