"""Binance REST API client for seed klines and symbol discovery."""

import asyncio
import time
from typing import Any

import httpx

from market_core.models import Candle


class RateLimiter:
    """Simple rate limiter for API calls."""

    def __init__(self, calls_per_minute: int = 1200):
        self.calls_per_minute = calls_per_minute
        self.interval = 60.0 / calls_per_minute
        self.last_call = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait if necessary to respect rate limit."""
        async with self._lock:
            loop = asyncio.get_running_loop()
            wait_time = self.last_call + self.interval - loop.time()
            if wait_time > 0:
                await asyncio.sleep(wait_time)
            self.last_call = loop.time()


class BinanceRestClient:
    """Binance Futures REST API client."""

    BASE_URL = "https://fapi.binance.com"

    def __init__(
        self,
        base_url: str = BASE_URL,
        api_key: str = "",
        timeout: float = 15.0,
        calls_per_minute: int = 1200,
    ):
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout
        self.rate_limiter = RateLimiter(calls_per_minute)
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {}
            if self.api_key:
                headers["X-MBX-APIKEY"] = self.api_key
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _request(
        self, method: str, endpoint: str, params: dict[str, Any] | None = None
    ) -> Any:
        """Make an API request with rate limiting."""
        await self.rate_limiter.acquire()
        client = await self._get_client()
        response = await client.request(method, endpoint, params=params)
        response.raise_for_status()
        return response.json()

    async def get_klines(
        self,
        symbol: str,
        interval: str,
        limit: int = 500,
    ) -> list[Candle]:
        """
        Fetch the most recent K-lines from Binance, oldest first.

        The last bar returned by the exchange is usually still open; it is
        marked with ``is_final=False``.

        Args:
            symbol: Trading pair (e.g., "BTCUSDT")
            interval: K-line interval (e.g., "15m", "1h")
            limit: Maximum number of K-lines (max 1500)

        Returns:
            List of Candle objects
        """
        params: dict[str, Any] = {
            "symbol": symbol,
            "interval": interval,
            "limit": min(limit, 1500),
        }

        data = await self._request("GET", "/fapi/v1/klines", params)

        now = int(time.time() * 1000)
        candles = []
        for item in data:
            close_time = int(item[6])
            candles.append(
                Candle(
                    symbol=symbol,
                    timeframe=interval,
                    open_time=int(item[0]),
                    open=float(item[1]),
                    high=float(item[2]),
                    low=float(item[3]),
                    close=float(item[4]),
                    volume=float(item[5]),
                    close_time=close_time,
                    is_final=close_time < now,
                )
            )

        return candles

    async def get_exchange_info(self) -> dict[str, Any]:
        """Get exchange information for all symbols."""
        return await self._request("GET", "/fapi/v1/exchangeInfo")

    async def get_futures_symbols(self, quote_asset: str = "USDT") -> list[str]:
        """
        List tradable perpetual contracts for a quote asset.

        Returns:
            Sorted list of symbols (e.g., ["BTCUSDT", "ETHUSDT", ...])
        """
        info = await self.get_exchange_info()
        symbols = [
            s["symbol"]
            for s in info.get("symbols", [])
            if s.get("quoteAsset") == quote_asset
            and s.get("contractType") == "PERPETUAL"
            and s.get("status") == "TRADING"
        ]
        return sorted(symbols)
