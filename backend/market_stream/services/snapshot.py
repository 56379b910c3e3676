"""One-shot indicator snapshot for a timeframe.

Served from the live manager when one is running for the timeframe,
otherwise computed on demand from REST klines.
"""

import asyncio
import logging

from market_core.models import UpdateEvent
from market_stream.clients import BinanceRestClient
from market_stream.config import Settings
from market_stream.services.registry import ManagerRegistry
from market_stream.services.stream_manager import build_calculator

logger = logging.getLogger(__name__)

MAX_SNAPSHOT_SYMBOLS = 1000


class SnapshotService:
    """Current update events for up to ``limit`` symbols."""

    def __init__(
        self,
        registry: ManagerRegistry,
        rest_client: BinanceRestClient,
        settings: Settings,
    ):
        self.registry = registry
        self.rest_client = rest_client
        self.settings = settings
        self.calculator = build_calculator(settings)

    async def get_snapshot(self, timeframe: str, limit: int = 200) -> list[UpdateEvent]:
        """
        Get the latest event per symbol.

        Args:
            timeframe: Candle interval (must be a recognized timeframe)
            limit: Maximum number of symbols, clamped to [1, 1000]

        Returns:
            Events sorted by symbol
        """
        self.registry.validate_timeframe(timeframe)
        limit = max(1, min(limit, MAX_SNAPSHOT_SYMBOLS))

        manager = self.registry.get(timeframe)
        if manager is not None:
            events = manager.coordinator.latest_events(limit)
            if events:
                return events

        symbols = (await self.registry.get_symbols())[:limit]
        return await self._fetch_snapshot(timeframe, symbols)

    async def _fetch_snapshot(self, timeframe: str, symbols: list[str]) -> list[UpdateEvent]:
        semaphore = asyncio.Semaphore(max(1, self.settings.seed_concurrency))

        async def fetch(symbol: str) -> UpdateEvent | None:
            async with semaphore:
                return await self._fetch_symbol(timeframe, symbol)

        results = await asyncio.gather(*(fetch(s) for s in symbols))
        return [event for event in results if event is not None]

    async def _fetch_symbol(self, timeframe: str, symbol: str) -> UpdateEvent | None:
        try:
            candles = await self.rest_client.get_klines(
                symbol, timeframe, limit=self.settings.history_window
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Snapshot fetch failed for {symbol} {timeframe}: {e}")
            return None

        if not candles:
            return None

        snapshot = self.calculator.calculate_latest([c.close for c in candles])
        return UpdateEvent.from_candle(candles[-1], snapshot)
