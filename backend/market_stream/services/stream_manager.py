"""One live manager per timeframe.

Owns the price histories, the subscriber hub, the stream coordinator and
the batch connections for a single timeframe. Created by the registry on
the first subscriber and stopped when no longer needed.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence

from picows import ws_connect

from market_core.indicators import IndicatorCalculator
from market_core.normalizer import CandleNormalizer
from market_stream.clients import BinanceRestClient, BatchConnectionManager
from market_stream.config import Settings
from market_stream.services.hub import SubscriberHub
from market_stream.services.stream_coordinator import StreamCoordinator
from market_stream.storage import PriceHistoryCache

logger = logging.getLogger(__name__)


def build_calculator(settings: Settings) -> IndicatorCalculator:
    """Indicator calculator configured from settings."""
    return IndicatorCalculator(
        ema_periods=settings.ema_periods,
        macd_fast=settings.macd_fast,
        macd_slow=settings.macd_slow,
        macd_signal=settings.macd_signal,
        rsi_period=settings.rsi_period,
    )


class StreamManager:
    """Live indicator stream for one timeframe."""

    def __init__(
        self,
        timeframe: str,
        symbols: Sequence[str],
        settings: Settings,
        rest_client: BinanceRestClient,
        connector: Callable[..., Awaitable[Any]] = ws_connect,
    ):
        self.timeframe = timeframe
        self.settings = settings

        self.cache = PriceHistoryCache(settings.history_window)
        self.hub = SubscriberHub(timeframe, settings.subscriber_queue_size)
        self.coordinator = StreamCoordinator(
            timeframe,
            self.cache,
            build_calculator(settings),
            self.hub,
            forward_partials=settings.forward_partial_candles,
        )
        self.connections = BatchConnectionManager(
            symbols,
            timeframe,
            rest_client,
            self.cache,
            self.coordinator.handle_candle,
            settings,
            connector=connector,
            normalizer=CandleNormalizer(timeframe),
            on_seeded=self.coordinator.snapshot_from_history,
        )

        self._start_task: asyncio.Task | None = None
        self._started = asyncio.Event()
        self._stopped = False

    @property
    def symbols(self) -> list[str]:
        return self.connections.symbols

    @property
    def is_ready(self) -> bool:
        return self._started.is_set()

    def start_background(self) -> asyncio.Task:
        """Start seeding and connecting without waiting for it."""
        if self._start_task is None:
            self._start_task = asyncio.create_task(self.start())
        return self._start_task

    async def start(self) -> None:
        """Seed histories and open all batch connections."""
        if self._started.is_set() or self._stopped:
            return
        logger.info(f"Starting {self.timeframe} stream for {len(self.symbols)} symbols")
        await self.connections.init()
        self._started.set()
        logger.info(f"{self.timeframe} stream started")

    async def wait_ready(self, timeout: float | None = None) -> bool:
        """Wait until seeding finished and connections were opened."""
        try:
            await asyncio.wait_for(self._started.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def stop(self) -> None:
        """Stop connections, timers and detach all subscribers."""
        if self._stopped:
            return
        self._stopped = True

        current = asyncio.current_task()
        if self._start_task and self._start_task is not current and not self._start_task.done():
            self._start_task.cancel()
            try:
                await self._start_task
            except asyncio.CancelledError:
                pass

        await self.connections.stop()
        await self.hub.close()
        logger.info(f"{self.timeframe} stream stopped")

    def status(self) -> dict:
        return {
            "timeframe": self.timeframe,
            "ready": self.is_ready,
            "subscribers": self.hub.subscriber_count,
            "coordinator": self.coordinator.stats(),
            **self.connections.status(),
        }
