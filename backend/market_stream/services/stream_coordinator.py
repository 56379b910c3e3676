"""Turns normalized candles into published update events.

For every final candle of a symbol:
1. Record the close in the rolling window cache
2. Recompute the indicator snapshot from the updated history
3. Build an UpdateEvent, remember it as the symbol's latest
4. Broadcast it through the subscriber hub

The whole path runs under a per-symbol lock, so two final candles for the
same symbol can never race on the same history. Different symbols proceed
independently.

Partial candles are only forwarded when ``forward_partials`` is enabled.
They never touch the history and carry the previous snapshot.
"""

import asyncio
import logging
from collections import defaultdict

from market_core.indicators import IndicatorCalculator
from market_core.models import Candle, IndicatorSnapshot, UpdateEvent
from market_stream.services.hub import SubscriberHub
from market_stream.storage import PriceHistoryCache

logger = logging.getLogger(__name__)


class StreamCoordinator:
    """Per-timeframe glue between cache, indicator engine and hub."""

    def __init__(
        self,
        timeframe: str,
        cache: PriceHistoryCache,
        calculator: IndicatorCalculator,
        hub: SubscriberHub,
        forward_partials: bool = False,
    ):
        self.timeframe = timeframe
        self.cache = cache
        self.calculator = calculator
        self.hub = hub
        self.forward_partials = forward_partials

        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._latest: dict[str, UpdateEvent] = {}
        self._snapshots: dict[str, IndicatorSnapshot] = {}

        self.final_candles = 0
        self.partial_candles = 0
        self.skipped_partials = 0
        self.stale_candles = 0

    async def handle_candle(self, candle: Candle) -> UpdateEvent | None:
        """Process one candle.

        Returns:
            The published event, or None if the candle was not forwarded
        """
        if not candle.is_final and not self.forward_partials:
            self.skipped_partials += 1
            return None

        async with self._locks[candle.symbol]:
            if candle.is_final:
                event = self._process_final(candle)
            else:
                event = self._process_partial(candle)

            if event is None:
                return None

            self._latest[candle.symbol] = event
            await self.hub.broadcast(event)
            return event

    def _process_final(self, candle: Candle) -> UpdateEvent | None:
        self.final_candles += 1
        length = self.cache.record(candle.symbol, candle.close, candle.open_time)
        if length is None:
            # Older than the last recorded bar
            self.stale_candles += 1
            return None

        snapshot = self.calculator.calculate_latest(self.cache.get(candle.symbol))
        self._snapshots[candle.symbol] = snapshot

        logger.debug(
            f"{candle.symbol} {self.timeframe} closed at {candle.close} "
            f"(history {length})"
        )
        return UpdateEvent.from_candle(candle, snapshot)

    def _process_partial(self, candle: Candle) -> UpdateEvent:
        self.partial_candles += 1
        snapshot = self._snapshots.get(candle.symbol) or self.calculator.unavailable()
        return UpdateEvent.from_candle(candle, snapshot)

    def snapshot_from_history(self, candle: Candle) -> UpdateEvent:
        """Prime the symbol's latest event from seeded history without publishing.

        ``candle`` is the most recent seeded bar; its close is assumed to be
        the last entry of the cached history.
        """
        snapshot = self.calculator.calculate_latest(self.cache.get(candle.symbol))
        self._snapshots[candle.symbol] = snapshot
        event = UpdateEvent.from_candle(candle, snapshot)
        self._latest.setdefault(candle.symbol, event)
        return event

    def latest_snapshot(self, symbol: str) -> IndicatorSnapshot | None:
        return self._snapshots.get(symbol)

    def latest_events(self, limit: int | None = None) -> list[UpdateEvent]:
        """Current event per symbol, sorted by symbol."""
        events = [self._latest[s] for s in sorted(self._latest)]
        if limit is not None:
            events = events[:limit]
        return events

    def stats(self) -> dict[str, int]:
        return {
            "final_candles": self.final_candles,
            "partial_candles": self.partial_candles,
            "skipped_partials": self.skipped_partials,
            "stale_candles": self.stale_candles,
            "symbols": len(self._latest),
        }
