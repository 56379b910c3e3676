"""Registry of live stream managers keyed by timeframe.

Managers are created lazily when the first subscriber for a timeframe
arrives and, when ``teardown_idle_managers`` is enabled, stopped as soon as
the last subscriber leaves. ``shutdown()`` stops everything.

The registry is owned by the application lifespan and handed to the HTTP
layer through ``app.state``.
"""

import asyncio
import logging
from typing import Callable

from market_stream.clients import BinanceRestClient
from market_stream.config import Settings
from market_stream.services.hub import Subscription
from market_stream.services.stream_manager import StreamManager

logger = logging.getLogger(__name__)

ManagerFactory = Callable[[str, list[str]], StreamManager]


class ManagerRegistry:
    """Create-on-first-subscriber registry of StreamManagers."""

    def __init__(
        self,
        settings: Settings,
        rest_client: BinanceRestClient,
        manager_factory: ManagerFactory | None = None,
    ):
        self.settings = settings
        self.rest_client = rest_client
        self._factory = manager_factory or self._default_factory
        self._managers: dict[str, StreamManager] = {}
        self._symbols: list[str] | None = None
        self._lock = asyncio.Lock()
        self._symbols_lock = asyncio.Lock()
        self._closed = False

    def _default_factory(self, timeframe: str, symbols: list[str]) -> StreamManager:
        return StreamManager(timeframe, symbols, self.settings, self.rest_client)

    def validate_timeframe(self, timeframe: str) -> str:
        """Raise ValueError for unknown timeframes."""
        if not self.settings.is_valid_timeframe(timeframe):
            raise ValueError(f"Invalid timeframe: {timeframe}")
        return timeframe

    async def get_symbols(self) -> list[str]:
        """Symbol universe, resolved once per registry."""
        async with self._symbols_lock:
            if self._symbols is None:
                if self.settings.symbols:
                    symbols = [s.upper() for s in self.settings.symbols]
                else:
                    symbols = await self.rest_client.get_futures_symbols()
                self._symbols = symbols[: self.settings.max_symbols]
                logger.info(f"Symbol universe: {len(self._symbols)} symbols")
        return self._symbols

    def get(self, timeframe: str) -> StreamManager | None:
        """Live manager for a timeframe, if any."""
        return self._managers.get(timeframe)

    def timeframes(self) -> list[str]:
        return sorted(self._managers)

    async def subscribe(self, timeframe: str) -> Subscription:
        """Attach a subscriber, creating and starting the manager if needed."""
        self.validate_timeframe(timeframe)
        # Discovery may hit the exchange; keep it outside the registry lock
        symbols = await self.get_symbols()

        async with self._lock:
            if self._closed:
                raise RuntimeError("Registry is shut down")

            manager = self._managers.get(timeframe)
            if manager is None:
                manager = self._factory(timeframe, symbols)
                self._managers[timeframe] = manager
                manager.start_background()
                logger.info(f"Created stream manager for {timeframe}")

            return await manager.hub.attach()

    async def unsubscribe(self, timeframe: str, subscription: Subscription) -> None:
        """Detach a subscriber; stop the manager when it was the last one.

        The subscriber leaves the hub before the first await, so a cancelled
        caller never leaves it attached.
        """
        manager = self._managers.get(timeframe)
        if manager is None:
            subscription.close()
            return

        manager.hub.discard(subscription)
        if not self.settings.teardown_idle_managers or manager.hub.subscriber_count:
            return

        async with self._lock:
            if manager.hub.subscriber_count or self._managers.get(timeframe) is not manager:
                return
            del self._managers[timeframe]

        logger.info(f"No subscribers left for {timeframe}, stopping manager")
        await asyncio.shield(manager.stop())

    async def shutdown(self) -> None:
        """Stop every manager."""
        async with self._lock:
            self._closed = True
            managers = list(self._managers.values())
            self._managers.clear()

        for manager in managers:
            try:
                await manager.stop()
            except Exception as e:
                logger.warning(f"Error stopping {manager.timeframe} manager: {e}")

    def status(self) -> dict:
        return {
            "symbols": len(self._symbols or []),
            "managers": [self._managers[tf].status() for tf in self.timeframes()],
        }
