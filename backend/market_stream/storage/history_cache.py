"""Rolling window of closing prices per symbol.

One bounded deque per symbol holds the closes of finalized candles,
oldest first. Appending past the cap evicts from the front.

Writers for the same symbol are serialized with a per-symbol lock so
that connections on different batches (or threads) cannot interleave.
Different symbols never contend.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Iterable

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 500


class _SymbolHistory:
    __slots__ = ("closes", "last_open_time", "lock")

    def __init__(self, capacity: int):
        self.closes: deque[float] = deque(maxlen=capacity)
        self.last_open_time: int | None = None
        self.lock = threading.Lock()


class PriceHistoryCache:
    """Bounded price history for every symbol of one timeframe."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._histories: dict[str, _SymbolHistory] = {}
        # Guards creation of per-symbol entries only
        self._registry_lock = threading.Lock()

    def _history(self, symbol: str) -> _SymbolHistory:
        history = self._histories.get(symbol)
        if history is None:
            with self._registry_lock:
                history = self._histories.get(symbol)
                if history is None:
                    history = _SymbolHistory(self.capacity)
                    self._histories[symbol] = history
        return history

    def record(
        self, symbol: str, price: float, open_time: int | None = None
    ) -> int | None:
        """Append the close of a finalized candle.

        If ``open_time`` matches the last recorded candle the close is
        replaced instead of appended; an older ``open_time`` is ignored.

        Args:
            symbol: Trading symbol
            price: Closing price
            open_time: Candle open time in ms (optional)

        Returns:
            History length after the update, or None if the close was
            older than the last recorded candle and ignored
        """
        history = self._history(symbol)
        with history.lock:
            last = history.last_open_time
            if open_time is not None and last is not None and history.closes:
                if open_time == last:
                    history.closes[-1] = price
                    return len(history.closes)
                if open_time < last:
                    logger.debug(
                        f"Ignoring out-of-order close for {symbol}: "
                        f"{open_time} < {last}"
                    )
                    return None

            history.closes.append(price)
            if open_time is not None:
                history.last_open_time = open_time
            return len(history.closes)

    def seed(
        self,
        symbol: str,
        prices: Iterable[float],
        last_open_time: int | None = None,
    ) -> int:
        """Replace a symbol's history with the tail of ``prices``.

        Returns:
            History length after seeding
        """
        history = self._history(symbol)
        with history.lock:
            history.closes.clear()
            history.closes.extend(prices)
            history.last_open_time = last_open_time
            return len(history.closes)

    def get(self, symbol: str) -> list[float]:
        """Return a copy of the symbol's closes, oldest first (possibly empty)."""
        history = self._histories.get(symbol)
        if history is None:
            return []
        with history.lock:
            return list(history.closes)

    def length(self, symbol: str) -> int:
        """Number of closes held for a symbol."""
        history = self._histories.get(symbol)
        return len(history.closes) if history is not None else 0

    def symbols(self) -> list[str]:
        """Symbols with an entry in the cache."""
        return list(self._histories)

    def clear(self) -> None:
        """Drop all histories."""
        with self._registry_lock:
            self._histories.clear()

    def __len__(self) -> int:
        return len(self._histories)
