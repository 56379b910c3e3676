"""Decode raw Binance stream messages into canonical candles.

Handles both combined-stream envelopes::

    {"stream": "btcusdt@kline_1h", "data": {"e": "kline", "s": "BTCUSDT", "k": {...}}}

and raw kline events (``{"e": "kline", ...}``). Anything else, including
subscription acks and malformed payloads, decodes to ``None``. Malformed
input is expected noise on a public stream, so nothing is raised.
"""

import logging
import math
from typing import Any

import orjson

from market_core.models import Candle

logger = logging.getLogger(__name__)


class CandleNormalizer:
    """Stateless decoder with traffic counters."""

    def __init__(self, timeframe: str | None = None):
        """
        Args:
            timeframe: If set, candles for other intervals are dropped
        """
        self.timeframe = timeframe
        self.decoded = 0
        self.dropped = 0
        self.partial = 0
        self.final = 0

    def decode(self, message: str | bytes) -> Candle | None:
        """Decode one message into a Candle, or None if it is not a usable kline."""
        try:
            payload = orjson.loads(message)
        except orjson.JSONDecodeError:
            return self._drop("invalid JSON")

        candle = self.decode_payload(payload)
        if candle is None:
            return None

        self.decoded += 1
        if candle.is_final:
            self.final += 1
        else:
            self.partial += 1
        return candle

    def decode_payload(self, payload: Any) -> Candle | None:
        """Decode an already-parsed message."""
        if not isinstance(payload, dict):
            return self._drop("not an object")

        if isinstance(payload.get("data"), dict):
            payload = payload["data"]

        # Subscription confirmations and other event types
        if payload.get("e") != "kline":
            return self._drop("not a kline event")

        kline = payload.get("k")
        if not isinstance(kline, dict):
            return self._drop("missing kline body")

        try:
            symbol = str(payload.get("s") or kline["s"]).upper()
            interval = str(kline["i"])
            candle = Candle(
                symbol=symbol,
                timeframe=interval,
                open_time=int(kline["t"]),
                close_time=int(kline.get("T", 0)),
                open=float(kline["o"]),
                high=float(kline["h"]),
                low=float(kline["l"]),
                close=float(kline["c"]),
                volume=float(kline["v"]),
                is_final=bool(kline["x"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            return self._drop(f"bad kline field: {e}")

        if not math.isfinite(candle.close):
            return self._drop("non-finite close")

        if self.timeframe is not None and interval != self.timeframe:
            return self._drop(f"unexpected interval {interval}")

        return candle

    def _drop(self, reason: str) -> None:
        self.dropped += 1
        logger.debug(f"Dropped stream message: {reason}")
        return None

    def stats(self) -> dict[str, int]:
        """Counters for status reporting."""
        return {
            "decoded": self.decoded,
            "dropped": self.dropped,
            "partial": self.partial,
            "final": self.final,
        }
