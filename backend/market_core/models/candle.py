"""Hot path market data models.

These models use:
- @dataclass(slots=True, frozen=True) for minimal memory footprint
- float for prices and volumes
- Unix timestamps in milliseconds, as delivered by the exchange

Indicator values are ``float | None`` where ``None`` means "unavailable"
(not enough history for the period). NaN never leaves this package.
"""

import time
from dataclasses import dataclass, field


@dataclass(slots=True, frozen=True)
class Candle:
    """One OHLCV bar for a fixed time bucket.

    ``is_final`` is set once the bucket has closed; partial candles for the
    same ``open_time`` may arrive many times before that.
    """

    symbol: str
    timeframe: str
    open_time: int  # Unix timestamp in milliseconds
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: int = 0  # Unix timestamp in milliseconds
    is_final: bool = True

    @property
    def is_bullish(self) -> bool:
        """Check if this is a bullish (green) candle."""
        return self.close > self.open

    @property
    def range_size(self) -> float:
        """Get the full range (high - low) of the candle."""
        return self.high - self.low


@dataclass(slots=True, frozen=True)
class IndicatorSnapshot:
    """Latest indicator values for one symbol."""

    emas: dict[int, float | None] = field(default_factory=dict)
    macd: float | None = None
    macd_signal: float | None = None
    macd_hist: float | None = None
    rsi: float | None = None
    rsi_period: int = 14

    @classmethod
    def unavailable(
        cls, ema_periods: tuple[int, ...] | list[int], rsi_period: int = 14
    ) -> "IndicatorSnapshot":
        """Snapshot with every value unavailable."""
        return cls(emas={p: None for p in ema_periods}, rsi_period=rsi_period)

    @property
    def is_complete(self) -> bool:
        """True when every indicator has a value."""
        values = [*self.emas.values(), self.macd, self.macd_signal, self.macd_hist, self.rsi]
        return all(v is not None for v in values)

    def to_dict(self) -> dict[str, float | None]:
        """Flatten into wire field names (ema12, macdSignal, rsi14, ...)."""
        data: dict[str, float | None] = {
            f"ema{period}": value for period, value in sorted(self.emas.items())
        }
        data["macd"] = self.macd
        data["macdSignal"] = self.macd_signal
        data["macdHist"] = self.macd_hist
        data[f"rsi{self.rsi_period}"] = self.rsi
        return data


def now_ms() -> int:
    """Current Unix time in milliseconds."""
    return int(time.time() * 1000)


@dataclass(slots=True, frozen=True)
class UpdateEvent:
    """Enriched candle published to subscribers.

    Immutable once emitted; the same instance is handed to every subscriber.
    """

    symbol: str
    timeframe: str
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    indicators: IndicatorSnapshot
    is_final: bool = True
    ts: int = field(default_factory=now_ms)

    @classmethod
    def from_candle(
        cls, candle: Candle, indicators: IndicatorSnapshot, ts: int | None = None
    ) -> "UpdateEvent":
        """Build an event from a candle and its indicator snapshot."""
        return cls(
            symbol=candle.symbol,
            timeframe=candle.timeframe,
            open_time=candle.open_time,
            open=candle.open,
            high=candle.high,
            low=candle.low,
            close=candle.close,
            volume=candle.volume,
            indicators=indicators,
            is_final=candle.is_final,
            ts=now_ms() if ts is None else ts,
        )

    def to_dict(self) -> dict:
        """Wire shape consumed by the HTTP and WebSocket layers."""
        return {
            "symbol": self.symbol,
            "timeframe": self.timeframe,
            "openTime": self.open_time,
            "final": self.is_final,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
            **self.indicators.to_dict(),
            "ts": self.ts,
        }
