"""Technical indicators for the streaming engine.

All functions are pure: they take an ordered sequence of prices (oldest
first) and return a list of the same length. Positions where the indicator
is not yet defined hold ``None`` ("unavailable"), never 0 or NaN.

Canonical definitions:
- EMA is seeded with the simple average of the first ``period`` values.
- RSI uses Wilder's smoothing.
"""

import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from market_core.models import IndicatorSnapshot


# =============================================================================
# NumPy helpers
# =============================================================================

def _to_array(values: Sequence[float]) -> np.ndarray:
    return np.asarray(values, dtype=np.float64)


def _to_optional(arr: np.ndarray) -> list[float | None]:
    """Convert a float array to a list, mapping non-finite values to None."""
    return [float(v) if math.isfinite(v) else None for v in arr.tolist()]


def _ema_array(arr: np.ndarray, period: int) -> np.ndarray:
    """EMA over a float array, NaN where undefined."""
    result = np.full(len(arr), np.nan, dtype=np.float64)
    if period <= 0 or len(arr) < period:
        return result

    multiplier = 2.0 / (period + 1)
    result[period - 1] = np.mean(arr[:period])

    for i in range(period, len(arr)):
        result[i] = arr[i] * multiplier + result[i - 1] * (1 - multiplier)

    return result


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


# =============================================================================
# Public API
# =============================================================================

@dataclass(slots=True, frozen=True)
class MacdResult:
    """MACD series aligned to the input prices."""

    line: list[float | None]
    signal: list[float | None]
    histogram: list[float | None]


def ema(values: Sequence[float], period: int) -> list[float | None]:
    """
    Calculate Exponential Moving Average.

    Seed is the SMA of the first ``period`` values, placed at index
    ``period - 1``. Smoothing factor is ``2 / (period + 1)``.

    Args:
        values: Sequence of prices, oldest first
        period: EMA period

    Returns:
        List of EMA values (same length as input, None before the seed)
    """
    return _to_optional(_ema_array(_to_array(values), period))


def macd(
    values: Sequence[float],
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> MacdResult:
    """
    Calculate MACD line, signal line and histogram.

    The signal line is an EMA over the defined MACD line values only
    (renumbered from zero), then mapped back to the original indices.

    Args:
        values: Sequence of prices, oldest first
        fast: Fast EMA period
        slow: Slow EMA period
        signal: Signal EMA period

    Returns:
        MacdResult with three lists aligned to ``values``
    """
    arr = _to_array(values)
    line = _ema_array(arr, fast) - _ema_array(arr, slow)

    signal_line = np.full(len(arr), np.nan, dtype=np.float64)
    defined = np.flatnonzero(np.isfinite(line))
    if len(defined):
        signal_line[defined] = _ema_array(line[defined], signal)

    histogram = line - signal_line

    return MacdResult(
        line=_to_optional(line),
        signal=_to_optional(signal_line),
        histogram=_to_optional(histogram),
    )


def rsi(values: Sequence[float], period: int = 14) -> list[float | None]:
    """
    Calculate Relative Strength Index with Wilder's smoothing.

    The first value sits at index ``period`` and uses the plain average of
    the first ``period`` gains and losses. Afterwards:
    ``avg = (avg * (period - 1) + current) / period``.

    Args:
        values: Sequence of prices, oldest first
        period: RSI period

    Returns:
        List of RSI values in [0, 100], None where undefined
    """
    n = len(values)
    result: list[float | None] = [None] * n
    if period <= 0 or n < period + 1:
        return result

    deltas = np.diff(_to_array(values))
    gains = np.where(deltas > 0, deltas, 0.0)
    losses = np.where(deltas < 0, -deltas, 0.0)

    avg_gain = float(np.mean(gains[:period]))
    avg_loss = float(np.mean(losses[:period]))
    result[period] = _rsi_value(avg_gain, avg_loss)

    for i in range(period + 1, n):
        avg_gain = (avg_gain * (period - 1) + float(gains[i - 1])) / period
        avg_loss = (avg_loss * (period - 1) + float(losses[i - 1])) / period
        result[i] = _rsi_value(avg_gain, avg_loss)

    # Non-finite input poisons the averages; report it as unavailable
    return [v if v is not None and math.isfinite(v) else None for v in result]


def last_value(series: Sequence[float | None]) -> float | None:
    """Return the last element of a series, or None if empty."""
    if not series:
        return None
    return series[-1]


# =============================================================================
# IndicatorCalculator class
# =============================================================================

class IndicatorCalculator:
    """Calculator for the fixed indicator set published with every candle."""

    def __init__(
        self,
        ema_periods: Sequence[int] = (12, 26, 50, 100, 200),
        macd_fast: int = 12,
        macd_slow: int = 26,
        macd_signal: int = 9,
        rsi_period: int = 14,
    ):
        self.ema_periods = tuple(ema_periods)
        self.macd_fast = macd_fast
        self.macd_slow = macd_slow
        self.macd_signal = macd_signal
        self.rsi_period = rsi_period

    @property
    def required_history(self) -> int:
        """History length after which every indicator is defined."""
        return max(
            max(self.ema_periods, default=0),
            self.macd_slow + self.macd_signal - 1,
            self.rsi_period + 1,
        )

    def unavailable(self) -> IndicatorSnapshot:
        """Snapshot with every indicator unavailable."""
        return IndicatorSnapshot.unavailable(self.ema_periods, self.rsi_period)

    def calculate_all(self, closes: Sequence[float]) -> dict:
        """
        Calculate all indicator series for the given closes.

        Returns:
            Dict of series aligned to ``closes``
        """
        macd_result = macd(closes, self.macd_fast, self.macd_slow, self.macd_signal)
        return {
            "emas": {p: ema(closes, p) for p in self.ema_periods},
            "macd": macd_result.line,
            "macd_signal": macd_result.signal,
            "macd_hist": macd_result.histogram,
            "rsi": rsi(closes, self.rsi_period),
        }

    def calculate_latest(self, closes: Sequence[float]) -> IndicatorSnapshot:
        """
        Calculate indicators for the latest close only.

        Never raises for short input; missing values are None.
        """
        if not closes:
            return self.unavailable()

        series = self.calculate_all(closes)
        return IndicatorSnapshot(
            emas={p: last_value(s) for p, s in series["emas"].items()},
            macd=last_value(series["macd"]),
            macd_signal=last_value(series["macd_signal"]),
            macd_hist=last_value(series["macd_hist"]),
            rsi=last_value(series["rsi"]),
            rsi_period=self.rsi_period,
        )
