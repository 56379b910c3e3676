"""Technical indicators (pure math, no I/O)."""

from market_core.indicators.indicators import (
    ema,
    macd,
    rsi,
    last_value,
    MacdResult,
    IndicatorCalculator,
)

__all__ = [
    "ema",
    "macd",
    "rsi",
    "last_value",
    "MacdResult",
    "IndicatorCalculator",
]
