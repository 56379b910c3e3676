"""Data models."""

from market_core.models.candle import Candle, IndicatorSnapshot, UpdateEvent, now_ms

__all__ = [
    "Candle",
    "IndicatorSnapshot",
    "UpdateEvent",
    "now_ms",
]
