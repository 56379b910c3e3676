"""Streaming services."""

from market_stream.services.hub import SubscriberHub, Subscription
from market_stream.services.stream_coordinator import StreamCoordinator
from market_stream.services.stream_manager import StreamManager, build_calculator
from market_stream.services.registry import ManagerRegistry
from market_stream.services.snapshot import SnapshotService

__all__ = [
    "SubscriberHub",
    "Subscription",
    "StreamCoordinator",
    "StreamManager",
    "build_calculator",
    "ManagerRegistry",
    "SnapshotService",
]
