"""Fan-out of update events to live subscribers.

Each subscription owns a bounded queue. ``broadcast`` only uses
``put_nowait``, so one slow consumer can never block the others; when a
subscriber's queue is full its oldest pending event is dropped.

There is no backlog replay: a new subscriber only sees events broadcast
after it attached.
"""

import asyncio
import itertools
import logging
from typing import AsyncIterator

from market_core.models import UpdateEvent

logger = logging.getLogger(__name__)

_subscription_ids = itertools.count(1)


class Subscription:
    """Handle returned by ``SubscriberHub.attach``.

    Iterate with ``async for event in subscription`` until detached.
    """

    _CLOSED = object()

    def __init__(self, key: str, queue_size: int = 1000):
        self.id = next(_subscription_ids)
        self.key = key
        self.dropped = 0
        self.delivered = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, queue_size))
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def deliver(self, event: UpdateEvent) -> bool:
        """Queue an event without blocking. Returns False once closed."""
        if self._closed:
            return False
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)
        self.delivered += 1
        return True

    def close(self) -> None:
        """Stop the subscription; pending events are discarded."""
        if self._closed:
            return
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(self._CLOSED)

    async def get(self) -> UpdateEvent | None:
        """Wait for the next event, or None once closed."""
        if self._closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is self._CLOSED:
            # Leave the marker for any other waiter
            self._queue.put_nowait(self._CLOSED)
            return None
        return item

    def __aiter__(self) -> AsyncIterator[UpdateEvent]:
        return self

    async def __anext__(self) -> UpdateEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class SubscriberHub:
    """Attach/detach/broadcast for one configuration key (timeframe)."""

    def __init__(self, key: str, queue_size: int = 1000):
        self.key = key
        self.queue_size = queue_size
        self._subscriptions: dict[int, Subscription] = {}
        self._lock = asyncio.Lock()
        self.broadcasts = 0

    async def attach(self) -> Subscription:
        """Register a new subscriber."""
        subscription = Subscription(self.key, self.queue_size)
        async with self._lock:
            self._subscriptions[subscription.id] = subscription
        logger.info(
            f"Subscriber {subscription.id} attached to {self.key}. "
            f"Total subscribers: {len(self._subscriptions)}"
        )
        return subscription

    def discard(self, subscription: Subscription) -> bool:
        """Close and remove a subscriber without waiting.

        Returns:
            True if the subscriber was attached
        """
        subscription.close()
        if self._subscriptions.pop(subscription.id, None) is None:
            return False
        logger.info(
            f"Subscriber {subscription.id} detached from {self.key}. "
            f"Total subscribers: {len(self._subscriptions)}"
        )
        return True

    async def detach(self, subscription: Subscription) -> None:
        """Remove a subscriber; it receives nothing after this returns."""
        async with self._lock:
            self.discard(subscription)

    async def broadcast(self, event: UpdateEvent) -> int:
        """Deliver an event to every attached subscriber.

        Returns:
            Number of subscribers the event was handed to
        """
        self.broadcasts += 1
        if not self._subscriptions:
            return 0

        delivered = 0
        # Snapshot so attach/detach during delivery is safe
        for subscription in list(self._subscriptions.values()):
            try:
                if subscription.deliver(event):
                    delivered += 1
            except Exception as e:
                logger.warning(f"Failed to deliver to subscriber {subscription.id}: {e}")
                await self.detach(subscription)
        return delivered

    async def close(self) -> None:
        """Detach every subscriber."""
        async with self._lock:
            subscriptions = list(self._subscriptions.values())
            self._subscriptions.clear()
        for subscription in subscriptions:
            subscription.close()

    @property
    def subscriber_count(self) -> int:
        """Get number of attached subscribers."""
        return len(self._subscriptions)
