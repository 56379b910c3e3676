"""Tests for the subscriber hub."""

import asyncio
from unittest.mock import MagicMock

import pytest

from market_core.indicators import IndicatorCalculator
from market_core.models import UpdateEvent
from market_stream.services import SubscriberHub
from conftest import make_candle


def make_event(open_time: int = 0, close: float = 100.0) -> UpdateEvent:
    return UpdateEvent.from_candle(
        make_candle(open_time=open_time, close=close),
        IndicatorCalculator().unavailable(),
        ts=1,
    )


class TestSubscriberHub:
    """Tests for SubscriberHub."""

    @pytest.mark.asyncio
    async def test_broadcast_reaches_all_subscribers(self):
        hub = SubscriberHub("1m")
        first = await hub.attach()
        second = await hub.attach()
        event = make_event()

        assert await hub.broadcast(event) == 2
        assert await first.get() is event
        assert await second.get() is event

    @pytest.mark.asyncio
    async def test_broadcast_without_subscribers(self):
        hub = SubscriberHub("1m")
        assert await hub.broadcast(make_event()) == 0
        assert hub.broadcasts == 1

    @pytest.mark.asyncio
    async def test_no_replay_for_late_subscriber(self):
        hub = SubscriberHub("1m")
        await hub.broadcast(make_event(0))
        late = await hub.attach()
        await hub.broadcast(make_event(60_000))

        event = await late.get()
        assert event.open_time == 60_000
        assert late.pending == 0

    @pytest.mark.asyncio
    async def test_detach_stops_delivery(self):
        hub = SubscriberHub("1m")
        leaving = await hub.attach()
        staying = await hub.attach()

        await hub.detach(leaving)
        await hub.broadcast(make_event())

        assert hub.subscriber_count == 1
        assert leaving.closed
        assert await leaving.get() is None
        assert staying.pending == 1

    @pytest.mark.asyncio
    async def test_iteration_ends_after_detach(self):
        hub = SubscriberHub("1m")
        subscription = await hub.attach()
        received = []

        async def consume():
            async for event in subscription:
                received.append(event)

        task = asyncio.create_task(consume())
        await hub.broadcast(make_event(0))
        await hub.broadcast(make_event(60_000))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        await hub.detach(subscription)
        await asyncio.wait_for(task, timeout=1.0)

        assert [e.open_time for e in received] == [0, 60_000]

    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest(self):
        hub = SubscriberHub("1m", queue_size=3)
        slow = await hub.attach()

        for i in range(5):
            await hub.broadcast(make_event(i * 60_000))

        assert slow.dropped == 2
        assert slow.pending == 3
        assert [(await slow.get()).open_time for _ in range(3)] == [120_000, 180_000, 240_000]

    @pytest.mark.asyncio
    async def test_slow_subscriber_does_not_block_others(self):
        hub = SubscriberHub("1m", queue_size=1)
        await hub.attach()  # never read
        fast = await hub.attach()
        received = []

        for i in range(10):
            await hub.broadcast(make_event(i))
            received.append(await fast.get())

        assert len(received) == 10

    @pytest.mark.asyncio
    async def test_failing_subscriber_is_detached(self):
        hub = SubscriberHub("1m")
        broken = await hub.attach()
        healthy = await hub.attach()
        broken.deliver = MagicMock(side_effect=RuntimeError("gone"))

        assert await hub.broadcast(make_event()) == 1
        assert hub.subscriber_count == 1
        assert healthy.pending == 1

    @pytest.mark.asyncio
    async def test_close_detaches_everyone(self):
        hub = SubscriberHub("1m")
        subscriptions = [await hub.attach() for _ in range(3)]

        await hub.close()

        assert hub.subscriber_count == 0
        assert all(s.closed for s in subscriptions)
        assert await hub.broadcast(make_event()) == 0

    @pytest.mark.asyncio
    async def test_subscription_ids_are_unique(self):
        hub = SubscriberHub("1m")
        ids = {(await hub.attach()).id for _ in range(5)}
        assert len(ids) == 5
