"""Batched Binance WebSocket connections for K-line streams using picows.

Symbols are split into fixed-size batches; each batch owns one combined
stream connection, one message queue and one worker task, so a slow or
broken batch never holds up the others.

Per-connection state machine::

    DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED -> (backoff) -> CONNECTING

Reconnects retry forever. The delay starts at ``backoff_min`` and doubles on
each consecutive failure up to ``backoff_max``; it resets when a connection
delivers its first message. Reconnects and keep-alive pings are scheduled
with ``loop.call_later`` so ``stop()`` can cancel every pending timer.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Sequence

from picows import ws_connect, WSFrame, WSTransport, WSListener, WSMsgType, WSCloseCode

from market_core.models import Candle
from market_core.normalizer import CandleNormalizer
from market_stream.config import Settings
from market_stream.storage import PriceHistoryCache

logger = logging.getLogger(__name__)

# Type alias for candle dispatch callback
CandleCallback = Callable[[Candle], Awaitable[None]]
# Called with (batch index, raw text payload)
MessageCallback = Callable[[int, str], None]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class Backoff:
    """Exponential reconnect delay."""

    min_delay: float = 1.0
    max_delay: float = 60.0
    current: float = field(init=False)

    def __post_init__(self) -> None:
        self.current = self.min_delay

    def next_delay(self) -> float:
        """Return the delay for this attempt and double it for the next one."""
        delay = self.current
        self.current = min(self.current * 2, self.max_delay)
        return delay

    def reset(self) -> None:
        self.current = self.min_delay


def stream_name(symbol: str, timeframe: str) -> str:
    """Binance stream name for a symbol's K-lines."""
    return f"{symbol.lower()}@kline_{timeframe}"


def make_batches(symbols: Sequence[str], batch_size: int) -> list[list[str]]:
    """Split symbols into consecutive batches of at most ``batch_size``."""
    if batch_size <= 0:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    return [list(symbols[i:i + batch_size]) for i in range(0, len(symbols), batch_size)]


class BatchListener(WSListener):
    """picows listener for one combined K-line stream."""

    def __init__(self, connection: "KlineBatchConnection"):
        self._connection = connection
        self._transport: WSTransport | None = None

    def on_ws_connected(self, transport: WSTransport):
        """Called when WebSocket connection is established."""
        self._transport = transport
        self._connection._on_connected(transport)

    def on_ws_disconnected(self, transport: WSTransport):
        """Called when WebSocket is disconnected."""
        self._transport = None
        self._connection._on_disconnected()

    def on_ws_frame(self, transport: WSTransport, frame: WSFrame):
        """Called when a new frame is received."""
        if frame.msg_type == WSMsgType.TEXT:
            self._connection._on_text(frame.get_payload_as_utf8_text())
        elif frame.msg_type == WSMsgType.PING:
            transport.send_pong(frame.get_payload_as_bytes())
        elif frame.msg_type == WSMsgType.CLOSE:
            transport.send_close(frame.get_close_code(), frame.get_close_message())
            transport.disconnect()

    def disconnect(self) -> None:
        """Disconnect the WebSocket."""
        if self._transport:
            self._transport.send_close(WSCloseCode.OK)
            self._transport.disconnect()


class KlineBatchConnection:
    """One upstream connection carrying the K-line streams of a batch."""

    def __init__(
        self,
        index: int,
        streams: list[str],
        on_message: MessageCallback,
        *,
        base_url: str = "wss://fstream.binance.com/stream?streams=",
        backoff: Backoff | None = None,
        keepalive_interval: float = 120.0,
        handshake_timeout: float = 20.0,
        auto_ping_idle_timeout: float = 30.0,
        auto_ping_reply_timeout: float = 10.0,
        connector: Callable[..., Awaitable[Any]] = ws_connect,
    ):
        self.index = index
        self.streams = streams
        self.base_url = base_url
        self.backoff = backoff or Backoff()
        self.keepalive_interval = keepalive_interval
        self.handshake_timeout = handshake_timeout
        self.auto_ping_idle_timeout = auto_ping_idle_timeout
        self.auto_ping_reply_timeout = auto_ping_reply_timeout
        self._on_message = on_message
        self._connector = connector

        self.state = ConnectionState.DISCONNECTED
        self.connects = 0
        self.failures = 0
        self.reconnects = 0
        self.messages = 0
        self.reconnect_delays: deque[float] = deque(maxlen=32)
        self.connected_at: float | None = None

        self._running = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task | None = None
        self._listener: BatchListener | None = None
        self._transport: WSTransport | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._keepalive_handle: asyncio.TimerHandle | None = None
        self._received_since_connect = False

    @property
    def url(self) -> str:
        return self.base_url + "/".join(self.streams)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def has_pending_reconnect(self) -> bool:
        return self._reconnect_handle is not None

    async def start(self) -> None:
        """Open the connection; failures are retried in the background."""
        if self._running or not self.streams:
            return

        self._running = True
        self._loop = asyncio.get_running_loop()
        self._open()

    async def stop(self) -> None:
        """Close the connection and cancel every pending timer."""
        self._running = False

        if self._reconnect_handle:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
        self._cancel_keepalive()

        if self._listener:
            self._listener.disconnect()

        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._transport = None
        self.state = ConnectionState.DISCONNECTED

    def _open(self) -> None:
        """Timer target: start one connection attempt."""
        self._reconnect_handle = None
        if not self._running or self._loop is None:
            return
        self._task = self._loop.create_task(self._connect())

    async def _connect(self) -> None:
        self.state = ConnectionState.CONNECTING
        self._received_since_connect = False

        def listener_factory():
            self._listener = BatchListener(self)
            return self._listener

        logger.info(f"Connecting kline batch {self.index} ({len(self.streams)} streams)")
        try:
            await self._connector(
                listener_factory,
                self.url,
                websocket_handshake_timeout=self.handshake_timeout,
                enable_auto_ping=True,
                auto_ping_idle_timeout=self.auto_ping_idle_timeout,
                auto_ping_reply_timeout=self.auto_ping_reply_timeout,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            self.state = ConnectionState.DISCONNECTED
            logger.warning(f"Kline batch {self.index} connect failed: {e}")
            self._schedule_reconnect()

    def _on_connected(self, transport: WSTransport) -> None:
        self._transport = transport
        self.state = ConnectionState.CONNECTED
        self.connects += 1
        self.connected_at = time.time()
        logger.info(f"Kline batch {self.index} connected ({len(self.streams)} streams)")
        self._schedule_keepalive()

    def _on_disconnected(self) -> None:
        self._cancel_keepalive()
        self._transport = None
        self.connected_at = None
        self.state = ConnectionState.DISCONNECTED
        if not self._received_since_connect:
            self.failures += 1

        if self._running:
            logger.warning(f"Kline batch {self.index} disconnected")
            self._schedule_reconnect()

    def _on_text(self, payload: str) -> None:
        self.messages += 1
        if not self._received_since_connect:
            self._received_since_connect = True
            self.backoff.reset()
        self._on_message(self.index, payload)

    def _schedule_reconnect(self) -> None:
        if not self._running or self._reconnect_handle is not None or self._loop is None:
            return

        delay = self.backoff.next_delay()
        self.reconnects += 1
        self.reconnect_delays.append(delay)
        logger.info(f"Reconnecting kline batch {self.index} in {delay} seconds...")
        self._reconnect_handle = self._loop.call_later(delay, self._open)

    def _schedule_keepalive(self) -> None:
        if self._loop is None or self.keepalive_interval <= 0:
            return
        self._keepalive_handle = self._loop.call_later(
            self.keepalive_interval, self._send_keepalive
        )

    def _send_keepalive(self) -> None:
        self._keepalive_handle = None
        if self._transport is None or self.state != ConnectionState.CONNECTED:
            return
        try:
            self._transport.send_ping()
        except Exception as e:
            logger.warning(f"Keep-alive ping failed on kline batch {self.index}: {e}")
        self._schedule_keepalive()

    def _cancel_keepalive(self) -> None:
        if self._keepalive_handle:
            self._keepalive_handle.cancel()
            self._keepalive_handle = None

    def status(self) -> dict:
        return {
            "index": self.index,
            "streams": len(self.streams),
            "state": self.state.value,
            "connects": self.connects,
            "failures": self.failures,
            "reconnects": self.reconnects,
            "messages": self.messages,
            "last_delays": list(self.reconnect_delays)[-5:],
        }


class BatchConnectionManager:
    """Seeds price histories and runs one connection per symbol batch."""

    def __init__(
        self,
        symbols: Sequence[str],
        timeframe: str,
        rest_client,
        cache: PriceHistoryCache,
        dispatch: CandleCallback,
        settings: Settings,
        connector: Callable[..., Awaitable[Any]] = ws_connect,
        normalizer: CandleNormalizer | None = None,
        on_seeded: Callable[[Candle], None] | None = None,
    ):
        self.symbols = list(dict.fromkeys(s.upper() for s in symbols))
        self.timeframe = timeframe
        self.rest_client = rest_client
        self.cache = cache
        self.settings = settings
        self.normalizer = normalizer or CandleNormalizer(timeframe)
        self._dispatch = dispatch
        self._on_seeded = on_seeded

        self.batches = make_batches(self.symbols, settings.batch_size)
        self.connections = [
            KlineBatchConnection(
                index,
                [stream_name(s, timeframe) for s in batch],
                self._enqueue,
                base_url=settings.ws_base_url,
                backoff=Backoff(settings.backoff_min, settings.backoff_max),
                keepalive_interval=settings.keepalive_interval,
                handshake_timeout=settings.handshake_timeout,
                auto_ping_idle_timeout=settings.auto_ping_idle_timeout,
                auto_ping_reply_timeout=settings.auto_ping_reply_timeout,
                connector=connector,
            )
            for index, batch in enumerate(self.batches)
        ]
        self._queues: list[asyncio.Queue[str]] = [
            asyncio.Queue(maxsize=settings.batch_queue_size) for _ in self.batches
        ]
        self._workers: list[asyncio.Task] = []

        self.seed_failures: list[str] = []
        self.queue_overflows = 0

        logger.info(
            f"Kline batches for {timeframe}: {len(self.symbols)} symbols "
            f"in {len(self.batches)} connections"
        )

    async def init(self) -> None:
        """Seed every symbol's history, then open all batch connections."""
        await self.seed_histories()
        await self.connect()

    async def seed_histories(self) -> None:
        """Fetch historical closes for every symbol (best-effort)."""
        semaphore = asyncio.Semaphore(max(1, self.settings.seed_concurrency))

        async def seed(symbol: str) -> None:
            async with semaphore:
                await self._seed_symbol(symbol)

        await asyncio.gather(*(seed(s) for s in self.symbols))

        logger.info(
            f"Seeded {len(self.symbols) - len(self.seed_failures)}/{len(self.symbols)} "
            f"symbols for {self.timeframe}"
        )

    async def _seed_symbol(self, symbol: str) -> bool:
        try:
            candles = await self.rest_client.get_klines(
                symbol, self.timeframe, limit=self.cache.capacity
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Failed to fetch initial klines for {symbol} {self.timeframe}: {e}")
            self.cache.seed(symbol, [])
            self.seed_failures.append(symbol)
            return False

        closed = [c for c in candles if c.is_final]
        self.cache.seed(
            symbol,
            [c.close for c in closed],
            last_open_time=closed[-1].open_time if closed else None,
        )
        if closed and self._on_seeded:
            self._on_seeded(closed[-1])
        return True

    async def connect(self) -> None:
        """Start one worker and one connection per batch."""
        for index, connection in enumerate(self.connections):
            self._workers.append(asyncio.create_task(self._worker(index)))
            await connection.start()

    async def stop(self) -> None:
        """Close all connections, cancel timers and workers."""
        for connection in self.connections:
            await connection.stop()

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()

        logger.info(f"Kline batches for {self.timeframe} stopped")

    def _enqueue(self, index: int, payload: str) -> None:
        try:
            self._queues[index].put_nowait(payload)
        except asyncio.QueueFull:
            self.queue_overflows += 1
            if self.queue_overflows % 1000 == 1:
                logger.warning(
                    f"Kline batch {index} queue full, dropped {self.queue_overflows} messages"
                )

    async def _worker(self, index: int) -> None:
        """Decode and dispatch messages of one batch in arrival order."""
        queue = self._queues[index]
        while True:
            payload = await queue.get()
            try:
                candle = self.normalizer.decode(payload)
                if candle is not None:
                    await self._dispatch(candle)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Error dispatching kline on batch {index}")
            finally:
                queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued message has been dispatched."""
        for queue in self._queues:
            await queue.join()

    def status(self) -> dict:
        return {
            "symbols": len(self.symbols),
            "seed_failures": len(self.seed_failures),
            "queue_overflows": self.queue_overflows,
            "decoder": self.normalizer.stats(),
            "batches": [c.status() for c in self.connections],
        }
