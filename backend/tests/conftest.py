"""Shared fixtures: fake picows connector, fake REST client, message builders."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import orjson
import pytest
from picows import WSMsgType

from market_core.models import Candle
from market_stream.config import Settings


class FakeTransport:
    """Records what a connection sends; ``disconnect`` fires the listener callback."""

    def __init__(self):
        self.listener = None
        self.pings = 0
        self.closed = False
        self.disconnected = False

    def send_ping(self, message=None):
        self.pings += 1

    def send_pong(self, message=None):
        pass

    def send_close(self, close_code=None, close_message=None):
        self.closed = True

    def disconnect(self, graceful=True):
        if self.disconnected:
            return
        self.disconnected = True
        if self.listener is not None:
            self.listener.on_ws_disconnected(self)


class FakeFrame:
    def __init__(self, text: str, msg_type=WSMsgType.TEXT):
        self.msg_type = msg_type
        self._text = text

    def get_payload_as_utf8_text(self) -> str:
        return self._text

    def get_payload_as_bytes(self) -> bytes:
        return self._text.encode()


class FakeConnector:
    """Stands in for ``picows.ws_connect``.

    ``failures`` maps a URL substring to the number of attempts that fail
    before a connection to a matching URL succeeds.
    """

    def __init__(self, failures: dict[str, int] | None = None):
        self.failures = dict(failures or {})
        self.attempts: dict[str, int] = {}
        self.transports: dict[str, FakeTransport] = {}
        self.kwargs: list[dict] = []

    async def __call__(self, listener_factory, url, **kwargs):
        self.kwargs.append(kwargs)
        self.attempts[url] = self.attempts.get(url, 0) + 1

        for fragment, count in self.failures.items():
            if fragment in url and self.attempts[url] <= count:
                raise OSError(f"connection refused: {url}")

        listener = listener_factory()
        transport = FakeTransport()
        transport.listener = listener
        self.transports[url] = transport
        listener.on_ws_connected(transport)
        return transport, listener

    def transport_for(self, fragment: str) -> FakeTransport:
        for url, transport in self.transports.items():
            if fragment in url:
                return transport
        raise KeyError(fragment)

    def send(self, fragment: str, text: str) -> None:
        """Deliver a text frame on the live connection matching ``fragment``."""
        transport = self.transport_for(fragment)
        transport.listener.on_ws_frame(transport, FakeFrame(text))

    def attempts_for(self, fragment: str) -> int:
        return sum(n for url, n in self.attempts.items() if fragment in url)


def kline_message(
    symbol: str = "BTCUSDT",
    open_time: int = 0,
    close: float = 100.0,
    final: bool = True,
    interval: str = "1m",
    combined: bool = True,
) -> str:
    """Build a Binance kline stream message."""
    event = {
        "e": "kline",
        "E": open_time + 60_000,
        "s": symbol,
        "k": {
            "t": open_time,
            "T": open_time + 59_999,
            "s": symbol,
            "i": interval,
            "o": str(close),
            "h": str(close + 1),
            "l": str(close - 1),
            "c": str(close),
            "v": "10.5",
            "x": final,
        },
    }
    if combined:
        event = {"stream": f"{symbol.lower()}@kline_{interval}", "data": event}
    return orjson.dumps(event).decode()


def make_candle(
    symbol: str = "BTCUSDT",
    open_time: int = 0,
    close: float = 100.0,
    final: bool = True,
    timeframe: str = "1m",
) -> Candle:
    return Candle(
        symbol=symbol,
        timeframe=timeframe,
        open_time=open_time,
        open=close,
        high=close + 1,
        low=close - 1,
        close=close,
        volume=10.0,
        close_time=open_time + 59_999,
        is_final=final,
    )


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the event loop until it is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def settings():
    """Fast settings for tests (tiny backoff, no keep-alive)."""
    return Settings(
        symbols=["BTCUSDT", "ETHUSDT"],
        batch_size=1,
        history_window=500,
        backoff_min=0.01,
        backoff_max=1.0,
        keepalive_interval=0,
        seed_concurrency=4,
    )


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def rest_client():
    """REST client returning no history and the two test symbols."""
    client = MagicMock()
    client.get_klines = AsyncMock(return_value=[])
    client.get_futures_symbols = AsyncMock(return_value=["BTCUSDT", "ETHUSDT"])
    client.close = AsyncMock()
    return client
