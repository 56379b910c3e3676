"""WebSocket endpoint for live indicator updates."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

import httpx
import orjson
from fastapi import WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel

from market_stream.services import ManagerRegistry, Subscription

logger = logging.getLogger(__name__)

# Seconds without client traffic before the server sends a ping
IDLE_PING_INTERVAL = 60.0


def _orjson_dumps(obj: Any) -> str:
    """Serialize object to JSON string using orjson."""
    return orjson.dumps(obj, default=str).decode("utf-8")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebSocketMessage(BaseModel):
    """WebSocket message format."""

    type: str  # "connected", "candle", "ping", "pong", "error"
    data: dict[str, Any]
    timestamp: datetime

    def to_json(self) -> str:
        """Serialize to JSON string using orjson for performance."""
        return _orjson_dumps(self.model_dump())


def _message(msg_type: str, data: dict[str, Any] | None = None) -> str:
    return WebSocketMessage(type=msg_type, data=data or {}, timestamp=_utcnow()).to_json()


async def websocket_endpoint(websocket: WebSocket, timeframe: str):
    """
    WebSocket endpoint streaming update events for one timeframe.

    Messages sent to clients:
    - connected: Subscription established
    - candle: Update event (symbol, OHLCV, indicators, ts)
    - ping: Keep-alive after 60s without client traffic
    - pong: Reply to a client ping

    Message format:
    {
        "type": "candle",
        "data": {...},
        "timestamp": "2024-01-01T00:00:00+00:00"
    }
    """
    registry: ManagerRegistry = websocket.app.state.registry
    await websocket.accept()

    try:
        subscription = await registry.subscribe(timeframe)
    except ValueError as e:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(e))
        return
    except (httpx.HTTPError, RuntimeError) as e:
        logger.warning(f"Cannot open {timeframe} stream: {e}")
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR, reason="Stream unavailable")
        return

    tasks: list[asyncio.Task] = []
    try:
        await websocket.send_text(_message(
            "connected",
            {"timeframe": timeframe, "subscription": subscription.id},
        ))

        tasks = [
            asyncio.create_task(forward_events(websocket, subscription)),
            asyncio.create_task(receive_messages(websocket)),
        ]
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)

        for task in done:
            if task.cancelled():
                continue
            exc = task.exception()
            if exc and not isinstance(exc, WebSocketDisconnect):
                logger.warning(f"WebSocket error on {timeframe}: {exc}")

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        for task in tasks:
            task.cancel()
        # Ahead of the gather so a cancelled endpoint still leaves the hub
        await registry.unsubscribe(timeframe, subscription)
        await asyncio.gather(*tasks, return_exceptions=True)


async def forward_events(websocket: WebSocket, subscription: Subscription) -> None:
    """Send hub events to the client until the subscription ends."""
    async for event in subscription:
        await websocket.send_text(_message("candle", event.to_dict()))


async def receive_messages(websocket: WebSocket) -> None:
    """Handle client messages; ping the client when it goes quiet."""
    while True:
        try:
            data = await asyncio.wait_for(
                websocket.receive_text(),
                timeout=IDLE_PING_INTERVAL,
            )
        except asyncio.TimeoutError:
            await websocket.send_text(_message("ping"))
            continue

        try:
            message = orjson.loads(data)
        except orjson.JSONDecodeError:
            await websocket.send_text(_message("error", {"message": "Invalid JSON"}))
            continue

        await handle_client_message(websocket, message)


async def handle_client_message(websocket: WebSocket, message: Any) -> None:
    """Handle incoming message from client."""
    msg_type = message.get("type", "") if isinstance(message, dict) else ""

    if msg_type == "ping":
        await websocket.send_text(_message("pong"))
    elif msg_type == "pong":
        return
    else:
        await websocket.send_text(_message(
            "error", {"message": f"Unknown message type: {msg_type}"}
        ))
