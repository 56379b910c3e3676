"""API endpoints."""

from market_stream.api.routes import router
from market_stream.api.websocket import websocket_endpoint, WebSocketMessage

__all__ = [
    "router",
    "websocket_endpoint",
    "WebSocketMessage",
]
