"""api — FastAPI WebSocket gateway and read-only schedule endpoints."""
from .gateway import RealtimeGateway, WebSocketTransport
from .server import create_app

__all__ = ["RealtimeGateway", "WebSocketTransport", "create_app"]
