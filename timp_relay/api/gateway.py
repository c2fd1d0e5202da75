"""
api/gateway.py — Accept relay WebSockets and pump frames into the router.

Endpoints pass a role hint taken from their path:
  /ws/extension → extension (producer)
  /ws/dashboard → dashboard (observer)
  /ws           → unclassified until a register_role message arrives
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from timp_relay.core import ConnectionRegistry, MessageRouter, TransportError
from timp_relay.core.protocol import Connected

log = logging.getLogger(__name__)


class WebSocketTransport:
    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_json(self, message: dict[str, Any]) -> None:
        try:
            await self.websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            raise TransportError(str(e) or e.__class__.__name__) from e


class RealtimeGateway:
    def __init__(self, registry: ConnectionRegistry, router: MessageRouter):
        self.registry = registry
        self.router = router

    async def serve(self, websocket: WebSocket, role_hint: Optional[str] = None) -> None:
        """Run one connection from accept to close."""
        await websocket.accept()
        connection = self.registry.register(WebSocketTransport(websocket), role_hint)
        try:
            await self.router.send(connection, Connected(
                client_id=connection.identity,
                client_type=connection.role,
                message=f"Connected as {connection.role.value}",
            ))
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    break
                raw = frame.get("text")
                if raw is None:
                    raw = frame.get("bytes") or b""
                await self.router.handle(connection.identity, raw)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            log.warning(f"WebSocket error ({connection.identity}): {e}")
        finally:
            self.registry.unregister(connection.identity)
