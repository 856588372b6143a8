"""
WebSocket push channel.

Every EventBus event (``trade:executed``, ``analysis:complete``,
``spread:opportunity`` ...) is relayed to connected dashboards as a
``{type, data, timestamp}`` envelope. Clients may send ``ping`` or
``status`` messages; anything else is ignored.
"""

import json
from typing import Any, Set

from fastapi import WebSocket, WebSocketDisconnect

from services.event_bus import event_envelope
from services.runtime import TradingRuntime
from utils.logger import get_logger

logger = get_logger("websocket")


def _encode(message: dict) -> str:
    # Trade rows carry datetimes
    return json.dumps(message, default=str)


class ConnectionManager:
    """Tracks open dashboard sockets and fans events out to them."""

    def __init__(self):
        self.active_connections: Set[WebSocket] = set()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.add(websocket)
        logger.info("Dashboard connected", clients=len(self.active_connections))

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.discard(websocket)
            logger.info("Dashboard disconnected", clients=len(self.active_connections))

    async def broadcast(self, message: dict):
        if not self.active_connections:
            return
        text = _encode(message)
        stale = []
        for connection in list(self.active_connections):
            try:
                await connection.send_text(text)
            except Exception:
                stale.append(connection)
        for connection in stale:
            self.disconnect(connection)

    async def send_personal(self, websocket: WebSocket, message: dict):
        try:
            await websocket.send_text(_encode(message))
        except Exception:
            self.disconnect(websocket)

    async def on_event(self, event_type: str, data: Any):
        """EventBus subscriber for ``ALL_EVENTS``."""
        await self.broadcast(event_envelope(event_type, data))


manager = ConnectionManager()


async def _reply(websocket: WebSocket, runtime: TradingRuntime, message: dict):
    kind = message.get("type")
    if kind == "ping":
        await manager.send_personal(websocket, {"type": "pong"})
    elif kind == "status":
        await manager.send_personal(
            websocket, event_envelope("system:status", await runtime.get_status())
        )


async def handle_websocket(websocket: WebSocket, runtime: TradingRuntime):
    await manager.connect(websocket)
    await manager.send_personal(websocket, event_envelope("init", await runtime.get_status()))

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if isinstance(message, dict):
                await _reply(websocket, runtime, message)
    except WebSocketDisconnect:
        manager.disconnect(websocket)
    except Exception as e:
        logger.warning("WebSocket error", error=str(e))
        manager.disconnect(websocket)
