from fastapi import WebSocket, WebSocketDisconnect
from typing import Any, Optional, Set
import json

from services.notifications import UiEvent
from utils.logger import get_logger

logger = get_logger("api.websocket")


class ConnectionManager:
    """Manages local UI WebSocket connections and relays agent notifications."""

    def __init__(self):
        self.active_connections: Set[WebSocket] = set()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.add(websocket)

    def disconnect(self, websocket: WebSocket):
        self.active_connections.discard(websocket)

    async def broadcast(self, message: dict):
        """Send message to all connected clients"""
        if not self.active_connections:
            return

        message_json = json.dumps(message, default=str)
        disconnected = set()

        for connection in list(self.active_connections):
            try:
                await connection.send_text(message_json)
            except Exception:
                disconnected.add(connection)

        # Clean up disconnected clients
        self.active_connections -= disconnected

    async def send_personal(self, websocket: WebSocket, message: dict):
        """Send message to specific client"""
        try:
            await websocket.send_text(json.dumps(message, default=str))
        except Exception:
            self.disconnect(websocket)

    async def notify(self, event: UiEvent, payload: dict[str, Any]) -> None:
        await self.broadcast({"type": event.value, "data": payload})


def build_snapshot(orchestrator) -> dict:
    """Everything a freshly connected UI needs to render."""
    return {
        "status": orchestrator.get_status(),
        "accounts": [a.to_wire() for a in orchestrator.registry.get_all_accounts()],
    }


async def handle_websocket(
    websocket: WebSocket,
    manager: ConnectionManager,
    orchestrator: Optional[Any] = None,
):
    """Main WebSocket handler"""
    await manager.connect(websocket)

    if orchestrator is not None:
        await manager.send_personal(websocket, {"type": "init", "data": build_snapshot(orchestrator)})

    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except ValueError:
                continue
            if not isinstance(message, dict):
                continue

            if message.get("type") == "ping":
                await manager.send_personal(websocket, {"type": "pong"})

            elif message.get("type") == "snapshot" and orchestrator is not None:
                await manager.send_personal(
                    websocket, {"type": "init", "data": build_snapshot(orchestrator)}
                )

    except WebSocketDisconnect:
        manager.disconnect(websocket)
    except Exception as e:
        logger.warning("WebSocket error", error=str(e))
        manager.disconnect(websocket)
