"""WebSocket endpoint for the UI control channel."""

import json
from typing import Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
import structlog

from src.services.control_plane import ControlPlane


logger = structlog.get_logger().bind(component="websocket")
router = APIRouter()


class ConnectionManager:
    """WebSocket connection manager."""

    def __init__(self):
        self.active_connections: Set[WebSocket] = set()

    async def connect(self, websocket: WebSocket):
        """Accept and register a new WebSocket connection.

        Args:
            websocket: WebSocket connection to accept and register.
        """
        await websocket.accept()
        self.active_connections.add(websocket)
        logger.info("WebSocket client connected", total_connections=len(self.active_connections))

    def disconnect(self, websocket: WebSocket):
        """Unregister a WebSocket connection."""
        if websocket in self.active_connections:
            self.active_connections.discard(websocket)
            logger.info("WebSocket client disconnected", total_connections=len(self.active_connections))

    async def send(self, websocket: WebSocket, message: dict):
        """Send a message to one client, dropping it if the socket is gone."""
        try:
            await websocket.send_text(json.dumps(message, default=str))
        except (WebSocketDisconnect, RuntimeError, ConnectionError) as e:
            logger.debug("Dropping message for closed connection", error=str(e))
            self.disconnect(websocket)

    async def broadcast(self, message: dict):
        """Broadcast message to all connected clients."""
        if not self.active_connections:
            return

        message_str = json.dumps(message, default=str)
        disconnected = set()

        for connection in list(self.active_connections):
            try:
                await connection.send_text(message_str)
            except (WebSocketDisconnect, RuntimeError, ConnectionError):
                disconnected.add(connection)

        # Clean up disconnected clients
        for connection in disconnected:
            self.disconnect(connection)


manager = ConnectionManager()


@router.websocket("")
async def websocket_endpoint(websocket: WebSocket):
    """Main WebSocket endpoint for commands and real-time updates."""
    control_plane = websocket.app.state.control_plane
    await _handle_websocket_connection(websocket, control_plane)


async def _handle_websocket_connection(websocket: WebSocket, control_plane: ControlPlane):
    """Handle WebSocket connection lifecycle and message processing.

    Sends the initial state, then routes every client message to the control
    plane until the client disconnects.
    """
    await manager.connect(websocket)
    await control_plane.on_connect(websocket)

    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await manager.send(websocket, {
                    "type": "error",
                    "data": {"message": "Invalid JSON format"}
                })
                continue

            if not isinstance(message, dict):
                await manager.send(websocket, {
                    "type": "error",
                    "data": {"message": "Message must be an object"}
                })
                continue

            await control_plane.handle_message(websocket, message)

    except WebSocketDisconnect:
        logger.debug("WebSocket client disconnected")
    finally:
        manager.disconnect(websocket)


# Make connection manager available for other modules
def get_connection_manager() -> ConnectionManager:
    return manager
