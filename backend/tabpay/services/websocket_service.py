"""
WebSocket connection registry.
Staff clients listen on their restaurant channel, guests on their table room.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import WebSocket, status

logger = logging.getLogger(__name__)


STAFF_CHANNEL_PREFIX = "restaurant-"


def restaurant_channel(restaurant_id: str) -> str:
    return f"{STAFF_CHANNEL_PREFIX}{restaurant_id}"


def table_room(table_id: str) -> str:
    return f"room_table_{table_id}"


class ConnectionManager:
    """Manages WebSocket connections grouped by channel."""

    MAX_CONNECTIONS_PER_CHANNEL = 1000
    MAX_MESSAGE_SIZE = 65536  # 64KB

    def __init__(self):
        self.active_connections: Dict[str, List[WebSocket]] = {}
        self.connection_metadata: Dict[int, Dict[str, Any]] = {}

    async def connect(
        self,
        websocket: WebSocket,
        channel: str,
        user_id: Optional[str] = None,
        accept: bool = True
    ) -> bool:
        """Connect a WebSocket to a channel with connection limiting.

        Returns True if connection was successful, False if rejected.
        """
        if len(self.active_connections.get(channel, [])) >= self.MAX_CONNECTIONS_PER_CHANNEL:
            logger.warning(f"WebSocket connection rejected: channel '{channel}' at capacity")
            if accept:
                await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return False

        if accept:
            await websocket.accept()

        connections = self.active_connections.setdefault(channel, [])
        if websocket not in connections:
            connections.append(websocket)

        meta = self.connection_metadata.setdefault(id(websocket), {
            "connected_at": datetime.now(timezone.utc),
            "user_id": user_id,
            "channels": set(),
        })
        meta["channels"].add(channel)

        logger.debug(f"WebSocket connected to channel '{channel}', user_id={user_id}")
        return True

    def disconnect(self, websocket: WebSocket, channel: str):
        """Remove a WebSocket from one channel."""
        connections = self.active_connections.get(channel)
        if connections and websocket in connections:
            connections.remove(websocket)
            if not connections:
                del self.active_connections[channel]

        meta = self.connection_metadata.get(id(websocket))
        if meta:
            meta["channels"].discard(channel)
            if not meta["channels"]:
                del self.connection_metadata[id(websocket)]

        logger.debug(f"WebSocket disconnected from channel '{channel}'")

    def disconnect_all(self, websocket: WebSocket):
        """Remove a WebSocket from every channel it joined."""
        meta = self.connection_metadata.get(id(websocket))
        for channel in list(meta["channels"]) if meta else []:
            self.disconnect(websocket, channel)

    async def broadcast(self, message: Dict[str, Any], channel: str):
        """Send a message to all connections in a channel."""
        disconnected = []
        for connection in list(self.active_connections.get(channel, [])):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.debug(f"WebSocket send failed: {e}")
                disconnected.append(connection)

        for conn in disconnected:
            self.disconnect(conn, channel)

    async def broadcast_staff(self, message: Dict[str, Any]):
        """Send a message once to every socket on a restaurant channel.

        Table rooms are public and never receive unscoped messages.
        """
        sockets = {}
        for channel, connections in list(self.active_connections.items()):
            if not channel.startswith(STAFF_CHANNEL_PREFIX):
                continue
            for connection in connections:
                sockets[id(connection)] = connection

        for connection in sockets.values():
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.debug(f"WebSocket send failed: {e}")
                self.disconnect_all(connection)

    def get_connection_count(self, channel: Optional[str] = None) -> int:
        """Get the number of active connections."""
        if channel:
            return len(self.active_connections.get(channel, []))
        return len(self.connection_metadata)


# Global connection manager instance
ws_manager = ConnectionManager()
