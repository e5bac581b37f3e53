# dashcore/services/websocket_manager.py
import logging
from typing import Any, Dict, Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class WebSocketManager:
    """
    Keeps WebSocket connections per user, each with the store
    subscription that feeds it.
    user_id -> {websocket: subscription}
    """
    def __init__(self):
        self.active_connections: Dict[str, Dict[WebSocket, Any]] = {}

    async def connect(self, user_id: str, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.setdefault(user_id, {})[websocket] = None

    def attach(self, user_id: str, websocket: WebSocket, subscription: Any):
        if websocket in self.active_connections.get(user_id, {}):
            self.active_connections[user_id][websocket] = subscription

    def disconnect(self, user_id: str, websocket: WebSocket):
        """Drops the socket and releases its subscription."""
        sockets = self.active_connections.get(user_id)
        if sockets is None:
            return
        subscription = sockets.pop(websocket, None)
        if subscription is not None:
            subscription.unsubscribe()
        if not sockets:
            del self.active_connections[user_id]

    def connection_count(self, user_id: Optional[str] = None) -> int:
        if user_id is not None:
            return len(self.active_connections.get(user_id, {}))
        return sum(len(s) for s in self.active_connections.values())

    async def send_to_user(self, user_id: str, message: dict):
        """
        Sends a message to every connection of that user
        (several tabs, several devices).
        """
        if user_id not in self.active_connections:
            return
        dead_sockets = []
        for ws in list(self.active_connections[user_id]):
            try:
                await ws.send_json(message)
            except Exception as e:
                logger.debug("Dropping dead socket for %s: %s", user_id, e)
                dead_sockets.append(ws)
        for ws in dead_sockets:
            self.disconnect(user_id, ws)

    def close_all(self):
        for user_id in list(self.active_connections):
            for ws in list(self.active_connections.get(user_id, {})):
                self.disconnect(user_id, ws)
