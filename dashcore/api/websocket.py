# dashcore/api/websocket.py
import logging

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect

from dashcore.api.notifications import inbox_view
from dashcore.security.jwt_utils import decode_token, user_from_claims
from dashcore.services.inbox import NotificationInbox
from dashcore.services.notification_generator import NOTIFICATIONS
from dashcore.services.repository import Repository, RepositoryMode

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])


@router.websocket("/ws/notifications")
async def websocket_notifications(websocket: WebSocket, token: str = Query(...)):
    """
    Realtime notifications. The frontend connects with:
      ws://host/ws/notifications?token=JWT
    and receives {notifications, unreadCount, unreadByCategory} on every change.
    """
    state = websocket.app.state
    try:
        user = user_from_claims(decode_token(token, state.settings), state.settings)
    except HTTPException:
        await websocket.close(code=1008)
        return

    connections = state.connections
    await connections.connect(user.id, websocket)

    repository = Repository(state.store, NOTIFICATIONS, user, mode=RepositoryMode.REALTIME)
    inbox = NotificationInbox(repository, user.id)

    async def push(docs):
        inbox.apply_snapshot(docs)
        await websocket.send_json(inbox_view(inbox))

    async def report(error):
        await websocket.send_json({"error": "Store unavailable, reconnecting", "detail": str(error)})

    subscription = repository.subscribe({"userId": user.id}, push, on_error=report)
    connections.attach(user.id, websocket, subscription)

    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Socket for %s disconnected", user.id)
    finally:
        connections.disconnect(user.id, websocket)
