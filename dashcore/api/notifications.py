# dashcore/api/notifications.py
from fastapi import APIRouter, Depends, status

from dashcore.api.deps import get_connections, get_generator, get_inbox, require_admin
from dashcore.models.identity import CurrentUser
from dashcore.services.inbox import NotificationInbox
from dashcore.services.notification_generator import NotificationGenerator
from dashcore.services.websocket_manager import WebSocketManager

router = APIRouter(prefix="/notifications", tags=["notifications"])


def inbox_view(inbox: NotificationInbox) -> dict:
    return {
        "notifications": [n.model_dump(mode="json") for n in inbox.notifications],
        "unreadCount": inbox.unread_count,
        "unreadByCategory": inbox.unread_by_category,
    }


@router.get("")
async def list_notifications(inbox: NotificationInbox = Depends(get_inbox)):
    """
    The caller's notifications, most urgent first, with unread counters.
    """
    await inbox.load()
    return inbox_view(inbox)


@router.get("/unread-count")
async def unread_count(inbox: NotificationInbox = Depends(get_inbox)):
    await inbox.load()
    return {"count": inbox.unread_count, "byCategory": inbox.unread_by_category}


@router.post("/read-all")
async def mark_all_as_read(inbox: NotificationInbox = Depends(get_inbox)):
    await inbox.load()
    marked = await inbox.mark_all_as_read()
    return {"marked": marked, "unreadCount": inbox.unread_count}


@router.post("/{notification_id}/read")
async def mark_notification_as_read(notification_id: str, inbox: NotificationInbox = Depends(get_inbox)):
    """
    Marks one of the caller's notifications as read.
    """
    await inbox.load()
    notification = await inbox.mark_as_read(notification_id)
    return {"notification": notification.model_dump(mode="json"), "unreadCount": inbox.unread_count}


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_notification(notification_id: str, inbox: NotificationInbox = Depends(get_inbox)):
    await inbox.load()
    await inbox.delete(notification_id)


@router.post("/generate")
async def generate_notifications(
    user: CurrentUser = Depends(require_admin),
    generator: NotificationGenerator = Depends(get_generator),
    connections: WebSocketManager = Depends(get_connections),
):
    """
    Incremental generation for the caller's scope. Connected sockets
    get the summary; their subscriptions deliver the records themselves.
    """
    result = await generator.generate_all(user.scope, user.id)
    await connections.send_to_user(user.id, {"event": "notifications.generated", **result.as_dict()})
    return result.as_dict()


@router.post("/clear")
async def clear_notifications(
    user: CurrentUser = Depends(require_admin),
    generator: NotificationGenerator = Depends(get_generator),
):
    return {"deletedCount": await generator.clear_all(user.scope, user.id)}


@router.post("/cleanup")
async def cleanup_notifications(
    user: CurrentUser = Depends(require_admin),
    generator: NotificationGenerator = Depends(get_generator),
):
    return {"cleanedCount": await generator.cleanup_resolved(user.scope, user.id)}


@router.post("/regenerate")
async def regenerate_notifications(
    user: CurrentUser = Depends(require_admin),
    generator: NotificationGenerator = Depends(get_generator),
):
    """Clear and regenerate, for when duplicates or drift are suspected."""
    return await generator.regenerate(user.scope, user.id)
