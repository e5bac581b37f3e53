# dashcore/api/deps.py
from fastapi import Depends, HTTPException, Request, status

from dashcore.config import Settings
from dashcore.infra.store import StoreAdapter
from dashcore.models.identity import CurrentUser
from dashcore.security.jwt_utils import get_current_user
from dashcore.services.inbox import NotificationInbox
from dashcore.services.notification_generator import NOTIFICATIONS, NotificationGenerator
from dashcore.services.repository import Repository
from dashcore.services.websocket_manager import WebSocketManager


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> StoreAdapter:
    return request.app.state.store


def get_generator(request: Request) -> NotificationGenerator:
    return request.app.state.generator


def get_connections(request: Request) -> WebSocketManager:
    return request.app.state.connections


def current_user(request: Request, settings: Settings = Depends(get_settings)) -> CurrentUser:
    return get_current_user(request.headers.get("Authorization", ""), settings)


def require_admin(
    user: CurrentUser = Depends(current_user),
    settings: Settings = Depends(get_settings),
) -> CurrentUser:
    if user.role != settings.admin_role:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return user


def get_inbox(
    user: CurrentUser = Depends(current_user),
    store: StoreAdapter = Depends(get_store),
    settings: Settings = Depends(get_settings),
) -> NotificationInbox:
    repository = Repository(store, NOTIFICATIONS, user, poll_interval=settings.refresh_seconds)
    return NotificationInbox(repository, user.id)
