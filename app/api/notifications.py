"""
Rapport: Notifications API

Direct dispatch (used by operators and the load test), the in-app badge
counter, and a per-user WebSocket carrying every change that touches the
user: new matches, decisions, messages and notification log entries.
"""

from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, Depends, WebSocket
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_dispatcher, get_feed
from app.api.streaming import stream_subscription
from app.database import get_db
from app.schemas.notification import (
    DispatchRequest,
    DispatchResponse,
    UnreadNotificationCount,
)
from app.services.notification_service import NotificationDispatcher
from app.services.realtime_service import ChangeFeed

logger = structlog.get_logger("rapport.api.notifications")

router = APIRouter()


@router.post(
    "/dispatch",
    response_model=DispatchResponse,
    summary="Send a notification to all of a user's devices",
)
async def dispatch(
    payload: DispatchRequest,
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> DispatchResponse:
    """Dispatch synchronously and report what the gateway accepted.

    Gateway failures are reported as ``delivery="unknown"``, never as an
    HTTP error.
    """
    result = await dispatcher.dispatch(
        payload.user_id,
        payload.type,
        payload.title,
        payload.body,
        payload.data,
        db,
    )
    return DispatchResponse(
        sent=result.sent,
        deactivated=result.deactivated,
        delivery=result.delivery,
    )


@router.get(
    "/{user_id}/unread-count",
    response_model=UnreadNotificationCount,
    summary="Unread notification count (app badge)",
)
async def unread_count(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> UnreadNotificationCount:
    unread = await dispatcher.unread_notification_count(user_id, db)
    return UnreadNotificationCount(user_id=user_id, unread=unread)


@router.post(
    "/{user_id}/read-all",
    response_model=UnreadNotificationCount,
    summary="Mark every notification as read",
)
async def read_all(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> UnreadNotificationCount:
    marked = await dispatcher.mark_all_read(user_id, db)
    logger.info("notifications_read_all", user_id=str(user_id), marked=marked)
    return UnreadNotificationCount(user_id=user_id, unread=0)


@router.websocket("/ws/{user_id}")
async def user_stream(
    websocket: WebSocket,
    user_id: uuid.UUID,
    feed: ChangeFeed = Depends(get_feed),
) -> None:
    logger.info("user_stream_connect", user_id=str(user_id))
    subscription = feed.subscribe(user_id=str(user_id))
    await stream_subscription(websocket, subscription)
