"""
Rapport: Chat API

Message history, sending, read receipts and unread counters for confirmed
matches, plus a WebSocket that streams a match's message changes live.
"""

from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, Depends, Query, WebSocket, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_chat_service, get_feed
from app.api.streaming import stream_subscription
from app.database import get_db
from app.models.match import Message
from app.schemas.chat import (
    MarkReadRequest,
    MarkReadResponse,
    MessageCreate,
    MessageResponse,
    UnreadCountsResponse,
)
from app.services.chat_service import ChatService
from app.services.realtime_service import ChangeFeed

logger = structlog.get_logger("rapport.api.chat")

router = APIRouter()


@router.get(
    "/unread/{user_id}",
    response_model=UnreadCountsResponse,
    summary="Unread message counts per confirmed match",
)
async def unread_counts(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    chat: ChatService = Depends(get_chat_service),
) -> UnreadCountsResponse:
    counts = await chat.unread_counts(user_id, db)
    return UnreadCountsResponse(
        user_id=user_id,
        counts={str(match_id): count for match_id, count in counts.items()},
        total=sum(counts.values()),
    )


@router.get(
    "/{match_id}/messages",
    response_model=list[MessageResponse],
    summary="Message history for a match",
)
async def list_messages(
    match_id: uuid.UUID,
    user_id: uuid.UUID = Query(..., description="Requesting participant"),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    chat: ChatService = Depends(get_chat_service),
) -> list[Message]:
    return await chat.list_messages(match_id, user_id, db, limit=limit)


@router.post(
    "/{match_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Send a message",
)
async def send_message(
    match_id: uuid.UUID,
    payload: MessageCreate,
    db: AsyncSession = Depends(get_db),
    chat: ChatService = Depends(get_chat_service),
) -> Message:
    """Send a message in a confirmed match.

    The recipient gets a ``new_message`` push after the response is sent.
    """
    return await chat.send_message(match_id, payload.sender_id, payload.content, db)


@router.post(
    "/{match_id}/read",
    response_model=MarkReadResponse,
    summary="Mark the other participant's messages as read",
)
async def mark_read(
    match_id: uuid.UUID,
    payload: MarkReadRequest,
    db: AsyncSession = Depends(get_db),
    chat: ChatService = Depends(get_chat_service),
) -> MarkReadResponse:
    marked = await chat.mark_read(match_id, payload.reader_id, db)
    return MarkReadResponse(match_id=match_id, marked=marked)


@router.websocket("/ws/{match_id}")
async def chat_stream(
    websocket: WebSocket,
    match_id: uuid.UUID,
    feed: ChangeFeed = Depends(get_feed),
) -> None:
    """Stream ``messages`` inserts and read flips for one match."""
    logger.info("chat_stream_connect", match_id=str(match_id))
    subscription = feed.subscribe(match_id=str(match_id), tables={"messages"})
    await stream_subscription(websocket, subscription)
