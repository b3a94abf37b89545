"""
Rapport: Chat between the two participants of a confirmed match.

Messages are append-only; the only mutation is flipping ``is_read`` when the
recipient opens the conversation.  Every insert / read flip is published on
the change feed once the request commits, so open chat screens and badge
counters update live.
"""

from __future__ import annotations

import uuid

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.errors import (
    EmptyMessage,
    MatchNotConfirmed,
    MatchNotFound,
    MessageTooLong,
    NotParticipant,
)
from app.models.match import Match, Message
from app.models.user import User
from app.schemas.chat import MessageResponse
from app.services.notification_service import Notifier, notify_safely
from app.services.realtime_service import ChangeEvent, ChangeFeed, get_change_feed

logger = structlog.get_logger("rapport.chat_service")

_REJECTED = "rejected"


class ChatService:
    def __init__(
        self,
        notifier: Notifier | None = None,
        feed: ChangeFeed | None = None,
        max_length: int | None = None,
    ) -> None:
        self.notifier = notifier
        self.feed = feed or get_change_feed()
        self.max_length = max_length or get_settings().MESSAGE_MAX_LENGTH

    async def send_message(
        self,
        match_id: uuid.UUID,
        sender_id: uuid.UUID,
        text: str,
        db_session: AsyncSession,
    ) -> Message:
        """Store a message from *sender_id* and notify the other participant.

        Raises
        ------
        MatchNotFound
        NotParticipant
        MatchNotConfirmed
            The match is not confirmed, or either side rejected it.
        EmptyMessage
            *text* is blank after trimming (``MessageTooLong`` when it
            exceeds the configured maximum).
        """
        log = logger.bind(match_id=str(match_id), sender_id=str(sender_id))

        match = await self._participant_match(match_id, sender_id, db_session)
        if not match.is_matched or _REJECTED in (match.user_a_status, match.user_b_status):
            log.warning("send_message_not_confirmed")
            raise MatchNotConfirmed(f"Match {match_id} is not confirmed.")

        content = (text or "").strip()
        if not content:
            raise EmptyMessage("Message text is empty.")
        if len(content) > self.max_length:
            raise MessageTooLong(
                f"Message is {len(content)} characters; the limit is {self.max_length}."
            )

        message = Message(match_id=match_id, sender_id=sender_id, content=content, is_read=False)
        db_session.add(message)
        await db_session.flush()
        log.info("message_sent", message_id=str(message.id), length=len(content))

        self.feed.publish_on_commit(
            db_session,
            ChangeEvent(
                table="messages",
                op="insert",
                record=MessageResponse.model_validate(message).model_dump(mode="json"),
                match_id=str(match_id),
                user_ids=frozenset({str(match.user_a_id), str(match.user_b_id)}),
            ),
        )

        sender = await db_session.get(User, sender_id)
        sender_name = sender.nickname if sender is not None else "Your match"
        await notify_safely(
            self.notifier,
            match.other_user_id(sender_id),
            "new_message",
            sender_name,
            content[:100],
            {"matchId": str(match_id), "partnerName": sender_name},
        )
        return message

    async def mark_read(
        self,
        match_id: uuid.UUID,
        reader_id: uuid.UUID,
        db_session: AsyncSession,
    ) -> int:
        """Flip every unread message addressed to *reader_id*; returns the count."""
        match = await self._participant_match(match_id, reader_id, db_session)

        unread_stmt = select(Message.id).where(
            Message.match_id == match_id,
            Message.sender_id != reader_id,
            Message.is_read.is_(False),
        )
        unread_ids = list((await db_session.execute(unread_stmt)).scalars().all())
        if not unread_ids:
            return 0

        stmt = (
            update(Message)
            .where(Message.id.in_(unread_ids), Message.is_read.is_(False))
            .values(is_read=True)
            .execution_options(synchronize_session=False)
        )
        result = await db_session.execute(stmt)

        participants = frozenset({str(match.user_a_id), str(match.user_b_id)})
        for message_id in unread_ids:
            self.feed.publish_on_commit(
                db_session,
                ChangeEvent(
                    table="messages",
                    op="update",
                    record={"id": str(message_id), "match_id": str(match_id), "is_read": True},
                    match_id=str(match_id),
                    user_ids=participants,
                ),
            )

        logger.info(
            "messages_marked_read",
            match_id=str(match_id),
            reader_id=str(reader_id),
            count=result.rowcount,
        )
        return result.rowcount or 0

    async def unread_counts(
        self, user_id: uuid.UUID, db_session: AsyncSession
    ) -> dict[uuid.UUID, int]:
        """Unread messages per confirmed match of *user_id* (zeros included)."""
        stmt = (
            select(Match.id, func.count(Message.id))
            .select_from(Match)
            .outerjoin(
                Message,
                and_(
                    Message.match_id == Match.id,
                    Message.sender_id != user_id,
                    Message.is_read.is_(False),
                ),
            )
            .where(
                Match.is_matched.is_(True),
                or_(Match.user_a_id == user_id, Match.user_b_id == user_id),
            )
            .group_by(Match.id)
        )
        rows = (await db_session.execute(stmt)).all()
        return {match_id: int(count) for match_id, count in rows}

    async def list_messages(
        self,
        match_id: uuid.UUID,
        user_id: uuid.UUID,
        db_session: AsyncSession,
        limit: int = 100,
    ) -> list[Message]:
        await self._participant_match(match_id, user_id, db_session)
        stmt = (
            select(Message)
            .where(Message.match_id == match_id)
            .order_by(Message.created_at, Message.id)
            .limit(limit)
        )
        return list((await db_session.execute(stmt)).scalars().all())

    async def _participant_match(
        self,
        match_id: uuid.UUID,
        user_id: uuid.UUID,
        db_session: AsyncSession,
    ) -> Match:
        match = await db_session.get(Match, match_id)
        if match is None:
            raise MatchNotFound(f"Match {match_id} not found.")
        if not match.involves(user_id):
            raise NotParticipant(f"User {user_id} is not part of match {match_id}.")
        return match
