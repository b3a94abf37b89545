"""
Rapport: Notification dispatcher, display policy, and push-token registry.

Dispatch pipeline for one (user, event):
  1. Resolve the user's ``NotificationPolicy`` from stored preferences.
  2. Append a ``NotificationLog`` row (always, whatever the gateway says)
     and queue it for the change feed (delivered on commit) for badge tracking.
  3. Build one Expo push message per active token, routed to a channel by
     event type, and submit them in a single batch (bounded by a timeout).
  4. Deactivate every token the gateway reports as permanently dead.

The dispatcher is best-effort: gateway failures are logged and reported as
``delivery="unknown"``; they never raise.  Lifecycle and chat code reach it
through a ``Notifier`` so that a dispatch can never block or fail them.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
import structlog
from fastapi import BackgroundTasks
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_session_factory
from app.errors import UserNotFound, ValidationError
from app.models.notification import NotificationLog, PushToken
from app.models.user import User
from app.schemas.notification import NotificationLogResponse, NotificationSettings
from app.services.realtime_service import ChangeEvent, ChangeFeed, get_change_feed
from app.utils.push import ExpoPushClient, PushGatewayError, is_expo_token

logger = structlog.get_logger("rapport.notification_service")

NOTIFICATION_TYPES: frozenset[str] = frozenset({"new_match", "match_accepted", "new_message"})

_CHANNELS: dict[str, str] = {
    "new_match": "matches",
    "match_accepted": "matches",
    "new_message": "messages",
}


def channel_for(notification_type: str) -> str:
    return _CHANNELS.get(notification_type, "default")


# ──────────────────────────────────────────────────────────────────────────────
# Display policy
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Presentation:
    deliver: bool
    show_alert: bool
    play_sound: bool
    set_badge: bool


_SILENT = Presentation(deliver=False, show_alert=False, play_sound=False, set_badge=False)
_BADGE_ONLY = Presentation(deliver=True, show_alert=False, play_sound=False, set_badge=True)
_FULL = Presentation(deliver=True, show_alert=True, play_sound=True, set_badge=True)


class NotificationPolicy:
    """How a notification of each type is presented to one user.

    Built per dispatch from the user's stored preferences and passed around
    explicitly; there is no process-wide handler state.
    """

    _TYPE_FLAGS: dict[str, str] = {
        "new_match": "match_notifications",
        "match_accepted": "match_accepted_notifications",
        "new_message": "message_notifications",
    }

    def __init__(self, settings: NotificationSettings | None = None) -> None:
        self.settings = settings or NotificationSettings()

    @classmethod
    def from_user_settings(cls, raw: dict | None) -> "NotificationPolicy":
        if not raw:
            return cls()
        return cls(NotificationSettings.model_validate(raw))

    def presentation_for(self, notification_type: str) -> Presentation:
        if not self.settings.push_enabled:
            return _SILENT
        flag = self._TYPE_FLAGS.get(notification_type)
        if flag is not None and not getattr(self.settings, flag):
            return _BADGE_ONLY
        return _FULL


# ──────────────────────────────────────────────────────────────────────────────
# Dispatcher
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DispatchResult:
    sent: int
    deactivated: int = 0
    delivery: str = "skipped"  # delivered | unknown | skipped


class NotificationDispatcher:
    """Fan a single event out to every active device of one user."""

    def __init__(
        self,
        push_client: ExpoPushClient | None = None,
        feed: ChangeFeed | None = None,
    ) -> None:
        self.push_client = push_client or ExpoPushClient()
        self.feed = feed or get_change_feed()

    async def dispatch(
        self,
        user_id: uuid.UUID,
        notification_type: str,
        title: str,
        body: str,
        payload: dict[str, Any] | None,
        db_session: AsyncSession,
    ) -> DispatchResult:
        """Send one notification to all of *user_id*'s active devices.

        Returns the number of push messages handed to the gateway.  A user
        with no active tokens still gets a ``NotificationLog`` row and a
        ``sent=0`` result.
        """
        if notification_type not in NOTIFICATION_TYPES:
            raise ValidationError(f"Unknown notification type {notification_type!r}.")

        log = logger.bind(user_id=str(user_id), type=notification_type)
        log.info("dispatch_start")

        user = await db_session.get(User, user_id)
        if user is None:
            raise UserNotFound(f"User {user_id} not found.")

        payload = dict(payload or {})
        policy = NotificationPolicy.from_user_settings(user.notification_settings)
        presentation = policy.presentation_for(notification_type)

        await self._append_log(user_id, notification_type, title, body, payload, db_session)

        tokens_stmt = select(PushToken.token).where(
            PushToken.user_id == user_id,
            PushToken.is_active.is_(True),
        )
        tokens = list((await db_session.execute(tokens_stmt)).scalars().all())

        if not tokens:
            log.info("dispatch_no_active_tokens")
            return DispatchResult(sent=0)

        if not presentation.deliver:
            log.info("dispatch_suppressed_by_policy")
            return DispatchResult(sent=0)

        messages = [
            {
                "to": token,
                "title": title,
                "body": body,
                "data": {**payload, "type": notification_type},
                "sound": "default" if presentation.play_sound else None,
                "channelId": channel_for(notification_type),
            }
            for token in tokens
            if is_expo_token(token)
        ]

        if not messages:
            log.info("dispatch_no_valid_tokens", token_count=len(tokens))
            return DispatchResult(sent=0)

        try:
            tickets = await self.push_client.send(messages)
        except httpx.TimeoutException:
            log.warning("dispatch_gateway_timeout", message_count=len(messages))
            return DispatchResult(sent=0, delivery="unknown")
        except PushGatewayError as exc:
            log.warning("dispatch_gateway_error", error=str(exc))
            return DispatchResult(sent=0, delivery="unknown")

        dead_tokens = sorted({t.token for t in tickets if t.is_dead_token})
        if dead_tokens:
            await self._deactivate(user_id, dead_tokens, db_session)
            log.info("dispatch_tokens_deactivated", count=len(dead_tokens))

        log.info(
            "dispatch_complete",
            sent=len(messages),
            errors=sum(1 for t in tickets if t.status == "error"),
        )
        return DispatchResult(sent=len(messages), deactivated=len(dead_tokens), delivery="delivered")

    # ── Token registry ──────────────────────────────────────────────

    async def register_token(
        self,
        user_id: uuid.UUID,
        token: str,
        device_type: str | None,
        db_session: AsyncSession,
    ) -> PushToken:
        """Upsert on (user, token); re-registering reactivates a dead token."""
        if await db_session.get(User, user_id) is None:
            raise UserNotFound(f"User {user_id} not found.")

        stmt = select(PushToken).where(PushToken.user_id == user_id, PushToken.token == token).execution_options(
            populate_existing=True
        )
        push_token = (await db_session.execute(stmt)).scalar_one_or_none()

        if push_token is None:
            push_token = PushToken(user_id=user_id, token=token, device_type=device_type)
            try:
                async with db_session.begin_nested():
                    db_session.add(push_token)
                    await db_session.flush()
            except IntegrityError:
                # A concurrent registration inserted the same (user, token) first.
                logger.info("push_token_register_conflict", user_id=str(user_id))
                push_token = (await db_session.execute(stmt)).scalar_one()

        push_token.is_active = True
        if device_type is not None:
            push_token.device_type = device_type

        await db_session.flush()
        logger.info("push_token_registered", user_id=str(user_id), device_type=device_type)
        return push_token

    async def deactivate_token(
        self,
        user_id: uuid.UUID,
        token: str,
        db_session: AsyncSession,
    ) -> int:
        count = await self._deactivate(user_id, [token], db_session)
        logger.info("push_token_deactivated", user_id=str(user_id), count=count)
        return count

    # ── Badge source ────────────────────────────────────────────────

    async def unread_notification_count(
        self, user_id: uuid.UUID, db_session: AsyncSession
    ) -> int:
        stmt = select(func.count(NotificationLog.id)).where(
            NotificationLog.user_id == user_id,
            NotificationLog.is_read.is_(False),
        )
        return int((await db_session.execute(stmt)).scalar_one())

    async def mark_all_read(self, user_id: uuid.UUID, db_session: AsyncSession) -> int:
        stmt = (
            update(NotificationLog)
            .where(NotificationLog.user_id == user_id, NotificationLog.is_read.is_(False))
            .values(is_read=True)
            .execution_options(synchronize_session=False)
        )
        result = await db_session.execute(stmt)
        if result.rowcount:
            self.feed.publish_on_commit(
                db_session,
                ChangeEvent(
                    table="notification_logs",
                    op="update",
                    record={"user_id": str(user_id), "is_read": True},
                    user_ids=frozenset({str(user_id)}),
                ),
            )
        return result.rowcount or 0

    # ── Internals ───────────────────────────────────────────────────

    async def _append_log(
        self,
        user_id: uuid.UUID,
        notification_type: str,
        title: str,
        body: str,
        payload: dict[str, Any],
        db_session: AsyncSession,
    ) -> NotificationLog:
        entry = NotificationLog(
            user_id=user_id,
            type=notification_type,
            title=title,
            body=body,
            data=payload,
        )
        db_session.add(entry)
        await db_session.flush()

        self.feed.publish_on_commit(
            db_session,
            ChangeEvent(
                table="notification_logs",
                op="insert",
                record=NotificationLogResponse.model_validate(entry).model_dump(mode="json"),
                user_ids=frozenset({str(user_id)}),
            ),
        )
        return entry

    async def _deactivate(
        self,
        user_id: uuid.UUID,
        tokens: list[str],
        db_session: AsyncSession,
    ) -> int:
        stmt = (
            update(PushToken)
            .where(
                PushToken.user_id == user_id,
                PushToken.token.in_(tokens),
                PushToken.is_active.is_(True),
            )
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        result = await db_session.execute(stmt)
        return result.rowcount or 0


# ──────────────────────────────────────────────────────────────────────────────
# Fire-and-forget entry points for lifecycle / chat / matching
# ──────────────────────────────────────────────────────────────────────────────

class Notifier(Protocol):
    async def __call__(
        self,
        user_id: uuid.UUID,
        notification_type: str,
        title: str,
        body: str,
        payload: dict[str, Any],
    ) -> None: ...


async def dispatch_detached(
    user_id: uuid.UUID,
    notification_type: str,
    title: str,
    body: str,
    payload: dict[str, Any],
    dispatcher: NotificationDispatcher | None = None,
) -> None:
    """Run one dispatch in its own session; every error is logged, none raised."""
    dispatcher = dispatcher or NotificationDispatcher()
    async with get_session_factory()() as session:
        try:
            await dispatcher.dispatch(
                user_id, notification_type, title, body, payload, session
            )
            await session.commit()
        except Exception:
            await session.rollback()
            logger.exception(
                "dispatch_detached_failed",
                user_id=str(user_id),
                type=notification_type,
            )


class BackgroundNotifier:
    """Schedule dispatches to run after the HTTP response has been sent."""

    def __init__(
        self,
        background_tasks: BackgroundTasks,
        dispatcher: NotificationDispatcher | None = None,
    ) -> None:
        self.background_tasks = background_tasks
        self.dispatcher = dispatcher

    async def __call__(
        self,
        user_id: uuid.UUID,
        notification_type: str,
        title: str,
        body: str,
        payload: dict[str, Any],
    ) -> None:
        self.background_tasks.add_task(
            dispatch_detached,
            user_id,
            notification_type,
            title,
            body,
            payload,
            self.dispatcher,
        )


async def notify_safely(
    notifier: Notifier | None,
    user_id: uuid.UUID,
    notification_type: str,
    title: str,
    body: str,
    payload: dict[str, Any],
) -> None:
    """Hand an event to *notifier*, swallowing (and logging) any failure."""
    if notifier is None:
        return
    try:
        await notifier(user_id, notification_type, title, body, payload)
    except Exception:
        logger.exception("notify_failed", user_id=str(user_id), type=notification_type)
