"""
Rapport: Shared API dependencies.

Services are cheap to build, so each request gets its own instance wired to
a ``BackgroundNotifier`` bound to that request's ``BackgroundTasks``.  The
notifier and feed providers are separate dependencies so tests can override
them with ``app.dependency_overrides``.
"""

from __future__ import annotations

from fastapi import BackgroundTasks, Depends

from app.config import get_settings
from app.services.chat_service import ChatService
from app.services.lifecycle_service import MatchLifecycleService
from app.services.matching_service import MatchingService
from app.services.notification_service import (
    BackgroundNotifier,
    NotificationDispatcher,
    Notifier,
)
from app.services.realtime_service import ChangeFeed, get_change_feed
from app.services.similarity_service import SimilarityService

_similarity_service: SimilarityService | None = None
_dispatcher: NotificationDispatcher | None = None


def get_feed() -> ChangeFeed:
    return get_change_feed()


def get_dispatcher(feed: ChangeFeed = Depends(get_feed)) -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None or _dispatcher.feed is not feed:
        _dispatcher = NotificationDispatcher(feed=feed)
    return _dispatcher


def get_notifier(
    background_tasks: BackgroundTasks,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> Notifier:
    return BackgroundNotifier(background_tasks, dispatcher)


def get_similarity_service() -> SimilarityService:
    global _similarity_service
    if _similarity_service is None:
        _similarity_service = SimilarityService(neutral_score=get_settings().NEUTRAL_SCORE)
    return _similarity_service


def get_matching_service(
    notifier: Notifier = Depends(get_notifier),
    feed: ChangeFeed = Depends(get_feed),
    similarity_service: SimilarityService = Depends(get_similarity_service),
) -> MatchingService:
    return MatchingService(similarity_service=similarity_service, notifier=notifier, feed=feed)


def get_lifecycle_service(
    notifier: Notifier = Depends(get_notifier),
    feed: ChangeFeed = Depends(get_feed),
) -> MatchLifecycleService:
    return MatchLifecycleService(notifier=notifier, feed=feed)


def get_chat_service(
    notifier: Notifier = Depends(get_notifier),
    feed: ChangeFeed = Depends(get_feed),
) -> ChatService:
    return ChatService(notifier=notifier, feed=feed)
