"""
Rapport: Change feed for live match / message / notification updates.

Services queue a ``ChangeEvent`` with ``publish_on_commit()`` for every insert
or update of a row that clients render live; it is delivered once the
writing transaction commits.  Consumers call ``subscribe()`` with a filter
(a match id, a user id, and/or a set of tables) and iterate the returned
``Subscription``; ``cancel()`` unsubscribes and releases the queue.

Within one process delivery is an in-memory fan-out over ``asyncio.Queue``.
When ``REDIS_URL`` is configured, ``RedisChangeRelay`` mirrors every event
through a Redis pub/sub channel so that all API workers see all changes.
Subscriptions drop repeated inserts of the same row, so a relay echo or a
client reconnect never shows a message twice.
"""

from __future__ import annotations

import asyncio
import functools
import json
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator

import structlog

from app.config import get_settings

if TYPE_CHECKING:
    from app.database import ChangeTrackingSession

logger = structlog.get_logger("rapport.realtime_service")


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    op: str  # "insert" | "update"
    record: dict[str, Any]
    match_id: str | None = None
    user_ids: frozenset[str] = field(default_factory=frozenset)

    @property
    def row_id(self) -> str | None:
        value = self.record.get("id")
        return str(value) if value is not None else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "op": self.op,
            "record": self.record,
            "match_id": self.match_id,
            "user_ids": sorted(self.user_ids),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChangeEvent":
        return cls(
            table=data["table"],
            op=data["op"],
            record=data.get("record") or {},
            match_id=data.get("match_id"),
            user_ids=frozenset(data.get("user_ids") or ()),
        )


_CLOSED = object()


class Subscription:
    """A cancellable async stream of ``ChangeEvent`` objects.

    Usage::

        async with feed.subscribe(match_id=str(match.id)) as sub:
            async for event in sub:
                render(event)
    """

    def __init__(
        self,
        feed: "ChangeFeed",
        *,
        match_id: str | None = None,
        user_id: str | None = None,
        tables: frozenset[str] | None = None,
        queue_size: int = 256,
    ) -> None:
        self.id = uuid.uuid4().hex
        self.match_id = match_id
        self.user_id = user_id
        self.tables = tables
        self._feed = feed
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=queue_size)
        # Insert keys already delivered, oldest first; bounded by the queue size.
        self._seen_inserts: OrderedDict[tuple[str, str], None] = OrderedDict()
        self._seen_limit = max(queue_size, 1) * 4
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def matches(self, event: ChangeEvent) -> bool:
        if self.tables is not None and event.table not in self.tables:
            return False
        if self.match_id is not None and event.match_id != self.match_id:
            return False
        if self.user_id is not None and self.user_id not in event.user_ids:
            return False
        return True

    def offer(self, event: ChangeEvent) -> bool:
        """Queue *event* if it passes the filter and is not a repeat insert."""
        if self._closed or not self.matches(event):
            return False

        if event.op == "insert" and event.row_id is not None:
            key = (event.table, event.row_id)
            if key in self._seen_inserts:
                return False
            self._seen_inserts[key] = None
            if len(self._seen_inserts) > self._seen_limit:
                self._seen_inserts.popitem(last=False)

        if self._queue.full():
            # Slow consumer: keep the newest events.
            self._queue.get_nowait()
            logger.warning("subscription_queue_overflow", subscription=self.id)
        self._queue.put_nowait(event)
        return True

    def cancel(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._feed._remove(self)
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)
        logger.debug("subscription_cancelled", subscription=self.id)

    async def get(self) -> ChangeEvent | None:
        """Wait for the next event; ``None`` once the subscription is cancelled."""
        if self._closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is _CLOSED:
            return None
        return item

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ChangeEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.cancel()


class ChangeFeed:
    """In-process publish/subscribe hub for row changes."""

    def __init__(self, queue_size: int | None = None) -> None:
        self.queue_size = queue_size or get_settings().SUBSCRIPTION_QUEUE_SIZE
        self._subscriptions: dict[str, Subscription] = {}
        self._relay: RedisChangeRelay | None = None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def attach_relay(self, relay: "RedisChangeRelay | None") -> None:
        self._relay = relay

    def subscribe(
        self,
        *,
        match_id: str | None = None,
        user_id: str | None = None,
        tables: set[str] | frozenset[str] | None = None,
    ) -> Subscription:
        subscription = Subscription(
            self,
            match_id=match_id,
            user_id=user_id,
            tables=frozenset(tables) if tables is not None else None,
            queue_size=self.queue_size,
        )
        self._subscriptions[subscription.id] = subscription
        logger.debug(
            "subscription_opened",
            subscription=subscription.id,
            match_id=match_id,
            user_id=user_id,
        )
        return subscription

    def publish_on_commit(self, db_session: "ChangeTrackingSession", event: ChangeEvent) -> None:
        """Publish *event* once *db_session* commits; dropped on rollback."""
        db_session.call_after_commit(functools.partial(self.publish, event))

    async def publish(self, event: ChangeEvent) -> int:
        """Deliver locally, then forward to the relay (if any).

        Relay failures are logged; a publish never fails the write that
        produced the event.
        """
        delivered = self.deliver_local(event)
        if self._relay is not None:
            try:
                await self._relay.forward(event)
            except Exception as exc:
                logger.warning("change_relay_forward_failed", table=event.table, error=str(exc))
        return delivered

    def deliver_local(self, event: ChangeEvent) -> int:
        delivered = 0
        for subscription in list(self._subscriptions.values()):
            if subscription.offer(event):
                delivered += 1
        return delivered

    def _remove(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.id, None)


class RedisChangeRelay:
    """Mirror change events across processes through Redis pub/sub."""

    def __init__(self, feed: ChangeFeed, redis_url: str, channel: str) -> None:
        self.feed = feed
        self.redis_url = redis_url
        self.channel = channel
        self.origin = uuid.uuid4().hex
        self._redis: Any | None = None
        self._pubsub: Any | None = None
        self._listener: asyncio.Task | None = None

    async def start(self) -> None:
        import redis.asyncio as aioredis

        self._redis = aioredis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
        )
        await self._redis.ping()
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self.channel)
        self._listener = asyncio.create_task(self._listen())
        self.feed.attach_relay(self)
        logger.info("change_relay_started", channel=self.channel)

    async def stop(self) -> None:
        self.feed.attach_relay(None)
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
            self._pubsub = None
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        logger.info("change_relay_stopped", channel=self.channel)

    async def ping(self) -> bool:
        if self._redis is None:
            return False
        return bool(await self._redis.ping())

    async def forward(self, event: ChangeEvent) -> None:
        if self._redis is None:
            return
        payload = json.dumps({"origin": self.origin, "event": event.to_dict()})
        await self._redis.publish(self.channel, payload)

    async def _listen(self) -> None:
        if self._pubsub is None:
            logger.warning("change_relay_not_subscribed", channel=self.channel)
            return
        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                payload = json.loads(message["data"])
            except (TypeError, ValueError):
                logger.warning("change_relay_bad_payload")
                continue
            if payload.get("origin") == self.origin:
                continue
            self.feed.deliver_local(ChangeEvent.from_dict(payload["event"]))


# ── Process-wide feed (lazy) ──────────────────────────────────────────────────

_change_feed: ChangeFeed | None = None


def get_change_feed() -> ChangeFeed:
    global _change_feed
    if _change_feed is None:
        _change_feed = ChangeFeed()
    return _change_feed
