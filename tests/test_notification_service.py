"""Unit tests for the notification dispatcher, display policy and push client."""
import asyncio
import json
import uuid

import httpx
import pytest
import pytest_asyncio
from fastapi import BackgroundTasks
from sqlalchemy import false, select

from app.errors import UserNotFound, ValidationError
from app.models.notification import NotificationLog, PushToken
from app.services import notification_service
from app.services.notification_service import (
    BackgroundNotifier,
    NotificationDispatcher,
    NotificationPolicy,
    channel_for,
    dispatch_detached,
    notify_safely,
)
from app.utils.push import ExpoPushClient, PushGatewayError, PushTicket, is_expo_token

TOKEN_1 = "ExponentPushToken[aaaaaaaaaaaaaaaaaaaaaa]"
TOKEN_2 = "ExponentPushToken[bbbbbbbbbbbbbbbbbbbbbb]"


class Gateway:
    """Programmable stand-in for the Expo push endpoint."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.tickets: list[dict] | None = None
        self.status_code = 200
        self.timeout = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.timeout:
            raise httpx.ReadTimeout("gateway timed out", request=request)
        messages = json.loads(request.content)
        tickets = self.tickets or [{"status": "ok", "id": uuid.uuid4().hex} for _ in messages]
        return httpx.Response(self.status_code, json={"data": tickets})

    @property
    def last_messages(self) -> list[dict]:
        return json.loads(self.requests[-1].content)


@pytest.fixture
def gateway():
    return Gateway()


@pytest.fixture
def push_client(gateway):
    return ExpoPushClient(
        url="https://push.test/--/api/v2/push/send",
        timeout=1.0,
        access_token="",
        transport=httpx.MockTransport(gateway.handler),
    )


@pytest.fixture
def dispatcher(push_client, feed):
    return NotificationDispatcher(push_client=push_client, feed=feed)


@pytest_asyncio.fixture
async def user(make_user):
    return await make_user("female", nickname="jiwoo")


async def _add_token(db_session, user, token, active=True):
    push_token = PushToken(user_id=user.id, token=token, is_active=active)
    db_session.add(push_token)
    await db_session.flush()
    return push_token


async def _token_states(db_session, user) -> dict[str, bool]:
    rows = await db_session.execute(
        select(PushToken.token, PushToken.is_active).where(PushToken.user_id == user.id)
    )
    return dict(rows.all())


class TestPolicy:
    """Tests for NotificationPolicy presentation rules."""

    def test_defaults_show_everything(self):
        presentation = NotificationPolicy.from_user_settings(None).presentation_for("new_message")
        assert presentation.deliver and presentation.show_alert and presentation.play_sound

    def test_push_disabled_delivers_nothing(self):
        policy = NotificationPolicy.from_user_settings({"push_enabled": False})
        assert policy.presentation_for("new_match").deliver is False

    def test_category_disabled_is_badge_only(self):
        policy = NotificationPolicy.from_user_settings({"message_notifications": False})
        presentation = policy.presentation_for("new_message")
        assert presentation.deliver is True
        assert presentation.play_sound is False
        assert presentation.set_badge is True
        assert policy.presentation_for("new_match").play_sound is True

    def test_channels(self):
        assert channel_for("new_match") == "matches"
        assert channel_for("match_accepted") == "matches"
        assert channel_for("new_message") == "messages"
        assert channel_for("something_else") == "default"


class TestDispatch:
    """Tests for NotificationDispatcher.dispatch."""

    @pytest.mark.asyncio
    async def test_unknown_type_rejected(self, dispatcher, db_session, user):
        with pytest.raises(ValidationError):
            await dispatcher.dispatch(user.id, "promo", "t", "b", {}, db_session)

    @pytest.mark.asyncio
    async def test_unknown_user_rejected(self, dispatcher, db_session):
        with pytest.raises(UserNotFound):
            await dispatcher.dispatch(uuid.uuid4(), "new_match", "t", "b", {}, db_session)

    @pytest.mark.asyncio
    async def test_no_tokens_still_logs(self, dispatcher, db_session, user, gateway, feed):
        subscription = feed.subscribe(user_id=str(user.id), tables={"notification_logs"})

        result = await dispatcher.dispatch(user.id, "new_match", "New match!", "hi", {"matchId": "m1"}, db_session)

        assert result.sent == 0
        assert gateway.requests == []
        assert await dispatcher.unread_notification_count(user.id, db_session) == 1
        await db_session.commit()
        event = await asyncio.wait_for(subscription.get(), timeout=1)
        assert event.op == "insert"
        assert event.record["type"] == "new_match"
        subscription.cancel()

    @pytest.mark.asyncio
    async def test_sends_one_message_per_active_token(self, dispatcher, db_session, user, gateway):
        await _add_token(db_session, user, TOKEN_1)
        await _add_token(db_session, user, TOKEN_2)
        await _add_token(db_session, user, "ExponentPushToken[inactive]", active=False)

        result = await dispatcher.dispatch(
            user.id, "match_accepted", "It's a match!", "Say hello", {"matchId": "m1"}, db_session
        )

        assert result.sent == 2
        assert result.delivery == "delivered"
        assert len(gateway.requests) == 1
        messages = gateway.last_messages
        assert {m["to"] for m in messages} == {TOKEN_1, TOKEN_2}
        for message in messages:
            assert message["channelId"] == "matches"
            assert message["data"] == {"matchId": "m1", "type": "match_accepted"}
            assert message["sound"] == "default"

    @pytest.mark.asyncio
    async def test_message_channel(self, dispatcher, db_session, user, gateway):
        await _add_token(db_session, user, TOKEN_1)

        await dispatcher.dispatch(user.id, "new_message", "minho", "hey", {"matchId": "m1"}, db_session)

        assert gateway.last_messages[0]["channelId"] == "messages"

    @pytest.mark.asyncio
    async def test_non_expo_tokens_skipped(self, dispatcher, db_session, user, gateway):
        await _add_token(db_session, user, "fcm-raw-token")

        result = await dispatcher.dispatch(user.id, "new_match", "t", "b", {}, db_session)

        assert result.sent == 0
        assert gateway.requests == []

    @pytest.mark.asyncio
    async def test_dead_tokens_deactivated_for_that_user_only(
        self, dispatcher, db_session, user, make_user, gateway
    ):
        other = await make_user("male")
        await _add_token(db_session, user, TOKEN_1)
        await _add_token(db_session, user, TOKEN_2)
        await _add_token(db_session, other, TOKEN_1)
        gateway.tickets = [
            {"status": "error", "message": "gone", "details": {"error": "DeviceNotRegistered"}},
            {"status": "ok", "id": "x"},
        ]

        result = await dispatcher.dispatch(user.id, "new_match", "t", "b", {}, db_session)

        first = gateway.last_messages[0]["to"]
        assert result.deactivated == 1
        states = await _token_states(db_session, user)
        assert states[first] is False
        assert sum(states.values()) == 1
        assert (await _token_states(db_session, other))[TOKEN_1] is True

    @pytest.mark.asyncio
    async def test_other_errors_keep_token(self, dispatcher, db_session, user, gateway):
        await _add_token(db_session, user, TOKEN_1)
        gateway.tickets = [{"status": "error", "details": {"error": "MessageRateExceeded"}}]

        result = await dispatcher.dispatch(user.id, "new_match", "t", "b", {}, db_session)

        assert result.deactivated == 0
        assert (await _token_states(db_session, user))[TOKEN_1] is True

    @pytest.mark.asyncio
    async def test_timeout_is_unknown_delivery(self, dispatcher, db_session, user, gateway):
        await _add_token(db_session, user, TOKEN_1)
        gateway.timeout = True

        result = await dispatcher.dispatch(user.id, "new_match", "t", "b", {}, db_session)

        assert result.delivery == "unknown"
        assert result.sent == 0
        assert (await _token_states(db_session, user))[TOKEN_1] is True
        assert await dispatcher.unread_notification_count(user.id, db_session) == 1

    @pytest.mark.asyncio
    async def test_gateway_error_is_unknown_delivery(self, dispatcher, db_session, user, gateway):
        await _add_token(db_session, user, TOKEN_1)
        gateway.status_code = 500

        result = await dispatcher.dispatch(user.id, "new_match", "t", "b", {}, db_session)

        assert result.delivery == "unknown"

    @pytest.mark.asyncio
    async def test_push_disabled_logs_without_sending(self, dispatcher, db_session, make_user, gateway):
        muted = await make_user("male", notification_settings={"push_enabled": False})
        await _add_token(db_session, muted, TOKEN_1)

        result = await dispatcher.dispatch(muted.id, "new_match", "t", "b", {}, db_session)

        assert result.sent == 0
        assert gateway.requests == []
        assert await dispatcher.unread_notification_count(muted.id, db_session) == 1

    @pytest.mark.asyncio
    async def test_category_disabled_sends_silently(self, dispatcher, db_session, make_user, gateway):
        quiet = await make_user("male", notification_settings={"match_notifications": False})
        await _add_token(db_session, quiet, TOKEN_1)

        result = await dispatcher.dispatch(quiet.id, "new_match", "t", "b", {}, db_session)

        assert result.sent == 1
        assert gateway.last_messages[0]["sound"] is None


class TestTokenRegistry:

    @pytest.mark.asyncio
    async def test_register_is_upsert_and_reactivates(self, dispatcher, db_session, user):
        first = await dispatcher.register_token(user.id, TOKEN_1, "ios", db_session)
        await dispatcher.deactivate_token(user.id, TOKEN_1, db_session)

        again = await dispatcher.register_token(user.id, TOKEN_1, None, db_session)
        await db_session.refresh(again)

        assert again.id == first.id
        assert again.is_active is True
        assert again.device_type == "ios"

    @pytest.mark.asyncio
    async def test_register_race_reactivates_existing_row(
        self, dispatcher, db_session, user, monkeypatch
    ):
        first = await dispatcher.register_token(user.id, TOKEN_1, "ios", db_session)
        await dispatcher.deactivate_token(user.id, TOKEN_1, db_session)
        real_execute = db_session.execute

        async def miss_first_lookup(statement, *args, **kwargs):
            # The lookup runs before a concurrent registration lands.
            monkeypatch.setattr(db_session, "execute", real_execute)
            return await real_execute(select(PushToken).where(false()))

        monkeypatch.setattr(db_session, "execute", miss_first_lookup)
        again = await dispatcher.register_token(user.id, TOKEN_1, "android", db_session)
        await db_session.refresh(again)

        assert again.id == first.id
        assert again.is_active is True
        assert again.device_type == "android"
        count = await db_session.execute(select(PushToken).where(PushToken.user_id == user.id))
        assert len(count.scalars().all()) == 1

    @pytest.mark.asyncio
    async def test_register_for_unknown_user(self, dispatcher, db_session):
        with pytest.raises(UserNotFound):
            await dispatcher.register_token(uuid.uuid4(), TOKEN_1, "ios", db_session)

    @pytest.mark.asyncio
    async def test_deactivate(self, dispatcher, db_session, user):
        await _add_token(db_session, user, TOKEN_1)
        assert await dispatcher.deactivate_token(user.id, TOKEN_1, db_session) == 1
        assert await dispatcher.deactivate_token(user.id, TOKEN_1, db_session) == 0


class TestBadge:

    @pytest.mark.asyncio
    async def test_mark_all_read(self, dispatcher, db_session, user):
        for _ in range(3):
            await dispatcher.dispatch(user.id, "new_message", "t", "b", {}, db_session)
        assert await dispatcher.unread_notification_count(user.id, db_session) == 3

        assert await dispatcher.mark_all_read(user.id, db_session) == 3
        assert await dispatcher.unread_notification_count(user.id, db_session) == 0
        assert await dispatcher.mark_all_read(user.id, db_session) == 0

    @pytest.mark.asyncio
    async def test_log_events_wait_for_commit(self, dispatcher, db_session, user, feed):
        user_id = user.id
        await db_session.commit()
        subscription = feed.subscribe(user_id=str(user_id), tables={"notification_logs"})

        await dispatcher.dispatch(user_id, "new_match", "t", "b", {}, db_session)
        assert db_session.pending_after_commit == 1
        await db_session.rollback()
        assert db_session.pending_after_commit == 0
        assert subscription._queue.empty()

        await dispatcher.dispatch(user_id, "new_match", "t", "b", {}, db_session)
        await db_session.commit()
        assert subscription._queue.qsize() == 1
        subscription.cancel()


class TestFireAndForget:

    @pytest.mark.asyncio
    async def test_dispatch_detached_commits_in_own_session(
        self, dispatcher, db_session, session_factory, user, monkeypatch
    ):
        await db_session.commit()
        monkeypatch.setattr(notification_service, "get_session_factory", lambda: session_factory)

        await dispatch_detached(user.id, "new_match", "t", "b", {}, dispatcher)

        async with session_factory() as session:
            logs = (await session.execute(select(NotificationLog))).scalars().all()
        assert [log.type for log in logs] == ["new_match"]

    @pytest.mark.asyncio
    async def test_dispatch_detached_swallows_errors(
        self, dispatcher, session_factory, monkeypatch
    ):
        monkeypatch.setattr(notification_service, "get_session_factory", lambda: session_factory)

        await dispatch_detached(uuid.uuid4(), "new_match", "t", "b", {}, dispatcher)

    @pytest.mark.asyncio
    async def test_background_notifier_schedules_task(self, dispatcher):
        tasks = BackgroundTasks()
        notifier = BackgroundNotifier(tasks, dispatcher)

        await notifier(uuid.uuid4(), "new_match", "t", "b", {"matchId": "m"})

        assert len(tasks.tasks) == 1
        assert tasks.tasks[0].func is dispatch_detached

    @pytest.mark.asyncio
    async def test_notify_safely_swallows_failures(self):
        async def broken(*args):
            raise RuntimeError("boom")

        await notify_safely(broken, uuid.uuid4(), "new_match", "t", "b", {})
        await notify_safely(None, uuid.uuid4(), "new_match", "t", "b", {})


class TestPushClient:

    def test_expo_token_format(self):
        assert is_expo_token(TOKEN_1)
        assert is_expo_token("ExpoPushToken[abc]")
        assert not is_expo_token("abc")

    def test_dead_token_ticket(self):
        assert PushTicket(TOKEN_1, "error", "DeviceNotRegistered").is_dead_token
        assert PushTicket(TOKEN_1, "error", "InvalidCredentials").is_dead_token
        assert not PushTicket(TOKEN_1, "error", "MessageTooBig").is_dead_token
        assert not PushTicket(TOKEN_1, "ok").is_dead_token

    @pytest.mark.asyncio
    async def test_sends_bearer_token(self, gateway):
        client = ExpoPushClient(
            url="https://push.test/send",
            timeout=1.0,
            access_token="secret",
            transport=httpx.MockTransport(gateway.handler),
        )
        tickets = await client.send([{"to": TOKEN_1, "title": "t", "body": "b"}])

        assert gateway.requests[0].headers["Authorization"] == "Bearer secret"
        assert tickets[0].status == "ok"

    @pytest.mark.asyncio
    async def test_unreadable_body_is_gateway_error(self):
        client = ExpoPushClient(
            url="https://push.test/send",
            timeout=1.0,
            access_token="",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text="not json")),
        )
        with pytest.raises(PushGatewayError):
            await client.send([{"to": TOKEN_1, "title": "t", "body": "b"}])

    @pytest.mark.asyncio
    async def test_empty_batch_makes_no_request(self, push_client, gateway):
        assert await push_client.send([]) == []
        assert gateway.requests == []
