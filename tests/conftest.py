"""Shared pytest fixtures for Rapport tests."""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import uuid
from dataclasses import dataclass
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401  (registers every table on Base.metadata)
from app.database import Base, ChangeTrackingSession
from app.models.questionnaire import Scenario, ScenarioOption, ScenarioResponse
from app.models.user import User
from app.services.realtime_service import ChangeFeed


# ── Database ──────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Let SQLAlchemy own BEGIN so SAVEPOINTs behave as on PostgreSQL.
    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=ChangeTrackingSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


# ── Collaborators ─────────────────────────────────────────────────────────────

@pytest.fixture
def feed():
    return ChangeFeed(queue_size=64)


@dataclass
class NotificationCall:
    user_id: uuid.UUID
    type: str
    title: str
    body: str
    payload: dict[str, Any]


class RecordingNotifier:
    """Stands in for ``BackgroundNotifier``; remembers every event."""

    def __init__(self) -> None:
        self.calls: list[NotificationCall] = []

    async def __call__(self, user_id, notification_type, title, body, payload) -> None:
        self.calls.append(NotificationCall(user_id, notification_type, title, body, payload))

    def of_type(self, notification_type: str) -> list[NotificationCall]:
        return [c for c in self.calls if c.type == notification_type]


@pytest.fixture
def notifier():
    return RecordingNotifier()


# ── Factories ─────────────────────────────────────────────────────────────────

@pytest.fixture
def make_user(db_session):
    counter = {"n": 0}

    async def _make_user(
        gender: str = "male",
        nickname: str | None = None,
        complete: bool = True,
        notification_settings: dict | None = None,
    ) -> User:
        counter["n"] += 1
        n = counter["n"]
        user = User(
            email=f"user{n}_{uuid.uuid4().hex[:6]}@example.com",
            nickname=nickname or f"user{n}",
            gender=gender,
            birth_year=1995,
            location="Seoul",
            is_profile_complete=complete,
            notification_settings=notification_settings,
        )
        db_session.add(user)
        await db_session.flush()
        return user

    return _make_user


@pytest.fixture
def make_scenario(db_session):
    counter = {"n": 0}

    async def _make_scenario(category: str, vectors: list[Any]) -> Scenario:
        counter["n"] += 1
        scenario = Scenario(
            title=f"Scenario {counter['n']}",
            description="What would you do?",
            category=category,
            display_order=counter["n"],
        )
        scenario.options = [
            ScenarioOption(
                option_code=chr(ord("A") + i),
                option_text=f"Option {i}",
                display_order=i,
                personality_vector=vector,
            )
            for i, vector in enumerate(vectors)
        ]
        db_session.add(scenario)
        await db_session.flush()
        return scenario

    return _make_scenario


@pytest.fixture
def answer(db_session):
    async def _answer(user: User, option: ScenarioOption) -> ScenarioResponse:
        response = ScenarioResponse(
            user_id=user.id,
            scenario_id=option.scenario_id,
            selected_option_id=option.id,
        )
        db_session.add(response)
        await db_session.flush()
        return response

    return _answer


@pytest.fixture
def sample_vectors():
    """Three options per scenario over the same four traits."""
    return [
        {"openness": 0.9, "warmth": 0.2, "independence": 0.8, "stability": 0.1},
        {"openness": 0.1, "warmth": 0.9, "independence": 0.2, "stability": 0.9},
        {"openness": 0.5, "warmth": 0.5, "independence": 0.5, "stability": 0.5},
    ]
