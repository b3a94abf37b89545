"""
Rapport: Two-sided match lifecycle.

Each side of a match moves independently::

    pending ──► accepted
        └─────► rejected

and the match as a whole is ``UNCONFIRMED`` until both sides are
``accepted``, at which point it becomes ``CONFIRMED`` (``is_matched`` plus a
one-time ``matched_at`` stamp).

``transition()`` is the only place that decides what a decision does.  The
database write mirrors it in a single conditional ``UPDATE`` that reads the
other side's status from the row being updated, so two users accepting at
the same moment always end in a confirmed match.

A decided side is final.  Repeating the same decision is a no-op; trying to
change it (including rejecting after confirmation) raises
``InvalidTransition``.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass

import structlog
from sqlalchemy import DateTime, case, literal, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import utcnow
from app.errors import InvalidTransition, MatchNotFound, NotParticipant
from app.models.match import Match
from app.schemas.match import MatchResponse
from app.services.notification_service import Notifier, notify_safely
from app.services.realtime_service import ChangeEvent, ChangeFeed, get_change_feed

logger = structlog.get_logger("rapport.lifecycle_service")


class SideStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class MatchState(str, enum.Enum):
    UNCONFIRMED = "unconfirmed"
    CONFIRMED = "confirmed"


@dataclass(frozen=True)
class Transition:
    own: SideStatus
    other: SideStatus
    state: MatchState
    changed: bool
    confirmed_now: bool


def derive_state(status_a: SideStatus, status_b: SideStatus) -> MatchState:
    if status_a is SideStatus.ACCEPTED and status_b is SideStatus.ACCEPTED:
        return MatchState.CONFIRMED
    return MatchState.UNCONFIRMED


def transition(own: SideStatus, other: SideStatus, decision: SideStatus) -> Transition:
    """Apply *decision* to the acting side.

    Raises
    ------
    InvalidTransition
        *decision* is ``pending`` or the acting side already decided
        differently.
    """
    if decision is SideStatus.PENDING:
        raise InvalidTransition("A side cannot move back to pending.")

    before = derive_state(own, other)

    if own is decision:
        return Transition(own, other, before, changed=False, confirmed_now=False)

    if own is not SideStatus.PENDING:
        raise InvalidTransition(
            f"Side already {own.value}; cannot change to {decision.value}."
        )

    after = derive_state(decision, other)
    return Transition(
        own=decision,
        other=other,
        state=after,
        changed=True,
        confirmed_now=before is MatchState.UNCONFIRMED and after is MatchState.CONFIRMED,
    )


def match_state(match: Match) -> MatchState:
    return derive_state(SideStatus(match.user_a_status), SideStatus(match.user_b_status))


class MatchLifecycleService:
    """Single writer for ``user_*_status``, ``is_matched`` and ``matched_at``."""

    def __init__(
        self,
        notifier: Notifier | None = None,
        feed: ChangeFeed | None = None,
    ) -> None:
        self.notifier = notifier
        self.feed = feed or get_change_feed()

    async def decide(
        self,
        match_id: uuid.UUID,
        user_id: uuid.UUID,
        accept: bool,
        db_session: AsyncSession,
    ) -> Match:
        """Record *user_id*'s accept / reject decision on *match_id*.

        Returns the refreshed match.  When this decision completes the
        handshake both participants are notified with ``match_accepted``.
        """
        decision = SideStatus.ACCEPTED if accept else SideStatus.REJECTED
        log = logger.bind(match_id=str(match_id), user_id=str(user_id), decision=decision.value)
        log.info("decide_start")

        match = await self._load(match_id, db_session)
        if not match.involves(user_id):
            log.warning("decide_not_participant")
            raise NotParticipant(f"User {user_id} is not part of match {match_id}.")

        is_user_a = match.user_a_id == user_id
        own_col = Match.user_a_status if is_user_a else Match.user_b_status
        other_col = Match.user_b_status if is_user_a else Match.user_a_status

        # Validate against the current snapshot; the UPDATE below re-checks
        # the acting side so a concurrent change cannot slip through.
        planned = transition(
            SideStatus(getattr(match, own_col.key)),
            SideStatus(getattr(match, other_col.key)),
            decision,
        )
        if not planned.changed:
            log.info("decide_noop", state=planned.state.value)
            return match

        values: dict = {own_col: decision.value}
        if decision is SideStatus.ACCEPTED:
            both_accepted = other_col == SideStatus.ACCEPTED.value
            values[Match.is_matched] = case((both_accepted, True), else_=Match.is_matched)
            values[Match.matched_at] = case(
                (both_accepted, literal(utcnow(), DateTime(timezone=True))),
                else_=Match.matched_at,
            )

        stmt = (
            update(Match)
            .where(Match.id == match_id, own_col == SideStatus.PENDING.value)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        result = await db_session.execute(stmt)

        match = await self._load(match_id, db_session, refresh=True)

        if result.rowcount == 0:
            # Lost a race against another write to the same side.
            current = SideStatus(getattr(match, own_col.key))
            transition(current, SideStatus(getattr(match, other_col.key)), decision)
            log.info("decide_noop_after_race", state=match_state(match).value)
            return match

        state = match_state(match)
        log.info("decide_complete", state=state.value, is_matched=match.is_matched)

        self._publish(match, db_session)

        if state is MatchState.CONFIRMED and match.is_matched:
            await self._announce_confirmation(match)

        return match

    async def get_match(self, match_id: uuid.UUID, db_session: AsyncSession) -> Match:
        return await self._load(match_id, db_session)

    # ── Internals ───────────────────────────────────────────────────

    async def _load(
        self, match_id: uuid.UUID, db_session: AsyncSession, refresh: bool = False
    ) -> Match:
        stmt = select(Match).where(Match.id == match_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        match = (await db_session.execute(stmt)).scalar_one_or_none()
        if match is None:
            raise MatchNotFound(f"Match {match_id} not found.")
        return match

    def _publish(self, match: Match, db_session: AsyncSession) -> None:
        self.feed.publish_on_commit(
            db_session,
            ChangeEvent(
                table="matches",
                op="update",
                record=MatchResponse.model_validate(match).model_dump(mode="json"),
                match_id=str(match.id),
                user_ids=frozenset({str(match.user_a_id), str(match.user_b_id)}),
            ),
        )

    async def _announce_confirmation(self, match: Match) -> None:
        for user_id in (match.user_a_id, match.user_b_id):
            other = match.user_a if user_id == match.user_b_id else match.user_b
            nickname = other.nickname if other is not None else "your match"
            await notify_safely(
                self.notifier,
                user_id,
                "match_accepted",
                "It's a match!",
                f"You and {nickname} accepted each other. Say hello!",
                {"matchId": str(match.id), "partnerName": nickname},
            )
