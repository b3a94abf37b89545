"""
Rapport: Candidate selection, deduplication & match proposal.

Pipeline for one seed user:
  1. Load the seed's scenario answers (with personality vectors).
  2. Load eligible counterparts: opposite gender, profile complete, not self.
  3. Exclude everyone already paired with the seed (either pair ordering).
  4. Score + explain every remaining candidate that has answers.
  5. Rank by score (desc), keep the top ``MATCH_CANDIDATE_LIMIT``.
  6. Propose a Match for each of those scoring >= ``MATCH_MIN_SCORE``.

Matches are stored with canonical ordering (``user_a_id < user_b_id``) and a
unique pair constraint, so re-running for the same seed never creates a
duplicate.  When two concurrent runs race on the same pair, the loser's
insert is rejected by the constraint and silently skipped.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from dataclasses import dataclass, field

import structlog
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.errors import NoResponses, UserNotFound
from app.models.match import Match
from app.models.questionnaire import Scenario, ScenarioOption, ScenarioResponse
from app.models.user import User
from app.schemas.match import MatchResponse
from app.services.notification_service import Notifier, notify_safely
from app.services.realtime_service import ChangeEvent, ChangeFeed, get_change_feed
from app.services.similarity_service import ScenarioAnswer, SimilarityService

logger = structlog.get_logger("rapport.matching_service")

_OPPOSITE_GENDER: dict[str, str] = {"male": "female", "female": "male"}


def target_gender(gender: str) -> str:
    return _OPPOSITE_GENDER.get(gender, "male")


def canonical_pair(user_x: uuid.UUID, user_y: uuid.UUID) -> tuple[uuid.UUID, uuid.UUID]:
    """Return the pair with the smaller identifier first."""
    return (user_x, user_y) if user_x < user_y else (user_y, user_x)


@dataclass
class ScoredCandidate:
    user: User
    score: int
    reason: str


@dataclass
class MatchRunResult:
    created_count: int = 0
    matches: list[Match] = field(default_factory=list)


class MatchingService:
    """Selects, ranks and persists match proposals for a seed user.

    Dependencies are injected at construction so that the service can be
    tested with fakes and swapped in FastAPI's dependency-injection graph.
    """

    def __init__(
        self,
        similarity_service: SimilarityService | None = None,
        notifier: Notifier | None = None,
        feed: ChangeFeed | None = None,
    ) -> None:
        settings = get_settings()
        self.similarity_service = similarity_service or SimilarityService(
            neutral_score=settings.NEUTRAL_SCORE
        )
        self.notifier = notifier
        self.feed = feed or get_change_feed()
        self.candidate_limit: int = settings.MATCH_CANDIDATE_LIMIT
        self.min_score: int = settings.MATCH_MIN_SCORE

    # ── Public API ────────────────────────────────────────────────────────

    async def run_matching(
        self,
        seed_user_id: uuid.UUID,
        db_session: AsyncSession,
    ) -> MatchRunResult:
        """Create up to ``candidate_limit`` new match proposals for the seed.

        Raises
        ------
        UserNotFound
            The seed user does not exist.
        NoResponses
            The seed user has not answered any scenario.
        """
        log = logger.bind(seed_user_id=str(seed_user_id))
        log.info("run_matching_start")

        seed = await db_session.get(User, seed_user_id)
        if seed is None:
            raise UserNotFound(f"User {seed_user_id} not found.")

        seed_answers = (await self.load_answers([seed_user_id], db_session)).get(seed_user_id)
        if not seed_answers:
            log.warning("run_matching_no_responses")
            raise NoResponses(f"User {seed_user_id} has no scenario responses.")

        # ── Eligible counterparts ─────────────────────────────────────
        candidates_stmt = select(User).where(
            User.gender == target_gender(seed.gender),
            User.is_profile_complete.is_(True),
            User.id != seed_user_id,
        )
        candidates = list((await db_session.execute(candidates_stmt)).scalars().all())

        # ── Exclusion set: everyone already paired with the seed ──────
        excluded = await self._paired_user_ids(seed_user_id, db_session)
        remaining = [c for c in candidates if c.id not in excluded]

        log.info(
            "run_matching_candidates",
            eligible=len(candidates),
            already_paired=len(excluded),
            remaining=len(remaining),
        )
        if not remaining:
            return MatchRunResult()

        # ── Score + explain ───────────────────────────────────────────
        answers_by_user = await self.load_answers([c.id for c in remaining], db_session)

        scored: list[ScoredCandidate] = []
        for candidate in remaining:
            candidate_answers = answers_by_user.get(candidate.id)
            if not candidate_answers:
                continue
            score = self.similarity_service.calculate_score(seed_answers, candidate_answers)
            reason = self.similarity_service.generate_match_reason(
                seed_answers, candidate_answers, score
            )
            scored.append(ScoredCandidate(user=candidate, score=score, reason=reason))

        scored.sort(key=lambda s: (-s.score, str(s.user.id)))
        top = scored[: self.candidate_limit]

        # ── Persist proposals above threshold ─────────────────────────
        created: list[tuple[Match, ScoredCandidate]] = []
        for entry in top:
            if entry.score < self.min_score:
                continue
            match = await self._create_match(seed_user_id, entry, db_session)
            if match is not None:
                created.append((match, entry))

        log.info(
            "run_matching_complete",
            scored=len(scored),
            created=len(created),
            top_scores=[s.score for s in top],
        )

        for match, entry in created:
            await self._announce(match, seed, entry.user, db_session)

        return MatchRunResult(
            created_count=len(created),
            matches=[match for match, _ in created],
        )

    async def list_matches(
        self,
        user_id: uuid.UUID,
        db_session: AsyncSession,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Match]:
        stmt = (
            select(Match)
            .where(or_(Match.user_a_id == user_id, Match.user_b_id == user_id))
            .order_by(Match.compatibility_score.desc(), Match.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list((await db_session.execute(stmt)).scalars().all())

    async def load_answers(
        self,
        user_ids: list[uuid.UUID],
        db_session: AsyncSession,
    ) -> dict[uuid.UUID, list[ScenarioAnswer]]:
        """Fetch every listed user's answers joined with option vectors."""
        if not user_ids:
            return {}

        stmt = (
            select(
                ScenarioResponse.user_id,
                ScenarioResponse.scenario_id,
                ScenarioResponse.selected_option_id,
                ScenarioOption.personality_vector,
                Scenario.category,
            )
            .join(ScenarioOption, ScenarioOption.id == ScenarioResponse.selected_option_id)
            .join(Scenario, Scenario.id == ScenarioResponse.scenario_id)
            .where(ScenarioResponse.user_id.in_(user_ids))
            .order_by(ScenarioResponse.user_id, ScenarioResponse.scenario_id)
        )
        rows = (await db_session.execute(stmt)).all()

        answers: dict[uuid.UUID, list[ScenarioAnswer]] = defaultdict(list)
        for user_id, scenario_id, option_id, vector, category in rows:
            answers[user_id].append(
                ScenarioAnswer(
                    scenario_id=scenario_id,
                    option_id=option_id,
                    vector=vector,
                    category=category,
                )
            )
        return dict(answers)

    # ── Internals ─────────────────────────────────────────────────────────

    async def _paired_user_ids(
        self, user_id: uuid.UUID, db_session: AsyncSession
    ) -> set[uuid.UUID]:
        stmt = select(Match.user_a_id, Match.user_b_id).where(
            or_(Match.user_a_id == user_id, Match.user_b_id == user_id)
        )
        paired: set[uuid.UUID] = set()
        for user_a_id, user_b_id in (await db_session.execute(stmt)).all():
            paired.update((user_a_id, user_b_id))
        paired.discard(user_id)
        return paired

    async def _create_match(
        self,
        seed_user_id: uuid.UUID,
        entry: ScoredCandidate,
        db_session: AsyncSession,
    ) -> Match | None:
        """Insert one proposal inside a SAVEPOINT; ``None`` on a pair conflict."""
        user_a_id, user_b_id = canonical_pair(seed_user_id, entry.user.id)
        match = Match(
            user_a_id=user_a_id,
            user_b_id=user_b_id,
            compatibility_score=entry.score,
            match_reason=entry.reason,
            user_a_status="pending",
            user_b_status="pending",
            is_matched=False,
        )
        try:
            async with db_session.begin_nested():
                db_session.add(match)
                await db_session.flush()
        except IntegrityError:
            logger.info(
                "match_conflict_ignored",
                user_a_id=str(user_a_id),
                user_b_id=str(user_b_id),
            )
            return None

        logger.info(
            "match_created",
            match_id=str(match.id),
            score=entry.score,
        )
        return match

    async def _announce(
        self, match: Match, seed: User, candidate: User, db_session: AsyncSession
    ) -> None:
        self.feed.publish_on_commit(
            db_session,
            ChangeEvent(
                table="matches",
                op="insert",
                record=MatchResponse.model_validate(match).model_dump(mode="json"),
                match_id=str(match.id),
                user_ids=frozenset({str(match.user_a_id), str(match.user_b_id)}),
            ),
        )
        for recipient, other in ((seed, candidate), (candidate, seed)):
            await notify_safely(
                self.notifier,
                recipient.id,
                "new_match",
                "New match!",
                f"{other.nickname} is {match.compatibility_score}% compatible with you.",
                {"matchId": str(match.id), "partnerName": other.nickname},
            )
