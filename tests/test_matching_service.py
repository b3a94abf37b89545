"""Unit tests for MatchingService: candidate selection and deduplication."""
import asyncio
import uuid

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from app.errors import NoResponses, UserNotFound
from app.models.match import Match
from app.services.matching_service import (
    MatchingService,
    ScoredCandidate,
    canonical_pair,
    target_gender,
)

# Option 0 == itself (100), vs option 1 is opposite (0), vs option 2 is orthogonal (50).
AXIS_VECTORS = [
    {"x": 1.0, "y": 0.0},
    {"x": -1.0, "y": 0.0},
    {"x": 0.0, "y": 1.0},
]


@pytest.fixture
def matching_service(notifier, feed):
    return MatchingService(notifier=notifier, feed=feed)


@pytest_asyncio.fixture
async def scenarios(make_scenario):
    return [
        await make_scenario("conflict", AXIS_VECTORS),
        await make_scenario("career", AXIS_VECTORS),
        await make_scenario("lifestyle", AXIS_VECTORS),
    ]


@pytest.fixture
def answer_all(answer, scenarios):
    """Answer every scenario with the option at *index*."""

    async def _answer_all(user, index: int = 0):
        for scenario in scenarios:
            await answer(user, scenario.options[index])

    return _answer_all


async def _match_count(db_session) -> int:
    return (await db_session.execute(select(func.count(Match.id)))).scalar_one()


class TestHelpers:

    def test_target_gender(self):
        assert target_gender("male") == "female"
        assert target_gender("female") == "male"

    def test_canonical_pair_orders_ids(self):
        low = uuid.UUID(int=1)
        high = uuid.UUID(int=2)
        assert canonical_pair(high, low) == (low, high)
        assert canonical_pair(low, high) == (low, high)


class TestRunMatching:
    """Tests for the full selection pipeline."""

    @pytest.mark.asyncio
    async def test_unknown_user_raises(self, matching_service, db_session):
        with pytest.raises(UserNotFound):
            await matching_service.run_matching(uuid.uuid4(), db_session)

    @pytest.mark.asyncio
    async def test_seed_without_responses_raises(self, matching_service, db_session, make_user):
        seed = await make_user("male")
        with pytest.raises(NoResponses):
            await matching_service.run_matching(seed.id, db_session)

    @pytest.mark.asyncio
    async def test_creates_match_with_compatible_candidate(
        self, matching_service, db_session, make_user, answer_all
    ):
        seed = await make_user("male", nickname="minho")
        candidate = await make_user("female", nickname="jiwoo")
        await answer_all(seed, 0)
        await answer_all(candidate, 0)

        result = await matching_service.run_matching(seed.id, db_session)

        assert result.created_count == 1
        match = result.matches[0]
        assert match.compatibility_score == 100
        assert match.match_reason == "Many shared values. Highly compatible"
        assert {match.user_a_id, match.user_b_id} == {seed.id, candidate.id}
        assert match.user_a_id < match.user_b_id
        assert match.user_a_status == "pending"
        assert match.user_b_status == "pending"
        assert match.is_matched is False

    @pytest.mark.asyncio
    async def test_filters_ineligible_candidates(
        self, matching_service, db_session, make_user, answer_all
    ):
        seed = await make_user("male")
        await answer_all(seed, 0)

        same_gender = await make_user("male")
        incomplete = await make_user("female", complete=False)
        no_answers = await make_user("female")
        eligible = await make_user("female")
        for user in (same_gender, incomplete, eligible):
            await answer_all(user, 0)

        result = await matching_service.run_matching(seed.id, db_session)

        partners = {m.other_user_id(seed.id) for m in result.matches}
        assert partners == {eligible.id}
        assert no_answers.id not in partners

    @pytest.mark.asyncio
    async def test_threshold_is_inclusive(
        self, matching_service, db_session, make_user, answer_all
    ):
        seed = await make_user("male")
        at_threshold = await make_user("female")
        below = await make_user("female")
        await answer_all(seed, 0)
        await answer_all(at_threshold, 2)  # orthogonal -> 50
        await answer_all(below, 1)  # opposite -> 0

        result = await matching_service.run_matching(seed.id, db_session)

        assert [m.other_user_id(seed.id) for m in result.matches] == [at_threshold.id]
        assert result.matches[0].compatibility_score == 50

    @pytest.mark.asyncio
    async def test_limits_to_top_five_with_id_tie_break(
        self, matching_service, db_session, make_user, answer_all
    ):
        seed = await make_user("female")
        await answer_all(seed, 0)
        candidates = [await make_user("male") for _ in range(7)]
        for candidate in candidates:
            await answer_all(candidate, 0)

        result = await matching_service.run_matching(seed.id, db_session)

        assert result.created_count == 5
        expected = sorted(candidates, key=lambda u: str(u.id))[:5]
        assert {m.other_user_id(seed.id) for m in result.matches} == {u.id for u in expected}

    @pytest.mark.asyncio
    async def test_best_scores_win_the_limited_slots(
        self, matching_service, db_session, make_user, answer_all
    ):
        seed = await make_user("male")
        await answer_all(seed, 0)
        orthogonal = [await make_user("female") for _ in range(5)]
        for user in orthogonal:
            await answer_all(user, 2)
        best = await make_user("female")
        await answer_all(best, 0)

        result = await matching_service.run_matching(seed.id, db_session)

        assert result.created_count == 5
        assert best.id in {m.other_user_id(seed.id) for m in result.matches}

    @pytest.mark.asyncio
    async def test_rerun_creates_no_duplicates(
        self, matching_service, db_session, make_user, answer_all
    ):
        seed = await make_user("male")
        candidate = await make_user("female")
        await answer_all(seed, 0)
        await answer_all(candidate, 0)

        first = await matching_service.run_matching(seed.id, db_session)
        second = await matching_service.run_matching(seed.id, db_session)

        assert first.created_count == 1
        assert second.created_count == 0
        assert await _match_count(db_session) == 1

    @pytest.mark.asyncio
    async def test_existing_pair_excluded_from_either_side(
        self, matching_service, db_session, make_user, answer_all
    ):
        """A match created for the candidate also blocks the reverse run."""
        seed = await make_user("male")
        candidate = await make_user("female")
        await answer_all(seed, 0)
        await answer_all(candidate, 0)

        await matching_service.run_matching(candidate.id, db_session)
        result = await matching_service.run_matching(seed.id, db_session)

        assert result.created_count == 0
        assert await _match_count(db_session) == 1

    @pytest.mark.asyncio
    async def test_pair_conflict_is_skipped(
        self, matching_service, db_session, make_user
    ):
        """A concurrent insert of the same pair is swallowed, not raised."""
        seed = await make_user("male")
        candidate = await make_user("female")
        user_a_id, user_b_id = canonical_pair(seed.id, candidate.id)
        db_session.add(Match(user_a_id=user_a_id, user_b_id=user_b_id, compatibility_score=70))
        await db_session.flush()

        created = await matching_service._create_match(
            seed.id,
            ScoredCandidate(user=candidate, score=90, reason="Highly compatible"),
            db_session,
        )

        assert created is None
        assert await _match_count(db_session) == 1

    @pytest.mark.asyncio
    async def test_notifies_both_participants(
        self, matching_service, db_session, make_user, answer_all, notifier
    ):
        seed = await make_user("male", nickname="minho")
        candidate = await make_user("female", nickname="jiwoo")
        await answer_all(seed, 0)
        await answer_all(candidate, 0)

        result = await matching_service.run_matching(seed.id, db_session)
        match_id = str(result.matches[0].id)

        calls = notifier.of_type("new_match")
        assert {c.user_id for c in calls} == {seed.id, candidate.id}
        assert all(c.payload["matchId"] == match_id for c in calls)
        to_seed = next(c for c in calls if c.user_id == seed.id)
        assert to_seed.payload["partnerName"] == "jiwoo"

    @pytest.mark.asyncio
    async def test_publishes_insert_event(
        self, matching_service, db_session, make_user, answer_all, feed
    ):
        seed = await make_user("male")
        candidate = await make_user("female")
        await answer_all(seed, 0)
        await answer_all(candidate, 0)

        subscription = feed.subscribe(user_id=str(candidate.id), tables={"matches"})
        result = await matching_service.run_matching(seed.id, db_session)
        await db_session.commit()

        event = await asyncio.wait_for(subscription.get(), timeout=1)
        assert event.op == "insert"
        assert event.row_id == str(result.matches[0].id)
        subscription.cancel()

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_fail_matching(
        self, feed, db_session, make_user, answer_all
    ):
        async def broken_notifier(*args, **kwargs):
            raise RuntimeError("push down")

        service = MatchingService(notifier=broken_notifier, feed=feed)
        seed = await make_user("male")
        candidate = await make_user("female")
        await answer_all(seed, 0)
        await answer_all(candidate, 0)

        result = await service.run_matching(seed.id, db_session)
        assert result.created_count == 1


class TestListMatches:

    @pytest.mark.asyncio
    async def test_lists_both_orderings_best_first(
        self, matching_service, db_session, make_user
    ):
        me = await make_user("male")
        other_1 = await make_user("female")
        other_2 = await make_user("female")
        for other, score in ((other_1, 60), (other_2, 90)):
            user_a_id, user_b_id = canonical_pair(me.id, other.id)
            db_session.add(
                Match(user_a_id=user_a_id, user_b_id=user_b_id, compatibility_score=score)
            )
        await db_session.flush()

        matches = await matching_service.list_matches(me.id, db_session)
        assert [m.compatibility_score for m in matches] == [90, 60]
