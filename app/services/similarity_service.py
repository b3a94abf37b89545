"""
Rapport: Vector compatibility scoring and match reason generation.

Turns two users' scenario answers into a single 0-100 compatibility score
and a short human-readable rationale for the match card.

Scoring pipeline:
  1. Pair up scenarios answered by both users.
  2. Cosine similarity of the two chosen options' personality vectors
     (0 when either vector has zero magnitude or the trait sets differ).
  3. Average across compared scenarios  ->  s in [-1, 1].
  4. Map to an integer:  round(((s + 1) / 2) * 100).
  5. No shared scenarios  ->  neutral score (50).

Both functions are pure: same input, same output, no I/O.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import structlog

logger = structlog.get_logger("rapport.similarity_service")


@dataclass(frozen=True)
class ScenarioAnswer:
    """One user's answer to one scenario, as seen by the scorer."""

    scenario_id: int
    option_id: int | None = None
    vector: Any = None
    category: str | None = None


class SimilarityService:
    """Score two answer sets and explain the result.

    Malformed or missing personality vectors silently drop that scenario
    from the comparison; scoring never raises on bad catalog data.
    """

    NEUTRAL_SCORE: int = 50

    # ── Reason thresholds ───────────────────────────────────────────
    MANY_SHARED_CHOICES: int = 3
    SOME_SHARED_CHOICES: int = 2
    HIGH_SCORE: int = 80
    GOOD_SCORE: int = 65
    MAX_REASON_CLAUSES: int = 2

    # ── Category-specific clauses (first matching scenario wins) ────
    CATEGORY_REASONS: dict[str, str] = {
        "conflict": "You handle disagreements in a similar way",
        "career": "You see career and relationships the same way",
        "lifestyle": "Your lifestyles fit well together",
        "future": "You share a similar vision for the future",
        "trust": "You think about trust the same way",
    }

    FALLBACK_REASON: str = "Start a new connection"

    def __init__(self, neutral_score: int | None = None) -> None:
        if neutral_score is not None:
            self.NEUTRAL_SCORE = neutral_score

    # ── Public API ──────────────────────────────────────────────────

    def calculate_score(
        self,
        answers_a: Iterable[ScenarioAnswer],
        answers_b: Iterable[ScenarioAnswer],
    ) -> int:
        """Return the 0-100 compatibility score for two answer sets."""
        vectors_a = self._index_vectors(answers_a)
        vectors_b = self._index_vectors(answers_b)

        total_similarity = 0.0
        comparisons = 0

        for scenario_id in sorted(vectors_a.keys() & vectors_b.keys()):
            total_similarity += self._compare(vectors_a[scenario_id], vectors_b[scenario_id])
            comparisons += 1

        if comparisons == 0:
            logger.debug("similarity.no_shared_scenarios", score=self.NEUTRAL_SCORE)
            return self.NEUTRAL_SCORE

        avg_similarity = total_similarity / comparisons
        score = self._to_percent(avg_similarity)

        logger.debug(
            "similarity.score",
            comparisons=comparisons,
            avg_similarity=round(avg_similarity, 4),
            score=score,
        )
        return score

    def generate_match_reason(
        self,
        answers_a: Iterable[ScenarioAnswer],
        answers_b: Iterable[ScenarioAnswer],
        score: int,
    ) -> str:
        """Build a short rationale of at most two clauses.

        Order: shared-choice count, score band, then the first
        category-specific clause (scanning scenarios in ascending id order)
        where both users picked the same option.
        """
        choices_a = {a.scenario_id: a for a in answers_a}
        choices_b = {b.scenario_id: b for b in answers_b}

        shared = [
            scenario_id
            for scenario_id in sorted(choices_a.keys() & choices_b.keys())
            if choices_a[scenario_id].option_id is not None
            and choices_a[scenario_id].option_id == choices_b[scenario_id].option_id
        ]

        reasons: list[str] = []

        if len(shared) >= self.MANY_SHARED_CHOICES:
            reasons.append("Many shared values")
        elif len(shared) >= self.SOME_SHARED_CHOICES:
            reasons.append("Some shared values")

        if score >= self.HIGH_SCORE:
            reasons.append("Highly compatible")
        elif score >= self.GOOD_SCORE:
            reasons.append("Good conversational match")

        for scenario_id in shared:
            category = choices_a[scenario_id].category or choices_b[scenario_id].category
            clause = self.CATEGORY_REASONS.get(category or "")
            if clause:
                reasons.append(clause)
                break

        return ". ".join(reasons[: self.MAX_REASON_CLAUSES]) or self.FALLBACK_REASON

    @staticmethod
    def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
        """Cosine similarity; 0.0 on length mismatch or zero magnitude."""
        if len(a) != len(b):
            return 0.0

        dot_product = 0.0
        norm_a = 0.0
        norm_b = 0.0
        for x, y in zip(a, b):
            dot_product += x * y
            norm_a += x * x
            norm_b += y * y

        denominator = math.sqrt(norm_a) * math.sqrt(norm_b)
        if denominator == 0:
            return 0.0
        return dot_product / denominator

    # ── Internals ───────────────────────────────────────────────────

    def _index_vectors(
        self, answers: Iterable[ScenarioAnswer]
    ) -> dict[int, tuple[tuple[Any, ...], tuple[float, ...]]]:
        indexed: dict[int, tuple[tuple[Any, ...], tuple[float, ...]]] = {}
        for answer in answers:
            parsed = self._parse_vector(answer.vector)
            if parsed is None:
                logger.debug(
                    "similarity.vector_skipped",
                    scenario_id=answer.scenario_id,
                    option_id=answer.option_id,
                )
                continue
            indexed[answer.scenario_id] = parsed
        return indexed

    @staticmethod
    def _parse_vector(raw: Any) -> tuple[tuple[Any, ...], tuple[float, ...]] | None:
        """Split a vector into (trait keys, values) aligned by sorted trait name.

        Lists are accepted positionally.  Returns ``None`` for anything that
        cannot be scored: missing, empty, or containing non-finite or
        non-numeric weights.
        """
        if isinstance(raw, Mapping):
            try:
                keys = tuple(sorted(raw.keys()))
            except TypeError:
                return None
            values = [raw[k] for k in keys]
        elif isinstance(raw, (list, tuple)):
            keys = tuple(range(len(raw)))
            values = list(raw)
        else:
            return None

        if not values:
            return None

        numbers: list[float] = []
        for value in values:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return None
            if not math.isfinite(value):
                return None
            numbers.append(float(value))

        return keys, tuple(numbers)

    def _compare(
        self,
        left: tuple[tuple[Any, ...], tuple[float, ...]],
        right: tuple[tuple[Any, ...], tuple[float, ...]],
    ) -> float:
        keys_left, values_left = left
        keys_right, values_right = right
        if keys_left != keys_right:
            return 0.0
        return self.cosine_similarity(values_left, values_right)

    @staticmethod
    def _to_percent(similarity: float) -> int:
        # Half-up rounding.
        score = math.floor(((similarity + 1.0) / 2.0) * 100.0 + 0.5)
        return max(0, min(100, int(score)))
