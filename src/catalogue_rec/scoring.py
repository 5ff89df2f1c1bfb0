"""
Relevance scorer: weighted similarity between a source movie and a candidate.

The score is a weighted sum of six signals, each in [0, 1], so with weights
summing to 1.0 the result is in [0, 1]. Missing attributes zero out the
affected signal; nothing here raises on incomplete records.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np

from .config import ERA_FLOOR, ERA_STEPS, RATING_FLOOR, RATING_STEPS
from .models import Movie
from .scorer_weights import DEFAULT_WEIGHTS, ScorerWeights

logger = logging.getLogger(__name__)


def _same_name(a: str | None, b: str | None) -> bool:
    if not a or not b:
        return False
    return a.strip().lower() == b.strip().lower()


def _step(diff: float, steps: tuple, floor: float) -> float:
    for max_diff, factor in steps:
        if diff <= max_diff:
            return factor
    return floor


def era_proximity(year_a: int | None, year_b: int | None) -> float:
    """Step factor on the absolute release-year gap; 0 when either year is unknown."""
    if year_a is None or year_b is None:
        return 0.0
    return _step(abs(year_a - year_b), ERA_STEPS, ERA_FLOOR)


def rating_proximity(rating_a: float | None, rating_b: float | None) -> float:
    """Step factor on the absolute rating gap; 0 when either rating is absent."""
    if rating_a is None or rating_b is None:
        return 0.0
    # Ratings carry one decimal; 8.3 - 7.8 must land on the 0.5 step
    diff = round(abs(rating_a - rating_b), 6)
    return _step(diff, RATING_STEPS, RATING_FLOOR)


def genre_overlap(source: Movie, candidate: Movie) -> float:
    """
    Share of the source's genres that the candidate also has.

    Normalised by the source, so overlap(a, b) != overlap(b, a) in general.
    """
    source_genres = {g.strip().lower() for g in source.genres if g}
    if not source_genres:
        return 0.0
    candidate_genres = {g.strip().lower() for g in candidate.genres if g}
    return len(source_genres & candidate_genres) / len(source_genres)


def tag_overlap(source: Movie, candidate: Movie) -> float:
    source_tags = source.tags
    if not source_tags:
        return 0.0
    return len(source_tags & candidate.tags) / len(source_tags)


@dataclass
class ScoreBreakdown:
    """Weighted contribution of each signal plus display reasons."""

    contributions: dict[str, float] = field(default_factory=dict)
    reasons: list[str] = field(default_factory=list)

    @property
    def total(self) -> float:
        return sum(self.contributions.values())


class RelevanceScorer:
    """Pure, deterministic scorer. Safe to share across requests."""

    def __init__(self, weights: ScorerWeights | None = None):
        self.weights = weights or DEFAULT_WEIGHTS

    def explain(self, source: Movie, candidate: Movie) -> ScoreBreakdown:
        w = self.weights
        breakdown = ScoreBreakdown()
        reasons = breakdown.reasons

        director = 1.0 if _same_name(source.director, candidate.director) else 0.0
        if director:
            reasons.append(f"Director: {candidate.director}")

        lead = 1.0 if _same_name(source.lead_actor, candidate.lead_actor) else 0.0
        if lead:
            reasons.append(f"Lead: {candidate.lead_actor}")

        genres = genre_overlap(source, candidate)
        if genres:
            shared = [g for g in candidate.genres if g.lower() in {s.lower() for s in source.genres}]
            reasons.append(f"Genre: {', '.join(shared)}")

        era = era_proximity(source.release_year, candidate.release_year)
        if era >= 0.8:
            reasons.append(f"Era: {candidate.release_year}")

        tags = tag_overlap(source, candidate)
        if tags:
            reasons.append(f"Shared tags: {', '.join(sorted(source.tags & candidate.tags))}")

        rating = rating_proximity(source.rating, candidate.rating)

        breakdown.contributions = {
            'director': w.director * director,
            'lead_actor': w.lead_actor * lead,
            'genre': w.genre * genres,
            'era': w.era * era,
            'tags': w.tags * tags,
            'rating': w.rating * rating,
        }
        return breakdown

    def score(self, source: Movie, candidate: Movie) -> float:
        return self.explain(source, candidate).total

    def rank_candidates(self, source: Movie, candidates: list[Movie]) -> list[tuple[Movie, float]]:
        """
        Score candidates against the source, highest first.

        Equal scores keep ascending id order, so repeated calls over the same
        inputs always produce the same ranking.
        """
        if not candidates:
            return []
        by_id = sorted(candidates, key=lambda m: m.id)
        scores = np.fromiter((self.score(source, m) for m in by_id), dtype=float, count=len(by_id))
        order = np.argsort(-scores, kind="stable")
        return [(by_id[i], float(scores[i])) for i in order]
