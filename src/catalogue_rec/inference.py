"""
Gap-filling inference for missing movie metadata.

Three strategies, each with its own thresholds from config:

1. Similarity cohort: movies sharing exact-match keys with the source
   (e.g. same director and lead actor) vote on the missing value.
2. Collaboration pattern: a named role-holder's earlier films vote on it.
3. Era/genre frequency: names recurring across same-decade, same-genre
   movies are suggested as supporting cast.

Strategies for one field run in a fixed order and the first accepted result
wins. Every accepted result has confidence strictly below the verified
threshold and carries its evidence. An undersized cohort returns None; a
storage failure raises RepositoryError.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from dataclasses import dataclass

from .config import (
    DEFAULT_SUPPORTING_CAST_SUGGESTIONS,
    DIRECTOR_COLLABORATION,
    ERA_GENRE_FREQUENCY,
    LEAD_ACTOR_COLLABORATION,
    SIMILARITY_COHORT,
    VERIFIED_CONFIDENCE,
    StrategyConfig,
)
from .models import InferenceEvidence, InferenceResult, InferenceType, Movie
from .repository import FieldFilter, FilterOp, MovieRepository, OrderBy
from .scoring import RelevanceScorer
from .utils import decade_label

logger = logging.getLogger(__name__)

# Largest float below the verified threshold
CONFIDENCE_CEILING = math.nextafter(VERIFIED_CONFIDENCE, 0.0)

MAX_SUPPORTING_EXAMPLES = 10


def bounded_confidence(raw: float, config: StrategyConfig) -> float:
    return min(raw, config.cap, CONFIDENCE_CEILING)


@dataclass(frozen=True)
class StrategyStep:
    """One entry in a field's fallback order."""

    kind: str                       # "similarity" or "collaboration"
    config: StrategyConfig
    keys: tuple[str, ...]           # match keys (similarity) or the role (collaboration)


def similarity(*keys: str, config: StrategyConfig = SIMILARITY_COHORT) -> StrategyStep:
    return StrategyStep("similarity", config, keys)


def collaboration(role: str, config: StrategyConfig) -> StrategyStep:
    return StrategyStep("collaboration", config, (role,))


FIELD_STRATEGIES: dict[str, tuple[StrategyStep, ...]] = {
    "composer": (
        similarity("director", "lead_actor"),
        collaboration("director", DIRECTOR_COLLABORATION),
    ),
    "producer": (
        collaboration("director", DIRECTOR_COLLABORATION),
        collaboration("lead_actor", LEAD_ACTOR_COLLABORATION),
    ),
    "lead_actress": (
        similarity("director", "lead_actor"),
        collaboration("lead_actor", LEAD_ACTOR_COLLABORATION),
    ),
}


def _modal_value(values: list[str]) -> tuple[str, int] | None:
    """
    Most frequent value, compared case-insensitively.

    Ties go to the alphabetically first name, ignoring case, so results are stable.
    """
    if not values:
        return None
    counts: Counter[str] = Counter()
    spelling: dict[str, str] = {}
    for value in values:
        key = value.strip().lower()
        counts[key] += 1
        spelling.setdefault(key, value.strip())
    key, count = min(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    return spelling[key], count


class GapFiller:
    """Infers missing fields from catalogue patterns. Never writes to the catalogue."""

    def __init__(self, repository: MovieRepository, scorer: RelevanceScorer | None = None):
        self.repository = repository
        self.scorer = scorer or RelevanceScorer()

    def infer_missing_field(self, movie: Movie, field_name: str) -> InferenceResult | None:
        """Try the field's strategies in order and return the first accepted result."""
        steps = FIELD_STRATEGIES.get(field_name)
        if steps is None:
            raise ValueError(
                f"No inference strategies for '{field_name}' "
                f"(supported: {', '.join(sorted(FIELD_STRATEGIES))})"
            )
        if getattr(movie, field_name):
            logger.debug(f"{movie.id} already has {field_name}; nothing to infer")
            return None

        for step in steps:
            if step.kind == "similarity":
                result = self.infer_from_similarity(movie, field_name, step.keys, step.config)
            else:
                result = self.infer_from_collaboration(movie, step.keys[0], field_name, step.config)
            if result is not None:
                logger.info(
                    f"Inferred {field_name}={result.inferred_value!r} for {movie.id} "
                    f"via {result.evidence.method} ({result.confidence:.3f})"
                )
                return result

        logger.debug(f"No strategy produced {field_name} for {movie.id}")
        return None

    def _accept(
        self,
        movie: Movie,
        field_name: str,
        cohort: list[Movie],
        config: StrategyConfig,
        describe: str,
    ) -> tuple[str, int, float] | None:
        """Apply a strategy's cohort/support/confidence bars. Returns (value, support, confidence)."""
        if len(cohort) < config.min_cohort:
            logger.debug(
                f"{config.method}: cohort of {len(cohort)} for {movie.id}.{field_name} "
                f"({describe}) below {config.min_cohort}"
            )
            return None

        modal = _modal_value([getattr(m, field_name) for m in cohort])
        if modal is None:
            return None
        value, support = modal
        if support < config.min_support:
            logger.debug(f"{config.method}: '{value}' only in {support}/{len(cohort)} ({describe})")
            return None

        confidence = bounded_confidence((support / len(cohort)) * config.weight, config)
        if confidence < config.min_confidence:
            logger.debug(
                f"{config.method}: discarded '{value}' for {movie.id}.{field_name}, "
                f"confidence {confidence:.3f} below {config.min_confidence}"
            )
            return None
        return value, support, confidence

    def _examples(self, movie: Movie, cohort: list[Movie], field_name: str, value: str) -> list[dict]:
        target = value.lower()
        return [
            {
                "id": m.id,
                "title": m.title,
                "value": getattr(m, field_name),
                "similarity": round(self.scorer.score(movie, m), 4),
            }
            for m in cohort
            if (getattr(m, field_name) or "").strip().lower() == target
        ][:MAX_SUPPORTING_EXAMPLES]

    def infer_from_similarity(
        self,
        movie: Movie,
        field_name: str,
        keys: tuple[str, ...],
        config: StrategyConfig = SIMILARITY_COHORT,
    ) -> InferenceResult | None:
        present = [k for k in keys if getattr(movie, k)]
        if not present:
            return None

        filters = [FieldFilter.eq(k, getattr(movie, k)) for k in present]
        filters.append(FieldFilter(field_name, FilterOp.NOT_NULL))
        cohort = self.repository.query_by_intersection(
            filters,
            exclude_id=movie.id,
            limit=config.cohort_limit,
            order_by=OrderBy.ID,
            published_only=config.published_only,
            require_image=False,
        )

        describe = "+".join(present)
        accepted = self._accept(movie, field_name, cohort, config, describe)
        if accepted is None:
            return None
        value, support, confidence = accepted

        return InferenceResult(
            field_name=field_name,
            inferred_value=value,
            confidence=confidence,
            evidence=InferenceEvidence(
                method=config.method,
                reasoning=f"Found in {support}/{len(cohort)} similar movies with same {describe}",
                sample_size=len(cohort),
                support_count=support,
                supporting_examples=self._examples(movie, cohort, field_name, value),
            ),
            inference_type=InferenceType(config.inference_type),
        )

    def infer_from_collaboration(
        self,
        movie: Movie,
        role: str,
        field_name: str,
        config: StrategyConfig = DIRECTOR_COLLABORATION,
    ) -> InferenceResult | None:
        name = getattr(movie, role)
        if not name:
            return None

        cohort = self.repository.query_by_intersection(
            [FieldFilter.eq(role, name), FieldFilter(field_name, FilterOp.NOT_NULL)],
            exclude_id=movie.id,
            limit=config.cohort_limit,
            order_by=OrderBy.ID,
            published_only=config.published_only,
            require_image=False,
        )

        accepted = self._accept(movie, field_name, cohort, config, f"{role}={name}")
        if accepted is None:
            return None
        value, support, confidence = accepted

        return InferenceResult(
            field_name=field_name,
            inferred_value=value,
            confidence=confidence,
            evidence=InferenceEvidence(
                method=config.method,
                reasoning=f"{name} worked with {value} in {support}/{len(cohort)} previous films",
                sample_size=len(cohort),
                support_count=support,
                supporting_examples=self._examples(movie, cohort, field_name, value),
            ),
            inference_type=InferenceType(config.inference_type),
        )

    def infer_supporting_cast(
        self,
        movie: Movie,
        max_count: int = DEFAULT_SUPPORTING_CAST_SUGGESTIONS,
        config: StrategyConfig = ERA_GENRE_FREQUENCY,
    ) -> list[InferenceResult]:
        """Suggest supporting actors common in the movie's decade and primary genre."""
        if max_count <= 0 or movie.release_year is None or not movie.primary_genre:
            return []

        decade = movie.decade
        genre = movie.primary_genre
        cohort = self.repository.query_by_intersection(
            [
                FieldFilter("release_year", FilterOp.GTE, decade),
                FieldFilter("release_year", FilterOp.LT, decade + 10),
                FieldFilter("genres", FilterOp.CONTAINS, genre),
                FieldFilter("supporting_cast", FilterOp.NOT_NULL),
            ],
            exclude_id=movie.id,
            limit=config.cohort_limit,
            order_by=OrderBy.ID,
            published_only=config.published_only,
            require_image=False,
        )
        if len(cohort) < config.min_cohort:
            logger.debug(f"{config.method}: {len(cohort)} {genre} movies in {decade}s, need {config.min_cohort}")
            return []

        counts: Counter[str] = Counter()
        spelling: dict[str, str] = {}
        appearances: dict[str, list[Movie]] = {}
        for m in cohort:
            # one vote per movie per name
            names: dict[str, str] = {}
            for raw in m.supporting_cast:
                if raw.strip():
                    names.setdefault(raw.strip().lower(), raw.strip())
            for key, name in names.items():
                counts[key] += 1
                spelling.setdefault(key, name)
                appearances.setdefault(key, []).append(m)

        credited = movie.credited_names()
        ranked = sorted(counts.items(), key=lambda kv: (-kv[1], spelling[kv[0]]))

        results = []
        for key, count in ranked:
            fraction = count / len(cohort)
            if fraction < config.min_fraction:
                break
            if key in credited:
                continue
            name = spelling[key]
            results.append(InferenceResult(
                field_name="supporting_cast",
                inferred_value=name,
                confidence=bounded_confidence(fraction * config.weight, config),
                evidence=InferenceEvidence(
                    method=config.method,
                    reasoning=(
                        f"Found in {round(fraction * 100)}% of similar {genre} movies "
                        f"from the {decade_label(movie.release_year)}"
                    ),
                    sample_size=len(cohort),
                    support_count=count,
                    supporting_examples=[
                        {"id": m.id, "title": m.title, "value": name}
                        for m in appearances[key][:MAX_SUPPORTING_EXAMPLES]
                    ],
                ),
                inference_type=InferenceType(config.inference_type),
            ))
            if len(results) >= max_count:
                break

        return results
