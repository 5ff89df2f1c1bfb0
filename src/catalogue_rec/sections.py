"""
Section composer: turns per-dimension candidates into display sections.

Composition is a greedy claim-and-remove pass. Sections are considered in a
fixed order (best matches, then signal dimensions, then fallbacks); each
accepted section permanently claims its movies, so a movie eligible under
several dimensions lands in whichever is processed first and no id appears
twice. Sections that end up smaller than the minimum are dropped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from .config import MAX_SECTIONS, MIN_MOVIES_FOR_SECTION, MOVIES_PER_SECTION
from .models import MatchType, Movie, Section
from .repository import MovieRepository
from .retrieval import CandidateRetriever, Dimension, DimensionResult
from .scoring import RelevanceScorer
from .utils import decade_label

logger = logging.getLogger(__name__)

BEST_MATCH_PRIORITY = 100

# Dimensions pooled into the "best matches" section
BEST_MATCH_DIMENSIONS = (
    Dimension.DIRECTOR,
    Dimension.LEAD_ACTOR,
    Dimension.LEAD_ACTRESS,
    Dimension.PRIMARY_GENRE,
    Dimension.ERA,
    Dimension.TOP_RATED,
)


@dataclass(frozen=True)
class SectionTemplate:
    dimension: Dimension
    match_type: MatchType
    priority: int
    title: Callable[[Movie], str]
    subtitle: Callable[[Movie], str]


# Processing order is list order; priorities strictly decrease along it.
SIGNAL_SECTIONS = (
    SectionTemplate(Dimension.DIRECTOR, MatchType.DIRECTOR, 90,
                    lambda m: f"More from {m.director}",
                    lambda m: f"Directed by {m.director}"),
    SectionTemplate(Dimension.LEAD_ACTOR, MatchType.LEAD_ACTOR, 85,
                    lambda m: f"More {m.lead_actor} Movies",
                    lambda m: f"Starring {m.lead_actor}"),
    SectionTemplate(Dimension.LEAD_ACTRESS, MatchType.LEAD_ACTRESS, 80,
                    lambda m: f"More {m.lead_actress} Movies",
                    lambda m: f"Featuring {m.lead_actress}"),
    SectionTemplate(Dimension.PRIMARY_GENRE, MatchType.GENRE, 75,
                    lambda m: f"More {m.primary_genre} Movies",
                    lambda m: f"Top rated {m.primary_genre.lower()} picks"),
    SectionTemplate(Dimension.ERA, MatchType.ERA, 70,
                    lambda m: f"Best of {decade_label(m.release_year)}",
                    lambda m: f"Highlights from the {decade_label(m.release_year)}"),
    SectionTemplate(Dimension.COMPOSER, MatchType.MUSIC, 65,
                    lambda m: f"Music by {m.composer}",
                    lambda m: f"More scores from {m.composer}"),
    SectionTemplate(Dimension.SECONDARY_GENRE, MatchType.GENRE, 60,
                    lambda m: f"More {m.secondary_genre} Movies",
                    lambda m: f"Top rated {m.secondary_genre.lower()} picks"),
)

FALLBACK_SECTIONS = (
    SectionTemplate(Dimension.CLASSICS, MatchType.CLASSICS, 40,
                    lambda m: "Timeless Classics", lambda m: "Curated classics"),
    SectionTemplate(Dimension.BLOCKBUSTERS, MatchType.BLOCKBUSTERS, 35,
                    lambda m: "Other Blockbusters", lambda m: "Box office blockbusters"),
    SectionTemplate(Dimension.HIDDEN_GEMS, MatchType.HIDDEN_GEMS, 30,
                    lambda m: "Hidden Gems", lambda m: "Underrated films worth finding"),
    SectionTemplate(Dimension.TOP_RATED, MatchType.RATING, 25,
                    lambda m: "Top Rated Movies", lambda m: "Highly rated across the catalogue"),
    SectionTemplate(Dimension.RECENT, MatchType.RECENT, 20,
                    lambda m: "Recent Releases", lambda m: "New and well reviewed"),
)


def _claim(
    candidates: list[Movie],
    used_ids: set[str],
    source_id: str,
) -> list[Movie] | None:
    """Unclaimed candidates capped at the section size, or None if too few remain."""
    remaining = []
    seen = set()
    for movie in candidates:
        if movie.id == source_id or movie.id in used_ids or movie.id in seen:
            continue
        seen.add(movie.id)
        remaining.append(movie)

    if len(remaining) < MIN_MOVIES_FOR_SECTION:
        return None
    claimed = remaining[:MOVIES_PER_SECTION]
    used_ids.update(m.id for m in claimed)
    return claimed


class SectionComposer:
    """Builds recommendation sections for a source movie."""

    def __init__(
        self,
        repository: MovieRepository,
        scorer: RelevanceScorer | None = None,
        retriever: CandidateRetriever | None = None,
    ):
        self.scorer = scorer or RelevanceScorer()
        self.retriever = retriever or CandidateRetriever(repository)

    async def compute_sections(self, source: Movie) -> list[Section]:
        """Retrieve candidates concurrently, then compose. Empty list means no recommendations."""
        results = await self.retriever.retrieve(source)
        return self.compose(source, results)

    def _best_matches(self, source: Movie, results: dict[Dimension, DimensionResult]) -> list[tuple[Movie, float]]:
        pool: dict[str, Movie] = {}
        for dimension in BEST_MATCH_DIMENSIONS:
            result = results.get(dimension)
            if result is None or result.failed:
                continue
            for movie in result.movies:
                if movie.id != source.id:
                    pool.setdefault(movie.id, movie)
        return self.scorer.rank_candidates(source, list(pool.values()))[:MOVIES_PER_SECTION]

    def compose(self, source: Movie, results: dict[Dimension, DimensionResult]) -> list[Section]:
        """
        Greedy claim-and-remove over already-fetched results.

        Pure: the used-id set lives only for this call.
        """
        used_ids: set[str] = set()
        sections: list[Section] = []

        ranked = self._best_matches(source, results)
        if len(ranked) >= MIN_MOVIES_FOR_SECTION:
            movies = [m for m, _ in ranked]
            used_ids.update(m.id for m in movies)
            sections.append(Section(
                id="best",
                title="Best Matches",
                subtitle=f"Most similar to {source.title}",
                movies=movies,
                match_type=MatchType.BEST,
                priority=BEST_MATCH_PRIORITY,
                scores={m.id: round(score, 4) for m, score in ranked},
            ))

        for template in (*SIGNAL_SECTIONS, *FALLBACK_SECTIONS):
            result = results.get(template.dimension)
            if result is None or result.failed or not result.movies:
                continue
            claimed = _claim(result.movies, used_ids, source.id)
            if claimed is None:
                logger.debug(f"Dropping {template.dimension.value} section for {source.id}: too few unclaimed movies")
                continue
            sections.append(Section(
                id=template.dimension.value,
                title=template.title(source),
                subtitle=template.subtitle(source),
                movies=claimed,
                match_type=template.match_type,
                priority=template.priority,
            ))

        sections.sort(key=lambda s: -s.priority)
        logger.info(f"Composed {min(len(sections), MAX_SECTIONS)} sections for {source.id}")
        return sections[:MAX_SECTIONS]
