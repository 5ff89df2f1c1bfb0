"""
Candidate retrieval: one independent repository query per dimension.

All dimension queries for a source movie are launched concurrently on worker
threads and collected once every one of them has finished. A dimension whose
source attribute is missing is skipped without querying.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Callable

from .config import (
    DEFAULT_MAX_CONCURRENT,
    MIN_MOVIES_FOR_SECTION,
    MOVIES_PER_SECTION,
    RECENT_MIN_RATING,
    RECENT_YEARS_WINDOW,
    TOP_RATED_MIN_RATING,
)
from .errors import RepositoryError
from .models import Movie
from .repository import FieldFilter, FilterOp, MovieRepository, OrderBy, RATING_FIELD

logger = logging.getLogger(__name__)


class Dimension(str, Enum):
    DIRECTOR = "director"
    LEAD_ACTOR = "lead_actor"
    LEAD_ACTRESS = "lead_actress"
    COMPOSER = "composer"
    PRIMARY_GENRE = "genre"
    SECONDARY_GENRE = "genre_2"
    ERA = "era"
    CLASSICS = "classics"
    BLOCKBUSTERS = "blockbusters"
    HIDDEN_GEMS = "hidden_gems"
    TOP_RATED = "top_rated"
    RECENT = "recent"


@dataclass
class DimensionResult:
    dimension: Dimension
    movies: list[Movie] = field(default_factory=list)
    queried: bool = True
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def usable(self) -> bool:
        return not self.failed and len(self.movies) >= MIN_MOVIES_FOR_SECTION


QueryFn = Callable[[MovieRepository, Movie, int], list[Movie]]


def _by_field(attr: str, field_name: str | None = None) -> tuple[Callable[[Movie], object], QueryFn]:
    """Equality dimension on a scalar attribute of the source."""
    target = field_name or attr

    def value(source: Movie):
        return getattr(source, attr)

    def query(repo: MovieRepository, source: Movie, limit: int) -> list[Movie]:
        return repo.query_by_field(target, value(source), exclude_id=source.id, limit=limit)

    return value, query


def _by_genre(index: int) -> tuple[Callable[[Movie], object], QueryFn]:
    def value(source: Movie):
        return source.genres[index] if len(source.genres) > index else None

    def query(repo: MovieRepository, source: Movie, limit: int) -> list[Movie]:
        return repo.query_by_field("genres", value(source), exclude_id=source.id, limit=limit)

    return value, query


def _era_query(repo: MovieRepository, source: Movie, limit: int) -> list[Movie]:
    decade = source.decade
    return repo.query_by_intersection(
        [
            FieldFilter("release_year", FilterOp.GTE, decade),
            FieldFilter("release_year", FilterOp.LT, decade + 10),
        ],
        exclude_id=source.id,
        limit=limit,
    )


def _tag_query(tag: str) -> QueryFn:
    def query(repo: MovieRepository, source: Movie, limit: int) -> list[Movie]:
        return repo.query_by_intersection(
            [FieldFilter(tag, FilterOp.IS_TRUE)], exclude_id=source.id, limit=limit
        )
    return query


def _top_rated_query(repo: MovieRepository, source: Movie, limit: int) -> list[Movie]:
    return repo.query_by_intersection(
        [FieldFilter(RATING_FIELD, FilterOp.GTE, TOP_RATED_MIN_RATING)],
        exclude_id=source.id,
        limit=limit,
    )


def _recent_query(repo: MovieRepository, source: Movie, limit: int) -> list[Movie]:
    return repo.query_by_intersection(
        [
            FieldFilter("release_year", FilterOp.GTE, date.today().year - RECENT_YEARS_WINDOW),
            FieldFilter(RATING_FIELD, FilterOp.GTE, RECENT_MIN_RATING),
        ],
        exclude_id=source.id,
        limit=limit,
        order_by=OrderBy.RECENT,
    )


def _always(_source: Movie) -> bool:
    return True


# dimension -> (source attribute accessor, query)
DIMENSION_QUERIES: dict[Dimension, tuple[Callable[[Movie], object], QueryFn]] = {
    Dimension.DIRECTOR: _by_field("director"),
    Dimension.LEAD_ACTOR: _by_field("lead_actor"),
    Dimension.LEAD_ACTRESS: _by_field("lead_actress"),
    Dimension.COMPOSER: _by_field("composer"),
    Dimension.PRIMARY_GENRE: _by_genre(0),
    Dimension.SECONDARY_GENRE: _by_genre(1),
    Dimension.ERA: (lambda m: m.release_year, _era_query),
    Dimension.CLASSICS: (_always, _tag_query("is_classic")),
    Dimension.BLOCKBUSTERS: (_always, _tag_query("is_blockbuster")),
    Dimension.HIDDEN_GEMS: (_always, _tag_query("is_underrated")),
    Dimension.TOP_RATED: (_always, _top_rated_query),
    Dimension.RECENT: (_always, _recent_query),
}


class CandidateRetriever:
    """Runs every dimension query for a source movie against a read-only repository."""

    def __init__(
        self,
        repository: MovieRepository,
        limit: int = MOVIES_PER_SECTION,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
    ):
        self.repository = repository
        self.limit = limit
        self.max_concurrent = max_concurrent

    def _run(self, dimension: Dimension, source: Movie) -> DimensionResult:
        accessor, query = DIMENSION_QUERIES[dimension]
        value = accessor(source)
        if value is None or value == "":
            return DimensionResult(dimension, queried=False)

        movies = query(self.repository, source, self.limit)
        # Repositories are asked to exclude the source; enforce it regardless.
        movies = [m for m in movies if m.id != source.id][:self.limit]
        return DimensionResult(dimension, movies)

    async def retrieve(
        self,
        source: Movie,
        dimensions: list[Dimension] | None = None,
    ) -> dict[Dimension, DimensionResult]:
        """
        Fan out all dimension queries and wait for every one.

        A RepositoryError marks only its dimension as failed. Other exceptions
        are programming errors and propagate.
        """
        dims = list(dimensions or Dimension)
        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def _bounded(dimension: Dimension) -> DimensionResult:
            async with semaphore:
                return await asyncio.to_thread(self._run, dimension, source)

        outcomes = await asyncio.gather(*[_bounded(d) for d in dims], return_exceptions=True)

        results: dict[Dimension, DimensionResult] = {}
        failed = []
        for dimension, outcome in zip(dims, outcomes):
            if isinstance(outcome, RepositoryError):
                logger.warning(f"Dimension {dimension.value} failed for {source.id}: {outcome}")
                results[dimension] = DimensionResult(dimension, error=str(outcome))
                failed.append(dimension.value)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results[dimension] = outcome

        usable = sum(1 for r in results.values() if r.usable)
        logger.debug(
            f"Retrieved {len(dims)} dimensions for {source.id}: {usable} usable"
            + (f", failed: {failed}" if failed else "")
        )
        return results
