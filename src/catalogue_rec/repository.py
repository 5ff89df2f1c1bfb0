"""
Read-only movie repository interface and an in-memory implementation.

Engines receive a repository at construction instead of reaching for a
global connection, so the SQLite store and the in-memory store are
interchangeable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Protocol

from .models import Movie

logger = logging.getLogger(__name__)


class OrderBy(Enum):
    RATING = "rating"    # effective rating desc, nulls last, id asc
    RECENT = "recent"    # release year desc, then rating desc, id asc
    ID = "id"


class FilterOp(Enum):
    EQ = "eq"              # case-insensitive for text
    CONTAINS = "contains"  # list field contains value (case-insensitive)
    GTE = "gte"
    LT = "lt"
    NOT_NULL = "not_null"  # non-null and, for list fields, non-empty
    IS_TRUE = "is_true"


# Fields a filter may reference; also the SQL column whitelist
SCALAR_FIELDS = {
    "id", "title", "slug", "release_year", "director", "lead_actor", "lead_actress",
    "composer", "producer", "language", "our_rating", "avg_rating",
}
LIST_FIELDS = {"genres", "supporting_cast"}
FLAG_FIELDS = {"is_blockbuster", "is_classic", "is_underrated", "is_published"}
RATING_FIELD = "rating"  # virtual: our_rating falling back to avg_rating
FILTERABLE_FIELDS = SCALAR_FIELDS | LIST_FIELDS | FLAG_FIELDS | {RATING_FIELD}


@dataclass(frozen=True)
class FieldFilter:
    field: str
    op: FilterOp
    value: Any = None

    def __post_init__(self):
        if self.field not in FILTERABLE_FIELDS:
            raise ValueError(f"Unknown filter field: {self.field}")
        if self.op is FilterOp.CONTAINS and self.field not in LIST_FIELDS:
            raise ValueError(f"CONTAINS needs a list field, got {self.field}")

    @classmethod
    def eq(cls, field: str, value: Any) -> "FieldFilter":
        return cls(field, FilterOp.CONTAINS if field in LIST_FIELDS else FilterOp.EQ, value)


class MovieRepository(Protocol):
    """Read-only access to the catalogue."""

    def get_movie(self, movie_id: str) -> Movie | None:
        ...

    def query_by_field(
        self,
        field: str,
        value: Any,
        exclude_id: str | None = None,
        limit: int | None = None,
        order_by: OrderBy = OrderBy.RATING,
    ) -> list[Movie]:
        ...

    def query_by_intersection(
        self,
        filters: Iterable[FieldFilter],
        exclude_id: str | None = None,
        limit: int | None = None,
        order_by: OrderBy = OrderBy.RATING,
        published_only: bool = True,
        require_image: bool = True,
    ) -> list[Movie]:
        ...


def sort_key(order_by: OrderBy):
    """Python equivalent of the SQL ORDER BY clauses used by the SQLite store."""
    def _rating_part(m: Movie):
        rating = m.rating
        return (rating is None, -(rating or 0.0))

    if order_by is OrderBy.RATING:
        return lambda m: (*_rating_part(m), m.id)
    if order_by is OrderBy.RECENT:
        return lambda m: (m.release_year is None, -(m.release_year or 0), *_rating_part(m), m.id)
    return lambda m: m.id


def _norm(val):
    return val.strip().lower() if isinstance(val, str) else val


def _field_value(movie: Movie, name: str):
    if name == RATING_FIELD:
        return movie.rating
    return getattr(movie, name)


def matches(movie: Movie, flt: FieldFilter) -> bool:
    value = _field_value(movie, flt.field)
    if flt.op is FilterOp.EQ:
        return value is not None and _norm(value) == _norm(flt.value)
    if flt.op is FilterOp.CONTAINS:
        target = _norm(flt.value)
        return any(_norm(v) == target for v in value or [])
    if flt.op is FilterOp.GTE:
        return value is not None and value >= flt.value
    if flt.op is FilterOp.LT:
        return value is not None and value < flt.value
    if flt.op is FilterOp.NOT_NULL:
        return value not in (None, "", [])
    if flt.op is FilterOp.IS_TRUE:
        return bool(value)
    raise ValueError(f"Unsupported filter op: {flt.op}")


class InMemoryMovieRepository:
    """Repository over a list of movies held in memory. Used in tests and imports."""

    def __init__(self, movies: Iterable[Movie]):
        self._movies: dict[str, Movie] = {}
        for movie in movies:
            if movie.id in self._movies:
                logger.warning(f"Duplicate movie id {movie.id}; keeping the last record")
            self._movies[movie.id] = movie

    def get_movie(self, movie_id: str) -> Movie | None:
        return self._movies.get(movie_id)

    def query_by_field(
        self,
        field: str,
        value: Any,
        exclude_id: str | None = None,
        limit: int | None = None,
        order_by: OrderBy = OrderBy.RATING,
    ) -> list[Movie]:
        return self.query_by_intersection(
            [FieldFilter.eq(field, value)],
            exclude_id=exclude_id,
            limit=limit,
            order_by=order_by,
        )

    def query_by_intersection(
        self,
        filters: Iterable[FieldFilter],
        exclude_id: str | None = None,
        limit: int | None = None,
        order_by: OrderBy = OrderBy.RATING,
        published_only: bool = True,
        require_image: bool = True,
    ) -> list[Movie]:
        filters = list(filters)
        rows = []
        for movie in self._movies.values():
            if exclude_id is not None and movie.id == exclude_id:
                continue
            if published_only and not movie.is_published:
                continue
            if require_image and not movie.has_image:
                continue
            if all(matches(movie, f) for f in filters):
                rows.append(movie)

        rows.sort(key=sort_key(order_by))
        return rows[:limit] if limit is not None else rows
