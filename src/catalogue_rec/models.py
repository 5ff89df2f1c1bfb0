"""
Data model for catalogue entities, recommendation sections and inference records.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from .config import DISTINCTION_TAGS, VERIFIED_CONFIDENCE

logger = logging.getLogger(__name__)


def _as_list(val) -> list[str]:
    """Accept a list, a JSON-encoded list or a comma-separated string."""
    if not val:
        return []
    if isinstance(val, (list, tuple)):
        return [str(v) for v in val if v]
    if isinstance(val, str):
        stripped = val.strip()
        if stripped.startswith("["):
            try:
                parsed = json.loads(stripped)
            except json.JSONDecodeError as e:
                logger.warning(f"Failed to parse list value '{stripped[:50]}': {e}")
                return []
            return _as_list(parsed)
        return [part.strip() for part in stripped.split(",") if part.strip()]
    return []


def _cast_names(val) -> list[str]:
    """Supporting cast may be stored as names or as {"name": ...} objects."""
    if isinstance(val, str):
        try:
            val = json.loads(val) if val.strip().startswith("[") else _as_list(val)
        except json.JSONDecodeError:
            return []
    names = []
    for member in val or []:
        if isinstance(member, dict):
            name = member.get("name")
        else:
            name = member
        if name:
            names.append(str(name))
    return names


def _opt_float(val) -> float | None:
    if val is None or val == "":
        return None
    try:
        return float(val)
    except (TypeError, ValueError):
        return None


def _opt_int(val) -> int | None:
    if val is None or val == "":
        return None
    try:
        return int(val)
    except (TypeError, ValueError):
        return None


@dataclass
class Movie:
    """A catalogue entity. Canonical fields are never written by this package."""

    id: str
    title: str
    slug: str | None = None
    release_year: int | None = None
    genres: list[str] = field(default_factory=list)
    director: str | None = None
    lead_actor: str | None = None
    lead_actress: str | None = None
    composer: str | None = None
    producer: str | None = None
    supporting_cast: list[str] = field(default_factory=list)
    our_rating: float | None = None
    avg_rating: float | None = None
    is_blockbuster: bool = False
    is_classic: bool = False
    is_underrated: bool = False
    language: str | None = None
    is_published: bool = True
    poster_url: str | None = None

    @property
    def rating(self) -> float | None:
        """Editorial rating when present, otherwise the aggregate rating."""
        return self.our_rating if self.our_rating is not None else self.avg_rating

    @property
    def has_image(self) -> bool:
        return bool(self.poster_url)

    @property
    def decade(self) -> int | None:
        if self.release_year is None:
            return None
        return (self.release_year // 10) * 10

    @property
    def primary_genre(self) -> str | None:
        return self.genres[0] if self.genres else None

    @property
    def secondary_genre(self) -> str | None:
        return self.genres[1] if len(self.genres) > 1 else None

    @property
    def tags(self) -> set[str]:
        return {tag for tag in DISTINCTION_TAGS if getattr(self, tag)}

    def credited_names(self) -> set[str]:
        """Lower-cased names already credited on this movie."""
        names = [self.lead_actor, self.lead_actress, *self.supporting_cast]
        return {n.strip().lower() for n in names if n}

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Movie":
        """Build from a database row or an import record."""
        if payload.get("id") in (None, ""):
            raise ValueError("Movie record requires an id")
        return cls(
            id=str(payload["id"]),
            title=payload.get("title") or payload.get("title_en") or "",
            slug=payload.get("slug"),
            release_year=_opt_int(payload.get("release_year")),
            genres=_as_list(payload.get("genres")),
            director=payload.get("director") or None,
            lead_actor=payload.get("lead_actor") or payload.get("hero") or None,
            lead_actress=payload.get("lead_actress") or payload.get("heroine") or None,
            composer=payload.get("composer") or payload.get("music_director") or None,
            producer=payload.get("producer") or None,
            supporting_cast=_cast_names(payload.get("supporting_cast")),
            our_rating=_opt_float(payload.get("our_rating")),
            avg_rating=_opt_float(payload.get("avg_rating")),
            is_blockbuster=bool(payload.get("is_blockbuster")),
            is_classic=bool(payload.get("is_classic")),
            is_underrated=bool(payload.get("is_underrated")),
            language=payload.get("language"),
            is_published=bool(payload.get("is_published", True)),
            poster_url=payload.get("poster_url"),
        )


class MatchType(str, Enum):
    BEST = "best"
    DIRECTOR = "director"
    LEAD_ACTOR = "hero"
    LEAD_ACTRESS = "heroine"
    GENRE = "genre"
    ERA = "era"
    MUSIC = "music"
    CLASSICS = "classics"
    BLOCKBUSTERS = "blockbusters"
    HIDDEN_GEMS = "hidden_gems"
    RATING = "rating"
    RECENT = "recent"


@dataclass
class Section:
    """A titled, deduplicated list of recommended movies. Computed, never stored."""

    id: str
    title: str
    subtitle: str
    movies: list[Movie]
    match_type: MatchType
    priority: int
    scores: dict[str, float] = field(default_factory=dict)

    @property
    def movie_ids(self) -> list[str]:
        return [m.id for m in self.movies]

    def __len__(self) -> int:
        return len(self.movies)


class InferenceType(str, Enum):
    SIMILARITY = "similarity"
    COLLABORATION = "collaboration"
    PATTERN = "pattern"


class AuditStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class InferenceEvidence:
    """Why an inference was made: the method, the sample and the supporting movies."""

    method: str
    reasoning: str
    sample_size: int
    support_count: int
    supporting_examples: list[dict[str, Any]] = field(default_factory=list)

    @property
    def pattern_strength(self) -> float:
        if self.sample_size <= 0:
            return 0.0
        return self.support_count / self.sample_size

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["pattern_strength"] = round(self.pattern_strength, 4)
        return payload


@dataclass
class InferenceResult:
    field_name: str
    inferred_value: str
    confidence: float
    evidence: InferenceEvidence
    inference_type: InferenceType

    def __post_init__(self) -> None:
        if not 0.0 < self.confidence < VERIFIED_CONFIDENCE:
            raise ValueError(
                f"Inferred confidence {self.confidence} for {self.field_name} "
                f"must be in (0, {VERIFIED_CONFIDENCE})"
            )
        if self.evidence is None:
            raise ValueError(f"Inference for {self.field_name} has no evidence")

    def to_dict(self) -> dict[str, Any]:
        return {
            "field_name": self.field_name,
            "inferred_value": self.inferred_value,
            "confidence": self.confidence,
            "evidence": self.evidence.to_dict(),
            "inference_type": self.inference_type.value,
        }


@dataclass
class InferredRelation:
    """Weak association between a movie and a name, pending human review."""

    movie_id: str
    movie_title: str
    movie_year: int | None
    movie_slug: str | None
    entity_type: str
    entity_name: str
    role_type: str
    confidence: float
    inference_source: str
    source_metadata: dict[str, Any]
    is_verified: bool = False
    is_inferred: bool = True
    data_source: str = "inference"
