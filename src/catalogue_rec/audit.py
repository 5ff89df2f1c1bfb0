"""
Persisting inferences: one audit row per result, optionally one weak relation.

Canonical movie fields are never written here. An inferred value only
becomes visible through `entity_relations`, flagged as unverified and
inferred, and always traceable back to its audit row.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import asdict, dataclass
from typing import Any

from .config import INFERENCE_SOURCE, RELATION_ENTITY_TYPES, RELATION_ROLE_TYPES
from .database import InferenceStore
from .errors import AuditWriteError
from .models import AuditStatus, InferenceResult, InferredRelation, Movie

logger = logging.getLogger(__name__)


@dataclass
class WriteOutcome:
    audit_id: int
    relation_id: int | None = None


def build_audit_row(movie: Movie, result: InferenceResult, batch_id: str | None = None) -> dict[str, Any]:
    """Audit row for one inference. The evidence embeds the movie identity so the row stands alone."""
    evidence = result.evidence.to_dict()
    evidence["movie"] = {
        "id": movie.id,
        "title": movie.title,
        "release_year": movie.release_year,
        "slug": movie.slug,
    }
    return {
        "entity_type": "movie",
        "entity_id": movie.id,
        "entity_identifier": movie.title,
        "field_name": result.field_name,
        "inference_type": result.inference_type.value,
        "inferred_value": result.inferred_value,
        "confidence": result.confidence,
        "evidence": evidence,
        "status": AuditStatus.PENDING.value,
        "inference_source": INFERENCE_SOURCE,
        "batch_id": batch_id,
    }


def build_relation(movie: Movie, result: InferenceResult) -> InferredRelation:
    if result.field_name not in RELATION_ROLE_TYPES:
        raise ValueError(f"No relation mapping for field '{result.field_name}'")
    return InferredRelation(
        movie_id=movie.id,
        movie_title=movie.title,
        movie_year=movie.release_year,
        movie_slug=movie.slug,
        entity_type=RELATION_ENTITY_TYPES[result.field_name],
        entity_name=result.inferred_value,
        role_type=RELATION_ROLE_TYPES[result.field_name],
        confidence=result.confidence,
        inference_source=INFERENCE_SOURCE,
        source_metadata={
            "method": result.evidence.method,
            "reasoning": result.evidence.reasoning,
            "pattern_strength": round(result.evidence.pattern_strength, 4),
        },
    )


class InferenceWriter:
    """Records inference results in the audit log and, optionally, as weak relations."""

    def __init__(self, store: InferenceStore):
        self.store = store

    def record(
        self,
        movie: Movie,
        result: InferenceResult,
        batch_id: str | None = None,
        create_relation: bool = True,
        atomic: bool = True,
    ) -> WriteOutcome:
        """
        Write the audit row, then the relation referencing it.

        With atomic=True both rows commit together or not at all. With
        atomic=False the audit row is committed first; if the relation then
        fails, AuditWriteError carries the surviving audit id.
        """
        audit_row = build_audit_row(movie, result, batch_id)
        relation = build_relation(movie, result) if create_relation else None
        db = self.store.db

        if atomic:
            try:
                with db.transaction() as conn:
                    audit_id = self.store.insert_audit_entry(conn, audit_row)
                    relation_id = None
                    if relation is not None:
                        relation_id = self.store.insert_relation(conn, {**asdict(relation), "audit_id": audit_id})
            except sqlite3.Error as e:
                raise AuditWriteError(f"Failed to record inference for {movie.id}.{result.field_name}: {e}") from e
            logger.debug(f"Recorded audit #{audit_id} for {movie.id}.{result.field_name}")
            return WriteOutcome(audit_id, relation_id)

        try:
            with db.transaction() as conn:
                audit_id = self.store.insert_audit_entry(conn, audit_row)
        except sqlite3.Error as e:
            raise AuditWriteError(f"Failed to write audit row for {movie.id}.{result.field_name}: {e}") from e

        if relation is None:
            return WriteOutcome(audit_id)

        try:
            with db.transaction() as conn:
                relation_id = self.store.insert_relation(conn, {**asdict(relation), "audit_id": audit_id})
        except sqlite3.Error as e:
            logger.warning(f"Audit #{audit_id} written but relation failed for {movie.id}: {e}")
            raise AuditWriteError(
                f"Relation write failed after audit #{audit_id} for {movie.id}.{result.field_name}: {e}",
                audit_id=audit_id,
            ) from e
        return WriteOutcome(audit_id, relation_id)

    def record_many(
        self,
        movie: Movie,
        results: list[InferenceResult],
        batch_id: str | None = None,
        create_relation: bool = True,
    ) -> list[WriteOutcome]:
        """Record several results for one movie in a single transaction."""
        if not results:
            return []
        try:
            with self.store.db.transaction():
                return [self.record(movie, r, batch_id, create_relation) for r in results]
        except AuditWriteError:
            raise
        except sqlite3.Error as e:
            raise AuditWriteError(f"Failed to record inferences for {movie.id}: {e}") from e

    def review(self, audit_id: int, status: AuditStatus, reviewer: str | None = None) -> bool:
        changed = self.store.set_status(audit_id, status, reviewer)
        if changed:
            logger.info(f"Audit #{audit_id} marked {status.value}" + (f" by {reviewer}" if reviewer else ""))
        else:
            logger.warning(f"Audit #{audit_id} not found or already reviewed")
        return changed
