import argparse
import asyncio
import atexit
import json
import logging
import re
import uuid
from pathlib import Path

from tqdm import tqdm

from .audit import InferenceWriter
from .config import (
    DEFAULT_BATCH_LIMIT,
    DEFAULT_SUPPORTING_CAST_SUGGESTIONS,
    NOTIFICATION_WEBHOOK_URL,
)
from .database import Database, InferenceStore, SQLiteMovieRepository, upsert_movies
from .errors import AuditWriteError, RepositoryError
from .inference import FIELD_STRATEGIES, GapFiller
from .models import AuditStatus, Movie
from .scorer_weights import load_scorer_weights
from .scoring import RelevanceScorer
from .sections import SectionComposer

logger = logging.getLogger(__name__)

IMPORT_CHUNK_SIZE = 500

_database: Database | None = None


def _get_database() -> Database:
    global _database
    if _database is None:
        _database = Database()
        _database.init_schema()
    return _database


def _close_database() -> None:
    global _database
    if _database is not None:
        _database.close()
        _database = None


# Register cleanup on exit
atexit.register(_close_database)


def send_notification(message: str) -> None:
    """Send a notification to a configured webhook (Discord/Slack-style)."""
    if not NOTIFICATION_WEBHOOK_URL:
        return

    try:
        import httpx

        httpx.post(
            NOTIFICATION_WEBHOOK_URL,
            json={"content": message},
            timeout=10,
        )
    except Exception as exc:  # pragma: no cover - best-effort notifications
        logger.warning(f"Failed to send notification: {exc}")


def _validate_movie_id(movie_id: str) -> str:
    """
    Validate a movie id before it reaches a query.
    Raises ValueError on empty ids or unexpected characters.
    """
    cleaned = movie_id.strip()
    if not cleaned or not re.match(r'^[A-Za-z0-9_.:-]+$', cleaned):
        raise ValueError(f"Invalid movie id: {movie_id}")
    return cleaned


def _load_movie(repo: SQLiteMovieRepository, movie_id: str) -> Movie | None:
    movie = repo.get_movie(_validate_movie_id(movie_id))
    if movie is None:
        logger.error(f"No movie with id '{movie_id}'. Run: catalogue-rec import <file>")
    return movie


def _scorer() -> RelevanceScorer:
    return RelevanceScorer(load_scorer_weights())


def cmd_init_db(args: argparse.Namespace) -> None:
    """Create tables and indexes."""
    db = _get_database()
    logger.info(f"Database ready at {db.path}")


def cmd_import(args: argparse.Namespace) -> None:
    """Import catalogue movies from a JSON file (a list, or {"movies": [...]})."""
    with open(args.file, 'r') as f:
        data = json.load(f)
    records = data.get('movies', []) if isinstance(data, dict) else data

    movies, skipped = [], 0
    for record in records:
        try:
            movies.append(Movie.from_dict(record))
        except (ValueError, TypeError, AttributeError) as e:
            skipped += 1
            logger.warning(f"Skipping record: {e}")

    db = _get_database()
    imported = 0
    for i in range(0, len(movies), IMPORT_CHUNK_SIZE):
        imported += upsert_movies(db, movies[i:i + IMPORT_CHUNK_SIZE])

    logger.info(f"Imported {imported} movies from {args.file}" + (f" ({skipped} skipped)" if skipped else ""))


def cmd_sections(args: argparse.Namespace) -> None:
    """Show recommendation sections for a movie."""
    repo = SQLiteMovieRepository(_get_database())
    movie = _load_movie(repo, args.movie_id)
    if movie is None:
        return

    composer = SectionComposer(repo, scorer=_scorer())
    sections = asyncio.run(composer.compute_sections(movie))

    if args.json:
        print(json.dumps([
            {
                "id": s.id,
                "title": s.title,
                "subtitle": s.subtitle,
                "match_type": s.match_type.value,
                "priority": s.priority,
                "movies": s.movie_ids,
            }
            for s in sections
        ], indent=2))
        return

    if not sections:
        logger.info(f"No recommendations for {movie.title}")
        return

    logger.info(f"\nRecommendations for {movie.title} ({movie.release_year or '?'}):")
    for section in sections:
        logger.info(f"\n{section.title} - {section.subtitle}")
        for i, m in enumerate(section.movies, 1):
            score = section.scores.get(m.id)
            suffix = f" - Score: {score:.3f}" if score is not None else ""
            logger.info(f"  {i}. {m.title} ({m.release_year or '?'}){suffix}")


def cmd_score(args: argparse.Namespace) -> None:
    """Explain the relevance score between two movies."""
    repo = SQLiteMovieRepository(_get_database())
    source = _load_movie(repo, args.source_id)
    candidate = _load_movie(repo, args.candidate_id)
    if source is None or candidate is None:
        return

    breakdown = _scorer().explain(source, candidate)
    logger.info(f"\n{source.title} -> {candidate.title}: {breakdown.total:.3f}")
    for signal, value in breakdown.contributions.items():
        logger.info(f"  {signal}: {value:.3f}")
    if breakdown.reasons:
        logger.info(f"  Why: {', '.join(breakdown.reasons)}")


def _log_result(result) -> None:
    logger.info(f"  {result.field_name}: {result.inferred_value} (confidence {result.confidence:.3f})")
    logger.info(f"  Method: {result.evidence.method} - {result.evidence.reasoning}")


def cmd_infer(args: argparse.Namespace) -> None:
    """Infer one missing field for a movie."""
    db = _get_database()
    repo = SQLiteMovieRepository(db)
    movie = _load_movie(repo, args.movie_id)
    if movie is None:
        return

    result = GapFiller(repo, scorer=_scorer()).infer_missing_field(movie, args.field)
    if result is None:
        logger.info(f"No confident {args.field} inference for {movie.title}")
        return

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        logger.info(f"\nInference for {movie.title}:")
        _log_result(result)

    if args.write:
        try:
            outcome = InferenceWriter(InferenceStore(db)).record(
                movie, result, create_relation=not args.no_relation
            )
        except AuditWriteError as e:
            _log_write_failure(movie, e)
            return
        logger.info(f"Recorded audit #{outcome.audit_id}")


def _log_write_failure(movie: Movie, error: AuditWriteError) -> None:
    logger.error(f"Failed to record inferences for {movie.id}: {error}")
    if error.audit_id is not None:
        logger.error(f"Audit #{error.audit_id} was recorded but its relation was not")


def cmd_infer_cast(args: argparse.Namespace) -> None:
    """Suggest supporting cast from era and genre patterns."""
    db = _get_database()
    repo = SQLiteMovieRepository(db)
    movie = _load_movie(repo, args.movie_id)
    if movie is None:
        return

    results = GapFiller(repo).infer_supporting_cast(movie, max_count=args.max)
    if not results:
        logger.info(f"No supporting cast suggestions for {movie.title}")
        return

    logger.info(f"\nSupporting cast suggestions for {movie.title}:")
    for result in results:
        _log_result(result)

    if args.write:
        try:
            outcomes = InferenceWriter(InferenceStore(db)).record_many(movie, results)
        except AuditWriteError as e:
            _log_write_failure(movie, e)
            return
        logger.info(f"Recorded {len(outcomes)} audit rows")


def cmd_batch_infer(args: argparse.Namespace) -> None:
    """Run inference over published movies missing a field."""
    db = _get_database()
    repo = SQLiteMovieRepository(db)
    filler = GapFiller(repo, scorer=_scorer())
    writer = InferenceWriter(InferenceStore(db)) if args.write else None
    batch_id = args.batch_id or f"batch-{uuid.uuid4().hex[:12]}"

    movies = repo.iter_movies_missing(args.field, limit=args.limit)
    if not movies:
        logger.info(f"No published movies missing {args.field}")
        return

    inferred = written = failed = 0
    for movie in tqdm(movies, desc=f"Inferring {args.field}"):
        try:
            if args.field == "supporting_cast":
                results = filler.infer_supporting_cast(movie)
            else:
                result = filler.infer_missing_field(movie, args.field)
                results = [result] if result else []
        except RepositoryError as e:
            failed += 1
            logger.warning(f"Skipping {movie.id}: {e}")
            continue

        inferred += len(results)
        if writer is None or not results:
            continue
        try:
            written += len(writer.record_many(movie, results, batch_id=batch_id))
        except AuditWriteError as e:
            failed += 1
            logger.error(f"Failed to record inferences for {movie.id}: {e}")

    summary = (
        f"Batch {batch_id}: {inferred} {args.field} inferences over {len(movies)} movies"
        + (f", {written} recorded" if writer else " (dry run)")
        + (f", {failed} failed" if failed else "")
    )
    logger.info(summary)
    send_notification(summary)


def cmd_audit_log(args: argparse.Namespace) -> None:
    """List audit log entries."""
    store = InferenceStore(_get_database())
    status = AuditStatus(args.status) if args.status else None
    movie_id = _validate_movie_id(args.movie) if args.movie else None
    entries = store.list_audit_entries(status=status, entity_id=movie_id, limit=args.limit)

    if not entries:
        logger.info("No audit entries")
        return

    for e in entries:
        logger.info(
            f"#{e['id']} [{e['status']}] {e['entity_identifier']} ({e['entity_id']}): "
            f"{e['field_name']} = {e['inferred_value']} ({e['confidence']:.3f}, {e['inference_type']})"
        )


def cmd_review(args: argparse.Namespace) -> None:
    """Approve or reject a pending inference."""
    status = AuditStatus.APPROVED if args.decision == "approve" else AuditStatus.REJECTED
    writer = InferenceWriter(InferenceStore(_get_database()))
    if not writer.review(args.audit_id, status, reviewer=args.reviewer):
        logger.error(f"Audit #{args.audit_id} is not pending")


def main():
    parser = argparse.ArgumentParser(description="Catalogue relevance and gap-filling engine")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_parser.set_defaults(func=cmd_init_db)

    import_parser = subparsers.add_parser("import", help="Import movies from JSON")
    import_parser.add_argument("file", type=Path, help="JSON file with movie records")
    import_parser.set_defaults(func=cmd_import)

    sections_parser = subparsers.add_parser("sections", help="Show recommendation sections for a movie")
    sections_parser.add_argument("movie_id", help="Source movie id")
    sections_parser.add_argument("--json", action="store_true", help="Print sections as JSON")
    sections_parser.set_defaults(func=cmd_sections)

    score_parser = subparsers.add_parser("score", help="Explain the score between two movies")
    score_parser.add_argument("source_id", help="Source movie id")
    score_parser.add_argument("candidate_id", help="Candidate movie id")
    score_parser.set_defaults(func=cmd_score)

    infer_parser = subparsers.add_parser("infer", help="Infer a missing field for one movie")
    infer_parser.add_argument("movie_id", help="Movie id")
    infer_parser.add_argument("field", choices=sorted(FIELD_STRATEGIES), help="Field to infer")
    infer_parser.add_argument("--write", action="store_true", help="Record the result in the audit log")
    infer_parser.add_argument("--no-relation", action="store_true", help="Skip the weak relation row")
    infer_parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    infer_parser.set_defaults(func=cmd_infer)

    cast_parser = subparsers.add_parser("infer-cast", help="Suggest supporting cast for one movie")
    cast_parser.add_argument("movie_id", help="Movie id")
    cast_parser.add_argument("--max", type=int, default=DEFAULT_SUPPORTING_CAST_SUGGESTIONS,
                             help="Maximum suggestions")
    cast_parser.add_argument("--write", action="store_true", help="Record suggestions in the audit log")
    cast_parser.set_defaults(func=cmd_infer_cast)

    batch_parser = subparsers.add_parser("batch-infer", help="Infer a field across the catalogue")
    batch_parser.add_argument("field", choices=sorted([*FIELD_STRATEGIES, "supporting_cast"]),
                              help="Field to infer")
    batch_parser.add_argument("--limit", type=int, default=DEFAULT_BATCH_LIMIT, help="Max movies to process")
    batch_parser.add_argument("--write", action="store_true", help="Record results (default is a dry run)")
    batch_parser.add_argument("--batch-id", help="Batch id stored on audit rows")
    batch_parser.set_defaults(func=cmd_batch_infer)

    audit_parser = subparsers.add_parser("audit-log", help="List inference audit entries")
    audit_parser.add_argument("--status", choices=[s.value for s in AuditStatus], help="Filter by status")
    audit_parser.add_argument("--movie", help="Filter by movie id")
    audit_parser.add_argument("--limit", type=int, default=50, help="Max entries")
    audit_parser.set_defaults(func=cmd_audit_log)

    review_parser = subparsers.add_parser("review", help="Approve or reject a pending inference")
    review_parser.add_argument("audit_id", type=int, help="Audit entry id")
    review_parser.add_argument("decision", choices=["approve", "reject"])
    review_parser.add_argument("--reviewer", help="Reviewer name")
    review_parser.set_defaults(func=cmd_review)

    args = parser.parse_args()

    # Configure logging based on verbosity
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    args.func(args)
