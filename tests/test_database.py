import sqlite3

import pytest

from catalogue_rec.database import InferenceStore, SQLiteMovieRepository, upsert_movies
from catalogue_rec.errors import RepositoryError
from catalogue_rec.models import AuditStatus
from catalogue_rec.repository import FieldFilter, FilterOp, OrderBy


def test_init_schema_creates_expected_tables(db):
    with db.transaction(read_only=True) as conn:
        tables = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }

    assert {"movies", "movie_genres", "inference_audit_log", "entity_relations"}.issubset(tables)


def test_nested_transactions_commit_once(db, movie_factory):
    with db.transaction() as conn:
        upsert_movies(db, [movie_factory("a")])
        with db.transaction() as inner:
            inner.execute("UPDATE movies SET title = ? WHERE id = ?", ("Renamed", "a"))

    repo = SQLiteMovieRepository(db)
    assert repo.get_movie("a").title == "Renamed"


def test_outer_rollback_discards_nested_writes(db, movie_factory):
    with pytest.raises(RuntimeError):
        with db.transaction():
            upsert_movies(db, [movie_factory("a")])
            raise RuntimeError("boom")

    assert SQLiteMovieRepository(db).get_movie("a") is None


def test_upsert_round_trips_lists_and_flags(db, movie_factory):
    movie = movie_factory(
        "a",
        genres=["Drama", "Family"],
        supporting_cast=["Nassar", "Prakash Raj"],
        is_classic=True,
        our_rating=8.2,
        release_year=2005,
    )

    assert upsert_movies(db, [movie]) == 1
    loaded = SQLiteMovieRepository(db).get_movie("a")

    assert loaded == movie


def test_query_by_field_matches_case_insensitively_and_orders_by_rating(db, movie_factory):
    upsert_movies(db, [
        movie_factory("a", director="Mani Ratnam", our_rating=7.0),
        movie_factory("b", director="mani ratnam", our_rating=8.5),
        movie_factory("c", director="Mani Ratnam"),
        movie_factory("d", director="Mani Ratnam", is_published=False),
        movie_factory("e", director="Mani Ratnam", poster_url=None),
    ])
    repo = SQLiteMovieRepository(db)

    results = repo.query_by_field("director", "MANI RATNAM", exclude_id="a")

    assert [m.id for m in results] == ["b", "c"]


def test_genre_and_cast_contains_filters(db, movie_factory):
    upsert_movies(db, [
        movie_factory("a", genres=["Drama", "Family"], supporting_cast=["Nassar"]),
        movie_factory("b", genres=["Action"], supporting_cast=["nassar", "Brahmanandam"]),
        movie_factory("c", genres=["family"]),
    ])
    repo = SQLiteMovieRepository(db)

    family = repo.query_by_field("genres", "Family", order_by=OrderBy.ID)
    nassar = repo.query_by_intersection(
        [FieldFilter("supporting_cast", FilterOp.CONTAINS, "Nassar")], order_by=OrderBy.ID
    )

    assert [m.id for m in family] == ["a", "c"]
    assert [m.id for m in nassar] == ["a", "b"]


def test_rating_and_year_range_filters(db, movie_factory):
    upsert_movies(db, [
        movie_factory("a", release_year=1995, avg_rating=8.0),
        movie_factory("b", release_year=1999, our_rating=7.0, avg_rating=9.0),
        movie_factory("c", release_year=2000, our_rating=9.0),
    ])
    repo = SQLiteMovieRepository(db)

    nineties = repo.query_by_intersection([
        FieldFilter("release_year", FilterOp.GTE, 1990),
        FieldFilter("release_year", FilterOp.LT, 2000),
    ])
    top = repo.query_by_intersection([FieldFilter("rating", FilterOp.GTE, 7.5)])

    assert [m.id for m in nineties] == ["a", "b"]
    assert [m.id for m in top] == ["c", "a"]


def test_not_null_treats_empty_lists_as_missing(db, movie_factory):
    upsert_movies(db, [
        movie_factory("a", supporting_cast=[]),
        movie_factory("b", supporting_cast=["Nassar"]),
        movie_factory("c", composer=""),
        movie_factory("d", composer="M"),
    ])
    repo = SQLiteMovieRepository(db)

    cast = repo.query_by_intersection([FieldFilter("supporting_cast", FilterOp.NOT_NULL)])
    composer = repo.query_by_intersection([FieldFilter("composer", FilterOp.NOT_NULL)])

    assert [m.id for m in cast] == ["b"]
    assert [m.id for m in composer] == ["d"]


def test_iter_movies_missing_returns_published_gaps(db, movie_factory):
    upsert_movies(db, [
        movie_factory("a", composer="M"),
        movie_factory("b"),
        movie_factory("c", is_published=False),
        movie_factory("d", poster_url=None),
    ])

    missing = SQLiteMovieRepository(db).iter_movies_missing("composer")

    assert [m.id for m in missing] == ["b", "d"]


def test_storage_failure_raises_repository_error(db):
    with db.transaction() as conn:
        conn.execute("DROP TABLE movies")

    repo = SQLiteMovieRepository(db)

    with pytest.raises(RepositoryError):
        repo.query_by_field("director", "D")


def test_audit_log_rejects_verified_confidence(db):
    store = InferenceStore(db)
    row = {
        "entity_type": "movie",
        "entity_id": "a",
        "entity_identifier": "A",
        "field_name": "composer",
        "inference_type": "similarity",
        "inferred_value": "M",
        "confidence": 0.70,
        "evidence": {"method": "similarity_based"},
        "status": "pending",
        "inference_source": "gap-filler",
        "batch_id": None,
    }

    with pytest.raises(sqlite3.IntegrityError):
        with db.transaction() as conn:
            store.insert_audit_entry(conn, row)

    with db.transaction() as conn:
        audit_id = store.insert_audit_entry(conn, {**row, "confidence": 0.56})

    entries = store.list_audit_entries()
    assert [e["id"] for e in entries] == [audit_id]
    assert entries[0]["evidence"] == {"method": "similarity_based"}


def test_set_status_only_moves_pending_rows(db):
    store = InferenceStore(db)
    with db.transaction() as conn:
        audit_id = store.insert_audit_entry(conn, {
            "entity_type": "movie",
            "entity_id": "a",
            "entity_identifier": "A",
            "field_name": "producer",
            "inference_type": "collaboration",
            "inferred_value": "P",
            "confidence": 0.62,
            "evidence": {},
            "status": "pending",
            "inference_source": "gap-filler",
            "batch_id": "batch-1",
        })

    with pytest.raises(ValueError):
        store.set_status(audit_id, AuditStatus.PENDING)

    assert store.set_status(audit_id, AuditStatus.APPROVED, reviewer="editor") is True
    assert store.set_status(audit_id, AuditStatus.REJECTED) is False

    entry = store.list_audit_entries(status=AuditStatus.APPROVED)[0]
    assert entry["reviewed_by"] == "editor"
    assert entry["batch_id"] == "batch-1"
