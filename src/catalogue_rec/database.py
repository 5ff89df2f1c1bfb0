import sqlite3
import json
import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from .config import DB_PATH, DB_READ_RETRIES, DB_RETRY_INITIAL_DELAY, VERIFIED_CONFIDENCE
from .errors import RepositoryError
from .models import AuditStatus, Movie
from .repository import (
    FieldFilter,
    FilterOp,
    FLAG_FIELDS,
    LIST_FIELDS,
    OrderBy,
    RATING_FIELD,
)
from .utils import retry_with_backoff

logger = logging.getLogger(__name__)

_RATING_EXPR = "COALESCE(our_rating, avg_rating)"
_NUMERIC_FIELDS = {"release_year", "our_rating", "avg_rating"}

_ORDER_CLAUSES = {
    OrderBy.RATING: f"{_RATING_EXPR} IS NULL, {_RATING_EXPR} DESC, id ASC",
    OrderBy.RECENT: f"release_year IS NULL, release_year DESC, {_RATING_EXPR} IS NULL, {_RATING_EXPR} DESC, id ASC",
    OrderBy.ID: "id ASC",
}

SCHEMA = f"""
    CREATE TABLE IF NOT EXISTS movies (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        slug TEXT,
        release_year INTEGER,
        genres TEXT,            -- JSON list, first entry is the primary genre
        director TEXT,
        lead_actor TEXT,
        lead_actress TEXT,
        composer TEXT,
        producer TEXT,
        supporting_cast TEXT,   -- JSON list of names
        our_rating REAL,
        avg_rating REAL,
        is_blockbuster INTEGER DEFAULT 0,
        is_classic INTEGER DEFAULT 0,
        is_underrated INTEGER DEFAULT 0,
        language TEXT,
        is_published INTEGER DEFAULT 1,
        poster_url TEXT
    );

    CREATE TABLE IF NOT EXISTS movie_genres (
        movie_id TEXT,
        genre TEXT,
        position INTEGER,
        PRIMARY KEY (movie_id, genre)
    );

    CREATE INDEX IF NOT EXISTS idx_movies_director ON movies(director COLLATE NOCASE);
    CREATE INDEX IF NOT EXISTS idx_movies_lead_actor ON movies(lead_actor COLLATE NOCASE);
    CREATE INDEX IF NOT EXISTS idx_movies_lead_actress ON movies(lead_actress COLLATE NOCASE);
    CREATE INDEX IF NOT EXISTS idx_movies_composer ON movies(composer COLLATE NOCASE);
    CREATE INDEX IF NOT EXISTS idx_movies_year ON movies(release_year);
    CREATE INDEX IF NOT EXISTS idx_movies_rating ON movies({_RATING_EXPR});
    CREATE INDEX IF NOT EXISTS idx_mg_genre ON movie_genres(genre COLLATE NOCASE);

    -- Append-only; rows change only through the review workflow
    CREATE TABLE IF NOT EXISTS inference_audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        entity_identifier TEXT,
        field_name TEXT NOT NULL,
        inference_type TEXT NOT NULL,
        inferred_value TEXT NOT NULL,
        confidence REAL NOT NULL CHECK (confidence > 0 AND confidence < {VERIFIED_CONFIDENCE}),
        evidence TEXT NOT NULL,         -- JSON
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'approved', 'rejected')),
        inference_source TEXT,
        batch_id TEXT,
        created_at TEXT NOT NULL,
        reviewed_at TEXT,
        reviewed_by TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_audit_entity ON inference_audit_log(entity_id, field_name);
    CREATE INDEX IF NOT EXISTS idx_audit_status ON inference_audit_log(status);

    CREATE TABLE IF NOT EXISTS entity_relations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        movie_id TEXT NOT NULL,
        movie_title TEXT,
        movie_year INTEGER,
        movie_slug TEXT,
        entity_type TEXT NOT NULL,
        entity_name TEXT NOT NULL,
        role_type TEXT NOT NULL,
        is_verified INTEGER NOT NULL DEFAULT 0,
        is_inferred INTEGER NOT NULL DEFAULT 1,
        confidence REAL,
        inference_source TEXT,
        data_source TEXT,
        source_metadata TEXT,           -- JSON
        audit_id INTEGER,
        created_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_relations_movie ON entity_relations(movie_id);
"""


def _is_transient(exc: BaseException) -> bool:
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


class ConnectionPool:
    """
    Thread-safe SQLite connection pool.

    - One connection per thread (SQLite threading requirement)
    - Periodic health checks via SELECT 1
    - Explicit transaction nesting tracking
    """

    def __init__(self, db_path, health_check_interval: int = 300):
        self._db_path = db_path
        self._health_check_interval = health_check_interval

        self._lock = threading.Lock()
        self._connections: dict[int, sqlite3.Connection] = {}
        self._last_health_check: dict[int, float] = {}
        self._transaction_depth: dict[int, int] = {}

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        return conn

    def _health_check(self, conn: sqlite3.Connection) -> bool:
        try:
            conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection for the current thread, creating if necessary."""
        thread_id = threading.get_ident()
        now = time.time()

        with self._lock:
            conn = self._connections.get(thread_id)

            if conn is not None and now - self._last_health_check.get(thread_id, 0) > self._health_check_interval:
                if self._health_check(conn):
                    self._last_health_check[thread_id] = now
                else:
                    logger.warning(f"Connection for thread {thread_id} failed health check, replacing")
                    try:
                        conn.close()
                    except sqlite3.Error as e:
                        logger.debug(f"Ignoring close error on stale connection: {e}")
                    conn = None

            if conn is None:
                conn = self._create_connection()
                self._connections[thread_id] = conn
                self._last_health_check[thread_id] = now
                self._transaction_depth[thread_id] = 0
                logger.debug(f"Created connection for thread {thread_id} (pool size: {len(self._connections)})")

            return conn

    def get_transaction_depth(self) -> int:
        return self._transaction_depth.get(threading.get_ident(), 0)

    def increment_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            self._transaction_depth[thread_id] = self._transaction_depth.get(thread_id, 0) + 1

    def decrement_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            depth = self._transaction_depth.get(thread_id, 1)
            self._transaction_depth[thread_id] = max(0, depth - 1)

    def close_all(self):
        with self._lock:
            for thread_id, conn in list(self._connections.items()):
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection for thread {thread_id}: {e}")
            self._connections.clear()
            self._last_health_check.clear()
            self._transaction_depth.clear()
            logger.debug("Connection pool closed")


class Database:
    """Owns the connection pool for one SQLite file."""

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path) if path else DB_PATH
        self._pool: ConnectionPool | None = None
        self._pool_lock = threading.Lock()

    def _get_pool(self) -> ConnectionPool:
        if self._pool is None:
            with self._pool_lock:
                if self._pool is None:
                    self.path.parent.mkdir(exist_ok=True, parents=True)
                    self._pool = ConnectionPool(self.path)
        return self._pool

    @contextmanager
    def transaction(self, read_only: bool = False):
        """
        Yield a connection with proper transaction handling.

        Only the outermost context commits or rolls back, so nested calls
        join the enclosing transaction.
        """
        pool = self._get_pool()
        conn = pool.get_connection()

        is_outermost = pool.get_transaction_depth() == 0
        pool.increment_transaction_depth()

        try:
            yield conn
            if is_outermost and not read_only:
                conn.commit()
        except Exception:
            if is_outermost:
                conn.rollback()
            raise
        finally:
            pool.decrement_transaction_depth()

    def init_schema(self) -> None:
        with self.transaction() as conn:
            conn.executescript(SCHEMA)
        logger.debug(f"Schema ready at {self.path}")

    def close(self) -> None:
        if self._pool is not None:
            self._pool.close_all()
            self._pool = None


def load_json(val):
    """Safely load JSON from db field."""
    if not val:
        return []
    if isinstance(val, (list, dict)):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse JSON '{str(val)[:50]}...': {e}")
        return []


def _row_to_movie(row: sqlite3.Row) -> Movie:
    payload = dict(row)
    payload["genres"] = load_json(payload.get("genres"))
    payload["supporting_cast"] = load_json(payload.get("supporting_cast"))
    return Movie.from_dict(payload)


def populate_movie_genres_batch(conn, movies: list[Movie]) -> None:
    """
    Rebuild the normalized genre rows for the given movies.

    Handles SQLite's parameter limit by chunking the DELETE.
    """
    if not movies:
        return

    ids = [m.id for m in movies]
    CHUNK_SIZE = 900
    for i in range(0, len(ids), CHUNK_SIZE):
        chunk = ids[i:i + CHUNK_SIZE]
        placeholders = ','.join('?' * len(chunk))
        conn.execute(f"DELETE FROM movie_genres WHERE movie_id IN ({placeholders})", chunk)

    genre_rows = [
        (m.id, genre, position)
        for m in movies
        for position, genre in enumerate(dict.fromkeys(m.genres))
    ]
    if genre_rows:
        conn.executemany(
            "INSERT OR IGNORE INTO movie_genres (movie_id, genre, position) VALUES (?, ?, ?)",
            genre_rows,
        )


def upsert_movies(db: Database, movies: Iterable[Movie]) -> int:
    """Insert or replace catalogue rows. This is the import path, not an inference path."""
    movies = list(movies)
    if not movies:
        return 0

    rows = [
        {
            **m.to_dict(),
            "genres": json.dumps(m.genres),
            "supporting_cast": json.dumps(m.supporting_cast),
            "is_blockbuster": int(m.is_blockbuster),
            "is_classic": int(m.is_classic),
            "is_underrated": int(m.is_underrated),
            "is_published": int(m.is_published),
        }
        for m in movies
    ]
    with db.transaction() as conn:
        conn.executemany("""
            INSERT OR REPLACE INTO movies
            (id, title, slug, release_year, genres, director, lead_actor, lead_actress,
             composer, producer, supporting_cast, our_rating, avg_rating,
             is_blockbuster, is_classic, is_underrated, language, is_published, poster_url)
            VALUES (:id, :title, :slug, :release_year, :genres, :director, :lead_actor, :lead_actress,
                    :composer, :producer, :supporting_cast, :our_rating, :avg_rating,
                    :is_blockbuster, :is_classic, :is_underrated, :language, :is_published, :poster_url)
        """, rows)
        populate_movie_genres_batch(conn, movies)
    return len(rows)


def _filter_clause(flt: FieldFilter) -> tuple[str, list[Any]]:
    """Translate one filter into SQL. Field names are whitelisted by FieldFilter."""
    col = _RATING_EXPR if flt.field == RATING_FIELD else flt.field

    if flt.op is FilterOp.CONTAINS:
        if flt.field == "genres":
            return (
                "id IN (SELECT movie_id FROM movie_genres WHERE genre = ? COLLATE NOCASE)",
                [flt.value],
            )
        return (
            f"EXISTS (SELECT 1 FROM json_each(movies.{col}) WHERE json_each.value = ? COLLATE NOCASE)",
            [flt.value],
        )
    if flt.op is FilterOp.EQ:
        if flt.field in FLAG_FIELDS:
            return f"{col} = ?", [int(bool(flt.value))]
        if flt.field in _NUMERIC_FIELDS or flt.field == RATING_FIELD:
            return f"{col} = ?", [flt.value]
        return f"{col} = ? COLLATE NOCASE", [flt.value]
    if flt.op is FilterOp.GTE:
        return f"{col} >= ?", [flt.value]
    if flt.op is FilterOp.LT:
        return f"{col} < ?", [flt.value]
    if flt.op is FilterOp.NOT_NULL:
        if flt.field in LIST_FIELDS:
            return f"({col} IS NOT NULL AND {col} NOT IN ('', '[]'))", []
        return f"({col} IS NOT NULL AND {col} != '')", []
    if flt.op is FilterOp.IS_TRUE:
        return f"{col} = 1", []
    raise ValueError(f"Unsupported filter op: {flt.op}")


class SQLiteMovieRepository:
    """Read-only movie repository backed by the catalogue database."""

    def __init__(self, db: Database):
        self.db = db

    @retry_with_backoff(
        max_retries=DB_READ_RETRIES,
        initial_delay=DB_RETRY_INITIAL_DELAY,
        exceptions=(sqlite3.OperationalError,),
        retry_if=_is_transient,
    )
    def _fetch(self, sql: str, params: list[Any]) -> list[sqlite3.Row]:
        with self.db.transaction(read_only=True) as conn:
            return conn.execute(sql, params).fetchall()

    def _select(self, sql: str, params: list[Any]) -> list[Movie]:
        try:
            rows = self._fetch(sql, params)
        except sqlite3.Error as e:
            raise RepositoryError(f"Movie query failed: {e}") from e
        return [_row_to_movie(r) for r in rows]

    def get_movie(self, movie_id: str) -> Movie | None:
        movies = self._select("SELECT * FROM movies WHERE id = ?", [movie_id])
        return movies[0] if movies else None

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
        clauses: list[str] = []
        params: list[Any] = []

        if published_only:
            clauses.append("is_published = 1")
        if require_image:
            clauses.append("(poster_url IS NOT NULL AND poster_url != '')")
        if exclude_id is not None:
            clauses.append("id != ?")
            params.append(exclude_id)
        for flt in filters:
            sql, flt_params = _filter_clause(flt)
            clauses.append(sql)
            params.extend(flt_params)

        where = " AND ".join(clauses) if clauses else "1 = 1"
        sql = f"SELECT * FROM movies WHERE {where} ORDER BY {_ORDER_CLAUSES[order_by]}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return self._select(sql, params)

    def iter_movies_missing(self, field: str, limit: int | None = None) -> list[Movie]:
        """Published movies whose canonical `field` is empty; feeds batch inference."""
        flt = FieldFilter(field, FilterOp.NOT_NULL)
        sql, _ = _filter_clause(flt)
        query = f"SELECT * FROM movies WHERE is_published = 1 AND NOT {sql} ORDER BY id ASC"
        params: list[Any] = []
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        return self._select(query, params)


class InferenceStore:
    """Writes to the audit log and the weak-relation table. Never touches `movies`."""

    def __init__(self, db: Database):
        self.db = db

    def insert_audit_entry(self, conn, row: dict[str, Any]) -> int:
        cursor = conn.execute("""
            INSERT INTO inference_audit_log
            (entity_type, entity_id, entity_identifier, field_name, inference_type,
             inferred_value, confidence, evidence, status, inference_source, batch_id, created_at)
            VALUES (:entity_type, :entity_id, :entity_identifier, :field_name, :inference_type,
                    :inferred_value, :confidence, :evidence, :status, :inference_source, :batch_id, :created_at)
        """, {**row, "evidence": json.dumps(row["evidence"]), "created_at": datetime.now().isoformat()})
        return cursor.lastrowid

    def insert_relation(self, conn, row: dict[str, Any]) -> int:
        cursor = conn.execute("""
            INSERT INTO entity_relations
            (movie_id, movie_title, movie_year, movie_slug, entity_type, entity_name, role_type,
             is_verified, is_inferred, confidence, inference_source, data_source, source_metadata,
             audit_id, created_at)
            VALUES (:movie_id, :movie_title, :movie_year, :movie_slug, :entity_type, :entity_name, :role_type,
                    :is_verified, :is_inferred, :confidence, :inference_source, :data_source, :source_metadata,
                    :audit_id, :created_at)
        """, {
            **row,
            "is_verified": int(row["is_verified"]),
            "is_inferred": int(row["is_inferred"]),
            "source_metadata": json.dumps(row["source_metadata"]),
            "created_at": datetime.now().isoformat(),
        })
        return cursor.lastrowid

    def set_status(self, audit_id: int, status: AuditStatus, reviewer: str | None = None) -> bool:
        """Move a pending audit row to approved/rejected. Returns False if nothing changed."""
        if status is AuditStatus.PENDING:
            raise ValueError("Audit rows can only be reviewed into approved or rejected")
        with self.db.transaction() as conn:
            cursor = conn.execute("""
                UPDATE inference_audit_log
                SET status = ?, reviewed_at = ?, reviewed_by = ?
                WHERE id = ? AND status = 'pending'
            """, (status.value, datetime.now().isoformat(), reviewer, audit_id))
            return cursor.rowcount == 1

    def list_audit_entries(
        self,
        status: AuditStatus | None = None,
        entity_id: str | None = None,
        limit: int = 50,
    ) -> list[dict]:
        clauses, params = [], []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if entity_id is not None:
            clauses.append("entity_id = ?")
            params.append(entity_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.db.transaction(read_only=True) as conn:
            rows = conn.execute(
                f"SELECT * FROM inference_audit_log {where} ORDER BY id DESC LIMIT ?",
                [*params, limit],
            ).fetchall()
        entries = []
        for r in rows:
            entry = dict(r)
            entry["evidence"] = load_json(entry["evidence"])
            entries.append(entry)
        return entries

    def list_relations(self, movie_id: str) -> list[dict]:
        with self.db.transaction(read_only=True) as conn:
            rows = conn.execute(
                "SELECT * FROM entity_relations WHERE movie_id = ? ORDER BY id ASC",
                (movie_id,),
            ).fetchall()
        relations = []
        for r in rows:
            rel = dict(r)
            rel["is_verified"] = bool(rel["is_verified"])
            rel["is_inferred"] = bool(rel["is_inferred"])
            rel["source_metadata"] = load_json(rel["source_metadata"])
            relations.append(rel)
        return relations
