import importlib
import sys
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with a temporary database path; restore the defaults afterwards.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("CATALOGUE_DB", str(db_path))
    import catalogue_rec.config as config

    importlib.reload(config)
    yield config

    monkeypatch.undo()
    importlib.reload(config)


@pytest.fixture
def db(tmp_path):
    """
    Initialised database in a temp directory; the pool is closed after use.
    """
    from catalogue_rec.database import Database

    database = Database(tmp_path / "test.db")
    database.init_schema()
    yield database
    database.close()


@pytest.fixture
def movie_factory():
    """Build movies with an image and a title so repository defaults keep them."""
    from catalogue_rec.models import Movie

    def _make(movie_id: str, **overrides) -> Movie:
        fields = {
            "title": f"Movie {movie_id}",
            "poster_url": f"https://img.test/{movie_id}.jpg",
        }
        fields.update(overrides)
        return Movie(id=movie_id, **fields)

    return _make
