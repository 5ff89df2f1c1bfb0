import pytest

from catalogue_rec.models import MatchType
from catalogue_rec.repository import InMemoryMovieRepository
from catalogue_rec.retrieval import Dimension, DimensionResult
from catalogue_rec.sections import SectionComposer


def _scenario_catalogue(movie_factory):
    source = movie_factory(
        "s", director="D", lead_actor="A", genres=["Drama", "Family"], release_year=2005, our_rating=7.2
    )
    # Director's other films: different genre and era, four of them rated
    by_director = [
        movie_factory(f"d{i}", director="D", genres=["Action"], release_year=1975,
                      avg_rating=5.0 if i < 4 else None)
        for i in range(7)
    ]
    by_lead = [
        movie_factory(f"a{i}", lead_actor="A", genres=["Drama", "Family"], release_year=2005, our_rating=7.2)
        for i in range(5)
    ]
    same_era_drama = [
        movie_factory(f"g{i}", genres=["Drama", "Family"], release_year=2006, our_rating=7.0)
        for i in range(4)
    ]
    return source, [source, *by_director, *by_lead, *same_era_drama]


def _all_ids(sections):
    return [movie_id for s in sections for movie_id in s.movie_ids]


@pytest.mark.asyncio
async def test_director_section_survives_best_matches(movie_factory):
    source, movies = _scenario_catalogue(movie_factory)
    composer = SectionComposer(InMemoryMovieRepository(movies))

    sections = await composer.compute_sections(source)
    by_title = {s.title: s for s in sections}

    assert sections[0].id == "best"
    assert "More from D" in by_title
    director = by_title["More from D"]
    assert director.match_type is MatchType.DIRECTOR
    assert set(director.movie_ids) == {f"d{i}" for i in range(7)}

    ids = _all_ids(sections)
    assert len(ids) == len(set(ids))
    assert "s" not in ids


@pytest.mark.asyncio
async def test_best_matches_ranked_by_score(movie_factory):
    source, movies = _scenario_catalogue(movie_factory)
    composer = SectionComposer(InMemoryMovieRepository(movies))

    best = (await composer.compute_sections(source))[0]

    assert best.match_type is MatchType.BEST
    assert best.movie_ids == ["a0", "a1", "a2", "a3", "a4", "g0", "g1", "g2"]
    scores = [best.scores[movie_id] for movie_id in best.movie_ids]
    assert scores == sorted(scores, reverse=True)


@pytest.mark.asyncio
async def test_sections_respect_global_limits(movie_factory):
    genres = ["Drama", "Action", "Comedy", "Family"]
    movies = [
        movie_factory(
            f"m{i:03d}",
            director=f"D{i % 3}",
            lead_actor=f"A{i % 4}",
            lead_actress=f"H{i % 5}",
            composer=f"M{i % 2}",
            genres=[genres[i % 4], genres[(i + 1) % 4]],
            release_year=1980 + i % 40,
            our_rating=5 + (i % 50) / 10,
            is_classic=i % 7 == 0,
            is_blockbuster=i % 5 == 0,
            is_underrated=i % 6 == 0,
        )
        for i in range(200)
    ]
    composer = SectionComposer(InMemoryMovieRepository(movies))

    for source in movies[:10]:
        sections = await composer.compute_sections(source)

        assert len(sections) <= 8
        assert all(3 <= len(s) <= 8 for s in sections)
        ids = _all_ids(sections)
        assert len(ids) == len(set(ids))
        assert source.id not in ids
        priorities = [s.priority for s in sections]
        assert priorities == sorted(priorities, reverse=True)


@pytest.mark.asyncio
async def test_sections_are_deterministic(movie_factory):
    source, movies = _scenario_catalogue(movie_factory)
    composer = SectionComposer(InMemoryMovieRepository(movies))

    first = await composer.compute_sections(source)
    second = await composer.compute_sections(source)

    assert [(s.id, s.movie_ids) for s in first] == [(s.id, s.movie_ids) for s in second]


@pytest.mark.asyncio
async def test_empty_catalogue_yields_no_sections(movie_factory):
    source = movie_factory("s", director="D", genres=["Drama"], release_year=2005)

    sections = await SectionComposer(InMemoryMovieRepository([source])).compute_sections(source)

    assert sections == []


def test_compose_skips_failed_dimensions(movie_factory):
    source = movie_factory("s", director="D", composer="M")
    scored = [movie_factory(f"c{i}", composer="M") for i in range(4)]
    results = {
        Dimension.DIRECTOR: DimensionResult(Dimension.DIRECTOR, error="database is locked"),
        Dimension.COMPOSER: DimensionResult(Dimension.COMPOSER, scored),
    }

    sections = SectionComposer(InMemoryMovieRepository([])).compose(source, results)

    assert [s.title for s in sections] == ["Music by M"]
    assert sections[0].movie_ids == ["c0", "c1", "c2", "c3"]


def test_compose_drops_sections_below_minimum(movie_factory):
    source = movie_factory("s")
    results = {
        Dimension.CLASSICS: DimensionResult(
            Dimension.CLASSICS, [movie_factory("c0"), movie_factory("c1")]
        ),
        Dimension.HIDDEN_GEMS: DimensionResult(
            Dimension.HIDDEN_GEMS, [movie_factory(f"h{i}") for i in range(3)]
        ),
    }

    sections = SectionComposer(InMemoryMovieRepository([])).compose(source, results)

    assert [s.title for s in sections] == ["Hidden Gems"]


def test_fallback_sections_do_not_repeat_claimed_movies(movie_factory):
    source = movie_factory("s")
    shared = [movie_factory(f"x{i}", is_classic=True, is_blockbuster=True) for i in range(5)]
    results = {
        Dimension.CLASSICS: DimensionResult(Dimension.CLASSICS, shared),
        Dimension.BLOCKBUSTERS: DimensionResult(Dimension.BLOCKBUSTERS, shared + [movie_factory("y")]),
    }

    sections = SectionComposer(InMemoryMovieRepository([])).compose(source, results)

    assert [s.title for s in sections] == ["Timeless Classics"]
