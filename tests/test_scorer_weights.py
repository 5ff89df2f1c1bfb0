import json

import pytest

from catalogue_rec.scorer_weights import (
    DEFAULT_WEIGHTS,
    ScorerWeights,
    load_scorer_weights,
    save_scorer_weights,
)


def test_defaults_match_config():
    assert DEFAULT_WEIGHTS.as_dict() == {
        "director": 0.25,
        "lead_actor": 0.20,
        "genre": 0.20,
        "era": 0.10,
        "tags": 0.15,
        "rating": 0.10,
    }


def test_weights_must_sum_to_one():
    with pytest.raises(ValueError):
        ScorerWeights(director=0.5)


def test_negative_weights_rejected():
    with pytest.raises(ValueError):
        ScorerWeights(director=-0.05, lead_actor=0.50)


def test_from_dict_accepts_nested_and_flat_payloads():
    nested = ScorerWeights.from_dict({"weights": {"director": 0.30, "lead_actor": 0.15}})
    flat = ScorerWeights.from_dict({"director": 0.30, "lead_actor": 0.15})

    assert nested == flat
    assert nested.director == 0.30
    assert nested.genre == DEFAULT_WEIGHTS.genre


def test_from_dict_rejects_unknown_signals():
    with pytest.raises(ValueError):
        ScorerWeights.from_dict({"weights": {"cinematographer": 0.1}})


def test_save_and_load_round_trip(tmp_path):
    path = tmp_path / "weights.json"
    weights = ScorerWeights(
        director=0.30, lead_actor=0.20, genre=0.20, era=0.10, tags=0.10, rating=0.10,
        metadata={"source": "manual"},
    )

    save_scorer_weights(weights, path)
    loaded = load_scorer_weights(path)

    assert loaded == weights
    assert loaded.metadata == {"source": "manual"}


def test_missing_file_falls_back_to_defaults(tmp_path):
    assert load_scorer_weights(tmp_path / "missing.json") is DEFAULT_WEIGHTS


def test_invalid_file_falls_back_to_defaults(tmp_path, caplog):
    path = tmp_path / "weights.json"
    path.write_text(json.dumps({"weights": {"director": 0.9}}))

    assert load_scorer_weights(path) is DEFAULT_WEIGHTS
    assert "Ignoring scorer weights" in caplog.text


def test_unparseable_file_falls_back_to_defaults(tmp_path):
    path = tmp_path / "weights.json"
    path.write_text("{not json")

    assert load_scorer_weights(path) is DEFAULT_WEIGHTS
