"""
Loading relevance-scorer weight overrides.

Weights are stored per signal in a JSON file. A file that is missing, has
unknown signals, negative values or does not sum to 1.0 is ignored and the
defaults from config are used, so scores always stay within [0, 1].
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import SCORER_WEIGHTS, SCORER_WEIGHTS_PATH

logger = logging.getLogger(__name__)

WEIGHT_SUM_TOLERANCE = 1e-6


@dataclass(frozen=True)
class ScorerWeights:
    """Per-signal weights for the relevance scorer."""

    director: float = SCORER_WEIGHTS['director']
    lead_actor: float = SCORER_WEIGHTS['lead_actor']
    genre: float = SCORER_WEIGHTS['genre']
    era: float = SCORER_WEIGHTS['era']
    tags: float = SCORER_WEIGHTS['tags']
    rating: float = SCORER_WEIGHTS['rating']
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        values = self.as_dict()
        if any(v < 0 for v in values.values()):
            raise ValueError(f"Scorer weights must be non-negative: {values}")
        total = sum(values.values())
        if not math.isclose(total, 1.0, abs_tol=WEIGHT_SUM_TOLERANCE):
            raise ValueError(f"Scorer weights must sum to 1.0, got {total:.4f}")

    def as_dict(self) -> dict[str, float]:
        return {name: getattr(self, name) for name in SCORER_WEIGHTS}

    def to_dict(self) -> dict[str, Any]:
        return {"metadata": self.metadata, "weights": self.as_dict()}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ScorerWeights":
        weights = payload.get("weights", payload)
        unknown = set(weights) - set(SCORER_WEIGHTS) - {"metadata"}
        if unknown:
            raise ValueError(f"Unknown scorer signals: {sorted(unknown)}")
        merged = {**SCORER_WEIGHTS, **{k: float(v) for k, v in weights.items() if k in SCORER_WEIGHTS}}
        return cls(**merged, metadata=payload.get("metadata", {}))


DEFAULT_WEIGHTS = ScorerWeights()


def load_scorer_weights(path: str | Path | None = None) -> ScorerWeights:
    """Load weights from disk; fall back to defaults if missing or invalid."""
    weight_path = Path(path) if path else SCORER_WEIGHTS_PATH
    if not weight_path.exists():
        logger.debug("Scorer weights file not found at %s; using defaults", weight_path)
        return DEFAULT_WEIGHTS

    try:
        return ScorerWeights.from_dict(json.loads(weight_path.read_text()))
    except (OSError, ValueError, TypeError, AttributeError) as exc:
        logger.warning("Ignoring scorer weights at %s: %s", weight_path, exc)
        return DEFAULT_WEIGHTS


def save_scorer_weights(weights: ScorerWeights, path: str | Path | None = None) -> Path:
    weight_path = Path(path) if path else SCORER_WEIGHTS_PATH
    weight_path.parent.mkdir(parents=True, exist_ok=True)
    weight_path.write_text(json.dumps(weights.to_dict(), indent=2))
    return weight_path
