"""
Configuration constants for the catalogue relevance engine.

This module centralizes all magic numbers and configurable parameters.
Values can be overridden via environment variables where noted.
"""
import os
import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


# Database Configuration
DB_PATH = Path(os.environ.get("CATALOGUE_DB", "data/catalogue.db"))

# Retrieval Concurrency
DEFAULT_MAX_CONCURRENT = _get_int_env("CATALOGUE_MAX_CONCURRENT", 8, min_val=1)

# Transient SQLite errors (database is locked)
DB_READ_RETRIES = 3
DB_RETRY_INITIAL_DELAY = 0.05

# Section Composition
MOVIES_PER_SECTION = 8
MIN_MOVIES_FOR_SECTION = 3
MAX_SECTIONS = 8

# Fallback dimension thresholds
TOP_RATED_MIN_RATING = _get_float_env("CATALOGUE_TOP_RATED_MIN", 7.5, min_val=0.0)
RECENT_YEARS_WINDOW = 2  # current year minus this, inclusive
RECENT_MIN_RATING = 6.0

# Relevance Scorer Weights (must sum to 1.0)
SCORER_WEIGHTS = {
    'director': 0.25,
    'lead_actor': 0.20,
    'genre': 0.20,
    'era': 0.10,
    'tags': 0.15,
    'rating': 0.10,
}
SCORER_WEIGHTS_PATH = Path(os.environ.get("CATALOGUE_SCORER_WEIGHTS", "data/scorer_weights.json"))

# Step functions: (max difference, factor); anything beyond the last step gets the floor
ERA_STEPS = ((2, 1.0), (6, 0.8), (11, 0.5), (20, 0.3))
ERA_FLOOR = 0.1
RATING_STEPS = ((0.5, 1.0), (1.0, 0.8), (1.5, 0.5), (2.0, 0.3))
RATING_FLOOR = 0.1

# Boolean distinction tags compared by the scorer
DISTINCTION_TAGS = ('is_blockbuster', 'is_classic', 'is_underrated')

# Inference
# Anything at or above this counts as verified data; inference never reaches it.
VERIFIED_CONFIDENCE = 0.70
INFERENCE_SOURCE = "gap-filler"
DEFAULT_SUPPORTING_CAST_SUGGESTIONS = 2


@dataclass(frozen=True)
class StrategyConfig:
    """Thresholds and caps for one inference strategy."""
    method: str                 # evidence method tag
    inference_type: str         # similarity | collaboration | pattern
    weight: float               # multiplier applied to the agreement ratio
    cap: float                  # confidence ceiling for this strategy
    min_cohort: int             # cohort smaller than this is "no signal"
    min_support: int = 1        # modal value must occur at least this often
    min_confidence: float = 0.0  # result below this is discarded
    min_fraction: float = 0.0   # frequency strategies: minimum share of cohort
    cohort_limit: int = 20
    published_only: bool = False

    def __post_init__(self):
        if self.cap > VERIFIED_CONFIDENCE or self.cap <= 0:
            raise ValueError(f"{self.method}: cap {self.cap} must be in (0, {VERIFIED_CONFIDENCE}]")
        if self.min_confidence > self.cap:
            raise ValueError(f"{self.method}: min_confidence above cap makes the strategy unreachable")


SIMILARITY_COHORT = StrategyConfig(
    method="similarity_based",
    inference_type="similarity",
    weight=0.70,
    cap=0.70,
    min_cohort=3,
    min_support=3,
    cohort_limit=10,
    published_only=True,
)

DIRECTOR_COLLABORATION = StrategyConfig(
    method="collaboration_pattern",
    inference_type="collaboration",
    weight=0.65,
    cap=0.65,
    min_cohort=3,
    min_support=3,
    min_confidence=0.60,
    cohort_limit=20,
)

LEAD_ACTOR_COLLABORATION = StrategyConfig(
    method="collaboration_pattern",
    inference_type="collaboration",
    weight=0.65,
    cap=0.65,
    min_cohort=3,
    min_support=3,
    min_confidence=0.55,
    cohort_limit=20,
)

ERA_GENRE_FREQUENCY = StrategyConfig(
    method="era_genre_pattern",
    inference_type="pattern",
    weight=1.0,
    cap=0.65,
    min_cohort=10,
    min_fraction=0.15,
    cohort_limit=100,
)

# Relation mapping for materialized inferences
RELATION_ROLE_TYPES = {
    'composer': 'music',
    'producer': 'producer',
    'lead_actress': 'heroine',
    'supporting_cast': 'supporting',
}
RELATION_ENTITY_TYPES = {
    'composer': 'music_director',
    'producer': 'producer',
    'lead_actress': 'actor',
    'supporting_cast': 'actor',
}

# Batch inference
DEFAULT_BATCH_LIMIT = 200

# Notifications (Discord/Slack-style webhook)
NOTIFICATION_WEBHOOK_URL = os.environ.get("CATALOGUE_NOTIFICATION_WEBHOOK", "")
