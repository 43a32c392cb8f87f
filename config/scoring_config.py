"""Configuration for relevancy scoring and rollups.

Environment Variables:
- RELEVANCY_RESULT_LIMIT: NDCG truncation window, also the number of results
  requested from the search API (default: 20)
- RELEVANCY_MISSING_SCORE: Grade given to a result with no judgement (default: 1)
- RELEVANCY_FRACTIONAL_DIGITS: Decimal places kept for DCG/IDCG; NDCG and
  aggregate scores keep one more (default: 2)
- RELEVANCY_DATABASE_URL: Store location (default: data/db/relevancy.db)
- RELEVANCY_SEARCH_TIMEOUT: Search API timeout in seconds (default: 15)

Any of the scoring values can also be set in a YAML file passed to
load_scoring_config(); file values win over the environment.
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml

from relevancy_types import InvalidInput

logger = logging.getLogger(__name__)

RESULT_LIMIT = int(os.getenv("RELEVANCY_RESULT_LIMIT", "20"))
MISSING_SCORE = float(os.getenv("RELEVANCY_MISSING_SCORE", "1"))
FRACTIONAL_DIGITS = int(os.getenv("RELEVANCY_FRACTIONAL_DIGITS", "2"))
SEARCH_TIMEOUT_SECONDS = float(os.getenv("RELEVANCY_SEARCH_TIMEOUT", "15"))

DEFAULT_DB_PATH = "data/db/relevancy.db"


@dataclass
class ScoringConfig:
    """Scoring parameters shared by the scorer and aggregators.

    Attributes:
        result_limit: Window used for IDCG padding and search requests
        missing_score: Grade of an unjudged result
        fractional_digits: Precision of DCG/IDCG (NDCG and means use one more)
    """
    result_limit: int = RESULT_LIMIT
    missing_score: float = MISSING_SCORE
    fractional_digits: int = FRACTIONAL_DIGITS

    def __post_init__(self):
        if self.result_limit < 1:
            raise InvalidInput(f"result_limit must be positive, got {self.result_limit}")
        if self.fractional_digits < 0:
            raise InvalidInput(f"fractional_digits must not be negative, got {self.fractional_digits}")

    @property
    def score_digits(self) -> int:
        """Precision of NDCG and aggregated scores."""
        return self.fractional_digits + 1


def load_scoring_config(config_path: Optional[str] = None) -> ScoringConfig:
    """Load scoring configuration from the environment and an optional YAML file.

    The YAML file may hold the values at the top level or under a
    ``scoring`` key. Unknown keys are ignored with a warning.

    Args:
        config_path: Path to a YAML file (optional)

    Returns:
        ScoringConfig

    Raises:
        InvalidInput: If the file is missing or holds invalid values
    """
    if not config_path:
        return ScoringConfig()

    config_file = Path(config_path)
    if not config_file.exists():
        raise InvalidInput(f"Configuration file not found: {config_path}")

    with open(config_file, "r") as f:
        raw = yaml.safe_load(f) or {}

    section = raw.get("scoring", raw) if isinstance(raw, dict) else {}
    known = {f.name for f in fields(ScoringConfig)}
    overrides = {}
    for key, value in section.items():
        if key not in known:
            logger.warning("Ignoring unknown scoring option '%s' in %s", key, config_path)
            continue
        overrides[key] = value

    try:
        config = ScoringConfig(
            result_limit=int(overrides.get("result_limit", RESULT_LIMIT)),
            missing_score=float(overrides.get("missing_score", MISSING_SCORE)),
            fractional_digits=int(overrides.get("fractional_digits", FRACTIONAL_DIGITS)),
        )
    except (TypeError, ValueError) as e:
        raise InvalidInput(f"Invalid scoring configuration in {config_path}: {e}") from e

    logger.info(
        "Loaded scoring config from %s (result_limit=%d, missing_score=%s, fractional_digits=%d)",
        config_path,
        config.result_limit,
        config.missing_score,
        config.fractional_digits,
    )
    return config


def get_database_url() -> str:
    """Get the configured store location.

    Returns:
        RELEVANCY_DATABASE_URL, or the default SQLite path
    """
    return os.environ.get("RELEVANCY_DATABASE_URL", "") or DEFAULT_DB_PATH
