"""NDCG scoring for judged search results.

This module provides:
- Defensive parsing of stored judgement scores
- Fixed-point rounding matching the stored score precision
- DCG, IDCG and NDCG over a graded list (scores in result order)
"""

import logging
import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Sequence

from config.scoring_config import FRACTIONAL_DIGITS, MISSING_SCORE, RESULT_LIMIT
from relevancy_types import InvalidInput

logger = logging.getLogger(__name__)


def parse_score(value: Any) -> float:
    """Parse a stored score as a number.

    Scores may be stored as text ("3", "") as well as numbers. Anything that
    is not a finite number counts as 0.

    Args:
        value: Raw score value

    Returns:
        Score as float
    """
    if value is None or isinstance(value, bool):
        return float(value or 0)

    if isinstance(value, str):
        value = value.strip()
        if not value:
            return 0.0

    try:
        score = float(value)
    except (TypeError, ValueError):
        logger.debug("Non-numeric score %r treated as 0", value)
        return 0.0

    if not math.isfinite(score):
        return 0.0
    return score


def to_fixed(value: float, digits: int) -> float:
    """Round to a fixed number of decimals, halves away from zero.

    Rounds the exact binary value the way fixed-point formatting does,
    so 0.125 becomes 0.13 (round() would give 0.12).

    Args:
        value: Number to round
        digits: Decimal places to keep

    Returns:
        Rounded float
    """
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(value).quantize(quantum, rounding=ROUND_HALF_UP))


def _log2(x: float) -> float:
    return math.log(x) / math.log(2)


def dcg(graded: Sequence[Any], fractional_digits: int = FRACTIONAL_DIGITS) -> float:
    """Compute discounted cumulative gain.

    DCG = sum over positions i=1..n of (2^g[i] - 1) / log2(i + 1)

    Args:
        graded: Scores in result order
        fractional_digits: Decimal places of the result

    Returns:
        DCG, 0 for an empty list

    Raises:
        InvalidInput: If a grade is too large for its gain to be a float
    """
    if not graded:
        return 0

    total = 0.0
    for i, raw in enumerate(graded, start=1):
        score = parse_score(raw)
        try:
            gain = math.pow(2, score) - 1.0
        except OverflowError:
            raise InvalidInput(f"Grade {raw!r} at position {i} is too large to score") from None
        total += gain / _log2(i + 1)

    if not math.isfinite(total):
        raise InvalidInput("Grades are too large to score")
    return to_fixed(total, fractional_digits)


def idcg(
    graded: Sequence[Any],
    result_limit: int = RESULT_LIMIT,
    missing_score: float = MISSING_SCORE,
    fractional_digits: int = FRACTIONAL_DIGITS,
) -> float:
    """Compute the ideal DCG within the displayed result window.

    Takes the first min(result_limit, n) scores, sorts them best first and
    pads the tail up to result_limit with missing_score before computing DCG.

    Args:
        graded: Scores in result order
        result_limit: Size of the displayed window
        missing_score: Grade used for padding
        fractional_digits: Decimal places of the result

    Returns:
        IDCG
    """
    upper = min(result_limit, len(graded))
    ideal = sorted((parse_score(s) for s in graded[:upper]), reverse=True)
    ideal.extend([missing_score] * (result_limit - len(ideal)))

    return dcg(ideal, fractional_digits)


def ndcg(
    graded: Sequence[Any],
    result_limit: int = RESULT_LIMIT,
    missing_score: float = MISSING_SCORE,
    fractional_digits: int = FRACTIONAL_DIGITS,
) -> float:
    """Compute normalized DCG.

    Args:
        graded: Scores in result order
        result_limit: Size of the displayed window
        missing_score: Grade used for IDCG padding
        fractional_digits: Precision of DCG/IDCG; NDCG keeps one more digit

    Returns:
        NDCG, exactly 0 when IDCG is 0
    """
    ideal = idcg(graded, result_limit, missing_score, fractional_digits)
    if ideal == 0:
        return 0

    actual = dcg(graded, fractional_digits)
    return to_fixed(actual / ideal, fractional_digits + 1)
