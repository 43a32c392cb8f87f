"""Join ordered search results with sparse judgements."""

import logging
from typing import Any, Dict, List, Mapping, Optional

from config.scoring_config import MISSING_SCORE
from relevancy_types import InvalidInput, Judgement, ResultItem

logger = logging.getLogger(__name__)


def join_judgements(
    result_items: List[ResultItem],
    judgements: Mapping[str, Any],
    missing_score: float = MISSING_SCORE,
) -> List[Any]:
    """Build the graded list for a result set.

    Each result contributes its judged score, or missing_score when the
    product was never judged. Judgements for products not in the results
    are ignored.

    Args:
        result_items: Results in rank order
        judgements: Product id -> Judgement (or raw {"score": ...} node)
        missing_score: Grade of an unjudged result

    Returns:
        Scores aligned with result_items
    """
    graded = []
    for item in result_items:
        judgement = judgements.get(item.product_id)
        if judgement is None:
            graded.append(missing_score)
        elif isinstance(judgement, Judgement):
            graded.append(judgement.score)
        elif isinstance(judgement, Mapping):
            graded.append(judgement.get("score"))
        else:
            graded.append(judgement)
    return graded


def parse_result_items(node: Optional[Any]) -> Optional[List[ResultItem]]:
    """Parse a stored results node into ranked ResultItems.

    Results are stored keyed by product id with a ``rank`` field. A list of
    product dicts is accepted too, in which case list order is the rank.

    Args:
        node: Stored results node, or None

    Returns:
        ResultItems sorted by rank, or None when the node is absent
    """
    if node is None:
        return None

    items = []
    if isinstance(node, Mapping):
        for key, product in node.items():
            product = dict(product or {})
            product_id = str(product.pop("id", key))
            rank = product.pop("rank", None)
            if rank is None:
                raise InvalidInput(f"Result '{product_id}' has no rank")
            items.append(ResultItem(product_id=product_id, rank=int(rank), fields=product))
    elif isinstance(node, list):
        for position, product in enumerate(node):
            if product is None:
                continue
            product = dict(product)
            if "id" not in product:
                raise InvalidInput(f"Result at position {position} has no id")
            product_id = str(product.pop("id"))
            rank = int(product.pop("rank", position))
            items.append(ResultItem(product_id=product_id, rank=rank, fields=product))
    else:
        raise InvalidInput(f"Unexpected results node type: {type(node).__name__}")

    items.sort(key=lambda item: item.rank)
    return items


def parse_judgements(node: Optional[Mapping[str, Any]]) -> Dict[str, Judgement]:
    """Parse a stored judgements node keyed by product id.

    Args:
        node: Product id -> {"score": ...}, or None

    Returns:
        Product id -> Judgement
    """
    judgements = {}
    for product_id, value in (node or {}).items():
        if value is None:
            continue
        score = value.get("score") if isinstance(value, Mapping) else value
        judgements[str(product_id)] = Judgement(product_id=str(product_id), score=score)
    return judgements
