"""Score a single query and persist the result."""

import logging
from typing import Any, List, Mapping, Optional

from config.scoring_config import ScoringConfig
from relevancy_types import InvalidInput, QueryScore, ResultItem, StoreError
from scoring.judgements import join_judgements
from scoring.ndcg import ndcg
from storage.paths import query_path, score_index_path
from storage.store import TreeStore

logger = logging.getLogger(__name__)


class QueryScorer:
    """Computes a query's NDCG and writes it to the store.

    The score is written twice: first to the score index that the case and
    site aggregators read, then to the query node itself. If the second write
    fails, aggregates already use the new score while the node keeps the old.
    """

    def __init__(self, store: TreeStore, config: Optional[ScoringConfig] = None):
        self.store = store
        self.config = config or ScoringConfig()

    def compute(
        self,
        result_items: Optional[List[ResultItem]],
        judgements: Optional[Mapping[str, Any]],
        result_limit: Optional[int] = None,
    ) -> float:
        """Compute a query score without persisting it.

        Args:
            result_items: Results in rank order
            judgements: Product id -> judgement
            result_limit: NDCG window (defaults to the configured one)

        Returns:
            NDCG, or 0 when the query has no judgements

        Raises:
            InvalidInput: If result_items is None
        """
        if result_items is None:
            raise InvalidInput("A query cannot be scored without result items")

        if not judgements:
            return 0

        graded = join_judgements(result_items, judgements, self.config.missing_score)
        return ndcg(
            graded,
            result_limit or self.config.result_limit,
            self.config.missing_score,
            self.config.fractional_digits,
        )

    async def score_query(
        self,
        site_id: str,
        case_id: str,
        query_id: str,
        result_items: Optional[List[ResultItem]],
        judgements: Optional[Mapping[str, Any]],
        result_limit: Optional[int] = None,
        rollup: bool = True,
    ) -> QueryScore:
        """Score a query and persist its score.

        Args:
            site_id: Owning site
            case_id: Owning case
            query_id: Query to score
            result_items: Results in rank order
            judgements: Product id -> judgement
            result_limit: NDCG window (defaults to the configured one)
            rollup: Whether the owning case and site should be recomputed

        Returns:
            QueryScore with the score and the rollup flag

        Raises:
            InvalidInput: If result_items is None
            StoreError: If the score could not be persisted
        """
        if not (site_id and case_id and query_id):
            raise InvalidInput("score_query requires site_id, case_id and query_id")

        score = self.compute(result_items, judgements, result_limit)
        if not judgements:
            logger.info(
                "No judgements found for query '%s' in case '%s' for site '%s'",
                query_id, case_id, site_id,
            )

        try:
            await self.store.write(
                score_index_path(site_id, case_id, query_id),
                {"siteId": site_id, "caseId": case_id, "queryId": query_id, "val": score},
            )
            await self.store.write(f"{query_path(site_id, case_id, query_id)}/score", score)
        except StoreError:
            logger.error("Cannot save score %s for query '%s'", score, query_id)
            raise

        logger.info(
            "Updated query '%s' for case '%s' for site '%s' with score %s",
            query_id, case_id, site_id, score,
        )
        return QueryScore(
            site_id=site_id,
            case_id=case_id,
            query_id=query_id,
            score=score,
            rollup_requested=rollup,
        )

    async def forget_query(self, site_id: str, case_id: str, query_id: str) -> None:
        """Drop a removed query from the score index."""
        await self.store.delete(score_index_path(site_id, case_id, query_id))
        logger.info("Removed query '%s' in case '%s' from the score index", query_id, case_id)
