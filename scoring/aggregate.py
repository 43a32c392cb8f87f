"""Case and site score aggregation.

Both aggregators read the score index (scores/{site}/{case}/{query}) at call
time; nothing is cached between calls. A case score is the mean of its queries' scores. A site score
is the mean of every query score in the site, so each query weighs the same
regardless of how queries are spread over cases.
"""

import logging
from typing import Any, Iterable, List, Optional

import numpy as np

from config.scoring_config import ScoringConfig
from relevancy_types import InvalidInput, StoreError
from scoring.ndcg import parse_score, to_fixed
from storage.paths import case_path, score_index_path, site_path
from storage.store import TreeStore

logger = logging.getLogger(__name__)


def mean_score(values: Iterable, digits: int) -> float:
    """Mean of parsed scores rounded to digits, 0 when there are none."""
    scores = [parse_score(v) for v in values]
    if not scores:
        return 0
    return to_fixed(float(np.mean(scores)), digits)


class _Aggregator:
    def __init__(self, store: TreeStore, config: Optional[ScoringConfig] = None):
        self.store = store
        self.config = config or ScoringConfig()

    async def _case_scores(self, site_id: str, case_id: str) -> List[Any]:
        entries = await self.store.query(
            score_index_path(site_id, case_id), lambda entry: isinstance(entry, dict)
        )
        return [entry.get("val") for entry in entries.values()]

    async def _site_scores(self, site_id: str) -> List[Any]:
        cases = await self.store.query(score_index_path(site_id), lambda queries: isinstance(queries, dict))
        return [
            entry.get("val")
            for queries in cases.values()
            for entry in queries.values()
            if isinstance(entry, dict)
        ]


class CaseAggregator(_Aggregator):
    """Recomputes a case score from its queries' scores."""

    async def aggregate_case(self, site_id: str, case_id: str) -> float:
        """Recompute and persist a case score.

        Args:
            site_id: Owning site
            case_id: Case to aggregate

        Returns:
            Mean of the case's query scores (0 with no scored queries)

        Raises:
            StoreError: If reading the scores or saving the case score fails
        """
        if not (site_id and case_id):
            raise InvalidInput("aggregate_case requires site_id and case_id")

        logger.info("Starting on case '%s' in site '%s'", case_id, site_id)
        values = await self._case_scores(site_id, case_id)
        case_score = mean_score(values, self.config.score_digits)

        try:
            await self.store.write(f"{case_path(site_id, case_id)}/score", case_score)
        except StoreError:
            logger.error("Cannot save case score %s for case '%s'", case_score, case_id)
            raise

        logger.info(
            "Finished updating case '%s' in site '%s' with score %s (%d queries)",
            case_id, site_id, case_score, len(values),
        )
        return case_score


class SiteAggregator(_Aggregator):
    """Recomputes a site score from every query score in the site."""

    async def aggregate_site(self, site_id: str) -> float:
        """Recompute and persist a site score.

        Args:
            site_id: Site to aggregate

        Returns:
            Mean of all the site's query scores (0 with no scored queries)

        Raises:
            StoreError: If reading the scores or saving the site score fails
        """
        if not site_id:
            raise InvalidInput("aggregate_site requires site_id")

        values = await self._site_scores(site_id)
        site_score = mean_score(values, self.config.score_digits)

        try:
            await self.store.write(f"{site_path(site_id)}/score", site_score)
        except StoreError:
            logger.error("Cannot save score %s for site '%s'", site_score, site_id)
            raise

        logger.info("Finished updating site '%s' with score %s (%d queries)", site_id, site_score, len(values))
        return site_score
