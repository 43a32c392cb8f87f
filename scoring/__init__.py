"""Relevance scoring and score rollups.

This package provides:
- NDCG over judged search results
- Query scoring with persistence to the store
- Case and site aggregation
- Rollup coordination for single changes and full sweeps
"""

from .ndcg import dcg, idcg, ndcg, parse_score, to_fixed
from .judgements import join_judgements, parse_judgements, parse_result_items
from .query_scorer import QueryScorer
from .aggregate import CaseAggregator, SiteAggregator
from .rollup import RollupCoordinator, RollupOutcome, RollupStage, SweepReport

__all__ = [
    "dcg",
    "idcg",
    "ndcg",
    "parse_score",
    "to_fixed",
    "join_judgements",
    "parse_judgements",
    "parse_result_items",
    "QueryScorer",
    "CaseAggregator",
    "SiteAggregator",
    "RollupCoordinator",
    "RollupOutcome",
    "RollupStage",
    "SweepReport",
]
