"""Refresh query results from the search API.

Results are replaced wholesale. When a search fails the stored results are
left as they were and the query is not rescored in that cycle.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

from config.scoring_config import ScoringConfig
from relevancy_types import RelevancyError, ResultItem, SearchError, SiteConfig
from scoring.rollup import RollupCoordinator, RollupOutcome, SweepReport
from storage.paths import SITES, query_path, site_path
from storage.store import TreeStore

logger = logging.getLogger(__name__)


class SearchProvider(Protocol):
    async def search(self, query_text: str, site_config: SiteConfig) -> List[ResultItem]:
        ...


@dataclass
class RefreshReport:
    """Outcome of refreshing many queries."""

    refreshed: Dict[str, int] = field(default_factory=dict)  # query key -> result count
    skipped: Dict[str, str] = field(default_factory=dict)  # query key -> reason
    sweep: Optional[SweepReport] = None

    @property
    def status(self) -> str:
        sweep_status = self.sweep.status if self.sweep is not None else "success"
        if not self.skipped and sweep_status == "success":
            return "success"
        if self.refreshed and sweep_status != "failure":
            return "partial"
        return "failure"


def query_text(query_node: dict, query_id: str) -> str:
    """Text to search for: the query name, or its id with dashes as spaces."""
    return (query_node or {}).get("name") or query_id.replace("-", " ")


async def refresh_query(
    store: TreeStore,
    provider: SearchProvider,
    site_id: str,
    case_id: str,
    query_id: str,
    result_limit: int = 20,
) -> List[ResultItem]:
    """Search again for a query and replace its stored results.

    Args:
        store: Tree store
        provider: Search provider
        site_id: Owning site
        case_id: Owning case
        query_id: Query to refresh
        result_limit: Number of results to request

    Returns:
        The new ResultItems

    Raises:
        SearchError: If the search failed; stored results are unchanged
        StoreError: If reading the query or writing results failed
    """
    site_config = SiteConfig.from_node(await store.read(site_path(site_id)), result_limit)
    path = query_path(site_id, case_id, query_id)
    query_node = await store.read(path)

    items = await provider.search(query_text(query_node, query_id), site_config)
    await store.write(f"{path}/results", {item.product_id: item.to_node() for item in items})
    logger.info("Stored %d results for query '%s' in case '%s'", len(items), query_id, case_id)
    return items


async def refresh_and_rollup(
    coordinator: RollupCoordinator,
    provider: SearchProvider,
    site_id: str,
    case_id: str,
    query_id: str,
) -> Optional[RollupOutcome]:
    """Refresh one query's results, then roll its new score up.

    Returns:
        RollupOutcome, or None when the search failed and scoring was skipped
    """
    try:
        await refresh_query(
            coordinator.store, provider, site_id, case_id, query_id, coordinator.config.result_limit
        )
    except SearchError as e:
        logger.warning("Skipping scoring of query '%s': %s", query_id, e)
        return None
    return await coordinator.rollup_query(site_id, case_id, query_id)


async def refresh_all(
    store: TreeStore,
    provider: SearchProvider,
    coordinator: Optional[RollupCoordinator] = None,
    config: Optional[ScoringConfig] = None,
    sweep: bool = True,
) -> RefreshReport:
    """Refresh every query's results concurrently, then recompute all scores.

    Args:
        store: Tree store
        provider: Search provider
        coordinator: Coordinator for the sweep (built from store when omitted)
        config: Scoring configuration
        sweep: Run the full recompute sweep afterwards

    Returns:
        RefreshReport
    """
    coordinator = coordinator or RollupCoordinator(store, config)
    result_limit = coordinator.config.result_limit
    sites = await store.get(SITES, {}) or {}

    keys = []
    jobs = []
    for site_id, site in sites.items():
        for case_id, case in ((site or {}).get("cases") or {}).items():
            for query_id in ((case or {}).get("queries") or {}):
                keys.append(f"{site_id}/{case_id}/{query_id}")
                jobs.append(refresh_query(store, provider, site_id, case_id, query_id, result_limit))

    logger.info("Refreshing results for %d queries", len(jobs))
    settled = await asyncio.gather(*jobs, return_exceptions=True)

    report = RefreshReport()
    for key, value in zip(keys, settled):
        if isinstance(value, RelevancyError):
            logger.warning("Results for '%s' left unchanged: %s", key, value)
            report.skipped[key] = str(value)
        elif isinstance(value, BaseException):
            raise value
        else:
            report.refreshed[key] = len(value)

    if sweep:
        report.sweep = await coordinator.sweep(skip_queries=set(report.skipped))

    logger.info(
        "Refresh finished: %d refreshed, %d skipped",
        len(report.refreshed), len(report.skipped),
    )
    return report
