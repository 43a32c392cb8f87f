"""Propagate query score changes up to cases and sites.

Two entry points:
- rollup_query: one changed query, scored then its case then its site,
  strictly in that order. The first failing stage ends the rollup.
- sweep: recompute everything. All queries are scored concurrently, then all
  cases, then all sites; each phase waits for the previous one to settle
  and a failing item never stops its siblings. Before cases are aggregated,
  score index entries of queries no longer in the tree are deleted.

watch() turns the store's change stream into rollup_query tasks.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Set, Tuple

from config.scoring_config import ScoringConfig
from relevancy_types import ChangeEvent, RelevancyError
from scoring.aggregate import CaseAggregator, SiteAggregator
from scoring.judgements import parse_judgements, parse_result_items
from scoring.query_scorer import QueryScorer
from storage.paths import SCORES, SITES, query_path, score_index_path
from storage.store import ChangeStream, TreeStore

logger = logging.getLogger(__name__)


class RollupStage(str, Enum):
    SCORING_QUERY = "scoring_query"
    AGGREGATING_CASE = "aggregating_case"
    AGGREGATING_SITE = "aggregating_site"
    DONE = "done"
    FAILED = "failed"


class RollupFailed(RelevancyError):
    """A single-query rollup stopped at a stage."""

    def __init__(self, stage: RollupStage, error: BaseException):
        super().__init__(f"Rollup failed while {stage.value.replace('_', ' ')}: {error}")
        self.stage = stage
        self.error = error


@dataclass
class RollupOutcome:
    """Result of one single-query rollup."""

    site_id: str
    case_id: str
    query_id: Optional[str]
    state: RollupStage = RollupStage.SCORING_QUERY
    failed_stage: Optional[RollupStage] = None
    error: Optional[BaseException] = None
    query_score: Optional[float] = None
    case_score: Optional[float] = None
    site_score: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.state == RollupStage.DONE

    def fail(self, error: BaseException) -> None:
        self.failed_stage = self.state
        self.state = RollupStage.FAILED
        self.error = error

    def raise_for_failure(self) -> None:
        if self.state == RollupStage.FAILED:
            raise RollupFailed(self.failed_stage, self.error)


@dataclass
class PhaseResult:
    """Per-item results of one sweep phase."""

    name: str
    succeeded: Dict[str, Any] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)


@dataclass
class SweepReport:
    """Result of a full recompute sweep."""

    phases: List[PhaseResult] = field(default_factory=list)

    @property
    def failures(self) -> int:
        return sum(len(p.failed) for p in self.phases)

    @property
    def total(self) -> int:
        return sum(p.total for p in self.phases)

    @property
    def status(self) -> str:
        """'success', 'partial' or 'failure'."""
        if self.failures == 0:
            return "success"
        if self.failures == self.total:
            return "failure"
        return "partial"

    def phase(self, name: str) -> PhaseResult:
        for p in self.phases:
            if p.name == name:
                return p
        raise KeyError(name)


def query_change_target(event: ChangeEvent) -> Optional[Tuple[str, Optional[str], Optional[str], bool]]:
    """Work out which rollup a store write calls for.

    Args:
        event: Observed write

    Returns:
        (site_id, case_id, query_id, removed) or None when the write does not
        affect any query's inputs. case_id/query_id are None when a whole
        case or site was removed.
    """
    parts = event.path.split("/") if event.path else []
    if len(parts) < 2 or parts[0] != SITES:
        return None

    site_id = parts[1]
    if len(parts) == 2:
        return (site_id, None, None, True) if event.value is None else None
    if parts[2] != "cases" or len(parts) < 4:
        return None

    case_id = parts[3]
    if len(parts) == 4:
        return (site_id, case_id, None, True) if event.value is None else None
    if parts[4] != "queries" or len(parts) < 6:
        return None

    query_id = parts[5]
    if len(parts) == 6:
        return site_id, case_id, query_id, event.value is None
    if parts[6] in ("results", "judgements"):
        return site_id, case_id, query_id, False
    return None


class RollupCoordinator:
    """Sequences query, case and site recomputation."""

    def __init__(
        self,
        store: TreeStore,
        config: Optional[ScoringConfig] = None,
        scorer: Optional[QueryScorer] = None,
        case_aggregator: Optional[CaseAggregator] = None,
        site_aggregator: Optional[SiteAggregator] = None,
    ):
        self.store = store
        self.config = config or ScoringConfig()
        self.scorer = scorer or QueryScorer(store, self.config)
        self.case_aggregator = case_aggregator or CaseAggregator(store, self.config)
        self.site_aggregator = site_aggregator or SiteAggregator(store, self.config)

    async def _score_stored_query(self, site_id: str, case_id: str, query_id: str, rollup: bool):
        node = await self.store.read(query_path(site_id, case_id, query_id))
        return await self.scorer.score_query(
            site_id,
            case_id,
            query_id,
            parse_result_items(node.get("results")),
            parse_judgements(node.get("judgements")),
            rollup=rollup,
        )

    async def rollup_query(self, site_id: str, case_id: str, query_id: str) -> RollupOutcome:
        """Rescore a query from the store and roll the change up.

        Args:
            site_id: Owning site
            case_id: Owning case
            query_id: Changed query

        Returns:
            RollupOutcome; on failure it names the stage that failed
        """
        outcome = RollupOutcome(site_id=site_id, case_id=case_id, query_id=query_id)
        try:
            query_score = await self._score_stored_query(site_id, case_id, query_id, rollup=True)
            outcome.query_score = query_score.score
            if query_score.rollup_requested:
                logger.info("Case rollup enabled for query '%s'", query_id)
                outcome.state = RollupStage.AGGREGATING_CASE
                outcome.case_score = await self.case_aggregator.aggregate_case(site_id, case_id)

                outcome.state = RollupStage.AGGREGATING_SITE
                outcome.site_score = await self.site_aggregator.aggregate_site(site_id)
            outcome.state = RollupStage.DONE
        except RelevancyError as e:
            logger.error(
                "Rollup of query '%s' in case '%s' for site '%s' failed while %s: %s",
                query_id, case_id, site_id, outcome.state.value, e,
            )
            outcome.fail(e)
        except Exception as e:
            logger.error(
                "Rollup of query '%s' in case '%s' for site '%s' raised unexpectedly while %s",
                query_id, case_id, site_id, outcome.state.value, exc_info=e,
            )
            outcome.fail(e)
        return outcome

    async def rollup_removed(self, site_id: str, case_id: Optional[str] = None, query_id: Optional[str] = None) -> RollupOutcome:
        """Drop removed queries from the score index and reaggregate.

        Args:
            site_id: Site the removal happened in
            case_id: Removed case, or the case of the removed query
            query_id: Removed query (None when a whole case or site went)

        Returns:
            RollupOutcome
        """
        outcome = RollupOutcome(site_id=site_id, case_id=case_id, query_id=query_id)
        try:
            if query_id:
                await self.scorer.forget_query(site_id, case_id, query_id)
            elif case_id:
                await self.store.delete(score_index_path(site_id, case_id))
                logger.info("Removed scores of case '%s' in site '%s'", case_id, site_id)
            else:
                await self.store.delete(score_index_path(site_id))
                logger.info("Removed scores of site '%s'", site_id)

            site_exists = await self.store.get(f"{SITES}/{site_id}") is not None
            if query_id and site_exists:
                outcome.state = RollupStage.AGGREGATING_CASE
                case_exists = await self.store.get(f"{SITES}/{site_id}/cases/{case_id}") is not None
                if case_exists:
                    outcome.case_score = await self.case_aggregator.aggregate_case(site_id, case_id)
            if site_exists:
                outcome.state = RollupStage.AGGREGATING_SITE
                outcome.site_score = await self.site_aggregator.aggregate_site(site_id)
            outcome.state = RollupStage.DONE
        except RelevancyError as e:
            logger.error("Cleanup after removal in site '%s' failed while %s: %s", site_id, outcome.state.value, e)
            outcome.fail(e)
        except Exception as e:
            logger.error(
                "Cleanup after removal in site '%s' raised unexpectedly while %s",
                site_id, outcome.state.value, exc_info=e,
            )
            outcome.fail(e)
        return outcome

    async def _run_phase(self, name: str, jobs: Dict[str, Awaitable]) -> PhaseResult:
        result = PhaseResult(name=name)
        keys = list(jobs)
        settled = await asyncio.gather(*jobs.values(), return_exceptions=True)

        for key, value in zip(keys, settled):
            if isinstance(value, asyncio.CancelledError):
                raise value
            if isinstance(value, RelevancyError):
                logger.warning("Sweep %s: '%s' failed: %s", name, key, value)
                result.failed[key] = str(value)
            elif isinstance(value, Exception):
                logger.error("Sweep %s: '%s' raised unexpectedly", name, key, exc_info=value)
                result.failed[key] = f"{type(value).__name__}: {value}"
            else:
                result.succeeded[key] = getattr(value, "score", value)

        logger.info("Finished %s updates (%d ok, %d failed)", name, len(result.succeeded), len(result.failed))
        return result

    async def sweep(self, skip_queries: Iterable[str] = ()) -> SweepReport:
        """Recompute every query, case and site score.

        Args:
            skip_queries: "site/case/query" keys not to rescore this time
                (their last stored score still counts in the aggregates)

        Returns:
            SweepReport with per-phase results and an overall status
        """
        skip = set(skip_queries)
        sites = await self.store.get(SITES, {}) or {}
        logger.info("Updating scores for all queries, cases, and sites")

        live = set()
        query_jobs = {}
        case_jobs = {}
        site_jobs = {}
        for site_id, site in sites.items():
            cases = (site or {}).get("cases") or {}
            for case_id, case in cases.items():
                queries = (case or {}).get("queries") or {}
                for query_id in queries:
                    live.add((site_id, case_id, query_id))
                    if f"{site_id}/{case_id}/{query_id}" in skip:
                        continue
                    query_jobs[f"{site_id}/{case_id}/{query_id}"] = (site_id, case_id, query_id)
                case_jobs[f"{site_id}/{case_id}"] = (site_id, case_id)
            site_jobs[site_id] = site_id

        report = SweepReport()

        # each phase is built only after the previous one settled
        logger.info("Starting query updates...")
        query_phase = await self._run_phase(
            "query",
            {k: self._score_stored_query(*ids, rollup=False) for k, ids in query_jobs.items()},
        )
        query_phase.failed.update(await self._prune_index(live))
        report.phases.append(query_phase)

        logger.info("Starting case updates...")
        report.phases.append(await self._run_phase(
            "case",
            {k: self.case_aggregator.aggregate_case(*ids) for k, ids in case_jobs.items()},
        ))

        logger.info("Starting site updates...")
        report.phases.append(await self._run_phase(
            "site",
            {k: self.site_aggregator.aggregate_site(site_id) for k, site_id in site_jobs.items()},
        ))

        logger.info(
            "Sweep finished with status %s (%d failures out of %d updates)",
            report.status, report.failures, report.total,
        )
        return report

    async def _prune_index(self, live: Set[Tuple[str, str, str]]) -> Dict[str, str]:
        """Delete score index entries of queries that are no longer in the tree.

        Args:
            live: (site_id, case_id, query_id) of every query in the tree

        Returns:
            Index key -> reason, for entries that could not be deleted
        """
        try:
            index = await self.store.get(SCORES, {}) or {}
        except RelevancyError as e:
            logger.warning("Cannot read the score index for cleanup: %s", e)
            return {SCORES: str(e)}
        live_sites = {s for s, _, _ in live}
        live_cases = {(s, c) for s, c, _ in live}

        stale = {}
        for site_id, cases in index.items():
            if site_id not in live_sites or not isinstance(cases, dict):
                stale[site_id] = score_index_path(site_id)
                continue
            for case_id, queries in cases.items():
                if (site_id, case_id) not in live_cases or not isinstance(queries, dict):
                    stale[f"{site_id}/{case_id}"] = score_index_path(site_id, case_id)
                    continue
                for query_id in queries:
                    if (site_id, case_id, query_id) not in live:
                        stale[f"{site_id}/{case_id}/{query_id}"] = score_index_path(site_id, case_id, query_id)

        if not stale:
            return {}
        logger.info("Removing %d stale entries from the score index", len(stale))
        cleanup = await self._run_phase("index cleanup", {k: self.store.delete(p) for k, p in stale.items()})
        return cleanup.failed

    async def watch(self, stream: ChangeStream) -> List[RollupOutcome]:
        """Run a rollup for every change to a query's results or judgements.

        Each triggered rollup runs as its own task and is never cancelled by
        later changes; it re-reads current state when it runs. Returns once
        the stream is closed and every started rollup has finished.

        Args:
            stream: Change stream from TreeStore.subscribe()

        Returns:
            Outcomes of all rollups started, in completion order
        """
        pending: Set[asyncio.Task] = set()
        outcomes: List[RollupOutcome] = []

        def _collect(task: asyncio.Task) -> None:
            pending.discard(task)
            if task.cancelled():
                return
            error = task.exception()
            if error is not None:
                logger.error("Triggered rollup raised unexpectedly", exc_info=error)
                return
            outcomes.append(task.result())

        async for event in stream:
            target = query_change_target(event)
            if target is None:
                continue

            site_id, case_id, query_id, removed = target
            logger.info("Change at '%s' triggers a rollup", event.path)
            if removed:
                coro = self.rollup_removed(site_id, case_id, query_id)
            else:
                coro = self.rollup_query(site_id, case_id, query_id)
            task = asyncio.create_task(coro)
            pending.add(task)
            task.add_done_callback(_collect)

        if pending:
            await asyncio.wait(set(pending))
        failed = [o for o in outcomes if not o.ok]
        if failed:
            logger.warning("%d of %d triggered rollups failed", len(failed), len(outcomes))
        return outcomes
