"""Tests for the rollup coordinator: single-query rollups, sweeps and the change watcher."""

import asyncio
import re

import pytest

from config.scoring_config import ScoringConfig
from relevancy_types import ChangeEvent, InvalidInput, NotFound
from scoring.query_scorer import QueryScorer
from scoring.rollup import (
    PhaseResult,
    RollupCoordinator,
    RollupFailed,
    RollupStage,
    SweepReport,
    query_change_target,
)
from storage.memory_store import MemoryTreeStore
from tests.store_doubles import FailingStore, RecordingStore, make_results, sample_tree

CONFIG = ScoringConfig(result_limit=2)

CASE_SCORE = re.compile(r"^sites/[^/]+/cases/[^/]+/score$")
SITE_SCORE = re.compile(r"^sites/[^/]+/score$")


def tree_of(store):
    return store.dump()


def site_node(store):
    return tree_of(store)["sites"]["bcs"]


# --- single-query rollup ---


def test_rollup_query_updates_query_case_and_site():
    store = MemoryTreeStore(sample_tree())
    coordinator = RollupCoordinator(store, CONFIG)

    outcome = asyncio.run(coordinator.rollup_query("bcs", "jackets", "q2"))

    assert outcome.ok
    assert outcome.state == RollupStage.DONE
    assert outcome.query_score == 0.71
    assert outcome.case_score == 0.71
    assert outcome.site_score == 0.71
    site = site_node(store)
    assert site["cases"]["jackets"]["queries"]["q2"]["score"] == 0.71
    assert site["cases"]["jackets"]["score"] == 0.71
    assert site["score"] == 0.71


def test_rollup_query_aggregates_over_previously_scored_queries():
    store = MemoryTreeStore(sample_tree())
    coordinator = RollupCoordinator(store, CONFIG)

    asyncio.run(coordinator.rollup_query("bcs", "jackets", "q1"))
    asyncio.run(coordinator.rollup_query("bcs", "boots", "q3"))
    outcome = asyncio.run(coordinator.rollup_query("bcs", "jackets", "q2"))

    assert outcome.case_score == 0.855
    assert outcome.site_score == 0.57


def test_rollup_query_scoring_failure_stops_before_case():
    """Test a failed score write leaves case and site untouched."""
    store = FailingStore(sample_tree(), fail_paths=["scores"])
    coordinator = RollupCoordinator(store, CONFIG)

    outcome = asyncio.run(coordinator.rollup_query("bcs", "jackets", "q1"))

    assert not outcome.ok
    assert outcome.state == RollupStage.FAILED
    assert outcome.failed_stage == RollupStage.SCORING_QUERY
    site = site_node(store)
    assert "score" not in site["cases"]["jackets"]
    assert "score" not in site


def test_rollup_query_case_failure_stops_before_site():
    store = FailingStore(sample_tree(), fail_paths=["sites/bcs/cases/jackets/score"])
    coordinator = RollupCoordinator(store, CONFIG)

    outcome = asyncio.run(coordinator.rollup_query("bcs", "jackets", "q1"))

    assert outcome.failed_stage == RollupStage.AGGREGATING_CASE
    assert outcome.query_score == 1.0
    assert outcome.site_score is None
    site = site_node(store)
    assert site["cases"]["jackets"]["queries"]["q1"]["score"] == 1.0
    assert "score" not in site


def test_rollup_query_site_failure():
    store = FailingStore(sample_tree(), fail_paths=["sites/bcs/score"])
    coordinator = RollupCoordinator(store, CONFIG)

    outcome = asyncio.run(coordinator.rollup_query("bcs", "jackets", "q1"))

    assert outcome.failed_stage == RollupStage.AGGREGATING_SITE
    assert outcome.case_score == 1.0


def test_rollup_query_raise_for_failure():
    store = FailingStore(sample_tree(), fail_paths=["sites/bcs/score"])
    outcome = asyncio.run(RollupCoordinator(store, CONFIG).rollup_query("bcs", "jackets", "q1"))

    with pytest.raises(RollupFailed) as exc_info:
        outcome.raise_for_failure()
    assert exc_info.value.stage == RollupStage.AGGREGATING_SITE


def test_rollup_query_missing_query_fails_at_scoring():
    store = MemoryTreeStore(sample_tree())

    outcome = asyncio.run(RollupCoordinator(store, CONFIG).rollup_query("bcs", "jackets", "nope"))

    assert outcome.failed_stage == RollupStage.SCORING_QUERY
    assert isinstance(outcome.error, NotFound)


def test_rollup_query_without_results_fails_at_scoring():
    tree = sample_tree()
    tree["sites"]["bcs"]["cases"]["jackets"]["queries"]["q4"] = {"judgements": {"p1": {"score": 3}}}
    store = MemoryTreeStore(tree)

    outcome = asyncio.run(RollupCoordinator(store, CONFIG).rollup_query("bcs", "jackets", "q4"))

    assert outcome.failed_stage == RollupStage.SCORING_QUERY
    assert isinstance(outcome.error, InvalidInput)


def test_rollup_query_grade_too_large_fails_at_scoring():
    tree = sample_tree()
    tree["sites"]["bcs"]["cases"]["jackets"]["queries"]["q1"]["judgements"]["p1"] = {"score": 1100}
    store = MemoryTreeStore(tree)

    outcome = asyncio.run(RollupCoordinator(store, CONFIG).rollup_query("bcs", "jackets", "q1"))

    assert outcome.failed_stage == RollupStage.SCORING_QUERY
    assert isinstance(outcome.error, InvalidInput)
    assert "score" not in site_node(store)["cases"]["jackets"]


class CrashingScorer(QueryScorer):
    async def score_query(self, *args, **kwargs):
        raise RuntimeError("scorer crashed")


def test_rollup_query_unexpected_error_is_reported_as_failure():
    store = MemoryTreeStore(sample_tree())
    coordinator = RollupCoordinator(store, CONFIG, scorer=CrashingScorer(store, CONFIG))

    outcome = asyncio.run(coordinator.rollup_query("bcs", "jackets", "q1"))

    assert outcome.state == RollupStage.FAILED
    assert outcome.failed_stage == RollupStage.SCORING_QUERY
    assert isinstance(outcome.error, RuntimeError)


# --- sweep ---


def test_sweep_recomputes_everything():
    store = MemoryTreeStore(sample_tree())

    report = asyncio.run(RollupCoordinator(store, CONFIG).sweep())

    assert report.status == "success"
    assert [p.name for p in report.phases] == ["query", "case", "site"]
    assert report.phase("query").succeeded == {"bcs/jackets/q1": 1.0, "bcs/jackets/q2": 0.71, "bcs/boots/q3": 0}
    assert report.phase("case").succeeded == {"bcs/jackets": 0.855, "bcs/boots": 0}
    assert report.phase("site").succeeded == {"bcs": 0.57}
    site = site_node(store)
    assert site["cases"]["jackets"]["score"] == 0.855
    assert site["cases"]["boots"]["score"] == 0
    assert site["score"] == 0.57


def test_sweep_phases_do_not_overlap():
    """Test every query score is written before any case score, and every case score before any site score."""
    tree = sample_tree()
    tree["sites"]["rei"] = {
        "cases": {
            "tents": {"queries": {"q9": {"results": make_results("t1"), "judgements": {"t1": {"score": 2}}}}},
        },
    }
    store = RecordingStore(tree)

    asyncio.run(RollupCoordinator(store, CONFIG).sweep())

    index_writes = store.positions("write", lambda p: p.startswith("scores/"))
    index_reads = store.positions("read", lambda p: p.startswith("scores"))
    case_writes = store.positions("write", CASE_SCORE.match)
    site_writes = store.positions("write", SITE_SCORE.match)

    assert len(index_writes) == 4
    assert len(case_writes) == 3
    assert len(site_writes) == 2
    assert max(index_writes) < min(index_reads)
    assert max(index_writes) < min(case_writes)
    assert max(case_writes) < min(site_writes)


def test_sweep_query_failure_is_partial_and_siblings_still_run():
    tree = sample_tree()
    tree["sites"]["bcs"]["cases"]["jackets"]["queries"]["q4"] = {"name": "never searched"}
    store = MemoryTreeStore(tree)

    report = asyncio.run(RollupCoordinator(store, CONFIG).sweep())

    assert report.status == "partial"
    assert list(report.phase("query").failed) == ["bcs/jackets/q4"]
    assert len(report.phase("query").succeeded) == 3
    assert site_node(store)["cases"]["jackets"]["score"] == 0.855
    assert site_node(store)["score"] == 0.57


def test_sweep_case_failure_does_not_block_site():
    store = FailingStore(sample_tree(), fail_paths=["sites/bcs/cases/boots/score"])

    report = asyncio.run(RollupCoordinator(store, CONFIG).sweep())

    assert report.status == "partial"
    assert list(report.phase("case").failed) == ["bcs/boots"]
    assert report.phase("site").succeeded == {"bcs": 0.57}


def test_sweep_everything_failing():
    store = FailingStore(sample_tree(), fail_paths=["sites", "scores"])

    report = asyncio.run(RollupCoordinator(store, CONFIG).sweep())

    assert report.status == "failure"
    assert report.failures == report.total == 6


def test_sweep_skips_requested_queries():
    """Test skipped queries keep their previous score in the aggregates."""
    tree = sample_tree()
    tree["scores"] = {"bcs": {"jackets": {"q2": {"siteId": "bcs", "caseId": "jackets", "queryId": "q2", "val": 0.5}}}}
    store = MemoryTreeStore(tree)

    report = asyncio.run(RollupCoordinator(store, CONFIG).sweep(skip_queries={"bcs/jackets/q2"}))

    assert "bcs/jackets/q2" not in report.phase("query").succeeded
    assert report.phase("query").total == 2
    assert report.phase("case").succeeded["bcs/jackets"] == 0.75


def test_sweep_drops_scores_of_queries_removed_while_unwatched():
    store = MemoryTreeStore(sample_tree())
    coordinator = RollupCoordinator(store, CONFIG)
    asyncio.run(coordinator.sweep())
    asyncio.run(store.delete("sites/bcs/cases/jackets/queries/q2"))

    report = asyncio.run(coordinator.sweep())

    assert report.status == "success"
    tree = tree_of(store)
    assert set(tree["scores"]["bcs"]["jackets"]) == {"q1"}
    assert tree["sites"]["bcs"]["cases"]["jackets"]["score"] == 1.0
    assert tree["sites"]["bcs"]["score"] == 0.5


def test_sweep_drops_index_entries_of_removed_cases_and_sites():
    tree = sample_tree()
    tree["scores"] = {
        "gone": {"c": {"q": {"siteId": "gone", "caseId": "c", "queryId": "q", "val": 1}}},
        "bcs": {"old": {"q": {"siteId": "bcs", "caseId": "old", "queryId": "q", "val": 1}}},
        "bcs_jackets_q1": {"siteId": "bcs", "caseId": "jackets", "queryId": "q1", "val": 0.1},
    }
    store = MemoryTreeStore(tree)

    report = asyncio.run(RollupCoordinator(store, CONFIG).sweep())

    assert report.status == "success"
    index = tree_of(store)["scores"]
    assert set(index) == {"bcs"}
    assert set(index["bcs"]) == {"jackets", "boots"}
    assert report.phase("site").succeeded == {"bcs": 0.57}


def test_sweep_keeps_ids_with_underscores_apart():
    """Test case winter_jackets and case winter never share index entries."""
    store = MemoryTreeStore({
        "sites": {
            "s": {
                "cases": {
                    "winter_jackets": {"queries": {"q": {
                        "results": make_results("p1", "p2"),
                        "judgements": {"p1": {"score": 3}, "p2": {"score": 3}},
                    }}},
                    "winter": {"queries": {"jackets_q": {"results": make_results("p7")}}},
                },
            },
        },
    })

    report = asyncio.run(RollupCoordinator(store, CONFIG).sweep())

    assert report.phase("case").succeeded == {"s/winter_jackets": 1.0, "s/winter": 0}
    assert report.phase("site").succeeded == {"s": 0.5}
    cases = tree_of(store)["sites"]["s"]["cases"]
    assert cases["winter_jackets"]["score"] == 1.0
    assert cases["winter"]["score"] == 0


def test_sweep_empty_store():
    report = asyncio.run(RollupCoordinator(MemoryTreeStore(), CONFIG).sweep())

    assert report.status == "success"
    assert report.total == 0


def test_sweep_report_status():
    ok = PhaseResult("query", succeeded={"a": 1})
    bad = PhaseResult("case", failed={"b": "boom"})

    assert SweepReport([ok]).status == "success"
    assert SweepReport([ok, bad]).status == "partial"
    assert SweepReport([bad]).status == "failure"
    with pytest.raises(KeyError):
        SweepReport([ok]).phase("site")


# --- change watcher ---


def test_query_change_target():
    base = "sites/bcs/cases/jackets/queries/q1"

    assert query_change_target(ChangeEvent(f"{base}/judgements/p1", {"score": 3})) == ("bcs", "jackets", "q1", False)
    assert query_change_target(ChangeEvent(f"{base}/results", {"p1": {"rank": 0}})) == ("bcs", "jackets", "q1", False)
    assert query_change_target(ChangeEvent(f"{base}/judgements/p1", None)) == ("bcs", "jackets", "q1", False)
    assert query_change_target(ChangeEvent(base, {"name": "x"})) == ("bcs", "jackets", "q1", False)
    assert query_change_target(ChangeEvent(base, None)) == ("bcs", "jackets", "q1", True)
    assert query_change_target(ChangeEvent("sites/bcs/cases/jackets", None)) == ("bcs", "jackets", None, True)
    assert query_change_target(ChangeEvent("sites/bcs", None)) == ("bcs", None, None, True)


def test_query_change_target_ignores_score_and_unrelated_writes():
    assert query_change_target(ChangeEvent("sites/bcs/cases/jackets/queries/q1/score", 0.5)) is None
    assert query_change_target(ChangeEvent("sites/bcs/cases/jackets/score", 0.5)) is None
    assert query_change_target(ChangeEvent("sites/bcs/score", 0.5)) is None
    assert query_change_target(ChangeEvent("sites/bcs/cases/jackets/queries/q1/name", "x")) is None
    assert query_change_target(ChangeEvent("sites/bcs", {"name": "x"})) is None
    assert query_change_target(ChangeEvent("scores/bcs/jackets/q1", {"val": 1})) is None
    assert query_change_target(ChangeEvent("snapshots/1", {"name": "x"})) is None
    assert query_change_target(ChangeEvent("", {})) is None


async def _watch_while(store, coordinator, *changes):
    stream = store.subscribe()
    watcher = asyncio.create_task(coordinator.watch(stream))
    for path, value in changes:
        await store.write(path, value)
    stream.close()
    return await watcher


def test_watch_judgement_change_rolls_up():
    """Test a new judgement rescores its query and rolls the change up."""
    store = MemoryTreeStore(sample_tree())
    coordinator = RollupCoordinator(store, CONFIG)
    q2 = "sites/bcs/cases/jackets/queries/q2"

    outcomes = asyncio.run(_watch_while(
        store,
        coordinator,
        (f"{q2}/judgements/p1", {"score": 3}),
        (f"{q2}/score", 0.1),
    ))

    assert len(outcomes) == 1
    assert outcomes[0].ok
    assert outcomes[0].query_score == 1.0
    assert site_node(store)["cases"]["jackets"]["queries"]["q2"]["score"] == 1.0


def test_watch_query_removal_cleans_index_and_reaggregates():
    store = MemoryTreeStore(sample_tree())
    coordinator = RollupCoordinator(store, CONFIG)
    asyncio.run(coordinator.sweep())

    outcomes = asyncio.run(_watch_while(store, coordinator, ("sites/bcs/cases/jackets/queries/q2", None)))

    assert [o.ok for o in outcomes] == [True]
    tree = tree_of(store)
    assert "q2" not in tree["scores"]["bcs"]["jackets"]
    assert tree["sites"]["bcs"]["cases"]["jackets"]["score"] == 1.0
    assert tree["sites"]["bcs"]["score"] == 0.5


def test_watch_case_removal_reaggregates_site():
    store = MemoryTreeStore(sample_tree())
    coordinator = RollupCoordinator(store, CONFIG)
    asyncio.run(coordinator.sweep())

    outcomes = asyncio.run(_watch_while(store, coordinator, ("sites/bcs/cases/boots", None)))

    assert outcomes[0].ok
    tree = tree_of(store)
    assert "boots" not in tree["scores"]["bcs"]
    assert tree["sites"]["bcs"]["score"] == 0.855


def test_watch_site_removal_drops_its_scores():
    store = MemoryTreeStore(sample_tree())
    coordinator = RollupCoordinator(store, CONFIG)
    asyncio.run(coordinator.sweep())

    outcomes = asyncio.run(_watch_while(store, coordinator, ("sites/bcs", None)))

    assert outcomes[0].ok
    tree = tree_of(store)
    assert "scores" not in tree
    assert "sites" not in tree


def test_watch_without_changes():
    store = MemoryTreeStore(sample_tree())

    outcomes = asyncio.run(_watch_while(store, RollupCoordinator(store, CONFIG)))

    assert outcomes == []


def test_watch_reports_failed_rollups_and_keeps_going():
    store = MemoryTreeStore(sample_tree())
    coordinator = RollupCoordinator(store, CONFIG)
    base = "sites/bcs/cases/jackets/queries"

    outcomes = asyncio.run(_watch_while(
        store,
        coordinator,
        (f"{base}/q1/judgements/p1", {"score": 1100}),
        (f"{base}/q2/judgements/p1", {"score": 3}),
    ))

    by_query = {o.query_id: o for o in outcomes}
    assert set(by_query) == {"q1", "q2"}
    assert by_query["q1"].failed_stage == RollupStage.SCORING_QUERY
    assert by_query["q2"].ok
    assert by_query["q2"].query_score == 1.0


def test_watch_collects_rollups_that_finish_early():
    """Test a rollup finishing long before the stream closes is still reported."""
    store = MemoryTreeStore(sample_tree())
    coordinator = RollupCoordinator(store, CONFIG)
    base = "sites/bcs/cases/jackets/queries"

    async def scenario():
        stream = store.subscribe()
        watcher = asyncio.create_task(coordinator.watch(stream))
        await store.write(f"{base}/q2/judgements/p1", {"score": 3})
        for _ in range(1000):
            if await store.get("sites/bcs/score") is not None:
                break
            await asyncio.sleep(0)
        await store.write(f"{base}/q1/judgements/p2", {"score": 0})
        stream.close()
        return await watcher

    outcomes = asyncio.run(scenario())

    assert sorted(o.query_id for o in outcomes) == ["q1", "q2"]
    assert all(o.ok for o in outcomes)
