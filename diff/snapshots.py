"""Point-in-time snapshots of the scored tree and their comparison."""

import copy
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from relevancy_types import InvalidInput
from scoring.ndcg import parse_score, to_fixed
from storage.paths import SITES, SNAPSHOTS, join_path
from storage.store import TreeStore

logger = logging.getLogger(__name__)

# Result fields kept in a snapshot; anything else the API returned is dropped
SNAPSHOT_RESULT_FIELDS = ("id", "rank", "title", "brand", "skus")


def _copy_results(results: Optional[dict]) -> dict:
    copied = {}
    for product_id, product in (results or {}).items():
        if not product:
            continue
        copied[product_id] = {
            key: copy.deepcopy(product[key]) for key in SNAPSHOT_RESULT_FIELDS if key in product
        }
    return copied


def _copy_judgements(judgements: Optional[dict]) -> dict:
    return {
        product_id: {"score": judgement.get("score")}
        for product_id, judgement in (judgements or {}).items()
        if isinstance(judgement, dict)
    }


def build_snapshot(sites: Dict[str, Any], name: str, created_at: int) -> dict:
    """Copy the scored tree into a snapshot document.

    Args:
        sites: The ``sites`` node
        name: Snapshot name
        created_at: Creation time in epoch milliseconds

    Returns:
        Snapshot document
    """
    snapshot_sites = {}
    for site_id, site in (sites or {}).items():
        snapshot_cases = {}
        for case_id, case in ((site or {}).get("cases") or {}).items():
            snapshot_queries = {}
            for query_id, query in ((case or {}).get("queries") or {}).items():
                query = query or {}
                snapshot_queries[query_id] = {
                    "name": query.get("name", query_id),
                    "score": query.get("score") or 0,
                    "results": _copy_results(query.get("results")),
                    "judgements": _copy_judgements(query.get("judgements")),
                }
            snapshot_cases[case_id] = {
                "score": (case or {}).get("score") or 0,
                "queries": snapshot_queries,
            }
        snapshot_sites[site_id] = {
            "score": (site or {}).get("score") or 0,
            "cases": snapshot_cases,
        }

    return {"name": name, "createdAt": created_at, "sites": snapshot_sites}


async def create_snapshot(store: TreeStore, name: str, now_ms: Optional[int] = None) -> Tuple[str, dict]:
    """Save a snapshot of every site's scores, results and judgements.

    Args:
        store: Tree store
        name: Snapshot name
        now_ms: Creation time override (epoch milliseconds)

    Returns:
        (snapshot_id, snapshot document)
    """
    if not name or not name.strip():
        raise InvalidInput("Snapshot name is required")

    created_at = now_ms if now_ms is not None else int(time.time() * 1000)
    sites = await store.get(SITES, {}) or {}
    snapshot = build_snapshot(sites, name.strip(), created_at)

    # ids sort by creation time
    snapshot_id = f"{created_at:013d}-{uuid4().hex[:8]}"
    await store.write(join_path(SNAPSHOTS, snapshot_id), snapshot)

    logger.info("Created snapshot '%s' (%s) covering %d sites", name, snapshot_id, len(snapshot["sites"]))
    return snapshot_id, snapshot


async def list_snapshots(store: TreeStore) -> List[dict]:
    """List snapshots newest first.

    Returns:
        Dicts with id, name and createdAt
    """
    snapshots = await store.get(SNAPSHOTS, {}) or {}
    listing = [
        {"id": snapshot_id, "name": s.get("name"), "createdAt": s.get("createdAt")}
        for snapshot_id, s in snapshots.items()
        if isinstance(s, dict)
    ]
    return sorted(listing, key=lambda s: s.get("createdAt") or 0, reverse=True)


async def load_snapshot(store: TreeStore, snapshot_id: str) -> dict:
    """Read one snapshot; raises NotFound when it does not exist."""
    return await store.read(join_path(SNAPSHOTS, snapshot_id))


def score_delta(before: Any, after: Any) -> str:
    """Relative change between two scores as a signed percentage.

    Args:
        before: Earlier score
        after: Later score

    Returns:
        e.g. "+5.3%", "-12.0%", or "0%" when either score is missing or zero
    """
    if not _is_number(before) or not _is_number(after) or before == 0 or after == 0:
        return "0%"

    delta = to_fixed(((after / before) - 1) * 100, 1)
    if delta == 0:
        return "0%"
    return f"+{delta:.1f}%" if delta > 0 else f"{delta:.1f}%"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class ScoreChange:
    """Score of one node in two snapshots."""

    level: str  # "site", "case" or "query"
    site_id: str
    case_id: Optional[str]
    query_id: Optional[str]
    before: Optional[float]
    after: Optional[float]

    @property
    def delta(self) -> str:
        return score_delta(self.before, self.after)


def _score_of(node: Optional[dict]) -> Optional[float]:
    if node is None:
        return None
    return parse_score(node.get("score"))


def compare_snapshots(before: dict, after: dict) -> List[ScoreChange]:
    """Compare the scores of two snapshots node by node.

    Nodes present in only one snapshot get None on the other side.

    Args:
        before: Earlier snapshot document
        after: Later snapshot document

    Returns:
        ScoreChanges ordered site, then its cases, then their queries
    """
    changes = []
    sites_before = before.get("sites") or {}
    sites_after = after.get("sites") or {}

    for site_id in sorted(set(sites_before) | set(sites_after)):
        site_b = sites_before.get(site_id)
        site_a = sites_after.get(site_id)
        changes.append(ScoreChange("site", site_id, None, None, _score_of(site_b), _score_of(site_a)))

        cases_b = (site_b or {}).get("cases") or {}
        cases_a = (site_a or {}).get("cases") or {}
        for case_id in sorted(set(cases_b) | set(cases_a)):
            case_b = cases_b.get(case_id)
            case_a = cases_a.get(case_id)
            changes.append(ScoreChange("case", site_id, case_id, None, _score_of(case_b), _score_of(case_a)))

            queries_b = (case_b or {}).get("queries") or {}
            queries_a = (case_a or {}).get("queries") or {}
            for query_id in sorted(set(queries_b) | set(queries_a)):
                changes.append(ScoreChange(
                    "query", site_id, case_id, query_id,
                    _score_of(queries_b.get(query_id)),
                    _score_of(queries_a.get(query_id)),
                ))

    logger.info(
        "Compared snapshots '%s' and '%s': %d scored nodes",
        before.get("name"), after.get("name"), len(changes),
    )
    return changes
