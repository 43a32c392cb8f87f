#!/usr/bin/env python3
"""Main CLI entrypoint for the relevancy tool."""

import argparse
import asyncio
import logging
import sys

from config.scoring_config import ScoringConfig, load_scoring_config
from diff.snapshots import compare_snapshots, create_snapshot, list_snapshots, load_snapshot
from ingest.refresh import refresh_all
from ingest.search import ProductSearchProvider
from relevancy_types import RelevancyError
from scoring.rollup import RollupCoordinator
from storage.paths import query_path
from storage.store import TreeStore, get_store

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _print_header(title: str) -> None:
    print("\n" + "=" * 70)
    print(title)
    print("=" * 70)


async def cmd_sweep(store: TreeStore, config: ScoringConfig, args) -> int:
    report = await RollupCoordinator(store, config).sweep()

    _print_header("Score sweep")
    for phase in report.phases:
        print(f"{phase.name:<8} {len(phase.succeeded):>5} updated  {len(phase.failed):>5} failed")
        for key, reason in phase.failed.items():
            print(f"  ! {key}: {reason}")
    print(f"Status: {report.status}")
    return 0 if report.status == "success" else 1


async def cmd_rollup(store: TreeStore, config: ScoringConfig, args) -> int:
    outcome = await RollupCoordinator(store, config).rollup_query(args.site, args.case, args.query)

    _print_header(f"Rollup for {args.site}/{args.case}/{args.query}")
    if not outcome.ok:
        print(f"Failed while {outcome.failed_stage.value}: {outcome.error}")
        return 1
    print(f"Query score: {outcome.query_score}")
    print(f"Case score:  {outcome.case_score}")
    print(f"Site score:  {outcome.site_score}")
    return 0


async def cmd_judge(store: TreeStore, config: ScoringConfig, args) -> int:
    coordinator = RollupCoordinator(store, config)
    stream = store.subscribe()
    watcher = asyncio.create_task(coordinator.watch(stream))
    try:
        path = f"{query_path(args.site, args.case, args.query)}/judgements/{args.product}"
        await store.write(path, {"score": args.score})
    finally:
        stream.close()
    outcomes = await watcher

    _print_header(f"Judged {args.product} as {args.score}")
    for outcome in outcomes:
        if outcome.ok:
            print(f"query={outcome.query_score} case={outcome.case_score} site={outcome.site_score}")
        else:
            print(f"Failed while {outcome.failed_stage.value}: {outcome.error}")
    return 0 if all(o.ok for o in outcomes) else 1


async def cmd_refresh(store: TreeStore, config: ScoringConfig, args) -> int:
    provider = ProductSearchProvider()
    try:
        report = await refresh_all(store, provider, RollupCoordinator(store, config), sweep=not args.no_sweep)
    finally:
        await provider.aclose()

    _print_header("Result refresh")
    print(f"Refreshed: {len(report.refreshed)}")
    print(f"Skipped:   {len(report.skipped)}")
    for key, reason in report.skipped.items():
        print(f"  ! {key}: {reason}")
    if report.sweep is not None:
        print(f"Sweep:     {report.sweep.status}")
    print(f"Status: {report.status}")
    return 0 if report.status == "success" else 1


async def cmd_snapshot(store: TreeStore, config: ScoringConfig, args) -> int:
    if args.list:
        _print_header("Snapshots")
        for snapshot in await list_snapshots(store):
            print(f"{snapshot['id']}  {snapshot['name']}")
        return 0

    snapshot_id, _ = await create_snapshot(store, args.name)
    print(f"Snapshot saved: {snapshot_id}")
    return 0


async def cmd_compare(store: TreeStore, config: ScoringConfig, args) -> int:
    before = await load_snapshot(store, args.before)
    after = await load_snapshot(store, args.after)

    _print_header(f"{before.get('name')} -> {after.get('name')}")
    for change in compare_snapshots(before, after):
        label = "/".join(p for p in (change.site_id, change.case_id, change.query_id) if p)
        indent = {"site": "", "case": "  ", "query": "    "}[change.level]
        print(f"{indent}{label:<50} {change.before!s:>7} {change.after!s:>7} {change.delta:>8}")
    return 0


COMMANDS = {
    "sweep": cmd_sweep,
    "rollup": cmd_rollup,
    "judge": cmd_judge,
    "refresh": cmd_refresh,
    "snapshot": cmd_snapshot,
    "compare": cmd_compare,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="relevancy - Score search results against relevance judgements",
        epilog="Example: python run.py sweep",
    )
    parser.add_argument(
        "--config",
        type=str,
        help="Path to a YAML file with scoring options (result_limit, missing_score, fractional_digits)",
    )
    parser.add_argument(
        "--database-url",
        type=str,
        help="Store location (default: RELEVANCY_DATABASE_URL or data/db/relevancy.db)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("sweep", help="Recompute every query, case and site score")

    rollup = sub.add_parser("rollup", help="Rescore one query and roll the change up")
    judge = sub.add_parser("judge", help="Record a judgement and roll the change up")
    for p in (rollup, judge):
        p.add_argument("--site", required=True, help="Site id")
        p.add_argument("--case", required=True, help="Case id")
        p.add_argument("--query", required=True, help="Query id")
    judge.add_argument("--product", required=True, help="Product id")
    judge.add_argument("--score", required=True, type=float, help="Relevance grade")

    refresh = sub.add_parser("refresh", help="Fetch fresh results for every query, then sweep")
    refresh.add_argument("--no-sweep", action="store_true", help="Only refresh results")

    snapshot = sub.add_parser("snapshot", help="Save or list snapshots")
    group = snapshot.add_mutually_exclusive_group(required=True)
    group.add_argument("--name", help="Name of the new snapshot")
    group.add_argument("--list", action="store_true", help="List snapshots, newest first")

    compare = sub.add_parser("compare", help="Compare scores of two snapshots")
    compare.add_argument("before", help="Earlier snapshot id")
    compare.add_argument("after", help="Later snapshot id")

    return parser


async def _run(args) -> int:
    config = load_scoring_config(args.config)
    store = get_store(args.database_url)
    try:
        return await COMMANDS[args.command](store, config, args)
    finally:
        await store.close()


def main() -> None:
    """Main CLI entrypoint."""
    args = build_parser().parse_args()
    try:
        exit_code = asyncio.run(_run(args))
    except RelevancyError as e:
        logger.error("%s", e)
        exit_code = 2
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
