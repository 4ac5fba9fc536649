"""Command line entry point replaying a venue scenario through the arbitrage pipeline."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml

from flashcycle.src.flash_arbitrage import (
    ArbitrageConfig,
    ArbitragePipeline,
    LiquidityGraph,
    PoolDefinition,
    PoolUpdate,
    default_registry,
    load_config,
    replay_feed,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Runtime defaults
# ---------------------------------------------------------------------------
LOG_LEVEL_DEFAULT = "INFO"
DRY_RUN_DEFAULT = True
FEED_DELAY_DEFAULT = 0.0
SCENARIO_PATH_DEFAULT = Path(__file__).resolve().parents[1] / "config" / "two_pool_scenario.yaml"


@dataclass
class Scenario:
    """Pools and the per-venue update streams replayed by the runner."""

    pools: List[PoolDefinition]
    updates: Dict[str, List[PoolUpdate]] = field(default_factory=dict)

    @property
    def venues(self) -> List[str]:
        return sorted({pool.venue for pool in self.pools})


def load_scenario(path: Path) -> Scenario:
    """Read a YAML scenario with ``pools`` and ``updates`` lists."""

    try:
        data = yaml.safe_load(Path(path).read_text()) or {}
    except yaml.YAMLError as exc:
        raise SystemExit(f"Unable to parse scenario {path}: {exc}")
    if not isinstance(data, dict) or not data.get("pools"):
        raise SystemExit(f"Scenario {path} must define at least one pool")

    pools = [
        PoolDefinition(
            pool_id=str(entry["pool_id"]),
            venue=str(entry["venue"]),
            asset_a=entry["asset_a"],
            asset_b=entry["asset_b"],
        )
        for entry in data["pools"]
    ]
    venue_by_pool = {pool.pool_id: pool.venue for pool in pools}

    updates: Dict[str, List[PoolUpdate]] = defaultdict(list)
    for index, entry in enumerate(data.get("updates") or [], start=1):
        pool_id = str(entry["pool_id"])
        venue = venue_by_pool.get(pool_id)
        if venue is None:
            raise SystemExit(f"Scenario update #{index} references unknown pool {pool_id}")
        updates[venue].append(
            PoolUpdate(
                pool_id=pool_id,
                reserve_a=int(entry["reserve_a"]),
                reserve_b=int(entry["reserve_b"]),
                fee_bps=int(entry.get("fee_bps", 30)),
                sequence=int(entry.get("sequence", index)),
            )
        )
    return Scenario(pools=pools, updates=dict(updates))


def apply_overrides(config: ArbitrageConfig, args: argparse.Namespace) -> ArbitrageConfig:
    overrides: Dict[str, Any] = config.to_dict()
    if args.origin_asset:
        overrides["origin_assets"] = [asset.upper() for asset in args.origin_asset]
    if args.max_hops is not None:
        overrides["max_hops"] = args.max_hops
    if args.event_log:
        overrides["event_log_path"] = str(Path(args.event_log).expanduser())
    overrides["dry_run"] = args.dry_run
    try:
        return ArbitrageConfig.from_mapping(overrides)
    except ValueError as exc:
        raise SystemExit(f"Invalid configuration: {exc}")


async def run_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    if not args.dry_run:
        raise SystemExit(
            "--no-dry-run requires a ledger executor; this runner only drives the simulated ledger."
        )
    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError) as exc:
        raise SystemExit(str(exc))
    config = apply_overrides(config, args)

    scenario = load_scenario(Path(args.scenario or SCENARIO_PATH_DEFAULT).expanduser())
    graph = LiquidityGraph(default_registry(scenario.venues))
    graph.add_pools(scenario.pools)
    logger.info(
        f"Replaying {sum(len(items) for items in scenario.updates.values())} update(s) "
        f"across {len(scenario.venues)} venue(s) and {len(scenario.pools)} pool(s)"
    )

    pipeline = ArbitragePipeline(graph, config)
    feeds = {
        venue: replay_feed(scenario.updates.get(venue, []), delay=args.feed_delay)
        for venue in scenario.venues
    }
    summary = await pipeline.run(feeds)

    for record in pipeline.coordinator.records:
        outcome = record.outcome
        logger.info(
            f"Plan {record.plan.plan_id[:8]} {record.state.value}: "
            f"{record.plan.opportunity.cycle.describe()} borrow {record.plan.opportunity.borrow_amount} "
            f"outcome {outcome}"
        )
    print(json.dumps(summary, indent=2, sort_keys=True))
    return summary


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Detect, size and simulate flash-loan cycle arbitrage over a replayed pool scenario.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Optional path to a flash_arbitrage.yaml configuration file.",
    )
    parser.add_argument(
        "--scenario",
        default=None,
        help="YAML file listing pools and reserve updates to replay.",
    )
    parser.add_argument(
        "--origin-asset",
        action="append",
        default=None,
        metavar="ASSET",
        help="Asset to borrow and close cycles on. May be supplied multiple times.",
    )
    parser.add_argument(
        "--max-hops",
        type=int,
        default=None,
        help="Override the maximum cycle length.",
    )
    parser.add_argument(
        "--feed-delay",
        type=float,
        default=FEED_DELAY_DEFAULT,
        help="Seconds to wait before each replayed venue update.",
    )
    parser.add_argument(
        "--event-log",
        default=None,
        help="Append observability events as JSON lines to this file.",
    )
    parser.add_argument(
        "--dry-run",
        action=argparse.BooleanOptionalAction,
        default=DRY_RUN_DEFAULT,
        help="Settle plans against the simulated ledger instead of a live executor.",
    )
    parser.add_argument(
        "--log-level",
        default=LOG_LEVEL_DEFAULT,
        help="Configure the logging level (e.g. DEBUG, INFO).",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    default_level = getattr(logging, LOG_LEVEL_DEFAULT.upper(), logging.INFO)
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), default_level))
    try:
        asyncio.run(run_from_args(args))
    except KeyboardInterrupt:  # pragma: no cover - outer signal handler
        logger.info("Interrupted by user. Goodbye!")


if __name__ == "__main__":  # pragma: no cover - script entry point
    main()
