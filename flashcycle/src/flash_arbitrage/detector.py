"""Negative-cycle detection over a liquidity graph snapshot."""
from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from flashcycle.src.flash_arbitrage.graph import GraphView
from flashcycle.src.flash_arbitrage.models import (
    Asset,
    Cycle,
    GraphVersion,
    PoolEdge,
    intern_asset,
)

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag tied to the graph version a scan started from."""

    def __init__(self, version: GraphVersion) -> None:
        self.version = version
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class _PartialPath:
    weight: float
    edges: Tuple[PoolEdge, ...]
    assets: Tuple[Asset, ...]
    pool_ids: frozenset


class CycleDetector:
    """Hop-bounded Bellman-Ford relaxation restarted from every origin asset.

    Layer ``k`` relaxes every edge leaving the paths reached in ``k - 1``
    hops. Classic Bellman-Ford keeps the single best distance per asset;
    here the ``beam_width`` lowest-weight simple paths survive per asset so
    that a path blocked by a reused pool does not hide the next best one.
    """

    def __init__(self, *, beam_width: int = 8, min_log_edge: float = 0.0) -> None:
        if beam_width <= 0:
            raise ValueError("beam_width must be positive")
        if min_log_edge < 0:
            raise ValueError("min_log_edge must be non-negative")
        self.beam_width = beam_width
        self.min_log_edge = min_log_edge

    def find_negative_cycles(
        self,
        view: GraphView,
        max_hops: int,
        origin_assets: Iterable[Asset],
        token: Optional[CancellationToken] = None,
    ) -> Iterator[Cycle]:
        """Lazily yield every negative-weight cycle found in ``view``.

        The returned generator is bound to ``view``: every cycle carries its
        version and the generator cannot be rewound against a later graph.
        """

        if max_hops < 2:
            raise ValueError("max_hops must be at least 2")
        origins = sorted({intern_asset(asset) for asset in origin_assets})
        return self._scan(view, max_hops, origins, token)

    def _scan(
        self,
        view: GraphView,
        max_hops: int,
        origins: List[Asset],
        token: Optional[CancellationToken],
    ) -> Iterator[Cycle]:
        graph = view.graph
        found = 0
        for origin in origins:
            if self._cancelled(token, view):
                return
            if origin not in graph:
                logger.debug(f"Origin {origin} has no tradable pools in version {view.version}")
                continue
            frontier: Dict[Asset, List[_PartialPath]] = {
                origin: [_PartialPath(0.0, (), (origin,), frozenset())]
            }
            for hop in range(1, max_hops + 1):
                if self._cancelled(token, view):
                    return
                next_frontier: Dict[Asset, List[_PartialPath]] = defaultdict(list)
                for asset, paths in frontier.items():
                    for path in paths:
                        for _, target, pool_id, data in graph.out_edges(asset, keys=True, data=True):
                            if pool_id in path.pool_ids:
                                continue
                            edge: PoolEdge = data["edge"]
                            weight = path.weight + data["weight"]
                            if target == origin:
                                if weight < -self.min_log_edge:
                                    found += 1
                                    yield Cycle(
                                        origin=origin,
                                        edges=path.edges + (edge,),
                                        log_weight=weight,
                                        version=view.version,
                                    )
                                continue
                            if hop == max_hops or target in path.assets:
                                continue
                            next_frontier[target].append(
                                _PartialPath(
                                    weight,
                                    path.edges + (edge,),
                                    path.assets + (target,),
                                    path.pool_ids | {pool_id},
                                )
                            )
                frontier = {
                    asset: sorted(paths, key=lambda candidate: candidate.weight)[: self.beam_width]
                    for asset, paths in next_frontier.items()
                }
                if not frontier:
                    break
        logger.debug(f"Scan of version {view.version} yielded {found} negative cycle(s)")

    @staticmethod
    def _cancelled(token: Optional[CancellationToken], view: GraphView) -> bool:
        if token is not None and token.cancelled:
            logger.info(
                f"Cycle scan of version {view.version} cancelled: {token.reason or 'cancelled'}"
            )
            return True
        return False


def find_negative_cycles(
    view: GraphView,
    max_hops: int,
    origin_assets: Iterable[Asset],
    token: Optional[CancellationToken] = None,
    *,
    beam_width: int = 8,
) -> Iterator[Cycle]:
    """Module-level convenience wrapper around :class:`CycleDetector`."""

    detector = CycleDetector(beam_width=beam_width)
    return detector.find_negative_cycles(view, max_hops, origin_assets, token)
