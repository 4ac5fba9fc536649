"""Versioned liquidity graph with a single writer and immutable snapshots."""
from __future__ import annotations

import logging
import threading
import time
import weakref
from functools import cached_property
from types import MappingProxyType
from typing import Callable, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Set

import networkx as nx

from flashcycle.src.flash_arbitrage.exceptions import StaleStateError
from flashcycle.src.flash_arbitrage.models import (
    BPS_DENOMINATOR,
    Asset,
    GraphVersion,
    PoolDefinition,
    PoolEdge,
    PoolState,
    PoolUpdate,
)
from flashcycle.src.flash_arbitrage.venues import VenueAdapter, VenueRegistry

logger = logging.getLogger(__name__)


class GraphView:
    """Immutable view of every pool as of one graph version.

    Edges are built lazily from the pool states captured at snapshot time.
    Pools belonging to untrusted venues, stale pools and pools without
    reserves on both sides are left out of the edge set.
    """

    def __init__(
        self,
        version: GraphVersion,
        pools: Mapping[str, PoolState],
        adapters: Mapping[str, VenueAdapter],
        *,
        untrusted_venues: FrozenSet[str] = frozenset(),
        stale_pools: FrozenSet[str] = frozenset(),
    ) -> None:
        self.version = version
        self.pools = pools
        self._adapters = adapters
        self.untrusted_venues = untrusted_venues
        self.stale_pools = stale_pools
        self.created_at = time.time()

    def __repr__(self) -> str:
        return f"GraphView(version={self.version}, pools={len(self.pools)})"

    def tradable(self, pool: PoolState) -> bool:
        return (
            pool.priced
            and pool.venue not in self.untrusted_venues
            and pool.pool_id not in self.stale_pools
        )

    @cached_property
    def edges(self) -> Dict[str, Dict[Asset, PoolEdge]]:
        """``{pool_id: {token_in: edge}}`` for every tradable pool."""

        edges: Dict[str, Dict[Asset, PoolEdge]] = {}
        for pool_id, pool in self.pools.items():
            if not self.tradable(pool):
                continue
            adapter = self._adapters[pool_id]
            asset_a, asset_b = pool.assets
            edges[pool_id] = {
                asset_a: PoolEdge(pool, asset_a, asset_b, adapter, self.version),
                asset_b: PoolEdge(pool, asset_b, asset_a, adapter, self.version),
            }
        return edges

    @cached_property
    def graph(self) -> nx.MultiDiGraph:
        """Frozen directed multigraph keyed by pool id, weighted by ``-ln(rate)``."""

        graph = nx.MultiDiGraph(version=self.version)
        for pool_id, directions in self.edges.items():
            for token_in, edge in directions.items():
                weight = edge.weight
                if weight == float("inf"):
                    continue
                graph.add_edge(token_in, edge.token_out, key=pool_id, weight=weight, edge=edge)
        return nx.freeze(graph)

    @property
    def assets(self) -> List[Asset]:
        return sorted(self.graph.nodes)

    def edge(self, pool_id: str, token_in: Asset) -> PoolEdge:
        try:
            return self.edges[pool_id][token_in]
        except KeyError:
            raise KeyError(f"Pool {pool_id} is not tradable from {token_in} in version {self.version}") from None

    def out_edges(self, asset: Asset) -> Iterator[PoolEdge]:
        if asset not in self.graph:
            return iter(())
        return (data["edge"] for _, _, data in self.graph.out_edges(asset, data=True))


class LiquidityGraph:
    """Owns every pool state; exactly one writer applies venue updates.

    ``snapshot`` is copy-on-write: the current pool mapping is shared with
    the returned view and the next write replaces it with a private copy.
    """

    def __init__(
        self,
        registry: VenueRegistry,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._clock = clock
        self._definitions: Dict[str, PoolDefinition] = {}
        self._adapters: Dict[str, VenueAdapter] = {}
        self._pools: Dict[str, PoolState] = {}
        self._untrusted_venues: Set[str] = set()
        self._stale_pools: Set[str] = set()
        self._version: GraphVersion = 0
        self._shared = False
        self._current_view: Optional[GraphView] = None
        self._views: "weakref.WeakValueDictionary[GraphVersion, GraphView]" = weakref.WeakValueDictionary()
        self._lock = threading.Lock()

    @property
    def version(self) -> GraphVersion:
        return self._version

    @property
    def untrusted_venues(self) -> FrozenSet[str]:
        return frozenset(self._untrusted_venues)

    @property
    def stale_pools(self) -> FrozenSet[str]:
        return frozenset(self._stale_pools)

    def pool(self, pool_id: str) -> Optional[PoolState]:
        return self._pools.get(pool_id)

    def definition(self, pool_id: str) -> PoolDefinition:
        return self._definitions[pool_id]

    def pools_for_venue(self, venue: str) -> List[str]:
        return sorted(pid for pid, definition in self._definitions.items() if definition.venue == venue)

    def add_pool(self, definition: PoolDefinition) -> None:
        """Register a pool's topology, resolving its venue adapter immediately."""

        adapter = self._registry.resolve(definition.venue)
        with self._lock:
            existing = self._definitions.get(definition.pool_id)
            if existing is not None:
                if existing != definition:
                    raise ValueError(f"Pool {definition.pool_id} is already registered as {existing}")
                return
            self._ensure_private()
            self._definitions[definition.pool_id] = definition
            self._adapters[definition.pool_id] = adapter
        logger.debug(
            f"Registered pool {definition.pool_id} on {definition.venue}: "
            f"{definition.asset_a}/{definition.asset_b}"
        )

    def add_pools(self, definitions: Iterable[PoolDefinition]) -> None:
        for definition in definitions:
            self.add_pool(definition)

    def apply_update(self, update: PoolUpdate) -> GraphVersion:
        """Apply one venue update and return the resulting graph version.

        Duplicate or out-of-order sequence numbers are discarded without
        touching the graph, so applying an update twice is a no-op.
        """

        definition = self._definitions.get(update.pool_id)
        if definition is None:
            raise KeyError(f"Update for unregistered pool {update.pool_id}")
        self._validate_update(update)

        with self._lock:
            current = self._pools.get(update.pool_id)
            if current is not None and update.sequence <= current.sequence:
                logger.debug(
                    f"Discarding update for {update.pool_id} with sequence {update.sequence} "
                    f"(applied {current.sequence})"
                )
                return self._version
            self._ensure_private()
            self._version += 1
            self._pools[update.pool_id] = PoolState(
                definition=definition,
                reserve_a=int(update.reserve_a),
                reserve_b=int(update.reserve_b),
                fee_bps=int(update.fee_bps),
                sequence=int(update.sequence),
                last_updated=self._version,
                updated_at=self._clock(),
            )
            if definition.venue in self._untrusted_venues:
                self._untrusted_venues.discard(definition.venue)
                logger.info(f"Venue {definition.venue} trusted again after a fresh update")
            self._stale_pools.discard(update.pool_id)
            self._current_view = None
            return self._version

    def mark_venue_untrusted(self, venue: str) -> GraphVersion:
        """Exclude every pool of ``venue`` from detection until it sends fresh data."""

        with self._lock:
            if venue in self._untrusted_venues:
                return self._version
            self._ensure_private()
            self._untrusted_venues.add(venue)
            self._version += 1
            self._current_view = None
        logger.warning(f"Venue {venue} marked untrusted; its pools are excluded from detection")
        return self._version

    def mark_pools_stale(self, pool_ids: Iterable[str]) -> GraphVersion:
        """Exclude ``pool_ids`` until their venue delivers a newer update."""

        with self._lock:
            fresh = {pid for pid in pool_ids if pid in self._definitions and pid not in self._stale_pools}
            if not fresh:
                return self._version
            self._ensure_private()
            self._stale_pools.update(fresh)
            self._version += 1
            self._current_view = None
        logger.debug(f"Marked pools stale pending refresh: {', '.join(sorted(fresh))}")
        return self._version

    def snapshot(self) -> GraphView:
        with self._lock:
            if self._current_view is None:
                view = GraphView(
                    self._version,
                    MappingProxyType(self._pools),
                    MappingProxyType(self._adapters),
                    untrusted_venues=frozenset(self._untrusted_venues),
                    stale_pools=frozenset(self._stale_pools),
                )
                self._shared = True
                self._current_view = view
                self._views[self._version] = view
            return self._current_view

    def view_at(self, version: GraphVersion) -> GraphView:
        """Return the still-referenced view for ``version``."""

        view = self._views.get(version)
        if view is None:
            raise StaleStateError(f"Graph version {version} is no longer retained (current {self._version})")
        return view

    def retained_versions(self) -> List[GraphVersion]:
        return sorted(self._views.keys())

    def _ensure_private(self) -> None:
        if self._shared:
            self._pools = dict(self._pools)
            self._adapters = dict(self._adapters)
            self._shared = False

    @staticmethod
    def _validate_update(update: PoolUpdate) -> None:
        if update.reserve_a < 0 or update.reserve_b < 0:
            raise ValueError(f"Negative reserves in update for {update.pool_id}")
        if not 0 <= update.fee_bps < BPS_DENOMINATOR:
            raise ValueError(f"fee_bps must be within [0, {BPS_DENOMINATOR}) for {update.pool_id}")
