from typing import Iterable, Optional, Sequence, Tuple

import pytest

from flashcycle.src.flash_arbitrage.graph import LiquidityGraph
from flashcycle.src.flash_arbitrage.models import PoolDefinition, PoolUpdate
from flashcycle.src.flash_arbitrage.venues import VenueRegistry, default_registry

PoolRow = Tuple[str, str, str, str, int, int, int]

TWO_POOL_SCENARIO: Sequence[PoolRow] = (
    ("pool1", "uniswap", "A", "B", 1_000_000, 2_000_000, 30),
    ("pool2", "sushiswap", "A", "B", 1_000_000, 1_900_000, 30),
)

TRIANGLE_SCENARIO: Sequence[PoolRow] = (
    ("ab", "uniswap", "A", "B", 1_000_000, 1_000_000, 30),
    ("bc", "uniswap", "B", "C", 1_000_000, 1_000_000, 30),
    ("ca", "sushiswap", "C", "A", 1_000_000, 1_100_000, 30),
)


class ManualClock:
    """Deterministic clock advanced explicitly by tests."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def build_graph(
    pools: Iterable[PoolRow],
    *,
    registry: Optional[VenueRegistry] = None,
    clock=None,
) -> LiquidityGraph:
    pools = list(pools)
    if registry is None:
        registry = default_registry({row[1] for row in pools})
    graph = LiquidityGraph(registry) if clock is None else LiquidityGraph(registry, clock=clock)
    for pool_id, venue, asset_a, asset_b, reserve_a, reserve_b, fee_bps in pools:
        graph.add_pool(PoolDefinition(pool_id, venue, asset_a, asset_b))
        graph.apply_update(PoolUpdate(pool_id, reserve_a, reserve_b, fee_bps, sequence=1))
    return graph


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def two_pool_graph() -> LiquidityGraph:
    return build_graph(TWO_POOL_SCENARIO)


@pytest.fixture
def triangle_graph() -> LiquidityGraph:
    return build_graph(TRIANGLE_SCENARIO)


@pytest.fixture
def graph_builder():
    return build_graph


@pytest.fixture
def two_pool_scenario() -> Sequence[PoolRow]:
    return TWO_POOL_SCENARIO
