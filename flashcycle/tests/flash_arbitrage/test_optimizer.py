from fractions import Fraction

import pytest

from flashcycle.src.flash_arbitrage.detector import find_negative_cycles
from flashcycle.src.flash_arbitrage.graph import LiquidityGraph
from flashcycle.src.flash_arbitrage.models import (
    Cycle,
    PoolDefinition,
    PoolUpdate,
    SizedOpportunity,
)
from flashcycle.src.flash_arbitrage.optimizer import SizeOptimizer, utilisation_cap
from flashcycle.src.flash_arbitrage.venues import VenueAdapter, VenueRegistry


def _two_pool_cycle(graph):
    view = graph.snapshot()
    return next(find_negative_cycles(view, 4, ["A"]))


def _cycle_through(view, *hops):
    edges = tuple(view.edge(pool_id, token_in) for pool_id, token_in in hops)
    return Cycle(
        origin=edges[0].token_in,
        edges=edges,
        log_weight=sum(edge.weight for edge in edges),
        version=view.version,
    )


def _two_peaks(amount: int) -> int:
    near = max(0, 100 - abs(amount - 60_000) // 600)
    far = max(0, 300 - abs(amount - 250_000) * 300 // 40_000)
    return max(near, far)


class _TwoPeakAdapter(VenueAdapter):
    """Selling asset_a pays a two-peaked bonus; selling asset_b is 1:1."""

    venue_type = "two_peak"

    def quote(self, pool, token_in, amount_in):
        if token_in == pool.definition.asset_a:
            return amount_in + _two_peaks(amount_in)
        return amount_in

    def capacity(self, pool, token_in):
        return pool.reserves_for(token_in)[0]

    def spot_rate(self, pool, token_in):
        return 1.0


def test_two_pool_scenario_sizes_near_the_analytic_optimum(two_pool_graph):
    cycle = _two_pool_cycle(two_pool_graph)
    optimizer = SizeOptimizer()

    sized = optimizer.optimize(cycle)

    assert sized is not None
    assert not sized.used_fallback
    assert 10_000 <= sized.amount_in <= 13_000
    assert 240 <= sized.estimated_profit <= 260
    assert sized.expected_out == cycle.replay(sized.amount_in)[-1]


def test_optimum_beats_any_sampled_size(two_pool_graph):
    cycle = _two_pool_cycle(two_pool_graph)
    sized = SizeOptimizer().optimize(cycle)

    for amount in (1_000, 5_000, 8_000, 20_000, 50_000, 150_000, 300_000):
        assert sized.estimated_profit >= cycle.replay(amount)[-1] - amount


def test_upper_bound_is_the_first_hop_utilisation_cap(two_pool_graph):
    cycle = _two_pool_cycle(two_pool_graph)

    assert SizeOptimizer().bounds(cycle) == (1, 300_000)
    assert SizeOptimizer(max_borrow={"A": 50_000}).bounds(cycle) == (1, 50_000)
    assert SizeOptimizer(max_borrow={"default": 20_000}).bounds(cycle) == (1, 20_000)
    assert SizeOptimizer(min_notional={"A": 500}).bounds(cycle)[0] == 500


def test_later_hop_cap_shrinks_the_upper_bound(graph_builder):
    graph = graph_builder(
        [
            ("deep", "uniswap", "A", "B", 1_000_000, 2_000_000, 30),
            ("shallow", "sushiswap", "A", "B", 100_000, 200_000, 30),
        ]
    )
    view = graph.snapshot()
    cycle = _cycle_through(view, ("deep", "A"), ("shallow", "B"))

    lower, upper = SizeOptimizer().bounds(cycle)

    cap = utilisation_cap(200_000, Fraction(3, 10))
    assert upper < 300_000
    assert cycle.edges[0].quote(upper) <= cap < cycle.edges[0].quote(upper + 1)


def test_empty_range_returns_none(two_pool_graph):
    cycle = _two_pool_cycle(two_pool_graph)

    assert SizeOptimizer(min_notional={"A": 400_000}).optimize(cycle) is None


def test_unprofitable_cycle_returns_none(graph_builder):
    graph = graph_builder(
        [
            ("p1", "uniswap", "A", "B", 1_000_000, 2_000_000, 30),
            ("p2", "sushiswap", "A", "B", 1_000_000, 1_999_000, 30),
        ]
    )
    cycle = _cycle_through(graph.snapshot(), ("p1", "A"), ("p2", "B"))

    assert SizeOptimizer().optimize(cycle) is None


def test_is_unimodal_tolerates_rounding_only():
    assert SizeOptimizer._is_unimodal({1: 0, 2: 5, 3: 9, 4: 8, 5: 2}, slack=0)
    assert SizeOptimizer._is_unimodal({1: 0, 2: 5, 3: 4, 4: 9, 5: 2}, slack=1)
    assert not SizeOptimizer._is_unimodal({1: 0, 2: 50, 3: 10, 4: 90, 5: 2}, slack=2)
    assert not SizeOptimizer._is_unimodal({1: 90, 2: 10, 3: 80, 4: 5}, slack=2)


def test_two_peak_profile_is_detected_and_sampled_densely():
    registry = VenueRegistry({"odd": _TwoPeakAdapter()})
    graph = LiquidityGraph(registry)
    graph.add_pool(PoolDefinition("bumpy", "odd", "A", "B"))
    graph.add_pool(PoolDefinition("flat", "odd", "B", "A"))
    graph.apply_update(PoolUpdate("bumpy", 1_000_000, 2_000_000, 0, sequence=1))
    graph.apply_update(PoolUpdate("flat", 2_000_000, 1_000_000, 0, sequence=1))
    view = graph.snapshot()
    cycle = _cycle_through(view, ("bumpy", "A"), ("flat", "B"))

    sized = SizeOptimizer(sample_count=64).optimize(cycle)

    assert sized.used_fallback
    assert cycle.replay(59_401)[-1] - 59_401 < sized.estimated_profit
    assert 240_000 <= sized.amount_in <= 260_000
    assert sized.estimated_profit >= 280
    assert sized.evaluations > 64


def test_select_deduplicates_and_keeps_disjoint_pools(two_pool_graph):
    cycle = _two_pool_cycle(two_pool_graph)
    small = SizedOpportunity(cycle=cycle, amount_in=1_000, expected_out=1_010)
    large = SizedOpportunity(cycle=cycle, amount_in=10_000, expected_out=10_250)
    view = two_pool_graph.snapshot()
    reverse = next(find_negative_cycles(view, 4, ["B"]))
    overlapping = SizedOpportunity(cycle=reverse, amount_in=10_000, expected_out=10_100)

    selected = SizeOptimizer().select([small, overlapping, large])

    assert selected == [large]


def test_invalid_settings_are_rejected():
    with pytest.raises(ValueError):
        SizeOptimizer(max_utilization_fraction=0)
    with pytest.raises(ValueError):
        SizeOptimizer(max_utilization_fraction="3/2")
    with pytest.raises(ValueError):
        SizeOptimizer(sample_count=2)
