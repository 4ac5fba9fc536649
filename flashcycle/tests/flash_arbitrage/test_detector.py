import math

import pytest

from flashcycle.src.flash_arbitrage.detector import (
    CancellationToken,
    CycleDetector,
    find_negative_cycles,
)
from flashcycle.src.flash_arbitrage.exceptions import StaleStateError
from flashcycle.src.flash_arbitrage.models import Cycle, PoolUpdate


def test_two_pool_scenario_yields_single_profitable_direction(two_pool_graph):
    view = two_pool_graph.snapshot()

    cycles = list(find_negative_cycles(view, max_hops=4, origin_assets=["A"]))

    assert len(cycles) == 1
    cycle = cycles[0]
    assert cycle.pool_ids == ("pool1", "pool2")
    assert cycle.assets == ("A", "B", "A")
    assert cycle.version == view.version
    expected_rate = (2.0 * 0.997) * (0.997 / 1.9)
    assert cycle.rate_product == pytest.approx(expected_rate)
    assert cycle.log_weight == pytest.approx(-math.log(expected_rate))


def test_each_origin_closes_its_own_cycle(two_pool_graph):
    view = two_pool_graph.snapshot()

    cycles = list(find_negative_cycles(view, 4, ["A", "B"]))

    assert sorted(cycle.origin for cycle in cycles) == ["A", "B"]
    b_cycle = next(cycle for cycle in cycles if cycle.origin == "B")
    assert b_cycle.pool_ids == ("pool2", "pool1")


def test_balanced_pools_have_no_negative_cycle(graph_builder):
    graph = graph_builder(
        [
            ("p1", "uniswap", "A", "B", 1_000_000, 2_000_000, 30),
            ("p2", "sushiswap", "A", "B", 1_000_000, 2_000_000, 30),
        ]
    )

    assert list(find_negative_cycles(graph.snapshot(), 4, ["A", "B"])) == []


def test_triangle_requires_three_hops(triangle_graph):
    view = triangle_graph.snapshot()

    assert list(find_negative_cycles(view, 2, ["A"])) == []
    cycles = list(find_negative_cycles(view, 3, ["A"]))

    assert len(cycles) == 1
    assert cycles[0].assets == ("A", "B", "C", "A")
    assert cycles[0].rate_product == pytest.approx(0.997 ** 3 * 1.1)


def test_every_cycle_respects_hop_bound_and_uses_each_pool_once(graph_builder):
    graph = graph_builder(
        [
            ("ab", "uniswap", "A", "B", 1_000_000, 1_000_000, 30),
            ("ab2", "sushiswap", "A", "B", 1_000_000, 1_050_000, 30),
            ("bc", "uniswap", "B", "C", 1_000_000, 1_000_000, 30),
            ("ca", "sushiswap", "C", "A", 1_000_000, 1_100_000, 30),
        ]
    )

    cycles = list(find_negative_cycles(graph.snapshot(), 3, ["A", "B", "C"]))

    assert cycles
    for cycle in cycles:
        assert 2 <= cycle.hops <= 3
        assert len(set(cycle.pool_ids)) == cycle.hops
        assert cycle.log_weight < 0


def test_max_hops_below_two_is_rejected_eagerly(two_pool_graph):
    with pytest.raises(ValueError):
        find_negative_cycles(two_pool_graph.snapshot(), 1, ["A"])


def test_cancelled_token_stops_the_scan(two_pool_graph):
    view = two_pool_graph.snapshot()
    token = CancellationToken(view.version)
    token.cancel("newer version")

    detector = CycleDetector()

    assert list(detector.find_negative_cycles(view, 4, ["A"], token)) == []
    assert token.reason == "newer version"


def test_scan_stays_bound_to_its_snapshot(two_pool_graph):
    view = two_pool_graph.snapshot()
    scan = find_negative_cycles(view, 4, ["A"])

    two_pool_graph.apply_update(PoolUpdate("pool2", 1_000_000, 2_000_000, 30, sequence=2))

    cycles = list(scan)
    assert [cycle.version for cycle in cycles] == [view.version]
    assert list(find_negative_cycles(two_pool_graph.snapshot(), 4, ["A"])) == []


def test_cycle_cannot_mix_graph_versions(two_pool_graph):
    old_view = two_pool_graph.snapshot()
    two_pool_graph.apply_update(PoolUpdate("pool2", 1_000_000, 1_900_000, 30, sequence=2))
    new_view = two_pool_graph.snapshot()

    with pytest.raises(StaleStateError):
        Cycle(
            origin="A",
            edges=(old_view.edge("pool1", "A"), new_view.edge("pool2", "B")),
            log_weight=-0.01,
            version=old_view.version,
        )


def test_unknown_origin_is_skipped(two_pool_graph):
    assert list(find_negative_cycles(two_pool_graph.snapshot(), 4, ["ZZZ"])) == []
