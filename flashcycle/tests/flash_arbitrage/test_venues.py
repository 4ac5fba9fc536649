import asyncio

import pytest

from flashcycle.src.flash_arbitrage.exceptions import UnknownVenueError
from flashcycle.src.flash_arbitrage.models import PoolDefinition, PoolState, PoolUpdate
from flashcycle.src.flash_arbitrage.venues import (
    ConstantProductAdapter,
    VenueRegistry,
    default_registry,
    replay_feed,
)


def _pool(reserve_a=1_000, reserve_b=1_000, fee_bps=30):
    return PoolState(
        definition=PoolDefinition("p", "uniswap", "A", "B"),
        reserve_a=reserve_a,
        reserve_b=reserve_b,
        fee_bps=fee_bps,
        sequence=1,
        last_updated=1,
    )


def test_constant_product_quote_matches_integer_formula():
    adapter = ConstantProductAdapter()
    pool = _pool()

    # 100 * 9970 * 1000 // (1000 * 10000 + 100 * 9970)
    assert adapter.quote(pool, "A", 100) == 90
    assert adapter.quote(pool, "A", 0) == 0
    with pytest.raises(ValueError):
        adapter.quote(pool, "A", -1)


def test_quote_is_direction_specific():
    adapter = ConstantProductAdapter()
    pool = _pool(reserve_a=1_000_000, reserve_b=2_000_000)

    assert adapter.quote(pool, "A", 1_000) > adapter.quote(pool, "B", 1_000)
    assert adapter.capacity(pool, "A") == 1_000_000
    assert adapter.capacity(pool, "B") == 2_000_000
    assert adapter.spot_rate(pool, "B") == pytest.approx(0.5 * 0.997)
    with pytest.raises(ValueError):
        adapter.quote(pool, "C", 10)


def test_quote_is_monotone_and_concave():
    adapter = ConstantProductAdapter()
    pool = _pool(reserve_a=1_000_000, reserve_b=1_000_000)

    outputs = [adapter.quote(pool, "A", amount) for amount in range(0, 500_001, 50_000)]
    increments = [later - earlier for earlier, later in zip(outputs, outputs[1:])]

    assert all(step > 0 for step in increments)
    assert all(later <= earlier for earlier, later in zip(increments, increments[1:]))


def test_registry_is_typed():
    registry = VenueRegistry()
    adapter = ConstantProductAdapter()
    registry.register("uniswap", adapter)

    assert "uniswap" in registry
    assert registry.resolve("uniswap") is adapter
    with pytest.raises(ValueError):
        registry.register("uniswap", ConstantProductAdapter())
    registry.register("uniswap", ConstantProductAdapter(), replace=True)
    with pytest.raises(TypeError):
        registry.register("curve", object())
    with pytest.raises(UnknownVenueError):
        registry.resolve("curve")


def test_default_registry_covers_every_venue():
    registry = default_registry(["sushiswap", "uniswap"])

    assert list(registry) == ["sushiswap", "uniswap"]
    assert len(registry) == 2


def test_replay_feed_yields_updates_in_order():
    updates = [PoolUpdate("p", 1, 1, 30, sequence=index) for index in range(3)]

    async def _collect():
        return [update async for update in replay_feed(updates)]

    assert asyncio.run(_collect()) == updates
