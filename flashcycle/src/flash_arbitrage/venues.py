"""Venue adapters: per-venue pricing behind a common capability."""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Dict, Iterable, Iterator, Optional

from flashcycle.src.flash_arbitrage.exceptions import UnknownVenueError
from flashcycle.src.flash_arbitrage.models import (
    BPS_DENOMINATOR,
    Asset,
    PoolState,
    PoolUpdate,
)

logger = logging.getLogger(__name__)


class VenueAdapter(ABC):
    """Pricing capability a venue exposes to the liquidity graph."""

    venue_type = "abstract"

    @abstractmethod
    def quote(self, pool: PoolState, token_in: Asset, amount_in: int) -> int:
        """Return the exact output for selling ``amount_in`` of ``token_in``."""

    @abstractmethod
    def capacity(self, pool: PoolState, token_in: Asset) -> int:
        """Return the modelled depth available on the input side."""

    @abstractmethod
    def spot_rate(self, pool: PoolState, token_in: Asset) -> float:
        """Return the fee-inclusive marginal rate for an infinitesimal trade."""


class ConstantProductAdapter(VenueAdapter):
    """Uniswap V2 style ``x * y = k`` pool with the fee taken on the input."""

    venue_type = "constant_product"

    def quote(self, pool: PoolState, token_in: Asset, amount_in: int) -> int:
        if amount_in < 0:
            raise ValueError("amount_in must be non-negative")
        if amount_in == 0:
            return 0
        reserve_in, reserve_out = pool.reserves_for(token_in)
        if reserve_in <= 0 or reserve_out <= 0:
            return 0
        amount_in_with_fee = amount_in * (BPS_DENOMINATOR - pool.fee_bps)
        numerator = amount_in_with_fee * reserve_out
        denominator = reserve_in * BPS_DENOMINATOR + amount_in_with_fee
        return numerator // denominator

    def capacity(self, pool: PoolState, token_in: Asset) -> int:
        reserve_in, _ = pool.reserves_for(token_in)
        return reserve_in

    def spot_rate(self, pool: PoolState, token_in: Asset) -> float:
        reserve_in, reserve_out = pool.reserves_for(token_in)
        if reserve_in <= 0 or reserve_out <= 0:
            return 0.0
        fee_factor = (BPS_DENOMINATOR - pool.fee_bps) / BPS_DENOMINATOR
        return reserve_out / reserve_in * fee_factor


class VenueRegistry:
    """Typed registry of venue adapters keyed by venue identifier."""

    def __init__(self, adapters: Optional[Dict[str, VenueAdapter]] = None) -> None:
        self._adapters: Dict[str, VenueAdapter] = {}
        for venue, adapter in (adapters or {}).items():
            self.register(venue, adapter)

    def register(self, venue: str, adapter: VenueAdapter, *, replace: bool = False) -> None:
        if not isinstance(adapter, VenueAdapter):
            raise TypeError(f"Adapter for {venue} must implement VenueAdapter")
        key = str(venue)
        if key in self._adapters and not replace:
            raise ValueError(f"Venue {key} already has a registered adapter")
        self._adapters[key] = adapter
        logger.debug(f"Registered {adapter.venue_type} adapter for venue {key}")

    def resolve(self, venue: str) -> VenueAdapter:
        try:
            return self._adapters[str(venue)]
        except KeyError:
            raise UnknownVenueError(f"No adapter registered for venue {venue}") from None

    def __contains__(self, venue: object) -> bool:
        return str(venue) in self._adapters

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._adapters))

    def __len__(self) -> int:
        return len(self._adapters)


def default_registry(venues: Iterable[str]) -> VenueRegistry:
    """Build a registry with a constant-product adapter for every venue."""

    adapter = ConstantProductAdapter()
    return VenueRegistry({venue: adapter for venue in venues})


async def replay_feed(
    updates: Iterable[PoolUpdate],
    *,
    delay: float = 0.0,
) -> AsyncIterator[PoolUpdate]:
    """Yield ``updates`` one at a time, sleeping ``delay`` seconds before each."""

    for update in updates:
        if delay > 0:
            await asyncio.sleep(delay)
        yield update
