"""Trade sizing for candidate cycles under nonlinear slippage."""
from __future__ import annotations

import logging
import math
from fractions import Fraction
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

import numpy as np

from flashcycle.src.flash_arbitrage.models import Asset, Cycle, SizedOpportunity, as_fraction

logger = logging.getLogger(__name__)

_INV_PHI = (math.sqrt(5.0) - 1.0) / 2.0


def utilisation_cap(capacity: int, fraction: Fraction) -> int:
    """Largest input allowed into a hop whose modelled depth is ``capacity``."""

    return capacity * fraction.numerator // fraction.denominator


def _lookup(values: Mapping[str, int], asset: Asset, default: Optional[int]) -> Optional[int]:
    if asset in values:
        return values[asset]
    return values.get("default", default)


class SizeOptimizer:
    """Finds the borrow amount that maximises ``replay(x) - x`` for one cycle.

    Constant-product hops make the output strictly concave in the input, so
    the profit curve is unimodal and an integer golden-section search
    converges without derivatives. Every evaluated point is kept, and a coarse
    sweep of the bounded range is added to them; when the evaluated profile
    turns out not to be unimodal the optimizer falls back to dense sampling
    across the whole range.
    """

    def __init__(
        self,
        *,
        max_utilization_fraction: Union[float, str, Fraction] = 0.3,
        min_notional: Optional[Mapping[str, int]] = None,
        max_borrow: Optional[Mapping[str, int]] = None,
        sample_count: int = 64,
    ) -> None:
        fraction = as_fraction(max_utilization_fraction)
        if not 0 < fraction <= 1:
            raise ValueError("max_utilization_fraction must be within (0, 1]")
        if sample_count < 3:
            raise ValueError("sample_count must be at least 3")
        self.max_utilization_fraction = fraction
        self.min_notional: Dict[str, int] = dict(min_notional or {})
        self.max_borrow: Dict[str, int] = dict(max_borrow or {})
        self.sample_count = sample_count
        self.sweep_count = max(5, sample_count // 8)

    # ------------------------------------------------------------------ #
    def bounds(self, cycle: Cycle) -> Tuple[int, int]:
        """Return ``(lower, upper)`` borrow bounds for ``cycle``.

        ``upper`` is the largest input for which every hop stays within its
        utilisation cap; an empty range is reported as ``upper < lower``.
        """

        lower = max(1, _lookup(self.min_notional, cycle.origin, 1) or 1)
        caps = [utilisation_cap(edge.capacity(), self.max_utilization_fraction) for edge in cycle.edges]
        upper = caps[0]
        borrow_cap = _lookup(self.max_borrow, cycle.origin, None)
        if borrow_cap is not None:
            upper = min(upper, borrow_cap)
        if upper <= 0:
            return lower, 0

        if not self._within_caps(cycle, upper, caps):
            low, high = 0, upper
            while high - low > 1:
                middle = (low + high) // 2
                if self._within_caps(cycle, middle, caps):
                    low = middle
                else:
                    high = middle
            upper = low
        return lower, upper

    @staticmethod
    def _within_caps(cycle: Cycle, amount: int, caps: List[int]) -> bool:
        current = amount
        for edge, cap in zip(cycle.edges, caps):
            if current > cap:
                return False
            current = edge.quote(current)
        return True

    # ------------------------------------------------------------------ #
    def optimize(self, cycle: Cycle) -> Optional[SizedOpportunity]:
        lower, upper = self.bounds(cycle)
        if upper < lower:
            logger.debug(
                f"No feasible size for {cycle.describe()}: bounds [{lower}, {upper}]"
            )
            return None

        evaluations: Dict[int, int] = {}

        def profit(amount: int) -> int:
            if amount not in evaluations:
                evaluations[amount] = cycle.replay(amount)[-1] - amount
            return evaluations[amount]

        best_amount = self._golden_section(profit, lower, upper)
        # golden-section only sees one basin; a coarse sweep exposes the others
        for amount in self._sample_points(lower, upper, self.sweep_count):
            profit(amount)
        used_fallback = False
        if not self._is_unimodal(evaluations, slack=cycle.hops):
            used_fallback = True
            logger.info(
                f"Non-unimodal profit profile for {cycle.describe()}; falling back to dense sampling"
            )
            for amount in self._sample_points(lower, upper, self.sample_count):
                profit(amount)
            best_amount = max(evaluations, key=lambda amount: (evaluations[amount], -amount))

        best_profit = evaluations[best_amount]
        if best_profit <= 0:
            logger.debug(
                f"Cycle {cycle.describe()} has no profitable size (best {best_profit} at {best_amount})"
            )
            return None

        return SizedOpportunity(
            cycle=cycle,
            amount_in=best_amount,
            expected_out=best_amount + best_profit,
            used_fallback=used_fallback,
            evaluations=len(evaluations),
        )

    def _golden_section(self, profit, lower: int, upper: int) -> int:
        low, high = lower, upper
        while high - low > 3:
            span = high - low
            left = high - int(round(span * _INV_PHI))
            right = low + int(round(span * _INV_PHI))
            if left >= right:
                left, right = low + span // 3, high - span // 3
            if profit(left) < profit(right):
                low = left + 1
            else:
                high = right - 1 if profit(left) > profit(right) else right
        candidates = range(low, high + 1)
        return max(candidates, key=lambda amount: (profit(amount), -amount))

    @staticmethod
    def _is_unimodal(evaluations: Mapping[int, int], *, slack: int) -> bool:
        """True when the evaluated profile rises then falls (within ``slack``)."""

        ordered = [evaluations[amount] for amount in sorted(evaluations)]
        peak = max(ordered)
        peak_index = ordered.index(peak)
        running = ordered[0]
        for value in ordered[1: peak_index + 1]:
            if value < running - slack:
                return False
            running = max(running, value)
        running = peak
        for value in ordered[peak_index + 1:]:
            if value > running + slack:
                return False
            running = min(running, value)
        return True

    @staticmethod
    def _sample_points(lower: int, upper: int, count: int) -> List[int]:
        grid = np.linspace(float(lower), float(upper), num=count)
        points = {lower, upper}
        points.update(min(max(int(value), lower), upper) for value in grid)
        return sorted(points)

    # ------------------------------------------------------------------ #
    def select(self, sized: Iterable[SizedOpportunity]) -> List[SizedOpportunity]:
        """Deduplicate and keep the most profitable cycles with disjoint pools."""

        best_by_pools: Dict[Tuple[Asset, frozenset], SizedOpportunity] = {}
        for candidate in sized:
            key = (candidate.borrow_asset, frozenset(candidate.cycle.pool_ids))
            current = best_by_pools.get(key)
            if current is None or candidate.estimated_profit > current.estimated_profit:
                best_by_pools[key] = candidate

        ranked = sorted(
            best_by_pools.values(),
            key=lambda candidate: candidate.estimated_profit,
            reverse=True,
        )
        selected: List[SizedOpportunity] = []
        used_pools: set = set()
        for candidate in ranked:
            pools = set(candidate.cycle.pool_ids)
            if pools & used_pools:
                logger.debug(f"Dropping overlapping cycle {candidate.cycle.describe()}")
                continue
            selected.append(candidate)
            used_pools |= pools
        return selected
