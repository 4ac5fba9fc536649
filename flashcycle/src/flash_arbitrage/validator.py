"""Exact profitability checks run before an opportunity may be planned."""
from __future__ import annotations

import logging
from fractions import Fraction
from typing import Callable, Dict, Mapping, Optional, Union

from flashcycle.src.flash_arbitrage.exceptions import (
    CapacityExceeded,
    InsufficientMargin,
    StaleQuote,
)
from flashcycle.src.flash_arbitrage.models import (
    BPS_DENOMINATOR,
    Cycle,
    GraphVersion,
    Opportunity,
    SizedOpportunity,
    as_fraction,
)
from flashcycle.src.flash_arbitrage.optimizer import utilisation_cap

logger = logging.getLogger(__name__)

CostEstimator = Callable[[Cycle], int]


def borrow_fee(amount: int, fee_bps: int) -> int:
    """Flash-loan fee on ``amount``, rounded up against the borrower."""

    return -(-amount * fee_bps // BPS_DENOMINATOR)


def _no_cost(cycle: Cycle) -> int:
    return 0


class ProfitValidator:
    """Recomputes an opportunity's profit hop by hop in integer units.

    The optimizer's estimate is never trusted: the cycle is replayed at the
    chosen size with each venue's exact pricing function, the borrow fee and
    the execution cost estimate are subtracted, and the result must clear
    ``min_net_profit * safety_multiple`` compared as exact fractions.
    """

    def __init__(
        self,
        *,
        borrow_fee_bps: int = 5,
        min_net_profit: Optional[Mapping[str, int]] = None,
        safety_multiple: Union[float, str, Fraction] = Fraction(6, 5),
        max_utilization_fraction: Union[float, str, Fraction] = Fraction(3, 10),
        cost_estimator: Optional[CostEstimator] = None,
    ) -> None:
        if not 0 <= borrow_fee_bps < BPS_DENOMINATOR:
            raise ValueError("borrow_fee_bps must be within [0, 10000)")
        self.borrow_fee_bps = int(borrow_fee_bps)
        self.min_net_profit: Dict[str, int] = dict(min_net_profit or {})
        self.safety_multiple = as_fraction(safety_multiple)
        if self.safety_multiple < 1:
            raise ValueError("safety_multiple must be at least 1")
        self.max_utilization_fraction = as_fraction(max_utilization_fraction)
        self.cost_estimator: CostEstimator = cost_estimator or _no_cost

    def threshold_for(self, asset: str) -> int:
        if asset in self.min_net_profit:
            return int(self.min_net_profit[asset])
        return int(self.min_net_profit.get("default", 0))

    def validate(
        self,
        sized: SizedOpportunity,
        borrow_fee_bps: Optional[int] = None,
        min_net_profit: Optional[int] = None,
        *,
        current_version: Optional[GraphVersion] = None,
    ) -> Opportunity:
        """Return the exact :class:`Opportunity` or raise a typed rejection."""

        cycle = sized.cycle
        if current_version is not None and current_version != cycle.version:
            raise StaleQuote(
                f"Quote for {cycle.describe()} priced at version {cycle.version}, current is {current_version}",
                opportunity=sized,
            )

        fee_bps = self.borrow_fee_bps if borrow_fee_bps is None else int(borrow_fee_bps)
        threshold = self.threshold_for(cycle.origin) if min_net_profit is None else int(min_net_profit)

        hop_outputs = []
        amount = sized.amount_in
        for index, edge in enumerate(cycle.edges):
            cap = utilisation_cap(edge.capacity(), self.max_utilization_fraction)
            if amount > cap:
                raise CapacityExceeded(
                    f"Hop {index} ({edge.describe()}) input {amount} exceeds cap {cap}",
                    opportunity=sized,
                )
            amount = edge.quote(amount)
            hop_outputs.append(amount)

        opportunity = Opportunity(
            sized=sized,
            hop_outputs=tuple(hop_outputs),
            borrow_fee=borrow_fee(sized.amount_in, fee_bps),
            execution_cost=int(self.cost_estimator(cycle)),
            min_net_profit=threshold,
        )

        net = opportunity.net_profit
        multiple = self.safety_multiple
        if net <= 0 or net * multiple.denominator < threshold * multiple.numerator:
            raise InsufficientMargin(
                f"Net profit {net} for {cycle.describe()} below {threshold} x {multiple} "
                f"(gross {opportunity.gross_output}, borrow fee {opportunity.borrow_fee}, "
                f"execution cost {opportunity.execution_cost})",
                opportunity=opportunity,
            )

        if opportunity.gross_output != sized.expected_out:
            logger.debug(
                f"Validator replay for {cycle.describe()} gave {opportunity.gross_output}, "
                f"optimizer estimated {sized.expected_out}"
            )
        return opportunity
