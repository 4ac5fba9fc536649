"""Compile validated opportunities into atomic execution plans."""
from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional

from flashcycle.src.flash_arbitrage.exceptions import StaleStateError
from flashcycle.src.flash_arbitrage.models import (
    BPS_DENOMINATOR,
    BorrowOp,
    ExecutionPlan,
    Operation,
    Opportunity,
    PlanExpiry,
    RepayOp,
    SwapOp,
    TransferOp,
)

logger = logging.getLogger(__name__)


def apply_slippage(amount: int, tolerance_bps: int) -> int:
    """Minimum acceptable output for ``amount`` given ``tolerance_bps`` of slippage."""

    return amount * (BPS_DENOMINATOR - tolerance_bps) // BPS_DENOMINATOR


class ExecutionPlanner:
    """Emits borrow -> swaps -> repay -> sweep, each swap carrying an output floor.

    The floors are the all-or-nothing contract handed to the ledger executor:
    if any swap cannot meet its floor the whole batch must revert. The last
    floor is never lower than the repayment so the floors alone guarantee
    the loan is repaid.
    """

    def __init__(
        self,
        *,
        profit_sink: str,
        slippage_tolerance_bps: int = 50,
        plan_ttl: float = 12.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not profit_sink:
            raise ValueError("profit_sink must be provided")
        if not 0 <= slippage_tolerance_bps < BPS_DENOMINATOR:
            raise ValueError("slippage_tolerance_bps must be within [0, 10000)")
        if plan_ttl <= 0:
            raise ValueError("plan_ttl must be positive")
        self.profit_sink = profit_sink
        self.slippage_tolerance_bps = int(slippage_tolerance_bps)
        self.plan_ttl = float(plan_ttl)
        self._clock = clock

    def plan(self, opportunity: Opportunity, slippage_tolerance: Optional[int] = None) -> ExecutionPlan:
        tolerance = self.slippage_tolerance_bps if slippage_tolerance is None else int(slippage_tolerance)
        if not 0 <= tolerance < BPS_DENOMINATOR:
            raise ValueError("slippage_tolerance must be within [0, 10000) bps")

        cycle = opportunity.cycle
        if cycle.version != opportunity.version:
            raise StaleStateError(
                f"Opportunity version {opportunity.version} does not match cycle version {cycle.version}"
            )

        operations: List[Operation] = [
            BorrowOp(
                asset=opportunity.borrow_asset,
                amount=opportunity.borrow_amount,
                fee=opportunity.borrow_fee,
            )
        ]
        last_index = cycle.hops - 1
        for index, (edge, amount_in, expected_out) in enumerate(
            zip(cycle.edges, opportunity.hop_inputs, opportunity.hop_outputs)
        ):
            floor = max(apply_slippage(expected_out, tolerance), 1)
            if index == last_index:
                floor = max(floor, opportunity.repay_amount)
            operations.append(
                SwapOp(
                    pool_id=edge.pool_id,
                    venue=edge.venue,
                    token_in=edge.token_in,
                    token_out=edge.token_out,
                    amount_in=amount_in,
                    expected_amount_out=expected_out,
                    min_amount_out=floor,
                )
            )
        operations.append(RepayOp(asset=opportunity.borrow_asset, amount=opportunity.repay_amount))
        operations.append(
            TransferOp(
                asset=opportunity.borrow_asset,
                destination=self.profit_sink,
                expected_amount=opportunity.gross_output - opportunity.repay_amount,
            )
        )

        now = self._clock()
        plan = ExecutionPlan(
            opportunity=opportunity,
            operations=tuple(operations),
            expiry=PlanExpiry(deadline=now + self.plan_ttl, graph_version=opportunity.version),
            created_at=now,
        )
        logger.info(
            f"Planned {plan.plan_id[:8]}: borrow {opportunity.borrow_amount} {opportunity.borrow_asset} "
            f"over {cycle.describe()}, net {opportunity.net_profit}, floors {list(plan.min_outputs)}"
        )
        return plan
