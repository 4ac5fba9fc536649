"""Ledger executor boundary and a dry-run implementation."""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from flashcycle.src.flash_arbitrage.exceptions import ExternalTimeout
from flashcycle.src.flash_arbitrage.graph import LiquidityGraph
from flashcycle.src.flash_arbitrage.models import (
    BorrowOp,
    RepayOp,
    SubmitRequest,
    SubmitResult,
    SubmitStatus,
    SwapOp,
    TransferOp,
)

logger = logging.getLogger(__name__)

INSUFFICIENT_OUTPUT_AMOUNT = "INSUFFICIENT_OUTPUT_AMOUNT"
FLASH_LOAN_NOT_REPAID = "FLASH_LOAN_NOT_REPAID"
UNKNOWN_POOL = "UNKNOWN_POOL"
EXPIRED = "EXPIRED"


class LedgerExecutor(ABC):
    """External collaborator that runs a batch of operations all-or-nothing."""

    @abstractmethod
    async def submit(self, request: SubmitRequest) -> SubmitResult:
        """Submit ``request`` and report its terminal status."""


class SimulatedLedgerExecutor(LedgerExecutor):
    """Dry-run executor replaying requests against the latest graph snapshot.

    Balances are tracked per asset for the duration of one request. Any
    floor violation or missing repayment reverts the whole batch; nothing
    is partially applied because nothing is ever written back to the graph.
    """

    def __init__(
        self,
        graph: LiquidityGraph,
        *,
        latency: float = 0.0,
        execution_cost: int = 0,
        clock=None,
    ) -> None:
        self.graph = graph
        self.latency = max(float(latency), 0.0)
        self.execution_cost = int(execution_cost)
        self._clock = clock
        self.requests: List[SubmitRequest] = []

    async def submit(self, request: SubmitRequest) -> SubmitResult:
        self.requests.append(request)
        if self.latency:
            await asyncio.sleep(self.latency)
        if self._clock is not None and request.expiry.elapsed(self._clock()):
            logger.warning(f"Simulated plan {request.plan_id[:8]} arrived after its deadline")
            raise ExternalTimeout(f"{EXPIRED}: plan {request.plan_id} missed its deadline")
        return self._replay(request)

    def _replay(self, request: SubmitRequest) -> SubmitResult:
        view = self.graph.snapshot()
        balances: Dict[str, int] = {}
        debts: Dict[str, int] = {}
        realized: List[int] = []
        borrow_asset: Optional[str] = None

        for index, operation in enumerate(request.ordered_ops):
            if isinstance(operation, BorrowOp):
                borrow_asset = operation.asset
                balances[operation.asset] = balances.get(operation.asset, 0) + operation.amount
                debts[operation.asset] = debts.get(operation.asset, 0) + operation.amount + operation.fee
            elif isinstance(operation, SwapOp):
                try:
                    edge = view.edge(operation.pool_id, operation.token_in)
                except KeyError:
                    return self._revert(request, f"{UNKNOWN_POOL}: {operation.pool_id}")
                available = balances.get(operation.token_in, 0)
                amount_in = min(operation.amount_in, available) if index > 1 else operation.amount_in
                if amount_in > available:
                    return self._revert(request, f"{INSUFFICIENT_OUTPUT_AMOUNT}: hop {len(realized)} lacks input")
                amount_out = edge.quote(amount_in)
                if amount_out < operation.min_amount_out:
                    return self._revert(
                        request,
                        f"{INSUFFICIENT_OUTPUT_AMOUNT}: {operation.pool_id} gave {amount_out} "
                        f"< floor {operation.min_amount_out}",
                    )
                balances[operation.token_in] = available - amount_in
                balances[operation.token_out] = balances.get(operation.token_out, 0) + amount_out
                realized.append(amount_out)
            elif isinstance(operation, RepayOp):
                owed = debts.get(operation.asset, 0)
                if balances.get(operation.asset, 0) < owed or operation.amount < owed:
                    return self._revert(request, FLASH_LOAN_NOT_REPAID)
                balances[operation.asset] -= owed
                debts[operation.asset] = 0
            elif isinstance(operation, TransferOp):
                pass
            else:  # pragma: no cover - exhaustive over Operation
                raise TypeError(f"Unsupported operation {operation!r}")

        if any(debts.values()):
            return self._revert(request, FLASH_LOAN_NOT_REPAID)

        residual = balances.get(borrow_asset, 0) if borrow_asset is not None else 0
        logger.info(
            f"Simulated plan {request.plan_id[:8]} confirmed: residual {residual}, cost {self.execution_cost}"
        )
        return SubmitResult(
            status=SubmitStatus.CONFIRMED,
            realized_amounts=tuple(realized),
            realized_profit=residual - self.execution_cost,
            execution_cost=self.execution_cost,
        )

    @staticmethod
    def _revert(request: SubmitRequest, reason: str) -> SubmitResult:
        logger.warning(f"Simulated plan {request.plan_id[:8]} reverted: {reason}")
        return SubmitResult(status=SubmitStatus.REVERTED, revert_reason=reason)
