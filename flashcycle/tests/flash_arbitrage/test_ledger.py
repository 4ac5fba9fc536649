import asyncio
import dataclasses

import pytest

from flashcycle.src.flash_arbitrage.detector import find_negative_cycles
from flashcycle.src.flash_arbitrage.exceptions import ExternalTimeout
from flashcycle.src.flash_arbitrage.ledger import (
    EXPIRED,
    FLASH_LOAN_NOT_REPAID,
    INSUFFICIENT_OUTPUT_AMOUNT,
    UNKNOWN_POOL,
    SimulatedLedgerExecutor,
)
from flashcycle.src.flash_arbitrage.models import BorrowOp, PoolUpdate, SubmitStatus
from flashcycle.src.flash_arbitrage.optimizer import SizeOptimizer
from flashcycle.src.flash_arbitrage.planner import ExecutionPlanner
from flashcycle.src.flash_arbitrage.validator import ProfitValidator


@pytest.fixture
def plan(two_pool_graph, clock):
    cycle = next(find_negative_cycles(two_pool_graph.snapshot(), 4, ["A"]))
    opportunity = ProfitValidator(cost_estimator=lambda cycle: 25).validate(SizeOptimizer().optimize(cycle))
    return ExecutionPlanner(profit_sink="vault", clock=clock).plan(opportunity)


def test_unchanged_graph_confirms_with_planned_profit(two_pool_graph, plan):
    executor = SimulatedLedgerExecutor(two_pool_graph, execution_cost=25)

    result = asyncio.run(executor.submit(plan.to_request()))

    opportunity = plan.opportunity
    assert result.status == SubmitStatus.CONFIRMED
    assert result.realized_amounts == opportunity.hop_outputs
    assert result.realized_profit == opportunity.net_profit
    assert result.execution_cost == 25
    assert executor.requests[0].plan_id == plan.plan_id


def test_adverse_move_reverts_the_whole_batch(two_pool_graph, plan):
    two_pool_graph.apply_update(PoolUpdate("pool2", 950_000, 1_900_000, 30, sequence=2))
    executor = SimulatedLedgerExecutor(two_pool_graph)

    result = asyncio.run(executor.submit(plan.to_request()))

    assert result.status == SubmitStatus.REVERTED
    assert result.revert_reason.startswith(INSUFFICIENT_OUTPUT_AMOUNT)
    assert result.realized_amounts is None


def test_excluded_pool_reverts(two_pool_graph, plan):
    two_pool_graph.mark_pools_stale(["pool2"])

    result = asyncio.run(SimulatedLedgerExecutor(two_pool_graph).submit(plan.to_request()))

    assert result.revert_reason.startswith(UNKNOWN_POOL)


def test_unrepayable_loan_reverts(two_pool_graph, plan):
    operations = list(plan.operations)
    borrow = operations[0]
    assert isinstance(borrow, BorrowOp)
    operations[0] = dataclasses.replace(borrow, fee=10 ** 9)
    greedy = dataclasses.replace(plan, operations=tuple(operations))

    result = asyncio.run(SimulatedLedgerExecutor(two_pool_graph).submit(greedy.to_request()))

    assert result.status == SubmitStatus.REVERTED
    assert result.revert_reason == FLASH_LOAN_NOT_REPAID


def test_requests_past_their_deadline_time_out_instead_of_reverting(two_pool_graph, plan, clock):
    clock.advance(60.0)
    executor = SimulatedLedgerExecutor(two_pool_graph, clock=clock)

    with pytest.raises(ExternalTimeout, match=EXPIRED):
        asyncio.run(executor.submit(plan.to_request()))

    assert executor.requests[0].plan_id == plan.plan_id
