"""Submission of execution plans to the external ledger executor."""
from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Set

from flashcycle.src.flash_arbitrage.events import EventRecorder
from flashcycle.src.flash_arbitrage.exceptions import (
    ExecutionReverted,
    ExternalTimeout,
    InvalidTransition,
    PlanSuperseded,
)
from flashcycle.src.flash_arbitrage.ledger import LedgerExecutor
from flashcycle.src.flash_arbitrage.models import (
    Confirmed,
    Cycle,
    ExecutionPlan,
    Expired,
    GraphVersion,
    Outcome,
    PlanState,
    PriorityHint,
    PriorityLevel,
    Reverted,
    SubmitResult,
    SubmitStatus,
    Superseded,
    opportunity_summary,
)

logger = logging.getLogger(__name__)

OutcomeListener = Callable[[ExecutionPlan, Outcome], None]

_ALLOWED_TRANSITIONS = {
    PlanState.BUILT: {PlanState.SUBMITTED, PlanState.EXPIRED, PlanState.SUPERSEDED},
    PlanState.SUBMITTED: {
        PlanState.CONFIRMED,
        PlanState.REVERTED,
        PlanState.EXPIRED,
        PlanState.SUPERSEDED,
    },
}


class ExecutionCostEstimator:
    """Per-asset execution cost model corrected by realised costs.

    The static estimate is ``base + per_hop * hops`` in units of the borrow
    asset. Every realised cost reported by the executor updates an
    exponential moving average of ``realised / estimated`` which scales
    later estimates.
    """

    def __init__(
        self,
        costs: Optional[Mapping[str, Mapping[str, int]]] = None,
        *,
        smoothing: float = 0.2,
    ) -> None:
        if not 0 < smoothing <= 1:
            raise ValueError("smoothing must be within (0, 1]")
        self.costs: Dict[str, Dict[str, int]] = {
            asset: {"base": int(values.get("base", 0)), "per_hop": int(values.get("per_hop", 0))}
            for asset, values in (costs or {}).items()
        }
        self.smoothing = smoothing
        self._ratios: Dict[str, float] = {}

    def static_estimate(self, asset: str, hops: int) -> int:
        model = self.costs.get(asset, self.costs.get("default", {"base": 0, "per_hop": 0}))
        return model["base"] + model["per_hop"] * hops

    def ratio(self, asset: str) -> float:
        return self._ratios.get(asset, 1.0)

    def estimate(self, cycle: Cycle) -> int:
        static = self.static_estimate(cycle.origin, cycle.hops)
        return int(math.ceil(static * self.ratio(cycle.origin)))

    __call__ = estimate

    def observe(self, cycle: Cycle, realized_cost: int) -> None:
        static = self.static_estimate(cycle.origin, cycle.hops)
        if static <= 0:
            return
        sample = realized_cost / static
        previous = self._ratios.get(cycle.origin)
        if previous is None:
            updated = sample
        else:
            updated = previous + self.smoothing * (sample - previous)
        self._ratios[cycle.origin] = updated
        logger.debug(f"Execution cost ratio for {cycle.origin} now {updated:.3f} (sample {sample:.3f})")


def priority_hint(
    plan: ExecutionPlan,
    *,
    now: float,
    base_fee_multiplier: float = 1.1,
) -> PriorityHint:
    """Urgency grows with plan age and hop count; older, longer plans bid higher."""

    lifetime = plan.expiry.deadline - plan.created_at
    age_fraction = 0.0
    if lifetime > 0:
        age_fraction = min(max((now - plan.created_at) / lifetime, 0.0), 1.0)
    hop_fraction = min(max((plan.opportunity.cycle.hops - 1) / 3.0, 0.0), 1.0)
    urgency = round(min(1.0, 0.7 * age_fraction + 0.3 * hop_fraction), 4)

    if urgency < 0.25:
        level = PriorityLevel.LOW
    elif urgency < 0.5:
        level = PriorityLevel.NORMAL
    elif urgency < 0.75:
        level = PriorityLevel.HIGH
    else:
        level = PriorityLevel.URGENT
    return PriorityHint(
        urgency=urgency,
        level=level,
        fee_multiplier=round(base_fee_multiplier * (1.0 + urgency), 4),
    )


@dataclass
class PlanRecord:
    """Lifecycle of one plan inside the coordinator."""

    plan: ExecutionPlan
    state: PlanState = PlanState.BUILT
    outcome: Optional[Outcome] = None
    history: List[PlanState] = field(default_factory=lambda: [PlanState.BUILT])

    def transition(self, new_state: PlanState) -> None:
        allowed = _ALLOWED_TRANSITIONS.get(self.state, set())
        if new_state not in allowed:
            raise InvalidTransition(
                f"Plan {self.plan.plan_id} cannot move from {self.state.value} to {new_state.value}"
            )
        self.state = new_state
        self.history.append(new_state)


class SubmissionCoordinator:
    """Hands plans to the ledger executor and tracks them to a terminal state.

    Plans borrowing the same asset are serialised behind one
    ``asyncio.Lock`` per asset so capital is never committed twice. A plan
    is refused without submission once its deadline has passed or the
    graph has moved past the version it was priced at. Nothing is retried.
    """

    def __init__(
        self,
        executor: LedgerExecutor,
        *,
        version_source: Callable[[], GraphVersion],
        events: Optional[EventRecorder] = None,
        cost_estimator: Optional[ExecutionCostEstimator] = None,
        submission_timeout: float = 12.0,
        priority_fee_multiplier: float = 1.1,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if submission_timeout <= 0:
            raise ValueError("submission_timeout must be positive")
        self.executor = executor
        self._version_source = version_source
        self.events = events or EventRecorder()
        self.cost_estimator = cost_estimator
        self.submission_timeout = float(submission_timeout)
        self.priority_fee_multiplier = float(priority_fee_multiplier)
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}
        self._records: Dict[str, PlanRecord] = {}
        self._listeners: List[OutcomeListener] = []
        self._tasks: Set[asyncio.Task] = set()
        self.revert_reasons: Counter = Counter()

    def add_listener(self, listener: OutcomeListener) -> None:
        self._listeners.append(listener)

    def record(self, plan_id: str) -> PlanRecord:
        return self._records[plan_id]

    @property
    def records(self) -> List[PlanRecord]:
        return list(self._records.values())

    def in_flight(self, asset: str) -> bool:
        lock = self._locks.get(asset)
        return lock is not None and lock.locked()

    def priority_for(self, plan: ExecutionPlan) -> PriorityHint:
        return priority_hint(plan, now=self._clock(), base_fee_multiplier=self.priority_fee_multiplier)

    # ------------------------------------------------------------------ #
    def schedule(self, plan: ExecutionPlan) -> asyncio.Task:
        """Submit ``plan`` in the background; the task resolves to its outcome."""

        task = asyncio.create_task(self.submit(plan), name=f"submit-{plan.plan_id[:8]}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> List[Outcome]:
        """Wait for every scheduled submission to finish."""

        if not self._tasks:
            return []
        return list(await asyncio.gather(*list(self._tasks)))

    async def submit(self, plan: ExecutionPlan) -> Outcome:
        if plan.plan_id in self._records:
            raise InvalidTransition(f"Plan {plan.plan_id} was already handed to the coordinator")
        record = PlanRecord(plan=plan)
        self._records[plan.plan_id] = record

        refusal = self._refusal(record)
        if refusal is not None:
            return refusal

        lock = self._locks.setdefault(plan.borrow_asset, asyncio.Lock())
        if lock.locked():
            logger.info(
                f"Plan {plan.plan_id[:8]} waiting for in-flight {plan.borrow_asset} plan to settle"
            )
            try:
                await asyncio.wait_for(lock.acquire(), timeout=max(plan.expiry.remaining(self._clock()), 0.0))
            except asyncio.TimeoutError:
                self.events.opportunity_rejected("Expired", plan_id=plan.plan_id, stage="capital_lock")
                return self._finish(record, Expired(reason="deadline passed waiting for capital"))
        else:
            await lock.acquire()

        try:
            refusal = self._refusal(record)
            if refusal is not None:
                return refusal
            return await self._submit_locked(record)
        finally:
            lock.release()

    async def _submit_locked(self, record: PlanRecord) -> Outcome:
        plan = record.plan
        request = plan.to_request(self.priority_for(plan))
        timeout = min(self.submission_timeout, plan.expiry.remaining(self._clock()))
        record.transition(PlanState.SUBMITTED)
        self.events.plan_submitted(
            plan_id=plan.plan_id,
            priority=request.priority.level.value if request.priority else None,
            **opportunity_summary(plan.opportunity),
        )

        try:
            result = await asyncio.wait_for(self.executor.submit(request), timeout=timeout)
        except (asyncio.TimeoutError, ExternalTimeout):
            logger.warning(
                f"Ledger executor did not settle plan {plan.plan_id[:8]} within {timeout:.2f}s"
            )
            return self._expire(record)
        except ExecutionReverted as exc:
            result = SubmitResult(status=SubmitStatus.REVERTED, revert_reason=str(exc))
        except PlanSuperseded as exc:
            result = SubmitResult(status=SubmitStatus.SUPERSEDED, revert_reason=str(exc))

        # a failed result that lands past the deadline counts as a timeout
        if result.status != SubmitStatus.CONFIRMED and plan.expiry.elapsed(self._clock()):
            logger.warning(
                f"Plan {plan.plan_id[:8]} settled as {result.status.value} after its deadline"
            )
            return self._expire(record)
        return self._resolve(record, result)

    def _expire(self, record: PlanRecord) -> Outcome:
        self.events.opportunity_rejected(ExternalTimeout.reason, plan_id=record.plan.plan_id)
        return self._finish(record, Expired(reason=ExternalTimeout.reason))

    def _refusal(self, record: PlanRecord) -> Optional[Outcome]:
        plan = record.plan
        if plan.expiry.elapsed(self._clock()):
            self.events.opportunity_rejected("Expired", plan_id=plan.plan_id, stage="pre_submit")
            return self._finish(record, Expired())
        current = self._version_source()
        if current != plan.expiry.graph_version:
            self.events.opportunity_rejected(
                PlanSuperseded.reason,
                plan_id=plan.plan_id,
                plan_version=plan.expiry.graph_version,
                current_version=current,
            )
            return self._finish(
                record,
                Superseded(reason=f"graph moved from {plan.expiry.graph_version} to {current}"),
            )
        return None

    def _resolve(self, record: PlanRecord, result: SubmitResult) -> Outcome:
        plan = record.plan
        if result.status == SubmitStatus.CONFIRMED:
            profit = result.realized_profit
            if profit is None:
                profit = plan.opportunity.net_profit
            if result.execution_cost is not None and self.cost_estimator is not None:
                self.cost_estimator.observe(plan.opportunity.cycle, result.execution_cost)
            self.events.plan_confirmed(profit, plan_id=plan.plan_id, asset=plan.borrow_asset)
            return self._finish(record, Confirmed(realized_profit=profit))

        if result.status == SubmitStatus.REVERTED:
            reason = result.revert_reason or "unknown"
            self.revert_reasons[reason] += 1
            self.events.plan_reverted(reason, plan_id=plan.plan_id, asset=plan.borrow_asset)
            return self._finish(record, Reverted(reason=reason))

        self.events.opportunity_rejected(PlanSuperseded.reason, plan_id=plan.plan_id, stage="executor")
        return self._finish(record, Superseded(reason=result.revert_reason or "executor reported superseded"))

    def _finish(self, record: PlanRecord, outcome: Outcome) -> Outcome:
        record.transition(outcome.state)
        record.outcome = outcome
        logger.info(f"Plan {record.plan.plan_id[:8]} finished as {outcome.state.value}")
        for listener in self._listeners:
            listener(record.plan, outcome)
        return outcome
