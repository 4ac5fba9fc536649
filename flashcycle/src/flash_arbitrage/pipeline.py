"""Event-driven pipeline wiring venue feeds, detection and submission together."""
from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import AsyncIterable, AsyncIterator, Callable, Dict, List, Mapping, Optional, Set, Tuple, Union

from flashcycle.src.flash_arbitrage.config import ArbitrageConfig
from flashcycle.src.flash_arbitrage.coordinator import ExecutionCostEstimator, SubmissionCoordinator
from flashcycle.src.flash_arbitrage.detector import CancellationToken, CycleDetector
from flashcycle.src.flash_arbitrage.events import EventRecorder
from flashcycle.src.flash_arbitrage.exceptions import InsufficientMargin, Rejection
from flashcycle.src.flash_arbitrage.graph import GraphView, LiquidityGraph
from flashcycle.src.flash_arbitrage.ledger import LedgerExecutor, SimulatedLedgerExecutor
from flashcycle.src.flash_arbitrage.models import (
    ExecutionPlan,
    GraphVersion,
    Opportunity,
    Outcome,
    PlanState,
    PoolUpdate,
    opportunity_summary,
)
from flashcycle.src.flash_arbitrage.optimizer import SizeOptimizer
from flashcycle.src.flash_arbitrage.planner import ExecutionPlanner
from flashcycle.src.flash_arbitrage.validator import ProfitValidator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VenueUntrusted:
    """Graph mutation excluding every pool of ``venue`` until it sends fresh data."""

    venue: str
    reason: str = "timeout"


@dataclass(frozen=True)
class PoolsStale:
    """Graph mutation excluding ``pool_ids`` until their next venue update."""

    pool_ids: Tuple[str, ...]
    reason: str = "executed"


GraphMutation = Union[PoolUpdate, VenueUntrusted, PoolsStale]


@dataclass
class ScanReport:
    version: GraphVersion
    cycles: int = 0
    opportunities: List[Opportunity] = field(default_factory=list)
    plans: List[ExecutionPlan] = field(default_factory=list)
    rejections: Counter = field(default_factory=Counter)
    cancelled: bool = False


async def _next_update(iterator: AsyncIterator[PoolUpdate]) -> PoolUpdate:
    return await iterator.__anext__()


class ArbitragePipeline:
    """Single-writer graph updates feeding off-loop detection and coordinated submission.

    Every graph mutation (venue updates, untrusted-venue markers and stale
    markers from executed plans) goes through one queue drained by one
    task. Scans run in a worker thread against an immutable snapshot and
    produce plans that are handed to the :class:`SubmissionCoordinator`.
    """

    def __init__(
        self,
        graph: LiquidityGraph,
        config: ArbitrageConfig,
        *,
        executor: Optional[LedgerExecutor] = None,
        events: Optional[EventRecorder] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.graph = graph
        self.config = config
        self.events = events or EventRecorder(log_path=config.event_log_path)
        if executor is None:
            if not config.dry_run:
                raise ValueError("A ledger executor is required when dry_run is disabled")
            executor = SimulatedLedgerExecutor(graph, clock=clock)
        self.detector = CycleDetector(beam_width=config.beam_width)
        self.optimizer = SizeOptimizer(
            max_utilization_fraction=config.max_utilization_fraction,
            min_notional=config.min_notional,
            max_borrow=config.max_borrow,
            sample_count=config.sample_count,
        )
        self.cost_estimator = ExecutionCostEstimator(config.execution_cost)
        self.validator = ProfitValidator(
            borrow_fee_bps=config.borrow_fee_bps,
            min_net_profit=config.min_net_profit,
            safety_multiple=config.safety_multiple,
            max_utilization_fraction=config.max_utilization_fraction,
            cost_estimator=self.cost_estimator,
        )
        self.planner = ExecutionPlanner(
            profit_sink=config.profit_sink,
            slippage_tolerance_bps=config.slippage_tolerance_bps,
            plan_ttl=config.plan_ttl,
            clock=clock,
        )
        self.coordinator = SubmissionCoordinator(
            executor,
            version_source=lambda: self.graph.version,
            events=self.events,
            cost_estimator=self.cost_estimator,
            submission_timeout=config.submission_timeout,
            priority_fee_multiplier=config.priority_fee_multiplier,
            clock=clock,
        )
        self.coordinator.add_listener(self._on_outcome)
        self._queue: Optional[asyncio.Queue] = None
        self._active_tokens: Set[CancellationToken] = set()
        self._last_scanned: Optional[GraphVersion] = None
        self.reports: List[ScanReport] = []

    # ------------------------------------------------------------------ #
    # Writer side
    # ------------------------------------------------------------------ #
    def apply(self, mutation: GraphMutation) -> GraphVersion:
        """Apply one mutation to the graph; only the queue drainer calls this while running."""

        before = self.graph.version
        if isinstance(mutation, PoolUpdate):
            try:
                version = self.graph.apply_update(mutation)
            except (KeyError, ValueError) as exc:
                logger.warning(f"Rejected venue update for {mutation.pool_id}: {exc}")
                return before
        elif isinstance(mutation, VenueUntrusted):
            logger.warning(f"Venue {mutation.venue} untrusted: {mutation.reason}")
            version = self.graph.mark_venue_untrusted(mutation.venue)
        elif isinstance(mutation, PoolsStale):
            version = self.graph.mark_pools_stale(mutation.pool_ids)
        else:
            raise TypeError(f"Unsupported graph mutation {mutation!r}")

        if version != before and self.config.prefer_fresh_scans:
            for token in list(self._active_tokens):
                if token.version < version:
                    token.cancel(f"graph advanced to version {version}")
        return version

    def enqueue(self, mutation: GraphMutation) -> None:
        if self._queue is None:
            self.apply(mutation)
        else:
            self._queue.put_nowait(mutation)

    def _on_outcome(self, plan: ExecutionPlan, outcome: Outcome) -> None:
        if outcome.state in (PlanState.CONFIRMED, PlanState.REVERTED):
            pool_ids = tuple(dict.fromkeys(plan.opportunity.cycle.pool_ids))
            self.enqueue(PoolsStale(pool_ids=pool_ids, reason=outcome.state.value))

    # ------------------------------------------------------------------ #
    # Reader side
    # ------------------------------------------------------------------ #
    def scan(self, view: Optional[GraphView] = None, token: Optional[CancellationToken] = None) -> ScanReport:
        """Detect, size, validate and plan against one snapshot."""

        view = view or self.graph.snapshot()
        report = ScanReport(version=view.version)
        origins = self.config.origin_assets or view.assets

        sized = []
        for cycle in self.detector.find_negative_cycles(view, self.config.max_hops, origins, token):
            report.cycles += 1
            self.events.opportunity_detected(
                route=cycle.describe(),
                graph_version=cycle.version,
                rate_product=round(cycle.rate_product, 8),
            )
            candidate = self.optimizer.optimize(cycle)
            if candidate is None:
                report.rejections[InsufficientMargin.reason] += 1
                self.events.opportunity_rejected(
                    InsufficientMargin.reason, route=cycle.describe(), stage="sizing"
                )
                continue
            sized.append(candidate)

        if token is not None and token.cancelled:
            report.cancelled = True
            return report

        for candidate in self.optimizer.select(sized):
            try:
                opportunity = self.validator.validate(candidate, current_version=self.graph.version)
            except Rejection as exc:
                report.rejections[exc.reason] += 1
                self.events.opportunity_rejected(
                    exc.reason, route=candidate.cycle.describe(), detail=str(exc)
                )
                continue
            report.opportunities.append(opportunity)
            report.plans.append(self.planner.plan(opportunity))
        return report

    def scan_token(self, view: GraphView) -> CancellationToken:
        """Token cancelled once the graph moves past ``view`` (with ``prefer_fresh_scans``)."""

        token = CancellationToken(view.version)
        self._active_tokens.add(token)
        return token

    def release_token(self, token: CancellationToken) -> None:
        self._active_tokens.discard(token)

    async def detect_and_submit(self) -> ScanReport:
        view = self.graph.snapshot()
        token = self.scan_token(view)
        try:
            report = await asyncio.to_thread(self.scan, view, token)
        finally:
            self.release_token(token)
        self._last_scanned = view.version
        self.reports.append(report)
        if report.cancelled:
            logger.info(f"Discarded scan of version {view.version}: {token.reason}")
            return report
        for plan in report.plans:
            self.coordinator.schedule(plan)
        logger.info(
            f"Scan of version {view.version}: {report.cycles} cycle(s), "
            f"{len(report.plans)} plan(s), rejections {dict(report.rejections)}"
        )
        return report

    # ------------------------------------------------------------------ #
    # Tasks
    # ------------------------------------------------------------------ #
    async def _apply_loop(self, queue: asyncio.Queue, trigger: asyncio.Event) -> None:
        while True:
            mutation = await queue.get()
            try:
                before = self.graph.version
                if self.apply(mutation) != before:
                    trigger.set()
            finally:
                queue.task_done()

    async def _feed(
        self,
        venue: str,
        stream: AsyncIterable[PoolUpdate],
        queue: asyncio.Queue,
        stop_event: asyncio.Event,
    ) -> None:
        iterator = stream.__aiter__()
        stop_task = asyncio.create_task(stop_event.wait(), name=f"feed-stop-{venue}")
        next_task: Optional[asyncio.Task] = None
        try:
            while not stop_event.is_set():
                if next_task is None:
                    next_task = asyncio.create_task(_next_update(iterator), name=f"feed-{venue}")
                done, _ = await asyncio.wait(
                    {next_task, stop_task},
                    timeout=self.config.venue_timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if not done:
                    logger.warning(f"Venue {venue} silent for {self.config.venue_timeout}s")
                    await queue.put(VenueUntrusted(venue=venue, reason="timeout"))
                    continue
                if next_task not in done:
                    break
                finished, next_task = next_task, None
                try:
                    update = finished.result()
                except StopAsyncIteration:
                    logger.info(f"Feed for venue {venue} finished")
                    break
                await queue.put(update)
        finally:
            for task in (next_task, stop_task):
                if task is not None and not task.done():
                    task.cancel()
            await asyncio.gather(
                *(task for task in (next_task, stop_task) if task is not None),
                return_exceptions=True,
            )

    async def _detect_loop(self, trigger: asyncio.Event, stop_event: asyncio.Event) -> None:
        while True:
            await trigger.wait()
            trigger.clear()
            if self.graph.version != self._last_scanned:
                await self.detect_and_submit()
            if stop_event.is_set() and not trigger.is_set():
                return

    async def run(
        self,
        feeds: Mapping[str, AsyncIterable[PoolUpdate]],
        *,
        stop_event: Optional[asyncio.Event] = None,
    ) -> Dict[str, int]:
        """Run until every feed finishes or ``stop_event`` is set; return the event summary."""

        stop_event = stop_event or asyncio.Event()
        queue: asyncio.Queue = asyncio.Queue()
        trigger = asyncio.Event()
        self._queue = queue

        applier = asyncio.create_task(self._apply_loop(queue, trigger), name="graph-writer")
        detector = asyncio.create_task(self._detect_loop(trigger, stop_event), name="cycle-detector")
        feed_tasks = [
            asyncio.create_task(self._feed(venue, stream, queue, stop_event), name=f"venue-{venue}")
            for venue, stream in feeds.items()
        ]
        try:
            await asyncio.gather(*feed_tasks)
            await queue.join()
            stop_event.set()
            trigger.set()
            await detector
            await self.coordinator.drain()
            await queue.join()
        except asyncio.CancelledError:  # pragma: no cover - cancellation path
            pass
        finally:
            stop_event.set()
            for task in (applier, detector, *feed_tasks):
                task.cancel()
            await asyncio.gather(applier, detector, *feed_tasks, return_exceptions=True)
            self._queue = None

        summary = self.events.summary()
        logger.info(f"Pipeline finished at graph version {self.graph.version}: {summary}")
        return summary


def describe_plan(plan: ExecutionPlan) -> Dict[str, object]:
    """Flatten ``plan`` for logs and CLI output."""

    return {
        "plan_id": plan.plan_id,
        "deadline": plan.expiry.deadline,
        "min_outputs": list(plan.min_outputs),
        **opportunity_summary(plan.opportunity),
    }
