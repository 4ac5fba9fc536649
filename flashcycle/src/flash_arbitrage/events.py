"""Structured observability events for the arbitrage pipeline."""
from __future__ import annotations

import enum
import json
import logging
import threading
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Union

import pandas as pd

logger = logging.getLogger(__name__)


class EventType(str, enum.Enum):
    OPPORTUNITY_DETECTED = "OpportunityDetected"
    OPPORTUNITY_REJECTED = "OpportunityRejected"
    PLAN_SUBMITTED = "PlanSubmitted"
    PLAN_CONFIRMED = "PlanConfirmed"
    PLAN_REVERTED = "PlanReverted"


@dataclass(frozen=True)
class ArbitrageEvent:
    type: EventType
    payload: Dict[str, Any]
    observed_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def reason(self) -> Optional[str]:
        return self.payload.get("reason")

    def to_record(self) -> Dict[str, Any]:
        return {"event": self.type.value, "observed_at": self.observed_at, **self.payload}


Subscriber = Callable[[ArbitrageEvent], None]


class EventRecorder:
    """Fan-out point for pipeline events.

    Every event is logged, kept in a bounded history, appended as a JSON
    line to ``log_path`` when one is configured, and handed to subscribers
    (the external metrics/alerting collaborator).
    """

    def __init__(
        self,
        *,
        log_path: Optional[Union[str, Path]] = None,
        history_size: int = 10_000,
    ) -> None:
        self.log_path = Path(log_path) if log_path else None
        self._history: Deque[ArbitrageEvent] = deque(maxlen=history_size)
        self._subscribers: List[Subscriber] = []
        # detection threads and the event loop both emit
        self._lock = threading.RLock()

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    @property
    def events(self) -> List[ArbitrageEvent]:
        with self._lock:
            return list(self._history)

    def of_type(self, event_type: EventType) -> List[ArbitrageEvent]:
        return [event for event in self.events if event.type == event_type]

    def emit(self, event_type: EventType, **payload: Any) -> ArbitrageEvent:
        event = ArbitrageEvent(type=event_type, payload=payload)
        level = logging.WARNING if event_type == EventType.PLAN_REVERTED else logging.INFO
        details = " ".join(f"{key}={value}" for key, value in payload.items())
        logger.log(level, f"{event_type.value}: {details}")
        with self._lock:
            self._history.append(event)
            if self.log_path is not None:
                self._append(event)
            for subscriber in self._subscribers:
                subscriber(event)
        return event

    def opportunity_detected(self, **payload: Any) -> ArbitrageEvent:
        return self.emit(EventType.OPPORTUNITY_DETECTED, **payload)

    def opportunity_rejected(self, reason: str, **payload: Any) -> ArbitrageEvent:
        return self.emit(EventType.OPPORTUNITY_REJECTED, reason=reason, **payload)

    def plan_submitted(self, **payload: Any) -> ArbitrageEvent:
        return self.emit(EventType.PLAN_SUBMITTED, **payload)

    def plan_confirmed(self, profit: int, **payload: Any) -> ArbitrageEvent:
        return self.emit(EventType.PLAN_CONFIRMED, profit=profit, **payload)

    def plan_reverted(self, reason: str, **payload: Any) -> ArbitrageEvent:
        return self.emit(EventType.PLAN_REVERTED, reason=reason, **payload)

    def _append(self, event: ArbitrageEvent) -> None:
        assert self.log_path is not None
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with self.log_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(event.to_record(), default=str) + "\n")

    def to_frame(self) -> pd.DataFrame:
        """Event history as a DataFrame, one row per event."""

        records = [event.to_record() for event in self.events]
        frame = pd.DataFrame.from_records(records)
        if frame.empty:
            return pd.DataFrame(columns=["event", "observed_at"])
        frame["observed_at"] = pd.to_datetime(frame["observed_at"], utc=True)
        return frame

    def summary(self) -> Dict[str, Union[int, float]]:
        """Counts per event type, rejections and reverts split by reason.

        Once a plan has been submitted the summary also carries the realised
        ``total_profit`` and the ``success_rate`` of submitted plans.
        """

        counts: Counter[str] = Counter()
        total_profit = 0
        for event in self.events:
            key = event.type.value
            if event.reason and event.type in (EventType.OPPORTUNITY_REJECTED, EventType.PLAN_REVERTED):
                key = f"{key}:{event.reason}"
            elif event.type == EventType.PLAN_CONFIRMED:
                total_profit += int(event.payload.get("profit") or 0)
            counts[key] += 1

        summary: Dict[str, Union[int, float]] = dict(counts)
        submitted = counts[EventType.PLAN_SUBMITTED.value]
        if submitted:
            summary["total_profit"] = total_profit
            summary["success_rate"] = round(counts[EventType.PLAN_CONFIRMED.value] / submitted, 4)
        return summary
