"""Data models used by the flash-loan arbitrage core."""
from __future__ import annotations

import enum
import math
import sys
import time
import uuid
from dataclasses import dataclass, field
from fractions import Fraction
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple, Union

from flashcycle.src.flash_arbitrage.exceptions import (
    PlanIntegrityError,
    StaleStateError,
)

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from flashcycle.src.flash_arbitrage.venues import VenueAdapter

Asset = str
GraphVersion = int

BPS_DENOMINATOR = 10_000


def as_fraction(value: Any) -> Fraction:
    """Exact fraction for a config value such as ``1.2``, ``"6/5"`` or ``Fraction(6, 5)``."""

    if isinstance(value, Fraction):
        return value
    return Fraction(str(value))


def intern_asset(symbol: Any) -> Asset:
    """Return the canonical interned identifier for ``symbol``."""

    value = str(symbol).strip()
    if not value:
        raise ValueError("Asset identifiers must be non-empty")
    return sys.intern(value)


@dataclass(frozen=True)
class PoolDefinition:
    """Static topology of a pool: which venue it lives on and what it trades."""

    pool_id: str
    venue: str
    asset_a: Asset
    asset_b: Asset

    def __post_init__(self) -> None:
        object.__setattr__(self, "asset_a", intern_asset(self.asset_a))
        object.__setattr__(self, "asset_b", intern_asset(self.asset_b))
        if self.asset_a == self.asset_b:
            raise ValueError(f"Pool {self.pool_id} must trade two distinct assets")


@dataclass(frozen=True)
class PoolUpdate:
    """Reserve update delivered by a venue adapter stream."""

    pool_id: str
    reserve_a: int
    reserve_b: int
    fee_bps: int
    sequence: int


@dataclass(frozen=True)
class PoolState:
    """Priced state of one pool as applied to the liquidity graph."""

    definition: PoolDefinition
    reserve_a: int
    reserve_b: int
    fee_bps: int
    sequence: int
    last_updated: GraphVersion
    updated_at: float = field(default_factory=time.time)

    @property
    def pool_id(self) -> str:
        return self.definition.pool_id

    @property
    def venue(self) -> str:
        return self.definition.venue

    @property
    def assets(self) -> Tuple[Asset, Asset]:
        return self.definition.asset_a, self.definition.asset_b

    def other(self, asset: Asset) -> Asset:
        if asset == self.definition.asset_a:
            return self.definition.asset_b
        if asset == self.definition.asset_b:
            return self.definition.asset_a
        raise ValueError(f"Pool {self.pool_id} does not trade {asset}")

    def reserves_for(self, token_in: Asset) -> Tuple[int, int]:
        """Return ``(reserve_in, reserve_out)`` when selling ``token_in``."""

        if token_in == self.definition.asset_a:
            return self.reserve_a, self.reserve_b
        if token_in == self.definition.asset_b:
            return self.reserve_b, self.reserve_a
        raise ValueError(f"Pool {self.pool_id} does not trade {token_in}")

    @property
    def priced(self) -> bool:
        return self.reserve_a > 0 and self.reserve_b > 0


@dataclass(frozen=True)
class PoolEdge:
    """One trading direction of a pool inside a single graph snapshot."""

    pool: PoolState
    token_in: Asset
    token_out: Asset
    adapter: "VenueAdapter"
    version: GraphVersion

    @property
    def pool_id(self) -> str:
        return self.pool.pool_id

    @property
    def venue(self) -> str:
        return self.pool.venue

    def quote(self, amount_in: int) -> int:
        return self.adapter.quote(self.pool, self.token_in, amount_in)

    def capacity(self) -> int:
        return self.adapter.capacity(self.pool, self.token_in)

    @property
    def spot_rate(self) -> float:
        return self.adapter.spot_rate(self.pool, self.token_in)

    @property
    def weight(self) -> float:
        rate = self.spot_rate
        if rate <= 0:
            return math.inf
        return -math.log(rate)

    def describe(self) -> str:
        return f"{self.token_in}->{self.token_out}@{self.pool_id}"


@dataclass(frozen=True)
class Cycle:
    """Closed sequence of pool edges starting and ending at ``origin``."""

    origin: Asset
    edges: Tuple[PoolEdge, ...]
    log_weight: float
    version: GraphVersion

    def __post_init__(self) -> None:
        if len(self.edges) < 2:
            raise ValueError("A cycle needs at least two hops")
        if self.edges[0].token_in != self.origin or self.edges[-1].token_out != self.origin:
            raise ValueError(f"Cycle does not start and end at {self.origin}")
        for previous, current in zip(self.edges, self.edges[1:]):
            if previous.token_out != current.token_in:
                raise ValueError(
                    f"Broken cycle: {previous.describe()} does not feed {current.describe()}"
                )
        versions = {edge.version for edge in self.edges}
        if versions != {self.version}:
            raise StaleStateError(
                f"Cycle mixes graph versions {sorted(versions)} (tagged {self.version})"
            )

    @property
    def hops(self) -> int:
        return len(self.edges)

    @property
    def pool_ids(self) -> Tuple[str, ...]:
        return tuple(edge.pool_id for edge in self.edges)

    @property
    def assets(self) -> Tuple[Asset, ...]:
        return (self.origin,) + tuple(edge.token_out for edge in self.edges)

    @property
    def rate_product(self) -> float:
        return math.exp(-self.log_weight)

    def replay(self, amount_in: int) -> Tuple[int, ...]:
        """Return the output of every hop when ``amount_in`` enters the cycle."""

        outputs = []
        amount = amount_in
        for edge in self.edges:
            amount = edge.quote(amount)
            outputs.append(amount)
        return tuple(outputs)

    def describe(self) -> str:
        return " -> ".join(self.assets) + f" via {', '.join(self.pool_ids)}"


@dataclass(frozen=True)
class SizedOpportunity:
    """A cycle together with the trade size chosen by the size optimizer."""

    cycle: Cycle
    amount_in: int
    expected_out: int
    used_fallback: bool = False
    evaluations: int = 0

    @property
    def borrow_asset(self) -> Asset:
        return self.cycle.origin

    @property
    def version(self) -> GraphVersion:
        return self.cycle.version

    @property
    def estimated_profit(self) -> int:
        return self.expected_out - self.amount_in


@dataclass(frozen=True)
class Opportunity:
    """A sized opportunity whose profit has been recomputed exactly."""

    sized: SizedOpportunity
    hop_outputs: Tuple[int, ...]
    borrow_fee: int
    execution_cost: int
    min_net_profit: int
    detected_at: float = field(default_factory=time.time)

    @property
    def cycle(self) -> Cycle:
        return self.sized.cycle

    @property
    def borrow_asset(self) -> Asset:
        return self.sized.borrow_asset

    @property
    def borrow_amount(self) -> int:
        return self.sized.amount_in

    @property
    def version(self) -> GraphVersion:
        return self.sized.version

    @property
    def gross_output(self) -> int:
        return self.hop_outputs[-1]

    @property
    def repay_amount(self) -> int:
        return self.borrow_amount + self.borrow_fee

    @property
    def net_profit(self) -> int:
        return self.gross_output - self.repay_amount - self.execution_cost

    @property
    def hop_inputs(self) -> Tuple[int, ...]:
        return (self.borrow_amount,) + self.hop_outputs[:-1]


@dataclass(frozen=True)
class BorrowOp:
    asset: Asset
    amount: int
    fee: int


@dataclass(frozen=True)
class SwapOp:
    pool_id: str
    venue: str
    token_in: Asset
    token_out: Asset
    amount_in: int
    expected_amount_out: int
    min_amount_out: int


@dataclass(frozen=True)
class RepayOp:
    asset: Asset
    amount: int


@dataclass(frozen=True)
class TransferOp:
    """Sweep of the residual balance of ``asset`` to the profit sink."""

    asset: Asset
    destination: str
    expected_amount: int


Operation = Union[BorrowOp, SwapOp, RepayOp, TransferOp]


@dataclass(frozen=True)
class PlanExpiry:
    """Hard expiry of a plan: wall-clock deadline plus the graph version it used."""

    deadline: float
    graph_version: GraphVersion

    def elapsed(self, now: Optional[float] = None) -> bool:
        return (time.time() if now is None else now) >= self.deadline

    def remaining(self, now: Optional[float] = None) -> float:
        return self.deadline - (time.time() if now is None else now)


class PriorityLevel(str, enum.Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


@dataclass(frozen=True)
class PriorityHint:
    """Urgency hint attached to a submission for the external executor."""

    urgency: float
    level: PriorityLevel
    fee_multiplier: float


@dataclass(frozen=True)
class SubmitRequest:
    plan_id: str
    ordered_ops: Tuple[Operation, ...]
    expiry: PlanExpiry
    min_outputs: Tuple[int, ...]
    priority: Optional[PriorityHint] = None


class SubmitStatus(str, enum.Enum):
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    SUPERSEDED = "superseded"


@dataclass(frozen=True)
class SubmitResult:
    status: SubmitStatus
    realized_amounts: Optional[Tuple[int, ...]] = None
    revert_reason: Optional[str] = None
    realized_profit: Optional[int] = None
    execution_cost: Optional[int] = None


@dataclass
class ExecutionPlan:
    """Ordered atomic operations derived from one validated opportunity."""

    opportunity: Opportunity
    operations: Tuple[Operation, ...]
    expiry: PlanExpiry
    plan_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)

    @property
    def borrow_asset(self) -> Asset:
        return self.opportunity.borrow_asset

    @property
    def version(self) -> GraphVersion:
        return self.opportunity.version

    @property
    def swaps(self) -> Tuple[SwapOp, ...]:
        return tuple(op for op in self.operations if isinstance(op, SwapOp))

    @property
    def min_outputs(self) -> Tuple[int, ...]:
        return tuple(op.min_amount_out for op in self.swaps)

    def to_request(self, priority: Optional[PriorityHint] = None) -> SubmitRequest:
        swaps = self.swaps
        if not swaps:
            raise PlanIntegrityError(f"Plan {self.plan_id} contains no swaps")
        missing = [op.pool_id for op in swaps if op.min_amount_out <= 0]
        if missing:
            raise PlanIntegrityError(
                f"Plan {self.plan_id} has swaps without an output floor: {', '.join(missing)}"
            )
        return SubmitRequest(
            plan_id=self.plan_id,
            ordered_ops=self.operations,
            expiry=self.expiry,
            min_outputs=self.min_outputs,
            priority=priority,
        )


class PlanState(str, enum.Enum):
    BUILT = "built"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    EXPIRED = "expired"
    SUPERSEDED = "superseded"

    @property
    def terminal(self) -> bool:
        return self not in (PlanState.BUILT, PlanState.SUBMITTED)


@dataclass(frozen=True)
class Confirmed:
    realized_profit: int
    state: PlanState = PlanState.CONFIRMED


@dataclass(frozen=True)
class Reverted:
    reason: str
    state: PlanState = PlanState.REVERTED


@dataclass(frozen=True)
class Expired:
    reason: str = "deadline"
    state: PlanState = PlanState.EXPIRED


@dataclass(frozen=True)
class Superseded:
    reason: str = "newer graph version"
    state: PlanState = PlanState.SUPERSEDED


Outcome = Union[Confirmed, Reverted, Expired, Superseded]


def opportunity_summary(opportunity: Opportunity) -> Dict[str, Any]:
    """Flatten the fields of ``opportunity`` that observers care about."""

    return {
        "borrow_asset": opportunity.borrow_asset,
        "borrow_amount": opportunity.borrow_amount,
        "route": opportunity.cycle.describe(),
        "hops": opportunity.cycle.hops,
        "gross_output": opportunity.gross_output,
        "borrow_fee": opportunity.borrow_fee,
        "execution_cost": opportunity.execution_cost,
        "net_profit": opportunity.net_profit,
        "graph_version": opportunity.version,
    }
