"""Flash-loan cycle arbitrage across AMM venues."""
from flashcycle.src.flash_arbitrage.config import ArbitrageConfig, load_config
from flashcycle.src.flash_arbitrage.coordinator import (
    ExecutionCostEstimator,
    PlanRecord,
    SubmissionCoordinator,
    priority_hint,
)
from flashcycle.src.flash_arbitrage.detector import (
    CancellationToken,
    CycleDetector,
    find_negative_cycles,
)
from flashcycle.src.flash_arbitrage.events import ArbitrageEvent, EventRecorder, EventType
from flashcycle.src.flash_arbitrage.exceptions import (
    ArbitrageError,
    CapacityExceeded,
    ExecutionReverted,
    ExternalTimeout,
    InsufficientMargin,
    InvalidTransition,
    PlanIntegrityError,
    PlanSuperseded,
    Rejection,
    StaleQuote,
    StaleStateError,
    UnknownVenueError,
)
from flashcycle.src.flash_arbitrage.graph import GraphView, LiquidityGraph
from flashcycle.src.flash_arbitrage.ledger import LedgerExecutor, SimulatedLedgerExecutor
from flashcycle.src.flash_arbitrage.models import (
    BorrowOp,
    Confirmed,
    Cycle,
    ExecutionPlan,
    Expired,
    Opportunity,
    PlanExpiry,
    PlanState,
    PoolDefinition,
    PoolEdge,
    PoolState,
    PoolUpdate,
    PriorityHint,
    PriorityLevel,
    RepayOp,
    Reverted,
    SizedOpportunity,
    SubmitRequest,
    SubmitResult,
    SubmitStatus,
    Superseded,
    SwapOp,
    TransferOp,
)
from flashcycle.src.flash_arbitrage.optimizer import SizeOptimizer
from flashcycle.src.flash_arbitrage.pipeline import (
    ArbitragePipeline,
    PoolsStale,
    ScanReport,
    VenueUntrusted,
)
from flashcycle.src.flash_arbitrage.planner import ExecutionPlanner
from flashcycle.src.flash_arbitrage.validator import ProfitValidator
from flashcycle.src.flash_arbitrage.venues import (
    ConstantProductAdapter,
    VenueAdapter,
    VenueRegistry,
    default_registry,
    replay_feed,
)

__all__ = [
    "ArbitrageConfig",
    "ArbitrageError",
    "ArbitrageEvent",
    "ArbitragePipeline",
    "BorrowOp",
    "CancellationToken",
    "CapacityExceeded",
    "Confirmed",
    "ConstantProductAdapter",
    "Cycle",
    "CycleDetector",
    "EventRecorder",
    "EventType",
    "ExecutionCostEstimator",
    "ExecutionPlan",
    "ExecutionPlanner",
    "ExecutionReverted",
    "Expired",
    "ExternalTimeout",
    "GraphView",
    "InsufficientMargin",
    "InvalidTransition",
    "LedgerExecutor",
    "LiquidityGraph",
    "Opportunity",
    "PlanExpiry",
    "PlanIntegrityError",
    "PlanRecord",
    "PlanState",
    "PlanSuperseded",
    "PoolDefinition",
    "PoolEdge",
    "PoolState",
    "PoolUpdate",
    "PoolsStale",
    "PriorityHint",
    "PriorityLevel",
    "ProfitValidator",
    "Rejection",
    "RepayOp",
    "Reverted",
    "ScanReport",
    "SimulatedLedgerExecutor",
    "SizeOptimizer",
    "SizedOpportunity",
    "StaleQuote",
    "StaleStateError",
    "SubmissionCoordinator",
    "SubmitRequest",
    "SubmitResult",
    "SubmitStatus",
    "Superseded",
    "SwapOp",
    "TransferOp",
    "UnknownVenueError",
    "VenueAdapter",
    "VenueRegistry",
    "VenueUntrusted",
    "default_registry",
    "find_negative_cycles",
    "load_config",
    "priority_hint",
    "replay_feed",
]
