"""Custom exceptions for flash-loan cycle arbitrage."""
from __future__ import annotations

from typing import Any, Optional


class ArbitrageError(RuntimeError):
    """Base class for errors raised by the arbitrage core."""


class StaleStateError(ArbitrageError):
    """Raised when numbers from different graph versions are combined."""


class Rejection(ArbitrageError):
    """Typed reason an opportunity was not promoted to an execution plan."""

    reason = "Rejected"

    def __init__(self, message: str, *, opportunity: Optional[Any] = None) -> None:
        super().__init__(message)
        self.opportunity = opportunity


class InsufficientMargin(Rejection):
    """Raised when the net profit does not clear the configured threshold."""

    reason = "InsufficientMargin"


class CapacityExceeded(Rejection):
    """Raised when a hop would consume more than the modelled pool depth."""

    reason = "CapacityExceeded"


class StaleQuote(Rejection, StaleStateError):
    """Raised when an opportunity was priced against an outdated snapshot."""

    reason = "StaleQuote"


class ExternalTimeout(ArbitrageError):
    """Raised when a venue feed or the ledger executor does not respond in time."""

    reason = "ExternalTimeout"


class ExecutionReverted(ArbitrageError):
    """Raised when the ledger executor reports that a batch was reverted."""

    reason = "Reverted"


class PlanSuperseded(ArbitrageError):
    """Raised when newer graph data invalidates an execution plan."""

    reason = "Superseded"


class InvalidTransition(ArbitrageError):
    """Raised when a plan is moved out of a terminal state."""


class PlanIntegrityError(ValueError):
    """Raised when a plan would reach the executor without a swap output floor."""


class UnknownVenueError(KeyError):
    """Raised when no adapter is registered for a venue identifier."""
