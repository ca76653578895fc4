"""
Error taxonomy for the AEGIS risk engine.

Each error maps to one recovery policy:

- DataError: bad or missing market data for a symbol. Recovered locally by
  excluding the symbol; the computation continues.
- ConstraintInfeasible: the optimizer cannot satisfy its hard constraints.
  Recovered by returning the nearest feasible point with a HOLD verdict.
- AlertNotFound: unknown alert id on acknowledge. Surfaced to the caller.
- ComputationTimeout: a stress test or optimization exceeded its budget.
  Surfaced with whatever partial results were produced.
- InvariantViolation: a record broke one of its invariants. Fatal for the
  current cycle; the previously published snapshot stays in place.
"""

from __future__ import annotations

from typing import Any


class AegisError(Exception):
    """Base class for all engine errors."""


class DataError(AegisError):
    """Missing or invalid market data for a symbol."""

    def __init__(self, message: str, symbol: str | None = None) -> None:
        super().__init__(message)
        self.symbol = symbol


class InvariantViolation(AegisError, ValueError):
    """A record or computed result violates one of its invariants."""


class ConstraintInfeasible(AegisError):
    """Hard optimizer constraints cannot be satisfied together."""

    def __init__(self, message: str, violated: list[str] | None = None) -> None:
        super().__init__(message)
        self.violated = list(violated or [])


class NotFound(AegisError, KeyError):
    """Requested entity does not exist."""

    def __str__(self) -> str:
        # KeyError repr-quotes its argument; keep the plain message
        return str(self.args[0]) if self.args else ""


class AlertNotFound(NotFound):
    """Unknown alert id."""

    def __init__(self, alert_id: int) -> None:
        super().__init__(f"Alert {alert_id} not found")
        self.alert_id = alert_id


class ComputationCancelled(AegisError):
    """A worker observed its cancellation token."""


class ComputationTimeout(AegisError):
    """
    A background computation exceeded its time budget.

    Attributes:
        task_name: Name of the timed-out task
        timeout: Budget in seconds
        partial: Results produced before the deadline (may be empty)
    """

    def __init__(
        self,
        task_name: str,
        timeout: float,
        partial: list[Any] | None = None,
    ) -> None:
        super().__init__(f"{task_name} exceeded {timeout:.2f}s budget")
        self.task_name = task_name
        self.timeout = timeout
        self.partial = list(partial or [])
