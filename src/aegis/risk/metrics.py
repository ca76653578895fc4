"""
RiskMetrics: the per-cycle risk snapshot.

Recomputed wholesale on every ingestion cycle and published by reference
swap. `check_invariants()` is run before publication; a violation is fatal for
that cycle and the previous snapshot stays published.
"""

from __future__ import annotations

import math
from datetime import datetime

import msgspec

from aegis.core.errors import InvariantViolation
from aegis.risk.var import VaRMethod


# Relative slack for float comparisons between related estimates
_TOLERANCE = 1e-12


class ValueAtRisk(msgspec.Struct, frozen=True, gc=False, rename="camel"):
    """1-day VaR at 95% and 99% as positive fractions of portfolio value."""

    var95: float
    var99: float
    method: VaRMethod
    confidence: float = 0.95
    time_horizon: int = 1  # Days


class RiskMetrics(msgspec.Struct, frozen=True, rename="camel"):
    """
    Portfolio risk snapshot.

    Loss measures (VaR, CVaR, drawdown, daily loss) are positive fractions of
    portfolio value. Sharpe ratio may be negative.
    """

    value_at_risk: ValueAtRisk
    conditional_var: float = msgspec.field(name="conditionalVaR")
    sharpe_ratio: float = 0.0
    maximum_drawdown: float = 0.0
    volatility: float = 0.0  # Annualized
    concentration_risk: float = 0.0  # Herfindahl index
    correlation_risk: float = 0.0  # Weighted average pairwise correlation
    liquidity_risk: float = 0.0  # Weighted (1 - liquidity score)
    sector_exposure: float = 0.0  # Largest sector share of gross exposure
    daily_loss: float = 0.0
    portfolio_value: float = 0.0
    position_count: int = 0
    excluded_symbols: list[str] = []
    observations: int = 0
    computed_at: datetime | None = None

    @property
    def var95(self) -> float:
        return self.value_at_risk.var95

    @property
    def var99(self) -> float:
        return self.value_at_risk.var99

    @property
    def method(self) -> VaRMethod:
        return self.value_at_risk.method

    def var_amount(self, confidence: float = 0.95) -> float:
        """VaR in currency units."""
        fraction = self.var99 if confidence >= 0.99 else self.var95
        return fraction * abs(self.portfolio_value)

    def check_invariants(self) -> None:
        """
        Raises:
            InvariantViolation: If any cross-metric invariant is broken
        """
        values = {
            "var95": self.var95,
            "var99": self.var99,
            "conditional_var": self.conditional_var,
            "sharpe_ratio": self.sharpe_ratio,
            "maximum_drawdown": self.maximum_drawdown,
            "volatility": self.volatility,
            "concentration_risk": self.concentration_risk,
            "correlation_risk": self.correlation_risk,
            "liquidity_risk": self.liquidity_risk,
            "sector_exposure": self.sector_exposure,
            "daily_loss": self.daily_loss,
            "portfolio_value": self.portfolio_value,
        }
        for name, value in values.items():
            if not math.isfinite(value):
                raise InvariantViolation(f"{name} is not finite: {value}")

        slack = _TOLERANCE * max(1.0, abs(self.var99))
        if self.var95 < 0:
            raise InvariantViolation(f"var95 must be >= 0, got {self.var95}")
        if abs(self.var99) + slack < abs(self.var95):
            raise InvariantViolation(
                f"|var99| ({self.var99:.6f}) < |var95| ({self.var95:.6f})"
            )
        if self.conditional_var + slack < self.var95:
            raise InvariantViolation(
                f"conditionalVaR ({self.conditional_var:.6f}) < var95 ({self.var95:.6f})"
            )
        if not 0.0 <= self.concentration_risk <= 1.0:
            raise InvariantViolation(
                f"concentration_risk must be in [0, 1], got {self.concentration_risk}"
            )
        if self.maximum_drawdown < 0:
            raise InvariantViolation(
                f"maximum_drawdown must be >= 0, got {self.maximum_drawdown}"
            )
        if self.volatility < 0:
            raise InvariantViolation(f"volatility must be >= 0, got {self.volatility}")
        if not 0.0 <= self.liquidity_risk <= 1.0:
            raise InvariantViolation(
                f"liquidity_risk must be in [0, 1], got {self.liquidity_risk}"
            )
        if not 0.0 <= self.sector_exposure <= 1.0 + _TOLERANCE:
            raise InvariantViolation(
                f"sector_exposure must be in [0, 1], got {self.sector_exposure}"
            )
