"""
AEGIS Risk: real-time portfolio risk.

- RiskMetricsCalculator: VaR/CVaR, volatility, Sharpe, drawdown, concentration,
  correlation and liquidity risk from positions and a market snapshot
- StressTestEngine: deterministic scenario catalog (market crash, rate shock,
  sector rotation, liquidity crisis) plus custom scenarios
- CircuitBreakerController: latching VaR / drawdown / daily-loss breakers
- AlertManager: alert lifecycle with duplicate suppression

Usage:
    from aegis.risk import RiskMetricsCalculator, RiskConfiguration

    calculator = RiskMetricsCalculator(RiskConfiguration(max_var=0.03))
    metrics = calculator.calculate(positions, snapshot)
    print(f"VaR95: {metrics.var95:.2%}")
"""

from aegis.risk.alerts import Alert, AlertManager, AlertSeverity, AlertType
from aegis.risk.calculator import RiskMetricsCalculator
from aegis.risk.circuit_breaker import (
    BreakerState,
    BreakerType,
    CircuitBreakerController,
    CircuitBreakerStatus,
)
from aegis.risk.config import AlertConfig, RiskConfiguration
from aegis.risk.correlation import CorrelationEstimator, CorrelationMatrix
from aegis.risk.metrics import RiskMetrics, ValueAtRisk
from aegis.risk.stress_testing import (
    DEFAULT_SCENARIOS,
    PositionImpact,
    ScenarioType,
    StressScenario,
    StressTestEngine,
    StressTestResult,
)
from aegis.risk.var import VaRCalculator, VaREstimate, VaRMethod


__all__ = [
    "DEFAULT_SCENARIOS",
    "Alert",
    "AlertConfig",
    "AlertManager",
    "AlertSeverity",
    "AlertType",
    "BreakerState",
    "BreakerType",
    "CircuitBreakerController",
    "CircuitBreakerStatus",
    "CorrelationEstimator",
    "CorrelationMatrix",
    "PositionImpact",
    "RiskConfiguration",
    "RiskMetrics",
    "RiskMetricsCalculator",
    "ScenarioType",
    "StressScenario",
    "StressTestEngine",
    "StressTestResult",
    "VaRCalculator",
    "VaREstimate",
    "VaRMethod",
    "ValueAtRisk",
]
