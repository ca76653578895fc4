"""
AEGIS: real-time portfolio risk engine and cost-aware rebalancer.

- Continuous risk metrics (VaR, CVaR, volatility, drawdown, concentration)
- Deterministic stress scenarios
- Latching circuit breakers and a deduplicating alert stream
- Cost-aware portfolio optimization with execution planning

Quick Start:
    from aegis import EngineConfig, RiskManager
    from aegis.data import MarketSnapshot, Position

    manager = RiskManager(EngineConfig())
    metrics = manager.update_risk_metrics(positions, snapshot)
    if manager.is_trading_halted:
        ...
"""

__version__ = "0.1.0"
__author__ = "Aegis Team"

from aegis.config import EngineConfig, RuntimeConfig
from aegis.core import Clock, Event, EventType, MessageBus
from aegis.data import MarketSnapshot, MarketSnapshotEntry, Position
from aegis.manager import RiskManager, RiskState
from aegis.optimization import OptimizationResult, PortfolioOptimizer, Recommendation
from aegis.risk import RiskMetrics


__all__ = [
    "Clock",
    "EngineConfig",
    "Event",
    "EventType",
    "MarketSnapshot",
    "MarketSnapshotEntry",
    "MessageBus",
    "OptimizationResult",
    "PortfolioOptimizer",
    "Position",
    "Recommendation",
    "RiskManager",
    "RiskMetrics",
    "RiskState",
    "RuntimeConfig",
    "__version__",
]
