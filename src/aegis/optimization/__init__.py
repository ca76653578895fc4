"""
AEGIS Optimization: cost-aware rebalancing.

- TransactionCostModel: spread, square-root impact, slippage, tiered
  commission and financing estimates
- PortfolioOptimizer: constrained mean-variance optimizer with a turnover cap
- ExecutionPlanner: ordered execution steps with urgency and strategy
"""

from aegis.optimization.config import (
    CommissionTier,
    CostModelConfig,
    OptimizerConfig,
    TradingConstraints,
)
from aegis.optimization.costs import TransactionCost, TransactionCostModel
from aegis.optimization.execution import (
    ExecutionPlanner,
    ExecutionStep,
    ExecutionStrategy,
    Urgency,
)
from aegis.optimization.optimizer import (
    OptimizationResult,
    PortfolioOptimizer,
    Recommendation,
    turnover,
)


__all__ = [
    "CommissionTier",
    "CostModelConfig",
    "ExecutionPlanner",
    "ExecutionStep",
    "ExecutionStrategy",
    "OptimizationResult",
    "OptimizerConfig",
    "PortfolioOptimizer",
    "Recommendation",
    "TradingConstraints",
    "TransactionCost",
    "TransactionCostModel",
    "Urgency",
    "turnover",
]
