"""
Execution planning for a rebalance.

Turns a (current -> target) weight change into an ordered list of
ExecutionSteps:
- Urgency from trade size, conviction and liquidity
- Strategy from participation and liquidity (TWAP, VWAP,
  IMPLEMENTATION_SHORTFALL, ARRIVAL_PRICE)
- Time horizon from participation and volatility, clipped into the urgency
  tier's window (HIGH 5-60, MEDIUM 60-240, LOW 240-480 minutes)

Steps are ordered by urgency (HIGH first), then by expected cost (cheapest
first). Steps run in parallel, so the plan takes as long as its longest step.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from enum import Enum

import msgspec

from aegis.data.models import MarketSnapshot
from aegis.optimization.config import OptimizerConfig
from aegis.optimization.costs import TransactionCostModel


logger = logging.getLogger(__name__)


class Urgency(str, Enum):
    """Execution urgency."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    @property
    def rank(self) -> int:
        return _URGENCY_RANK[self]


_URGENCY_RANK = {Urgency.LOW: 0, Urgency.MEDIUM: 1, Urgency.HIGH: 2}


class ExecutionStrategy(str, Enum):
    """Execution algorithm for a step."""

    TWAP = "TWAP"
    VWAP = "VWAP"
    IMPLEMENTATION_SHORTFALL = "IMPLEMENTATION_SHORTFALL"
    ARRIVAL_PRICE = "ARRIVAL_PRICE"


# Share of the square-root impact each strategy is expected to pay
IMPACT_MULTIPLIER = {
    ExecutionStrategy.ARRIVAL_PRICE: 0.5,
    ExecutionStrategy.VWAP: 0.6,
    ExecutionStrategy.TWAP: 0.7,
    ExecutionStrategy.IMPLEMENTATION_SHORTFALL: 0.8,
}

# Minutes; windows do not overlap so urgency ordering and horizon ordering agree
HORIZON_WINDOWS = {
    Urgency.HIGH: (5.0, 60.0),
    Urgency.MEDIUM: (60.0, 240.0),
    Urgency.LOW: (240.0, 480.0),
}


class ExecutionStep(msgspec.Struct, frozen=True, gc=False, rename="camel"):
    """One child trade of a rebalance."""

    symbol: str
    quantity: float  # Signed units; positive buys
    urgency: Urgency
    time_horizon: float  # Minutes
    current_weight: float = 0.0
    target_weight: float = 0.0
    strategy: ExecutionStrategy = ExecutionStrategy.TWAP
    expected_cost: float = 0.0  # Currency

    @property
    def delta_weight(self) -> float:
        return self.target_weight - self.current_weight


def classify_urgency(delta_weight: float, conviction: float, liquidity_score: float) -> Urgency:
    """HIGH for large or high-conviction trades, MEDIUM for moderate or illiquid ones."""
    size = abs(delta_weight)
    if size > 0.05 or conviction >= 0.75:
        return Urgency.HIGH
    if size > 0.02 or conviction >= 0.4 or liquidity_score < 0.5:
        return Urgency.MEDIUM
    return Urgency.LOW


def select_strategy(volume_fraction: float, liquidity_score: float) -> ExecutionStrategy:
    """Pick an execution algorithm from participation and liquidity."""
    if volume_fraction > 0.1:
        return ExecutionStrategy.IMPLEMENTATION_SHORTFALL
    if liquidity_score > 0.8:
        return ExecutionStrategy.VWAP
    if volume_fraction > 0.05:
        return ExecutionStrategy.TWAP
    return ExecutionStrategy.ARRIVAL_PRICE


def time_horizon(urgency: Urgency, volume_fraction: float, volatility: float) -> float:
    """Minutes to work the order, clipped into the urgency window."""
    raw = 60.0 * math.sqrt(max(volume_fraction, 0.0) * 100) * volatility * 10
    low, high = HORIZON_WINDOWS[urgency]
    return min(high, max(low, raw))


def estimated_execution_time(steps: list[ExecutionStep]) -> float:
    """Longest step horizon (steps run in parallel); 0 for an empty plan."""
    return max((s.time_horizon for s in steps), default=0.0)


class ExecutionPlanner:
    """
    Builds the ordered execution plan for a rebalance.

    Example:
        planner = ExecutionPlanner(TransactionCostModel(), OptimizerConfig())
        steps = planner.plan(current, target, snapshot, 1_000_000, expected_returns)
        for step in steps:
            print(step.symbol, step.urgency.value, step.strategy.value)
    """

    def __init__(
        self,
        cost_model: TransactionCostModel | None = None,
        config: OptimizerConfig | None = None,
    ) -> None:
        self.cost_model = cost_model or TransactionCostModel()
        self.config = config or OptimizerConfig()

    def plan(
        self,
        current: Mapping[str, float],
        target: Mapping[str, float],
        snapshot: MarketSnapshot,
        portfolio_value: float,
        expected_returns: Mapping[str, float] | None = None,
    ) -> list[ExecutionStep]:
        """
        One step per symbol whose weight changes by at least min_trade_weight.

        Symbols without a snapshot entry cannot be sized and are skipped.
        """
        expected_returns = expected_returns or {}
        max_return = max((abs(r) for r in expected_returns.values()), default=0.0)
        leverage = max(1.0, math.fsum(abs(w) for w in target.values()))

        steps: list[ExecutionStep] = []
        for symbol in sorted(set(current) | set(target)):
            current_weight = current.get(symbol, 0.0)
            target_weight = target.get(symbol, 0.0)
            delta = target_weight - current_weight
            if abs(delta) < self.config.min_trade_weight:
                continue
            entry = snapshot.get(symbol)
            if entry is None:
                logger.debug("%s: no market data, left out of the execution plan", symbol)
                continue

            quantity = delta * portfolio_value / entry.price
            volume_fraction = abs(quantity) / entry.adv if entry.adv > 0 else 1.0
            conviction = abs(expected_returns.get(symbol, 0.0)) / max_return if max_return > 0 else 0.0

            urgency = classify_urgency(delta, conviction, entry.liquidity_score)
            strategy = select_strategy(volume_fraction, entry.liquidity_score)
            cost = self.cost_model.estimate(
                symbol,
                quantity,
                entry,
                leverage=leverage,
                impact_scale=IMPACT_MULTIPLIER[strategy],
            )
            steps.append(
                ExecutionStep(
                    symbol=symbol,
                    quantity=quantity,
                    urgency=urgency,
                    time_horizon=time_horizon(urgency, volume_fraction, entry.volatility or 0.0),
                    current_weight=current_weight,
                    target_weight=target_weight,
                    strategy=strategy,
                    expected_cost=cost.total_cost,
                )
            )

        steps.sort(key=lambda s: (-s.urgency.rank, s.expected_cost))
        return steps
