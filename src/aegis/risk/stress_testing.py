"""
Stress Testing Framework.

Applies deterministic shock scenarios to a position set and reports the
portfolio-level impact:
- Price shocks resolved per symbol, then sector, then asset class, then market
- Liquidity crisis: no price move, but a liquidation cost from widened
  spreads and an impact penalty scaled by illiquidity
- Limits re-evaluated on the post-shock portfolio (loss, drawdown, VaR with
  shocked volatility and correlation, single-position size)

Scenarios are pure functions of their inputs: the same positions, snapshot
and catalog always give bit-identical results.

References:
- Basel III stress testing requirements
- Fed CCAR/DFAST frameworks
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import msgspec
import numpy as np
from scipy import stats

from aegis.core.tasks import CancellationToken
from aegis.data.models import TRADING_DAYS_PER_YEAR, MarketSnapshot, Position
from aegis.risk.config import RiskConfiguration
from aegis.risk.correlation import CorrelationEstimator


logger = logging.getLogger(__name__)

_Z95 = float(stats.norm.ppf(0.95))


class ScenarioType(Enum):
    """Catalog scenario identifiers."""

    MARKET_CRASH = "MARKET_CRASH"
    INTEREST_RATE_SHOCK = "INTEREST_RATE_SHOCK"
    SECTOR_ROTATION = "SECTOR_ROTATION"
    LIQUIDITY_CRISIS = "LIQUIDITY_CRISIS"
    CUSTOM = "CUSTOM"


@dataclass(frozen=True)
class StressScenario:
    """
    Definition of a stress scenario.

    Shocks are relative price changes (-0.30 = -30%). Sector and asset-class
    keys are matched case-insensitively.
    """

    name: str
    description: str
    scenario_type: ScenarioType = ScenarioType.CUSTOM
    market_shock: float = 0.0
    sector_shocks: dict[str, float] = field(default_factory=dict)
    asset_class_shocks: dict[str, float] = field(default_factory=dict)
    symbol_shocks: dict[str, float] = field(default_factory=dict)
    volatility_multiplier: float = 1.0
    correlation_shift: float = 0.0
    spread_multiplier: float = 1.0
    impact_penalty: float = 0.0  # Fraction of value lost at liquidity score 0

    def __post_init__(self) -> None:
        shocks = [
            self.market_shock,
            *self.sector_shocks.values(),
            *self.asset_class_shocks.values(),
            *self.symbol_shocks.values(),
        ]
        if any(s < -1.0 or not math.isfinite(s) for s in shocks):
            raise ValueError(f"{self.name}: shocks must be finite and >= -1")
        if self.volatility_multiplier <= 0:
            raise ValueError(f"{self.name}: volatility_multiplier must be positive")
        if self.spread_multiplier < 0 or self.impact_penalty < 0:
            raise ValueError(f"{self.name}: liquidity penalties must be non-negative")

    def shock_for(
        self,
        symbol: str,
        sector: str | None = None,
        asset_class: str | None = None,
    ) -> float:
        """Resolve the shock for one holding: symbol > sector > asset class > market."""
        if symbol in self.symbol_shocks:
            return self.symbol_shocks[symbol]
        if sector is not None:
            shock = _lookup(self.sector_shocks, sector)
            if shock is not None:
                return shock
        if asset_class is not None:
            shock = _lookup(self.asset_class_shocks, asset_class)
            if shock is not None:
                return shock
        return self.market_shock

    @property
    def is_liquidity_scenario(self) -> bool:
        return self.spread_multiplier != 1.0 or self.impact_penalty > 0


def _lookup(table: Mapping[str, float], key: str) -> float | None:
    if key in table:
        return table[key]
    lowered = key.lower()
    for name, value in table.items():
        if name.lower() == lowered:
            return value
    return None


class PositionImpact(msgspec.Struct, frozen=True, gc=False, rename="camel"):
    """Impact of a scenario on one position."""

    symbol: str
    value_before: float
    value_after: float
    change: float
    change_percent: float
    shock_applied: float
    liquidation_cost: float = 0.0


class StressTestResult(msgspec.Struct, frozen=True, rename="camel"):
    """
    Result of one scenario.

    portfolio_change_percent is in percent (-12.5 = -12.5%).
    """

    scenario: str
    portfolio_value_before: float
    portfolio_value_after: float
    portfolio_change: float
    portfolio_change_percent: float
    worst_asset: str | None
    worst_asset_change: float
    position_impacts: list[PositionImpact] = []
    breached_limits: list[str] = []
    liquidation_cost: float = 0.0
    stressed_var95: float = 0.0

    @property
    def is_severe(self) -> bool:
        """Check if scenario causes severe loss (>20%)."""
        return self.portfolio_change_percent < -20.0


# ============================================================================
# Scenario Catalog
# ============================================================================

DEFAULT_SCENARIOS: dict[str, StressScenario] = {
    "MARKET_CRASH": StressScenario(
        name="MARKET_CRASH",
        description="Broad equity crash similar to 2008",
        scenario_type=ScenarioType.MARKET_CRASH,
        market_shock=-0.30,
        sector_shocks={
            "technology": -0.35,
            "financials": -0.40,
            "utilities": -0.15,
            "consumer_staples": -0.15,
        },
        asset_class_shocks={
            "bond": 0.05,
            "crypto": -0.50,
            "commodity": -0.10,
            "cash": 0.0,
        },
        volatility_multiplier=2.5,
        correlation_shift=0.3,
    ),
    "INTEREST_RATE_SHOCK": StressScenario(
        name="INTEREST_RATE_SHOCK",
        description="Sudden interest rate increase",
        scenario_type=ScenarioType.INTEREST_RATE_SHOCK,
        market_shock=-0.10,
        sector_shocks={
            "utilities": -0.20,
            "real_estate": -0.25,
            "financials": 0.05,
            "technology": -0.18,
        },
        asset_class_shocks={"bond": -0.12, "cash": 0.0},
        volatility_multiplier=1.5,
        correlation_shift=0.1,
    ),
    "SECTOR_ROTATION": StressScenario(
        name="SECTOR_ROTATION",
        description="Major rotation out of growth into value",
        scenario_type=ScenarioType.SECTOR_ROTATION,
        market_shock=-0.05,
        sector_shocks={
            "technology": -0.15,
            "energy": 0.10,
            "financials": 0.08,
            "healthcare": 0.03,
        },
        asset_class_shocks={"cash": 0.0},
        volatility_multiplier=1.2,
        correlation_shift=-0.1,
    ),
    "LIQUIDITY_CRISIS": StressScenario(
        name="LIQUIDITY_CRISIS",
        description="Market liquidity dries up: spreads widen, exits cost more",
        scenario_type=ScenarioType.LIQUIDITY_CRISIS,
        volatility_multiplier=2.0,
        correlation_shift=0.4,
        spread_multiplier=5.0,
        impact_penalty=0.05,
    ),
}


class StressTestEngine:
    """
    Stress Testing Engine.

    Example:
        engine = StressTestEngine(RiskConfiguration())

        results = engine.run_all_scenarios(positions, snapshot)
        for r in results:
            print(f"{r.scenario}: {r.portfolio_change_percent:.1f}% {r.breached_limits}")

        worst = engine.get_worst_case(positions, snapshot)
    """

    def __init__(
        self,
        config: RiskConfiguration | None = None,
        estimator: CorrelationEstimator | None = None,
        custom_scenarios: Mapping[str, StressScenario] | None = None,
        default_spread_bps: float = 10.0,
    ) -> None:
        """
        Initialize stress test engine.

        Args:
            config: Limits re-evaluated on the post-shock portfolio
            estimator: Source of the correlation matrix for stressed VaR
                (default pairwise correlation when omitted)
            custom_scenarios: Additional scenarios appended to the catalog
            default_spread_bps: Spread assumed for holdings missing from the snapshot
        """
        self.config = config or RiskConfiguration()
        self.estimator = estimator or CorrelationEstimator(
            lookback=self.config.lookback_periods,
            min_observations=self.config.min_observations,
            default_correlation=self.config.default_correlation,
        )
        self.default_spread_bps = default_spread_bps
        self.scenarios: dict[str, StressScenario] = dict(DEFAULT_SCENARIOS)
        if custom_scenarios:
            self.scenarios.update(custom_scenarios)

    # =========================================================================
    # Running Scenarios
    # =========================================================================

    def run_scenario(
        self,
        scenario: StressScenario,
        positions: Sequence[Position],
        snapshot: MarketSnapshot | None = None,
    ) -> StressTestResult:
        """
        Run a single stress scenario.

        Args:
            scenario: Stress scenario to run
            positions: Current positions
            snapshot: Market data (sector/asset class, spreads, liquidity, volatility)

        Returns:
            StressTestResult with portfolio impact and breached limits
        """
        snapshot = snapshot or MarketSnapshot()
        impacts: list[PositionImpact] = []

        for position in positions:
            entry = snapshot.get(position.symbol)
            sector = position.sector or (entry.sector if entry else None)
            asset_class = position.asset_class or (entry.asset_class if entry else None)

            shock = scenario.shock_for(position.symbol, sector, asset_class)
            before = position.market_value
            shocked = position.quantity * position.current_price * (1.0 + shock)

            liquidation = 0.0
            if scenario.is_liquidity_scenario:
                liquidation = self._liquidation_cost(scenario, position, shocked, snapshot)
            after = shocked - liquidation

            impacts.append(
                PositionImpact(
                    symbol=position.symbol,
                    value_before=before,
                    value_after=after,
                    change=after - before,
                    change_percent=(after - before) / abs(before) * 100 if before else 0.0,
                    shock_applied=shock,
                    liquidation_cost=liquidation,
                )
            )

        value_before = math.fsum(i.value_before for i in impacts)
        value_after = math.fsum(i.value_after for i in impacts)
        change = value_after - value_before
        change_pct = change / abs(value_before) * 100 if value_before else 0.0

        worst = min(impacts, key=lambda i: i.change) if impacts else None
        stressed_var = self._stressed_var95(scenario, impacts, snapshot)

        return StressTestResult(
            scenario=scenario.name,
            portfolio_value_before=value_before,
            portfolio_value_after=value_after,
            portfolio_change=change,
            portfolio_change_percent=change_pct,
            worst_asset=worst.symbol if worst is not None else None,
            worst_asset_change=worst.change if worst is not None else 0.0,
            position_impacts=impacts,
            breached_limits=self._breached_limits(value_before, change, stressed_var, impacts),
            liquidation_cost=math.fsum(i.liquidation_cost for i in impacts),
            stressed_var95=stressed_var,
        )

    def run_all_scenarios(
        self,
        positions: Sequence[Position],
        snapshot: MarketSnapshot | None = None,
        token: CancellationToken | None = None,
        partial: list[Any] | None = None,
    ) -> list[StressTestResult]:
        """
        Run every catalog scenario, in catalog order.

        Checks `token` between scenarios; completed results are appended to
        `partial` as they finish so a caller that times out keeps them.

        Raises:
            ComputationCancelled: If the token is cancelled mid-run
        """
        results: list[StressTestResult] = []
        for scenario in list(self.scenarios.values()):
            if token is not None:
                token.raise_if_cancelled()
            result = self.run_scenario(scenario, positions, snapshot)
            results.append(result)
            if partial is not None:
                partial.append(result)
        logger.info("Stress tests complete: %d scenarios analyzed", len(results))
        return results

    def run_named(
        self,
        name: str,
        positions: Sequence[Position],
        snapshot: MarketSnapshot | None = None,
    ) -> StressTestResult:
        """
        Run a catalog scenario by name.

        Raises:
            KeyError: Unknown scenario
        """
        return self.run_scenario(self.scenarios[name], positions, snapshot)

    def run_custom_scenario(
        self,
        name: str,
        positions: Sequence[Position],
        snapshot: MarketSnapshot | None = None,
        market_shock: float = 0.0,
        symbol_shocks: dict[str, float] | None = None,
        sector_shocks: dict[str, float] | None = None,
        description: str = "Custom scenario",
    ) -> StressTestResult:
        """Run an ad-hoc scenario without adding it to the catalog."""
        scenario = StressScenario(
            name=name,
            description=description,
            market_shock=market_shock,
            symbol_shocks=dict(symbol_shocks or {}),
            sector_shocks=dict(sector_shocks or {}),
        )
        return self.run_scenario(scenario, positions, snapshot)

    def get_worst_case(
        self,
        positions: Sequence[Position],
        snapshot: MarketSnapshot | None = None,
    ) -> StressTestResult | None:
        """Scenario with the largest portfolio loss, or None with an empty catalog."""
        results = self.run_all_scenarios(positions, snapshot)
        return min(results, key=lambda r: r.portfolio_change) if results else None

    def add_scenario(self, scenario: StressScenario) -> None:
        """Add (or replace) a catalog scenario."""
        self.scenarios[scenario.name] = scenario

    def remove_scenario(self, name: str) -> None:
        """Remove a scenario."""
        self.scenarios.pop(name, None)

    # =========================================================================
    # Post-shock Evaluation
    # =========================================================================

    def _liquidation_cost(
        self,
        scenario: StressScenario,
        position: Position,
        shocked_value: float,
        snapshot: MarketSnapshot,
    ) -> float:
        """Cost of exiting at widened spreads plus an illiquidity penalty."""
        entry = snapshot.get(position.symbol)
        if entry is not None:
            half_spread = entry.spread / entry.price / 2
            illiquidity = 1.0 - entry.liquidity_score
        else:
            half_spread = self.default_spread_bps / 10_000 / 2
            illiquidity = 1.0
        rate = half_spread * scenario.spread_multiplier + scenario.impact_penalty * illiquidity
        return abs(shocked_value) * rate

    def _stressed_var95(
        self,
        scenario: StressScenario,
        impacts: list[PositionImpact],
        snapshot: MarketSnapshot,
    ) -> float:
        """Parametric 95% VaR of the post-shock book with shocked vol and correlation."""
        gross = math.fsum(abs(i.value_after) for i in impacts)
        if gross <= 0:
            return 0.0

        symbols: list[str] = []
        weights: list[float] = []
        vols: list[float] = []
        for impact in impacts:
            entry = snapshot.get(impact.symbol)
            if entry is None or entry.volatility is None:
                continue
            symbols.append(impact.symbol)
            weights.append(impact.value_after / gross)
            vols.append(entry.volatility * scenario.volatility_multiplier)
        if not symbols:
            return 0.0

        corr = self.estimator.correlation_matrix(symbols).matrix.copy()
        n = len(symbols)
        if n > 1 and scenario.correlation_shift:
            off_diagonal = ~np.eye(n, dtype=bool)
            corr[off_diagonal] = np.clip(corr[off_diagonal] + scenario.correlation_shift, -1.0, 1.0)

        daily = np.asarray(vols) / math.sqrt(TRADING_DAYS_PER_YEAR)
        w = np.asarray(weights)
        variance = float(w @ (corr * np.outer(daily, daily)) @ w)
        return _Z95 * math.sqrt(max(variance, 0.0))

    def _breached_limits(
        self,
        value_before: float,
        change: float,
        stressed_var: float,
        impacts: list[PositionImpact],
    ) -> list[str]:
        breached: list[str] = []
        loss = -change / abs(value_before) if value_before else 0.0

        if loss > self.config.max_daily_loss:
            breached.append("DAILY_LOSS_LIMIT")
        if loss > self.config.max_drawdown:
            breached.append("MAX_DRAWDOWN")
        if stressed_var > self.config.max_var:
            breached.append("MAX_VAR")

        gross_after = math.fsum(abs(i.value_after) for i in impacts)
        if gross_after > 0:
            for impact in impacts:
                if abs(impact.value_after) / gross_after > self.config.max_position_size:
                    breached.append(f"MAX_POSITION_SIZE({impact.symbol})")
        return breached
