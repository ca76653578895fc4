"""
Optimizer and cost-model configuration.

- TradingConstraints: hard limits every target portfolio must satisfy
- CostModelConfig: transaction cost coefficients and the commission tier table
- OptimizerConfig: solver and recommendation settings

Loaded from the `constraints`, `costs` and `optimizer` sections of the engine
YAML file (see aegis.config.EngineConfig).
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from typing import Any

from aegis.risk.config import known_fields, snake_case_keys


# =============================================================================
# Trading Constraints
# =============================================================================


@dataclass
class TradingConstraints:
    """
    Hard constraints on a target portfolio.

    Examples:
        constraints = TradingConstraints(max_position_size=0.2, max_turnover=0.05)
        constraints = TradingConstraints(forbidden_assets=["GME"], allow_short=True)
    """

    max_position_size: float = 0.10
    max_turnover: float = 1.0  # One-way, sum|delta| / 2
    max_leverage: float = 1.0  # Gross exposure
    max_drawdown: float = 0.15
    min_liquidity: float = 1_000_000.0  # Dollar ADV
    allowed_sectors: list[str] = field(default_factory=list)  # Empty = all allowed
    forbidden_assets: list[str] = field(default_factory=list)
    allow_short: bool = False

    def __post_init__(self) -> None:
        self.validate()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TradingConstraints:
        return cls(**known_fields(cls, snake_case_keys(data)))

    def validate(self) -> None:
        """
        Raises:
            ValueError: If any value is invalid
        """
        if not 0.0 < self.max_position_size <= 1.0:
            raise ValueError("max_position_size must be between 0 and 1")
        if not 0.0 <= self.max_turnover <= 2.0:
            raise ValueError("max_turnover must be between 0 and 2")
        if self.max_leverage <= 0:
            raise ValueError("max_leverage must be positive")
        if not 0.0 < self.max_drawdown < 1.0:
            raise ValueError("max_drawdown must be a positive fraction")
        if self.min_liquidity < 0:
            raise ValueError("min_liquidity must be non-negative")

    def sector_allowed(self, sector: str | None) -> bool:
        """Empty allow-list admits every sector, including unknown ones."""
        if not self.allowed_sectors:
            return True
        return sector is not None and sector in self.allowed_sectors

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# =============================================================================
# Transaction Costs
# =============================================================================


@dataclass(frozen=True)
class CommissionTier:
    """Marginal commission bracket: `rate` applies to notional up to `up_to`."""

    up_to: float  # math.inf for the top bracket
    rate: float


def _default_tiers() -> list[CommissionTier]:
    return [
        CommissionTier(up_to=10_000.0, rate=0.0010),
        CommissionTier(up_to=100_000.0, rate=0.0005),
        CommissionTier(up_to=1_000_000.0, rate=0.0003),
        CommissionTier(up_to=math.inf, rate=0.0002),
    ]


@dataclass
class CostModelConfig:
    """
    Coefficients of the transaction cost model.

    Commission is progressive: each tier's rate applies only to the slice of
    notional inside it, so the average rate falls as trade size grows.
    """

    impact_coefficient: float = 0.1
    base_slippage: float = 0.0005  # 5 bps
    slippage_coefficient: float = 0.5
    min_liquidity_score: float = 0.1  # Floor used in the impact denominator
    commission_tiers: list[CommissionTier] = field(default_factory=_default_tiers)
    min_commission: float = 1.0
    financing_rate: float = 0.03  # Annual rate on notional above 1x
    holding_days: float = 1.0
    default_spread_bps: float = 10.0  # When no snapshot entry is available

    def __post_init__(self) -> None:
        self.commission_tiers = [
            t if isinstance(t, CommissionTier) else _tier_from_dict(t)
            for t in self.commission_tiers
        ]
        self.validate()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CostModelConfig:
        return cls(**known_fields(cls, snake_case_keys(data)))

    def validate(self) -> None:
        for name in (
            "impact_coefficient",
            "base_slippage",
            "slippage_coefficient",
            "min_commission",
            "financing_rate",
            "holding_days",
            "default_spread_bps",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")
        if not 0.0 < self.min_liquidity_score <= 1.0:
            raise ValueError("min_liquidity_score must be between 0 and 1")
        if not self.commission_tiers:
            raise ValueError("commission_tiers must not be empty")
        bounds = [t.up_to for t in self.commission_tiers]
        if bounds != sorted(bounds) or len(set(bounds)) != len(bounds):
            raise ValueError("commission_tiers must be strictly increasing")
        if any(t.rate < 0 for t in self.commission_tiers):
            raise ValueError("commission rates must be non-negative")

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["commission_tiers"] = [
            {"up_to": None if math.isinf(t.up_to) else t.up_to, "rate": t.rate}
            for t in self.commission_tiers
        ]
        return data


def _tier_from_dict(data: dict[str, Any]) -> CommissionTier:
    data = snake_case_keys(data)
    up_to = data.get("up_to")
    return CommissionTier(
        up_to=math.inf if up_to is None else float(up_to),
        rate=float(data["rate"]),
    )


# =============================================================================
# Optimizer
# =============================================================================


@dataclass
class OptimizerConfig:
    """Projected-gradient solver and rebalance-decision settings."""

    max_iterations: int = 500
    tolerance: float = 1e-8
    max_step: float = 1.0

    portfolio_value: float = 1_000_000.0
    default_correlation: float = 0.3
    default_volatility: float = 0.2  # Used when the target needs a risk estimate

    min_trade_weight: float = 0.001  # Smaller deltas are not traded
    execute_cost_ratio: float = 0.2  # EXECUTE if cost < 20% of gross benefit
    drawdown_horizon_days: int = 21
    drawdown_z: float = 2.326  # 99% one-sided
    risk_free_rate: float = 0.0

    def __post_init__(self) -> None:
        self.validate()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OptimizerConfig:
        return cls(**known_fields(cls, snake_case_keys(data)))

    def validate(self) -> None:
        if self.max_iterations <= 0:
            raise ValueError("max_iterations must be positive")
        if self.tolerance <= 0:
            raise ValueError("tolerance must be positive")
        if self.max_step <= 0:
            raise ValueError("max_step must be positive")
        if self.portfolio_value <= 0:
            raise ValueError("portfolio_value must be positive")
        if not -1.0 <= self.default_correlation <= 1.0:
            raise ValueError("default_correlation must be between -1 and 1")
        if not 0.0 < self.execute_cost_ratio <= 1.0:
            raise ValueError("execute_cost_ratio must be between 0 and 1")
        if self.min_trade_weight < 0:
            raise ValueError("min_trade_weight must be non-negative")
        if self.drawdown_horizon_days <= 0:
            raise ValueError("drawdown_horizon_days must be positive")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
