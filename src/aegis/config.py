"""
Engine configuration.

One YAML file configures the whole engine, one section per component:

    risk:         RiskConfiguration (limits, VaR method, lookback)
    constraints:  TradingConstraints (optimizer hard limits)
    costs:        CostModelConfig (transaction cost coefficients, commission tiers)
    optimizer:    OptimizerConfig (solver and recommendation settings)
    alerts:       AlertConfig (retention, cool-down, warning levels)
    runtime:      RuntimeConfig (cadence, time budgets, worker pool)

Missing sections use defaults. When `constraints` is omitted, the optimizer
limits are taken from the matching `risk` limits.

Example:
    config = EngineConfig.from_yaml(Path("config/engine.yaml"))
    manager = RiskManager(config)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from aegis.optimization.config import CostModelConfig, OptimizerConfig, TradingConstraints
from aegis.risk.config import AlertConfig, RiskConfiguration, known_fields, snake_case_keys


@dataclass
class RuntimeConfig:
    """Coordinator runtime settings."""

    allow_synthetic_data: bool = False
    recompute_interval_seconds: float = 5.0
    stress_timeout: float = 10.0  # Seconds
    optimize_timeout: float = 30.0  # Seconds
    max_workers: int = 2
    max_state_age: float = 60.0  # Seconds before RiskState is reported stale

    def __post_init__(self) -> None:
        self.validate()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RuntimeConfig:
        return cls(**known_fields(cls, snake_case_keys(data)))

    def validate(self) -> None:
        for name in (
            "recompute_interval_seconds",
            "stress_timeout",
            "optimize_timeout",
            "max_state_age",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.max_workers <= 0:
            raise ValueError("max_workers must be positive")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class EngineConfig:
    """All component configurations."""

    risk: RiskConfiguration = field(default_factory=RiskConfiguration)
    constraints: TradingConstraints | None = None
    costs: CostModelConfig = field(default_factory=CostModelConfig)
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)

    def __post_init__(self) -> None:
        if self.constraints is None:
            self.constraints = constraints_from_risk(self.risk)

    @classmethod
    def from_yaml(cls, path: Path) -> EngineConfig:
        """
        Load configuration from a YAML file.

        Raises:
            FileNotFoundError: If file doesn't exist
            ValueError: If configuration is invalid
        """
        import yaml

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EngineConfig:
        unknown = set(data) - {"risk", "constraints", "costs", "optimizer", "alerts", "runtime"}
        if unknown:
            raise ValueError(f"Unknown configuration sections: {sorted(unknown)}")

        risk = RiskConfiguration.from_dict(data.get("risk") or {})
        constraints = (
            TradingConstraints.from_dict(data["constraints"])
            if data.get("constraints")
            else None
        )
        return cls(
            risk=risk,
            constraints=constraints,
            costs=CostModelConfig.from_dict(data.get("costs") or {}),
            optimizer=OptimizerConfig.from_dict(data.get("optimizer") or {}),
            alerts=AlertConfig.from_dict(data.get("alerts") or {}),
            runtime=RuntimeConfig.from_dict(data.get("runtime") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "risk": self.risk.to_dict(),
            "constraints": self.constraints.to_dict() if self.constraints else None,
            "costs": self.costs.to_dict(),
            "optimizer": self.optimizer.to_dict(),
            "alerts": self.alerts.to_dict(),
            "runtime": self.runtime.to_dict(),
        }


def constraints_from_risk(risk: RiskConfiguration) -> TradingConstraints:
    """Optimizer constraints mirroring the risk limits."""
    return TradingConstraints(
        max_position_size=risk.max_position_size,
        max_leverage=risk.max_leverage,
        max_drawdown=risk.max_drawdown,
        min_liquidity=risk.min_liquidity,
    )
