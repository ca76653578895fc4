"""
Risk configuration for AEGIS.

Defines the limits the engine enforces:
- Position and sector exposure limits
- Loss limits (daily loss, drawdown, VaR) that drive the circuit breakers
- Alerting thresholds (volatility, correlation, concentration, liquidity)
- Risk-metric estimation settings (VaR method, lookback, default correlation)

All percentage values are expressed as decimals (0.03 = 3%). Keys may be
given in snake_case or in the camelCase used by collaborators
(maxPositionSize, maxVaR, enableCircuitBreakers, ...).
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

from aegis.risk.var import VaRMethod


_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def snake_case_keys(data: dict[str, Any]) -> dict[str, Any]:
    """Convert camelCase keys (maxVaR, minLiquidity) to snake_case."""
    converted = {}
    for key, value in data.items():
        key = key.replace("VaR", "Var")
        converted[_CAMEL_BOUNDARY.sub("_", key).lower()] = value
    return converted


def known_fields(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    names = {f.name for f in fields(cls)}
    unknown = set(data) - names
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} keys: {sorted(unknown)}")
    return data


# =============================================================================
# Risk Limits
# =============================================================================


@dataclass
class RiskConfiguration:
    """
    Complete risk configuration.

    Examples:
        config = RiskConfiguration.from_yaml(Path("config/engine.yaml"))

        config = RiskConfiguration(max_var=0.02, max_drawdown=0.10)
    """

    # === Exposure Limits ===
    max_position_size: float = 0.10  # Max 10% in a single position
    max_sector_exposure: float = 0.30  # Largest single-sector share of gross exposure
    max_leverage: float = 1.0
    min_liquidity: float = 1_000_000.0  # Min dollar ADV to hold a position

    # === Loss Limits (positive fractions) ===
    max_drawdown: float = 0.15
    max_daily_loss: float = 0.05
    max_var: float = 0.03  # 1-day 95% VaR as fraction of portfolio

    # === Alert Thresholds ===
    correlation_threshold: float = 0.8
    volatility_threshold: float = 0.5  # Annualized

    # === Circuit Breakers ===
    enable_circuit_breakers: bool = True

    # Validated and accepted for configuration compatibility; nothing in the
    # engine reads it.
    risk_adjustment_speed: float = 0.1

    # === Estimation ===
    var_method: VaRMethod = VaRMethod.HISTORICAL
    lookback_periods: int = 252
    min_observations: int = 30
    num_simulations: int = 10_000
    seed: int | None = None
    default_correlation: float = 0.3
    risk_free_rate: float = 0.02  # Annual
    use_ewma: bool = False
    ewma_lambda: float = 0.94

    def __post_init__(self) -> None:
        """Validate configuration on creation."""
        if isinstance(self.var_method, str):
            self.var_method = VaRMethod(self.var_method.lower())
        self.validate()

    @classmethod
    def from_yaml(cls, path: Path) -> RiskConfiguration:
        """
        Load and validate configuration from a YAML file.

        Raises:
            FileNotFoundError: If file doesn't exist
            ValueError: If configuration is invalid
        """
        # Import yaml here to keep it optional
        import yaml

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data.get("risk", data))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RiskConfiguration:
        """Create RiskConfiguration from a dictionary (snake_case or camelCase keys)."""
        converted = known_fields(cls, snake_case_keys(data))
        if "var_method" in converted and not isinstance(converted["var_method"], VaRMethod):
            converted["var_method"] = VaRMethod(str(converted["var_method"]).lower())
        return cls(**converted)

    def validate(self) -> None:
        """
        Validate all configuration values.

        Raises:
            ValueError: If any value is invalid
        """
        for name in ("max_position_size", "max_sector_exposure"):
            if not 0.0 < getattr(self, name) <= 1.0:
                raise ValueError(f"{name} must be between 0 and 1")

        for name in ("max_drawdown", "max_daily_loss", "max_var"):
            if not 0.0 < getattr(self, name) < 1.0:
                raise ValueError(f"{name} must be a positive fraction (e.g., 0.05 for 5%)")

        if self.max_leverage <= 0:
            raise ValueError("max_leverage must be positive")

        if self.min_liquidity < 0:
            raise ValueError("min_liquidity must be non-negative")

        if not 0.0 < self.correlation_threshold <= 1.0:
            raise ValueError("correlation_threshold must be between 0 and 1")

        if self.volatility_threshold <= 0:
            raise ValueError("volatility_threshold must be positive")

        if not 0.0 < self.risk_adjustment_speed <= 1.0:
            raise ValueError("risk_adjustment_speed must be between 0 and 1")

        if self.min_observations < 2:
            raise ValueError("min_observations must be at least 2")

        if self.lookback_periods < self.min_observations:
            raise ValueError("lookback_periods must be >= min_observations")

        if self.num_simulations <= 0:
            raise ValueError("num_simulations must be positive")

        if not -1.0 <= self.default_correlation <= 1.0:
            raise ValueError("default_correlation must be between -1 and 1")

        if not 0.0 < self.ewma_lambda < 1.0:
            raise ValueError("ewma_lambda must be between 0 and 1")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        data = asdict(self)
        data["var_method"] = self.var_method.value
        return data


# =============================================================================
# Alerting
# =============================================================================


@dataclass
class AlertConfig:
    """
    Alert lifecycle and threshold settings.

    A limit check raises a LOW warning once a metric passes
    `warning_ratio` of its limit and a full breach alert beyond the limit.
    """

    retention_seconds: float = 86_400.0  # Active window (24h)
    cooldown_seconds: float = 300.0  # Duplicate suppression window
    max_alerts: int = 10_000  # Stored alerts before oldest are purged

    warning_ratio: float = 0.8
    correlation_warning_ratio: float = 0.9
    concentration_limit: float = 0.5  # Herfindahl index
    concentration_warning: float = 0.4
    liquidity_stress_threshold: float = 0.5  # Weighted (1 - liquidity score)

    def __post_init__(self) -> None:
        self.validate()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AlertConfig:
        return cls(**known_fields(cls, snake_case_keys(data)))

    def validate(self) -> None:
        if self.retention_seconds <= 0:
            raise ValueError("retention_seconds must be positive")
        if self.cooldown_seconds < 0:
            raise ValueError("cooldown_seconds must be non-negative")
        if self.max_alerts <= 0:
            raise ValueError("max_alerts must be positive")
        for name in ("warning_ratio", "correlation_warning_ratio"):
            if not 0.0 < getattr(self, name) <= 1.0:
                raise ValueError(f"{name} must be between 0 and 1")
        if not 0.0 < self.concentration_warning <= self.concentration_limit <= 1.0:
            raise ValueError("need 0 < concentration_warning <= concentration_limit <= 1")
        if not 0.0 < self.liquidity_stress_threshold <= 1.0:
            raise ValueError("liquidity_stress_threshold must be between 0 and 1")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
