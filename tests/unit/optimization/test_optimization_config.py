"""Tests for optimizer, constraint and cost configuration."""

from __future__ import annotations

import math

import pytest

from aegis.optimization.config import (
    CommissionTier,
    CostModelConfig,
    OptimizerConfig,
    TradingConstraints,
)


class TestTradingConstraints:
    """Tests for TradingConstraints."""

    def test_defaults(self) -> None:
        constraints = TradingConstraints()

        assert constraints.max_position_size == 0.10
        assert constraints.max_turnover == 1.0
        assert constraints.allow_short is False

    def test_from_camel_case(self) -> None:
        constraints = TradingConstraints.from_dict(
            {"maxPositionSize": 0.2, "maxTurnover": 0.05, "forbiddenAssets": ["GME"]}
        )

        assert constraints.max_position_size == 0.2
        assert constraints.max_turnover == 0.05
        assert constraints.forbidden_assets == ["GME"]

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_position_size": 0.0},
            {"max_turnover": -0.1},
            {"max_turnover": 2.5},
            {"max_leverage": 0.0},
            {"max_drawdown": 0.0},
            {"min_liquidity": -1.0},
        ],
    )
    def test_validation(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            TradingConstraints(**kwargs)

    def test_sector_allowed(self) -> None:
        assert TradingConstraints().sector_allowed(None) is True

        restricted = TradingConstraints(allowed_sectors=["technology"])
        assert restricted.sector_allowed("technology") is True
        assert restricted.sector_allowed("energy") is False
        assert restricted.sector_allowed(None) is False


class TestCostModelConfig:
    """Tests for CostModelConfig."""

    def test_tiers_from_dicts(self) -> None:
        config = CostModelConfig.from_dict(
            {
                "commissionTiers": [
                    {"upTo": 50_000, "rate": 0.001},
                    {"up_to": None, "rate": 0.0005},
                ]
            }
        )

        assert config.commission_tiers == [
            CommissionTier(up_to=50_000.0, rate=0.001),
            CommissionTier(up_to=math.inf, rate=0.0005),
        ]

    def test_to_dict_open_tier(self) -> None:
        data = CostModelConfig().to_dict()
        assert data["commission_tiers"][-1] == {"up_to": None, "rate": 0.0002}

    def test_round_trip(self) -> None:
        config = CostModelConfig(impact_coefficient=0.2)
        assert CostModelConfig.from_dict(config.to_dict()) == config

    def test_unsorted_tiers_rejected(self) -> None:
        with pytest.raises(ValueError):
            CostModelConfig(
                commission_tiers=[
                    CommissionTier(up_to=100.0, rate=0.001),
                    CommissionTier(up_to=50.0, rate=0.001),
                ]
            )

    def test_negative_coefficient_rejected(self) -> None:
        with pytest.raises(ValueError):
            CostModelConfig(impact_coefficient=-0.1)


class TestOptimizerConfig:
    """Tests for OptimizerConfig."""

    def test_defaults(self) -> None:
        config = OptimizerConfig()

        assert config.execute_cost_ratio == 0.2
        assert config.portfolio_value == 1_000_000.0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_iterations": 0},
            {"tolerance": 0.0},
            {"portfolio_value": -1.0},
            {"execute_cost_ratio": 0.0},
            {"min_trade_weight": -0.1},
        ],
    )
    def test_validation(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            OptimizerConfig(**kwargs)
