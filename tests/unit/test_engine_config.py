"""Tests for EngineConfig and RuntimeConfig."""

from __future__ import annotations

import math
from pathlib import Path

import pytest

from aegis.config import EngineConfig, RuntimeConfig, constraints_from_risk
from aegis.risk.config import RiskConfiguration
from aegis.risk.var import VaRMethod


EXAMPLE_CONFIG = Path(__file__).parents[2] / "config" / "engine.yaml"


class TestRuntimeConfig:
    """Tests for RuntimeConfig."""

    def test_defaults(self) -> None:
        config = RuntimeConfig()
        assert config.allow_synthetic_data is False
        assert config.max_workers == 2

    @pytest.mark.parametrize(
        "field",
        ["recompute_interval_seconds", "stress_timeout", "optimize_timeout", "max_state_age"],
    )
    def test_non_positive_durations_rejected(self, field: str) -> None:
        with pytest.raises(ValueError, match=field):
            RuntimeConfig(**{field: 0})

    def test_camel_case_keys(self) -> None:
        config = RuntimeConfig.from_dict({"allowSyntheticData": True, "stressTimeout": 2})
        assert config.allow_synthetic_data is True
        assert config.stress_timeout == 2


class TestEngineConfig:
    """Tests for EngineConfig."""

    def test_constraints_default_from_risk(self) -> None:
        config = EngineConfig(risk=RiskConfiguration(max_position_size=0.2, max_drawdown=0.1))

        assert config.constraints is not None
        assert config.constraints.max_position_size == 0.2
        assert config.constraints.max_drawdown == 0.1
        assert config.constraints == constraints_from_risk(config.risk)

    def test_from_dict_missing_sections(self) -> None:
        config = EngineConfig.from_dict({"risk": {"maxVaR": 0.02}})

        assert config.risk.max_var == 0.02
        assert config.runtime == RuntimeConfig()
        assert config.constraints.max_position_size == config.risk.max_position_size

    def test_unknown_section_rejected(self) -> None:
        with pytest.raises(ValueError, match="sections"):
            EngineConfig.from_dict({"risk": {}, "dashboard": {}})

    def test_unknown_key_rejected(self) -> None:
        with pytest.raises(ValueError, match="RuntimeConfig"):
            EngineConfig.from_dict({"runtime": {"workers": 4}})

    def test_invalid_value_propagates(self) -> None:
        with pytest.raises(ValueError):
            EngineConfig.from_dict({"risk": {"max_var": 1.5}})

    def test_from_yaml_example(self) -> None:
        config = EngineConfig.from_yaml(EXAMPLE_CONFIG)

        assert config.risk.max_var == 0.03
        assert config.risk.var_method == VaRMethod.HISTORICAL
        assert config.risk.seed == 42
        assert config.constraints.max_turnover == 0.25
        assert math.isinf(config.costs.commission_tiers[-1].up_to)
        assert config.alerts.cooldown_seconds == 300
        assert config.runtime.recompute_interval_seconds == 5

    def test_from_yaml_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            EngineConfig.from_yaml(tmp_path / "missing.yaml")

    def test_from_yaml_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("")

        config = EngineConfig.from_yaml(path)

        assert config.risk == RiskConfiguration()

    def test_to_dict_round_trip(self) -> None:
        config = EngineConfig.from_yaml(EXAMPLE_CONFIG)
        data = config.to_dict()

        assert data["risk"]["var_method"] == "historical"
        assert data["costs"]["commission_tiers"][-1]["up_to"] is None
        assert EngineConfig.from_dict(data) == config
