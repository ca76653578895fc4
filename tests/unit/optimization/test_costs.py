"""Tests for the transaction cost model."""

from __future__ import annotations

import math

import pytest

from aegis.core.errors import DataError
from aegis.data.models import MarketSnapshot, MarketSnapshotEntry
from aegis.optimization.config import CostModelConfig
from aegis.optimization.costs import ZERO_COST, TransactionCost, TransactionCostModel


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def model() -> TransactionCostModel:
    return TransactionCostModel()


@pytest.fixture
def entry() -> MarketSnapshotEntry:
    return MarketSnapshotEntry(
        symbol="AAPL",
        price=100.0,
        volume=1_000_000.0,
        spread=0.02,
        volatility=0.2,
        liquidity_score=1.0,
    )


# =============================================================================
# Tests
# =============================================================================


class TestTransactionCost:
    """Tests for the cost record."""

    def test_total_is_sum(self) -> None:
        cost = TransactionCost.of(spread_cost=1.0, market_impact=2.0, commission_cost=3.0)
        assert cost.total_cost == 6.0

    def test_add_and_scale(self) -> None:
        cost = TransactionCost.of(spread_cost=1.0) + TransactionCost.of(slippage_cost=3.0)
        scaled = cost.scaled(0.5)

        assert cost.total_cost == 4.0
        assert scaled.spread_cost == 0.5
        assert scaled.total_cost == 2.0


class TestCommission:
    """Tests for progressive commission tiers."""

    def test_first_tier(self, model: TransactionCostModel) -> None:
        assert model.commission(5_000.0) == pytest.approx(5.0)

    def test_spans_tiers(self, model: TransactionCostModel) -> None:
        # 10k at 10 bps + 40k at 5 bps
        assert model.commission(50_000.0) == pytest.approx(30.0)

    def test_top_tier(self, model: TransactionCostModel) -> None:
        assert model.commission(2_000_000.0) == pytest.approx(10 + 45 + 270 + 200)

    def test_minimum(self, model: TransactionCostModel) -> None:
        assert model.commission(500.0) == 1.0
        assert model.commission(0.0) == 0.0

    def test_average_rate_falls(self, model: TransactionCostModel) -> None:
        assert model.commission(500_000.0) / 500_000.0 < model.commission(20_000.0) / 20_000.0


class TestEstimate:
    """Tests for single-trade estimates."""

    def test_components(self, model: TransactionCostModel, entry: MarketSnapshotEntry) -> None:
        cost = model.estimate("AAPL", 1_000, entry)
        sigma = 0.2 / math.sqrt(252)
        notional = 100_000.0

        assert cost.spread_cost == pytest.approx(notional * 0.0002 / 2)
        assert cost.market_impact == pytest.approx(0.1 * sigma * math.sqrt(1_000 / 1_000_000) * notional)
        assert cost.slippage_cost == pytest.approx(notional * (0.0005 + 0.5 * sigma * 0.001))
        assert cost.commission_cost == pytest.approx(55.0)
        assert cost.financing_cost == 0.0
        assert cost.total_cost == pytest.approx(
            cost.spread_cost + cost.market_impact + cost.slippage_cost + cost.commission_cost
        )

    def test_direction_does_not_matter(self, model: TransactionCostModel, entry) -> None:
        assert model.estimate("AAPL", -1_000, entry) == model.estimate("AAPL", 1_000, entry)

    def test_zero_quantity(self, model: TransactionCostModel, entry) -> None:
        assert model.estimate("AAPL", 0, entry) is ZERO_COST

    def test_impact_grows_sublinearly(self, model: TransactionCostModel, entry) -> None:
        small = model.estimate("AAPL", 1_000, entry).market_impact
        large = model.estimate("AAPL", 4_000, entry).market_impact

        # 4x size -> 4x notional * 2x sqrt participation
        assert large == pytest.approx(small * 8)

    def test_illiquid_costs_more(self, model: TransactionCostModel, entry) -> None:
        illiquid = MarketSnapshotEntry(
            symbol="AAPL", price=100.0, volume=1_000_000.0, spread=0.02,
            volatility=0.2, liquidity_score=0.2,
        )
        assert model.estimate("AAPL", 1_000, illiquid).market_impact == pytest.approx(
            model.estimate("AAPL", 1_000, entry).market_impact * 5
        )

    def test_liquidity_floor(self, entry) -> None:
        model = TransactionCostModel(CostModelConfig(min_liquidity_score=0.5))
        zero = MarketSnapshotEntry(
            symbol="AAPL", price=100.0, volume=1_000_000.0, volatility=0.2, liquidity_score=0.0
        )
        assert model.estimate("AAPL", 1_000, zero).market_impact == pytest.approx(
            model.estimate("AAPL", 1_000, entry).market_impact * 2
        )

    def test_financing_above_one_x(self, model: TransactionCostModel, entry) -> None:
        cost = model.estimate("AAPL", 1_000, entry, leverage=2.0)
        assert cost.financing_cost == pytest.approx(50_000.0 * 0.03 / 365)

    def test_missing_entry(self, model: TransactionCostModel) -> None:
        with pytest.raises(DataError) as exc_info:
            model.estimate("NOPE", 10, None)
        assert exc_info.value.symbol == "NOPE"


class TestRebalance:
    """Tests for portfolio-level estimates."""

    def test_fraction_of_portfolio(self, model: TransactionCostModel, entry) -> None:
        snapshot = MarketSnapshot.from_entries([entry])
        cost = model.estimate_rebalance({"AAPL": 0.0}, {"AAPL": 0.1}, snapshot, 1_000_000.0)
        single = model.estimate("AAPL", 1_000, entry)

        assert cost.total_cost == pytest.approx(single.total_cost / 1_000_000.0)

    def test_no_change_costs_nothing(self, model: TransactionCostModel) -> None:
        cost = model.estimate_rebalance({"A": 0.2}, {"A": 0.2}, MarketSnapshot(), 1_000.0)
        assert cost.total_cost == 0.0

    def test_missing_entry_uses_default_spread(self, model: TransactionCostModel) -> None:
        cost = model.estimate_rebalance({}, {"X": 0.1}, MarketSnapshot(), 1_000_000.0)
        assert cost.spread_cost == pytest.approx(100_000 * 0.001 / 2 / 1_000_000)

    def test_non_positive_value(self, model: TransactionCostModel) -> None:
        with pytest.raises(ValueError):
            model.estimate_rebalance({}, {"X": 0.1}, MarketSnapshot(), 0.0)

    def test_worth_trading(self) -> None:
        assert TransactionCostModel.is_worth_trading(TransactionCost.of(spread_cost=0.001), 0.002)
        assert not TransactionCostModel.is_worth_trading(0.003, 0.002)
