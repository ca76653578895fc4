"""Tests for VaR calculation."""

from __future__ import annotations

import numpy as np
import pytest
from scipy import stats

from aegis.risk.var import VaRCalculator, VaRMethod, cholesky_factor, ewma_volatility


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def returns() -> np.ndarray:
    rng = np.random.default_rng(11)
    return rng.normal(0.0005, 0.015, 500)


# =============================================================================
# Historical
# =============================================================================


class TestHistoricalVaR:
    """Tests for historical VaR."""

    def test_var_ordering(self, returns: np.ndarray) -> None:
        """99% VaR is at least 95% VaR; CVaR is at least VaR."""
        calculator = VaRCalculator()
        var95 = calculator.historical(returns, 0.95)
        var99 = calculator.historical(returns, 0.99)

        assert var99.var >= var95.var > 0
        assert var95.cvar >= var95.var
        assert var95.method == VaRMethod.HISTORICAL
        assert var95.num_observations == 500

    def test_matches_percentile(self, returns: np.ndarray) -> None:
        estimate = VaRCalculator().historical(returns, 0.95)
        assert estimate.var == pytest.approx(-np.percentile(returns, 5))

    def test_insufficient_history(self) -> None:
        with pytest.raises(ValueError, match="at least 30"):
            VaRCalculator().historical(np.zeros(10), 0.95)

    def test_all_gains_floor_at_zero(self) -> None:
        """VaR is a loss measure and never negative."""
        estimate = VaRCalculator().historical(np.full(50, 0.01), 0.95)
        assert estimate.var == 0.0
        assert estimate.cvar >= 0.0


# =============================================================================
# Parametric
# =============================================================================


class TestParametricVaR:
    """Tests for parametric VaR."""

    def test_zero_mean(self) -> None:
        estimate = VaRCalculator().parametric(sigma_p=0.02, confidence_level=0.95)
        assert estimate.var == pytest.approx(stats.norm.ppf(0.95) * 0.02)

    def test_cvar_formula(self) -> None:
        estimate = VaRCalculator().parametric(sigma_p=0.02, confidence_level=0.99)
        z = stats.norm.ppf(0.01)
        assert estimate.cvar == pytest.approx(0.02 * stats.norm.pdf(z) / 0.01)

    def test_zero_volatility(self) -> None:
        estimate = VaRCalculator().parametric(sigma_p=0.0, confidence_level=0.95)
        assert estimate.var == 0.0
        assert estimate.cvar == 0.0


# =============================================================================
# Monte Carlo
# =============================================================================


class TestMonteCarloVaR:
    """Tests for simulated VaR."""

    def test_seeded_simulation_is_deterministic(self) -> None:
        weights = np.array([0.6, 0.4])
        covariance = np.array([[0.0004, 0.0001], [0.0001, 0.0003]])

        a = VaRCalculator(num_simulations=2_000, seed=5).simulate_portfolio_returns(weights, covariance)
        b = VaRCalculator(num_simulations=2_000, seed=5).simulate_portfolio_returns(weights, covariance)

        np.testing.assert_array_equal(a, b)

    def test_close_to_parametric(self) -> None:
        weights = np.array([1.0])
        covariance = np.array([[0.0004]])
        calculator = VaRCalculator(num_simulations=50_000, seed=1)

        draws = calculator.simulate_portfolio_returns(weights, covariance)
        simulated = calculator.from_distribution(draws, 0.95, VaRMethod.MONTE_CARLO)
        analytic = calculator.parametric(0.02, 0.95)

        assert simulated.var == pytest.approx(analytic.var, rel=0.05)
        assert simulated.num_simulations == 50_000


# =============================================================================
# Helpers
# =============================================================================


class TestHelpers:
    """Tests for EWMA volatility and the covariance factor."""

    def test_ewma_constant_returns(self) -> None:
        vol = ewma_volatility(np.full(100, 0.01), lam=0.94)
        assert vol == pytest.approx(0.01, rel=1e-2)

    def test_ewma_empty(self) -> None:
        assert ewma_volatility([]) == 0.0

    def test_cholesky_factor_reconstructs(self) -> None:
        covariance = np.array([[0.04, 0.01], [0.01, 0.09]])
        factor = cholesky_factor(covariance)
        np.testing.assert_allclose(factor @ factor.T, covariance)

    def test_cholesky_factor_singular(self) -> None:
        """Singular matrices fall back to the clipped eigen-decomposition."""
        covariance = np.array([[1.0, 1.0], [1.0, 1.0]])
        factor = cholesky_factor(covariance)
        np.testing.assert_allclose(factor @ factor.T, covariance, atol=1e-12)
