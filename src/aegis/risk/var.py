"""
Value at Risk (VaR) Calculator.

Implements the three VaR methodologies the engine reports:
- Historical VaR: empirical percentile of portfolio returns
- Parametric VaR: normal portfolio returns, VaR = z(alpha) * sigma_p
- Monte Carlo VaR: correlated draws through a Cholesky factor of the covariance
- Expected Shortfall (CVaR): average loss beyond the VaR threshold

All figures are 1-day losses expressed as positive fractions of portfolio
value; multiply by portfolio value for currency amounts.

References:
- RiskMetrics Technical Document
- Jorion, "Value at Risk" (3rd Edition)
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING

import msgspec
import numpy as np
from numba import njit
from scipy import stats

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)


# =============================================================================
# Numba-compiled EWMA
# =============================================================================


@njit(cache=True, fastmath=True)
def _ewma_volatility_numba(returns: np.ndarray, lam: float) -> float:
    """
    EWMA volatility (RiskMetrics recursion with decay factor lambda).

    Args:
        returns: Historical returns array
        lam: Decay factor (typically 0.94 for daily data)

    Returns:
        EWMA volatility estimate
    """
    n = len(returns)
    if n == 0:
        return 0.0

    # Seed with the sample variance (manual for Numba compatibility)
    mean = 0.0
    for i in range(n):
        mean += returns[i]
    mean /= n

    variance = 0.0
    for i in range(n):
        variance += (returns[i] - mean) ** 2
    if n > 1:
        variance /= n - 1
    else:
        variance = 0.0

    for i in range(1, n):
        variance = lam * variance + (1.0 - lam) * returns[i] ** 2

    return np.sqrt(variance)


# Warmup JIT compilation at module load (compiles once, cached to disk)
_ewma_volatility_numba(np.array([0.01, -0.01, 0.02], dtype=np.float64), 0.94)


def ewma_volatility(returns: Sequence[float] | np.ndarray, lam: float = 0.94) -> float:
    """Per-period EWMA volatility of a return series."""
    arr = np.ascontiguousarray(returns, dtype=np.float64)
    return float(_ewma_volatility_numba(arr, lam))


# =============================================================================
# Types
# =============================================================================


class VaRMethod(Enum):
    """VaR calculation methodology."""

    HISTORICAL = "historical"
    PARAMETRIC = "parametric"
    MONTE_CARLO = "monte_carlo"


class VaREstimate(msgspec.Struct, frozen=True, gc=False):
    """
    VaR and CVaR at one confidence level.

    Both are positive loss fractions (0.02 = 2% of portfolio value).
    """

    var: float
    cvar: float
    confidence_level: float
    method: VaRMethod
    num_observations: int = 0
    num_simulations: int = 0


# =============================================================================
# Calculator
# =============================================================================


class VaRCalculator:
    """
    Value at Risk Calculator.

    Example:
        calculator = VaRCalculator(seed=7)

        # From a return history
        est = calculator.historical(portfolio_returns, 0.95)

        # From a portfolio volatility
        est = calculator.parametric(sigma_p=0.015, confidence_level=0.99)

        # From weights and covariance
        draws = calculator.simulate_portfolio_returns(weights, covariance)
        est = calculator.from_distribution(draws, 0.95, VaRMethod.MONTE_CARLO)
    """

    def __init__(
        self,
        num_simulations: int = 10_000,
        seed: int | None = None,
        min_observations: int = 30,
    ) -> None:
        self.num_simulations = num_simulations
        self.seed = seed
        self.min_observations = min_observations

    def historical(
        self,
        returns: Sequence[float] | np.ndarray,
        confidence_level: float,
    ) -> VaREstimate:
        """
        Historical VaR from an empirical return distribution.

        Raises:
            ValueError: Fewer than min_observations returns
        """
        returns_arr = np.asarray(returns, dtype=np.float64)
        if len(returns_arr) < self.min_observations:
            raise ValueError(
                f"Need at least {self.min_observations} observations, "
                f"got {len(returns_arr)}"
            )
        return self.from_distribution(returns_arr, confidence_level, VaRMethod.HISTORICAL)

    def parametric(
        self,
        sigma_p: float,
        confidence_level: float,
        mean: float = 0.0,
    ) -> VaREstimate:
        """
        Parametric (variance-covariance) VaR.

        VaR = -(mean + z * sigma), CVaR = -(mean - sigma * phi(z) / (1 - alpha))
        with z the lower-tail normal quantile.
        """
        z_score = stats.norm.ppf(1 - confidence_level)
        var_pct = -(mean + z_score * sigma_p)
        cvar_pct = -(mean - sigma_p * stats.norm.pdf(z_score) / (1 - confidence_level))
        var_pct = max(0.0, float(var_pct))
        return VaREstimate(
            var=var_pct,
            cvar=max(var_pct, float(cvar_pct)),
            confidence_level=confidence_level,
            method=VaRMethod.PARAMETRIC,
        )

    def simulate_portfolio_returns(
        self,
        weights: np.ndarray,
        covariance: np.ndarray,
        num_simulations: int | None = None,
    ) -> np.ndarray:
        """
        Draw correlated asset returns and aggregate them with `weights`.

        A fresh generator is seeded per call so identical inputs give
        identical draws.
        """
        n_sims = num_simulations or self.num_simulations
        factor = cholesky_factor(covariance)
        rng = np.random.default_rng(self.seed)
        draws = rng.standard_normal((n_sims, len(weights))) @ factor.T
        return draws @ weights

    def from_distribution(
        self,
        returns: np.ndarray,
        confidence_level: float,
        method: VaRMethod,
    ) -> VaREstimate:
        """VaR/CVaR from an empirical or simulated distribution of returns."""
        threshold = float(np.percentile(returns, (1 - confidence_level) * 100))
        tail = returns[returns <= threshold]
        tail_mean = float(np.mean(tail)) if len(tail) > 0 else threshold

        var_pct = max(0.0, -threshold)
        cvar_pct = max(var_pct, -tail_mean)

        simulated = method == VaRMethod.MONTE_CARLO
        return VaREstimate(
            var=var_pct,
            cvar=cvar_pct,
            confidence_level=confidence_level,
            method=method,
            num_observations=0 if simulated else len(returns),
            num_simulations=len(returns) if simulated else 0,
        )


def cholesky_factor(covariance: np.ndarray) -> np.ndarray:
    """
    Factor L with L @ L.T == covariance (lower-triangular when Cholesky succeeds).

    Falls back to an eigenvalue-clipped square root when the matrix is not
    positive definite (singular or slightly indefinite estimates).
    """
    if covariance.size == 0:
        return covariance
    try:
        return np.linalg.cholesky(covariance)
    except np.linalg.LinAlgError:
        eigenvalues, eigenvectors = np.linalg.eigh((covariance + covariance.T) / 2)
        clipped = np.clip(eigenvalues, 0.0, None)
        logger.debug(
            "Covariance not positive definite (min eigenvalue %.3g), clipping",
            float(eigenvalues.min()),
        )
        return eigenvectors * np.sqrt(clipped)
