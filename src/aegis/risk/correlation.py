"""
Rolling covariance and correlation estimation.

Keeps a bounded price history per symbol and turns it into:
- Aligned return matrices (for historical VaR)
- A rolling correlation matrix (falls back to a default pairwise
  correlation until enough aligned observations exist)
- A covariance matrix from snapshot volatilities and that correlation
- Concentration (Herfindahl index) and weighted average pairwise correlation

References:
- Markowitz Portfolio Theory
- RiskMetrics Technical Document (correlation estimation)
"""

from __future__ import annotations

import logging
import math
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

import numpy as np

from aegis.data.models import TRADING_DAYS_PER_YEAR


logger = logging.getLogger(__name__)


@dataclass
class CorrelationMatrix:
    """Correlation matrix with metadata."""

    symbols: list[str]
    matrix: np.ndarray
    observations: int  # 0 when the default correlation was used

    def get_correlation(self, symbol1: str, symbol2: str) -> float:
        """Get correlation between two symbols."""
        try:
            idx1 = self.symbols.index(symbol1)
            idx2 = self.symbols.index(symbol2)
            return float(self.matrix[idx1, idx2])
        except ValueError:
            return 0.0

    @property
    def is_estimated(self) -> bool:
        """True when built from price history rather than the default."""
        return self.observations > 0


class CorrelationEstimator:
    """
    Rolling price history and correlation estimates.

    Example:
        estimator = CorrelationEstimator(lookback=252, min_observations=30)
        estimator.record_prices({"AAPL": 180.0, "MSFT": 410.0})
        ...
        corr = estimator.correlation_matrix(["AAPL", "MSFT"])
        cov = estimator.covariance_matrix(["AAPL", "MSFT"], {"AAPL": 0.25, "MSFT": 0.22})
    """

    def __init__(
        self,
        lookback: int = 252,
        min_observations: int = 30,
        default_correlation: float = 0.3,
    ) -> None:
        self.lookback = lookback
        self.min_observations = min_observations
        self.default_correlation = default_correlation
        # One extra price so `lookback` returns are available
        self._prices: dict[str, deque[float]] = {}

    def record_prices(self, prices: Mapping[str, float]) -> None:
        """Append one observation per symbol."""
        for symbol, price in prices.items():
            history = self._prices.get(symbol)
            if history is None:
                history = deque(maxlen=self.lookback + 1)
                self._prices[symbol] = history
            history.append(float(price))

    def forget(self, symbols: Iterable[str]) -> None:
        """Drop history for symbols no longer tracked."""
        for symbol in symbols:
            self._prices.pop(symbol, None)

    def copy(self) -> CorrelationEstimator:
        """Independent copy (safe to read on another thread while this one keeps ingesting)."""
        clone = CorrelationEstimator(self.lookback, self.min_observations, self.default_correlation)
        clone._prices = {s: deque(h, maxlen=h.maxlen) for s, h in self._prices.items()}
        return clone

    def history_length(self, symbol: str) -> int:
        return len(self._prices.get(symbol, ()))

    @property
    def tracked_symbols(self) -> list[str]:
        return list(self._prices)

    def returns_matrix(self, symbols: list[str]) -> np.ndarray:
        """
        Aligned simple returns, one column per symbol.

        Aligned on the most recent observations; the row count is limited by
        the shortest history. Returns an empty (0, n) array when any symbol
        has fewer than two prices.
        """
        if not symbols:
            return np.empty((0, 0))
        lengths = [self.history_length(s) for s in symbols]
        aligned = min(lengths)
        if aligned < 2:
            return np.empty((0, len(symbols)))
        prices = np.column_stack(
            [np.asarray(self._prices[s], dtype=np.float64)[-aligned:] for s in symbols]
        )
        return prices[1:] / prices[:-1] - 1.0

    def correlation_matrix(self, symbols: list[str]) -> CorrelationMatrix:
        """
        Rolling Pearson correlation, or the default pairwise correlation
        when fewer than `min_observations` aligned returns exist.
        """
        n = len(symbols)
        returns = self.returns_matrix(symbols)
        if n >= 2 and len(returns) >= self.min_observations:
            with np.errstate(divide="ignore", invalid="ignore"):
                corr = np.corrcoef(returns, rowvar=False)
            # Flat price series have undefined correlation
            corr = np.nan_to_num(corr, nan=self.default_correlation)
            corr = np.clip(corr, -1.0, 1.0)
            np.fill_diagonal(corr, 1.0)
            return CorrelationMatrix(symbols=list(symbols), matrix=corr, observations=len(returns))

        corr = np.full((n, n), self.default_correlation)
        np.fill_diagonal(corr, 1.0)
        return CorrelationMatrix(symbols=list(symbols), matrix=corr, observations=0)

    def covariance_matrix(
        self,
        symbols: list[str],
        annual_volatilities: Mapping[str, float],
        correlation: CorrelationMatrix | None = None,
    ) -> np.ndarray:
        """
        Daily covariance: sigma_i * sigma_j * rho_ij with sigma = annual / sqrt(252).
        """
        corr = correlation or self.correlation_matrix(symbols)
        daily = np.array(
            [annual_volatilities[s] / math.sqrt(TRADING_DAYS_PER_YEAR) for s in symbols]
        )
        return corr.matrix * np.outer(daily, daily)


def covariance_from_correlation(
    daily_volatilities: np.ndarray,
    correlation: np.ndarray,
) -> np.ndarray:
    """Covariance from per-asset volatilities and a correlation matrix."""
    return correlation * np.outer(daily_volatilities, daily_volatilities)


def herfindahl_index(weights: Iterable[float]) -> float:
    """
    Concentration of gross weights: sum((|w_i| / sum|w|)^2).

    1.0 for a single position, 1/N for N equal positions, 0.0 for a flat book.
    """
    gross = [abs(w) for w in weights]
    total = math.fsum(gross)
    if total <= 0:
        return 0.0
    hhi = math.fsum((w / total) ** 2 for w in gross)
    return min(1.0, max(0.0, hhi))


def weighted_average_correlation(weights: np.ndarray, correlation: np.ndarray) -> float:
    """
    sum_{i<j} |w_i||w_j| rho_ij / sum_{i<j} |w_i||w_j|.

    0.0 for fewer than two symbols or when all pair weights vanish.
    """
    n = len(weights)
    if n < 2:
        return 0.0
    abs_w = np.abs(weights)
    pair_weights = np.outer(abs_w, abs_w)
    upper = np.triu_indices(n, k=1)
    denominator = float(pair_weights[upper].sum())
    if denominator <= 0:
        return 0.0
    return float((pair_weights[upper] * correlation[upper]).sum() / denominator)
