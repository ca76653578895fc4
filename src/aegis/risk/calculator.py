"""
Risk Metrics Calculator.

Turns the current positions and market snapshot into a fresh RiskMetrics
record every cycle:
- VaR (95%/99%, 1-day) by the configured method, with CVaR
- Annualized portfolio volatility
- Sharpe ratio and maximum drawdown from a rolling equity curve
- Concentration (Herfindahl), correlation and liquidity risk
- Daily loss as a fraction of portfolio value

Symbols with missing price or volatility are excluded from the covariance
estimate (DataError, logged) but keep their weight in concentration math.
One bad data point never aborts the recomputation.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from collections.abc import Sequence

import msgspec
import numpy as np

from aegis.core.clock import Clock
from aegis.core.errors import DataError, InvariantViolation
from aegis.data.models import (
    TRADING_DAYS_PER_YEAR,
    MarketSnapshot,
    Position,
    gross_exposure,
    portfolio_value,
)
from aegis.risk.config import RiskConfiguration
from aegis.risk.correlation import (
    CorrelationEstimator,
    herfindahl_index,
    weighted_average_correlation,
)
from aegis.risk.metrics import RiskMetrics, ValueAtRisk
from aegis.risk.var import VaRCalculator, VaREstimate, VaRMethod, ewma_volatility


logger = logging.getLogger(__name__)


class RiskMetricsCalculator:
    """
    Stateful risk calculator (rolling price history and equity curve).

    Only the ingestion path should call calculate(); evaluate() leaves the
    history untouched and may be used for what-if analysis.

    Example:
        calculator = RiskMetricsCalculator(RiskConfiguration(max_var=0.03))
        metrics = calculator.calculate(positions, snapshot)
        print(f"VaR95: {metrics.var95:.2%} ({metrics.method.value})")
    """

    def __init__(
        self,
        config: RiskConfiguration | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or RiskConfiguration()
        self._clock = clock or Clock()
        self.estimator = CorrelationEstimator(
            lookback=self.config.lookback_periods,
            min_observations=self.config.min_observations,
            default_correlation=self.config.default_correlation,
        )
        self._var = VaRCalculator(
            num_simulations=self.config.num_simulations,
            seed=self.config.seed,
            min_observations=self.config.min_observations,
        )
        self._equity_curve: deque[float] = deque(maxlen=self.config.lookback_periods + 1)
        self._risk_contributions: dict[str, float] = {}
        self._data_errors: list[DataError] = []

    # =========================================================================
    # Public API
    # =========================================================================

    def calculate(self, positions: Sequence[Position], snapshot: MarketSnapshot) -> RiskMetrics:
        """
        Record this cycle's prices and portfolio value, then compute metrics.

        The history is restored if the metrics fail validation, so a rejected
        cycle leaves no trace in later VaR, Sharpe or drawdown figures.

        Raises:
            InvariantViolation: If the computed metrics are inconsistent
        """
        saved_estimator = self.estimator.copy()
        saved_curve = list(self._equity_curve)

        held = {p.symbol for p in positions}
        stale = [s for s in self.estimator.tracked_symbols if s not in held]
        if stale:
            self.estimator.forget(stale)

        self.estimator.record_prices(
            {s: snapshot[s].price for s in held if s in snapshot}
        )
        if positions:
            self._equity_curve.append(portfolio_value(positions))

        try:
            return self.evaluate(positions, snapshot)
        except InvariantViolation:
            self.estimator = saved_estimator
            self._equity_curve.clear()
            self._equity_curve.extend(saved_curve)
            raise

    def evaluate(self, positions: Sequence[Position], snapshot: MarketSnapshot) -> RiskMetrics:
        """Compute metrics against the current history without recording prices or equity."""
        self._data_errors = []
        gross = gross_exposure(positions)
        net = portfolio_value(positions)

        weights: dict[str, float] = {}
        if gross > 0:
            for p in positions:
                weights[p.symbol] = weights.get(p.symbol, 0.0) + p.market_value / gross

        covered, vols = self._covered_symbols(weights, snapshot)
        w = np.array([weights[s] for s in covered], dtype=np.float64)

        correlation = self.estimator.correlation_matrix(covered)
        covariance = self.estimator.covariance_matrix(covered, vols, correlation)
        variance = float(w @ covariance @ w) if len(covered) else 0.0
        sigma_p = math.sqrt(max(variance, 0.0))

        est95, est99 = self._value_at_risk(covered, w, covariance, sigma_p)
        self._risk_contributions = _risk_contributions(covered, w, covariance, variance)

        metrics = RiskMetrics(
            value_at_risk=ValueAtRisk(
                var95=est95.var,
                var99=est99.var,
                method=est95.method,
                confidence=0.95,
                time_horizon=1,
            ),
            conditional_var=est95.cvar,
            sharpe_ratio=self._sharpe_ratio(),
            maximum_drawdown=self._maximum_drawdown(),
            volatility=sigma_p * math.sqrt(TRADING_DAYS_PER_YEAR),
            concentration_risk=herfindahl_index(p.market_value for p in positions),
            correlation_risk=weighted_average_correlation(w, correlation.matrix),
            liquidity_risk=_liquidity_risk(weights, snapshot),
            sector_exposure=_sector_exposure(positions, snapshot),
            daily_loss=_daily_loss(positions),
            portfolio_value=net,
            position_count=len(weights),
            excluded_symbols=sorted({e.symbol for e in self._data_errors if e.symbol}),
            observations=correlation.observations,
            computed_at=self._clock.utc_now(),
        )
        metrics.check_invariants()

        logger.debug(
            "Risk metrics: var95=%.4f var99=%.4f method=%s vol=%.4f hhi=%.3f excluded=%d",
            metrics.var95,
            metrics.var99,
            metrics.method.value,
            metrics.volatility,
            metrics.concentration_risk,
            len(metrics.excluded_symbols),
        )
        return metrics

    def annotate_positions(self, positions: Sequence[Position]) -> list[Position]:
        """Copies of `positions` carrying weight and risk contribution from the last evaluation."""
        gross = gross_exposure(positions)
        return [
            msgspec.structs.replace(
                p,
                weight=p.market_value / gross if gross > 0 else 0.0,
                risk_contribution=self._risk_contributions.get(p.symbol, 0.0),
            )
            for p in positions
        ]

    @property
    def data_errors(self) -> list[DataError]:
        """DataErrors recovered during the last evaluation."""
        return list(self._data_errors)

    @property
    def equity_curve(self) -> list[float]:
        return list(self._equity_curve)

    def reset_history(self) -> None:
        """Forget price history and the equity curve."""
        self.estimator.forget(self.estimator.tracked_symbols)
        self._equity_curve.clear()

    # =========================================================================
    # Components
    # =========================================================================

    def _covered_symbols(
        self,
        weights: dict[str, float],
        snapshot: MarketSnapshot,
    ) -> tuple[list[str], dict[str, float]]:
        """Symbols with usable price and volatility, plus their annual vols."""
        covered: list[str] = []
        vols: dict[str, float] = {}
        for symbol in weights:
            entry = snapshot.get(symbol)
            if entry is None:
                self._record_data_error(symbol, "no market data in snapshot")
                continue
            if entry.volatility is None:
                self._record_data_error(symbol, "volatility missing")
                continue
            covered.append(symbol)
            vols[symbol] = entry.volatility
        return covered, vols

    def _record_data_error(self, symbol: str, reason: str) -> None:
        error = DataError(f"{symbol}: {reason}, excluded from covariance", symbol=symbol)
        self._data_errors.append(error)
        logger.warning("%s", error)

    def _value_at_risk(
        self,
        covered: list[str],
        w: np.ndarray,
        covariance: np.ndarray,
        sigma_p: float,
    ) -> tuple[VaREstimate, VaREstimate]:
        method = self.config.var_method

        if method == VaRMethod.HISTORICAL and covered:
            returns = self.estimator.returns_matrix(covered)
            if len(returns) >= self.config.min_observations:
                portfolio_returns = returns @ w
                return (
                    self._var.from_distribution(portfolio_returns, 0.95, VaRMethod.HISTORICAL),
                    self._var.from_distribution(portfolio_returns, 0.99, VaRMethod.HISTORICAL),
                )
            logger.debug(
                "Historical VaR needs %d observations, have %d; using parametric",
                self.config.min_observations,
                len(returns),
            )

        if method == VaRMethod.MONTE_CARLO and covered:
            simulated = self._var.simulate_portfolio_returns(w, covariance)
            return (
                self._var.from_distribution(simulated, 0.95, VaRMethod.MONTE_CARLO),
                self._var.from_distribution(simulated, 0.99, VaRMethod.MONTE_CARLO),
            )

        return self._var.parametric(sigma_p, 0.95), self._var.parametric(sigma_p, 0.99)

    def _equity_returns(self) -> np.ndarray:
        curve = np.asarray(self._equity_curve, dtype=np.float64)
        if len(curve) < 2:
            return np.empty(0)
        previous = curve[:-1]
        valid = previous > 0
        return (curve[1:][valid] - previous[valid]) / previous[valid]

    def _sharpe_ratio(self) -> float:
        """Annualized Sharpe ratio of the equity curve (0 with < 2 returns)."""
        returns = self._equity_returns()
        if len(returns) < 2:
            return 0.0
        if self.config.use_ewma:
            deviation = ewma_volatility(returns, self.config.ewma_lambda)
        else:
            deviation = float(np.std(returns, ddof=1))
        if deviation <= 0 or not math.isfinite(deviation):
            return 0.0
        excess = float(np.mean(returns)) - self.config.risk_free_rate / TRADING_DAYS_PER_YEAR
        return excess / deviation * math.sqrt(TRADING_DAYS_PER_YEAR)

    def _maximum_drawdown(self) -> float:
        """Largest peak-to-trough relative decline of the equity curve."""
        curve = np.asarray(self._equity_curve, dtype=np.float64)
        if len(curve) < 2:
            return 0.0
        peaks = np.maximum.accumulate(curve)
        with np.errstate(divide="ignore", invalid="ignore"):
            drawdowns = np.where(peaks > 0, (peaks - curve) / peaks, 0.0)
        return float(max(0.0, np.max(drawdowns)))


def _risk_contributions(
    covered: list[str],
    w: np.ndarray,
    covariance: np.ndarray,
    variance: float,
) -> dict[str, float]:
    """Share of portfolio variance per symbol: w_i (Sigma w)_i / w' Sigma w."""
    if variance <= 0:
        return {s: 0.0 for s in covered}
    marginal = covariance @ w
    return {s: float(w[i] * marginal[i] / variance) for i, s in enumerate(covered)}


def _liquidity_risk(weights: dict[str, float], snapshot: MarketSnapshot) -> float:
    total = 0.0
    weighted = 0.0
    for symbol, weight in weights.items():
        entry = snapshot.get(symbol)
        if entry is None:
            continue
        total += abs(weight)
        weighted += abs(weight) * (1.0 - entry.liquidity_score)
    return weighted / total if total > 0 else 0.0


def _sector_exposure(positions: Sequence[Position], snapshot: MarketSnapshot) -> float:
    """Largest single-sector share of gross exposure; unknown sectors only add to the gross."""
    gross = gross_exposure(positions)
    if gross <= 0:
        return 0.0
    exposure: dict[str, float] = {}
    for p in positions:
        entry = snapshot.get(p.symbol)
        sector = p.sector or (entry.sector if entry is not None else None)
        if sector:
            exposure[sector.lower()] = exposure.get(sector.lower(), 0.0) + abs(p.market_value)
    return min(max(exposure.values(), default=0.0) / gross, 1.0)


def _daily_loss(positions: Sequence[Position]) -> float:
    """-sum(daily P&L) / sum(market value); positive means a loss."""
    total = portfolio_value(positions)
    if total <= 0:
        return 0.0
    return -math.fsum(p.daily_pnl for p in positions) / total
