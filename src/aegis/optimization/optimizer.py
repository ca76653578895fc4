"""
Cost-aware portfolio optimizer.

Maximizes

    mu . w  -  risk_aversion * w' Sigma w  -  cost(current -> w)

by projected gradient ascent over the feasible set

    lo_i <= w_i <= hi_i,   sum(w) <= min(1, max_leverage),   sum|w| <= max_leverage

Assets that are forbidden, below the liquidity floor or outside the allowed
sectors are pinned to zero. Symbols without market data are pinned at their
current weight clamped into the position bounds (DataError, logged). The
turnover cap is applied afterwards by bisection along the segment from the
nearest feasible point to the optimum.

When no feasible point exists the optimizer recovers from ConstraintInfeasible
by scaling all weights onto the budget and leverage limits. That point, or the
nearest feasible point when reaching it needs more turnover than allowed, is
approached from the current weights only as far as the turnover budget permits.
The result is a HOLD with the constraints still broken listed.

References:
- Boyd & Vandenberghe, Convex Optimization, ch. 9 (projected gradient)
- Grinold & Kahn, Active Portfolio Management (cost-aware rebalancing)
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Mapping, Sequence
from enum import Enum

import msgspec
import numpy as np

from aegis.core.errors import ConstraintInfeasible, DataError
from aegis.core.tasks import CancellationToken
from aegis.data.models import (
    TRADING_DAYS_PER_YEAR,
    MarketSnapshot,
    Position,
    portfolio_value,
    position_weights,
)
from aegis.optimization.config import OptimizerConfig, TradingConstraints
from aegis.optimization.costs import TransactionCost, TransactionCostModel
from aegis.optimization.execution import (
    ExecutionPlanner,
    ExecutionStep,
    estimated_execution_time,
)
from aegis.risk.correlation import CorrelationMatrix


logger = logging.getLogger(__name__)


_FEASIBILITY_TOL = 1e-9
_BISECTION_STEPS = 60
_PROJECTION_ROUNDS = 5
_FD_STEP = 1e-6
_ARMIJO = 1e-4


class Recommendation(str, Enum):
    """Rebalance recommendation."""

    EXECUTE = "EXECUTE"
    PARTIAL = "PARTIAL"  # Benefit positive but constrained or costly; caller decides
    HOLD = "HOLD"


class OptimizationResult(msgspec.Struct, frozen=True, rename="camel"):
    """Target portfolio and how to get there. Advisory only."""

    portfolio_weights: dict[str, float]
    expected_return: float
    expected_risk: float  # Annualized volatility of the target
    sharpe_ratio: float
    turnover: float  # sum|target - current| / 2
    expected_costs: TransactionCost  # Fractions of portfolio value
    rebalance_recommendation: Recommendation
    optimal_execution_plan: list[ExecutionStep] = []
    net_benefit: float = 0.0
    gross_benefit: float = 0.0
    estimated_execution_time: float = 0.0  # Minutes
    violated_constraints: list[str] = []
    binding_constraints: list[str] = []
    excluded_symbols: list[str] = []
    converged: bool = False
    iterations: int = 0
    execution_blocked: bool = False

    @property
    def is_actionable(self) -> bool:
        return (
            not self.execution_blocked
            and not self.violated_constraints
            and self.rebalance_recommendation != Recommendation.HOLD
        )

    def blocked(self) -> OptimizationResult:
        """Copy downgraded to HOLD because execution is halted."""
        return msgspec.structs.replace(
            self,
            rebalance_recommendation=Recommendation.HOLD,
            execution_blocked=True,
        )


class _Problem:
    """Vectorized optimization problem over a fixed symbol universe."""

    def __init__(
        self,
        symbols: list[str],
        mu: np.ndarray,
        covariance: np.ndarray,
        current: np.ndarray,
        lo: np.ndarray,
        hi: np.ndarray,
        budget: float,
        leverage: float,
        risk_aversion: float,
        cost_fn: Callable[[int, float], float],
    ) -> None:
        self.symbols = symbols
        self.mu = mu
        self.covariance = covariance
        self.current = current
        self.lo = lo
        self.hi = hi
        self.budget = budget
        self.leverage = leverage
        self.risk_aversion = risk_aversion
        self.free = lo < hi
        self._cost_fn = cost_fn

    def utility(self, w: np.ndarray) -> float:
        """Return minus risk penalty, before costs."""
        return float(self.mu @ w - self.risk_aversion * (w @ self.covariance @ w))

    def cost(self, w: np.ndarray) -> float:
        delta = w - self.current
        return math.fsum(self._cost_fn(i, d) for i, d in enumerate(delta) if d != 0.0)

    def objective(self, w: np.ndarray) -> float:
        return self.utility(w) - self.cost(w)

    def gradient(self, w: np.ndarray) -> np.ndarray:
        grad = self.mu - 2.0 * self.risk_aversion * (self.covariance @ w)
        delta = w - self.current
        for i in np.flatnonzero(self.free):
            d = delta[i]
            up = self._cost_fn(i, d + _FD_STEP)
            down = self._cost_fn(i, d - _FD_STEP)
            grad[i] -= (up - down) / (2 * _FD_STEP)
        return grad

    # -------------------------------------------------------------------------
    # Projection
    # -------------------------------------------------------------------------

    def project(self, w: np.ndarray) -> np.ndarray:
        """
        Map `w` into the feasible set (alternating box/budget/gross projections).

        Raises:
            ConstraintInfeasible: Pinned weights alone break the budget or leverage
        """
        x = np.clip(w, self.lo, self.hi)
        for _ in range(_PROJECTION_ROUNDS):
            x = self._cap_sum(x)
            x = self._cap_gross(x)
            if not self.violations(x):
                return x
        violated = self.violations(x)
        if violated:
            raise ConstraintInfeasible(
                f"No feasible weights: {', '.join(violated)}",
                violated=violated,
            )
        return x

    def shrink_to_limits(self, x: np.ndarray) -> np.ndarray:
        """Scale every weight by one factor so net <= budget and gross <= leverage."""
        factor = 1.0
        total = float(x.sum())
        gross = float(np.abs(x).sum())
        if total > self.budget:
            factor = min(factor, self.budget / total)
        if gross > self.leverage:
            factor = min(factor, self.leverage / gross)
        return x * factor

    def violations(self, x: np.ndarray) -> list[str]:
        violated = []
        if x.sum() > self.budget + _FEASIBILITY_TOL:
            violated.append("budget")
        if np.abs(x).sum() > self.leverage + _FEASIBILITY_TOL:
            violated.append("max_leverage")
        return violated

    def _cap_sum(self, x: np.ndarray) -> np.ndarray:
        if x.sum() <= self.budget:
            return x
        lo_tau, hi_tau = 0.0, float(np.max(x - self.lo))
        for _ in range(_BISECTION_STEPS):
            tau = (lo_tau + hi_tau) / 2
            if np.clip(x - tau, self.lo, self.hi).sum() > self.budget:
                lo_tau = tau
            else:
                hi_tau = tau
        return np.clip(x - hi_tau, self.lo, self.hi)

    def _cap_gross(self, x: np.ndarray) -> np.ndarray:
        if np.abs(x).sum() <= self.leverage:
            return x

        def shrink(tau: float) -> np.ndarray:
            shrunk = np.sign(x) * np.maximum(np.abs(x) - tau, 0.0)
            return np.where(self.free, shrunk, x)

        lo_tau, hi_tau = 0.0, float(np.max(np.abs(x), initial=0.0))
        for _ in range(_BISECTION_STEPS):
            tau = (lo_tau + hi_tau) / 2
            if np.abs(shrink(tau)).sum() > self.leverage:
                lo_tau = tau
            else:
                hi_tau = tau
        return shrink(hi_tau)


def turnover(target: Mapping[str, float], current: Mapping[str, float]) -> float:
    """One-way turnover: sum over all symbols of |target - current|, halved."""
    symbols = set(target) | set(current)
    return math.fsum(abs(target.get(s, 0.0) - current.get(s, 0.0)) for s in symbols) / 2


def _trade(problem: _Problem, x: np.ndarray) -> float:
    return float(np.abs(x - problem.current).sum()) / 2


def _within_turnover(
    problem: _Problem,
    start: np.ndarray,
    end: np.ndarray,
    max_turnover: float,
) -> np.ndarray:
    """Furthest point on the segment start -> end whose turnover stays within the budget."""
    if _trade(problem, end) <= max_turnover:
        return end
    lo_alpha, hi_alpha = 0.0, 1.0
    for _ in range(_BISECTION_STEPS):
        alpha = (lo_alpha + hi_alpha) / 2
        if _trade(problem, start + alpha * (end - start)) <= max_turnover:
            lo_alpha = alpha
        else:
            hi_alpha = alpha
    return start + lo_alpha * (end - start)


class PortfolioOptimizer:
    """
    Cost-aware mean-variance rebalancer.

    Results are advisory: the RiskManager decides (via the circuit breakers)
    whether a recommendation may be executed.

    Example:
        optimizer = PortfolioOptimizer(TradingConstraints(max_turnover=0.2))
        result = optimizer.optimize(
            expected_returns={"AAPL": 0.08, "MSFT": 0.06},
            current_portfolio={"AAPL": 0.10, "MSFT": 0.05},
            market_snapshot=snapshot,
            risk_aversion=3.0,
        )
        if result.rebalance_recommendation == Recommendation.EXECUTE:
            for step in result.optimal_execution_plan:
                ...
    """

    def __init__(
        self,
        constraints: TradingConstraints | None = None,
        cost_model: TransactionCostModel | None = None,
        config: OptimizerConfig | None = None,
    ) -> None:
        self.constraints = constraints or TradingConstraints()
        self.cost_model = cost_model or TransactionCostModel()
        self.config = config or OptimizerConfig()
        self.planner = ExecutionPlanner(self.cost_model, self.config)

    def optimize(
        self,
        expected_returns: Mapping[str, float],
        current_portfolio: Mapping[str, float] | Sequence[Position],
        market_snapshot: MarketSnapshot,
        risk_aversion: float = 3.0,
        constraints: TradingConstraints | None = None,
        correlation: CorrelationMatrix | None = None,
        portfolio_value: float | None = None,
        token: CancellationToken | None = None,
        partial: list | None = None,
    ) -> OptimizationResult:
        """
        Compute a target portfolio.

        Args:
            expected_returns: Annualized expected return per symbol
            current_portfolio: Current weights, or positions to derive them from
            market_snapshot: Prices, volatilities and liquidity
            risk_aversion: Penalty on annualized variance (>= 0)
            constraints: Overrides the optimizer's default constraints
            correlation: Correlation estimate (default pairwise correlation otherwise)
            portfolio_value: Currency value used to size trades and costs
            token: Checked once per iteration
            partial: Receives the latest iterate (for timeout reporting)

        Raises:
            ValueError: Negative risk aversion or non-finite expected returns
            ComputationCancelled: Token cancelled
        """
        if risk_aversion < 0 or not math.isfinite(risk_aversion):
            raise ValueError("risk_aversion must be a non-negative number")
        for symbol, value in expected_returns.items():
            if not math.isfinite(value):
                raise ValueError(f"{symbol}: expected return must be finite")

        constraints = constraints or self.constraints
        current = self._current_weights(current_portfolio)
        value = self._portfolio_value(current_portfolio, portfolio_value)

        symbols = sorted(set(expected_returns) | set(current))
        problem, excluded, pinned_zero = self._build_problem(
            symbols, expected_returns, current, market_snapshot,
            risk_aversion, constraints, correlation, value,
        )

        try:
            nearest = problem.project(problem.current)
        except ConstraintInfeasible as exc:
            logger.warning("Optimization infeasible: %s", exc)
            fallback = problem.shrink_to_limits(np.clip(problem.current, problem.lo, problem.hi))
            return self._infeasible(
                problem, current, fallback, exc.violated, constraints, pinned_zero,
                excluded, market_snapshot, value,
            )

        if _trade(problem, nearest) > constraints.max_turnover + _FEASIBILITY_TOL:
            logger.warning(
                "Optimization infeasible: reaching feasible weights needs turnover %.4f "
                "> max_turnover %.4f",
                _trade(problem, nearest),
                constraints.max_turnover,
            )
            return self._infeasible(
                problem, current, nearest, [], constraints, pinned_zero,
                excluded, market_snapshot, value,
            )

        weights, iterations, converged = self._solve(problem, nearest, token, partial)

        binding: list[str] = []
        capped = False
        if _trade(problem, weights) > constraints.max_turnover:
            weights = _within_turnover(problem, nearest, weights, constraints.max_turnover)
            capped = True
            binding.append("max_turnover")

        violated = self._violated(problem, weights, constraints, pinned_zero)
        binding.extend(self._binding(problem, weights, constraints, pinned_zero))
        return self._result(
            problem, current, weights, market_snapshot, value, expected_returns,
            violated=violated,
            binding=binding,
            excluded=excluded,
            capped=capped,
            iterations=iterations,
            converged=converged,
        )

    # =========================================================================
    # Problem setup
    # =========================================================================

    @staticmethod
    def _current_weights(
        current_portfolio: Mapping[str, float] | Sequence[Position],
    ) -> dict[str, float]:
        if isinstance(current_portfolio, Mapping):
            return {s: float(w) for s, w in current_portfolio.items()}
        return position_weights(current_portfolio)

    def _portfolio_value(
        self,
        current_portfolio: Mapping[str, float] | Sequence[Position],
        explicit: float | None,
    ) -> float:
        if explicit is not None:
            if explicit <= 0:
                raise ValueError("portfolio_value must be positive")
            return explicit
        if not isinstance(current_portfolio, Mapping):
            value = portfolio_value(current_portfolio)
            if value > 0:
                return value
        return self.config.portfolio_value

    def _build_problem(
        self,
        symbols: list[str],
        expected_returns: Mapping[str, float],
        current: Mapping[str, float],
        snapshot: MarketSnapshot,
        risk_aversion: float,
        constraints: TradingConstraints,
        correlation: CorrelationMatrix | None,
        value: float,
    ) -> tuple[_Problem, list[str], list[str]]:
        n = len(symbols)
        cur = np.array([current.get(s, 0.0) for s in symbols], dtype=np.float64)
        mu = np.array([expected_returns.get(s, 0.0) for s in symbols], dtype=np.float64)
        lo = np.zeros(n)
        hi = np.zeros(n)
        vols = np.full(n, self.config.default_volatility)
        forbidden = {s.upper() for s in constraints.forbidden_assets}
        entries = [snapshot.get(s) for s in symbols]

        excluded: list[str] = []
        pinned_zero: list[str] = []
        for i, (symbol, entry) in enumerate(zip(symbols, entries)):
            if entry is None:
                error = DataError(f"{symbol}: no market data, weight held at current", symbol=symbol)
                logger.warning("%s", error)
                floor = -constraints.max_position_size if constraints.allow_short else 0.0
                lo[i] = hi[i] = min(max(cur[i], floor), constraints.max_position_size)
                excluded.append(symbol)
                continue
            if entry.volatility is not None:
                vols[i] = entry.volatility

            if symbol.upper() in forbidden:
                reason = "forbidden"
            elif entry.adv * entry.price < constraints.min_liquidity:
                reason = "illiquid"
            elif not constraints.sector_allowed(entry.sector):
                reason = "sector not allowed"
            else:
                reason = None
            if reason is not None:
                logger.debug("%s: zero-weighted (%s)", symbol, reason)
                excluded.append(symbol)
                pinned_zero.append(symbol)
                continue

            hi[i] = constraints.max_position_size
            lo[i] = -constraints.max_position_size if constraints.allow_short else 0.0

        corr = self._correlation(symbols, correlation)
        covariance = corr * np.outer(vols, vols)

        leverage = max(1.0, float(np.abs(cur).sum()))

        def cost_fn(i: int, delta: float) -> float:
            return self.cost_model.weight_cost(delta, entries[i], value, leverage)

        problem = _Problem(
            symbols=symbols,
            mu=mu,
            covariance=covariance,
            current=cur,
            lo=lo,
            hi=hi,
            budget=min(1.0, constraints.max_leverage),
            leverage=constraints.max_leverage,
            risk_aversion=risk_aversion,
            cost_fn=cost_fn,
        )
        return problem, sorted(excluded), pinned_zero

    def _correlation(self, symbols: list[str], correlation: CorrelationMatrix | None) -> np.ndarray:
        n = len(symbols)
        corr = np.full((n, n), self.config.default_correlation)
        if correlation is not None:
            index = {s: i for i, s in enumerate(correlation.symbols)}
            for a, sa in enumerate(symbols):
                for b, sb in enumerate(symbols):
                    if sa in index and sb in index:
                        corr[a, b] = correlation.matrix[index[sa], index[sb]]
        np.fill_diagonal(corr, 1.0)
        return corr

    # =========================================================================
    # Solver
    # =========================================================================

    def _solve(
        self,
        problem: _Problem,
        start: np.ndarray,
        token: CancellationToken | None,
        partial: list | None,
    ) -> tuple[np.ndarray, int, bool]:
        w = start.copy()
        f_w = problem.objective(w)
        iterations = 0
        converged = False

        for iterations in range(1, self.config.max_iterations + 1):
            if token is not None:
                token.raise_if_cancelled()

            grad = problem.gradient(w)
            step = self.config.max_step
            while True:
                candidate = problem.project(w + step * grad)
                f_candidate = problem.objective(candidate)
                if f_candidate >= f_w + _ARMIJO * float(grad @ (candidate - w)):
                    break
                step /= 2
                if step < 1e-12:
                    candidate, f_candidate = w, f_w
                    break

            moved = float(np.max(np.abs(candidate - w), initial=0.0))
            w, f_w = candidate, f_candidate
            if partial is not None:
                partial[:] = [dict(zip(problem.symbols, w.tolist()))]
            if moved < self.config.tolerance:
                converged = True
                break

        if not converged:
            logger.debug("Optimizer stopped after %d iterations without converging", iterations)
        return w, iterations, converged

    # =========================================================================
    # Result assembly
    # =========================================================================

    def _violated(
        self,
        problem: _Problem,
        w: np.ndarray,
        constraints: TradingConstraints,
        pinned_zero: list[str],
    ) -> list[str]:
        violated = problem.violations(w)
        if np.any(np.abs(w) > constraints.max_position_size + _FEASIBILITY_TOL):
            violated.append("max_position_size")
        if not constraints.allow_short and np.any(w < -_FEASIBILITY_TOL):
            violated.append("allow_short")
        zeroed = [problem.symbols.index(s) for s in pinned_zero]
        if zeroed and np.any(np.abs(w[zeroed]) > _FEASIBILITY_TOL):
            violated.append("excluded_assets")
        if self._drawdown_estimate(problem, w) > constraints.max_drawdown:
            violated.append("max_drawdown")
        return violated

    def _binding(
        self,
        problem: _Problem,
        w: np.ndarray,
        constraints: TradingConstraints,
        pinned_zero: list[str],
    ) -> list[str]:
        binding = []
        at_cap = problem.free & (np.abs(w) >= constraints.max_position_size - 1e-7)
        if np.any(at_cap):
            binding.append("max_position_size")
        if w.sum() >= problem.budget - 1e-7:
            binding.append("budget")
        if np.abs(w).sum() >= problem.leverage - 1e-7:
            binding.append("max_leverage")
        if pinned_zero:
            binding.append("excluded_assets")
        return binding

    def _drawdown_estimate(self, problem: _Problem, w: np.ndarray) -> float:
        """99% parametric loss of `w` over the drawdown horizon."""
        sigma = math.sqrt(max(float(w @ problem.covariance @ w), 0.0))
        horizon = self.config.drawdown_horizon_days / TRADING_DAYS_PER_YEAR
        return self.config.drawdown_z * sigma * math.sqrt(horizon)

    def _infeasible(
        self,
        problem: _Problem,
        current: Mapping[str, float],
        point: np.ndarray,
        violated: list[str],
        constraints: TradingConstraints,
        pinned_zero: list[str],
        excluded: list[str],
        snapshot: MarketSnapshot,
        value: float,
    ) -> OptimizationResult:
        """HOLD at the furthest point toward `point` that fits the turnover budget."""
        w = _within_turnover(problem, problem.current, point, constraints.max_turnover)
        found = self._violated(problem, w, constraints, pinned_zero)
        violated = list(dict.fromkeys([*violated, *found])) or ["max_turnover"]
        return self._result(
            problem, current, w, snapshot, value, {},
            violated=violated,
            binding=[],
            excluded=excluded,
            capped=_trade(problem, point) > constraints.max_turnover,
            iterations=0,
            converged=False,
        )

    def _result(
        self,
        problem: _Problem,
        current: Mapping[str, float],
        w: np.ndarray,
        snapshot: MarketSnapshot,
        value: float,
        expected_returns: Mapping[str, float],
        *,
        violated: list[str],
        binding: list[str],
        excluded: list[str],
        capped: bool,
        iterations: int,
        converged: bool,
    ) -> OptimizationResult:
        w = np.where(np.abs(w) < 1e-12, 0.0, w)
        target = dict(zip(problem.symbols, w.tolist()))
        moved = turnover(target, current)

        variance = max(float(w @ problem.covariance @ w), 0.0)
        risk = math.sqrt(variance)
        expected_return = float(problem.mu @ w)
        sharpe = (expected_return - self.config.risk_free_rate) / risk if risk > 0 else 0.0

        costs = self.cost_model.estimate_rebalance(current, target, snapshot, value)
        gross_benefit = problem.utility(w) - problem.utility(problem.current)
        net_benefit = gross_benefit - costs.total_cost

        if violated:
            recommendation = Recommendation.HOLD
        elif moved < self.config.min_trade_weight or gross_benefit <= 0 or net_benefit <= 0:
            recommendation = Recommendation.HOLD
        elif costs.total_cost / gross_benefit < self.config.execute_cost_ratio and not capped:
            recommendation = Recommendation.EXECUTE
        else:
            recommendation = Recommendation.PARTIAL

        plan: list[ExecutionStep] = []
        if recommendation != Recommendation.HOLD:
            plan = self.planner.plan(current, target, snapshot, value, expected_returns)

        logger.info(
            "Optimization %s: turnover=%.4f net_benefit=%.6f cost=%.6f iterations=%d%s",
            recommendation.value,
            moved,
            net_benefit,
            costs.total_cost,
            iterations,
            f" violated={violated}" if violated else "",
        )
        return OptimizationResult(
            portfolio_weights=target,
            expected_return=expected_return,
            expected_risk=risk,
            sharpe_ratio=sharpe,
            turnover=moved,
            expected_costs=costs,
            rebalance_recommendation=recommendation,
            optimal_execution_plan=plan,
            net_benefit=net_benefit,
            gross_benefit=gross_benefit,
            estimated_execution_time=estimated_execution_time(plan),
            violated_constraints=list(violated),
            binding_constraints=binding,
            excluded_symbols=excluded,
            converged=converged,
            iterations=iterations,
        )
