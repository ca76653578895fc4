"""
Risk engine benchmarks.

- EWMA volatility: Numba kernel vs pure Python loop
- One ingestion cycle (metrics, breakers, alerts) over a 50-name book
- Stress catalog and optimizer on the same book

Run: pytest benchmarks/bench_risk_cycle.py -v -s
"""

from __future__ import annotations

import math
import time

import numpy as np
import pytest

from aegis.config import EngineConfig
from aegis.core.clock import Clock
from aegis.data.models import MarketSnapshot, Position
from aegis.manager import RiskManager
from aegis.optimization.optimizer import PortfolioOptimizer
from aegis.risk.stress_testing import StressTestEngine
from aegis.risk.var import ewma_volatility


NUM_RETURNS = 252
NUM_ITERATIONS = 1000
NUM_CYCLES = 200


def _ewma_volatility_python(returns: np.ndarray, lam: float) -> float:
    """Pure Python EWMA volatility (baseline for comparison)."""
    variance = float(np.var(returns, ddof=1))
    for i in range(1, len(returns)):
        variance = lam * variance + (1 - lam) * returns[i] ** 2
    return math.sqrt(variance)


def _report(title: str, duration: float, count: int) -> None:
    print(f"""
{title}
{"=" * len(title)}
  Iterations:   {count:,}
  Duration:     {duration:.4f} sec
  Per call:     {duration / count * 1000:.3f} ms
  Calls/sec:    {count / duration:,.0f}
""")


class TestEWMABenchmark:
    """EWMA volatility kernels."""

    @pytest.mark.benchmark
    def test_numba_matches_python(self) -> None:
        returns = np.random.default_rng(42).normal(0.0005, 0.02, NUM_RETURNS)
        assert ewma_volatility(returns, 0.94) == pytest.approx(
            _ewma_volatility_python(returns, 0.94), rel=1e-6
        )

    @pytest.mark.benchmark
    def test_numba_ewma(self, gc_disabled: None) -> None:
        returns = np.random.default_rng(42).normal(0.0005, 0.02, NUM_RETURNS)
        ewma_volatility(returns, 0.94)

        start = time.perf_counter()
        for _ in range(NUM_ITERATIONS):
            ewma_volatility(returns, 0.94)
        _report("Numba EWMA", time.perf_counter() - start, NUM_ITERATIONS)


class TestCycleBenchmark:
    """Full ingestion cycle and background computations."""

    @pytest.mark.bench_e2e
    def test_update_risk_metrics(
        self,
        gc_disabled: None,
        universe_50: tuple[list[Position], MarketSnapshot],
    ) -> None:
        positions, snapshot = universe_50
        rng = np.random.default_rng(7)
        manager = RiskManager(EngineConfig(), clock=Clock.simulated())
        try:
            start = time.perf_counter()
            for _ in range(NUM_CYCLES):
                moved = [p.with_price(p.current_price * math.exp(rng.normal(0, 0.01))) for p in positions]
                manager.update_risk_metrics(moved, snapshot)
            duration = time.perf_counter() - start
        finally:
            manager.close()

        _report("update_risk_metrics (50 symbols)", duration, NUM_CYCLES)
        assert manager.get_risk_state().cycle == NUM_CYCLES

    @pytest.mark.bench_e2e
    def test_stress_catalog(self, universe_50: tuple[list[Position], MarketSnapshot]) -> None:
        positions, snapshot = universe_50
        engine = StressTestEngine()

        start = time.perf_counter()
        for _ in range(100):
            engine.run_all_scenarios(positions, snapshot)
        _report("Stress catalog (50 symbols)", time.perf_counter() - start, 100)

    @pytest.mark.bench_e2e
    def test_optimizer(self, universe_50: tuple[list[Position], MarketSnapshot]) -> None:
        positions, snapshot = universe_50
        rng = np.random.default_rng(11)
        expected = {p.symbol: float(rng.normal(0.06, 0.04)) for p in positions}
        optimizer = PortfolioOptimizer()

        start = time.perf_counter()
        for _ in range(10):
            result = optimizer.optimize(expected, positions, snapshot)
        _report("Optimizer (50 symbols)", time.perf_counter() - start, 10)
        assert result.iterations > 0
