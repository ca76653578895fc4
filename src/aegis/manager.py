"""
Risk Manager for AEGIS.

Coordinates the risk components around one published RiskState:

    PortfolioDataSource / update_risk_metrics()
        -> RiskMetricsCalculator -> CircuitBreakerController -> AlertManager
        -> RiskState (reference swap) -> readers

Ingestion is single-writer (guarded by a writer lock). Readers never lock:
they read whatever RiskState was last swapped in, together with its
staleness and the last computation error. Stress tests and optimization run
on a worker pool with time budgets and never block ingestion.

The manager is constructed and owned by the caller; there is no module-level
instance.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

import msgspec

from aegis.config import EngineConfig
from aegis.core.clock import Clock
from aegis.core.errors import AegisError, DataError, InvariantViolation
from aegis.core.events import Event, EventType
from aegis.core.message_bus import MessageBus
from aegis.core.tasks import ComputeRunner
from aegis.data.models import MarketSnapshot, Position
from aegis.data.sources import PortfolioDataSource
from aegis.optimization.config import TradingConstraints
from aegis.optimization.costs import TransactionCostModel
from aegis.optimization.optimizer import OptimizationResult, PortfolioOptimizer
from aegis.risk.alerts import Alert, AlertManager, AlertType
from aegis.risk.calculator import RiskMetricsCalculator
from aegis.risk.circuit_breaker import BreakerType, CircuitBreakerController, CircuitBreakerStatus
from aegis.risk.metrics import RiskMetrics
from aegis.risk.stress_testing import StressScenario, StressTestEngine, StressTestResult


logger = logging.getLogger(__name__)

RECOMPUTE_TIMER = "risk_recompute"


class RiskState(msgspec.Struct, frozen=True, rename="camel"):
    """
    Last published risk picture.

    Attributes:
        metrics: Last valid RiskMetrics (None before the first cycle)
        breakers: Circuit breaker status per type at publication
        published_at: When `metrics` was published
        last_error: Error of the most recent failed cycle (cleared on success)
        cycle: Number of successful cycles
    """

    metrics: RiskMetrics | None = None
    breakers: dict[BreakerType, CircuitBreakerStatus] = {}
    published_at: datetime | None = None
    last_error: str | None = None
    cycle: int = 0

    def is_stale(self, max_age: float, now: datetime) -> bool:
        """True if nothing was published yet or the snapshot is older than `max_age` seconds."""
        if self.published_at is None:
            return True
        return (now - self.published_at).total_seconds() > max_age


class RiskManager:
    """
    Real-time portfolio risk coordinator.

    Examples:
        manager = RiskManager(EngineConfig.from_yaml(Path("config/engine.yaml")))

        metrics = manager.update_risk_metrics(positions, snapshot)
        if manager.is_trading_halted:
            ...

        results = await manager.run_stress_tests(timeout=5.0)
        plan = await manager.optimize({"AAPL": 0.08, "MSFT": 0.05})
        if manager.can_execute(plan):
            ...

        async with RiskManager(config) as manager:
            await manager.start(source, interval=timedelta(seconds=5))
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        clock: Clock | None = None,
        bus: MessageBus | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.clock = clock or Clock()
        self.bus = bus

        self.alerts = AlertManager(self.config.alerts, self.clock, bus)
        self.circuit_breakers = CircuitBreakerController(
            self.config.risk, self.alerts, self.clock, bus
        )
        self.calculator = RiskMetricsCalculator(self.config.risk, self.clock)
        self.optimizer = PortfolioOptimizer(
            self.config.constraints,
            TransactionCostModel(self.config.costs),
            self.config.optimizer,
        )
        self.stress_tests = StressTestEngine(
            self.config.risk,
            default_spread_bps=self.config.costs.default_spread_bps,
        )

        runtime = self.config.runtime
        self._runner = ComputeRunner(
            max_workers=runtime.max_workers,
            default_timeout=runtime.stress_timeout,
        )
        self._write_lock = threading.Lock()
        self._state = RiskState(breakers=self.circuit_breakers.get_status())
        self._positions: list[Position] = []
        self._snapshot: MarketSnapshot | None = None
        self._source: PortfolioDataSource | None = None
        self._owns_clock = False

        logger.info(
            "RiskManager initialized: max_var=%.1f%%, max_drawdown=%.1f%%, "
            "max_daily_loss=%.1f%%, circuit_breakers=%s",
            self.config.risk.max_var * 100,
            self.config.risk.max_drawdown * 100,
            self.config.risk.max_daily_loss * 100,
            "on" if self.config.risk.enable_circuit_breakers else "off",
        )

    # =========================================================================
    # Ingestion
    # =========================================================================

    def update_risk_metrics(
        self,
        positions: Sequence[Position],
        market_snapshot: MarketSnapshot,
    ) -> RiskMetrics:
        """
        Recompute metrics, evaluate breakers and limits, publish a new RiskState.

        Raises:
            DataError: Synthetic snapshot while synthetic data is not allowed
            InvariantViolation: Computed metrics are inconsistent (the previous
                RiskState stays published with `last_error` set)
        """
        if market_snapshot.synthetic and not self.config.runtime.allow_synthetic_data:
            error = DataError(
                f"Synthetic snapshot from '{market_snapshot.source}' rejected "
                "(allow_synthetic_data is off)"
            )
            logger.warning("%s", error)
            self._record_error(error)
            raise error

        trace_id = uuid4().hex
        positions = list(positions)
        with self._write_lock:
            snapshot = market_snapshot.restrict(p.symbol for p in positions)
            try:
                metrics = self.calculator.calculate(positions, snapshot)
            except InvariantViolation as exc:
                logger.error("Risk metrics rejected, keeping previous snapshot: %s", exc)
                self._record_error(exc)
                raise

            self._positions = self.calculator.annotate_positions(positions)
            self._snapshot = snapshot
            for error in self.calculator.data_errors:
                self._publish(EventType.DATA_ERROR, {"symbol": error.symbol, "message": str(error)}, trace_id)

            self.circuit_breakers.evaluate(metrics, trace_id)
            for alert in self.alerts.check_limits(metrics, self.config.risk, trace_id):
                if alert.type == AlertType.LIMIT_BREACH:
                    self._publish(EventType.RISK_LIMIT_BREACH, msgspec.to_builtins(alert), trace_id)

            self._state = RiskState(
                metrics=metrics,
                breakers=self.circuit_breakers.get_status(),
                published_at=self.clock.utc_now(),
                cycle=self._state.cycle + 1,
            )

        self._publish(EventType.RISK_METRICS_UPDATED, msgspec.to_builtins(metrics), trace_id)
        return metrics

    def _record_error(self, error: Exception) -> None:
        self._state = msgspec.structs.replace(self._state, last_error=f"{type(error).__name__}: {error}")

    # =========================================================================
    # Reads (never raise because of computation errors)
    # =========================================================================

    def get_current_risk_metrics(self) -> RiskMetrics | None:
        return self._state.metrics

    def get_risk_state(self) -> RiskState:
        return self._state

    @property
    def is_stale(self) -> bool:
        return self._state.is_stale(self.config.runtime.max_state_age, self.clock.utc_now())

    @property
    def positions(self) -> list[Position]:
        """Positions of the last successful cycle, annotated with weight and risk contribution."""
        return list(self._positions)

    def get_active_alerts(self) -> list[Alert]:
        return self.alerts.active_alerts()

    def acknowledge_alert(self, alert_id: int) -> Alert:
        """
        Raises:
            AlertNotFound: Unknown alert id
        """
        return self.alerts.acknowledge(alert_id)

    def get_circuit_breaker_status(self) -> dict[BreakerType, CircuitBreakerStatus]:
        return self.circuit_breakers.get_status()

    @property
    def is_trading_halted(self) -> bool:
        return self.circuit_breakers.is_halted

    # =========================================================================
    # Circuit breakers
    # =========================================================================

    def reset_circuit_breakers(
        self,
        reason: str = "manual reset",
        breaker_type: BreakerType | None = None,
    ) -> list[BreakerType]:
        """Reset TRIGGERED breakers (all, or one type). Returns the types reset."""
        with self._write_lock:
            reset = self.circuit_breakers.reset(reason, breaker_type)
            if reset:
                self._state = msgspec.structs.replace(
                    self._state,
                    breakers=self.circuit_breakers.get_status(),
                )
        return reset

    # =========================================================================
    # Background computations
    # =========================================================================

    def add_stress_scenario(self, scenario: StressScenario) -> None:
        self.stress_tests.add_scenario(scenario)

    async def run_stress_tests(
        self,
        positions: Sequence[Position] | None = None,
        market_snapshot: MarketSnapshot | None = None,
        timeout: float | None = None,
    ) -> list[StressTestResult]:
        """
        Run every catalog scenario on the worker pool.

        Defaults to the positions and snapshot of the last successful cycle.

        Raises:
            ComputationTimeout: Budget exceeded (completed results attached)
        """
        positions = list(positions) if positions is not None else self.positions
        snapshot = market_snapshot or self._snapshot or MarketSnapshot()

        with self._write_lock:
            estimator = self.calculator.estimator.copy()
        engine = StressTestEngine(
            self.config.risk,
            estimator=estimator,
            custom_scenarios=self.stress_tests.scenarios,
            default_spread_bps=self.stress_tests.default_spread_bps,
        )

        results = await self._runner.run(
            "stress_tests",
            engine.run_all_scenarios,
            positions,
            snapshot,
            timeout=timeout if timeout is not None else self.config.runtime.stress_timeout,
        )
        worst = min(results, key=lambda r: r.portfolio_change) if results else None
        self._publish(
            EventType.STRESS_TEST_COMPLETED,
            {
                "scenarios": [r.scenario for r in results],
                "worstScenario": worst.scenario if worst else None,
                "worstChangePercent": worst.portfolio_change_percent if worst else None,
            },
        )
        return results

    async def optimize(
        self,
        expected_returns: Mapping[str, float],
        current_portfolio: Mapping[str, float] | Sequence[Position] | None = None,
        market_snapshot: MarketSnapshot | None = None,
        risk_aversion: float = 3.0,
        constraints: TradingConstraints | None = None,
        timeout: float | None = None,
    ) -> OptimizationResult:
        """
        Run the optimizer on the worker pool.

        While any circuit breaker is TRIGGERED the result is downgraded to
        HOLD with execution_blocked set; it stays available as advice.

        Raises:
            ValueError: No market snapshot given and none ingested yet
            ComputationTimeout: Budget exceeded (latest iterate attached)
        """
        current = current_portfolio if current_portfolio is not None else self.positions
        snapshot = market_snapshot or self._snapshot
        if snapshot is None:
            raise ValueError("No market snapshot available for optimization")

        held = current.keys() if isinstance(current, Mapping) else [p.symbol for p in current]
        symbols = sorted(set(expected_returns) | set(held))
        with self._write_lock:
            correlation = self.calculator.estimator.correlation_matrix(symbols)

        result = await self._runner.run(
            "optimize",
            self.optimizer.optimize,
            expected_returns,
            current,
            snapshot,
            risk_aversion=risk_aversion,
            constraints=constraints,
            correlation=correlation,
            timeout=timeout if timeout is not None else self.config.runtime.optimize_timeout,
        )

        if self.is_trading_halted and not result.execution_blocked:
            logger.warning(
                "Trading halted (%s): %s recommendation downgraded to HOLD",
                ", ".join(t.value for t in self.circuit_breakers.triggered),
                result.rebalance_recommendation.value,
            )
            result = result.blocked()

        self._publish(
            EventType.OPTIMIZATION_COMPLETED,
            {
                "recommendation": result.rebalance_recommendation.value,
                "turnover": result.turnover,
                "netBenefit": result.net_benefit,
                "executionBlocked": result.execution_blocked,
            },
        )
        return result

    def can_execute(self, result: OptimizationResult) -> bool:
        """True if the result may be executed now."""
        return result.is_actionable and not self.is_trading_halted

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(
        self,
        source: PortfolioDataSource,
        interval: timedelta | float | None = None,
    ) -> None:
        """
        Recompute once from `source`, then on every clock tick.

        Raises:
            RuntimeError: Already started
            TypeError: `source` is not a PortfolioDataSource
        """
        if self._source is not None:
            raise RuntimeError("RiskManager already started")
        if not isinstance(source, PortfolioDataSource):
            raise TypeError(f"{type(source).__name__} is not a PortfolioDataSource")

        if interval is None:
            interval = self.config.runtime.recompute_interval_seconds
        if not isinstance(interval, timedelta):
            interval = timedelta(seconds=interval)

        self._source = source
        await self.recompute()
        self.clock.set_timer(RECOMPUTE_TIMER, interval, self.recompute)
        if not self.clock.is_running:
            self.clock.start()
            self._owns_clock = True
        logger.info("Risk recompute started: source=%s interval=%s", source.name, interval)

    async def recompute(self) -> RiskMetrics | None:
        """Pull one cycle from the data source. Errors are logged and recorded on the state."""
        if self._source is None:
            raise RuntimeError("No data source; call start() first")
        positions = await self._source.fetch_positions()
        snapshot = await self._source.fetch_snapshot()
        try:
            return self.update_risk_metrics(positions, snapshot)
        except AegisError as exc:
            logger.warning("Risk recompute from %s failed: %s", self._source.name, exc)
            return None

    async def stop(self) -> None:
        """Stop the recompute cadence."""
        if self._source is None:
            return
        self.clock.cancel_timer(RECOMPUTE_TIMER)
        if self._owns_clock:
            self.clock.stop()
            self._owns_clock = False
        logger.info("Risk recompute stopped (source=%s)", self._source.name)
        self._source = None

    def close(self) -> None:
        """Release the worker pool."""
        self._runner.shutdown()

    async def __aenter__(self) -> RiskManager:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.stop()
        self.close()

    # =========================================================================
    # Event Publishing
    # =========================================================================

    def _publish(
        self,
        event_type: EventType,
        payload: dict[str, Any],
        trace_id: str | None = None,
    ) -> None:
        if self.bus is None:
            return
        self.bus.publish(Event.create(event_type, source="risk.manager", payload=payload, trace_id=trace_id))
