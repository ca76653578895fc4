"""
Integration tests for RiskManager.

Drive the whole pipeline (calculator, circuit breakers, alerts, bus, worker
pool) on a simulated clock.
"""

from __future__ import annotations

import time
from datetime import timedelta

import pytest

from aegis.config import EngineConfig, RuntimeConfig
from aegis.core.clock import Clock
from aegis.core.errors import AlertNotFound, ComputationTimeout, DataError
from aegis.core.events import EventType
from aegis.core.message_bus import MessageBus
from aegis.data.models import MarketSnapshot, Position
from aegis.data.sources import StaticDataSource, SyntheticDataSource
from aegis.manager import RECOMPUTE_TIMER, RiskManager
from aegis.optimization.optimizer import Recommendation
from aegis.risk.alerts import AlertSeverity, AlertType
from aegis.risk.circuit_breaker import BreakerState, BreakerType
from aegis.risk.stress_testing import DEFAULT_SCENARIOS, StressTestEngine


pytestmark = pytest.mark.integration


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def bus() -> MessageBus:
    return MessageBus()


@pytest.fixture
def manager(clock: Clock, bus: MessageBus):
    manager = RiskManager(EngineConfig(), clock=clock, bus=bus)
    yield manager
    manager.close()


@pytest.fixture
def risky_book() -> list[Position]:
    return [Position.create("AAPL", 100, 180.0, sector="technology")]


@pytest.fixture
def risky_snapshot(make_entry) -> MarketSnapshot:
    """60% annual vol: parametric 1-day VaR95 of about 6%."""
    return MarketSnapshot.from_entries([make_entry("AAPL", 180.0, volatility=0.6)])


def _events(bus: MessageBus, event_type: EventType) -> list:
    return [e for e in bus.pending_events() if e.event_type == event_type]


# =============================================================================
# Ingestion
# =============================================================================


class TestIngestion:
    """Tests for update_risk_metrics() and the published state."""

    def test_calm_portfolio(self, manager: RiskManager, sample_positions, sample_snapshot) -> None:
        metrics = manager.update_risk_metrics(sample_positions, sample_snapshot)
        state = manager.get_risk_state()

        assert state.metrics == metrics
        assert state.cycle == 1
        assert state.last_error is None
        assert metrics.var95 < manager.config.risk.max_var
        assert not manager.is_trading_halted
        assert manager.get_current_risk_metrics() is metrics

    def test_positions_annotated(self, manager: RiskManager, sample_positions, sample_snapshot) -> None:
        manager.update_risk_metrics(sample_positions, sample_snapshot)
        weights = {p.symbol: p.weight for p in manager.positions}

        assert sum(weights.values()) == pytest.approx(1.0)
        assert weights["MSFT"] == pytest.approx(20_000 / 60_000)

    def test_metrics_event_published(self, manager: RiskManager, bus: MessageBus, sample_positions, sample_snapshot) -> None:
        manager.update_risk_metrics(sample_positions, sample_snapshot)
        events = _events(bus, EventType.RISK_METRICS_UPDATED)

        assert len(events) == 1
        assert events[0].payload["valueAtRisk"]["var95"] == pytest.approx(
            manager.get_current_risk_metrics().var95
        )

    def test_synthetic_snapshot_rejected(self, manager: RiskManager, sample_positions, sample_snapshot) -> None:
        synthetic = MarketSnapshot(
            entries=dict(sample_snapshot.entries),
            timestamp=sample_snapshot.timestamp,
            source="demo",
            synthetic=True,
        )

        with pytest.raises(DataError):
            manager.update_risk_metrics(sample_positions, synthetic)

        state = manager.get_risk_state()
        assert state.metrics is None
        assert state.last_error.startswith("DataError")

    def test_synthetic_snapshot_allowed(self, clock: Clock, sample_positions, sample_snapshot) -> None:
        config = EngineConfig(runtime=RuntimeConfig(allow_synthetic_data=True))
        synthetic = MarketSnapshot(entries=dict(sample_snapshot.entries), synthetic=True)

        with_synthetic = RiskManager(config, clock=clock)
        try:
            metrics = with_synthetic.update_risk_metrics(sample_positions, synthetic)
        finally:
            with_synthetic.close()

        assert metrics.position_count == 3

    def test_failed_cycle_keeps_previous_state(self, manager: RiskManager, sample_positions, sample_snapshot) -> None:
        first = manager.update_risk_metrics(sample_positions, sample_snapshot)
        bad = MarketSnapshot(entries=dict(sample_snapshot.entries), synthetic=True)

        with pytest.raises(DataError):
            manager.update_risk_metrics(sample_positions, bad)

        state = manager.get_risk_state()
        assert state.metrics is first
        assert state.cycle == 1
        assert state.last_error is not None

    def test_staleness(self, manager: RiskManager, clock: Clock, sample_positions, sample_snapshot) -> None:
        assert manager.is_stale

        manager.update_risk_metrics(sample_positions, sample_snapshot)
        assert not manager.is_stale

        clock.advance_time(timedelta(seconds=manager.config.runtime.max_state_age + 1))
        assert manager.is_stale


# =============================================================================
# Circuit breakers and alerts
# =============================================================================


class TestBreach:
    """VaR breach trips the breaker and raises one critical alert."""

    def test_var_breach_halts_trading(self, manager: RiskManager, risky_book, risky_snapshot) -> None:
        metrics = manager.update_risk_metrics(risky_book, risky_snapshot)
        status = manager.get_circuit_breaker_status()[BreakerType.VAR_BREACH]

        assert metrics.var95 > manager.config.risk.max_var
        assert status.state == BreakerState.TRIGGERED
        assert status.trigger_value == pytest.approx(metrics.var95)
        assert manager.is_trading_halted
        assert manager.get_risk_state().breakers[BreakerType.VAR_BREACH].is_triggered

        breaches = [a for a in manager.get_active_alerts() if a.type == AlertType.LIMIT_BREACH]
        assert len(breaches) == 1
        assert breaches[0].severity == AlertSeverity.CRITICAL
        assert breaches[0].auto_triggered is True

    def test_moderate_volatility_within_limit(self, manager: RiskManager, risky_book, make_entry) -> None:
        """25% vol gives a 1-day VaR95 near 2.6%, under the 3% limit."""
        snapshot = MarketSnapshot.from_entries([make_entry("AAPL", 180.0, volatility=0.25)])

        metrics = manager.update_risk_metrics(risky_book, snapshot)

        assert metrics.var95 == pytest.approx(1.6449 * 0.25 / 252**0.5, rel=1e-3)
        assert not manager.is_trading_halted
        var_alerts = [a for a in manager.get_active_alerts() if a.type == AlertType.LIMIT_BREACH]
        assert [a.severity for a in var_alerts] == [AlertSeverity.LOW]

    def test_breach_events_share_trace(self, manager: RiskManager, bus: MessageBus, risky_book, risky_snapshot) -> None:
        manager.update_risk_metrics(risky_book, risky_snapshot)

        tripped = _events(bus, EventType.CIRCUIT_BREAKER_TRIPPED)
        updated = _events(bus, EventType.RISK_METRICS_UPDATED)

        assert len(tripped) == 1
        assert tripped[0].payload["breakerType"] == "VAR_BREACH"
        assert tripped[0].trace_id == updated[0].trace_id

    def test_breaker_latches(self, manager: RiskManager, risky_book, risky_snapshot) -> None:
        manager.update_risk_metrics(risky_book, risky_snapshot)
        manager.update_risk_metrics(risky_book, risky_snapshot)

        status = manager.get_circuit_breaker_status()[BreakerType.VAR_BREACH]
        critical = [a for a in manager.alerts.all_alerts() if a.severity == AlertSeverity.CRITICAL]

        assert status.trip_count == 1
        assert len(critical) == 1

    def test_reset_and_retrip(self, manager: RiskManager, risky_book, risky_snapshot) -> None:
        manager.update_risk_metrics(risky_book, risky_snapshot)

        assert manager.reset_circuit_breakers("risk reviewed") == [BreakerType.VAR_BREACH]
        assert not manager.is_trading_halted
        assert not manager.get_risk_state().breakers[BreakerType.VAR_BREACH].is_triggered
        assert any(a.type == AlertType.CIRCUIT_BREAKER_RESET for a in manager.get_active_alerts())

        manager.update_risk_metrics(risky_book, risky_snapshot)
        status = manager.get_circuit_breaker_status()[BreakerType.VAR_BREACH]
        assert status.is_triggered
        assert status.trip_count == 2

    def test_reset_when_normal(self, manager: RiskManager) -> None:
        assert manager.reset_circuit_breakers() == []

    def test_breakers_disabled(self, clock: Clock, risky_book, risky_snapshot) -> None:
        config = EngineConfig.from_dict({"risk": {"enableCircuitBreakers": False}})
        unguarded = RiskManager(config, clock=clock)
        try:
            unguarded.update_risk_metrics(risky_book, risky_snapshot)
            assert not unguarded.is_trading_halted
            breaches = [a for a in unguarded.get_active_alerts() if a.type == AlertType.LIMIT_BREACH]
            assert [a.severity for a in breaches] == [AlertSeverity.HIGH]
        finally:
            unguarded.close()

    def test_acknowledge(self, manager: RiskManager, risky_book, risky_snapshot) -> None:
        manager.update_risk_metrics(risky_book, risky_snapshot)
        alert = manager.get_active_alerts()[0]

        acknowledged = manager.acknowledge_alert(alert.id)

        assert acknowledged.acknowledged is True
        assert alert.id not in [a.id for a in manager.get_active_alerts()]

    def test_acknowledge_unknown(self, manager: RiskManager) -> None:
        with pytest.raises(AlertNotFound):
            manager.acknowledge_alert(999)


# =============================================================================
# Background computations
# =============================================================================


class TestStressTests:
    """Tests for run_stress_tests()."""

    @pytest.mark.asyncio
    async def test_runs_catalog(self, manager: RiskManager, bus: MessageBus, sample_positions, sample_snapshot) -> None:
        manager.update_risk_metrics(sample_positions, sample_snapshot)

        results = await manager.run_stress_tests()

        assert [r.scenario for r in results] == list(DEFAULT_SCENARIOS)
        completed = _events(bus, EventType.STRESS_TEST_COMPLETED)
        assert len(completed) == 1
        assert completed[0].payload["worstScenario"] == "MARKET_CRASH"

    @pytest.mark.asyncio
    async def test_timeout_keeps_partial(self, manager: RiskManager, monkeypatch, sample_positions, sample_snapshot) -> None:
        def slow(self, positions, snapshot=None, token=None, partial=None):
            partial.append("first")
            while True:
                token.raise_if_cancelled()
                time.sleep(0.01)

        monkeypatch.setattr(StressTestEngine, "run_all_scenarios", slow)

        with pytest.raises(ComputationTimeout) as exc_info:
            await manager.run_stress_tests(sample_positions, sample_snapshot, timeout=0.1)

        assert exc_info.value.partial == ["first"]
        assert exc_info.value.task_name == "stress_tests"

    @pytest.mark.asyncio
    async def test_ingestion_not_blocked(self, manager: RiskManager, monkeypatch, sample_positions, sample_snapshot) -> None:
        """Metrics keep updating while a stress run is in flight."""

        def slow(self, positions, snapshot=None, token=None, partial=None):
            while True:
                token.raise_if_cancelled()
                time.sleep(0.01)

        monkeypatch.setattr(StressTestEngine, "run_all_scenarios", slow)

        with pytest.raises(ComputationTimeout):
            await manager.run_stress_tests(sample_positions, sample_snapshot, timeout=0.05)
        manager.update_risk_metrics(sample_positions, sample_snapshot)

        assert manager.get_risk_state().cycle == 1

    @pytest.mark.asyncio
    async def test_zero_timeout_is_honoured(self, manager: RiskManager, monkeypatch, sample_positions, sample_snapshot) -> None:
        """An explicit zero budget expires at once instead of using the configured default."""

        def slow(self, positions, snapshot=None, token=None, partial=None):
            for _ in range(100):
                token.raise_if_cancelled()
                time.sleep(0.01)
            return []

        monkeypatch.setattr(StressTestEngine, "run_all_scenarios", slow)

        with pytest.raises(ComputationTimeout) as exc_info:
            await manager.run_stress_tests(sample_positions, sample_snapshot, timeout=0.0)

        assert exc_info.value.task_name == "stress_tests"


class TestOptimize:
    """Tests for optimize() and execution gating."""

    @pytest.mark.asyncio
    async def test_requires_snapshot(self, manager: RiskManager) -> None:
        with pytest.raises(ValueError):
            await manager.optimize({"AAPL": 0.1})

    @pytest.mark.asyncio
    async def test_advice_when_normal(self, manager: RiskManager, bus: MessageBus, sample_positions, sample_snapshot) -> None:
        manager.update_risk_metrics(sample_positions, sample_snapshot)

        result = await manager.optimize({"AAPL": 0.05, "MSFT": 0.04, "XOM": 0.03})

        assert result.execution_blocked is False
        assert set(result.portfolio_weights) == {"AAPL", "MSFT", "XOM"}
        assert len(_events(bus, EventType.OPTIMIZATION_COMPLETED)) == 1

    @pytest.mark.asyncio
    async def test_zero_timeout_is_honoured(self, manager: RiskManager, monkeypatch, sample_positions, sample_snapshot) -> None:
        manager.update_risk_metrics(sample_positions, sample_snapshot)
        real = manager.optimizer.optimize

        def slow(*args, token=None, partial=None, **kwargs):
            for _ in range(100):
                token.raise_if_cancelled()
                time.sleep(0.01)
            return real(*args, **kwargs)

        monkeypatch.setattr(manager.optimizer, "optimize", slow)

        with pytest.raises(ComputationTimeout) as exc_info:
            await manager.optimize({"AAPL": 0.05}, timeout=0.0)

        assert exc_info.value.task_name == "optimize"

    @pytest.mark.asyncio
    async def test_blocked_when_halted(self, manager: RiskManager, risky_book, risky_snapshot) -> None:
        manager.update_risk_metrics(risky_book, risky_snapshot)

        result = await manager.optimize({"AAPL": 0.1})

        assert result.rebalance_recommendation == Recommendation.HOLD
        assert result.execution_blocked is True
        assert manager.can_execute(result) is False


# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycle:
    """Tests for start(), recompute() and stop()."""

    @pytest.mark.asyncio
    async def test_recompute_on_timer(self, clock: Clock, sample_positions, sample_snapshot) -> None:
        source = StaticDataSource(sample_positions, sample_snapshot)

        async with RiskManager(clock=clock) as manager:
            await manager.start(source, interval=timedelta(seconds=5))
            assert manager.get_risk_state().cycle == 1
            assert RECOMPUTE_TIMER in clock.timer_names()

            clock.advance_time(timedelta(seconds=5))
            assert await clock.fire_due_timers() == 1
            assert manager.get_risk_state().cycle == 2

            await manager.stop()
            assert RECOMPUTE_TIMER not in clock.timer_names()
            assert not clock.is_running

    @pytest.mark.asyncio
    async def test_start_twice(self, manager: RiskManager, sample_positions, sample_snapshot) -> None:
        source = StaticDataSource(sample_positions, sample_snapshot)
        await manager.start(source, interval=5)

        with pytest.raises(RuntimeError):
            await manager.start(source)
        await manager.stop()

    @pytest.mark.asyncio
    async def test_start_rejects_non_source(self, manager: RiskManager) -> None:
        with pytest.raises(TypeError):
            await manager.start(object())

    @pytest.mark.asyncio
    async def test_recompute_without_start(self, manager: RiskManager) -> None:
        with pytest.raises(RuntimeError):
            await manager.recompute()

    @pytest.mark.asyncio
    async def test_synthetic_source_recorded_not_raised(self, manager: RiskManager, make_entry) -> None:
        source = SyntheticDataSource([make_entry("AAPL", 180.0)], {"AAPL": 100}, seed=7)

        await manager.start(source, interval=5)
        try:
            assert manager.get_current_risk_metrics() is None
            assert manager.get_risk_state().last_error.startswith("DataError")
        finally:
            await manager.stop()
