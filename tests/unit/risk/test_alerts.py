"""Tests for AlertManager."""

from __future__ import annotations

from datetime import timedelta

import pytest

from aegis.core.clock import Clock
from aegis.core.errors import AlertNotFound
from aegis.core.events import EventType
from aegis.core.message_bus import MessageBus
from aegis.risk.alerts import (
    WARNING_ACTION,
    AlertManager,
    AlertSeverity,
    AlertType,
    recommended_action,
)
from aegis.risk.config import AlertConfig, RiskConfiguration
from aegis.risk.metrics import RiskMetrics, ValueAtRisk
from aegis.risk.var import VaRMethod


def _metrics(var95: float = 0.01, **kwargs: float) -> RiskMetrics:
    return RiskMetrics(
        value_at_risk=ValueAtRisk(var95=var95, var99=var95 * 1.4, method=VaRMethod.PARAMETRIC),
        conditional_var=var95 * 1.3,
        **kwargs,
    )


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def alerts(clock: Clock) -> AlertManager:
    return AlertManager(AlertConfig(cooldown_seconds=300, retention_seconds=3_600), clock=clock)


# =============================================================================
# Creation
# =============================================================================


class TestCreate:
    """Tests for AlertManager.create()."""

    def test_create_assigns_ids(self, alerts: AlertManager) -> None:
        first = alerts.create(AlertType.LIMIT_BREACH, AlertSeverity.HIGH, "a", metric="Value at Risk")
        second = alerts.create(AlertType.ANOMALY_DETECTED, AlertSeverity.MEDIUM, "b")

        assert first.id == 1
        assert second.id == 2
        assert first.acknowledged is False

    def test_default_action_from_table(self, alerts: AlertManager) -> None:
        alert = alerts.create(AlertType.LIMIT_BREACH, AlertSeverity.HIGH, "a", metric="Value at Risk")
        assert alert.recommended_action == "Reduce high-risk positions immediately"

    def test_unknown_metric_default_action(self) -> None:
        assert recommended_action("Something", AlertSeverity.LOW) == "Monitor and review risk exposure"
        assert recommended_action(None, AlertSeverity.HIGH) == "Monitor and review risk exposure"

    def test_timestamp_from_clock(self, alerts: AlertManager, clock: Clock) -> None:
        alert = alerts.create(AlertType.LIMIT_BREACH, AlertSeverity.HIGH, "a")
        assert alert.timestamp == clock.utc_now()


class TestDeduplication:
    """Duplicate suppression within the cool-down window."""

    def test_duplicate_suppressed(self, alerts: AlertManager) -> None:
        alerts.create(AlertType.LIMIT_BREACH, AlertSeverity.HIGH, "a", metric="Value at Risk")
        duplicate = alerts.create(AlertType.LIMIT_BREACH, AlertSeverity.HIGH, "b", metric="Value at Risk")

        assert duplicate is None
        assert len(alerts) == 1
        assert alerts.suppressed_count == 1

    def test_higher_severity_not_suppressed(self, alerts: AlertManager) -> None:
        alerts.create(AlertType.LIMIT_BREACH, AlertSeverity.HIGH, "a", metric="Value at Risk")
        escalated = alerts.create(
            AlertType.LIMIT_BREACH, AlertSeverity.CRITICAL, "b", metric="Value at Risk"
        )
        assert escalated is not None

    def test_lower_severity_suppressed(self, alerts: AlertManager) -> None:
        alerts.create(AlertType.LIMIT_BREACH, AlertSeverity.CRITICAL, "a", metric="Value at Risk")
        assert alerts.create(AlertType.LIMIT_BREACH, AlertSeverity.HIGH, "b", metric="Value at Risk") is None

    def test_different_symbol_not_suppressed(self, alerts: AlertManager) -> None:
        alerts.create(AlertType.LIQUIDITY_STRESS, AlertSeverity.MEDIUM, "a", symbol="AAPL")
        assert alerts.create(AlertType.LIQUIDITY_STRESS, AlertSeverity.MEDIUM, "b", symbol="MSFT")

    def test_after_cooldown(self, alerts: AlertManager, clock: Clock) -> None:
        alerts.create(AlertType.LIMIT_BREACH, AlertSeverity.HIGH, "a", metric="Value at Risk")
        clock.advance_time(timedelta(seconds=301))

        assert alerts.create(AlertType.LIMIT_BREACH, AlertSeverity.HIGH, "b", metric="Value at Risk")

    def test_after_acknowledge(self, alerts: AlertManager) -> None:
        first = alerts.create(AlertType.LIMIT_BREACH, AlertSeverity.HIGH, "a", metric="Value at Risk")
        alerts.acknowledge(first.id)

        assert alerts.create(AlertType.LIMIT_BREACH, AlertSeverity.HIGH, "b", metric="Value at Risk")

    def test_force_bypasses(self, alerts: AlertManager) -> None:
        alerts.create(AlertType.LIMIT_BREACH, AlertSeverity.HIGH, "a")
        assert alerts.create(AlertType.LIMIT_BREACH, AlertSeverity.HIGH, "b", force=True)


class TestAcknowledge:
    """Tests for acknowledgement."""

    def test_acknowledge(self, alerts: AlertManager, clock: Clock) -> None:
        alert = alerts.create(AlertType.LIMIT_BREACH, AlertSeverity.HIGH, "a")
        acknowledged = alerts.acknowledge(alert.id)

        assert acknowledged.acknowledged is True
        assert acknowledged.acknowledged_at == clock.utc_now()
        assert alerts.active_alerts() == []
        assert alerts.get(alert.id).acknowledged is True

    def test_acknowledge_twice_is_noop(self, alerts: AlertManager, clock: Clock) -> None:
        alert = alerts.create(AlertType.LIMIT_BREACH, AlertSeverity.HIGH, "a")
        first = alerts.acknowledge(alert.id)
        clock.advance_time(timedelta(seconds=10))
        second = alerts.acknowledge(alert.id)

        assert second == first

    def test_unknown_id(self, alerts: AlertManager) -> None:
        with pytest.raises(AlertNotFound) as exc_info:
            alerts.acknowledge(42)

        assert exc_info.value.alert_id == 42
        assert str(exc_info.value) == "Alert 42 not found"

    def test_not_found_is_key_error(self, alerts: AlertManager) -> None:
        with pytest.raises(KeyError):
            alerts.get(7)


class TestQueries:
    """Tests for active alerts, retention and capacity."""

    def test_active_newest_first(self, alerts: AlertManager, clock: Clock) -> None:
        a = alerts.create(AlertType.LIMIT_BREACH, AlertSeverity.HIGH, "a")
        clock.advance_time(timedelta(seconds=1))
        b = alerts.create(AlertType.ANOMALY_DETECTED, AlertSeverity.MEDIUM, "b")

        assert [x.id for x in alerts.active_alerts()] == [b.id, a.id]

    def test_retention(self, alerts: AlertManager, clock: Clock) -> None:
        alerts.create(AlertType.LIMIT_BREACH, AlertSeverity.HIGH, "a")
        clock.advance_time(timedelta(hours=2))

        assert alerts.active_alerts() == []
        assert alerts.purge_expired() == 1
        assert len(alerts) == 0

    def test_capacity(self, clock: Clock) -> None:
        alerts = AlertManager(AlertConfig(max_alerts=2), clock=clock)
        for i in range(3):
            alerts.create(AlertType.ANOMALY_DETECTED, AlertSeverity.LOW, str(i), force=True)

        assert [a.message for a in alerts.all_alerts()] == ["1", "2"]


class TestCheckLimits:
    """Tests for limit and warning alerts."""

    def test_var_breach(self, alerts: AlertManager) -> None:
        raised = alerts.check_limits(_metrics(var95=0.04), RiskConfiguration(max_var=0.03))
        breach = [a for a in raised if a.type == AlertType.LIMIT_BREACH]

        assert len(breach) == 1
        assert breach[0].severity == AlertSeverity.HIGH
        assert breach[0].metric == "Value at Risk"
        assert breach[0].current_value == 0.04
        assert breach[0].threshold == 0.03

    def test_var_warning(self, alerts: AlertManager) -> None:
        raised = alerts.check_limits(_metrics(var95=0.025), RiskConfiguration(max_var=0.03))

        assert len(raised) == 1
        assert raised[0].severity == AlertSeverity.LOW
        assert raised[0].recommended_action == WARNING_ACTION

    def test_within_limits(self, alerts: AlertManager) -> None:
        assert alerts.check_limits(_metrics(var95=0.01), RiskConfiguration()) == []

    @pytest.mark.parametrize(
        ("metric_kwargs", "alert_type", "severity"),
        [
            ({"maximum_drawdown": 0.2}, AlertType.DRAWDOWN_WARNING, AlertSeverity.CRITICAL),
            ({"volatility": 0.7}, AlertType.ANOMALY_DETECTED, AlertSeverity.MEDIUM),
            ({"concentration_risk": 0.6}, AlertType.CONCENTRATION_RISK, AlertSeverity.MEDIUM),
            ({"correlation_risk": 0.85}, AlertType.CORRELATION_SPIKE, AlertSeverity.HIGH),
            ({"liquidity_risk": 0.6}, AlertType.LIQUIDITY_STRESS, AlertSeverity.MEDIUM),
            ({"sector_exposure": 0.45}, AlertType.CONCENTRATION_RISK, AlertSeverity.MEDIUM),
        ],
    )
    def test_metric_mapping(
        self,
        alerts: AlertManager,
        metric_kwargs: dict,
        alert_type: AlertType,
        severity: AlertSeverity,
    ) -> None:
        raised = alerts.check_limits(_metrics(**metric_kwargs), RiskConfiguration())

        assert [(a.type, a.severity) for a in raised] == [(alert_type, severity)]

    def test_sector_exposure_warning(self, alerts: AlertManager) -> None:
        """A sector above 80% of its cap raises a LOW warning against that cap."""
        [alert] = alerts.check_limits(
            _metrics(sector_exposure=0.27), RiskConfiguration(max_sector_exposure=0.3)
        )

        assert alert.type == AlertType.CONCENTRATION_RISK
        assert alert.severity == AlertSeverity.LOW
        assert alert.metric == "Sector Exposure"

    def test_repeat_check_suppressed(self, alerts: AlertManager) -> None:
        limits = RiskConfiguration(max_var=0.03)
        alerts.check_limits(_metrics(var95=0.04), limits)

        assert alerts.check_limits(_metrics(var95=0.05), limits) == []


class TestEvents:
    """Alert events on the message bus."""

    @pytest.mark.asyncio
    async def test_raised_and_acknowledged_published(self, clock: Clock) -> None:
        bus = MessageBus()
        alerts = AlertManager(clock=clock, bus=bus)
        alert = alerts.create(AlertType.LIMIT_BREACH, AlertSeverity.HIGH, "a", trace_id="t1")
        alerts.acknowledge(alert.id)

        events = bus.pending_events()
        assert [e.event_type for e in events] == [
            EventType.ALERT_RAISED,
            EventType.ALERT_ACKNOWLEDGED,
        ]
        assert events[0].trace_id == "t1"
        assert events[0].payload["id"] == alert.id
        assert events[0].source == "risk.alerts"
