"""
Risk alerts.

AlertManager creates, stores and resolves Alert records raised by the limit
checks and by circuit-breaker transitions.

Lifecycle:
- create(): stamps a monotonic id and timestamp, stores, publishes ALERT_RAISED
- acknowledge(): replaces the stored alert with an acknowledged copy
- Active alerts are the unacknowledged ones younger than the retention window
- Alerts are never deleted explicitly; purge_expired() ages them out

Duplicate suppression: an unacknowledged alert with the same
(type, symbol, metric) raised within the cool-down window at equal or higher
severity suppresses a new one. Higher severity escalates (a new alert is
stored). force=True bypasses suppression.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

import msgspec

from aegis.core.clock import Clock
from aegis.core.errors import AlertNotFound
from aegis.core.events import Event, EventType
from aegis.core.message_bus import MessageBus
from aegis.risk.config import AlertConfig, RiskConfiguration
from aegis.risk.metrics import RiskMetrics


logger = logging.getLogger(__name__)


class AlertType(str, Enum):
    """Alert categories."""

    LIMIT_BREACH = "LIMIT_BREACH"
    DRAWDOWN_WARNING = "DRAWDOWN_WARNING"
    CORRELATION_SPIKE = "CORRELATION_SPIKE"
    LIQUIDITY_STRESS = "LIQUIDITY_STRESS"
    ANOMALY_DETECTED = "ANOMALY_DETECTED"
    CONCENTRATION_RISK = "CONCENTRATION_RISK"
    CIRCUIT_BREAKER_RESET = "CIRCUIT_BREAKER_RESET"


class AlertSeverity(str, Enum):
    """Alert severity, ordered LOW < MEDIUM < HIGH < CRITICAL."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    AlertSeverity.LOW: 0,
    AlertSeverity.MEDIUM: 1,
    AlertSeverity.HIGH: 2,
    AlertSeverity.CRITICAL: 3,
}

DEFAULT_ACTION = "Monitor and review risk exposure"

_RECOMMENDED_ACTIONS: dict[str, dict[AlertSeverity, str]] = {
    "Value at Risk": {
        AlertSeverity.HIGH: "Reduce high-risk positions immediately",
        AlertSeverity.CRITICAL: "Halt trading and liquidate 30% of portfolio",
    },
    "Maximum Drawdown": {
        AlertSeverity.HIGH: "Stop loss triggered - review strategy",
        AlertSeverity.CRITICAL: "Emergency liquidation required",
    },
    "Portfolio Volatility": {
        AlertSeverity.MEDIUM: "Rebalance to lower volatility assets",
        AlertSeverity.HIGH: "Reduce overall exposure",
    },
    "Concentration Risk": {
        AlertSeverity.MEDIUM: "Diversify across more positions",
    },
    "Sector Exposure": {
        AlertSeverity.MEDIUM: "Reduce exposure to the dominant sector",
    },
    "Correlation Risk": {
        AlertSeverity.HIGH: "Add uncorrelated assets to restore diversification",
    },
    "Liquidity Risk": {
        AlertSeverity.MEDIUM: "Shift exposure toward more liquid instruments",
    },
}


def recommended_action(metric: str | None, severity: AlertSeverity) -> str:
    """Default recommended action for a metric/severity pair."""
    if metric is None:
        return DEFAULT_ACTION
    return _RECOMMENDED_ACTIONS.get(metric, {}).get(severity, DEFAULT_ACTION)


WARNING_ACTION = "Monitor closely and consider position reduction"


@dataclass(frozen=True)
class LimitCheck:
    """One metric compared against a hard limit and a warning level."""

    metric: str
    alert_type: AlertType
    severity: AlertSeverity
    value: float
    limit: float
    warning: float

    def breached(self) -> bool:
        return self.value > self.limit

    def warned(self) -> bool:
        return self.warning < self.value <= self.limit


def limit_checks(
    metrics: RiskMetrics,
    limits: RiskConfiguration,
    config: AlertConfig,
) -> list[LimitCheck]:
    """Limit checks run on every metrics update, in evaluation order."""
    return [
        LimitCheck(
            "Value at Risk",
            AlertType.LIMIT_BREACH,
            AlertSeverity.HIGH,
            metrics.var95,
            limits.max_var,
            limits.max_var * config.warning_ratio,
        ),
        LimitCheck(
            "Maximum Drawdown",
            AlertType.DRAWDOWN_WARNING,
            AlertSeverity.CRITICAL,
            metrics.maximum_drawdown,
            limits.max_drawdown,
            limits.max_drawdown * config.warning_ratio,
        ),
        LimitCheck(
            "Portfolio Volatility",
            AlertType.ANOMALY_DETECTED,
            AlertSeverity.MEDIUM,
            metrics.volatility,
            limits.volatility_threshold,
            limits.volatility_threshold * config.warning_ratio,
        ),
        LimitCheck(
            "Concentration Risk",
            AlertType.CONCENTRATION_RISK,
            AlertSeverity.MEDIUM,
            metrics.concentration_risk,
            config.concentration_limit,
            config.concentration_warning,
        ),
        LimitCheck(
            "Sector Exposure",
            AlertType.CONCENTRATION_RISK,
            AlertSeverity.MEDIUM,
            metrics.sector_exposure,
            limits.max_sector_exposure,
            limits.max_sector_exposure * config.warning_ratio,
        ),
        LimitCheck(
            "Correlation Risk",
            AlertType.CORRELATION_SPIKE,
            AlertSeverity.HIGH,
            metrics.correlation_risk,
            limits.correlation_threshold,
            limits.correlation_threshold * config.correlation_warning_ratio,
        ),
        LimitCheck(
            "Liquidity Risk",
            AlertType.LIQUIDITY_STRESS,
            AlertSeverity.MEDIUM,
            metrics.liquidity_risk,
            config.liquidity_stress_threshold,
            config.liquidity_stress_threshold * config.warning_ratio,
        ),
    ]


class Alert(msgspec.Struct, frozen=True, gc=False, rename="camel"):
    """
    Immutable risk alert.

    Only the acknowledged flag ever changes, and only by replacement.
    """

    id: int
    type: AlertType
    severity: AlertSeverity
    message: str
    timestamp: datetime
    acknowledged: bool = False
    symbol: str | None = None
    metric: str | None = None
    current_value: float | None = None
    threshold: float | None = None
    recommended_action: str = DEFAULT_ACTION
    auto_triggered: bool = False
    acknowledged_at: datetime | None = None

    @property
    def dedupe_key(self) -> tuple[AlertType, str | None, str | None]:
        return (self.type, self.symbol, self.metric)


class AlertManager:
    """
    Thread-safe alert store.

    Example:
        alerts = AlertManager(AlertConfig(cooldown_seconds=60), clock=clock)
        alert = alerts.create(
            AlertType.LIMIT_BREACH,
            AlertSeverity.HIGH,
            "Value at Risk breach: 4.10% exceeds limit of 3.00%",
            metric="Value at Risk",
        )
        alerts.acknowledge(alert.id)
    """

    def __init__(
        self,
        config: AlertConfig | None = None,
        clock: Clock | None = None,
        bus: MessageBus | None = None,
    ) -> None:
        self.config = config or AlertConfig()
        self._clock = clock or Clock()
        self._bus = bus
        self._lock = threading.RLock()
        self._alerts: dict[int, Alert] = {}
        self._ids = itertools.count(1)
        self._suppressed = 0

    # =========================================================================
    # Creation
    # =========================================================================

    def create(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        *,
        symbol: str | None = None,
        metric: str | None = None,
        current_value: float | None = None,
        threshold: float | None = None,
        action: str | None = None,
        auto_triggered: bool = False,
        force: bool = False,
        trace_id: str | None = None,
    ) -> Alert | None:
        """
        Create and store an alert.

        Args:
            alert_type: Alert category
            severity: Alert severity
            message: Human-readable message
            symbol: Symbol the alert concerns (None for portfolio-wide)
            metric: Metric name (part of the duplicate-suppression key)
            action: Recommended action (defaults from the metric/severity table)
            force: Skip duplicate suppression
            trace_id: Correlation id for the published event

        Returns:
            The stored Alert, or None if suppressed as a duplicate
        """
        with self._lock:
            now = self._clock.utc_now()
            if not force:
                duplicate = self._find_duplicate(alert_type, symbol, metric, severity, now)
                if duplicate is not None:
                    self._suppressed += 1
                    logger.debug(
                        "Suppressed duplicate %s alert (existing id=%d)",
                        alert_type.value,
                        duplicate.id,
                    )
                    return None

            alert = Alert(
                id=next(self._ids),
                type=alert_type,
                severity=severity,
                message=message,
                timestamp=now,
                symbol=symbol,
                metric=metric,
                current_value=current_value,
                threshold=threshold,
                recommended_action=action or recommended_action(metric, severity),
                auto_triggered=auto_triggered,
            )
            self._alerts[alert.id] = alert
            self._enforce_capacity()

        log = logger.warning if severity.rank >= AlertSeverity.HIGH.rank else logger.info
        log("RISK ALERT [%s] %s: %s", severity.value, alert_type.value, message)
        self._publish(EventType.ALERT_RAISED, alert, trace_id)
        return alert

    def _find_duplicate(
        self,
        alert_type: AlertType,
        symbol: str | None,
        metric: str | None,
        severity: AlertSeverity,
        now: datetime,
    ) -> Alert | None:
        cooldown = timedelta(seconds=self.config.cooldown_seconds)
        key = (alert_type, symbol, metric)
        for alert in reversed(self._alerts.values()):
            if now - alert.timestamp > cooldown:
                break
            if (
                not alert.acknowledged
                and alert.dedupe_key == key
                and alert.severity.rank >= severity.rank
            ):
                return alert
        return None

    def check_limits(
        self,
        metrics: RiskMetrics,
        limits: RiskConfiguration,
        trace_id: str | None = None,
    ) -> list[Alert]:
        """
        Raise breach and warning alerts for a metrics snapshot.

        Breaches use the check's severity; values above the warning level but
        within the limit raise a LOW alert of the same type.

        Returns:
            Newly stored alerts (duplicates are suppressed)
        """
        raised: list[Alert] = []
        for check in limit_checks(metrics, limits, self.config):
            if check.breached():
                alert = self.create(
                    check.alert_type,
                    check.severity,
                    f"{check.metric} breach: {check.value:.2%} exceeds limit of {check.limit:.2%}",
                    metric=check.metric,
                    current_value=check.value,
                    threshold=check.limit,
                    trace_id=trace_id,
                )
            elif check.warned():
                alert = self.create(
                    check.alert_type,
                    AlertSeverity.LOW,
                    f"{check.metric} warning: {check.value:.2%} approaching limit of "
                    f"{check.limit:.2%}",
                    metric=check.metric,
                    current_value=check.value,
                    threshold=check.warning,
                    action=WARNING_ACTION,
                    trace_id=trace_id,
                )
            else:
                continue
            if alert is not None:
                raised.append(alert)
        return raised

    # =========================================================================
    # Resolution
    # =========================================================================

    def acknowledge(self, alert_id: int) -> Alert:
        """
        Mark an alert acknowledged.

        Acknowledging twice is a no-op returning the stored alert.

        Raises:
            AlertNotFound: Unknown (or already purged) id
        """
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise AlertNotFound(alert_id)
            if alert.acknowledged:
                return alert
            alert = msgspec.structs.replace(
                alert,
                acknowledged=True,
                acknowledged_at=self._clock.utc_now(),
            )
            self._alerts[alert_id] = alert

        logger.info("Alert %d acknowledged", alert_id)
        self._publish(EventType.ALERT_ACKNOWLEDGED, alert, None)
        return alert

    def get(self, alert_id: int) -> Alert:
        """
        Raises:
            AlertNotFound: Unknown id
        """
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise AlertNotFound(alert_id)
        return alert

    # =========================================================================
    # Queries
    # =========================================================================

    def active_alerts(self) -> list[Alert]:
        """Unacknowledged alerts within the retention window, newest first."""
        horizon = self._clock.utc_now() - timedelta(seconds=self.config.retention_seconds)
        with self._lock:
            alerts = list(self._alerts.values())
        return [a for a in reversed(alerts) if not a.acknowledged and a.timestamp >= horizon]

    def all_alerts(self) -> list[Alert]:
        """Every stored alert, oldest first."""
        with self._lock:
            return list(self._alerts.values())

    def purge_expired(self) -> int:
        """Drop alerts older than the retention window. Returns how many were dropped."""
        horizon = self._clock.utc_now() - timedelta(seconds=self.config.retention_seconds)
        with self._lock:
            expired = [i for i, a in self._alerts.items() if a.timestamp < horizon]
            for alert_id in expired:
                del self._alerts[alert_id]
        if expired:
            logger.debug("Purged %d expired alerts", len(expired))
        return len(expired)

    def _enforce_capacity(self) -> None:
        overflow = len(self._alerts) - self.config.max_alerts
        if overflow <= 0:
            return
        for alert_id in list(itertools.islice(self._alerts, overflow)):
            del self._alerts[alert_id]

    @property
    def suppressed_count(self) -> int:
        """Number of duplicates suppressed since creation."""
        return self._suppressed

    def __len__(self) -> int:
        return len(self._alerts)

    def _publish(self, event_type: EventType, alert: Alert, trace_id: str | None) -> None:
        if self._bus is None:
            return
        self._bus.publish(
            Event.create(
                event_type,
                source="risk.alerts",
                payload=msgspec.to_builtins(alert),
                trace_id=trace_id,
            )
        )
