"""
Circuit breakers for the risk engine.

Halts execution when a risk metric breaches its hard limit:
- VAR_BREACH: 1-day 95% VaR above max_var
- DRAWDOWN_LIMIT: maximum drawdown above max_drawdown
- DAILY_LOSS_LIMIT: daily loss above max_daily_loss

State Transitions:
    NORMAL -> TRIGGERED: automatically, on a breaching RiskMetrics update
    TRIGGERED -> NORMAL: only through an explicit reset()

There is no automatic recovery. A trip and its CRITICAL alert are committed
together: the alert is created first and the new status map is published
only if that succeeds.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Any

import msgspec

from aegis.core.clock import Clock
from aegis.core.events import Event, EventType
from aegis.core.message_bus import MessageBus
from aegis.risk.alerts import AlertManager, AlertSeverity, AlertType
from aegis.risk.config import RiskConfiguration
from aegis.risk.metrics import RiskMetrics


logger = logging.getLogger(__name__)


class BreakerType(str, Enum):
    """Circuit breaker kinds."""

    VAR_BREACH = "VAR_BREACH"
    DRAWDOWN_LIMIT = "DRAWDOWN_LIMIT"
    DAILY_LOSS_LIMIT = "DAILY_LOSS_LIMIT"


class BreakerState(str, Enum):
    """Circuit breaker states."""

    NORMAL = "NORMAL"  # Execution allowed
    TRIGGERED = "TRIGGERED"  # Limit breached - execution halted until reset


class CircuitBreakerStatus(msgspec.Struct, frozen=True, gc=False, rename="camel"):
    """Status of one breaker. Replaced, never mutated."""

    breaker_type: BreakerType
    threshold: float
    state: BreakerState = BreakerState.NORMAL
    triggered_at: datetime | None = None
    trigger_value: float | None = None
    reason: str | None = None
    reset_at: datetime | None = None
    reset_reason: str | None = None
    trip_count: int = 0

    @property
    def is_triggered(self) -> bool:
        return self.state == BreakerState.TRIGGERED


# Breaker -> (alert metric name, metric accessor, config attribute)
_BREAKER_METRICS: dict[BreakerType, tuple[str, Callable[[RiskMetrics], float], str]] = {
    BreakerType.VAR_BREACH: ("Value at Risk", lambda m: m.var95, "max_var"),
    BreakerType.DRAWDOWN_LIMIT: ("Maximum Drawdown", lambda m: m.maximum_drawdown, "max_drawdown"),
    BreakerType.DAILY_LOSS_LIMIT: ("Daily Loss", lambda m: m.daily_loss, "max_daily_loss"),
}

_EMERGENCY_ACTIONS = {
    BreakerType.VAR_BREACH: "Reduce high-risk positions by 25%",
    BreakerType.DRAWDOWN_LIMIT: "Liquidate worst-performing 50% of positions",
    BreakerType.DAILY_LOSS_LIMIT: "Halt all new trades and reduce exposure by 30%",
}


class CircuitBreakerController:
    """
    Latching circuit breakers, one per BreakerType.

    The single authority on whether execution is allowed. Readers get the
    current status map without locking; evaluate() and reset() build a new
    map and swap it in under the controller lock.

    Examples:
        controller = CircuitBreakerController(RiskConfiguration(max_var=0.03), alerts)
        tripped = controller.evaluate(metrics)
        if controller.is_halted:
            ...
        controller.reset("risk reduced after review")
    """

    def __init__(
        self,
        config: RiskConfiguration,
        alerts: AlertManager,
        clock: Clock | None = None,
        bus: MessageBus | None = None,
    ) -> None:
        self.config = config
        self._alerts = alerts
        self._clock = clock or Clock()
        self._bus = bus
        self._lock = threading.Lock()
        self._statuses: dict[BreakerType, CircuitBreakerStatus] = {
            breaker_type: CircuitBreakerStatus(
                breaker_type=breaker_type,
                threshold=self._threshold(breaker_type),
            )
            for breaker_type in BreakerType
        }

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def enabled(self) -> bool:
        return self.config.enable_circuit_breakers

    @property
    def is_halted(self) -> bool:
        """True while any breaker is TRIGGERED."""
        return any(s.is_triggered for s in self._statuses.values())

    @property
    def triggered(self) -> list[BreakerType]:
        return [t for t, s in self._statuses.items() if s.is_triggered]

    def get_status(self) -> dict[BreakerType, CircuitBreakerStatus]:
        """Current status per breaker type."""
        return dict(self._statuses)

    def _threshold(self, breaker_type: BreakerType) -> float:
        return float(getattr(self.config, _BREAKER_METRICS[breaker_type][2]))

    # =========================================================================
    # Transitions
    # =========================================================================

    def evaluate(self, metrics: RiskMetrics, trace_id: str | None = None) -> list[BreakerType]:
        """
        Trip every NORMAL breaker whose metric exceeds its limit.

        Already TRIGGERED breakers stay latched and raise no new alert.

        Returns:
            Breaker types tripped by this call
        """
        if not self.enabled:
            return []

        tripped: list[BreakerType] = []
        with self._lock:
            for breaker_type, (metric, accessor, _) in _BREAKER_METRICS.items():
                status = self._statuses[breaker_type]
                value = accessor(metrics)
                threshold = self._threshold(breaker_type)
                if status.is_triggered or value <= threshold:
                    continue
                self._trip(status, metric, value, threshold, trace_id)
                tripped.append(breaker_type)
        return tripped

    def _trip(
        self,
        status: CircuitBreakerStatus,
        metric: str,
        value: float,
        threshold: float,
        trace_id: str | None,
    ) -> None:
        reason = f"{metric} {value:.4f} exceeds limit {threshold:.4f}"

        # Raises before the status is touched if the alert cannot be stored
        alert = self._alerts.create(
            AlertType.LIMIT_BREACH,
            AlertSeverity.CRITICAL,
            f"CIRCUIT BREAKER: {metric} critically exceeded - Trading halted",
            metric=metric,
            current_value=value,
            threshold=threshold,
            action=_EMERGENCY_ACTIONS[status.breaker_type],
            auto_triggered=True,
            force=True,
            trace_id=trace_id,
        )

        new_status = msgspec.structs.replace(
            status,
            state=BreakerState.TRIGGERED,
            threshold=threshold,
            triggered_at=self._clock.utc_now(),
            trigger_value=value,
            reason=reason,
            trip_count=status.trip_count + 1,
        )
        statuses = dict(self._statuses)
        statuses[status.breaker_type] = new_status
        self._statuses = statuses

        logger.warning(
            "Circuit breaker TRIPPED: %s (%s, trip #%d)",
            status.breaker_type.value,
            reason,
            new_status.trip_count,
        )
        self._publish(
            EventType.CIRCUIT_BREAKER_TRIPPED,
            new_status,
            trace_id,
            extra={"alertId": alert.id if alert is not None else None},
        )

    def reset(
        self,
        reason: str = "manual reset",
        breaker_type: BreakerType | None = None,
    ) -> list[BreakerType]:
        """
        Return TRIGGERED breakers to NORMAL.

        Args:
            reason: Recorded on the status and in the reset alert
            breaker_type: Reset only this breaker (default: all)

        Returns:
            Breaker types that were actually reset
        """
        targets = [breaker_type] if breaker_type is not None else list(BreakerType)
        reset: list[BreakerType] = []

        with self._lock:
            statuses = dict(self._statuses)
            now = self._clock.utc_now()
            for target in targets:
                status = statuses[target]
                if not status.is_triggered:
                    continue
                statuses[target] = msgspec.structs.replace(
                    status,
                    state=BreakerState.NORMAL,
                    threshold=self._threshold(target),
                    reset_at=now,
                    reset_reason=reason,
                )
                reset.append(target)

            if not reset:
                return []

            names = ", ".join(t.value for t in reset)
            self._alerts.create(
                AlertType.CIRCUIT_BREAKER_RESET,
                AlertSeverity.MEDIUM,
                f"Circuit breaker reset: {names} ({reason})",
                metric="Circuit Breaker",
                action="Resume trading with caution",
                force=True,
            )
            self._statuses = statuses

        logger.info("Circuit breaker manually reset to NORMAL: %s (%s)", names, reason)
        for target in reset:
            self._publish(EventType.CIRCUIT_BREAKER_RESET, statuses[target], None)
        return reset

    def _publish(
        self,
        event_type: EventType,
        status: CircuitBreakerStatus,
        trace_id: str | None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        if self._bus is None:
            return
        payload = msgspec.to_builtins(status)
        payload.update(extra or {})
        self._bus.publish(
            Event.create(event_type, source="risk.circuit_breaker", payload=payload, trace_id=trace_id)
        )
