"""
Risk events published on the AEGIS message bus.

Uses msgspec.Struct so events are immutable and cheap to create:
- frozen=True: safe to hand to handlers on other tasks
- gc=False: no garbage collector tracking
- order=True: priority queue ordering by (priority, sequence)
"""

from __future__ import annotations

import itertools
import time
from enum import Enum, IntEnum, auto
from typing import Any
from uuid import uuid4

import msgspec


class EventType(Enum):
    """All event types emitted by the engine."""

    # Breakers and limits (Priority: CRITICAL)
    CIRCUIT_BREAKER_TRIPPED = auto()
    CIRCUIT_BREAKER_RESET = auto()
    RISK_LIMIT_BREACH = auto()

    # Alerts (Priority: ALERTS)
    ALERT_RAISED = auto()
    ALERT_ACKNOWLEDGED = auto()

    # Computations (Priority: ANALYTICS)
    RISK_METRICS_UPDATED = auto()
    STRESS_TEST_COMPLETED = auto()
    OPTIMIZATION_COMPLETED = auto()

    # Ingestion (Priority: INGESTION)
    MARKET_SNAPSHOT = auto()
    DATA_ERROR = auto()


class Priority(IntEnum):
    """
    Priority levels (lower = processed first).

    Breaker transitions must reach subscribers before the analytics that
    caused them, so they sit at the top.
    """

    CRITICAL = 0
    ALERTS = 1
    ANALYTICS = 2
    INGESTION = 3


EVENT_PRIORITY_MAP: dict[EventType, Priority] = {
    EventType.CIRCUIT_BREAKER_TRIPPED: Priority.CRITICAL,
    EventType.CIRCUIT_BREAKER_RESET: Priority.CRITICAL,
    EventType.RISK_LIMIT_BREACH: Priority.CRITICAL,
    EventType.ALERT_RAISED: Priority.ALERTS,
    EventType.ALERT_ACKNOWLEDGED: Priority.ALERTS,
    EventType.RISK_METRICS_UPDATED: Priority.ANALYTICS,
    EventType.STRESS_TEST_COMPLETED: Priority.ANALYTICS,
    EventType.OPTIMIZATION_COMPLETED: Priority.ANALYTICS,
    EventType.MARKET_SNAPSHOT: Priority.INGESTION,
    EventType.DATA_ERROR: Priority.INGESTION,
}

# itertools.count.__next__ is atomic under the GIL
_sequence = itertools.count(1)


class Event(msgspec.Struct, frozen=True, gc=False, order=True):
    """
    Immutable engine event.

    Fields are ordered for comparison so events sort by priority first and
    publication sequence second.
    """

    priority: int
    sequence: int
    event_type: EventType
    timestamp_ns: int
    source: str
    payload: dict[str, Any]
    trace_id: str

    @classmethod
    def create(
        cls,
        event_type: EventType,
        source: str,
        payload: dict[str, Any] | None = None,
        trace_id: str | None = None,
    ) -> Event:
        """
        Factory method with automatic priority assignment.

        Args:
            event_type: The type of event
            source: Component that created the event (e.g., "risk.alerts")
            payload: Event-specific data (msgspec-encodable)
            trace_id: Correlation id shared by events of one cycle

        Returns:
            New Event with priority and sequence assigned
        """
        priority = EVENT_PRIORITY_MAP.get(event_type, Priority.INGESTION)
        return cls(
            priority=int(priority),
            sequence=next(_sequence),
            event_type=event_type,
            timestamp_ns=time.time_ns(),
            source=source,
            payload=payload or {},
            trace_id=trace_id or uuid4().hex,
        )

    @property
    def timestamp_sec(self) -> float:
        """Timestamp in seconds."""
        return self.timestamp_ns / 1_000_000_000

    @property
    def priority_name(self) -> str:
        """Human-readable priority name."""
        return Priority(self.priority).name


event_encoder = msgspec.json.Encoder()
event_decoder = msgspec.json.Decoder(Event)


def encode_event(event: Event) -> bytes:
    """Encode event to JSON bytes."""
    return event_encoder.encode(event)


def decode_event(data: bytes) -> Event:
    """Decode event from JSON bytes."""
    return event_decoder.decode(data)
