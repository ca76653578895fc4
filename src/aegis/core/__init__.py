"""
AEGIS Core: shared infrastructure for the risk engine.

- Event / EventType / Priority: immutable risk events (msgspec.Struct)
- MessageBus: async priority-based event bus
- Clock: live or simulated time plus recurring timers
- ComputeRunner / CancellationToken: background execution with time budgets
- Error taxonomy (DataError, ConstraintInfeasible, AlertNotFound, ...)
"""

from aegis.core.clock import Clock, ClockType
from aegis.core.errors import (
    AegisError,
    AlertNotFound,
    ComputationCancelled,
    ComputationTimeout,
    ConstraintInfeasible,
    DataError,
    InvariantViolation,
    NotFound,
)
from aegis.core.events import (
    EVENT_PRIORITY_MAP,
    Event,
    EventType,
    Priority,
    decode_event,
    encode_event,
)
from aegis.core.message_bus import (
    EventFilter,
    Handler,
    MessageBus,
    MessageBusConfig,
    Subscription,
)
from aegis.core.tasks import CancellationToken, ComputeRunner


__all__ = [
    "AegisError",
    "AlertNotFound",
    "CancellationToken",
    "Clock",
    "ClockType",
    "ComputationCancelled",
    "ComputationTimeout",
    "ComputeRunner",
    "ConstraintInfeasible",
    "DataError",
    "EVENT_PRIORITY_MAP",
    "Event",
    "EventFilter",
    "EventType",
    "Handler",
    "InvariantViolation",
    "MessageBus",
    "MessageBusConfig",
    "NotFound",
    "Priority",
    "Subscription",
    "decode_event",
    "encode_event",
]
