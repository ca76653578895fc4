"""
Async message bus with priority routing for risk events.

Architecture:
- One bounded deque per priority level (CRITICAL > ALERTS > ANALYTICS > INGESTION)
- publish() is non-blocking and safe to call from worker threads
  (deque.append is atomic), so synchronous engine code can publish freely
- Handlers run as tasks with error isolation
- Graceful shutdown drains pending events
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import defaultdict, deque
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any

from aegis.core.events import Event, EventType, Priority


logger = logging.getLogger(__name__)

Handler = Callable[[Event], Coroutine[Any, Any, None]]
EventFilter = Callable[[Event], bool]


@dataclass(slots=True)
class Subscription:
    """Handler subscription with optional filtering."""

    id: int
    event_type: EventType
    handler: Handler
    filter_fn: EventFilter | None = None

    def matches(self, event: Event) -> bool:
        """Check if event passes the filter."""
        if self.filter_fn is None:
            return True
        try:
            return self.filter_fn(event)
        except Exception:
            logger.exception("Filter error for subscription %d", self.id)
            return False


@dataclass
class MessageBusConfig:
    """Configuration for the message bus."""

    critical_queue_size: int = 1_000
    alerts_queue_size: int = 5_000
    analytics_queue_size: int = 5_000
    ingestion_queue_size: int = 50_000

    drain_timeout: float = 5.0
    batch_size: int = 100  # Events to process before yielding
    idle_sleep: float = 0.001


class MessageBus:
    """
    Priority-based async message bus.

    Usage:
        bus = MessageBus()

        async def on_trip(event: Event) -> None:
            notify_desk(event.payload)

        bus.subscribe(EventType.CIRCUIT_BREAKER_TRIPPED, on_trip)

        async with bus:
            manager = RiskManager(config, bus=bus)
            manager.update_risk_metrics(positions, snapshot)
    """

    def __init__(self, config: MessageBusConfig | None = None) -> None:
        self.config = config or MessageBusConfig()

        self._queues: dict[Priority, deque[Event]] = {
            Priority.CRITICAL: deque(maxlen=self.config.critical_queue_size),
            Priority.ALERTS: deque(maxlen=self.config.alerts_queue_size),
            Priority.ANALYTICS: deque(maxlen=self.config.analytics_queue_size),
            Priority.INGESTION: deque(maxlen=self.config.ingestion_queue_size),
        }
        self._handlers: dict[EventType, list[Subscription]] = defaultdict(list)

        self._running = False
        self._accepting = True
        self._dispatch_task: asyncio.Task[None] | None = None
        self._active_tasks: set[asyncio.Task[None]] = set()

        self._events_published = 0
        self._events_dispatched = 0
        self._events_dropped = 0
        self._handler_errors = 0
        self._sub_id = 0

    # =========================================================================
    # Subscription Management
    # =========================================================================

    def subscribe(
        self,
        event_type: EventType,
        handler: Handler,
        filter_fn: EventFilter | None = None,
    ) -> int:
        """
        Subscribe to an event type.

        Args:
            event_type: Type of events to receive
            handler: Async function called with each event
            filter_fn: Optional filter (return True to receive)

        Returns:
            Subscription ID for unsubscribing
        """
        self._sub_id += 1
        sub = Subscription(
            id=self._sub_id,
            event_type=event_type,
            handler=handler,
            filter_fn=filter_fn,
        )
        self._handlers[event_type].append(sub)
        logger.debug("Subscribed %d to %s", sub.id, event_type.name)
        return sub.id

    def unsubscribe(self, subscription_id: int) -> bool:
        """Unsubscribe by ID. Returns True if found and removed."""
        for subs in self._handlers.values():
            for sub in subs:
                if sub.id == subscription_id:
                    subs.remove(sub)
                    return True
        return False

    # =========================================================================
    # Publishing
    # =========================================================================

    def publish(self, event: Event) -> bool:
        """
        Publish an event (non-blocking).

        If the priority queue is full the oldest event is dropped.

        Returns:
            True if accepted, False if the bus is shutting down
        """
        if not self._accepting:
            return False

        queue = self._queues[Priority(event.priority)]
        was_full = len(queue) == queue.maxlen
        queue.append(event)
        self._events_published += 1

        if was_full:
            self._events_dropped += 1
            logger.warning(
                "Queue %s full, dropped oldest event",
                Priority(event.priority).name,
            )
        return True

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def start(self) -> None:
        """Run the dispatch loop until stop() is called."""
        if self._running:
            logger.warning("MessageBus already running")
            return

        self._running = True
        self._accepting = True
        logger.info("MessageBus started")

        while self._running:
            if await self._dispatch_batch() == 0:
                await asyncio.sleep(self.config.idle_sleep)

    async def drain(self) -> int:
        """
        Dispatch everything currently queued and wait for the handlers.

        Useful when the dispatch loop is not running (tests, shutdown).

        Returns:
            Number of events dispatched
        """
        total = 0
        while self.total_pending:
            total += await self._dispatch_batch()
        if self._active_tasks:
            await asyncio.gather(*list(self._active_tasks), return_exceptions=True)
        return total

    async def _dispatch_batch(self) -> int:
        """Dispatch up to batch_size events in priority order."""
        dispatched = 0
        for priority in Priority:
            queue = self._queues[priority]
            while queue and dispatched < self.config.batch_size:
                event = queue.popleft()
                self._dispatch_event(event)
                dispatched += 1
                self._events_dispatched += 1
        return dispatched

    def _dispatch_event(self, event: Event) -> None:
        """Schedule all matching handlers for one event."""
        for sub in self._handlers.get(event.event_type, []):
            if not sub.matches(event):
                continue
            task = asyncio.create_task(
                self._safe_call(sub, event),
                name=f"handler-{sub.id}",
            )
            self._active_tasks.add(task)
            task.add_done_callback(self._active_tasks.discard)

    async def _safe_call(self, sub: Subscription, event: Event) -> None:
        """Call handler with error isolation."""
        try:
            await sub.handler(event)
        except Exception:
            self._handler_errors += 1
            logger.exception(
                "Handler error: subscription=%d event_type=%s trace_id=%s",
                sub.id,
                event.event_type.name,
                event.trace_id,
            )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def stop(self, drain: bool = True) -> int:
        """
        Stop the message bus.

        Args:
            drain: If True, process remaining events before stopping

        Returns:
            Number of events dropped
        """
        self._accepting = False
        dropped = 0

        if drain:
            try:
                await asyncio.wait_for(self.drain(), timeout=self.config.drain_timeout)
            except TimeoutError:
                dropped = self.total_pending
                logger.warning("Drain timeout, dropped %d events", dropped)
                for q in self._queues.values():
                    q.clear()

        self._running = False

        for task in list(self._active_tasks):
            if not task.done():
                task.cancel()
        if self._active_tasks:
            await asyncio.gather(*list(self._active_tasks), return_exceptions=True)

        logger.info(
            "MessageBus stopped: published=%d dispatched=%d dropped=%d errors=%d",
            self._events_published,
            self._events_dispatched,
            self._events_dropped + dropped,
            self._handler_errors,
        )
        return dropped

    async def __aenter__(self) -> MessageBus:
        self._dispatch_task = asyncio.create_task(self.start())
        await asyncio.sleep(0)
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.stop()
        if self._dispatch_task:
            self._dispatch_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._dispatch_task

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def is_running(self) -> bool:
        """Whether the dispatch loop is running."""
        return self._running

    @property
    def total_pending(self) -> int:
        """Total events pending in all queues."""
        return sum(len(q) for q in self._queues.values())

    def pending_events(self) -> list[Event]:
        """Snapshot of queued events in dispatch order."""
        return [event for priority in Priority for event in self._queues[priority]]

    @property
    def stats(self) -> dict[str, int]:
        """Bus statistics."""
        return {
            "published": self._events_published,
            "dispatched": self._events_dispatched,
            "dropped": self._events_dropped,
            "errors": self._handler_errors,
            "pending": self.total_pending,
            "handlers": sum(len(h) for h in self._handlers.values()),
        }
