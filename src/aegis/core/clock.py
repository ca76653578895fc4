"""
Clock: time access and recurring timers for the risk engine.

Provides:
- Current time access (UTC datetime, seconds, nanoseconds)
- Repeating timers (drives the periodic risk-recompute cadence)
- Simulated time for tests and replays (manually advanced)

Every timestamp the engine stamps (alerts, breaker trips, snapshots) comes
from a Clock so retention windows and cool-downs can be tested without sleeping.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any


logger = logging.getLogger(__name__)


class ClockType(Enum):
    """Type of clock."""

    LIVE = "live"  # Wall-clock time
    SIMULATED = "simulated"  # Manually advanced time


@dataclass
class Timer:
    """Timer configuration."""

    name: str
    interval: timedelta
    callback: Callable[[], Coroutine[Any, Any, None]]
    next_trigger: datetime
    repeat: bool = True
    task: asyncio.Task[None] | None = None


class Clock:
    """
    Clock for time access and scheduling.

    Example:
        clock = Clock()
        clock.set_timer("risk_recompute", timedelta(seconds=5), recompute)
        clock.start()

        # Simulated time (tests)
        clock = Clock(ClockType.SIMULATED, initial_time=datetime(2024, 1, 2, tzinfo=timezone.utc))
        clock.advance_time(timedelta(minutes=10))
        await clock.fire_due_timers()
    """

    def __init__(
        self,
        clock_type: ClockType = ClockType.LIVE,
        initial_time: datetime | None = None,
    ) -> None:
        self._type = clock_type
        self._timers: dict[str, Timer] = {}
        self._running = False
        self._simulated_time = (
            initial_time or datetime.now(timezone.utc)
            if clock_type == ClockType.SIMULATED
            else None
        )

    @classmethod
    def simulated(cls, initial_time: datetime | None = None) -> Clock:
        """Create a manually advanced clock."""
        return cls(ClockType.SIMULATED, initial_time=initial_time)

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def clock_type(self) -> ClockType:
        """Clock type (LIVE or SIMULATED)."""
        return self._type

    @property
    def is_live(self) -> bool:
        """Check if using wall-clock time."""
        return self._type == ClockType.LIVE

    @property
    def is_running(self) -> bool:
        return self._running

    # =========================================================================
    # Time Access
    # =========================================================================

    def utc_now(self) -> datetime:
        """Current UTC time."""
        if self._simulated_time is not None:
            return self._simulated_time
        return datetime.now(timezone.utc)

    def timestamp_sec(self) -> float:
        """Seconds since Unix epoch."""
        if self._simulated_time is not None:
            return self._simulated_time.timestamp()
        return time.time()

    def timestamp_ns(self) -> int:
        """Nanoseconds since Unix epoch."""
        if self._simulated_time is not None:
            return int(self._simulated_time.timestamp() * 1_000_000_000)
        return time.time_ns()

    # =========================================================================
    # Simulated Time Control
    # =========================================================================

    def set_time(self, dt: datetime) -> None:
        """
        Set simulated time.

        Raises:
            RuntimeError: If not in SIMULATED mode
        """
        if self._type != ClockType.SIMULATED:
            raise RuntimeError("set_time() only valid in SIMULATED mode")
        self._simulated_time = dt

    def advance_time(self, delta: timedelta) -> None:
        """
        Advance simulated time.

        Raises:
            RuntimeError: If not in SIMULATED mode
        """
        if self._type != ClockType.SIMULATED or self._simulated_time is None:
            raise RuntimeError("advance_time() only valid in SIMULATED mode")
        self._simulated_time += delta

    # =========================================================================
    # Timers
    # =========================================================================

    def set_timer(
        self,
        name: str,
        interval: timedelta,
        callback: Callable[[], Coroutine[Any, Any, None]],
        repeat: bool = True,
    ) -> None:
        """
        Set a timer.

        Args:
            name: Timer name (unique identifier)
            interval: Time between triggers
            callback: Async function to call on trigger
            repeat: If True, timer repeats; if False, one-shot
        """
        if interval <= timedelta(0):
            raise ValueError("Timer interval must be positive")

        if name in self._timers:
            self.cancel_timer(name)

        timer = Timer(
            name=name,
            interval=interval,
            callback=callback,
            next_trigger=self.utc_now() + interval,
            repeat=repeat,
        )
        self._timers[name] = timer

        if self.is_live and self._running:
            self._start_timer_task(timer)

        logger.debug("Timer '%s' set for %s", name, interval)

    def cancel_timer(self, name: str) -> bool:
        """Cancel a timer. Returns True if it existed."""
        timer = self._timers.pop(name, None)
        if timer is None:
            return False
        if timer.task and not timer.task.done():
            timer.task.cancel()
        logger.debug("Timer '%s' canceled", name)
        return True

    def cancel_all_timers(self) -> int:
        """Cancel all timers. Returns how many were canceled."""
        count = len(self._timers)
        for name in list(self._timers):
            self.cancel_timer(name)
        return count

    def _start_timer_task(self, timer: Timer) -> None:
        async def timer_loop() -> None:
            while timer.name in self._timers:
                sleep_seconds = (timer.next_trigger - self.utc_now()).total_seconds()
                if sleep_seconds > 0:
                    await asyncio.sleep(sleep_seconds)

                await self._run_callback(timer)

                if not timer.repeat:
                    self._timers.pop(timer.name, None)
                    break
                timer.next_trigger = self.utc_now() + timer.interval

        timer.task = asyncio.create_task(timer_loop(), name=f"timer-{timer.name}")

    async def _run_callback(self, timer: Timer) -> None:
        try:
            await timer.callback()
        except Exception:
            logger.exception("Error in timer '%s' callback", timer.name)

    async def fire_due_timers(self) -> int:
        """
        Run callbacks of all timers due at the current simulated time.

        Returns:
            Number of callbacks run
        """
        now = self.utc_now()
        fired = 0
        for timer in list(self._timers.values()):
            if timer.next_trigger > now:
                continue
            await self._run_callback(timer)
            fired += 1
            if timer.repeat:
                timer.next_trigger = now + timer.interval
            else:
                self._timers.pop(timer.name, None)
        return fired

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the clock (activates timers in live mode)."""
        if self._running:
            return
        self._running = True
        if self.is_live:
            for timer in self._timers.values():
                self._start_timer_task(timer)
        logger.debug("Clock started in %s mode", self._type.value)

    def stop(self) -> None:
        """Stop the clock and cancel all timers."""
        if not self._running:
            return
        self._running = False
        self.cancel_all_timers()
        logger.debug("Clock stopped")

    def timer_names(self) -> list[str]:
        """Names of active timers."""
        return list(self._timers)
