"""
Background execution for CPU-bound risk computations.

Stress tests and optimizations must not block the risk-recompute cadence.
They are submitted to a worker pool with a time budget; on expiry the
cancellation token is set (workers poll it between scenarios or iterations)
and ComputationTimeout is raised carrying any partial results.

Usage:
    runner = ComputeRunner(max_workers=2)

    def work(token: CancellationToken, partial: list[Result]) -> list[Result]:
        for item in items:
            token.raise_if_cancelled()
            partial.append(compute(item))
        return partial

    results = await runner.run("stress_tests", work, timeout=5.0)
"""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any, TypeVar

from aegis.core.errors import ComputationCancelled, ComputationTimeout


logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation flag shared with a worker."""

    def __init__(self, deadline: float | None = None) -> None:
        self._event = threading.Event()
        self._deadline = deadline

    @classmethod
    def with_timeout(cls, timeout: float | None) -> CancellationToken:
        """Token that also reports cancelled once `timeout` seconds elapse."""
        return cls(None if timeout is None else time.monotonic() + timeout)

    def cancel(self) -> None:
        """Request cancellation."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """True once cancel() was called or the deadline passed."""
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def raise_if_cancelled(self) -> None:
        """Raise ComputationCancelled if cancellation was requested."""
        if self.cancelled:
            raise ComputationCancelled("Computation cancelled")


class ComputeRunner:
    """
    Worker pool with per-task time budgets.

    The pool is owned by the caller (usually RiskManager) and released with
    shutdown().
    """

    def __init__(self, max_workers: int = 2, default_timeout: float = 30.0) -> None:
        self.default_timeout = default_timeout
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="aegis-compute",
        )
        self._closed = False

    async def run(
        self,
        name: str,
        fn: Callable[..., T],
        *args: Any,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> T:
        """
        Run `fn(*args, token=..., partial=..., **kwargs)` on the worker pool.

        Args:
            name: Task name used in logs and errors
            fn: Callable accepting `token` and `partial` keyword arguments
            timeout: Budget in seconds (defaults to default_timeout)

        Returns:
            The callable's return value

        Raises:
            ComputationTimeout: Budget exceeded (partial results attached)
            RuntimeError: Runner already shut down
        """
        if self._closed:
            raise RuntimeError("ComputeRunner is shut down")

        budget = self.default_timeout if timeout is None else timeout
        token = CancellationToken.with_timeout(budget)
        partial: list[Any] = []
        call = functools.partial(fn, *args, token=token, partial=partial, **kwargs)

        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, call)
        started = time.perf_counter()

        try:
            result = await asyncio.wait_for(asyncio.shield(future), timeout=budget)
        except TimeoutError:
            token.cancel()
            logger.warning(
                "%s timed out after %.2fs with %d partial results",
                name,
                budget,
                len(partial),
            )
            raise ComputationTimeout(name, budget, partial) from None
        except ComputationCancelled:
            # Worker saw its own deadline before wait_for fired
            logger.warning("%s cancelled at deadline with %d partial results", name, len(partial))
            raise ComputationTimeout(name, budget, partial) from None
        except asyncio.CancelledError:
            token.cancel()
            raise

        logger.debug("%s completed in %.3fs", name, time.perf_counter() - started)
        return result

    def shutdown(self, wait: bool = False) -> None:
        """Release worker threads."""
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=True)

    @property
    def is_closed(self) -> bool:
        return self._closed
