"""
Single-flight request deduplication.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, NamedTuple, Optional, TypeVar, TYPE_CHECKING

from shared.errors import DedupTimeoutError
from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


DEFAULT_MAX_WAIT_SECONDS = 30.0

T = TypeVar("T")


class InFlight(NamedTuple):
    task: "asyncio.Task[Any]"
    started_at: float


class RequestDeduplicator:
    """Collapses identical concurrent requests into one execution.

    The first caller for a key starts ``produce()`` as its own task; every
    caller, including the first, awaits that task through a shield. A caller
    that is cancelled therefore stops waiting without cancelling the shared
    work. The in-flight record is removed inside the task itself, right
    before its result is published, so a call arriving after resolution
    always runs ``produce()`` again.

    No caller waits longer than ``max_wait_seconds`` after the record was
    created. Once that window has passed the record is dropped, every waiter
    fails with DedupTimeoutError and the next call for the key executes
    afresh. The abandoned task is left to finish on its own.
    """

    def __init__(
        self,
        max_wait_seconds: float = DEFAULT_MAX_WAIT_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional["MetricsCollector"] = None,
    ):
        if max_wait_seconds <= 0:
            raise ValueError("max_wait_seconds must be positive")

        self.max_wait_seconds = max_wait_seconds
        self.logger = get_logger("access.dedup")
        self.metrics = metrics
        self._clock = clock
        self._in_flight: Dict[str, InFlight] = {}
        self._executions = 0
        self._joined = 0
        self._timeouts = 0

    async def dedupe(self, key: str, produce: Callable[[], Awaitable[T]]) -> T:
        """Run ``produce`` once per set of overlapping calls with ``key``.

        Every caller observes the same return value, or the same exception
        instance if ``produce`` fails.
        """
        now = self._clock()
        record = self._in_flight.get(key)
        if record is not None and now - record.started_at >= self.max_wait_seconds:
            self._abandon(key, record)
            record = None

        if record is None:
            task = asyncio.ensure_future(self._run(key, produce))
            task.add_done_callback(self._retrieve_outcome)
            record = self._in_flight[key] = InFlight(task, now)
            self._executions += 1
            self._record("leader")
        else:
            self._joined += 1
            self._record("joined")
            self.logger.debug("Joined in-flight request", key=key)

        remaining = max(0.0, record.started_at + self.max_wait_seconds - now)
        try:
            return await asyncio.wait_for(asyncio.shield(record.task), timeout=remaining)
        except asyncio.TimeoutError:
            if record.task.done():
                # produce() itself raised the timeout
                raise
            self._abandon(key, record)
            self._timeouts += 1
            self._record("timeout")
            waited = self._clock() - record.started_at
            self.logger.warning("Deduplicated request timed out", key=key, waited_seconds=round(waited, 3))
            raise DedupTimeoutError(key, waited) from None

    async def _run(self, key: str, produce: Callable[[], Awaitable[T]]) -> T:
        try:
            return await produce()
        finally:
            record = self._in_flight.get(key)
            if record is not None and record.task is asyncio.current_task():
                del self._in_flight[key]

    def _abandon(self, key: str, record: InFlight) -> None:
        if self._in_flight.get(key) is record:
            del self._in_flight[key]
            self.logger.info("Dropped stale in-flight request", key=key)

    def _retrieve_outcome(self, task: "asyncio.Task[Any]") -> None:
        # Marks the exception as retrieved when every waiter has gone away
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.debug("Deduplicated request failed", error=str(exc))

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def stats(self) -> Dict[str, Any]:
        return {
            "in_flight": len(self._in_flight),
            "executions": self._executions,
            "joined": self._joined,
            "timeouts": self._timeouts,
            "max_wait_seconds": self.max_wait_seconds,
        }

    def _record(self, role: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("dedup_requests_total", role=role)
