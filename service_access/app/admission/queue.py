"""
Fair admission queue for requests over the rate budget.
"""

import asyncio
import contextlib
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Protocol, TypeVar, TYPE_CHECKING

from shared.errors import QueueFullError, QueueTimeoutError
from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


DEFAULT_CAPACITY = 50
DEFAULT_TIMEOUT_SECONDS = 30.0

T = TypeVar("T")


class RateLimiter(Protocol):
    """Immediate-admission decision supplied by the external rate limiter."""

    async def try_acquire(self, client_id: str) -> bool:
        ...


@dataclass(eq=False)
class AdmissionQueueEntry:
    """A request waiting for budget."""
    client_id: str
    enqueued_at: float
    deadline: float
    future: "asyncio.Future[None]" = field(repr=False)


class AdmissionQueue:
    """Per-client FIFO queues drained round-robin on budget replenishment.

    Requests the rate limiter rejects wait here instead of failing. Each
    tick admits at most one entry per client per round and keeps going round
    until the budget is spent; the rotation carries over between ticks so a
    busy client cannot starve the others.

    Budget comes from the rate limiter in one of two ways. A limiter that
    replenishes on its own schedule calls :meth:`replenish` with the budget
    it just granted. Otherwise the owned ticker calls :meth:`drain`, which
    asks the limiter once per entry it admits.

    All state is owned by the event loop and mutated only between await
    points, so no lock is needed.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        capacity: int = DEFAULT_CAPACITY,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional["MetricsCollector"] = None,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")

        self.rate_limiter = rate_limiter
        self.capacity = capacity
        self.timeout_seconds = timeout_seconds
        self.metrics = metrics
        self.logger = get_logger("access.admission")
        self._clock = clock
        self._queues: "OrderedDict[str, Deque[AdmissionQueueEntry]]" = OrderedDict()
        self._depth = 0
        self._ticker: Optional[asyncio.Task] = None
        self._counts: Dict[str, int] = {
            "immediate": 0,
            "queued": 0,
            "admitted": 0,
            "rejected_full": 0,
            "timeout": 0,
            "cancelled": 0,
        }

    async def admit(
        self,
        client_id: str,
        continuation: Callable[[], Awaitable[T]],
        timeout: Optional[float] = None,
    ) -> T:
        """Run ``continuation`` now if the limiter allows it, otherwise queue it.

        A client that already has queued requests goes to the back of its
        queue without asking the limiter, preserving arrival order.
        """
        if not self._queues.get(client_id) and await self._try_acquire(client_id):
            self._record("immediate")
            return await continuation()

        return await self.enqueue(client_id, continuation, timeout)

    async def enqueue(
        self,
        client_id: str,
        continuation: Callable[[], Awaitable[T]],
        timeout: Optional[float] = None,
    ) -> T:
        """Wait for budget, then run ``continuation``.

        Raises QueueFullError at once when the client's queue is at capacity
        and QueueTimeoutError when the entry is not admitted within
        ``timeout`` seconds. Neither case runs the continuation, and neither
        does cancelling the awaiting task.
        """
        timeout = self.timeout_seconds if timeout is None else timeout

        queue = self._queues.get(client_id)
        if queue is not None and len(queue) >= self.capacity:
            self._record("rejected_full")
            self.logger.warning("Admission queue full", client_id=client_id, capacity=self.capacity)
            raise QueueFullError(client_id, self.capacity, retry_after=max(1, int(timeout)))

        if queue is None:
            queue = self._queues[client_id] = deque()

        now = self._clock()
        entry = AdmissionQueueEntry(
            client_id=client_id,
            enqueued_at=now,
            deadline=now + timeout,
            future=asyncio.get_running_loop().create_future(),
        )
        queue.append(entry)
        self._depth += 1
        self._record("queued")
        self._update_depth()
        self.logger.debug("Request queued", client_id=client_id, position=len(queue))

        try:
            await asyncio.wait_for(entry.future, timeout=timeout)
        except asyncio.TimeoutError:
            self._discard(entry)
            self._record("timeout")
            self.logger.warning("Queued request timed out", client_id=client_id, timeout=timeout)
            raise QueueTimeoutError(client_id, self._clock() - entry.enqueued_at) from None
        except asyncio.CancelledError:
            self._discard(entry)
            self._record("cancelled")
            raise

        return await continuation()

    def replenish(self, budget: int) -> int:
        """Admit up to ``budget`` queued entries. Returns the number admitted.

        For rate limiters that publish their own replenishment: the caller
        has already been granted ``budget`` and the limiter is not consulted.
        """
        admitted = 0

        while admitted < budget and self._queues:
            progressed = False
            for client_id in list(self._queues):
                if admitted >= budget:
                    break
                entry = self._take_head(client_id)
                if entry is None:
                    continue
                entry.future.set_result(None)
                admitted += 1
                progressed = True
            if not progressed:
                break

        self._record_admitted(admitted)
        return admitted

    async def drain(self, limit: Optional[int] = None) -> int:
        """Admit queued entries the rate limiter grants budget for.

        Clients are asked in round-robin order, one entry per client per
        round. A client the limiter refuses is skipped for the rest of this
        drain. At most ``limit`` entries are admitted when it is given.
        """
        admitted = 0
        refused = set()

        while limit is None or admitted < limit:
            candidates = [client_id for client_id in self._queues if client_id not in refused]
            if not candidates:
                break
            for client_id in candidates:
                if limit is not None and admitted >= limit:
                    break
                queue = self._queues.get(client_id)
                if queue is None or self._peek_live(queue, self._clock()) is None:
                    self._drop_if_empty(client_id)
                    continue
                if not await self._try_acquire(client_id):
                    refused.add(client_id)
                    continue
                # The head may have timed out or been cancelled while the limiter answered
                entry = self._take_head(client_id)
                if entry is None:
                    continue
                entry.future.set_result(None)
                admitted += 1

        self._record_admitted(admitted)
        return admitted

    async def start(self, interval_seconds: float, limit: Optional[int] = None) -> None:
        """Start an owned ticker calling :meth:`drain` every interval.

        Every admission made by the ticker is granted by the rate limiter;
        ``limit`` caps how many entries one tick may admit.
        """
        if self._ticker is not None and not self._ticker.done():
            return
        self._ticker = asyncio.create_task(self._tick_loop(interval_seconds, limit))
        self.logger.info("Admission ticker started", interval=interval_seconds, limit=limit)

    async def stop(self) -> None:
        """Stop the ticker. Queued entries stay queued until they time out."""
        task, self._ticker = self._ticker, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        self.logger.info("Admission ticker stopped")

    async def _tick_loop(self, interval_seconds: float, limit: Optional[int]) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.drain(limit)
            except Exception as exc:
                self.logger.error("Admission tick failed", error=str(exc))

    def status(self) -> Dict[str, Any]:
        """Queue depth per client, for monitoring."""
        now = self._clock()
        return {
            "depth": self._depth,
            "capacity_per_client": self.capacity,
            "timeout_seconds": self.timeout_seconds,
            "clients": {
                client_id: {
                    "queue_length": len(queue),
                    "oldest_wait_seconds": round(now - queue[0].enqueued_at, 3) if queue else 0.0,
                }
                for client_id, queue in self._queues.items()
            },
            "counts": dict(self._counts),
        }

    def queue_length(self, client_id: str) -> int:
        queue = self._queues.get(client_id)
        return len(queue) if queue else 0

    @property
    def depth(self) -> int:
        return self._depth

    async def _try_acquire(self, client_id: str) -> bool:
        try:
            return bool(await self.rate_limiter.try_acquire(client_id))
        except Exception as exc:
            self.logger.error("Rate limiter check error", client_id=client_id, error=str(exc))
            return True

    def _peek_live(self, queue: Deque[AdmissionQueueEntry], now: float) -> Optional[AdmissionQueueEntry]:
        while queue:
            entry = queue[0]
            if entry.future.done():
                queue.popleft()
                self._depth -= 1
                continue
            if now >= entry.deadline:
                queue.popleft()
                self._depth -= 1
                entry.future.set_exception(QueueTimeoutError(entry.client_id, now - entry.enqueued_at))
                self._record("timeout")
                continue
            return entry
        return None

    def _take_head(self, client_id: str) -> Optional[AdmissionQueueEntry]:
        """Pop the client's first live entry and rotate the client to the back."""
        queue = self._queues.get(client_id)
        if queue is None:
            return None
        entry = self._peek_live(queue, self._clock())
        if entry is not None:
            queue.popleft()
            self._depth -= 1
        if queue:
            self._queues.move_to_end(client_id)
        else:
            del self._queues[client_id]
        return entry

    def _drop_if_empty(self, client_id: str) -> None:
        queue = self._queues.get(client_id)
        if queue is not None and not queue:
            del self._queues[client_id]

    def _record_admitted(self, admitted: int) -> None:
        if admitted:
            self._counts["admitted"] += admitted
            if self.metrics:
                for _ in range(admitted):
                    self.metrics.increment_counter("admission_requests_total", outcome="admitted")
            self.logger.debug("Admitted queued requests", admitted=admitted, remaining=self._depth)
        self._update_depth()

    def _discard(self, entry: AdmissionQueueEntry) -> None:
        queue = self._queues.get(entry.client_id)
        if queue is None:
            return
        try:
            queue.remove(entry)
        except ValueError:
            return
        self._depth -= 1
        if not queue:
            del self._queues[entry.client_id]
        self._update_depth()

    def _record(self, outcome: str) -> None:
        self._counts[outcome] += 1
        if self.metrics:
            self.metrics.increment_counter("admission_requests_total", outcome=outcome)

    def _update_depth(self) -> None:
        if self.metrics:
            self.metrics.set_gauge("admission_queue_depth", self._depth)
