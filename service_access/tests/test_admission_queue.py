"""
Unit tests for the admission queue.
"""

import asyncio
import pytest

from service_access.app.admission.queue import AdmissionQueue
from shared.errors import QueueFullError, QueueTimeoutError
from shared.test_helpers import DummyMetrics, FakeClock, ScriptedRateLimiter


async def settle():
    """Let every ready task run up to its next suspension point."""
    for _ in range(5):
        await asyncio.sleep(0)


class TestAdmissionQueue:
    """Test cases for AdmissionQueue."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def metrics(self):
        return DummyMetrics()

    @pytest.fixture
    def limiter(self):
        return ScriptedRateLimiter(allowance=0)

    @pytest.fixture
    def queue(self, limiter, clock, metrics):
        return AdmissionQueue(limiter, capacity=2, timeout_seconds=30, clock=clock, metrics=metrics)

    def recorder(self, log, label):
        async def continuation():
            log.append(label)
            return label
        return continuation

    @pytest.mark.asyncio
    async def test_budget_then_queue_in_arrival_order(self, clock, metrics):
        """Test a 3-request budget with 5 simultaneous requests."""
        limiter = ScriptedRateLimiter(allowance=3)
        queue = AdmissionQueue(limiter, capacity=50, clock=clock, metrics=metrics)
        executed = []

        tasks = [
            asyncio.ensure_future(queue.admit("client", self.recorder(executed, i)))
            for i in range(5)
        ]
        await settle()

        assert executed == [0, 1, 2]
        assert queue.queue_length("client") == 2

        assert queue.replenish(3) == 2
        results = await asyncio.gather(*tasks)

        assert executed == [0, 1, 2, 3, 4]
        assert results == [0, 1, 2, 3, 4]
        assert queue.depth == 0
        assert metrics.count("admission_requests_total", outcome="immediate") == 3
        assert metrics.count("admission_requests_total", outcome="admitted") == 2

    @pytest.mark.asyncio
    async def test_queued_client_bypasses_limiter(self, limiter, queue):
        """Test that a client with queued work joins the back of its queue."""
        executed = []
        first = asyncio.ensure_future(queue.admit("client", self.recorder(executed, "first")))
        await settle()

        limiter.allowance = 1
        second = asyncio.ensure_future(queue.admit("client", self.recorder(executed, "second")))
        await settle()

        assert executed == []
        queue.replenish(2)
        await asyncio.gather(first, second)
        assert executed == ["first", "second"]

    @pytest.mark.asyncio
    async def test_full_queue_rejects_immediately(self, queue):
        """Test that the third entry for a capacity-2 client is rejected."""
        executed = []
        waiting = [asyncio.ensure_future(queue.enqueue("client", self.recorder(executed, i))) for i in range(2)]
        await settle()

        with pytest.raises(QueueFullError) as exc_info:
            await queue.enqueue("client", self.recorder(executed, 2))

        assert exc_info.value.status_code == 429
        assert exc_info.value.retryable is True

        queue.replenish(5)
        await asyncio.gather(*waiting)
        assert executed == [0, 1]

    @pytest.mark.asyncio
    async def test_capacity_is_per_client(self, queue):
        """Test that one client's full queue does not block another's."""
        waiting = [asyncio.ensure_future(queue.enqueue("a", self.recorder([], i))) for i in range(2)]
        other = asyncio.ensure_future(queue.enqueue("b", self.recorder([], "b")))
        await settle()

        assert queue.queue_length("a") == 2
        assert queue.queue_length("b") == 1

        queue.replenish(3)
        await asyncio.gather(*waiting, other)

    @pytest.mark.asyncio
    async def test_round_robin_across_clients(self, clock):
        """Test that each tick serves clients in turn and remembers its position."""
        queue = AdmissionQueue(ScriptedRateLimiter(), capacity=10, clock=clock)
        executed = []
        tasks = []
        for client, count in (("a", 4), ("b", 2), ("c", 1)):
            for i in range(count):
                tasks.append(asyncio.ensure_future(queue.enqueue(client, self.recorder(executed, f"{client}{i}"))))
        await settle()

        queue.replenish(4)
        await settle()
        assert executed == ["a0", "b0", "c0", "a1"]

        queue.replenish(2)
        await settle()
        assert executed[4:] == ["b1", "a2"]

        queue.replenish(10)
        await asyncio.gather(*tasks)
        assert executed[6:] == ["a3"]

    @pytest.mark.asyncio
    async def test_timeout_removes_entry(self, limiter):
        """Test that an entry not admitted in time fails and leaves the queue."""
        queue = AdmissionQueue(limiter, capacity=5, timeout_seconds=0.05)
        executed = []

        with pytest.raises(QueueTimeoutError) as exc_info:
            await queue.admit("client", self.recorder(executed, "late"))

        assert exc_info.value.status_code == 503
        assert executed == []
        assert queue.depth == 0
        assert queue.status()["clients"] == {}

    @pytest.mark.asyncio
    async def test_expired_entry_fails_on_drain(self, queue, clock):
        """Test that entries past their deadline are failed, not admitted."""
        executed = []
        stale = asyncio.ensure_future(queue.enqueue("a", self.recorder(executed, "stale")))
        await settle()
        clock.advance(31)
        fresh = asyncio.ensure_future(queue.enqueue("b", self.recorder(executed, "fresh")))
        await settle()

        assert queue.replenish(1) == 1
        await settle()

        with pytest.raises(QueueTimeoutError):
            await stale
        assert await fresh == "fresh"
        assert executed == ["fresh"]

    @pytest.mark.asyncio
    async def test_cancelled_waiter_removed(self, queue):
        """Test that cancelling a queued request drops its entry."""
        executed = []
        first = asyncio.ensure_future(queue.enqueue("client", self.recorder(executed, "first")))
        second = asyncio.ensure_future(queue.enqueue("client", self.recorder(executed, "second")))
        await settle()

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first
        assert queue.queue_length("client") == 1

        assert queue.replenish(1) == 1
        assert await second == "second"
        assert executed == ["second"]

    @pytest.mark.asyncio
    async def test_continuation_error_propagates(self, limiter, queue):
        """Test that a failing continuation fails only its own request."""
        limiter.allowance = 1

        async def boom():
            raise ValueError("handler failed")

        with pytest.raises(ValueError):
            await queue.admit("client", boom)

    @pytest.mark.asyncio
    async def test_limiter_error_admits(self, queue):
        """Test that a broken limiter does not block traffic."""
        class BrokenLimiter:
            async def try_acquire(self, client_id):
                raise ConnectionError("limiter down")

        queue.rate_limiter = BrokenLimiter()
        assert await queue.admit("client", self.recorder([], "ok")) == "ok"

    @pytest.mark.asyncio
    async def test_status_reports_per_client(self, queue, clock, metrics):
        """Test the monitoring view."""
        waiting = asyncio.ensure_future(queue.enqueue("client", self.recorder([], "x")))
        await settle()
        clock.advance(2.5)

        status = queue.status()

        assert status["depth"] == 1
        assert status["clients"]["client"] == {"queue_length": 1, "oldest_wait_seconds": 2.5}
        assert metrics.gauges["admission_queue_depth"] == 1

        queue.replenish(1)
        await waiting
        assert metrics.gauges["admission_queue_depth"] == 0

    @pytest.mark.asyncio
    async def test_drain_asks_limiter_per_entry(self, limiter, queue):
        """Test that a drain admits only what the limiter grants."""
        executed = []
        tasks = [
            asyncio.ensure_future(queue.admit("client", self.recorder(executed, n)))
            for n in range(2)
        ]
        await settle()
        assert queue.queue_length("client") == 2

        assert await queue.drain() == 0
        await settle()
        assert executed == []

        limiter.allowance = 1
        assert await queue.drain() == 1
        await settle()
        assert executed == [0]
        assert queue.queue_length("client") == 1

        limiter.allowance = 5
        assert await queue.drain() == 1
        await asyncio.gather(*tasks)
        assert executed == [0, 1]

    @pytest.mark.asyncio
    async def test_drain_round_robin_and_limit(self, clock):
        """Test that drains rotate across clients and stop at the limit."""
        limiter = ScriptedRateLimiter(allowance=100)
        queue = AdmissionQueue(limiter, capacity=10, clock=clock)
        executed = []
        tasks = []
        for client, count in (("a", 3), ("b", 1)):
            for i in range(count):
                tasks.append(asyncio.ensure_future(queue.enqueue(client, self.recorder(executed, f"{client}{i}"))))
        await settle()

        assert await queue.drain(limit=3) == 3
        await settle()
        assert executed == ["a0", "b0", "a1"]

        assert await queue.drain() == 1
        await asyncio.gather(*tasks)
        assert executed[3:] == ["a2"]

    @pytest.mark.asyncio
    async def test_drain_skips_refused_client(self, clock):
        """Test that one client's exhausted budget does not block others."""
        class PerClientLimiter:
            async def try_acquire(self, client_id):
                return client_id != "a"

        queue = AdmissionQueue(PerClientLimiter(), capacity=10, clock=clock)
        executed = []
        a = asyncio.ensure_future(queue.enqueue("a", self.recorder(executed, "a0")))
        b = [asyncio.ensure_future(queue.enqueue("b", self.recorder(executed, f"b{i}"))) for i in range(2)]
        await settle()

        assert await queue.drain() == 2
        await asyncio.gather(*b)
        assert executed == ["b0", "b1"]
        assert queue.queue_length("a") == 1

        a.cancel()
        with pytest.raises(asyncio.CancelledError):
            await a

    @pytest.mark.asyncio
    async def test_ticker_waits_for_limiter(self, limiter):
        """Test that the owned ticker admits only with limiter budget."""
        queue = AdmissionQueue(limiter, capacity=5)
        await queue.start(interval_seconds=0.01, limit=1)
        try:
            waiting = asyncio.ensure_future(queue.admit("client", self.recorder([], "ticked")))
            await asyncio.sleep(0.05)
            assert not waiting.done()
            assert queue.queue_length("client") == 1

            limiter.allowance = 1
            result = await asyncio.wait_for(waiting, timeout=1)
        finally:
            await queue.stop()

        assert result == "ticked"
