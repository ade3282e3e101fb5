"""
Unit tests for request deduplication and canonical keys.
"""

import asyncio
import pytest

from service_access.app.dedup.deduplicator import RequestDeduplicator
from service_access.app.dedup.keys import canonical_request_key, normalize_params
from shared.errors import DedupTimeoutError
from shared.test_helpers import DummyMetrics, FakeClock


class TestCanonicalKeys:
    """Test cases for key normalization."""

    def test_param_order_irrelevant(self):
        """Test that parameter order does not change the key."""
        assert canonical_request_key("get", "/images", {"b": 2, "a": 1}) == \
            canonical_request_key("GET", "/images", [("a", "1"), ("b", "2")])

    def test_user_scope_distinguishes(self):
        """Test that caller-scoped keys differ per user."""
        assert canonical_request_key("GET", "/me", user_id="u1") != canonical_request_key("GET", "/me", user_id="u2")

    def test_normalize_expands_lists_and_drops_none(self):
        """Test list expansion and None removal."""
        assert normalize_params({"tag": ["y", "x"], "q": None, "page": 1}) == (
            ("page", "1"), ("tag", "x"), ("tag", "y"),
        )


class TestRequestDeduplicator:
    """Test cases for RequestDeduplicator."""

    @pytest.fixture
    def metrics(self):
        return DummyMetrics()

    @pytest.fixture
    def dedup(self, metrics):
        return RequestDeduplicator(metrics=metrics)

    @pytest.mark.asyncio
    async def test_concurrent_calls_execute_once(self, dedup, metrics):
        """Test that N overlapping calls run produce() once and share its value."""
        calls = 0
        release = asyncio.Event()

        async def produce():
            nonlocal calls
            calls += 1
            await release.wait()
            return {"items": [1, 2, 3]}

        waiters = [asyncio.ensure_future(dedup.dedupe("k", produce)) for _ in range(5)]
        await asyncio.sleep(0)
        assert dedup.in_flight == 1

        release.set()
        results = await asyncio.gather(*waiters)

        assert calls == 1
        assert all(result is results[0] for result in results)
        assert dedup.in_flight == 0
        assert metrics.count("dedup_requests_total", role="leader") == 1
        assert metrics.count("dedup_requests_total", role="joined") == 4

    @pytest.mark.asyncio
    async def test_failure_shared_by_all_waiters(self, dedup):
        """Test that every waiter receives the same exception."""
        release = asyncio.Event()
        error = RuntimeError("upstream failed")

        async def produce():
            await release.wait()
            raise error

        waiters = [asyncio.ensure_future(dedup.dedupe("k", produce)) for _ in range(3)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*waiters, return_exceptions=True)

        assert all(result is error for result in results)
        assert dedup.in_flight == 0

    @pytest.mark.asyncio
    async def test_sequential_calls_execute_again(self, dedup):
        """Test that resolved records are not reused."""
        calls = 0

        async def produce():
            nonlocal calls
            calls += 1
            return calls

        assert await dedup.dedupe("k", produce) == 1
        assert await dedup.dedupe("k", produce) == 2

    @pytest.mark.asyncio
    async def test_call_after_failure_retries(self, dedup):
        """Test that a failed record does not poison the key."""
        attempts = []

        async def produce():
            attempts.append(1)
            if len(attempts) == 1:
                raise ValueError("first try")
            return "ok"

        with pytest.raises(ValueError):
            await dedup.dedupe("k", produce)
        assert await dedup.dedupe("k", produce) == "ok"

    @pytest.mark.asyncio
    async def test_distinct_keys_run_independently(self, dedup):
        """Test that different keys are not collapsed."""
        calls = []

        def produce_for(key):
            async def produce():
                calls.append(key)
                await asyncio.sleep(0)
                return key
            return produce

        results = await asyncio.gather(
            dedup.dedupe("a", produce_for("a")),
            dedup.dedupe("b", produce_for("b")),
        )

        assert results == ["a", "b"]
        assert sorted(calls) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_others(self, dedup):
        """Test that one waiter giving up leaves the shared work running."""
        release = asyncio.Event()

        async def produce():
            await release.wait()
            return "value"

        first = asyncio.ensure_future(dedup.dedupe("k", produce))
        second = asyncio.ensure_future(dedup.dedupe("k", produce))
        await asyncio.sleep(0)

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        release.set()
        assert await second == "value"
        assert dedup.in_flight == 0

    @pytest.mark.asyncio
    async def test_all_waiters_cancelled_work_completes(self, dedup):
        """Test that abandoned work still finishes and clears its record."""
        release = asyncio.Event()
        done = asyncio.Event()

        async def produce():
            await release.wait()
            done.set()
            return "value"

        waiter = asyncio.ensure_future(dedup.dedupe("k", produce))
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        release.set()
        await asyncio.wait_for(done.wait(), timeout=1)
        await asyncio.sleep(0)

        assert dedup.in_flight == 0
        assert dedup.stats()["executions"] == 1

    @pytest.mark.asyncio
    async def test_stuck_produce_times_out_every_waiter(self, metrics):
        """Test that a produce() that never resolves cannot hold its key forever."""
        dedup = RequestDeduplicator(max_wait_seconds=0.05, metrics=metrics)
        never = asyncio.Event()

        async def stuck():
            await never.wait()
            return "never"

        results = await asyncio.gather(
            *[dedup.dedupe("k", stuck) for _ in range(3)],
            return_exceptions=True,
        )

        assert all(isinstance(result, DedupTimeoutError) for result in results)
        assert results[0].status_code == 504
        assert dedup.in_flight == 0
        assert dedup.stats()["timeouts"] == 3
        assert metrics.count("dedup_requests_total", role="timeout") == 3

        async def healthy():
            return "fresh"

        assert await dedup.dedupe("k", healthy) == "fresh"
        assert dedup.stats()["executions"] == 2

        never.set()
        await asyncio.sleep(0.01)

    @pytest.mark.asyncio
    async def test_stale_record_replaced_by_next_call(self):
        """Test that a call after the wait window executes instead of joining."""
        clock = FakeClock()
        dedup = RequestDeduplicator(max_wait_seconds=30, clock=clock)
        release = asyncio.Event()

        async def slow():
            await release.wait()
            return "old"

        async def fast():
            return "new"

        first = asyncio.ensure_future(dedup.dedupe("k", slow))
        await asyncio.sleep(0)
        clock.advance(31)

        assert await dedup.dedupe("k", fast) == "new"
        assert dedup.stats()["executions"] == 2

        release.set()
        assert await first == "old"
        assert dedup.in_flight == 0

    def test_invalid_max_wait(self):
        """Test construction with a non-positive window."""
        with pytest.raises(ValueError):
            RequestDeduplicator(max_wait_seconds=0)
