"""Unit tests for the prioritised request queue."""

import asyncio

import pytest

from modgate.fetcher.errors import AuthenticationError, RateLimitError, TransientError
from modgate.fetcher.rate_limiter import RateLimiter
from modgate.fetcher.request_queue import RequestQueue
from modgate.fetcher.retry_handler import RetryPolicy
from modgate.models.data_models import MetricKind, Priority
from modgate.monitoring.performance import PerformanceMonitor
from tests.fixtures.sample_data import FakeClock, ManualClock, wait_until


def recorder(order, label, result=None):
    async def execute():
        order.append(label)
        return result if result is not None else label
    return execute


def failing(errors, calls, result="ok"):
    """Raise each error in turn, then return ``result``."""
    async def execute():
        calls.append(1)
        if errors:
            raise errors.pop(0)
        return result
    return execute


class TestOrdering:

    @pytest.mark.asyncio
    async def test_higher_priority_first(self):
        queue = RequestQueue(RateLimiter(max_tokens=100), max_concurrency=1)
        order = []
        try:
            requests = [
                queue.enqueue(recorder(order, "background"), priority=Priority.BACKGROUND),
                queue.enqueue(recorder(order, "user"), priority=Priority.USER),
                queue.enqueue(recorder(order, "health"), priority=Priority.HEALTH),
                queue.enqueue(recorder(order, "analytics"), priority=Priority.ANALYTICS),
            ]
            await asyncio.gather(*(r.future for r in requests))
        finally:
            await queue.stop()

        assert order == ["health", "user", "analytics", "background"]

    @pytest.mark.asyncio
    async def test_fifo_within_priority(self):
        queue = RequestQueue(RateLimiter(max_tokens=100), max_concurrency=1)
        order = []
        try:
            requests = [queue.enqueue(recorder(order, i)) for i in range(5)]
            await asyncio.gather(*(r.future for r in requests))
        finally:
            await queue.stop()

        assert order == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_submit_returns_result(self):
        queue = RequestQueue(RateLimiter())
        try:
            result = await queue.submit(recorder([], "x", result={"data": 1}))
        finally:
            await queue.stop()

        assert result == {"data": 1}


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_never_exceeds_max_concurrency(self):
        queue = RequestQueue(RateLimiter(max_tokens=100), max_concurrency=2)
        release = asyncio.Event()
        active = []
        peak = []

        async def execute():
            active.append(1)
            peak.append(len(active))
            await release.wait()
            active.pop()
            return True

        try:
            requests = [queue.enqueue(execute) for _ in range(5)]
            await wait_until(lambda: queue.status().active_requests == 2)

            assert queue.queue_length == 3
            release.set()
            await asyncio.gather(*(r.future for r in requests))
        finally:
            await queue.stop()

        assert max(peak) == 2
        assert queue.queue_length == 0


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_before_dispatch(self):
        queue = RequestQueue(RateLimiter(max_tokens=100), max_concurrency=1)
        order = []
        try:
            first = queue.enqueue(recorder(order, "first"))
            second = queue.enqueue(recorder(order, "second"))

            assert queue.cancel(second.id) is True
            await first.future
            await asyncio.sleep(0)
        finally:
            await queue.stop()

        assert order == ["first"]
        assert second.future.cancelled()

    @pytest.mark.asyncio
    async def test_cancel_unknown_or_in_flight(self):
        queue = RequestQueue(RateLimiter(), max_concurrency=1)
        release = asyncio.Event()

        async def execute():
            await release.wait()
            return "done"

        try:
            request = queue.enqueue(execute)
            await wait_until(lambda: request.in_flight)

            assert queue.cancel(request.id) is False
            assert queue.cancel("no-such-id") is False
            release.set()
            assert await request.future == "done"
        finally:
            await queue.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_pending(self):
        queue = RequestQueue(RateLimiter(), max_concurrency=1)
        release = asyncio.Event()

        async def blocked():
            await release.wait()

        first = queue.enqueue(blocked)
        second = queue.enqueue(blocked)
        await wait_until(lambda: first.in_flight)

        await queue.stop()

        assert not queue.running
        assert second.future.cancelled()
        assert queue.status().queue_length == 0


class TestRateGating:

    @pytest.mark.asyncio
    async def test_defers_when_bucket_empty(self):
        clk = ManualClock()
        monitor = PerformanceMonitor(now=clk.now)
        limiter = RateLimiter(max_tokens=2, refill_rate=1.0, now=clk.now)
        queue = RequestQueue(limiter, monitor=monitor, now=clk.now, sleeper=clk.sleep)
        done = []
        try:
            requests = [queue.enqueue(recorder(done, i)) for i in range(4)]
            await wait_until(lambda: len(done) == 2 and clk.sleeping == 2)

            assert queue.queue_length == 2
            assert monitor.count(MetricKind.RATE_LIMIT_QUEUED) == 2

            clk.advance(1.0)
            await wait_until(lambda: len(done) == 3 and clk.sleeping == 1)

            clk.advance(1.0)
            await asyncio.gather(*(r.future for r in requests))
        finally:
            await queue.stop()

        assert sorted(done) == [0, 1, 2, 3]
        assert queue.queue_length == 0


class TestRetries:

    @pytest.mark.asyncio
    async def test_server_error_retried_with_backoff(self):
        clk = FakeClock()
        monitor = PerformanceMonitor(now=clk.now)
        queue = RequestQueue(RateLimiter(now=clk.now), monitor=monitor,
                             now=clk.now, sleeper=clk.sleep)
        calls = []
        errors = [
            TransientError("HTTP 503", TransientError.SERVER, 503),
            TransientError("HTTP 502", TransientError.SERVER, 502),
        ]
        try:
            result = await queue.submit(failing(errors, calls))
        finally:
            await queue.stop()

        assert result == "ok"
        assert len(calls) == 3
        assert clk.sleeps == [1.0, 2.0]
        assert monitor.count(MetricKind.RETRY_SCHEDULED) == 2

    @pytest.mark.asyncio
    async def test_timeouts_exhaust_budget(self):
        clk = FakeClock()
        queue = RequestQueue(RateLimiter(now=clk.now), now=clk.now, sleeper=clk.sleep)
        calls = []
        errors = [TransientError("slow", TransientError.TIMEOUT) for _ in range(10)]
        try:
            with pytest.raises(TransientError):
                await queue.submit(failing(errors, calls))
        finally:
            await queue.stop()

        assert len(calls) == 4
        assert clk.sleeps == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_upstream_rate_limit_waits_retry_after(self):
        clk = FakeClock()
        monitor = PerformanceMonitor(now=clk.now)
        queue = RequestQueue(RateLimiter(now=clk.now), monitor=monitor,
                             now=clk.now, sleeper=clk.sleep)
        calls = []
        try:
            result = await queue.submit(failing([RateLimitError(3.0)], calls))
        finally:
            await queue.stop()

        assert result == "ok"
        assert clk.sleeps == [3.0]
        assert monitor.count(MetricKind.RATE_LIMIT_HIT) == 1

    @pytest.mark.asyncio
    async def test_fatal_error_not_retried(self):
        clk = FakeClock()
        queue = RequestQueue(RateLimiter(now=clk.now), now=clk.now, sleeper=clk.sleep)
        calls = []
        try:
            with pytest.raises(AuthenticationError):
                await queue.submit(failing([AuthenticationError()], calls))
        finally:
            await queue.stop()

        assert len(calls) == 1
        assert clk.sleeps == []

    @pytest.mark.asyncio
    async def test_execution_timeout_becomes_transient_error(self):
        queue = RequestQueue(
            RateLimiter(),
            retry_policy=RetryPolicy(timeout_retries=0),
            request_timeout=0.05,
        )

        async def slow():
            await asyncio.sleep(5)

        try:
            with pytest.raises(TransientError) as exc_info:
                await queue.submit(slow)
        finally:
            await queue.stop()

        assert exc_info.value.kind == TransientError.TIMEOUT

    @pytest.mark.asyncio
    async def test_retry_keeps_sequence(self):
        """A retried request keeps its place among equal priorities."""
        clk = FakeClock()
        queue = RequestQueue(RateLimiter(now=clk.now), max_concurrency=1,
                             now=clk.now, sleeper=clk.sleep)
        calls = []
        try:
            request = queue.enqueue(failing([TransientError("x", TransientError.NETWORK)], calls))
            seq = request.seq
            await request.future
        finally:
            await queue.stop()

        assert request.seq == seq
        assert request.attempts == {RetryPolicy.NETWORK: 1}
