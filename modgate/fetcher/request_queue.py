"""Prioritised request queue with bounded concurrency, rate gating and retries."""

import asyncio
import itertools
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from modgate.fetcher.errors import RateLimited, TransientError
from modgate.fetcher.rate_limiter import RateLimiter
from modgate.fetcher.retry_handler import RetryPolicy
from modgate.models.data_models import (
    ApiCallMetadata,
    MetricKind,
    Priority,
    QueueStatus,
    RateLimitMetadata,
)


@dataclass
class QueuedRequest:
    """A unit of outbound work waiting for (or holding) a worker."""
    id: str
    priority: int
    enqueued_at: float
    execute: Callable[[], Awaitable[Any]]
    label: str
    future: asyncio.Future
    seq: int
    attempts: Dict[str, int] = field(default_factory=dict)  # failure kind -> retries spent
    in_flight: bool = False


class RequestQueue:
    """
    Drains outbound calls through a fixed pool of worker tasks.

    Responsibilities:
    - Higher priority first, FIFO within a priority (sequence kept on requeue)
    - Take a limiter token before each execution; defer on RateLimited
    - Bound each execution by request_timeout
    - Re-enqueue retryable failures per RetryPolicy
    - Cancel requests that have not been dispatched yet
    """

    def __init__(
        self,
        limiter: RateLimiter,
        retry_policy: Optional[RetryPolicy] = None,
        max_concurrency: int = 4,
        request_timeout: float = 25.0,
        monitor: Optional['PerformanceMonitor'] = None,
        logger: Optional['StructuredLogger'] = None,
        now: Callable[[], float] = time.monotonic,
        sleeper: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize request queue.

        Args:
            limiter: Token bucket consulted before every execution
            retry_policy: Decides retries (default: RetryPolicy())
            max_concurrency: Number of worker tasks
            request_timeout: Upper bound for one execution in seconds
            monitor: Optional performance monitor for deferrals and retries
            logger: Optional structured logger
            now: Clock function (default: time.monotonic)
            sleeper: Sleep coroutine used for deferral timers
        """
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be at least 1, got: {max_concurrency}")

        self.limiter = limiter
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_concurrency = max_concurrency
        self.request_timeout = request_timeout
        self.monitor = monitor
        self.logger = logger
        self._now = now
        self._sleeper = sleeper

        self._queue: Optional[asyncio.PriorityQueue] = None
        self._pending: Dict[str, QueuedRequest] = {}
        self._workers: List[asyncio.Task] = []
        self._timers: Set[asyncio.Task] = set()
        self._seq = itertools.count()
        self._active = 0
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Spawn the worker pool. No-op when already running."""
        if self._running:
            return

        self._queue = asyncio.PriorityQueue()
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(), name=f"modgate-worker-{i}")
            for i in range(self.max_concurrency)
        ]

    async def stop(self) -> None:
        """Cancel workers and timers; fail everything still pending with cancellation."""
        if not self._running:
            return

        self._running = False
        tasks = self._workers + list(self._timers)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._workers = []
        self._timers.clear()
        for request in list(self._pending.values()):
            if not request.future.done():
                request.future.cancel()
        self._pending.clear()
        self._queue = None

    def enqueue(
        self,
        execute: Callable[[], Awaitable[Any]],
        priority: int = Priority.USER,
        label: str = "",
    ) -> QueuedRequest:
        """
        Add a request; workers start lazily on first use.

        Args:
            execute: Zero-argument coroutine factory, called once per attempt
            priority: Higher values are dispatched first
            label: Free-form tag for logs and metrics

        Returns:
            The queued request; await ``request.future`` for its outcome
        """
        self.start()

        request = QueuedRequest(
            id=uuid.uuid4().hex,
            priority=int(priority),
            enqueued_at=self._now(),
            execute=execute,
            label=label,
            future=asyncio.get_running_loop().create_future(),
            seq=next(self._seq),
        )
        self._pending[request.id] = request
        self._put(request)

        if self.logger:
            self.logger.request_queued(
                label=label,
                priority=request.priority,
                queue_length=self.queue_length,
            )
        return request

    async def submit(
        self,
        execute: Callable[[], Awaitable[Any]],
        priority: int = Priority.USER,
        label: str = "",
    ) -> Any:
        """Enqueue and wait for the result (or the final error)."""
        request = self.enqueue(execute, priority=priority, label=label)
        return await request.future

    def cancel(self, request_id: str) -> bool:
        """
        Withdraw a request that no worker has picked up.

        Returns:
            True if removed, False if unknown, finished or in flight
        """
        request = self._pending.get(request_id)
        if request is None or request.in_flight:
            return False

        del self._pending[request_id]
        request.future.cancel()
        return True

    @property
    def queue_length(self) -> int:
        """Requests waiting, including those deferred by rate limiting or backoff."""
        return len(self._pending) - self._active

    def status(self) -> QueueStatus:
        return QueueStatus(
            active_requests=self._active,
            queue_length=self.queue_length,
            max_concurrency=self.max_concurrency,
            running=self._running,
        )

    def _put(self, request: QueuedRequest) -> None:
        self._queue.put_nowait((-request.priority, request.seq, request.id))

    async def _worker(self) -> None:
        while True:
            _, _, request_id = await self._queue.get()
            request = self._pending.get(request_id)
            if request is None or request.future.done():
                # Cancelled while waiting, or caller gave up
                self._pending.pop(request_id, None)
                continue

            try:
                self.limiter.consume()
            except RateLimited as e:
                self._on_local_rate_limit(request, e.retry_after)
                continue

            await self._dispatch(request)

    async def _dispatch(self, request: QueuedRequest) -> None:
        request.in_flight = True
        self._active += 1
        try:
            result = await asyncio.wait_for(request.execute(), timeout=self.request_timeout)
        except asyncio.TimeoutError:
            self._on_failure(
                request,
                TransientError(
                    f"Request timed out after {self.request_timeout}s",
                    TransientError.TIMEOUT,
                ),
            )
        except Exception as e:
            self._on_failure(request, e)
        else:
            self._pending.pop(request.id, None)
            if not request.future.done():
                request.future.set_result(result)
        finally:
            self._active -= 1
            request.in_flight = False

    def _on_local_rate_limit(self, request: QueuedRequest, retry_after: float) -> None:
        if self.monitor:
            self.monitor.record(
                MetricKind.RATE_LIMIT_QUEUED,
                retry_after,
                RateLimitMetadata(retry_after=retry_after, source="local", label=request.label),
            )
        if self.logger:
            self.logger.request_deferred(
                label=request.label,
                retry_after=retry_after,
                reason="local_rate_limit",
            )
        self._defer(request, retry_after)

    def _on_failure(self, request: QueuedRequest, error: Exception) -> None:
        kind = self.retry_policy.classify(error)
        attempt = request.attempts.get(kind, 0)
        delay = self.retry_policy.next_delay(error, attempt) if self._running else None

        if delay is None:
            self._pending.pop(request.id, None)
            if self.logger:
                self.logger.request_failed(
                    label=request.label,
                    error=str(error),
                    attempt=attempt,
                    status=getattr(error, "status_code", None),
                )
            if not request.future.done():
                request.future.set_exception(error)
            return

        request.attempts[kind] = attempt + 1

        if self.monitor:
            if kind == RetryPolicy.RATE_LIMIT:
                self.monitor.record(
                    MetricKind.RATE_LIMIT_HIT,
                    delay,
                    RateLimitMetadata(retry_after=delay, source="upstream", label=request.label),
                )
            self.monitor.record(
                MetricKind.RETRY_SCHEDULED,
                delay,
                ApiCallMetadata(
                    endpoint=request.label,
                    status_code=getattr(error, "status_code", None),
                    error=kind,
                ),
            )
        if self.logger:
            self.logger.retry_scheduled(
                label=request.label,
                kind=kind,
                attempt=attempt + 1,
                delay=delay,
            )
        self._defer(request, delay)

    def _defer(self, request: QueuedRequest, delay: float) -> None:
        timer = asyncio.create_task(self._requeue_after(request, delay))
        self._timers.add(timer)
        timer.add_done_callback(self._timers.discard)

    async def _requeue_after(self, request: QueuedRequest, delay: float) -> None:
        await self._sleeper(delay)
        if request.future.done():
            self._pending.pop(request.id, None)
            return
        if self._queue is None or request.id not in self._pending:
            return
        self._put(request)
