"""Rate limiter implementation using token bucket algorithm."""

import threading
import time
from typing import Callable

from modgate.fetcher.errors import RateLimited
from modgate.models.data_models import RateLimitState


class RateLimiter:
    """Token bucket gating every outbound call.

    Tokens refill continuously at ``refill_rate`` per second up to
    ``max_tokens``. ``consume()`` never blocks: when the bucket is empty it
    raises ``RateLimited`` carrying the wait until one token is back, and the
    request queue decides what to do with that.
    """

    def __init__(
        self,
        max_tokens: int = 60,
        refill_rate: float = 1.0,
        now: Callable[[], float] = time.monotonic,
    ):
        """Initialize rate limiter with token bucket parameters.

        Args:
            max_tokens: Bucket capacity (default: 60)
            refill_rate: Tokens added per second (default: 1.0)
            now: Clock function for time operations (default: time.monotonic)
        """
        if max_tokens < 1:
            raise ValueError(f"max_tokens must be at least 1, got: {max_tokens}")
        if refill_rate <= 0:
            raise ValueError(f"refill_rate must be positive, got: {refill_rate}")

        self.max_tokens = max_tokens
        self.refill_rate = refill_rate
        self._now = now

        self._tokens = float(max_tokens)
        self._last_refill = now()
        self._lock = threading.Lock()

    def can_consume(self) -> bool:
        """Whether a token is available right now (does not take it)."""
        with self._lock:
            self._refill()
            return self._tokens >= 1.0

    def consume(self) -> None:
        """Take one token or raise ``RateLimited``.

        Raises:
            RateLimited: bucket holds less than one token
        """
        with self._lock:
            self._refill()

            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return

            retry_after = (1.0 - self._tokens) / self.refill_rate
        raise RateLimited(retry_after)

    def tokens_available(self) -> float:
        """Current token balance after refill. Used for monitoring."""
        with self._lock:
            self._refill()
            return self._tokens

    def status(self) -> RateLimitState:
        """Snapshot of the bucket."""
        with self._lock:
            self._refill()
            missing = self.max_tokens - self._tokens
            return RateLimitState(
                tokens=self._tokens,
                capacity=self.max_tokens,
                refill_rate_per_second=self.refill_rate,
                last_refill_at=self._last_refill,
                window_reset_at=self._last_refill + missing / self.refill_rate,
            )

    def _refill(self) -> None:
        """Lazy refill from elapsed time. Caller holds ``_lock``."""
        current_time = self._now()

        # A clock stepping backwards must not drain the bucket
        time_elapsed = max(0.0, current_time - self._last_refill)
        tokens_to_add = time_elapsed * self.refill_rate

        self._tokens = min(float(self.max_tokens), self._tokens + tokens_to_add)
        self._last_refill = max(self._last_refill, current_time)
