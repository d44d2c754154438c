"""Retry policy with exponential backoff, keyed by failure classification."""

import asyncio
import random
from typing import Dict, Optional

import httpx

from modgate.fetcher.errors import RateLimited, TransientError


def calculate_backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 4.0,
    jitter_max: float = 0.0
) -> float:
    """
    Calculate exponential backoff delay with jitter.

    Formula: min(max_delay, (base_delay * (2 ** attempt)) + random_jitter)

    Args:
        attempt: Retry attempt number (0-indexed)
        base_delay: Base delay in seconds
        max_delay: Maximum delay cap in seconds
        jitter_max: Maximum jitter to add in seconds

    Returns:
        Delay in seconds
    """
    exponential_delay = base_delay * (2 ** attempt)
    jitter = random.uniform(0, jitter_max) if jitter_max > 0 else 0.0
    return min(max_delay, exponential_delay + jitter)


class RetryPolicy:
    """
    Decides whether and when a failed request runs again.

    Failure kinds and default budgets:
    - timeout: 3 retries, backoff 1s -> 2s -> 4s
    - server (5xx): 3 retries, same backoff
    - network: 1 retry after 1s
    - rate_limit (upstream 429): 3 retries, each after the server's retry_after
    - fatal (auth, forbidden, other 4xx, configuration, unknown): never
    """

    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    NETWORK = "network"
    SERVER = "server"
    FATAL = "fatal"

    def __init__(
        self,
        timeout_retries: int = 3,
        network_retries: int = 1,
        server_retries: int = 3,
        rate_limit_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 4.0,
        jitter_max: float = 0.0
    ):
        """
        Initialize retry policy.

        Args:
            timeout_retries: Retries allowed after timeouts
            network_retries: Retries allowed after transport failures
            server_retries: Retries allowed after 5xx answers
            rate_limit_retries: Retries allowed after upstream 429
            base_delay: Base delay for exponential backoff
            max_delay: Maximum delay cap
            jitter_max: Maximum jitter to add
        """
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_max = jitter_max
        self._budgets: Dict[str, int] = {
            self.TIMEOUT: timeout_retries,
            self.NETWORK: network_retries,
            self.SERVER: server_retries,
            self.RATE_LIMIT: rate_limit_retries,
            self.FATAL: 0,
        }

    def classify(self, error: BaseException) -> str:
        """Map an exception to a failure kind."""
        if isinstance(error, RateLimited):
            return self.RATE_LIMIT
        if isinstance(error, TransientError):
            if error.kind == TransientError.TIMEOUT:
                return self.TIMEOUT
            if error.kind == TransientError.SERVER:
                return self.SERVER
            return self.NETWORK
        if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
            return self.TIMEOUT
        if isinstance(error, httpx.TransportError):
            return self.NETWORK
        return self.FATAL

    def max_retries(self, kind: str) -> int:
        return self._budgets.get(kind, 0)

    def is_retryable(self, error: BaseException) -> bool:
        return self.max_retries(self.classify(error)) > 0

    def next_delay(self, error: BaseException, attempt: int) -> Optional[float]:
        """
        Delay before the next try, or None when the error should surface.

        Args:
            error: Failure from the last try
            attempt: Retries already spent on this failure kind (0-indexed)

        Returns:
            Seconds to wait, or None if no retry remains
        """
        kind = self.classify(error)
        if attempt >= self.max_retries(kind):
            return None

        if kind == self.RATE_LIMIT:
            return max(0.0, error.retry_after)

        return calculate_backoff_delay(
            attempt,
            self.base_delay,
            self.max_delay,
            self.jitter_max
        )
