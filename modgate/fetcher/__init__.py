"""Outbound request path: rate limiting, queueing, retries and the API client."""

from .curseforge_client import CurseForgeClient
from .rate_limiter import RateLimiter
from .request_queue import QueuedRequest, RequestQueue
from .retry_handler import RetryPolicy

__all__ = ["CurseForgeClient", "QueuedRequest", "RateLimiter", "RequestQueue", "RetryPolicy"]
