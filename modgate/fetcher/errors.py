"""Typed failures raised by the fetch layer.

Everything that leaves the queue or the API client is one of these. The
queue uses ``retryable`` and the concrete type to decide whether to try
again; callers use the type to decide what to show.
"""

from typing import Optional


class ModGateError(Exception):
    """Base class for all gateway failures."""

    retryable: bool = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ConfigurationError(ModGateError):
    """Missing or malformed credential, or unusable settings."""


class RateLimited(ModGateError):
    """No token available in the local bucket."""

    retryable = True

    def __init__(self, retry_after: float, message: Optional[str] = None):
        super().__init__(
            message or f"Rate limited, retry after {retry_after:.2f}s",
            status_code=None,
        )
        self.retry_after = retry_after


class RateLimitError(RateLimited):
    """Upstream answered 429."""

    def __init__(self, retry_after: float):
        super().__init__(
            retry_after,
            message="Rate limit exceeded. Please wait before making more requests.",
        )
        self.status_code = 429


class AuthenticationError(ModGateError):
    """Upstream answered 401."""

    def __init__(self, message: str = "Authentication failed. Please check your API key."):
        super().__init__(message, status_code=401)


class ForbiddenError(ModGateError):
    """Upstream answered 403."""

    def __init__(
        self,
        message: str = "Access forbidden. Please check your API key permissions.",
    ):
        super().__init__(message, status_code=403)


class TransientError(ModGateError):
    """Timeout, transport failure or 5xx. Retried per policy, then surfaced."""

    retryable = True

    TIMEOUT = "timeout"
    NETWORK = "network"
    SERVER = "server"

    def __init__(self, message: str, kind: str, status_code: Optional[int] = None):
        super().__init__(message, status_code=status_code)
        self.kind = kind


class ApiError(ModGateError):
    """Any other non-success answer. Never retried."""

    def __init__(self, message: str, status_code: Optional[int]):
        super().__init__(message, status_code=status_code)


class NotFoundError(ApiError):
    """Upstream answered 404."""

    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} not found.", status_code=404)
