"""Structured logging for gateway monitoring."""

import json
import logging
from typing import Optional


class StructuredLogger:
    """Structured logger with uniform schema."""

    def __init__(self, name: str = "modgate", level: str = "INFO"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper()))

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(handler)

    def log(self, event: str, level: str = "info", **kwargs) -> None:
        """
        Log structured event.

        Standard keys: event, endpoint, label, status, attempt, elapsed_ms,
                      retry_after, queue_length, key
        """
        log_data = {"event": event, **kwargs}
        getattr(self.logger, level)(json.dumps(log_data, default=str))

    def warning(self, event: str, **kwargs) -> None:
        self.log(event, level="warning", **kwargs)

    def error(self, event: str, **kwargs) -> None:
        self.log(event, level="error", **kwargs)

    def request_queued(self, label: str, priority: int, queue_length: int) -> None:
        self.log("request_queued", level="debug", label=label, priority=priority,
                 queue_length=queue_length)

    def request_deferred(self, label: str, retry_after: float, reason: str) -> None:
        self.log("request_deferred", label=label, retry_after=retry_after, reason=reason)

    def retry_scheduled(self, label: str, kind: str, attempt: int, delay: float) -> None:
        self.warning("retry_scheduled", label=label, kind=kind, attempt=attempt, retry_after=delay)

    def request_failed(self, label: str, error: str, attempt: int, status: Optional[int]) -> None:
        self.error("request_failed", label=label, error=error, attempt=attempt, status=status)

    def api_request(self, method: str, endpoint: str) -> None:
        self.log("api_request", level="debug", method=method, endpoint=endpoint)

    def api_response(self, endpoint: str, status: Optional[int], elapsed_ms: float,
                     error: Optional[str] = None) -> None:
        self.log("api_response", endpoint=endpoint, status=status,
                 elapsed_ms=round(elapsed_ms, 2), error=error)

    def cache_event(self, event: str, key: str, **kwargs) -> None:
        self.log(event, level="debug", key=key, **kwargs)

    def warming_run(self, refreshed: int, failed: int, elapsed_ms: float) -> None:
        self.log("warming_run", refreshed=refreshed, failed=failed, elapsed_ms=round(elapsed_ms, 2))

    def analysis_run(self, categories: int, skipped: int, elapsed_ms: float) -> None:
        self.log("analysis_run", categories=categories, skipped=skipped,
                 elapsed_ms=round(elapsed_ms, 2))

    def health_check(self, status: str, elapsed_ms: float) -> None:
        self.log("health_check", status=status, elapsed_ms=round(elapsed_ms, 2))
