"""Rolling performance metrics with nearest-rank percentiles."""

import math
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from modgate.models.data_models import (
    ApiCallMetadata,
    BackgroundRunMetadata,
    CacheEventMetadata,
    MetricKind,
    MetricMetadata,
    PerformanceMetric,
    PerformanceStats,
    RateLimitMetadata,
    to_plain,
)

HOUR_SECONDS = 60 * 60

_METADATA_TYPES = {
    MetricKind.API_RESPONSE_TIME: ApiCallMetadata,
    MetricKind.RETRY_SCHEDULED: ApiCallMetadata,
    MetricKind.CACHE_HIT: CacheEventMetadata,
    MetricKind.CACHE_MISS: CacheEventMetadata,
    MetricKind.CACHE_RESPONSE_TIME: CacheEventMetadata,
    MetricKind.RATE_LIMIT_HIT: RateLimitMetadata,
    MetricKind.RATE_LIMIT_QUEUED: RateLimitMetadata,
    MetricKind.BACKGROUND_RUN: BackgroundRunMetadata,
}


def percentile(sorted_values: List[float], fraction: float) -> float:
    """Nearest rank: index floor(count * fraction), clamped to the last element."""
    index = min(int(math.floor(len(sorted_values) * fraction)), len(sorted_values) - 1)
    return sorted_values[index]


class PerformanceMonitor:
    """
    Thread-safe per-kind metric history.

    Each kind keeps at most ``max_metrics_per_kind`` samples (oldest dropped
    first). Samples older than ``retention_hours`` are pruned every
    ``prune_every`` records and on demand.
    """

    def __init__(
        self,
        max_metrics_per_kind: int = 1000,
        retention_hours: float = 24.0,
        prune_every: int = 100,
        now: Callable[[], float] = time.time,
    ):
        self.max_metrics_per_kind = max_metrics_per_kind
        self.retention_hours = retention_hours
        self.prune_every = prune_every
        self._now = now

        self._lock = threading.Lock()
        self._metrics: Dict[MetricKind, Deque[PerformanceMetric]] = {}
        self._record_count = 0

    def record(
        self,
        kind: Union[MetricKind, str],
        value: float,
        metadata: Optional[MetricMetadata] = None
    ) -> None:
        """
        Record one sample.

        Raises:
            TypeError: metadata is not the type registered for ``kind``
        """
        kind = MetricKind(kind)
        expected = _METADATA_TYPES[kind]
        if metadata is not None and not isinstance(metadata, expected):
            raise TypeError(
                f"{kind.value} expects {expected.__name__} metadata, "
                f"got {type(metadata).__name__}"
            )

        metric = PerformanceMetric(kind=kind, timestamp=self._now(), value=float(value),
                                   metadata=metadata)
        with self._lock:
            samples = self._metrics.get(kind)
            if samples is None:
                samples = deque(maxlen=self.max_metrics_per_kind)
                self._metrics[kind] = samples
            samples.append(metric)

            self._record_count += 1
            if self._record_count % self.prune_every == 0:
                self._prune_locked()

    def stats(self, kind: Union[MetricKind, str], window_hours: float = 1.0) -> Optional[PerformanceStats]:
        values = sorted(m.value for m in self._window(MetricKind(kind), window_hours))
        if not values:
            return None

        return PerformanceStats(
            min=values[0],
            max=values[-1],
            avg=sum(values) / len(values),
            count=len(values),
            p95=percentile(values, 0.95),
            p99=percentile(values, 0.99),
        )

    def count(self, kind: Union[MetricKind, str], window_hours: float = 1.0) -> int:
        return len(self._window(MetricKind(kind), window_hours))

    def cache_lookups(self, window_hours: float = 1.0) -> int:
        return self.count(MetricKind.CACHE_HIT, window_hours) + self.count(MetricKind.CACHE_MISS, window_hours)

    def cache_hit_rate(self, window_hours: float = 1.0) -> float:
        """Hits as a percentage of hits plus misses (0.0 with no lookups)."""
        hits = self.count(MetricKind.CACHE_HIT, window_hours)
        total = hits + self.count(MetricKind.CACHE_MISS, window_hours)
        if total == 0:
            return 0.0
        return round(hits / total * 100, 2)

    def error_rate(self, window_hours: float = 1.0) -> float:
        """Failed API calls as a percentage of all API calls."""
        calls = self._window(MetricKind.API_RESPONSE_TIME, window_hours)
        if not calls:
            return 0.0
        failed = sum(1 for m in calls if m.metadata is not None and m.metadata.failed)
        return round(failed / len(calls) * 100, 2)

    def rate_limit_events(self, window_hours: float = 1.0) -> int:
        return (
            self.count(MetricKind.RATE_LIMIT_HIT, window_hours)
            + self.count(MetricKind.RATE_LIMIT_QUEUED, window_hours)
        )

    def top_endpoints(self, window_hours: float = 1.0, limit: int = 10) -> List[Dict[str, Any]]:
        """API endpoints by call count, with mean latency."""
        grouped: Dict[str, List[float]] = {}
        for metric in self._window(MetricKind.API_RESPONSE_TIME, window_hours):
            endpoint = metric.metadata.endpoint if metric.metadata else "unknown"
            grouped.setdefault(endpoint, []).append(metric.value)

        ranked = sorted(grouped.items(), key=lambda item: len(item[1]), reverse=True)
        return [
            {
                "endpoint": endpoint,
                "count": len(values),
                "avg_response_time": round(sum(values) / len(values), 2),
            }
            for endpoint, values in ranked[:limit]
        ]

    def summary(self, window_hours: float = 1.0) -> Dict[str, Any]:
        api_stats = self.stats(MetricKind.API_RESPONSE_TIME, window_hours)
        cache_stats = self.stats(MetricKind.CACHE_RESPONSE_TIME, window_hours)
        lookups = self.cache_lookups(window_hours)
        hit_rate = self.cache_hit_rate(window_hours)
        error_rate = self.error_rate(window_hours)
        rate_limit_events = self.rate_limit_events(window_hours)

        recommendations = []
        if api_stats:
            if api_stats.avg > 3000:
                recommendations.append(
                    "API response times are high - consider implementing request optimization"
                )
            if api_stats.p95 > 5000:
                recommendations.append(
                    "95th percentile response time is concerning - investigate slow endpoints"
                )
        if lookups:
            if hit_rate < 50:
                recommendations.append("Cache hit rate is critically low - review cache configuration")
            elif hit_rate < 70:
                recommendations.append("Cache hit rate is below optimal - improve cache warming strategy")
        if error_rate > 5:
            recommendations.append("API error rate is high - investigate API issues or request patterns")
        elif error_rate > 1:
            recommendations.append("API error rate is elevated - monitor for potential issues")
        if rate_limit_events > 0:
            recommendations.append(
                "Rate limiting events detected - consider reducing request frequency"
            )

        return {
            "window_hours": window_hours,
            "api_response_time": to_plain(api_stats),
            "cache_response_time": to_plain(cache_stats),
            "cache_hit_rate": hit_rate,
            "cache_lookups": lookups,
            "api_error_rate": error_rate,
            "rate_limit_events": rate_limit_events,
            "retries": self.count(MetricKind.RETRY_SCHEDULED, window_hours),
            "top_endpoints": self.top_endpoints(window_hours),
            "recommendations": recommendations,
        }

    def prune(self) -> int:
        with self._lock:
            return self._prune_locked()

    def clear(self) -> None:
        with self._lock:
            self._metrics.clear()
            self._record_count = 0

    def _window(self, kind: MetricKind, window_hours: float) -> List[PerformanceMetric]:
        cutoff = self._now() - window_hours * HOUR_SECONDS
        with self._lock:
            samples = self._metrics.get(kind)
            if not samples:
                return []
            return [m for m in samples if m.timestamp >= cutoff]

    def _prune_locked(self) -> int:
        cutoff = self._now() - self.retention_hours * HOUR_SECONDS
        removed = 0
        for samples in self._metrics.values():
            # Appended in time order, so expired samples sit at the left
            while samples and samples[0].timestamp < cutoff:
                samples.popleft()
                removed += 1
        return removed
