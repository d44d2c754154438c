"""Composite health report across the gateway's subsystems."""

import asyncio
import time
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from modgate import __version__
from modgate.models.data_models import (
    CheckStatus,
    HealthCheckResult,
    HealthReport,
    OverallStatus,
    Priority,
    to_plain,
    utc_now_iso,
)

HOUR_SECONDS = 60 * 60


class HealthAggregator:
    """
    Runs every subsystem check concurrently and reduces them to one status.

    Any fail makes the report unhealthy, any warn degraded. Recommendations
    are advisory text only.
    """

    def __init__(
        self,
        client: 'CurseForgeClient',
        limiter: 'RateLimiter',
        queue: 'RequestQueue',
        monitor: 'PerformanceMonitor',
        cache: Optional['CacheStore'] = None,
        warming: Optional['WarmingScheduler'] = None,
        analytics: Optional['PopularityAnalytics'] = None,
        slow_response_ms: float = 2000.0,
        analytics_stale_hours: float = 24.0,
        logger: Optional['StructuredLogger'] = None,
        now: Callable[[], float] = time.time,
    ):
        self.client = client
        self.limiter = limiter
        self.queue = queue
        self.monitor = monitor
        self.cache = cache
        self.warming = warming
        self.analytics = analytics
        self.slow_response_ms = slow_response_ms
        self.analytics_stale_hours = analytics_stale_hours
        self.logger = logger
        self._now = now

    async def check(self) -> HealthReport:
        started = time.monotonic()
        runners: List[Tuple[str, str, Callable[[], Awaitable[HealthCheckResult]]]] = [
            ("api_connectivity", "API connectivity", self._check_api_connectivity),
            ("api_authentication", "API authentication", self._check_api_authentication),
            ("rate_limiting", "Rate limiting", self._check_rate_limiting),
            ("cache_performance", "Cache performance", self._check_cache_performance),
            ("background_services", "Background services", self._check_background_services),
            ("analytics", "Analytics", self._check_analytics),
        ]
        results = await asyncio.gather(
            *(self._run(title, run_check) for _, title, run_check in runners)
        )
        checks = {name: result for (name, _, _), result in zip(runners, results)}

        metrics = self._metrics()
        report = HealthReport(
            status=self.overall_status(checks),
            timestamp=utc_now_iso(),
            version=__version__,
            checks=checks,
            metrics=metrics,
            recommendations=self.recommendations(checks, metrics),
        )

        if self.logger:
            self.logger.health_check(
                status=report.status.value,
                elapsed_ms=(time.monotonic() - started) * 1000,
            )
        return report

    @staticmethod
    def overall_status(checks: Dict[str, HealthCheckResult]) -> OverallStatus:
        statuses = {check.status for check in checks.values()}
        if CheckStatus.FAIL in statuses:
            return OverallStatus.UNHEALTHY
        if CheckStatus.WARN in statuses:
            return OverallStatus.DEGRADED
        return OverallStatus.HEALTHY

    @staticmethod
    def recommendations(checks: Dict[str, HealthCheckResult], metrics: Dict) -> List[str]:
        def status_of(name: str) -> Optional[CheckStatus]:
            check = checks.get(name)
            return check.status if check else None

        advice = []
        if status_of("api_connectivity") == CheckStatus.FAIL:
            advice.append("Check network connectivity and CurseForge API status")
        elif status_of("api_connectivity") == CheckStatus.WARN:
            advice.append("API response times are slow - consider checking network or API load")

        if status_of("api_authentication") == CheckStatus.FAIL:
            advice.append("Verify CurseForge API key configuration and validity")

        if status_of("rate_limiting") == CheckStatus.FAIL:
            advice.append("Currently rate limited - reduce API request frequency")
        elif status_of("rate_limiting") == CheckStatus.WARN:
            advice.append("Token bucket is running low - consider implementing request prioritization")

        if status_of("cache_performance") == CheckStatus.FAIL:
            advice.append("Cache hit rate is too low - enable cache warming or check cache storage")
        elif status_of("cache_performance") == CheckStatus.WARN:
            advice.append("Consider increasing cache warming frequency for better performance")

        if status_of("background_services") not in (None, CheckStatus.PASS):
            advice.append("Some background services are not running - check service configuration")

        if status_of("analytics") == CheckStatus.WARN:
            advice.append("Analytics data is stale or missing - ensure analytics service is running")

        if metrics.get("cache_lookups") and metrics.get("cache_hit_rate", 0) < 70:
            advice.append("Improve cache warming strategy to increase hit rate")
        if metrics.get("queue_length", 0) > 10:
            advice.append("High request queue length - consider increasing concurrent request limit")
        capacity = metrics.get("token_capacity", 0)
        if capacity and metrics.get("tokens", 0) < capacity * 0.3:
            advice.append("Token bucket is low - reduce request frequency or increase bucket size")
        return advice

    async def _run(
        self,
        title: str,
        run_check: Callable[[], Awaitable[HealthCheckResult]]
    ) -> HealthCheckResult:
        started = time.monotonic()
        try:
            result = await run_check()
        except Exception as e:
            return HealthCheckResult(
                status=CheckStatus.FAIL,
                message=f"{title} failed: {e}",
                response_time_ms=round((time.monotonic() - started) * 1000, 2),
                details={"error": str(e), "error_type": type(e).__name__},
            )
        if not result.response_time_ms:
            result.response_time_ms = round((time.monotonic() - started) * 1000, 2)
        return result

    async def _check_api_connectivity(self) -> HealthCheckResult:
        started = time.monotonic()
        game = await self.client.get_game(priority=Priority.HEALTH)
        elapsed_ms = round((time.monotonic() - started) * 1000, 2)

        if elapsed_ms < self.slow_response_ms:
            status, message = CheckStatus.PASS, f"API is responding normally ({elapsed_ms:.0f}ms)"
        else:
            status, message = CheckStatus.WARN, f"API is responding slowly ({elapsed_ms:.0f}ms)"
        return HealthCheckResult(
            status=status,
            message=message,
            response_time_ms=elapsed_ms,
            details={"game_id": game.get("id"), "game_name": game.get("name")},
        )

    async def _check_api_authentication(self) -> HealthCheckResult:
        key_status = self.client.check_api_key_configuration()
        details = to_plain(key_status)

        if not key_status.has_api_key:
            return HealthCheckResult(CheckStatus.FAIL, "No API key configured", details=details)
        if not key_status.is_valid_format:
            return HealthCheckResult(CheckStatus.FAIL, "API key format is invalid", details=details)

        categories = await self.client.get_categories(priority=Priority.HEALTH)
        details["categories"] = len(categories)
        return HealthCheckResult(
            CheckStatus.PASS,
            f"API authentication is working ({key_status.source})",
            details=details,
        )

    async def _check_rate_limiting(self) -> HealthCheckResult:
        state = self.limiter.status()
        limited = self.client.is_rate_limited()
        details = {
            "tokens": round(state.tokens, 2),
            "capacity": state.capacity,
            "can_make_request": state.tokens >= 1.0,
            "is_rate_limited": limited,
            "rate_limit_info": to_plain(self.client.rate_limit_info()),
        }

        if limited:
            return HealthCheckResult(CheckStatus.FAIL, "Currently rate limited", details=details)
        if state.tokens < 1.0:
            return HealthCheckResult(
                CheckStatus.WARN, "Token bucket is empty but not rate limited", details=details
            )
        if state.tokens < state.capacity * 0.2:
            return HealthCheckResult(CheckStatus.WARN, "Token bucket is running low", details=details)
        return HealthCheckResult(CheckStatus.PASS, "Rate limiting is healthy", details=details)

    async def _check_cache_performance(self) -> HealthCheckResult:
        lookups = self.monitor.cache_lookups(1)
        hit_rate = self.monitor.cache_hit_rate(1)
        details = {"hit_rate": hit_rate, "lookups": lookups}
        if self.cache is not None:
            details["cache"] = self.cache.stats()

        if lookups == 0:
            return HealthCheckResult(CheckStatus.WARN, "No cache traffic recorded yet", details=details)
        if hit_rate < 50:
            return HealthCheckResult(
                CheckStatus.FAIL, f"Cache hit rate is too low ({hit_rate:.1f}%)", details=details
            )
        if hit_rate < 70:
            return HealthCheckResult(
                CheckStatus.WARN, f"Cache hit rate is below optimal ({hit_rate:.1f}%)", details=details
            )
        return HealthCheckResult(
            CheckStatus.PASS, f"Cache performance is good ({hit_rate:.1f}% hit rate)", details=details
        )

    async def _check_background_services(self) -> HealthCheckResult:
        services = {
            "cache_warming": self.warming is not None and self.warming.status().is_warming,
            "analytics": self.analytics is not None and self.analytics.is_running,
        }
        running = sum(1 for flag in services.values() if flag)
        details = {"services": services, "running_count": running, "total_count": len(services)}

        if running == 0:
            return HealthCheckResult(CheckStatus.WARN, "No background services are running", details=details)
        if running < len(services):
            return HealthCheckResult(
                CheckStatus.WARN, "Some background services are not running", details=details
            )
        return HealthCheckResult(
            CheckStatus.PASS, "Background services are running normally", details=details
        )

    async def _check_analytics(self) -> HealthCheckResult:
        if self.analytics is None:
            return HealthCheckResult(CheckStatus.WARN, "Analytics are not configured")

        summary = self.analytics.summary()
        last = self.analytics.last_analysis_at

        if self.analytics.is_analyzing:
            return HealthCheckResult(
                CheckStatus.PASS, "Analytics are currently analyzing data", details=summary
            )
        if not self.analytics.has_data():
            return HealthCheckResult(CheckStatus.WARN, "No analytics data available yet", details=summary)
        if last is None:
            return HealthCheckResult(CheckStatus.WARN, "Analytics have not run recently", details=summary)

        hours_ago = (self._now() - last) / HOUR_SECONDS
        if hours_ago > self.analytics_stale_hours:
            return HealthCheckResult(
                CheckStatus.WARN,
                f"Analytics data is stale ({hours_ago:.1f} hours old)",
                details=summary,
            )
        return HealthCheckResult(CheckStatus.PASS, "Analytics are working normally", details=summary)

    def _metrics(self) -> Dict:
        state = self.limiter.status()
        queue_status = self.queue.status()
        return {
            "cache_hit_rate": self.monitor.cache_hit_rate(1),
            "cache_lookups": self.monitor.cache_lookups(1),
            "cache_entries": len(self.cache) if self.cache is not None else 0,
            "active_requests": queue_status.active_requests,
            "queue_length": queue_status.queue_length,
            "tokens": round(state.tokens, 2),
            "token_capacity": state.capacity,
        }
