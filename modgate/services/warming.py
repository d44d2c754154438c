"""Background cache warming for hot and seeded queries."""

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from modgate.cache.store import MOD_TTL, SEARCH_TTL, CacheStore, mod_key
from modgate.models.data_models import (
    BackgroundRunMetadata,
    MetricKind,
    Priority,
    WarmingReport,
    WarmingStatus,
    WarmTarget,
)
from modgate.services.periodic import PeriodicTask

# (lowest priority in tier, seconds between refreshes), highest tier first
REFRESH_TIERS = ((9.0, 5 * 60), (7.0, 10 * 60), (5.0, 30 * 60))
LOW_PRIORITY_REFRESH = 60 * 60


def refresh_interval(priority: float) -> float:
    """Seconds a freshly warmed target waits before it is due again."""
    for floor, seconds in REFRESH_TIERS:
        if priority >= floor:
            return seconds
    return LOW_PRIORITY_REFRESH


class WarmingScheduler:
    """
    Keeps popular result sets fresh ahead of user demand.

    Each cycle marks the cache so touched entries survive eviction, ranks
    targets (analytics and configured seeds) by priority, skips those still
    inside their refresh tier and refreshes the rest through the request
    queue at background priority. A failed target stays due.
    """

    def __init__(
        self,
        client: 'CurseForgeClient',
        cache: CacheStore,
        analytics: Optional['PopularityAnalytics'] = None,
        seed_targets: Sequence[WarmTarget] = (),
        interval: float = 1800.0,
        max_batch_size: int = 20,
        search_ttl: float = SEARCH_TTL,
        mod_ttl: float = MOD_TTL,
        hot_mod_limit: int = 50,
        monitor: Optional['PerformanceMonitor'] = None,
        logger: Optional['StructuredLogger'] = None,
        now: Callable[[], float] = time.time,
        sleeper: Callable[[float], Any] = asyncio.sleep,
    ):
        """
        Initialize scheduler.

        Args:
            client: API client used for refreshes
            cache: Cache written with fresh results
            analytics: Optional source of hot targets and hot mod ids
            seed_targets: Queries always worth keeping warm
            interval: Seconds between cycles
            max_batch_size: Upstream calls per cycle
            search_ttl: TTL for refreshed search results
            mod_ttl: TTL for refreshed single mods
            hot_mod_limit: Most ids sent in the bulk mod refresh
            monitor: Optional performance monitor
            logger: Optional structured logger
            now: Clock function (epoch seconds)
            sleeper: Sleep coroutine for the schedule
        """
        if max_batch_size < 1:
            raise ValueError(f"max_batch_size must be at least 1, got: {max_batch_size}")

        self.client = client
        self.cache = cache
        self.analytics = analytics
        self.seed_targets = list(seed_targets)
        self.interval = interval
        self.max_batch_size = max_batch_size
        self.search_ttl = search_ttl
        self.mod_ttl = mod_ttl
        self.hot_mod_limit = hot_mod_limit
        self.monitor = monitor
        self.logger = logger
        self._now = now

        self._in_progress = False
        self._last_run_at: Optional[float] = None
        self._runs = 0
        self._next_due: Dict[str, float] = {}
        self._schedule = PeriodicTask(
            "warming",
            interval,
            self.run_once,
            logger=logger,
            sleeper=sleeper,
        )

    def start(self) -> bool:
        """Begin the schedule. Returns False (and does nothing) if already running."""
        started = self._schedule.start()
        if self.logger:
            self.logger.log("warming_start" if started else "warming_already_running")
        return started

    async def stop(self) -> bool:
        stopped = await self._schedule.stop()
        if stopped and self.logger:
            self.logger.log("warming_stop")
        return stopped

    def status(self) -> WarmingStatus:
        return WarmingStatus(
            is_warming=self._schedule.running,
            in_progress=self._in_progress,
            last_run_at=self._last_run_at,
            runs=self._runs,
            spawn_count=self._schedule.spawn_count,
            interval_seconds=self.interval,
        )

    def select_targets(self) -> List[WarmTarget]:
        """
        Hot targets from analytics and seeds, highest priority first.

        Equal priorities keep analytics ahead of seeds. When two targets share
        a fingerprint the higher priority one is kept.
        """
        candidates: List[WarmTarget] = []
        if self.analytics is not None:
            candidates.extend(self.analytics.hot_targets(self.max_batch_size))
        candidates.extend(self.seed_targets)
        candidates.sort(key=lambda target: target.priority, reverse=True)

        targets = []
        seen = set()
        for target in candidates:
            digest = target.fingerprint().digest
            if digest in seen:
                continue
            seen.add(digest)
            targets.append(target)
        return targets

    def due_targets(self, current_time: float) -> List[WarmTarget]:
        """Ranked targets whose refresh tier has elapsed since their last success."""
        targets = self.select_targets()
        digests = {target.fingerprint().digest for target in targets}
        # forget targets that dropped out of the candidate list
        self._next_due = {d: t for d, t in self._next_due.items() if d in digests}
        return [
            target for target in targets
            if current_time >= self._next_due.get(target.fingerprint().digest, current_time)
        ]

    async def run_once(self) -> WarmingReport:
        """
        Run one warming cycle.

        Returns:
            Labels refreshed and labels that failed
        """
        report = WarmingReport(started_at=self._now())
        if self._in_progress:
            report.finished_at = report.started_at
            return report

        self._in_progress = True
        started = time.monotonic()
        try:
            self.cache.begin_warming_cycle()

            budget = self.max_batch_size
            hot_ids = self.analytics.hot_mod_ids(self.hot_mod_limit) if self.analytics else []
            if hot_ids:
                budget -= 1
            targets = self.due_targets(report.started_at)[:budget]

            jobs = [self._refresh_target(target) for target in targets]
            labels = [target.label for target in targets]
            if hot_ids:
                jobs.append(self._refresh_mods(hot_ids))
                labels.append(f"mods:{len(hot_ids)}")

            results = await asyncio.gather(*jobs, return_exceptions=True)
            for index, (label, result) in enumerate(zip(labels, results)):
                if isinstance(result, Exception):
                    report.failed.append(label)
                    if self.logger:
                        self.logger.warning("warming_target_failed", label=label, error=str(result))
                    continue
                report.refreshed.append(label)
                if index < len(targets):
                    target = targets[index]
                    self._next_due[target.fingerprint().digest] = (
                        report.started_at + refresh_interval(target.priority)
                    )

            self._runs += 1
            report.finished_at = self._now()
            self._last_run_at = report.finished_at

            elapsed_ms = (time.monotonic() - started) * 1000
            if self.monitor:
                self.monitor.record(
                    MetricKind.BACKGROUND_RUN,
                    elapsed_ms,
                    BackgroundRunMetadata(
                        service="warming",
                        succeeded=len(report.refreshed),
                        failed=len(report.failed),
                    ),
                )
            if self.logger:
                self.logger.warming_run(
                    refreshed=len(report.refreshed),
                    failed=len(report.failed),
                    elapsed_ms=elapsed_ms,
                )
            return report
        finally:
            self._in_progress = False

    async def _refresh_target(self, target: WarmTarget) -> None:
        fingerprint = target.fingerprint()
        page = await self.client.search_mods(
            term=target.term,
            category_id=target.category_id,
            sort_field=target.sort_field,
            sort_order=target.sort_order,
            page_size=target.page_size,
            page=1,
            priority=Priority.BACKGROUND,
        )
        self.cache.set(
            fingerprint.digest,
            page.mods,
            page.total_count,
            ttl=self.search_ttl,
            label=fingerprint.label,
        )

    async def _refresh_mods(self, mod_ids: List[int]) -> None:
        mods = await self.client.get_mods_by_ids(mod_ids, priority=Priority.BACKGROUND)
        for mod in mods:
            self.cache.set(mod_key(mod["id"]), mod, 1, ttl=self.mod_ttl, label=f"mod:{mod['id']}")
