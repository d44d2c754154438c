"""Search usage analytics: pattern frequency, category popularity and trends."""

import asyncio
import threading
import time
from collections import defaultdict
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Optional, Tuple

from modgate.cache.persistence import KeyValueStore
from modgate.models.data_models import (
    Category,
    CategoryAnalytics,
    Priority,
    SearchPattern,
    SortField,
    SortOrder,
    WarmTarget,
)
from modgate.services.periodic import PeriodicTask

DAY_SECONDS = 24 * 60 * 60

SEARCH_VOLUME_WEIGHT = 0.3
AVG_DOWNLOADS_WEIGHT = 0.4
MOD_COUNT_WEIGHT = 0.2
TRENDING_WEIGHT = 0.1

SEARCH_VOLUME_CEILING = 100
AVG_DOWNLOADS_CEILING = 1_000_000
MOD_COUNT_CEILING = 1_000


def popularity_score(
    search_volume: float,
    avg_downloads: float,
    mod_count: float,
    trending: bool
) -> float:
    """
    Weighted popularity on a 0-100 scale.

    Each input is divided by its ceiling and clamped to [0, 1] before
    weighting. Result is rounded to 2 decimals.
    """
    def clamp(value: float, ceiling: float) -> float:
        return min(max(value / ceiling, 0.0), 1.0)

    score = (
        clamp(search_volume, SEARCH_VOLUME_CEILING) * SEARCH_VOLUME_WEIGHT
        + clamp(avg_downloads, AVG_DOWNLOADS_CEILING) * AVG_DOWNLOADS_WEIGHT
        + clamp(mod_count, MOD_COUNT_CEILING) * MOD_COUNT_WEIGHT
        + (1.0 if trending else 0.0) * TRENDING_WEIGHT
    ) * 100
    return round(score, 2)


class PopularityAnalytics:
    """
    Tracks what users search for and scores categories by popularity.

    Responsibilities:
    - Record searches per normalized query and per category, bucketed by UTC day
    - Periodically sample each category upstream and compute its score
    - Flag categories whose last-week volume outpaces their weekly average
    - Feed hot targets and hot mod ids to the warming scheduler
    - Persist a snapshot through the key-value collaborator
    """

    SNAPSHOT_KEY = "analytics:snapshot"

    def __init__(
        self,
        client: Optional['CurseForgeClient'] = None,
        persistence: Optional[KeyValueStore] = None,
        interval: float = 3600.0,
        sample_size: int = 20,
        max_categories: int = 20,
        trending_threshold: float = 1.5,
        trending_window_days: int = 7,
        retention_days: int = 30,
        min_search_volume: int = 5,
        logger: Optional['StructuredLogger'] = None,
        now: Callable[[], float] = time.time,
        sleeper: Callable[[float], Any] = asyncio.sleep,
    ):
        """
        Initialize analytics.

        Args:
            client: API client used for category sampling
            persistence: Optional snapshot store
            interval: Seconds between scheduled analyses
            sample_size: Mods sampled per category
            max_categories: Categories analysed per run
            trending_threshold: Recent/historical ratio that marks a trend
            trending_window_days: Length of the "recent" window
            retention_days: Data untouched for longer is pruned
            min_search_volume: Minimum frequency for a popular search pattern
            logger: Optional structured logger
            now: Clock function (epoch seconds)
            sleeper: Sleep coroutine for the schedule
        """
        self.client = client
        self.persistence = persistence
        self.sample_size = sample_size
        self.max_categories = max_categories
        self.trending_threshold = trending_threshold
        self.trending_window_days = trending_window_days
        self.retention_days = retention_days
        self.min_search_volume = min_search_volume
        self.logger = logger
        self._now = now

        self._lock = threading.Lock()
        self._patterns: Dict[str, SearchPattern] = {}
        self._categories: Dict[int, CategoryAnalytics] = {}
        self._category_daily: Dict[int, Dict[int, int]] = defaultdict(dict)
        self._mod_access: Dict[int, Tuple[int, float]] = {}  # id -> (count, last access)
        self._last_analysis_at: Optional[float] = None
        self._analyzing = False

        self._schedule = PeriodicTask(
            "analytics",
            interval,
            self.run_analysis,
            logger=logger,
            sleeper=sleeper,
        )

    # -- recording ------------------------------------------------------

    def record_search(
        self,
        query: str,
        result_count: int,
        category_id: Optional[int] = None
    ) -> None:
        """
        Record one search.

        ``avg_result_count`` is blended as ``(old + new) / 2``. That is an O(1)
        smoothing biased toward recent values, not a true mean.
        """
        normalized = (query or "").strip().lower()
        current_time = self._now()
        day = self._day(current_time)

        with self._lock:
            if normalized:
                pattern = self._patterns.get(normalized)
                if pattern is None:
                    pattern = SearchPattern(
                        query=normalized,
                        frequency=0,
                        last_used_at=current_time,
                        avg_result_count=float(result_count),
                    )
                    self._patterns[normalized] = pattern
                else:
                    pattern.avg_result_count = (pattern.avg_result_count + result_count) / 2
                pattern.frequency += 1
                pattern.last_used_at = current_time
                pattern.daily_counts[day] = pattern.daily_counts.get(day, 0) + 1

            if category_id is not None:
                buckets = self._category_daily[category_id]
                buckets[day] = buckets.get(day, 0) + 1

    def record_mod_access(self, mod_id: int) -> None:
        current_time = self._now()
        with self._lock:
            count, _ = self._mod_access.get(mod_id, (0, current_time))
            self._mod_access[mod_id] = (count + 1, current_time)

    # -- queries --------------------------------------------------------

    def get_pattern(self, query: str) -> Optional[SearchPattern]:
        with self._lock:
            return self._patterns.get((query or "").strip().lower())

    def popular_categories(self, limit: int = 10) -> List[CategoryAnalytics]:
        with self._lock:
            ranked = sorted(
                self._categories.values(),
                key=lambda c: c.popularity_score,
                reverse=True,
            )
        return ranked[:limit]

    def trending_categories(self, limit: int = 5) -> List[CategoryAnalytics]:
        with self._lock:
            ranked = sorted(
                (c for c in self._categories.values() if c.trending),
                key=lambda c: c.popularity_score,
                reverse=True,
            )
        return ranked[:limit]

    def popular_search_patterns(self, limit: int = 10) -> List[SearchPattern]:
        with self._lock:
            ranked = sorted(
                (p for p in self._patterns.values() if p.frequency >= self.min_search_volume),
                key=lambda p: p.frequency,
                reverse=True,
            )
        return ranked[:limit]

    def hot_targets(self, limit: int = 20) -> List[WarmTarget]:
        """
        Trending categories, then popular categories, then popular searches.

        Priorities share the 0-10 scale of configured warm targets: a
        category gets a tenth of its popularity score, a search pattern its
        frequency capped at 10.
        """
        targets: List[WarmTarget] = []
        seen = set()

        def add(target: WarmTarget) -> None:
            digest = target.fingerprint().digest
            if digest not in seen:
                seen.add(digest)
                targets.append(target)

        for category in self.trending_categories(limit) + self.popular_categories(limit):
            add(WarmTarget(
                label=category.name,
                category_id=category.category_id,
                priority=category.popularity_score / 10,
            ))
        for pattern in self.popular_search_patterns(limit):
            add(WarmTarget(
                label=pattern.query,
                term=pattern.query,
                sort_field=SortField.POPULARITY,
                sort_order=SortOrder.DESC,
                priority=min(10.0, float(pattern.frequency)),
            ))
        return targets[:limit]

    def hot_mod_ids(self, limit: int = 50) -> List[int]:
        with self._lock:
            ranked = sorted(
                self._mod_access.items(),
                key=lambda item: (item[1][0], item[1][1]),
                reverse=True,
            )
        return [mod_id for mod_id, _ in ranked[:limit]]

    @property
    def is_analyzing(self) -> bool:
        return self._analyzing

    @property
    def is_running(self) -> bool:
        return self._schedule.running

    @property
    def last_analysis_at(self) -> Optional[float]:
        return self._last_analysis_at

    def has_data(self) -> bool:
        with self._lock:
            return bool(self._categories or self._patterns)

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "total_categories": len(self._categories),
                "trending_categories": sum(1 for c in self._categories.values() if c.trending),
                "total_search_patterns": len(self._patterns),
                "tracked_mods": len(self._mod_access),
                "last_analysis_at": self._last_analysis_at,
                "is_analyzing": self._analyzing,
                "is_running": self._schedule.running,
            }

    # -- analysis -------------------------------------------------------

    async def run_analysis(self) -> List[CategoryAnalytics]:
        """
        Recompute category analytics from a sampled upstream fetch.

        Returns:
            Freshly analysed categories; empty if a run was already in progress
        """
        if self._analyzing:
            if self.logger:
                self.logger.log("analysis_skipped", reason="already_running")
            return []
        if self.client is None:
            raise RuntimeError("PopularityAnalytics has no API client")

        self._analyzing = True
        started = time.monotonic()
        try:
            categories = await self.client.get_categories(priority=Priority.ANALYTICS)
            selected = categories[:self.max_categories]
            results = await asyncio.gather(
                *(self._analyze_category(category) for category in selected),
                return_exceptions=True,
            )

            fresh: Dict[int, CategoryAnalytics] = {}
            skipped = 0
            for category, result in zip(selected, results):
                if isinstance(result, Exception):
                    skipped += 1
                    if self.logger:
                        self.logger.warning(
                            "category_analysis_failed",
                            category_id=category.id,
                            error=str(result),
                        )
                elif result is None:
                    skipped += 1
                else:
                    fresh[category.id] = result

            with self._lock:
                self._categories.update(fresh)
                self._last_analysis_at = self._now()

            self.prune()
            self.flush()

            if self.logger:
                self.logger.analysis_run(
                    categories=len(fresh),
                    skipped=skipped,
                    elapsed_ms=(time.monotonic() - started) * 1000,
                )
            return list(fresh.values())
        finally:
            self._analyzing = False

    async def _analyze_category(self, category: Category) -> Optional[CategoryAnalytics]:
        page = await self.client.search_mods(
            term="",
            category_id=category.id,
            sort_field=SortField.POPULARITY,
            sort_order=SortOrder.DESC,
            page_size=self.sample_size,
            page=1,
            priority=Priority.ANALYTICS,
        )
        if not page.mods:
            return None

        avg_downloads = sum(mod.get("downloadCount") or 0 for mod in page.mods) / len(page.mods)
        mod_count = page.total_count or len(page.mods)

        current_time = self._now()
        volume, recent, historical_average = self.category_volumes(
            category.id, category.name, current_time
        )
        trending = (
            historical_average > 0
            and recent / historical_average >= self.trending_threshold
        )

        return CategoryAnalytics(
            category_id=category.id,
            name=category.name,
            search_volume=volume,
            avg_downloads=avg_downloads,
            mod_count=mod_count,
            popularity_score=popularity_score(volume, avg_downloads, mod_count, trending),
            trending=trending,
            last_analyzed_at=current_time,
        )

    def category_volumes(
        self,
        category_id: int,
        name: str,
        current_time: Optional[float] = None
    ) -> Tuple[int, int, float]:
        """
        Search volumes for one category.

        Matches patterns whose query contains the category name or is
        contained in it, plus searches recorded against the category id.

        Returns:
            (retained volume, trailing-window volume, mean weekly volume
            over the retained days before that window)
        """
        current_time = self._now() if current_time is None else current_time
        today = self._day(current_time)
        oldest_day = today - self.retention_days + 1
        recent_start = today - self.trending_window_days + 1
        needle = (name or "").strip().lower()

        merged: Dict[int, int] = {}
        with self._lock:
            sources = []
            if needle:
                sources.extend(
                    p.daily_counts for q, p in self._patterns.items()
                    if needle in q or q in needle
                )
            if category_id in self._category_daily:
                sources.append(self._category_daily[category_id])
            for counts in sources:
                for day, count in counts.items():
                    merged[day] = merged.get(day, 0) + count

        volume = sum(c for d, c in merged.items() if oldest_day <= d <= today)
        recent = sum(c for d, c in merged.items() if recent_start <= d <= today)
        historical_days = self.retention_days - self.trending_window_days
        if historical_days <= 0:
            return volume, recent, 0.0
        historical = volume - recent
        return volume, recent, historical * self.trending_window_days / historical_days

    # -- retention ------------------------------------------------------

    def prune(self) -> int:
        """Drop data untouched for longer than the retention window."""
        current_time = self._now()
        cutoff = current_time - self.retention_days * DAY_SECONDS
        oldest_day = self._day(current_time) - self.retention_days + 1
        removed = 0

        with self._lock:
            for query in [q for q, p in self._patterns.items() if p.last_used_at < cutoff]:
                del self._patterns[query]
                removed += 1
            for category_id in [c for c, a in self._categories.items() if a.last_analyzed_at < cutoff]:
                del self._categories[category_id]
                removed += 1
            for mod_id in [m for m, (_, last) in self._mod_access.items() if last < cutoff]:
                del self._mod_access[mod_id]
                removed += 1

            for pattern in self._patterns.values():
                for day in [d for d in pattern.daily_counts if d < oldest_day]:
                    del pattern.daily_counts[day]
            for category_id in list(self._category_daily):
                buckets = self._category_daily[category_id]
                for day in [d for d in buckets if d < oldest_day]:
                    del buckets[day]
                if not buckets:
                    del self._category_daily[category_id]

        return removed

    # -- lifecycle ------------------------------------------------------

    def start(self) -> bool:
        """Hydrate and begin the hourly schedule. No-op while running."""
        if self._schedule.running:
            return False
        self.hydrate()
        return self._schedule.start()

    async def stop(self) -> bool:
        stopped = await self._schedule.stop()
        self.flush()
        return stopped

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "patterns": [asdict(p) for p in self._patterns.values()],
                "categories": [asdict(c) for c in self._categories.values()],
                "category_daily": {
                    str(c): {str(d): n for d, n in buckets.items()}
                    for c, buckets in self._category_daily.items()
                },
                "mod_access": {str(m): list(v) for m, v in self._mod_access.items()},
                "last_analysis_at": self._last_analysis_at,
            }

    def hydrate(self) -> bool:
        """Load the persisted snapshot. Missing or unreadable data leaves state empty."""
        if self.persistence is None:
            return False
        try:
            data = self.persistence.get(self.SNAPSHOT_KEY)
            if not data:
                return False
            patterns = {}
            for raw in data.get("patterns", []):
                raw = dict(raw)
                raw["daily_counts"] = {int(d): int(n) for d, n in raw.get("daily_counts", {}).items()}
                patterns[raw["query"]] = SearchPattern(**raw)
            categories = {
                int(raw["category_id"]): CategoryAnalytics(**raw)
                for raw in data.get("categories", [])
            }
            category_daily = {
                int(c): {int(d): int(n) for d, n in buckets.items()}
                for c, buckets in data.get("category_daily", {}).items()
            }
            mod_access = {
                int(m): (int(v[0]), float(v[1]))
                for m, v in data.get("mod_access", {}).items()
            }
        except Exception as e:
            if self.logger:
                self.logger.warning("analytics_hydrate_failed", error=str(e))
            return False

        with self._lock:
            self._patterns = patterns
            self._categories = categories
            self._category_daily = defaultdict(dict, category_daily)
            self._mod_access = mod_access
            self._last_analysis_at = data.get("last_analysis_at")
        return True

    def flush(self) -> bool:
        if self.persistence is None:
            return False
        try:
            self.persistence.set(
                self.SNAPSHOT_KEY,
                self.snapshot(),
                self.retention_days * DAY_SECONDS,
            )
        except Exception as e:
            if self.logger:
                self.logger.warning("analytics_flush_failed", error=str(e))
            return False
        return True

    @staticmethod
    def _day(timestamp: float) -> int:
        return int(timestamp // DAY_SECONDS)
