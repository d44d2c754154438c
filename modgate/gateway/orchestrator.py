"""Gateway facade wiring limiter, queue, client, cache and background services."""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

import httpx

from modgate.cache import CacheStore, InMemoryKeyValueStore, KeyValueStore, mod_key
from modgate.fetcher.curseforge_client import MAX_PAGE_SIZE, CurseForgeClient
from modgate.fetcher.errors import ModGateError, NotFoundError
from modgate.fetcher.http_client import AsyncHTTPClient
from modgate.fetcher.rate_limiter import RateLimiter
from modgate.fetcher.request_queue import RequestQueue
from modgate.fetcher.retry_handler import RetryPolicy
from modgate.models.config import GatewayConfig
from modgate.models.data_models import (
    CacheEventMetadata,
    Category,
    HealthReport,
    MetricKind,
    Priority,
    QueryFingerprint,
    ResultSource,
    SearchResult,
    SortField,
    SortOrder,
)
from modgate.monitoring.health import HealthAggregator
from modgate.monitoring.logger import StructuredLogger
from modgate.monitoring.performance import PerformanceMonitor
from modgate.services.analytics import PopularityAnalytics
from modgate.services.warming import WarmingScheduler


class ModGateway:
    """Owns every component and exposes the search / lookup / health contract."""

    def __init__(
        self,
        config: GatewayConfig,
        persistence: Optional[KeyValueStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[StructuredLogger] = None,
        now: Callable[[], float] = time.time,
        clock: Callable[[], float] = time.monotonic,
        sleeper: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Build the component graph from configuration.

        Args:
            config: Gateway configuration
            persistence: Key-value collaborator (default: in-memory)
            transport: Optional httpx transport (mock upstream in tests)
            logger: Structured logger (default: one at config.log_level)
            now: Epoch clock for cache expiry, analytics and metrics
            clock: Monotonic clock for the limiter and latency
            sleeper: Sleep coroutine for deferrals and schedules
        """
        self.config = config
        if logger is None and config.structured_logging:
            logger = StructuredLogger(level=config.log_level)
        self.logger = logger
        self._clock = clock

        self.persistence = persistence if persistence is not None else InMemoryKeyValueStore(now=now)
        self.monitor = PerformanceMonitor(now=now)
        self.limiter = RateLimiter(
            max_tokens=config.rate_limit_capacity,
            refill_rate=config.rate_limit_refill_per_second,
            now=clock,
        )
        self.retry_policy = RetryPolicy(
            timeout_retries=config.timeout_retries,
            network_retries=config.network_retries,
            server_retries=config.server_retries,
            rate_limit_retries=config.rate_limit_retries,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            jitter_max=config.retry_jitter_max,
        )
        self.queue = RequestQueue(
            self.limiter,
            self.retry_policy,
            max_concurrency=config.max_concurrency,
            request_timeout=config.request_timeout,
            monitor=self.monitor,
            logger=logger,
            now=clock,
            sleeper=sleeper,
        )
        self.http = AsyncHTTPClient(
            base_url=config.base_url,
            headers={"Accept": "application/json", "User-Agent": config.user_agent},
            connect_timeout=config.connect_timeout,
            read_timeout=config.request_timeout,
            transport=transport,
        )
        self.client = CurseForgeClient(
            self.http,
            self.queue,
            api_key=config.api_key,
            api_key_source=config.api_key_source,
            game_id=config.game_id,
            monitor=self.monitor,
            logger=logger,
            now=clock,
            wall_clock=now,
        )
        self.cache = CacheStore(
            self.persistence,
            default_ttl=config.search_cache_ttl,
            max_entries=config.cache_max_entries,
            logger=logger,
            now=now,
        )
        self.analytics = PopularityAnalytics(
            self.client,
            self.persistence,
            interval=config.analysis_interval,
            sample_size=config.analysis_sample_size,
            max_categories=config.analysis_max_categories,
            trending_threshold=config.trending_threshold,
            trending_window_days=config.trending_window_days,
            retention_days=config.analytics_retention_days,
            min_search_volume=config.min_search_volume,
            logger=logger,
            now=now,
            sleeper=sleeper,
        )
        self.warming = WarmingScheduler(
            self.client,
            self.cache,
            self.analytics,
            seed_targets=config.seed_targets(),
            interval=config.warming_interval,
            max_batch_size=config.warming_batch_size,
            search_ttl=config.search_cache_ttl,
            mod_ttl=config.mod_cache_ttl,
            monitor=self.monitor,
            logger=logger,
            now=now,
            sleeper=sleeper,
        )
        self.client.attach_scheduler(self.warming)
        self.health_aggregator = HealthAggregator(
            self.client,
            self.limiter,
            self.queue,
            self.monitor,
            cache=self.cache,
            warming=self.warming,
            analytics=self.analytics,
            logger=logger,
            now=now,
        )

        self._revalidations: Dict[str, asyncio.Task] = {}
        self._started = False

    @property
    def background_service(self) -> WarmingScheduler:
        return self.warming

    # -- lifecycle ------------------------------------------------------

    async def start(self) -> None:
        """Open the HTTP client and start workers. No-op when already started."""
        if self._started:
            return

        await self.http.open()
        self.queue.start()
        self.analytics.hydrate()
        self._started = True

        key_status = self.client.check_api_key_configuration()
        if self.logger:
            self.logger.log(
                "gateway_start",
                base_url=self.config.base_url,
                api_key_valid=key_status.is_valid_format,
            )
            if not key_status.is_valid_format:
                self.logger.warning("api_key_problem", message=key_status.message)

        if self.config.background_autostart:
            self.start_background()

    def start_background(self) -> None:
        self.warming.start()
        self.analytics.start()

    async def stop_background(self) -> None:
        await self.warming.stop()
        await self.analytics.stop()

    async def aclose(self) -> None:
        """Stop background work and workers, flush state, close the HTTP client."""
        if not self._started:
            return

        await self.stop_background()
        pending = list(self._revalidations.values())
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._revalidations.clear()

        await self.queue.stop()
        self.cache.flush()
        self.analytics.flush()
        await self.http.aclose()
        self._started = False

        if self.logger:
            self.logger.log("gateway_stop")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    # -- contract -------------------------------------------------------

    async def search(
        self,
        term: str = "",
        category_id: Optional[int] = None,
        sort_field: SortField = SortField.POPULARITY,
        sort_order: SortOrder = SortOrder.DESC,
        page: int = 1,
        page_size: int = 20,
        force_refresh: bool = False,
        stale_while_revalidate: bool = False,
    ) -> SearchResult:
        """
        Search mods, answering from cache when possible.

        Args:
            term: Free-text filter
            category_id: Restrict to one category
            sort_field: Field to sort by
            sort_order: Sort direction
            page: 1-based page number
            page_size: Results per page (capped at 50)
            force_refresh: Skip the cache lookup and go upstream
            stale_while_revalidate: On a miss with an expired entry, return it
                at once and refresh in the background

        Returns:
            Items and total count, tagged with where they came from

        Raises:
            ModGateError: Upstream failed and no cached fallback exists
        """
        if page < 1:
            raise ValueError(f"page must be at least 1, got: {page}")
        if page_size < 1:
            raise ValueError(f"page_size must be positive, got: {page_size}")

        await self.start()
        page_size = min(page_size, MAX_PAGE_SIZE)
        fingerprint = QueryFingerprint.from_query(
            term, category_id, sort_field, sort_order, page, page_size
        )
        key = fingerprint.digest

        if not force_refresh:
            entry = self._cached(key, fingerprint.label)
            if entry is not None:
                self.analytics.record_search(term, entry.total_count, category_id)
                return SearchResult(entry.payload, entry.total_count, ResultSource.CACHE)

            if stale_while_revalidate:
                stale = self.cache.get_stale(key)
                if stale is not None:
                    self._revalidate(key, lambda: self._fetch_search(
                        fingerprint, term, category_id, Priority.BACKGROUND
                    ))
                    self.analytics.record_search(term, stale.total_count, category_id)
                    return SearchResult(stale.payload, stale.total_count, ResultSource.STALE, stale=True)

        try:
            entry = await self._fetch_search(fingerprint, term, category_id, Priority.USER)
        except ModGateError as e:
            stale = self._fallback(key, fingerprint.label, e)
            if stale is None:
                raise
            return SearchResult(stale.payload, stale.total_count, ResultSource.STALE, stale=True)

        self.analytics.record_search(term, entry.total_count, category_id)
        return SearchResult(entry.payload, entry.total_count, ResultSource.API)

    async def get_by_id(self, mod_id: int) -> Dict[str, Any]:
        """Single mod, cached for mod_cache_ttl."""
        await self.start()
        key = mod_key(mod_id)

        entry = self._cached(key, key)
        if entry is None:
            try:
                mod = await self.client.get_mod_details(mod_id)
            except NotFoundError:
                raise
            except ModGateError as e:
                entry = self._fallback(key, key, e)
                if entry is None:
                    raise
            else:
                entry = self.cache.set(key, mod, 1, ttl=self.config.mod_cache_ttl, label=key)

        self.analytics.record_mod_access(mod_id)
        return entry.payload

    async def get_by_ids(self, ids: Sequence[int]) -> List[Dict[str, Any]]:
        """
        Several mods, one bulk upstream call for the ones not cached.

        Ids upstream does not know are left out. If the bulk call fails, every
        missing id must have a stale entry or the error is raised.
        """
        await self.start()
        ordered = list(dict.fromkeys(ids))
        found: Dict[int, Dict[str, Any]] = {}
        missing: List[int] = []

        for mod_id in ordered:
            entry = self._cached(mod_key(mod_id), mod_key(mod_id))
            if entry is not None:
                found[mod_id] = entry.payload
            else:
                missing.append(mod_id)

        if missing:
            try:
                mods = await self.client.get_mods_by_ids(missing)
            except ModGateError as e:
                for mod_id in missing:
                    stale = self._fallback(mod_key(mod_id), mod_key(mod_id), e)
                    if stale is None:
                        raise
                    found[mod_id] = stale.payload
            else:
                for mod in mods:
                    key = mod_key(mod["id"])
                    self.cache.set(key, mod, 1, ttl=self.config.mod_cache_ttl, label=key)
                    found[mod["id"]] = mod

        result = []
        for mod_id in ordered:
            if mod_id in found:
                self.analytics.record_mod_access(mod_id)
                result.append(found[mod_id])
        return result

    async def get_categories(self) -> List[Category]:
        await self.start()
        key = f"categories:{self.config.game_id}"

        entry = self._cached(key, key)
        if entry is not None:
            return [Category(**item) for item in entry.payload]

        try:
            categories = await self.client.get_categories()
        except ModGateError as e:
            entry = self._fallback(key, key, e)
            if entry is None:
                raise
            return [Category(**item) for item in entry.payload]

        payload = [{"id": c.id, "name": c.name, "slug": c.slug} for c in categories]
        self.cache.set(key, payload, len(payload), ttl=self.config.mod_cache_ttl, label=key)
        return categories

    async def health(self) -> HealthReport:
        await self.start()
        return await self.health_aggregator.check()

    def performance_summary(self, window_hours: float = 1.0) -> Dict[str, Any]:
        return self.monitor.summary(window_hours)

    # -- internals ------------------------------------------------------

    async def _fetch_search(
        self,
        fingerprint: QueryFingerprint,
        term: str,
        category_id: Optional[int],
        priority: int,
    ):
        result = await self.client.search_mods(
            term=(term or "").strip(),
            category_id=category_id,
            sort_field=SortField(fingerprint.sort_field),
            sort_order=SortOrder(fingerprint.sort_order),
            page_size=fingerprint.page_size,
            page=fingerprint.page,
            priority=priority,
        )
        return self.cache.set(
            fingerprint.digest,
            result.mods,
            result.total_count,
            ttl=self.config.search_cache_ttl,
            label=fingerprint.label,
        )

    def _cached(self, key: str, label: str):
        started = self._clock()
        entry = self.cache.get(key)
        metadata = CacheEventMetadata(label=label)
        if entry is None:
            self.monitor.record(MetricKind.CACHE_MISS, 1, metadata)
            return None

        self.monitor.record(MetricKind.CACHE_HIT, 1, metadata)
        self.monitor.record(
            MetricKind.CACHE_RESPONSE_TIME,
            (self._clock() - started) * 1000,
            metadata,
        )
        return entry

    def _fallback(self, key: str, label: str, error: ModGateError):
        stale = self.cache.get_stale(key)
        if stale is not None and self.logger:
            self.logger.warning(
                "serving_stale",
                key=label,
                error=str(error),
                error_type=type(error).__name__,
            )
        return stale

    def _revalidate(self, key: str, fetch: Callable[[], Awaitable[Any]]) -> None:
        if key in self._revalidations:
            return

        async def run() -> None:
            try:
                await fetch()
            except ModGateError as e:
                if self.logger:
                    self.logger.warning("revalidation_failed", key=key, error=str(e))
            except Exception as e:
                # nobody awaits this task, so anything unexpected stops here
                if self.logger:
                    self.logger.error(
                        "revalidation_crashed",
                        key=key,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
            finally:
                self._revalidations.pop(key, None)

        self._revalidations[key] = asyncio.create_task(run())
