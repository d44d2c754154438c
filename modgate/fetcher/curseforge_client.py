"""Typed client for the CurseForge v1 mod API.

Every call is submitted through the request queue, so it waits for a worker,
a limiter token and whatever retries the policy allows. This module only
knows how to build a request and how to classify the answer.
"""

import re
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx

from modgate.fetcher.errors import (
    ApiError,
    AuthenticationError,
    ConfigurationError,
    ForbiddenError,
    ModGateError,
    NotFoundError,
    RateLimitError,
    TransientError,
)
from modgate.fetcher.http_client import AsyncHTTPClient
from modgate.fetcher.request_queue import RequestQueue
from modgate.models.data_models import (
    ApiCallMetadata,
    ApiKeyStatus,
    Category,
    MetricKind,
    Priority,
    QueryFingerprint,
    RateLimitInfo,
    SearchPage,
    SortField,
    SortOrder,
)

DEFAULT_GAME_ID = 83374  # ARK: Survival Ascended
MAX_PAGE_SIZE = 50
DEFAULT_RETRY_AFTER = 1.0

_ALNUM_KEY = re.compile(r"^[A-Za-z0-9]{32,}$")
_ISSUED_TOKEN = re.compile(r"^\$2a\$10\$[./A-Za-z0-9]{53}$")


def is_valid_api_key(api_key: str) -> bool:
    """Accepts 32+ alphanumerics or the 60-character ``$2a$10$`` token."""
    return bool(_ALNUM_KEY.match(api_key) or _ISSUED_TOKEN.match(api_key))


# Response readers. Each raises KeyError, TypeError or ValueError on a body
# of the wrong shape; _send turns those into ApiError.

def _mod_list(body: Dict[str, Any]) -> List[Dict[str, Any]]:
    mods = body.get("data", [])
    if not isinstance(mods, list):
        raise TypeError(f"expected a list of mods, got {type(mods).__name__}")
    for mod in mods:
        int(mod["id"])
    return mods


def _read_categories(body: Dict[str, Any]) -> List[Category]:
    items = body.get("data", [])
    if not isinstance(items, list):
        raise TypeError(f"expected a list of categories, got {type(items).__name__}")
    return [
        Category(id=int(item["id"]), name=str(item["name"]), slug=item.get("slug", ""))
        for item in items
    ]


def _read_search_page(body: Dict[str, Any]) -> SearchPage:
    mods = _mod_list(body)
    pagination = body.get("pagination") or {}
    return SearchPage(mods=mods, total_count=int(pagination.get("totalCount", len(mods))))


def _read_mod(body: Dict[str, Any]) -> Dict[str, Any]:
    mod = body["data"]
    int(mod["id"])
    return mod


def _read_game(body: Dict[str, Any]) -> Dict[str, Any]:
    game = body.get("data", body)
    if not isinstance(game, dict):
        raise TypeError(f"expected a game object, got {type(game).__name__}")
    return game


class CurseForgeClient:
    """CurseForge operations routed through the shared request queue."""

    def __init__(
        self,
        http_client: AsyncHTTPClient,
        queue: RequestQueue,
        api_key: Optional[str] = None,
        api_key_source: str = "config",
        game_id: int = DEFAULT_GAME_ID,
        monitor: Optional['PerformanceMonitor'] = None,
        logger: Optional['StructuredLogger'] = None,
        now: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        """
        Initialize client.

        Args:
            http_client: Transport wrapper with base URL and default headers
            queue: Request queue every call is submitted to
            api_key: CurseForge API key, sent as ``x-api-key``
            api_key_source: Where the key came from ("config" or "env")
            game_id: Default game for searches and categories
            monitor: Optional performance monitor for per-call latency
            logger: Optional structured logger
            now: Monotonic clock used for latency
            wall_clock: Epoch clock compared with upstream reset headers
        """
        self.http_client = http_client
        self.queue = queue
        self.api_key = (api_key or "").strip()
        self.api_key_source = api_key_source if self.api_key else "none"
        self.game_id = game_id
        self.monitor = monitor
        self.logger = logger
        self._now = now
        self._wall_clock = wall_clock

        self._rate_limit_info: Optional[RateLimitInfo] = None
        self._cooldown_until = 0.0
        self._scheduler: Optional['WarmingScheduler'] = None

    # -- credential -----------------------------------------------------

    def check_api_key_configuration(self) -> ApiKeyStatus:
        """Inspect the configured key without calling upstream."""
        key = self.api_key
        valid = bool(key) and is_valid_api_key(key)

        if not key:
            message = (
                "No API key found. Set CURSEFORGE_API_KEY or api_key in the "
                "configuration file."
            )
        elif len(key) < 32:
            message = "API key appears to be truncated. Check your configuration."
        elif not valid:
            message = (
                "API key format appears invalid. CurseForge API keys are at least "
                "32 alphanumeric characters or a 60-character $2a$10$ token."
            )
        else:
            origin = "environment variable" if self.api_key_source == "env" else "configuration"
            message = f"API key configured successfully (from {origin})."

        return ApiKeyStatus(
            has_api_key=bool(key),
            source=self.api_key_source,
            key_length=len(key),
            is_valid_format=valid,
            message=message,
        )

    def _require_api_key(self) -> None:
        status = self.check_api_key_configuration()
        if not status.is_valid_format:
            raise ConfigurationError(status.message)

    # -- upstream rate limit tracking -----------------------------------

    def rate_limit_info(self) -> Optional[RateLimitInfo]:
        return self._rate_limit_info

    def is_rate_limited(self) -> bool:
        """True while upstream says the quota is spent or a 429 cooldown runs."""
        current = self._wall_clock()
        if current < self._cooldown_until:
            return True
        info = self._rate_limit_info
        if info is None:
            return False
        return info.remaining <= 0 and current < info.reset_at

    def _update_rate_limit_info(self, response: httpx.Response) -> None:
        remaining = response.headers.get("X-RateLimit-Remaining")
        reset = response.headers.get("X-RateLimit-Reset")
        if remaining is None or reset is None:
            return
        try:
            self._rate_limit_info = RateLimitInfo(
                remaining=int(remaining),
                reset_at=float(reset),
            )
        except ValueError:
            if self.logger:
                self.logger.log(
                    "rate_limit_header_invalid",
                    level="warning",
                    remaining=remaining,
                    reset=reset,
                )

    # -- background fetching --------------------------------------------

    def attach_scheduler(self, scheduler: 'WarmingScheduler') -> None:
        self._scheduler = scheduler

    def is_background_fetching(self) -> bool:
        return self._scheduler is not None and self._scheduler.status().is_warming

    def start_background_fetching(self) -> None:
        if self._scheduler is None:
            raise ConfigurationError("No background scheduler attached")
        self._scheduler.start()

    async def stop_background_fetching(self) -> None:
        if self._scheduler is not None:
            await self._scheduler.stop()

    # -- operations -----------------------------------------------------

    async def get_categories(self, priority: int = Priority.USER) -> List[Category]:
        return await self._request(
            "GET",
            "/categories",
            endpoint="/categories",
            priority=priority,
            read=_read_categories,
            params={"gameId": self.game_id},
        )

    async def search_mods(
        self,
        term: str = "",
        category_id: Optional[int] = None,
        sort_field: SortField = SortField.NAME,
        sort_order: SortOrder = SortOrder.ASC,
        page_size: int = 20,
        page: int = 1,
        priority: int = Priority.USER,
    ) -> SearchPage:
        """
        Search mods for the configured game.

        Args:
            term: Free-text filter (may be empty)
            category_id: Restrict to one category
            sort_field: Field to sort by
            sort_order: Sort direction
            page_size: Results per page, capped at 50
            page: 1-based page number
            priority: Queue priority

        Returns:
            Page of raw mod records plus the upstream total count
        """
        if page < 1:
            raise ValueError(f"page must be at least 1, got: {page}")
        if page_size < 1:
            raise ValueError(f"page_size must be positive, got: {page_size}")

        sort_field = SortField(sort_field)
        sort_order = SortOrder(sort_order)
        page_size = min(page_size, MAX_PAGE_SIZE)

        params: Dict[str, Any] = {
            "gameId": self.game_id,
            "searchFilter": term,
            "sortField": sort_field.api_value,
            "sortOrder": sort_order.value,
            "pageSize": page_size,
            "index": (page - 1) * page_size,
        }
        if category_id is not None:
            params["categoryId"] = category_id

        label = QueryFingerprint.from_query(
            term, category_id, sort_field, sort_order, page, page_size
        ).label
        return await self._request(
            "GET",
            "/mods/search",
            endpoint="/mods/search",
            priority=priority,
            read=_read_search_page,
            label=label,
            params=params,
        )

    async def get_mods_by_ids(
        self,
        ids: Sequence[int],
        filter_pc_only: bool = True,
        priority: int = Priority.USER,
    ) -> List[Dict[str, Any]]:
        """Fetch several mods with one POST."""
        if not ids:
            return []

        return await self._request(
            "POST",
            "/mods",
            endpoint="/mods",
            priority=priority,
            read=_mod_list,
            label=f"bulk:{len(ids)}",
            json={"modIds": list(ids), "filterPcOnly": filter_pc_only},
        )

    async def get_mod_details(self, mod_id: int, priority: int = Priority.USER) -> Dict[str, Any]:
        if mod_id <= 0:
            raise ValueError(f"Invalid mod ID: {mod_id}")

        return await self._request(
            "GET",
            f"/mods/{mod_id}",
            endpoint="/mods/{id}",
            priority=priority,
            read=_read_mod,
            label=f"mod:{mod_id}",
            resource=f"Mod {mod_id}",
        )

    async def get_game(
        self,
        game_id: Optional[int] = None,
        priority: int = Priority.USER,
    ) -> Dict[str, Any]:
        game_id = self.game_id if game_id is None else game_id
        return await self._request(
            "GET",
            f"/games/{game_id}",
            endpoint="/games/{id}",
            priority=priority,
            read=_read_game,
            label=f"game:{game_id}",
            resource=f"Game {game_id}",
        )

    # -- plumbing -------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        endpoint: str,
        priority: int,
        read: Callable[[Dict[str, Any]], Any],
        label: str = "",
        resource: str = "Resource",
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
    ) -> Any:
        self._require_api_key()

        async def execute() -> Any:
            return await self._send(method, path, endpoint, resource, read, params, json)

        return await self.queue.submit(execute, priority=priority, label=label or endpoint)

    async def _send(
        self,
        method: str,
        path: str,
        endpoint: str,
        resource: str,
        read: Callable[[Dict[str, Any]], Any],
        params: Optional[Dict[str, Any]],
        json: Optional[Any],
    ) -> Any:
        """One HTTP exchange, classified and read. Runs on a queue worker."""
        started = self._now()
        status_code: Optional[int] = None
        error: Optional[str] = None

        if self.logger:
            self.logger.api_request(method=method, endpoint=path)

        try:
            try:
                response = await self.http_client.request(
                    method,
                    path,
                    params=params,
                    json=json,
                    headers={"x-api-key": self.api_key},
                )
            except httpx.TimeoutException as e:
                raise TransientError(
                    f"Request to {path} timed out", TransientError.TIMEOUT
                ) from e
            except httpx.TransportError as e:
                raise TransientError(
                    f"Network error calling {path}: {e}", TransientError.NETWORK
                ) from e

            status_code = response.status_code
            self._update_rate_limit_info(response)
            body = self._parse(response, resource)
            try:
                return read(body)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                raise ApiError(
                    f"Malformed response from {path}: {type(e).__name__}: {e}",
                    status_code,
                ) from e
        except ModGateError as e:
            error = type(e).__name__
            raise
        finally:
            elapsed_ms = (self._now() - started) * 1000
            if self.monitor:
                self.monitor.record(
                    MetricKind.API_RESPONSE_TIME,
                    elapsed_ms,
                    ApiCallMetadata(endpoint=endpoint, status_code=status_code, error=error),
                )
            if self.logger:
                self.logger.api_response(
                    endpoint=path,
                    status=status_code,
                    elapsed_ms=elapsed_ms,
                    error=error,
                )

    def _parse(self, response: httpx.Response, resource: str) -> Dict[str, Any]:
        status = response.status_code

        if status == 429:
            retry_after = self._retry_after(response)
            self._cooldown_until = max(self._cooldown_until, self._wall_clock() + retry_after)
            raise RateLimitError(retry_after)
        if status == 401:
            raise AuthenticationError()
        if status == 403:
            raise ForbiddenError()
        if status == 404:
            raise NotFoundError(resource)
        if status >= 500:
            raise TransientError(
                f"HTTP {status}: {response.reason_phrase}",
                TransientError.SERVER,
                status_code=status,
            )
        if not 200 <= status < 300:
            raise ApiError(self._error_message(response), status)

        try:
            return response.json()
        except ValueError as e:
            raise ApiError(f"Malformed JSON in response: {e}", status) from e

    @staticmethod
    def _retry_after(response: httpx.Response) -> float:
        header = response.headers.get("Retry-After")
        if header:
            try:
                return max(0.0, float(header))
            except ValueError:
                pass
        try:
            body = response.json()
        except ValueError:
            return DEFAULT_RETRY_AFTER
        if isinstance(body, dict) and body.get("retryAfter") is not None:
            try:
                return max(0.0, float(body["retryAfter"]))
            except (TypeError, ValueError):
                return DEFAULT_RETRY_AFTER
        return DEFAULT_RETRY_AFTER

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        message = f"HTTP {response.status_code}: {response.reason_phrase}"
        try:
            body = response.json()
        except ValueError:
            return message
        if isinstance(body, dict) and body.get("errorMessage"):
            return str(body["errorMessage"])
        return message
