"""Unit tests for the CurseForge API client over a mock transport."""

import json
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from modgate.fetcher.curseforge_client import CurseForgeClient, is_valid_api_key
from modgate.fetcher.errors import (
    ApiError,
    AuthenticationError,
    ConfigurationError,
    ForbiddenError,
    NotFoundError,
    RateLimitError,
    TransientError,
)
from modgate.fetcher.http_client import AsyncHTTPClient
from modgate.fetcher.rate_limiter import RateLimiter
from modgate.fetcher.request_queue import RequestQueue
from modgate.fetcher.retry_handler import RetryPolicy
from modgate.models.data_models import MetricKind, SortField, SortOrder
from modgate.monitoring.performance import PerformanceMonitor
from tests.fixtures.sample_data import (
    MOCK_BASE_URL,
    VALID_KEY,
    FakeClock,
    get_sample_mods,
    make_mod,
    search_payload,
)

ISSUED_TOKEN = "$2a$10$" + "A" * 50 + "./x"


@asynccontextmanager
async def client_for(handler, api_key=VALID_KEY, retry_policy=None):
    """Client wired to an httpx MockTransport, with a fake clock."""
    clk = FakeClock()
    monitor = PerformanceMonitor(now=clk.now)
    http = AsyncHTTPClient(base_url=MOCK_BASE_URL, transport=httpx.MockTransport(handler))
    queue = RequestQueue(
        RateLimiter(now=clk.now),
        retry_policy or RetryPolicy(),
        now=clk.now,
        sleeper=clk.sleep,
    )
    client = CurseForgeClient(
        http, queue, api_key=api_key, monitor=monitor, now=clk.now, wall_clock=clk.now
    )
    client.clock = clk
    await http.open()
    try:
        yield client
    finally:
        await queue.stop()
        await http.aclose()


def respond(*responses, seen=None):
    """Serve ``responses`` in order, repeating the last one."""
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        # fresh copy, a Response is bound to one request
        return httpx.Response(item.status_code, headers=item.headers, content=item.content)

    return handler


class TestApiKeyValidation:

    def test_alphanumeric_keys(self):
        assert is_valid_api_key("a" * 32)
        assert is_valid_api_key("Ab1" * 20)
        assert not is_valid_api_key("a" * 31)
        assert not is_valid_api_key("a" * 31 + "-")

    def test_issued_token_format(self):
        assert len(ISSUED_TOKEN) == 60
        assert is_valid_api_key(ISSUED_TOKEN)
        assert not is_valid_api_key(ISSUED_TOKEN[:-1])

    def test_missing_key_status(self):
        client = CurseForgeClient(MagicMock(), MagicMock(), api_key=None)
        status = client.check_api_key_configuration()

        assert not status.has_api_key
        assert status.source == "none"
        assert status.key_length == 0
        assert not status.is_valid_format
        assert "No API key found" in status.message

    def test_truncated_key_status(self):
        status = CurseForgeClient(MagicMock(), MagicMock(), api_key="abc123").check_api_key_configuration()
        assert status.has_api_key
        assert not status.is_valid_format
        assert "truncated" in status.message

    def test_invalid_characters_status(self):
        status = CurseForgeClient(
            MagicMock(), MagicMock(), api_key="a" * 30 + "!!!!"
        ).check_api_key_configuration()
        assert not status.is_valid_format
        assert "format appears invalid" in status.message

    def test_valid_key_from_env(self):
        status = CurseForgeClient(
            MagicMock(), MagicMock(), api_key=VALID_KEY, api_key_source="env"
        ).check_api_key_configuration()
        assert status.is_valid_format
        assert status.source == "env"
        assert "environment variable" in status.message

    def test_key_is_stripped(self):
        client = CurseForgeClient(MagicMock(), MagicMock(), api_key=f"  {VALID_KEY}\n")
        assert client.check_api_key_configuration().key_length == 32

    @pytest.mark.asyncio
    async def test_missing_key_fails_before_any_request(self):
        seen = []
        async with client_for(respond(httpx.Response(200, json={}), seen=seen), api_key="") as client:
            with pytest.raises(ConfigurationError):
                await client.get_categories()
        assert seen == []


class TestOperations:

    @pytest.mark.asyncio
    async def test_search_builds_query(self):
        seen = []
        handler = respond(httpx.Response(200, json=search_payload([make_mod(1)], total_count=42)), seen=seen)
        async with client_for(handler) as client:
            page = await client.search_mods(
                term="building",
                category_id=17,
                sort_field=SortField.POPULARITY,
                sort_order=SortOrder.DESC,
                page_size=20,
                page=2,
            )

        request = seen[0]
        assert request.url.path == "/v1/mods/search"
        assert request.headers["x-api-key"] == VALID_KEY
        params = request.url.params
        assert params["gameId"] == "83374"
        assert params["searchFilter"] == "building"
        assert params["sortField"] == "2"
        assert params["sortOrder"] == "desc"
        assert params["pageSize"] == "20"
        assert params["index"] == "20"
        assert params["categoryId"] == "17"
        assert page.total_count == 42
        assert page.mods[0]["id"] == 1

    @pytest.mark.asyncio
    async def test_search_defaults_and_page_size_cap(self):
        seen = []
        async with client_for(respond(httpx.Response(200, json=search_payload([])), seen=seen)) as client:
            await client.search_mods(page_size=500)

        params = seen[0].url.params
        assert params["pageSize"] == "50"
        assert params["index"] == "0"
        assert params["sortField"] == "1"
        assert params["sortOrder"] == "asc"
        assert "categoryId" not in params

    @pytest.mark.asyncio
    async def test_search_rejects_bad_paging(self):
        async with client_for(respond(httpx.Response(200, json={}))) as client:
            with pytest.raises(ValueError):
                await client.search_mods(page=0)
            with pytest.raises(ValueError):
                await client.search_mods(page_size=0)

    @pytest.mark.asyncio
    async def test_get_categories(self):
        body = {"data": [{"id": 17, "name": "Maps", "slug": "maps"}, {"id": 18, "name": "QoL"}]}
        async with client_for(respond(httpx.Response(200, json=body))) as client:
            categories = await client.get_categories()

        assert [(c.id, c.name, c.slug) for c in categories] == [(17, "Maps", "maps"), (18, "QoL", "")]

    @pytest.mark.asyncio
    async def test_get_mods_by_ids_posts_once(self):
        seen = []
        mods = get_sample_mods(3)
        async with client_for(respond(httpx.Response(200, json={"data": mods}), seen=seen)) as client:
            result = await client.get_mods_by_ids([m["id"] for m in mods])

        assert len(seen) == 1
        assert seen[0].method == "POST"
        assert json.loads(seen[0].content) == {
            "modIds": [m["id"] for m in mods],
            "filterPcOnly": True,
        }
        assert result == mods

    @pytest.mark.asyncio
    async def test_get_mods_by_ids_empty(self):
        seen = []
        async with client_for(respond(httpx.Response(200, json={}), seen=seen)) as client:
            assert await client.get_mods_by_ids([]) == []
        assert seen == []

    @pytest.mark.asyncio
    async def test_get_mod_details(self):
        async with client_for(respond(httpx.Response(200, json={"data": make_mod(7)}))) as client:
            mod = await client.get_mod_details(7)
        assert mod["id"] == 7

    @pytest.mark.asyncio
    async def test_get_mod_details_rejects_bad_id(self):
        async with client_for(respond(httpx.Response(200, json={}))) as client:
            with pytest.raises(ValueError):
                await client.get_mod_details(0)

    @pytest.mark.asyncio
    async def test_records_latency_per_endpoint_template(self):
        handler = respond(httpx.Response(200, json={"data": make_mod(7)}))
        async with client_for(handler) as client:
            await client.get_mod_details(7)
            await client.get_mod_details(8)
            endpoints = client.monitor.top_endpoints()

        assert endpoints[0]["endpoint"] == "/mods/{id}"
        assert endpoints[0]["count"] == 2


class TestErrorClassification:

    @pytest.mark.asyncio
    async def test_401_is_authentication_error_and_not_retried(self):
        seen = []
        async with client_for(respond(httpx.Response(401), seen=seen)) as client:
            with pytest.raises(AuthenticationError) as exc_info:
                await client.get_categories()

        assert exc_info.value.status_code == 401
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_403_is_forbidden(self):
        async with client_for(respond(httpx.Response(403))) as client:
            with pytest.raises(ForbiddenError):
                await client.get_categories()

    @pytest.mark.asyncio
    async def test_404_names_the_resource(self):
        async with client_for(respond(httpx.Response(404))) as client:
            with pytest.raises(NotFoundError) as exc_info:
                await client.get_mod_details(5)

        assert exc_info.value.message == "Mod 5 not found."

    @pytest.mark.asyncio
    async def test_other_4xx_uses_error_message(self):
        seen = []
        body = {"errorCode": 400, "errorMessage": "pageSize out of range"}
        async with client_for(respond(httpx.Response(400, json=body), seen=seen)) as client:
            with pytest.raises(ApiError) as exc_info:
                await client.search_mods()

        assert exc_info.value.message == "pageSize out of range"
        assert exc_info.value.status_code == 400
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_5xx_retried_then_succeeds(self):
        seen = []
        handler = respond(
            httpx.Response(503),
            httpx.Response(500),
            httpx.Response(200, json={"data": []}),
            seen=seen,
        )
        async with client_for(handler) as client:
            assert await client.get_categories() == []
            sleeps = client.clock.sleeps

        assert len(seen) == 3
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_5xx_surfaces_after_budget(self):
        async with client_for(respond(httpx.Response(502)), retry_policy=RetryPolicy(server_retries=1)) as client:
            with pytest.raises(TransientError) as exc_info:
                await client.get_categories()

        assert exc_info.value.kind == TransientError.SERVER
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_429_honours_retry_after_header(self):
        handler = respond(
            httpx.Response(429, headers={"Retry-After": "2"}),
            httpx.Response(200, json={"data": []}),
        )
        async with client_for(handler) as client:
            await client.get_categories()
            sleeps = client.clock.sleeps

        assert sleeps == [2.0]

    @pytest.mark.asyncio
    async def test_429_retry_after_from_body(self):
        handler = respond(httpx.Response(429, json={"retryAfter": 5}))
        async with client_for(handler, retry_policy=RetryPolicy(rate_limit_retries=0)) as client:
            with pytest.raises(RateLimitError) as exc_info:
                await client.get_categories()
            limited = client.is_rate_limited()

        assert exc_info.value.retry_after == 5.0
        assert exc_info.value.status_code == 429
        assert limited

    @pytest.mark.asyncio
    async def test_429_without_hint_defaults_to_one_second(self):
        handler = respond(httpx.Response(429, text="slow down"))
        async with client_for(handler, retry_policy=RetryPolicy(rate_limit_retries=0)) as client:
            with pytest.raises(RateLimitError) as exc_info:
                await client.get_categories()

        assert exc_info.value.retry_after == 1.0

    @pytest.mark.asyncio
    async def test_malformed_json_is_api_error(self):
        handler = respond(httpx.Response(200, content=b"{not json"))
        async with client_for(handler) as client:
            with pytest.raises(ApiError) as exc_info:
                await client.get_categories()

        assert "Malformed JSON" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_429_with_unreadable_body_hint_defaults_to_one_second(self):
        handler = respond(httpx.Response(429, json={"retryAfter": "soon"}))
        async with client_for(handler, retry_policy=RetryPolicy(rate_limit_retries=0)) as client:
            with pytest.raises(RateLimitError) as exc_info:
                await client.get_categories()

        assert exc_info.value.retry_after == 1.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("call, body", [
        (lambda c: c.get_mod_details(5), {"unexpected": True}),
        (lambda c: c.get_mod_details(5), {"data": ["not", "a", "mod"]}),
        (lambda c: c.get_categories(), {"data": [{"name": "Maps"}]}),
        (lambda c: c.get_categories(), ["not", "an", "object"]),
        (lambda c: c.search_mods("x"), {"data": [], "pagination": {"totalCount": "many"}}),
        (lambda c: c.search_mods("x"), {"data": {"id": 1}}),
        (lambda c: c.get_mods_by_ids([1]), {"data": [{"name": "no id"}]}),
        (lambda c: c.get_game(), {"data": "ARK"}),
    ])
    async def test_wrong_shape_is_api_error_and_not_retried(self, call, body):
        seen = []
        handler = respond(httpx.Response(200, json=body), seen=seen)
        async with client_for(handler) as client:
            with pytest.raises(ApiError) as exc_info:
                await call(client)

        assert "Malformed response" in exc_info.value.message
        assert exc_info.value.status_code == 200
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_network_error_retried_once(self):
        seen = []
        request = httpx.Request("GET", MOCK_BASE_URL)
        handler = respond(httpx.ConnectError("refused", request=request), seen=seen)
        async with client_for(handler) as client:
            with pytest.raises(TransientError) as exc_info:
                await client.get_categories()

        assert exc_info.value.kind == TransientError.NETWORK
        assert len(seen) == 2

    @pytest.mark.asyncio
    async def test_transport_timeout_is_transient(self):
        request = httpx.Request("GET", MOCK_BASE_URL)
        handler = respond(httpx.ReadTimeout("slow", request=request))
        async with client_for(handler, retry_policy=RetryPolicy(timeout_retries=0)) as client:
            with pytest.raises(TransientError) as exc_info:
                await client.get_categories()

        assert exc_info.value.kind == TransientError.TIMEOUT


class TestUpstreamRateLimitTracking:

    @pytest.mark.asyncio
    async def test_reads_rate_limit_headers(self):
        clk_start = FakeClock().t
        headers = {"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": str(clk_start + 30)}
        handler = respond(httpx.Response(200, json={"data": []}, headers=headers))
        async with client_for(handler) as client:
            assert not client.is_rate_limited()
            await client.get_categories()

            info = client.rate_limit_info()
            assert info.remaining == 0
            assert info.reset_at == clk_start + 30
            assert client.is_rate_limited()

            client.clock.t += 31
            assert not client.is_rate_limited()

    @pytest.mark.asyncio
    async def test_ignores_garbled_headers(self):
        headers = {"X-RateLimit-Remaining": "many", "X-RateLimit-Reset": "soon"}
        handler = respond(httpx.Response(200, json={"data": []}, headers=headers))
        async with client_for(handler) as client:
            await client.get_categories()
            assert client.rate_limit_info() is None


class TestBackgroundToggles:

    def test_start_without_scheduler(self):
        client = CurseForgeClient(MagicMock(), MagicMock(), api_key=VALID_KEY)
        assert not client.is_background_fetching()
        with pytest.raises(ConfigurationError):
            client.start_background_fetching()

    @pytest.mark.asyncio
    async def test_delegates_to_scheduler(self):
        scheduler = MagicMock()
        scheduler.stop = AsyncMock()
        scheduler.status.return_value.is_warming = True
        client = CurseForgeClient(MagicMock(), MagicMock(), api_key=VALID_KEY)
        client.attach_scheduler(scheduler)

        client.start_background_fetching()
        assert client.is_background_fetching()
        await client.stop_background_fetching()

        scheduler.start.assert_called_once()
        scheduler.stop.assert_awaited_once()
