"""HTTP surface for the gateway."""

import math
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from modgate import __version__
from modgate.fetcher.errors import (
    ApiError,
    AuthenticationError,
    ConfigurationError,
    ForbiddenError,
    ModGateError,
    NotFoundError,
    RateLimited,
    TransientError,
)
from modgate.gateway.orchestrator import ModGateway
from modgate.models.data_models import OverallStatus, SortField, SortOrder, to_plain


class BulkModsBody(BaseModel):
    modIds: List[int] = Field(min_length=1, max_length=100)


class BackgroundFetchBody(BaseModel):
    action: str


def error_status(error: ModGateError) -> int:
    """HTTP status a gateway error is reported with."""
    if isinstance(error, AuthenticationError):
        return 401
    if isinstance(error, ForbiddenError):
        return 403
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, RateLimited):
        return 429
    if isinstance(error, TransientError):
        return 503
    if isinstance(error, ApiError):
        return 502
    return 500


def create_app(gateway: ModGateway) -> FastAPI:
    """
    Create the FastAPI service around a gateway.

    The gateway is started with the app and closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await gateway.start()
        yield
        await gateway.aclose()

    app = FastAPI(title="modgate", version=__version__, lifespan=lifespan)
    app.state.gateway = gateway

    @app.exception_handler(ModGateError)
    async def handle_gateway_error(request: Request, exc: ModGateError):
        headers = {}
        if isinstance(exc, RateLimited):
            headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after)))
        if isinstance(exc, ConfigurationError) and gateway.logger:
            gateway.logger.error("configuration_error", path=request.url.path, error=exc.message)
        return JSONResponse(
            status_code=error_status(exc),
            content={"error": type(exc).__name__, "message": exc.message},
            headers=headers,
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"error": "ValueError", "message": str(exc)})

    @app.get("/curseforge/search")
    async def search(
        term: str = "",
        categoryId: Optional[int] = None,
        sortField: SortField = SortField.POPULARITY,
        sortOrder: SortOrder = SortOrder.DESC,
        page: int = Query(default=1, ge=1),
        pageSize: int = Query(default=20, ge=1, le=50),
        refresh: bool = False,
    ):
        result = await gateway.search(
            term=term,
            category_id=categoryId,
            sort_field=sortField,
            sort_order=sortOrder,
            page=page,
            page_size=pageSize,
            force_refresh=refresh,
        )
        return {
            "data": result.items,
            "totalCount": result.total_count,
            "page": page,
            "pageSize": pageSize,
            "hasMore": page * pageSize < result.total_count,
            "source": result.source.value,
            "stale": result.stale,
        }

    @app.get("/curseforge/mods/{mod_id}")
    async def get_mod(mod_id: int):
        return {"data": await gateway.get_by_id(mod_id)}

    @app.post("/curseforge/mods")
    async def get_mods(body: BulkModsBody):
        return {"data": await gateway.get_by_ids(body.modIds)}

    @app.get("/curseforge/categories")
    async def get_categories():
        return {"data": to_plain(await gateway.get_categories())}

    @app.get("/curseforge/health")
    async def health():
        report = await gateway.health()
        status_code = 503 if report.status == OverallStatus.UNHEALTHY else 200
        return JSONResponse(status_code=status_code, content=report.to_dict())

    @app.get("/curseforge/background-fetch")
    async def background_status():
        return to_plain(gateway.background_service.status())

    @app.post("/curseforge/background-fetch")
    async def background_control(body: BackgroundFetchBody):
        if body.action == "start":
            gateway.start_background()
        elif body.action == "stop":
            await gateway.stop_background()
        else:
            return JSONResponse(
                status_code=400,
                content={"error": "ValueError", "message": "action must be 'start' or 'stop'"},
            )
        return to_plain(gateway.background_service.status())

    @app.get("/curseforge/check-api-key")
    async def check_api_key():
        return to_plain(gateway.client.check_api_key_configuration())

    @app.get("/curseforge/performance")
    async def performance(hours: float = Query(default=1.0, gt=0)):
        return gateway.performance_summary(hours)

    return app
