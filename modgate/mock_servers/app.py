"""FastAPI mock of the CurseForge v1 endpoints the gateway uses."""

import asyncio
import os
import random
from typing import Dict, List, Optional, Sequence, Tuple

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

DEFAULT_CATEGORIES: Sequence[Tuple[int, str]] = (
    (17, "Maps"),
    (18, "Quality of Life"),
    (19, "RPG"),
    (20, "Overhauls"),
    (21, "Cosmetics"),
    (22, "Building"),
)

_THEMES = ["Building", "Structures", "Dinos", "Engrams", "Tools", "Storage"]

MALFORMED = "malformed"


class BulkModsRequest(BaseModel):
    """Body of POST /mods."""
    modIds: List[int]
    filterPcOnly: bool = True


def generate_mods(
    count: int,
    categories: Sequence[Tuple[int, str]],
    game_id: int,
    rng: random.Random
) -> List[Dict]:
    """Deterministic mod records shaped like CurseForge's."""
    mods = []
    for i in range(count):
        mod_id = 1000 + i
        category_id, category_name = categories[i % len(categories)]
        theme = _THEMES[i % len(_THEMES)]
        mods.append({
            "id": mod_id,
            "gameId": game_id,
            "name": f"{category_name} {theme} {mod_id}",
            "slug": f"{category_name}-{theme}-{mod_id}".lower().replace(" ", "-"),
            "summary": f"A {theme.lower()} mod for {category_name.lower()}",
            "downloadCount": rng.randint(100, 2_000_000),
            "fileLength": rng.randint(10_000, 50_000_000),
            "dateModified": f"2024-{(i % 12) + 1:02d}-{(i % 28) + 1:02d}T00:00:00Z",
            "categories": [{"id": category_id, "name": category_name}],
            "isAvailable": True,
        })
    return mods


_SORT_KEYS = {
    1: lambda mod: mod["name"].lower(),
    2: lambda mod: mod["downloadCount"],
    3: lambda mod: mod["fileLength"],
    4: lambda mod: mod["dateModified"],
}


def create_mock_app(
    api_key: Optional[str] = None,
    game_id: int = 83374,
    mod_count: int = 120,
    categories: Sequence[Tuple[int, str]] = DEFAULT_CATEGORIES,
    random_seed: Optional[int] = 42,
    error_rate: float = 0.0,
    extra_latency_ms: int = 0,
    retry_after: int = 1,
) -> FastAPI:
    """
    Create a FastAPI mock of the CurseForge API.

    Tests steer it through ``app.state``:
    - ``failures``: status codes, ``(status, body)`` pairs or ``"malformed"``,
      served in order before any real answer
    - ``calls``: every request path seen, in order
    - ``rate_limit_headers``: (remaining, reset epoch) to send, or None

    Args:
        api_key: Key required in ``x-api-key`` (None accepts any)
        game_id: Game the mock serves
        mod_count: Number of generated mods
        categories: (id, name) pairs
        random_seed: Seed for deterministic mod data and errors
        error_rate: Probability of a random 5xx answer
        extra_latency_ms: Added latency per request
        retry_after: Retry-After seconds sent with 429

    Returns:
        FastAPI application
    """
    app = FastAPI(title="Mock CurseForge API")
    rng = random.Random(random_seed)
    mods = generate_mods(mod_count, categories, game_id, rng)
    mods_by_id = {mod["id"]: mod for mod in mods}

    app.state.failures = []
    app.state.calls = []
    app.state.rate_limit_headers = None

    @app.middleware("http")
    async def upstream_behaviour(request: Request, call_next):
        app.state.calls.append(request.url.path)

        if extra_latency_ms > 0:
            await asyncio.sleep(extra_latency_ms / 1000.0)

        if request.url.path != "/health":
            if app.state.failures:
                failure = app.state.failures.pop(0)
                if failure == MALFORMED:
                    return Response(content="{not json", media_type="application/json")
                if isinstance(failure, tuple):
                    status, body = failure
                    return JSONResponse(status_code=status, content=body)
                headers = {"Retry-After": str(retry_after)} if failure == 429 else {}
                return JSONResponse(
                    status_code=failure,
                    content={"errorCode": failure, "errorMessage": "Simulated error"},
                    headers=headers,
                )

            if rng.random() < error_rate:
                return JSONResponse(status_code=rng.choice([500, 502, 503]),
                                    content={"errorMessage": "Simulated error"})

            if api_key is not None and request.headers.get("x-api-key") != api_key:
                return JSONResponse(status_code=401, content={"errorMessage": "Invalid API key"})

        response = await call_next(request)
        if app.state.rate_limit_headers is not None:
            remaining, reset = app.state.rate_limit_headers
            response.headers["X-RateLimit-Remaining"] = str(remaining)
            response.headers["X-RateLimit-Reset"] = str(reset)
        return response

    @app.get("/v1/games/{requested_game_id}")
    async def get_game(requested_game_id: int):
        if requested_game_id != game_id:
            raise HTTPException(status_code=404, detail="Game not found")
        return {"data": {"id": game_id, "name": "ARK: Survival Ascended", "slug": "ark-survival-ascended"}}

    @app.get("/v1/categories")
    async def get_categories(gameId: int):
        if gameId != game_id:
            return {"data": []}
        return {"data": [
            {"id": cid, "gameId": game_id, "name": name, "slug": name.lower().replace(" ", "-")}
            for cid, name in categories
        ]}

    @app.get("/v1/mods/search")
    async def search_mods(
        gameId: int,
        searchFilter: str = "",
        sortField: int = 1,
        sortOrder: str = "asc",
        pageSize: int = 20,
        index: int = 0,
        categoryId: Optional[int] = None,
    ):
        if pageSize > 50 or pageSize < 1:
            raise HTTPException(status_code=400, detail="pageSize must be between 1 and 50")

        term = searchFilter.strip().lower()
        matches = [
            mod for mod in mods
            if mod["gameId"] == gameId
            and (not term or term in mod["name"].lower() or term in mod["summary"])
            and (categoryId is None or any(c["id"] == categoryId for c in mod["categories"]))
        ]
        matches.sort(key=_SORT_KEYS.get(sortField, _SORT_KEYS[1]), reverse=sortOrder == "desc")
        page = matches[index:index + pageSize]
        return {
            "data": page,
            "pagination": {
                "index": index,
                "pageSize": pageSize,
                "resultCount": len(page),
                "totalCount": len(matches),
            },
        }

    @app.post("/v1/mods")
    async def get_mods(body: BulkModsRequest):
        return {"data": [mods_by_id[mod_id] for mod_id in body.modIds if mod_id in mods_by_id]}

    @app.get("/v1/mods/{mod_id}")
    async def get_mod(mod_id: int):
        if mod_id not in mods_by_id:
            raise HTTPException(status_code=404, detail="Mod not found")
        return {"data": mods_by_id[mod_id]}

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy", "server": "mock-curseforge"}

    return app


def create_app() -> FastAPI:
    """
    Factory function for uvicorn --factory.

    Reads MOCK_API_KEY, RANDOM_SEED, ERROR_RATE and EXTRA_LATENCY_MS from
    the environment.
    """
    return create_mock_app(
        api_key=os.getenv("MOCK_API_KEY") or None,
        random_seed=int(os.getenv("RANDOM_SEED", 42)),
        error_rate=float(os.getenv("ERROR_RATE", 0.0)),
        extra_latency_ms=int(os.getenv("EXTRA_LATENCY_MS", 0)),
    )
