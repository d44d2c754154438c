"""Test fixtures with deterministic data for CI stability."""

import asyncio
import random
from typing import Any, Callable, Dict, List, Optional

VALID_KEY = "a" * 32
MOCK_BASE_URL = "http://mock/v1"


def make_mod(
    mod_id: int,
    name: Optional[str] = None,
    downloads: int = 1000,
    category_id: int = 17,
) -> Dict[str, Any]:
    """Single mod record shaped like the upstream API's."""
    return {
        "id": mod_id,
        "gameId": 83374,
        "name": name or f"Mod {mod_id}",
        "summary": f"Summary for mod {mod_id}",
        "downloadCount": downloads,
        "categories": [{"id": category_id, "name": "Maps"}],
    }


def get_sample_mods(count: int = 20, seed: int = 42) -> List[Dict[str, Any]]:
    """
    Generate deterministic mod records.

    Args:
        count: Number of mods to generate
        seed: Random seed for deterministic results

    Returns:
        List of mod dictionaries
    """
    rng = random.Random(seed)
    return [
        make_mod(2000 + i, downloads=rng.randint(100, 1_000_000))
        for i in range(count)
    ]


def search_payload(mods: List[Dict[str, Any]], total_count: Optional[int] = None) -> Dict[str, Any]:
    return {
        "data": mods,
        "pagination": {
            "index": 0,
            "pageSize": len(mods),
            "resultCount": len(mods),
            "totalCount": len(mods) if total_count is None else total_count,
        },
    }


class FakeClock:
    """Clock whose sleep advances time at once. Records every sleep."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.t = start
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self.t

    async def sleep(self, dt: float) -> None:
        self.sleeps.append(dt)
        self.t += dt
        await asyncio.sleep(0)


class ManualClock:
    """Clock whose sleepers only wake when the test calls ``advance``."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.t = start
        self._waiters: List[tuple] = []

    def now(self) -> float:
        return self.t

    @property
    def sleeping(self) -> int:
        return sum(1 for _, future in self._waiters if not future.done())

    async def sleep(self, dt: float) -> None:
        future = asyncio.get_running_loop().create_future()
        self._waiters.append((self.t + dt, future))
        await future

    def advance(self, dt: float) -> None:
        self.t += dt
        waiting = []
        for wake_at, future in self._waiters:
            if future.done():
                continue
            if wake_at <= self.t:
                future.set_result(None)
            else:
                waiting.append((wake_at, future))
        self._waiters = waiting


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll in real time until ``predicate`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.01)
