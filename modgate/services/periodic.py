"""Single-task periodic runner shared by the background services."""

import asyncio
from typing import Any, Awaitable, Callable, Optional


class PeriodicTask:
    """Runs ``action`` every ``interval`` seconds on one asyncio task."""

    def __init__(
        self,
        name: str,
        interval: float,
        action: Callable[[], Awaitable[Any]],
        logger: Optional['StructuredLogger'] = None,
        sleeper: Callable[[float], Awaitable[None]] = asyncio.sleep,
        run_immediately: bool = True,
    ):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got: {interval}")

        self.name = name
        self.interval = interval
        self.action = action
        self.logger = logger
        self.run_immediately = run_immediately
        self._sleeper = sleeper
        self._task: Optional[asyncio.Task] = None
        self.spawn_count = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Create the loop task. Returns False if one is already running."""
        if self.running:
            return False

        self._task = asyncio.create_task(self._loop(), name=f"modgate-{self.name}")
        self.spawn_count += 1
        return True

    async def stop(self) -> bool:
        """Cancel the loop task. Returns False if nothing was running."""
        task = self._task
        self._task = None
        if task is None or task.done():
            return False

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return True

    async def _loop(self) -> None:
        if not self.run_immediately:
            await self._sleeper(self.interval)

        while True:
            try:
                await self.action()
            except Exception as e:
                # One bad run must not end the schedule
                if self.logger:
                    self.logger.error("periodic_task_failed", task=self.name, error=str(e))
            await self._sleeper(self.interval)
