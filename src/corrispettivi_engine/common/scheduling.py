"""Fixed-interval background loops and fire-and-forget task tracking."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs an async callable every ``interval`` seconds until stopped.

    A failing tick is logged and the loop carries on with the next one.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        tick: Callable[[], Awaitable[object]],
    ):
        self.name = name
        self.interval = interval
        self._tick = tick
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            logger.warning("%s already running", self.name)
            return
        logger.info("Starting %s (interval: %ss)", self.name, self.interval)
        self._running = True
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if not self._running:
            return
        logger.info("Stopping %s", self.name)
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        while self._running:
            try:
                await self._tick()
            except Exception:
                logger.exception("%s tick failed", self.name)
            await asyncio.sleep(self.interval)


class TaskTracker:
    """Keeps references to fire-and-forget tasks so they can be drained."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable[object]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every tracked task, including ones spawned meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
