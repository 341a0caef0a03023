"""Background polling loops for the automation engine.

Each loop owns its own stop token: it runs one tick, sleeps for its interval
(waking early when stopped), and repeats. A failing tick is logged and the
loop carries on at the next interval.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class PollingLoop:
    """
    One cancellable polling task.

    Design:
    - Polls via the supplied ``tick`` coroutine (a bounded batch per call)
    - Processes sequentially, then sleeps ``interval`` seconds
    - ``stop()`` lets the current iteration finish, then exits
    """

    def __init__(self, name: str, tick: Callable[[], Awaitable[Any]], interval: float):
        self.name = name
        self.tick = tick
        self.interval = interval
        self.running = False
        self.iterations = 0
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    def start(self) -> asyncio.Task:
        """Schedule the loop on the running event loop. Idempotent."""
        if self._task is None or self._task.done():
            self._stop_event.clear()
            self._task = asyncio.create_task(self.run(), name=f"flowengine-{self.name}")
        return self._task

    async def run(self) -> None:
        self.running = True
        logger.debug(f"{self.name} loop started (every {self.interval}s)")
        try:
            while not self._stop_event.is_set():
                try:
                    await self.tick()
                except Exception as e:
                    logger.error(f"Error in {self.name} loop: {e}")
                self.iterations += 1

                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                except TimeoutError:
                    pass
        finally:
            self.running = False
            logger.debug(f"{self.name} loop stopped")

    def stop(self) -> None:
        """Signal the loop to exit after its current iteration."""
        self._stop_event.set()

    async def join(self) -> None:
        if self._task is not None:
            await self._task
