"""
Cancellable deadline timers keyed by entity id.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Hashable

logger = logging.getLogger(__name__)


class DeadlineTimers:
    """
    One pending asyncio task per key. Scheduling a key that already has a
    timer replaces it. A timer removes itself before running its callback,
    so the callback may schedule or cancel freely.
    """

    def __init__(self):
        self._tasks: Dict[Hashable, asyncio.Task] = {}

    def schedule(self, key: Hashable, delay_seconds: float, callback: Callable[[], Awaitable[None]]) -> None:
        self.cancel(key)
        self._tasks[key] = asyncio.create_task(self._run(key, delay_seconds, callback))

    def cancel(self, key: Hashable) -> bool:
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def pending(self, key: Hashable) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def __len__(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, key: Hashable, delay_seconds: float, callback: Callable[[], Awaitable[None]]) -> None:
        await asyncio.sleep(max(delay_seconds, 0))
        if self._tasks.get(key) is asyncio.current_task():
            del self._tasks[key]
        try:
            await callback()
        except Exception:
            logger.exception("Deadline callback for %s failed", key)
