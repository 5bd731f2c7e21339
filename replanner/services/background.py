import asyncio
import logging
from typing import Awaitable, Set

logger = logging.getLogger("replanner")


class BackgroundRunner:
    """
    Owns follow-up work that must not hold up the caller (activity logging).
    Failures are logged, never dropped; ``drain`` waits for outstanding work.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable, name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("background_task_cancelled", extra={"task_name": task.get_name()})
            return
        exc = task.exception()
        if exc is not None:
            logger.error("background_task_failed", exc_info=exc, extra={"task_name": task.get_name()})

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
