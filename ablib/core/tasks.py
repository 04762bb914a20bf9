import asyncio
from typing import Any, Coroutine, Optional

from loguru import logger


class BackgroundRunner:
    """
    Tracks fire-and-forget work (background refreshes, opportunistic sync)
    so that callers and tests can wait for it to finish.
    """

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    def submit(self, coro: Coroutine[Any, Any, Any], name: str) -> Optional[asyncio.Task]:
        """Schedules `coro` on the running loop; returns None when there is no loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.debug(f"No running event loop, skipped background task '{name}'")
            return None

        task = loop.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(f"Background task '{task.get_name()}' failed: {exc}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Waits until every submitted task (including ones they submit) is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
