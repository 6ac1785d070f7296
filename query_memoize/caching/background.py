"""
Tracked fire-and-forget tasks.
"""

import asyncio
from typing import Any, Coroutine, Optional, Set

import structlog

from query_memoize.shared.logging import get_logger


class BackgroundTasks:
    """Owns background work spawned off the request path.

    Tasks are referenced until they finish, and any exception they raise is
    logged from a done-callback instead of being lost.
    """

    def __init__(self, logger: Optional[structlog.BoundLogger] = None):
        self.logger = logger or get_logger("query_cache.background")
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str, **context: Any) -> asyncio.Task:
        """Schedule ``coro`` on the running loop."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(lambda done: self._finished(done, context))
        return task

    def _finished(self, task: asyncio.Task, context: dict):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.error(
                "Background task failed",
                task=task.get_name(),
                error=str(error),
                error_type=type(error).__name__,
                **context
            )

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until no background task is pending, including ones spawned meanwhile.

        Returns False if tasks are still pending after ``timeout`` seconds.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return False
            await asyncio.wait(list(self._tasks), timeout=remaining)
        return True

    async def cancel_all(self):
        """Cancel pending tasks and wait for them to unwind."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def __len__(self) -> int:
        return len(self._tasks)
