from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set


class BaseQueue:
    def enqueue(self, work: Callable[[], Awaitable[Any]], name: str | None = None) -> asyncio.Task: ...  # pragma: no cover


class TaskQueue(BaseQueue):
    """Runs background work as detached asyncio tasks.

    References are held until each task finishes so the loop cannot collect
    them early; failures are logged instead of vanishing.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._tasks: Set[asyncio.Task] = set()
        self.log = logger or logging.getLogger(__name__)

    def enqueue(self, work: Callable[[], Awaitable[Any]], name: str | None = None) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(work(), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.log.error(
                "background task failed",
                extra={"task": task.get_name()},
                exc_info=(type(exc), exc, exc.__traceback__),
            )
