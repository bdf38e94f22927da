"""Owner-keyed background tasks that can be cancelled per connection or all at once."""

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Holds strong references to scheduled tasks, grouped by owner id."""

    def __init__(self) -> None:
        self._tasks: dict[str, set[asyncio.Task]] = {}

    def spawn(self, owner: str, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.setdefault(owner, set()).add(task)
        task.add_done_callback(lambda t: self._discard(owner, t))
        return task

    def _discard(self, owner: str, task: asyncio.Task) -> None:
        tasks = self._tasks.get(owner)
        if tasks is None:
            return
        tasks.discard(task)
        if not tasks:
            self._tasks.pop(owner, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task %s failed", task.get_name(), exc_info=task.exception())

    def pending(self, owner: str | None = None) -> int:
        if owner is not None:
            return len(self._tasks.get(owner, ()))
        return sum(len(tasks) for tasks in self._tasks.values())

    def cancel_owner(self, owner: str) -> int:
        tasks = list(self._tasks.get(owner, ()))
        for task in tasks:
            task.cancel()
        if tasks:
            logger.info("Cancelled %d pending task(s) for %s", len(tasks), owner)
        return len(tasks)

    async def cancel_all(self) -> None:
        tasks = [t for group in self._tasks.values() for t in group]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
