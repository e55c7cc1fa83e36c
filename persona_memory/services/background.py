"""
Fire-and-forget background jobs for memory consolidation.

Jobs never block the turn that submitted them and never surface errors to it.
Jobs submitted under the same key run one at a time, in submission order.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[Any]]


class BackgroundTaskRunner:
    def __init__(self):
        self._tasks: set[asyncio.Task] = set()
        self._locks: dict[str, asyncio.Lock] = {}
        self._per_key: dict[str, int] = {}

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def _run(self, name: str, job: Job, key: Optional[str]) -> Any:
        try:
            if key is None:
                return await job()
            async with self._lock_for(key):
                return await job()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Background job '%s' failed: %s", name, e)
            return None

    def _forget(self, task: asyncio.Task, key: Optional[str]) -> None:
        self._tasks.discard(task)
        if key is None:
            return
        remaining = self._per_key.get(key, 0) - 1
        if remaining > 0:
            self._per_key[key] = remaining
        else:
            self._per_key.pop(key, None)
            self._locks.pop(key, None)

    def submit(self, name: str, job: Job, key: Optional[str] = None) -> asyncio.Task:
        """
        Schedule `job` (a zero-argument coroutine factory) on the running loop.
        Returns the task; awaiting it yields the job's result, or None on failure.
        """
        task_name = f"{name}[{key}]" if key is not None else name
        task = asyncio.create_task(self._run(name, job, key), name=task_name)
        self._tasks.add(task)
        if key is not None:
            self._per_key[key] = self._per_key.get(key, 0) + 1
        task.add_done_callback(lambda t: self._forget(t, key))
        logger.debug("Submitted background job %s (%d pending)", task_name, len(self._tasks))
        return task

    async def drain(self) -> None:
        """Wait for every job in flight, including ones submitted while waiting."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
        self._locks.clear()
        self._per_key.clear()
