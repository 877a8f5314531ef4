"""
Deferred work primitives for the single event loop.

Debouncer        one pending delayed task per key; scheduling again replaces it.
SerialTaskQueue  per-key FIFO: each job starts only after the previous job for
                 the same key finished, however fast jobs are submitted.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional

log = logging.getLogger(__name__)

Job = Callable[[], Awaitable[Any]]


def _consume_result(task: "asyncio.Future[Any]") -> None:
    if not task.cancelled():
        # marks the exception as retrieved; the job already logged it
        task.exception()


class Debouncer:
    def __init__(self) -> None:
        self._tasks: Dict[Hashable, asyncio.Task] = {}

    def schedule(self, key: Hashable, delay: float, job: Job) -> asyncio.Task:
        """Run `job` after `delay` seconds, replacing any pending job for `key`."""
        self.cancel(key)
        task = asyncio.ensure_future(self._run(key, delay, job))
        self._tasks[key] = task
        task.add_done_callback(_consume_result)
        return task

    def pending(self, key: Hashable) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def cancel(self, key: Hashable) -> bool:
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def cancel_all(self) -> None:
        for key in list(self._tasks):
            self.cancel(key)

    async def _run(self, key: Hashable, delay: float, job: Job) -> None:
        await asyncio.sleep(delay)
        if self._tasks.get(key) is asyncio.current_task():
            del self._tasks[key]
        try:
            await job()
        except Exception as e:
            log.error(f"DEBOUNCED_JOB_ERROR | key={key} | error={e}", exc_info=True)
            raise


class SerialTaskQueue:
    def __init__(self, name: str = "queue") -> None:
        self.name = name
        self._tails: Dict[Hashable, asyncio.Task] = {}

    def submit(self, key: Hashable, job: Job) -> asyncio.Task:
        """Chain `job` behind the last job submitted for `key`."""
        previous = self._tails.get(key)
        task = asyncio.ensure_future(self._run_after(key, previous, job))
        self._tails[key] = task
        task.add_done_callback(lambda t: self._release(key, t))
        return task

    async def drain(self, key: Hashable) -> None:
        """Wait until every job submitted so far for `key` has finished."""
        tail = self._tails.get(key)
        if tail is not None:
            await asyncio.wait([tail])

    def busy(self, key: Hashable) -> bool:
        return key in self._tails

    async def _run_after(self, key: Hashable, previous: Optional[asyncio.Task], job: Job) -> Any:
        if previous is not None and not previous.done():
            # wait for completion only; a failed predecessor doesn't stop the chain
            await asyncio.wait([previous])
        try:
            return await job()
        except Exception as e:
            log.error(f"QUEUE_JOB_ERROR | queue={self.name} | key={key} | error={e}", exc_info=True)
            raise

    def _release(self, key: Hashable, task: asyncio.Task) -> None:
        _consume_result(task)
        if self._tails.get(key) is task:
            del self._tails[key]
