"""Background work decoupled from the request that triggered it."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from fieldbot.logging import get_logger

logger = get_logger(__name__)


class BackgroundTasks:
    """Tracks in-flight background tasks with a per-key lock.

    Work submitted under the same key runs one at a time, in submission
    order. ``drain()`` waits for everything submitted so far.
    """

    def __init__(self) -> None:
        self.tasks: set[asyncio.Task[Any]] = set()
        self.locks: dict[str, asyncio.Lock] = {}
        self.completed = 0
        self.failed = 0

    def get_lock(self, key: str) -> asyncio.Lock:
        lock = self.locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self.locks[key] = lock
        return lock

    def prune_lock(self, key: str, lock: asyncio.Lock) -> None:
        """Drop lock entry if no longer in use; batch-clean when dict grows large."""
        if not lock.locked() and not getattr(lock, "_waiters", None):
            self.locks.pop(key, None)
        if len(self.locks) > 100:
            stale = [k for k, v in self.locks.items() if not v.locked()]
            for k in stale:
                del self.locks[k]

    def submit(self, key: str, work: Callable[[], Awaitable[Any]]) -> asyncio.Task[Any] | None:
        """Schedule *work* on the running loop; without a loop it runs to completion inline."""
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(self._run(key, work))
            return None

        task = asyncio.create_task(self._run(key, work))
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    async def _run(self, key: str, work: Callable[[], Awaitable[Any]]) -> None:
        lock = self.get_lock(key)
        try:
            async with lock:
                await work()
            self.completed += 1
        except asyncio.CancelledError:
            raise
        except Exception:
            self.failed += 1
            logger.exception("background_task_failed", key=key)
        finally:
            self.prune_lock(key, lock)

    async def drain(self) -> None:
        while self.tasks:
            await asyncio.gather(*list(self.tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        for task in list(self.tasks):
            task.cancel()
        await self.drain()
