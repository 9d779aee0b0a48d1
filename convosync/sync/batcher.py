"""Per-key micro-batching with a debounce and a hard maximum wait."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
T = TypeVar("T")


class MicroBatcher(Generic[K, T]):
    """Group items by key and flush each group once it goes quiet.

    A group is flushed ``debounce`` seconds after its most recent item, or
    ``max_wait`` seconds after its first item, whichever comes first. Flushes
    for the same key never overlap; different keys flush independently.
    """

    def __init__(
        self,
        key: Callable[[T], K],
        flush: Callable[[K, list[T]], Awaitable[None]],
        *,
        debounce: float = 0.025,
        max_wait: float = 0.1,
    ) -> None:
        if debounce <= 0 or max_wait < debounce:
            raise ValueError("MicroBatcher requires 0 < debounce <= max_wait")
        self._key = key
        self._flush = flush
        self._debounce = debounce
        self._max_wait = max_wait
        self._queues: dict[K, list[T]] = {}
        self._first_seen: dict[K, float] = {}
        self._timers: dict[K, asyncio.TimerHandle] = {}
        self._locks: dict[K, asyncio.Lock] = {}
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def pending_keys(self) -> list[K]:
        return list(self._queues)

    def add(self, item: T) -> None:
        if self._closed:
            logger.debug("Dropping item added after batcher was closed")
            return
        loop = asyncio.get_running_loop()
        key = self._key(item)
        now = loop.time()
        queue = self._queues.setdefault(key, [])
        if not queue:
            self._first_seen[key] = now
        queue.append(item)

        deadline = self._first_seen[key] + self._max_wait
        delay = max(0.0, min(self._debounce, deadline - now))
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        self._timers[key] = loop.call_later(delay, self._schedule, key)

    def _schedule(self, key: K) -> None:
        self._timers.pop(key, None)
        task = asyncio.get_running_loop().create_task(self.flush(key))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def flush(self, key: K) -> None:
        """Flush the group for ``key`` now (no-op when empty)."""

        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            items = self._queues.pop(key, [])
            self._first_seen.pop(key, None)
            if not items:
                return
            try:
                await self._flush(key, items)
            except Exception:
                logger.exception("Flushing batch for %s failed (%d items)", key, len(items))

    async def flush_all(self) -> None:
        for key in list(self._queues):
            await self.flush(key)

    def reopen(self) -> None:
        """Accept items again after :meth:`close`."""

        self._closed = False

    async def close(self, *, drain: bool = False) -> None:
        """Cancel pending timers; optionally flush what is queued first."""

        if drain:
            await self.flush_all()
        self._closed = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._queues.clear()
        self._first_seen.clear()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
