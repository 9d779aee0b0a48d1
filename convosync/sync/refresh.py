"""Periodic full refresh with an adaptive interval."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class RefreshChannel:
    """Runs ``cycle`` on a timer, one cycle at a time.

    The interval is short while the push channel is down and longer once it
    is connected (push then carries new events and polling is a backstop).
    """

    def __init__(
        self,
        cycle: Callable[[], Awaitable[None]],
        *,
        fast_interval: float = 1.0,
        slow_interval: float = 2.0,
    ) -> None:
        self._cycle = cycle
        self.fast_interval = fast_interval
        self.slow_interval = slow_interval
        self._interval = fast_interval
        self._in_flight = False
        self._task: asyncio.Task | None = None
        self._wakeup = asyncio.Event()
        self.cycles_run = 0
        self.cycles_failed = 0
        self.cycles_skipped = 0

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def set_push_connected(self, connected: bool) -> None:
        interval = self.slow_interval if connected else self.fast_interval
        if interval != self._interval:
            logger.info("Refresh interval %.2fs -> %.2fs", self._interval, interval)
            self._interval = interval
            self._wakeup.set()

    async def tick(self) -> bool:
        """Run one cycle unless one is already in flight.

        Returns ``False`` when the cycle was suppressed or failed.
        """

        if self._in_flight:
            self.cycles_skipped += 1
            return False
        self._in_flight = True
        try:
            await self._cycle()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.cycles_failed += 1
            logger.warning("Refresh cycle failed; retrying on next tick", exc_info=True)
            return False
        finally:
            self._in_flight = False
        self.cycles_run += 1
        return True

    async def _run(self) -> None:
        while True:
            await self.tick()
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
