"""Debounce helper for coalescing bursts of events into one callback."""

import asyncio
import time
from typing import Awaitable, Callable, Optional

from .logger import get_app_logger

DebounceCallback = Callable[[], Awaitable[None]]
Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class Debouncer:
    """
    Arm / cancel / fire timer.

    Every ``arm()`` pushes the deadline to ``clock() + delay``. Once the clock
    passes the deadline without another ``arm()``, the callback runs exactly
    once. ``clock`` and ``sleep`` are injectable so tests can drive time
    without waiting on the wall clock.
    """

    def __init__(
        self,
        delay: float,
        callback: DebounceCallback,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self.delay = delay
        self._callback = callback
        self._clock = clock
        self._sleep = sleep
        self._deadline: Optional[float] = None
        self._task: Optional[asyncio.Task] = None
        self.fire_count = 0
        self.logger = get_app_logger()

    @property
    def pending(self) -> bool:
        """True while armed and not yet fired."""
        return self._deadline is not None

    def arm(self) -> None:
        """(Re)start the quiet period. Must be called from a running event loop."""
        self._deadline = self._clock() + self.delay
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._wait_and_fire())

    def cancel(self) -> None:
        """Drop the pending trigger, if any."""
        self._deadline = None
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None

    async def fire_if_due(self) -> bool:
        """
        Run the callback if the deadline has passed.

        Returns:
            True if the callback ran
        """
        if self._deadline is None or self._clock() < self._deadline:
            return False

        self._deadline = None
        self.fire_count += 1
        await self._callback()
        return True

    async def join(self) -> None:
        """Wait until the pending trigger (if any) has fired or been cancelled."""
        task = self._task
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _wait_and_fire(self) -> None:
        while self._deadline is not None:
            remaining = self._deadline - self._clock()
            if remaining > 0:
                await self._sleep(remaining)
                continue
            try:
                await self.fire_if_due()
            except Exception:
                self.logger.exception("[Debouncer] callback failed")
