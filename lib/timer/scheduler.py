"""
lib/timer/scheduler.py

Asyncio-based drift-correcting ticker.

A fixed asyncio.sleep(1.0) loop drifts: every wake-up lands a little late
and the error accumulates over a multi-day run. This ticker measures how far
it actually is from its start each time it wakes and shortens the next sleep
by that much, so tick k lands as close as possible to start + k * interval.
"""

import asyncio
import logging
import math
import time
from typing import Awaitable, Callable, Optional


class DriftCorrectingTicker:
    """
    Calls a function roughly once per interval, self-correcting for jitter.

    Uses a single background task. The callback is synchronous and runs on
    the event loop; exceptions it raises are logged and the ticker keeps
    running.

    Args:
        on_tick: Callback invoked once per tick.
        interval: Target seconds between ticks (default: 1).
        clock: Monotonic clock returning seconds.
        sleep: Awaitable sleep, injectable for simulated time.
    """

    def __init__(
        self,
        on_tick: Callable[[], None],
        interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.on_tick = on_tick
        self.interval = interval
        self.clock = clock
        self.sleep = sleep
        self.running = False
        self.tick_count = 0
        self.started_at: Optional[float] = None
        self._task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Task] = None
        self.logger = logging.getLogger(f"{__name__}.ticker")

    @property
    def is_running(self) -> bool:
        """True while the tick task exists and has not finished."""
        return self.running and self._task is not None and not self._task.done()

    def start(self) -> None:
        """
        Start ticking.

        Must be called from inside a running event loop.
        """
        if self.running:
            self.logger.warning("Ticker already running")
            return

        loop = asyncio.get_running_loop()
        self.running = True
        self.tick_count = 0
        self.started_at = self.clock()
        self._task = loop.create_task(self._tick_loop())
        self.logger.debug(f"Ticker started (interval: {self.interval}s)")

    def stop(self) -> None:
        """
        Stop ticking.

        Clears the running flag and cancels the task, so no callback fires
        after this returns, even when called from inside on_tick.
        """
        if not self.running and self._task is None:
            return

        self.running = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
            self._stopping = self._task
        self._task = None
        self.logger.debug(f"Ticker stopped after {self.tick_count} ticks")

    async def wait_stopped(self) -> None:
        """Wait for the last cancelled tick task to actually finish."""
        task, self._stopping = self._stopping, None
        if task is None or task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    def next_delay(self, now: float) -> float:
        """
        Compute the sleep before the next tick.

        Args:
            now: Current clock reading.

        Returns:
            Seconds to sleep, never negative.
        """
        elapsed = now - self.started_at
        drift = elapsed - self.tick_count * self.interval

        if drift >= self.interval:
            # Fell a whole tick behind (suspend, loop stall); re-anchor
            # instead of firing a burst of catch-up ticks
            self.tick_count = int(math.floor(elapsed / self.interval))
            drift = elapsed - self.tick_count * self.interval
            self.logger.warning(
                f"Ticker stalled, re-anchored at tick {self.tick_count}"
            )

        return max(0.0, self.interval - drift)

    async def _tick_loop(self) -> None:
        """
        Main loop: sleep until the next tick boundary, then call on_tick.
        """
        self.logger.debug("Tick loop started")
        me = asyncio.current_task()

        # A restarted ticker owns a new task; a superseded loop must exit
        while self.running and self._task is me:
            try:
                await self.sleep(self.next_delay(self.clock()))

                if not self.running or self._task is not me:
                    break

                self.tick_count += 1
                self.on_tick()

            except asyncio.CancelledError:
                self.logger.debug("Tick loop cancelled")
                raise
            except Exception as e:
                self.logger.exception(f"Error in tick callback: {e}")

        self.logger.debug("Tick loop ended")
