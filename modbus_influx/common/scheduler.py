"""
Interval Scheduler with Skip-If-Busy Admission

Provides ScheduledLoop, which fires a callback at fixed intervals without
drift, and SchedulerGroup, which runs one loop per polling interval.

Unlike a plain `while True: await callback(); await asyncio.sleep(interval)`
loop, this scheduler:
- Fires the first tick one interval after start, never immediately
- Never blocks its timer on the callback (each tick runs as its own task)
- Skips a tick entirely if the previous tick is still running
- Reports execution and skip counts for observability

Usage:
    async def poll_group():
        ...

    loop = ScheduledLoop(2.0, poll_group, name="interval-2s")
    await loop.start()

    # Later:
    await loop.stop()
    print(loop.get_stats())
"""

import asyncio
import time
from typing import Awaitable, Callable

from .logging_setup import get_service_logger

logger = get_service_logger("scheduler")


class ScheduledLoop:
    """
    Precise interval scheduler with a non-blocking busy token.

    Ticks are scheduled relative to the fixed schedule, not relative to
    when the previous callback finished. When a tick fires while the previous
    tick's work is still in flight, the new tick is dropped and counted rather
    than queued, so a slow device can never build up a backlog.

    Attributes:
        interval: Seconds between ticks
        callback: Async function run once per admitted tick
        name: Label used in logs and stats
    """

    def __init__(
        self,
        interval_seconds: float,
        callback: Callable[[], Awaitable[None]],
        name: str = "unnamed",
    ):
        if interval_seconds <= 0:
            raise ValueError(f"interval must be > 0, got {interval_seconds}")

        self.interval = interval_seconds
        self.callback = callback
        self.name = name

        self._next_run: float = 0
        self._running = False
        self._task: asyncio.Task | None = None
        self._current: asyncio.Task | None = None

        # Observability metrics
        self._drift_total: float = 0
        self._last_drift_ms: float = 0
        self._tick_count: int = 0
        self._skipped_count: int = 0
        self._execution_count: int = 0
        self._error_count: int = 0
        self._last_execution_time: float = 0

    @property
    def busy(self) -> bool:
        """True while the last admitted tick is still running"""
        return self._current is not None and not self._current.done()

    async def start(self) -> None:
        """Start the scheduled loop in a background task."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run(), name=f"scheduler-{self.name}")

    async def stop(self) -> None:
        """
        Stop ticking and wait for the in-flight tick to finish.

        The running tick is not cancelled: its requests are bounded by their
        own timeouts, and aborting them mid-flight could leave connection
        framing in an undefined state.
        """
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._current is not None:
            await asyncio.gather(self._current, return_exceptions=True)
            self._current = None

    def tick(self) -> bool:
        """
        Fire one tick now.

        Returns True if the tick was admitted, False if it was skipped
        because the previous tick is still running.
        """
        self._tick_count += 1

        if self.busy:
            self._skipped_count += 1
            logger.warning(
                f"Scheduler '{self.name}' skipped a tick: previous tick still running",
                extra={"scheduler": self.name, "skipped_count": self._skipped_count},
            )
            return False

        self._current = asyncio.create_task(self._execute(), name=f"tick-{self.name}")
        return True

    async def _execute(self) -> None:
        start = time.monotonic()
        try:
            await self.callback()
            self._execution_count += 1
        except Exception as e:
            self._error_count += 1
            logger.error(f"Scheduled callback '{self.name}' error: {e}")
        finally:
            self._last_execution_time = time.monotonic() - start

    async def _run(self) -> None:
        """Timer loop: sleeps to each boundary and fires tick()."""
        # First firing at now + interval
        self._next_run = time.monotonic() + self.interval

        while self._running:
            sleep_duration = self._next_run - time.monotonic()
            if sleep_duration > 0:
                try:
                    await asyncio.sleep(sleep_duration)
                except asyncio.CancelledError:
                    break

            if not self._running:
                break

            drift = time.monotonic() - self._next_run
            self._drift_total += max(0.0, drift)
            self._last_drift_ms = drift * 1000

            self.tick()

            # Missed boundaries are not replayed
            now = time.monotonic()
            while self._next_run <= now:
                self._next_run += self.interval

    def get_stats(self) -> dict:
        """Get scheduler statistics for observability."""
        return {
            "name": self.name,
            "interval_s": self.interval,
            "tick_count": self._tick_count,
            "execution_count": self._execution_count,
            "error_count": self._error_count,
            "skipped_count": self._skipped_count,
            "busy": self.busy,
            "drift_total_s": round(self._drift_total, 3),
            "drift_last_ms": round(self._last_drift_ms, 1),
            "last_execution_s": round(self._last_execution_time, 3),
        }


class SchedulerGroup:
    """
    Manage multiple scheduled loops together.

    Provides a single interface to start/stop multiple schedulers
    and aggregate their statistics.
    """

    def __init__(self):
        self._schedulers: dict[str, ScheduledLoop] = {}

    def add(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], Awaitable[None]],
    ) -> ScheduledLoop:
        """Add a scheduler to the group."""
        scheduler = ScheduledLoop(interval_seconds, callback, name)
        self._schedulers[name] = scheduler
        return scheduler

    async def start_all(self) -> None:
        """Start all schedulers."""
        for scheduler in self._schedulers.values():
            await scheduler.start()

    async def stop_all(self) -> None:
        """Stop all schedulers and drain their in-flight ticks."""
        await asyncio.gather(*(s.stop() for s in self._schedulers.values()))

    def get_stats(self) -> dict:
        """Get aggregated statistics for all schedulers."""
        return {
            name: scheduler.get_stats()
            for name, scheduler in self._schedulers.items()
        }

    def get(self, name: str) -> ScheduledLoop | None:
        """Get a specific scheduler by name."""
        return self._schedulers.get(name)

    def __len__(self) -> int:
        return len(self._schedulers)
