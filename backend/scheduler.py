import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

import config

logger = logging.getLogger(__name__)


class RoundTimer:
    """One pending round-expiry transition for a room.

    Arming replaces any pending transition; cancelling makes a pending one a
    no-op. A transition fires at most once.
    """

    def __init__(self, sleep=asyncio.sleep):
        self._task: Optional[asyncio.Task] = None
        self._generation = 0
        self._sleep = sleep

    @property
    def armed(self) -> bool:
        return self._task is not None and not self._task.done()

    def arm(self, delay: float, callback: Callable[..., Awaitable], *args):
        self.cancel()
        self._task = asyncio.create_task(self._run(self._generation, delay, callback, args))

    def cancel(self):
        self._generation += 1
        task, self._task = self._task, None
        if task and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _run(self, generation: int, delay: float, callback, args):
        try:
            await self._sleep(delay)
        except asyncio.CancelledError:
            return
        if generation != self._generation:
            return
        self._task = None
        self._generation += 1
        try:
            await callback(*args)
        except Exception:
            logger.exception("Round timer callback failed")


def next_reset_after(moment: datetime, hour: Optional[int] = None, minute: Optional[int] = None) -> datetime:
    """Next wall-clock reset instant strictly after ``moment`` (UTC)."""
    hour = config.LEADERBOARD_RESET_HOUR if hour is None else hour
    minute = config.LEADERBOARD_RESET_MINUTE if minute is None else minute
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    candidate = moment.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= moment:
        candidate += timedelta(days=1)
    return candidate


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Scheduler:
    """Process-wide background loops: inactivity sweep and daily reset."""

    def __init__(self, sweep: Callable[[], Awaitable], daily_reset: Callable[[], Awaitable],
                 clock: Callable[[], datetime] = utcnow, sleep=asyncio.sleep):
        self._sweep = sweep
        self._daily_reset = daily_reset
        self._clock = clock
        self._sleep = sleep
        self._sweep_task: Optional[asyncio.Task] = None
        self._reset_task: Optional[asyncio.Task] = None
        self.next_reset: Optional[datetime] = None

    def start(self):
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self.run_sweep_loop())
        if self._reset_task is None:
            self._reset_task = asyncio.create_task(self.run_daily_reset_loop())

    async def stop(self):
        tasks = [t for t in (self._sweep_task, self._reset_task) if t]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._sweep_task = None
        self._reset_task = None

    async def run_sweep_loop(self):
        """Periodically evict inactive rooms and idle players."""
        while True:
            try:
                await self._sleep(config.ROOM_CLEANUP_INTERVAL)
                await self._sweep()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in room cleanup loop")

    async def _sleep_until(self, target: datetime):
        # Sleeping can wake early; never fire before the target.
        while True:
            remaining = (target - self._clock()).total_seconds()
            if remaining <= 0:
                return
            await self._sleep(remaining)

    async def run_daily_reset_loop(self):
        """Fire the reset once per day at the configured UTC instant.

        The next target is derived from the previous target rather than from
        the wake-up time, so a late wake-up never skips a day.
        """
        self.next_reset = next_reset_after(self._clock())
        logger.info("Next leaderboard reset scheduled for %s", self.next_reset.isoformat())
        while True:
            try:
                await self._sleep_until(self.next_reset)
                await self._daily_reset()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Daily leaderboard reset failed")
            self.next_reset = next_reset_after(self.next_reset)
            logger.info("Next leaderboard reset scheduled for %s", self.next_reset.isoformat())
