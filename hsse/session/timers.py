# ============================================================================
# HSSE Live - Timer Service
# ============================================================================
# Single-shot and repeating timers for the idle countdown.
# Production timers run on APScheduler's AsyncIOScheduler so every callback
# executes on the event loop (no worker threads).
# ============================================================================

import datetime
import logging
import time
import uuid
from abc import ABC, abstractmethod
from typing import Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)


class TimerHandle(ABC):
    """A scheduled callback that can be cancelled once."""

    @abstractmethod
    def cancel(self) -> None:
        pass


class TimerService(ABC):
    """Clock + timer factory used by the countdown scheduler."""

    @abstractmethod
    def now_ms(self) -> float:
        """Monotonic time in milliseconds."""
        pass

    @abstractmethod
    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        pass

    @abstractmethod
    def call_every(self, interval_ms: float, callback: Callable[[], None]) -> TimerHandle:
        pass


class _JobHandle(TimerHandle):
    def __init__(self, job):
        self._job = job

    def cancel(self) -> None:
        if self._job is None:
            return
        try:
            self._job.remove()
        except JobLookupError:
            # single-shot already fired and was removed by the scheduler
            pass
        self._job = None


def _on_loop(callback: Callable[[], None]):
    """Wrap a plain callback so AsyncIOScheduler runs it on the loop thread."""
    async def _run():
        try:
            callback()
        except Exception as e:
            logger.error(f"[Scheduler] timer callback failed: {e}")
    return _run


class SchedulerTimers(TimerService):
    """TimerService backed by a shared AsyncIOScheduler."""

    def __init__(self, scheduler: AsyncIOScheduler):
        self._scheduler = scheduler

    def now_ms(self) -> float:
        return time.monotonic() * 1000.0

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        # APScheduler only takes wall-clock run dates; a wall-clock jump moves
        # the job but not now_ms(). Countdown ticks recompute remaining time
        # from now_ms(), so only the firing moment shifts.
        run_date = datetime.datetime.now() + datetime.timedelta(milliseconds=max(0.0, delay_ms))
        job = self._scheduler.add_job(
            _on_loop(callback),
            "date",
            run_date=run_date,
            id=f"timer_{uuid.uuid4().hex}",
            misfire_grace_time=None,
        )
        return _JobHandle(job)

    def call_every(self, interval_ms: float, callback: Callable[[], None]) -> TimerHandle:
        job = self._scheduler.add_job(
            _on_loop(callback),
            "interval",
            seconds=interval_ms / 1000.0,
            id=f"ticker_{uuid.uuid4().hex}",
            coalesce=True,
            max_instances=1,
        )
        return _JobHandle(job)


# Shared scheduler
_scheduler: Optional[AsyncIOScheduler] = None


def get_live_scheduler() -> AsyncIOScheduler:
    """Get or create the singleton liveness scheduler."""
    global _scheduler
    if _scheduler is None:
        _scheduler = AsyncIOScheduler(
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 30}
        )
    return _scheduler


def get_timer_service() -> TimerService:
    return SchedulerTimers(get_live_scheduler())
