# ============================================================================
# HSSE Live - Countdown Scheduler
# ============================================================================
# Two single-shot timers per idle episode (warning entry, hard timeout) and a
# 1-second ticker while in warning. Every restart cancels all handles first.
# ============================================================================

import logging
import math
from dataclasses import dataclass
from typing import Callable, List, Optional

from .clock import ActivityClock
from .config import IdleTimeoutConfig
from .timers import TimerHandle, TimerService

logger = logging.getLogger(__name__)

TICK_MS = 1000


@dataclass
class CountdownState:
    remaining_seconds: int = 0


class CountdownScheduler:
    """Drives WARNING and IDLE transitions on an ActivityClock."""

    def __init__(
        self,
        config: IdleTimeoutConfig,
        clock: ActivityClock,
        timers: TimerService,
        on_expire: Optional[Callable[[], None]] = None,
        on_warning: Optional[Callable[[], None]] = None,
    ):
        self.config = config
        self.clock = clock
        self._timers = timers
        self._on_expire = on_expire
        self._on_warning = on_warning
        self._handles: List[TimerHandle] = []
        self._expired = False
        self.state = CountdownState(remaining_seconds=self._full_seconds())

    def _full_seconds(self) -> int:
        return math.ceil(self.config.idle_timeout_ms / 1000)

    def restart(self):
        """Cancel everything and schedule from the clock's last activity."""
        self.cancel_all()
        self._expired = False
        self.state.remaining_seconds = self._full_seconds()

        elapsed = self.clock.elapsed_ms()
        self._handles.append(
            self._timers.call_later(self.config.warning_offset_ms - elapsed, self._enter_warning)
        )
        self._handles.append(
            self._timers.call_later(self.config.idle_timeout_ms - elapsed, self._expire)
        )

    def _compute_remaining(self) -> int:
        remaining_ms = self.config.idle_timeout_ms - self.clock.elapsed_ms()
        return max(0, math.ceil(remaining_ms / 1000))

    def _enter_warning(self):
        if self._expired:
            return
        self.clock.mark_warning()
        self.state.remaining_seconds = self._compute_remaining()
        self._handles.append(self._timers.call_every(TICK_MS, self._tick))
        logger.info(f"[Session] idle warning, {self.state.remaining_seconds}s remaining")
        if self._on_warning:
            try:
                self._on_warning()
            except Exception as e:
                logger.error(f"[Session] warning callback failed: {e}")

    def _tick(self):
        if self._expired:
            return
        self.state.remaining_seconds = self._compute_remaining()

    def _expire(self):
        if self._expired:
            return
        self._expired = True
        self.cancel_all()
        self.state.remaining_seconds = 0
        self.clock.mark_idle()
        if self._on_expire:
            self._on_expire()

    @property
    def expired(self) -> bool:
        return self._expired

    @property
    def pending(self) -> int:
        """Number of live timer handles."""
        return len(self._handles)

    def cancel_all(self):
        handles, self._handles = self._handles, []
        for handle in handles:
            try:
                handle.cancel()
            except Exception as e:
                logger.warning(f"[Session] timer cancel failed: {e}")

    def dispose(self):
        self.cancel_all()
