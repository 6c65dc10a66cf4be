# ============================================================================
# HSSE Live - Session Guard
# ============================================================================
# Composes the activity clock, the countdown scheduler and the realtime
# reconcilers of one session. The idle path and the alert path share no
# mutable state: realtime traffic never resets or extends the countdown.
#
# State machine:
#   ACTIVE  --(idle - warning elapsed)-->  WARNING
#   WARNING --(warning elapsed)-->         IDLE      (on_timeout, once)
#   WARNING / IDLE --reset_timer()-->      ACTIVE
# ============================================================================

import logging
from typing import Callable, Dict, List, Optional

from .clock import ActivityClock, ActivitySource, ListenerGuard
from .config import IdleTimeoutConfig
from .countdown import CountdownScheduler
from .timers import TimerService

logger = logging.getLogger(__name__)


class SessionGuard:
    """Decides when a session is signed out and when it is only alerted."""

    def __init__(
        self,
        config: IdleTimeoutConfig,
        timers: TimerService,
        activity_source: Optional[ActivitySource] = None,
        on_alert: Optional[Callable] = None,
        on_warning: Optional[Callable[[], None]] = None,
    ):
        self.config = config
        self.clock = ActivityClock(timers, enabled=config.enabled)
        self.countdown = CountdownScheduler(
            config, self.clock, timers,
            on_expire=self._handle_timeout,
            on_warning=on_warning,
        )
        self.clock.on_reset(self.countdown.restart)
        self.listeners = ListenerGuard(activity_source, self.clock)
        self._activity_source = activity_source
        self._on_alert = on_alert
        self._reconcilers: List = []
        self._started = False
        self._closed = False
        self._terminated = False
        self.timeouts_fired = 0
        self.alerts_raised = 0

    # ---- Consumer surface ----

    @property
    def is_idle(self) -> bool:
        return self.clock.state.is_idle

    @property
    def is_warning(self) -> bool:
        return self.clock.state.is_warning

    @property
    def remaining_time(self) -> int:
        return self.countdown.state.remaining_seconds

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def degraded(self) -> bool:
        """Listener setup failed; idle timeout will never fire."""
        return self.listeners.failed

    # ---- Lifecycle ----

    def start(self):
        if self._closed or self._started or not self.config.enabled:
            return
        self._started = True
        if self._activity_source is not None and not self.listeners.acquire():
            self.clock.enabled = False
            self.countdown.cancel_all()
            return
        self.clock.reset()

    def reset_timer(self):
        """Explicit reset. Leaves WARNING or IDLE and starts a new episode."""
        if self._closed or not self.clock.enabled:
            return
        self._terminated = False
        self.clock.reset()

    def record_activity(self, event_type: str) -> bool:
        """Passive activity signal. Only resets while ACTIVE."""
        if self.listeners.active:
            before = self.clock.resets
            self._activity_source.emit(event_type)
            return self.clock.resets != before
        return self.clock.on_qualifying_event(event_type)

    def set_enabled(self, enabled: bool):
        if enabled == self.config.enabled:
            return
        self.config.enabled = enabled
        if not enabled:
            self.countdown.cancel_all()
            self.listeners.release()
            self.clock.state.is_warning = False
            self.clock.state.is_idle = False
            self.clock.enabled = False
            self._started = False
            logger.info("[Session] idle timeout disabled")
        else:
            self.clock.enabled = True
            self.start()
            logger.info("[Session] idle timeout enabled")

    def attach(self, reconciler):
        """Track a reconciler so its subscription is released with the session."""
        self._reconcilers.append(reconciler)

    @property
    def reconcilers(self) -> List:
        return list(self._reconcilers)

    def close(self):
        if self._closed:
            return
        self._closed = True
        self.countdown.dispose()
        self.listeners.release()
        for reconciler in self._reconcilers:
            reconciler.close_channel()

    async def aclose(self):
        """Close, also cancelling reconciler consumer tasks."""
        for reconciler in self._reconcilers:
            await reconciler.close()
        self.close()

    def __enter__(self):
        try:
            self.start()
        except Exception:
            self.close()
            raise
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    # ---- Side effects ----

    def _handle_timeout(self):
        if self._terminated:
            return
        self._terminated = True
        self.timeouts_fired += 1
        logger.info("[Session] idle timeout reached")
        if self.config.on_timeout is None:
            return
        try:
            self.config.on_timeout()
        except Exception as e:
            logger.error(f"[Session] on_timeout failed: {e}")

    def handle_alert(self, alert):
        """Alert sink for attached reconcilers. Does not touch the idle countdown."""
        self.alerts_raised += 1
        if self._on_alert is None:
            return
        try:
            self._on_alert(alert)
        except Exception as e:
            logger.error(f"[Session] alert side effect failed: {e}")

    def snapshot(self) -> Dict:
        realtime = [r.snapshot() for r in self._reconcilers]
        return {
            "phase": self.clock.state.phase,
            "is_idle": self.is_idle,
            "is_warning": self.is_warning,
            "remaining_time": self.remaining_time,
            "enabled": self.config.enabled,
            "degraded": self.degraded,
            "terminated": self._terminated,
            "realtime": realtime,
            "new_updates_count": sum(r.new_updates_count for r in self._reconcilers),
        }
