# ============================================================================
# HSSE Live - Activity Clock
# ============================================================================
# Tracks the last qualifying user interaction and the ACTIVE / WARNING / IDLE
# state derived from it. Passive activity only resets the clock while ACTIVE;
# leaving WARNING or IDLE requires an explicit reset.
# ============================================================================

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

from .timers import TimerService

logger = logging.getLogger(__name__)

QUALIFYING_EVENTS = frozenset({"mousemove", "mousedown", "keydown", "touchstart", "scroll"})


@dataclass
class ActivityState:
    last_activity_at: float = 0.0
    is_idle: bool = False
    is_warning: bool = False

    @property
    def phase(self) -> str:
        if self.is_idle:
            return "idle"
        if self.is_warning:
            return "warning"
        return "active"


class ActivityClock:
    """Owns ActivityState for one session."""

    def __init__(self, timers: TimerService, enabled: bool = True):
        self._timers = timers
        self.enabled = enabled
        self.state = ActivityState(last_activity_at=timers.now_ms())
        self._reset_observers: List[Callable[[], None]] = []
        self.resets = 0

    def on_reset(self, callback: Callable[[], None]):
        """Register a callback run after every reset."""
        self._reset_observers.append(callback)

    def reset(self):
        """Record activity now and return to ACTIVE."""
        if not self.enabled:
            return
        self.state.last_activity_at = self._timers.now_ms()
        self.state.is_warning = False
        self.state.is_idle = False
        self.resets += 1
        for callback in self._reset_observers:
            callback()

    def on_qualifying_event(self, event_type: str) -> bool:
        """
        Handle a raw activity signal. Returns True when it reset the clock.

        Ignored while in WARNING so a stray mouse move cannot dismiss the
        idle warning, and while IDLE since that state is terminal.
        """
        if not self.enabled or event_type not in QUALIFYING_EVENTS:
            return False
        if self.state.is_warning or self.state.is_idle:
            logger.debug(f"[Session] {event_type} ignored in {self.state.phase} state")
            return False
        self.reset()
        return True

    def mark_warning(self):
        if self.state.is_idle:
            return
        self.state.is_warning = True

    def mark_idle(self):
        self.state.is_warning = False
        self.state.is_idle = True

    def elapsed_ms(self) -> float:
        return self._timers.now_ms() - self.state.last_activity_at


class ActivitySource:
    """
    In-process listener registry for client activity signals.

    Fed by ``activity`` messages arriving over the session WebSocket.
    """

    def __init__(self):
        self._listeners: Dict[str, Set[Callable[[str], None]]] = {}

    def add_listener(self, event_type: str, handler: Callable[[str], None]):
        self._listeners.setdefault(event_type, set()).add(handler)

    def remove_listener(self, event_type: str, handler: Callable[[str], None]):
        handlers = self._listeners.get(event_type)
        if handlers:
            handlers.discard(handler)
            if not handlers:
                del self._listeners[event_type]

    def listener_count(self) -> int:
        return sum(len(h) for h in self._listeners.values())

    def emit(self, event_type: str) -> int:
        """Deliver a signal to its listeners. Returns how many handled it."""
        handlers = list(self._listeners.get(event_type, ()))
        for handler in handlers:
            try:
                handler(event_type)
            except Exception as e:
                logger.error(f"[Session] activity handler failed for {event_type}: {e}")
        return len(handlers)


class ListenerGuard:
    """
    Scoped registration of the clock's handler on an activity source.

    Registration failures roll back whatever was registered and leave the
    guard inactive; the clock then stays ACTIVE for the rest of its life.
    """

    def __init__(self, source: Optional[ActivitySource], clock: ActivityClock):
        self._source = source
        self._clock = clock
        self._registered: List[str] = []
        self.failed = False

    def _handle(self, event_type: str):
        self._clock.on_qualifying_event(event_type)

    def acquire(self) -> bool:
        if self._registered or self._source is None:
            return bool(self._registered)
        try:
            for event_type in sorted(QUALIFYING_EVENTS):
                self._source.add_listener(event_type, self._handle)
                self._registered.append(event_type)
        except Exception as e:
            logger.error(f"[Session] activity listener setup failed, idle timeout disabled: {e}")
            self.release()
            self.failed = True
            return False
        return True

    def release(self):
        while self._registered:
            event_type = self._registered.pop()
            try:
                self._source.remove_listener(event_type, self._handle)
            except Exception as e:
                logger.warning(f"[Session] listener removal failed for {event_type}: {e}")

    @property
    def active(self) -> bool:
        return bool(self._registered)

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
