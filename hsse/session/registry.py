# ============================================================================
# HSSE Live - Live Session Registry
# ============================================================================
# One SessionGuard (+ its realtime reconcilers) per signed-in browser session.
# ============================================================================

import asyncio
import datetime
import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from hsse.realtime.alerts import Alert
from hsse.realtime.models import ChannelFilter
from hsse.realtime.reconciler import RealtimeReconciler
from hsse.realtime.transport import Transport, get_change_feed
from hsse.realtime.websocket import get_broadcaster

from .clock import ActivitySource
from .config import IdleTimeoutConfig, RealtimeConfig
from .guard import SessionGuard
from .timers import TimerService, get_timer_service

logger = logging.getLogger(__name__)

# channel key -> (table, query keys invalidated on change)
DEFAULT_SUBSCRIPTIONS: List[Tuple[str, str, Tuple[str, ...]]] = [
    ("hsse-incidents", "incidents", ("incidents", "incident-stats")),
    ("emergency-alerts", "emergency_alerts", ("emergency-alerts",)),
    ("unified-access-gate", "gate_entry_logs", ("unified-access-logs", "unified-access-stats")),
    ("unified-access-contractor", "contractor_access_logs", ("unified-access-logs", "unified-access-stats")),
]


@dataclass
class LiveSession:
    session_id: str
    user_id: str
    guard: SessionGuard
    source: ActivitySource
    tenant_id: Optional[str] = None
    created_at: datetime.datetime = field(default_factory=datetime.datetime.now)
    signed_out: bool = False

    def to_dict(self) -> Dict:
        data = self.guard.snapshot()
        data.update({
            "session_id": self.session_id,
            "user_id": self.user_id,
            "tenant_id": self.tenant_id,
            "created_at": self.created_at.isoformat(),
            "signed_out": self.signed_out,
        })
        return data


def _audit(event_type: str, live: "LiveSession", **kwargs):
    try:
        from hsse.eventstream.emitter import emit_event
        emit_event(event_type, user_id=live.user_id, session_id=live.session_id, **kwargs)
    except Exception as e:
        logger.debug(f"[Session] audit skipped: {e}")


class SessionRegistry:
    """Creates, looks up and tears down live sessions."""

    def __init__(
        self,
        timers: Optional[TimerService] = None,
        transport: Optional[Transport] = None,
        realtime_config: Optional[RealtimeConfig] = None,
        subscriptions=None,
    ):
        self._timers = timers
        self._transport = transport
        self.realtime_config = realtime_config or RealtimeConfig.from_settings()
        self.subscriptions = list(DEFAULT_SUBSCRIPTIONS if subscriptions is None else subscriptions)
        self._sessions: Dict[str, LiveSession] = {}

    @property
    def timers(self) -> TimerService:
        return self._timers or get_timer_service()

    @property
    def transport(self) -> Transport:
        return self._transport or get_change_feed()

    # ---- Lookup ----

    def get(self, session_id: Optional[str]) -> Optional[LiveSession]:
        if not session_id:
            return None
        return self._sessions.get(session_id)

    def all(self) -> List[LiveSession]:
        return list(self._sessions.values())

    def __len__(self):
        return len(self._sessions)

    # ---- Lifecycle ----

    def open_session(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        idle_timeout_ms: Optional[int] = None,
        warning_threshold_ms: Optional[int] = None,
        enabled: Optional[bool] = None,
    ) -> LiveSession:
        session_id = session_id or uuid.uuid4().hex
        if session_id in self._sessions:
            self.close_session(session_id)

        config = IdleTimeoutConfig.from_settings(
            on_timeout=lambda: self._sign_out(session_id),
            idle_timeout_ms=idle_timeout_ms,
            warning_threshold_ms=warning_threshold_ms,
            enabled=enabled,
        )
        source = ActivitySource()
        guard = SessionGuard(
            config,
            self.timers,
            activity_source=source,
            on_alert=lambda alert: self._push_alert(session_id, alert),
            on_warning=lambda: self._push_warning(session_id),
        )
        live = LiveSession(session_id=session_id, user_id=user_id, guard=guard, source=source, tenant_id=tenant_id)
        self._sessions[session_id] = live

        try:
            guard.start()
            for key, table, invalidates in self.subscriptions:
                self.watch(live, key, table, invalidates=invalidates)
        except Exception:
            self._sessions.pop(session_id, None)
            guard.close()
            raise

        _audit("SESSION_STARTED", live, summary=f"Live session for {user_id}", details=config.to_dict())
        logger.info(f"[Session] opened {session_id} for {user_id}")
        return live

    def watch(
        self,
        live: LiveSession,
        key: str,
        table: str,
        row: Optional[str] = None,
        event: str = "*",
        invalidates=(),
    ) -> RealtimeReconciler:
        """Subscribe a session to a table, or to one record with a row filter."""
        if row is None and live.tenant_id:
            row = f"tenant_id=eq.{live.tenant_id}"
        reconciler = RealtimeReconciler(
            self.transport,
            f"{key}:{live.session_id}",
            ChannelFilter(table=table, event=event, row=row),
            alert_severities=self.realtime_config.alert_severities,
            on_alert=live.guard.handle_alert,
            on_invalidate=lambda query_key: get_broadcaster().push(
                live.session_id, "invalidate", {"query_key": query_key}
            ),
            invalidates=invalidates,
        )
        live.guard.attach(reconciler)
        if not reconciler.start():
            _audit("REALTIME_CHANNEL_ERROR", live, entity_kind=table, summary=f"subscribe failed: {key}")
            return reconciler
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No running loop — caller drives the reconciler with pump()
            return reconciler
        reconciler.spawn()
        return reconciler

    def reset(self, session_id: str) -> Optional[LiveSession]:
        live = self.get(session_id)
        if live is None or live.signed_out:
            return live
        live.guard.reset_timer()
        _audit("SESSION_RESET", live)
        return live

    def record_activity(self, session_id: str, event_type: str) -> bool:
        live = self.get(session_id)
        if live is None or live.signed_out:
            return False
        return live.guard.record_activity(event_type)

    def acknowledge(self, session_id: str) -> Optional[LiveSession]:
        live = self.get(session_id)
        if live is None:
            return None
        for reconciler in live.guard.reconcilers:
            reconciler.acknowledge()
        return live

    def close_session(self, session_id: str) -> bool:
        live = self._sessions.pop(session_id, None)
        if live is None:
            return False
        live.guard.close()
        logger.info(f"[Session] closed {session_id}")
        return True

    def sweep(self) -> int:
        """Drop signed-out sessions. Returns how many were removed."""
        stale = [sid for sid, live in self._sessions.items() if live.signed_out]
        for sid in stale:
            self.close_session(sid)
        if stale:
            logger.info(f"[Session] sweep removed {len(stale)} signed-out session(s)")
        return len(stale)

    def close_all(self):
        for sid in list(self._sessions):
            self.close_session(sid)

    # ---- Side effects ----

    def _sign_out(self, session_id: str):
        live = self.get(session_id)
        if live is None or live.signed_out:
            return
        live.signed_out = True
        _audit("SESSION_IDLE_TIMEOUT", live, summary=f"Signed out {live.user_id} after inactivity")
        get_broadcaster().push(session_id, "session_timeout", {"session_id": session_id})
        logger.info(f"[Session] {session_id} signed out after inactivity")

    def _push_warning(self, session_id: str):
        live = self.get(session_id)
        if live is None:
            return
        _audit("SESSION_WARNING", live, details={"remaining_time": live.guard.remaining_time})
        get_broadcaster().push(session_id, "state", live.guard.snapshot())

    def _push_alert(self, session_id: str, alert: Alert):
        live = self.get(session_id)
        if live is None:
            return
        _audit(
            "REALTIME_ALERT", live,
            entity_kind=alert.entity_kind, record_id=alert.record_id,
            summary=alert.title, severity=alert.severity,
        )
        get_broadcaster().push(session_id, "alert", alert.to_dict())


# Singleton registry
_registry = None


def get_session_registry() -> SessionRegistry:
    """Get or create the singleton session registry."""
    global _registry
    if _registry is None:
        _registry = SessionRegistry()
    return _registry
