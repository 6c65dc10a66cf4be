# ============================================================================
# HSSE Live Realtime — Event Reconciler
# ============================================================================
# Consumes one channel's push messages into an unread counter and a
# last-update timestamp, and raises one alert per high-severity insert.
# ============================================================================

import asyncio
import datetime
import logging
from typing import Callable, Iterable, Optional

from .alerts import Alert, AlertSink, build_alert
from .models import (
    ChangeKind, ChannelFilter, InboundChangeEvent, MalformedMessage,
    RealtimeSubscriptionState, SubscriptionStatus,
)
from .transport import Channel, Transport

logger = logging.getLogger(__name__)

DEFAULT_ALERT_SEVERITIES = frozenset({"critical", "high"})
FAILURE_STATUSES = (SubscriptionStatus.CHANNEL_ERROR, SubscriptionStatus.TIMED_OUT)


class RealtimeReconciler:
    """
    Per-subscription realtime state.

    The counter only goes back to zero through acknowledge(); connection
    state follows the transport's status callback. A failure before the
    first SUBSCRIBED is final for this instance; callers recreate the
    reconciler to retry.
    """

    def __init__(
        self,
        transport: Transport,
        channel_key: str,
        filter: ChannelFilter,
        alert_severities: Optional[Iterable[str]] = None,
        on_alert: Optional[AlertSink] = None,
        on_invalidate: Optional[Callable[[str], None]] = None,
        invalidates: Iterable[str] = (),
        now: Optional[Callable[[], datetime.datetime]] = None,
    ):
        self._transport = transport
        self.channel_key = channel_key
        self.filter = filter
        self.alert_severities = frozenset(
            s.lower() for s in (alert_severities if alert_severities is not None else DEFAULT_ALERT_SEVERITIES)
        )
        self._on_alert = on_alert
        self._on_invalidate = on_invalidate
        self.invalidates = tuple(invalidates)
        self._now = now or datetime.datetime.now
        self.state = RealtimeSubscriptionState()
        self._channel: Optional[Channel] = None
        self._task: Optional[asyncio.Task] = None
        self._handshake_done = False
        self.failed = False
        self.alerts_dispatched = 0

    # ---- Consumer surface ----

    @property
    def is_connected(self) -> bool:
        return self.state.is_connected

    @property
    def last_update(self) -> Optional[datetime.datetime]:
        return self.state.last_update_at

    @property
    def new_updates_count(self) -> int:
        return self.state.unacknowledged_count

    @property
    def channel(self) -> Optional[Channel]:
        return self._channel

    def acknowledge(self):
        """Reset the unread counter. Connection and last update are untouched."""
        self.state.unacknowledged_count = 0

    clear_new_updates = acknowledge

    # ---- Lifecycle ----

    def start(self) -> bool:
        """Open the subscription. Returns False when the transport refused it."""
        if self._channel is not None:
            return True
        if self.failed:
            return False
        try:
            self._channel = self._transport.open(self.channel_key, self.filter, self._handle_status)
        except Exception as e:
            logger.error(f"[Realtime] subscribe failed on {self.channel_key}: {e}")
            self.failed = True
            self.state.is_connected = False
            return False
        return not self.failed

    def spawn(self) -> Optional[asyncio.Task]:
        """Start consuming on the running loop."""
        if not self.start():
            return None
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    async def run(self):
        channel = self._channel
        if channel is None:
            return
        while True:
            message = await channel.messages.get()
            try:
                self.handle(message)
            except Exception as e:
                logger.error(f"[Realtime] message handling failed on {self.channel_key}: {e}")

    def pump(self) -> int:
        """Process every message already queued. Returns how many were handled."""
        if self._channel is None:
            return 0
        handled = 0
        while True:
            try:
                message = self._channel.messages.get_nowait()
            except asyncio.QueueEmpty:
                return handled
            if self.handle(message) is not None:
                handled += 1

    async def close(self):
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.close_channel()

    def close_channel(self):
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        channel, self._channel = self._channel, None
        if channel is not None:
            try:
                self._transport.close(channel)
            except Exception as e:
                logger.warning(f"[Realtime] close failed on {self.channel_key}: {e}")
        self.state.is_connected = False

    # ---- Inbound ----

    def _handle_status(self, status: SubscriptionStatus, error: Optional[str] = None):
        if status == SubscriptionStatus.SUBSCRIBED:
            if self.failed:
                logger.debug(f"[Realtime] late SUBSCRIBED ignored on failed {self.channel_key}")
                return
            self._handshake_done = True
            self.state.is_connected = True
            logger.info(f"[Realtime] subscribed {self.channel_key} ({self.filter.table})")
            return

        self.state.is_connected = False
        if status in FAILURE_STATUSES:
            if not self._handshake_done:
                self.failed = True
            logger.warning(f"[Realtime] {self.channel_key} {status.value}: {error or 'no detail'}")
        else:
            logger.info(f"[Realtime] {self.channel_key} {status.value}")

    def handle(self, message) -> Optional[InboundChangeEvent]:
        """Apply one push message. Returns the parsed event, or None if dropped."""
        try:
            event = InboundChangeEvent.from_push(message)
        except MalformedMessage as e:
            logger.warning(f"[Realtime] dropped message on {self.channel_key}: {e}")
            return None

        self.state.unacknowledged_count += 1
        self.state.last_update_at = self._now()

        if event.change_kind == ChangeKind.INSERT and event.severity_hint in self.alert_severities:
            self._dispatch_alert(event)

        if self._on_invalidate:
            for key in self.invalidates:
                try:
                    self._on_invalidate(key)
                except Exception as e:
                    logger.error(f"[Realtime] invalidate {key} failed: {e}")
        return event

    def _dispatch_alert(self, event: InboundChangeEvent) -> Optional[Alert]:
        alert = build_alert(event)
        self.alerts_dispatched += 1
        if self._on_alert is None:
            return alert
        try:
            self._on_alert(alert)
        except Exception as e:
            logger.error(f"[Realtime] alert dispatch failed for {event.entity_kind}: {e}")
        return alert

    def snapshot(self) -> dict:
        data = self.state.to_dict()
        data["channel"] = self.channel_key
        data["filter"] = self.filter.to_dict()
        return data
