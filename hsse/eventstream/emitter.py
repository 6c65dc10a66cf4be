"""
HSSE Live Event Stream — Core Emitter

emit_event() records session and realtime audit events.
emit_change() records a record change and publishes it on the change feed.
Both are wrapped in try/except so they NEVER break the caller's flow.
"""
import datetime
import logging
from typing import Optional, Dict

from . import models
from .models import insert_event

logger = logging.getLogger(__name__)

# Track whether schema has been initialized
_schema_ready = False


def _ensure_schema():
    global _schema_ready
    if not _schema_ready:
        models.init_eventstream_schema()
        _schema_ready = True


def _ts() -> str:
    return datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _severity_for_event(event_type: str) -> str:
    """Default severity based on event type."""
    if event_type in ("SESSION_IDLE_TIMEOUT", "REALTIME_CHANNEL_ERROR"):
        return "warning"
    if event_type == "REALTIME_ALERT":
        return "alert"
    return "info"


def _category_for_event(event_type: str) -> str:
    """Default category based on event type."""
    if event_type.startswith("SESSION_"):
        return "session"
    if event_type.startswith("REALTIME_"):
        return "realtime"
    if event_type == "RECORD_CHANGED":
        return "change"
    return "system"


def emit_event(
    event_type: str,
    user_id: Optional[str] = None,
    session_id: Optional[str] = None,
    entity_kind: Optional[str] = None,
    record_id: Optional[str] = None,
    summary: Optional[str] = None,
    details: Optional[Dict] = None,
    category: Optional[str] = None,
    severity: Optional[str] = None,
) -> Optional[int]:
    """
    Record an audit event to the event stream.

    Returns the event ID on success, None on failure.
    """
    try:
        _ensure_schema()
        return insert_event(
            timestamp=_ts(),
            event_type=event_type,
            category=category or _category_for_event(event_type),
            severity=severity or _severity_for_event(event_type),
            user_id=user_id,
            session_id=session_id,
            entity_kind=entity_kind,
            record_id=record_id,
            summary=summary,
            details=details,
        )
    except Exception as e:
        logger.error(f"[EventStream] emit_event failed: {e}")
        return None


def emit_change(
    table: str,
    event_type: str,
    new: Optional[Dict] = None,
    old: Optional[Dict] = None,
    schema: str = "public",
    user_id: Optional[str] = None,
) -> int:
    """
    Record a data change and push it to subscribed reconcilers.

    Returns the number of channels the change was delivered to.
    """
    message = {
        "eventType": event_type.upper(),
        "schema": schema,
        "table": table,
        "new": new,
        "old": old,
    }
    for side, value in (("new", new), ("old", old)):
        if value is not None and not isinstance(value, dict):
            raise ValueError(f"{side} record must be an object")
    record = new or old or {}
    emit_event(
        "RECORD_CHANGED",
        user_id=user_id,
        entity_kind=table,
        record_id=str(record["id"]) if record.get("id") is not None else None,
        summary=f"{message['eventType']} {schema}.{table}",
        details=message,
    )

    try:
        from hsse.realtime.transport import get_change_feed
        return get_change_feed().publish(message)
    except Exception as e:
        logger.error(f"[EventStream] change publish failed: {e}")
        return 0
