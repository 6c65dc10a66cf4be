"""
HSSE Live Realtime — Change Event Models

Wire form delivered by the backend's realtime service:
    {"eventType": "INSERT"|"UPDATE"|"DELETE", "schema": "public",
     "table": "incidents", "new": {...}|None, "old": {...}|None}
"""
import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ChangeKind(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class SubscriptionStatus(str, Enum):
    """Status values reported by the transport's status callback."""
    SUBSCRIBED = "SUBSCRIBED"
    CLOSED = "CLOSED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"


class MalformedMessage(ValueError):
    """A push message that does not follow the wire form."""


# Record fields that may carry a severity hint, in priority order
SEVERITY_FIELDS = ("severity", "severity_level", "priority", "alert_priority")


@dataclass
class InboundChangeEvent:
    entity_kind: str
    change_kind: ChangeKind
    payload: Dict[str, Any] = field(default_factory=dict)
    severity_hint: Optional[str] = None
    record_id: Optional[str] = None

    @classmethod
    def from_push(cls, message: Dict[str, Any]) -> "InboundChangeEvent":
        """Parse an upstream push message."""
        if not isinstance(message, dict):
            raise MalformedMessage(f"expected a mapping, got {type(message).__name__}")
        table = message.get("table")
        if not table:
            raise MalformedMessage("missing table")
        try:
            kind = ChangeKind(str(message.get("eventType", "")).upper())
        except ValueError:
            raise MalformedMessage(f"unknown eventType {message.get('eventType')!r}")

        for side in ("new", "old"):
            value = message.get(side)
            if value is not None and not isinstance(value, dict):
                raise MalformedMessage(f"{side} record must be a mapping, got {type(value).__name__}")
        record = message.get("new") or message.get("old") or {}
        severity = None
        for key in SEVERITY_FIELDS:
            if record.get(key):
                severity = str(record[key]).lower()
                break
        record_id = record.get("id")

        return cls(
            entity_kind=table,
            change_kind=kind,
            payload=record,
            severity_hint=severity,
            record_id=str(record_id) if record_id is not None else None,
        )


@dataclass
class ChannelFilter:
    """
    Server-side subscription predicate.

    ``row`` uses the ``column=eq.value`` form, e.g. ``id=eq.42`` for a single
    permit or ``tenant_id=eq.t1`` for one tenant's records.
    """
    table: str
    schema: str = "public"
    event: str = "*"
    row: Optional[str] = None

    def __post_init__(self):
        self._column = None
        self._value = None
        if self.row:
            column, sep, rhs = self.row.partition("=")
            op, dot, value = rhs.partition(".")
            if not sep or not dot or op != "eq" or not column:
                raise ValueError(f"unsupported row filter: {self.row!r}")
            self._column, self._value = column, value

    def matches(self, message: Dict[str, Any]) -> bool:
        if message.get("schema", "public") != self.schema:
            return False
        if message.get("table") != self.table:
            return False
        if self.event != "*" and str(message.get("eventType", "")).upper() != self.event.upper():
            return False
        if self._column is None:
            return True
        record = message.get("new") or message.get("old") or {}
        if not isinstance(record, dict):
            return False
        return str(record.get(self._column)) == self._value

    def to_dict(self) -> Dict:
        return {"table": self.table, "schema": self.schema, "event": self.event, "row": self.row}


@dataclass
class RealtimeSubscriptionState:
    is_connected: bool = False
    last_update_at: Optional[datetime.datetime] = None
    unacknowledged_count: int = 0

    def to_dict(self) -> Dict:
        return {
            "is_connected": self.is_connected,
            "last_update": self.last_update_at.isoformat() if self.last_update_at else None,
            "new_updates_count": self.unacknowledged_count,
        }
