# ============================================================================
# HSSE Live Realtime — Alerts
# ============================================================================
# Builds the toast + sound + drill-down payload for a high-severity insert.
# ============================================================================

from dataclasses import dataclass, asdict
from typing import Callable, Dict, Optional

from .models import InboundChangeEvent

# entity kind -> (title, drill-down route)
DRILL_DOWN_ROUTES = {
    "incidents": ("New incident reported", "/incidents/{id}"),
    "ptw_permits": ("Permit update", "/ptw/permits/{id}"),
    "emergency_alerts": ("Emergency alert", "/security/emergency-alerts"),
    "gate_entry_logs": ("Gate access event", "/security/gate-dashboard"),
    "contractor_access_logs": ("Contractor access event", "/security/gate-dashboard"),
}

SOUND_SEVERITIES = frozenset({"critical"})


@dataclass
class Alert:
    title: str
    description: str
    severity: str
    entity_kind: str
    record_id: Optional[str] = None
    action_url: str = "/"
    sound: bool = False

    def to_dict(self) -> Dict:
        return asdict(self)


AlertSink = Callable[[Alert], None]


def _describe(event: InboundChangeEvent) -> str:
    payload = event.payload or {}
    for key in ("title", "reference_id", "summary", "description", "alert_type"):
        if payload.get(key):
            return str(payload[key])
    return f"{event.entity_kind} #{event.record_id}" if event.record_id else event.entity_kind


def build_alert(event: InboundChangeEvent) -> Alert:
    """Alert payload for one inbound event."""
    title, route = DRILL_DOWN_ROUTES.get(event.entity_kind, ("New update", "/"))
    if "{id}" in route:
        route = route.format(id=event.record_id) if event.record_id else route.split("/{id}")[0]
    severity = event.severity_hint or "info"
    return Alert(
        title=f"{title} ({severity.upper()})",
        description=_describe(event),
        severity=severity,
        entity_kind=event.entity_kind,
        record_id=event.record_id,
        action_url=route,
        sound=severity in SOUND_SEVERITIES,
    )
