"""
HSSE Live Event Stream Module
Audit trail of session and realtime events, and record-change ingress.
"""
from .routes import register_eventstream_routes
from .emitter import emit_event, emit_change
from .models import init_eventstream_schema

__all__ = [
    "register_eventstream_routes",
    "emit_event",
    "emit_change",
    "init_eventstream_schema",
]
