"""
HSSE Live Event Stream — API Routes
"""
from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse
from typing import Optional

from .emitter import emit_change
from .models import query_events, count_events, get_event_stats, init_eventstream_schema

CHANGE_KINDS = ("INSERT", "UPDATE", "DELETE")


def register_eventstream_routes(app: FastAPI):
    """Register all event stream endpoints."""

    init_eventstream_schema()

    @app.get("/api/event-stream")
    async def api_event_stream(
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
        category: Optional[str] = None,
        event_type: Optional[str] = None,
        severity: Optional[str] = None,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        since: Optional[str] = None,
    ):
        """Paginated, filtered event stream JSON."""
        filters = dict(
            category=category, event_type=event_type, severity=severity,
            user_id=user_id, session_id=session_id, since=since,
        )
        events = query_events(limit=limit, offset=offset, **filters)
        total = count_events(**filters)
        return {
            "ok": True,
            "events": events,
            "total": total,
            "limit": limit,
            "offset": offset,
        }

    @app.get("/api/event-stream/stats")
    async def api_event_stream_stats(since: Optional[str] = None):
        """Event count aggregations by category/type."""
        return {"ok": True, "stats": get_event_stats(since=since)}

    @app.post("/api/changes")
    async def api_publish_change(payload: dict):
        """
        Publish a record change to realtime subscribers.

        Body: {"table": "incidents", "eventType": "INSERT", "new": {...}, "old": {...}}
        """
        table = payload.get("table")
        event_type = str(payload.get("eventType", "")).upper()
        if not table or event_type not in CHANGE_KINDS:
            return JSONResponse(
                {"ok": False, "error": "table and eventType (INSERT/UPDATE/DELETE) are required"},
                status_code=400,
            )
        records = (payload.get("new"), payload.get("old"))
        if any(r is not None and not isinstance(r, dict) for r in records):
            return JSONResponse(
                {"ok": False, "error": "new and old must be JSON objects"},
                status_code=400,
            )
        delivered = emit_change(
            table,
            event_type,
            new=payload.get("new"),
            old=payload.get("old"),
            schema=payload.get("schema", "public"),
            user_id=payload.get("user_id"),
        )
        return {"ok": True, "delivered": delivered}
