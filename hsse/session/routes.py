# ============================================================================
# HSSE Live - Session API Routes
# ============================================================================

from fastapi import APIRouter, FastAPI, HTTPException, Request
from typing import Optional
import logging

from .config import get_all_settings
from .registry import get_session_registry

logger = logging.getLogger(__name__)

SESSION_KEY = "live_session_id"


def _resolve(request: Request, payload: Optional[dict] = None):
    """Find the caller's live session from body, query string or cookie session."""
    session_id = (
        (payload or {}).get("session_id")
        or request.query_params.get("session_id")
        or request.session.get(SESSION_KEY)
    )
    live = get_session_registry().get(session_id)
    if live is None:
        raise HTTPException(status_code=404, detail="No live session")
    return live


def register_session_routes(app: FastAPI):
    """Register idle-timeout and acknowledgement endpoints."""

    router = APIRouter(prefix="/api/session", tags=["session"])

    @router.post("/start")
    async def start_session(request: Request, payload: dict):
        """
        Open a live session.

        Body: {"user_id": "...", "tenant_id": "...", "idle_timeout_ms": 900000,
               "warning_threshold_ms": 120000, "enabled": true}
        """
        user_id = payload.get("user_id")
        if not user_id:
            raise HTTPException(status_code=400, detail="user_id is required")
        try:
            live = get_session_registry().open_session(
                user_id,
                session_id=payload.get("session_id"),
                tenant_id=payload.get("tenant_id"),
                idle_timeout_ms=payload.get("idle_timeout_ms"),
                warning_threshold_ms=payload.get("warning_threshold_ms"),
                enabled=payload.get("enabled"),
            )
        except (TypeError, ValueError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        request.session[SESSION_KEY] = live.session_id
        return {"ok": True, "session": live.to_dict()}

    @router.get("/state")
    async def session_state(request: Request):
        live = _resolve(request)
        return {"ok": True, "session": live.to_dict()}

    @router.post("/activity")
    async def session_activity(request: Request, payload: dict):
        """Passive activity signal, e.g. {"event": "mousemove"}."""
        live = _resolve(request, payload)
        reset = get_session_registry().record_activity(live.session_id, payload.get("event", ""))
        return {"ok": True, "reset": reset, "session": live.to_dict()}

    @router.post("/reset")
    async def session_reset(request: Request, payload: Optional[dict] = None):
        """Explicit 'stay signed in' from the warning dialog."""
        live = _resolve(request, payload)
        if live.signed_out:
            raise HTTPException(status_code=409, detail="Session already signed out")
        get_session_registry().reset(live.session_id)
        return {"ok": True, "session": live.to_dict()}

    @router.post("/ack")
    async def session_ack(request: Request, payload: Optional[dict] = None):
        """Clear the unread realtime counters."""
        live = _resolve(request, payload)
        get_session_registry().acknowledge(live.session_id)
        return {"ok": True, "session": live.to_dict()}

    @router.post("/enabled")
    async def session_enabled(request: Request, payload: dict):
        live = _resolve(request, payload)
        live.guard.set_enabled(bool(payload.get("enabled", True)))
        return {"ok": True, "session": live.to_dict()}

    @router.post("/watch")
    async def session_watch(request: Request, payload: dict):
        """
        Follow one table or one record.

        Body: {"table": "ptw_permits", "row": "id=eq.42", "key": "permit-42"}
        """
        live = _resolve(request, payload)
        table = payload.get("table")
        if not table:
            raise HTTPException(status_code=400, detail="table is required")
        try:
            reconciler = get_session_registry().watch(
                live,
                payload.get("key") or table,
                table,
                row=payload.get("row"),
                event=payload.get("event", "*"),
                invalidates=payload.get("invalidates") or (),
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"ok": True, "subscription": reconciler.snapshot()}

    @router.post("/logout")
    async def session_logout(request: Request, payload: Optional[dict] = None):
        live = _resolve(request, payload)
        get_session_registry().close_session(live.session_id)
        request.session.pop(SESSION_KEY, None)
        return {"ok": True}

    @router.get("/config")
    async def session_config():
        return {"ok": True, "config": get_all_settings()}

    app.include_router(router)
