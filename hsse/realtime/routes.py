# ============================================================================
# HSSE Live Realtime — WebSocket & Status Routes
# ============================================================================

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
import logging

from .transport import get_change_feed
from .websocket import get_broadcaster

logger = logging.getLogger(__name__)


async def handle_client_message(live, data: dict):
    """Route one client message. Returns the reply, or None."""
    from hsse.session.registry import get_session_registry
    registry = get_session_registry()
    msg_type = data.get("type")

    if msg_type == "ping":
        return {"type": "pong"}

    if msg_type == "activity":
        reset = registry.record_activity(live.session_id, data.get("event", ""))
        return {"type": "state", "reset": reset, **live.to_dict()}

    if msg_type == "reset":
        registry.reset(live.session_id)
        return {"type": "state", **live.to_dict()}

    if msg_type in ("ack", "clear_new_updates"):
        registry.acknowledge(live.session_id)
        return {"type": "state", **live.to_dict()}

    if msg_type == "state":
        return {"type": "state", **live.to_dict()}

    return {"type": "error", "error": f"unknown message type {msg_type!r}"}


def register_realtime_routes(app: FastAPI):
    """Register the live WebSocket and feed status endpoints."""

    @app.get("/api/realtime/channels")
    async def api_realtime_channels():
        feed = get_change_feed()
        return {
            "ok": True,
            "count": feed.channel_count(),
            "channels": [
                {"id": ch.id, "key": ch.key, "filter": ch.filter.to_dict(),
                 "status": ch.status.value if ch.status else None}
                for ch in feed.channels()
            ],
        }

    @app.websocket("/ws/live")
    async def live_websocket(websocket: WebSocket):
        """Activity signals in; state, alerts, invalidations and timeouts out."""
        from hsse.session.registry import get_session_registry

        session_id = websocket.query_params.get("session_id")
        live = get_session_registry().get(session_id)
        if live is None:
            await websocket.close(code=4001)
            return

        broadcaster = get_broadcaster()
        await broadcaster.connect(websocket, session_id)
        await websocket.send_json({"type": "connected", **live.to_dict()})

        try:
            while True:
                data = await websocket.receive_json()
                reply = await handle_client_message(live, data)
                if reply is not None:
                    await websocket.send_json(reply)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.warning(f"[WS] live socket error for {session_id}: {e}")
        finally:
            await broadcaster.disconnect(websocket)
