# ================================================================
# HSSE Live — Session Liveness & Realtime Notification Service
# Idle timeout + warning countdown + realtime change alerts
# ================================================================

from fastapi import FastAPI
from starlette.middleware.sessions import SessionMiddleware

import logging

from hsse.eventstream import register_eventstream_routes
from hsse.realtime import register_realtime_routes
from hsse.session import (
    get_session_registry,
    init_live_scheduler,
    register_session_routes,
    shutdown_live_scheduler,
)
from hsse.session.config import get_setting

logger = logging.getLogger(__name__)

# ================================================================
# FASTAPI APP
# ================================================================

live_app = FastAPI(title="HSSE Live")
app = live_app
live_app.add_middleware(SessionMiddleware, secret_key=get_setting("secret_key"))


@app.on_event("startup")
async def _live_startup():
    # Timers and housekeeping run on this loop.
    init_live_scheduler()
    logger.info("[HSSE Live] startup complete")


@app.on_event("shutdown")
async def _live_shutdown():
    get_session_registry().close_all()
    shutdown_live_scheduler()
    logger.info("[HSSE Live] shutdown complete")


@app.get("/health")
async def health():
    return {"ok": True, "sessions": len(get_session_registry())}


# ================================================================
# MODULE ROUTES
# ================================================================

register_eventstream_routes(app)
register_session_routes(app)
register_realtime_routes(app)
