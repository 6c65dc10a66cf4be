"""
HSSE Live Session — Scheduler Jobs

Housekeeping jobs on the shared AsyncIOScheduler that also runs the idle
countdown timers.
"""
import logging

from .config import get_setting
from .registry import get_session_registry
from .timers import get_live_scheduler

logger = logging.getLogger(__name__)


async def sweep_sessions():
    """Drop signed-out sessions."""
    try:
        get_session_registry().sweep()
    except Exception as e:
        logger.error(f"[Scheduler] session sweep failed: {e}")


async def ping_sockets():
    """Keep idle WebSocket connections alive."""
    try:
        from hsse.realtime.websocket import get_broadcaster
        await get_broadcaster().ping_all()
    except Exception as e:
        logger.error(f"[Scheduler] socket ping failed: {e}")


def init_live_scheduler():
    """Register housekeeping jobs and start the scheduler. Needs a running loop."""
    scheduler = get_live_scheduler()

    if scheduler.running:
        return scheduler

    scheduler.add_job(
        sweep_sessions,
        "interval",
        seconds=get_setting("sweep_seconds"),
        id="live_session_sweep",
        replace_existing=True,
    )
    scheduler.add_job(
        ping_sockets,
        "interval",
        seconds=30,
        id="live_socket_ping",
        replace_existing=True,
    )

    scheduler.start()
    logger.info("[Scheduler] Started with session-sweep and socket-ping jobs")
    return scheduler


def shutdown_live_scheduler():
    from . import timers

    scheduler = get_live_scheduler()
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("[Scheduler] Stopped")
    # the next start binds a fresh scheduler to the then-running loop
    timers._scheduler = None
