"""
HSSE Live Session Module
Idle timeout with a pre-timeout warning countdown, composed with realtime
notifications per signed-in session.
"""
from .config import IdleTimeoutConfig
from .guard import SessionGuard
from .registry import get_session_registry
from .routes import register_session_routes
from .scheduler_jobs import init_live_scheduler, shutdown_live_scheduler

__all__ = [
    "IdleTimeoutConfig",
    "SessionGuard",
    "get_session_registry",
    "register_session_routes",
    "init_live_scheduler",
    "shutdown_live_scheduler",
]
