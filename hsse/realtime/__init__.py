"""
HSSE Live Realtime Module
Change-feed subscriptions, unread counters and high-severity alerts.
"""
from .models import ChangeKind, ChannelFilter, InboundChangeEvent, SubscriptionStatus
from .reconciler import RealtimeReconciler
from .routes import register_realtime_routes
from .transport import ChangeFeed, Transport, get_change_feed

__all__ = [
    "ChangeKind",
    "ChannelFilter",
    "InboundChangeEvent",
    "SubscriptionStatus",
    "RealtimeReconciler",
    "register_realtime_routes",
    "ChangeFeed",
    "Transport",
    "get_change_feed",
]
