# ============================================================================
# HSSE Live Realtime — Transport / Change Feed
# ============================================================================
# Message-passing boundary between the backend's change stream and the
# reconcilers. Each open() hands back a Channel that owns its own queue;
# consumers only read from the queue.
# ============================================================================

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

from .models import ChannelFilter, SubscriptionStatus

logger = logging.getLogger(__name__)

StatusCallback = Callable[[SubscriptionStatus, Optional[str]], None]

_channel_ids = itertools.count(1)


class Channel:
    """One subscription. Owned exclusively by the reconciler that opened it."""

    def __init__(self, key: str, filter: ChannelFilter, on_status: Optional[StatusCallback] = None):
        self.id = next(_channel_ids)
        self.key = key
        self.filter = filter
        self.messages: asyncio.Queue = asyncio.Queue()
        self._on_status = on_status
        self.status: Optional[SubscriptionStatus] = None

    def report_status(self, status: SubscriptionStatus, error: Optional[str] = None):
        self.status = status
        if self._on_status is None:
            return
        try:
            self._on_status(status, error)
        except Exception as e:
            logger.error(f"[Realtime] status callback failed on {self.key}: {e}")

    def __repr__(self):
        return f"<Channel {self.id} {self.key} {self.filter.table}>"


class Transport(ABC):
    """Opens and closes push subscriptions."""

    @abstractmethod
    def open(self, key: str, filter: ChannelFilter, on_status: Optional[StatusCallback] = None) -> Channel:
        pass

    @abstractmethod
    def close(self, channel: Channel) -> None:
        pass


class ChangeFeed(Transport):
    """
    In-process change feed.

    Stands in for the managed backend's realtime service: record writes are
    published here and fanned out to every matching channel.
    """

    def __init__(self):
        self._channels: Dict[int, Channel] = {}

    def open(self, key: str, filter: ChannelFilter, on_status: Optional[StatusCallback] = None) -> Channel:
        channel = Channel(key, filter, on_status)
        self._channels[channel.id] = channel
        logger.debug(f"[Realtime] channel opened {channel!r}")
        channel.report_status(SubscriptionStatus.SUBSCRIBED)
        return channel

    def close(self, channel: Channel) -> None:
        if self._channels.pop(channel.id, None) is None:
            return
        channel.report_status(SubscriptionStatus.CLOSED)
        logger.debug(f"[Realtime] channel closed {channel!r}")

    def fail(self, channel: Channel, status: SubscriptionStatus = SubscriptionStatus.CHANNEL_ERROR,
             error: Optional[str] = None) -> None:
        """Report a transport failure and stop delivering to the channel."""
        self._channels.pop(channel.id, None)
        channel.report_status(status, error)

    def publish(self, message: Dict) -> int:
        """Deliver a wire message to all matching channels. Returns the fan-out count."""
        delivered = 0
        for channel in list(self._channels.values()):
            try:
                if channel.filter.matches(message):
                    channel.messages.put_nowait(message)
                    delivered += 1
            except Exception as e:
                logger.warning(f"[Realtime] delivery to {channel!r} failed: {e}")
        return delivered

    def channels(self) -> List[Channel]:
        return list(self._channels.values())

    def channel_count(self) -> int:
        return len(self._channels)


# Singleton feed
_feed = None


def get_change_feed() -> ChangeFeed:
    """Get or create the singleton change feed."""
    global _feed
    if _feed is None:
        _feed = ChangeFeed()
    return _feed
