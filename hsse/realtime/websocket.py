# ============================================================================
# HSSE Live Realtime — WebSocket Broadcaster
# ============================================================================
# Per-session connection tracking and push delivery for state updates,
# alerts, query invalidations and session timeouts.
# ============================================================================

from fastapi import WebSocket
from typing import Dict, Set, List
import asyncio
import logging
from datetime import datetime

logger = logging.getLogger(__name__)


class MessageBroadcaster:
    """
    Manages WebSocket connections keyed by live session id.

    Features:
    - Per-session connection tracking
    - Send to one session
    - Broadcast to all sessions
    - Connection heartbeat/ping
    """

    def __init__(self):
        # Map session_id -> set of WebSocket connections
        self._connections: Dict[str, Set[WebSocket]] = {}
        # Map WebSocket -> session_id
        self._ws_to_session: Dict[WebSocket, str] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, session_id: str):
        """Register a new WebSocket connection for a session."""
        await websocket.accept()

        async with self._lock:
            self._connections.setdefault(session_id, set()).add(websocket)
            self._ws_to_session[websocket] = session_id

        logger.info(f"[WS] Session {session_id} connected. Total connections: {self._count_connections()}")

    async def disconnect(self, websocket: WebSocket):
        """Remove a WebSocket connection."""
        async with self._lock:
            session_id = self._ws_to_session.pop(websocket, None)
            if session_id and session_id in self._connections:
                self._connections[session_id].discard(websocket)
                if not self._connections[session_id]:
                    del self._connections[session_id]

        logger.info(f"[WS] Session {session_id} disconnected. Total connections: {self._count_connections()}")

    def _count_connections(self) -> int:
        return sum(len(conns) for conns in self._connections.values())

    def is_connected(self, session_id: str) -> bool:
        return bool(self._connections.get(session_id))

    def get_connected_sessions(self) -> List[str]:
        return list(self._connections.keys())

    async def _send_to_websocket(self, ws: WebSocket, data: Dict) -> bool:
        try:
            await ws.send_json(data)
            return True
        except Exception as e:
            logger.warning(f"[WS] Send failed: {e}")
            return False

    async def send_to_session(self, session_id: str, event_type: str, data: Dict) -> int:
        """Send event to all connections of one session."""
        message = {
            "type": event_type,
            "timestamp": datetime.now().isoformat(),
            **data
        }

        async with self._lock:
            connections = self._connections.get(session_id, set()).copy()

        sent_count = 0
        failed_connections = []
        for ws in connections:
            if await self._send_to_websocket(ws, message):
                sent_count += 1
            else:
                failed_connections.append(ws)

        for ws in failed_connections:
            await self.disconnect(ws)

        return sent_count

    async def broadcast(self, event_type: str, data: Dict) -> int:
        """Broadcast event to every connected session."""
        async with self._lock:
            all_sessions = list(self._connections.keys())

        total_sent = 0
        for session_id in all_sessions:
            total_sent += await self.send_to_session(session_id, event_type, data)
        return total_sent

    async def ping_all(self):
        """Send ping to all connections to keep them alive."""
        async with self._lock:
            all_websockets = [ws for conns in self._connections.values() for ws in conns]

        for ws in all_websockets:
            try:
                await ws.send_json({"type": "ping", "timestamp": datetime.now().isoformat()})
            except Exception:
                await self.disconnect(ws)

    def push(self, session_id: str, event_type: str, data: Dict) -> bool:
        """Schedule a send from sync code. Returns False when no loop is running."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No running loop — nothing to deliver to
            return False
        loop.create_task(self.send_to_session(session_id, event_type, data))
        return True


# Singleton instance
_broadcaster = None


def get_broadcaster() -> MessageBroadcaster:
    """Get or create the singleton broadcaster instance."""
    global _broadcaster
    if _broadcaster is None:
        _broadcaster = MessageBroadcaster()
    return _broadcaster
