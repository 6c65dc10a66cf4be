"""
HSSE Live — Test Infrastructure (conftest.py)
=============================================
Provides:
  - Test database (hsse_test.db) swapped in via HSSE_DB_PATH
  - Manual virtual-time TimerService for deterministic idle tests
  - Change feed / reconciler / guard factories
  - FastAPI TestClient
  - DB assertion helpers
"""

import os
import sys
import sqlite3
import itertools
import pytest

# Ensure project root is on path
ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT_DIR)

# ============================================================================
# TEST MODE: Use separate test database
# ============================================================================
TEST_DB_PATH = os.path.join(ROOT_DIR, "hsse_test.db")
os.environ["HSSE_DB_PATH"] = TEST_DB_PATH

from hsse.session.timers import TimerHandle, TimerService  # noqa: E402


# ============================================================================
# Virtual time
# ============================================================================

class _ManualHandle(TimerHandle):
    def __init__(self, timers, timer_id):
        self._timers = timers
        self._id = timer_id

    def cancel(self):
        self._timers._active.pop(self._id, None)


class ManualTimers(TimerService):
    """TimerService driven by advance(); callbacks fire in due order."""

    def __init__(self):
        self._now = 0.0
        self._ids = itertools.count()
        # id -> [due_ms, interval_ms or None, callback]
        self._active = {}

    def now_ms(self):
        return self._now

    def call_later(self, delay_ms, callback):
        return self._add(self._now + max(0.0, delay_ms), None, callback)

    def call_every(self, interval_ms, callback):
        return self._add(self._now + interval_ms, interval_ms, callback)

    def _add(self, due, interval, callback):
        timer_id = next(self._ids)
        self._active[timer_id] = [due, interval, callback]
        return _ManualHandle(self, timer_id)

    @property
    def pending(self):
        return len(self._active)

    def advance(self, ms):
        target = self._now + ms
        while True:
            due_items = [(entry[0], tid) for tid, entry in self._active.items() if entry[0] <= target]
            if not due_items:
                break
            due, tid = min(due_items)
            entry = self._active[tid]
            self._now = due
            if entry[1] is None:
                del self._active[tid]
            else:
                entry[0] = due + entry[1]
            entry[2]()
        self._now = target

    def advance_to(self, t_ms):
        self.advance(t_ms - self._now)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Session-wide test environment setup."""
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)

    from hsse.eventstream import models, emitter
    models.DB_PATH = TEST_DB_PATH
    emitter._schema_ready = False

    yield

    try:
        if os.path.exists(TEST_DB_PATH):
            os.remove(TEST_DB_PATH)
    except (PermissionError, OSError):
        pass


@pytest.fixture
def timers():
    return ManualTimers()


@pytest.fixture
def feed():
    from hsse.realtime.transport import ChangeFeed
    return ChangeFeed()


@pytest.fixture
def make_guard(timers):
    """Factory: SessionGuard on virtual time, closed after the test."""
    from hsse.session.config import IdleTimeoutConfig
    from hsse.session.guard import SessionGuard

    guards = []

    def _make(idle_timeout_ms=1000, warning_threshold_ms=400, on_timeout=None,
              enabled=True, activity_source=None, on_alert=None, start=True):
        config = IdleTimeoutConfig(
            idle_timeout_ms=idle_timeout_ms,
            warning_threshold_ms=warning_threshold_ms,
            on_timeout=on_timeout,
            enabled=enabled,
        )
        guard = SessionGuard(config, timers, activity_source=activity_source, on_alert=on_alert)
        guards.append(guard)
        if start:
            guard.start()
        return guard

    yield _make

    for guard in guards:
        guard.close()


@pytest.fixture
def make_reconciler(feed):
    """Factory: RealtimeReconciler on the test feed."""
    from hsse.realtime.models import ChannelFilter
    from hsse.realtime.reconciler import RealtimeReconciler

    def _make(table="incidents", row=None, key="test-channel", transport=None, **kwargs):
        return RealtimeReconciler(transport or feed, key, ChannelFilter(table=table, row=row), **kwargs)

    return _make


@pytest.fixture(scope="session")
def app(setup_test_env):
    import main
    return main.app


@pytest.fixture(scope="session")
def client(app):
    """FastAPI TestClient (session-scoped for speed)."""
    from starlette.testclient import TestClient
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


# ============================================================================
# Message helpers
# ============================================================================

def push_message(table="incidents", event_type="INSERT", new=None, old=None, schema="public"):
    """Wire message in the backend's realtime format."""
    return {"eventType": event_type, "schema": schema, "table": table, "new": new, "old": old}


def start_session(client, user_id="officer-1", **extra):
    """Open a live session scoped to its own tenant so fan-out counts stay isolated."""
    extra.setdefault("tenant_id", f"tenant-{user_id}")
    resp = client.post("/api/session/start", json={"user_id": user_id, **extra})
    assert resp.status_code == 200, resp.text
    return resp.json()["session"]


# ============================================================================
# DB helpers
# ============================================================================

def get_test_db():
    """Direct connection to test database for assertions."""
    conn = sqlite3.connect(TEST_DB_PATH, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def db_query(sql, params=()):
    """Run a query against the test DB and return list of dicts."""
    conn = get_test_db()
    rows = conn.execute(sql, params).fetchall()
    result = [dict(r) for r in rows]
    conn.close()
    return result


def db_count(table, where="1=1", params=()):
    """Count rows in a table."""
    conn = get_test_db()
    row = conn.execute(f"SELECT COUNT(*) AS cnt FROM {table} WHERE {where}", params).fetchone()
    conn.close()
    return row["cnt"]
