"""
HSSE Live Event Stream — Database Models & Query Helpers
"""
import sqlite3
import json
from typing import Optional, List, Dict

from hsse.session.config import get_setting

DB_PATH = get_setting("db_path")


def _get_conn():
    conn = sqlite3.connect(DB_PATH, timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_eventstream_schema():
    """Create event_stream table if it doesn't exist."""
    conn = _get_conn()
    c = conn.cursor()
    c.execute("""
        CREATE TABLE IF NOT EXISTS event_stream (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp TEXT NOT NULL,
            event_type TEXT NOT NULL,
            category TEXT DEFAULT 'system',
            severity TEXT DEFAULT 'info',
            user_id TEXT,
            session_id TEXT,
            entity_kind TEXT,
            record_id TEXT,
            summary TEXT,
            details_json TEXT
        )
    """)
    for col in ("timestamp", "event_type", "category", "session_id"):
        c.execute(f"CREATE INDEX IF NOT EXISTS idx_es_{col} ON event_stream ({col})")
    conn.commit()
    conn.close()


def insert_event(
    timestamp: str,
    event_type: str,
    category: str = "system",
    severity: str = "info",
    user_id: Optional[str] = None,
    session_id: Optional[str] = None,
    entity_kind: Optional[str] = None,
    record_id: Optional[str] = None,
    summary: Optional[str] = None,
    details: Optional[Dict] = None,
) -> int:
    """Insert an event and return its ID."""
    conn = _get_conn()
    c = conn.cursor()
    c.execute("""
        INSERT INTO event_stream
            (timestamp, event_type, category, severity, user_id, session_id,
             entity_kind, record_id, summary, details_json)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        timestamp, event_type, category, severity,
        user_id, session_id, entity_kind, record_id, summary,
        json.dumps(details, default=str) if details else None,
    ))
    event_id = c.lastrowid
    conn.commit()
    conn.close()
    return event_id


FILTER_COLUMNS = ("category", "event_type", "severity", "user_id", "session_id", "entity_kind")


def _where(filters: Dict):
    conditions = []
    params = []
    for key in FILTER_COLUMNS:
        val = filters.get(key)
        if val is not None:
            conditions.append(f"{key} = ?")
            params.append(val)
    since = filters.get("since")
    if since:
        conditions.append("timestamp >= ?")
        params.append(since)
    where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
    return where, params


def query_events(limit: int = 50, offset: int = 0, **filters) -> List[Dict]:
    """Query events with filters, newest first."""
    where, params = _where(filters)
    conn = _get_conn()
    rows = conn.execute(
        f"SELECT * FROM event_stream{where} ORDER BY id DESC LIMIT ? OFFSET ?",
        params + [limit, offset]
    ).fetchall()
    conn.close()

    events = []
    for r in rows:
        ev = dict(r)
        raw = ev.pop("details_json", None)
        ev["details"] = json.loads(raw) if raw else None
        events.append(ev)
    return events


def count_events(**filters) -> int:
    """Count events matching filters."""
    where, params = _where(filters)
    conn = _get_conn()
    row = conn.execute(f"SELECT COUNT(*) as cnt FROM event_stream{where}", params).fetchone()
    conn.close()
    return row["cnt"] if row else 0


def get_event_stats(since: Optional[str] = None) -> Dict:
    """Aggregate counts by category and event_type."""
    time_filter = ""
    params = []
    if since:
        time_filter = " WHERE timestamp >= ?"
        params.append(since)

    conn = _get_conn()
    by_category = {}
    for row in conn.execute(
        f"SELECT category, COUNT(*) as cnt FROM event_stream{time_filter} GROUP BY category",
        params
    ).fetchall():
        by_category[row["category"]] = row["cnt"]

    by_type = {}
    for row in conn.execute(
        f"SELECT event_type, COUNT(*) as cnt FROM event_stream{time_filter} GROUP BY event_type ORDER BY cnt DESC LIMIT 20",
        params
    ).fetchall():
        by_type[row["event_type"]] = row["cnt"]
    conn.close()

    return {"total": sum(by_category.values()), "by_category": by_category, "by_type": by_type}
