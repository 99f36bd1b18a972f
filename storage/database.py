"""
SQLite Storage Layer.
Append-only journal of slot lifecycle events for operators.
Never read back to rebuild the registry.
"""

from __future__ import annotations
import sqlite3
from datetime import datetime
from typing import List, Optional
from fleet.models import EventType, SessionEvent
import logging

logger = logging.getLogger(__name__)


class Database:
    """SQLite database manager with typed accessors."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None

    def connect(self):
        """Initialize database connection and create tables."""
        self._conn = sqlite3.connect(self.db_path)
        self._conn.row_factory = sqlite3.Row
        if self.db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()
        logger.info(f"[DB] Connected to {self.db_path}")

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        assert self._conn is not None, "Database not connected"
        return self._conn

    def _create_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS session_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                slot_id INTEGER,
                owner_id TEXT,
                event TEXT NOT NULL,
                symbol TEXT,
                timeframe TEXT,
                detail TEXT,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_slot ON session_events(slot_id);
            CREATE INDEX IF NOT EXISTS idx_events_owner ON session_events(owner_id);
        """)
        self.conn.commit()

    # ==================== Events ====================

    def record_event(self, event: SessionEvent) -> int:
        cursor = self.conn.execute(
            """INSERT INTO session_events (slot_id, owner_id, event, symbol,
               timeframe, detail, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                event.slot_id, event.owner_id, event.event.value,
                event.symbol, event.timeframe,
                event.detail[:500] if event.detail else None,
                event.created_at.isoformat(),
            ),
        )
        self.conn.commit()
        event.id = cursor.lastrowid
        return event.id

    def get_recent_events(self, limit: int = 50) -> List[SessionEvent]:
        rows = self.conn.execute(
            "SELECT * FROM session_events ORDER BY id DESC LIMIT ?", (limit,)
        ).fetchall()
        return [self._row_to_event(r) for r in rows]

    def get_events_for_owner(self, owner_id: str, limit: int = 50) -> List[SessionEvent]:
        rows = self.conn.execute(
            "SELECT * FROM session_events WHERE owner_id = ? ORDER BY id DESC LIMIT ?",
            (owner_id, limit),
        ).fetchall()
        return [self._row_to_event(r) for r in rows]

    def count_events(self, event: Optional[EventType] = None) -> int:
        if event is None:
            row = self.conn.execute("SELECT COUNT(*) AS n FROM session_events").fetchone()
        else:
            row = self.conn.execute(
                "SELECT COUNT(*) AS n FROM session_events WHERE event = ?", (event.value,)
            ).fetchone()
        return row["n"]

    # ==================== Row Converters ====================

    def _row_to_event(self, row) -> SessionEvent:
        return SessionEvent(
            id=row["id"],
            slot_id=row["slot_id"],
            owner_id=row["owner_id"],
            event=EventType(row["event"]),
            symbol=row["symbol"],
            timeframe=row["timeframe"],
            detail=row["detail"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )
