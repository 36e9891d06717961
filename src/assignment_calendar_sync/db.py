"""
SQLite persistence for the local calendar store and sync watermarks.
"""

import logging
import sqlite3
import time
from datetime import datetime
from pathlib import Path

from assignment_calendar_sync.models import CalendarEvent
from assignment_calendar_sync.models import CalendarSyncError
from assignment_calendar_sync.models import Scope
from assignment_calendar_sync.models import SyncMode
from assignment_calendar_sync.models import parse_datetime

logger = logging.getLogger(__name__)


def _to_text(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _row_to_event(row: sqlite3.Row) -> CalendarEvent:
    return CalendarEvent(
        id=row["event_id"],
        title=row["title"],
        start=parse_datetime(row["start_at"]),
        end=parse_datetime(row["end_at"]),
        assignment_id=row["assignment_id"],
        course_id=row["course_id"],
        description=row["description"] or "",
        calendar_id=row["calendar_id"],
    )


class StateDatabase:
    """Manages the SQLite state database.

    Holds the events this tool has written to the calendar (keyed by the id
    the device calendar assigned), per-scope sync watermarks, and the
    assignment due-date snapshot taken at the end of each successful run.
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path) if str(db_path) != ":memory:" else db_path
        self.conn: sqlite3.Connection | None = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Initialize and connect to the state database."""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.conn = sqlite3.connect(str(self.db_path))
        except sqlite3.Error as e:
            raise CalendarSyncError(f"Cannot open state database {self.db_path}: {e}") from e
        self.conn.row_factory = sqlite3.Row  # Enable column access by name
        self._init_schema()
        logger.debug("Opened state database %s", self.db_path)

    def _init_schema(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS calendar_events (
                event_id TEXT PRIMARY KEY,
                assignment_id INTEGER,
                course_id INTEGER,
                title TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                start_at TEXT NOT NULL,
                end_at TEXT NOT NULL,
                calendar_id TEXT,
                synced_at INTEGER NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_calendar_events_assignment
                ON calendar_events (assignment_id);
            CREATE INDEX IF NOT EXISTS idx_calendar_events_course
                ON calendar_events (course_id);
            CREATE TABLE IF NOT EXISTS sync_watermarks (
                scope_key TEXT PRIMARY KEY,
                last_sync_at TEXT NOT NULL,
                mode TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS sync_snapshots (
                scope_key TEXT NOT NULL,
                assignment_id INTEGER NOT NULL,
                due_at TEXT,
                PRIMARY KEY (scope_key, assignment_id)
            );
        """)
        self.conn.commit()

    def _require_conn(self) -> sqlite3.Connection:
        if self.conn is None:
            raise CalendarSyncError("State database is not connected")
        return self.conn

    # ------------------------------------------------------------------ #
    # Local calendar store                                                 #
    # ------------------------------------------------------------------ #

    def get_events(self, scope: Scope | None = None) -> list[CalendarEvent]:
        """Return tracked events, limited to a course when ``scope`` names one."""
        conn = self._require_conn()
        if scope is None or scope.is_all:
            cursor = conn.execute("SELECT * FROM calendar_events ORDER BY start_at, event_id")
        else:
            cursor = conn.execute(
                "SELECT * FROM calendar_events WHERE course_id = ? ORDER BY start_at, event_id",
                (scope.course_id,),
            )
        return [_row_to_event(row) for row in cursor.fetchall()]

    def get_event(self, event_id: str) -> CalendarEvent | None:
        cursor = self._require_conn().execute(
            "SELECT * FROM calendar_events WHERE event_id = ? LIMIT 1", (event_id,)
        )
        row = cursor.fetchone()
        return _row_to_event(row) if row else None

    def get_event_for_assignment(self, assignment_id: int) -> CalendarEvent | None:
        cursor = self._require_conn().execute(
            "SELECT * FROM calendar_events WHERE assignment_id = ? "
            "ORDER BY synced_at, event_id LIMIT 1",
            (assignment_id,),
        )
        row = cursor.fetchone()
        return _row_to_event(row) if row else None

    def upsert_event(self, event: CalendarEvent):
        """Insert or overwrite the record for ``event.id``."""
        self._require_conn().execute(
            "INSERT INTO calendar_events "
            "(event_id, assignment_id, course_id, title, description, "
            " start_at, end_at, calendar_id, synced_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(event_id) DO UPDATE SET "
            "assignment_id = excluded.assignment_id, course_id = excluded.course_id, "
            "title = excluded.title, description = excluded.description, "
            "start_at = excluded.start_at, end_at = excluded.end_at, "
            "calendar_id = excluded.calendar_id, synced_at = excluded.synced_at",
            (
                event.id,
                event.assignment_id,
                event.course_id,
                event.title,
                event.description,
                _to_text(event.start),
                _to_text(event.end),
                event.calendar_id,
                int(time.time()),
            ),
        )

    def replace_event_id(self, old_event_id: str, event: CalendarEvent):
        """Swap a record for a recreated event that came back with a new id."""
        self.delete_event(old_event_id)
        self.upsert_event(event)

    def delete_event(self, event_id: str):
        self._require_conn().execute(
            "DELETE FROM calendar_events WHERE event_id = ?", (event_id,)
        )

    # ------------------------------------------------------------------ #
    # Watermarks and snapshots                                             #
    # ------------------------------------------------------------------ #

    def get_watermark(self, scope: Scope) -> datetime | None:
        cursor = self._require_conn().execute(
            "SELECT last_sync_at FROM sync_watermarks WHERE scope_key = ?", (scope.key,)
        )
        row = cursor.fetchone()
        return parse_datetime(row["last_sync_at"]) if row else None

    def set_watermark(self, scope: Scope, synced_at: datetime, mode: SyncMode):
        self._require_conn().execute(
            "INSERT INTO sync_watermarks (scope_key, last_sync_at, mode) VALUES (?, ?, ?) "
            "ON CONFLICT(scope_key) DO UPDATE SET "
            "last_sync_at = excluded.last_sync_at, mode = excluded.mode",
            (scope.key, _to_text(synced_at), mode.value),
        )

    def get_snapshot(self, scope: Scope) -> dict[int, datetime | None]:
        """Assignment id → due date recorded at the end of the last run for ``scope``."""
        cursor = self._require_conn().execute(
            "SELECT assignment_id, due_at FROM sync_snapshots WHERE scope_key = ?", (scope.key,)
        )
        return {row["assignment_id"]: parse_datetime(row["due_at"]) for row in cursor.fetchall()}

    def replace_snapshot(self, scope: Scope, snapshot: dict[int, datetime | None]):
        conn = self._require_conn()
        conn.execute("DELETE FROM sync_snapshots WHERE scope_key = ?", (scope.key,))
        conn.executemany(
            "INSERT INTO sync_snapshots (scope_key, assignment_id, due_at) VALUES (?, ?, ?)",
            [(scope.key, aid, _to_text(due)) for aid, due in sorted(snapshot.items())],
        )

    def clear_scope(self, scope: Scope):
        """Forget the watermark and snapshot for ``scope`` (events are kept)."""
        conn = self._require_conn()
        conn.execute("DELETE FROM sync_watermarks WHERE scope_key = ?", (scope.key,))
        conn.execute("DELETE FROM sync_snapshots WHERE scope_key = ?", (scope.key,))

    def commit(self):
        """Commit pending transactions."""
        if self.conn:
            self.conn.commit()

    def close(self):
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None


def query_status(db_path: Path) -> list:
    """
    Return per-scope rows for the status display.

    Each row exposes: scope_key, mode, last_sync_at, tracked (events in that
    scope's course, or all events for the ``all`` scope). Returns an empty list
    when the DB file does not exist or has no watermark table yet.
    """
    if not db_path.exists():
        return []
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        tables = {
            row["name"]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        if "sync_watermarks" not in tables:
            return []
        cursor = conn.execute("""
            SELECT
                w.scope_key,
                w.mode,
                w.last_sync_at,
                (SELECT COUNT(*) FROM calendar_events e
                  WHERE w.scope_key = 'all'
                     OR w.scope_key = 'course:' || e.course_id) AS tracked
            FROM sync_watermarks w
            ORDER BY w.scope_key
        """)
        return cursor.fetchall()
    finally:
        conn.close()


def format_timestamp(value: str | None) -> str:
    """Render a stored ISO timestamp in local time for display."""
    parsed = parse_datetime(value) if value else None
    if parsed is None:
        return "never"
    return parsed.astimezone().strftime("%Y-%m-%d %H:%M:%S")
