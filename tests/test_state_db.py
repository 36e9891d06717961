"""
Unit tests for StateDatabase: the local event store, watermarks, snapshots,
and the status query used by the CLI.
"""

from datetime import timedelta

from assignment_calendar_sync.db import StateDatabase
from assignment_calendar_sync.db import format_timestamp
from assignment_calendar_sync.db import query_status
from assignment_calendar_sync.models import CalendarEvent
from assignment_calendar_sync.models import Scope
from assignment_calendar_sync.models import SyncMode
from tests.conftest import COURSE_A
from tests.conftest import COURSE_B
from tests.conftest import NOW


def _event(event_id, assignment_id=1, course_id=COURSE_A, title="Assignment Due: X"):
    return CalendarEvent(
        id=event_id,
        title=title,
        start=NOW,
        end=NOW + timedelta(hours=1),
        assignment_id=assignment_id,
        course_id=course_id,
        description="body",
        calendar_id="cal-1",
    )


class TestEvents:
    def test_upsert_and_read_back(self, state_db):
        state_db.upsert_event(_event("E1"))
        state_db.commit()
        got = state_db.get_event("E1")
        assert got == _event("E1")

    def test_upsert_overwrites_same_id(self, state_db):
        state_db.upsert_event(_event("E1", title="old"))
        state_db.upsert_event(_event("E1", title="new"))
        events = state_db.get_events()
        assert len(events) == 1
        assert events[0].title == "new"

    def test_get_events_filters_by_course(self, state_db):
        state_db.upsert_event(_event("E1", assignment_id=1, course_id=COURSE_A))
        state_db.upsert_event(_event("E2", assignment_id=2, course_id=COURSE_B))
        assert [e.id for e in state_db.get_events(Scope.course(COURSE_B))] == ["E2"]
        assert {e.id for e in state_db.get_events(Scope.all())} == {"E1", "E2"}

    def test_get_event_for_assignment(self, state_db):
        state_db.upsert_event(_event("E1", assignment_id=5))
        assert state_db.get_event_for_assignment(5).id == "E1"
        assert state_db.get_event_for_assignment(6) is None

    def test_replace_event_id(self, state_db):
        state_db.upsert_event(_event("E1", assignment_id=5))
        state_db.replace_event_id("E1", _event("E7", assignment_id=5))
        assert state_db.get_event("E1") is None
        assert state_db.get_event_for_assignment(5).id == "E7"

    def test_delete_event(self, state_db):
        state_db.upsert_event(_event("E1"))
        state_db.delete_event("E1")
        assert state_db.get_events() == []

    def test_data_survives_reopen(self, db_path):
        with StateDatabase(db_path) as db:
            db.upsert_event(_event("E1"))
            db.commit()
        with StateDatabase(db_path) as db:
            assert db.get_event("E1") is not None


class TestWatermarksAndSnapshots:
    def test_watermark_round_trip(self, state_db):
        scope = Scope.course(COURSE_A)
        assert state_db.get_watermark(scope) is None
        state_db.set_watermark(scope, NOW, SyncMode.FULL)
        state_db.set_watermark(scope, NOW + timedelta(hours=1), SyncMode.INCREMENTAL)
        assert state_db.get_watermark(scope) == NOW + timedelta(hours=1)
        assert state_db.get_watermark(Scope.all()) is None

    def test_snapshot_is_replaced_per_scope(self, state_db):
        state_db.replace_snapshot(Scope.all(), {1: NOW, 2: None})
        state_db.replace_snapshot(Scope.course(COURSE_A), {1: NOW})
        state_db.replace_snapshot(Scope.all(), {3: NOW})
        assert state_db.get_snapshot(Scope.all()) == {3: NOW}
        assert state_db.get_snapshot(Scope.course(COURSE_A)) == {1: NOW}

    def test_clear_scope_keeps_events(self, state_db):
        state_db.upsert_event(_event("E1"))
        state_db.set_watermark(Scope.all(), NOW, SyncMode.FULL)
        state_db.replace_snapshot(Scope.all(), {1: NOW})
        state_db.clear_scope(Scope.all())
        assert state_db.get_watermark(Scope.all()) is None
        assert state_db.get_snapshot(Scope.all()) == {}
        assert len(state_db.get_events()) == 1


class TestStatusQuery:
    def test_missing_file_is_empty(self, tmp_path):
        assert query_status(tmp_path / "absent.db") == []

    def test_counts_tracked_events_per_scope(self, db_path):
        with StateDatabase(db_path) as db:
            db.upsert_event(_event("E1", assignment_id=1, course_id=COURSE_A))
            db.upsert_event(_event("E2", assignment_id=2, course_id=COURSE_B))
            db.set_watermark(Scope.all(), NOW, SyncMode.FULL)
            db.set_watermark(Scope.course(COURSE_A), NOW, SyncMode.INCREMENTAL)
            db.commit()

        rows = {row["scope_key"]: row for row in query_status(db_path)}
        assert rows["all"]["tracked"] == 2
        assert rows[f"course:{COURSE_A}"]["tracked"] == 1
        assert rows[f"course:{COURSE_A}"]["mode"] == "incremental"

    def test_format_timestamp(self):
        assert format_timestamp(None) == "never"
        assert format_timestamp(NOW.isoformat()).startswith("2026-")
