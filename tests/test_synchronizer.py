"""
Tests for the CalendarSynchronizer read-side API: cached entities, read
flags, pending/orphan views, and the auto-sync bookkeeping.
"""

from datetime import timedelta

import pytest

from assignment_calendar_sync.models import FetchFailure
from assignment_calendar_sync.models import FetchFailureKind
from assignment_calendar_sync.models import Scope
from assignment_calendar_sync.sync import CalendarSynchronizer
from assignment_calendar_sync.sync.reconcile import build_event
from tests.conftest import COURSE_A
from tests.conftest import NOW
from tests.conftest import device_settings
from tests.conftest import make_assignment


class TestEntities:
    @pytest.mark.asyncio
    async def test_get_entities_uses_cache(self, synchronizer, remote):
        await synchronizer.get_entities()
        items, status = await synchronizer.get_entities()
        assert [a.id for a in items] == [1, 2]
        assert len(remote.calls) == 1
        assert synchronizer.get_cache_status().entity_count == 2
        assert status.last_fetched_at == NOW

    @pytest.mark.asyncio
    async def test_force_refresh_falls_back_to_stale(self, synchronizer, remote):
        await synchronizer.get_entities()
        remote.failure = FetchFailure(FetchFailureKind.TIMEOUT)
        items, status = await synchronizer.get_entities(force_refresh=True)
        assert [a.id for a in items] == [1, 2]
        assert status.is_stale

    @pytest.mark.asyncio
    async def test_clear_cache(self, synchronizer, remote):
        await synchronizer.get_entities()
        synchronizer.clear_cache()
        await synchronizer.get_entities()
        assert len(remote.calls) == 2

    @pytest.mark.asyncio
    async def test_mark_read_updates_cached_copy(self, synchronizer, remote):
        await synchronizer.get_entities()
        assert synchronizer.mark_read(2) == 1
        items, _ = await synchronizer.get_entities()
        assert {a.id: a.is_read for a in items} == {1: False, 2: True}
        assert synchronizer.mark_read(2, is_read=False) == 1
        assert len(remote.calls) == 1


class TestFindAssignments:
    @pytest.mark.asyncio
    async def test_due_soon_window(self, synchronizer):
        found = await synchronizer.find_assignments(due_within=timedelta(days=7))
        assert [a.id for a in found] == [1]

    @pytest.mark.asyncio
    async def test_overdue_only(self, synchronizer, remote):
        remote.set(make_assignment(1, due_in_days=-2), make_assignment(2, due_in_days=4))
        found = await synchronizer.find_assignments(overdue_only=True)
        assert [a.id for a in found] == [1]

    @pytest.mark.asyncio
    async def test_unread_and_search_combine(self, synchronizer, remote):
        remote.set(
            make_assignment(1, name="Lab report"),
            make_assignment(2, name="Essay draft"),
            make_assignment(3, name="Lab quiz"),
        )
        await synchronizer.get_entities()
        synchronizer.mark_read(3)
        found = await synchronizer.find_assignments(unread_only=True, text="lab")
        assert [a.id for a in found] == [1]

    @pytest.mark.asyncio
    async def test_reads_cache_once(self, synchronizer, remote):
        await synchronizer.find_assignments(Scope.course(COURSE_A), text="assignment")
        await synchronizer.find_assignments(Scope.course(COURSE_A), overdue_only=True)
        assert remote.calls == [Scope.course(COURSE_A)]


class TestPendingAndOrphans:
    @pytest.mark.asyncio
    async def test_everything_pending_before_first_sync(self, synchronizer):
        pending = await synchronizer.get_entities_needing_sync()
        assert sorted(a.id for a in pending) == [1, 2]

    @pytest.mark.asyncio
    async def test_nothing_pending_after_sync(self, synchronizer):
        await synchronizer.perform_full_sync()
        assert await synchronizer.get_entities_needing_sync() == []
        assert await synchronizer.get_orphaned_events() == []

    @pytest.mark.asyncio
    async def test_orphans_are_reported_without_writing(self, synchronizer, device, state_db):
        state_db.upsert_event(build_event(make_assignment(9), device_settings(), "E9"))
        orphans = await synchronizer.get_orphaned_events()
        assert [e.id for e in orphans] == ["E9"]
        assert device.write_count == 0


class TestAutoSyncBookkeeping:
    @pytest.mark.asyncio
    async def test_sync_needed_before_first_run(self, synchronizer):
        assert await synchronizer.is_sync_needed()

    @pytest.mark.asyncio
    async def test_sync_needed_after_interval(self, synchronizer, clock):
        await synchronizer.perform_incremental_sync()
        assert not await synchronizer.is_sync_needed()
        clock.advance(timedelta(hours=6))
        assert await synchronizer.is_sync_needed()

    @pytest.mark.asyncio
    async def test_not_needed_when_disabled(self, synchronizer):
        await synchronizer.update_settings(device_settings(enabled=False))
        assert not await synchronizer.is_sync_needed()
        await synchronizer.update_settings(device_settings(auto_sync=False))
        assert not await synchronizer.is_sync_needed()

    @pytest.mark.asyncio
    async def test_last_sync_time_survives_restart(
        self, synchronizer, remote, device, settings_store, state_db, clock
    ):
        await synchronizer.perform_full_sync()
        fresh = CalendarSynchronizer(remote, device, settings_store, state_db, clock=clock)
        assert fresh.last_sync_time(Scope.all()) == NOW

    @pytest.mark.asyncio
    async def test_statistics(self, synchronizer):
        await synchronizer.check_permission()
        await synchronizer.perform_full_sync()

        stats = await synchronizer.get_sync_statistics()

        assert stats["scope"] == "all"
        assert stats["is_running"] is False
        assert stats["last_sync_time"] == NOW.isoformat()
        assert stats["last_sync_result"]["events_created"] == 2
        assert stats["last_sync_result"]["mode"] == "full"
        assert stats["tracked_events"] == 2
        assert stats["permission"] == "granted"
        assert stats["sync_settings"]["is_enabled"] is True
        assert stats["sync_settings"]["reminder_offset_minutes"] == 60
