"""
CalendarSynchronizer: thin facade over the cache, gate and sync coordinator.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from datetime import timedelta
from typing import Any

from assignment_calendar_sync import queries
from assignment_calendar_sync.cache import CacheStore
from assignment_calendar_sync.cache import utc_now
from assignment_calendar_sync.db import StateDatabase
from assignment_calendar_sync.device import DeviceCalendar
from assignment_calendar_sync.gate import PermissionGate
from assignment_calendar_sync.models import DEFAULT_CACHE_TTL
from assignment_calendar_sync.models import DEFAULT_FETCH_TIMEOUT
from assignment_calendar_sync.models import Assignment
from assignment_calendar_sync.models import CachePolicy
from assignment_calendar_sync.models import CacheStatus
from assignment_calendar_sync.models import CalendarEvent
from assignment_calendar_sync.models import PermissionStatus
from assignment_calendar_sync.models import Scope
from assignment_calendar_sync.models import SyncResult
from assignment_calendar_sync.models import SyncSettings
from assignment_calendar_sync.remote import RemoteSource
from assignment_calendar_sync.settings_store import SettingsStore
from assignment_calendar_sync.sync.coordinator import SyncCoordinator
from assignment_calendar_sync.sync.reconcile import assignments_needing_sync
from assignment_calendar_sync.sync.reconcile import find_orphans

logger = logging.getLogger(__name__)


class CalendarSynchronizer:
    """Main entry point for callers (CLI, scheduler, embedding applications)."""

    def __init__(
        self,
        remote: RemoteSource,
        device: DeviceCalendar | None,
        settings_store: SettingsStore,
        state_db: StateDatabase,
        *,
        cache_ttl: timedelta = DEFAULT_CACHE_TTL,
        fetch_timeout: float | None = DEFAULT_FETCH_TIMEOUT,
        denial_threshold: int = 2,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.state_db = state_db
        self._clock = clock
        self.cache: CacheStore[Assignment] = CacheStore(
            remote.fetch_assignments,
            ttl=cache_ttl,
            fetch_timeout=fetch_timeout,
            clock=clock,
            name="assignments",
        )
        self.gate = PermissionGate(device, settings_store, denial_threshold)
        self.coordinator = SyncCoordinator(self.cache, self.gate, device, state_db, clock)

    # -- Entities ------------------------------------------------------------

    async def get_entities(
        self, scope: Scope | None = None, force_refresh: bool = False
    ) -> tuple[list[Assignment], CacheStatus]:
        policy = CachePolicy.forced() if force_refresh else CachePolicy()
        return await self.cache.get(scope or Scope.all(), policy)

    def clear_cache(self, scope: Scope | None = None) -> None:
        self.cache.clear(scope)

    def get_cache_status(self, scope: Scope | None = None) -> CacheStatus:
        return self.cache.status(scope or Scope.all())

    def mark_read(self, assignment_id: int, is_read: bool = True) -> int:
        """Set the local read flag on every cached copy of an assignment."""
        return self.cache.update_entities(
            lambda a: a.with_read(is_read) if a.id == assignment_id else a
        )

    async def find_assignments(
        self,
        scope: Scope | None = None,
        *,
        due_within: timedelta | None = None,
        overdue_only: bool = False,
        unread_only: bool = False,
        text: str | None = None,
    ) -> list[Assignment]:
        """Narrow the cached assignments for ``scope``; reads the cache once."""
        assignments, _status = await self.get_entities(scope)
        now = self._clock()
        if overdue_only:
            assignments = queries.overdue(assignments, now)
        elif due_within is not None:
            assignments = queries.due_soon(assignments, now, due_within)
        if unread_only:
            assignments = queries.unread(assignments)
        if text:
            assignments = queries.search(assignments, text)
        return assignments

    # -- Sync ----------------------------------------------------------------

    async def perform_full_sync(self, scope: Scope | None = None) -> SyncResult:
        return await self.coordinator.perform_full_sync(scope)

    async def perform_incremental_sync(self, scope: Scope | None = None) -> SyncResult:
        return await self.coordinator.perform_incremental_sync(scope)

    async def clear_synced_events(self, scope: Scope | None = None) -> SyncResult:
        return await self.coordinator.clear_synced_events(scope)

    async def get_entities_needing_sync(self, scope: Scope | None = None) -> list[Assignment]:
        """Assignments whose event is missing or out of date (no fetch if cached)."""
        scope = scope or Scope.all()
        assignments, _status = await self.cache.get(scope)
        settings = await self.gate.get_settings()
        return assignments_needing_sync(
            assignments, self.state_db.get_events(scope), settings, scope
        )

    async def get_orphaned_events(self, scope: Scope | None = None) -> list[CalendarEvent]:
        """Tracked events in ``scope`` with no eligible assignment behind them."""
        scope = scope or Scope.all()
        assignments, _status = await self.cache.get(scope)
        settings = await self.gate.get_settings()
        return find_orphans(assignments, self.state_db.get_events(scope), settings, scope)

    def is_running(self, scope: Scope | None = None) -> bool:
        return self.coordinator.is_running(scope)

    async def is_sync_needed(self, scope: Scope | None = None) -> bool:
        """True when auto-sync is on and the last run is older than the interval."""
        scope = scope or Scope.all()
        settings = await self.gate.get_settings()
        if not settings.enabled or not settings.auto_sync:
            return False
        last = self.last_sync_time(scope)
        if last is None:
            return True
        return self._clock() - last >= settings.auto_sync_interval

    def last_sync_time(self, scope: Scope) -> datetime | None:
        result = self.coordinator.last_result(scope)
        if result is not None:
            return result.sync_time
        return self.state_db.get_watermark(scope)

    async def get_sync_statistics(self, scope: Scope | None = None) -> dict[str, Any]:
        scope = scope or Scope.all()
        settings = await self.gate.get_settings()
        last_time = self.last_sync_time(scope)
        result = self.coordinator.last_result(scope)
        return {
            "scope": scope.key,
            "is_running": self.coordinator.is_running(scope),
            "last_sync_time": last_time.isoformat() if last_time else None,
            "last_sync_result": (
                {
                    "mode": result.mode.value,
                    "events_created": result.events_created,
                    "events_updated": result.events_updated,
                    "events_deleted": result.events_deleted,
                    "items_skipped": result.items_skipped,
                    "errors_encountered": result.errors_encountered,
                    "sync_duration_ms": int(result.sync_duration.total_seconds() * 1000),
                    "has_changes": result.has_changes,
                    "used_stale_data": result.used_stale_data,
                }
                if result is not None
                else None
            ),
            "tracked_events": len(self.state_db.get_events(scope)),
            "permission": self.gate.status.value,
            "sync_settings": {
                "is_enabled": settings.enabled,
                "enabled_courses_count": len(settings.enabled_course_ids),
                "reminder_offset_minutes": int(settings.reminder_offset.total_seconds() // 60),
                "auto_sync": settings.auto_sync,
                "sync_to_device_calendar": settings.sync_to_device_calendar,
            },
        }

    # -- Permission & settings -----------------------------------------------

    async def check_permission(self) -> PermissionStatus:
        return await self.gate.check_permission()

    async def request_permission(self) -> PermissionStatus:
        return await self.gate.request_permission()

    async def get_settings(self) -> SyncSettings:
        return await self.gate.get_settings()

    async def update_settings(self, settings: SyncSettings) -> SyncSettings:
        return await self.gate.update_settings(settings)
