"""
Full and incremental sync runs, one at a time per scope.
"""

import asyncio
import logging
import sqlite3
import time
from collections.abc import Callable
from datetime import datetime
from datetime import timedelta

from assignment_calendar_sync.cache import CacheStore
from assignment_calendar_sync.cache import utc_now
from assignment_calendar_sync.db import StateDatabase
from assignment_calendar_sync.device import DeviceCalendar
from assignment_calendar_sync.gate import PermissionGate
from assignment_calendar_sync.models import Assignment
from assignment_calendar_sync.models import CacheMiss
from assignment_calendar_sync.models import CachePolicy
from assignment_calendar_sync.models import CalendarSyncError
from assignment_calendar_sync.models import ConcurrentSyncRejected
from assignment_calendar_sync.models import Scope
from assignment_calendar_sync.models import SyncMode
from assignment_calendar_sync.models import SyncResult
from assignment_calendar_sync.models import SyncSettings
from assignment_calendar_sync.queries import calendar_eligible
from assignment_calendar_sync.sync.apply import SyncStats
from assignment_calendar_sync.sync.apply import apply_delta
from assignment_calendar_sync.sync.reconcile import SyncDelta
from assignment_calendar_sync.sync.reconcile import managed_events
from assignment_calendar_sync.sync.reconcile import reconcile

logger = logging.getLogger(__name__)


def changed_since(
    assignments: list[Assignment],
    snapshot: dict[int, datetime | None],
    watermark: datetime,
) -> set[int]:
    """Ids of assignments that are new, moved, or edited since the last run."""
    changed = set()
    for a in assignments:
        if a.id not in snapshot or snapshot[a.id] != a.due_at:
            changed.add(a.id)
        elif a.updated_at is not None and a.updated_at > watermark:
            changed.add(a.id)
    return changed


def narrow_delta(
    delta: SyncDelta,
    assignments: list[Assignment],
    settings: SyncSettings,
    scope: Scope,
    snapshot: dict[int, datetime | None],
    watermark: datetime,
) -> SyncDelta:
    """Restrict a full delta to what an incremental run may touch.

    Creates and updates are limited to changed assignments; deletes to events of
    assignments that were synced last time and are no longer eligible.
    """
    changed = changed_since(assignments, snapshot, watermark)
    eligible_ids = {a.id for a in calendar_eligible(assignments, settings, scope)}
    return SyncDelta(
        to_create=[a for a in delta.to_create if a.id in changed],
        to_update=[(e, a) for e, a in delta.to_update if a.id in changed],
        to_delete=[
            e
            for e in delta.to_delete
            if e.assignment_id in snapshot and e.assignment_id not in eligible_ids
        ],
    )


class SyncCoordinator:
    """Runs sync passes for a scope and records their outcome.

    A second run for a scope that is already syncing is rejected immediately
    with :class:`ConcurrentSyncRejected`; it is never queued. Everything else
    that goes wrong during a run ends up in the returned :class:`SyncResult`.
    """

    def __init__(
        self,
        cache: CacheStore[Assignment],
        gate: PermissionGate,
        device: DeviceCalendar | None,
        state_db: StateDatabase,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.cache = cache
        self.gate = gate
        self.device = device
        self.state_db = state_db
        self._clock = clock
        self._locks: dict[Scope, asyncio.Lock] = {}
        self.last_results: dict[Scope, SyncResult] = {}

    def _lock_for(self, scope: Scope) -> asyncio.Lock:
        return self._locks.setdefault(scope, asyncio.Lock())

    def is_running(self, scope: Scope | None = None) -> bool:
        if scope is None:
            return any(lock.locked() for lock in self._locks.values())
        return self._lock_for(scope).locked()

    def last_result(self, scope: Scope) -> SyncResult | None:
        return self.last_results.get(scope)

    # ------------------------------------------------------------------ #
    # Entry points                                                         #
    # ------------------------------------------------------------------ #

    async def perform_full_sync(self, scope: Scope | None = None) -> SyncResult:
        """Refetch ``scope`` and reconcile every event in it."""
        return await self._locked_run(scope or Scope.all(), SyncMode.FULL, self._sync)

    async def perform_incremental_sync(self, scope: Scope | None = None) -> SyncResult:
        """Reconcile only what changed since the last run (full reconcile if none)."""
        return await self._locked_run(scope or Scope.all(), SyncMode.INCREMENTAL, self._sync)

    async def clear_synced_events(self, scope: Scope | None = None) -> SyncResult:
        """Remove every event this tool wrote for ``scope`` from the calendar."""
        return await self._locked_run(scope or Scope.all(), SyncMode.FULL, self._clear)

    async def _locked_run(self, scope: Scope, mode: SyncMode, body) -> SyncResult:
        lock = self._lock_for(scope)
        if lock.locked():
            logger.warning("Sync for %s rejected: already running", scope.key)
            raise ConcurrentSyncRejected(scope)
        async with lock:
            started = self._clock()
            t0 = time.monotonic()
            logger.info("Starting %s sync for %s", mode.value, scope.key)
            try:
                stats, errors, used_stale = await body(scope, mode, started)
            except (CalendarSyncError, sqlite3.Error) as e:
                logger.error("Sync for %s failed: %s", scope.key, e)
                stats, errors, used_stale = SyncStats(), [str(e)], False

            result = SyncResult(
                scope=scope,
                mode=mode,
                sync_time=started,
                sync_duration=timedelta(seconds=time.monotonic() - t0),
                events_created=stats.added,
                events_updated=stats.modified,
                events_deleted=stats.deleted,
                items_skipped=stats.skipped,
                error_messages=tuple(errors + stats.errors),
                used_stale_data=used_stale,
            )
            self.last_results[scope] = result
            logger.info("Finished %s sync for %s: %s", mode.value, scope.key, result.summary())
            return result

    # ------------------------------------------------------------------ #
    # Run bodies                                                           #
    # ------------------------------------------------------------------ #

    async def _sync(
        self, scope: Scope, mode: SyncMode, started: datetime
    ) -> tuple[SyncStats, list[str], bool]:
        settings = await self.gate.get_settings()
        policy = CachePolicy.forced() if mode == SyncMode.FULL else CachePolicy()
        try:
            assignments, status = await self.cache.get(scope, policy)
        except CacheMiss as e:
            logger.error("No assignments available for %s: %s", scope.key, e)
            return SyncStats(), [str(e)], False

        used_stale = status.last_error is not None and status.is_stale
        if used_stale:
            logger.warning(
                "Syncing %s from stale data fetched at %s", scope.key, status.last_fetched_at
            )

        existing = self.state_db.get_events(scope)
        previous_snapshot = self.state_db.get_snapshot(scope)
        watermark = self.state_db.get_watermark(scope)

        delta = reconcile(assignments, existing, settings, scope)
        if mode == SyncMode.INCREMENTAL and watermark is not None:
            delta = narrow_delta(
                delta, assignments, settings, scope, previous_snapshot, watermark
            )
        elif mode == SyncMode.INCREMENTAL:
            logger.info("No previous sync for %s; reconciling everything", scope.key)

        logger.debug(
            "Delta for %s: %d create, %d update, %d delete",
            scope.key,
            len(delta.to_create),
            len(delta.to_update),
            len(delta.to_delete),
        )
        stats = await apply_delta(delta, settings, self.device, self.gate, self.state_db)

        snapshot = {
            a.id: a.due_at
            for a in calendar_eligible(assignments, settings, scope)
            if a.id not in stats.unsynced_assignments
        }
        for assignment_id in stats.undeleted_assignments:
            snapshot.setdefault(assignment_id, previous_snapshot.get(assignment_id))
        self.state_db.replace_snapshot(scope, snapshot)

        # Data fetched at T reflects edits made before T; never move backwards.
        new_watermark = status.last_fetched_at or started
        if watermark is not None and watermark > new_watermark:
            new_watermark = watermark
        self.state_db.set_watermark(scope, new_watermark, mode)
        self.state_db.commit()
        return stats, [], used_stale

    async def _clear(
        self, scope: Scope, mode: SyncMode, started: datetime
    ) -> tuple[SyncStats, list[str], bool]:
        settings = await self.gate.get_settings()
        events = managed_events(self.state_db.get_events(scope), scope)
        stats = await apply_delta(
            SyncDelta(to_delete=events), settings, self.device, self.gate, self.state_db
        )
        if not stats.errors and not stats.skipped:
            self.state_db.clear_scope(scope)
            self.state_db.commit()
        return stats, [], False
