"""
Apply a SyncDelta to the device calendar and the local event store.
"""

import asyncio
import logging
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace

from assignment_calendar_sync.db import StateDatabase
from assignment_calendar_sync.device import DeviceCalendar
from assignment_calendar_sync.gate import PermissionGate
from assignment_calendar_sync.models import Assignment
from assignment_calendar_sync.models import CalendarEvent
from assignment_calendar_sync.models import DeviceFailureKind
from assignment_calendar_sync.models import DeviceWriteFailure
from assignment_calendar_sync.models import PermissionDenied
from assignment_calendar_sync.models import SyncSettings
from assignment_calendar_sync.sync.reconcile import SyncDelta
from assignment_calendar_sync.sync.reconcile import build_event

logger = logging.getLogger(__name__)


@dataclass
class SyncStats:
    """Counters for one apply pass."""

    added: int = 0
    modified: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    # Assignments whose create/update did not land (failed or skipped)
    unsynced_assignments: set[int] = field(default_factory=set)
    # Assignments whose orphaned event is still on the calendar
    undeleted_assignments: set[int] = field(default_factory=set)

    def record_error(self, message: str) -> None:
        self.errors.append(message)


async def _process_create(
    assignment: Assignment,
    settings: SyncSettings,
    device: DeviceCalendar,
    state_db: StateDatabase,
    stats: SyncStats,
):
    """Create the event for a new assignment and record the id the calendar assigned."""
    event = build_event(assignment, settings)
    try:
        event_id = await device.create_event(event)
    except DeviceWriteFailure as e:
        logger.error("Failed to create event for assignment %s: %s", assignment.id, e)
        stats.record_error(f"Create failed for assignment {assignment.id}: {e}")
        stats.unsynced_assignments.add(assignment.id)
        return

    state_db.upsert_event(replace(event, id=event_id))
    stats.added += 1
    logger.debug("Created event %s for assignment %s", event_id, assignment.id)


async def _process_update(
    existing: CalendarEvent,
    assignment: Assignment,
    settings: SyncSettings,
    device: DeviceCalendar,
    state_db: StateDatabase,
    stats: SyncStats,
):
    """Update an event in place, recreating it if it was deleted externally."""
    desired = build_event(assignment, settings, existing.id)
    try:
        await device.update_event(desired)
    except DeviceWriteFailure as e:
        if e.kind != DeviceFailureKind.NOT_FOUND:
            logger.error(
                "Failed to update event %s (assignment %s): %s", existing.id, assignment.id, e
            )
            stats.record_error(f"Update failed for assignment {assignment.id}: {e}")
            stats.unsynced_assignments.add(assignment.id)
            return

        # Deleted on the device between syncs; recreate it
        logger.debug(
            "Event %s no longer exists; recreating for assignment %s", existing.id, assignment.id
        )
        try:
            new_id = await device.create_event(replace(desired, id=""))
        except DeviceWriteFailure as e2:
            logger.error("Failed to recreate event for assignment %s: %s", assignment.id, e2)
            stats.record_error(f"Recreate failed for assignment {assignment.id}: {e2}")
            stats.unsynced_assignments.add(assignment.id)
            return
        state_db.replace_event_id(existing.id, replace(desired, id=new_id))
        stats.modified += 1
        logger.debug("Recreated event for assignment %s as %s", assignment.id, new_id)
        return

    state_db.upsert_event(desired)
    stats.modified += 1
    logger.debug("Updated event %s for assignment %s", existing.id, assignment.id)


async def _process_deletion(
    event: CalendarEvent,
    device: DeviceCalendar,
    state_db: StateDatabase,
    stats: SyncStats,
):
    """Delete an orphaned event; an already-missing event still counts as deleted."""
    try:
        await device.delete_event(event.id)
    except DeviceWriteFailure as e:
        if e.kind == DeviceFailureKind.NOT_FOUND:
            logger.debug("Event %s already gone; cleaning up local record", event.id)
        else:
            logger.error("Failed to delete event %s: %s", event.id, e)
            stats.record_error(f"Delete failed for event {event.id}: {e}")
            if event.assignment_id is not None:
                stats.undeleted_assignments.add(event.assignment_id)
            return

    state_db.delete_event(event.id)
    stats.deleted += 1
    logger.debug("Deleted event %s (assignment %s)", event.id, event.assignment_id)


async def _guarded(coro, label: str, stats: SyncStats):
    """Run one item; an unexpected exception becomes an item error."""
    try:
        await coro
    except Exception as e:
        logger.error("Unexpected error while applying %s: %s", label, e, exc_info=True)
        stats.record_error(f"{label}: {e}")
        return False
    return True


async def apply_delta(
    delta: SyncDelta,
    settings: SyncSettings,
    device: DeviceCalendar | None,
    gate: PermissionGate,
    state_db: StateDatabase,
) -> SyncStats:
    """Write every item of ``delta`` concurrently and wait for all of them.

    When the gate refuses device writes nothing is written and every item is
    counted as skipped.
    """
    stats = SyncStats()
    if delta.is_empty:
        return stats

    try:
        await gate.require_device_writes()
        if device is None:
            raise PermissionDenied(gate.status, "No device calendar configured")
    except PermissionDenied as e:
        logger.info("Skipping %d calendar write(s): %s", len(delta), e)
        stats.skipped = len(delta)
        stats.unsynced_assignments.update(a.id for a in delta.to_create)
        stats.unsynced_assignments.update(a.id for _event, a in delta.to_update)
        stats.undeleted_assignments.update(
            ev.assignment_id for ev in delta.to_delete if ev.assignment_id is not None
        )
        return stats

    jobs = []
    for assignment in delta.to_create:
        jobs.append(
            (
                _process_create(assignment, settings, device, state_db, stats),
                f"create assignment {assignment.id}",
                assignment.id,
                False,
            )
        )
    for existing, assignment in delta.to_update:
        jobs.append(
            (
                _process_update(existing, assignment, settings, device, state_db, stats),
                f"update assignment {assignment.id}",
                assignment.id,
                False,
            )
        )
    for event in delta.to_delete:
        jobs.append(
            (
                _process_deletion(event, device, state_db, stats),
                f"delete event {event.id}",
                event.assignment_id,
                True,
            )
        )

    outcomes = await asyncio.gather(*(_guarded(coro, label, stats) for coro, label, _, _ in jobs))
    for ok, (_coro, _label, assignment_id, is_delete) in zip(outcomes, jobs):
        if ok or assignment_id is None:
            continue
        if is_delete:
            stats.undeleted_assignments.add(assignment_id)
        else:
            stats.unsynced_assignments.add(assignment_id)

    state_db.commit()
    return stats
