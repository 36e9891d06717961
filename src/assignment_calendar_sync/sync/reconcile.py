"""
Pure diff between desired (assignment-derived) and existing calendar events.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from dataclasses import field

from assignment_calendar_sync.models import Assignment
from assignment_calendar_sync.models import CalendarEvent
from assignment_calendar_sync.models import Scope
from assignment_calendar_sync.models import SyncSettings
from assignment_calendar_sync.queries import calendar_eligible
from assignment_calendar_sync.queries import strip_html

TITLE_PREFIX = "Assignment Due: "


def event_title(assignment: Assignment) -> str:
    return f"{TITLE_PREFIX}{assignment.name}"


def event_description(assignment: Assignment) -> str:
    """Plain-text body for an assignment event (HTML stripped from the LMS text)."""
    lines = [f"Canvas Assignment: {assignment.name}"]

    cleaned = strip_html(assignment.description)
    if cleaned:
        lines += ["", "Description:", cleaned]

    lines += ["", f"Due: {assignment.due_at.astimezone().strftime('%Y-%m-%d %H:%M')}"]
    if assignment.points_possible is not None:
        lines.append(f"Points: {assignment.points_possible:g}")
    if assignment.html_url:
        lines.append(f"Link: {assignment.html_url}")

    lines += ["", f"Course ID: {assignment.course_id}", f"Assignment ID: {assignment.id}"]
    return "\n".join(lines)


def build_event(
    assignment: Assignment, settings: SyncSettings, event_id: str = ""
) -> CalendarEvent:
    """Desired calendar event for an assignment with a due date.

    The event runs from ``due - reminder_offset`` to the due time so the
    calendar's own start notification doubles as the reminder.
    """
    if assignment.due_at is None:
        raise ValueError(f"Assignment {assignment.id} has no due date")
    return CalendarEvent(
        id=event_id,
        title=event_title(assignment),
        start=assignment.due_at - settings.reminder_offset,
        end=assignment.due_at,
        assignment_id=assignment.id,
        course_id=assignment.course_id,
        description=event_description(assignment),
        calendar_id=settings.device_calendar_id,
    )


def event_differs(existing: CalendarEvent, desired: CalendarEvent) -> bool:
    return (
        existing.title != desired.title
        or existing.start != desired.start
        or existing.end != desired.end
    )


@dataclass
class SyncDelta:
    """Writes needed to bring the calendar in line with the assignment set."""

    to_create: list[Assignment] = field(default_factory=list)
    to_update: list[tuple[CalendarEvent, Assignment]] = field(default_factory=list)
    to_delete: list[CalendarEvent] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.to_create or self.to_update or self.to_delete)

    def __len__(self) -> int:
        return len(self.to_create) + len(self.to_update) + len(self.to_delete)


def managed_events(events: Iterable[CalendarEvent], scope: Scope) -> list[CalendarEvent]:
    """Events that reference an assignment and belong to ``scope``."""
    return [e for e in events if e.assignment_id is not None and scope.contains(e.course_id)]


def reconcile(
    assignments: Iterable[Assignment],
    existing_events: Iterable[CalendarEvent],
    settings: SyncSettings,
    scope: Scope | None = None,
) -> SyncDelta:
    """Compute the creates, updates and deletes for ``scope``.

    Only events whose course lies inside ``scope`` are considered, so a
    course-scoped run never touches another course's events. When several
    events reference the same assignment the one with the lowest id is kept
    and the rest are deleted.
    """
    scope = scope or Scope.all()
    eligible = {a.id: a for a in calendar_eligible(assignments, settings, scope)}

    by_assignment: dict[int, list[CalendarEvent]] = {}
    for event in managed_events(existing_events, scope):
        by_assignment.setdefault(event.assignment_id, []).append(event)

    delta = SyncDelta()
    for assignment_id, events in by_assignment.items():
        events.sort(key=lambda e: e.id)
        assignment = eligible.get(assignment_id)
        if assignment is None:
            delta.to_delete.extend(events)
            continue
        kept, extras = events[0], events[1:]
        delta.to_delete.extend(extras)
        if event_differs(kept, build_event(assignment, settings, kept.id)):
            delta.to_update.append((kept, assignment))

    for assignment_id, assignment in eligible.items():
        if assignment_id not in by_assignment:
            delta.to_create.append(assignment)

    delta.to_create.sort(key=lambda a: (a.due_at, a.id))
    delta.to_update.sort(key=lambda pair: (pair[1].due_at, pair[1].id))
    delta.to_delete.sort(key=lambda e: e.id)
    return delta


def find_orphans(
    assignments: Iterable[Assignment],
    existing_events: Iterable[CalendarEvent],
    settings: SyncSettings,
    scope: Scope | None = None,
) -> list[CalendarEvent]:
    return reconcile(assignments, existing_events, settings, scope).to_delete


def assignments_needing_sync(
    assignments: Iterable[Assignment],
    existing_events: Iterable[CalendarEvent],
    settings: SyncSettings,
    scope: Scope | None = None,
) -> list[Assignment]:
    delta = reconcile(assignments, existing_events, settings, scope)
    return delta.to_create + [a for _event, a in delta.to_update]
