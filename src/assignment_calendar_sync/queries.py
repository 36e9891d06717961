"""
Pure filters over cached assignment sets.

Specialised views (due soon, overdue, search) never trigger their own fetch:
callers read the cache once and narrow the result here.
"""

import re
from collections.abc import Iterable
from datetime import date
from datetime import datetime
from datetime import timedelta

from assignment_calendar_sync.models import Assignment
from assignment_calendar_sync.models import Scope
from assignment_calendar_sync.models import SubmissionState
from assignment_calendar_sync.models import SyncSettings

_TAG_RE = re.compile(r"<[^>]*>")


def strip_html(text: str) -> str:
    return _TAG_RE.sub("", text or "").strip()


def in_scope(assignments: Iterable[Assignment], scope: Scope) -> list[Assignment]:
    return [a for a in assignments if scope.contains(a.course_id)]


def calendar_eligible(
    assignments: Iterable[Assignment], settings: SyncSettings, scope: Scope | None = None
) -> list[Assignment]:
    """Assignments that should have a calendar event: due date set, course opted in."""
    scope = scope or Scope.all()
    return [
        a
        for a in assignments
        if a.due_at is not None
        and scope.contains(a.course_id)
        and settings.includes_course(a.course_id)
    ]


def due_soon(
    assignments: Iterable[Assignment], now: datetime, within: timedelta = timedelta(days=7)
) -> list[Assignment]:
    """Unsubmitted assignments due between ``now`` and ``now + within``, soonest first."""
    horizon = now + within
    found = [
        a
        for a in assignments
        if a.due_at is not None
        and now <= a.due_at <= horizon
        and a.submission_state != SubmissionState.SUBMITTED
    ]
    return sorted(found, key=lambda a: a.due_at)


def overdue(assignments: Iterable[Assignment], now: datetime) -> list[Assignment]:
    """Unsubmitted assignments whose due date has passed, most recent first."""
    found = [
        a
        for a in assignments
        if a.due_at is not None
        and a.due_at < now
        and a.submission_state != SubmissionState.SUBMITTED
    ]
    return sorted(found, key=lambda a: a.due_at, reverse=True)


def unread(assignments: Iterable[Assignment]) -> list[Assignment]:
    return [a for a in assignments if not a.is_read]


def search(assignments: Iterable[Assignment], text: str) -> list[Assignment]:
    """Case-insensitive match on name and (HTML-stripped) description."""
    needle = text.strip().lower()
    if not needle:
        return list(assignments)
    return [
        a
        for a in assignments
        if needle in a.name.lower() or needle in strip_html(a.description).lower()
    ]


def group_by_due_date(assignments: Iterable[Assignment]) -> dict[date, list[Assignment]]:
    """Group assignments with a due date by calendar day (in the due date's own tz)."""
    grouped: dict[date, list[Assignment]] = {}
    for a in sorted((a for a in assignments if a.due_at is not None), key=lambda a: a.due_at):
        grouped.setdefault(a.due_at.date(), []).append(a)
    return grouped
