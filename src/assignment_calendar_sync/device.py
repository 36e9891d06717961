"""
Device calendar adapter contract.
"""

from typing import Protocol

from assignment_calendar_sync.models import CalendarEvent
from assignment_calendar_sync.models import PermissionStatus


class DeviceCalendar(Protocol):
    """A calendar outside this process that assignment events are written to.

    Write methods raise :class:`~assignment_calendar_sync.models.DeviceWriteFailure`
    on any failure. Permission methods return a status and never raise for a
    plain refusal.
    """

    async def create_event(self, event: CalendarEvent) -> str:
        """Create ``event`` and return the id the calendar assigned to it."""
        ...

    async def update_event(self, event: CalendarEvent) -> None: ...

    async def delete_event(self, event_id: str) -> None: ...

    async def query_permission(self) -> PermissionStatus: ...

    async def request_permission(self) -> PermissionStatus: ...
