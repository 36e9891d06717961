"""
Evolution Data Server device calendar.
"""

import asyncio
import logging
import threading
import uuid
from dataclasses import replace

import gi

gi.require_version("EDataServer", "1.2")
gi.require_version("ECal", "2.0")
gi.require_version("ICalGLib", "3.0")
from gi.repository import ECal
from gi.repository import EDataServer
from gi.repository import GLib
from gi.repository import ICalGLib

from assignment_calendar_sync.models import CalendarEvent
from assignment_calendar_sync.models import DeviceFailureKind
from assignment_calendar_sync.models import DeviceWriteFailure
from assignment_calendar_sync.models import PermissionStatus

logger = logging.getLogger(__name__)

# X-properties are stripped by some backends (Microsoft 365), CATEGORIES survive
MANAGED_CATEGORY = "ASSIGNMENT-SYNC-MANAGED"
ASSIGNMENT_ID_PROPERTY = "X-ASSIGNMENT-ID"

# E_CAL_CLIENT_ERROR_OBJECT_NOT_FOUND = 1  (from e-cal-client-error-quark)
_EDS_NOT_FOUND_CODE = 1
_EDS_CLIENT_ERROR_DOMAIN = "e-cal-client-error-quark"

# The M365 backend embeds the Exchange EWS error name in the message string
_M365_ERROR_DOMAIN = "e-m365-error-quark"
_M365_NOT_FOUND_MSG = "ErrorItemNotFound"


def is_not_found_error(e: Exception) -> bool:
    """Return True when EDS reports that a calendar object does not exist."""
    if isinstance(e, GLib.Error):
        domain = e.domain or ""
        if e.code == _EDS_NOT_FOUND_CODE and _EDS_CLIENT_ERROR_DOMAIN in domain:
            return True
        if _M365_ERROR_DOMAIN in domain and _M365_NOT_FOUND_MSG in (e.message or ""):
            return True
    return "object not found" in str(e).lower()


def _to_write_failure(e: Exception, action: str) -> DeviceWriteFailure:
    message = getattr(e, "message", None) or str(e)
    if is_not_found_error(e):
        kind = DeviceFailureKind.NOT_FOUND
    elif "permission" in message.lower() or "read-only" in message.lower():
        kind = DeviceFailureKind.PERMISSION
    else:
        kind = DeviceFailureKind.PLATFORM_ERROR
    return DeviceWriteFailure(kind, f"Failed to {action}: {message}")


def get_calendar_display_info(calendar_uid: str) -> tuple[str, str, str]:
    """
    Get human-readable information about a calendar.

    Returns:
        Tuple of (display_name, account_name, uid)
    """
    try:
        registry = EDataServer.SourceRegistry.new_sync(None)
        source = registry.ref_source(calendar_uid)

        if not source:
            return ("Unknown Calendar", "", calendar_uid)

        display_name = source.get_display_name() or "Unnamed Calendar"

        account_name = ""
        parent_uid = source.get_parent()
        if parent_uid:
            parent_source = registry.ref_source(parent_uid)
            if parent_source:
                account_name = parent_source.get_display_name() or ""

        return (display_name, account_name, calendar_uid)
    except GLib.Error as e:
        return (f"Error: {e.message}", "", calendar_uid)


def _ical_time(value) -> ICalGLib.Time:
    return ICalGLib.Time.new_from_timet_with_zone(
        int(value.timestamp()), 0, ICalGLib.Timezone.get_utc_timezone()
    )


def build_component(event: CalendarEvent) -> ICalGLib.Component:
    """Build a VEVENT for ``event``, tagged so it can be recognised later."""
    comp = ICalGLib.Component.new_vevent()
    comp.set_uid(event.id)
    comp.set_summary(event.title)
    if event.description:
        comp.set_description(event.description)
    comp.set_dtstart(_ical_time(event.start))
    comp.set_dtend(_ical_time(event.end))

    comp.add_property(ICalGLib.Property.new_categories(MANAGED_CATEGORY))
    if event.assignment_id is not None:
        prop = ICalGLib.Property.new_x(str(event.assignment_id))
        prop.set_x_name(ASSIGNMENT_ID_PROPERTY)
        comp.add_property(prop)
    return comp


def is_managed_component(component: ICalGLib.Component) -> bool:
    """Check if an event was created by this tool."""
    prop = component.get_first_property(ICalGLib.PropertyKind.CATEGORIES_PROPERTY)
    while prop:
        categories = prop.get_categories()
        if categories and MANAGED_CATEGORY in categories:
            return True
        prop = component.get_next_property(ICalGLib.PropertyKind.CATEGORIES_PROPERTY)
    return False


class EDSDeviceCalendar:
    """Device calendar backed by one Evolution Data Server calendar source.

    Blocking EDS calls run in a worker thread. EDS has no interactive
    permission prompt, so requesting permission re-reads the source's state:
    a missing source is ``denied``, a read-only one ``restricted``.
    """

    def __init__(self, calendar_uid: str, timeout: int = 10):
        self.calendar_uid = calendar_uid
        self.timeout = timeout
        self.client: ECal.Client | None = None
        self._lock = threading.Lock()

    # -- Connection ----------------------------------------------------------

    def _source(self):
        registry = EDataServer.SourceRegistry.new_sync(None)
        return registry.ref_source(self.calendar_uid)

    def _connected(self) -> ECal.Client:
        with self._lock:
            if self.client is not None:
                return self.client
            source = self._source()
            if not source:
                raise DeviceWriteFailure(
                    DeviceFailureKind.PERMISSION,
                    f"Calendar with UID '{self.calendar_uid}' not found in EDS",
                )
            try:
                self.client = ECal.Client.connect_sync(
                    source, ECal.ClientSourceType.EVENTS, self.timeout, None
                )
            except GLib.Error as e:
                raise DeviceWriteFailure(
                    DeviceFailureKind.PLATFORM_ERROR,
                    f"Failed to connect to calendar {self.calendar_uid}: {e.message}",
                ) from e
            return self.client

    # -- Writes --------------------------------------------------------------

    def _create_sync(self, event: CalendarEvent) -> str:
        client = self._connected()
        uid = str(uuid.uuid4())
        try:
            success, out_uid = client.create_object_sync(
                build_component(replace(event, id=uid)), ECal.OperationFlags.NONE, None
            )
        except GLib.Error as e:
            raise _to_write_failure(e, "create event") from e
        if not success:
            raise DeviceWriteFailure(DeviceFailureKind.PLATFORM_ERROR, "Failed to create event")
        # Some backends (Microsoft 365) rewrite the UID; the returned one is authoritative
        return out_uid or uid

    def _update_sync(self, event: CalendarEvent) -> None:
        client = self._connected()
        try:
            success = client.modify_object_sync(
                build_component(event), ECal.ObjModType.THIS, ECal.OperationFlags.NONE, None
            )
        except GLib.Error as e:
            raise _to_write_failure(e, f"modify event {event.id}") from e
        if not success:
            raise DeviceWriteFailure(
                DeviceFailureKind.PLATFORM_ERROR, f"Failed to modify event {event.id}"
            )

    def _delete_sync(self, event_id: str) -> None:
        client = self._connected()
        try:
            success = client.remove_object_sync(
                event_id,
                None,  # rid (recurrence-id)
                ECal.ObjModType.THIS,
                ECal.OperationFlags.NONE,
                None,  # cancellable
            )
        except GLib.Error as e:
            raise _to_write_failure(e, f"remove event {event_id}") from e
        if not success:
            raise DeviceWriteFailure(
                DeviceFailureKind.PLATFORM_ERROR, f"Failed to remove event {event_id}"
            )

    async def create_event(self, event: CalendarEvent) -> str:
        return await asyncio.to_thread(self._create_sync, event)

    async def update_event(self, event: CalendarEvent) -> None:
        await asyncio.to_thread(self._update_sync, event)

    async def delete_event(self, event_id: str) -> None:
        await asyncio.to_thread(self._delete_sync, event_id)

    # -- Permission ----------------------------------------------------------

    def _permission_sync(self) -> PermissionStatus:
        try:
            source = self._source()
        except GLib.Error as e:
            logger.warning("EDS registry unreachable: %s", e.message)
            return PermissionStatus.UNKNOWN
        if not source:
            return PermissionStatus.DENIED
        try:
            client = self._connected()
        except DeviceWriteFailure as e:
            logger.warning("%s", e)
            return PermissionStatus.UNKNOWN
        if client.is_readonly():
            return PermissionStatus.RESTRICTED
        return PermissionStatus.GRANTED

    async def query_permission(self) -> PermissionStatus:
        return await asyncio.to_thread(self._permission_sync)

    async def request_permission(self) -> PermissionStatus:
        return await asyncio.to_thread(self._permission_sync)

    # -- Inspection ----------------------------------------------------------

    def managed_event_count(self) -> int:
        """Number of events in the calendar tagged as written by this tool."""
        client = self._connected()
        try:
            # "#t" (boolean true) is the sexp for "all events"
            _, objects = client.get_object_list_sync("#t", None)
        except GLib.Error as e:
            raise _to_write_failure(e, "fetch events") from e
        count = 0
        for obj in objects:
            comp = ICalGLib.Component.new_from_string(obj) if isinstance(obj, str) else obj
            if is_managed_component(comp):
                count += 1
        return count
