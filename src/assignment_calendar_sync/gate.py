"""
Permission & settings gate consulted before every device-calendar write.
"""

import asyncio
import logging

from assignment_calendar_sync.device import DeviceCalendar
from assignment_calendar_sync.models import PermissionDenied
from assignment_calendar_sync.models import PermissionStatus
from assignment_calendar_sync.models import SyncSettings
from assignment_calendar_sync.settings_store import SettingsStore

logger = logging.getLogger(__name__)

_GUIDANCE = {
    PermissionStatus.GRANTED: (
        "Calendar access is granted. Assignments can be synced to your calendar."
    ),
    PermissionStatus.DENIED: (
        "Calendar access was denied. Run 'assignment-calendar-sync permission --request' "
        "to ask for access again."
    ),
    PermissionStatus.RESTRICTED: (
        "Calendar access is restricted by system settings: the target calendar is "
        "read-only. Pick a writable calendar or change its permissions."
    ),
    PermissionStatus.PERMANENTLY_DENIED: (
        "Calendar access was permanently denied. Change the calendar's access in your "
        "system settings, then run 'assignment-calendar-sync permission' to re-check."
    ),
    PermissionStatus.UNKNOWN: (
        "Calendar permission status is unknown. Try requesting permission again."
    ),
}


def guidance(status: PermissionStatus) -> str:
    """User-facing instructions for a permission status."""
    return _GUIDANCE[status]


class PermissionGate:
    """Holds device-calendar permission state and the current sync settings.

    Permission state machine::

        unknown -> granted | denied | restricted
        denied (x denial_threshold consecutive requests) -> permanently_denied

    ``permanently_denied`` is terminal for :meth:`request_permission`; only a
    :meth:`check_permission` that finds the platform now reports ``granted`` or
    ``restricted`` (the user changed it out of band) leaves it. Permission is
    never persisted: every process starts at ``unknown``.
    """

    def __init__(
        self,
        device: DeviceCalendar | None,
        settings_store: SettingsStore,
        denial_threshold: int = 2,
    ):
        self.device = device
        self.settings_store = settings_store
        self.denial_threshold = denial_threshold
        self._status = PermissionStatus.UNKNOWN
        self._consecutive_denials = 0
        self._settings: SyncSettings | None = None
        self._settings_lock = asyncio.Lock()

    @property
    def status(self) -> PermissionStatus:
        return self._status

    # ------------------------------------------------------------------ #
    # Permission                                                           #
    # ------------------------------------------------------------------ #

    async def check_permission(self) -> PermissionStatus:
        """Re-query the platform for the current permission."""
        if self.device is None:
            return self._transition(PermissionStatus.UNKNOWN)
        try:
            answer = await self.device.query_permission()
        except Exception as e:
            logger.warning("Querying calendar permission failed: %s", e)
            answer = PermissionStatus.UNKNOWN

        if self._status == PermissionStatus.PERMANENTLY_DENIED and answer not in (
            PermissionStatus.GRANTED,
            PermissionStatus.RESTRICTED,
        ):
            return self._status
        return self._transition(answer)

    async def request_permission(self) -> PermissionStatus:
        """Ask the platform for access; counts consecutive refusals."""
        if self._status == PermissionStatus.PERMANENTLY_DENIED:
            logger.info("Calendar permission permanently denied; not asking again")
            return self._status
        if self.device is None:
            return self._transition(PermissionStatus.UNKNOWN)
        try:
            answer = await self.device.request_permission()
        except Exception as e:
            logger.warning("Requesting calendar permission failed: %s", e)
            answer = PermissionStatus.UNKNOWN

        if answer == PermissionStatus.DENIED:
            self._consecutive_denials += 1
            if self._consecutive_denials >= self.denial_threshold:
                answer = PermissionStatus.PERMANENTLY_DENIED
        return self._transition(answer)

    def _transition(self, new: PermissionStatus) -> PermissionStatus:
        if new == PermissionStatus.GRANTED:
            self._consecutive_denials = 0
        if new != self._status:
            logger.debug("Calendar permission: %s -> %s", self._status.value, new.value)
        self._status = new
        return new

    # ------------------------------------------------------------------ #
    # Settings                                                             #
    # ------------------------------------------------------------------ #

    @property
    def settings(self) -> SyncSettings:
        if self._settings is None:
            raise RuntimeError("Settings not loaded; call load_settings() first")
        return self._settings

    async def load_settings(self) -> SyncSettings:
        async with self._settings_lock:
            self._settings = await asyncio.to_thread(self.settings_store.load)
            return self._settings

    async def get_settings(self) -> SyncSettings:
        if self._settings is None:
            return await self.load_settings()
        return self._settings

    async def update_settings(self, settings: SyncSettings) -> SyncSettings:
        """Persist ``settings`` then make them current; return the previous settings.

        A persistence failure propagates and leaves the in-memory settings as
        they were.
        """
        async with self._settings_lock:
            previous = self._settings
            if previous is None:
                previous = await asyncio.to_thread(self.settings_store.load)
            await asyncio.to_thread(self.settings_store.save, settings)
            self._settings = settings
        removed = previous.enabled_course_ids - settings.enabled_course_ids
        if previous.enabled_course_ids and not settings.enabled_course_ids:
            logger.warning("Course list emptied; assignments from every course will now be synced")
        elif removed:
            logger.info(
                "Courses %s excluded; their events will be removed on the next sync",
                ", ".join(str(c) for c in sorted(removed)),
            )
        return previous

    # ------------------------------------------------------------------ #
    # Write authorisation                                                  #
    # ------------------------------------------------------------------ #

    async def device_writes_allowed(self) -> bool:
        try:
            await self.require_device_writes()
        except PermissionDenied as e:
            logger.debug("Device writes not allowed: %s", e)
            return False
        return True

    async def require_device_writes(self) -> None:
        """Raise :class:`PermissionDenied` unless device sync is on and access is granted."""
        settings = await self.get_settings()
        if not settings.sync_to_device_calendar:
            raise PermissionDenied(self._status, "Device calendar sync is turned off in settings")
        status = await self.check_permission()
        if status != PermissionStatus.GRANTED:
            raise PermissionDenied(status)
