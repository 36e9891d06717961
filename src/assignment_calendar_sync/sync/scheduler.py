"""
Periodic incremental sync.
"""

import asyncio
import logging
from typing import TYPE_CHECKING

from assignment_calendar_sync.models import ConcurrentSyncRejected
from assignment_calendar_sync.models import Scope
from assignment_calendar_sync.models import SyncResult

if TYPE_CHECKING:
    from assignment_calendar_sync.sync import CalendarSynchronizer

logger = logging.getLogger(__name__)


class AutoSyncScheduler:
    """Runs an incremental sync every ``auto_sync_interval``.

    The interval is a soft schedule: a tick that finds a sync already running
    for the scope is skipped, not queued. Settings are re-read on every tick so
    interval or auto-sync changes apply without a restart.
    """

    def __init__(self, synchronizer: "CalendarSynchronizer", scope: Scope | None = None):
        self.synchronizer = synchronizer
        self.scope = scope or Scope.all()
        self._task: asyncio.Task | None = None
        self.last_result: SyncResult | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"auto-sync-{self.scope.key}")
        logger.info("Auto-sync started for %s", self.scope.key)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Auto-sync stopped for %s", self.scope.key)

    async def wait(self) -> None:
        """Block until the loop ends (``stop()`` or an unexpected error)."""
        if self._task is not None:
            await self._task

    async def run_once(self) -> SyncResult | None:
        """One tick: sync if settings allow and nothing else is running."""
        settings = await self.synchronizer.get_settings()
        if not settings.enabled or not settings.auto_sync:
            logger.debug("Auto-sync disabled in settings; skipping tick")
            return None
        if self.synchronizer.is_running(self.scope):
            logger.info("Sync already running for %s; skipping scheduled run", self.scope.key)
            return None
        try:
            result = await self.synchronizer.perform_incremental_sync(self.scope)
        except ConcurrentSyncRejected:
            logger.info("Sync already running for %s; skipping scheduled run", self.scope.key)
            return None
        self.last_result = result
        return result

    async def _loop(self) -> None:
        while True:
            settings = await self.synchronizer.get_settings()
            await asyncio.sleep(settings.auto_sync_interval.total_seconds())
            await self.run_once()
