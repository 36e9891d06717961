"""
Per-scope entity cache with TTL, forced refresh and stale-read fallback.
"""

import asyncio
import logging
from collections.abc import Awaitable
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import Generic
from typing import TypeVar

from assignment_calendar_sync.models import DEFAULT_CACHE_TTL
from assignment_calendar_sync.models import DEFAULT_FETCH_TIMEOUT
from assignment_calendar_sync.models import MAX_CACHE_TTL
from assignment_calendar_sync.models import MIN_CACHE_TTL
from assignment_calendar_sync.models import CacheMiss
from assignment_calendar_sync.models import CachePolicy
from assignment_calendar_sync.models import CacheStatus
from assignment_calendar_sync.models import FetchFailure
from assignment_calendar_sync.models import FetchFailureKind
from assignment_calendar_sync.models import Scope

T = TypeVar("T")

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def clamp_ttl(ttl: timedelta) -> timedelta:
    """Keep a configured TTL inside the supported 5-15 minute window."""
    return max(MIN_CACHE_TTL, min(MAX_CACHE_TTL, ttl))


@dataclass
class _Entry(Generic[T]):
    entities: list[T] = field(default_factory=list)
    fetched_at: datetime | None = None
    is_stale: bool = False
    last_error: str | None = None


class CacheStore(Generic[T]):
    """Last-known entities per scope for one entity kind.

    ``fetcher`` is the remote call for a scope. At most one fetch per scope is
    in flight; concurrent callers await the same task.
    """

    def __init__(
        self,
        fetcher: Callable[[Scope], Awaitable[list[T]]],
        *,
        ttl: timedelta = DEFAULT_CACHE_TTL,
        fetch_timeout: float | None = DEFAULT_FETCH_TIMEOUT,
        clock: Callable[[], datetime] = utc_now,
        name: str = "entities",
    ):
        self._fetcher = fetcher
        self.ttl = clamp_ttl(ttl)
        self.fetch_timeout = fetch_timeout
        self._clock = clock
        self.name = name
        self._entries: dict[Scope, _Entry[T]] = {}
        self._inflight: dict[Scope, asyncio.Task] = {}

    # ------------------------------------------------------------------ #
    # Reads                                                                #
    # ------------------------------------------------------------------ #

    async def get(
        self, scope: Scope, policy: CachePolicy | None = None
    ) -> tuple[list[T], CacheStatus]:
        """Return entities for ``scope``, fetching when forced, missing or expired.

        A failed fetch falls back to the previous entities marked stale. Raises
        :class:`CacheMiss` only when there is nothing to fall back to.
        """
        policy = policy or CachePolicy()
        entry = self._entries.get(scope)

        if not policy.force_refresh and entry is not None and not self._expired(entry, policy):
            logger.debug("Cache hit for %s %s (%d)", self.name, scope.key, len(entry.entities))
            return list(entry.entities), self.status(scope)

        try:
            await self._refresh(scope, policy)
        except FetchFailure as e:
            entry = self._entries.get(scope)
            if entry is None or entry.fetched_at is None:
                raise CacheMiss(scope, e) from e
            entry.is_stale = True
            entry.last_error = str(e)
            logger.warning(
                "Refresh of %s %s failed (%s); serving %d cached item(s) from %s",
                self.name,
                scope.key,
                e,
                len(entry.entities),
                entry.fetched_at.isoformat(),
            )
            return list(entry.entities), self.status(scope)

        entry = self._entries[scope]
        return list(entry.entities), self.status(scope)

    def peek(self, scope: Scope) -> list[T]:
        """Cached entities for ``scope`` without any remote call."""
        entry = self._entries.get(scope)
        return list(entry.entities) if entry else []

    def status(self, scope: Scope) -> CacheStatus:
        entry = self._entries.get(scope)
        refreshing = scope in self._inflight
        if entry is None:
            return CacheStatus(
                scope=scope, last_fetched_at=None, entity_count=0, is_refreshing=refreshing
            )
        return CacheStatus(
            scope=scope,
            last_fetched_at=entry.fetched_at,
            entity_count=len(entry.entities),
            is_refreshing=refreshing,
            is_stale=entry.is_stale or self._expired(entry, CachePolicy()),
            last_error=entry.last_error,
        )

    def scopes(self) -> list[Scope]:
        return list(self._entries)

    # ------------------------------------------------------------------ #
    # Mutation                                                             #
    # ------------------------------------------------------------------ #

    def clear(self, scope: Scope | None = None) -> None:
        """Evict one scope (or everything); the next ``get`` fetches."""
        if scope is None:
            self._entries.clear()
            logger.debug("Cleared all cached %s", self.name)
        else:
            self._entries.pop(scope, None)
            logger.debug("Cleared cached %s for %s", self.name, scope.key)

    def update_entities(self, fn: Callable[[T], T]) -> int:
        """Apply ``fn`` to every cached entity in every scope; return how many changed."""
        changed = 0
        for entry in self._entries.values():
            updated = [fn(item) for item in entry.entities]
            changed += sum(1 for old, new in zip(entry.entities, updated) if old != new)
            entry.entities = updated
        return changed

    # ------------------------------------------------------------------ #
    # Internals                                                            #
    # ------------------------------------------------------------------ #

    def _expired(self, entry: _Entry[T], policy: CachePolicy) -> bool:
        if entry.fetched_at is None:
            return True
        ttl = policy.ttl if policy.ttl is not None else self.ttl
        return self._clock() - entry.fetched_at > ttl

    async def _refresh(self, scope: Scope, policy: CachePolicy) -> None:
        task = self._inflight.get(scope)
        if task is None:
            timeout = policy.timeout if policy.timeout is not None else self.fetch_timeout
            task = asyncio.create_task(self._fetch_and_store(scope, timeout))
            self._inflight[scope] = task
            task.add_done_callback(lambda _t, s=scope: self._inflight.pop(s, None))
        else:
            logger.debug("Joining in-flight fetch of %s %s", self.name, scope.key)
        # shield: a cancelled caller must not cancel the fetch other callers await
        await asyncio.shield(task)

    async def _fetch_and_store(self, scope: Scope, timeout: float | None) -> None:
        logger.debug("Fetching %s for %s", self.name, scope.key)
        try:
            if timeout is None:
                entities = await self._fetcher(scope)
            else:
                entities = await asyncio.wait_for(self._fetcher(scope), timeout)
        except asyncio.TimeoutError as e:
            raise FetchFailure(
                FetchFailureKind.TIMEOUT, f"Fetching {self.name} for {scope.key} timed out"
            ) from e
        except FetchFailure:
            raise
        except Exception as e:
            logger.exception("Unexpected error fetching %s for %s", self.name, scope.key)
            raise FetchFailure(
                FetchFailureKind.SERVER_ERROR,
                f"Fetching {self.name} for {scope.key} failed: {e!r}",
            ) from e

        self._entries[scope] = _Entry(entities=list(entities), fetched_at=self._clock())
        logger.info("Fetched %d %s for %s", len(entities), self.name, scope.key)
