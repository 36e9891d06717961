"""
Pure data models with no network, EDS or sqlite imports.
"""

import enum
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from pathlib import Path
from typing import Any

DEFAULT_STATE_DB = Path.home() / ".local/share/assignment-calendar-sync-state.db"
DEFAULT_CONFIG = Path.home() / ".config/assignment-calendar-sync.conf"

DEFAULT_CACHE_TTL = timedelta(minutes=10)
MIN_CACHE_TTL = timedelta(minutes=5)
MAX_CACHE_TTL = timedelta(minutes=15)
DEFAULT_FETCH_TIMEOUT = 60.0


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class CalendarSyncError(Exception):
    """Base exception for calendar sync errors."""

    pass


class FetchFailureKind(str, enum.Enum):
    NETWORK = "network"
    AUTH = "auth"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"


class FetchFailure(CalendarSyncError):
    """The remote source could not deliver assignments."""

    def __init__(self, kind: FetchFailureKind, message: str = ""):
        self.kind = kind
        super().__init__(message or kind.value)


class CacheMiss(CalendarSyncError):
    """A refresh failed and there is no earlier data to fall back to."""

    def __init__(self, scope: "Scope", cause: Exception):
        self.scope = scope
        self.cause = cause
        super().__init__(f"No cached data for {scope.key} and refresh failed: {cause}")


class DeviceFailureKind(str, enum.Enum):
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    PLATFORM_ERROR = "platform_error"


class DeviceWriteFailure(CalendarSyncError):
    """A device calendar create/update/delete did not go through."""

    def __init__(self, kind: DeviceFailureKind, message: str = ""):
        self.kind = kind
        super().__init__(message or kind.value)


class PermissionDenied(CalendarSyncError):
    """Device calendar writes are not currently allowed."""

    def __init__(self, status: "PermissionStatus", reason: str = ""):
        self.status = status
        super().__init__(reason or f"Device calendar permission is {status.value}")


class ConcurrentSyncRejected(CalendarSyncError):
    """A sync run for the same scope is already active."""

    def __init__(self, scope: "Scope"):
        self.scope = scope
        super().__init__(f"Sync already in progress for {scope.key}")


class SettingsPersistenceFailure(CalendarSyncError):
    """Sync settings could not be loaded or saved."""

    pass


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp (Canvas uses a trailing ``Z``) to an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"Unsupported datetime value: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Scope:
    """Subset of assignments a cache or sync operation applies to.

    ``course_id=None`` means every course visible to the user.
    """

    course_id: int | None = None

    @classmethod
    def all(cls) -> "Scope":
        return cls(None)

    @classmethod
    def course(cls, course_id: int) -> "Scope":
        return cls(int(course_id))

    @property
    def is_all(self) -> bool:
        return self.course_id is None

    @property
    def key(self) -> str:
        return "all" if self.course_id is None else f"course:{self.course_id}"

    def contains(self, course_id: int | None) -> bool:
        if self.course_id is None:
            return True
        return course_id == self.course_id

    def __str__(self) -> str:
        return self.key


class SubmissionState(str, enum.Enum):
    AVAILABLE = "available"
    SUBMITTED = "submitted"
    OVERDUE = "overdue"


@dataclass(frozen=True)
class Assignment:
    """An assignment as last fetched from the LMS.

    Immutable; the read flag is the only field changed locally, via
    :meth:`with_read`.
    """

    id: int
    course_id: int
    name: str
    due_at: datetime | None = None
    submission_state: SubmissionState = SubmissionState.AVAILABLE
    is_read: bool = False
    description: str = ""
    updated_at: datetime | None = None
    html_url: str | None = None
    points_possible: float | None = None

    def with_read(self, is_read: bool = True) -> "Assignment":
        return replace(self, is_read=is_read)

    @classmethod
    def from_record(cls, record: dict[str, Any], *, now: datetime | None = None) -> "Assignment":
        """Build from a Canvas ``/assignments`` JSON record."""
        due_at = parse_datetime(record.get("due_at"))
        submission = record.get("submission") or {}
        workflow = submission.get("workflow_state")
        if submission.get("submitted_at") or workflow in ("submitted", "graded", "pending_review"):
            state = SubmissionState.SUBMITTED
        elif due_at is not None and due_at < (now or datetime.now(timezone.utc)):
            state = SubmissionState.OVERDUE
        else:
            state = SubmissionState.AVAILABLE

        points = record.get("points_possible")
        return cls(
            id=int(record["id"]),
            course_id=int(record["course_id"]),
            name=str(record.get("name") or f"Assignment {record['id']}"),
            due_at=due_at,
            submission_state=state,
            is_read=bool(record.get("read_state") == "read"),
            description=record.get("description") or "",
            updated_at=parse_datetime(record.get("updated_at")),
            html_url=record.get("html_url"),
            points_possible=float(points) if points is not None else None,
        )


@dataclass(frozen=True)
class CalendarEvent:
    """A calendar entry, optionally derived from an assignment.

    ``id`` is whatever the device calendar assigned once the event was written.
    """

    id: str
    title: str
    start: datetime
    end: datetime
    assignment_id: int | None = None
    course_id: int | None = None
    description: str = ""
    calendar_id: str | None = None


# ---------------------------------------------------------------------------
# Cache, sync and permission descriptors
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CachePolicy:
    """How a single cache read may use or refresh cached data."""

    force_refresh: bool = False
    ttl: timedelta | None = None
    timeout: float | None = None

    @classmethod
    def forced(cls) -> "CachePolicy":
        return cls(force_refresh=True)


@dataclass(frozen=True)
class CacheStatus:
    """Read-only staleness snapshot for one scope."""

    scope: Scope
    last_fetched_at: datetime | None
    entity_count: int
    is_refreshing: bool = False
    is_stale: bool = False
    last_error: str | None = None

    @property
    def has_data(self) -> bool:
        return self.last_fetched_at is not None

    def age(self, now: datetime) -> timedelta | None:
        if self.last_fetched_at is None:
            return None
        return now - self.last_fetched_at


class SyncMode(str, enum.Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one sync run."""

    scope: Scope
    mode: SyncMode
    sync_time: datetime
    sync_duration: timedelta
    events_created: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    items_skipped: int = 0
    error_messages: tuple[str, ...] = ()
    used_stale_data: bool = False

    @property
    def errors_encountered(self) -> int:
        return len(self.error_messages)

    @property
    def has_errors(self) -> bool:
        return bool(self.error_messages)

    @property
    def total_changes(self) -> int:
        return self.events_created + self.events_updated + self.events_deleted

    @property
    def has_changes(self) -> bool:
        return self.total_changes > 0

    def summary(self) -> str:
        parts = []
        if self.events_created:
            parts.append(f"{self.events_created} created")
        if self.events_updated:
            parts.append(f"{self.events_updated} updated")
        if self.events_deleted:
            parts.append(f"{self.events_deleted} deleted")
        if self.items_skipped:
            parts.append(f"{self.items_skipped} skipped")
        if self.error_messages:
            parts.append(f"{len(self.error_messages)} errors")
        return ", ".join(parts) if parts else "No changes"


@dataclass(frozen=True)
class SyncSettings:
    """User-controlled sync configuration.

    An empty ``enabled_course_ids`` means every course is opted in, so removing
    the last listed course turns sync on for all courses rather than off.
    Turn ``enabled`` or ``sync_to_device_calendar`` off to stop syncing.
    """

    enabled: bool = False
    enabled_course_ids: frozenset[int] = field(default_factory=frozenset)
    reminder_offset: timedelta = timedelta(hours=1)
    sync_to_device_calendar: bool = False
    device_calendar_id: str | None = None
    auto_sync: bool = True
    auto_sync_interval: timedelta = timedelta(hours=6)

    def includes_course(self, course_id: int) -> bool:
        if not self.enabled_course_ids:
            return True
        return course_id in self.enabled_course_ids

    def replace(self, **changes: Any) -> "SyncSettings":
        if "enabled_course_ids" in changes:
            changes["enabled_course_ids"] = frozenset(
                int(c) for c in changes["enabled_course_ids"]
            )
        return replace(self, **changes)


class PermissionStatus(str, enum.Enum):
    GRANTED = "granted"
    DENIED = "denied"
    RESTRICTED = "restricted"
    PERMANENTLY_DENIED = "permanently_denied"
    UNKNOWN = "unknown"


@dataclass
class AppConfig:
    """Process-level configuration read from the config file and environment."""

    config_path: Path = DEFAULT_CONFIG
    state_db_path: Path = DEFAULT_STATE_DB
    canvas_base_url: str | None = None
    canvas_access_token: str | None = None
    canvas_timeout: float = 15.0
    # bounds one whole fetch_assignments call, which may span many requests
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    cache_ttl: timedelta = DEFAULT_CACHE_TTL
    verbose: bool = False
