"""
Shared pytest fixtures and entity helpers.
"""

from datetime import datetime
from datetime import timedelta
from datetime import timezone

import pytest

from assignment_calendar_sync.db import StateDatabase
from assignment_calendar_sync.models import Assignment
from assignment_calendar_sync.models import SyncSettings
from assignment_calendar_sync.sync import CalendarSynchronizer
from tests.fake_client import FakeDeviceCalendar
from tests.fake_client import FakeRemoteSource
from tests.fake_client import MemorySettingsStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
COURSE_A = 101
COURSE_B = 202
DEVICE_CAL_ID = "assignments-calendar-test"


def make_assignment(
    assignment_id: int,
    course_id: int = COURSE_A,
    due_in_days: float | None = 3,
    name: str | None = None,
    **kwargs,
) -> Assignment:
    """Return an assignment due ``due_in_days`` after NOW (None = no due date)."""
    due_at = NOW + timedelta(days=due_in_days) if due_in_days is not None else None
    return Assignment(
        id=assignment_id,
        course_id=course_id,
        name=name or f"Assignment {assignment_id}",
        due_at=due_at,
        **kwargs,
    )


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta):
        self.now += delta


def device_settings(**changes) -> SyncSettings:
    """Settings with sync and device writes on, targeting the test calendar."""
    base = SyncSettings(
        enabled=True,
        sync_to_device_calendar=True,
        device_calendar_id=DEVICE_CAL_ID,
    )
    return base.replace(**changes) if changes else base


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test_state.db"


@pytest.fixture
def state_db(db_path):
    with StateDatabase(db_path) as db:
        yield db


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def remote():
    return FakeRemoteSource([make_assignment(1, due_in_days=3), make_assignment(2, due_in_days=10)])


@pytest.fixture
def device():
    return FakeDeviceCalendar()


@pytest.fixture
def settings_store():
    return MemorySettingsStore(device_settings())


@pytest.fixture
def synchronizer(remote, device, settings_store, state_db, clock):
    return CalendarSynchronizer(remote, device, settings_store, state_db, clock=clock)
