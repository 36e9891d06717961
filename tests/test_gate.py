"""
Tests for PermissionGate: the permission state machine, settings updates and
the device-write check.
"""

import logging

import pytest

from assignment_calendar_sync.gate import PermissionGate
from assignment_calendar_sync.gate import guidance
from assignment_calendar_sync.models import PermissionDenied
from assignment_calendar_sync.models import PermissionStatus
from assignment_calendar_sync.models import SettingsPersistenceFailure
from tests.conftest import COURSE_A
from tests.conftest import COURSE_B
from tests.conftest import device_settings
from tests.fake_client import FakeDeviceCalendar
from tests.fake_client import MemorySettingsStore


class _ExplodingDevice(FakeDeviceCalendar):
    async def query_permission(self):
        raise RuntimeError("calendar service crashed")

    async def request_permission(self):
        raise RuntimeError("calendar service crashed")


@pytest.fixture
def gate(device, settings_store):
    return PermissionGate(device, settings_store)


class TestPermissionStateMachine:
    def test_starts_unknown(self, gate):
        assert gate.status == PermissionStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_check_reports_platform_answer(self, gate, device):
        assert await gate.check_permission() == PermissionStatus.GRANTED
        device.permission = PermissionStatus.RESTRICTED
        assert await gate.check_permission() == PermissionStatus.RESTRICTED
        assert device.permission_queries == 2

    @pytest.mark.asyncio
    async def test_single_denial_is_not_permanent(self, gate, device):
        device.request_answers = [PermissionStatus.DENIED]
        assert await gate.request_permission() == PermissionStatus.DENIED

    @pytest.mark.asyncio
    async def test_repeated_denials_become_permanent(self, gate, device):
        device.permission = PermissionStatus.DENIED
        await gate.request_permission()
        assert await gate.request_permission() == PermissionStatus.PERMANENTLY_DENIED

        # Terminal for requests: the platform is not asked again
        device.permission = PermissionStatus.GRANTED
        assert await gate.request_permission() == PermissionStatus.PERMANENTLY_DENIED
        assert device.permission_requests == 2

    @pytest.mark.asyncio
    async def test_grant_resets_denial_count(self, gate, device):
        device.request_answers = [
            PermissionStatus.DENIED,
            PermissionStatus.GRANTED,
            PermissionStatus.DENIED,
        ]
        await gate.request_permission()
        await gate.request_permission()
        assert await gate.request_permission() == PermissionStatus.DENIED

    @pytest.mark.asyncio
    async def test_check_leaves_permanent_denial_only_when_granted(self, gate, device):
        device.permission = PermissionStatus.DENIED
        await gate.request_permission()
        await gate.request_permission()

        assert await gate.check_permission() == PermissionStatus.PERMANENTLY_DENIED

        device.permission = PermissionStatus.GRANTED
        assert await gate.check_permission() == PermissionStatus.GRANTED

    @pytest.mark.asyncio
    async def test_adapter_error_maps_to_unknown(self, settings_store):
        gate = PermissionGate(_ExplodingDevice(), settings_store)
        assert await gate.check_permission() == PermissionStatus.UNKNOWN
        assert await gate.request_permission() == PermissionStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_no_device_is_unknown(self, settings_store):
        gate = PermissionGate(None, settings_store)
        assert await gate.check_permission() == PermissionStatus.UNKNOWN

    def test_every_status_has_guidance(self):
        for status in PermissionStatus:
            assert guidance(status)


class TestSettings:
    def test_settings_before_load_raises(self, gate):
        with pytest.raises(RuntimeError):
            gate.settings

    @pytest.mark.asyncio
    async def test_update_persists_then_applies(self, gate, settings_store):
        new = device_settings(enabled_course_ids={COURSE_A})
        previous = await gate.update_settings(new)
        assert previous == device_settings()
        assert settings_store.settings == new
        assert await gate.get_settings() == new

    @pytest.mark.asyncio
    async def test_failed_save_keeps_current_settings(self, gate, settings_store):
        await gate.load_settings()
        settings_store.fail_saves = True
        with pytest.raises(SettingsPersistenceFailure):
            await gate.update_settings(device_settings(enabled_course_ids={COURSE_B}))
        assert gate.settings == device_settings()

    @pytest.mark.asyncio
    async def test_emptying_course_list_warns(self, settings_store, caplog):
        settings_store.settings = device_settings(enabled_course_ids={COURSE_A})
        gate = PermissionGate(FakeDeviceCalendar(), settings_store)
        with caplog.at_level(logging.WARNING, logger="assignment_calendar_sync.gate"):
            await gate.update_settings(device_settings())
        assert "every course" in caplog.text
        assert gate.settings.includes_course(COURSE_B)

    @pytest.mark.asyncio
    async def test_narrowing_course_list_does_not_warn(self, gate, caplog):
        await gate.update_settings(device_settings(enabled_course_ids={COURSE_A, COURSE_B}))
        with caplog.at_level(logging.WARNING, logger="assignment_calendar_sync.gate"):
            await gate.update_settings(device_settings(enabled_course_ids={COURSE_A}))
        assert "every course" not in caplog.text
        assert not gate.settings.includes_course(COURSE_B)


class TestDeviceWrites:
    @pytest.mark.asyncio
    async def test_allowed_when_enabled_and_granted(self, gate):
        assert await gate.device_writes_allowed()
        await gate.require_device_writes()

    @pytest.mark.asyncio
    async def test_refused_when_device_sync_off(self, device):
        gate = PermissionGate(
            device, MemorySettingsStore(device_settings(sync_to_device_calendar=False))
        )
        with pytest.raises(PermissionDenied):
            await gate.require_device_writes()
        assert device.permission_queries == 0

    @pytest.mark.asyncio
    async def test_refused_when_permission_revoked(self, gate, device):
        assert await gate.device_writes_allowed()
        device.permission = PermissionStatus.DENIED
        with pytest.raises(PermissionDenied) as excinfo:
            await gate.require_device_writes()
        assert excinfo.value.status == PermissionStatus.DENIED
