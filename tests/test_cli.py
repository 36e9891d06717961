"""
Tests for the CLI wiring that does not need a terminal or a running EDS.
"""

import pytest

from assignment_calendar_sync.cli import _synchronizer
from assignment_calendar_sync.models import AppConfig


@pytest.mark.asyncio
async def test_synchronizer_bounds_whole_fetch_with_fetch_timeout(tmp_path):
    cfg = AppConfig(
        config_path=tmp_path / "sync.conf",
        state_db_path=tmp_path / "state.db",
        canvas_base_url="https://canvas.example.edu",
        canvas_access_token="token",
        canvas_timeout=15.0,
        fetch_timeout=90.0,
    )
    async with _synchronizer(cfg) as synchronizer:
        assert synchronizer.cache.fetch_timeout == 90.0
