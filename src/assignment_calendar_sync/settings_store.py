"""
Sync settings persistence and config-file loading.

Settings live in the ``[sync-settings]`` section of the same INI file that
holds the ``[canvas]`` and ``[cache]`` sections; saving rewrites only that
section.
"""

import logging
import os
import tempfile
from configparser import ConfigParser
from configparser import Error as ConfigParserError
from datetime import timedelta
from pathlib import Path
from typing import Protocol

from assignment_calendar_sync.models import DEFAULT_CACHE_TTL
from assignment_calendar_sync.models import DEFAULT_FETCH_TIMEOUT
from assignment_calendar_sync.models import DEFAULT_STATE_DB
from assignment_calendar_sync.models import AppConfig
from assignment_calendar_sync.models import SettingsPersistenceFailure
from assignment_calendar_sync.models import SyncSettings

logger = logging.getLogger(__name__)

SETTINGS_SECTION = "sync-settings"


class SettingsStore(Protocol):
    def load(self) -> SyncSettings: ...

    def save(self, settings: SyncSettings) -> None: ...


def _read_parser(path: Path) -> ConfigParser:
    parser = ConfigParser()
    if path.exists():
        try:
            parser.read(path)
        except (OSError, ConfigParserError) as e:
            raise SettingsPersistenceFailure(f"Cannot read {path}: {e}") from e
    return parser


def settings_to_section(settings: SyncSettings) -> dict[str, str]:
    return {
        "enabled": str(settings.enabled).lower(),
        "enabled_course_ids": ", ".join(str(c) for c in sorted(settings.enabled_course_ids)),
        "reminder_offset_minutes": str(int(settings.reminder_offset.total_seconds() // 60)),
        "sync_to_device_calendar": str(settings.sync_to_device_calendar).lower(),
        "device_calendar_id": settings.device_calendar_id or "",
        "auto_sync": str(settings.auto_sync).lower(),
        "auto_sync_interval_minutes": str(int(settings.auto_sync_interval.total_seconds() // 60)),
    }


def settings_from_parser(parser: ConfigParser) -> SyncSettings:
    """Build settings from a parsed INI file; missing keys keep their defaults."""
    defaults = SyncSettings()
    if SETTINGS_SECTION not in parser:
        return defaults
    section = parser[SETTINGS_SECTION]
    try:
        course_ids = frozenset(
            int(part) for part in section.get("enabled_course_ids", "").split(",") if part.strip()
        )
        reminder = section.getint(
            "reminder_offset_minutes",
            fallback=int(defaults.reminder_offset.total_seconds() // 60),
        )
        interval = section.getint(
            "auto_sync_interval_minutes",
            fallback=int(defaults.auto_sync_interval.total_seconds() // 60),
        )
        return SyncSettings(
            enabled=section.getboolean("enabled", fallback=defaults.enabled),
            enabled_course_ids=course_ids,
            reminder_offset=timedelta(minutes=reminder),
            sync_to_device_calendar=section.getboolean(
                "sync_to_device_calendar", fallback=defaults.sync_to_device_calendar
            ),
            device_calendar_id=section.get("device_calendar_id") or None,
            auto_sync=section.getboolean("auto_sync", fallback=defaults.auto_sync),
            auto_sync_interval=timedelta(minutes=interval),
        )
    except ValueError as e:
        raise SettingsPersistenceFailure(f"Invalid [{SETTINGS_SECTION}] value: {e}") from e


class IniSettingsStore:
    """Reads and writes the ``[sync-settings]`` section of an INI config file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> SyncSettings:
        return settings_from_parser(_read_parser(self.path))

    def save(self, settings: SyncSettings) -> None:
        """Rewrite the settings section, leaving every other section as it was.

        The file is replaced atomically so a crash never leaves it half written.
        """
        parser = _read_parser(self.path)
        parser[SETTINGS_SECTION] = settings_to_section(settings)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    parser.write(fh)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise SettingsPersistenceFailure(f"Cannot write {self.path}: {e}") from e
        logger.debug("Saved sync settings to %s", self.path)


def load_app_config(
    config_path: Path,
    state_db_path: Path | None = None,
    environ: dict[str, str] | None = None,
) -> AppConfig:
    """Read ``[canvas]`` and ``[cache]`` from the config file.

    ``CANVAS_BASE_URL`` / ``CANVAS_ACCESS_TOKEN`` in the environment win over the
    file; an explicit ``state_db_path`` wins over ``[cache] state_db``.
    """
    environ = os.environ if environ is None else environ
    parser = _read_parser(config_path)
    canvas = parser["canvas"] if "canvas" in parser else {}
    cache = parser["cache"] if "cache" in parser else {}

    try:
        timeout = float(canvas.get("timeout", 15))
        fetch_timeout = float(canvas.get("fetch_timeout", DEFAULT_FETCH_TIMEOUT))
        ttl_minutes = float(cache.get("ttl_minutes", DEFAULT_CACHE_TTL.total_seconds() / 60))
    except ValueError as e:
        raise SettingsPersistenceFailure(f"Invalid value in {config_path}: {e}") from e

    if state_db_path is None:
        configured = cache.get("state_db")
        state_db_path = Path(configured).expanduser() if configured else DEFAULT_STATE_DB

    return AppConfig(
        config_path=config_path,
        state_db_path=state_db_path,
        canvas_base_url=environ.get("CANVAS_BASE_URL") or canvas.get("base_url") or None,
        canvas_access_token=(
            environ.get("CANVAS_ACCESS_TOKEN") or canvas.get("access_token") or None
        ),
        canvas_timeout=timeout,
        fetch_timeout=fetch_timeout,
        cache_ttl=timedelta(minutes=ttl_minutes),
    )
