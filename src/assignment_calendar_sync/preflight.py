"""
Preflight checks run before sync to catch common misconfigurations early.
"""

import logging
import sqlite3
from urllib.parse import urlparse

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from assignment_calendar_sync.models import AppConfig
from assignment_calendar_sync.models import SyncSettings

logger = logging.getLogger(__name__)

_OFFLINE_KEYWORDS = frozenset(
    {
        "offline",
        "network",
        "transport",
        "unreachable",
        "not connected",
        "no route",
        "authentication failed",
        "connection refused",
        "temporary failure",
    }
)


def check_canvas(cfg: AppConfig) -> list[tuple[str, str, str]]:
    issues = []
    parsed = urlparse(cfg.canvas_base_url or "")
    if not cfg.canvas_base_url:
        issues.append(
            (
                "Canvas",
                "base_url is not set",
                f"Add [canvas] base_url to {cfg.config_path} or set CANVAS_BASE_URL",
            )
        )
    elif parsed.scheme not in ("http", "https") or not parsed.netloc:
        issues.append(
            (
                "Canvas",
                f"Invalid base_url: {cfg.canvas_base_url}",
                "Use the full URL, e.g. https://school.instructure.com",
            )
        )
    if not cfg.canvas_access_token:
        issues.append(
            (
                "Canvas",
                "access_token is not set",
                f"Add [canvas] access_token to {cfg.config_path} or set CANVAS_ACCESS_TOKEN",
            )
        )
    return issues


def check_state_db(cfg: AppConfig) -> list[tuple[str, str, str]]:
    """State DB parent dir writable + DB readable/writable if it exists."""
    db_path = cfg.state_db_path
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error("Cannot create state DB directory %s: %s", db_path.parent, e)
        return [("State database", f"{db_path}: {e}", f"Check permissions on {db_path.parent}")]

    if db_path.exists():
        try:
            conn = sqlite3.connect(db_path)
            conn.execute("SELECT 1")
            # BEGIN IMMEDIATE takes a write lock and needs a journal file beside the DB
            conn.execute("BEGIN IMMEDIATE")
            conn.execute("ROLLBACK")
            conn.close()
        except sqlite3.Error as e:
            logger.error("State DB not readable/writable (%s): %s", db_path, e)
            return [
                (
                    "State database",
                    f"{db_path}: {e}",
                    f"Check permissions on {db_path.parent} "
                    f"(journal files must be creatable alongside the DB)",
                )
            ]
    return []


def check_eds_calendar(calendar_uid: str | None) -> list[tuple[str, str, str]]:
    """The target EDS calendar exists and accepts a connection."""
    if not calendar_uid:
        return [
            (
                "Device calendar",
                "device_calendar_id is not set",
                "Run: assignment-calendar-sync settings set --device-calendar <UID>",
            )
        ]

    import gi

    gi.require_version("ECal", "2.0")
    gi.require_version("EDataServer", "1.2")
    from gi.repository import ECal
    from gi.repository import EDataServer
    from gi.repository import GLib

    try:
        registry = EDataServer.SourceRegistry.new_sync(None)
    except GLib.Error as e:
        logger.error("EDS registry unreachable: %s", e)
        return [("EDS registry", str(e), "Is evolution-data-server running?")]

    source = registry.ref_source(calendar_uid)
    if source is None:
        logger.error("Calendar UID not found in EDS: %s", calendar_uid)
        return [
            (
                "Device calendar",
                f"UID not found: {calendar_uid}",
                "Run: assignment-calendar-sync calendars",
            )
        ]

    try:
        ECal.Client.connect_sync(source, ECal.ClientSourceType.EVENTS, 5, None)
    except GLib.Error as e:
        msg = e.message or str(e)
        logger.error("Cannot connect to calendar (%s): %s", calendar_uid, msg)
        if any(kw in msg.lower() for kw in _OFFLINE_KEYWORDS):
            account_name = _get_parent_display_name(registry, source)
            if account_name:
                hint = f"Account '{account_name}' appears offline, check GNOME Online Accounts"
            else:
                hint = "Calendar appears offline, check GNOME Online Accounts"
        else:
            hint = msg
        return [("Device calendar", f"Connection failed: {msg}", hint)]
    return []


def run_preflight_checks(cfg: AppConfig, settings: SyncSettings, console: Console) -> bool:
    """Return True if sync may proceed; print issues and return False otherwise."""
    issues: list[tuple[str, str, str]] = []  # (label, detail, hint)
    issues += check_canvas(cfg)
    issues += check_state_db(cfg)
    if settings.sync_to_device_calendar:
        issues += check_eds_calendar(settings.device_calendar_id)

    if issues:
        _print_issues(issues, console)
        return False
    return True


def _get_parent_display_name(registry, source) -> str:
    """Return the display name of the source's parent account, or empty string."""
    parent_uid = source.get_parent()
    if not parent_uid:
        return ""
    parent_source = registry.ref_source(parent_uid)
    if not parent_source:
        return ""
    return parent_source.get_display_name() or ""


def _print_issues(issues: list[tuple[str, str, str]], console: Console) -> None:
    body = Text()
    for i, (label, detail, hint) in enumerate(issues):
        if i:
            body.append("\n")
        body.append(f"  ✗  {label}: ", style="bold red")
        body.append(detail, style="bold red")
        body.append(f"\n       → {hint}", style="yellow")

    console.print(Panel(body, title="[bold red]Preflight checks failed[/bold red]"))
