"""
Command-line interface for Assignment Calendar Sync.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from datetime import timedelta
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from assignment_calendar_sync.db import StateDatabase
from assignment_calendar_sync.db import format_timestamp
from assignment_calendar_sync.db import query_status
from assignment_calendar_sync.gate import PermissionGate
from assignment_calendar_sync.gate import guidance
from assignment_calendar_sync.models import DEFAULT_CONFIG
from assignment_calendar_sync.models import DEFAULT_STATE_DB
from assignment_calendar_sync.models import AppConfig
from assignment_calendar_sync.models import CacheMiss
from assignment_calendar_sync.models import CalendarSyncError
from assignment_calendar_sync.models import ConcurrentSyncRejected
from assignment_calendar_sync.models import PermissionStatus
from assignment_calendar_sync.models import Scope
from assignment_calendar_sync.models import SettingsPersistenceFailure
from assignment_calendar_sync.models import SyncResult
from assignment_calendar_sync.models import SyncSettings
from assignment_calendar_sync.queries import group_by_due_date
from assignment_calendar_sync.remote import CanvasRemoteSource
from assignment_calendar_sync.settings_store import IniSettingsStore
from assignment_calendar_sync.settings_store import load_app_config
from assignment_calendar_sync.sync import CalendarSynchronizer
from assignment_calendar_sync.sync.scheduler import AutoSyncScheduler

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Sync Canvas assignment due dates into an Evolution Data Server calendar.",
)
settings_app = typer.Typer(no_args_is_help=True, help="Show or change sync settings.")
app.add_typer(settings_app, name="settings")

console = Console()


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = DEFAULT_CONFIG
    state_db: Path | None = None
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    state_db: Annotated[
        Path | None,
        typer.Option("--state-db", help=f"State DB path (default: {DEFAULT_STATE_DB})"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug output"),
    ] = False,
) -> None:
    state.config_path = config
    state.state_db = state_db
    state.verbose = verbose
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def _load_config() -> AppConfig:
    try:
        cfg = load_app_config(state.config_path, state.state_db)
    except SettingsPersistenceFailure as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None
    cfg.verbose = state.verbose
    return cfg


def _load_settings(cfg: AppConfig) -> SyncSettings:
    try:
        return IniSettingsStore(cfg.config_path).load()
    except SettingsPersistenceFailure as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None


def _scope(course: int | None) -> Scope:
    return Scope.course(course) if course is not None else Scope.all()


def _open_device(settings: SyncSettings):
    """EDS calendar for device writes, or None when device sync is off."""
    if not settings.sync_to_device_calendar or not settings.device_calendar_id:
        return None
    from assignment_calendar_sync.eds_device import EDSDeviceCalendar

    return EDSDeviceCalendar(settings.device_calendar_id)


def _calendar_label(calendar_uid: str) -> str:
    from assignment_calendar_sync.eds_device import get_calendar_display_info

    name, account, _ = get_calendar_display_info(calendar_uid)
    return name + (f" ({account})" if account else "")


@asynccontextmanager
async def _synchronizer(cfg: AppConfig):
    settings_store = IniSettingsStore(cfg.config_path)
    device = _open_device(settings_store.load())
    with StateDatabase(cfg.state_db_path) as state_db:
        async with CanvasRemoteSource(
            cfg.canvas_base_url or "",
            cfg.canvas_access_token or "",
            timeout=cfg.canvas_timeout,
        ) as remote:
            yield CalendarSynchronizer(
                remote,
                device,
                settings_store,
                state_db,
                cache_ttl=cfg.cache_ttl,
                fetch_timeout=cfg.fetch_timeout,
            )


def _run(coro):
    """Run a coroutine, mapping the common failures to exit codes."""
    try:
        return asyncio.run(coro)
    except CacheMiss as e:
        console.print(f"[bold red]Could not fetch assignments:[/] {e.cause}")
        raise typer.Exit(1) from None
    except ConcurrentSyncRejected as e:
        console.print(f"[yellow]{e}[/]")
        raise typer.Exit(1) from None
    except CalendarSyncError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(130) from None


def _print_result(result: SyncResult) -> None:
    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    results.add_row("Created", str(result.events_created))
    results.add_row("Updated", str(result.events_updated))
    results.add_row("Deleted", str(result.events_deleted))
    results.add_row("Skipped", str(result.items_skipped))
    error_val = Text(str(result.errors_encountered))
    if not result.has_errors:
        error_val.append(" ✓", style="green")
    else:
        error_val.stylize("bold red")
    results.add_row("Errors", error_val)
    results.add_row("Duration", f"{result.sync_duration.total_seconds():.1f}s")

    console.print(Panel(results, title="[bold]Results[/bold]", expand=False))

    for message in result.error_messages:
        console.print(f"  [red]✗[/] {message}")
    if result.used_stale_data:
        console.print("[yellow]Canvas was unreachable; synced from cached assignments.[/]")
    if result.items_skipped and not result.has_changes:
        console.print(
            "[yellow]Calendar writes were skipped.[/] Check "
            "[cyan]assignment-calendar-sync permission[/] and "
            "[cyan]assignment-calendar-sync settings show[/]."
        )


def _fmt_due(value: datetime | None) -> str:
    return value.astimezone().strftime("%Y-%m-%d %H:%M") if value else "—"


def _fmt_minutes(value: timedelta) -> str:
    minutes = int(value.total_seconds() // 60)
    if minutes % 60 == 0:
        return f"{minutes // 60}h"
    return f"{minutes}m"


_COURSE_OPT = Annotated[
    int | None,
    typer.Option("--course", help="Limit to one Canvas course id (default: all courses)"),
]
_YES = Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")]


# ---------------------------------------------------------------------------
# Subcommand: sync
# ---------------------------------------------------------------------------


@app.command()
def sync(
    course: _COURSE_OPT = None,
    incremental: Annotated[
        bool,
        typer.Option("--incremental", "-i", help="Only sync what changed since the last run"),
    ] = False,
    yes: _YES = False,
) -> None:
    """Sync assignment due dates to the calendar (full sync by default)."""
    from assignment_calendar_sync.preflight import run_preflight_checks

    cfg = _load_config()
    settings = _load_settings(cfg)
    if not run_preflight_checks(cfg, settings, console):
        raise typer.Exit(1)

    scope = _scope(course)

    # -- Info panel ----------------------------------------------------------
    info = Text()
    info.append("  Canvas:    ", style="bold")
    info.append(f"{cfg.canvas_base_url}\n")
    info.append("  Scope:     ", style="bold")
    info.append(f"course {course}" if course is not None else "all active courses")
    info.append("\n  Calendar:  ", style="bold")
    if settings.sync_to_device_calendar and settings.device_calendar_id:
        info.append(_calendar_label(settings.device_calendar_id) + "\n")
        info.append(f"             {settings.device_calendar_id}", style="dim")
    else:
        info.append("device sync off (writes will be skipped)", style="yellow")
    info.append("\n  Operation: ")
    if incremental:
        info.append("INCREMENTAL SYNC", style="bold cyan")
    else:
        info.append("FULL SYNC", style="bold green")
    console.print(Panel(info, title="[bold]Assignment Calendar Sync[/bold]"))

    # -- Confirmation --------------------------------------------------------
    if not yes:
        typer.confirm("Proceed?", abort=True)

    # -- Run -----------------------------------------------------------------
    async def _go() -> SyncResult:
        async with _synchronizer(cfg) as synchronizer:
            if incremental:
                return await synchronizer.perform_incremental_sync(scope)
            return await synchronizer.perform_full_sync(scope)

    result = _run(_go())
    _print_result(result)
    if result.has_errors:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommand: clear
# ---------------------------------------------------------------------------


@app.command()
def clear(course: _COURSE_OPT = None, yes: _YES = False) -> None:
    """Remove every event this tool created from the calendar, without re-syncing."""
    cfg = _load_config()
    scope = _scope(course)
    target = f"course {course}" if course is not None else "all courses"
    console.print(
        Panel(
            Text(f"  CLEAR synced events for {target}", style="bold red"),
            title="[bold]Assignment Calendar Sync[/bold]",
        )
    )
    if not yes:
        typer.confirm("Proceed?", abort=True)

    async def _go() -> SyncResult:
        async with _synchronizer(cfg) as synchronizer:
            return await synchronizer.clear_synced_events(scope)

    result = _run(_go())
    _print_result(result)
    if result.has_errors:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommands: pending / orphans
# ---------------------------------------------------------------------------


@app.command()
def pending(course: _COURSE_OPT = None) -> None:
    """List assignments whose calendar event is missing or out of date."""
    cfg = _load_config()

    async def _go():
        async with _synchronizer(cfg) as synchronizer:
            return await synchronizer.get_entities_needing_sync(_scope(course))

    assignments = _run(_go())
    if not assignments:
        console.print("[green]Calendar is up to date.[/]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("ID", justify="right")
    table.add_column("Course", justify="right")
    table.add_column("Assignment")
    table.add_column("Due")
    table.add_column("State")
    for a in assignments:
        table.add_row(
            str(a.id), str(a.course_id), a.name, _fmt_due(a.due_at), a.submission_state.value
        )
    console.print(Panel(table, title=f"[bold]{len(assignments)} assignment(s) to sync[/bold]"))


@app.command()
def orphans(course: _COURSE_OPT = None) -> None:
    """List calendar events whose assignment is gone or no longer synced."""
    cfg = _load_config()

    async def _go():
        async with _synchronizer(cfg) as synchronizer:
            return await synchronizer.get_orphaned_events(_scope(course))

    events = _run(_go())
    if not events:
        console.print("[green]No orphaned events.[/]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Event", overflow="fold")
    table.add_column("Assignment", justify="right")
    table.add_column("Title")
    table.add_column("Due")
    for e in events:
        table.add_row(e.id, str(e.assignment_id), e.title, _fmt_due(e.end))
    console.print(Panel(table, title=f"[bold]{len(events)} orphaned event(s)[/bold]"))


# ---------------------------------------------------------------------------
# Subcommand: list
# ---------------------------------------------------------------------------


@app.command("list")
def list_assignments(
    course: _COURSE_OPT = None,
    due_soon: Annotated[
        int | None,
        typer.Option("--due-soon", min=1, help="Only unsubmitted work due within N days"),
    ] = None,
    overdue: Annotated[
        bool, typer.Option("--overdue", help="Only unsubmitted work past its due date")
    ] = False,
    unread: Annotated[bool, typer.Option("--unread", help="Only assignments not yet read")] = False,
    search: Annotated[
        str | None, typer.Option("--search", "-s", help="Match name or description")
    ] = None,
) -> None:
    """List assignments grouped by due day, optionally filtered."""
    if due_soon is not None and overdue:
        raise typer.BadParameter("--due-soon and --overdue are mutually exclusive")
    cfg = _load_config()

    async def _go():
        async with _synchronizer(cfg) as synchronizer:
            return await synchronizer.find_assignments(
                _scope(course),
                due_within=timedelta(days=due_soon) if due_soon is not None else None,
                overdue_only=overdue,
                unread_only=unread,
                text=search,
            )

    assignments = _run(_go())
    if not assignments:
        console.print("[green]No matching assignments.[/]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Day")
    table.add_column("ID", justify="right")
    table.add_column("Course", justify="right")
    table.add_column("Assignment")
    table.add_column("Due")
    table.add_column("State")
    for day, items in group_by_due_date(assignments).items():
        for index, a in enumerate(items):
            table.add_row(
                day.strftime("%a %Y-%m-%d") if index == 0 else "",
                str(a.id),
                str(a.course_id),
                a.name,
                _fmt_due(a.due_at),
                a.submission_state.value,
            )
        table.add_section()
    for a in assignments:
        if a.due_at is None:
            table.add_row("no due date", str(a.id), str(a.course_id), a.name, "—", "")
    console.print(Panel(table, title=f"[bold]{len(assignments)} assignment(s)[/bold]"))


# ---------------------------------------------------------------------------
# Subcommand: permission
# ---------------------------------------------------------------------------

_PERMISSION_STYLE = {
    PermissionStatus.GRANTED: "green",
    PermissionStatus.DENIED: "red",
    PermissionStatus.RESTRICTED: "yellow",
    PermissionStatus.PERMANENTLY_DENIED: "bold red",
    PermissionStatus.UNKNOWN: "dim",
}


@app.command()
def permission(
    request: Annotated[
        bool, typer.Option("--request", help="Ask for calendar access instead of only checking")
    ] = False,
) -> None:
    """Check (or request) write access to the configured device calendar."""
    cfg = _load_config()
    settings = _load_settings(cfg)
    if not settings.device_calendar_id:
        console.print(
            "[yellow]No device calendar configured.[/] Run "
            "[cyan]assignment-calendar-sync settings set --device-calendar <UID>[/]."
        )
        raise typer.Exit(1)

    from assignment_calendar_sync.eds_device import EDSDeviceCalendar

    gate = PermissionGate(
        EDSDeviceCalendar(settings.device_calendar_id), IniSettingsStore(cfg.config_path)
    )
    result = _run(gate.request_permission() if request else gate.check_permission())

    info = Text()
    info.append("  Calendar:   ", style="bold")
    info.append(_calendar_label(settings.device_calendar_id) + "\n")
    info.append("  Permission: ", style="bold")
    info.append(result.value, style=_PERMISSION_STYLE[result])
    info.append(f"\n\n  {guidance(result)}")
    console.print(Panel(info, title="[bold]Calendar Permission[/bold]"))
    if result != PermissionStatus.GRANTED:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommands: settings show / set
# ---------------------------------------------------------------------------


def _print_settings(settings: SyncSettings) -> None:
    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold")
    table.add_column()
    table.add_row("Enabled", "yes" if settings.enabled else "no")
    courses = ", ".join(str(c) for c in sorted(settings.enabled_course_ids))
    table.add_row("Courses", courses or "all")
    table.add_row("Reminder", f"{_fmt_minutes(settings.reminder_offset)} before due")
    table.add_row("Device sync", "on" if settings.sync_to_device_calendar else "off")
    table.add_row("Calendar", settings.device_calendar_id or "—")
    table.add_row(
        "Auto-sync",
        f"every {_fmt_minutes(settings.auto_sync_interval)}" if settings.auto_sync else "off",
    )
    console.print(Panel(table, title="[bold]Sync Settings[/bold]", expand=False))


@settings_app.command("show")
def settings_show() -> None:
    """Show the current sync settings."""
    cfg = _load_config()
    _print_settings(_load_settings(cfg))


@settings_app.command("set")
def settings_set(
    enabled: Annotated[
        bool | None, typer.Option("--enable/--disable", help="Turn sync on or off")
    ] = None,
    course: Annotated[
        list[int] | None,
        typer.Option("--course", help="Sync only these course ids (repeatable)"),
    ] = None,
    all_courses: Annotated[
        bool, typer.Option("--all-courses", help="Sync every course (clears --course)")
    ] = False,
    reminder_minutes: Annotated[
        int | None,
        typer.Option("--reminder-minutes", min=0, help="Event starts this long before due"),
    ] = None,
    device_sync: Annotated[
        bool | None,
        typer.Option("--device-sync/--no-device-sync", help="Write events to the calendar"),
    ] = None,
    device_calendar: Annotated[
        str | None, typer.Option("--device-calendar", help="EDS calendar UID to write to")
    ] = None,
    auto_sync: Annotated[
        bool | None, typer.Option("--auto-sync/--no-auto-sync", help="Periodic sync in watch")
    ] = None,
    interval_minutes: Annotated[
        int | None,
        typer.Option("--interval-minutes", min=1, help="Auto-sync interval"),
    ] = None,
) -> None:
    """Change sync settings; unspecified options keep their value."""
    if course and all_courses:
        raise typer.BadParameter("--course and --all-courses are mutually exclusive")

    cfg = _load_config()
    current = _load_settings(cfg)
    changes = {}
    if enabled is not None:
        changes["enabled"] = enabled
    if course:
        changes["enabled_course_ids"] = course
    if all_courses:
        changes["enabled_course_ids"] = ()
    if reminder_minutes is not None:
        changes["reminder_offset"] = timedelta(minutes=reminder_minutes)
    if device_sync is not None:
        changes["sync_to_device_calendar"] = device_sync
    if device_calendar is not None:
        changes["device_calendar_id"] = device_calendar or None
    if auto_sync is not None:
        changes["auto_sync"] = auto_sync
    if interval_minutes is not None:
        changes["auto_sync_interval"] = timedelta(minutes=interval_minutes)

    if not changes:
        console.print("[yellow]Nothing to change.[/]")
        _print_settings(current)
        return

    updated = current.replace(**changes)
    gate = PermissionGate(None, IniSettingsStore(cfg.config_path))
    try:
        asyncio.run(gate.update_settings(updated))
    except SettingsPersistenceFailure as e:
        console.print(f"[bold red]Could not save settings:[/] {e}")
        raise typer.Exit(1) from None
    _print_settings(updated)


# ---------------------------------------------------------------------------
# Subcommand: status
# ---------------------------------------------------------------------------


@app.command()
def status() -> None:
    """Show configuration, settings and state database summary."""
    cfg = _load_config()
    config_exists = cfg.config_path.exists()
    db_exists = cfg.state_db_path.exists()

    cfg_info = Text()
    cfg_info.append("  Config:   ", style="bold")
    cfg_info.append(str(cfg.config_path) + " ")
    cfg_info.append(
        "✓" if config_exists else "(not found)", style="green" if config_exists else "red"
    )
    cfg_info.append("\n  State DB: ", style="bold")
    cfg_info.append(str(cfg.state_db_path) + " ")
    cfg_info.append("✓" if db_exists else "(not found)", style="green" if db_exists else "yellow")
    cfg_info.append("\n  Canvas:   ", style="bold")
    cfg_info.append(cfg.canvas_base_url or "(not configured)")
    has_token = bool(cfg.canvas_access_token)
    cfg_info.append("\n  Token:    ", style="bold")
    cfg_info.append(
        "set" if has_token else "(not configured)", style="green" if has_token else "red"
    )
    console.print(Panel(cfg_info, title="[bold]Assignment Calendar Sync — Status[/bold]"))

    settings = _load_settings(cfg)
    _print_settings(settings)

    device = _open_device(settings)
    if device is not None:
        try:
            managed = device.managed_event_count()
        except CalendarSyncError as e:
            console.print(f"[yellow]Could not read the device calendar:[/] {e}")
        else:
            console.print(f"  Managed events on the device calendar: [bold]{managed}[/]")

    rows = query_status(cfg.state_db_path)
    if not rows:
        if not db_exists:
            console.print(
                "[yellow]No state database yet — run[/] "
                "[cyan]assignment-calendar-sync sync[/] "
                "[yellow]to create it.[/]"
            )
        else:
            console.print("[yellow]State database is empty — no syncs recorded yet.[/]")
        return

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Scope")
    table.add_column("Mode")
    table.add_column("Tracked", justify="right")
    table.add_column("Last sync")
    for row in rows:
        table.add_row(
            row["scope_key"],
            row["mode"],
            str(row["tracked"]),
            format_timestamp(row["last_sync_at"]),
        )
    console.print(Panel(table, title="[bold]Sync history[/bold]", expand=False))


# ---------------------------------------------------------------------------
# Subcommand: watch
# ---------------------------------------------------------------------------


@app.command()
def watch(course: _COURSE_OPT = None) -> None:
    """Run incremental syncs on the auto-sync interval until interrupted."""
    from assignment_calendar_sync.preflight import run_preflight_checks

    cfg = _load_config()
    settings = _load_settings(cfg)
    if not run_preflight_checks(cfg, settings, console):
        raise typer.Exit(1)
    if not settings.enabled or not settings.auto_sync:
        console.print(
            "[yellow]Auto-sync is off.[/] Run "
            "[cyan]assignment-calendar-sync settings set --enable --auto-sync[/]."
        )
        raise typer.Exit(1)

    scope = _scope(course)

    async def _go() -> None:
        async with _synchronizer(cfg) as synchronizer:
            scheduler = AutoSyncScheduler(synchronizer, scope)
            if await synchronizer.is_sync_needed(scope):
                result = await scheduler.run_once()
                if result is not None:
                    _print_result(result)
            console.print(
                f"Watching {scope.key}; next sync in "
                f"{_fmt_minutes(settings.auto_sync_interval)}. Press Ctrl+C to stop."
            )
            scheduler.start()
            try:
                await scheduler.wait()
            finally:
                await scheduler.stop()

    _run(_go())


# ---------------------------------------------------------------------------
# Subcommand: calendars
# ---------------------------------------------------------------------------


@app.command()
def calendars() -> None:
    """List EDS calendars that can be used as the device calendar."""
    import gi

    gi.require_version("ECal", "2.0")
    gi.require_version("EDataServer", "1.2")
    from gi.repository import ECal
    from gi.repository import EDataServer
    from gi.repository import GLib

    registry = EDataServer.SourceRegistry.new_sync(None)
    sources = registry.list_sources(EDataServer.SOURCE_EXTENSION_CALENDAR)

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Display Name / UID", min_width=36, overflow="fold")
    table.add_column("Account")
    table.add_column("Mode")
    for source in sources:
        name_cell = Text()
        name_cell.append(source.get_display_name() or "(unnamed)", style="bold")
        name_cell.append("\n")
        name_cell.append(source.get_uid() or "", style="dim")
        account = ""
        parent = source.get_parent()
        if parent:
            psrc = registry.ref_source(parent)
            if psrc:
                account = psrc.get_display_name() or ""
        try:
            client = ECal.Client.connect_sync(source, ECal.ClientSourceType.EVENTS, 5, None)
            if client.is_readonly():
                mode = Text("Read-only", style="yellow")
            else:
                mode = Text("Read-write", style="green")
        except GLib.Error:
            mode = Text("Unknown", style="red")
        table.add_row(name_cell, account, mode)
    console.print(table)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
