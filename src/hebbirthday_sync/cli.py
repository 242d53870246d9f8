"""
Command-line interface for Hebrew Birthday Calendar Sync.
"""

import asyncio
import logging
from collections.abc import Awaitable
from collections.abc import Callable
from configparser import ConfigParser
from dataclasses import dataclass
from dataclasses import field
from datetime import date
from pathlib import Path
from typing import Annotated
from typing import Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from hebbirthday_sync.calendar_client import GoogleCalendarClient
from hebbirthday_sync.calendar_client import load_credentials
from hebbirthday_sync.dates import upcoming_birthdays
from hebbirthday_sync.db import StateDatabase
from hebbirthday_sync.db import query_tenant_summary
from hebbirthday_sync.models import DEFAULT_CONFIG
from hebbirthday_sync.models import DEFAULT_STATE_DB
from hebbirthday_sync.models import DEFAULT_TOKEN_FILE
from hebbirthday_sync.models import CalendarSyncError
from hebbirthday_sync.models import HistoryStatus
from hebbirthday_sync.models import Outcome
from hebbirthday_sync.models import OutcomeStatus
from hebbirthday_sync.models import SyncConfig
from hebbirthday_sync.models import SyncState
from hebbirthday_sync.models import SyncStats
from hebbirthday_sync.orchestrator import SyncOrchestrator
from hebbirthday_sync.status import effective_sync_state
from hebbirthday_sync.sync import CalendarSyncService

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Sync Gregorian and Hebrew birthdays to a dedicated Google Calendar.",
)

console = Console()

_STATE_STYLES = {
    SyncState.IDLE: "dim",
    SyncState.PENDING: "cyan",
    SyncState.SYNCED: "green",
    SyncState.DRIFTED: "yellow",
    SyncState.FAILED: "bold red",
}

_HISTORY_STYLES = {
    HistoryStatus.SUCCESS: "green",
    HistoryStatus.PARTIAL: "yellow",
    HistoryStatus.FAILED: "bold red",
}


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    state_db: Path = field(default_factory=lambda: DEFAULT_STATE_DB)
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    state_db: Annotated[
        Path,
        typer.Option("--state-db", help=f"State DB path (default: {DEFAULT_STATE_DB})"),
    ] = DEFAULT_STATE_DB,
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
    # googleapiclient logs every discovery fetch at INFO
    logging.getLogger("googleapiclient").setLevel(logging.WARNING)


def _load_config_file(config_path: Path) -> dict[str, str]:
    if not config_path.exists():
        return {}
    parser = ConfigParser()
    parser.read(config_path)
    if "hebbirthday-sync" not in parser:
        return {}
    return dict(parser["hebbirthday-sync"])


def _build_config(dry_run: bool = False, yes: bool = False) -> SyncConfig:
    config_file = _load_config_file(state.config_path)
    user_id = config_file.get("user_id")
    tenant_id = config_file.get("tenant_id")

    if not user_id or not tenant_id:
        console.print(
            "[bold red]Error:[/] [cyan]user_id[/] and [cyan]tenant_id[/] must be set in "
            f"the [cyan][hebbirthday-sync][/] section of {state.config_path}."
        )
        raise typer.Exit(1)

    secrets = config_file.get("client_secrets_file")
    try:
        request_timeout = float(config_file.get("request_timeout", 300))
        poll_delay = float(config_file.get("poll_delay", 3))
    except ValueError as e:
        console.print(f"[bold red]Error:[/] Invalid number in config file: {e}")
        raise typer.Exit(1) from None

    return SyncConfig(
        user_id=user_id,
        tenant_id=tenant_id,
        state_db_path=state.state_db,
        token_file=Path(config_file.get("token_file", DEFAULT_TOKEN_FILE)).expanduser(),
        client_secrets_file=Path(secrets).expanduser() if secrets else None,
        language=config_file.get("language", "he"),
        request_timeout=request_timeout,
        poll_delay=poll_delay,
        dry_run=dry_run,
        verbose=state.verbose,
        yes=yes,
    )


def _run(
    cfg: SyncConfig,
    command: Callable[[SyncOrchestrator, CalendarSyncService], Awaitable[Any]],
    google: bool = True,
    connecting: bool = False,
) -> Any:
    """
    Open the state DB, wire the service and orchestrator, and run ``command``.

    With ``google`` set, preflight checks run first and the stored Google token
    is loaded (``connecting`` runs the browser consent flow instead).
    """
    from hebbirthday_sync.preflight import run_preflight_checks

    if google and not run_preflight_checks(cfg, console, connecting=connecting):
        raise typer.Exit(1)

    async def _main(state_db: StateDatabase) -> Any:
        client = None
        if google:
            credentials = await asyncio.to_thread(
                load_credentials, cfg.token_file, cfg.client_secrets_file, connecting
            )
            client = GoogleCalendarClient(credentials, timeout=cfg.request_timeout)
        service = CalendarSyncService(cfg, state_db, client)
        orchestrator = SyncOrchestrator(
            service, cfg.user_id, cfg.tenant_id, poll_delay=cfg.poll_delay
        )
        await orchestrator.refresh()
        try:
            return await command(orchestrator, service)
        finally:
            await service.wait_for_jobs()

    try:
        with StateDatabase(cfg.state_db_path) as state_db:
            return asyncio.run(_main(state_db))
    except CalendarSyncError as e:
        console.print(f"[bold red]Failed:[/] {e}")
        raise typer.Exit(1) from None
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(130) from None
    except (typer.Exit, typer.Abort):
        raise
    except Exception as e:
        console.print_exception()
        console.print(f"[bold red]Unexpected error:[/] {e}")
        raise typer.Exit(1) from e


def _check(outcome: Outcome) -> Any:
    """Print a failed or partial outcome; exit on failure, return the value otherwise."""
    if outcome.status is OutcomeStatus.FAILED:
        console.print(f"[bold red]Error ({outcome.failure.value}):[/] {outcome.message}")
        raise typer.Exit(1)
    if outcome.status is OutcomeStatus.PARTIAL:
        console.print(f"[yellow]Partially completed:[/] {outcome.message}")
    return outcome.value


def _print_stats(stats: SyncStats) -> None:
    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    results.add_row("Created", str(stats.created))
    results.add_row("Updated", str(stats.updated))
    results.add_row("Deleted", str(stats.deleted))
    error_val = Text(str(stats.errors))
    if stats.errors == 0:
        error_val.append(" ✓", style="green")
    else:
        error_val.stylize("bold red")
    results.add_row("Errors", error_val)

    console.print(Panel(results, title="[bold]Results[/bold]", expand=False))


def _finish(stats: SyncStats) -> None:
    _print_stats(stats)
    if stats.errors:
        raise typer.Exit(1)


def _binding_panel(binding) -> Panel:
    info = Text()
    if not binding.is_connected:
        info.append("  Not connected", style="bold red")
        info.append("\n  Run: hebbirthday-sync connect", style="dim")
        return Panel(info, title="[bold]Google Calendar[/bold]", expand=False)

    info.append("  Account:   ", style="bold")
    info.append(f"{binding.name} <{binding.email}>\n")
    info.append("  Calendar:  ", style="bold")
    info.append(f"{binding.calendar_name}\n")
    info.append(f"             {binding.calendar_id}\n", style="dim")
    info.append("  Status:    ", style="bold")
    info.append(binding.sync_status.value)
    if binding.is_primary_calendar:
        info.append("\n  ")
        info.append(
            "Primary calendar selected: sync is blocked until a dedicated "
            "calendar is created or selected",
            style="yellow",
        )
    return Panel(info, title="[bold]Google Calendar[/bold]", expand=False)


_DRY_RUN = Annotated[bool, typer.Option("--dry-run", "-n", help="Preview changes without applying")]
_YES = Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")]
_RECORD_ID = Annotated[str, typer.Argument(help="Birthday record id")]


# ---------------------------------------------------------------------------
# Subcommands: connection
# ---------------------------------------------------------------------------


@app.command()
def connect() -> None:
    """Authorise a Google account and bind it (opens a browser)."""
    cfg = _build_config()

    async def _connect(orch: SyncOrchestrator, service: CalendarSyncService):
        return _check(await orch.connect())

    binding = _run(cfg, _connect, connecting=True)
    console.print(_binding_panel(binding))


@app.command()
def disconnect(yes: _YES = False) -> None:
    """Revoke Google access and forget the binding."""
    cfg = _build_config(yes=yes)
    if not cfg.yes:
        typer.confirm("Disconnect from Google Calendar?", abort=True)

    async def _disconnect(orch: SyncOrchestrator, service: CalendarSyncService):
        return _check(await orch.disconnect())

    _run(cfg, _disconnect)
    cfg.token_file.unlink(missing_ok=True)
    console.print("[green]Disconnected.[/] Synced events were left in the calendar.")


@app.command()
def status() -> None:
    """Show the Google binding, record counts and recent activity."""
    cfg = _build_config()

    async def _status(orch: SyncOrchestrator, service: CalendarSyncService):
        return orch.binding

    binding = _run(cfg, _status, google=False)
    console.print(_binding_panel(binding))

    summary = query_tenant_summary(cfg.state_db_path, cfg.tenant_id)
    if summary is not None:
        counts = Table.grid(padding=(0, 2))
        counts.add_column(style="bold")
        counts.add_column(justify="right")
        counts.add_row("Records", str(summary["total"]))
        counts.add_row("Archived", str(summary["archived"]))
        counts.add_row("With events", str(summary["with_events"]))
        failed = Text(str(summary["failed"]))
        if summary["failed"]:
            failed.stylize("bold red")
        counts.add_row("Failed", failed)
        console.print(Panel(counts, title=f"[bold]Tenant {cfg.tenant_id}[/bold]", expand=False))

    if binding.recent_activity:
        _print_history(binding.recent_activity[:5])


# ---------------------------------------------------------------------------
# Subcommands: calendars
# ---------------------------------------------------------------------------


@app.command()
def calendars() -> None:
    """List writable calendars of the connected account."""
    cfg = _build_config()

    async def _list(orch: SyncOrchestrator, service: CalendarSyncService):
        return orch.binding, _check(await orch.list_calendars())

    binding, items = _run(cfg, _list)

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("")
    table.add_column("Name")
    table.add_column("ID", style="dim")
    for cal in items:
        marker = "●" if cal.id == binding.calendar_id else ""
        name = cal.summary + (" [dim](primary)[/dim]" if cal.primary else "")
        table.add_row(marker, name, cal.id)
    console.print(table)


@app.command("create-calendar")
def create_calendar(
    name: Annotated[str, typer.Argument(help="Name of the new calendar")] = "Hebrew Birthdays",
) -> None:
    """Create a dedicated calendar and sync into it from now on."""
    cfg = _build_config()

    async def _create(orch: SyncOrchestrator, service: CalendarSyncService):
        return _check(await orch.create_dedicated_calendar(name))

    binding = _run(cfg, _create)
    console.print(_binding_panel(binding))


@app.command("select-calendar")
def select_calendar(
    calendar_id: Annotated[str, typer.Argument(help="Google calendar id")],
) -> None:
    """Sync into an existing calendar."""
    cfg = _build_config()

    async def _select(orch: SyncOrchestrator, service: CalendarSyncService):
        items = _check(await orch.list_calendars())
        match = next((c for c in items if c.id == calendar_id), None)
        if match is None:
            console.print(f"[bold red]Error:[/] Calendar [cyan]{calendar_id}[/] not found.")
            raise typer.Exit(1)
        return _check(await orch.select_calendar(match.id, match.summary))

    binding = _run(cfg, _select)
    console.print(_binding_panel(binding))


@app.command("delete-calendar")
def delete_calendar(
    calendar_id: Annotated[str, typer.Argument(help="Google calendar id")],
    yes: _YES = False,
) -> None:
    """Delete a calendar at Google, with all of its events."""
    cfg = _build_config(yes=yes)
    if not cfg.yes:
        typer.confirm(f"Permanently delete calendar {calendar_id}?", abort=True)

    async def _delete(orch: SyncOrchestrator, service: CalendarSyncService):
        _check(await orch.delete_calendar(calendar_id))
        return orch.binding

    binding = _run(cfg, _delete)
    console.print(f"[green]Deleted[/] {calendar_id}")
    console.print(_binding_panel(binding))


# ---------------------------------------------------------------------------
# Subcommands: records
# ---------------------------------------------------------------------------


@app.command()
def birthdays(
    within: Annotated[
        int | None, typer.Option("--within", help="Only birthdays in the next N days")
    ] = None,
    archived: Annotated[bool, typer.Option("--archived", help="Include archived records")] = False,
) -> None:
    """List birthdays, nearest first, with their sync state."""
    cfg = _build_config()

    async def _records(orch: SyncOrchestrator, service: CalendarSyncService):
        return service.state_db.get_birthdays(cfg.tenant_id, include_archived=archived)

    records = _run(cfg, _records, google=False)
    rows = upcoming_birthdays(records, date.today(), within_days=within)

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Gregorian", justify="right")
    table.add_column("Hebrew", justify="right")
    table.add_column("Age", justify="right")
    table.add_column("Sync")
    for record, calc in rows:
        greg = f"{calc.next_gregorian_birthday:%d/%m} ({calc.days_until_gregorian_birthday}d)"
        if calc.next_hebrew_birthday is not None:
            heb = f"{calc.next_hebrew_birthday:%d/%m} ({calc.days_until_hebrew_birthday}d)"
        else:
            heb = "—"
        sync_state = effective_sync_state(record)
        table.add_row(
            record.id,
            record.display_name,
            greg,
            heb,
            str(calc.age_at_next_gregorian_birthday),
            Text(sync_state.value, style=_STATE_STYLES[sync_state]),
        )
    console.print(table)
    console.print(f"\n[bold]{len(rows)} birthday(s)[/bold]")


@app.command()
def sync(
    record_ids: Annotated[
        list[str] | None, typer.Argument(help="Record ids to sync (default: none)")
    ] = None,
    all_records: Annotated[
        bool, typer.Option("--all", "-a", help="Sync every non-archived record")
    ] = False,
    force: Annotated[
        bool, typer.Option("--force", help="Push even when nothing changed (single record)")
    ] = False,
    dry_run: _DRY_RUN = False,
    yes: _YES = False,
) -> None:
    """Push birthday events to the bound calendar.

    A single id is synced immediately; several ids or [bold]--all[/] run as a
    background batch that is followed until the tenant is idle again.
    """
    cfg = _build_config(dry_run=dry_run, yes=yes)
    if not record_ids and not all_records:
        console.print("[bold red]Error:[/] Give record ids or [cyan]--all[/].")
        raise typer.Exit(1)

    async def _sync(orch: SyncOrchestrator, service: CalendarSyncService):
        ids = list(record_ids or [])
        if all_records:
            ids = [
                r.id
                for r in service.state_db.get_birthdays(cfg.tenant_id, include_archived=False)
            ]

        info = Text()
        info.append("  Calendar:  ", style="bold")
        info.append(f"{orch.binding.calendar_name}\n")
        info.append("  Records:   ", style="bold")
        info.append(str(len(ids)))
        if cfg.dry_run:
            info.append("\n  Mode:      ")
            info.append("DRY RUN", style="bold magenta")
        console.print(Panel(info, title="[bold]Hebrew Birthday Sync[/bold]"))

        if not cfg.yes and not cfg.dry_run and len(ids) > 1:
            typer.confirm("Proceed?", abort=True)

        if len(ids) == 1:
            _check(await orch.sync_one(ids[0], force=force))
            return service.stats

        accepted = _check(await orch.sync_many(ids))
        if not accepted.accepted:
            console.print("[dim]Nothing to sync.[/dim]")
            return service.stats
        with console.status(f"Syncing {accepted.queued_count} record(s)..."):
            await service.wait_for_jobs()
            await orch.wait_until_idle()
        if orch.binding.recent_activity and not cfg.dry_run:
            _print_history(orch.binding.recent_activity[:1])
        return service.stats

    _finish(_run(cfg, _sync))


@app.command()
def retry(dry_run: _DRY_RUN = False) -> None:
    """Re-sync failed records that still have retries left."""
    cfg = _build_config(dry_run=dry_run)

    async def _retry(orch: SyncOrchestrator, service: CalendarSyncService):
        item = _check(await orch.retry_failed())
        if item is None:
            console.print("[dim]No failed records to retry.[/dim]")
        elif not cfg.dry_run:
            _print_history([item])
        return service.stats

    _finish(_run(cfg, _retry))


@app.command()
def remove(record_id: _RECORD_ID) -> None:
    """Delete a record's events from the calendar."""
    cfg = _build_config()

    async def _remove(orch: SyncOrchestrator, service: CalendarSyncService):
        return _check(await orch.remove(record_id))

    result = _run(cfg, _remove)
    if result.skipped:
        console.print("[dim]Record has no events; nothing to remove.[/dim]")
    else:
        console.print(f"[green]Removed {result.deleted} event(s).[/]")


@app.command()
def reset(record_id: _RECORD_ID) -> None:
    """Forget what was pushed for a record without touching the calendar."""
    cfg = _build_config()

    async def _reset(orch: SyncOrchestrator, service: CalendarSyncService):
        return _check(await orch.reset_sync_data(record_id))

    record = _run(cfg, _reset, google=False)
    console.print(f"[green]Reset sync data for[/] {record.display_name}")


@app.command()
def history() -> None:
    """Show recent sync activity."""
    cfg = _build_config()

    async def _history(orch: SyncOrchestrator, service: CalendarSyncService):
        return orch.binding.recent_activity

    items = _run(cfg, _history, google=False)
    if not items:
        console.print("[dim]No sync activity yet.[/dim]")
        return
    _print_history(items)


def _print_history(items) -> None:
    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("When")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Total", justify="right")
    table.add_column("OK", justify="right")
    table.add_column("Failed", justify="right")
    for item in items:
        table.add_row(
            item.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            item.type.value,
            Text(item.status.value, style=_HISTORY_STYLES[item.status]),
            str(item.total),
            str(item.success_count),
            str(item.failed_count),
        )
    console.print(table)
    for item in items:
        for failed in item.failed_items:
            console.print(f"  [red]✗[/] {failed.name}: {failed.reason}")


# ---------------------------------------------------------------------------
# Subcommands: orphans / clear
# ---------------------------------------------------------------------------


@app.command()
def orphans(dry_run: _DRY_RUN = False, yes: _YES = False) -> None:
    """Find app-created events no record references, then delete them."""
    cfg = _build_config(dry_run=dry_run, yes=yes)

    async def _orphans(orch: SyncOrchestrator, service: CalendarSyncService):
        preview = _check(await orch.orphans.preview())
        console.print(
            f"Found [bold]{preview.found_count}[/] orphaned event(s) in "
            f"[cyan]{preview.calendar_name}[/]"
        )
        if preview.found_count == 0:
            return
        if not cfg.yes and not cfg.dry_run:
            typer.confirm("Delete them?", abort=True)
        result = _check(await orch.orphans.cleanup())
        verb = "Would delete" if cfg.dry_run else "Deleted"
        console.print(f"[green]{verb} {result.deleted_count} event(s).[/]")

    _run(cfg, _orphans)


@app.command()
def clear(dry_run: _DRY_RUN = False, yes: _YES = False) -> None:
    """Delete every synced event of the tenant from the calendar."""
    cfg = _build_config(dry_run=dry_run, yes=yes)

    async def _clear(orch: SyncOrchestrator, service: CalendarSyncService):
        preview = _check(await orch.preview_deletion())
        if preview.total_count == 0:
            console.print("[dim]No synced events to delete.[/dim]")
            return service.stats

        table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
        table.add_column("Name")
        table.add_column("Hebrew", justify="right")
        table.add_column("Gregorian", justify="right")
        for item in preview.summary:
            table.add_row(item.name, str(item.hebrew_events), str(item.gregorian_events))
        console.print(
            Panel(
                table,
                title=f"[bold red]Delete {preview.total_count} event(s) of "
                f"{preview.records_count} record(s) from {preview.calendar_name}[/bold red]",
            )
        )
        if not cfg.yes and not cfg.dry_run:
            typer.confirm("Proceed?", abort=True)
        _check(await orch.delete_all())
        return service.stats

    _finish(_run(cfg, _clear))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
