"""
Command-line interface for EDS Harmonize.
"""

import getpass
import logging
from configparser import ConfigParser
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from eds_harmonize.db import CorrelationStore
from eds_harmonize.db import query_status
from eds_harmonize.models import DEFAULT_CONFIG
from eds_harmonize.models import DEFAULT_STATE_DB
from eds_harmonize.models import ConfigError
from eds_harmonize.models import CollectionCorrelation
from eds_harmonize.models import CorrelationConflictError
from eds_harmonize.models import HarmonizeConfig
from eds_harmonize.models import HarmonizeError
from eds_harmonize.models import Prevalence
from eds_harmonize.sync import CalendarHarmonizer
from eds_harmonize.trash import TrashListener
from eds_harmonize.trash import TrashNotification

CONFIG_SECTION = "harmonize"
DEFAULT_PASS_TIMEOUT = 300.0

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Two-way harmonization between EDS calendars and a CalDAV server.",
)

console = Console()


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


def _load_config_file(config_path: Path) -> dict[str, str]:
    if not config_path.exists():
        return {}
    parser = ConfigParser()
    parser.read(config_path)
    if CONFIG_SECTION not in parser:
        return {}
    return dict(parser[CONFIG_SECTION])


def load_config(
    config_path: Path,
    state_db_path: Path,
    prevalence: str | None = None,
    timeout: float | None = None,
    verbose: bool = False,
) -> HarmonizeConfig:
    """Merge the config file with command-line overrides; raises ConfigError."""
    values = _load_config_file(config_path)

    remote_url = values.get("remote_url", "").strip()
    if not remote_url:
        raise ConfigError(f"remote_url is not set in [{CONFIG_SECTION}] of {config_path}")

    if timeout is None:
        raw_timeout = values.get("pass_timeout", "").strip()
        try:
            timeout = float(raw_timeout) if raw_timeout else DEFAULT_PASS_TIMEOUT
        except ValueError:
            raise ConfigError(f"Invalid pass_timeout '{raw_timeout}'") from None
    if timeout <= 0:
        raise ConfigError(f"pass_timeout must be positive, got {timeout}")

    return HarmonizeConfig(
        user_id=values.get("user", "").strip() or getpass.getuser(),
        remote_url=remote_url,
        state_db_path=state_db_path,
        remote_username=values.get("remote_username", ""),
        remote_password=values.get("remote_password", ""),
        prevalence=Prevalence.parse(prevalence or values.get("prevalence") or "chronology"),
        pass_timeout=timeout,
        verbose=verbose,
    )


def _user_id() -> str:
    return _load_config_file(state.config_path).get("user", "").strip() or getpass.getuser()


def _config_or_exit(prevalence: str | None = None, timeout: float | None = None) -> HarmonizeConfig:
    try:
        return load_config(state.config_path, state.state_db, prevalence, timeout, state.verbose)
    except ConfigError as e:
        console.print(f"[bold red]Error:[/] {escape(str(e))}")
        raise typer.Exit(1) from None


def _short(uid: str) -> str:
    return uid[:32] + "…" if len(uid) > 32 else uid


# ---------------------------------------------------------------------------
# Subcommand: sync
# ---------------------------------------------------------------------------


@app.command()
def sync(
    pairing: Annotated[
        str | None, typer.Option("--pairing", "-p", help="Only harmonize this pairing id")
    ] = None,
    timeout: Annotated[
        float | None, typer.Option("--timeout", "-t", help="Per-pass timeout in seconds")
    ] = None,
    prevalence: Annotated[
        str | None,
        typer.Option("--prevalence", help="Conflict policy: local, remote or chronology"),
    ] = None,
) -> None:
    """Run one harmonization pass for every pairing (or just one)."""
    cfg = _config_or_exit(prevalence, timeout)

    info = Text()
    info.append("  User:       ", style="bold")
    info.append(f"{cfg.user_id}\n")
    info.append("  Server:     ", style="bold")
    info.append(f"{cfg.remote_url}\n")
    info.append("  Prevalence: ", style="bold")
    info.append(cfg.prevalence.value, style="cyan")
    info.append("\n  Timeout:    ", style="bold")
    info.append(f"{cfg.pass_timeout:g}s")
    console.print(Panel(info, title="[bold]EDS Harmonize[/bold]"))

    try:
        results = CalendarHarmonizer(cfg).run(affiliation_id=pairing)
    except HarmonizeError as e:
        console.print(f"[bold red]Harmonization failed:[/] {escape(str(e))}")
        raise typer.Exit(1) from None
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(130) from None

    if not results:
        console.print("[yellow]No pairings to harmonize — create one with[/] [cyan]link[/].")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Pairing", justify="right")
    table.add_column("Local → Remote", justify="right")
    table.add_column("Remote → Local", justify="right")
    table.add_column("Failures", justify="right")
    table.add_column("Status")

    failed = False
    for result in results:
        if result.stats is None:
            failed = True
            table.add_row(
                result.pairing.affiliation_id, "—", "—", "—", Text(result.error, style="bold red")
            )
            continue
        stats = result.stats
        pushed = f"+{stats.remote_created} ~{stats.remote_updated} -{stats.remote_deleted}"
        pulled = f"+{stats.local_created} ~{stats.local_updated} -{stats.local_deleted}"
        failures = Text(str(stats.failures))
        if stats.failures:
            failed = True
            failures.stylize("bold red")
            status_cell = Text("partial", style="yellow")
        else:
            status_cell = Text("✓ ok", style="green")
        table.add_row(result.pairing.affiliation_id, pushed, pulled, failures, status_cell)

    console.print(Panel(table, title="[bold]Results[/bold]", expand=False))

    if failed:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommands: link / unlink
# ---------------------------------------------------------------------------


@app.command()
def link(
    local_calendar: Annotated[str, typer.Argument(help="EDS calendar UID")],
    remote_calendar: Annotated[str, typer.Argument(help="CalDAV calendar URL")],
) -> None:
    """Pair an EDS calendar with a CalDAV calendar."""
    user_id = _user_id()
    with CorrelationStore(state.state_db) as store:
        try:
            pairing = store.create_collection(
                CollectionCorrelation(
                    user_id=user_id,
                    local_collection_id=local_calendar,
                    remote_collection_id=remote_calendar,
                )
            )
        except CorrelationConflictError as e:
            console.print(f"[bold red]Error:[/] {escape(str(e))}")
            raise typer.Exit(1) from None

    console.print(
        f"Created pairing [bold]{pairing.affiliation_id}[/bold]: "
        f"[cyan]{local_calendar}[/] ↔ [cyan]{remote_calendar}[/]"
    )


@app.command()
def unlink(
    pairing_id: Annotated[str, typer.Argument(help="Pairing id (see status)")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")] = False,
) -> None:
    """Remove a pairing with its correlations and pending actions.

    Calendar contents on either side are left untouched.
    """
    with CorrelationStore(state.state_db) as store:
        pairing = store.get_collection(pairing_id)
        if pairing is None:
            console.print(f"[bold red]Error:[/] No pairing with id {pairing_id}")
            raise typer.Exit(1)
        if not yes:
            typer.confirm(
                f"Remove pairing {pairing_id} "
                f"({pairing.local_collection_id} ↔ {pairing.remote_collection_id})?",
                abort=True,
            )
        removed = store.remove_pairing(pairing)

    console.print(f"Removed pairing [bold]{pairing_id}[/bold] and {removed} correlation(s).")


# ---------------------------------------------------------------------------
# Subcommand: trash
# ---------------------------------------------------------------------------


@app.command()
def trash(
    local_calendar: Annotated[str, typer.Argument(help="EDS calendar UID")],
    object_uri: Annotated[str, typer.Argument(help="Trashed object id (may carry -deleted)")],
    component: Annotated[
        str, typer.Option("--component", help="iCalendar component kind")
    ] = "VEVENT",
) -> None:
    """Queue a remote deletion for an object moved to the local trash."""
    user_id = _user_id()
    with CorrelationStore(state.state_db) as store:
        action = TrashListener(store).handle(
            TrashNotification(
                principal_uri=user_id,
                collection_id=local_calendar,
                object_uri=object_uri,
                component=component,
            )
        )
    if action is None:
        console.print("[yellow]Nothing queued[/] (object is not correlated).")
        return
    console.print(f"Queued deletion of [cyan]{action.local_object_id}[/] for the next pass.")


# ---------------------------------------------------------------------------
# Subcommand: status
# ---------------------------------------------------------------------------


@app.command()
def status() -> None:
    """Show configuration and the state of every pairing."""
    config_exists = state.config_path.exists()
    db_exists = state.state_db.exists()

    cfg_info = Text()
    cfg_info.append("  Config:   ", style="bold")
    cfg_info.append(str(state.config_path) + " ")
    cfg_info.append(
        "✓" if config_exists else "(not found)", style="green" if config_exists else "red"
    )
    cfg_info.append("\n  State DB: ", style="bold")
    cfg_info.append(str(state.state_db) + " ")
    cfg_info.append("✓" if db_exists else "(not found)", style="green" if db_exists else "yellow")
    cfg_info.append("\n  User:     ", style="bold")
    cfg_info.append(_user_id())

    console.print(Panel(cfg_info, title="[bold]EDS Harmonize — Status[/bold]"))

    rows = query_status(state.state_db)
    if not rows:
        console.print(
            "[yellow]No pairings yet — run[/] [cyan]eds-harmonize link[/] "
            "[yellow]to create one.[/]"
        )
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Id", justify="right")
    table.add_column("User")
    table.add_column("Local calendar", overflow="fold")
    table.add_column("Remote calendar", overflow="fold")
    table.add_column("Tracked", justify="right")
    table.add_column("Pending", justify="right")
    table.add_column("Last sync")
    for row in rows:
        ts = row["last_sync_at"] or 0
        last_sync = datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S") if ts else "—"
        table.add_row(
            str(row["id"]),
            row["user_id"],
            _short(row["local_collection_id"]),
            row["remote_collection_id"],
            str(row["correlations"]),
            str(row["pending"]),
            last_sync,
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Subcommands: calendars / remote-calendars
# ---------------------------------------------------------------------------


@app.command()
def calendars() -> None:
    """List all configured EDS calendars."""
    import gi

    gi.require_version("EDataServer", "1.2")
    from gi.repository import EDataServer

    from eds_harmonize.eds_client import list_calendar_sources

    registry = EDataServer.SourceRegistry.new_sync(None)
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Display Name / UID", min_width=36, overflow="fold")
    table.add_column("Account")
    table.add_column("Mode")
    for name, account, mode, uid in list_calendar_sources(registry):
        name_cell = Text()
        name_cell.append(name, style="bold")
        name_cell.append("\n")
        name_cell.append(uid, style="dim")
        style = {"Read-write": "green", "Read-only": "yellow"}.get(mode, "red")
        table.add_row(name_cell, account, Text(mode, style=style))
    console.print(Panel(table, title="[bold]EDS Calendars[/bold]"))


@app.command("remote-calendars")
def remote_calendars() -> None:
    """List the calendars of the configured CalDAV principal."""
    from eds_harmonize.caldav_client import CalDAVRemoteStore

    cfg = _config_or_exit()
    remote = CalDAVRemoteStore.connect(cfg.remote_url, cfg.remote_username, cfg.remote_password)
    try:
        entries = remote.list_calendars()
    except HarmonizeError as e:
        console.print(f"[bold red]Error:[/] {escape(str(e))}")
        raise typer.Exit(1) from None

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Display Name")
    table.add_column("URL", overflow="fold")
    for name, url in entries:
        table.add_row(Text(name, style="bold"), url)
    console.print(Panel(table, title=f"[bold]CalDAV Calendars[/bold] ({cfg.remote_url})"))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
