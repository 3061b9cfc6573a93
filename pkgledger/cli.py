"""Main CLI entry point for pkgledger."""

from __future__ import annotations

import asyncio
import json
import logging
import shlex
import sys
from collections.abc import Coroutine
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__, audit, db, migrations
from .config import settings
from .errors import GatewayUnavailableError, run_with_timeout
from .gateways import PackageManagerGateway, configured_gateways, get_gateway
from .models import MANUAL_MANAGER, InstallReason, LogAction
from .orchestrate import (
    OperationOutcome,
    install_packages,
    manual_add,
    manual_remove_log,
    remove_packages,
    set_comment,
    update_tags,
)
from .reconciliation import SyncReport, discover, sync

console = Console()
T = TypeVar("T")

DATE_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S"]


def _invocation() -> str:
    return shlex.join(["pkgledger", *sys.argv[1:]])


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


def _fmt_ts(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


def _run(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine and release the engine's connections afterwards."""

    async def runner() -> T:
        try:
            return await coro
        finally:
            await db.dispose_engine()

    return asyncio.run(runner())


def _resolve_manager(manager: str | None) -> str:
    if manager:
        return manager
    if len(settings.managers) == 1:
        return settings.managers[0]
    raise click.UsageError(
        f"Several package managers are configured ({', '.join(settings.managers)}); "
        "pass --manager."
    )


def _print_outcome(outcome: OperationOutcome) -> None:
    verb = outcome.action.replace("_", " ")
    if outcome.changed:
        names = ", ".join(f"{n} ({m})" for n, m in outcome.changed)
        console.print(f"[green]{verb}: {names}[/green]")
    else:
        console.print(f"[yellow]{verb}: nothing changed[/yellow]")
    if outcome.skipped:
        console.print(f"[dim]Skipped (no change observed): {', '.join(outcome.skipped)}[/dim]")
    console.print(f"[dim]Command #{outcome.command_id}[/dim]")


@click.group()
@click.version_option(version=__version__)
@click.option("--db", "db_path", type=click.Path(path_type=Path), help="Ledger database file")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, db_path: Path | None, verbose: bool) -> None:
    """Auditing ledger for package manager activity.

    Every install/remove runs through the real package manager and is recorded,
    together with the command that caused it.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )
    if db_path is not None:
        settings.db_path = db_path
    if ctx.invoked_subcommand != "db":
        revision = migrations.upgrade_to_head()
        logging.getLogger(__name__).debug("Ledger schema at %s", revision)


# =============================================================================
# Schema
# =============================================================================


@main.group(name="db")
def db_group() -> None:
    """Ledger schema and health."""


@db_group.command()
def upgrade() -> None:
    """Apply pending migrations."""
    revision = migrations.upgrade_to_head()
    console.print(f"[green]Ledger schema at revision {revision}[/green] ({settings.db_path})")


@db_group.command()
def check() -> None:
    """Run the integrity scan and list interrupted commands."""
    report = _run(audit.health_check())
    style = "green" if report.integrity == "ok" else "red"
    console.print(f"Integrity: [{style}]{report.integrity}[/{style}]")

    if report.interrupted:
        table = Table(title="Interrupted Commands")
        table.add_column("ID", style="cyan")
        table.add_column("Started")
        table.add_column("Command")
        for command in report.interrupted:
            table.add_row(str(command.id), _fmt_ts(command.start_ts), command.command_string or "")
        console.print(table)
    else:
        console.print("[green]No interrupted commands[/green]")

    if not report.healthy:
        sys.exit(1)


# =============================================================================
# Mutating commands
# =============================================================================


@main.command()
@click.argument("names", nargs=-1, required=True)
@click.option("--manager", "-m", help="Package manager to use")
@click.option("--option", "-o", "options", multiple=True, help="Extra option passed through")
@click.option(
    "--reason",
    type=click.Choice([r.value for r in InstallReason]),
    default=InstallReason.USER.value,
    show_default=True,
)
def install(names: tuple[str, ...], manager: str | None, options: tuple[str, ...], reason: str) -> None:
    """Install packages and record what changed.

    NAMES: Packages to install
    """
    gateway = get_gateway(_resolve_manager(manager))
    outcome = _run(
        install_packages(
            gateway, list(names), options=list(options), reason=reason, invocation=_invocation()
        )
    )
    _print_outcome(outcome)


@main.command()
@click.argument("names", nargs=-1, required=True)
@click.option("--manager", "-m", help="Package manager to use")
@click.option("--option", "-o", "options", multiple=True, help="Extra option passed through")
def remove(names: tuple[str, ...], manager: str | None, options: tuple[str, ...]) -> None:
    """Remove packages and record what changed.

    NAMES: Packages to remove
    """
    gateway = get_gateway(_resolve_manager(manager))
    outcome = _run(
        remove_packages(gateway, list(names), options=list(options), invocation=_invocation())
    )
    _print_outcome(outcome)


@main.command()
@click.argument("name")
@click.argument("tags", nargs=-1, required=True)
@click.option("--manager", "-m", help="Manager tracking the package")
def tag(name: str, tags: tuple[str, ...], manager: str | None) -> None:
    """Add tags to a tracked package."""
    _print_outcome(_run(update_tags(name, manager, add=list(tags), invocation=_invocation())))


@main.command()
@click.argument("name")
@click.argument("tags", nargs=-1, required=True)
@click.option("--manager", "-m", help="Manager tracking the package")
def untag(name: str, tags: tuple[str, ...], manager: str | None) -> None:
    """Remove tags from a tracked package."""
    _print_outcome(_run(update_tags(name, manager, remove=list(tags), invocation=_invocation())))


@main.command()
@click.argument("name")
@click.argument("text", required=False)
@click.option("--manager", "-m", help="Manager tracking the package")
@click.option("--clear", is_flag=True, help="Remove the comment")
def comment(name: str, text: str | None, manager: str | None, clear: bool) -> None:
    """Set or clear the comment on a tracked package."""
    if not clear and text is None:
        raise click.UsageError("Give the comment TEXT or --clear")
    _print_outcome(
        _run(set_comment(name, manager, None if clear else text, invocation=_invocation()))
    )


@main.command()
@click.argument("name")
@click.option("--manager", "-m", default=MANUAL_MANAGER, show_default=True)
@click.option("--version", "version_", help="Installed version")
@click.option("--origin", help="Where it came from (URL, repository...)")
@click.option("--location", help="Filesystem location of an unmanaged install")
@click.option("--comment", "comment_", help="Free-text comment")
def add(
    name: str,
    manager: str,
    version_: str | None,
    origin: str | None,
    location: str | None,
    comment_: str | None,
) -> None:
    """Record a package installed outside any package manager."""
    outcome = _run(
        manual_add(
            name,
            manager,
            version=version_,
            origin=origin,
            location=location,
            comment=comment_,
            invocation=_invocation(),
        )
    )
    _print_outcome(outcome)


@main.command()
@click.argument("name")
@click.option("--manager", "-m", help="Manager tracking the package")
@click.option("--comment", "comment_", help="Why it went away")
def forget(name: str, manager: str | None, comment_: str | None) -> None:
    """Record that a package was removed by hand and stop tracking it."""
    _print_outcome(
        _run(manual_remove_log(name, manager, comment=comment_, invocation=_invocation()))
    )


# =============================================================================
# Reconciliation
# =============================================================================


def _gateways(managers: tuple[str, ...]) -> list[PackageManagerGateway]:
    identifiers = list(managers) or list(settings.managers)
    if not identifiers:
        raise GatewayUnavailableError("No package managers configured")
    return configured_gateways(identifiers)


@main.command(name="discover")
@click.option("--manager", "-m", "managers", multiple=True, help="Limit to these managers")
@click.option("--clear", is_flag=True, help="Drop every tracked package first")
def discover_cmd(managers: tuple[str, ...], clear: bool) -> None:
    """Snapshot the live package state into the ledger."""
    result = _run(discover(_gateways(managers), clear_existing=clear, invocation=_invocation()))
    for manager, count in sorted(result.counts.items()):
        console.print(f"[green]{manager}: {count} package(s)[/green]")
    for manager, error in sorted(result.degraded.items()):
        console.print(f"[yellow]{manager} skipped: {error}[/yellow]")
    if result.cleared:
        console.print(f"[dim]Cleared {result.cleared} previously tracked package(s)[/dim]")
    console.print(f"[dim]Command #{result.command_id}[/dim]")


def _print_report(report: SyncReport) -> None:
    table = Table(title="Sync" + (" (applied)" if report.applied else " (dry run)"))
    table.add_column("Change")
    table.add_column("Package", style="cyan")
    table.add_column("Manager")
    table.add_column("Details")
    for change in report.added:
        version = change.record.version if change.record else None
        table.add_row("[green]added[/green]", change.name, change.manager, version or "")
    for change in report.removed:
        table.add_row("[red]removed[/red]", change.name, change.manager, "")
    for change in report.updated:
        details = ", ".join(f"{k}: {old} -> {new}" for k, (old, new) in change.changes.items())
        table.add_row("[yellow]updated[/yellow]", change.name, change.manager, details)
    if not report.is_empty:
        console.print(table)
    console.print(report.summary())
    if report.command_id is not None:
        console.print(f"[dim]Command #{report.command_id}[/dim]")


@main.command(name="sync")
@click.option("--manager", "-m", "managers", multiple=True, help="Limit to these managers")
@click.option("--apply", is_flag=True, help="Write the differences to the ledger")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
def sync_cmd(managers: tuple[str, ...], apply: bool, as_json: bool) -> None:
    """Compare live package state with the ledger."""
    report = _run(
        sync(
            _gateways(managers),
            apply=apply,
            invocation=_invocation(),
            query_timeout=settings.query_timeout,
        )
    )
    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2, default=str))
    else:
        _print_report(report)


# =============================================================================
# Queries
# =============================================================================


@main.command(name="list")
@click.argument("names", nargs=-1)
@click.option("--reason", "reasons", multiple=True, help="Filter by install reason")
@click.option("--manager", "-m", "managers", multiple=True, help="Filter by manager")
@click.option("--origin", "origins", multiple=True, help="Filter by origin")
@click.option("--tag", "-t", "tags", multiple=True, help="Require this tag (repeatable)")
@click.option("--since", type=click.DateTime(DATE_FORMATS), help="Updated at or after")
@click.option("--before", type=click.DateTime(DATE_FORMATS), help="Updated before")
@click.option("--json", "as_json", is_flag=True, help="Print as JSON")
def list_packages(
    names: tuple[str, ...],
    reasons: tuple[str, ...],
    managers: tuple[str, ...],
    origins: tuple[str, ...],
    tags: tuple[str, ...],
    since: datetime | None,
    before: datetime | None,
    as_json: bool,
) -> None:
    """List tracked packages."""
    filters = db.PackageFilter(
        reasons=list(reasons),
        managers=list(managers),
        origins=list(origins),
        tags=list(tags),
        since=_as_utc(since),
        before=_as_utc(before),
        names=list(names),
    )

    async def fetch() -> list[db.PackageView]:
        async with db.get_read_session() as session:
            return await run_with_timeout(
                db.list_package_views(session, filters), settings.query_timeout, "ledger query"
            )

    views = _run(fetch())
    if as_json:
        click.echo(json.dumps([v.to_dict() for v in views], indent=2))
        return
    if not views:
        console.print("[yellow]No packages found[/yellow]")
        return

    table = Table(title="Packages")
    table.add_column("Name", style="cyan")
    table.add_column("Manager")
    table.add_column("Version")
    table.add_column("Reason")
    table.add_column("Tags")
    table.add_column("Updated")
    table.add_column("Comment")
    for view in views:
        p = view.package
        table.add_row(
            p.name,
            p.manager,
            p.version or "-",
            p.reason or "-",
            ", ".join(view.tags),
            _fmt_ts(p.last_updated_ts),
            p.comment or "",
        )
    console.print(table)


@main.command()
@click.option("--name", "names", multiple=True, help="Filter by package name")
@click.option("--manager", "-m", "managers", multiple=True, help="Filter by manager")
@click.option(
    "--action", "actions", multiple=True, type=click.Choice([a.value for a in LogAction])
)
@click.option("--command", "command_id", type=int, help="Entries caused by this command id")
@click.option("--since", type=click.DateTime(DATE_FORMATS))
@click.option("--before", type=click.DateTime(DATE_FORMATS))
@click.option("--limit", default=50, show_default=True, help="Newest N entries (0 for all)")
@click.option("--json", "as_json", is_flag=True, help="Print as JSON")
def log(
    names: tuple[str, ...],
    managers: tuple[str, ...],
    actions: tuple[str, ...],
    command_id: int | None,
    since: datetime | None,
    before: datetime | None,
    limit: int,
    as_json: bool,
) -> None:
    """Show the package event log."""

    async def fetch() -> list:
        async with db.get_read_session() as session:
            return await db.list_log_entries(
                session,
                names=list(names),
                managers=list(managers),
                actions=list(actions),
                command_id=command_id,
                since=_as_utc(since),
                before=_as_utc(before),
                limit=limit or None,
            )

    entries = _run(fetch())
    if as_json:
        click.echo(
            json.dumps(
                [
                    {
                        "id": e.id,
                        "timestamp": e.timestamp.isoformat(),
                        "action": e.action,
                        "name": e.name,
                        "manager": e.manager,
                        "version": e.version,
                        "comment": e.comment,
                        "command_id": e.command_id,
                    }
                    for e in entries
                ],
                indent=2,
            )
        )
        return
    if not entries:
        console.print("[yellow]No log entries found[/yellow]")
        return

    table = Table(title="Package Log")
    table.add_column("When")
    table.add_column("Action")
    table.add_column("Package", style="cyan")
    table.add_column("Manager")
    table.add_column("Version")
    table.add_column("Cmd")
    table.add_column("Comment")
    for e in entries:
        table.add_row(
            _fmt_ts(e.timestamp),
            e.action,
            e.name,
            e.manager,
            e.version or "-",
            str(e.command_id) if e.command_id is not None else "-",
            e.comment or "",
        )
    console.print(table)


@main.command()
@click.option("--limit", default=20, show_default=True, help="Number of commands to show")
@click.option("--interrupted", is_flag=True, help="Only commands that never finished")
@click.option("--json", "as_json", is_flag=True, help="Print as JSON")
def history(limit: int, interrupted: bool, as_json: bool) -> None:
    """Show recorded tool invocations."""

    async def fetch() -> list:
        async with db.get_read_session() as session:
            return await db.list_commands(session, limit=limit, interrupted_only=interrupted)

    commands = _run(fetch())
    if as_json:
        click.echo(
            json.dumps(
                [
                    {
                        "id": c.id,
                        "start_ts": c.start_ts.isoformat(),
                        "end_ts": c.end_ts.isoformat() if c.end_ts else None,
                        "version": c.version,
                        "command": c.command_string,
                        "pm_command": c.pm_command_string,
                        "exit_code": c.exit_code,
                        "error_message": c.error_message,
                        "details": c.details,
                    }
                    for c in commands
                ],
                indent=2,
            )
        )
        return
    if not commands:
        console.print("[yellow]No commands recorded[/yellow]")
        return

    table = Table(title="Command History")
    table.add_column("ID", style="cyan")
    table.add_column("Started")
    table.add_column("Exit")
    table.add_column("Command")
    table.add_column("Package Manager Command")
    table.add_column("Error / Details")
    for c in commands:
        exit_code = "[yellow]interrupted[/yellow]" if c.end_ts is None else str(c.exit_code)
        table.add_row(
            str(c.id),
            _fmt_ts(c.start_ts),
            exit_code,
            c.command_string or "",
            c.pm_command_string or "",
            c.error_message or c.details or "",
        )
    console.print(table)


@main.command()
def tags() -> None:
    """List tags and how many packages carry each."""

    async def fetch() -> list[tuple[str, int]]:
        async with db.get_read_session() as session:
            return await db.list_tags(session)

    rows = _run(fetch())
    if not rows:
        console.print("[yellow]No tags defined[/yellow]")
        return
    table = Table(title="Tags")
    table.add_column("Tag", style="cyan")
    table.add_column("Packages")
    for name, count in rows:
        table.add_row(name, str(count))
    console.print(table)


if __name__ == "__main__":
    main()
