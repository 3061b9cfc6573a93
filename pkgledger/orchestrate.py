"""Package-state orchestrator - audited workflow for every mutating operation.

Each operation follows the same sequence::

    START -> RECORD_START -> INVOKE_EXTERNAL -> BEGIN_TX -> APPLY_CHANGES -> COMMIT -> RECORD_END
                                    |
                                    +-> FAILURE -> RECORD_END (failed)

The audit row is committed before anything else and finalized in its own
commit afterwards. The external package manager always runs outside any open
ledger transaction, and the ledger is only changed for packages whose new
state was confirmed by querying the manager again.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from . import __version__, audit, db
from .config import settings
from .errors import (
    GatewayExecutionError,
    LedgerError,
    OperationCancelledError,
    run_with_timeout,
)
from .gateways.base import PackageManagerGateway, PackageRecord
from .models import MANUAL_MANAGER, CurrentPackage, InstallReason, LogAction, normalize_tag, utcnow

logger = logging.getLogger(__name__)


class OperationState(StrEnum):
    START = "start"
    RECORD_START = "record_start"
    INVOKE_EXTERNAL = "invoke_external"
    FAILURE = "failure"
    BEGIN_TX = "begin_tx"
    APPLY_CHANGES = "apply_changes"
    COMMIT = "commit"
    RECORD_END = "record_end"


@dataclass
class OperationOutcome:
    """What one audited operation did."""

    command_id: int
    action: str
    changed: list[tuple[str, str]] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    log_entries: int = 0
    pm_command: str | None = None
    details: str | None = None


@dataclass
class Operation:
    """Tracks the state of one audited operation."""

    command_id: int
    action: str
    state: OperationState = OperationState.RECORD_START
    cancel_event: asyncio.Event | None = None
    outcome: OperationOutcome = field(init=False)

    def __post_init__(self) -> None:
        self.outcome = OperationOutcome(command_id=self.command_id, action=self.action)

    def transition(self, state: OperationState) -> None:
        logger.debug("command %s: %s -> %s", self.command_id, self.state, state)
        self.state = state

    def check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise OperationCancelledError(f"{self.action} cancelled before it started")

    async def external(self, invocation: Awaitable[str]) -> str:
        """Run the external command to completion, even if we get cancelled meanwhile."""
        self.transition(OperationState.INVOKE_EXTERNAL)
        task = asyncio.ensure_future(invocation)
        interrupted = False
        while True:
            try:
                pm_command = await asyncio.shield(task)
                break
            except asyncio.CancelledError:
                if task.done():
                    raise
                # The package manager is already running; killing it would leave
                # the system in a state we cannot verify.
                interrupted = True
                current = asyncio.current_task()
                if current is not None:
                    current.uncancel()
                logger.warning(
                    "command %s: cancellation requested while %s is running; waiting for it",
                    self.command_id,
                    self.action,
                )
        if interrupted:
            self.outcome.details = "cancellation requested during external command"
        self.outcome.pm_command = pm_command
        await audit.attach_external_command(self.command_id, pm_command)
        return pm_command


@asynccontextmanager
async def audited(
    action: str,
    invocation: str,
    *,
    tool_version: str = __version__,
    cancel_event: asyncio.Event | None = None,
) -> AsyncIterator[Operation]:
    """Wrap an operation with its two independent audit commits."""
    command_id = await audit.start(invocation, tool_version)
    op = Operation(command_id=command_id, action=action, cancel_event=cancel_event)
    logger.info("command %s: %s", command_id, invocation)
    try:
        yield op
    except GatewayExecutionError as exc:
        op.transition(OperationState.FAILURE)
        if exc.command and op.outcome.pm_command is None:
            await audit.attach_external_command(command_id, exc.command)
        op.transition(OperationState.RECORD_END)
        await audit.finish(
            command_id,
            exc.returncode or exc.exit_code,
            error_message=exc.message,
            details=op.outcome.details,
        )
        raise
    except LedgerError as exc:
        op.transition(OperationState.FAILURE)
        op.transition(OperationState.RECORD_END)
        await audit.finish(
            command_id, exc.exit_code, error_message=exc.message, details=op.outcome.details
        )
        raise
    except asyncio.CancelledError:
        op.transition(OperationState.FAILURE)
        op.transition(OperationState.RECORD_END)
        await audit.finish(
            command_id,
            OperationCancelledError.exit_code,
            error_message=f"{action} cancelled",
            details=op.outcome.details,
        )
        raise
    except Exception as exc:
        op.transition(OperationState.FAILURE)
        op.transition(OperationState.RECORD_END)
        await audit.finish(
            command_id, 1, error_message=str(exc) or type(exc).__name__, details=op.outcome.details
        )
        raise
    else:
        op.transition(OperationState.RECORD_END)
        await audit.finish(command_id, 0, details=op.outcome.details)


@asynccontextmanager
async def ledger_transaction(op: Operation) -> AsyncIterator[db.AsyncSession]:
    op.transition(OperationState.BEGIN_TX)
    async with db.get_session() as session:
        op.transition(OperationState.APPLY_CHANGES)
        yield session
        op.transition(OperationState.COMMIT)


def _unique(names: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for name in names:
        name = name.strip()
        if name:
            seen.setdefault(name, None)
    return list(seen)


async def _query_present(
    gateway: PackageManagerGateway, names: list[str], timeout: float | None
) -> dict[str, PackageRecord]:
    records = await run_with_timeout(
        gateway.query_by_name(names), timeout, f"{gateway.identifier} query"
    )
    return {record.name: record for record in records}


def _invocation(verb: str, *parts: str) -> str:
    return " ".join(["pkgledger", verb, *parts])


# =============================================================================
# Install / Remove
# =============================================================================


async def install_packages(
    gateway: PackageManagerGateway,
    names: list[str],
    *,
    options: list[str] | None = None,
    reason: str = InstallReason.USER,
    invocation: str | None = None,
    cancel_event: asyncio.Event | None = None,
    query_timeout: float | None = None,
    now: datetime | None = None,
) -> OperationOutcome:
    """Install through the gateway and record the packages that actually changed."""
    names = _unique(names)
    if not names:
        raise ValueError("No package names given")
    timeout = settings.gateway_timeout if query_timeout is None else query_timeout
    manager = gateway.identifier

    async with audited(
        LogAction.INSTALLED,
        invocation or _invocation("install", "--manager", manager, *names),
        cancel_event=cancel_event,
    ) as op:
        op.check_cancelled()
        wanted = [gateway.normalize_name(n) for n in names]
        before = await _query_present(gateway, wanted, timeout)
        op.check_cancelled()

        await op.external(gateway.install(names, options))

        after = await _query_present(gateway, wanted, timeout)
        confirmed = [
            record
            for name, record in after.items()
            if name not in before or before[name].version != record.version
        ]
        op.outcome.skipped = [n for n in wanted if n not in {r.name for r in confirmed}]
        stamp = now or utcnow()

        async with ledger_transaction(op) as session:
            for record in confirmed:
                fields = record.package_fields()
                fields["reason"] = str(reason)
                existing = await db.find_package(session, record.name, manager)
                if existing is not None and existing.install_ts is not None:
                    install_ts = existing.install_ts
                else:
                    install_ts = record.installed_at or stamp
                package = await db.upsert_package(
                    session, record.name, manager, now=stamp, install_ts=install_ts, **fields
                )
                await db.add_log_entry(
                    session, package, LogAction.INSTALLED, command_id=op.command_id, timestamp=stamp
                )
                op.outcome.changed.append(package.key)
            op.outcome.log_entries = len(confirmed)

    if op.outcome.skipped:
        logger.info("Skipped (no change observed): %s", ", ".join(op.outcome.skipped))
    return op.outcome


async def remove_packages(
    gateway: PackageManagerGateway,
    names: list[str],
    *,
    options: list[str] | None = None,
    invocation: str | None = None,
    cancel_event: asyncio.Event | None = None,
    query_timeout: float | None = None,
    now: datetime | None = None,
) -> OperationOutcome:
    """Remove through the gateway and drop the packages confirmed gone."""
    names = _unique(names)
    if not names:
        raise ValueError("No package names given")
    timeout = settings.gateway_timeout if query_timeout is None else query_timeout
    manager = gateway.identifier

    async with audited(
        LogAction.REMOVED,
        invocation or _invocation("remove", "--manager", manager, *names),
        cancel_event=cancel_event,
    ) as op:
        op.check_cancelled()
        wanted = [gateway.normalize_name(n) for n in names]
        before = await _query_present(gateway, wanted, timeout)
        op.check_cancelled()

        await op.external(gateway.remove(names, options))

        after = await _query_present(gateway, wanted, timeout)
        gone = [before[name] for name in wanted if name in before and name not in after]
        op.outcome.skipped = [n for n in wanted if n not in {r.name for r in gone}]
        stamp = now or utcnow()

        async with ledger_transaction(op) as session:
            for record in gone:
                package = await db.find_package(session, record.name, manager)
                tracked = package is not None
                if package is None:
                    # Not tracked yet: log a snapshot of what the manager reported.
                    package = CurrentPackage(
                        name=record.name,
                        manager=manager,
                        install_ts=record.installed_at,
                        last_updated_ts=stamp,
                        **record.package_fields(),
                    )
                await db.add_log_entry(
                    session, package, LogAction.REMOVED, command_id=op.command_id, timestamp=stamp
                )
                if tracked:
                    await db.delete_package(session, record.name, manager)
                op.outcome.changed.append((record.name, manager))
            op.outcome.log_entries = len(gone)

    return op.outcome


# =============================================================================
# Tags / Comments
# =============================================================================


def _clean_tags(tags: Iterable[str]) -> list[str]:
    return _unique(normalize_tag(t) for t in tags)


def summarize_tag_change(added: list[str], removed: list[str]) -> str:
    parts: list[str] = []
    if added:
        parts.append(f"added tags: {', '.join(added)}")
    if removed:
        parts.append(f"removed tags: {', '.join(removed)}")
    return "; ".join(parts)


async def update_tags(
    name: str,
    manager: str | None = None,
    *,
    add: list[str] | None = None,
    remove: list[str] | None = None,
    invocation: str | None = None,
    cancel_event: asyncio.Event | None = None,
    now: datetime | None = None,
) -> OperationOutcome:
    """Add and/or remove tags on one package, logging a single summary entry."""
    to_add = _clean_tags(add or [])
    to_remove = [t for t in _clean_tags(remove or []) if t not in to_add]
    if not to_add and not to_remove:
        raise ValueError("No tags given")

    parts = [name] + [f"+{t}" for t in to_add] + [f"-{t}" for t in to_remove]
    async with audited(
        LogAction.TAGS_UPDATED,
        invocation or _invocation("tag", *parts),
        cancel_event=cancel_event,
    ) as op:
        op.check_cancelled()
        stamp = now or utcnow()
        async with ledger_transaction(op) as session:
            package = await db.get_package(session, name, manager)
            added = [t for t in to_add if await db.add_tag_to_package(session, package, t, stamp)]
            removed = [
                t for t in to_remove if await db.remove_tag_from_package(session, package, t, stamp)
            ]
            if added or removed:
                await db.add_log_entry(
                    session,
                    package,
                    LogAction.TAGS_UPDATED,
                    command_id=op.command_id,
                    timestamp=stamp,
                    comment=summarize_tag_change(added, removed),
                )
                op.outcome.changed.append(package.key)
                op.outcome.log_entries = 1
    return op.outcome


async def set_comment(
    name: str,
    manager: str | None,
    comment: str | None,
    *,
    invocation: str | None = None,
    cancel_event: asyncio.Event | None = None,
    now: datetime | None = None,
) -> OperationOutcome:
    """Replace (or clear, with None) the free-text comment on a package."""
    async with audited(
        LogAction.COMMENT_CHANGED,
        invocation or _invocation("comment", name),
        cancel_event=cancel_event,
    ) as op:
        op.check_cancelled()
        stamp = now or utcnow()
        async with ledger_transaction(op) as session:
            package = await db.get_package(session, name, manager)
            package.comment = comment
            await db.touch_package(session, package, stamp)
            await db.add_log_entry(
                session, package, LogAction.COMMENT_CHANGED, command_id=op.command_id, timestamp=stamp
            )
            op.outcome.changed.append(package.key)
            op.outcome.log_entries = 1
    return op.outcome


# =============================================================================
# Manual entries
# =============================================================================


async def manual_add(
    name: str,
    manager: str = MANUAL_MANAGER,
    *,
    version: str | None = None,
    origin: str | None = None,
    location: str | None = None,
    comment: str | None = None,
    reason: str = InstallReason.USER,
    installed_at: datetime | None = None,
    invocation: str | None = None,
    cancel_event: asyncio.Event | None = None,
    now: datetime | None = None,
) -> OperationOutcome:
    """Record a package installed outside any gateway (e.g. a tarball in /opt)."""
    name = name.strip()
    if not name:
        raise ValueError("Package name must not be empty")

    async with audited(
        LogAction.MANUAL_ADD,
        invocation or _invocation("add", "--manager", manager, name),
        cancel_event=cancel_event,
    ) as op:
        op.check_cancelled()
        stamp = now or utcnow()
        async with ledger_transaction(op) as session:
            package = await db.upsert_package(
                session,
                name,
                manager,
                now=stamp,
                version=version,
                origin=origin,
                location=location,
                comment=comment,
                reason=str(reason),
                install_ts=installed_at or stamp,
            )
            await db.add_log_entry(
                session, package, LogAction.MANUAL_ADD, command_id=op.command_id, timestamp=stamp
            )
            op.outcome.changed.append(package.key)
            op.outcome.log_entries = 1
    return op.outcome


async def manual_remove_log(
    name: str,
    manager: str | None = None,
    *,
    comment: str | None = None,
    invocation: str | None = None,
    cancel_event: asyncio.Event | None = None,
    now: datetime | None = None,
) -> OperationOutcome:
    """Record that a package went away without running any package manager."""
    async with audited(
        LogAction.MANUAL_REMOVE_LOG,
        invocation or _invocation("forget", name),
        cancel_event=cancel_event,
    ) as op:
        op.check_cancelled()
        stamp = now or utcnow()
        async with ledger_transaction(op) as session:
            package = await db.get_package(session, name, manager)
            key = package.key
            await db.add_log_entry(
                session,
                package,
                LogAction.MANUAL_REMOVE_LOG,
                command_id=op.command_id,
                timestamp=stamp,
                comment=comment,
            )
            await db.delete_package(session, *key)
            op.outcome.changed.append(key)
            op.outcome.log_entries = 1
    return op.outcome
