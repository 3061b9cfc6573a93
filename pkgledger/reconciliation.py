"""Reconciliation between live package manager state and the ledger."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from . import db
from .config import settings
from .errors import GatewayUnavailableError, run_with_timeout
from .gateways.base import PackageManagerGateway, PackageRecord
from .models import MUTABLE_FIELDS, CurrentPackage, InstallReason, LogAction, utcnow
from .orchestrate import audited, ledger_transaction

logger = logging.getLogger(__name__)

# PackageRecord capability name -> current_packages column
_CAPABILITY_COLUMNS = {"size_bytes": "size"}

Key = tuple[str, str]


@dataclass
class LiveState:
    """Joined result of querying every gateway."""

    records: dict[str, list[PackageRecord]] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    capabilities: dict[str, frozenset[str]] = field(default_factory=dict)

    @property
    def managers(self) -> list[str]:
        return sorted(self.records)


@dataclass
class PackageChange:
    """One (name, manager) unit that needs an action."""

    name: str
    manager: str
    record: PackageRecord | None = None
    changes: dict[str, tuple[Any, Any]] = field(default_factory=dict)

    @property
    def key(self) -> Key:
        return (self.name, self.manager)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "manager": self.manager}
        if self.record is not None:
            data["version"] = self.record.version
        if self.changes:
            data["changes"] = {k: [old, new] for k, (old, new) in self.changes.items()}
        return data


@dataclass
class SyncReport:
    """Three-way classification of live state against the ledger."""

    added: list[PackageChange] = field(default_factory=list)
    removed: list[PackageChange] = field(default_factory=list)
    updated: list[PackageChange] = field(default_factory=list)
    unchanged: list[Key] = field(default_factory=list)
    managers: list[str] = field(default_factory=list)
    degraded: dict[str, str] = field(default_factory=dict)
    applied: bool = False
    command_id: int | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.updated)

    def summary(self) -> str:
        text = (
            f"added {len(self.added)}, removed {len(self.removed)}, "
            f"updated {len(self.updated)}, unchanged {len(self.unchanged)}"
        )
        if self.degraded:
            text += "; degraded: " + ", ".join(
                f"{manager} ({error})" for manager, error in sorted(self.degraded.items())
            )
        return text

    def to_dict(self) -> dict[str, Any]:
        return {
            "applied": self.applied,
            "command_id": self.command_id,
            "managers": self.managers,
            "degraded": self.degraded,
            "added": [c.to_dict() for c in self.added],
            "removed": [c.to_dict() for c in self.removed],
            "updated": [c.to_dict() for c in self.updated],
            "unchanged": [{"name": n, "manager": m} for n, m in self.unchanged],
        }


@dataclass
class DiscoverResult:
    command_id: int
    counts: dict[str, int] = field(default_factory=dict)
    degraded: dict[str, str] = field(default_factory=dict)
    cleared: int = 0

    @property
    def total(self) -> int:
        return sum(self.counts.values())


# =============================================================================
# Live state fan-out
# =============================================================================


async def gather_live_state(
    gateways: Sequence[PackageManagerGateway], timeout: float | None = None
) -> LiveState:
    """Query every gateway concurrently and wait for all of them.

    A failing gateway only degrades its own manager; if all of them fail the
    whole operation is aborted with GatewayUnavailableError.
    """
    if not gateways:
        raise GatewayUnavailableError("No package manager gateways configured")
    timeout = settings.gateway_timeout if timeout is None else timeout

    async def query_one(gateway: PackageManagerGateway) -> list[PackageRecord]:
        await gateway.check_available()
        return await run_with_timeout(
            gateway.query_all(), timeout, f"{gateway.identifier} query"
        )

    results = await asyncio.gather(
        *[query_one(gateway) for gateway in gateways], return_exceptions=True
    )

    state = LiveState()
    for gateway, result in zip(gateways, results, strict=True):
        if isinstance(result, BaseException):
            if isinstance(result, asyncio.CancelledError):
                raise result
            message = getattr(result, "message", None) or str(result) or type(result).__name__
            logger.warning("Gateway %s failed; leaving its packages untouched: %s", gateway.identifier, message)
            state.errors[gateway.identifier] = message
            continue
        # One record per name; multi-arch duplicates collapse to the last one seen.
        state.records[gateway.identifier] = list({r.name: r for r in result}.values())
        state.capabilities[gateway.identifier] = gateway.declared_capabilities()

    if not state.records:
        detail = "; ".join(f"{m}: {e}" for m, e in sorted(state.errors.items()))
        raise GatewayUnavailableError(f"Every package manager gateway failed: {detail}")
    return state


# =============================================================================
# Classification
# =============================================================================


def comparable_columns(capabilities: frozenset[str]) -> list[str]:
    """Mutable columns a gateway actually reports; the rest are never touched by sync."""
    columns = {_CAPABILITY_COLUMNS.get(c, c) for c in capabilities}
    return [column for column in MUTABLE_FIELDS if column in columns]


def diff_fields(
    package: CurrentPackage, record: PackageRecord, columns: list[str]
) -> dict[str, tuple[Any, Any]]:
    """Columns whose live value differs. A value the gateway left blank is unknown, not cleared."""
    live = record.package_fields()
    return {
        column: (getattr(package, column), live[column])
        for column in columns
        if live[column] is not None and getattr(package, column) != live[column]
    }


def classify(live: LiveState, ledger_rows: Sequence[CurrentPackage]) -> SyncReport:
    """Place every (name, manager) seen on either side into exactly one bucket."""
    report = SyncReport(managers=live.managers, degraded=dict(live.errors))
    scope = set(live.records)

    ledger: dict[Key, CurrentPackage] = {
        row.key: row for row in ledger_rows if row.manager in scope
    }
    observed: dict[Key, PackageRecord] = {}
    for manager, records in live.records.items():
        for record in records:
            observed[(record.name, manager)] = record

    for key in sorted(observed):
        record = observed[key]
        package = ledger.get(key)
        if package is None:
            report.added.append(PackageChange(name=key[0], manager=key[1], record=record))
            continue
        columns = comparable_columns(live.capabilities.get(key[1], frozenset()))
        changes = diff_fields(package, record, columns)
        if changes:
            report.updated.append(
                PackageChange(name=key[0], manager=key[1], record=record, changes=changes)
            )
        else:
            report.unchanged.append(key)

    for key in sorted(set(ledger) - set(observed)):
        report.removed.append(PackageChange(name=key[0], manager=key[1]))

    return report


# =============================================================================
# Apply
# =============================================================================


async def _apply(
    session: db.AsyncSession,
    report: SyncReport,
    live: LiveState,
    command_id: int,
    now: datetime,
) -> None:
    for change in report.added:
        assert change.record is not None
        columns = comparable_columns(live.capabilities.get(change.manager, frozenset()))
        fields = {c: v for c, v in change.record.package_fields().items() if c in columns}
        fields["reason"] = fields.get("reason") or InstallReason.DISCOVERED.value
        package = await db.upsert_package(
            session,
            change.name,
            change.manager,
            now=now,
            install_ts=change.record.installed_at,
            **fields,
        )
        await db.add_log_entry(
            session, package, LogAction.SYNC_ADD, command_id=command_id, timestamp=now
        )

    for change in report.updated:
        # Original install time is carried forward; only the compared columns move.
        package = await db.upsert_package(
            session,
            change.name,
            change.manager,
            now=now,
            **{column: new for column, (_, new) in change.changes.items()},
        )
        if package.install_ts is None and change.record is not None:
            package.install_ts = change.record.installed_at
        await db.add_log_entry(
            session, package, LogAction.SYNC_UPDATE, command_id=command_id, timestamp=now
        )

    for change in report.removed:
        package = await db.get_package(session, change.name, change.manager)
        await db.add_log_entry(
            session, package, LogAction.SYNC_REMOVE, command_id=command_id, timestamp=now
        )
        await db.delete_package(session, change.name, change.manager)


async def sync(
    gateways: Sequence[PackageManagerGateway],
    *,
    apply: bool = False,
    invocation: str | None = None,
    cancel_event: asyncio.Event | None = None,
    gateway_timeout: float | None = None,
    query_timeout: float | None = None,
    now: datetime | None = None,
) -> SyncReport:
    """Diff live state against the ledger; with ``apply`` write the differences."""
    if not apply:
        live = await gather_live_state(gateways, gateway_timeout)
        async with db.get_read_session() as session:
            rows = await run_with_timeout(
                db.list_packages(session, db.PackageFilter(managers=live.managers)),
                query_timeout,
                "ledger query",
            )
            return classify(live, rows)

    scope = [g.identifier for g in gateways]
    async with audited(
        "sync",
        invocation or " ".join(["pkgledger", "sync", "--apply", *scope]),
        cancel_event=cancel_event,
    ) as op:
        op.check_cancelled()
        live = await gather_live_state(gateways, gateway_timeout)
        stamp = now or utcnow()
        async with ledger_transaction(op) as session:
            rows = await db.list_packages(session, db.PackageFilter(managers=live.managers))
            report = classify(live, rows)
            await _apply(session, report, live, op.command_id, stamp)
        report.applied = True
        report.command_id = op.command_id
        op.outcome.details = report.summary()
        op.outcome.log_entries = len(report.added) + len(report.removed) + len(report.updated)

    logger.info("Sync applied (command %s): %s", report.command_id, report.summary())
    return report


async def discover(
    gateways: Sequence[PackageManagerGateway],
    *,
    clear_existing: bool = False,
    invocation: str | None = None,
    cancel_event: asyncio.Event | None = None,
    gateway_timeout: float | None = None,
    now: datetime | None = None,
) -> DiscoverResult:
    """Write the live state of every gateway as a wholesale snapshot."""
    scope = [g.identifier for g in gateways]
    parts = ["pkgledger", "discover", *scope]
    if clear_existing:
        parts.append("--clear")

    async with audited(
        LogAction.INIT, invocation or " ".join(parts), cancel_event=cancel_event
    ) as op:
        op.check_cancelled()
        live = await gather_live_state(gateways, gateway_timeout)
        result = DiscoverResult(command_id=op.command_id, degraded=dict(live.errors))
        stamp = now or utcnow()

        async with ledger_transaction(op) as session:
            if clear_existing:
                result.cleared = await db.clear_packages(session, live.managers)
            for manager, records in live.records.items():
                for record in records:
                    fields = record.package_fields()
                    fields["reason"] = fields["reason"] or InstallReason.DISCOVERED.value
                    package = await db.upsert_package(
                        session,
                        record.name,
                        manager,
                        now=stamp,
                        install_ts=record.installed_at,
                        **fields,
                    )
                    await db.add_log_entry(
                        session, package, LogAction.INIT, command_id=op.command_id, timestamp=stamp
                    )
                result.counts[manager] = len(records)

        op.outcome.log_entries = result.total
        details = f"discovered {result.total} package(s): " + ", ".join(
            f"{m}={n}" for m, n in sorted(result.counts.items())
        )
        if result.degraded:
            details += "; degraded: " + ", ".join(sorted(result.degraded))
        op.outcome.details = details

    return result
