from datetime import UTC, datetime, timedelta

import pytest

from pkgledger import db, orchestrate, reconciliation
from pkgledger.errors import GatewayUnavailableError
from pkgledger.gateways.base import PackageRecord
from pkgledger.models import CurrentPackage, LogAction
from pkgledger.reconciliation import LiveState, classify, comparable_columns


T0 = datetime(2026, 1, 10, tzinfo=UTC)


def _row(name: str, manager: str = "fake", **fields) -> CurrentPackage:
    return CurrentPackage(name=name, manager=manager, last_updated_ts=T0, **fields)


# =============================================================================
# Classification
# =============================================================================


def test_classify_places_every_key_in_one_bucket() -> None:
    live = LiveState(
        records={
            "fake": [
                PackageRecord(name="vim", version="9.1"),
                PackageRecord(name="jq", version="1.7"),
                PackageRecord(name="curl", version="8.0"),
            ]
        },
        capabilities={"fake": frozenset({"version"})},
    )
    rows = [
        _row("vim", version="9.0"),
        _row("curl", version="8.0"),
        _row("nano", version="7.2"),
        _row("requests", manager="pip", version="2.32"),
    ]

    report = classify(live, rows)

    assert [c.key for c in report.added] == [("jq", "fake")]
    assert [c.key for c in report.removed] == [("nano", "fake")]
    assert [c.key for c in report.updated] == [("vim", "fake")]
    assert report.updated[0].changes == {"version": ("9.0", "9.1")}
    assert report.unchanged == [("curl", "fake")]
    # Managers outside the live scope are never classified.
    assert ("requests", "pip") not in {c.key for c in report.removed}
    assert report.summary() == "added 1, removed 1, updated 1, unchanged 1"


def test_classify_ignores_undeclared_and_blank_fields() -> None:
    live = LiveState(
        records={"fake": [PackageRecord(name="vim", version="9.0", license="Vim", origin=None)]},
        capabilities={"fake": frozenset({"version", "origin"})},
    )
    rows = [_row("vim", version="9.0", license="GPL", origin="debian")]

    report = classify(live, rows)

    assert report.is_empty
    assert report.unchanged == [("vim", "fake")]


def test_comparable_columns_maps_size() -> None:
    assert comparable_columns(frozenset({"size_bytes", "version", "installed_at"})) == [
        "version",
        "size",
    ]


def test_summary_mentions_degraded_managers() -> None:
    report = reconciliation.SyncReport(degraded={"apt": "dpkg-query: command not found"})
    assert report.summary().endswith("degraded: apt (dpkg-query: command not found)")


# =============================================================================
# Discover
# =============================================================================


@pytest.mark.asyncio
async def test_discover_snapshots_live_state(ledger, make_gateway) -> None:
    gateway = make_gateway(
        "fake",
        [
            PackageRecord(name="vim", version="9.0"),
            PackageRecord(name="curl", version="8.0", reason="user"),
        ],
    )

    result = await reconciliation.discover([gateway], now=T0)

    assert result.counts == {"fake": 2}
    async with db.get_read_session() as session:
        rows = await db.list_packages(session)
        entries = await db.list_log_entries(session)
        command = await db.get_command(session, result.command_id)
    assert [(p.name, p.reason) for p in rows] == [("curl", "user"), ("vim", "discovered")]
    assert {e.action for e in entries} == {LogAction.INIT}
    assert {e.command_id for e in entries} == {result.command_id}
    assert command.exit_code == 0
    assert command.details == "discovered 2 package(s): fake=2"


@pytest.mark.asyncio
async def test_discover_clear_replaces_existing_rows(ledger, make_gateway) -> None:
    await reconciliation.discover([make_gateway("fake", [PackageRecord(name="old")])])

    result = await reconciliation.discover(
        [make_gateway("fake", [PackageRecord(name="new")])], clear_existing=True
    )

    assert result.cleared == 1
    async with db.get_read_session() as session:
        assert [p.name for p in await db.list_packages(session)] == ["new"]


@pytest.mark.asyncio
async def test_discover_clear_spares_managers_outside_live_scope(ledger, make_gateway) -> None:
    apt = make_gateway("apt", [PackageRecord(name="vim")])
    pip = make_gateway("pip", [PackageRecord(name="requests")])
    await reconciliation.discover([apt, pip], now=T0)
    await orchestrate.manual_add("terraform")
    await orchestrate.update_tags("requests", "pip", add=["web"])

    pip.fail_with = "pip exploded"
    apt.packages["curl"] = PackageRecord(name="curl")
    result = await reconciliation.discover([apt, pip], clear_existing=True)

    assert result.degraded == {"pip": "pip exploded"}
    assert result.cleared == 1
    async with db.get_read_session() as session:
        keys = [p.key for p in await db.list_packages(session)]
        requests = await db.get_package(session, "requests", "pip")
        tags = await db.get_package_tags(session, requests)
    assert keys == [("curl", "apt"), ("vim", "apt"), ("terraform", "manual"), ("requests", "pip")]
    assert tags == ["web"]


# =============================================================================
# Sync
# =============================================================================


async def _discover(make_gateway, *records: PackageRecord):
    gateway = make_gateway("fake", list(records))
    await reconciliation.discover([gateway], now=T0)
    return gateway


@pytest.mark.asyncio
async def test_dry_run_reports_without_writing(ledger, make_gateway) -> None:
    gateway = await _discover(
        make_gateway, PackageRecord(name="vim", version="9.0"), PackageRecord(name="curl")
    )
    gateway.packages.pop("curl")

    report = await reconciliation.sync([gateway])

    assert not report.applied
    assert report.command_id is None
    assert [c.key for c in report.removed] == [("curl", "fake")]
    async with db.get_read_session() as session:
        assert await db.get_package(session, "curl", "fake")
        # Only the discover invocation is audited.
        assert len(await db.list_commands(session)) == 1


@pytest.mark.asyncio
async def test_apply_removes_and_is_idempotent(ledger, make_gateway) -> None:
    gateway = await _discover(
        make_gateway, PackageRecord(name="vim", version="9.0"), PackageRecord(name="curl")
    )
    gateway.packages.pop("curl")

    report = await reconciliation.sync([gateway], apply=True)

    assert report.applied
    async with db.get_read_session() as session:
        assert await db.find_package(session, "curl", "fake") is None
        [entry] = await db.list_log_entries(session, actions=[LogAction.SYNC_REMOVE])
        command = await db.get_command(session, report.command_id)
    assert entry.name == "curl"
    assert entry.command_id == report.command_id
    assert command.exit_code == 0
    assert command.details == report.summary()

    again = await reconciliation.sync([gateway], apply=True)
    assert again.is_empty
    assert again.unchanged == [("vim", "fake")]


@pytest.mark.asyncio
async def test_apply_update_keeps_install_time(ledger, make_gateway) -> None:
    gateway = await _discover(make_gateway, PackageRecord(name="vim", version="9.0"))
    async with db.get_session() as session:
        package = await db.get_package(session, "vim", "fake")
        package.install_ts = T0
        package.comment = "keep me"

    gateway.packages["vim"] = PackageRecord(name="vim", version="9.1")
    later = T0 + timedelta(days=30)
    report = await reconciliation.sync([gateway], apply=True, now=later)

    assert report.updated[0].changes == {"version": ("9.0", "9.1")}
    async with db.get_read_session() as session:
        package = await db.get_package(session, "vim", "fake")
        [entry] = await db.list_log_entries(session, actions=[LogAction.SYNC_UPDATE])
    assert package.version == "9.1"
    assert package.install_ts == T0
    assert package.last_updated_ts == later
    assert package.comment == "keep me"
    assert entry.version == "9.1"


@pytest.mark.asyncio
async def test_apply_add_keeps_unknown_install_time_empty(ledger, gateway) -> None:
    installed = T0 - timedelta(days=400)
    gateway.packages["htop"] = PackageRecord(name="htop", version="3.3", size_bytes=4096)
    gateway.packages["jq"] = PackageRecord(name="jq", version="1.7", installed_at=installed)

    await reconciliation.sync([gateway], apply=True, now=T0)

    async with db.get_read_session() as session:
        htop = await db.get_package(session, "htop")
        jq = await db.get_package(session, "jq")
    assert htop.reason == "discovered"
    assert htop.size == 4096
    assert htop.install_ts is None
    assert htop.last_updated_ts == T0
    assert jq.install_ts == installed


@pytest.mark.asyncio
async def test_failing_gateway_degrades_only_its_manager(ledger, make_gateway) -> None:
    apt = make_gateway("apt", [PackageRecord(name="vim")])
    pip = make_gateway("pip", [PackageRecord(name="requests")])
    await reconciliation.discover([apt, pip], now=T0)

    pip.fail_with = "pip exploded"
    apt.packages.pop("vim")
    report = await reconciliation.sync([apt, pip], apply=True)

    assert report.degraded == {"pip": "pip exploded"}
    assert report.managers == ["apt"]
    assert [c.key for c in report.removed] == [("vim", "apt")]
    async with db.get_read_session() as session:
        assert [p.key for p in await db.list_packages(session)] == [("requests", "pip")]


@pytest.mark.asyncio
async def test_every_gateway_failing_aborts(ledger, make_gateway) -> None:
    broken = make_gateway("apt")
    broken.unavailable = "apt: command not found: apt-get"

    with pytest.raises(GatewayUnavailableError):
        await reconciliation.sync([broken])

    with pytest.raises(GatewayUnavailableError):
        await reconciliation.sync([broken], apply=True)

    async with db.get_read_session() as session:
        [command] = await db.list_commands(session)
    assert command.exit_code == GatewayUnavailableError.exit_code
    assert "apt: command not found" in command.error_message


@pytest.mark.asyncio
async def test_no_gateways_is_an_error(ledger) -> None:
    with pytest.raises(GatewayUnavailableError):
        await reconciliation.gather_live_state([])
