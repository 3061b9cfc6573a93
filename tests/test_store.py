from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import func, select

from pkgledger import db
from pkgledger.errors import AmbiguousPackageError, ConstraintViolationError, NotFoundError
from pkgledger.models import CurrentPackage, PackageLog, PackageTag, Tag


T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


async def _seed(*packages: tuple[str, str], **fields) -> None:
    async with db.get_session() as session:
        for name, manager in packages:
            await db.upsert_package(session, name, manager, now=T0, **fields)


@pytest.mark.asyncio
async def test_upsert_keeps_one_row_per_name_and_manager(ledger) -> None:
    await _seed(("vim", "apt"), version="9.0")
    await _seed(("vim", "apt"), version="9.1")

    async with db.get_read_session() as session:
        count = await session.scalar(select(func.count()).select_from(CurrentPackage))
        package = await db.get_package(session, "vim", "apt")

    assert count == 1
    assert package.version == "9.1"
    assert package.last_updated_ts == T0


@pytest.mark.asyncio
async def test_duplicate_insert_is_a_constraint_violation(ledger) -> None:
    await _seed(("vim", "apt"))

    with pytest.raises(ConstraintViolationError):
        async with db.get_session() as session:
            session.add(CurrentPackage(name="vim", manager="apt", last_updated_ts=T0))


@pytest.mark.asyncio
async def test_point_lookup_not_found_and_ambiguous(ledger) -> None:
    await _seed(("requests", "pip"), ("requests", "apt"), ("curl", "apt"))

    async with db.get_read_session() as session:
        with pytest.raises(NotFoundError):
            await db.get_package(session, "missing")
        with pytest.raises(NotFoundError):
            await db.get_package(session, "curl", "pip")
        with pytest.raises(AmbiguousPackageError) as excinfo:
            await db.get_package(session, "requests")
        assert excinfo.value.managers == ["apt", "pip"]

        package = await db.get_package(session, "curl")
        assert package.key == ("curl", "apt")
        assert (await db.get_package(session, "requests", "pip")).manager == "pip"


@pytest.mark.asyncio
async def test_find_or_create_tag_is_case_insensitive(ledger) -> None:
    async with db.get_session() as session:
        first = await db.find_or_create_tag(session, "Dev")
        second = await db.find_or_create_tag(session, "  dev ")
        third = await db.find_or_create_tag(session, "DEV")

    assert first.id == second.id == third.id
    assert first.name == "dev"


@pytest.mark.asyncio
async def test_tag_association_is_idempotent_and_refreshes_timestamp(ledger) -> None:
    await _seed(("vim", "apt"))
    later = T0 + timedelta(hours=1)

    async with db.get_session() as session:
        package = await db.get_package(session, "vim", "apt")
        assert await db.add_tag_to_package(session, package, "editor", later) is True
        assert await db.add_tag_to_package(session, package, "Editor", later) is False
        assert await db.remove_tag_from_package(session, package, "nope", later) is False
        assert await db.get_package_tags(session, package) == ["editor"]

    async with db.get_read_session() as session:
        package = await db.get_package(session, "vim", "apt")
        assert package.last_updated_ts == later
        links = await session.scalar(select(func.count()).select_from(PackageTag))
        assert links == 1


@pytest.mark.asyncio
async def test_removing_association_keeps_tag(ledger) -> None:
    await _seed(("vim", "apt"))
    async with db.get_session() as session:
        package = await db.get_package(session, "vim", "apt")
        await db.add_tag_to_package(session, package, "editor")
        assert await db.remove_tag_from_package(session, package, "editor") is True
        # Second removal is a no-op.
        assert await db.remove_tag_from_package(session, package, "editor") is False

    async with db.get_read_session() as session:
        assert await db.list_tags(session) == [("editor", 0)]


@pytest.mark.asyncio
async def test_deleting_package_cascades_associations_not_tags(ledger) -> None:
    await _seed(("vim", "apt"))
    async with db.get_session() as session:
        package = await db.get_package(session, "vim", "apt")
        await db.add_tag_to_package(session, package, "editor")

    async with db.get_session() as session:
        assert await db.delete_package(session, "vim", "apt") is True

    async with db.get_read_session() as session:
        assert await session.scalar(select(func.count()).select_from(PackageTag)) == 0
        assert await session.scalar(select(func.count()).select_from(Tag)) == 1


@pytest.mark.asyncio
async def test_deleting_tag_cascades_associations(ledger) -> None:
    await _seed(("vim", "apt"))
    async with db.get_session() as session:
        package = await db.get_package(session, "vim", "apt")
        await db.add_tag_to_package(session, package, "editor")

    async with db.get_session() as session:
        tag = await db.get_tag(session, "editor")
        await session.delete(tag)

    async with db.get_read_session() as session:
        assert await session.scalar(select(func.count()).select_from(PackageTag)) == 0
        assert await db.get_package(session, "vim", "apt")


@pytest.mark.asyncio
async def test_filter_by_tags_requires_every_tag(ledger) -> None:
    await _seed(("gcc", "apt"), ("make", "apt"), ("vim", "apt"))
    async with db.get_session() as session:
        for name, tags in {"gcc": ["dev", "tools"], "make": ["dev"], "vim": ["tools"]}.items():
            package = await db.get_package(session, name, "apt")
            for tag in tags:
                await db.add_tag_to_package(session, package, tag)

    async with db.get_read_session() as session:
        both = await db.list_packages(session, db.PackageFilter(tags=["dev", "Tools"]))
        dev = await db.list_packages(session, db.PackageFilter(tags=["dev"]))

    assert [p.name for p in both] == ["gcc"]
    assert [p.name for p in dev] == ["gcc", "make"]


@pytest.mark.asyncio
async def test_filters_combine(ledger) -> None:
    async with db.get_session() as session:
        await db.upsert_package(session, "a", "apt", now=T0, reason="user", origin="debian")
        await db.upsert_package(
            session, "b", "apt", now=T0 + timedelta(days=2), reason="dependency", origin="debian"
        )
        await db.upsert_package(session, "c", "pip", now=T0 + timedelta(days=4), reason="user")

    async with db.get_read_session() as session:
        by_reason = await db.list_packages(session, db.PackageFilter(reasons=["user"]))
        by_manager = await db.list_packages(session, db.PackageFilter(managers=["apt"]))
        by_origin = await db.list_packages(session, db.PackageFilter(origins=["debian"]))
        window = await db.list_packages(
            session,
            db.PackageFilter(since=T0 + timedelta(days=1), before=T0 + timedelta(days=3)),
        )
        named = await db.list_packages(session, db.PackageFilter(names=["a", "c"]))

    assert [p.key for p in by_reason] == [("a", "apt"), ("c", "pip")]
    assert [p.name for p in by_manager] == ["a", "b"]
    assert [p.name for p in by_origin] == ["a", "b"]
    assert [p.name for p in window] == ["b"]
    assert [p.name for p in named] == ["a", "c"]


@pytest.mark.asyncio
async def test_log_entries_snapshot_package(ledger) -> None:
    async with db.get_session() as session:
        package = await db.upsert_package(session, "vim", "apt", now=T0, version="9.0")
        await db.add_log_entry(session, package, "installed", command_id=None, timestamp=T0)
        package.version = "9.1"
        await db.add_log_entry(
            session, package, "sync_update", command_id=None, timestamp=T0 + timedelta(hours=1)
        )

    async with db.get_read_session() as session:
        entries = await db.list_log_entries(session, names=["vim"])
        newest = await db.list_log_entries(session, limit=1)

    assert [(e.action, e.version) for e in entries] == [("installed", "9.0"), ("sync_update", "9.1")]
    assert [e.action for e in newest] == ["sync_update"]


@pytest.mark.asyncio
async def test_failed_write_rolls_back(ledger) -> None:
    with pytest.raises(RuntimeError):
        async with db.get_session() as session:
            package = await db.upsert_package(session, "vim", "apt", now=T0)
            await db.add_log_entry(session, package, "installed", command_id=None)
            raise RuntimeError("boom")

    async with db.get_read_session() as session:
        assert await db.list_packages(session) == []
        assert await session.scalar(select(func.count()).select_from(PackageLog)) == 0


@pytest.mark.asyncio
async def test_integrity_check_reports_ok(ledger) -> None:
    async with db.get_read_session() as session:
        assert await db.integrity_check(session) == "ok"


@pytest.mark.asyncio
async def test_unknown_package_field_is_rejected(ledger) -> None:
    with pytest.raises(ValueError):
        async with db.get_session() as session:
            await db.upsert_package(session, "vim", "apt", colour="blue")


@pytest.mark.asyncio
async def test_rows_stay_readable_after_read_session_closes(ledger) -> None:
    async with db.get_session() as session:
        package = await db.upsert_package(session, "vim", "apt", now=T0, version="9.1")
        await db.add_log_entry(session, package, "installed", command_id=None, timestamp=T0)

    async with db.get_read_session() as session:
        packages = await db.list_packages(session)
        entries = await db.list_log_entries(session)
        views = await db.list_package_views(session)

    assert [(p.name, p.version, p.last_updated_ts) for p in packages] == [("vim", "9.1", T0)]
    assert [(e.action, e.timestamp) for e in entries] == [("installed", T0)]
    assert views[0].to_dict()["version"] == "9.1"
