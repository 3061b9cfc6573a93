"""Async database connection and ledger store operations."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import delete, event, func, select, text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .config import settings
from .errors import (
    AmbiguousPackageError,
    ConstraintViolationError,
    IntegrityCheckError,
    NotFoundError,
    SchemaNotInitializedError,
    TransactionCommitError,
    is_schema_missing_error,
    schema_not_initialized_message,
)
from .models import (
    SNAPSHOT_FIELDS,
    Base,
    CommandHistory,
    CurrentPackage,
    PackageLog,
    PackageTag,
    Tag,
    normalize_tag,
    utcnow,
)

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None
# Single-writer discipline: one open write transaction per process.
_write_lock = asyncio.Lock()


def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
    """Enable foreign keys (cascades depend on it) and WAL for one writer, many readers."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={int(settings.busy_timeout_ms)}")
    cursor.close()


def configure_engine(database_url: str | None = None, *, echo: bool | None = None) -> AsyncEngine:
    """(Re)create the async engine and session factory for ``database_url``."""
    global _engine, _session_factory, _write_lock

    url = database_url or settings.async_database_url
    _write_lock = asyncio.Lock()
    _engine = create_async_engine(url, echo=settings.sql_echo if echo is None else echo)
    event.listen(_engine.sync_engine, "connect", _set_sqlite_pragma)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


def get_engine() -> AsyncEngine:
    if _engine is None:
        settings.db_path.parent.mkdir(parents=True, exist_ok=True)
        configure_engine()
    assert _engine is not None
    return _engine


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def init_db() -> None:
    """Create all tables (for development/testing)."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _factory() -> async_sessionmaker[AsyncSession]:
    get_engine()
    assert _session_factory is not None
    return _session_factory


def _translate_error(exc: SQLAlchemyError) -> Exception:
    if is_schema_missing_error(exc):
        return SchemaNotInitializedError(schema_not_initialized_message(exc))
    if isinstance(exc, IntegrityError):
        return ConstraintViolationError(f"Ledger constraint violated: {exc.orig}")
    return exc


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession]:
    """Write transaction: commits on success, rolls back on any error."""
    async with _write_lock:
        async with _factory()() as session:
            try:
                yield session
            except SQLAlchemyError as exc:
                await session.rollback()
                translated = _translate_error(exc)
                if translated is exc:
                    raise
                raise translated from exc
            except BaseException:
                await session.rollback()
                raise
            try:
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                if is_schema_missing_error(exc) or isinstance(exc, IntegrityError):
                    raise _translate_error(exc) from exc
                raise TransactionCommitError(f"Ledger commit failed: {exc}") from exc


@asynccontextmanager
async def get_read_session() -> AsyncGenerator[AsyncSession]:
    """Isolated read scope: never commits.

    Closing the session ends the read transaction and detaches loaded rows
    without expiring them, so callers can keep using what they fetched.
    """
    async with _factory()() as session:
        try:
            yield session
        except SQLAlchemyError as exc:
            translated = _translate_error(exc)
            if translated is exc:
                raise
            raise translated from exc


# =============================================================================
# Filters and views
# =============================================================================


@dataclass
class PackageFilter:
    """Filter surface for package listings. Tags use match-all semantics."""

    reasons: list[str] = field(default_factory=list)
    managers: list[str] = field(default_factory=list)
    origins: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    since: datetime | None = None
    before: datetime | None = None
    names: list[str] = field(default_factory=list)


@dataclass
class PackageView:
    """A tracked package together with its tag names, ready for formatting."""

    package: CurrentPackage
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.package.name, "manager": self.package.manager}
        for name in SNAPSHOT_FIELDS:
            value = getattr(self.package, name)
            data[name] = value.isoformat() if isinstance(value, datetime) else value
        data["last_updated_ts"] = self.package.last_updated_ts.isoformat()
        data["tags"] = list(self.tags)
        return data


# =============================================================================
# Package Operations
# =============================================================================


async def get_package(
    session: AsyncSession, name: str, manager: str | None = None
) -> CurrentPackage:
    """Point lookup by (name, manager).

    Without a manager the name must be tracked by exactly one manager, otherwise
    AmbiguousPackageError is raised rather than guessing.
    """
    if manager is not None:
        package = await session.get(CurrentPackage, (name, manager))
        if package is None:
            raise NotFoundError(f"Package not found: {name} ({manager})")
        return package

    result = await session.execute(select(CurrentPackage).where(CurrentPackage.name == name))
    matches = list(result.scalars().all())
    if not matches:
        raise NotFoundError(f"Package not found: {name}")
    if len(matches) > 1:
        raise AmbiguousPackageError(name, [p.manager for p in matches])
    return matches[0]


async def find_package(
    session: AsyncSession, name: str, manager: str
) -> CurrentPackage | None:
    return await session.get(CurrentPackage, (name, manager))


async def list_packages(
    session: AsyncSession, filters: PackageFilter | None = None
) -> list[CurrentPackage]:
    """List tracked packages ordered by manager then name."""
    filters = filters or PackageFilter()
    query = select(CurrentPackage)

    if filters.reasons:
        query = query.where(CurrentPackage.reason.in_(filters.reasons))
    if filters.managers:
        query = query.where(CurrentPackage.manager.in_(filters.managers))
    if filters.origins:
        query = query.where(CurrentPackage.origin.in_(filters.origins))
    if filters.names:
        query = query.where(CurrentPackage.name.in_(filters.names))
    if filters.since is not None:
        query = query.where(CurrentPackage.last_updated_ts >= filters.since)
    if filters.before is not None:
        query = query.where(CurrentPackage.last_updated_ts < filters.before)

    wanted = sorted({normalize_tag(t) for t in filters.tags if t.strip()})
    if wanted:
        # Match-all: the package must carry every requested tag.
        tagged = (
            select(PackageTag.name, PackageTag.manager)
            .join(Tag, Tag.id == PackageTag.tag_id)
            .where(Tag.name.in_(wanted))
            .group_by(PackageTag.name, PackageTag.manager)
            .having(func.count(func.distinct(Tag.id)) == len(wanted))
            .subquery()
        )
        query = query.join(
            tagged,
            (tagged.c.name == CurrentPackage.name) & (tagged.c.manager == CurrentPackage.manager),
        )

    result = await session.execute(query.order_by(CurrentPackage.manager, CurrentPackage.name))
    return list(result.scalars().all())


async def list_package_views(
    session: AsyncSession, filters: PackageFilter | None = None
) -> list[PackageView]:
    packages = await list_packages(session, filters)
    tag_map = await tags_for_packages(session, [p.key for p in packages])
    return [PackageView(package=p, tags=tag_map.get(p.key, [])) for p in packages]


async def upsert_package(
    session: AsyncSession,
    name: str,
    manager: str,
    *,
    now: datetime | None = None,
    **fields: Any,
) -> CurrentPackage:
    """Create or replace the descriptive state of (name, manager).

    Fields not passed keep their stored value; tags are never touched.
    """
    unknown = set(fields) - set(SNAPSHOT_FIELDS)
    if unknown:
        raise ValueError(f"Unknown package fields: {', '.join(sorted(unknown))}")

    package = await session.get(CurrentPackage, (name, manager))
    if package is None:
        package = CurrentPackage(name=name, manager=manager)
        session.add(package)
    for key, value in fields.items():
        setattr(package, key, value)
    package.last_updated_ts = now or utcnow()
    await session.flush()
    return package


async def delete_package(session: AsyncSession, name: str, manager: str) -> bool:
    """Delete a tracked package; its tag associations cascade away."""
    result = await session.execute(
        delete(CurrentPackage).where(
            CurrentPackage.name == name, CurrentPackage.manager == manager
        )
    )
    return result.rowcount > 0


async def clear_packages(session: AsyncSession, managers: Iterable[str] | None = None) -> int:
    query = delete(CurrentPackage)
    managers = list(managers or [])
    if managers:
        query = query.where(CurrentPackage.manager.in_(managers))
    result = await session.execute(query)
    return result.rowcount or 0


async def touch_package(session: AsyncSession, package: CurrentPackage, now: datetime | None = None) -> None:
    package.last_updated_ts = now or utcnow()
    await session.flush()


# =============================================================================
# Log Operations
# =============================================================================


async def add_log_entry(
    session: AsyncSession,
    package: CurrentPackage,
    action: str,
    *,
    command_id: int | None,
    timestamp: datetime | None = None,
    comment: str | None = None,
) -> PackageLog:
    """Append a log row snapshotting ``package``. ``comment`` overrides the snapshot comment."""
    snapshot = {name: getattr(package, name) for name in SNAPSHOT_FIELDS}
    if comment is not None:
        snapshot["comment"] = comment
    entry = PackageLog(
        command_id=command_id,
        timestamp=timestamp or utcnow(),
        action=str(action),
        name=package.name,
        manager=package.manager,
        **snapshot,
    )
    session.add(entry)
    await session.flush()
    return entry


async def list_log_entries(
    session: AsyncSession,
    *,
    names: list[str] | None = None,
    managers: list[str] | None = None,
    actions: list[str] | None = None,
    command_id: int | None = None,
    since: datetime | None = None,
    before: datetime | None = None,
    limit: int | None = None,
) -> list[PackageLog]:
    query = select(PackageLog)
    if names:
        query = query.where(PackageLog.name.in_(names))
    if managers:
        query = query.where(PackageLog.manager.in_(managers))
    if actions:
        query = query.where(PackageLog.action.in_(actions))
    if command_id is not None:
        query = query.where(PackageLog.command_id == command_id)
    if since is not None:
        query = query.where(PackageLog.timestamp >= since)
    if before is not None:
        query = query.where(PackageLog.timestamp < before)
    if limit:
        # Newest N, returned oldest first.
        inner = query.order_by(PackageLog.timestamp.desc(), PackageLog.id.desc()).limit(limit)
        result = await session.execute(inner)
        return list(reversed(result.scalars().all()))
    result = await session.execute(query.order_by(PackageLog.timestamp, PackageLog.id))
    return list(result.scalars().all())


# =============================================================================
# Tag Operations
# =============================================================================


async def find_or_create_tag(session: AsyncSession, name: str) -> Tag:
    """Case-insensitive lookup, creating the tag on first use."""
    normalized = normalize_tag(name)
    if not normalized:
        raise ValueError("Tag name must not be empty")

    result = await session.execute(select(Tag).where(Tag.name == normalized))
    tag = result.scalar_one_or_none()
    if tag is not None:
        return tag

    # A concurrent identical insert counts as "already exists", not an error.
    await session.execute(
        sqlite_insert(Tag).values(name=normalized).on_conflict_do_nothing(index_elements=["name"])
    )
    result = await session.execute(select(Tag).where(Tag.name == normalized))
    return result.scalar_one()


async def get_tag(session: AsyncSession, name: str) -> Tag | None:
    result = await session.execute(select(Tag).where(Tag.name == normalize_tag(name)))
    return result.scalar_one_or_none()


async def add_tag_to_package(
    session: AsyncSession, package: CurrentPackage, tag_name: str, now: datetime | None = None
) -> bool:
    """Associate a tag; returns False when the association already existed."""
    tag = await find_or_create_tag(session, tag_name)
    await touch_package(session, package, now)
    result = await session.execute(
        sqlite_insert(PackageTag)
        .values(name=package.name, manager=package.manager, tag_id=tag.id)
        .on_conflict_do_nothing()
    )
    return result.rowcount > 0


async def remove_tag_from_package(
    session: AsyncSession, package: CurrentPackage, tag_name: str, now: datetime | None = None
) -> bool:
    """Drop an association; a missing tag or association is a successful no-op."""
    await touch_package(session, package, now)
    tag = await get_tag(session, tag_name)
    if tag is None:
        return False
    result = await session.execute(
        delete(PackageTag).where(
            PackageTag.name == package.name,
            PackageTag.manager == package.manager,
            PackageTag.tag_id == tag.id,
        )
    )
    return result.rowcount > 0


async def get_package_tags(session: AsyncSession, package: CurrentPackage) -> list[str]:
    result = await session.execute(
        select(Tag.name)
        .join(PackageTag, PackageTag.tag_id == Tag.id)
        .where(PackageTag.name == package.name, PackageTag.manager == package.manager)
        .order_by(Tag.name)
    )
    return list(result.scalars().all())


async def tags_for_packages(
    session: AsyncSession, keys: list[tuple[str, str]]
) -> dict[tuple[str, str], list[str]]:
    """Batch tag lookup keyed by (name, manager)."""
    if not keys:
        return {}
    wanted = set(keys)
    names = sorted({name for name, _ in keys})
    result = await session.execute(
        select(PackageTag.name, PackageTag.manager, Tag.name)
        .join(Tag, Tag.id == PackageTag.tag_id)
        .where(PackageTag.name.in_(names))
        .order_by(Tag.name)
    )
    tag_map: dict[tuple[str, str], list[str]] = {}
    for name, manager, tag_name in result.all():
        if (name, manager) in wanted:
            tag_map.setdefault((name, manager), []).append(tag_name)
    return tag_map


async def list_tags(session: AsyncSession) -> list[tuple[str, int]]:
    """All tags with the number of packages carrying each, unused tags included."""
    result = await session.execute(
        select(Tag.name, func.count(PackageTag.tag_id))
        .outerjoin(PackageTag, PackageTag.tag_id == Tag.id)
        .group_by(Tag.id, Tag.name)
        .order_by(Tag.name)
    )
    return [(name, int(count)) for name, count in result.all()]


# =============================================================================
# Command History Operations
# =============================================================================


async def get_command(session: AsyncSession, command_id: int) -> CommandHistory:
    command = await session.get(CommandHistory, command_id)
    if command is None:
        raise NotFoundError(f"Command not found: {command_id}")
    return command


async def list_commands(
    session: AsyncSession, *, limit: int | None = None, interrupted_only: bool = False
) -> list[CommandHistory]:
    query = select(CommandHistory)
    if interrupted_only:
        query = query.where(CommandHistory.end_ts.is_(None))
    query = query.order_by(CommandHistory.id.desc())
    if limit:
        query = query.limit(limit)
    result = await session.execute(query)
    return list(reversed(result.scalars().all()))


# =============================================================================
# Integrity
# =============================================================================


async def integrity_check(session: AsyncSession) -> str:
    """Run SQLite's consistency scan plus a foreign key check. Never repairs."""
    rows = (await session.execute(text("PRAGMA integrity_check"))).all()
    messages = [str(row[0]) for row in rows]
    fk_rows = (await session.execute(text("PRAGMA foreign_key_check"))).all()
    for row in fk_rows:
        messages.append(f"foreign key violation in {row[0]} (rowid {row[1]}) -> {row[2]}")

    status = "ok" if messages == ["ok"] else "; ".join(m for m in messages if m != "ok")
    if status != "ok":
        logger.warning("Ledger integrity check failed: %s", status)
        raise IntegrityCheckError(f"Integrity check failed: {status}")
    return status
