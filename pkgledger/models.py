"""SQLAlchemy models for the package ledger database."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class InstallReason(StrEnum):
    """Why a package is present on the system."""

    USER = "user"
    DEPENDENCY = "dependency"
    DISCOVERED = "discovered"


class LogAction(StrEnum):
    """Action tag recorded on every package_log row."""

    INSTALLED = "installed"
    REMOVED = "removed"
    COMMENT_CHANGED = "comment_changed"
    TAGS_UPDATED = "tags_updated"
    MANUAL_ADD = "manual_add"
    MANUAL_REMOVE_LOG = "manual_remove_log"
    SYNC_ADD = "sync_add"
    SYNC_REMOVE = "sync_remove"
    SYNC_UPDATE = "sync_update"
    INIT = "init"


# Manager identifier reserved for entries added by hand; no gateway backs it.
MANUAL_MANAGER = "manual"


class UTCDateTime(TypeDecorator):
    """Stores naive UTC timestamps and hands back timezone-aware UTC values."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        return value.replace(tzinfo=UTC)


def utcnow() -> datetime:
    return datetime.now(UTC)


def normalize_tag(name: str) -> str:
    """Tags are compared case-insensitively and without surrounding whitespace."""
    return name.strip().lower()


class Base(DeclarativeBase):
    """Base class for all models."""


class CommandHistory(Base):
    """One row per tool invocation; end_ts NULL marks an interrupted run."""

    __tablename__ = "command_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    start_ts: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_ts: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    version: Mapped[str | None] = mapped_column(String, nullable=True)
    command_string: Mapped[str | None] = mapped_column(Text, nullable=True)
    pm_command_string: Mapped[str | None] = mapped_column(Text, nullable=True)
    exit_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("idx_command_history_end_ts", "end_ts"),)

    @property
    def interrupted(self) -> bool:
        return self.end_ts is None


class CurrentPackage(Base):
    """Latest known state of one package, keyed by (name, manager)."""

    __tablename__ = "current_packages"

    name: Mapped[str] = mapped_column(String, primary_key=True)
    manager: Mapped[str] = mapped_column(String, primary_key=True)
    origin: Mapped[str | None] = mapped_column(String, nullable=True)
    version: Mapped[str | None] = mapped_column(String, nullable=True)
    reason: Mapped[str | None] = mapped_column(String, nullable=True)
    location: Mapped[str | None] = mapped_column(Text, nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    install_ts: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_updated_ts: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    checksum: Mapped[str | None] = mapped_column(String, nullable=True)
    signature: Mapped[str | None] = mapped_column(Text, nullable=True)
    license: Mapped[str | None] = mapped_column(String, nullable=True)
    size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    tag_links: Mapped[list[PackageTag]] = relationship(
        back_populates="package", cascade="all, delete-orphan", passive_deletes=True
    )

    @property
    def key(self) -> tuple[str, str]:
        return (self.name, self.manager)


class PackageLog(Base):
    """Append-only event record with a snapshot of the package at event time."""

    __tablename__ = "package_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Weak back-reference: the log never owns the command row.
    command_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("command_history.id", ondelete="SET NULL"), nullable=True
    )
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    action: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    manager: Mapped[str] = mapped_column(String, nullable=False)
    origin: Mapped[str | None] = mapped_column(String, nullable=True)
    version: Mapped[str | None] = mapped_column(String, nullable=True)
    reason: Mapped[str | None] = mapped_column(String, nullable=True)
    location: Mapped[str | None] = mapped_column(Text, nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    install_ts: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    checksum: Mapped[str | None] = mapped_column(String, nullable=True)
    signature: Mapped[str | None] = mapped_column(Text, nullable=True)
    license: Mapped[str | None] = mapped_column(String, nullable=True)
    size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        Index("idx_package_log_package", "name", "manager"),
        Index("idx_package_log_command", "command_id"),
        Index("idx_package_log_timestamp", "timestamp"),
    )


class Tag(Base):
    """User-defined label; created lazily and never auto-deleted."""

    __tablename__ = "tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, unique=True, nullable=False)

    package_links: Mapped[list[PackageTag]] = relationship(
        back_populates="tag", cascade="all, delete-orphan", passive_deletes=True
    )


class PackageTag(Base):
    """Association between a tracked package and a tag."""

    __tablename__ = "package_tags"

    name: Mapped[str] = mapped_column(String, primary_key=True)
    manager: Mapped[str] = mapped_column(String, primary_key=True)
    tag_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True
    )

    __table_args__ = (
        ForeignKeyConstraint(
            ["name", "manager"],
            ["current_packages.name", "current_packages.manager"],
            ondelete="CASCADE",
        ),
        Index("idx_package_tags_tag", "tag_id"),
    )

    package: Mapped[CurrentPackage] = relationship(back_populates="tag_links")
    tag: Mapped[Tag] = relationship(back_populates="package_links")


# Descriptive columns shared by current_packages and the package_log snapshot.
SNAPSHOT_FIELDS: tuple[str, ...] = (
    "origin",
    "version",
    "reason",
    "location",
    "comment",
    "install_ts",
    "checksum",
    "signature",
    "license",
    "size",
)

# Fields a gateway reports and sync compares.
MUTABLE_FIELDS: tuple[str, ...] = (
    "version",
    "origin",
    "reason",
    "checksum",
    "signature",
    "license",
    "size",
)
