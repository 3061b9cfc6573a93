"""Programmatic access to the Alembic migration history."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine

from .config import settings

logger = logging.getLogger(__name__)

# Shipped inside the package so installed copies can migrate too
SCRIPT_LOCATION = Path(__file__).parent / "alembic"


def alembic_config(database_url: str | None = None) -> Config:
    """Build an Alembic config without relying on alembic.ini being in the cwd."""
    config = Config()
    config.set_main_option("script_location", str(SCRIPT_LOCATION))
    config.set_main_option("sqlalchemy.url", database_url or settings.database_url)
    # Leave process-wide logging to the caller.
    config.attributes["configure_logger"] = False
    return config


def head_revision(database_url: str | None = None) -> str | None:
    return ScriptDirectory.from_config(alembic_config(database_url)).get_current_head()


def current_revision(database_url: str | None = None) -> str | None:
    """Revision the database is at, or None for an empty database."""
    engine = create_engine(database_url or settings.database_url)
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()


def upgrade_to_head(database_url: str | None = None) -> str | None:
    """Apply pending migrations, then report the resulting revision."""
    url = database_url or settings.database_url
    if url.startswith("sqlite:///"):
        Path(url.removeprefix("sqlite:///")).parent.mkdir(parents=True, exist_ok=True)
    before = current_revision(url)
    command.upgrade(alembic_config(url), "head")
    after = current_revision(url)
    if before != after:
        logger.info("Ledger schema upgraded from %s to %s", before or "<empty>", after)
    return after
