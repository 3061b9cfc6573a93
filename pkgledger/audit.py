"""Command audit recorder.

Every tool invocation gets one ``command_history`` row. The row is written and
committed before any other work happens, and finalized afterwards in a second,
separate commit. A row whose ``end_ts`` is still NULL is therefore evidence of an
interrupted or crashed invocation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from . import __version__, db
from .errors import IntegrityCheckError
from .models import CommandHistory, utcnow

logger = logging.getLogger(__name__)


async def start(
    invocation: str,
    tool_version: str = __version__,
    now: datetime | None = None,
) -> int:
    """Persist the start of an invocation and return its command id."""
    async with db.get_session() as session:
        command = CommandHistory(
            start_ts=now or utcnow(),
            version=tool_version,
            command_string=invocation,
        )
        session.add(command)
        await session.flush()
        command_id = command.id
    logger.debug("Recorded start of command %s: %s", command_id, invocation)
    return command_id


async def attach_external_command(command_id: int, exec_string: str) -> None:
    """Record the exact package manager command that was executed."""
    async with db.get_session() as session:
        command = await db.get_command(session, command_id)
        command.pm_command_string = exec_string


async def finish(
    command_id: int,
    exit_code: int,
    *,
    now: datetime | None = None,
    error_message: str | None = None,
    details: str | None = None,
) -> None:
    """Finalize the audit row in its own commit."""
    async with db.get_session() as session:
        command = await db.get_command(session, command_id)
        command.end_ts = now or utcnow()
        command.exit_code = exit_code
        command.error_message = error_message
        if details is not None:
            command.details = details
    if exit_code == 0:
        logger.debug("Command %s finished", command_id)
    else:
        logger.info("Command %s finished with exit code %s: %s", command_id, exit_code, error_message)


async def find_interrupted_commands() -> list[CommandHistory]:
    async with db.get_read_session() as session:
        return await db.list_commands(session, interrupted_only=True)


@dataclass
class HealthReport:
    integrity: str
    interrupted: list[CommandHistory] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.integrity == "ok" and not self.interrupted


async def health_check() -> HealthReport:
    """Integrity scan plus a list of invocations that never reached finalization."""
    async with db.get_read_session() as session:
        try:
            integrity = await db.integrity_check(session)
        except IntegrityCheckError as exc:
            integrity = exc.message
        interrupted = await db.list_commands(session, interrupted_only=True)
    if interrupted:
        logger.warning("%d interrupted command(s) found in history", len(interrupted))
    return HealthReport(integrity=integrity, interrupted=interrupted)
