"""Error types and helpers for the package ledger."""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable
from typing import TypeVar

import click

T = TypeVar("T")


class LedgerError(click.ClickException):
    """Base class for every error the ledger core raises."""

    exit_code = 1


class NotFoundError(LedgerError):
    """Raised when a package, tag or command row does not exist."""

    exit_code = 3


class AmbiguousPackageError(LedgerError):
    """Raised when an unqualified package name is tracked by several managers."""

    exit_code = 4

    def __init__(self, name: str, managers: list[str]) -> None:
        self.name = name
        self.managers = sorted(managers)
        super().__init__(
            f"Package '{name}' is tracked by multiple managers ({', '.join(self.managers)}); "
            "pass --manager to pick one."
        )


class GatewayUnavailableError(LedgerError):
    """Raised when a package manager gateway cannot be used on this system."""

    exit_code = 5


class GatewayExecutionError(LedgerError):
    """Raised when the external package manager reports a failure."""

    exit_code = 6

    def __init__(
        self,
        message: str,
        *,
        command: str | None = None,
        returncode: int | None = None,
    ) -> None:
        self.command = command
        self.returncode = returncode
        super().__init__(message)


class ConstraintViolationError(LedgerError):
    """Raised on an unexpected uniqueness or foreign key failure."""

    exit_code = 7


class IntegrityCheckError(LedgerError):
    """Raised when the backing store fails its consistency scan."""

    exit_code = 8


class TransactionCommitError(LedgerError):
    """Raised when the ledger transaction could not be committed."""

    exit_code = 9


class LedgerTimeoutError(LedgerError):
    """Raised when a store query or gateway call exceeds its deadline."""

    exit_code = 10


class OperationCancelledError(LedgerError):
    """Raised when an operation is cancelled before touching the system."""

    exit_code = 130


class SchemaNotInitializedError(LedgerError):
    """Raised when the database schema/migrations have not been applied."""

    exit_code = 2


async def run_with_timeout(awaitable: Awaitable[T], seconds: float | None, what: str) -> T:
    """Await ``awaitable`` with an optional deadline, raising LedgerTimeoutError on expiry."""
    if seconds is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except TimeoutError as exc:
        raise LedgerTimeoutError(f"{what} timed out after {seconds:g}s") from exc


_SQLITE_MISSING_TABLE_RE = re.compile(r"no such table:\s*(?P<table>[A-Za-z0-9_]+)", re.IGNORECASE)


def _unwrap_exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def missing_table_name(exc: BaseException) -> str | None:
    """Best-effort extraction of the missing table name from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        match = _SQLITE_MISSING_TABLE_RE.search(str(e))
        if match:
            return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """Return True if the exception looks like a missing-table error."""
    return missing_table_name(exc) is not None


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""

    lines: list[str] = [
        f"Ledger schema is not initialized{table_hint}.",
        "Run: `pkgledger db upgrade`",
        "Or validate with: `pkgledger db check`",
    ]
    return "\n".join(lines)
