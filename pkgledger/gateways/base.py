"""Package manager gateway contract and subprocess helper."""

from __future__ import annotations

import asyncio
import logging
import shlex
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any

from ..errors import GatewayExecutionError, GatewayUnavailableError

logger = logging.getLogger(__name__)

# Optional PackageRecord fields a gateway may declare it can populate.
OPTIONAL_FIELDS = frozenset(
    {"version", "origin", "reason", "installed_at", "checksum", "signature", "license", "size_bytes"}
)


@dataclass
class PackageRecord:
    """One package as reported by the external package manager."""

    name: str
    version: str | None = None
    origin: str | None = None
    reason: str | None = None
    installed_at: datetime | None = None
    checksum: str | None = None
    signature: str | None = None
    license: str | None = None
    size_bytes: int | None = None

    def package_fields(self) -> dict[str, Any]:
        """Map to current_packages column names (install time excluded)."""
        return {
            "version": self.version,
            "origin": self.origin,
            "reason": self.reason,
            "checksum": self.checksum,
            "signature": self.signature,
            "license": self.license,
            "size": self.size_bytes,
        }

    def to_dict(self) -> dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        if self.installed_at is not None:
            data["installed_at"] = self.installed_at.isoformat()
        return data


@dataclass
class GatewayResult:
    """Outcome of one external command."""

    command: str
    returncode: int
    stdout: str
    stderr: str


class PackageManagerGateway(ABC):
    """Abstracts one package manager's install/remove/query operations."""

    identifier: str = ""
    capabilities: frozenset[str] = frozenset()

    @abstractmethod
    async def install(self, names: list[str], options: list[str] | None = None) -> str:
        """Install packages, returning the executed command string."""

    @abstractmethod
    async def remove(self, names: list[str], options: list[str] | None = None) -> str:
        """Remove packages, returning the executed command string."""

    @abstractmethod
    async def query_all(self) -> list[PackageRecord]:
        """Return every package currently installed through this manager."""

    @abstractmethod
    async def query_by_name(self, names: list[str]) -> list[PackageRecord]:
        """Return the installed subset of ``names``; absent names are omitted."""

    @abstractmethod
    async def check_available(self) -> None:
        """Raise GatewayUnavailableError if the manager cannot be used here."""

    def declared_capabilities(self) -> frozenset[str]:
        return self.capabilities & OPTIONAL_FIELDS

    def normalize_name(self, name: str) -> str:
        """Spelling of ``name`` as this manager reports it back."""
        return name


class CommandGateway(PackageManagerGateway):
    """Gateway backed by an external executable."""

    executable: str = ""

    def command_line(self, *args: str) -> list[str]:
        return [*shlex.split(self.executable), *args]

    async def check_available(self) -> None:
        program = shlex.split(self.executable)[0] if self.executable else ""
        if not program or shutil.which(program) is None:
            raise GatewayUnavailableError(
                f"{self.identifier}: command not found: {program or '(unset)'}"
            )

    async def run(self, args: list[str], *, ok_codes: tuple[int, ...] = (0,)) -> GatewayResult:
        """Run ``args`` to completion and capture its output.

        A return code outside ``ok_codes`` raises GatewayExecutionError carrying the
        command string so the caller can still audit what was attempted.
        """
        command = shlex.join(args)
        logger.debug("Running %s", command)
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise GatewayUnavailableError(f"{self.identifier}: command not found: {args[0]}") from exc

        stdout, stderr = await proc.communicate()
        result = GatewayResult(
            command=command,
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )
        if result.returncode not in ok_codes:
            detail = result.stderr.strip().splitlines()[-1:] or [f"exit code {result.returncode}"]
            raise GatewayExecutionError(
                f"{self.identifier}: `{command}` failed: {detail[0]}",
                command=command,
                returncode=result.returncode,
            )
        return result
