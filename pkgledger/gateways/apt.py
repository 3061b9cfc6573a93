"""Gateway for Debian packages (apt-get for changes, dpkg-query for state)."""

from __future__ import annotations

import shlex

from ..config import settings
from ..models import InstallReason
from .base import CommandGateway, PackageRecord

DPKG_FORMAT = "${Package}\\t${Version}\\t${Installed-Size}\\t${db:Status-Abbrev}\\t${Origin}\\n"


def parse_dpkg_output(output: str, manual: set[str] | None = None) -> list[PackageRecord]:
    """Parse dpkg-query rows; only fully installed ("ii") packages are kept.

    Installed-Size is reported in KiB and converted to bytes.
    """
    records: list[PackageRecord] = []
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) < 4:
            continue
        name, version, size, status = parts[:4]
        if not status.startswith("ii"):
            continue
        origin = parts[4].strip() if len(parts) > 4 else ""
        reason = None
        if manual is not None:
            reason = (
                InstallReason.USER.value if name in manual else InstallReason.DEPENDENCY.value
            )
        records.append(
            PackageRecord(
                name=name,
                version=version or None,
                origin=origin or None,
                reason=reason,
                size_bytes=int(size) * 1024 if size.strip().isdigit() else None,
            )
        )
    return records


class AptGateway(CommandGateway):
    identifier = "apt"
    capabilities = frozenset({"version", "origin", "reason", "size_bytes"})

    def __init__(
        self,
        executable: str | None = None,
        query_executable: str | None = None,
        mark_executable: str = "apt-mark",
    ) -> None:
        self.executable = executable or settings.apt_cmd
        self.query_executable = query_executable or settings.dpkg_query_cmd
        self.mark_executable = mark_executable

    async def install(self, names: list[str], options: list[str] | None = None) -> str:
        result = await self.run(self.command_line("install", "-y", *(options or []), *names))
        return result.command

    async def remove(self, names: list[str], options: list[str] | None = None) -> str:
        result = await self.run(self.command_line("remove", "-y", *(options or []), *names))
        return result.command

    async def _manual_packages(self) -> set[str]:
        result = await self.run([*shlex.split(self.mark_executable), "showmanual"])
        return {line.strip() for line in result.stdout.splitlines() if line.strip()}

    async def _query(self, names: list[str]) -> list[PackageRecord]:
        # dpkg-query exits 1 when some requested names are unknown but still
        # prints the ones it found.
        result = await self.run(
            [*shlex.split(self.query_executable), "-W", f"-f={DPKG_FORMAT}", *names],
            ok_codes=(0, 1),
        )
        return parse_dpkg_output(result.stdout, await self._manual_packages())

    async def query_all(self) -> list[PackageRecord]:
        return await self._query([])

    async def query_by_name(self, names: list[str]) -> list[PackageRecord]:
        if not names:
            return []
        return await self._query(names)
