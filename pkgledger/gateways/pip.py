"""Gateway for Python packages managed by pip."""

from __future__ import annotations

import json
import re
from typing import Any

from ..config import settings
from ..errors import GatewayExecutionError
from ..models import InstallReason
from .base import CommandGateway, PackageRecord

_PROJECT_NAME_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")


def canonical_name(name: str) -> str:
    """PEP 503 normalization so `Foo_Bar` and `foo-bar` compare equal.

    Requirement strings such as `requests[socks]>=2` reduce to the project name.
    """
    match = _PROJECT_NAME_RE.match(name.strip())
    if match:
        name = match.group(0)
    return re.sub(r"[-_.]+", "-", name).lower()


def parse_inspect_output(output: str) -> list[PackageRecord]:
    """Parse the JSON report printed by `pip inspect`."""
    try:
        report = json.loads(output)
    except json.JSONDecodeError as exc:
        raise GatewayExecutionError(f"pip: unreadable inspect report: {exc}") from exc

    records: list[PackageRecord] = []
    for item in report.get("installed", []):
        metadata: dict[str, Any] = item.get("metadata") or {}
        name = metadata.get("name")
        if not name:
            continue
        license_ = metadata.get("license_expression") or metadata.get("license") or None
        if license_ and len(license_) > 200:
            # Some projects paste the whole license text into this field.
            license_ = license_.splitlines()[0][:200]
        records.append(
            PackageRecord(
                name=canonical_name(name),
                version=metadata.get("version"),
                origin=item.get("installer") or None,
                reason=(
                    InstallReason.USER.value if item.get("requested") else InstallReason.DEPENDENCY.value
                ),
                license=license_,
            )
        )
    return records


class PipGateway(CommandGateway):
    identifier = "pip"
    capabilities = frozenset({"version", "origin", "reason", "license"})

    def __init__(self, executable: str | None = None) -> None:
        self.executable = executable or settings.pip_cmd

    def normalize_name(self, name: str) -> str:
        return canonical_name(name)

    async def install(self, names: list[str], options: list[str] | None = None) -> str:
        result = await self.run(self.command_line("install", *(options or []), *names))
        return result.command

    async def remove(self, names: list[str], options: list[str] | None = None) -> str:
        result = await self.run(self.command_line("uninstall", "-y", *(options or []), *names))
        return result.command

    async def query_all(self) -> list[PackageRecord]:
        result = await self.run(self.command_line("inspect", "--local"))
        return parse_inspect_output(result.stdout)

    async def query_by_name(self, names: list[str]) -> list[PackageRecord]:
        wanted = {canonical_name(n) for n in names}
        return [r for r in await self.query_all() if r.name in wanted]
