"""Shared test fixtures and configuration for pytest."""

from collections.abc import AsyncGenerator, Callable
from pathlib import Path

import pytest
import pytest_asyncio

from pkgledger import db
from pkgledger.errors import GatewayExecutionError, GatewayUnavailableError
from pkgledger.gateways.base import PackageManagerGateway, PackageRecord


class FakeGateway(PackageManagerGateway):
    """In-memory package manager.

    ``refuse`` names are silently skipped by install/remove the way a real
    manager skips packages it cannot or need not act on.
    """

    capabilities = frozenset({"version", "origin", "reason", "license", "size_bytes", "checksum"})

    def __init__(self, identifier: str = "fake", packages: list[PackageRecord] | None = None) -> None:
        self.identifier = identifier
        self.packages: dict[str, PackageRecord] = {p.name: p for p in packages or []}
        self.catalog: dict[str, str] = {}
        self.refuse: set[str] = set()
        self.fail_with: str | None = None
        self.unavailable: str | None = None
        self.calls: list[tuple[str, list[str]]] = []

    def _command(self, verb: str, names: list[str], options: list[str] | None) -> str:
        return " ".join([self.identifier, verb, *(options or []), *names])

    async def install(self, names: list[str], options: list[str] | None = None) -> str:
        self.calls.append(("install", list(names)))
        command = self._command("install", names, options)
        if self.fail_with:
            raise GatewayExecutionError(self.fail_with, command=command, returncode=100)
        for name in names:
            if name in self.refuse or name in self.packages:
                continue
            self.packages[name] = PackageRecord(
                name=name, version=self.catalog.get(name, "1.0"), reason="user"
            )
        return command

    async def remove(self, names: list[str], options: list[str] | None = None) -> str:
        self.calls.append(("remove", list(names)))
        command = self._command("remove", names, options)
        if self.fail_with:
            raise GatewayExecutionError(self.fail_with, command=command, returncode=100)
        for name in names:
            if name not in self.refuse:
                self.packages.pop(name, None)
        return command

    async def query_all(self) -> list[PackageRecord]:
        if self.fail_with:
            raise GatewayExecutionError(self.fail_with)
        return list(self.packages.values())

    async def query_by_name(self, names: list[str]) -> list[PackageRecord]:
        return [self.packages[n] for n in names if n in self.packages]

    async def check_available(self) -> None:
        if self.unavailable:
            raise GatewayUnavailableError(self.unavailable)


@pytest_asyncio.fixture
async def ledger(tmp_path: Path) -> AsyncGenerator[Path]:
    """A fresh SQLite ledger with the schema created."""
    path = tmp_path / "ledger.db"
    db.configure_engine(f"sqlite+aiosqlite:///{path}")
    await db.init_db()
    yield path
    await db.dispose_engine()


@pytest.fixture
def make_gateway() -> Callable[..., FakeGateway]:
    return FakeGateway


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway("fake")
