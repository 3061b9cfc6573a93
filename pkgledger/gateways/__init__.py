"""Package manager gateways."""

from __future__ import annotations

from collections.abc import Callable

from ..errors import GatewayUnavailableError
from .apt import AptGateway
from .base import CommandGateway, GatewayResult, PackageManagerGateway, PackageRecord
from .pip import PipGateway

GATEWAYS: dict[str, Callable[[], PackageManagerGateway]] = {
    PipGateway.identifier: PipGateway,
    AptGateway.identifier: AptGateway,
}


def get_gateway(identifier: str) -> PackageManagerGateway:
    try:
        factory = GATEWAYS[identifier]
    except KeyError:
        known = ", ".join(sorted(GATEWAYS))
        raise GatewayUnavailableError(
            f"Unknown package manager '{identifier}' (known: {known})"
        ) from None
    return factory()


def configured_gateways(identifiers: list[str]) -> list[PackageManagerGateway]:
    return [get_gateway(identifier) for identifier in identifiers]


__all__ = [
    "GATEWAYS",
    "AptGateway",
    "CommandGateway",
    "GatewayResult",
    "PackageManagerGateway",
    "PackageRecord",
    "PipGateway",
    "configured_gateways",
    "get_gateway",
]
