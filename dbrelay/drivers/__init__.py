"""Driver adapters and the provider registry."""

from __future__ import annotations

from functools import partial
from typing import Mapping

from ..errors import ValidationError
from ..models import Provider
from .base import DatabaseDriver, DriverFactory, DriverOptions, DriverTarget
from .mysql import MySQLDriver
from .postgres import PostgresDriver

DRIVERS: Mapping[Provider, DriverFactory] = {
    Provider.POSTGRESQL: PostgresDriver,
    Provider.MYSQL: partial(MySQLDriver, provider=Provider.MYSQL),
    Provider.MARIADB: partial(MySQLDriver, provider=Provider.MARIADB),
}


def create_driver(
    provider: Provider | str,
    options: DriverOptions | None = None,
    *,
    registry: Mapping[Provider, DriverFactory] | None = None,
) -> DatabaseDriver:
    """Build the adapter registered for ``provider``."""

    factories = DRIVERS if registry is None else registry
    try:
        factory = factories[Provider(provider)]
    except (KeyError, ValueError) as exc:
        raise ValidationError(f"Unsupported database provider: {provider}") from exc
    return factory(options or DriverOptions())


__all__ = [
    "DRIVERS",
    "DatabaseDriver",
    "DriverFactory",
    "DriverOptions",
    "DriverTarget",
    "MySQLDriver",
    "PostgresDriver",
    "create_driver",
]
