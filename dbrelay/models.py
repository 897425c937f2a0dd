"""Shared dataclasses used across the codec, tunnel, driver and API modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping

TransportValue = str | int | float | bool | None


class Provider(str, Enum):
    """Database engines with a driver adapter."""

    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    MARIADB = "mariadb"


DEFAULT_PORTS: Mapping[Provider, int] = {
    Provider.POSTGRESQL: 5432,
    Provider.MYSQL: 3306,
    Provider.MARIADB: 3306,
}


@dataclass(frozen=True, slots=True)
class SSHTunnelConfig:
    """Bastion settings; ``private_key`` and ``passphrase`` are ciphertext at rest."""

    enabled: bool
    host: str
    username: str
    private_key: str = field(repr=False)
    port: int = 22
    passphrase: str | None = field(default=None, repr=False)


@dataclass(frozen=True, slots=True)
class ConnectionConfig:
    """Connection record as sent by the client; ``password`` is ciphertext."""

    provider: Provider
    host: str
    port: int
    database: str
    username: str
    password: str = field(repr=False)
    ssl_enabled: bool = False
    ssh_tunnel: SSHTunnelConfig | None = None

    @property
    def tunnel_enabled(self) -> bool:
        return self.ssh_tunnel is not None and self.ssh_tunnel.enabled


@dataclass(frozen=True, slots=True)
class ForeignKeyRef:
    schema: str
    table: str
    column: str


@dataclass(frozen=True, slots=True)
class ColumnInfo:
    name: str
    type: str
    nullable: bool
    primary_key: bool = False
    default: str | None = None
    foreign_key: ForeignKeyRef | None = None


@dataclass(frozen=True, slots=True)
class TableInfo:
    """A table, optionally with its columns (empty for the light listing)."""

    schema: str
    name: str
    row_count: int | None = None
    columns: tuple[ColumnInfo, ...] = ()


@dataclass(frozen=True, slots=True)
class SchemaDescription:
    """Tables ordered by schema, then table name."""

    tables: tuple[TableInfo, ...] = ()

    def namespaces(self) -> dict[str, tuple[TableInfo, ...]]:
        """Group tables by schema, keeping the existing order."""

        grouped: dict[str, list[TableInfo]] = {}
        for table in self.tables:
            grouped.setdefault(table.schema, []).append(table)
        return {schema: tuple(tables) for schema, tables in grouped.items()}


@dataclass(frozen=True, slots=True)
class QueryMeta:
    affected: int = 0
    row_count: int = 0
    status: str | None = None


@dataclass(frozen=True, slots=True)
class QueryResult:
    """Normalized output of a single statement."""

    columns: tuple[str, ...]
    rows: tuple[tuple[TransportValue, ...], ...]
    elapsed_ms: int
    meta: QueryMeta = field(default_factory=QueryMeta)


FILTER_OPERATORS = frozenset({"eq", "neq", "gt", "gte", "lt", "lte", "like", "ilike"})


@dataclass(frozen=True, slots=True)
class QueryFilter:
    column: str
    operator: str
    value: str


@dataclass(frozen=True, slots=True)
class BrowseParams:
    """Paginated table browsing request."""

    table: str
    schema: str | None = None
    page: int = 1
    page_size: int = 50
    sort_column: str | None = None
    sort_direction: str = "asc"
    filters: tuple[QueryFilter, ...] = ()

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


@dataclass(frozen=True, slots=True)
class TablePage:
    columns: tuple[ColumnInfo, ...]
    rows: tuple[tuple[TransportValue, ...], ...]
    total_count: int
    page: int
    page_size: int


@dataclass(frozen=True, slots=True)
class ConnectionTestResult:
    success: bool
    version: str | None = None
    error: str | None = None


__all__ = [
    "BrowseParams",
    "ColumnInfo",
    "ConnectionConfig",
    "ConnectionTestResult",
    "DEFAULT_PORTS",
    "FILTER_OPERATORS",
    "ForeignKeyRef",
    "Provider",
    "QueryFilter",
    "QueryMeta",
    "QueryResult",
    "SSHTunnelConfig",
    "SchemaDescription",
    "TableInfo",
    "TablePage",
    "TransportValue",
]
