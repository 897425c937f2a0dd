"""Driver contract shared by every database adapter."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Protocol, Sequence, runtime_checkable

import sqlglot
from sqlglot.errors import TokenError
from sqlglot.tokens import TokenType

from ..errors import ValidationError
from ..models import (
    FILTER_OPERATORS,
    BrowseParams,
    ColumnInfo,
    ForeignKeyRef,
    Provider,
    QueryFilter,
    QueryResult,
    SchemaDescription,
    TableInfo,
    TablePage,
)


@dataclass(frozen=True, slots=True)
class DriverTarget:
    """Effective endpoint and plaintext credentials for one operation."""

    host: str
    port: int
    database: str
    username: str
    password: str = field(repr=False)
    ssl: bool = False
    tunnelled: bool = False


@dataclass(frozen=True, slots=True)
class DriverOptions:
    connect_timeout: float = 10.0
    query_timeout: float = 30.0
    close_timeout: float = 5.0
    read_only: bool = False


@runtime_checkable
class DatabaseDriver(Protocol):
    """Protocol implemented by driver adapters; one instance owns one connection."""

    provider: Provider

    async def connect(self, target: DriverTarget) -> None:
        """Open the connection or raise ``ConnectError``."""

    async def get_schema(self) -> SchemaDescription:
        """Introspect tables with column detail, ordered by schema then table."""

    async def list_tables(self) -> tuple[TableInfo, ...]:
        """List tables with row estimates, without column detail."""

    async def run_query(self, sql: str) -> QueryResult:
        """Execute exactly one statement or raise ``QueryError``."""

    async def browse_table(self, params: BrowseParams) -> TablePage:
        """Fetch one page of a table with filters and sorting applied."""

    async def server_version(self) -> str:
        """Return the server version banner."""

    async def close(self) -> None:
        """Release the connection; idempotent and never raises."""


DriverFactory = Callable[[DriverOptions], DatabaseDriver]

_READ_ONLY_HEADS = ("select", "with")
_FORBIDDEN = re.compile(r"\b(insert|update|delete|drop|create|alter|truncate|grant|revoke)\b", re.IGNORECASE)


def check_statement(sql: str | None, *, read_only: bool = False) -> str:
    """Strip the statement and apply the read-only guard when enabled."""

    statement = (sql or "").strip()
    if not statement:
        raise ValidationError("Provide SQL to execute.")
    if read_only:
        head = statement.split(None, 1)[0].lower()
        if head not in _READ_ONLY_HEADS:
            raise ValidationError(
                "Only SELECT queries are allowed. INSERT, UPDATE, DELETE, and DDL statements are not permitted."
            )
        if _FORBIDDEN.search(statement):
            raise ValidationError("Query contains forbidden keywords. Only SELECT queries are allowed.")
    return statement


def count_statements(sql: str, dialect: str) -> int:
    """Count non-empty statements, ignoring semicolons inside literals and comments."""

    count = 0
    pending = False
    for token in sqlglot.tokenize(sql, read=dialect):
        if token.token_type == TokenType.SEMICOLON:
            if pending:
                count += 1
            pending = False
        else:
            pending = True
    return count + 1 if pending else count


def ensure_single_statement(sql: str, dialect: str) -> None:
    """Reject input that would run more than one statement on a multi-statement connection."""

    try:
        count = count_statements(sql, dialect)
    except TokenError as exc:
        raise ValidationError(f"Unable to read SQL statement: {exc}") from exc
    if count > 1:
        raise ValidationError("Only one SQL statement can be executed per request.")


def check_browse(params: BrowseParams, columns: Sequence[ColumnInfo]) -> None:
    """Reject sort/filter columns or operators the table does not have."""

    known = {column.name for column in columns}
    if not known:
        raise ValidationError(f"Table '{params.table}' not found.")
    if params.page < 1 or params.page_size < 1:
        raise ValidationError("page and pageSize must be positive.")
    if params.sort_column and params.sort_column not in known:
        raise ValidationError(f"Unknown sort column '{params.sort_column}'.")
    if params.sort_direction.lower() not in ("asc", "desc"):
        raise ValidationError(f"Unknown sort direction '{params.sort_direction}'.")
    for item in params.filters:
        if item.column not in known:
            raise ValidationError(f"Unknown filter column '{item.column}'.")
        if item.operator not in FILTER_OPERATORS:
            raise ValidationError(f"Unknown filter operator '{item.operator}'.")


_COMPARISONS: Mapping[str, str] = {
    "eq": "{col} = {ph}",
    "neq": "{col} != {ph}",
    "gt": "{col} > {ph}",
    "gte": "{col} >= {ph}",
    "lt": "{col} < {ph}",
    "lte": "{col} <= {ph}",
}


def build_where(
    filters: Iterable[QueryFilter],
    *,
    quote: Callable[[str], str],
    placeholder: Callable[[int], str],
    patterns: Mapping[str, str],
) -> tuple[str, list[str]]:
    """Render filters as a parameterized WHERE clause.

    ``patterns`` supplies the dialect's ``like``/``ilike`` templates.
    """

    templates = {**_COMPARISONS, **patterns}
    conditions: list[str] = []
    values: list[str] = []
    for index, item in enumerate(filters, start=1):
        values.append(item.value)
        template = templates[item.operator]
        conditions.append(template.format(col=quote(item.column), ph=placeholder(index)))
    if not conditions:
        return "", values
    return "WHERE " + " AND ".join(conditions), values


def sort_tables(tables: Iterable[TableInfo]) -> tuple[TableInfo, ...]:
    return tuple(sorted(tables, key=lambda table: (table.schema, table.name)))


def estimate(value: Any) -> int | None:
    """Row estimates below zero mean the engine has no statistics yet."""

    if value is None:
        return None
    count = int(value)
    return count if count >= 0 else None


def build_schema(
    column_rows: Iterable[Mapping[str, Any]],
    foreign_keys: Iterable[Mapping[str, Any]],
    tables: Iterable[TableInfo] = (),
) -> SchemaDescription:
    """Assemble a schema description from catalog rows."""

    fk_map: dict[tuple[str, str, str], ForeignKeyRef] = {}
    for row in foreign_keys:
        key = (str(row["table_schema"]), str(row["table_name"]), str(row["column_name"]))
        fk_map[key] = ForeignKeyRef(
            schema=str(row["foreign_table_schema"]),
            table=str(row["foreign_table_name"]),
            column=str(row["foreign_column_name"]),
        )

    columns: dict[tuple[str, str], list[ColumnInfo]] = {}
    for row in column_rows:
        schema = str(row["table_schema"])
        table = str(row["table_name"])
        name = str(row["column_name"])
        default = row["column_default"]
        columns.setdefault((schema, table), []).append(
            ColumnInfo(
                name=name,
                type=str(row["data_type"]),
                nullable=str(row["is_nullable"]).upper() == "YES",
                primary_key=bool(row["is_primary_key"]),
                default=None if default is None else str(default),
                foreign_key=fk_map.get((schema, table, name)),
            )
        )

    row_counts = {(table.schema, table.name): table.row_count for table in tables}
    keys = set(columns) | set(row_counts)
    return SchemaDescription(
        tables=sort_tables(
            TableInfo(
                schema=schema,
                name=name,
                row_count=row_counts.get((schema, name)),
                columns=tuple(columns.get((schema, name), ())),
            )
            for schema, name in keys
        )
    )


__all__ = [
    "DatabaseDriver",
    "DriverFactory",
    "DriverOptions",
    "DriverTarget",
    "build_schema",
    "build_where",
    "check_browse",
    "check_statement",
    "count_statements",
    "ensure_single_statement",
    "estimate",
    "sort_tables",
]
