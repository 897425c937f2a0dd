"""PostgreSQL adapter backed by asyncpg."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import asyncpg

from ..errors import ConnectError, QueryError
from ..models import BrowseParams, ColumnInfo, Provider, QueryMeta, QueryResult, SchemaDescription, TableInfo, TablePage
from ..values import normalize_rows
from .base import (
    DriverOptions,
    DriverTarget,
    build_schema,
    build_where,
    check_browse,
    check_statement,
    estimate,
    sort_tables,
)

LOG = logging.getLogger(__name__)

_AFFECTING_COMMANDS = frozenset({"INSERT", "UPDATE", "DELETE", "MERGE", "COPY"})


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def affected_rows(status: str | None) -> int:
    """Parse the row count out of a command tag such as ``INSERT 0 3``."""

    if not status:
        return 0
    parts = status.split()
    if parts[0].upper() in _AFFECTING_COMMANDS and parts[-1].isdigit():
        return int(parts[-1])
    return 0


class PostgresDriver:
    """Runs catalog queries and statements against PostgreSQL via asyncpg."""

    provider = Provider.POSTGRESQL

    _TABLES_QUERY = """
        SELECT t.table_schema AS schema, t.table_name AS name, c.reltuples::bigint AS row_count
        FROM information_schema.tables t
        LEFT JOIN pg_catalog.pg_namespace n ON n.nspname = t.table_schema
        LEFT JOIN pg_catalog.pg_class c ON c.relnamespace = n.oid AND c.relname = t.table_name
        WHERE t.table_schema NOT IN ('pg_catalog', 'information_schema')
          AND t.table_type = 'BASE TABLE'
        ORDER BY t.table_schema, t.table_name
    """

    _COLUMNS_QUERY = """
        SELECT
          c.table_schema,
          c.table_name,
          c.column_name,
          c.data_type,
          c.is_nullable,
          c.column_default,
          (pk.column_name IS NOT NULL) AS is_primary_key
        FROM information_schema.columns c
        LEFT JOIN (
          SELECT kcu.table_schema, kcu.table_name, kcu.column_name
          FROM information_schema.table_constraints tc
          JOIN information_schema.key_column_usage kcu
            ON tc.constraint_name = kcu.constraint_name
           AND tc.table_schema = kcu.table_schema
          WHERE tc.constraint_type = 'PRIMARY KEY'
        ) pk ON c.table_schema = pk.table_schema
            AND c.table_name = pk.table_name
            AND c.column_name = pk.column_name
        WHERE c.table_schema NOT IN ('pg_catalog', 'information_schema')
        ORDER BY c.table_schema, c.table_name, c.ordinal_position
    """

    _FOREIGN_KEYS_QUERY = """
        SELECT
          tc.table_schema,
          tc.table_name,
          kcu.column_name,
          ccu.table_schema AS foreign_table_schema,
          ccu.table_name AS foreign_table_name,
          ccu.column_name AS foreign_column_name
        FROM information_schema.table_constraints AS tc
        JOIN information_schema.key_column_usage AS kcu
          ON tc.constraint_name = kcu.constraint_name
         AND tc.table_schema = kcu.table_schema
        JOIN information_schema.constraint_column_usage AS ccu
          ON ccu.constraint_name = tc.constraint_name
         AND ccu.table_schema = tc.table_schema
        WHERE tc.constraint_type = 'FOREIGN KEY'
    """

    def __init__(self, options: DriverOptions | None = None) -> None:
        self._options = options or DriverOptions()
        self._conn: Any = None

    async def connect(self, target: DriverTarget) -> None:
        kwargs: dict[str, object] = {
            "host": target.host,
            "port": target.port,
            "user": target.username,
            "password": target.password,
            "database": target.database,
            "ssl": "require" if target.ssl else False,
            "timeout": self._options.connect_timeout,
        }
        try:
            self._conn = await asyncpg.connect(**kwargs)
        except Exception as exc:
            raise ConnectError(
                f"Failed to connect to PostgreSQL at {target.host}:{target.port}: {exc}"
            ) from exc
        LOG.debug("Connected to PostgreSQL at %s:%s/%s", target.host, target.port, target.database)

    async def list_tables(self) -> tuple[TableInfo, ...]:
        rows = await self._fetch(self._TABLES_QUERY)
        return sort_tables(
            TableInfo(schema=str(row["schema"]), name=str(row["name"]), row_count=estimate(row["row_count"]))
            for row in rows
        )

    async def get_schema(self) -> SchemaDescription:
        columns = await self._fetch(self._COLUMNS_QUERY)
        foreign_keys = await self._fetch(self._FOREIGN_KEYS_QUERY)
        tables = await self.list_tables()
        return build_schema(columns, foreign_keys, tables)

    async def run_query(self, sql: str) -> QueryResult:
        statement = check_statement(sql, read_only=self._options.read_only)
        conn = self._connection()
        timeout = self._options.query_timeout
        started = time.perf_counter()
        try:
            prepared = await conn.prepare(statement, timeout=timeout)
            attributes = prepared.get_attributes()
            if attributes:
                records = await prepared.fetch(timeout=timeout)
                columns = tuple(str(attribute.name) for attribute in attributes)
                rows = normalize_rows(tuple(record.values()) for record in records)
                status = prepared.get_statusmsg()
            else:
                status = await conn.execute(statement, timeout=timeout)
                columns = ()
                rows = ()
        except asyncio.TimeoutError as exc:
            raise QueryError(f"Query exceeded the {timeout:g}s execution timeout") from exc
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            raise QueryError(str(exc)) from exc
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        return QueryResult(
            columns=columns,
            rows=rows,
            elapsed_ms=elapsed_ms,
            meta=QueryMeta(affected=affected_rows(status), row_count=len(rows), status=status),
        )

    async def browse_table(self, params: BrowseParams) -> TablePage:
        schema = params.schema or "public"
        columns = await self._table_columns(schema, params.table)
        check_browse(params, columns)
        table = f"{quote_ident(schema)}.{quote_ident(params.table)}"
        where, values = build_where(
            params.filters,
            quote=quote_ident,
            placeholder=lambda index: f"${index}",
            patterns={"like": "{col}::text LIKE {ph}", "ilike": "{col}::text ILIKE {ph}"},
        )
        order = ""
        if params.sort_column:
            order = f"ORDER BY {quote_ident(params.sort_column)} {params.sort_direction.upper()}"
        limit = len(values) + 1
        conn = self._connection()
        timeout = self._options.query_timeout
        try:
            total = await conn.fetchval(f"SELECT COUNT(*) FROM {table} {where}", *values, timeout=timeout)
            records = await conn.fetch(
                f"SELECT * FROM {table} {where} {order} LIMIT ${limit} OFFSET ${limit + 1}",
                *values,
                params.page_size,
                params.offset,
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise QueryError(f"Query exceeded the {timeout:g}s execution timeout") from exc
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            raise QueryError(str(exc)) from exc
        return TablePage(
            columns=columns,
            rows=normalize_rows(tuple(record.values()) for record in records),
            total_count=int(total or 0),
            page=params.page,
            page_size=params.page_size,
        )

    async def server_version(self) -> str:
        rows = await self._fetch("SELECT version() AS version")
        return str(rows[0]["version"]) if rows else ""

    async def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            await conn.close(timeout=self._options.close_timeout)
        except Exception as exc:
            LOG.warning("Failed to close PostgreSQL connection cleanly: %s", exc)
            try:
                conn.terminate()
            except Exception:  # pragma: no cover - best effort
                LOG.debug("terminate() failed after close error", exc_info=True)

    async def _table_columns(self, schema: str, table: str) -> tuple[ColumnInfo, ...]:
        rows = await self._fetch(
            """
            SELECT column_name, data_type, is_nullable, column_default
            FROM information_schema.columns
            WHERE table_schema = $1 AND table_name = $2
            ORDER BY ordinal_position
            """,
            schema,
            table,
        )
        return tuple(
            ColumnInfo(
                name=str(row["column_name"]),
                type=str(row["data_type"]),
                nullable=str(row["is_nullable"]).upper() == "YES",
                default=None if row["column_default"] is None else str(row["column_default"]),
            )
            for row in rows
        )

    async def _fetch(self, query: str, *args: object) -> list[Any]:
        conn = self._connection()
        timeout = self._options.query_timeout
        try:
            return await conn.fetch(query, *args, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise QueryError(f"Catalog query exceeded the {timeout:g}s timeout") from exc
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            raise QueryError(str(exc)) from exc

    def _connection(self) -> Any:
        if self._conn is None:
            raise ConnectError("PostgreSQL driver is not connected")
        return self._conn


__all__ = ["PostgresDriver", "affected_rows", "quote_ident"]
