"""MySQL and MariaDB adapter backed by aiomysql."""

from __future__ import annotations

import asyncio
import logging
import ssl
import time
from typing import Any, Sequence

import aiomysql

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
    ensure_single_statement,
    estimate,
    sort_tables,
)

LOG = logging.getLogger(__name__)


def quote_ident(name: str) -> str:
    """Quote identifier with backticks."""

    return "`" + name.replace("`", "``") + "`"


def error_message(exc: BaseException) -> str:
    """Return the server's own text for a PyMySQL error, without the code tuple."""

    args = getattr(exc, "args", ())
    if len(args) >= 2 and isinstance(args[1], str):
        return args[1]
    return str(exc)


def tls_context(target: DriverTarget) -> ssl.SSLContext | None:
    """Verifying TLS context for the target.

    aiomysql checks the certificate against the host it dialled, which is the
    loopback address when tunnelled, so hostname checking is off there while
    the chain is still verified.
    """

    if not target.ssl:
        return None
    context = ssl.create_default_context()
    if target.tunnelled:
        context.check_hostname = False
    return context


class MySQLDriver:
    """MySQL connector using aiomysql; also serves MariaDB."""

    provider = Provider.MYSQL

    _TABLES_QUERY = """
        SELECT
          TABLE_SCHEMA AS `schema`,
          TABLE_NAME AS name,
          TABLE_ROWS AS row_count
        FROM information_schema.TABLES
        WHERE TABLE_SCHEMA = %s
          AND TABLE_TYPE = 'BASE TABLE'
        ORDER BY TABLE_NAME
    """

    _COLUMNS_QUERY = """
        SELECT
          c.TABLE_SCHEMA AS table_schema,
          c.TABLE_NAME AS table_name,
          c.COLUMN_NAME AS column_name,
          c.DATA_TYPE AS data_type,
          c.IS_NULLABLE AS is_nullable,
          c.COLUMN_DEFAULT AS column_default,
          CASE WHEN c.COLUMN_KEY = 'PRI' THEN 1 ELSE 0 END AS is_primary_key
        FROM information_schema.COLUMNS c
        WHERE c.TABLE_SCHEMA = %s
        ORDER BY c.TABLE_SCHEMA, c.TABLE_NAME, c.ORDINAL_POSITION
    """

    _FOREIGN_KEYS_QUERY = """
        SELECT
          kcu.TABLE_SCHEMA AS table_schema,
          kcu.TABLE_NAME AS table_name,
          kcu.COLUMN_NAME AS column_name,
          kcu.REFERENCED_TABLE_SCHEMA AS foreign_table_schema,
          kcu.REFERENCED_TABLE_NAME AS foreign_table_name,
          kcu.REFERENCED_COLUMN_NAME AS foreign_column_name
        FROM information_schema.KEY_COLUMN_USAGE kcu
        WHERE kcu.TABLE_SCHEMA = %s
          AND kcu.REFERENCED_TABLE_NAME IS NOT NULL
    """

    def __init__(self, options: DriverOptions | None = None, *, provider: Provider = Provider.MYSQL) -> None:
        self._options = options or DriverOptions()
        self.provider = provider
        self._conn: Any = None
        self._database = ""

    async def connect(self, target: DriverTarget) -> None:
        timeout = self._options.connect_timeout
        try:
            self._conn = await asyncio.wait_for(
                aiomysql.connect(
                    host=target.host,
                    port=target.port,
                    user=target.username,
                    password=target.password,
                    db=target.database,
                    ssl=tls_context(target),
                    connect_timeout=timeout,
                    autocommit=True,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ConnectError(
                f"Timed out connecting to MySQL at {target.host}:{target.port} after {timeout:g}s"
            ) from exc
        except Exception as exc:
            raise ConnectError(
                f"Failed to connect to MySQL at {target.host}:{target.port}: {error_message(exc)}"
            ) from exc
        self._database = target.database
        LOG.debug("Connected to MySQL at %s:%s/%s", target.host, target.port, target.database)

    async def list_tables(self) -> tuple[TableInfo, ...]:
        rows = await self._fetch_dicts(self._TABLES_QUERY, (self._database,))
        return sort_tables(
            TableInfo(schema=str(row["schema"]), name=str(row["name"]), row_count=estimate(row["row_count"]))
            for row in rows
        )

    async def get_schema(self) -> SchemaDescription:
        columns = await self._fetch_dicts(self._COLUMNS_QUERY, (self._database,))
        foreign_keys = await self._fetch_dicts(self._FOREIGN_KEYS_QUERY, (self._database,))
        tables = await self.list_tables()
        return build_schema(columns, foreign_keys, tables)

    async def run_query(self, sql: str) -> QueryResult:
        statement = check_statement(sql, read_only=self._options.read_only)
        ensure_single_statement(statement, "mysql")
        conn = self._connection()
        started = time.perf_counter()

        async def _execute() -> tuple[tuple[str, ...], list[Sequence[Any]], int]:
            async with conn.cursor() as cur:
                await cur.execute(statement)
                if cur.description is None:
                    return (), [], max(cur.rowcount, 0)
                columns = tuple(str(column[0]) for column in cur.description)
                return columns, list(await cur.fetchall()), 0

        columns, records, affected = await self._bounded(_execute())
        rows = normalize_rows(records)
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        return QueryResult(
            columns=columns,
            rows=rows,
            elapsed_ms=elapsed_ms,
            meta=QueryMeta(affected=affected, row_count=len(rows)),
        )

    async def browse_table(self, params: BrowseParams) -> TablePage:
        schema = params.schema or self._database
        columns = await self._table_columns(schema, params.table)
        check_browse(params, columns)
        table = f"{quote_ident(schema)}.{quote_ident(params.table)}"
        where, values = build_where(
            params.filters,
            quote=quote_ident,
            placeholder=lambda _index: "%s",
            patterns={"like": "{col} LIKE {ph}", "ilike": "LOWER({col}) LIKE LOWER({ph})"},
        )
        order = ""
        if params.sort_column:
            order = f"ORDER BY {quote_ident(params.sort_column)} {params.sort_direction.upper()}"
        conn = self._connection()

        async def _execute() -> tuple[int, list[Sequence[Any]]]:
            async with conn.cursor() as cur:
                await cur.execute(f"SELECT COUNT(*) FROM {table} {where}", values)
                (total,) = await cur.fetchone()
                await cur.execute(
                    f"SELECT * FROM {table} {where} {order} LIMIT %s OFFSET %s",
                    [*values, params.page_size, params.offset],
                )
                return int(total or 0), list(await cur.fetchall())

        total, records = await self._bounded(_execute())
        return TablePage(
            columns=columns,
            rows=normalize_rows(records),
            total_count=total,
            page=params.page,
            page_size=params.page_size,
        )

    async def server_version(self) -> str:
        rows = await self._fetch_dicts("SELECT VERSION() AS version", ())
        return str(rows[0]["version"]) if rows else ""

    async def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            await asyncio.wait_for(conn.ensure_closed(), timeout=self._options.close_timeout)
        except Exception as exc:
            LOG.warning("Failed to close MySQL connection cleanly: %s", exc)
            try:
                conn.close()
            except Exception:  # pragma: no cover - best effort
                LOG.debug("close() failed after ensure_closed error", exc_info=True)

    async def _table_columns(self, schema: str, table: str) -> tuple[ColumnInfo, ...]:
        rows = await self._fetch_dicts(
            """
            SELECT COLUMN_NAME AS column_name, DATA_TYPE AS data_type,
                   IS_NULLABLE AS is_nullable, COLUMN_DEFAULT AS column_default
            FROM information_schema.COLUMNS
            WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s
            ORDER BY ORDINAL_POSITION
            """,
            (schema, table),
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

    async def _fetch_dicts(self, query: str, args: Sequence[object]) -> list[dict[str, Any]]:
        conn = self._connection()

        async def _execute() -> list[dict[str, Any]]:
            async with conn.cursor(aiomysql.DictCursor) as cur:
                await cur.execute(query, args)
                return list(await cur.fetchall())

        return await self._bounded(_execute())

    async def _bounded(self, coro: Any) -> Any:
        timeout = self._options.query_timeout
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise QueryError(f"Query exceeded the {timeout:g}s execution timeout") from exc
        except aiomysql.MySQLError as exc:
            raise QueryError(error_message(exc)) from exc

    def _connection(self) -> Any:
        if self._conn is None:
            raise ConnectError("MySQL driver is not connected")
        return self._conn


__all__ = ["MySQLDriver", "error_message", "quote_ident", "tls_context"]
