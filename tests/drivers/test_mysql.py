"""Tests for the aiomysql driver adapter."""

from __future__ import annotations

import asyncio
import dataclasses
import ssl
from typing import Any

import aiomysql
import pytest

from dbrelay.drivers.base import DriverOptions, DriverTarget
from dbrelay.drivers.mysql import MySQLDriver, error_message, quote_ident, tls_context
from dbrelay.errors import ConnectError, QueryError, ValidationError
from dbrelay.models import BrowseParams, Provider, QueryFilter


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


TARGET = DriverTarget(host="db.internal", port=3306, database="shop", username="app", password="pw")


class _FakeCursor:
    def __init__(self, conn: "_FakeConnection") -> None:
        self._conn = conn
        self._rows: list[Any] = []
        self.description: tuple[tuple[str, ...], ...] | None = None
        self.rowcount = -1

    async def __aenter__(self) -> "_FakeCursor":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None

    async def execute(self, query: str, args: object = None) -> None:
        self._conn.executed.append((query, args))
        if self._conn.execute_error is not None:
            raise self._conn.execute_error
        if "information_schema.TABLES" in query:
            self._rows = [
                {"schema": "shop", "name": "orders", "row_count": 12},
                {"schema": "shop", "name": "customers", "row_count": None},
            ]
        elif "COLUMN_KEY" in query:
            self._rows = [
                {
                    "table_schema": "shop",
                    "table_name": "orders",
                    "column_name": "id",
                    "data_type": "int",
                    "is_nullable": "NO",
                    "column_default": None,
                    "is_primary_key": 1,
                },
                {
                    "table_schema": "shop",
                    "table_name": "orders",
                    "column_name": "customer_id",
                    "data_type": "int",
                    "is_nullable": "YES",
                    "column_default": None,
                    "is_primary_key": 0,
                },
            ]
        elif "KEY_COLUMN_USAGE" in query:
            self._rows = [
                {
                    "table_schema": "shop",
                    "table_name": "orders",
                    "column_name": "customer_id",
                    "foreign_table_schema": "shop",
                    "foreign_table_name": "customers",
                    "foreign_column_name": "id",
                }
            ]
        elif "TABLE_NAME = %s" in query:
            self._rows = [
                {"column_name": "id", "data_type": "int", "is_nullable": "NO", "column_default": None},
                {"column_name": "status", "data_type": "varchar", "is_nullable": "YES", "column_default": None},
            ]
        elif query.startswith("SELECT COUNT(*)"):
            self._rows = [(2,)]
        elif query.startswith("SELECT * FROM"):
            self._rows = [(1, "open"), (2, "OPEN")]
        elif query.lstrip().upper().startswith("SELECT"):
            self.description = (("answer",),)
            self._rows = [(42,)]
        else:
            self.description = None
            self.rowcount = 4

    async def fetchall(self) -> list[Any]:
        return self._rows

    async def fetchone(self) -> Any:
        return self._rows[0]


class _FakeConnection:
    def __init__(self) -> None:
        self.executed: list[tuple[str, object]] = []
        self.execute_error: BaseException | None = None
        self.closed = 0

    def cursor(self, cursor_class: object = None) -> _FakeCursor:
        return _FakeCursor(self)

    async def ensure_closed(self) -> None:
        self.closed += 1


@pytest.fixture
def connection(monkeypatch: pytest.MonkeyPatch) -> _FakeConnection:
    fake = _FakeConnection()

    async def _connect(**kwargs: Any) -> _FakeConnection:
        return fake

    monkeypatch.setattr("dbrelay.drivers.mysql.aiomysql.connect", _connect)
    return fake


async def _connected(**kwargs: Any) -> MySQLDriver:
    driver = MySQLDriver(DriverOptions(), **kwargs)
    await driver.connect(TARGET)
    return driver


@pytest.mark.anyio
async def test_connect_passes_database_and_timeouts(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: dict[str, Any] = {}

    async def _connect(**kwargs: Any) -> _FakeConnection:
        seen.update(kwargs)
        return _FakeConnection()

    monkeypatch.setattr("dbrelay.drivers.mysql.aiomysql.connect", _connect)
    driver = MySQLDriver(DriverOptions(connect_timeout=3))

    await driver.connect(TARGET)

    assert seen["db"] == "shop"
    assert seen["connect_timeout"] == 3
    assert seen["ssl"] is None
    assert seen["autocommit"] is True


@pytest.mark.anyio
async def test_connect_failure_uses_server_text(monkeypatch: pytest.MonkeyPatch) -> None:
    async def _connect(**kwargs: Any) -> None:
        raise aiomysql.OperationalError(1045, "Access denied for user 'app'")

    monkeypatch.setattr("dbrelay.drivers.mysql.aiomysql.connect", _connect)

    with pytest.raises(ConnectError, match="Access denied for user 'app'"):
        await MySQLDriver().connect(TARGET)


@pytest.mark.anyio
async def test_list_tables_scoped_to_connected_database(connection: _FakeConnection) -> None:
    driver = await _connected()

    tables = await driver.list_tables()

    assert [t.name for t in tables] == ["customers", "orders"]
    assert tables[0].row_count is None
    assert connection.executed[-1][1] == ("shop",)


@pytest.mark.anyio
async def test_get_schema_links_foreign_keys(connection: _FakeConnection) -> None:
    driver = await _connected()

    schema = await driver.get_schema()

    orders = schema.tables[-1]
    assert orders.name == "orders"
    assert orders.columns[0].primary_key is True
    assert orders.columns[1].foreign_key is not None
    assert orders.columns[1].foreign_key.table == "customers"
    assert schema.tables[0].name == "customers"
    assert schema.tables[0].columns == ()


@pytest.mark.anyio
async def test_run_query_returns_rows(connection: _FakeConnection) -> None:
    driver = await _connected()

    result = await driver.run_query("SELECT 42 AS answer")

    assert result.columns == ("answer",)
    assert result.rows == ((42,),)
    assert result.meta.affected == 0


@pytest.mark.anyio
async def test_run_query_reports_affected_rows(connection: _FakeConnection) -> None:
    driver = await _connected()

    result = await driver.run_query("UPDATE orders SET status = 'closed'")

    assert result.columns == ()
    assert result.rows == ()
    assert result.meta.affected == 4


@pytest.mark.anyio
async def test_run_query_passes_engine_message_through(connection: _FakeConnection) -> None:
    connection.execute_error = aiomysql.ProgrammingError(1064, "You have an error in your SQL syntax")
    driver = await _connected()

    with pytest.raises(QueryError) as excinfo:
        await driver.run_query("SELEC 1")

    assert excinfo.value.message == "You have an error in your SQL syntax"


@pytest.mark.anyio
async def test_browse_table_uses_placeholders(connection: _FakeConnection) -> None:
    driver = await _connected()
    params = BrowseParams(
        table="orders",
        page=1,
        page_size=25,
        sort_column="status",
        filters=(QueryFilter(column="status", operator="ilike", value="open"),),
    )

    page = await driver.browse_table(params)

    query, args = connection.executed[-1]
    assert query.startswith("SELECT * FROM `shop`.`orders` WHERE LOWER(`status`) LIKE LOWER(%s)")
    assert "ORDER BY `status` ASC LIMIT %s OFFSET %s" in query
    assert args == ["open", 25, 0]
    assert page.total_count == 2
    assert page.rows == ((1, "open"), (2, "OPEN"))


@pytest.mark.anyio
async def test_mariadb_shares_the_adapter(connection: _FakeConnection) -> None:
    driver = await _connected(provider=Provider.MARIADB)

    assert driver.provider is Provider.MARIADB
    assert (await driver.run_query("SELECT 42")).rows == ((42,),)


@pytest.mark.anyio
async def test_close_is_idempotent(connection: _FakeConnection) -> None:
    driver = await _connected()

    await driver.close()
    await driver.close()

    assert connection.closed == 1


def test_helpers() -> None:
    assert quote_ident("we`ird") == "`we``ird`"
    assert error_message(aiomysql.OperationalError(2003, "Can't connect")) == "Can't connect"
    assert error_message(RuntimeError("plain")) == "plain"


@pytest.mark.anyio
async def test_handshake_is_bounded_by_connect_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    async def _silent_server(**kwargs: Any) -> None:
        await asyncio.sleep(10)

    monkeypatch.setattr("dbrelay.drivers.mysql.aiomysql.connect", _silent_server)
    driver = MySQLDriver(DriverOptions(connect_timeout=0.05))

    with pytest.raises(ConnectError, match="Timed out"):
        await asyncio.wait_for(driver.connect(TARGET), timeout=2)


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT 1; DROP TABLE customers",
        "SELECT 1;\nSELECT 2;",
        "UPDATE orders SET status = 'x'; -- trailing\nDELETE FROM orders",
    ],
)
@pytest.mark.anyio
async def test_run_query_rejects_multiple_statements(connection: _FakeConnection, sql: str) -> None:
    driver = await _connected()

    with pytest.raises(ValidationError, match="one SQL statement"):
        await driver.run_query(sql)

    assert connection.executed == []


@pytest.mark.parametrize("sql", ["SELECT 42;", "SELECT ';' AS answer", "SELECT 42 -- ; not a statement"])
@pytest.mark.anyio
async def test_run_query_allows_single_statement_with_semicolons(connection: _FakeConnection, sql: str) -> None:
    driver = await _connected()

    result = await driver.run_query(sql)

    assert result.rows == ((42,),)
    assert connection.executed[-1][0] == sql


def test_tls_context_verifies_certificates() -> None:
    direct = tls_context(dataclasses.replace(TARGET, ssl=True))
    tunnelled = tls_context(dataclasses.replace(TARGET, host="127.0.0.1", ssl=True, tunnelled=True))

    assert tls_context(TARGET) is None
    assert direct is not None and direct.check_hostname is True
    assert tunnelled is not None and tunnelled.check_hostname is False
    assert tunnelled.verify_mode == ssl.CERT_REQUIRED


@pytest.mark.anyio
async def test_tunnelled_tls_connect_skips_hostname_check(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: dict[str, Any] = {}

    async def _connect(**kwargs: Any) -> _FakeConnection:
        seen.update(kwargs)
        return _FakeConnection()

    monkeypatch.setattr("dbrelay.drivers.mysql.aiomysql.connect", _connect)

    await MySQLDriver().connect(dataclasses.replace(TARGET, host="127.0.0.1", port=40000, ssl=True, tunnelled=True))

    assert seen["host"] == "127.0.0.1"
    assert isinstance(seen["ssl"], ssl.SSLContext)
    assert seen["ssl"].check_hostname is False
