from __future__ import annotations

import pytest

from dbrelay.drivers import DRIVERS, DatabaseDriver, DriverOptions, MySQLDriver, PostgresDriver, create_driver
from dbrelay.drivers.base import check_statement, count_statements, ensure_single_statement
from dbrelay.errors import ValidationError
from dbrelay.models import Provider


@pytest.mark.parametrize(
    ("provider", "expected"),
    [
        (Provider.POSTGRESQL, PostgresDriver),
        (Provider.MYSQL, MySQLDriver),
        ("mariadb", MySQLDriver),
    ],
)
def test_create_driver_picks_adapter(provider: Provider | str, expected: type) -> None:
    driver = create_driver(provider, DriverOptions())

    assert isinstance(driver, expected)
    assert isinstance(driver, DatabaseDriver)
    assert driver.provider == Provider(provider)


def test_every_provider_is_registered() -> None:
    assert set(DRIVERS) == set(Provider)


def test_unknown_provider_is_rejected() -> None:
    with pytest.raises(ValidationError, match="sqlite"):
        create_driver("sqlite")


def test_check_statement_strips_and_requires_sql() -> None:
    assert check_statement("  SELECT 1;\n") == "SELECT 1;"
    with pytest.raises(ValidationError):
        check_statement("   ")


@pytest.mark.parametrize(
    "sql",
    ["INSERT INTO t VALUES (1)", "WITH x AS (DELETE FROM t RETURNING *) SELECT * FROM x", "drop table t"],
)
def test_read_only_guard_rejects_writes(sql: str) -> None:
    with pytest.raises(ValidationError):
        check_statement(sql, read_only=True)


def test_read_only_guard_allows_selects() -> None:
    assert check_statement("WITH x AS (SELECT 1) SELECT * FROM x", read_only=True)


@pytest.mark.parametrize(
    ("sql", "expected"),
    [
        ("SELECT 1", 1),
        ("SELECT 1;", 1),
        ("SELECT 1;;", 1),
        ("SELECT 'a;b' AS x", 1),
        ("SELECT 1 /* ; */", 1),
        ("SELECT 1; SELECT 2", 2),
        ("INSERT INTO t VALUES (1); DROP TABLE t;", 2),
    ],
)
def test_count_statements(sql: str, expected: int) -> None:
    assert count_statements(sql, "mysql") == expected


def test_ensure_single_statement() -> None:
    ensure_single_statement("SELECT 1;", "mysql")
    with pytest.raises(ValidationError, match="one SQL statement"):
        ensure_single_statement("SELECT 1; DROP TABLE customers", "mysql")
