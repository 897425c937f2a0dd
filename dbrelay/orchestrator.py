"""Per-request control flow: validate, decrypt, tunnel, drive, unwind."""

from __future__ import annotations

import dataclasses
import logging
import time
from contextlib import AsyncExitStack
from typing import Any, Awaitable, Callable, Mapping, Protocol, TypeVar

from .config import AppConfig
from .crypto import CredentialCodec, decrypt_legacy
from .drivers import DRIVERS, DatabaseDriver, DriverFactory, DriverOptions, DriverTarget
from .drivers.base import check_statement
from .errors import ConnectError, QueryError, TunnelError, ValidationError
from .models import (
    BrowseParams,
    ConnectionConfig,
    ConnectionTestResult,
    Provider,
    QueryResult,
    SchemaDescription,
    SSHTunnelConfig,
    TableInfo,
    TablePage,
)
from .tunnel import LOOPBACK, TunnelManager

LOG = logging.getLogger(__name__)

T = TypeVar("T")
Operation = Callable[[DatabaseDriver], Awaitable[T]]


class Tunnels(Protocol):
    """What the orchestrator needs from a tunnel manager."""

    async def open(self, config: SSHTunnelConfig, target_host: str, target_port: int) -> Any: ...

    async def close(self, handle: Any) -> None: ...


def validate_connection(connection: ConnectionConfig, providers: Mapping[Provider, object] = DRIVERS) -> None:
    """Reject connection records with missing or out-of-range fields."""

    missing = [
        name
        for name in ("host", "database", "username", "password")
        if not getattr(connection, name)
    ]
    if missing:
        raise ValidationError(f"Missing required connection parameters: {', '.join(missing)}")
    if connection.provider not in providers:
        raise ValidationError(f"Unsupported database provider: {connection.provider}")
    if not 0 < connection.port < 65536:
        raise ValidationError(f"Invalid port: {connection.port}")
    if connection.tunnel_enabled:
        tunnel = connection.ssh_tunnel
        assert tunnel is not None
        missing = [name for name in ("host", "username", "private_key") if not getattr(tunnel, name)]
        if missing:
            raise ValidationError(f"Missing required SSH tunnel parameters: {', '.join(missing)}")
        if not 0 < tunnel.port < 65536:
            raise ValidationError(f"Invalid SSH port: {tunnel.port}")


class ConnectionOrchestrator:
    """Runs one database operation per call and always releases what it opened."""

    def __init__(
        self,
        codec: CredentialCodec,
        *,
        config: AppConfig | None = None,
        tunnels: Tunnels | None = None,
        drivers: Mapping[Provider, DriverFactory] | None = None,
    ) -> None:
        self._config = config or AppConfig()
        self._codec = codec
        timeouts = self._config.timeouts
        self._tunnels: Tunnels = tunnels or TunnelManager(
            connect_timeout=timeouts.ssh_connect,
            close_timeout=timeouts.close,
            known_hosts=self._config.ssh.known_hosts,
        )
        self._drivers = DRIVERS if drivers is None else drivers
        self._driver_options = DriverOptions(
            connect_timeout=timeouts.db_connect,
            query_timeout=timeouts.query,
            close_timeout=timeouts.close,
            read_only=self._config.read_only_queries,
        )

    @classmethod
    def from_config(cls, config: AppConfig) -> ConnectionOrchestrator:
        key = config.master_key.get_secret_value() if config.encryption_configured and config.master_key else None
        return cls(CredentialCodec(key), config=config)

    @property
    def codec(self) -> CredentialCodec:
        return self._codec

    async def fetch_schema(self, connection: ConnectionConfig) -> SchemaDescription:
        return await self._run(connection, "schema", lambda driver: driver.get_schema())

    async def list_tables(self, connection: ConnectionConfig) -> tuple[TableInfo, ...]:
        return await self._run(connection, "tables", lambda driver: driver.list_tables())

    async def run_query(self, connection: ConnectionConfig, sql: str) -> QueryResult:
        self._codec.require_configured()
        statement = check_statement(sql, read_only=self._driver_options.read_only)
        return await self._run(connection, "query", lambda driver: driver.run_query(statement))

    async def browse_table(self, connection: ConnectionConfig, params: BrowseParams) -> TablePage:
        self._codec.require_configured()
        if not params.table:
            raise ValidationError("Missing required parameter: table")
        return await self._run(connection, "browse", lambda driver: driver.browse_table(params))

    async def test_connection(self, connection: ConnectionConfig) -> ConnectionTestResult:
        """Connect and read the server version; reachability failures are reported, not raised."""

        try:
            version = await self._run(connection, "test", lambda driver: driver.server_version())
        except (TunnelError, ConnectError, QueryError) as exc:
            return ConnectionTestResult(success=False, error=exc.message)
        return ConnectionTestResult(success=True, version=version)

    async def _run(self, connection: ConnectionConfig, name: str, operation: Operation[T]) -> T:
        self._codec.require_configured()
        validate_connection(connection, self._drivers)
        password, tunnel_config = self._decrypt(connection)
        started = time.perf_counter()
        async with AsyncExitStack() as stack:
            host, port = connection.host, connection.port
            if tunnel_config is not None:
                handle = await self._tunnels.open(tunnel_config, connection.host, connection.port)
                stack.push_async_callback(self._release, "SSH tunnel", self._tunnels.close, handle)
                host, port = LOOPBACK, handle.local_port
            driver = self._drivers[connection.provider](self._driver_options)
            stack.push_async_callback(self._release, "database driver", driver.close)
            await driver.connect(
                DriverTarget(
                    host=host,
                    port=port,
                    database=connection.database,
                    username=connection.username,
                    password=password,
                    ssl=connection.ssl_enabled,
                    tunnelled=tunnel_config is not None,
                )
            )
            result = await operation(driver)
        LOG.info(
            "%s operation on %s %s:%s/%s finished in %dms (tunnel=%s)",
            name,
            connection.provider.value,
            connection.host,
            connection.port,
            connection.database,
            int((time.perf_counter() - started) * 1000),
            tunnel_config is not None,
        )
        return result

    def _decrypt(self, connection: ConnectionConfig) -> tuple[str, SSHTunnelConfig | None]:
        password = self._codec.decrypt(connection.password)
        if not connection.tunnel_enabled:
            return password, None
        tunnel = connection.ssh_tunnel
        assert tunnel is not None
        return password, dataclasses.replace(
            tunnel,
            private_key=decrypt_legacy(self._codec, tunnel.private_key),
            passphrase=decrypt_legacy(self._codec, tunnel.passphrase) if tunnel.passphrase else None,
        )

    @staticmethod
    async def _release(label: str, close: Callable[..., Awaitable[None]], *args: Any) -> None:
        try:
            await close(*args)
        except Exception:
            LOG.warning("Failed to release %s", label, exc_info=True)


__all__ = ["ConnectionOrchestrator", "Tunnels", "validate_connection"]
