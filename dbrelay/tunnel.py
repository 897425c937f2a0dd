"""SSH tunnels that expose a remote database endpoint on a local port."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import asyncssh

from .errors import TunnelAuthError, TunnelBindError, TunnelConnectError
from .models import SSHTunnelConfig

LOG = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"
_CHUNK_SIZE = 65536


class TunnelHandle:
    """One SSH session plus the local listener forwarding through it."""

    def __init__(self, ssh: Any, target_host: str, target_port: int, *, close_timeout: float = 5.0) -> None:
        self._ssh = ssh
        self._target_host = target_host
        self._target_port = target_port
        self._close_timeout = close_timeout
        self._server: asyncio.AbstractServer | None = None
        self._forwards: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def local_host(self) -> str:
        return LOOPBACK

    @property
    def local_port(self) -> int:
        if self._server is None or not self._server.sockets:
            raise RuntimeError("Tunnel listener is not bound")
        return int(self._server.sockets[0].getsockname()[1])

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def active_forwards(self) -> int:
        return len(self._forwards)

    async def bind(self) -> None:
        """Start the local listener on an OS-assigned port."""

        try:
            self._server = await asyncio.start_server(self._handle_client, host=LOOPBACK, port=0)
        except OSError as exc:
            raise TunnelBindError(f"Failed to bind a local port for the SSH tunnel: {exc}") from exc

    async def close(self) -> None:
        """Stop accepting, drop in-flight forwards, end the SSH session."""

        if self._closed:
            return
        self._closed = True
        server, self._server = self._server, None
        if server is not None:
            server.close()
        forwards = tuple(self._forwards)
        for task in forwards:
            task.cancel()
        if forwards:
            await asyncio.gather(*forwards, return_exceptions=True)
        errors: list[str] = []
        if server is not None:
            try:
                await asyncio.wait_for(server.wait_closed(), timeout=self._close_timeout)
            except Exception as exc:
                errors.append(f"listener: {exc!r}")
        try:
            self._ssh.close()
            await asyncio.wait_for(self._ssh.wait_closed(), timeout=self._close_timeout)
        except Exception as exc:
            errors.append(f"ssh session: {exc!r}")
        if errors:
            LOG.warning("Errors while closing SSH tunnel: %s", "; ".join(errors))
        else:
            LOG.debug("Closed SSH tunnel to %s:%s", self._target_host, self._target_port)

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if self._closed or task is None:
            writer.close()
            return
        self._forwards.add(task)
        try:
            await self._forward(reader, writer)
        finally:
            self._forwards.discard(task)

    async def _forward(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        remote_writer: Any = None
        try:
            try:
                remote_reader, remote_writer = await self._ssh.open_connection(self._target_host, self._target_port)
            except (asyncssh.Error, OSError) as exc:
                LOG.warning("SSH channel to %s:%s failed: %s", self._target_host, self._target_port, exc)
                return
            await asyncio.gather(
                _pipe(reader, remote_writer),
                _pipe(remote_reader, writer),
            )
        finally:
            for stream in (remote_writer, writer):
                if stream is None:
                    continue
                try:
                    stream.close()
                except Exception:  # pragma: no cover - best effort
                    LOG.debug("Stream close failed", exc_info=True)


async def _pipe(reader: Any, writer: Any) -> None:
    """Copy bytes until EOF, then half-close the destination."""

    try:
        while True:
            data = await reader.read(_CHUNK_SIZE)
            if not data:
                break
            writer.write(data)
            await writer.drain()
        if writer.can_write_eof():
            writer.write_eof()
    except (ConnectionError, OSError, asyncssh.Error) as exc:
        LOG.debug("Tunnel stream ended: %s", exc)


class TunnelManager:
    """Opens and closes per-request SSH tunnels via asyncssh."""

    def __init__(
        self,
        *,
        connect_timeout: float = 10.0,
        close_timeout: float = 5.0,
        known_hosts: Path | None = None,
    ) -> None:
        self._connect_timeout = connect_timeout
        self._close_timeout = close_timeout
        self._known_hosts = known_hosts

    async def open(self, config: SSHTunnelConfig, target_host: str, target_port: int) -> TunnelHandle:
        """Connect to the bastion and bind a local listener forwarding to the target.

        ``config`` must carry the plaintext private key and passphrase.
        """

        try:
            key = asyncssh.import_private_key(config.private_key, config.passphrase or None)
        except (asyncssh.KeyImportError, ValueError, TypeError) as exc:
            raise TunnelAuthError(f"Unable to load SSH private key: {exc}") from exc

        try:
            ssh = await asyncio.wait_for(
                asyncssh.connect(
                    config.host,
                    port=config.port,
                    username=config.username,
                    client_keys=[key],
                    known_hosts=str(self._known_hosts) if self._known_hosts else None,
                    agent_path=None,
                ),
                timeout=self._connect_timeout,
            )
        except asyncssh.PermissionDenied as exc:
            raise TunnelAuthError(
                f"SSH authentication failed for {config.username}@{config.host}: {exc.reason}"
            ) from exc
        except asyncssh.HostKeyNotVerifiable as exc:
            raise TunnelAuthError(f"SSH host key for {config.host} was not trusted: {exc.reason}") from exc
        except asyncio.TimeoutError as exc:
            raise TunnelConnectError(
                f"Timed out connecting to SSH host {config.host}:{config.port} after {self._connect_timeout:g}s"
            ) from exc
        except (OSError, asyncssh.Error) as exc:
            raise TunnelConnectError(f"Unable to reach SSH host {config.host}:{config.port}: {exc}") from exc

        handle = TunnelHandle(ssh, target_host, target_port, close_timeout=self._close_timeout)
        try:
            await handle.bind()
        except BaseException:
            await handle.close()
            raise
        LOG.info(
            "SSH tunnel via %s:%s listening on %s:%s for %s:%s",
            config.host,
            config.port,
            LOOPBACK,
            handle.local_port,
            target_host,
            target_port,
        )
        return handle

    async def close(self, handle: TunnelHandle) -> None:
        try:
            await handle.close()
        except Exception:  # pragma: no cover - close() already logs
            LOG.warning("Unexpected error closing SSH tunnel", exc_info=True)


__all__ = ["LOOPBACK", "TunnelHandle", "TunnelManager"]
