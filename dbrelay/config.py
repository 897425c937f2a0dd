"""App configuration loading helpers."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Mapping

import tomllib

from pydantic import BaseModel, Field, SecretStr

from .errors import ConfigurationError

LOG = logging.getLogger(__name__)

CONFIG_FILE = Path.home() / ".config" / "dbrelay" / "config.toml"
MASTER_KEY_ENV = "DATABASE_ENCRYPTION_KEY"
LOG_LEVEL_ENV = "DBRELAY_LOG_LEVEL"


class TimeoutSettings(BaseModel):
    """Upper bounds, in seconds, for every blocking step of a request."""

    ssh_connect: float = 10.0
    db_connect: float = 10.0
    query: float = 30.0
    close: float = 5.0


class SSHSettings(BaseModel):
    """Bastion host verification settings."""

    known_hosts: Path | None = None


class ServerSettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8000


class AppConfig(BaseModel):
    """Shape of the application configuration file."""

    master_key: SecretStr | None = None
    log_level: str = "INFO"
    read_only_queries: bool = False
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    ssh: SSHSettings = Field(default_factory=SSHSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    @property
    def encryption_configured(self) -> bool:
        return bool(self.master_key and self.master_key.get_secret_value())

    def require_master_key(self) -> str:
        """Return the master key or fail before any other work happens."""

        if not self.encryption_configured:
            raise ConfigurationError(f"{MASTER_KEY_ENV} environment variable is not set")
        assert self.master_key is not None
        return self.master_key.get_secret_value()

    def with_master_key(self, key: str | None) -> AppConfig:
        """Return a copy with the master key replaced."""

        return self.model_copy(update={"master_key": SecretStr(key) if key else None})


def load_config(environ: Mapping[str, str] | None = None) -> AppConfig:
    """Load configuration from disk and the environment; fall back to defaults."""

    env = os.environ if environ is None else environ
    try:
        data = _read_config_file()
    except FileNotFoundError:
        data = {}
    except (tomllib.TOMLDecodeError, OSError) as exc:
        LOG.warning("Ignoring unreadable config file %s: %s", CONFIG_FILE, exc)
        data = {}

    master_key = env.get(MASTER_KEY_ENV)
    if master_key:
        data["master_key"] = master_key
    log_level = env.get(LOG_LEVEL_ENV)
    if log_level:
        data["log_level"] = log_level.upper()
    return AppConfig(**data)


def _read_config_file() -> dict[str, object]:
    with CONFIG_FILE.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    if not isinstance(raw, dict):
        return data
    master_key = raw.get("master_key")
    if isinstance(master_key, str) and master_key:
        data["master_key"] = master_key
    log_level = raw.get("log_level")
    if isinstance(log_level, str):
        data["log_level"] = log_level.upper()
    read_only = raw.get("read_only_queries")
    if isinstance(read_only, bool):
        data["read_only_queries"] = read_only
    timeouts = raw.get("timeouts")
    if isinstance(timeouts, dict):
        parsed: dict[str, float] = {}
        for key in ("ssh_connect", "db_connect", "query", "close"):
            value = timeouts.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
                parsed[key] = float(value)
        data["timeouts"] = TimeoutSettings(**parsed)
    ssh = raw.get("ssh")
    if isinstance(ssh, dict):
        known_hosts = ssh.get("known_hosts")
        if isinstance(known_hosts, str) and known_hosts:
            data["ssh"] = SSHSettings(known_hosts=Path(known_hosts).expanduser())
    server = raw.get("server")
    if isinstance(server, dict):
        state: dict[str, object] = {}
        host = server.get("host")
        if isinstance(host, str):
            state["host"] = host
        port = server.get("port")
        if isinstance(port, int):
            state["port"] = port
        data["server"] = ServerSettings(**state)
    return data


__all__ = [
    "AppConfig",
    "CONFIG_FILE",
    "LOG_LEVEL_ENV",
    "MASTER_KEY_ENV",
    "SSHSettings",
    "ServerSettings",
    "TimeoutSettings",
    "load_config",
]
