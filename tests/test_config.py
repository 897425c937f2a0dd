"""Tests for AppConfig helpers."""

from __future__ import annotations

from pathlib import Path

import pytest

from dbrelay import config as config_module
from dbrelay.config import AppConfig, load_config
from dbrelay.errors import ConfigurationError


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "config.toml"
    monkeypatch.setattr(config_module, "CONFIG_FILE", path)
    return path


def test_load_config_returns_defaults_when_missing() -> None:
    result = load_config(environ={})

    assert result == AppConfig()
    assert result.encryption_configured is False


def test_load_config_reads_values(_isolated_config: Path) -> None:
    _isolated_config.write_text(
        """
master_key = "from-file"
log_level = "debug"
read_only_queries = true

[timeouts]
ssh_connect = 4
query = 12.5
close = -1

[ssh]
known_hosts = "/etc/ssh/ssh_known_hosts"

[server]
host = "0.0.0.0"
port = 9000
"""
    )

    result = load_config(environ={})

    assert result.require_master_key() == "from-file"
    assert result.log_level == "DEBUG"
    assert result.read_only_queries is True
    assert result.timeouts.ssh_connect == 4.0
    assert result.timeouts.query == 12.5
    assert result.timeouts.close == AppConfig().timeouts.close
    assert result.ssh.known_hosts == Path("/etc/ssh/ssh_known_hosts")
    assert result.server.host == "0.0.0.0"
    assert result.server.port == 9000


def test_environment_overrides_file(_isolated_config: Path) -> None:
    _isolated_config.write_text('master_key = "from-file"\nlog_level = "INFO"\n')

    result = load_config(environ={"DATABASE_ENCRYPTION_KEY": "from-env", "DBRELAY_LOG_LEVEL": "warning"})

    assert result.require_master_key() == "from-env"
    assert result.log_level == "WARNING"


def test_load_config_handles_toml_errors(_isolated_config: Path) -> None:
    _isolated_config.write_text("master_key = [unterminated")

    result = load_config(environ={})

    assert result == AppConfig()


def test_require_master_key_raises_when_missing() -> None:
    with pytest.raises(ConfigurationError, match="DATABASE_ENCRYPTION_KEY"):
        AppConfig().require_master_key()


def test_master_key_is_not_exposed_in_repr() -> None:
    config = AppConfig().with_master_key("super-secret")

    assert config.encryption_configured is True
    assert "super-secret" not in repr(config)
