"""Parsing of client request payloads into runtime dataclasses."""

from __future__ import annotations

from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .models import DEFAULT_PORTS, BrowseParams, ConnectionConfig, Provider, QueryFilter, SSHTunnelConfig


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SSHTunnelPayload(_Payload):
    enabled: bool = False
    host: str = ""
    port: int = 22
    username: str = ""
    private_key: str = Field("", alias="privateKey")
    passphrase: str | None = None

    def to_config(self) -> SSHTunnelConfig:
        return SSHTunnelConfig(
            enabled=self.enabled,
            host=self.host,
            port=self.port,
            username=self.username,
            private_key=self.private_key,
            passphrase=self.passphrase or None,
        )


class ConnectionPayload(_Payload):
    """Connection record as posted by the client; secrets are ciphertext.

    An omitted ``port`` falls back to the engine default.
    """

    provider: Provider
    host: str = ""
    port: int | None = None
    database: str = ""
    username: str = ""
    password: str = ""
    ssl_enabled: bool = Field(False, alias="sslEnabled")
    ssh_tunnel: SSHTunnelPayload | None = Field(None, alias="sshTunnel")

    def to_config(self) -> ConnectionConfig:
        return ConnectionConfig(
            provider=self.provider,
            host=self.host,
            port=DEFAULT_PORTS[self.provider] if self.port is None else self.port,
            database=self.database,
            username=self.username,
            password=self.password,
            ssl_enabled=self.ssl_enabled,
            ssh_tunnel=self.ssh_tunnel.to_config() if self.ssh_tunnel else None,
        )


class FilterPayload(_Payload):
    column: str
    operator: str
    value: str


class BrowsePayload(_Payload):
    table: str = ""
    schema_name: str | None = Field(None, alias="schema")
    page: int = 1
    page_size: int = Field(50, alias="pageSize", le=1000)
    sort_column: str | None = Field(None, alias="sortColumn")
    sort_direction: str = Field("asc", alias="sortDirection")
    filters: list[FilterPayload] = Field(default_factory=list)

    def to_params(self) -> BrowseParams:
        return BrowseParams(
            table=self.table,
            schema=self.schema_name,
            page=self.page,
            page_size=self.page_size,
            sort_column=self.sort_column,
            sort_direction=self.sort_direction,
            filters=tuple(QueryFilter(column=f.column, operator=f.operator, value=f.value) for f in self.filters),
        )


def parse_connection(payload: Mapping[str, Any]) -> ConnectionConfig:
    """Build a ``ConnectionConfig`` or raise ``ValidationError``."""

    try:
        return ConnectionPayload.model_validate(payload).to_config()
    except PydanticValidationError as exc:
        raise ValidationError(_describe(exc, "Missing required connection parameters")) from exc


def parse_browse(payload: Mapping[str, Any]) -> BrowseParams:
    try:
        return BrowsePayload.model_validate(payload).to_params()
    except PydanticValidationError as exc:
        raise ValidationError(_describe(exc, "Invalid browse parameters")) from exc


def parse_text(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{key} is required")
    return value


def _describe(exc: PydanticValidationError, prefix: str) -> str:
    fields = sorted({".".join(str(part) for part in error["loc"]) for error in exc.errors()})
    return f"{prefix}: {', '.join(fields)}" if fields else prefix


__all__ = [
    "BrowsePayload",
    "ConnectionPayload",
    "SSHTunnelPayload",
    "parse_browse",
    "parse_connection",
    "parse_text",
]
