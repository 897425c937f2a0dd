"""Error taxonomy shared by the codec, tunnel, drivers and orchestrator."""

from __future__ import annotations


class DbRelayError(RuntimeError):
    """Base error; carries a stable ``kind`` and the HTTP status to report."""

    kind = "internal"
    status_code = 500

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else self.kind


class ConfigurationError(DbRelayError):
    """Raised when the master encryption key is not configured."""

    kind = "configuration"
    status_code = 500


class ValidationError(DbRelayError):
    """Raised when request fields are missing or malformed."""

    kind = "validation"
    status_code = 400


class DecryptionError(DbRelayError):
    """Raised when ciphertext is malformed, tampered or from another key."""

    kind = "decryption"
    status_code = 400


class TunnelError(DbRelayError):
    """Base error for SSH tunnel failures."""

    kind = "tunnel"
    status_code = 502


class TunnelAuthError(TunnelError):
    """The bastion host rejected the key, or the key could not be loaded."""

    kind = "tunnel_auth"


class TunnelConnectError(TunnelError):
    """The bastion host could not be reached in time."""

    kind = "tunnel_connect"


class TunnelBindError(TunnelError):
    """No local port could be bound for the tunnel listener."""

    kind = "tunnel_bind"
    status_code = 500


class ConnectError(DbRelayError):
    """The database was unreachable or rejected the credentials."""

    kind = "connect"
    status_code = 502


class QueryError(DbRelayError):
    """A statement failed; the message is the engine's own text."""

    kind = "query"
    status_code = 400


__all__ = [
    "ConfigurationError",
    "ConnectError",
    "DbRelayError",
    "DecryptionError",
    "QueryError",
    "TunnelAuthError",
    "TunnelBindError",
    "TunnelConnectError",
    "TunnelError",
    "ValidationError",
]
