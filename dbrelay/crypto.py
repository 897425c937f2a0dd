"""Credential codec for secrets stored in connection records.

Secrets are encrypted with AES-256-GCM under a key derived once from the
process master key. Ciphertext uses the ``iv:tag:data`` layout with each part
hex encoded. The key derivation salt is specific to dbrelay, so only records
encrypted by dbrelay under the same master key decrypt.
"""

from __future__ import annotations

import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .errors import ConfigurationError, DecryptionError

LOG = logging.getLogger(__name__)

KDF_SALT = b"dbrelay-database-salt"
KEY_SIZE = 32
IV_SIZE = 16
TAG_SIZE = 16


def derive_key(master_key: str) -> bytes:
    """Derive the 256-bit cipher key from the configured master key."""

    kdf = Scrypt(salt=KDF_SALT, length=KEY_SIZE, n=2**14, r=8, p=1)
    return kdf.derive(master_key.encode("utf-8"))


class CredentialCodec:
    """Encrypts and decrypts secret strings under the process master key."""

    def __init__(self, master_key: str | None) -> None:
        self._cipher = AESGCM(derive_key(master_key)) if master_key else None

    @property
    def configured(self) -> bool:
        return self._cipher is not None

    def require_configured(self) -> AESGCM:
        if self._cipher is None:
            raise ConfigurationError("DATABASE_ENCRYPTION_KEY environment variable is not set")
        return self._cipher

    def encrypt(self, plaintext: str) -> str:
        cipher = self.require_configured()
        iv = os.urandom(IV_SIZE)
        sealed = cipher.encrypt(iv, plaintext.encode("utf-8"), None)
        data, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return f"{iv.hex()}:{tag.hex()}:{data.hex()}"

    def decrypt(self, ciphertext: str) -> str:
        cipher = self.require_configured()
        parts = ciphertext.split(":")
        if len(parts) != 3:
            raise DecryptionError("Invalid encrypted text format")
        try:
            iv, tag, data = (bytes.fromhex(part) for part in parts)
        except ValueError as exc:
            raise DecryptionError("Invalid encrypted text format") from exc
        if len(iv) != IV_SIZE or len(tag) != TAG_SIZE:
            raise DecryptionError("Invalid encrypted text format")
        try:
            plaintext = cipher.decrypt(iv, data + tag, None)
        except InvalidTag as exc:
            raise DecryptionError("Decryption failed: invalid key or corrupted data") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Decryption failed: corrupted data") from exc


def decrypt_legacy(codec: CredentialCodec, value: str) -> str:
    """Decrypt ``value``, or return it unchanged if it is legacy plaintext.

    Only the SSH private key and passphrase may go through here: records
    created before those fields were encrypted still hold them in clear.
    A missing master key is never treated as plaintext.
    """

    try:
        return codec.decrypt(value)
    except DecryptionError:
        LOG.debug("Stored SSH secret is not ciphertext; using it as plaintext")
        return value


__all__ = ["CredentialCodec", "decrypt_legacy", "derive_key"]
