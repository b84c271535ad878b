# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Field-level encryption for sensitive attributes.

Values are sealed with AES-256-GCM into a self-describing text envelope::

    enc:<nonce hex>:<tag hex>:<ciphertext hex>

The ``enc:`` marker makes encryption idempotent for migrations: values that
already carry it are never encrypted twice, and values that lack it are
returned unchanged by ``decrypt`` so a previously plaintext column can be
migrated without a flag day.

Also provides display masking, one-way hashing for equality search and
secure token helpers.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..core.exceptions import ConfigException, IntegrityException

if TYPE_CHECKING:
    from ..core.config import CoreSettings

logger = logging.getLogger(__name__)

ENCRYPTED_PREFIX = "enc:"
KEY_BYTES = 32  # AES-256
NONCE_BYTES = 12  # 96-bit nonce for GCM
TAG_BYTES = 16
MASK_CHAR = "*"

# Envelopes written by older deployments carry a 16-byte nonce; both decrypt.
_ENVELOPE_RE = re.compile(r"^enc:((?:[0-9a-f]{2}){12}|(?:[0-9a-f]{2}){16}):((?:[0-9a-f]{2}){16}):((?:[0-9a-f]{2})*)$")
_HEX_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")


def _parse_hex_key(value: str, name: str) -> bytes:
    if not _HEX_KEY_RE.match(value or ""):
        raise ConfigException(f"{name} must be {KEY_BYTES * 2} hex characters ({KEY_BYTES} bytes)")
    return bytes.fromhex(value)


def _split_envelope(value: str) -> tuple[bytes, bytes]:
    """Return ``(nonce, ciphertext || tag)`` of an envelope."""
    match = _ENVELOPE_RE.match(value)
    if match is None:
        raise IntegrityException("Malformed encrypted value")
    nonce_hex, tag_hex, ciphertext_hex = match.groups()
    return bytes.fromhex(nonce_hex), bytes.fromhex(ciphertext_hex) + bytes.fromhex(tag_hex)


class FieldCipher:
    """AES-256-GCM cipher for individual string fields.

    The key is validated on construction so a bad deployment fails at
    startup instead of on the first sensitive write.

    Args:
        key: 32-byte current key, used for all new envelopes
        previous_keys: retired keys still tried on decrypt during rotation
    """

    def __init__(self, key: bytes, previous_keys: Iterable[bytes] = ()):
        if not isinstance(key, bytes | bytearray) or len(key) != KEY_BYTES:
            raise ConfigException(f"Encryption key must be exactly {KEY_BYTES} bytes for AES-256")
        self._current = AESGCM(bytes(key))
        self._previous: list[AESGCM] = []
        for old in previous_keys:
            if len(old) != KEY_BYTES:
                raise ConfigException(f"Previous encryption keys must be exactly {KEY_BYTES} bytes")
            self._previous.append(AESGCM(bytes(old)))

    @classmethod
    def from_hex(cls, key_hex: str, previous_hex: Iterable[str] = ()) -> FieldCipher:
        """Build a cipher from hex-encoded keys (as stored in configuration)."""
        key = _parse_hex_key(key_hex, "Encryption key")
        previous = [_parse_hex_key(k, "Previous encryption key") for k in previous_hex]
        return cls(key, previous)

    @classmethod
    def from_settings(cls, settings: CoreSettings) -> FieldCipher:
        """Build a cipher from settings, failing closed when the key is absent."""
        if not settings.encryption_key:
            raise ConfigException(
                "Encryption key is not configured",
                missing_vars=["CUSTODIAN_ENCRYPTION_KEY"],
            )
        return cls.from_hex(settings.encryption_key, settings.previous_keys)

    # ------------------------------------------------------------------
    # Envelope operations
    # ------------------------------------------------------------------

    def encrypt(self, plaintext: str | None) -> str | None:
        """Seal a string. ``None`` passes through.

        A fresh random nonce is drawn per call, so equal plaintexts never
        produce equal envelopes.
        """
        if plaintext is None:
            return None
        nonce = secrets.token_bytes(NONCE_BYTES)
        sealed = self._current.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return f"{ENCRYPTED_PREFIX}{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, value: str | None) -> str | None:
        """Open an envelope.

        Values without the ``enc:`` marker are legacy plaintext and are
        returned unchanged. ``None`` passes through.

        Raises:
            IntegrityException: If the envelope is malformed or fails authentication
        """
        if value is None or not self.is_encrypted(value):
            return value

        nonce, sealed = _split_envelope(value)
        for aead in (self._current, *self._previous):
            try:
                plaintext = aead.decrypt(nonce, sealed, None)
            except InvalidTag:
                continue
            try:
                return plaintext.decode("utf-8")
            except UnicodeDecodeError as e:
                raise IntegrityException("Decrypted value is not valid UTF-8") from e

        logger.warning("Encrypted value failed authentication under all known keys")
        raise IntegrityException("Encrypted value failed authentication")

    def is_current(self, value: str) -> bool:
        """True if ``value`` is an envelope sealed under the current key.

        Raises:
            IntegrityException: If the envelope is malformed
        """
        if not self.is_encrypted(value):
            return False
        nonce, sealed = _split_envelope(value)
        try:
            self._current.decrypt(nonce, sealed, None)
        except InvalidTag:
            return False
        return True

    @staticmethod
    def is_encrypted(value: Any) -> bool:
        """True if the value carries the envelope marker."""
        return isinstance(value, str) and value.startswith(ENCRYPTED_PREFIX)

    def encrypt_if_needed(self, value: str | None) -> str | None:
        """Encrypt legacy plaintext; leave existing envelopes untouched."""
        if value is None or self.is_encrypted(value):
            return value
        return self.encrypt(value)

    def rotate(self, value: str | None) -> str | None:
        """Re-seal a value under the current key.

        Accepts envelopes under any known key as well as legacy plaintext.
        """
        if value is None:
            return None
        return self.encrypt(self.decrypt(value))

    # ------------------------------------------------------------------
    # Record helpers
    # ------------------------------------------------------------------

    def encrypt_fields(self, data: Mapping[str, Any], fields: Iterable[str]) -> dict[str, Any]:
        """Return a copy of ``data`` with the named string fields sealed."""
        result = dict(data)
        for name in fields:
            if isinstance(result.get(name), str):
                result[name] = self.encrypt_if_needed(result[name])
        return result

    def decrypt_fields(self, data: Mapping[str, Any], fields: Iterable[str]) -> dict[str, Any]:
        """Return a copy of ``data`` with the named fields opened."""
        result = dict(data)
        for name in fields:
            if isinstance(result.get(name), str):
                result[name] = self.decrypt(result[name])
        return result


# ----------------------------------------------------------------------
# Standalone helpers
# ----------------------------------------------------------------------


def mask_field(value: str | None, visible: int = 4, mask_char: str = MASK_CHAR) -> str | None:
    """Mask all but the last ``visible`` characters for display.

    Values no longer than ``visible`` are returned unmasked.

    >>> mask_field("1234567890")
    '******7890'
    """
    if value is None:
        return None
    if len(value) <= visible:
        return value
    hidden = len(value) - visible
    return mask_char * hidden + value[hidden:]


def hash_field(value: str | None) -> str | None:
    """Deterministic SHA-256 hex digest for equality search. Not for confidentiality."""
    if value is None:
        return None
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def generate_key() -> str:
    """Generate a new AES-256 key as 64 hex characters."""
    return secrets.token_hex(KEY_BYTES)


def generate_token(nbytes: int = 32) -> str:
    """Generate an unguessable hex token (256 bits by default)."""
    return secrets.token_hex(nbytes)


def constant_time_equals(a: str, b: str) -> bool:
    """Compare two strings without leaking the mismatch position."""
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
