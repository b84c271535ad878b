"""Tests for field-level encryption.

Verifies:
- Envelope format and round trips
- Nonce freshness (equal plaintexts never share an envelope)
- Tamper detection under AES-GCM
- Legacy plaintext pass-through for migrations
- Key validation and rotation
- Masking, hashing and token helpers
"""

from __future__ import annotations

import re

import pytest

from custodian.core.config import CoreSettings
from custodian.core.exceptions import ConfigException, IntegrityException
from custodian.crypto.fields import (
    ENCRYPTED_PREFIX,
    FieldCipher,
    constant_time_equals,
    generate_key,
    generate_token,
    hash_field,
    mask_field,
)

ENVELOPE = re.compile(r"^enc:[0-9a-f]{24}:[0-9a-f]{32}:[0-9a-f]*$")


@pytest.fixture
def other_cipher():
    return FieldCipher(bytes(range(1, 33)))


def _flip_last_hex_digit(envelope: str) -> str:
    last = envelope[-1]
    return envelope[:-1] + ("0" if last != "0" else "1")


# ============================================================================
# Envelope round trips
# ============================================================================


class TestEncryptDecrypt:
    """Test sealing and opening values."""

    def test_round_trip(self, cipher):
        sealed = cipher.encrypt("1020304050")

        assert sealed != "1020304050"
        assert cipher.decrypt(sealed) == "1020304050"

    def test_envelope_format(self, cipher):
        sealed = cipher.encrypt("hello")

        assert sealed.startswith(ENCRYPTED_PREFIX)
        assert ENVELOPE.match(sealed)
        # 5 plaintext bytes -> 10 hex chars of ciphertext
        assert len(sealed.split(":")[3]) == 10

    def test_unicode_round_trip(self, cipher):
        value = "José Ñúñez · 東京"
        assert cipher.decrypt(cipher.encrypt(value)) == value

    def test_empty_string_round_trip(self, cipher):
        sealed = cipher.encrypt("")

        assert sealed.endswith(":")
        assert cipher.decrypt(sealed) == ""

    def test_none_passes_through(self, cipher):
        assert cipher.encrypt(None) is None
        assert cipher.decrypt(None) is None

    def test_fresh_nonce_per_call(self, cipher):
        envelopes = {cipher.encrypt("same value") for _ in range(20)}
        nonces = {e.split(":")[1] for e in envelopes}

        assert len(envelopes) == 20
        assert len(nonces) == 20

    def test_sixteen_byte_nonce_envelope_decrypts(self, cipher):
        """Envelopes from older deployments used a 16-byte nonce."""
        from cryptography.hazmat.primitives.ciphers.aead import AESGCM

        nonce = bytes(range(16))
        sealed = AESGCM(bytes(range(32))).encrypt(nonce, b"legacy", None)
        ciphertext, tag = sealed[:-16], sealed[-16:]
        envelope = f"enc:{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"

        assert cipher.decrypt(envelope) == "legacy"


# ============================================================================
# Tamper detection
# ============================================================================


class TestIntegrity:
    """Any modification of an envelope fails closed."""

    def test_tampered_ciphertext(self, cipher):
        sealed = cipher.encrypt("secret value")

        with pytest.raises(IntegrityException):
            cipher.decrypt(_flip_last_hex_digit(sealed))

    def test_tampered_tag(self, cipher):
        prefix, nonce, tag, ciphertext = cipher.encrypt("secret value").split(":")
        bad_tag = ("0" if tag[0] != "0" else "1") + tag[1:]

        with pytest.raises(IntegrityException):
            cipher.decrypt(f"{prefix}:{nonce}:{bad_tag}:{ciphertext}")

    def test_wrong_key(self, cipher, other_cipher):
        with pytest.raises(IntegrityException):
            other_cipher.decrypt(cipher.encrypt("secret value"))

    @pytest.mark.parametrize(
        "value",
        [
            "enc:",
            "enc:zz:yy:xx",
            "enc:00112233445566778899aabb:00112233445566778899aabbccddeeff",
            "enc:00112233445566778899aabb:0011:abcd",
            "enc:00112233445566778899AABB:00112233445566778899aabbccddeeff:abcd",
            "enc:00112233445566778899aabb:00112233445566778899aabbccddeeff:abc",
        ],
    )
    def test_malformed_envelopes(self, cipher, value):
        with pytest.raises(IntegrityException, match="Malformed"):
            cipher.decrypt(value)

    def test_error_never_contains_value(self, cipher):
        sealed = cipher.encrypt("1020304050")

        with pytest.raises(IntegrityException) as exc_info:
            cipher.decrypt(_flip_last_hex_digit(sealed))

        assert "1020304050" not in str(exc_info.value)
        assert sealed[10:] not in str(exc_info.value)


# ============================================================================
# Migration helpers
# ============================================================================


class TestMigration:
    """Plaintext columns can be encrypted in place without a flag day."""

    def test_unmarked_value_returned_unchanged(self, cipher):
        assert cipher.decrypt("plain 1020304050") == "plain 1020304050"

    def test_is_encrypted(self, cipher):
        assert FieldCipher.is_encrypted(cipher.encrypt("x"))
        assert not FieldCipher.is_encrypted("x")
        assert not FieldCipher.is_encrypted(None)
        assert not FieldCipher.is_encrypted(42)

    def test_encrypt_if_needed_is_idempotent(self, cipher):
        once = cipher.encrypt_if_needed("value")
        twice = cipher.encrypt_if_needed(once)

        assert once == twice
        assert cipher.decrypt(twice) == "value"

    def test_encrypt_fields(self, cipher):
        data = {"document_number": "123", "phone": None, "name": "Ana", "age": 30}

        sealed = cipher.encrypt_fields(data, ("document_number", "phone", "age"))

        assert FieldCipher.is_encrypted(sealed["document_number"])
        assert sealed["phone"] is None
        assert sealed["name"] == "Ana"
        assert sealed["age"] == 30
        assert data["document_number"] == "123"

    def test_decrypt_fields(self, cipher):
        sealed = cipher.encrypt_fields({"phone": "555", "email": "a@b.c"}, ("phone",))

        assert cipher.decrypt_fields(sealed, ("phone", "email")) == {"phone": "555", "email": "a@b.c"}


# ============================================================================
# Key handling
# ============================================================================


class TestKeys:
    """Key validation fails at construction time."""

    @pytest.mark.parametrize("key", [b"", b"short", bytes(31), bytes(33)])
    def test_wrong_key_length(self, key):
        with pytest.raises(ConfigException):
            FieldCipher(key)

    def test_non_bytes_key(self):
        with pytest.raises(ConfigException):
            FieldCipher("0" * 32)

    def test_from_hex(self):
        key_hex = bytes(range(32)).hex()
        cipher = FieldCipher.from_hex(key_hex)

        assert cipher.decrypt(FieldCipher(bytes(range(32))).encrypt("x")) == "x"

    @pytest.mark.parametrize("key_hex", ["", "abc", "g" * 64, "0" * 63, "0" * 66])
    def test_from_hex_rejects_malformed(self, key_hex):
        with pytest.raises(ConfigException):
            FieldCipher.from_hex(key_hex)

    def test_from_settings_without_key_fails_closed(self):
        with pytest.raises(ConfigException) as exc_info:
            FieldCipher.from_settings(CoreSettings(encryption_key=""))

        assert exc_info.value.missing_vars == ["CUSTODIAN_ENCRYPTION_KEY"]

    def test_from_settings(self):
        settings = CoreSettings(encryption_key=generate_key())
        cipher = FieldCipher.from_settings(settings)

        assert cipher.decrypt(cipher.encrypt("ok")) == "ok"

    def test_previous_key_still_decrypts(self, cipher, other_cipher):
        old_envelope = other_cipher.encrypt("rotated")
        rotating = FieldCipher(bytes(range(32)), previous_keys=[bytes(range(1, 33))])

        assert rotating.decrypt(old_envelope) == "rotated"

    def test_rotate_reseals_under_current_key(self, cipher, other_cipher):
        rotating = FieldCipher(bytes(range(32)), previous_keys=[bytes(range(1, 33))])

        resealed = rotating.rotate(other_cipher.encrypt("rotated"))

        assert cipher.decrypt(resealed) == "rotated"
        with pytest.raises(IntegrityException):
            other_cipher.decrypt(resealed)

    def test_is_current(self, cipher, other_cipher):
        rotating = FieldCipher(bytes(range(32)), previous_keys=[bytes(range(1, 33))])

        assert rotating.is_current(cipher.encrypt("x"))
        assert not rotating.is_current(other_cipher.encrypt("x"))
        assert not rotating.is_current("plain")
        assert not rotating.is_current(None)

    def test_rotate_encrypts_plaintext(self, cipher):
        assert cipher.decrypt(cipher.rotate("legacy")) == "legacy"
        assert cipher.rotate(None) is None

    def test_bad_previous_key(self):
        with pytest.raises(ConfigException):
            FieldCipher(bytes(32), previous_keys=[b"short"])


# ============================================================================
# Standalone helpers
# ============================================================================


class TestHelpers:
    def test_mask_field(self):
        assert mask_field("1234567890") == "******7890"
        assert mask_field("1234567890", visible=2, mask_char="#") == "########90"

    def test_mask_short_value_unchanged(self):
        assert mask_field("123") == "123"
        assert mask_field("1234") == "1234"
        assert mask_field(None) is None

    def test_hash_field_deterministic(self):
        assert hash_field("abc") == hash_field("abc")
        assert hash_field("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        assert hash_field(None) is None

    def test_generate_key(self):
        key = generate_key()

        assert len(key) == 64
        assert FieldCipher.from_hex(key)
        assert generate_key() != key

    def test_generate_token(self):
        assert len(generate_token()) == 64
        assert len(generate_token(16)) == 32
        assert generate_token() != generate_token()

    def test_constant_time_equals(self):
        assert constant_time_equals("abc", "abc")
        assert not constant_time_equals("abc", "abd")
        assert not constant_time_equals("abc", "abcd")
