"""Encryption layer for sensitive fields."""

from .fields import (
    ENCRYPTED_PREFIX,
    FieldCipher,
    constant_time_equals,
    generate_key,
    generate_token,
    hash_field,
    mask_field,
)

__all__ = [
    "ENCRYPTED_PREFIX",
    "FieldCipher",
    "constant_time_equals",
    "generate_key",
    "generate_token",
    "hash_field",
    "mask_field",
]
