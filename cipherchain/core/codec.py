"""
Field Codec - encryption at the storage boundary

Stored payloads can be encrypted at rest with a server-held key.
This is an explicit transform applied by the store when writing and
reading rows; it never touches the logical block values.

ORDERING RULE:
- Write: hash is computed over the logical payload, THEN the codec encodes
- Read: the codec decodes, THEN hashes are verified

So the chain verifies the same way with or without a codec.
"""

import base64
import os
from typing import Optional

from nacl.exceptions import CryptoError
from nacl.secret import SecretBox
from nacl.utils import random

# Marks encoded values so plaintext rows written before a key was
# configured can still be read.
ENCODED_PREFIX = "enc:v1:"


class FieldCodecError(Exception):
    """Raised when a stored field cannot be decoded."""
    pass


class PlainCodec:
    """Identity codec (no encryption at rest)."""

    def encode(self, value: str) -> str:
        return value

    def decode(self, value: str) -> str:
        return value


class SecretBoxCodec(PlainCodec):
    """
    XSalsa20-Poly1305 field encryption via PyNaCl SecretBox.

    Each encode uses a fresh random nonce, so equal plaintexts produce
    different ciphertexts. Decoding authenticates: a modified row raises
    FieldCodecError instead of returning garbage.
    """

    def __init__(self, key: bytes):
        if len(key) != SecretBox.KEY_SIZE:
            raise FieldCodecError(
                f"Field key must be {SecretBox.KEY_SIZE} bytes, got {len(key)}"
            )
        self._box = SecretBox(key)

    @classmethod
    def from_b64(cls, key_b64: str) -> "SecretBoxCodec":
        try:
            key = base64.b64decode(key_b64, validate=True)
        except ValueError as e:
            raise FieldCodecError("Field key is not valid base64") from e
        return cls(key)

    @staticmethod
    def generate_key() -> str:
        """Generate a new base64-encoded key for CIPHERCHAIN_FIELD_KEY."""
        return base64.b64encode(random(SecretBox.KEY_SIZE)).decode("utf-8")

    def encode(self, value: str) -> str:
        sealed = self._box.encrypt(value.encode("utf-8"))
        return ENCODED_PREFIX + base64.b64encode(bytes(sealed)).decode("ascii")

    def decode(self, value: str) -> str:
        if not value.startswith(ENCODED_PREFIX):
            return value

        try:
            sealed = base64.b64decode(value[len(ENCODED_PREFIX):], validate=True)
            return self._box.decrypt(sealed).decode("utf-8")
        except (ValueError, CryptoError) as e:
            raise FieldCodecError("Stored field failed authentication or decoding") from e


def codec_from_env() -> PlainCodec:
    """
    Build the codec configured by CIPHERCHAIN_FIELD_KEY.

    Returns PlainCodec when no key is set.
    """
    key_b64: Optional[str] = os.getenv("CIPHERCHAIN_FIELD_KEY")
    if not key_b64:
        return PlainCodec()
    return SecretBoxCodec.from_b64(key_b64)
