"""
Deterministic encoding and hashing of signed-message payloads.

Layout of ``encode(payload)`` (Borsh struct, fields in declaration order):

    message      u32-LE length + UTF-8 bytes
    nonce        32 raw bytes
    recipient    u32-LE length + UTF-8 bytes
    callbackUrl  u8 tag (0 = None, 1 = Some) + string as above when present

``hash_payload`` prefixes the encoding with the u32-LE tag ``413 + 2**31`` so a
signed message can never be mistaken for a signed transaction, then takes
SHA-256.
"""

import base64
import binascii
import hashlib
import struct
from dataclasses import dataclass
from typing import Optional

from .errors import MalformedCredential, NonceTooLong

NONCE_LENGTH = 32

# NEP-413 message tag
MESSAGE_PREFIX = 413 + 2 ** 31
PREFIX_BYTES = struct.pack("<I", MESSAGE_PREFIX)


def b64decode_lenient(value: str, field: str = "value") -> bytes:
    """Decode base64, restoring missing padding."""
    if not isinstance(value, str):
        raise MalformedCredential(f"{field} must be a base64 string")
    padded = value + "=" * (-len(value) % 4)
    try:
        return base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedCredential(f"{field} is not valid base64: {e}") from e


def decode_nonce(nonce: str) -> bytes:
    """Decode a base64 nonce into exactly 32 bytes, zero-padding short values."""
    raw = b64decode_lenient(nonce, "nonce")
    if len(raw) > NONCE_LENGTH:
        raise NonceTooLong(len(raw))
    return raw.ljust(NONCE_LENGTH, b"\x00")


@dataclass(frozen=True)
class SigningPayload:
    message: str
    nonce: bytes
    recipient: str
    callback_url: Optional[str] = None

    def __post_init__(self):
        if len(self.nonce) != NONCE_LENGTH:
            raise ValueError(f"nonce must be exactly {NONCE_LENGTH} bytes, got {len(self.nonce)}")

    @classmethod
    def build(cls, message: str, nonce: str, recipient: str,
              callback_url: Optional[str] = None) -> "SigningPayload":
        """Create a payload from the wire form, where the nonce is base64."""
        # An empty callback URL is treated as absent
        return cls(message, decode_nonce(nonce), recipient, callback_url or None)


def _encode_string(value: str) -> bytes:
    data = value.encode("utf-8")
    return struct.pack("<I", len(data)) + data


def encode(payload: SigningPayload) -> bytes:
    parts = [
        _encode_string(payload.message),
        payload.nonce,
        _encode_string(payload.recipient),
    ]
    if payload.callback_url is None:
        parts.append(b"\x00")
    else:
        parts.append(b"\x01" + _encode_string(payload.callback_url))
    return b"".join(parts)


def hash_payload(payload: SigningPayload) -> bytes:
    """SHA-256 digest of the tagged payload encoding; this is what gets signed."""
    return hashlib.sha256(PREFIX_BYTES + encode(payload)).digest()
