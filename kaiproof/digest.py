"""kaiproof.digest

SHA-256 and the byte encodings used on the wire: lowercase hex for storage
and display, unpadded base64url for WebAuthn fields, Base58Check for owner
keys.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import re
from typing import Any, Union

from kaiproof.canonical import canonicalize

BytesLike = Union[bytes, bytearray, memoryview]

_HEX_RE = re.compile(r"^(?:[0-9a-fA-F]{2})*$")
_B64URL_RE = re.compile(r"^[A-Za-z0-9_-]*$")

B58_ALPHABET = b"123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"


def _as_bytes(data: Union[str, BytesLike]) -> bytes:
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)


def sha256_bytes(data: Union[str, BytesLike]) -> bytes:
    """SHA-256 of ``data`` (text is hashed as UTF-8)."""

    return hashlib.sha256(_as_bytes(data)).digest()


def sha256_hex(data: Union[str, BytesLike]) -> str:
    return hashlib.sha256(_as_bytes(data)).hexdigest()


def hash_canonical(obj: Any) -> str:
    """Lowercase hex SHA-256 of the canonical JSON form of ``obj``."""

    return sha256_hex(canonicalize(obj))


def hex_to_bytes(value: str) -> bytes:
    """Strict hex decoding (even length, hex digits only, optional 0x prefix)."""

    s = str(value or "").strip()
    if s[:2] in ("0x", "0X"):
        s = s[2:]
    if not _HEX_RE.match(s):
        raise ValueError("value is not an even-length hex string")
    return bytes.fromhex(s)


def bytes_to_hex(data: BytesLike) -> str:
    return bytes(data).hex()


def b64url_encode(data: Union[str, BytesLike]) -> str:
    return base64.urlsafe_b64encode(_as_bytes(data)).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    """Decode unpadded base64url.

    Standard-base64 characters (``+``, ``/``) and padding are rejected so that
    one byte string has exactly one textual form.
    """

    if not isinstance(value, str) or not _B64URL_RE.match(value):
        raise ValueError("Invalid base64url string")
    if len(value) % 4 == 1:
        raise ValueError("Invalid base64url length")
    pad = "=" * ((4 - len(value) % 4) % 4)
    try:
        return base64.urlsafe_b64decode((value + pad).encode("ascii"))
    except binascii.Error as ex:
        raise ValueError("Invalid base64url string") from ex


def is_b64url(value: Any) -> bool:
    return isinstance(value, str) and bool(_B64URL_RE.match(value))


# ---------------------------------------------------------------------------
# Base58 / Base58Check
# ---------------------------------------------------------------------------


def base58_encode(data: BytesLike) -> str:
    b = bytes(data)
    n_pad = len(b) - len(b.lstrip(b"\x00"))
    num = int.from_bytes(b, "big")
    out = bytearray()
    while num > 0:
        num, rem = divmod(num, 58)
        out.append(B58_ALPHABET[rem])
    out.extend(B58_ALPHABET[0] for _ in range(n_pad))
    out.reverse()
    return out.decode("ascii")


def base58_decode(value: str) -> bytes:
    raw = value.encode("ascii")
    num = 0
    for c in raw:
        idx = B58_ALPHABET.find(c)
        if idx < 0:
            raise ValueError("Invalid base58 character")
        num = num * 58 + idx
    n_pad = len(raw) - len(raw.lstrip(B58_ALPHABET[:1]))
    full = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    return b"\x00" * n_pad + full


def base58check_encode(payload: BytesLike, version: int = 0x00) -> str:
    """Base58Check: version byte + payload + first 4 bytes of double SHA-256."""

    body = bytes([version]) + bytes(payload)
    checksum = hashlib.sha256(hashlib.sha256(body).digest()).digest()[:4]
    return base58_encode(body + checksum)


def base58check_decode(value: str) -> bytes:
    """Return ``version + payload`` after checking the 4-byte checksum."""

    raw = base58_decode(value)
    if len(raw) < 5:
        raise ValueError("Base58Check string too short")
    body, checksum = raw[:-4], raw[-4:]
    expected = hashlib.sha256(hashlib.sha256(body).digest()).digest()[:4]
    if checksum != expected:
        raise ValueError("Base58Check checksum mismatch")
    return body
