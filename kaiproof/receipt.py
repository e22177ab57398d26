"""kaiproof.receipt

Share-link codec for proof bundles and receipts.

- Legacy:  ``?r=<base64url(JCS(json))>``
- Compact: ``?p=c1:<base64url(raw-deflate(JCS(json)))>``

Query parameters are attacker controlled. Decoding is bounded at every
stage (characters, compressed bytes, inflated bytes) so a deflate bomb is
rejected before it is expanded.
"""

from __future__ import annotations

import json
import logging
import zlib
from typing import Any, Mapping, Optional
from urllib.parse import parse_qs, urlencode, urlsplit

from kaiproof.canonical import canonicalize
from kaiproof.digest import b64url_decode, b64url_encode
from kaiproof.errors import ReceiptDecodeError

logger = logging.getLogger(__name__)

SHARE_PREFIX = "c1:"

MAX_P_CHARS = 18_000
MAX_R_CHARS = 30_000
MAX_COMPRESSED_BYTES = 64 * 1024
MAX_INFLATED_BYTES = 1024 * 1024
MAX_RAW_JSON_BYTES_TO_COMPRESS = 2 * 1024 * 1024

_RAW_DEFLATE_WBITS = -15


def _parse_json(data: bytes, what: str) -> Any:
    try:
        return json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as ex:
        raise ReceiptDecodeError(f"Invalid {what}.") from ex


def inflate_raw_limited(data: bytes, max_output_bytes: int = MAX_INFLATED_BYTES) -> bytes:
    """Inflate raw DEFLATE data, refusing output beyond ``max_output_bytes``."""

    inflator = zlib.decompressobj(_RAW_DEFLATE_WBITS)
    try:
        out = inflator.decompress(data, max_output_bytes + 1)
    except zlib.error as ex:
        raise ReceiptDecodeError("Invalid share payload.") from ex
    if len(out) > max_output_bytes or inflator.unconsumed_tail:
        raise ReceiptDecodeError("Share payload too large.", limit=max_output_bytes)
    if not inflator.eof:
        raise ReceiptDecodeError("Invalid share payload.")
    return out


# ---------------------------------------------------------------------------
# Legacy ?r=
# ---------------------------------------------------------------------------


def encode_legacy_r_param(bundle: Any) -> str:
    raw = canonicalize(bundle)
    if len(raw) > MAX_INFLATED_BYTES:
        raise ReceiptDecodeError("Legacy share payload too large.", limit=MAX_INFLATED_BYTES)
    return b64url_encode(raw)


def decode_legacy_r_param(r: str) -> Any:
    if not r:
        raise ReceiptDecodeError("Missing legacy share payload.")
    if len(r) > MAX_R_CHARS:
        raise ReceiptDecodeError("Legacy share payload too large.", limit=MAX_R_CHARS)
    try:
        raw = b64url_decode(r)
    except ValueError as ex:
        raise ReceiptDecodeError("Invalid legacy share payload.") from ex
    if len(raw) > MAX_INFLATED_BYTES:
        raise ReceiptDecodeError("Legacy share payload too large.", limit=MAX_INFLATED_BYTES)
    return _parse_json(raw, "legacy share payload")


# ---------------------------------------------------------------------------
# Compact ?p=c1:
# ---------------------------------------------------------------------------


def encode_share_payload(bundle: Any) -> str:
    raw = canonicalize(bundle)
    if len(raw) > MAX_RAW_JSON_BYTES_TO_COMPRESS:
        raise ReceiptDecodeError("Share bundle too large to encode.", limit=MAX_RAW_JSON_BYTES_TO_COMPRESS)
    deflater = zlib.compressobj(9, zlib.DEFLATED, _RAW_DEFLATE_WBITS)
    compressed = deflater.compress(raw) + deflater.flush()
    if len(compressed) > MAX_COMPRESSED_BYTES:
        raise ReceiptDecodeError("Share payload too large.", limit=MAX_COMPRESSED_BYTES)
    return SHARE_PREFIX + b64url_encode(compressed)


def decode_share_payload(p: str) -> Any:
    if not p:
        raise ReceiptDecodeError("Missing share payload.")
    if len(p) > MAX_P_CHARS:
        raise ReceiptDecodeError("Share payload too large.", limit=MAX_P_CHARS)
    if not p.startswith(SHARE_PREFIX):
        raise ReceiptDecodeError("Unsupported share payload version.")
    encoded = p[len(SHARE_PREFIX):]
    if not encoded:
        raise ReceiptDecodeError("Missing share payload.")
    try:
        compressed = b64url_decode(encoded)
    except ValueError as ex:
        raise ReceiptDecodeError("Invalid share payload.") from ex
    if len(compressed) > MAX_COMPRESSED_BYTES:
        raise ReceiptDecodeError("Share payload too large.", limit=MAX_COMPRESSED_BYTES)
    return _parse_json(inflate_raw_limited(compressed), "share payload")


# ---------------------------------------------------------------------------
# URLs
# ---------------------------------------------------------------------------


def decode_share_params(params: Mapping[str, Any]) -> Any:
    """Decode from query parameters, preferring the compact ``p`` over legacy ``r``."""

    def first(name: str) -> Optional[str]:
        value = params.get(name)
        if isinstance(value, (list, tuple)):
            value = value[0] if value else None
        return value if isinstance(value, str) and value else None

    p, r = first("p"), first("r")
    if p is not None:
        return decode_share_payload(p)
    if r is not None:
        return decode_legacy_r_param(r)
    raise ReceiptDecodeError("URL carries no share payload.")


def decode_share_url(url: str) -> Any:
    return decode_share_params(parse_qs(urlsplit(url).query))


def build_share_url(base_url: str, bundle: Any, compact: bool = True) -> str:
    param = {"p": encode_share_payload(bundle)} if compact else {"r": encode_legacy_r_param(bundle)}
    sep = "&" if urlsplit(base_url).query else "?"
    url = f"{base_url}{sep}{urlencode(param, safe=':')}"
    logger.debug("built %s share url (%d chars)", "compact" if compact else "legacy", len(url))
    return url


__all__ = [
    "MAX_COMPRESSED_BYTES",
    "MAX_INFLATED_BYTES",
    "MAX_P_CHARS",
    "MAX_R_CHARS",
    "SHARE_PREFIX",
    "build_share_url",
    "decode_legacy_r_param",
    "decode_share_params",
    "decode_share_payload",
    "decode_share_url",
    "encode_legacy_r_param",
    "encode_share_payload",
    "inflate_raw_limited",
]
