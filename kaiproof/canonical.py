"""kaiproof.canonical

JSON Canonicalization Scheme (RFC 8785) used as the sole input to every hash
in the proof pipeline.

Rules:
- object members sorted by their UTF-16 code units
- no insignificant whitespace, UTF-8 output
- strings escaped exactly as ECMAScript ``JSON.stringify`` escapes them
- integers verbatim; floats in the ECMAScript shortest round-trip form
  (``1.0 -> 1``, ``-0.0 -> 0``, ``1e21 -> 1e+21``), NaN/Infinity rejected
- members whose value is :data:`UNDEFINED` are omitted; ``UNDEFINED`` inside
  an array serializes as ``null``

``UNDEFINED`` exists because omission and ``null`` hash differently: a bundle
field that was never provided must be dropped, while an explicit ``null`` read
from the wire must round-trip as ``null``.
"""

from __future__ import annotations

import json
import math
from decimal import Decimal
from typing import Any, Dict, List

from kaiproof.errors import CanonicalizationError


class _Undefined:
    """Marker for "field not provided"."""

    _instance = None

    def __new__(cls) -> "_Undefined":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNDEFINED"

    def __bool__(self) -> bool:
        return False


UNDEFINED = _Undefined()

MAX_SAFE_INTEGER = 2 ** 53


def is_undefined(value: Any) -> bool:
    return value is UNDEFINED


def drop_undefined(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Return a shallow copy of ``obj`` without ``UNDEFINED`` members."""

    return {k: v for k, v in obj.items() if v is not UNDEFINED}


# ---------------------------------------------------------------------------
# Numbers
# ---------------------------------------------------------------------------


def _format_int(value: int) -> str:
    if abs(value) < MAX_SAFE_INTEGER:
        return str(value)
    # Outside the safe range a JSON number is an IEEE double, as in ECMAScript.
    try:
        return _format_float(float(value))
    except OverflowError:
        raise CanonicalizationError("integer is too large for a JSON number") from None


def _format_float(value: float) -> str:
    if math.isnan(value) or math.isinf(value):
        raise CanonicalizationError("NaN and Infinity have no canonical JSON form")
    if value == 0:
        return "0"

    # repr() gives the shortest round-trip digits; only the layout differs from ECMAScript.
    sign, digits_t, exponent = Decimal(repr(value)).as_tuple()
    digits: List[int] = list(digits_t)
    while len(digits) > 1 and digits[-1] == 0:
        digits.pop()
        exponent += 1

    k = len(digits)
    n = exponent + k
    s = "".join(str(d) for d in digits)

    if k <= n <= 21:
        out = s + "0" * (n - k)
    elif 0 < n <= 21:
        out = s[:n] + "." + s[n:]
    elif -6 < n <= 0:
        out = "0." + "0" * (-n) + s
    else:
        e = n - 1
        mantissa = s if k == 1 else s[0] + "." + s[1:]
        out = f"{mantissa}e{'+' if e >= 0 else '-'}{abs(e)}"

    return ("-" if sign else "") + out


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _sort_key(key: str) -> bytes:
    return key.encode("utf-16-be", "surrogatepass")


def _encode_string(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def _serialize(value: Any, out: List[str]) -> None:
    if value is None or value is UNDEFINED:
        out.append("null")
    elif value is True:
        out.append("true")
    elif value is False:
        out.append("false")
    elif isinstance(value, int):
        out.append(_format_int(value))
    elif isinstance(value, float):
        out.append(_format_float(value))
    elif isinstance(value, str):
        out.append(_encode_string(value))
    elif isinstance(value, (list, tuple)):
        out.append("[")
        for i, item in enumerate(value):
            if i:
                out.append(",")
            _serialize(item, out)
        out.append("]")
    elif isinstance(value, dict):
        for key in value:
            if not isinstance(key, str):
                raise CanonicalizationError(f"object keys must be strings, got {type(key).__name__}")
        out.append("{")
        first = True
        for key in sorted(value, key=_sort_key):
            member = value[key]
            if member is UNDEFINED:
                continue
            if not first:
                out.append(",")
            first = False
            out.append(_encode_string(key))
            out.append(":")
            _serialize(member, out)
        out.append("}")
    else:
        raise CanonicalizationError(f"value of type {type(value).__name__} is not JSON")


def canonicalize_str(value: Any) -> str:
    """Return the canonical JSON text of ``value``."""

    out: List[str] = []
    _serialize(value, out)
    return "".join(out)


def canonicalize(value: Any) -> bytes:
    """Return the canonical JSON bytes of ``value`` (UTF-8)."""

    text = canonicalize_str(value)
    try:
        return text.encode("utf-8")
    except UnicodeEncodeError as ex:
        raise CanonicalizationError("strings must not contain lone surrogates") from ex
