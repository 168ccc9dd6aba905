"""RFC 8785 (JCS) canonical JSON serialization.

Certificate documents are hashed over their canonical form, so two documents
that differ only in key order, whitespace or number spelling (``1.0`` vs
``1``) serialize to identical bytes.

Rules applied:
- object members sorted by the UTF-16 code units of their names
- no insignificant whitespace
- strings escaped with the minimal JSON escape set
- numbers printed with the ECMAScript Number-to-String algorithm
"""
from __future__ import annotations

import json
import math
from decimal import Decimal
from typing import Any

from .exceptions import CanonicalizationError

# Integers beyond this magnitude are not exactly representable as IEEE doubles.
_MAX_SAFE_INTEGER = 2**53


def _utf16_key(name: str) -> bytes:
    return name.encode("utf-16-be", errors="surrogatepass")


def _serialize_string(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def serialize_number(value: float | int) -> str:
    """Serialize a number the way ECMAScript ``Number.prototype.toString`` does."""
    if isinstance(value, int):
        if abs(value) <= _MAX_SAFE_INTEGER:
            return str(value)
        value = float(value)

    if math.isnan(value) or math.isinf(value):
        raise CanonicalizationError(f"{value!r} has no JSON representation")
    if value == 0:
        return "0"

    sign = "-" if value < 0 else ""
    # repr() yields the shortest digit string that round-trips, same as ES.
    _, digit_tuple, exponent = Decimal(repr(abs(value))).as_tuple()
    digits = "".join(str(d) for d in digit_tuple).rstrip("0")
    exponent += len(digit_tuple) - len(digits)
    digits = digits.lstrip("0")

    k = len(digits)
    n = exponent + k

    if k <= n <= 21:
        body = digits + "0" * (n - k)
    elif 0 < n <= 21:
        body = f"{digits[:n]}.{digits[n:]}"
    elif -6 < n <= 0:
        body = "0." + "0" * (-n) + digits
    else:
        e = n - 1
        e_sign = "+" if e >= 0 else "-"
        mantissa = digits if k == 1 else f"{digits[0]}.{digits[1:]}"
        body = f"{mantissa}e{e_sign}{abs(e)}"
    return sign + body


def _serialize(value: Any, path: str) -> str:
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, str):
        return _serialize_string(value)
    if isinstance(value, (int, float)):
        try:
            return serialize_number(value)
        except CanonicalizationError as e:
            raise CanonicalizationError(f"{path}: {e.message}", field=path) from e
    if isinstance(value, dict):
        members = []
        for name in sorted(value, key=_check_key(path)):
            members.append(
                f"{_serialize_string(name)}:{_serialize(value[name], f'{path}.{name}')}"
            )
        return "{" + ",".join(members) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(
            _serialize(item, f"{path}[{i}]") for i, item in enumerate(value)
        ) + "]"
    raise CanonicalizationError(
        f"{path}: unsupported type {type(value).__name__}", field=path
    )


def _check_key(path: str):
    def key(name: Any) -> bytes:
        if not isinstance(name, str):
            raise CanonicalizationError(
                f"{path}: object keys must be strings, got {type(name).__name__}",
                field=path,
            )
        return _utf16_key(name)
    return key


def canonicalize(value: Any) -> str:
    """Return the RFC 8785 canonical JSON text for ``value``."""
    return _serialize(value, "$")


def canonical_bytes(value: Any) -> bytes:
    """Return the UTF-8 encoded canonical form of ``value``."""
    text = canonicalize(value)
    try:
        return text.encode("utf-8")
    except UnicodeEncodeError as e:
        raise CanonicalizationError(f"string is not valid Unicode: {e.reason}") from e
