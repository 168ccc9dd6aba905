"""Deterministic content hashing for certificate documents.

A certificate's content hash is SHA-256 over the RFC 8785 canonical form of
its public document, with the fields that legitimately change between
re-renders removed first. The GVE code is the human-facing short form of
that hash.
"""
from __future__ import annotations

import hashlib
import re
from typing import Any, Mapping

from .canonical import canonical_bytes
from .exceptions import DeterminismFault, InvalidContentHash, InvalidInput

# Populated after hashing; never part of the certified content.
EXCLUDED_FIELDS = ("verification", "issuedAt")

HASH_PREFIX = "0x"
GVE_PREFIX = "GVE-"
GVE_WIDTH = 8

_CONTENT_HASH_RE = re.compile(r"^0x[0-9a-f]{64}$")
_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


def create_hashable_document(document: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of ``document`` without the excluded top-level fields."""
    if not isinstance(document, Mapping):
        raise InvalidInput(
            f"certificate document must be a mapping, got {type(document).__name__}",
            field="document",
        )
    return {key: value for key, value in document.items() if key not in EXCLUDED_FIELDS}


def sha256_hex(data: bytes | str) -> str:
    """SHA-256 digest of ``data`` as a 0x-prefixed lowercase hex string."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return HASH_PREFIX + hashlib.sha256(data).hexdigest()


def compute_content_hash(document: Mapping[str, Any]) -> str:
    """Compute the content hash of a certificate document."""
    return sha256_hex(canonical_bytes(create_hashable_document(document)))


def compute_content_hash_checked(document: Mapping[str, Any]) -> str:
    """Compute the content hash twice and fail loudly if the results differ."""
    first = compute_content_hash(document)
    second = compute_content_hash(document)
    if first != second:
        raise DeterminismFault(first, second)
    return first


def is_content_hash(value: Any) -> bool:
    """True for a full-length, lowercase, 0x-prefixed SHA-256 hex digest."""
    return isinstance(value, str) and bool(_CONTENT_HASH_RE.match(value))


def derive_gve(content_hash: str) -> str:
    """Derive the GVE code from a content hash.

    >>> derive_gve("0x1234567890abcdef")
    'GVE-12345678'
    """
    if not isinstance(content_hash, str) or not content_hash.startswith(HASH_PREFIX):
        raise InvalidContentHash(content_hash, "content hash must be a 0x-prefixed string")
    digits = content_hash[len(HASH_PREFIX):len(HASH_PREFIX) + GVE_WIDTH]
    if len(digits) < GVE_WIDTH or not _HEX_RE.match(digits):
        raise InvalidContentHash(
            content_hash, f"content hash needs at least {GVE_WIDTH} hex digits"
        )
    return GVE_PREFIX + digits
