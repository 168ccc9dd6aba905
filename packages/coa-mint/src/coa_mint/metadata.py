"""Token metadata construction and the self-contained data-URI codec."""
from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Dict, List, Mapping, Optional

from .exceptions import MetadataError

TOKEN_URI_PREFIX = "data:application/json;base64,"
DOCUMENT_KEY = "blockticity"
CONTENT_HASH_TRAIT = "Content Hash"


def build_token_metadata(
    document: Mapping[str, Any],
    content_hash: str,
    gve_code: str,
    artifact_url: str,
    issuer_name: str,
    product_name: str,
    network_name: str,
    standard: str = "ASTM D8558",
    external_url_base: str = "https://app.blockticity.ai",
) -> Dict[str, Any]:
    """Build ERC-721 style metadata that embeds the full certificate document."""
    return {
        "name": f"COA: {product_name}",
        "description": (
            f"Blockticity Certificate of Authenticity issued by {issuer_name}. "
            f"GVE: {gve_code}. Verify at {external_url_base.split('://', 1)[-1]}"
        ),
        "image": artifact_url,
        "external_url": f"{external_url_base.rstrip('/')}/{content_hash}",
        "attributes": [
            {"trait_type": "Issuer", "value": issuer_name},
            {"trait_type": "GVE Code", "value": gve_code},
            {"trait_type": CONTENT_HASH_TRAIT, "value": content_hash},
            {"trait_type": "Standard", "value": standard},
            {"trait_type": "Network", "value": network_name},
        ],
        DOCUMENT_KEY: dict(document),
    }


def encode_token_uri(metadata: Mapping[str, Any]) -> str:
    """Encode metadata as a base64 JSON data URI."""
    payload = json.dumps(metadata, ensure_ascii=False, separators=(",", ":"))
    return TOKEN_URI_PREFIX + base64.b64encode(payload.encode("utf-8")).decode("ascii")


def decode_token_uri(token_uri: str) -> Dict[str, Any]:
    """Decode a data URI produced by :func:`encode_token_uri`."""
    if not isinstance(token_uri, str) or not token_uri.startswith(TOKEN_URI_PREFIX):
        raise MetadataError("Unexpected tokenURI format", details={"prefix": str(token_uri)[:40]})
    try:
        raw = base64.b64decode(token_uri[len(TOKEN_URI_PREFIX):], validate=True)
        metadata = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MetadataError(f"tokenURI payload is not base64 JSON: {e}") from e
    if not isinstance(metadata, dict):
        raise MetadataError("tokenURI payload is not a JSON object")
    return metadata


def embedded_document(metadata: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    document = metadata.get(DOCUMENT_KEY)
    return document if isinstance(document, dict) else None


def extract_content_hash(metadata: Mapping[str, Any]) -> Optional[str]:
    """Content hash from the embedded verification block, else the attribute."""
    document = embedded_document(metadata) or {}
    verification = document.get("verification")
    if isinstance(verification, dict) and verification.get("contentHash"):
        return verification["contentHash"]

    for attribute in metadata.get("attributes") or []:
        if isinstance(attribute, dict) and attribute.get("trait_type") == CONTENT_HASH_TRAIT:
            return attribute.get("value")
    return None


def _source_attestation(metadata: Mapping[str, Any]) -> Dict[str, Any]:
    document = embedded_document(metadata) or {}
    block = document.get("sourceAttestation")
    return block if isinstance(block, dict) else {}


def extract_attestation_hash(metadata: Mapping[str, Any]) -> Optional[str]:
    block = _source_attestation(metadata)
    return block.get("attestationHash") or block.get("farmAttestationHash")


def extract_source_token_ids(metadata: Mapping[str, Any]) -> Optional[List[int]]:
    block = _source_attestation(metadata)
    token_ids = block.get("sourceTokenIds", block.get("farmTokenIds"))
    if token_ids is None:
        return None
    if not isinstance(token_ids, list):
        raise MetadataError("sourceTokenIds is not a list", details={"value": str(token_ids)[:80]})
    try:
        return [int(t) for t in token_ids]
    except (TypeError, ValueError) as e:
        raise MetadataError(f"sourceTokenIds holds a non-integer id: {e}") from e
