"""Public certificate document ("publicJson") construction."""
from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .attestation import SourceAttestation
from .content_hash import compute_content_hash, derive_gve
from .exceptions import InvalidInput
from .manifest import DEFAULT_ARTIFACTS_DIR, DEFAULT_DOCUMENTS_DIR, Manifest, ManifestEntry

logger = logging.getLogger(__name__)

SCHEMA_ID = "urn:blockticity:coa:public"
SCHEMA_VERSION = "1.0.0"

_NON_SLUG = re.compile(r"[^a-z0-9]")
_UNDERSCORE_RUN = re.compile(r"_+")


def slugify_label(label: str) -> str:
    """``"Lot No. / ICO No."`` -> ``"lot_no_ico_no_"``."""
    return _UNDERSCORE_RUN.sub("_", _NON_SLUG.sub("_", label.lower()))


def issuer_did(issuer_name: str) -> str:
    return "did:web:" + re.sub(r"[^a-z0-9]", "", issuer_name.lower()) + ".blockticity.io"


def build_public_document(
    identifier: str,
    fields: Sequence[Mapping[str, Any]],
    issuer: Mapping[str, Any],
    chain: Mapping[str, Any],
    attestation: SourceAttestation,
    identifier_label: str = "Bag Serial",
    standard: str = "ASTM D8558",
) -> Dict[str, Any]:
    """Build the ordered public document for one derived certificate.

    Args:
        identifier: Certificate identifier, e.g. ``"BAG-001"``
        fields: Ordered ``{"label", "value"}`` product fields
        issuer: ``{"name", "address"}``
        chain: ``{"chainId", "name", "contract"}``
        attestation: Source attestation linking this certificate to its inputs
    """
    all_fields: List[Dict[str, Any]] = [
        {"label": identifier_label, "value": identifier},
        *({"label": f["label"], "value": f["value"]} for f in fields),
        {"label": "Source Attestation", "value": attestation.attestation_hash},
    ]
    product_data = {slugify_label(f["label"]): f["value"] for f in all_fields}

    return {
        "schema": {
            "id": SCHEMA_ID,
            "version": SCHEMA_VERSION,
            "standard": standard,
        },
        "verificationRecipe": {
            "id": "urn:blockticity:verify-recipe:v1",
            "contentHash": {
                "canonicalization": "RFC8785-JCS",
                "algo": "sha256",
                "profile": "public-v1",
            },
            "anchors": [
                {"type": "signature"},
                {"type": "chain", "method": chain.get("name", "")},
            ],
        },
        "chain": {
            "chainId": chain.get("chainId"),
            "name": chain.get("name"),
            "contract": chain.get("contract"),
        },
        "issuer": {
            "name": issuer["name"],
            "id": issuer_did(issuer["name"]),
            "address": issuer.get("address"),
        },
        "identifier": {
            "label": identifier_label,
            "value": identifier,
        },
        "productData": product_data,
        "fields": all_fields,
        "sourceAttestation": {
            "attestationHash": attestation.attestation_hash,
            "sourceCount": len(attestation.source_token_ids),
            "chain": {
                "chainId": chain.get("chainId"),
                "contract": chain.get("contract"),
            },
            "sourceTokenIds": list(attestation.source_token_ids),
        },
    }


def attach_verification(
    document: Mapping[str, Any],
    content_hash: Optional[str] = None,
    issued_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Return a copy of ``document`` with its verification block filled in.

    Only excluded fields are touched, so the content hash is unchanged.
    """
    content_hash = content_hash or compute_content_hash(document)
    issued_at = issued_at or datetime.now(timezone.utc)
    updated = dict(document)
    updated["verification"] = {
        "contentHash": content_hash,
        "gveCode": derive_gve(content_hash),
    }
    updated["issuedAt"] = issued_at.isoformat()
    return updated


def write_public_documents(
    certificates: Sequence[Mapping[str, Any]],
    attestation: SourceAttestation,
    issuer: Mapping[str, Any],
    chain: Mapping[str, Any],
    out_dir: Path | str,
    identifier_label: str = "Bag Serial",
    standard: str = "ASTM D8558",
    issued_at: Optional[datetime] = None,
) -> Manifest:
    """Write one public document per certificate plus ``manifest.json``.

    Each certificate is ``{"identifier", "fields", "serial"?, "lotNumber"?}``.
    Documents land in ``<out_dir>/publicJson/``; artifact files are expected
    under ``<out_dir>/svg/`` as ``<identifier>.svg``.
    """
    out_dir = Path(out_dir)
    documents_dir = out_dir / DEFAULT_DOCUMENTS_DIR
    documents_dir.mkdir(parents=True, exist_ok=True)
    issued_at = issued_at or datetime.now(timezone.utc)

    entries: List[ManifestEntry] = []
    for certificate in certificates:
        try:
            identifier = certificate["identifier"]
            fields = certificate.get("fields", [])
            document = build_public_document(
                identifier, fields, issuer, chain, attestation,
                identifier_label=identifier_label, standard=standard,
            )
        except (KeyError, TypeError) as e:
            raise InvalidInput(f"Malformed certificate entry: {e}", field="certificates") from e

        content_hash = compute_content_hash(document)
        document = attach_verification(document, content_hash, issued_at)
        file_name = f"{identifier}.json"
        (documents_dir / file_name).write_text(json.dumps(document, indent=2), encoding="utf-8")
        entries.append(ManifestEntry(
            identifier=identifier,
            public_json_file=file_name,
            content_hash=content_hash,
            gve_code=derive_gve(content_hash),
            artifact_file=f"{identifier}.svg",
            serial=certificate.get("serial"),
            lot_number=certificate.get("lotNumber"),
        ))

    manifest = Manifest(entries, documents_dir, out_dir / DEFAULT_ARTIFACTS_DIR, extra={
        "attestationHash": attestation.attestation_hash,
        "generatedAt": issued_at.isoformat(),
    })
    payload = {**manifest.extra, "entries": [entry.to_dict() for entry in entries]}
    (out_dir / "manifest.json").write_text(json.dumps(payload, indent=2), encoding="utf-8")
    logger.info(f"Wrote {len(entries)} public documents and manifest to {out_dir}")
    return manifest
