"""Collective attestation over a set of certificate content hashes.

An attestation hash fingerprints a fixed collection of source certificates
(for example every farm COA feeding into a lot of derived bag COAs). It is
embedded in each derived certificate's ``sourceAttestation`` block and can be
recomputed from its stored inputs at any time as a tamper check.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .content_hash import derive_gve, sha256_hex
from .exceptions import AttestationSourceError, DeterminismFault, EmptyAttestationInput, MetadataError
from .metadata import decode_token_uri, extract_content_hash

logger = logging.getLogger(__name__)


def compute_attestation_hash(hashes: Optional[Iterable[str]]) -> str:
    """Hash the sorted, separator-less concatenation of ``hashes``.

    Sorting uses plain string ordering, so the result is independent of
    input order but sensitive to every element and to membership.
    """
    if hashes is None:
        raise EmptyAttestationInput()
    ordered = sorted(hashes)
    if not ordered:
        raise EmptyAttestationInput()
    return sha256_hex("".join(ordered))


def compute_attestation_checked(hashes: Iterable[str]) -> str:
    """Compute the attestation twice; differing outputs are a DeterminismFault."""
    hashes = list(hashes) if hashes is not None else None
    first = compute_attestation_hash(hashes)
    second = compute_attestation_hash(hashes)
    if first != second:
        raise DeterminismFault(first, second, what="attestation hash")
    return first


@dataclass
class SourceAttestation:
    """Persisted attestation with the inputs needed to recompute it."""
    attestation_hash: str
    content_hashes: List[str]
    source_token_ids: List[int] = field(default_factory=list)
    computed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    chain_id: Optional[int] = None
    contract: Optional[str] = None

    @property
    def total_sources(self) -> int:
        return len(self.content_hashes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attestationHash": self.attestation_hash,
            "sourceTokenIds": self.source_token_ids,
            "contentHashes": self.content_hashes,
            "computedAt": self.computed_at.isoformat(),
            "chainId": self.chain_id,
            "contract": self.contract,
            "totalSources": self.total_sources,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceAttestation":
        # Older pipeline runs wrote farm-specific key names.
        attestation_hash = data.get("attestationHash") or data.get("farmAttestationHash")
        token_ids = data.get("sourceTokenIds", data.get("farmTokenIds", []))
        computed_at = data.get("computedAt")
        return cls(
            attestation_hash=attestation_hash or "",
            content_hashes=list(data.get("contentHashes", [])),
            source_token_ids=[int(t) for t in token_ids],
            computed_at=(
                datetime.fromisoformat(computed_at.replace("Z", "+00:00"))
                if computed_at
                else datetime.now(timezone.utc)
            ),
            chain_id=data.get("chainId"),
            contract=data.get("contract"),
        )

    @classmethod
    def load(cls, path: Path | str) -> "SourceAttestation":
        with open(path, encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    def save(self, path: Path | str) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")


def verify_attestation(record: SourceAttestation) -> bool:
    """Recompute ``record`` from its stored inputs and compare bit-for-bit."""
    if not record.content_hashes:
        return False
    return compute_attestation_hash(record.content_hashes) == record.attestation_hash


async def collect_source_attestation(
    chain_client: Any,
    token_ids: Iterable[int],
) -> SourceAttestation:
    """Read every source token from chain and build its attestation.

    Any token whose metadata cannot be read or carries no content hash
    aborts the whole computation; a partial attestation would silently
    fingerprint the wrong collection.
    """
    ordered_ids = sorted(int(t) for t in token_ids)
    if not ordered_ids:
        raise EmptyAttestationInput("No source token ids provided")

    logger.info(
        f"Fetching {len(ordered_ids)} source tokenURIs "
        f"(#{ordered_ids[0]} - #{ordered_ids[-1]})"
    )

    content_hashes: List[str] = []
    errors: List[Dict[str, Any]] = []

    for token_id in ordered_ids:
        try:
            metadata = decode_token_uri(await chain_client.token_uri(token_id))
            content_hash = extract_content_hash(metadata)
            if not content_hash:
                raise MetadataError(f"No content hash found in token {token_id} metadata")
        except Exception as e:
            logger.error(f"Source token #{token_id} unreadable: {e}")
            errors.append({"tokenId": token_id, "error": str(e)})
            continue
        content_hashes.append(content_hash)
        logger.debug(f"Source token #{token_id} {derive_gve(content_hash)}")

    if errors:
        raise AttestationSourceError(errors)

    attestation_hash = compute_attestation_checked(content_hashes)
    logger.info(f"Source attestation hash: {attestation_hash}")

    return SourceAttestation(
        attestation_hash=attestation_hash,
        content_hashes=content_hashes,
        source_token_ids=ordered_ids,
        chain_id=getattr(chain_client, "chain_id", None),
        contract=getattr(chain_client, "contract_address", None),
    )
