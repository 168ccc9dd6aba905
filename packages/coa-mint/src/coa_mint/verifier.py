"""
Independent post-mint verification.

Re-reads every checkpointed token from chain and checks that what is stored
there is what was meant to be minted: the embedded content hash, the
source attestation hash and source token ids, and a recomputation of the
content hash from the embedded document itself. Verification never stops at
the first problem; every failure is collected into the report.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .attestation import SourceAttestation, verify_attestation
from .checkpoint import CheckpointStore
from .content_hash import compute_content_hash
from .exceptions import CoaError, VerificationMismatch
from .logging_utils import MintLogger, OperationType
from .manifest import Manifest
from .metadata import (
    decode_token_uri,
    embedded_document,
    extract_attestation_hash,
    extract_content_hash,
    extract_source_token_ids,
)

logger = logging.getLogger(__name__)


@dataclass
class VerificationFailure:
    identifier: str
    token_id: Optional[int]
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"identifier": self.identifier, "tokenId": self.token_id, "reason": self.reason}


@dataclass
class VerificationReport:
    total_checked: int = 0
    verified: int = 0
    failures: List[VerificationFailure] = field(default_factory=list)
    attestation_verified: bool = False
    verified_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def ok(self) -> bool:
        return not self.failures and self.attestation_verified

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verifiedAt": self.verified_at.isoformat(),
            "totalChecked": self.total_checked,
            "verified": self.verified,
            "failed": self.failed,
            "failures": [f.to_dict() for f in self.failures],
            "attestationVerified": self.attestation_verified,
        }

    def save(self, path: Path | str) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")


class ChainVerifier:
    """Compares on-chain token metadata against expected hashes."""

    def __init__(self, chain_client: Any, mint_logger: Optional[MintLogger] = None):
        self.chain = chain_client
        self.mint_logger = mint_logger or MintLogger()

    async def verify_token(
        self,
        token_id: int,
        attestation: SourceAttestation,
        expected_content_hash: Optional[str] = None,
    ) -> None:
        """Check one token; raises on the first mismatch found."""
        metadata = decode_token_uri(await self.chain.token_uri(token_id))

        onchain_hash = extract_content_hash(metadata)
        if not onchain_hash:
            raise VerificationMismatch("content hash", expected_content_hash, None)

        document = embedded_document(metadata)
        if document is not None:
            recomputed = compute_content_hash(document)
            if recomputed != onchain_hash:
                raise VerificationMismatch("embedded document hash", onchain_hash, recomputed)

        if expected_content_hash is not None and onchain_hash != expected_content_hash:
            raise VerificationMismatch("content hash", expected_content_hash, onchain_hash)

        onchain_attestation = extract_attestation_hash(metadata)
        if onchain_attestation != attestation.attestation_hash:
            raise VerificationMismatch("attestation hash", attestation.attestation_hash, onchain_attestation)

        source_ids = extract_source_token_ids(metadata)
        if source_ids is not None and attestation.source_token_ids:
            if sorted(source_ids) != sorted(attestation.source_token_ids):
                raise VerificationMismatch(
                    "source token ids", len(attestation.source_token_ids), len(source_ids)
                )

    async def verify_all(
        self,
        checkpoint: CheckpointStore,
        attestation: SourceAttestation,
        manifest: Optional[Manifest] = None,
    ) -> VerificationReport:
        report = VerificationReport()
        report.attestation_verified = verify_attestation(attestation)
        if report.attestation_verified:
            logger.info(f"Source attestation recomputed OK: {attestation.attestation_hash}")
        else:
            logger.error(f"Source attestation does not match its inputs: {attestation.attestation_hash}")

        async with self.mint_logger.operation_context(
            OperationType.VERIFICATION, "checkpoint", count=len(checkpoint)
        ):
            for identifier, record in checkpoint.items():
                report.total_checked += 1
                expected = None
                if manifest is not None:
                    entry = manifest.get(identifier)
                    if entry is None:
                        self._fail(report, identifier, record.token_id, "not in manifest")
                        continue
                    expected = entry.content_hash

                try:
                    await self.verify_token(record.token_id, attestation, expected)
                except CoaError as e:
                    self._fail(report, identifier, record.token_id, e.message)
                    continue
                except Exception as e:
                    logger.exception(f"Unexpected error verifying {identifier} (token {record.token_id})")
                    self._fail(report, identifier, record.token_id, f"{type(e).__name__}: {e}")
                    continue
                report.verified += 1

        logger.info(f"Verified {report.verified}/{report.total_checked} tokens ({report.failed} failed)")
        return report

    def _fail(self, report: VerificationReport, identifier: str, token_id: Optional[int], reason: str) -> None:
        report.failures.append(VerificationFailure(identifier, token_id, reason))
        self.mint_logger.log_verification_failure(identifier, token_id, reason)
