"""
Batch mint orchestration.

Drives every manifest entry that is not yet checkpointed through
upload -> metadata -> mint -> checkpoint, in manifest order and in
sub-batches. Only artifact uploads run concurrently; mints are strictly
sequential and each confirmed mint is checkpointed before the next
submission, so a restart resumes exactly where the previous run stopped.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .checkpoint import CheckpointEntry, CheckpointStore
from .config import CoaSettings
from .exceptions import ChainRejection, ChainTimeout, MintAborted
from .logging_utils import MintLogger, OperationType
from .manifest import Manifest, ManifestEntry
from .metadata import build_token_metadata, encode_token_uri
from .state_machine import CertificateMint, MintEvent
from .storage import ArtifactRenderer, ArtifactStore, artifact_key, upload_artifacts

logger = logging.getLogger(__name__)


@dataclass
class MintRunSummary:
    """Outcome of one orchestrator run."""
    total: int
    already_minted: int
    minted: int = 0
    token_ids: List[int] = field(default_factory=list)
    gas_used: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @property
    def remaining(self) -> int:
        return self.total - self.already_minted - self.minted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "alreadyMinted": self.already_minted,
            "minted": self.minted,
            "remaining": self.remaining,
            "tokenIds": self.token_ids,
            "gasUsed": self.gas_used,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }


class BatchMintOrchestrator:
    """
    Resumable batch minter.

    Usage:
        orchestrator = BatchMintOrchestrator(manifest, chain_client, checkpoint, store, settings)
        summary = await orchestrator.run()
        await orchestrator.rerender_all()
        orchestrator.write_mint_log("mint-log.json")
    """

    def __init__(
        self,
        manifest: Manifest,
        chain_client: Any,
        checkpoint: CheckpointStore,
        artifact_store: ArtifactStore,
        settings: CoaSettings,
        renderer: Optional[ArtifactRenderer] = None,
        mint_logger: Optional[MintLogger] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.manifest = manifest
        self.chain = chain_client
        self.checkpoint = checkpoint
        self.store = artifact_store
        self.settings = settings
        self.renderer = renderer
        self.mint_logger = mint_logger or MintLogger(audit_log_path=settings.audit_log_path)
        self._sleep = sleep

    def pending_entries(self) -> List[ManifestEntry]:
        """Manifest entries without a checkpoint record, in manifest order."""
        return [entry for entry in self.manifest if not self.checkpoint.contains(entry.identifier)]

    async def run(self) -> MintRunSummary:
        mint_to = self.settings.require_mint_to()
        pending = self.pending_entries()
        summary = MintRunSummary(total=len(self.manifest), already_minted=len(self.manifest) - len(pending))

        balance = await self.chain.get_balance()
        logger.info(f"Wallet {self.chain.address} balance: {balance}")
        logger.info(f"{summary.already_minted} already minted, {len(pending)} remaining")

        batch_size = self.settings.mint.batch_size
        first_batch = self.checkpoint.last_batch_index + 1
        for offset in range(0, len(pending), batch_size):
            batch = pending[offset:offset + batch_size]
            batch_index = first_batch + offset // batch_size
            logger.info(
                f"Batch {batch_index}: {batch[0].identifier} - {batch[-1].identifier} ({len(batch)} certificates)"
            )

            certs = await self._prepare_batch(batch)
            for cert in certs:
                entry = await self._mint_one(cert, mint_to, summary)
                summary.minted += 1
                summary.token_ids.append(entry.token_id)

            self.checkpoint.mark_batch(batch_index)

        summary.finished_at = datetime.now(timezone.utc)
        logger.info(f"Minting complete: {summary.minted} minted this run, {len(self.checkpoint)} total")
        return summary

    async def _prepare_batch(self, batch: List[ManifestEntry]) -> List[CertificateMint]:
        certs = [CertificateMint(e.identifier, e.content_hash, e.gve_code) for e in batch]

        items = [
            (artifact_key(e.gve_code, e.content_hash), self.manifest.load_artifact(e))
            for e in batch
        ]
        async with self.mint_logger.operation_context(
            OperationType.ARTIFACT_UPLOAD, f"{batch[0].identifier}..{batch[-1].identifier}", count=len(items)
        ):
            uploads = await upload_artifacts(self.store, items, self.settings.mint.upload_concurrency)

        issuer = self.settings.issuer
        for cert, entry, upload in zip(certs, batch, uploads):
            cert.artifact_url = upload.url
            cert.apply(MintEvent.ARTIFACT_UPLOADED)
            self.mint_logger.log_upload(cert.identifier, upload.url, upload.size)

            document = self.manifest.load_document(entry)
            metadata = build_token_metadata(
                document,
                content_hash=entry.content_hash,
                gve_code=entry.gve_code,
                artifact_url=upload.url,
                issuer_name=issuer.name,
                product_name=issuer.product_name,
                network_name=issuer.network_name,
                standard=issuer.standard,
                external_url_base=issuer.external_url_base,
            )
            cert.token_uri = encode_token_uri(metadata)
            cert.apply(MintEvent.METADATA_BUILT)
        return certs

    async def _mint_one(self, cert: CertificateMint, mint_to: str, summary: MintRunSummary) -> CheckpointEntry:
        mint = self.settings.mint

        def on_submitted(tx_hash: str, nonce: int, gas_limit: int) -> None:
            cert.tx_hash = tx_hash
            cert.apply(MintEvent.SUBMITTED)
            self.mint_logger.log_mint_submitted(cert.identifier, tx_hash, nonce, gas_limit, cert.attempts, mint_to)

        result = None
        for attempt in range(1, mint.max_attempts + 1):
            try:
                result = await self.chain.mint_uri(
                    mint_to,
                    cert.token_uri,
                    gas_multiplier=mint.gas_multiplier,
                    receipt_timeout=mint.receipt_timeout_seconds,
                    on_submitted=on_submitted,
                )
                break
            except ChainTimeout as e:
                cert.apply(MintEvent.TIMED_OUT)
                if attempt >= mint.max_attempts:
                    cert.apply(MintEvent.FAILED)
                    self.mint_logger.log_mint_failed(cert.identifier, str(e), attempt)
                    raise MintAborted(cert.identifier, attempt, e) from e
                self.mint_logger.log_mint_retry(cert.identifier, attempt, mint.max_attempts, str(e))
                await self._sleep(mint.retry_delay_seconds)
            except ChainRejection as e:
                cert.apply(MintEvent.REJECTED)
                self.mint_logger.log_mint_failed(cert.identifier, str(e), attempt)
                raise MintAborted(cert.identifier, attempt, e) from e
            except Exception as e:
                cert.apply(MintEvent.FAILED)
                self.mint_logger.log_mint_failed(cert.identifier, str(e), attempt)
                raise MintAborted(cert.identifier, attempt, e) from e

        cert.token_id = result.token_id
        cert.tx_hash = result.tx_hash
        cert.apply(MintEvent.CONFIRMED)
        summary.gas_used += result.gas_used
        self.mint_logger.log_mint_confirmed(
            cert.identifier, result.token_id, result.tx_hash, result.gas_used, result.block_number
        )

        entry = CheckpointEntry(token_id=result.token_id, tx_hash=result.tx_hash, artifact_url=cert.artifact_url)
        self.checkpoint.record(cert.identifier, entry)
        cert.apply(MintEvent.CHECKPOINTED)
        self.mint_logger.log_checkpoint_written(cert.identifier, len(self.checkpoint))
        return entry

    async def rerender_all(self) -> int:
        """Re-render every minted certificate with its token id and re-upload it.

        Keys are deterministic, so running this twice leaves the same objects.
        Returns the number of artifacts uploaded.
        """
        if self.renderer is None:
            logger.info("No artifact renderer configured, skipping re-render pass")
            return 0

        items = []
        for entry in self.manifest:
            record = self.checkpoint.get(entry.identifier)
            if record is None:
                continue
            document = self.manifest.load_document(entry)
            body = self.renderer.render(document, entry.content_hash, entry.gve_code, token_id=record.token_id)
            items.append((artifact_key(entry.gve_code, entry.content_hash), body))

        async with self.mint_logger.operation_context(OperationType.RERENDER, "all", count=len(items)):
            await upload_artifacts(self.store, items, self.settings.mint.upload_concurrency)
        logger.info(f"Re-rendered {len(items)} artifacts with token ids")
        return len(items)

    def build_mint_log(self) -> Dict[str, Any]:
        certificates = []
        for entry in self.manifest:
            record = self.checkpoint.get(entry.identifier)
            certificates.append({
                "identifier": entry.identifier,
                "gveCode": entry.gve_code,
                "contentHash": entry.content_hash,
                "tokenId": record.token_id if record else None,
                "txHash": record.tx_hash if record else None,
                "artifactUrl": record.artifact_url if record else None,
            })
        return {
            "generatedAt": datetime.now(timezone.utc).isoformat(),
            "chainId": getattr(self.chain, "chain_id", None),
            "contract": getattr(self.chain, "contract_address", None),
            "total": len(self.manifest),
            "minted": sum(1 for c in certificates if c["tokenId"] is not None),
            "certificates": certificates,
        }

    def write_mint_log(self, path: Path | str) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.build_mint_log(), indent=2), encoding="utf-8")
        logger.info(f"Mint log written to {path}")
        return path
