"""
Logging utilities for minting and verification runs.

Features:
- Structured logging for every step of a mint (upload, submit, confirm, checkpoint)
- Operation timing via an async context manager
- JSON-lines audit trail for long-running batch runs
- Address masking for shared logs
"""
from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class OperationType(str, Enum):
    """Types of operations recorded by the mint logger."""
    ARTIFACT_UPLOAD = "artifact_upload"
    GAS_ESTIMATION = "gas_estimation"
    TRANSACTION_SUBMIT = "transaction_submit"
    TRANSACTION_CONFIRM = "transaction_confirm"
    CHECKPOINT_WRITE = "checkpoint_write"
    ATTESTATION = "attestation"
    VERIFICATION = "verification"
    RERENDER = "rerender"


@dataclass
class OperationContext:
    """Context for a single timed operation."""
    operation_id: str
    operation_type: OperationType
    subject: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    success: bool = False
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def complete(self, success: bool = True, error: Optional[str] = None) -> None:
        """Mark operation as complete."""
        self.completed_at = datetime.now(timezone.utc)
        self.duration_ms = (self.completed_at - self.started_at).total_seconds() * 1000
        self.success = success
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "operation_type": self.operation_type.value,
            "subject": self.subject,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error": self.error,
            "metadata": self.metadata,
        }


class MintLogger:
    """
    Structured logger for batch-mint runs.

    Every state change that matters for a post-mortem (submission, confirmation,
    failure, checkpoint write) is logged with a structured ``extra`` payload and,
    when an audit path is configured, appended to a JSON-lines file.
    """

    def __init__(
        self,
        name: str = "coa_mint",
        audit_log_path: Optional[str] = None,
        mask_addresses: bool = False,
    ):
        self._logger = logging.getLogger(name)
        self._audit_log_path = audit_log_path
        self._mask = mask_addresses
        self._operation_counter = 0
        self._counts: Dict[str, int] = {}

    def _generate_operation_id(self) -> str:
        self._operation_counter += 1
        return f"op_{int(time.time() * 1000)}_{self._operation_counter}"

    def _bump(self, key: str) -> None:
        self._counts[key] = self._counts.get(key, 0) + 1

    @asynccontextmanager
    async def operation_context(
        self,
        operation_type: OperationType,
        subject: str,
        **metadata,
    ):
        """
        Time an operation and log its outcome.

        Usage:
            async with mint_logger.operation_context(OperationType.ARTIFACT_UPLOAD, "BAG-001") as ctx:
                ctx.metadata["url"] = url
        """
        ctx = OperationContext(
            operation_id=self._generate_operation_id(),
            operation_type=operation_type,
            subject=subject,
            metadata=metadata,
        )
        self._logger.debug(f"Starting {operation_type.value} for {subject}")

        try:
            yield ctx
            ctx.complete(success=True)
        except BaseException as e:
            ctx.complete(success=False, error=str(e) or type(e).__name__)
            raise
        finally:
            self._logger.log(
                logging.INFO if ctx.success else logging.ERROR,
                f"Completed {operation_type.value} for {subject} in {ctx.duration_ms:.0f}ms "
                f"(success={ctx.success})",
                extra={"operation": ctx.to_dict()},
            )

    def log_upload(self, identifier: str, url: str, size: int) -> None:
        self._bump("uploads")
        self._logger.debug(
            f"Uploaded artifact for {identifier}: {url} ({size} bytes)",
            extra={"upload": {"identifier": identifier, "url": url, "size": size}},
        )

    def log_mint_submitted(
        self,
        identifier: str,
        tx_hash: str,
        nonce: int,
        gas_limit: int,
        attempt: int,
        to_address: str,
    ) -> None:
        self._bump("submitted")
        entry = {
            "identifier": identifier,
            "tx_hash": tx_hash,
            "nonce": nonce,
            "gas_limit": gas_limit,
            "attempt": attempt,
            "to_address": self._mask_address(to_address) if self._mask else to_address,
        }
        self._logger.info(
            f"Mint submitted: {identifier} tx={tx_hash} nonce={nonce} (attempt {attempt})",
            extra={"transaction": entry},
        )
        self._write_audit_log("mint_submitted", entry)

    def log_mint_confirmed(
        self,
        identifier: str,
        token_id: int,
        tx_hash: str,
        gas_used: int,
        block_number: Optional[int] = None,
    ) -> None:
        self._bump("confirmed")
        entry = {
            "identifier": identifier,
            "token_id": token_id,
            "tx_hash": tx_hash,
            "gas_used": gas_used,
            "block_number": block_number,
        }
        self._logger.info(
            f"{identifier} -> #{token_id} (gas: {gas_used})",
            extra={"transaction": entry},
        )
        self._write_audit_log("mint_confirmed", entry)

    def log_mint_retry(self, identifier: str, attempt: int, max_attempts: int, error: str) -> None:
        self._bump("retries")
        self._logger.warning(
            f"{identifier} timeout (attempt {attempt}/{max_attempts}), retrying...",
            extra={"retry": {"identifier": identifier, "attempt": attempt, "error": error}},
        )
        self._write_audit_log("mint_retry", {
            "identifier": identifier,
            "attempt": attempt,
            "error": error,
        })

    def log_mint_failed(self, identifier: str, error: str, attempts: int) -> None:
        self._bump("failed")
        self._logger.error(
            f"Mint FAILED on {identifier} after {attempts} attempt(s): {error}",
            extra={"transaction": {"identifier": identifier, "error": error, "attempts": attempts}},
        )
        self._write_audit_log("mint_failed", {
            "identifier": identifier,
            "error": error,
            "attempts": attempts,
        })

    def log_checkpoint_written(self, identifier: str, total: int) -> None:
        self._bump("checkpointed")
        self._logger.debug(
            f"Checkpoint written for {identifier} ({total} total)",
            extra={"checkpoint": {"identifier": identifier, "total": total}},
        )

    def log_verification_failure(self, identifier: str, token_id: Optional[int], reason: str) -> None:
        self._bump("verification_failures")
        self._logger.error(
            f"{identifier} #{token_id} failed verification: {reason}",
            extra={"verification": {"identifier": identifier, "token_id": token_id, "reason": reason}},
        )
        self._write_audit_log("verification_failure", {
            "identifier": identifier,
            "token_id": token_id,
            "reason": reason,
        })

    @staticmethod
    def _mask_address(address: str) -> str:
        """Mask middle portion of address for privacy."""
        if len(address) < 10:
            return address
        return f"{address[:6]}...{address[-4:]}"

    def _write_audit_log(self, event_type: str, data: Dict[str, Any]) -> None:
        if not self._audit_log_path:
            return
        audit_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "data": data,
        }
        try:
            with open(self._audit_log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(audit_entry, default=str) + "\n")
        except OSError as e:
            self._logger.error(f"Failed to write audit log: {e}")

    def get_counts(self) -> Dict[str, int]:
        """Per-event counters for the current process."""
        return dict(self._counts)


def setup_logging(
    level: str = "INFO",
    format_string: Optional[str] = None,
    json_format: bool = False,
) -> None:
    """
    Set up logging configuration.

    Args:
        level: Log level
        format_string: Custom format string
        json_format: Use JSON formatting
    """
    if format_string is None:
        if json_format:
            format_string = '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "name": "%(name)s", "message": "%(message)s"}'
        else:
            format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=format_string,
    )

    logging.getLogger("coa_mint").setLevel(getattr(logging, level.upper()))
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("boto3").setLevel(logging.WARNING)
