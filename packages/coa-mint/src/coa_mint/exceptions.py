"""Unified exception hierarchy for coa-mint.

All coa-mint exceptions inherit from CoaError, enabling:
- Consistent handling at the CLI boundary (print + non-zero exit)
- Structured error payloads with machine-readable codes
- A clear split between retryable chain conditions and fatal ones

Usage:
    from coa_mint.exceptions import CoaError, ChainTimeout

    try:
        result = await client.mint_uri(to, uri)
    except ChainTimeout:
        ...  # retry with fixed backoff

All exceptions have:
- error_code: Machine-readable error code (e.g., "CHAIN_TIMEOUT")
- message: Human-readable error message
- details: Optional additional context dictionary
- to_dict(): Convert to a JSON-serializable payload
"""
from __future__ import annotations

from typing import Any, Optional


class CoaError(Exception):
    """Base exception for all coa-mint errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Optional additional context
    """

    error_code: str = "COA_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a report/log payload."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Input & Hashing Errors
# =============================================================================

class InvalidInput(CoaError):
    """Invalid input data or parameters."""

    error_code = "INVALID_INPUT"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class EmptyAttestationInput(InvalidInput):
    """Attestation aggregation attempted over zero content hashes."""

    error_code = "EMPTY_ATTESTATION_INPUT"

    def __init__(self, message: str = "No content hashes provided") -> None:
        super().__init__(message, field="hashes")


class InvalidContentHash(InvalidInput):
    """Value is not a well-formed 0x-prefixed content hash."""

    error_code = "INVALID_CONTENT_HASH"

    def __init__(self, value: Any, reason: str = "malformed content hash") -> None:
        super().__init__(f"{reason}: {value!r}", details={"value": repr(value)})


class CanonicalizationError(InvalidInput):
    """Document contains a value with no canonical JSON form."""

    error_code = "CANONICALIZATION_ERROR"


class DeterminismFault(CoaError):
    """Recomputing a hash from identical input produced a different output."""

    error_code = "DETERMINISM_FAULT"

    def __init__(self, first: str, second: str, what: str = "content hash") -> None:
        super().__init__(
            f"{what} is not deterministic: {first} != {second}",
            details={"first": first, "second": second, "what": what},
        )


# =============================================================================
# Configuration & Local State Errors
# =============================================================================

class ConfigurationError(CoaError):
    """Required configuration is missing or invalid at startup."""

    error_code = "CONFIGURATION_ERROR"

    def __init__(
        self,
        message: str,
        setting: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if setting:
            details["setting"] = setting
        super().__init__(message, details=details)


class ManifestError(CoaError):
    """Manifest file is unreadable or inconsistent with its documents."""

    error_code = "MANIFEST_ERROR"


class CheckpointError(CoaError):
    """Checkpoint file is unreadable, or an existing entry would be rewritten."""

    error_code = "CHECKPOINT_ERROR"


class StorageError(CoaError):
    """Artifact upload to object storage failed."""

    error_code = "STORAGE_ERROR"


class MetadataError(CoaError):
    """Token metadata could not be encoded or decoded."""

    error_code = "METADATA_ERROR"


class InvalidTransition(CoaError):
    """Mint state machine received an event that is not valid in its state."""

    error_code = "INVALID_TRANSITION"

    def __init__(self, state: str, event: str) -> None:
        super().__init__(
            f"Event {event} is not valid in state {state}",
            details={"state": state, "event": event},
        )


# =============================================================================
# Chain Errors
# =============================================================================

class ChainError(CoaError):
    """Base class for blockchain-related errors."""

    error_code = "CHAIN_ERROR"

    def __init__(
        self,
        message: str,
        tx_hash: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if tx_hash:
            details["tx_hash"] = tx_hash
        self.tx_hash = tx_hash
        super().__init__(message, details=details)


class RPCError(ChainError):
    """JSON-RPC call to the chain node failed."""

    error_code = "RPC_ERROR"

    def __init__(
        self,
        message: str,
        method: Optional[str] = None,
        rpc_error: Optional[Any] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if method:
            details["method"] = method
        if rpc_error is not None:
            details["rpc_error"] = rpc_error
        self.method = method
        super().__init__(message, details=details)


class ChainTimeout(ChainError):
    """Transaction receipt was not observed within the timeout window."""

    error_code = "CHAIN_TIMEOUT"

    def __init__(self, tx_hash: Optional[str], timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Transaction {tx_hash} not confirmed after {timeout_seconds:g}s",
            tx_hash=tx_hash,
            details={"timeout_seconds": timeout_seconds},
        )


class ChainRejection(ChainError):
    """Transaction reverted or was refused by the node."""

    error_code = "CHAIN_REJECTION"

    def __init__(
        self,
        message: str,
        tx_hash: Optional[str] = None,
        revert_reason: Optional[str] = None,
    ) -> None:
        self.revert_reason = revert_reason
        details = {"revert_reason": revert_reason} if revert_reason else None
        super().__init__(message, tx_hash=tx_hash, details=details)


class MintAborted(CoaError):
    """A batch run halted; the checkpoint holds every mint confirmed so far."""

    error_code = "MINT_ABORTED"

    def __init__(self, identifier: str, attempts: int, cause: BaseException) -> None:
        self.identifier = identifier
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            f"Mint failed for {identifier} after {attempts} attempt(s): {cause}",
            details={
                "identifier": identifier,
                "attempts": attempts,
                "cause": type(cause).__name__,
            },
        )


# =============================================================================
# Verification Errors
# =============================================================================

class VerificationMismatch(CoaError):
    """On-chain content differs from the expected off-chain value."""

    error_code = "VERIFICATION_MISMATCH"

    def __init__(
        self,
        what: str,
        expected: Any,
        actual: Any,
    ) -> None:
        self.what = what
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{what} mismatch: expected {expected}, got {actual}",
            details={"what": what, "expected": expected, "actual": actual},
        )


class AttestationSourceError(CoaError):
    """One or more source tokens could not be read while building an attestation."""

    error_code = "ATTESTATION_SOURCE_ERROR"

    def __init__(self, errors: list[dict[str, Any]]) -> None:
        self.errors = errors
        super().__init__(
            f"{len(errors)} source token(s) could not be read",
            details={"errors": errors},
        )
