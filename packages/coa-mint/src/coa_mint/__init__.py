"""Content hashing, attestation, batch minting and verification exports."""

from .attestation import (
    SourceAttestation,
    collect_source_attestation,
    compute_attestation_checked,
    compute_attestation_hash,
    verify_attestation,
)
from .canonical import canonical_bytes, canonicalize
from .chain_client import BatchMintResult, ChainClient, MintResult
from .checkpoint import CheckpointEntry, CheckpointStore
from .config import CoaSettings, get_settings
from .content_hash import (
    EXCLUDED_FIELDS,
    compute_content_hash,
    compute_content_hash_checked,
    create_hashable_document,
    derive_gve,
    is_content_hash,
)
from .documents import attach_verification, build_public_document, write_public_documents
from .manifest import Manifest, ManifestEntry
from .orchestrator import BatchMintOrchestrator, MintRunSummary
from .rpc_client import ChainRPCClient
from .state_machine import CertificateMint, MintEvent, MintState, transition
from .storage import ArtifactRenderer, ArtifactStore, S3ArtifactStore, UploadResult, artifact_key
from .verifier import ChainVerifier, VerificationFailure, VerificationReport

__all__ = [
    "SourceAttestation",
    "collect_source_attestation",
    "compute_attestation_checked",
    "compute_attestation_hash",
    "verify_attestation",
    "canonical_bytes",
    "canonicalize",
    "BatchMintResult",
    "ChainClient",
    "MintResult",
    "CheckpointEntry",
    "CheckpointStore",
    "CoaSettings",
    "get_settings",
    "EXCLUDED_FIELDS",
    "compute_content_hash",
    "compute_content_hash_checked",
    "create_hashable_document",
    "derive_gve",
    "is_content_hash",
    "attach_verification",
    "build_public_document",
    "write_public_documents",
    "Manifest",
    "ManifestEntry",
    "BatchMintOrchestrator",
    "MintRunSummary",
    "ChainRPCClient",
    "CertificateMint",
    "MintEvent",
    "MintState",
    "transition",
    "ArtifactRenderer",
    "ArtifactStore",
    "S3ArtifactStore",
    "UploadResult",
    "artifact_key",
    "ChainVerifier",
    "VerificationFailure",
    "VerificationReport",
]
