"""
Pytest configuration for coa-mint tests.
"""
from __future__ import annotations

import json
import os
import sys
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(package_src))

# Set test environment
os.environ.setdefault("COA_ENVIRONMENT", "test")

from coa_mint.attestation import SourceAttestation, compute_attestation_hash  # noqa: E402
from coa_mint.chain_client import MintResult  # noqa: E402
from coa_mint.config import ChainSettings, CoaSettings, MintSettings  # noqa: E402
from coa_mint.content_hash import compute_content_hash, derive_gve, sha256_hex  # noqa: E402
from coa_mint.documents import build_public_document  # noqa: E402
from coa_mint.exceptions import ChainTimeout, RPCError  # noqa: E402
from coa_mint.storage import UploadResult, public_url  # noqa: E402

CONTRACT = "0x1234567890123456789012345678901234567890"
MINT_TO = "0xabcdefabcdefabcdefabcdefabcdefabcdefabcd"
PRIVATE_KEY = "0x" + "11" * 32


class FakeChainClient:
    """In-memory stand-in for ChainClient.

    ``failures`` is consumed one entry per mint call; an exception entry is
    raised (timeouts after reporting the submission), ``None`` lets the call
    through. ``fail_after`` raises a RuntimeError once that many tokens exist.
    """

    def __init__(self, first_token_id: int = 1, fail_after: Optional[int] = None):
        self.address = MINT_TO
        self.contract_address = CONTRACT
        self.chain_id = 28530
        self.tokens: Dict[int, str] = {}
        self.next_token_id = first_token_id
        self.failures: List[Optional[BaseException]] = []
        self.fail_after = fail_after
        self.mint_calls = 0
        self.submissions: List[str] = []

    async def get_balance(self) -> Decimal:
        return Decimal("1.5")

    async def mint_uri(self, to_address, uri, gas_multiplier=2.0, receipt_timeout=60.0, on_submitted=None):
        self.mint_calls += 1
        if self.fail_after is not None and len(self.tokens) >= self.fail_after:
            raise RuntimeError("process killed")

        tx_hash = "0x" + f"{self.mint_calls:064x}"
        failure = self.failures.pop(0) if self.failures else None
        if failure is not None and not isinstance(failure, ChainTimeout):
            raise failure
        if on_submitted is not None:
            on_submitted(tx_hash, self.mint_calls - 1, 200_000)
        self.submissions.append(tx_hash)
        if failure is not None:
            raise failure

        token_id = self.next_token_id
        self.next_token_id += 1
        self.tokens[token_id] = uri
        return MintResult(token_id=token_id, tx_hash=tx_hash, gas_used=100_000, block_number=token_id)

    async def token_uri(self, token_id: int) -> str:
        if token_id not in self.tokens:
            raise RPCError(f"RPC error on eth_call: nonexistent token {token_id}", method="eth_call")
        return self.tokens[token_id]

    async def close(self) -> None:
        pass


class InMemoryArtifactStore:
    def __init__(self, bucket: str = "test-bucket", region: str = "us-east-1"):
        self.bucket = bucket
        self.region = region
        self.objects: Dict[str, bytes] = {}
        self.uploads: List[str] = []

    async def upload(self, key: str, body: bytes, content_type: str = "image/svg+xml") -> UploadResult:
        self.objects[key] = body
        self.uploads.append(key)
        return UploadResult(key=key, url=public_url(self.bucket, self.region, key), size=len(body))


class StubRenderer:
    def render(self, document, content_hash, gve_code, token_id=None) -> bytes:
        return f"<svg>{gve_code}#{token_id}</svg>".encode()


@pytest.fixture
def sample_eth_address():
    """Valid Ethereum address for testing."""
    return CONTRACT


@pytest.fixture
def sample_tx_hash():
    """Valid transaction hash for testing."""
    return "0x" + "a" * 64


@pytest.fixture
def source_hashes() -> List[str]:
    return [sha256_hex(f"farm-{i}") for i in range(5)]


@pytest.fixture
def attestation(source_hashes) -> SourceAttestation:
    return SourceAttestation(
        attestation_hash=compute_attestation_hash(source_hashes),
        content_hashes=source_hashes,
        source_token_ids=[1, 2, 3, 4, 5],
        chain_id=28530,
        contract=CONTRACT,
    )


@pytest.fixture
def settings(tmp_path) -> CoaSettings:
    return CoaSettings(
        private_key=PRIVATE_KEY,
        chain=ChainSettings(contract_address=CONTRACT, mint_to=MINT_TO),
        mint=MintSettings(batch_size=3, retry_delay_seconds=0),
        audit_log_path=str(tmp_path / "audit.jsonl"),
    )


def make_document(identifier: str, attestation: SourceAttestation) -> Dict[str, Any]:
    return build_public_document(
        identifier,
        fields=[
            {"label": "Lot Number", "value": "LOT-7"},
            {"label": "Net Weight (kg)", "value": 69},
        ],
        issuer={"name": "NuCafe", "address": MINT_TO},
        chain={"chainId": 28530, "name": "blockticity-l1", "contract": CONTRACT},
        attestation=attestation,
    )


def write_manifest(root: Path, attestation: SourceAttestation, count: int) -> Path:
    """Write ``count`` documents, artifacts and a manifest under ``root``."""
    (root / "publicJson").mkdir(parents=True, exist_ok=True)
    (root / "svg").mkdir(parents=True, exist_ok=True)
    entries = []
    for i in range(1, count + 1):
        identifier = f"BAG-{i:03d}"
        document = make_document(identifier, attestation)
        content_hash = compute_content_hash(document)
        (root / "publicJson" / f"{identifier}.json").write_text(json.dumps(document), encoding="utf-8")
        (root / "svg" / f"{identifier}.svg").write_text(f"<svg>{identifier}</svg>", encoding="utf-8")
        entries.append({
            "identifier": identifier,
            "publicJsonFile": f"{identifier}.json",
            "contentHash": content_hash,
            "gveCode": derive_gve(content_hash),
            "artifactFile": f"{identifier}.svg",
            "serial": i,
            "lotNumber": "LOT-7",
        })
    path = root / "manifest.json"
    path.write_text(json.dumps({"entries": entries}), encoding="utf-8")
    return path


@pytest.fixture
def fake_chain() -> FakeChainClient:
    return FakeChainClient()


@pytest.fixture
def artifact_store() -> InMemoryArtifactStore:
    return InMemoryArtifactStore()
