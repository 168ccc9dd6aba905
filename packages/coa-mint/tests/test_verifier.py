"""
Tests for coa_mint.verifier.
"""
from __future__ import annotations

import json

import pytest
import pytest_asyncio

from coa_mint.attestation import SourceAttestation
from coa_mint.checkpoint import CheckpointEntry, CheckpointStore
from coa_mint.content_hash import compute_content_hash
from coa_mint.manifest import Manifest
from coa_mint.metadata import decode_token_uri, encode_token_uri
from coa_mint.orchestrator import BatchMintOrchestrator
from coa_mint.verifier import ChainVerifier

from conftest import write_manifest


@pytest_asyncio.fixture
async def minted(tmp_path, attestation, settings, fake_chain, artifact_store):
    write_manifest(tmp_path, attestation, 4)
    manifest = Manifest.load(tmp_path / "manifest.json")
    checkpoint = CheckpointStore.load(tmp_path / "checkpoint.json")
    await BatchMintOrchestrator(manifest, fake_chain, checkpoint, artifact_store, settings).run()
    return manifest, checkpoint


def _tamper(chain, token_id, mutate):
    metadata = decode_token_uri(chain.tokens[token_id])
    mutate(metadata)
    chain.tokens[token_id] = encode_token_uri(metadata)


class TestVerifyAll:
    """Tests for ChainVerifier.verify_all."""

    @pytest.mark.asyncio
    async def test_round_trip(self, minted, fake_chain, attestation):
        manifest, checkpoint = minted
        report = await ChainVerifier(fake_chain).verify_all(checkpoint, attestation, manifest)

        assert report.total_checked == 4
        assert report.verified == 4
        assert report.failed == 0
        assert report.attestation_verified is True
        assert report.ok

    @pytest.mark.asyncio
    async def test_without_manifest(self, minted, fake_chain, attestation):
        _, checkpoint = minted
        report = await ChainVerifier(fake_chain).verify_all(checkpoint, attestation)
        assert report.verified == 4

    @pytest.mark.asyncio
    async def test_content_hash_mismatch(self, minted, fake_chain, attestation):
        manifest, checkpoint = minted

        def swap_hash(metadata):
            metadata["blockticity"]["productData"]["lot_number"] = "LOT-9"

        _tamper(fake_chain, 2, swap_hash)
        report = await ChainVerifier(fake_chain).verify_all(checkpoint, attestation, manifest)

        assert report.verified == 3
        assert [(f.identifier, f.token_id) for f in report.failures] == [("BAG-002", 2)]
        assert not report.ok

    @pytest.mark.asyncio
    async def test_attribute_hash_mismatch(self, minted, fake_chain, attestation):
        manifest, checkpoint = minted

        def swap_attribute(metadata):
            del metadata["blockticity"]
            metadata["attributes"][2]["value"] = "0x" + "0" * 64

        _tamper(fake_chain, 1, swap_attribute)
        report = await ChainVerifier(fake_chain).verify_all(checkpoint, attestation, manifest)
        assert report.failures[0].reason.startswith("content hash mismatch")

    @pytest.mark.asyncio
    async def test_attestation_mismatch(self, minted, fake_chain, attestation):
        manifest, checkpoint = minted
        other = SourceAttestation(
            attestation_hash="0x" + "f" * 64,
            content_hashes=attestation.content_hashes,
            source_token_ids=attestation.source_token_ids,
        )
        report = await ChainVerifier(fake_chain).verify_all(checkpoint, other, manifest)

        assert report.failed == 4
        assert report.attestation_verified is False
        assert all("attestation hash" in f.reason for f in report.failures)

    @pytest.mark.asyncio
    async def test_source_token_ids_mismatch(self, minted, fake_chain, attestation):
        manifest, checkpoint = minted
        other = SourceAttestation(
            attestation_hash=attestation.attestation_hash,
            content_hashes=attestation.content_hashes,
            source_token_ids=[1, 2, 3],
        )
        report = await ChainVerifier(fake_chain).verify_all(checkpoint, other, manifest)
        assert report.failed == 4
        assert "source token ids" in report.failures[0].reason

    @pytest.mark.asyncio
    async def test_unreadable_token_does_not_stop(self, minted, fake_chain, attestation, tmp_path):
        manifest, checkpoint = minted
        checkpoint.record("BAG-404", CheckpointEntry(token_id=404, tx_hash="0x1", artifact_url=""))
        fake_chain.tokens[3] = "not a data uri"

        report = await ChainVerifier(fake_chain).verify_all(checkpoint, attestation, manifest)

        assert report.total_checked == 5
        assert report.verified == 3
        assert sorted(f.identifier for f in report.failures) == ["BAG-003", "BAG-404"]

        path = tmp_path / "report.json"
        report.save(path)
        saved = json.loads(path.read_text())
        assert set(saved) == {
            "verifiedAt", "totalChecked", "verified", "failed", "failures", "attestationVerified",
        }
        assert {"identifier": "BAG-404", "tokenId": 404, "reason": "not in manifest"} in saved["failures"]

    @pytest.mark.asyncio
    async def test_malformed_source_token_ids_recorded(self, minted, fake_chain, attestation):
        _, checkpoint = minted

        def bad_source_ids(metadata):
            document = metadata["blockticity"]
            document["sourceAttestation"]["sourceTokenIds"] = ["farm-1"]
            metadata["attributes"][2]["value"] = compute_content_hash(document)

        _tamper(fake_chain, 1, bad_source_ids)
        report = await ChainVerifier(fake_chain).verify_all(checkpoint, attestation)

        assert report.total_checked == 4
        assert report.verified == 3
        assert [(f.identifier, f.token_id) for f in report.failures] == [("BAG-001", 1)]
        assert "sourceTokenIds" in report.failures[0].reason

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_stop(self, minted, fake_chain, attestation, monkeypatch):
        manifest, checkpoint = minted
        read_token = fake_chain.token_uri

        async def flaky_token_uri(token_id):
            if token_id == 2:
                raise AttributeError("'NoneType' object has no attribute 'startswith'")
            return await read_token(token_id)

        monkeypatch.setattr(fake_chain, "token_uri", flaky_token_uri)
        report = await ChainVerifier(fake_chain).verify_all(checkpoint, attestation, manifest)

        assert report.verified == 3
        assert report.failures[0].identifier == "BAG-002"
        assert report.failures[0].reason.startswith("AttributeError")
