"""
coa-mint CLI entry point.

Usage:
    coa-mint [OPTIONS] COMMAND [ARGS]...
"""
from __future__ import annotations

import asyncio
import functools
import importlib
import json
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from .attestation import SourceAttestation, collect_source_attestation, compute_attestation_checked
from .chain_client import ChainClient
from .checkpoint import CheckpointStore
from .config import CoaSettings
from .content_hash import compute_content_hash_checked, derive_gve, is_content_hash
from .documents import write_public_documents
from .exceptions import CoaError, InvalidInput
from .logging_utils import MintLogger, setup_logging
from .manifest import Manifest
from .orchestrator import BatchMintOrchestrator
from .rpc_client import ChainRPCClient
from .storage import ArtifactRenderer, S3ArtifactStore
from .verifier import ChainVerifier

console = Console()


def _handle_errors(func):
    """Print CoaError in red and exit 1; the checkpoint is left as written."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except CoaError as e:
            console.print(f"[red]Error ({e.error_code}): {e.message}[/red]")
            sys.exit(1)
    return wrapper


def build_chain_client(settings: CoaSettings) -> ChainClient:
    rpc = ChainRPCClient(settings.chain.rpc_url, timeout_seconds=settings.chain.rpc_timeout_seconds)
    return ChainClient(
        rpc,
        private_key=settings.require_private_key(),
        contract_address=settings.require_contract(),
        chain_id=settings.chain.chain_id,
        poll_interval_seconds=settings.mint.poll_interval_seconds,
    )


def _parse_token_range(value: str) -> list[int]:
    try:
        start, end = (int(part) for part in value.split("-", 1))
    except ValueError as e:
        raise InvalidInput(f"Token range must look like 1-100, got {value!r}", field="token_range") from e
    if end < start:
        raise InvalidInput(f"Token range is empty: {value!r}", field="token_range")
    return list(range(start, end + 1))


def load_renderer(spec: str) -> ArtifactRenderer:
    """Instantiate a renderer from ``package.module:ClassName``."""
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise InvalidInput(f"Renderer must look like package.module:ClassName, got {spec!r}", field="renderer")
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise InvalidInput(f"Cannot load renderer {spec!r}: {e}", field="renderer") from e
    return factory()


@click.group()
@click.version_option(message="%(prog)s %(version)s", package_name="coa-mint")
@click.option("--log-level", envvar="COA_LOG_LEVEL", default=None, help="Log level (default from settings)")
@click.option("--json-logs", is_flag=True, help="Emit JSON log lines")
@click.pass_context
def cli(ctx, log_level: str | None, json_logs: bool):
    """coa-mint - content-addressed certificate minting and verification."""
    ctx.ensure_object(dict)
    settings = CoaSettings()
    setup_logging(level=log_level or settings.log_level, json_format=json_logs)
    ctx.obj["settings"] = settings


@cli.command("hash")
@click.argument("document", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@_handle_errors
def hash_cmd(document: Path):
    """Print the content hash and GVE code of a certificate document."""
    try:
        data = json.loads(document.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise InvalidInput(f"{document} is not valid JSON: {e}", field="document") from e

    content_hash = compute_content_hash_checked(data)
    console.print(f"Content Hash: [cyan]{content_hash}[/cyan]")
    console.print(f"GVE Code: [green]{derive_gve(content_hash)}[/green]")


@cli.command()
@click.option("--token-id", "token_ids", multiple=True, type=int, help="Source token id (repeatable)")
@click.option("--token-range", help="Inclusive source token id range, e.g. 1-100")
@click.option("--hashes-file", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="JSON list of content hashes instead of reading from chain")
@click.option("--out", "out_path", required=True, type=click.Path(dir_okay=False, path_type=Path))
@click.pass_context
@_handle_errors
def attest(ctx, token_ids: tuple[int, ...], token_range: str | None, hashes_file: Path | None, out_path: Path):
    """Compute the source attestation hash."""
    settings: CoaSettings = ctx.obj["settings"]

    if hashes_file is not None:
        try:
            hashes = json.loads(hashes_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise InvalidInput(f"{hashes_file} is not valid JSON: {e}", field="hashes_file") from e
        if not isinstance(hashes, list):
            raise InvalidInput("Hashes file must contain a JSON list", field="hashes_file")
        bad = [h for h in hashes if not is_content_hash(h)]
        if bad:
            raise InvalidInput(f"Hashes file holds {len(bad)} invalid content hash(es), first: {bad[0]!r}",
                               field="hashes_file")
        record = SourceAttestation(
            attestation_hash=compute_attestation_checked(hashes),
            content_hashes=list(hashes),
        )
    else:
        ids = list(token_ids)
        if token_range:
            ids.extend(_parse_token_range(token_range))
        if not ids:
            raise InvalidInput("Provide --token-id, --token-range or --hashes-file", field="token_ids")
        record = asyncio.run(_collect(settings, ids))

    record.save(out_path)
    console.print(f"Attestation Hash: [cyan]{record.attestation_hash}[/cyan]")
    console.print(f"Sources: {record.total_sources}")
    console.print(f"Saved to {out_path}")


async def _collect(settings: CoaSettings, token_ids: list[int]) -> SourceAttestation:
    client = build_chain_client(settings)
    try:
        return await collect_source_attestation(client, token_ids)
    finally:
        await client.close()


@cli.command()
@click.argument("certificates_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--attestation", "attestation_path", required=True,
              type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--out-dir", required=True, type=click.Path(file_okay=False, path_type=Path))
@click.pass_context
@_handle_errors
def build(ctx, certificates_path: Path, attestation_path: Path, out_dir: Path):
    """Write public documents and a mint manifest from a certificates file."""
    settings: CoaSettings = ctx.obj["settings"]
    try:
        data = json.loads(certificates_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise InvalidInput(f"{certificates_path} is not valid JSON: {e}", field="certificates") from e
    certificates = data.get("certificates") if isinstance(data, dict) else data
    if not isinstance(certificates, list) or not certificates:
        raise InvalidInput("Certificates file must hold a non-empty list", field="certificates")

    manifest = write_public_documents(
        certificates,
        SourceAttestation.load(attestation_path),
        issuer={"name": settings.issuer.name, "address": settings.issuer.address},
        chain={
            "chainId": settings.chain.chain_id,
            "name": settings.issuer.network_name,
            "contract": settings.chain.contract_address,
        },
        out_dir=out_dir,
        standard=settings.issuer.standard,
    )
    console.print(f"Wrote {len(manifest)} documents and {out_dir / 'manifest.json'}")


@cli.command()
@click.option("--manifest", "manifest_path", required=True,
              type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--checkpoint", "checkpoint_path", required=True, type=click.Path(dir_okay=False, path_type=Path))
@click.option("--mint-log", "mint_log_path", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--renderer", "renderer_spec",
              help="Artifact renderer as package.module:ClassName; enables the post-mint re-render pass")
@click.pass_context
@_handle_errors
def mint(ctx, manifest_path: Path, checkpoint_path: Path, mint_log_path: Path | None, renderer_spec: str | None):
    """Mint every manifest entry not yet in the checkpoint (resumable).

    Without --renderer, artifacts are uploaded as-is and not re-rendered with
    their token ids.
    """
    settings: CoaSettings = ctx.obj["settings"]
    renderer = load_renderer(renderer_spec) if renderer_spec else None
    manifest = Manifest.load(manifest_path)
    checkpoint = CheckpointStore.load(checkpoint_path)

    console.print(f"\n[bold blue]Batch Mint[/bold blue] ({len(manifest)} certificates)\n")
    summary = asyncio.run(_mint(settings, manifest, checkpoint, mint_log_path, renderer))

    table = Table(title="Mint Summary")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Total", str(summary.total))
    table.add_row("Previously minted", str(summary.already_minted))
    table.add_row("Minted this run", str(summary.minted))
    table.add_row("Gas used", str(summary.gas_used))
    console.print(table)


async def _mint(settings: CoaSettings, manifest: Manifest, checkpoint: CheckpointStore, mint_log_path,
                renderer: ArtifactRenderer | None = None):
    client = build_chain_client(settings)
    store = S3ArtifactStore(
        settings.storage.bucket,
        region=settings.storage.region,
        profile=settings.storage.profile,
        cache_control=settings.storage.cache_control,
    )
    orchestrator = BatchMintOrchestrator(
        manifest, client, checkpoint, store, settings,
        renderer=renderer,
        mint_logger=MintLogger(audit_log_path=settings.audit_log_path),
    )
    try:
        summary = await orchestrator.run()
        await orchestrator.rerender_all()
        if mint_log_path is not None:
            orchestrator.write_mint_log(mint_log_path)
        return summary
    finally:
        await client.close()


@cli.command()
@click.option("--checkpoint", "checkpoint_path", required=True,
              type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--attestation", "attestation_path", required=True,
              type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--manifest", "manifest_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--out", "out_path", type=click.Path(dir_okay=False, path_type=Path))
@click.pass_context
@_handle_errors
def verify(ctx, checkpoint_path: Path, attestation_path: Path, manifest_path: Path | None, out_path: Path | None):
    """Re-verify every checkpointed token against the chain."""
    settings: CoaSettings = ctx.obj["settings"]
    checkpoint = CheckpointStore.load(checkpoint_path)
    attestation = SourceAttestation.load(attestation_path)
    manifest = Manifest.load(manifest_path) if manifest_path else None

    report = asyncio.run(_verify(settings, checkpoint, attestation, manifest))
    if out_path is not None:
        report.save(out_path)

    console.print(f"\nChecked: {report.total_checked}")
    console.print(f"Verified: [green]{report.verified}[/green]")
    attestation_status = "[green]OK[/green]" if report.attestation_verified else "[red]MISMATCH[/red]"
    console.print(f"Attestation: {attestation_status}")

    if report.failures:
        table = Table(title="Verification Failures")
        table.add_column("Identifier", style="cyan")
        table.add_column("Token", justify="right")
        table.add_column("Reason")
        for failure in report.failures:
            table.add_row(failure.identifier, str(failure.token_id), failure.reason)
        console.print(table)

    if not report.ok:
        sys.exit(1)


async def _verify(settings: CoaSettings, checkpoint, attestation, manifest):
    client = build_chain_client(settings)
    try:
        verifier = ChainVerifier(client, mint_logger=MintLogger(audit_log_path=settings.audit_log_path))
        return await verifier.verify_all(checkpoint, attestation, manifest)
    finally:
        await client.close()


def main():
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
