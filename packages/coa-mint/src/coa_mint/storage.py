"""Artifact (certificate image) storage.

Bucket Structure:
    {bucket}/
    └── {gveCode}/coa-{hash16}.svg

Keys are derived from the content hash, so re-uploading an artifact for the
same certificate always overwrites the same object.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol, Sequence, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .content_hash import HASH_PREFIX
from .exceptions import StorageError

logger = logging.getLogger(__name__)

SVG_CONTENT_TYPE = "image/svg+xml"


@dataclass(frozen=True)
class UploadResult:
    key: str
    url: str
    size: int


class ArtifactStore(Protocol):
    async def upload(self, key: str, body: bytes, content_type: str = SVG_CONTENT_TYPE) -> UploadResult:
        ...


class ArtifactRenderer(Protocol):
    """Renders a certificate image; used by the post-mint re-render pass."""

    def render(self, document: dict, content_hash: str, gve_code: str,
               token_id: Optional[int] = None) -> bytes:
        ...


def artifact_key(gve_code: str, content_hash: str) -> str:
    """``GVE-12345678/coa-1234567890abcdef.svg``"""
    start = len(HASH_PREFIX)
    return f"{gve_code}/coa-{content_hash[start:start + 16]}.svg"


def public_url(bucket: str, region: str, key: str) -> str:
    return f"https://{bucket}.s3.{region}.amazonaws.com/{key}"


class S3ArtifactStore:
    """S3-backed artifact store with public object URLs."""

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        profile: Optional[str] = None,
        cache_control: str = "no-cache, no-store, must-revalidate",
        client: Any = None,
    ):
        self.bucket = bucket
        self.region = region
        self.cache_control = cache_control
        if client is None:
            # Credentials come from the environment, profile or IAM role.
            session = boto3.Session(profile_name=profile, region_name=region)
            client = session.client("s3")
        self.client = client

    def _put(self, key: str, body: bytes, content_type: str) -> None:
        self.client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=body,
            ContentType=content_type,
            CacheControl=self.cache_control,
        )

    async def upload(self, key: str, body: bytes, content_type: str = SVG_CONTENT_TYPE) -> UploadResult:
        try:
            await asyncio.to_thread(self._put, key, body, content_type)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Upload of {key} failed: {e}", details={"key": key}) from e
        logger.debug(f"Uploaded s3://{self.bucket}/{key} ({len(body)} bytes)")
        return UploadResult(key=key, url=public_url(self.bucket, self.region, key), size=len(body))


async def upload_artifacts(
    store: ArtifactStore,
    items: Sequence[Tuple[str, bytes]],
    concurrency: int = 5,
    content_type: str = SVG_CONTENT_TYPE,
) -> List[UploadResult]:
    """Upload ``(key, body)`` pairs with at most ``concurrency`` in flight.

    Results are returned in input order. The first failure propagates once
    every started upload has settled.
    """
    semaphore = asyncio.Semaphore(concurrency)

    async def _one(key: str, body: bytes) -> UploadResult:
        async with semaphore:
            return await store.upload(key, body, content_type)

    results = await asyncio.gather(*(_one(k, b) for k, b in items), return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return list(results)
