"""
Crash-safe record of confirmed mints.

The checkpoint file is the single source of truth for resume: an identifier
present in it is never minted again. Each record is written to disk before
the next transaction is submitted, and every write replaces the whole file
atomically, so an interrupt leaves either the previous or the new content.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from .exceptions import CheckpointError

logger = logging.getLogger(__name__)

RECORDS_KEY = "mintedCertificates"
LEGACY_RECORDS_KEY = "mintedBags"
LAST_BATCH_KEY = "lastBatchIndex"


@dataclass(frozen=True)
class CheckpointEntry:
    """One confirmed mint."""
    token_id: int
    tx_hash: str
    artifact_url: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokenId": self.token_id,
            "txHash": self.tx_hash,
            "artifactUrl": self.artifact_url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CheckpointEntry":
        return cls(
            token_id=int(data["tokenId"]),
            tx_hash=data["txHash"],
            artifact_url=data.get("artifactUrl", data.get("s3Url", "")),
        )


class CheckpointStore:
    """
    Append-only mapping of certificate identifier to confirmed mint.

    Usage:
        store = CheckpointStore.load("mint-checkpoint.json")
        if not store.contains("BAG-001"):
            ...
            store.record("BAG-001", CheckpointEntry(token_id, tx_hash, url))
    """

    def __init__(self, path: Path | str, entries: Optional[Dict[str, CheckpointEntry]] = None,
                 last_batch_index: int = -1):
        self._path = Path(path)
        self._entries: Dict[str, CheckpointEntry] = dict(entries or {})
        self._last_batch_index = last_batch_index

    @classmethod
    def load(cls, path: Path | str) -> "CheckpointStore":
        """Load ``path``; a missing file is an empty checkpoint."""
        path = Path(path)
        if not path.exists():
            logger.info(f"No checkpoint at {path}, starting fresh")
            return cls(path)

        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise CheckpointError(f"Cannot read checkpoint {path}: {e}") from e
        if not isinstance(data, dict):
            raise CheckpointError(f"Checkpoint {path} is not a JSON object")

        raw = data.get(RECORDS_KEY)
        if raw is None:
            raw = data.get(LEGACY_RECORDS_KEY, {})
        try:
            entries = {identifier: CheckpointEntry.from_dict(record) for identifier, record in raw.items()}
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise CheckpointError(f"Malformed checkpoint record in {path}: {e}") from e

        store = cls(path, entries, int(data.get(LAST_BATCH_KEY, -1)))
        logger.info(f"Checkpoint: {len(store)} already minted")
        return store

    @property
    def path(self) -> Path:
        return self._path

    @property
    def last_batch_index(self) -> int:
        return self._last_batch_index

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._entries

    def contains(self, identifier: str) -> bool:
        return identifier in self._entries

    def get(self, identifier: str) -> Optional[CheckpointEntry]:
        return self._entries.get(identifier)

    def items(self):
        return self._entries.items()

    def record(self, identifier: str, entry: CheckpointEntry) -> None:
        """Add ``entry`` and persist before returning.

        Raises:
            CheckpointError: ``identifier`` already has a different record
        """
        existing = self._entries.get(identifier)
        if existing is not None:
            if existing == entry:
                return
            raise CheckpointError(
                f"Refusing to overwrite checkpoint entry for {identifier}",
                details={"existing": existing.to_dict(), "new": entry.to_dict()},
            )
        self._entries[identifier] = entry
        self.save()

    def mark_batch(self, batch_index: int) -> None:
        if batch_index > self._last_batch_index:
            self._last_batch_index = batch_index
            self.save()

    def to_dict(self) -> Dict[str, Any]:
        return {
            RECORDS_KEY: {identifier: entry.to_dict() for identifier, entry in self._entries.items()},
            LAST_BATCH_KEY: self._last_batch_index,
        }

    def save(self) -> None:
        """Write the whole checkpoint via temp file, fsync and rename."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(self.to_dict(), indent=2)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self._path)
        except OSError as e:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise CheckpointError(f"Cannot write checkpoint {self._path}: {e}") from e
