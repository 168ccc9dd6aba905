"""Read-only list of certificates to mint, in mint order."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .content_hash import compute_content_hash, derive_gve
from .exceptions import ManifestError

DEFAULT_DOCUMENTS_DIR = "publicJson"
DEFAULT_ARTIFACTS_DIR = "svg"


@dataclass(frozen=True)
class ManifestEntry:
    identifier: str
    public_json_file: str
    content_hash: str
    gve_code: str
    artifact_file: str
    serial: Optional[int] = None
    lot_number: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManifestEntry":
        try:
            return cls(
                identifier=data["identifier"],
                public_json_file=data["publicJsonFile"],
                content_hash=data["contentHash"],
                gve_code=data.get("gveCode") or derive_gve(data["contentHash"]),
                artifact_file=data["artifactFile"],
                serial=data.get("serial"),
                lot_number=data.get("lotNumber"),
            )
        except KeyError as e:
            raise ManifestError(f"Manifest entry missing field {e}", details={"entry": data}) from e

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identifier": self.identifier,
            "publicJsonFile": self.public_json_file,
            "contentHash": self.content_hash,
            "gveCode": self.gve_code,
            "artifactFile": self.artifact_file,
            "serial": self.serial,
            "lotNumber": self.lot_number,
        }


@dataclass
class Manifest:
    """Ordered, closed set of certificates with their pre-computed hashes."""
    entries: List[ManifestEntry]
    documents_dir: Path
    artifacts_dir: Path
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        seen = set()
        for entry in self.entries:
            if entry.identifier in seen:
                raise ManifestError(f"Duplicate identifier in manifest: {entry.identifier}")
            seen.add(entry.identifier)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[ManifestEntry]:
        return iter(self.entries)

    def get(self, identifier: str) -> Optional[ManifestEntry]:
        for entry in self.entries:
            if entry.identifier == identifier:
                return entry
        return None

    @classmethod
    def load(cls, path: Path | str) -> "Manifest":
        path = Path(path)
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ManifestError(f"Cannot read manifest {path}: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get("entries"), list):
            raise ManifestError(f"Manifest {path} has no entries list")

        base = path.parent
        extra = {k: v for k, v in data.items() if k not in ("entries", "documentsDir", "artifactsDir")}
        return cls(
            entries=[ManifestEntry.from_dict(e) for e in data["entries"]],
            documents_dir=base / data.get("documentsDir", DEFAULT_DOCUMENTS_DIR),
            artifacts_dir=base / data.get("artifactsDir", DEFAULT_ARTIFACTS_DIR),
            extra=extra,
        )

    def document_path(self, entry: ManifestEntry) -> Path:
        return self.documents_dir / entry.public_json_file

    def artifact_path(self, entry: ManifestEntry) -> Path:
        return self.artifacts_dir / entry.artifact_file

    def load_document(self, entry: ManifestEntry, check_hash: bool = True) -> Dict[str, Any]:
        """Read an entry's document; its recomputed hash must match the manifest."""
        path = self.document_path(entry)
        try:
            with open(path, encoding="utf-8") as f:
                document = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ManifestError(f"Cannot read document for {entry.identifier}: {e}") from e

        if check_hash:
            actual = compute_content_hash(document)
            if actual != entry.content_hash:
                raise ManifestError(
                    f"Content hash of {path.name} does not match manifest for {entry.identifier}",
                    details={"expected": entry.content_hash, "actual": actual},
                )
        return document

    def load_artifact(self, entry: ManifestEntry) -> bytes:
        path = self.artifact_path(entry)
        try:
            return path.read_bytes()
        except OSError as e:
            raise ManifestError(f"Cannot read artifact for {entry.identifier}: {e}") from e
