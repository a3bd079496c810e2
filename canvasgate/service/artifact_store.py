from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol

from canvasgate.logging import get_logger
from canvasgate.service.fs import PathTraversalError, safe_join

logger = get_logger(__name__)


@dataclass(frozen=True)
class StoredArtifact:
    id: str
    url: str
    filename: str
    content_type: str
    size_bytes: int


class ArtifactStore(Protocol):
    """Persists generated media and returns a retrievable URL."""

    def persist(
        self,
        data: bytes,
        filename: str,
        content_type: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> StoredArtifact: ...


class LocalArtifactStore:
    """Write artifacts under ``<root>/media/<id>/`` with a JSON metadata sidecar."""

    METADATA_FILENAME = "metadata.json"

    def __init__(self, root: str | Path, *, url_prefix: str = "/media") -> None:
        self.root = Path(root)
        self.media_dir = self.root / "media"
        self.url_prefix = "/" + url_prefix.strip("/") if url_prefix.strip("/") else ""

    def persist(
        self,
        data: bytes,
        filename: str,
        content_type: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> StoredArtifact:
        artifact_id = uuid.uuid4().hex
        safe_name = Path(filename).name
        if not safe_name or safe_name in {".", ".."} or safe_name == self.METADATA_FILENAME:
            raise PathTraversalError(f"invalid artifact filename: {filename!r}")

        self.media_dir.mkdir(parents=True, exist_ok=True)
        artifact_dir = safe_join(self.media_dir, artifact_id)
        artifact_dir.mkdir(parents=True, exist_ok=False)
        target = safe_join(artifact_dir, safe_name)
        target.write_bytes(data)

        sidecar = {
            "id": artifact_id,
            "filename": safe_name,
            "content_type": content_type,
            "size_bytes": len(data),
            "created_at": datetime.now(timezone.utc).isoformat(),
            "metadata": dict(metadata or {}),
        }
        (artifact_dir / self.METADATA_FILENAME).write_text(json.dumps(sidecar, indent=2))

        stored = StoredArtifact(
            id=artifact_id,
            url=f"{self.url_prefix}/{artifact_id}/{safe_name}",
            filename=safe_name,
            content_type=content_type,
            size_bytes=len(data),
        )
        logger.info("artifact_persisted", **asdict(stored))
        return stored

    def load_metadata(self, artifact_id: str) -> dict:
        path = safe_join(self.media_dir, f"{artifact_id}/{self.METADATA_FILENAME}")
        return json.loads(path.read_text())
