"""
Artifact store for pipeline runs.

Records named outputs (image tags, reports, logs) produced by stages, keyed
by run id. Artifacts are append-only: once published they are immutable,
and publishing a name twice within a run fails instead of overwriting.
"""

import hashlib
import logging
import shutil
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from ..errors import ArtifactError, ArtifactNotFoundError, DuplicateArtifactError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Artifact:
    """A named, immutable stage output.

    Exactly one of `value` (inline content) or `path` (file) is set.
    """
    name: str
    value: str | None = None
    path: str | None = None
    retain: bool = True
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ArtifactError("Artifact name cannot be empty")
        if (self.value is None) == (self.path is None):
            raise ArtifactError(f"Artifact '{self.name}' needs exactly one of value or path")

    def digest(self) -> str:
        """sha256 of the artifact content."""
        h = hashlib.sha256()
        if self.value is not None:
            h.update(self.value.encode("utf-8"))
        else:
            file_path = Path(self.path)
            if not file_path.is_file():
                raise ArtifactError(f"Artifact '{self.name}' file not found: {self.path}")
            with file_path.open("rb") as f:
                for chunk in iter(lambda: f.read(65536), b""):
                    h.update(chunk)
        return h.hexdigest()


@dataclass(frozen=True)
class ArtifactHandle:
    """Reference to a published artifact.

    Attributes:
        run_id: Run the artifact belongs to
        name: Artifact name, unique within the run
        stage: Stage that produced it
        ref: Content reference (file path, or sha256:<digest> blob id for values)
        digest: sha256 of the content
        value: Inline value, if any
        path: File path, if any
        retain: Retention flag
        created_at: ISO timestamp of publication
    """
    run_id: str
    name: str
    stage: str
    ref: str
    digest: str
    value: str | None = None
    path: str | None = None
    retain: bool = True
    created_at: str = ""

    @property
    def binding(self) -> str:
        """Value exposed to consuming steps (inline value or file path)."""
        return self.value if self.value is not None else (self.path or "")

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "name": self.name,
            "stage": self.stage,
            "ref": self.ref,
            "digest": self.digest,
            "value": self.value,
            "path": self.path,
            "retain": self.retain,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ArtifactHandle":
        return cls(
            run_id=data["run_id"],
            name=data["name"],
            stage=data["stage"],
            ref=data["ref"],
            digest=data.get("digest", ""),
            value=data.get("value"),
            path=data.get("path"),
            retain=data.get("retain", True),
            created_at=data.get("created_at", ""),
        )


class ArtifactStore:
    """Thread-safe, append-only artifact registry.

    Args:
        root: Optional directory; retained file artifacts are copied under
              root/<run_id>/<stage>/ so they outlive the step's workspace
    """

    def __init__(self, root: str | Path | None = None):
        self.root = Path(root) if root is not None else None
        self._runs: dict[str, dict[str, ArtifactHandle]] = {}
        self._lock = threading.Lock()

    def publish(self, run_id: str, stage_name: str, artifact: Artifact) -> ArtifactHandle:
        """Publish an artifact for a run.

        Raises:
            DuplicateArtifactError: If the name is already published in this run
            ArtifactError: If a file artifact's file is missing or cannot be copied
        """
        self._check_unpublished(run_id, artifact.name)
        handle = self._materialize(run_id, stage_name, artifact)

        # Re-checked under the lock: another publisher may have won while we copied
        with self._lock:
            existing = self._runs.get(run_id, {}).get(artifact.name)
            if existing is not None:
                raise DuplicateArtifactError(run_id, artifact.name, existing.stage)
            self._runs.setdefault(run_id, {})[artifact.name] = handle

        logger.info("Published artifact '%s' from stage '%s' (%s)", artifact.name, stage_name, handle.ref)
        return handle

    def fetch(self, run_id: str, name: str) -> ArtifactHandle:
        """Return the handle for a published artifact.

        Raises:
            ArtifactNotFoundError: If nothing was published under that name
        """
        with self._lock:
            handle = self._runs.get(run_id, {}).get(name)
        if handle is None:
            raise ArtifactNotFoundError(run_id, name)
        return handle

    def exists(self, run_id: str, name: str) -> bool:
        with self._lock:
            return name in self._runs.get(run_id, {})

    def artifacts_for(self, run_id: str) -> list[ArtifactHandle]:
        """Artifacts of a run in publication order."""
        with self._lock:
            return list(self._runs.get(run_id, {}).values())

    def discard(self, run_id: str) -> None:
        """Forget a run's artifacts (retained copies on disk are kept)."""
        with self._lock:
            self._runs.pop(run_id, None)

    def _check_unpublished(self, run_id: str, name: str) -> None:
        with self._lock:
            existing = self._runs.get(run_id, {}).get(name)
        if existing is not None:
            raise DuplicateArtifactError(run_id, name, existing.stage)

    def _materialize(self, run_id: str, stage_name: str, artifact: Artifact) -> ArtifactHandle:
        """Hash the content and copy retained files; runs outside the lock."""
        digest = artifact.digest()
        path = artifact.path
        if artifact.value is not None:
            ref = f"sha256:{digest}"
        else:
            if self.root is not None and artifact.retain:
                target_dir = self.root / run_id / stage_name
                target = target_dir / Path(artifact.path).name
                try:
                    target_dir.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(artifact.path, target)
                except OSError as e:
                    raise ArtifactError(f"Artifact '{artifact.name}' could not be retained: {e}") from e
                path = str(target)
            ref = str(path)

        return ArtifactHandle(
            run_id=run_id,
            name=artifact.name,
            stage=stage_name,
            ref=ref,
            digest=digest,
            value=artifact.value,
            path=path,
            retain=artifact.retain,
            created_at=artifact.created_at,
        )
