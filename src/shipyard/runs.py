"""
Run record persistence.

Finished runs are written as JSON to <state_dir>/runs/<run_id>.json, with a
`latest` pointer file naming the most recent run.
"""

import json
import logging
import os
import tempfile
from pathlib import Path

from .errors import RunNotFoundError
from .pipeline.engine import PipelineRun

logger = logging.getLogger(__name__)

LATEST = "latest"


class RunStore:
    """Directory of persisted PipelineRun records."""

    def __init__(self, state_dir: str | Path):
        self.state_dir = Path(state_dir)
        self.runs_dir = self.state_dir / "runs"

    def path_for(self, run_id: str) -> Path:
        return self.runs_dir / f"{run_id}.json"

    def save(self, run: PipelineRun) -> Path:
        """Write the run record and update the latest pointer.

        The record is written to a temp file and renamed into place, so
        readers never see a partial file.
        """
        self.runs_dir.mkdir(parents=True, exist_ok=True)
        target = self.path_for(run.run_id)
        self._write_atomic(target, json.dumps(run.to_dict(), indent=2))
        self._write_atomic(self.runs_dir / LATEST, run.run_id + "\n")
        logger.debug("Saved run %s to %s", run.run_id, target)
        return target

    def load(self, run_id: str = LATEST) -> PipelineRun:
        """Load a run record; `latest` resolves to the most recent run.

        Raises:
            RunNotFoundError: If no record exists or it cannot be parsed
        """
        if run_id == LATEST:
            pointer = self.runs_dir / LATEST
            if not pointer.is_file():
                raise RunNotFoundError(f"No runs recorded in {self.runs_dir}")
            run_id = pointer.read_text().strip()

        path = self.path_for(run_id)
        if not path.is_file():
            raise RunNotFoundError(f"Run not found: {run_id}")

        try:
            return PipelineRun.from_dict(json.loads(path.read_text()))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise RunNotFoundError(f"Run record {path} is unreadable: {e}") from e

    def list_runs(self) -> list[PipelineRun]:
        """All readable run records, newest first."""
        if not self.runs_dir.is_dir():
            return []
        runs = []
        for path in self.runs_dir.glob("*.json"):
            try:
                runs.append(PipelineRun.from_dict(json.loads(path.read_text())))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError, OSError) as e:
                logger.warning("Skipping unreadable run record %s: %s", path, e)
        runs.sort(key=lambda r: (r.started_at or "", r.run_id), reverse=True)
        return runs

    @staticmethod
    def _write_atomic(path: Path, content: str) -> None:
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
