"""JSON file persistence for resumable poll state."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from vm_script_runner.errors import CheckpointNotFound
from vm_script_runner.models import PollState

logger = logging.getLogger(__name__)


class CheckpointStore:
    """Stores one ``<run_id>.json`` file per in-flight run."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def _path(self, run_id: str) -> Path:
        return self.directory / f"{run_id}.json"

    def save(self, state: PollState) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(state.run_id)
        tmp = path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(state.to_dict(), f, indent=2)
        tmp.replace(path)
        logger.debug("Checkpoint saved: %s (attempt %d)", path, state.attempt)

    def load(self, run_id: str) -> PollState:
        path = self._path(run_id)
        if not path.exists():
            raise CheckpointNotFound(f"No checkpoint for run {run_id} in {self.directory}")
        with open(path) as f:
            return PollState.from_dict(json.load(f))

    def delete(self, run_id: str) -> None:
        self._path(run_id).unlink(missing_ok=True)

    def list_runs(self) -> list[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))
