"""Script staging: make a script payload fetchable from blob storage.

Named scripts must already exist in their container and end in ``.ps1``.
Inline scripts are written to a scratch ``.ps1`` file under a fresh UUID and uploaded.

Example:
    from vm_script_runner.stager import ScriptStager
    from vm_script_runner.models import InlineScript

    stager = ScriptStager(blobs=backend)
    staged = stager.stage(InlineScript("Write-Output 1"), container="customscripts")
"""

from __future__ import annotations

import logging
import tempfile
import uuid
from pathlib import Path
from typing import Optional

from vm_script_runner.errors import MissingContainer, MissingScript, StagingWriteFailed
from vm_script_runner.interfaces import BlobStore
from vm_script_runner.models import InlineScript, NamedScript, ScriptSource, StagedScript

logger = logging.getLogger(__name__)

DEFAULT_CONTAINER = "customscripts"
SCRIPT_EXTENSION = ".ps1"


def new_script_identifier() -> str:
    """Return a collision-resistant blob name for an inline script."""
    return f"{uuid.uuid4().hex}{SCRIPT_EXTENSION}"


class ScriptStager:
    """Ensures a script is present in a blob container.

    Attributes:
        blobs: Blob storage backend.
        scratch_dir: Directory for transient script files (system temp
            directory when None).
    """

    def __init__(self, blobs: BlobStore, scratch_dir: Optional[str | Path] = None) -> None:
        self.blobs = blobs
        self.scratch_dir = Path(scratch_dir) if scratch_dir else Path(tempfile.gettempdir())

    def stage(self, source: ScriptSource, container: str = DEFAULT_CONTAINER) -> StagedScript:
        if isinstance(source, NamedScript):
            return self._verify_named(source, container)
        if isinstance(source, InlineScript):
            return self._upload_inline(source, container)
        raise TypeError(f"Unsupported script source: {source!r}")

    def _verify_named(self, source: NamedScript, container: str) -> StagedScript:
        # The blob name is passed to ``powershell -File``, which only runs .ps1 files
        if not source.identifier.lower().endswith(SCRIPT_EXTENSION):
            raise MissingScript(
                f"Script '{source.identifier}' must be a {SCRIPT_EXTENSION} blob"
            )
        if not self.blobs.container_exists(container):
            raise MissingContainer(f"Container '{container}' does not exist")
        if not self.blobs.blob_exists(container, source.identifier):
            raise MissingScript(
                f"Script '{source.identifier}' not found in container '{container}'"
            )
        logger.info("Using staged script %s/%s", container, source.identifier)
        return StagedScript(identifier=source.identifier, container=container)

    def _upload_inline(self, source: InlineScript, container: str) -> StagedScript:
        identifier = new_script_identifier()
        scratch_file = self.scratch_dir / identifier

        try:
            self.scratch_dir.mkdir(parents=True, exist_ok=True)
            scratch_file.write_text(source.content, encoding="utf-8")
        except OSError as e:
            raise StagingWriteFailed(f"Could not write {scratch_file}: {e}") from e

        try:
            if not self.blobs.container_exists(container):
                logger.info("Creating blob container %s", container)
                self.blobs.create_container(container)
            url = self.blobs.upload_file(container, identifier, scratch_file)
        finally:
            scratch_file.unlink(missing_ok=True)

        logger.info("Uploaded inline script to %s", url)
        return StagedScript(identifier=identifier, container=container)
