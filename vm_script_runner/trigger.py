"""Remote trigger: point the VM's Custom Script Extension at a staged script.

The baseline execution marker is read *before* the extension is
configured; the poller treats any later change of the marker as completion.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from vm_script_runner.interfaces import BlobStore, ExtensionConfigurator, InstanceDirectory
from vm_script_runner.models import CustomScriptConfig, StagedScript

logger = logging.getLogger(__name__)


def build_command(script_file: str, arguments: Optional[str] = None) -> str:
    """Build the ``commandToExecute`` for a downloaded PowerShell script."""
    command = f"powershell -ExecutionPolicy Unrestricted -File {script_file}"
    if arguments:
        command = f"{command} {arguments}"
    return command


class RemoteTrigger:
    """Associates a staged script with a VM and asks its agent to run it.

    No retry happens at this layer: InstanceNotFound and
    TriggerConfigurationFailed propagate to the caller.

    Callers must not trigger more than one script on the same VM at a time;
    the extension holds a single configuration and nothing here locks it.
    """

    def __init__(
        self,
        directory: InstanceDirectory,
        extensions: ExtensionConfigurator,
        blobs: BlobStore,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.directory = directory
        self.extensions = extensions
        self.blobs = blobs
        self.clock = clock

    def trigger(
        self,
        vm_name: str,
        staged: StagedScript,
        arguments: Optional[str] = None,
    ) -> str:
        """Configure the extension to run ``staged`` and return the baseline marker."""
        location = self.directory.get_location(vm_name)
        baseline = self.directory.get_extension_status(vm_name).marker
        logger.info("Baseline execution marker for %s: %s", vm_name, baseline)

        config = CustomScriptConfig(
            location=location,
            file_uris=[self.blobs.blob_url(staged.container, staged.identifier)],
            command_to_execute=build_command(staged.identifier, arguments),
            # A changed timestamp forces the agent to re-run identical settings
            timestamp=int(self.clock()),
        )
        logger.info("Triggering %s on %s", staged.identifier, vm_name)
        self.extensions.apply_custom_script(vm_name, config)
        return baseline
