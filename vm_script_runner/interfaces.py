"""Capability interfaces the runbook core calls synchronously.

Implementations translate their own failures into the runbook error
taxonomy (see ``vm_script_runner.errors``). The Azure implementation lives
in ``vm_script_runner.infrastructure.azure_vm``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Protocol

from vm_script_runner.models import CustomScriptConfig, ExtensionStatus


class AuthProvider(Protocol):
    def authenticate(self) -> Any:
        """(Re-)establish the auth context; raises AuthenticationFailed."""
        ...


class InstanceDirectory(Protocol):
    def get_location(self, vm_name: str) -> str:
        """Return the VM's region; raises InstanceNotFound."""
        ...

    def get_extension_status(self, vm_name: str) -> ExtensionStatus:
        """Return the Custom Script Extension status; raises InstanceNotFound."""
        ...


class BlobStore(Protocol):
    def container_exists(self, container: str) -> bool: ...

    def create_container(self, container: str) -> None: ...

    def blob_exists(self, container: str, name: str) -> bool: ...

    def upload_file(self, container: str, name: str, path: Path) -> str:
        """Upload ``path`` as blob ``name``, overwriting; returns the blob URL."""
        ...

    def blob_url(self, container: str, name: str) -> str: ...


class ExtensionConfigurator(Protocol):
    def apply_custom_script(self, vm_name: str, config: CustomScriptConfig) -> None:
        """Apply the extension config; raises TriggerConfigurationFailed."""
        ...
