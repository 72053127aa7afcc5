"""Infrastructure backends for the script runbook.

This module provides:
- AzureSession: Azure credential handling and re-authentication
- AzureScriptBackend: VM lookup, Custom Script Extension configuration,
  and blob storage on Azure

Example:
    ```python
    from vm_script_runner.infrastructure import AzureScriptBackend, AzureSession

    session = AzureSession()
    backend = AzureScriptBackend(resource_group="my-rg", session=session)
    session.authenticate()
    print(backend.get_extension_status("my-vm").marker)
    ```
"""

from vm_script_runner.infrastructure.azure_vm import (
    AzureScriptBackend,
    AzureSession,
    parse_extension_status,
)

__all__ = [
    "AzureScriptBackend",
    "AzureSession",
    "parse_extension_status",
]
