"""Azure implementation of the runbook's capability interfaces.

Uses the Azure Python SDK with DefaultAzureCredential as the default auth
path. DefaultAzureCredential automatically tries (in order):
    1. Environment variables (AZURE_CLIENT_ID + SECRET + TENANT_ID)
    2. Workload identity (Kubernetes)
    3. Managed identity (Azure VMs)
    4. Azure CLI credential (az login)
    5. Azure PowerShell credential
    6. Interactive browser

SDK clients are cached per credential: ``AzureSession.authenticate()`` reuses
its credential and only bumps the session generation when the credential
object changes. The backend then closes its old clients and rebuilds them
with the new credential on next use.

Example:
    from vm_script_runner.infrastructure.azure_vm import AzureScriptBackend, AzureSession

    session = AzureSession()
    backend = AzureScriptBackend(
        resource_group="my-rg",
        subscription_id="sub-123",
        storage_account="mystorage",
        session=session,
    )
    session.authenticate()
    status = backend.get_extension_status("my-vm")

    # Or pass an explicit credential
    from azure.identity import ClientSecretCredential
    cred = ClientSecretCredential(tenant_id=..., client_id=..., client_secret=...)
    session = AzureSession(credential=cred)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    ResourceExistsError,
    ResourceNotFoundError,
    ServiceRequestError,
)
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from vm_script_runner.errors import (
    AuthenticationFailed,
    InstanceNotFound,
    InstanceQueryFailed,
    StagingUploadFailed,
    TriggerConfigurationFailed,
)
from vm_script_runner.models import EMPTY_MARKER, CustomScriptConfig, ExtensionStatus

logger = logging.getLogger(__name__)

MANAGEMENT_SCOPE = "https://management.azure.com/.default"
CSE_PUBLISHER = "Microsoft.Compute"
CSE_TYPE = "CustomScriptExtension"
# Lowercased prefixes; failed codes may carry a trailing error number
TERMINAL_STATES = ("provisioningstate/succeeded", "provisioningstate/failed")


def _default_setting(name: str) -> Any:
    """Get a default value from config."""
    from vm_script_runner.config import settings

    return getattr(settings, name)


def _get_credential():
    """Get Azure credential.

    Priority:
        1. Service principal (if AZURE_CLIENT_ID + SECRET + TENANT_ID set)
        2. DefaultAzureCredential (CLI login, managed identity, etc.)
    """
    from azure.identity import ClientSecretCredential, DefaultAzureCredential

    from vm_script_runner.config import settings

    if all(
        [
            settings.azure_client_id,
            settings.azure_client_secret,
            settings.azure_tenant_id,
        ]
    ):
        logger.info("Using service principal authentication")
        return ClientSecretCredential(
            tenant_id=settings.azure_tenant_id,
            client_id=settings.azure_client_id,
            client_secret=settings.azure_client_secret,
        )

    logger.info("Using DefaultAzureCredential")
    return DefaultAzureCredential()


def _close(resource: Any) -> None:
    """Close an SDK client or credential, if it supports closing."""
    close = getattr(resource, "close", None)
    if callable(close):
        close()


def parse_extension_status(
    extensions: Optional[Iterable[Any]],
    extension_name: str = CSE_TYPE,
) -> ExtensionStatus:
    """Extract the Custom Script Extension status from an instance view.

    The marker is the time of the handler's first status entry. Only
    ``ProvisioningState/succeeded`` and ``ProvisioningState/failed`` are
    terminal; the time also moves while the handler is ``transitioning``.
    StdOut and StdErr come from substatuses coded ``ComponentStatus/StdOut/...``
    and ``ComponentStatus/StdErr/...``. A missing handler entry yields the
    ``"empty"`` marker.
    """
    for ext in extensions or []:
        ext_type = ext.type or ""
        if ext.name != extension_name and not ext_type.endswith(CSE_TYPE):
            continue

        marker = EMPTY_MARKER
        terminal = False
        statuses = ext.statuses or []
        if statuses:
            terminal = (statuses[0].code or "").lower().startswith(TERMINAL_STATES)
            if statuses[0].time is not None:
                marker = statuses[0].time.isoformat()

        stdout = stderr = ""
        for sub in ext.substatuses or []:
            code = sub.code or ""
            if "/StdOut/" in code:
                stdout = sub.message or ""
            elif "/StdErr/" in code:
                stderr = sub.message or ""
        return ExtensionStatus(marker=marker, stdout=stdout, stderr=stderr, terminal=terminal)

    return ExtensionStatus()


@dataclass
class AzureSession:
    """Authentication context shared by the backend's SDK clients.

    Args:
        credential: Optional Azure SDK credential. If None, a service
            principal or DefaultAzureCredential is built on first
            authentication and reused afterwards.

    ``generation`` increases only when the active credential object changes,
    so backend clients are rebuilt only then.
    """

    credential: Any = None

    def __post_init__(self) -> None:
        self._active_credential = None
        self._owns_credential = False
        self.generation = 0

    def authenticate(self) -> Any:
        """Verify the credential by acquiring a management token.

        The token is cached by the credential itself; calling this again
        refreshes it when it is close to expiry.

        Raises:
            AuthenticationFailed: If no token could be acquired.
        """
        if self.credential is not None:
            cred, owned = self.credential, False
        elif self._owns_credential:
            cred, owned = self._active_credential, True
        else:
            try:
                cred, owned = _get_credential(), True
            except (ImportError, ValueError) as e:
                raise AuthenticationFailed(f"Azure authentication failed: {e}") from e

        try:
            cred.get_token(MANAGEMENT_SCOPE)
        except (ClientAuthenticationError, ValueError) as e:
            if owned:
                # Build a fresh credential on the next attempt
                _close(cred)
                if cred is self._active_credential:
                    self._active_credential = None
                    self._owns_credential = False
            raise AuthenticationFailed(f"Azure authentication failed: {e}") from e

        if cred is not self._active_credential:
            if self._owns_credential:
                _close(self._active_credential)
            self._active_credential = cred
            self._owns_credential = owned
            self.generation += 1
            logger.debug("Authenticated (generation %d)", self.generation)
        return cred

    @property
    def active_credential(self) -> Any:
        if self._active_credential is None:
            return self.authenticate()
        return self._active_credential


@dataclass
class AzureScriptBackend:
    """VM lookup, extension configuration and blob storage on Azure.

    Args:
        resource_group: Resource group holding the target VMs.
        subscription_id: Azure subscription ID.
            Auto-loaded from AZURE_SUBSCRIPTION_ID env var if not provided.
        storage_account: Storage account holding the script containers.
        session: Shared authentication context.
        storage_resource_group: Resource group of the storage account
            (defaults to ``resource_group``).
        extension_name: Name of the extension resource on the VM.
        handler_version: Custom Script Extension handler version.
    """

    resource_group: str
    subscription_id: Optional[str] = field(
        default_factory=lambda: _default_setting("azure_subscription_id")
    )
    storage_account: Optional[str] = field(
        default_factory=lambda: _default_setting("azure_storage_account")
    )
    session: AzureSession = field(default_factory=AzureSession)
    storage_resource_group: Optional[str] = None
    extension_name: str = field(default_factory=lambda: _default_setting("cse_extension_name"))
    handler_version: str = field(default_factory=lambda: _default_setting("cse_handler_version"))

    def __post_init__(self) -> None:
        if not self.subscription_id:
            raise ValueError("subscription_id is required (set AZURE_SUBSCRIPTION_ID)")
        if not self.storage_account:
            raise ValueError("storage_account is required (set AZURE_STORAGE_ACCOUNT)")
        self.storage_resource_group = self.storage_resource_group or self.resource_group
        self._clients: dict[str, Any] = {}
        self._clients_generation = -1

    def _client(self, kind: str) -> Any:
        """Lazy-load an SDK client, rebuilding it when the credential changed."""
        # May authenticate, and so bump the generation, before the check below
        cred = self.session.active_credential
        if self._clients_generation != self.session.generation:
            for stale in self._clients.values():
                _close(stale)
            self._clients = {}
            self._clients_generation = self.session.generation

        if kind not in self._clients:
            if kind == "compute":
                from azure.mgmt.compute import ComputeManagementClient

                self._clients[kind] = ComputeManagementClient(cred, self.subscription_id)
            elif kind == "storage":
                from azure.mgmt.storage import StorageManagementClient

                self._clients[kind] = StorageManagementClient(cred, self.subscription_id)
            elif kind == "blob":
                from azure.storage.blob import BlobServiceClient

                self._clients[kind] = BlobServiceClient(
                    account_url=f"https://{self.storage_account}.blob.core.windows.net",
                    credential=cred,
                )
            else:
                raise KeyError(kind)
        return self._clients[kind]

    def _get_compute_client(self):
        return self._client("compute")

    def _get_storage_client(self):
        return self._client("storage")

    def _get_blob_service_client(self):
        return self._client("blob")

    # =========================================================================
    # InstanceDirectory
    # =========================================================================

    def get_location(self, vm_name: str) -> str:
        compute = self._get_compute_client()
        try:
            vm = compute.virtual_machines.get(self.resource_group, vm_name)
        except ResourceNotFoundError as e:
            raise InstanceNotFound(
                f"VM '{vm_name}' not found in resource group '{self.resource_group}'"
            ) from e
        except AzureError as e:
            raise InstanceQueryFailed(f"Could not read VM '{vm_name}': {e}") from e
        return vm.location

    def get_extension_status(self, vm_name: str) -> ExtensionStatus:
        try:
            view = self._instance_view(vm_name)
        except ResourceNotFoundError as e:
            raise InstanceNotFound(
                f"VM '{vm_name}' not found in resource group '{self.resource_group}'"
            ) from e
        except AzureError as e:
            raise InstanceQueryFailed(f"Could not read instance view of '{vm_name}': {e}") from e
        return parse_extension_status(view.extensions, self.extension_name)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception_type(ServiceRequestError),
        reraise=True,
    )
    def _instance_view(self, vm_name: str) -> Any:
        compute = self._get_compute_client()
        return compute.virtual_machines.instance_view(self.resource_group, vm_name)

    # =========================================================================
    # ExtensionConfigurator
    # =========================================================================

    def _storage_account_key(self) -> str:
        storage = self._get_storage_client()
        keys = storage.storage_accounts.list_keys(
            self.storage_resource_group, self.storage_account
        )
        return keys.keys[0].value

    def apply_custom_script(self, vm_name: str, config: CustomScriptConfig) -> None:
        """Submit the Custom Script Extension configuration.

        Does not wait for the long-running operation: for this extension it
        only finishes once the script has, and completion is the poller's job.
        """
        compute = self._get_compute_client()
        try:
            extension_params = {
                "location": config.location,
                "publisher": CSE_PUBLISHER,
                "type_properties_type": CSE_TYPE,
                "type_handler_version": self.handler_version,
                "auto_upgrade_minor_version": True,
                "settings": {
                    "fileUris": config.file_uris,
                    "commandToExecute": config.command_to_execute,
                    "timestamp": config.timestamp,
                },
                "protected_settings": {
                    "storageAccountName": self.storage_account,
                    "storageAccountKey": self._storage_account_key(),
                },
            }
            poller = compute.virtual_machine_extensions.begin_create_or_update(
                self.resource_group, vm_name, self.extension_name, extension_params
            )
        except ResourceNotFoundError as e:
            raise InstanceNotFound(
                f"VM '{vm_name}' not found in resource group '{self.resource_group}'"
            ) from e
        except AzureError as e:
            raise TriggerConfigurationFailed(
                f"Extension configuration rejected for {vm_name}: {e}"
            ) from e
        logger.info("Extension update submitted for %s (%s)", vm_name, poller.status())

    # =========================================================================
    # BlobStore
    # =========================================================================

    def container_exists(self, container: str) -> bool:
        blob_service = self._get_blob_service_client()
        try:
            return blob_service.get_container_client(container).exists()
        except AzureError as e:
            raise StagingUploadFailed(f"Could not check container '{container}': {e}") from e

    def create_container(self, container: str) -> None:
        blob_service = self._get_blob_service_client()
        try:
            blob_service.get_container_client(container).create_container()
        except ResourceExistsError:
            pass
        except AzureError as e:
            raise StagingUploadFailed(f"Could not create container '{container}': {e}") from e

    def blob_exists(self, container: str, name: str) -> bool:
        blob_service = self._get_blob_service_client()
        try:
            return blob_service.get_blob_client(container=container, blob=name).exists()
        except AzureError as e:
            raise StagingUploadFailed(f"Could not check blob '{name}' in '{container}': {e}") from e

    def upload_file(self, container: str, name: str, path: Path) -> str:
        blob_service = self._get_blob_service_client()
        blob_client = blob_service.get_blob_client(container=container, blob=name)
        try:
            with open(path, "rb") as fh:
                blob_client.upload_blob(fh, overwrite=True)
        except (AzureError, OSError) as e:
            raise StagingUploadFailed(f"Upload of {name} to '{container}' failed: {e}") from e
        return blob_client.url

    def blob_url(self, container: str, name: str) -> str:
        blob_service = self._get_blob_service_client()
        try:
            return blob_service.get_blob_client(container=container, blob=name).url
        except (AzureError, ValueError) as e:
            raise StagingUploadFailed(f"Bad blob URL for '{name}' in '{container}': {e}") from e
