"""Tests for the Azure backend with mocked SDK clients."""

from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
    ServiceRequestError,
)

from vm_script_runner.errors import (
    AuthenticationFailed,
    InstanceNotFound,
    InstanceQueryFailed,
    StagingUploadFailed,
    TriggerConfigurationFailed,
)
from vm_script_runner.infrastructure.azure_vm import (
    MANAGEMENT_SCOPE,
    AzureScriptBackend,
    AzureSession,
    parse_extension_status,
)
from vm_script_runner.models import EMPTY_MARKER, CustomScriptConfig

STATUS_TIME = datetime(2024, 5, 1, 10, 3, 12, tzinfo=timezone.utc)


def _cse_view(
    name="CustomScriptExtension",
    stdout="1",
    stderr="",
    time=STATUS_TIME,
    code="ProvisioningState/succeeded",
):
    return SimpleNamespace(
        name=name,
        type="Microsoft.Compute.CustomScriptExtension",
        statuses=[SimpleNamespace(code=code, time=time)],
        substatuses=[
            SimpleNamespace(code="ComponentStatus/StdOut/succeeded", message=stdout),
            SimpleNamespace(code="ComponentStatus/StdErr/succeeded", message=stderr),
        ],
    )


def _backend(session=None) -> AzureScriptBackend:
    return AzureScriptBackend(
        resource_group="rg",
        subscription_id="sub-123",
        storage_account="acct",
        session=session or AzureSession(credential=MagicMock()),
        extension_name="CustomScriptExtension",
        handler_version="1.10",
    )


class TestParseExtensionStatus:
    def test_reads_marker_and_streams(self):
        status = parse_extension_status([_cse_view(stdout="hello", stderr="warn")])
        assert status.marker == STATUS_TIME.isoformat()
        assert status.stdout == "hello"
        assert status.stderr == "warn"

    def test_no_handler_is_empty(self):
        other = SimpleNamespace(
            name="AzureMonitorAgent",
            type="Microsoft.Azure.Monitor.AzureMonitorWindowsAgent",
            statuses=[],
            substatuses=[],
        )
        assert parse_extension_status([other]).marker == EMPTY_MARKER
        assert parse_extension_status(None).marker == EMPTY_MARKER

    def test_matches_renamed_extension_by_type(self):
        status = parse_extension_status([_cse_view(name="runbook-cse")])
        assert status.marker == STATUS_TIME.isoformat()

    def test_missing_status_time(self):
        assert parse_extension_status([_cse_view(time=None)]).marker == EMPTY_MARKER

    def test_succeeded_and_failed_are_terminal(self):
        assert parse_extension_status([_cse_view()]).terminal is True
        assert parse_extension_status([_cse_view(code="ProvisioningState/failed")]).terminal
        # Failed codes may carry the script's exit code
        assert parse_extension_status([_cse_view(code="ProvisioningState/failed/3")]).terminal

    def test_transitioning_is_not_terminal(self):
        status = parse_extension_status([_cse_view(code="ProvisioningState/transitioning")])
        assert status.terminal is False
        assert status.marker == STATUS_TIME.isoformat()

    def test_missing_handler_is_terminal(self):
        assert parse_extension_status([]).terminal is True


class TestAzureSession:
    def test_authenticate_acquires_token(self):
        cred = MagicMock()
        session = AzureSession(credential=cred)

        assert session.authenticate() is cred
        cred.get_token.assert_called_once_with(MANAGEMENT_SCOPE)
        assert session.generation == 1

    def test_authenticate_failure(self):
        cred = MagicMock()
        cred.get_token.side_effect = ClientAuthenticationError("expired")
        with pytest.raises(AuthenticationFailed):
            AzureSession(credential=cred).authenticate()

    def test_service_principal_from_settings(self):
        fake_settings = SimpleNamespace(
            azure_client_id="cid", azure_client_secret="secret", azure_tenant_id="tid"
        )
        with patch("vm_script_runner.config.settings", fake_settings), \
             patch("azure.identity.ClientSecretCredential") as mock_sp:
            AzureSession().authenticate()

        mock_sp.assert_called_once_with(
            tenant_id="tid", client_id="cid", client_secret="secret"
        )

    def test_built_credential_is_reused(self):
        built = MagicMock()
        session = AzureSession()

        with patch(
            "vm_script_runner.infrastructure.azure_vm._get_credential", return_value=built
        ) as mock_get:
            session.authenticate()
            session.authenticate()
            session.authenticate()

        mock_get.assert_called_once()
        assert built.get_token.call_count == 3
        assert session.generation == 1
        built.close.assert_not_called()

    def test_failed_built_credential_is_closed_and_rebuilt(self):
        stale = MagicMock()
        fresh = MagicMock()
        session = AzureSession()

        with patch(
            "vm_script_runner.infrastructure.azure_vm._get_credential",
            side_effect=[stale, fresh],
        ):
            session.authenticate()
            stale.get_token.side_effect = ClientAuthenticationError("expired")
            with pytest.raises(AuthenticationFailed):
                session.authenticate()
            assert session.authenticate() is fresh

        stale.close.assert_called_once()
        assert session.generation == 2

    def test_caller_credential_is_not_closed(self):
        cred = MagicMock()
        cred.get_token.side_effect = ClientAuthenticationError("expired")

        with pytest.raises(AuthenticationFailed):
            AzureSession(credential=cred).authenticate()
        cred.close.assert_not_called()


class TestBackendClients:
    def test_requires_storage_account(self):
        with pytest.raises(ValueError):
            AzureScriptBackend(
                resource_group="rg", subscription_id="sub", storage_account=None,
                session=AzureSession(credential=MagicMock()),
            )

    def test_clients_kept_across_reauthentication(self):
        session = AzureSession(credential=MagicMock())
        backend = _backend(session)
        session.authenticate()

        with patch("azure.mgmt.compute.ComputeManagementClient") as mock_cls:
            first = backend._get_compute_client()
            session.authenticate()
            assert backend._get_compute_client() is first

        assert mock_cls.call_count == 1
        first.close.assert_not_called()

    def test_replaced_clients_are_closed(self):
        session = AzureSession(credential=MagicMock())
        backend = _backend(session)
        session.authenticate()

        with patch("azure.mgmt.compute.ComputeManagementClient") as compute_cls, \
             patch("azure.storage.blob.BlobServiceClient") as blob_cls:
            compute_cls.side_effect = [MagicMock(), MagicMock()]
            old_compute = backend._get_compute_client()
            old_blob = backend._get_blob_service_client()

            session.credential = MagicMock()
            session.authenticate()
            new_compute = backend._get_compute_client()

        assert new_compute is not old_compute
        old_compute.close.assert_called_once()
        old_blob.close.assert_called_once()
        assert compute_cls.call_args[0][0] is session.credential

    def test_first_client_authenticates_lazily(self):
        cred = MagicMock()
        backend = _backend(AzureSession(credential=cred))

        with patch("azure.mgmt.compute.ComputeManagementClient") as mock_cls:
            backend._get_compute_client()
            backend._get_compute_client()

        cred.get_token.assert_called_once_with(MANAGEMENT_SCOPE)
        assert mock_cls.call_count == 1


class TestInstanceDirectory:
    def test_get_location(self):
        backend = _backend()
        compute = MagicMock()
        compute.virtual_machines.get.return_value = SimpleNamespace(location="westus2")

        with patch.object(backend, "_get_compute_client", return_value=compute):
            assert backend.get_location("vm1") == "westus2"
        compute.virtual_machines.get.assert_called_once_with("rg", "vm1")

    def test_get_location_not_found(self):
        backend = _backend()
        compute = MagicMock()
        compute.virtual_machines.get.side_effect = ResourceNotFoundError("gone")

        with patch.object(backend, "_get_compute_client", return_value=compute):
            with pytest.raises(InstanceNotFound):
                backend.get_location("vm1")

    def test_get_extension_status(self):
        backend = _backend()
        compute = MagicMock()
        compute.virtual_machines.instance_view.return_value = SimpleNamespace(
            extensions=[_cse_view(stdout="1")]
        )

        with patch.object(backend, "_get_compute_client", return_value=compute):
            status = backend.get_extension_status("vm1")

        assert status.stdout == "1"
        compute.virtual_machines.instance_view.assert_called_once_with("rg", "vm1")

    def test_transient_errors_are_retried(self):
        backend = _backend()
        compute = MagicMock()
        compute.virtual_machines.instance_view.side_effect = [
            ServiceRequestError("connection reset"),
            SimpleNamespace(extensions=[]),
        ]

        with patch.object(backend, "_get_compute_client", return_value=compute), \
             patch("time.sleep"):
            assert backend.get_extension_status("vm1").marker == EMPTY_MARKER
        assert compute.virtual_machines.instance_view.call_count == 2

    def test_get_location_query_failure(self):
        backend = _backend()
        compute = MagicMock()
        compute.virtual_machines.get.side_effect = HttpResponseError("Forbidden")

        with patch.object(backend, "_get_compute_client", return_value=compute):
            with pytest.raises(InstanceQueryFailed):
                backend.get_location("vm1")

    def test_throttled_instance_view(self):
        backend = _backend()
        compute = MagicMock()
        compute.virtual_machines.instance_view.side_effect = HttpResponseError(
            "Too Many Requests"
        )

        with patch.object(backend, "_get_compute_client", return_value=compute):
            with pytest.raises(InstanceQueryFailed):
                backend.get_extension_status("vm1")
        # Only connection errors are retried
        assert compute.virtual_machines.instance_view.call_count == 1

    def test_persistent_connection_errors(self):
        backend = _backend()
        compute = MagicMock()
        compute.virtual_machines.instance_view.side_effect = ServiceRequestError("unreachable")

        with patch.object(backend, "_get_compute_client", return_value=compute), \
             patch("time.sleep"):
            with pytest.raises(InstanceQueryFailed):
                backend.get_extension_status("vm1")
        assert compute.virtual_machines.instance_view.call_count == 3


class TestApplyCustomScript:
    CONFIG = CustomScriptConfig(
        location="eastus",
        file_uris=["https://acct.blob.core.windows.net/customscripts/abc.ps1"],
        command_to_execute="powershell -ExecutionPolicy Unrestricted -File abc.ps1",
        timestamp=1700000000,
    )

    def _clients(self):
        compute = MagicMock()
        storage = MagicMock()
        storage.storage_accounts.list_keys.return_value = SimpleNamespace(
            keys=[SimpleNamespace(value="key-1")]
        )
        return compute, storage

    def test_submits_extension(self):
        backend = _backend()
        compute, storage = self._clients()

        with patch.object(backend, "_get_compute_client", return_value=compute), \
             patch.object(backend, "_get_storage_client", return_value=storage):
            backend.apply_custom_script("vm1", self.CONFIG)

        args = compute.virtual_machine_extensions.begin_create_or_update.call_args[0]
        assert args[:3] == ("rg", "vm1", "CustomScriptExtension")
        params = args[3]
        assert params["type_properties_type"] == "CustomScriptExtension"
        assert params["type_handler_version"] == "1.10"
        assert params["settings"] == {
            "fileUris": self.CONFIG.file_uris,
            "commandToExecute": self.CONFIG.command_to_execute,
            "timestamp": 1700000000,
        }
        assert params["protected_settings"] == {
            "storageAccountName": "acct",
            "storageAccountKey": "key-1",
        }
        storage.storage_accounts.list_keys.assert_called_once_with("rg", "acct")

    def test_rejected_configuration(self):
        backend = _backend()
        compute, storage = self._clients()
        compute.virtual_machine_extensions.begin_create_or_update.side_effect = (
            HttpResponseError("Conflict")
        )

        with patch.object(backend, "_get_compute_client", return_value=compute), \
             patch.object(backend, "_get_storage_client", return_value=storage):
            with pytest.raises(TriggerConfigurationFailed):
                backend.apply_custom_script("vm1", self.CONFIG)


class TestBlobStore:
    def test_upload_overwrites(self, tmp_path):
        backend = _backend()
        service = MagicMock()
        blob_client = service.get_blob_client.return_value
        blob_client.url = "https://acct.blob.core.windows.net/c/abc.ps1"
        script = tmp_path / "abc.ps1"
        script.write_text("Write-Output 1")

        with patch.object(backend, "_get_blob_service_client", return_value=service):
            url = backend.upload_file("c", "abc.ps1", script)

        assert url == blob_client.url
        service.get_blob_client.assert_called_with(container="c", blob="abc.ps1")
        assert blob_client.upload_blob.call_args.kwargs["overwrite"] is True

    def test_upload_failure(self, tmp_path):
        backend = _backend()
        service = MagicMock()
        service.get_blob_client.return_value.upload_blob.side_effect = HttpResponseError("403")
        script = tmp_path / "abc.ps1"
        script.write_text("x")

        with patch.object(backend, "_get_blob_service_client", return_value=service):
            with pytest.raises(StagingUploadFailed):
                backend.upload_file("c", "abc.ps1", script)

    def test_create_container_tolerates_race(self):
        backend = _backend()
        service = MagicMock()
        service.get_container_client.return_value.create_container.side_effect = (
            ResourceExistsError("exists")
        )

        with patch.object(backend, "_get_blob_service_client", return_value=service):
            backend.create_container("customscripts")

    def test_exists_checks(self):
        backend = _backend()
        service = MagicMock()
        service.get_container_client.return_value.exists.return_value = True
        service.get_blob_client.return_value.exists.return_value = False

        with patch.object(backend, "_get_blob_service_client", return_value=service):
            assert backend.container_exists("customscripts") is True
            assert backend.blob_exists("customscripts", "x.ps1") is False

    def test_exists_check_failures(self):
        backend = _backend()
        service = MagicMock()
        service.get_container_client.return_value.exists.side_effect = HttpResponseError("403")
        service.get_blob_client.return_value.exists.side_effect = ServiceRequestError("reset")

        with patch.object(backend, "_get_blob_service_client", return_value=service):
            with pytest.raises(StagingUploadFailed):
                backend.container_exists("customscripts")
            with pytest.raises(StagingUploadFailed):
                backend.blob_exists("customscripts", "x.ps1")

    def test_blob_url_failure(self):
        backend = _backend()
        service = MagicMock()
        service.get_blob_client.side_effect = ValueError("Please specify a container name")

        with patch.object(backend, "_get_blob_service_client", return_value=service):
            with pytest.raises(StagingUploadFailed):
                backend.blob_url("", "x.ps1")
