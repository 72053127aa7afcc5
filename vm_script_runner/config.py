from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Runbook settings loaded from environment variables or .env file.

    Priority order for configuration values:
    1. Explicit arguments (CLI flags, ScriptRunbook kwargs)
    2. Environment variables
    3. .env file
    4. Default values
    """

    # Azure credentials (service principal)
    # These are used by ClientSecretCredential; otherwise DefaultAzureCredential
    azure_client_id: str | None = None
    azure_client_secret: str | None = None
    azure_tenant_id: str | None = None

    # Target account and VM resource group
    azure_subscription_id: str | None = None
    azure_resource_group: str | None = None

    # Blob backend for staged scripts
    azure_storage_account: str | None = None
    azure_storage_resource_group: str | None = None  # defaults to VM resource group
    script_container: str = "customscripts"

    # Custom Script Extension
    cse_extension_name: str = "CustomScriptExtension"
    cse_handler_version: str = "1.10"

    # Completion polling
    poll_interval_seconds: int = 15
    poll_timeout_seconds: int = 900

    # Local state
    checkpoint_dir: str = ".runbook/checkpoints"
    scratch_dir: str | None = None  # system temp dir when unset

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",  # ignore extra env vars
    }


settings = Settings()
