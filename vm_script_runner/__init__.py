"""VM Script Runner: run scripts on Azure VMs via the Custom Script Extension.

This package provides:
- Script staging to Azure blob storage (inline text or pre-uploaded blobs)
- Remote execution through the VM's Custom Script Extension
- Resumable completion polling with checkpoints and re-authentication

Quick Start:
    ```python
    from vm_script_runner import ScriptRunbook

    runbook = ScriptRunbook.for_azure(
        resource_group="my-rg",
        subscription_id="sub-123",
        storage_account="mystorage",
    )

    # Fire-and-forget
    outcome = runbook.run("my-vm", inline_script="Write-Output 1")
    print(outcome.render())  # "Success"

    # Wait for stdout
    outcome = runbook.run("my-vm", script_name="setup.ps1", wait=True, timeout=600)
    outcome.raise_for_status()
    print(outcome.output)
    ```
"""

__version__ = "0.1.0"

from vm_script_runner.checkpoint import CheckpointStore
from vm_script_runner.errors import (
    AmbiguousScriptSource,
    AuthenticationFailed,
    CheckpointNotFound,
    ExecutionError,
    InstanceNotFound,
    InstanceQueryFailed,
    MissingContainer,
    MissingScript,
    NoScriptSpecified,
    PollTimeout,
    ScriptRunnerError,
    StagingUploadFailed,
    StagingWriteFailed,
    TriggerConfigurationFailed,
)
from vm_script_runner.models import (
    EMPTY_MARKER,
    Done,
    ExtensionStatus,
    InlineScript,
    NamedScript,
    Pending,
    PollState,
    RunOutcome,
    RunStatus,
    StagedScript,
    TimedOut,
)
from vm_script_runner.poller import CompletionPoller, advance, compute_max_attempts
from vm_script_runner.runbook import ScriptRunbook, run_script
from vm_script_runner.stager import ScriptStager
from vm_script_runner.trigger import RemoteTrigger

__all__ = [
    # Version
    "__version__",
    # Orchestration
    "ScriptRunbook",
    "run_script",
    "ScriptStager",
    "RemoteTrigger",
    "CompletionPoller",
    "CheckpointStore",
    "advance",
    "compute_max_attempts",
    # Data model
    "EMPTY_MARKER",
    "InlineScript",
    "NamedScript",
    "StagedScript",
    "ExtensionStatus",
    "Pending",
    "Done",
    "TimedOut",
    "PollState",
    "RunOutcome",
    "RunStatus",
    # Errors
    "ScriptRunnerError",
    "NoScriptSpecified",
    "AmbiguousScriptSource",
    "MissingContainer",
    "MissingScript",
    "StagingWriteFailed",
    "StagingUploadFailed",
    "InstanceNotFound",
    "InstanceQueryFailed",
    "TriggerConfigurationFailed",
    "AuthenticationFailed",
    "CheckpointNotFound",
    "ExecutionError",
    "PollTimeout",
]
