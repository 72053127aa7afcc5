"""Script runbook: stage a script, run it on a VM, optionally wait for output.

Sequence::

    validate source  (no network)
    authenticate     (once)
    ScriptStager     -> StagedScript
    RemoteTrigger    -> baseline execution marker
    CompletionPoller -> Done / TimedOut      (only when wait=True)

Example:
    from vm_script_runner.runbook import ScriptRunbook

    runbook = ScriptRunbook.for_azure(
        resource_group="my-rg",
        subscription_id="sub-123",
        storage_account="mystorage",
    )
    outcome = runbook.run("my-vm", inline_script="Write-Output 1", wait=True)
    print(outcome.render())  # "1"

    # After a host restart, continue waiting on the same run
    outcome = runbook.resume(outcome.run_id)
"""

from __future__ import annotations

import logging
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Optional

from vm_script_runner.checkpoint import CheckpointStore
from vm_script_runner.errors import ExecutionError, PollTimeout
from vm_script_runner.interfaces import (
    AuthProvider,
    BlobStore,
    ExtensionConfigurator,
    InstanceDirectory,
)
from vm_script_runner.models import (
    SUCCESS_OUTPUT,
    Done,
    PollRequest,
    PollResult,
    PollState,
    RunOutcome,
    RunStatus,
    TimedOut,
    script_source_from_options,
)
from vm_script_runner.poller import CompletionPoller, compute_max_attempts
from vm_script_runner.stager import ScriptStager
from vm_script_runner.trigger import RemoteTrigger

logger = logging.getLogger(__name__)


def outcome_from_poll_result(state: PollState, result: PollResult) -> RunOutcome:
    """Map a terminal poll result to the external run outcome.

    ExecutionError and PollTimeout are logged and attached to the outcome
    rather than raised, so whatever stdout was captured is still returned.
    """
    run_id = state.run_id
    if isinstance(result, TimedOut):
        error = PollTimeout(attempts=result.attempts, timeout_seconds=state.request.timeout)
        logger.error("%s", error)
        return RunOutcome(run_id=run_id, status=RunStatus.TIMED_OUT, error=error)

    if not isinstance(result, Done):
        raise ValueError(f"Poll result is not terminal: {result!r}")

    if not result.has_errors:
        return RunOutcome(
            run_id=run_id,
            status=RunStatus.COMPLETED,
            output=result.stdout or None,
            stdout=result.stdout,
        )

    error = ExecutionError(stderr=result.stderr, stdout=result.stdout)
    logger.warning("%s", error)
    status = RunStatus.COMPLETED_WITH_ERRORS if result.stdout else RunStatus.FAILED_NO_OUTPUT
    return RunOutcome(
        run_id=run_id,
        status=status,
        output=result.stdout or None,
        stdout=result.stdout,
        stderr=result.stderr,
        error=error,
    )


class ScriptRunbook:
    """Orchestrates staging, triggering and completion polling for one VM group.

    Attributes:
        resource_group: Resource group of the target VMs.
        auth: Authentication provider.
        directory: VM lookup and extension status.
        blobs: Blob storage for staged scripts.
        extensions: Extension configuration.
        checkpoints: Store for resumable poll state.
        scratch_dir: Directory for transient inline script files.
        sleep: Sleep function used between polls.
    """

    def __init__(
        self,
        resource_group: str,
        auth: AuthProvider,
        directory: InstanceDirectory,
        blobs: BlobStore,
        extensions: ExtensionConfigurator,
        checkpoints: Optional[CheckpointStore] = None,
        scratch_dir: Optional[str | Path] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.resource_group = resource_group
        self.auth = auth
        self.directory = directory
        self.blobs = blobs
        self.extensions = extensions
        self.checkpoints = checkpoints
        self.stager = ScriptStager(blobs, scratch_dir=scratch_dir)
        self.trigger = RemoteTrigger(directory, extensions, blobs)
        self.poller = CompletionPoller(directory, auth, checkpoints=checkpoints, sleep=sleep)

    @classmethod
    def for_azure(
        cls,
        resource_group: Optional[str] = None,
        subscription_id: Optional[str] = None,
        storage_account: Optional[str] = None,
        credential: Any = None,
        storage_resource_group: Optional[str] = None,
        checkpoint_dir: Optional[str | Path] = None,
        scratch_dir: Optional[str | Path] = None,
    ) -> ScriptRunbook:
        """Build a runbook backed by the Azure SDK.

        Unset arguments fall back to ``vm_script_runner.config.settings``.
        """
        from vm_script_runner.config import settings
        from vm_script_runner.infrastructure.azure_vm import AzureScriptBackend, AzureSession

        resource_group = resource_group or settings.azure_resource_group
        if not resource_group:
            raise ValueError("resource_group is required (set AZURE_RESOURCE_GROUP)")

        session = AzureSession(credential=credential)
        backend = AzureScriptBackend(
            resource_group=resource_group,
            subscription_id=subscription_id or settings.azure_subscription_id,
            storage_account=storage_account or settings.azure_storage_account,
            session=session,
            storage_resource_group=(
                storage_resource_group or settings.azure_storage_resource_group
            ),
        )
        return cls(
            resource_group=resource_group,
            auth=session,
            directory=backend,
            blobs=backend,
            extensions=backend,
            checkpoints=CheckpointStore(checkpoint_dir or settings.checkpoint_dir),
            scratch_dir=scratch_dir or settings.scratch_dir,
        )

    def run(
        self,
        vm_name: str,
        inline_script: Optional[str] = None,
        script_name: Optional[str] = None,
        arguments: Optional[str] = None,
        container: str = "customscripts",
        wait: bool = False,
        poll_interval: int = 15,
        timeout: int = 900,
    ) -> RunOutcome:
        """Stage and run a script on ``vm_name``.

        Args:
            vm_name: Target VM name.
            inline_script: Script text to upload (one-of with script_name).
            script_name: Name of a script blob already in ``container``.
            arguments: Argument string passed to the script.
            container: Blob container for scripts.
            wait: Poll until the script completes.
            poll_interval: Seconds between status queries.
            timeout: Total polling budget in seconds.

        Returns:
            RunOutcome; ``status`` is SUBMITTED when ``wait`` is False.

        Raises:
            NoScriptSpecified, AmbiguousScriptSource: Before any network call.
            MissingContainer, MissingScript, StagingWriteFailed,
            StagingUploadFailed, InstanceNotFound,
            TriggerConfigurationFailed, AuthenticationFailed: Fatal errors.
        """
        source = script_source_from_options(inline_script, script_name)
        max_attempts = compute_max_attempts(timeout, poll_interval) if wait else 0

        self.auth.authenticate()

        staged = self.stager.stage(source, container=container)
        baseline = self.trigger.trigger(vm_name, staged, arguments=arguments)
        run_id = uuid.uuid4().hex

        if not wait:
            logger.info("Run %s submitted to %s (not waiting)", run_id, vm_name)
            return RunOutcome(run_id=run_id, status=RunStatus.SUBMITTED, output=SUCCESS_OUTPUT)

        state = PollState(
            run_id=run_id,
            baseline_marker=baseline,
            max_attempts=max_attempts,
            request=PollRequest(
                vm_name=vm_name,
                resource_group=self.resource_group,
                container=staged.container,
                script_name=staged.identifier,
                arguments=arguments,
                poll_interval=poll_interval,
                timeout=timeout,
            ),
        )
        result = self.poller.poll(state)
        return outcome_from_poll_result(state, result)

    def resume(self, run_id: str) -> RunOutcome:
        """Continue polling a run from its last checkpoint.

        Raises:
            CheckpointNotFound: If there is no checkpoint for ``run_id``.
        """
        if self.checkpoints is None:
            raise ValueError("resume requires a checkpoint store")
        state = self.checkpoints.load(run_id)
        if state.request.resource_group != self.resource_group:
            raise ValueError(
                f"Run {run_id} targets resource group '{state.request.resource_group}', "
                f"not '{self.resource_group}'"
            )
        logger.info(
            "Resuming run %s on %s at attempt %d/%d",
            run_id,
            state.request.vm_name,
            state.attempt + 1,
            state.max_attempts,
        )
        result = self.poller.poll(state)
        return outcome_from_poll_result(state, result)


def run_script(
    vm_name: str,
    resource_group: Optional[str] = None,
    inline_script: Optional[str] = None,
    script_name: Optional[str] = None,
    arguments: Optional[str] = None,
    container: Optional[str] = None,
    credential: Any = None,
    subscription_id: Optional[str] = None,
    storage_account: Optional[str] = None,
    poll_interval: Optional[int] = None,
    timeout: Optional[int] = None,
    wait: bool = False,
) -> RunOutcome:
    """One-call runbook entry point on Azure; unset options come from settings."""
    from vm_script_runner.config import settings

    # Validate before building any clients
    script_source_from_options(inline_script, script_name)

    runbook = ScriptRunbook.for_azure(
        resource_group=resource_group,
        subscription_id=subscription_id,
        storage_account=storage_account,
        credential=credential,
    )
    return runbook.run(
        vm_name,
        inline_script=inline_script,
        script_name=script_name,
        arguments=arguments,
        container=container or settings.script_container,
        wait=wait,
        poll_interval=settings.poll_interval_seconds if poll_interval is None else poll_interval,
        timeout=settings.poll_timeout_seconds if timeout is None else timeout,
    )
