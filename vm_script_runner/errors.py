"""Error taxonomy for the script runbook.

Validation, staging and trigger errors are fatal and abort the run.
``ExecutionError`` and ``PollTimeout`` are *reported* on the run outcome
instead of raised, so partial output can still be returned; call
``RunOutcome.raise_for_status()`` to raise them.
"""

from __future__ import annotations


class ScriptRunnerError(Exception):
    """Base class for all runbook errors."""
    pass


class NoScriptSpecified(ScriptRunnerError):
    """Neither inline script content nor a staged script name was given."""
    pass


class AmbiguousScriptSource(ScriptRunnerError):
    """Both inline script content and a staged script name were given."""
    pass


class MissingContainer(ScriptRunnerError):
    """The blob container holding a named script does not exist."""
    pass


class MissingScript(ScriptRunnerError):
    """The named script blob does not exist in its container."""
    pass


class StagingWriteFailed(ScriptRunnerError):
    """Inline script content could not be written to the scratch file."""
    pass


class StagingUploadFailed(ScriptRunnerError):
    """Blob storage rejected or failed a staging request (check, create or upload)."""
    pass


class InstanceNotFound(ScriptRunnerError):
    """The target VM does not exist in the resource group."""
    pass


class InstanceQueryFailed(ScriptRunnerError):
    """The VM or its instance view could not be read for a reason other than absence."""
    pass


class TriggerConfigurationFailed(ScriptRunnerError):
    """The VM rejected the Custom Script Extension configuration."""
    pass


class AuthenticationFailed(ScriptRunnerError):
    """Credential could not be built or could not acquire a token."""
    pass


class CheckpointNotFound(ScriptRunnerError):
    """No persisted poll state exists for the requested run id."""
    pass


class ExecutionError(ScriptRunnerError):
    """The remote script finished but wrote to stderr."""

    def __init__(self, stderr: str, stdout: str = "") -> None:
        super().__init__(f"Remote script reported errors: {stderr.strip()[:500]}")
        self.stderr = stderr
        self.stdout = stdout


class PollTimeout(ScriptRunnerError):
    """The execution marker never changed within the polling budget."""

    def __init__(self, attempts: int, timeout_seconds: int) -> None:
        super().__init__(
            f"Script did not complete after {attempts} attempts ({timeout_seconds}s)"
        )
        self.attempts = attempts
        self.timeout_seconds = timeout_seconds
