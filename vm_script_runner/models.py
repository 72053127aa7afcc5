"""Data model for script staging, triggering and completion polling."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Optional, Union

from vm_script_runner.errors import (
    AmbiguousScriptSource,
    NoScriptSpecified,
    ScriptRunnerError,
)

# Marker reported when the extension has never run on the VM
EMPTY_MARKER = "empty"

SUCCESS_OUTPUT = "Success"
# Legacy placeholder for "something went wrong and there is no usable output"
NO_OUTPUT_SENTINEL = "True"


# =========================================================================
# Script sources
# =========================================================================


@dataclass(frozen=True)
class InlineScript:
    """Script text supplied directly by the caller."""

    content: str


@dataclass(frozen=True)
class NamedScript:
    """Script already uploaded to the container under ``identifier``."""

    identifier: str


ScriptSource = Union[InlineScript, NamedScript]


def script_source_from_options(
    inline_script: str | None = None,
    script_name: str | None = None,
) -> ScriptSource:
    """Build a ScriptSource from the two mutually exclusive options.

    Raises:
        AmbiguousScriptSource: If both options are set.
        NoScriptSpecified: If neither option is set.
    """
    if inline_script and script_name:
        raise AmbiguousScriptSource(
            "Specify either an inline script or a script name, not both"
        )
    if inline_script:
        return InlineScript(content=inline_script)
    if script_name:
        return NamedScript(identifier=script_name)
    raise NoScriptSpecified("No inline script or script name specified")


@dataclass(frozen=True)
class StagedScript:
    """A script blob the VM agent can fetch."""

    identifier: str
    container: str


# =========================================================================
# Extension status
# =========================================================================


@dataclass(frozen=True)
class ExtensionStatus:
    """Custom Script Extension status as read from the VM instance view.

    ``marker`` is a change-detection token (the handler's last status time),
    not a wall-clock time with external meaning.

    ``terminal`` is False while the handler reports a non-final provisioning
    state (e.g. ``transitioning``); its marker then does not mean completion.
    """

    marker: str = EMPTY_MARKER
    stdout: str = ""
    stderr: str = ""
    terminal: bool = True


@dataclass(frozen=True)
class CustomScriptConfig:
    """Public settings applied to the Custom Script Extension."""

    location: str
    file_uris: list[str]
    command_to_execute: str
    timestamp: int


# =========================================================================
# Poll results
# =========================================================================


@dataclass(frozen=True)
class Pending:
    """Marker unchanged; attempts remain."""


@dataclass(frozen=True)
class Done:
    """Marker changed; the script finished."""

    stdout: str = ""
    stderr: str = ""

    @property
    def has_errors(self) -> bool:
        return bool(self.stderr)


@dataclass(frozen=True)
class TimedOut:
    """Marker never changed within the attempt budget."""

    attempts: int


PollResult = Union[Pending, Done, TimedOut]


# =========================================================================
# Resumable poll state
# =========================================================================


@dataclass(frozen=True)
class PollRequest:
    """Original request parameters needed to resume polling."""

    vm_name: str
    resource_group: str
    container: str
    script_name: str
    arguments: Optional[str] = None
    poll_interval: int = 15
    timeout: int = 900


@dataclass(frozen=True)
class PollState:
    """Everything the poller needs to continue after a suspend/resume.

    ``attempt`` counts status queries already made.
    """

    run_id: str
    baseline_marker: str
    max_attempts: int
    request: PollRequest
    attempt: int = 0

    @property
    def attempts_remaining(self) -> int:
        return max(self.max_attempts - self.attempt, 0)

    def next_attempt(self) -> PollState:
        return replace(self, attempt=self.attempt + 1)

    def to_dict(self) -> dict:
        """Serialize to dict for JSON storage."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> PollState:
        return cls(
            run_id=data["run_id"],
            baseline_marker=data["baseline_marker"],
            max_attempts=data["max_attempts"],
            attempt=data.get("attempt", 0),
            request=PollRequest(**data["request"]),
        )


# =========================================================================
# Run outcome
# =========================================================================


class RunStatus(str, Enum):
    SUBMITTED = "submitted"  # fire-and-forget: trigger accepted
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"  # stderr + some stdout
    FAILED_NO_OUTPUT = "failed_no_output"  # stderr, no stdout
    TIMED_OUT = "timed_out"


@dataclass
class RunOutcome:
    """External result of a runbook run.

    ``output`` is the payload for the caller: ``"Success"`` in fire-and-forget
    mode, captured stdout when there is any, otherwise None. ``error`` holds
    a reported ``ExecutionError`` or ``PollTimeout``.
    """

    run_id: str
    status: RunStatus
    output: Optional[str] = None
    stdout: str = ""
    stderr: str = ""
    error: Optional[ScriptRunnerError] = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.error is None

    def render(self) -> str:
        """Render the outcome as the runbook's legacy output string."""
        if self.status in (RunStatus.FAILED_NO_OUTPUT, RunStatus.TIMED_OUT):
            return NO_OUTPUT_SENTINEL
        return self.output or ""

    def raise_for_status(self) -> None:
        """Raise the reported ExecutionError or PollTimeout, if any."""
        if self.error is not None:
            raise self.error
