"""Completion polling for Custom Script Extension runs.

The loop is written against an explicit ``PollState`` so that it can be
suspended between iterations and resumed from a checkpoint, possibly in a
different process. Each iteration:

    1. persists the current state
    2. re-authenticates (a resumed host may hold a stale session)
    3. queries the extension status on the VM
    4. compares the marker with the baseline via ``advance()``
    5. sleeps ``poll_interval`` seconds when still pending

The number of status queries is bounded by ``max_attempts``, computed as
``round(timeout / interval)`` with halves rounded away from zero.

Example:
    poller = CompletionPoller(directory=backend, auth=session)
    state = PollState(run_id, baseline, compute_max_attempts(900, 15), request)
    result = poller.poll(state)
"""

from __future__ import annotations

import logging
import time
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional

from vm_script_runner.checkpoint import CheckpointStore
from vm_script_runner.interfaces import AuthProvider, InstanceDirectory
from vm_script_runner.models import (
    Done,
    ExtensionStatus,
    Pending,
    PollResult,
    PollState,
    TimedOut,
)

logger = logging.getLogger(__name__)


def compute_max_attempts(timeout: int, interval: int) -> int:
    """Number of status queries that fit in ``timeout`` at ``interval`` cadence.

    Always at least one query is made.
    """
    if interval <= 0:
        raise ValueError(f"poll interval must be positive, got {interval}")
    if timeout < 0:
        raise ValueError(f"timeout must not be negative, got {timeout}")
    # ROUND_HALF_UP rounds halves away from zero in decimal
    attempts = (Decimal(timeout) / Decimal(interval)).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return max(int(attempts), 1)


def advance(state: PollState, status: ExtensionStatus) -> tuple[PollState, PollResult]:
    """Fold one status observation into the poll state.

    Pure: no I/O, no clock. Returns the next state and the decision.
    """
    state = state.next_attempt()
    if status.terminal and status.marker != state.baseline_marker:
        return state, Done(stdout=status.stdout, stderr=status.stderr)
    if state.attempt >= state.max_attempts:
        return state, TimedOut(attempts=state.attempt)
    return state, Pending()


class CompletionPoller:
    """Drives ``advance()`` against a live VM until Done or TimedOut.

    Attributes:
        directory: Source of extension status.
        auth: Re-authenticated on every iteration.
        checkpoints: Optional store for resumable state.
        sleep: Sleep function (injectable for tests).
    """

    def __init__(
        self,
        directory: InstanceDirectory,
        auth: AuthProvider,
        checkpoints: Optional[CheckpointStore] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.directory = directory
        self.auth = auth
        self.checkpoints = checkpoints
        self.sleep = sleep

    def poll(self, state: PollState) -> PollResult:
        """Poll from ``state`` until the run is Done or TimedOut."""
        request = state.request
        logger.info(
            "Waiting for %s on %s (attempt %d/%d, every %ds)",
            request.script_name,
            request.vm_name,
            state.attempt + 1,
            state.max_attempts,
            request.poll_interval,
        )

        while True:
            if self.checkpoints is not None:
                self.checkpoints.save(state)

            self.auth.authenticate()
            status = self.directory.get_extension_status(request.vm_name)
            state, result = advance(state, status)

            if isinstance(result, Pending):
                logger.info(
                    "[%d/%d] %s still running on %s, retrying in %ds...",
                    state.attempt,
                    state.max_attempts,
                    request.script_name,
                    request.vm_name,
                    request.poll_interval,
                )
                self.sleep(request.poll_interval)
                continue

            if self.checkpoints is not None:
                self.checkpoints.delete(state.run_id)

            if isinstance(result, Done):
                logger.info(
                    "%s finished on %s after %d attempts",
                    request.script_name,
                    request.vm_name,
                    state.attempt,
                )
            return result
