"""Exception taxonomy for the Moxie control core."""

from __future__ import annotations

from moxie_control.core.state_machine import SetupStage


class MoxieControlError(Exception):
    """Base class for all errors raised by the control core."""


class LaunchFailure(MoxieControlError):
    """An external command could not be spawned.

    Attributes:
        command: The argv that failed to launch.
    """

    def __init__(self, command: list[str], reason: str) -> None:
        self.command = command
        super().__init__(f"Failed to launch {command[0] if command else '?'}: {reason}")


class ProcessTimeout(LaunchFailure):
    """An external command did not exit before its timeout and was killed."""

    def __init__(self, command: list[str], timeout: float) -> None:
        self.timeout = timeout
        super().__init__(command, f"timed out after {timeout:.1f}s")


class NotConnected(MoxieControlError):
    """A publish was attempted while the broker connection is not up."""


class InvalidParameter(MoxieControlError, ValueError):
    """A control intent parameter is outside its allowed domain."""


class OrchestrationFailure(MoxieControlError):
    """A container lifecycle operation failed after its bounded retries."""


class StartTimeout(OrchestrationFailure):
    """The container never reached the running state while polling."""


class OperationInProgress(OrchestrationFailure):
    """Another lifecycle operation is already running."""


class SetupFailed(MoxieControlError):
    """First-run setup halted at a stage.

    Attributes:
        stage: The stage that failed.
        error: Human-readable description of the underlying failure.
    """

    def __init__(self, stage: SetupStage, error: str) -> None:
        self.stage = stage
        self.error = error
        super().__init__(f"Setup failed during {stage.name}: {error}")
