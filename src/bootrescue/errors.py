"""Exceptions raised by the repair engine and its collaborators."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from bootrescue.models import BatchReport


class RescueError(Exception):
    """Base class for bootrescue errors."""


class PreconditionSkip(RescueError):
    """Raised when a target does not need repair.

    Not a failure: the target is reported as skipped and left untouched.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class ControlPlaneError(RescueError):
    """Raised when a remote control plane operation fails.

    Attributes:
        operation: Name of the control plane operation that failed.
        returncode: Exit status of the underlying CLI call, if any.
        stderr: Captured error output, if any.
    """

    def __init__(
        self,
        operation: str,
        message: str,
        returncode: int | None = None,
        stderr: str | None = None,
    ) -> None:
        self.operation = operation
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"{operation}: {message}")


class RepairAborted(RescueError):
    """Raised when a repair step refuses to continue for a known reason."""

    reason = "repair aborted"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.reason)


class OriginalDiskNotFoundError(RepairAborted):
    """Raised when the original OS disk of a target cannot be located."""

    reason = "original disk not found"


class DiskConflictError(RepairAborted):
    """Raised when the original OS disk is already attached elsewhere."""

    reason = "disk conflict"


class JobTimeoutError(RescueError):
    """Describes a job cancelled for exceeding its wall-clock budget."""

    def __init__(self, job_id: str, elapsed_seconds: float, timeout_seconds: float) -> None:
        self.job_id = job_id
        self.elapsed_seconds = elapsed_seconds
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"job {job_id} ran {elapsed_seconds:.1f}s, "
            f"exceeding the {timeout_seconds:.1f}s budget"
        )


class InvalidTransitionError(RescueError):
    """Raised when an invalid job state transition is attempted.

    Attributes:
        current: The current job state.
        target: The attempted target state.
        job_id: The ID of the job that failed to transition.
    """

    def __init__(self, current: object, target: object, job_id: str | None = None):
        self.current = current
        self.target = target
        self.job_id = job_id
        current_name = getattr(current, "value", current)
        target_name = getattr(target, "value", target)
        msg = f"Invalid transition from {current_name} to {target_name}"
        if job_id:
            msg += f" for job {job_id}"
        super().__init__(msg)


class BatchSetupError(RescueError):
    """Raised when a subscription batch cannot be set up.

    Authentication and subscription resolution failures are fatal for the
    whole run, since no target can proceed without that context.

    Attributes:
        subscription: Subscription name whose setup failed.
        report: Report covering the subscriptions processed before the failure.
    """

    def __init__(
        self,
        subscription: str,
        cause: Exception,
        report: BatchReport | None = None,
    ) -> None:
        self.subscription = subscription
        self.report = report
        super().__init__(f"setup failed for subscription {subscription!r}: {cause}")


class TargetFileError(RescueError):
    """Raised when a target list file cannot be read or validated."""


__all__ = [
    "BatchSetupError",
    "ControlPlaneError",
    "DiskConflictError",
    "InvalidTransitionError",
    "JobTimeoutError",
    "OriginalDiskNotFoundError",
    "PreconditionSkip",
    "RepairAborted",
    "RescueError",
    "TargetFileError",
]
