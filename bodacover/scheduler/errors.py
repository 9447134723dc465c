"""
Scheduler-specific exceptions.

Two families:
- Store/operator errors (SchedulerError subclasses raised to callers)
- Execution outcomes raised by job handlers and interpreted by the
  executor: TransientFailure (retryable), PermanentFailure (no retry),
  PartialFailure (batch items failed), JobCancelledError (cooperative stop)
"""

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .entities import JobResult


class SchedulerError(Exception):
    """Base exception for all scheduler errors."""
    pass


class InvalidOperationError(SchedulerError):
    """
    Raised when an operator request is not valid for the job's state.

    Examples:
    - Resuming a RUNNING job
    - Running a job that is already RUNNING
    """
    pass


class ConfigurationError(SchedulerError):
    """Raised when the scheduler cannot be wired from the given settings."""
    pass


class InvalidTransitionError(SchedulerError):
    """Raised when a status edge is not in the allowed transition table."""

    def __init__(self, job_id: str, from_status: str, to_status: str):
        self.job_id = job_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid transition for job {job_id}: {from_status} -> {to_status}"
        )


class JobNotFoundError(SchedulerError):
    """Raised when a requested job does not exist."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class JobHistoryNotFoundError(SchedulerError):
    """Raised when a requested history row does not exist."""

    def __init__(self, history_id: str):
        self.history_id = history_id
        super().__init__(f"JobHistory not found: {history_id}")


# =============================================================================
# Execution outcomes
# =============================================================================


class TransientFailure(SchedulerError):
    """Retryable failure: downstream timeout, lock contention."""
    pass


class CollaboratorUnavailableError(TransientFailure):
    """
    A collaborator could not be reached at all.

    Aborts the whole run even when raised while processing a single rider.
    """

    def __init__(self, collaborator: str, reason: str = ""):
        self.collaborator = collaborator
        message = f"{collaborator} unavailable"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class PermanentFailure(SchedulerError):
    """Non-retryable failure: invalid configuration, unknown job type."""
    pass


class UnknownJobTypeError(PermanentFailure):
    """Raised when no handler is registered for a job type."""

    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"No handler registered for job type: {job_type}")


class PartialFailure(SchedulerError):
    """
    Batch items failed during a run.

    Raised for STRICT job types on any failed item, and for every job type
    when all attempted items failed. The executor records the carried
    result and retries per the retry policy.
    """

    def __init__(self, result: "JobResult", message: Optional[str] = None):
        self.result = result
        super().__init__(
            message
            or f"{result.failed} of {result.failed + result.succeeded} items failed"
        )


class JobCancelledError(SchedulerError):
    """Raised by a handler that stopped because cancellation was requested."""

    def __init__(self, result: "JobResult"):
        self.result = result
        super().__init__(
            f"Cancelled by operator request ({result.skipped} items skipped)"
        )


class StaleExecutionTokenError(SchedulerError):
    """
    The execution token is no longer current.

    Raised before an externally visible side effect when the attempt was
    timed out, swept as stale, or superseded.
    """

    def __init__(self, job_id: str, token: str):
        self.job_id = job_id
        self.token = token
        super().__init__(f"Execution token {token} for job {job_id} is no longer valid")


class JobTimeoutError(TransientFailure):
    """The handler did not finish before its deadline."""

    def __init__(self, job_id: str, timeout_seconds: float):
        self.job_id = job_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Job {job_id} exceeded its deadline of {timeout_seconds:g}s"
        )
