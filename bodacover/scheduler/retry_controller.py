"""
Retry Controller for Job Scheduler.

- Decides whether a failed run is retried and when
- Shared by the executor (handler failures, timeouts) and the recovery
  sweep (expired leases) so both apply the same bounded policy

What RetryController MUST NOT do:
- Execute jobs
- Write to the store (callers apply the planned transition)
- Disable jobs (is_enabled is operator-controlled only)
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from .entities import Job, JobStatus, duration_ms_between


logger = logging.getLogger(__name__)


# Default retry configuration
DEFAULT_BASE_DELAY_SECONDS = 60
DEFAULT_MAX_DELAY_SECONDS = 3600


@dataclass(frozen=True)
class RetryPlan:
    """Planned transition for a failed run."""

    new_status: JobStatus
    retry_count: int
    retry_at: Optional[datetime]
    changes: dict[str, Any]

    @property
    def exhausted(self) -> bool:
        """True when no automatic retry follows."""
        return self.retry_at is None


class RetryController:
    """
    Bounded retry with exponential backoff.

    Backoff calculation:
        delay = min(base_delay * (2 ^ retry_count), max_delay)
        Example with 60s base and 1h cap: 2m → 4m → 8m ... → 1h

    retry_count is incremented on every failure and never exceeds
    max_retries; once it reaches max_retries the job settles at FAILED.
    """

    def __init__(
        self,
        base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
        max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS,
    ):
        """
        Initialize RetryController.

        Args:
            base_delay_seconds: Base delay for exponential backoff
            max_delay_seconds: Upper bound for a single delay
        """
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds

    def calculate_backoff(self, retry_count: int) -> timedelta:
        """
        Calculate exponential backoff delay.

        Formula: delay = min(base_delay * (2 ^ retry_count), max_delay)
        """
        seconds = min(
            self.base_delay_seconds * (2 ** retry_count),
            self.max_delay_seconds,
        )
        return timedelta(seconds=seconds)

    def plan_failure(
        self,
        job: Job,
        now: datetime,
        error_message: str,
        retryable: bool = True,
    ) -> RetryPlan:
        """
        Plan the transition of a RUNNING job whose run failed.

        Args:
            job: The job as claimed for the failed run
            now: Failure time
            error_message: Human-readable failure description
            retryable: False for permanent failures

        Returns:
            RetryPlan with target status and the column changes to apply
        """
        retry_count = min(job.retry_count + 1, job.max_retries)

        changes: dict[str, Any] = {
            "completed_at": now,
            "duration_ms": duration_ms_between(job.started_at, now),
            "error_message": error_message,
            "retry_count": retry_count,
            "last_retry_at": now,
            "execution_token": None,
            "heartbeat_at": None,
            "cancel_requested": False,
        }

        if retryable and retry_count < job.max_retries:
            retry_at = now + self.calculate_backoff(retry_count)

            if job.is_recurring:
                changes["next_run_at"] = retry_at
            else:
                changes["scheduled_at"] = retry_at
                changes["next_run_at"] = None

            logger.info(
                f"Retry planned for job {job.job_id}: "
                f"attempt {retry_count}/{job.max_retries} at {retry_at.isoformat()}"
            )

            return RetryPlan(
                new_status=JobStatus.SCHEDULED,
                retry_count=retry_count,
                retry_at=retry_at,
                changes=changes,
            )

        changes["next_run_at"] = None

        if retryable:
            logger.info(
                f"Job {job.job_id} has reached max retries ({job.max_retries}). "
                "No auto-retry. Manual run via API still available."
            )
        else:
            logger.info(f"Job {job.job_id} failed permanently, no auto-retry")

        return RetryPlan(
            new_status=JobStatus.FAILED,
            retry_count=retry_count,
            retry_at=None,
            changes=changes,
        )
