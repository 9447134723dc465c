"""
Recovery Manager for Job Scheduler.

- Detects RUNNING jobs whose lease went stale (no heartbeat within the
  lease timeout): the process running them crashed or hung
- Invalidates the execution token, finalizes open history rows as FAILED
  and applies the shared retry policy

Runs on startup and at the start of every tick. Recovery is idempotent:
running it multiple times produces the same result.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from ..infra.alerts import Alert, AlertSink, LoggingAlertSink
from .entities import Job, JobStatus
from .persistence import JobStore
from .retry_controller import RetryController


logger = logging.getLogger(__name__)


DEFAULT_LEASE_TIMEOUT_SECONDS = 300.0
LEASE_EXPIRED_MESSAGE = "Lease expired: no heartbeat from the executing scheduler"


class RecoveryManager:
    """
    Supervisory sweep for stale leases.

    Recovery scenarios:
    1. Crash during a RUNNING job -> heartbeat stops, job swept to retry
    2. Crash after the job outcome but before history finalization -> the
       job is no longer RUNNING and its open history row is closed on the
       next startup
    """

    def __init__(
        self,
        store: JobStore,
        retry_controller: Optional[RetryController] = None,
        lease_timeout_seconds: float = DEFAULT_LEASE_TIMEOUT_SECONDS,
        alert_sink: Optional[AlertSink] = None,
    ):
        """
        Initialize RecoveryManager.

        Args:
            store: JobStore for storage
            retry_controller: Retry policy shared with the executor
            lease_timeout_seconds: Heartbeat age after which a lease is stale
            alert_sink: Destination for alerts when a swept job is exhausted
        """
        self.store = store
        self.retry_controller = retry_controller or RetryController()
        self.lease_timeout_seconds = lease_timeout_seconds
        self.alert_sink = alert_sink or LoggingAlertSink()

    def recover_on_startup(self, now: datetime) -> dict:
        """
        Perform full recovery on scheduler startup.

        Returns:
            Recovery statistics
        """
        stats = {
            "stale_leases_recovered": 0,
            "orphaned_history_closed": 0,
            "errors": [],
        }

        logger.info("Starting crash recovery...")

        try:
            stats["stale_leases_recovered"] = len(self.sweep_stale_leases(now))
        except Exception as e:
            logger.error(f"Error recovering stale leases: {e}")
            stats["errors"].append(f"Stale leases: {e}")

        try:
            stats["orphaned_history_closed"] = self.close_orphaned_history(now)
        except Exception as e:
            logger.error(f"Error closing orphaned history: {e}")
            stats["errors"].append(f"History: {e}")

        logger.info(
            f"Recovery complete: "
            f"{stats['stale_leases_recovered']} stale leases recovered, "
            f"{stats['orphaned_history_closed']} orphaned history rows closed"
        )

        return stats

    def is_stale(self, job: Job, now: datetime) -> bool:
        last_seen = job.heartbeat_at or job.started_at
        if last_seen is None:
            return True
        return now - last_seen > timedelta(seconds=self.lease_timeout_seconds)

    def sweep_stale_leases(self, now: datetime) -> list[Job]:
        """
        Force stale RUNNING jobs to FAILED and apply the retry policy.

        Args:
            now: Sweep time

        Returns:
            Jobs that were recovered by this sweep
        """
        recovered = []

        for job in self.store.list_running_jobs():
            if not self.is_stale(job, now):
                continue

            plan = self.retry_controller.plan_failure(job, now, LEASE_EXPIRED_MESSAGE)

            # Conditional on the stale token so a late heartbeat wins
            updated = self.store.compare_and_transition(
                job.job_id,
                JobStatus.RUNNING,
                plan.new_status,
                expected_token=job.execution_token,
                **plan.changes,
            )

            if updated is None:
                logger.debug(f"Job {job.job_id} changed during sweep, skipping")
                continue

            for history in self.store.list_open_history(job.job_id):
                self.store.finalize_history(
                    history.history_id,
                    JobStatus.FAILED,
                    now,
                    error_message=LEASE_EXPIRED_MESSAGE,
                )

            logger.warning(
                f"Recovered stale lease of job {job.name} ({job.job_id}): "
                f"last heartbeat {job.heartbeat_at.isoformat() if job.heartbeat_at else 'never'}, "
                f"now {plan.new_status.value}"
            )

            if plan.exhausted:
                self._alert(updated)

            recovered.append(updated)

        return recovered

    def close_orphaned_history(self, now: datetime) -> int:
        """
        Close open history rows of jobs that are no longer RUNNING.

        Returns:
            Number of rows closed
        """
        closed = 0
        running_ids = {job.job_id for job in self.store.list_running_jobs()}
        jobs, _ = self.store.list_jobs(limit=10_000)

        for job in jobs:
            if job.job_id in running_ids:
                continue
            for history in self.store.list_open_history(job.job_id):
                if self.store.finalize_history(
                    history.history_id,
                    JobStatus.FAILED,
                    now,
                    error_message="Scheduler crash recovery",
                ):
                    closed += 1

        return closed

    def _alert(self, job: Job) -> None:
        alert = Alert(
            event="job.retries_exhausted",
            job_id=job.job_id,
            job_name=job.name,
            job_type=job.job_type.value,
            message=LEASE_EXPIRED_MESSAGE,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
        )
        try:
            self.alert_sink.send(alert)
        except Exception as e:
            logger.error(f"Failed to send alert for job {job.job_id}: {e}")
