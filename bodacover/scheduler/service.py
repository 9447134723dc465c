"""
Scheduler Service - Main entry point for the Job Scheduler.

This service orchestrates all scheduler components:
- JobStore (storage)
- JobTypeRegistry (handlers)
- JobExecutor (execution, timeouts, outcomes)
- SchedulerCore + IntervalTicker (due-ness and claims)
- RetryController (retry policy)
- RecoveryManager (stale lease sweep)

Usage:
    service = SchedulerService.create(settings, registry, default_jobs)
    service.start()
    # ... ticker runs in background ...
    service.stop()
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional, Sequence, Union

from ..config import SchedulerSettings
from ..infra.alerts import AlertSink, build_alert_sink
from .core import IntervalTicker, SchedulerCore, TickReport
from .entities import (
    SYSTEM_ACTOR,
    Job,
    JobHistory,
    JobStatus,
    JobType,
    utc_now,
)
from .errors import InvalidOperationError, JobNotFoundError
from .executor import JobExecutor
from .persistence import JobStore
from .recovery import RecoveryManager
from .registry import JobTypeRegistry
from .retry_controller import RetryController
from .schedule import EAT, next_fire_after, validate_cron


logger = logging.getLogger(__name__)


STATS_PERIOD = timedelta(hours=24)

# Statuses an operator may cancel from
CANCELLABLE_STATUSES = (JobStatus.SCHEDULED, JobStatus.PAUSED)
# Statuses an operator may pause from
PAUSABLE_STATUSES = (JobStatus.SCHEDULED, JobStatus.COMPLETED, JobStatus.FAILED)
# Statuses an operator may resume from
RESUMABLE_STATUSES = (
    JobStatus.PAUSED,
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
)


@dataclass(frozen=True)
class JobDefinition:
    """A job the service seeds by name when it is missing."""

    name: str
    job_type: JobType
    cron_expression: Optional[str] = None
    config: dict = field(default_factory=dict)
    max_retries: int = 3


class SchedulerService:
    """
    Main service that coordinates all scheduler components.

    Provides:
    - Component initialization and wiring
    - Startup with recovery
    - Graceful shutdown
    - API-friendly methods for job operations
    """

    def __init__(
        self,
        store: JobStore,
        executor: JobExecutor,
        core: SchedulerCore,
        recovery_manager: RecoveryManager,
        ticker: Optional[IntervalTicker] = None,
        default_jobs: Sequence[JobDefinition] = (),
        clock: Callable[[], datetime] = utc_now,
        tz=EAT,
    ):
        """
        Initialize SchedulerService with all components.

        Use SchedulerService.create() for convenient construction.
        """
        self.store = store
        self.executor = executor
        self.core = core
        self.recovery_manager = recovery_manager
        self.ticker = ticker or IntervalTicker(core)
        self.default_jobs = list(default_jobs)
        self.clock = clock
        self.tz = tz

        self._started = False

    @classmethod
    def create(
        cls,
        settings: SchedulerSettings,
        registry: JobTypeRegistry,
        default_jobs: Sequence[JobDefinition] = (),
        alert_sink: Optional[AlertSink] = None,
        clock: Callable[[], datetime] = utc_now,
        db_path: Union[str, Path, None] = None,
        max_workers: Optional[int] = None,
    ) -> "SchedulerService":
        """
        Create a SchedulerService with all components wired together.

        Args:
            settings: Runtime configuration
            registry: Complete JobType -> handler table
            default_jobs: Jobs created by seed_default_jobs()
            alert_sink: Alert destination (default from settings)
            clock: Current-time source
            db_path: Override settings.db_path
            max_workers: Override settings.max_workers (0 = inline)

        Returns:
            Configured SchedulerService
        """
        path = db_path if db_path is not None else settings.db_path
        if str(path) != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)

        store = JobStore(path)
        alert_sink = alert_sink or build_alert_sink(settings.alert_webhook_url)

        retry_controller = RetryController(
            base_delay_seconds=settings.retry_base_seconds,
            max_delay_seconds=settings.retry_max_seconds,
        )

        executor = JobExecutor(
            store=store,
            registry=registry,
            retry_controller=retry_controller,
            alert_sink=alert_sink,
            clock=clock,
            default_timeout_seconds=settings.default_timeout_seconds,
            heartbeat_interval_seconds=settings.heartbeat_seconds,
            max_workers=settings.max_workers if max_workers is None else max_workers,
        )

        recovery_manager = RecoveryManager(
            store=store,
            retry_controller=retry_controller,
            lease_timeout_seconds=settings.lease_timeout_seconds,
            alert_sink=alert_sink,
        )

        core = SchedulerCore(
            store=store,
            executor=executor,
            clock=clock,
            tick_interval_seconds=settings.interval_seconds,
            recovery=recovery_manager,
        )

        return cls(
            store=store,
            executor=executor,
            core=core,
            recovery_manager=recovery_manager,
            ticker=IntervalTicker(core, settings.interval_seconds),
            default_jobs=default_jobs,
            clock=clock,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, run_recovery: bool = True, blocking: bool = False) -> dict:
        """
        Start the scheduler service.

        Args:
            run_recovery: Whether to run crash recovery first
            blocking: Whether to block on the tick loop

        Returns:
            Recovery statistics if recovery was run
        """
        if self._started:
            raise RuntimeError("Scheduler already started")

        logger.info("Starting scheduler service...")

        recovery_stats = {}
        if run_recovery:
            recovery_stats = self.recovery_manager.recover_on_startup(self.clock())

        self._started = True
        logger.info("Scheduler service started")
        self.ticker.start(blocking=blocking)

        return recovery_stats

    def stop(self, timeout: float = 30.0) -> None:
        """
        Stop the scheduler service gracefully.

        Running jobs are not preempted; their executions finish on their
        worker threads.
        """
        if not self._started:
            return

        logger.info("Stopping scheduler service...")
        self.ticker.stop(timeout=timeout)
        self._started = False
        logger.info("Scheduler service stopped")

    def close(self) -> None:
        """Stop the service and release the worker pool and store."""
        self.stop()
        self.executor.shutdown(wait=True)
        self.store.close()

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._started and self.ticker.is_running()

    def tick(self, now: Optional[datetime] = None) -> TickReport:
        """Run one scheduling pass immediately."""
        return self.core.tick(now)

    # =========================================================================
    # Job Operations (API-friendly)
    # =========================================================================

    def create_job(
        self,
        name: str,
        job_type: JobType,
        cron_expression: Optional[str] = None,
        is_recurring: Optional[bool] = None,
        config: Optional[dict] = None,
        scheduled_at: Optional[datetime] = None,
        max_retries: int = 3,
        created_by: Optional[str] = None,
    ) -> Job:
        """
        Create a new job.

        Recurring jobs get next_run_at seeded from their cron expression.

        Raises:
            InvalidOperationError: If the cron expression is invalid or a
                recurring job has none
        """
        if cron_expression is not None and not validate_cron(cron_expression):
            raise InvalidOperationError(f"Invalid cron expression: {cron_expression!r}")

        if is_recurring and not cron_expression:
            raise InvalidOperationError("Recurring jobs require a cron expression")

        if max_retries < 0:
            raise InvalidOperationError("max_retries must be >= 0")

        now = self.clock()
        job = Job.create(
            name=name,
            job_type=job_type,
            cron_expression=cron_expression,
            is_recurring=is_recurring,
            config=config,
            scheduled_at=scheduled_at,
            max_retries=max_retries,
            created_by=created_by,
            now=now,
        )

        if job.is_recurring:
            job = replace(
                job,
                next_run_at=next_fire_after(job.cron_expression, max(now, job.scheduled_at), self.tz),
            )

        self.store.create_job(job)
        logger.info(
            f"Created job {job.name} ({job.job_id}, type={job.job_type.value}, "
            f"cron={job.cron_expression})"
        )
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        return self.store.get_job(job_id)

    def require_job(self, job_id: str) -> Job:
        return self.store.require_job(job_id)

    def list_jobs(
        self,
        job_type: Optional[JobType] = None,
        status: Optional[JobStatus] = None,
        is_recurring: Optional[bool] = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Job], int]:
        """List jobs with optional filters."""
        return self.store.list_jobs(
            job_type=job_type,
            status=status,
            is_recurring=is_recurring,
            page=page,
            limit=limit,
        )

    def run_now(
        self,
        job_id: str,
        triggered_by: str = SYSTEM_ACTOR,
        window_id: Optional[str] = None,
    ) -> Job:
        """
        Trigger a job immediately.

        Args:
            job_id: Job to run
            triggered_by: Operator id recorded in history
            window_id: Batch window to (re)process; defaults to the most
                recently closed window

        Returns:
            The job after the run was handed to the executor
        """
        logger.info(f"Manual run of job {job_id} requested by {triggered_by}")
        self.core.run_now(job_id, triggered_by=triggered_by, window_id=window_id)
        return self.store.require_job(job_id)

    def pause(self, job_id: str) -> Job:
        """
        Pause a job: it stops firing until resumed.

        Raises:
            JobNotFoundError: If the job doesn't exist
            InvalidOperationError: If the job is RUNNING, CANCELLED or
                already PAUSED
        """
        job = self.store.require_job(job_id)

        if job.status not in PAUSABLE_STATUSES:
            raise InvalidOperationError(
                f"Cannot pause job {job_id} in {job.status.value} status"
            )

        updated = self.store.compare_and_transition(
            job_id,
            job.status,
            JobStatus.PAUSED,
            is_enabled=False,
            next_run_at=None,
        )
        if updated is None:
            raise InvalidOperationError(f"Job {job_id} changed concurrently; retry the request")

        logger.info(f"Paused job {job.name} ({job_id})")
        return updated

    def resume(self, job_id: str) -> Job:
        """
        Resume a paused, finished or cancelled job.

        The job is re-enabled, its retry budget is reset and (for recurring
        jobs) next_run_at is recomputed from now.

        Raises:
            JobNotFoundError: If the job doesn't exist
            InvalidOperationError: If the job is RUNNING or already SCHEDULED
        """
        job = self.store.require_job(job_id)

        if job.status not in RESUMABLE_STATUSES:
            raise InvalidOperationError(
                f"Cannot resume job {job_id} in {job.status.value} status"
            )

        now = self.clock()
        next_run_at = None
        if job.is_recurring and job.cron_expression:
            next_run_at = next_fire_after(job.cron_expression, now, self.tz)

        updated = self.store.compare_and_transition(
            job_id,
            job.status,
            JobStatus.SCHEDULED,
            is_enabled=True,
            next_run_at=next_run_at,
            retry_count=0,
            error_message=None,
            cancel_requested=False,
        )
        if updated is None:
            raise InvalidOperationError(f"Job {job_id} changed concurrently; retry the request")

        logger.info(f"Resumed job {job.name} ({job_id}), next run at {next_run_at}")
        return updated

    def cancel(self, job_id: str) -> Job:
        """
        Cancel a job.

        SCHEDULED and PAUSED jobs become CANCELLED immediately. RUNNING jobs
        are asked to stop at their next checkpoint; the executor records
        CANCELLED when the handler honours the request.

        Raises:
            JobNotFoundError: If the job doesn't exist
            InvalidOperationError: If the job already finished
        """
        job = self.store.require_job(job_id)

        if job.status == JobStatus.RUNNING:
            flagged = self.executor.request_cancel(job_id)
            return flagged or self.store.require_job(job_id)

        if job.status not in CANCELLABLE_STATUSES:
            raise InvalidOperationError(
                f"Cannot cancel job {job_id} in {job.status.value} status"
            )

        updated = self.store.compare_and_transition(
            job_id,
            job.status,
            JobStatus.CANCELLED,
            next_run_at=None,
            completed_at=self.clock(),
        )
        if updated is None:
            raise InvalidOperationError(f"Job {job_id} changed concurrently; retry the request")

        logger.info(f"Cancelled job {job.name} ({job_id})")
        return updated

    # =========================================================================
    # History & Statistics
    # =========================================================================

    def get_job_history(
        self,
        job_id: str,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[JobHistory], int]:
        """Execution history of a job, newest first."""
        if self.store.get_job(job_id) is None:
            raise JobNotFoundError(job_id)
        return self.store.list_history(job_id=job_id, page=page, limit=limit)

    def get_recent_history(self, hours: int = 24, limit: int = 100) -> list[JobHistory]:
        """Executions started within the last `hours` hours."""
        since = self.clock() - timedelta(hours=hours)
        return self.store.list_recent_history(since, limit=limit)

    def get_stats(self) -> dict:
        """
        Operator statistics.

        Returns:
            Dict with job totals, status counts, recent execution figures
            and active executions per job type
        """
        stats = self.store.job_stats(since=self.clock() - STATS_PERIOD)
        stats["jobs_by_status"] = self.store.count_jobs_by_status()
        stats["active_executions"] = self.executor.active_counts()
        return stats

    def get_status(self) -> dict:
        """Scheduler status for the operator view."""
        running = self.store.list_running_jobs()
        return {
            "is_running": self.is_running,
            "ticker_state": self.ticker.state.value,
            "tick_interval_seconds": self.core.tick_interval_seconds,
            "running_jobs": [
                {"job_id": job.job_id, "name": job.name, "job_type": job.job_type.value}
                for job in running
            ],
            "active_executions": self.executor.active_counts(),
        }

    def upcoming_runs(self, limit: int = 20) -> list[Job]:
        """Enabled SCHEDULED jobs ordered by their next firing."""
        jobs, _ = self.store.list_jobs(status=JobStatus.SCHEDULED, limit=1000)
        pending = [job for job in jobs if job.is_enabled]
        pending.sort(key=lambda job: job.next_run_at or job.scheduled_at)
        return pending[:limit]

    # =========================================================================
    # Seeding
    # =========================================================================

    def seed_default_jobs(self) -> int:
        """
        Create the default jobs that don't exist yet (matched by name).

        Returns:
            Number of jobs created
        """
        created = 0

        for definition in self.default_jobs:
            if self.store.find_job_by_name(definition.name) is not None:
                continue

            self.create_job(
                name=definition.name,
                job_type=definition.job_type,
                cron_expression=definition.cron_expression,
                config=definition.config,
                max_retries=definition.max_retries,
                created_by=SYSTEM_ACTOR,
            )
            created += 1

        if created > 0:
            logger.info(f"Seeded {created} default jobs")

        return created
