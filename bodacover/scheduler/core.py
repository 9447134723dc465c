"""
SchedulerCore - the single decision point for due-ness.

- tick(now) finds due jobs, claims them with an atomic compare-and-transition
  and hands the winners to the JobExecutor
- IntervalTicker drives tick() on a fixed interval in production

What SchedulerCore MUST NOT do:
- Execute handlers (JobExecutor's responsibility)
- Backfill missed ticks: a job that missed several firings runs once
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from enum import Enum
from typing import Callable, Iterable, Optional

from .entities import (
    CLAIMABLE_STATUSES,
    MANUALLY_CLAIMABLE_STATUSES,
    SYSTEM_ACTOR,
    Job,
    JobStatus,
    generate_uuid,
    utc_now,
)
from .errors import InvalidOperationError
from .executor import ExecutionContext, JobExecutor
from .persistence import JobStore
from .recovery import RecoveryManager
from .schedule import EAT, due_time


logger = logging.getLogger(__name__)


DEFAULT_TICK_INTERVAL_SECONDS = 60.0


@dataclass
class TickReport:
    """What a single tick decided, job by job."""

    tick_at: datetime
    started: list[str] = field(default_factory=list)
    skipped_running: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    already_claimed: list[str] = field(default_factory=list)
    swept: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    def note(self, message: str) -> None:
        self.notes.append(message)


class SchedulerCore:
    """
    Explicit scheduler object with injected clock, store and executor.

    Several processes may run a SchedulerCore against the same store; the
    compare-and-transition claim guarantees at most one wins each firing.
    """

    def __init__(
        self,
        store: JobStore,
        executor: JobExecutor,
        clock: Callable[[], datetime] = utc_now,
        tick_interval_seconds: float = DEFAULT_TICK_INTERVAL_SECONDS,
        recovery: Optional[RecoveryManager] = None,
        tz: tzinfo = EAT,
    ):
        """
        Initialize SchedulerCore.

        Args:
            store: Shared JobStore
            executor: JobExecutor that runs claimed jobs
            clock: Current-time source
            tick_interval_seconds: Tick period; a due time older than one
                period marks the run as a catch-up
            recovery: Stale-lease sweeper run at the start of every tick
            tz: Zone in which cron expressions are evaluated
        """
        self.store = store
        self.executor = executor
        self.clock = clock
        self.tick_interval_seconds = tick_interval_seconds
        self.recovery = recovery
        self.tz = tz

    # =========================================================================
    # Tick
    # =========================================================================

    def tick(self, now: Optional[datetime] = None) -> TickReport:
        """
        Run one scheduling pass.

        1. Sweep stale leases
        2. List enabled jobs due at `now`
        3. RUNNING -> "already running", no capacity -> left for a later tick
        4. Claim SCHEDULED|PAUSED -> RUNNING with a fresh execution token
        5. Hand the claimed job and its ExecutionContext to the executor

        Args:
            now: Tick time (defaults to the injected clock)

        Returns:
            TickReport describing every decision
        """
        now = now or self.clock()
        report = TickReport(tick_at=now)

        if self.recovery is not None:
            try:
                swept = self.recovery.sweep_stale_leases(now)
                report.swept.extend(job.job_id for job in swept)
            except Exception as e:
                logger.error(f"Stale lease sweep failed: {e}", exc_info=True)
                report.errors.append(f"sweep: {e}")

        for job in self.store.list_enabled_due(now):
            if job.status == JobStatus.RUNNING:
                logger.info(f"Skipping job {job.name} ({job.job_id}): already running")
                report.skipped_running.append(job.job_id)
                report.note(f"skipped: already running ({job.job_id})")
                continue

            due_at = due_time(job, now, self.tz)
            if due_at is None:
                continue

            self._claim_and_submit(
                job,
                now=now,
                due_at=due_at,
                expected_statuses=CLAIMABLE_STATUSES,
                triggered_by=SYSTEM_ACTOR,
                report=report,
            )

        if report.started or report.skipped_running or report.deferred:
            logger.info(
                f"Tick {now.isoformat()}: started={len(report.started)}, "
                f"running={len(report.skipped_running)}, deferred={len(report.deferred)}, "
                f"claimed_elsewhere={len(report.already_claimed)}"
            )

        return report

    def run_now(
        self,
        job_id: str,
        triggered_by: str = SYSTEM_ACTOR,
        window_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TickReport:
        """
        Claim and run a job immediately, outside its schedule.

        Args:
            job_id: Job to run
            triggered_by: Operator id recorded in history
            window_id: Batch window to (re)process instead of the latest one
            now: Trigger time (defaults to the injected clock)

        Raises:
            JobNotFoundError: If the job doesn't exist
            InvalidOperationError: If the job is RUNNING, was claimed
                concurrently, or its job type has no free capacity
        """
        now = now or self.clock()
        job = self.store.require_job(job_id)

        if job.status == JobStatus.RUNNING:
            raise InvalidOperationError(f"Job {job_id} is already running")

        report = TickReport(tick_at=now)
        self._claim_and_submit(
            job,
            now=now,
            due_at=now,
            expected_statuses=MANUALLY_CLAIMABLE_STATUSES,
            triggered_by=triggered_by,
            report=report,
            requested_window_id=window_id,
        )

        if report.deferred:
            raise InvalidOperationError(
                f"No capacity for job type {job.job_type.value}; try again later"
            )
        if report.already_claimed:
            raise InvalidOperationError(f"Job {job_id} was claimed concurrently")

        return report

    # =========================================================================
    # Claim
    # =========================================================================

    def _claim_and_submit(
        self,
        job: Job,
        now: datetime,
        due_at: datetime,
        expected_statuses: Iterable[JobStatus],
        triggered_by: str,
        report: TickReport,
        requested_window_id: Optional[str] = None,
    ) -> None:
        if not self.executor.try_reserve(job.job_type):
            logger.debug(f"No capacity for job type {job.job_type.value}, deferring {job.job_id}")
            report.deferred.append(job.job_id)
            return

        token = generate_uuid()
        try:
            claimed = self.store.compare_and_transition(
                job.job_id,
                expected_statuses,
                JobStatus.RUNNING,
                execution_token=token,
                heartbeat_at=now,
                started_at=now,
                cancel_requested=False,
            )
        except Exception:
            self.executor.release(job.job_type)
            raise

        if claimed is None:
            self.executor.release(job.job_type)
            logger.info(f"Job {job.job_id} already claimed by another scheduler")
            report.already_claimed.append(job.job_id)
            report.note(f"skipped: already claimed ({job.job_id})")
            return

        context = self._build_context(job, token, now, due_at, triggered_by, requested_window_id)
        report.started.append(job.job_id)

        try:
            self.executor.submit(claimed, context)
        except Exception as e:
            # The lease stays RUNNING until the stale-lease sweep recovers it
            logger.error(f"Execution of job {job.job_id} aborted: {e}", exc_info=True)
            report.errors.append(f"{job.job_id}: {e}")

    def _build_context(
        self,
        job: Job,
        token: str,
        now: datetime,
        due_at: datetime,
        triggered_by: str,
        requested_window_id: Optional[str],
    ) -> ExecutionContext:
        catch_up = (now - due_at) > timedelta(seconds=self.tick_interval_seconds)
        if catch_up:
            logger.warning(
                f"Job {job.name} ({job.job_id}) is catching up: due at "
                f"{due_at.isoformat()}, running at {now.isoformat()}"
            )

        return ExecutionContext(
            job_id=job.job_id,
            execution_token=token,
            triggered_at=now,
            due_at=due_at,
            coverage_start=job.started_at,
            coverage_end=now,
            catch_up=catch_up,
            triggered_by=triggered_by,
            requested_window_id=requested_window_id,
        )


class TickerState(str, Enum):
    """Ticker lifecycle states."""

    STOPPED = "STOPPED"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"


class IntervalTicker:
    """Calls SchedulerCore.tick() every `interval_seconds`."""

    def __init__(self, core: SchedulerCore, interval_seconds: Optional[float] = None):
        self.core = core
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None else core.tick_interval_seconds
        )
        self._state = TickerState.STOPPED
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def state(self) -> TickerState:
        return self._state

    def is_running(self) -> bool:
        return self._state == TickerState.RUNNING

    def start(self, blocking: bool = False) -> None:
        """
        Start the tick loop.

        Args:
            blocking: If True, run in current thread. If False, run in background.
        """
        if self._state != TickerState.STOPPED:
            raise RuntimeError(f"Cannot start ticker in {self._state.value} state")

        self._stop_event.clear()
        self._state = TickerState.RUNNING

        if blocking:
            self._tick_loop()
        else:
            self._thread = threading.Thread(
                target=self._tick_loop,
                name="bodacover-ticker",
                daemon=True,
            )
            self._thread.start()

    def stop(self, timeout: float = 30.0) -> None:
        """Stop the tick loop, waiting for an in-progress tick."""
        if self._state == TickerState.STOPPED:
            return

        logger.info("Stopping scheduler ticker...")
        self._state = TickerState.STOPPING
        self._stop_event.set()

        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Ticker thread did not stop within timeout")
            self._thread = None

        self._state = TickerState.STOPPED
        logger.info("Scheduler ticker stopped")

    def _tick_loop(self) -> None:
        logger.info(f"Scheduler ticker started (interval={self.interval_seconds:g}s)")

        while not self._stop_event.is_set():
            try:
                self.core.tick()
            except Exception as e:
                logger.error(f"Error in scheduler tick: {e}", exc_info=True)
            self._stop_event.wait(self.interval_seconds)

        self._state = TickerState.STOPPED
        logger.info("Scheduler ticker loop ended")
