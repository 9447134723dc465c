"""
Executor for Job Scheduler.

- Runs the registered handler for an already-claimed job
- Enforces the per-job-type concurrency ceiling and a per-run deadline
- Heartbeats the lease while the handler runs
- Writes the single history row for the attempt and the job's outcome

What Executor MUST NOT do:
- Decide due-ness or claim jobs (SchedulerCore's responsibility)
- Decide retry timing (RetryController's responsibility)
- Apply an outcome whose execution token is no longer current
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from typing import Any, Callable, Optional

from ..infra.alerts import Alert, AlertSink, LoggingAlertSink
from .entities import (
    SYSTEM_ACTOR,
    Job,
    JobHistory,
    JobResult,
    JobStatus,
    JobType,
    duration_ms_between,
    summarize_result,
    utc_now,
)
from .errors import (
    InvalidOperationError,
    JobCancelledError,
    JobTimeoutError,
    PartialFailure,
    PermanentFailure,
    StaleExecutionTokenError,
    UnknownJobTypeError,
)
from .persistence import JobStore
from .registry import JobTypeRegistry, JobTypeSpec, PartialFailurePolicy
from .retry_controller import RetryController
from .schedule import EAT, compute_next_run


logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT_SECONDS = 900.0
DEFAULT_HEARTBEAT_INTERVAL_SECONDS = 10.0


@dataclass
class ExecutionContext:
    """
    Everything a handler needs to know about the attempt it is running.

    The execution token identifies this attempt. Handlers call
    ensure_valid() before every externally visible side effect and
    is_cancel_requested() between items.
    """

    job_id: str
    execution_token: str
    triggered_at: datetime
    due_at: Optional[datetime] = None
    coverage_start: Optional[datetime] = None
    coverage_end: Optional[datetime] = None
    catch_up: bool = False
    triggered_by: str = SYSTEM_ACTOR
    requested_window_id: Optional[str] = None
    deadline: Optional[datetime] = None
    window: Any = None
    details: dict = field(default_factory=dict)
    _store: Optional[JobStore] = field(default=None, repr=False)
    _abandoned: threading.Event = field(default_factory=threading.Event, repr=False)

    def bind(self, store: JobStore) -> None:
        self._store = store

    def abandon(self) -> None:
        """Mark the attempt as given up by the executor (timeout)."""
        self._abandoned.set()

    @property
    def abandoned(self) -> bool:
        return self._abandoned.is_set()

    def _current_job(self) -> Optional[Job]:
        if self._store is None:
            return None
        return self._store.get_job(self.job_id)

    def is_token_current(self) -> bool:
        if self.abandoned:
            return False
        if self._store is None:
            return True
        job = self._current_job()
        return (
            job is not None
            and job.status == JobStatus.RUNNING
            and job.execution_token == self.execution_token
        )

    def ensure_valid(self) -> None:
        """
        Raises:
            StaleExecutionTokenError: If this attempt no longer owns the job
        """
        if not self.is_token_current():
            raise StaleExecutionTokenError(self.job_id, self.execution_token)

    def is_cancel_requested(self) -> bool:
        if self.abandoned:
            return True
        if self._store is None:
            return False
        job = self._current_job()
        return job is None or job.cancel_requested


class JobExecutor:
    """
    Executes claimed jobs and records their outcome.

    Execution modes:
    - Inline (max_workers=0): submit() runs the job on the caller's thread.
      Tests drive the scheduler this way.
    - Pooled (max_workers>0): submit() hands the job to a thread pool.

    In both modes the handler itself runs on a dedicated daemon thread so
    the executor can enforce the deadline and keep heart-beating.
    """

    def __init__(
        self,
        store: JobStore,
        registry: JobTypeRegistry,
        retry_controller: Optional[RetryController] = None,
        alert_sink: Optional[AlertSink] = None,
        clock: Callable[[], datetime] = utc_now,
        default_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        heartbeat_interval_seconds: float = DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
        max_workers: int = 0,
        tz: tzinfo = EAT,
    ):
        """
        Initialize JobExecutor.

        Args:
            store: JobStore for job and history writes
            registry: Closed JobType -> JobTypeSpec table
            retry_controller: Retry policy (default: 60s base, 1h cap)
            alert_sink: Destination for exhausted/permanent failure alerts
            clock: Current-time source
            default_timeout_seconds: Deadline when neither job config nor
                job type sets one
            heartbeat_interval_seconds: Lease heartbeat period
            max_workers: Worker pool size; 0 runs submitted jobs inline
            tz: Zone in which cron expressions are evaluated
        """
        self.store = store
        self.registry = registry
        self.retry_controller = retry_controller or RetryController()
        self.alert_sink = alert_sink or LoggingAlertSink()
        self.clock = clock
        self.default_timeout_seconds = default_timeout_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.tz = tz

        self._lock = threading.Lock()
        self._semaphores = {
            spec.job_type: threading.BoundedSemaphore(spec.max_concurrency)
            for spec in registry
        }
        self._active: dict[JobType, int] = {spec.job_type: 0 for spec in registry}
        self._pool: Optional[ThreadPoolExecutor] = None
        # One slot per pool thread; a claimed job never waits in the pool queue
        self._pool_slots: Optional[threading.BoundedSemaphore] = None
        if max_workers > 0:
            self._pool = ThreadPoolExecutor(
                max_workers=max_workers,
                thread_name_prefix="bodacover-job",
            )
            self._pool_slots = threading.BoundedSemaphore(max_workers)

    # =========================================================================
    # Capacity
    # =========================================================================

    def try_reserve(self, job_type: JobType) -> bool:
        """
        Reserve a worker slot for a job type without blocking.

        In pooled mode a pool thread is reserved as well, so the job starts
        (and heartbeats) as soon as it is submitted.
        """
        job_type = JobType(job_type)
        # Unknown types get no type slot so execute() can fail them permanently
        semaphore = self._semaphores.get(job_type)

        if semaphore is not None and not semaphore.acquire(blocking=False):
            return False

        if self._pool_slots is not None and not self._pool_slots.acquire(blocking=False):
            if semaphore is not None:
                semaphore.release()
            return False

        if semaphore is not None:
            with self._lock:
                self._active[job_type] += 1
        return True

    def release(self, job_type: JobType) -> None:
        job_type = JobType(job_type)
        semaphore = self._semaphores.get(job_type)
        if semaphore is not None:
            with self._lock:
                self._active[job_type] -= 1
            semaphore.release()
        if self._pool_slots is not None:
            self._pool_slots.release()

    def active_counts(self) -> dict[str, int]:
        """Number of running executions per job type."""
        with self._lock:
            return {job_type.value: count for job_type, count in self._active.items()}

    def submit(self, job: Job, context: ExecutionContext) -> Optional[Future]:
        """
        Execute a claimed job whose slot was reserved with try_reserve().

        The slot is released when execution ends.

        Returns:
            Future of the final JobHistory in pooled mode, None inline
        """
        if self._pool is None:
            self._execute_and_release(job, context)
            return None

        return self._pool.submit(self._execute_and_release, job, context)

    def _execute_and_release(self, job: Job, context: ExecutionContext) -> Optional[JobHistory]:
        try:
            return self.execute(job, context)
        finally:
            self.release(job.job_type)

    def shutdown(self, wait: bool = True) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=wait)

    # =========================================================================
    # Execution
    # =========================================================================

    def execute(self, job: Job, context: ExecutionContext) -> Optional[JobHistory]:
        """
        Execute an already-claimed job and record its outcome.

        Args:
            job: The job as returned by the claim (status RUNNING)
            context: Attempt context carrying the execution token

        Returns:
            The finalized JobHistory row for this attempt, or None when the
            token was invalidated before the attempt started
        """
        context.bind(self.store)

        if not context.is_token_current():
            return self._discard(job, context, None, "Lease lost before the attempt started")

        started_at = self.clock()

        try:
            spec = self.registry.get(job.job_type)
        except UnknownJobTypeError as e:
            history = self._start_history(job, context, started_at)
            return self._handle_failure(job, context, history, e, retryable=False)

        idempotency_key: Optional[str] = None
        if spec.is_batch:
            try:
                window = spec.resolve_window(job, context)
            except (ValueError, PermanentFailure) as e:
                history = self._start_history(job, context, started_at)
                return self._handle_failure(job, context, history, e, retryable=False)

            context.window = window
            idempotency_key = f"{job.job_type.value}:{window.window_id}"

            if self.store.has_completed_history(idempotency_key):
                return self._complete_noop(job, context, idempotency_key, started_at)

        history = self._start_history(job, context, started_at, idempotency_key)
        timeout = self._resolve_timeout(job, spec)
        context.deadline = started_at + timedelta(seconds=timeout)

        logger.info(
            f"Executing job {job.name} ({job.job_id}, type={job.job_type.value}, "
            f"token={context.execution_token}, catch_up={context.catch_up})"
        )

        try:
            result = self._run_with_deadline(job, spec, context, timeout)
            result = self._apply_partial_failure_policy(spec, result)

        except JobCancelledError as e:
            return self._handle_cancelled(job, context, history, e.result)

        except StaleExecutionTokenError as e:
            return self._discard(job, context, history, str(e))

        except PermanentFailure as e:
            return self._handle_failure(job, context, history, e, retryable=False)

        except Exception as e:
            return self._handle_failure(job, context, history, e, retryable=True)

        return self._handle_success(job, context, history, result)

    def _start_history(
        self,
        job: Job,
        context: ExecutionContext,
        started_at: datetime,
        idempotency_key: Optional[str] = None,
    ) -> JobHistory:
        return self.store.append_history(
            JobHistory.start(
                job,
                started_at=started_at,
                triggered_by=context.triggered_by,
                execution_token=context.execution_token,
                idempotency_key=idempotency_key,
            )
        )

    def _resolve_timeout(self, job: Job, spec: JobTypeSpec) -> float:
        configured = job.config.get("timeout_seconds")
        if configured is not None:
            return float(configured)
        if spec.timeout_seconds is not None:
            return float(spec.timeout_seconds)
        return float(self.default_timeout_seconds)

    def _run_with_deadline(
        self,
        job: Job,
        spec: JobTypeSpec,
        context: ExecutionContext,
        timeout: float,
    ) -> JobResult:
        """
        Run the handler on a daemon thread and wait up to `timeout` seconds.

        In-flight work cannot be killed. On timeout the execution token is
        invalidated so any later side effect or outcome from that thread is
        rejected, and the attempt is reported as JobTimeoutError.
        """
        future: Future = Future()

        def target() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(spec.handler(job, context))
            except BaseException as e:
                future.set_exception(e)

        thread = threading.Thread(
            target=target,
            name=f"bodacover-handler-{job.job_id[:8]}",
            daemon=True,
        )
        thread.start()

        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                return future.result(timeout=min(self.heartbeat_interval_seconds, remaining))
            except FutureTimeout:
                if future.done():
                    # The handler itself raised a TimeoutError
                    raise
                self._heartbeat(job, context)

        invalidated = self.store.compare_and_transition(
            job.job_id,
            JobStatus.RUNNING,
            JobStatus.RUNNING,
            expected_token=context.execution_token,
            execution_token=None,
        )
        context.abandon()
        future.add_done_callback(lambda f: self._log_late_outcome(job, context, f))

        logger.warning(
            f"Job {job.job_id} exceeded its deadline of {timeout:g}s; "
            f"token {context.execution_token} invalidated"
        )

        if invalidated is None:
            raise StaleExecutionTokenError(job.job_id, context.execution_token)
        raise JobTimeoutError(job.job_id, timeout)

    def _heartbeat(self, job: Job, context: ExecutionContext) -> None:
        updated = self.store.compare_and_transition(
            job.job_id,
            JobStatus.RUNNING,
            JobStatus.RUNNING,
            expected_token=context.execution_token,
            heartbeat_at=self.clock(),
        )
        if updated is None:
            logger.warning(
                f"Heartbeat for job {job.job_id} rejected: "
                f"token {context.execution_token} is no longer current"
            )

    def _log_late_outcome(self, job: Job, context: ExecutionContext, future: Future) -> None:
        error = future.exception()
        if error is not None:
            logger.warning(
                f"Late failure of timed-out job {job.job_id} "
                f"(token {context.execution_token}) discarded: {error}"
            )
        else:
            logger.warning(
                f"Late completion of timed-out job {job.job_id} "
                f"(token {context.execution_token}) discarded: {summarize_result(future.result())}"
            )

    def _apply_partial_failure_policy(self, spec: JobTypeSpec, result: JobResult) -> JobResult:
        if result.failed == 0:
            return result

        if spec.partial_failure_policy == PartialFailurePolicy.STRICT:
            raise PartialFailure(result)

        if result.succeeded == 0:
            raise PartialFailure(result, f"All {result.failed} attempted items failed")

        return result

    # =========================================================================
    # Outcomes
    # =========================================================================

    def _complete_noop(
        self,
        job: Job,
        context: ExecutionContext,
        idempotency_key: str,
        started_at: datetime,
    ) -> JobHistory:
        """A window that already completed is acknowledged without side effects."""
        logger.info(
            f"Job {job.job_id}: {idempotency_key} already completed, recording no-op"
        )
        history = self._start_history(job, context, started_at, idempotency_key)
        result = JobResult(
            details={
                "idempotent_noop": True,
                "window_id": context.window.window_id,
            }
        )
        return self._handle_success(job, context, history, result)

    def _handle_success(
        self,
        job: Job,
        context: ExecutionContext,
        history: JobHistory,
        result: JobResult,
    ) -> JobHistory:
        now = self.clock()

        changes: dict[str, Any] = {
            "completed_at": now,
            "duration_ms": duration_ms_between(job.started_at, now),
            "result": result,
            "error_message": None,
            "retry_count": 0,
            "execution_token": None,
            "heartbeat_at": None,
            "cancel_requested": False,
        }

        next_run = compute_next_run(job, now, self.tz)
        if next_run is not None:
            new_status = JobStatus.SCHEDULED
            changes["next_run_at"] = next_run
        elif job.is_recurring and not job.is_enabled:
            # Manual run of a paused job
            new_status = JobStatus.PAUSED
            changes["next_run_at"] = None
        else:
            new_status = JobStatus.COMPLETED
            changes["next_run_at"] = None

        updated = self.store.compare_and_transition(
            job.job_id,
            JobStatus.RUNNING,
            new_status,
            expected_token=context.execution_token,
            **changes,
        )

        if updated is None:
            return self._discard(
                job,
                context,
                history,
                "Run completed after its execution token was invalidated; result discarded",
                result,
            )

        self.store.finalize_history(history.history_id, JobStatus.COMPLETED, now, result=result)

        logger.info(
            f"Job {job.name} ({job.job_id}) completed: {summarize_result(result)}"
            + (f", next run at {next_run.isoformat()}" if next_run else "")
        )

        return self.store.get_history(history.history_id)

    def _handle_cancelled(
        self,
        job: Job,
        context: ExecutionContext,
        history: JobHistory,
        result: JobResult,
    ) -> JobHistory:
        now = self.clock()
        message = f"Cancelled by operator request ({result.skipped} skipped)"

        updated = self.store.compare_and_transition(
            job.job_id,
            JobStatus.RUNNING,
            JobStatus.CANCELLED,
            expected_token=context.execution_token,
            completed_at=now,
            duration_ms=duration_ms_between(job.started_at, now),
            result=result,
            error_message=message,
            next_run_at=None,
            execution_token=None,
            heartbeat_at=None,
            cancel_requested=False,
        )

        if updated is None:
            return self._discard(job, context, history, message, result)

        self.store.finalize_history(
            history.history_id,
            JobStatus.CANCELLED,
            now,
            result=result,
            error_message=message,
        )

        logger.info(f"Job {job.name} ({job.job_id}) cancelled: {summarize_result(result)}")

        return self.store.get_history(history.history_id)

    def _handle_failure(
        self,
        job: Job,
        context: ExecutionContext,
        history: JobHistory,
        error: Exception,
        retryable: bool,
    ) -> JobHistory:
        now = self.clock()
        message = str(error) or type(error).__name__
        result: Optional[JobResult] = getattr(error, "result", None)

        plan = self.retry_controller.plan_failure(job, now, message, retryable=retryable)
        changes = dict(plan.changes)
        if result is not None:
            changes["result"] = result

        new_status = plan.new_status
        if new_status == JobStatus.SCHEDULED and job.is_recurring and not job.is_enabled:
            new_status = JobStatus.PAUSED
            changes["next_run_at"] = None

        # A timed-out attempt already gave up its token
        expected_token = None if isinstance(error, JobTimeoutError) else context.execution_token

        updated = self.store.compare_and_transition(
            job.job_id,
            JobStatus.RUNNING,
            new_status,
            expected_token=expected_token,
            **changes,
        )

        if updated is None:
            return self._discard(job, context, history, message, result)

        self.store.finalize_history(
            history.history_id,
            JobStatus.FAILED,
            now,
            result=result,
            error_message=message,
        )

        logger.error(
            f"Job {job.name} ({job.job_id}) failed "
            f"(attempt {plan.retry_count}/{job.max_retries}): {message}"
        )

        if plan.exhausted:
            self.raise_alert(
                updated,
                event="job.retries_exhausted" if retryable else "job.failed_permanently",
                message=message,
            )

        return self.store.get_history(history.history_id)

    def _discard(
        self,
        job: Job,
        context: ExecutionContext,
        history: Optional[JobHistory],
        message: str,
        result: Optional[JobResult] = None,
    ) -> Optional[JobHistory]:
        """
        Record an outcome that can no longer be applied to the job.

        Without a history row (the attempt never started) only the log
        line is written.
        """
        logger.warning(
            f"Discarding outcome of job {job.job_id} "
            f"(token {context.execution_token}): {message}"
        )
        if history is None:
            return None
        self.store.finalize_history(
            history.history_id,
            JobStatus.FAILED,
            self.clock(),
            result=result,
            error_message=f"Execution token superseded: {message}",
        )
        return self.store.get_history(history.history_id)

    def raise_alert(self, job: Job, event: str, message: str) -> None:
        alert = Alert(
            event=event,
            job_id=job.job_id,
            job_name=job.name,
            job_type=job.job_type.value,
            message=message,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
        )
        try:
            self.alert_sink.send(alert)
        except Exception as e:
            logger.error(f"Failed to send alert for job {job.job_id}: {e}")

    # =========================================================================
    # Cancellation
    # =========================================================================

    def request_cancel(self, job_id: str) -> Optional[Job]:
        """
        Ask a RUNNING job to stop at its next checkpoint.

        Returns:
            The flagged job, or None if it finished before the flag was set

        Raises:
            JobNotFoundError: If the job doesn't exist
            InvalidOperationError: If the job is not RUNNING
        """
        job = self.store.require_job(job_id)
        if job.status != JobStatus.RUNNING:
            raise InvalidOperationError(
                f"Cannot request cancellation of job {job_id} in {job.status.value} status"
            )

        updated = self.store.compare_and_transition(
            job_id,
            JobStatus.RUNNING,
            JobStatus.RUNNING,
            cancel_requested=True,
        )

        if updated is not None:
            logger.info(f"Cancellation requested for running job {job_id}")

        return updated
