"""
Job type handlers and registry wiring.

Each JobType maps to one JobHandler. Batch handlers (POLICY_BATCH,
SETTLEMENT) receive a resolved BatchWindow on the ExecutionContext;
routine handlers call a single collaborator.

build_registry() returns the complete JobTypeRegistry; startup fails if a
job type is left without a handler.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, time, timedelta
from typing import TYPE_CHECKING, Callable, Optional, Sequence

from ..config import SchedulerSettings
from ..scheduler.entities import Job, JobResult, JobType, utc_now
from ..scheduler.errors import ConfigurationError
from ..scheduler.registry import (
    JobTypeRegistry,
    JobTypeSpec,
    PartialFailurePolicy,
)
from ..scheduler.service import JobDefinition, SchedulerService
from .collaborators import Collaborators, in_memory_collaborators
from .processor import BatchProcessor, ServiceFeeSettlementProcessor
from .windows import BatchWindow, BatchWindowCoordinator, missed_windows

if TYPE_CHECKING:
    from ..infra.alerts import AlertSink
    from ..scheduler.executor import ExecutionContext


logger = logging.getLogger(__name__)


# Fee settlement runs this long after each batch trigger
SETTLEMENT_OFFSET = timedelta(minutes=15)

DEFAULT_REPORT_TYPE = "daily_summary"


# =============================================================================
# Window resolution
# =============================================================================


class WindowResolver:
    """
    Picks the window a batch run processes.

    An explicit window id (manual re-run) wins; otherwise the most recently
    closed window at the trigger time. Windows skipped since the job's
    previous run are reported in context.details, not processed.
    """

    def __init__(self, coordinator: BatchWindowCoordinator):
        self.coordinator = coordinator

    def __call__(self, job: Job, context: "ExecutionContext") -> BatchWindow:
        """
        Raises:
            ValueError: If the requested window id is malformed or the
                window has not closed yet
        """
        if context.requested_window_id:
            window = self.coordinator.window_by_id(context.requested_window_id)
            if window.range_end > context.triggered_at:
                raise ValueError(
                    f"Window {window.window_id} closes at {window.range_end.isoformat()} "
                    f"and cannot be processed yet"
                )
            return window

        window = self.coordinator.window_for(context.triggered_at)

        missed = missed_windows(self.coordinator, window, context.coverage_start)
        if missed:
            context.details["missed_windows"] = [w.window_id for w in missed]
            logger.warning(
                f"Job {job.name} ({job.job_id}) skipped {len(missed)} windows since its "
                f"last run; processing {window.window_id} only. Re-run missed windows "
                f"by id: {', '.join(w.window_id for w in missed)}"
            )

        return window


# =============================================================================
# Handlers
# =============================================================================


class JobHandler(ABC):
    """
    Base class for job type handlers.

    Handlers are called on the executor's handler thread with the claimed
    job and its ExecutionContext.
    """

    def __call__(self, job: Job, context: "ExecutionContext") -> JobResult:
        return self.execute(job, context)

    @abstractmethod
    def execute(self, job: Job, context: "ExecutionContext") -> JobResult:
        """
        Run the job.

        Returns:
            JobResult with the run's counters

        Raises:
            TransientFailure: Retry with backoff
            PermanentFailure: Fail without retry
            JobCancelledError: Cancellation honoured, carries partial result
        """
        ...


class WindowBatchHandler(JobHandler):
    """Runs a window processor over context.window."""

    def __init__(self, processor):
        self.processor = processor

    def execute(self, job: Job, context: "ExecutionContext") -> JobResult:
        result = self.processor.process(context.window, context)

        if context.details:
            details = dict(result.details)
            details.update(context.details)
            result = JobResult(
                processed=result.processed,
                succeeded=result.succeeded,
                failed=result.failed,
                skipped=result.skipped,
                details=details,
            )

        return result


class PaymentReminderHandler(JobHandler):
    def __init__(self, collaborators: Collaborators):
        self.reminders = collaborators.reminders

    def execute(self, job: Job, context: "ExecutionContext") -> JobResult:
        context.ensure_valid()
        sent = self.reminders.send_payment_reminders(context.triggered_at)
        return JobResult(
            processed=sent,
            succeeded=sent,
            details={"reminder_type": job.config.get("reminder_type", "daily")},
        )


class LapseCheckHandler(JobHandler):
    def __init__(self, collaborators: Collaborators):
        self.policies = collaborators.policies

    def execute(self, job: Job, context: "ExecutionContext") -> JobResult:
        context.ensure_valid()
        lapsed = self.policies.lapse_overdue_policies(context.triggered_at)
        return JobResult(processed=lapsed, succeeded=lapsed, details={"lapsed": lapsed})


class ReportGenerationHandler(JobHandler):
    def __init__(self, collaborators: Collaborators):
        self.reports = collaborators.reports

    def execute(self, job: Job, context: "ExecutionContext") -> JobResult:
        report_type = job.config.get("report_type", DEFAULT_REPORT_TYPE)
        period_days = int(job.config.get("period_days", 1))
        end = context.triggered_at
        start = end - timedelta(days=period_days)

        context.ensure_valid()
        reference = self.reports.generate_report(report_type, start, end)
        logger.info(f"Generated {report_type} report {reference}")

        return JobResult(
            processed=1,
            succeeded=1,
            details={"report_type": report_type, "report": reference},
        )


class ReconciliationHandler(JobHandler):
    """Reconciles ledger entries posted since the previous run (or a day)."""

    def __init__(self, collaborators: Collaborators):
        self.accounting = collaborators.accounting

    def execute(self, job: Job, context: "ExecutionContext") -> JobResult:
        end = context.triggered_at
        start = context.coverage_start or end - timedelta(days=1)

        summary = self.accounting.reconcile(start, end)
        entries = int(summary.get("entries", 0))
        unbalanced = list(summary.get("unbalanced", []))

        if unbalanced:
            logger.warning(f"Reconciliation found {len(unbalanced)} unbalanced entries")

        return JobResult(
            processed=entries,
            succeeded=entries - len(unbalanced),
            failed=len(unbalanced),
            details=summary,
        )


class CustomJobHandler(JobHandler):
    """Operator-defined job; records its config as the result."""

    def execute(self, job: Job, context: "ExecutionContext") -> JobResult:
        return JobResult(processed=1, succeeded=1, details={"config": dict(job.config)})


# =============================================================================
# Wiring
# =============================================================================


def build_coordinator(settings: SchedulerSettings) -> BatchWindowCoordinator:
    return BatchWindowCoordinator(trigger_times=settings.trigger_times)


def build_registry(
    collaborators: Collaborators,
    coordinator: BatchWindowCoordinator,
    settings: Optional[SchedulerSettings] = None,
) -> JobTypeRegistry:
    """
    Build the complete JobType -> handler table.

    POLICY_BATCH tolerates rider-level failures; SETTLEMENT is strict so a
    partially posted fee settlement is retried.
    """
    settings = settings or SchedulerSettings()
    resolver = WindowResolver(coordinator)

    batch_processor = BatchProcessor(
        payments=collaborators.payments,
        policies=collaborators.policies,
        accounting=collaborators.accounting,
        threshold_cents=settings.threshold_cents,
        cycle=timedelta(days=settings.cycle_days),
    )
    fee_processor = ServiceFeeSettlementProcessor(
        payments=collaborators.payments,
        accounting=collaborators.accounting,
    )

    return JobTypeRegistry(
        [
            JobTypeSpec(
                JobType.POLICY_BATCH,
                WindowBatchHandler(batch_processor),
                resolve_window=resolver,
                partial_failure_policy=PartialFailurePolicy.TOLERATE,
                max_concurrency=settings.batch_concurrency,
            ),
            JobTypeSpec(
                JobType.SETTLEMENT,
                WindowBatchHandler(fee_processor),
                resolve_window=resolver,
                partial_failure_policy=PartialFailurePolicy.STRICT,
                max_concurrency=settings.batch_concurrency,
            ),
            JobTypeSpec(
                JobType.PAYMENT_REMINDER,
                PaymentReminderHandler(collaborators),
                default_cron="0 9 * * *",
            ),
            JobTypeSpec(
                JobType.LAPSE_CHECK,
                LapseCheckHandler(collaborators),
                default_cron="0 0 * * *",
            ),
            JobTypeSpec(
                JobType.REPORT_GENERATION,
                ReportGenerationHandler(collaborators),
                default_cron="0 2 * * *",
            ),
            JobTypeSpec(
                JobType.RECONCILIATION,
                ReconciliationHandler(collaborators),
                default_cron="0 6 * * *",
            ),
            JobTypeSpec(JobType.CUSTOM, CustomJobHandler()),
        ]
    )


def daily_crons(times: Sequence[time]) -> list[str]:
    """Cron expressions firing at every given time of day, grouped by minute."""
    hours_by_minute: dict[int, list[int]] = {}
    for at in sorted(times):
        hours_by_minute.setdefault(at.minute, []).append(at.hour)

    return [
        f"{minute} {','.join(str(h) for h in sorted(set(hours)))} * * *"
        for minute, hours in sorted(hours_by_minute.items())
    ]


def _shifted(at: time, offset: timedelta) -> time:
    return (datetime.combine(datetime.min.date(), at) + offset).time()


def _cron_jobs(name: str, job_type: JobType, times: Sequence[time]) -> list[JobDefinition]:
    crons = daily_crons(times)
    return [
        JobDefinition(
            name=name if index == 0 else f"{name} ({index + 1})",
            job_type=job_type,
            cron_expression=cron,
        )
        for index, cron in enumerate(crons)
    ]


def default_job_definitions(trigger_times: Sequence[time]) -> list[JobDefinition]:
    """
    Jobs seeded on startup.

    The policy batch fires at every trigger time and the fee settlement 15
    minutes later. Trigger times on different minutes need one job per
    cron expression.
    """
    definitions = _cron_jobs("Policy Batch Processing", JobType.POLICY_BATCH, trigger_times)
    definitions += _cron_jobs(
        "Service Fee Settlement",
        JobType.SETTLEMENT,
        [_shifted(at, SETTLEMENT_OFFSET) for at in trigger_times],
    )

    definitions.extend(
        [
            JobDefinition(
                name="Daily Payment Reminders",
                job_type=JobType.PAYMENT_REMINDER,
                cron_expression="0 9 * * *",
                config={"reminder_type": "daily"},
            ),
            JobDefinition(
                name="Policy Lapse Check",
                job_type=JobType.LAPSE_CHECK,
                cron_expression="0 0 * * *",
            ),
            JobDefinition(
                name="Daily Reconciliation",
                job_type=JobType.RECONCILIATION,
                cron_expression="0 6 * * *",
            ),
            JobDefinition(
                name="Daily Summary Report",
                job_type=JobType.REPORT_GENERATION,
                cron_expression="0 2 * * *",
                config={"report_type": DEFAULT_REPORT_TYPE},
            ),
        ]
    )

    return definitions


def build_scheduler_service(
    settings: SchedulerSettings,
    collaborators: Optional[Collaborators] = None,
    alert_sink: Optional["AlertSink"] = None,
    clock: Callable[[], datetime] = utc_now,
    db_path: Optional[str] = None,
    max_workers: Optional[int] = None,
) -> SchedulerService:
    """
    Wire a SchedulerService for the BodaCover job types.

    Batch runs record their window as done, so running them against the
    in-memory collaborators would mark real windows settled. The in-memory
    set is used only when settings.in_memory_collaborators is true.

    Args:
        settings: Runtime configuration
        collaborators: External services
        alert_sink: Alert destination (default from settings)
        clock: Current-time source
        db_path: Override settings.db_path
        max_workers: Override settings.max_workers (0 = inline)

    Raises:
        ConfigurationError: If no collaborators are given and the in-memory
            set is not enabled
    """
    if collaborators is None:
        if not settings.in_memory_collaborators:
            raise ConfigurationError(
                "No collaborators configured. Wire the external services, or set "
                "SCHEDULER_IN_MEMORY_COLLABORATORS=true for local runs"
            )
        logger.warning("Using in-memory collaborators (SCHEDULER_IN_MEMORY_COLLABORATORS)")
        collaborators = in_memory_collaborators()

    coordinator = build_coordinator(settings)
    registry = build_registry(collaborators, coordinator, settings)

    return SchedulerService.create(
        settings,
        registry,
        default_jobs=default_job_definitions(settings.trigger_times),
        alert_sink=alert_sink,
        clock=clock,
        db_path=db_path,
        max_workers=max_workers,
    )
