"""
Scheduler Domain Entities.

- Job: durable definition + current state of a scheduled unit of work
- JobHistory: record of a single execution attempt
- JobResult: summary counters produced by a job handler

Records are frozen dataclasses. The store hands out new instances on every
write; nothing mutates a record in place. Derived behaviour (due-ness,
next-run computation) lives in schedule.py as free functions.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
import uuid


class JobType(str, Enum):
    """
    Closed set of job types.

    Every member must have a handler in the registry; building a registry
    with a missing member fails at startup.
    """

    POLICY_BATCH = "POLICY_BATCH"
    PAYMENT_REMINDER = "PAYMENT_REMINDER"
    LAPSE_CHECK = "LAPSE_CHECK"
    REPORT_GENERATION = "REPORT_GENERATION"
    RECONCILIATION = "RECONCILIATION"
    SETTLEMENT = "SETTLEMENT"
    CUSTOM = "CUSTOM"


class JobStatus(str, Enum):
    """Job status values shared by Job and JobHistory rows."""

    SCHEDULED = "SCHEDULED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    PAUSED = "PAUSED"


# Allowed status edges. RUNNING -> RUNNING covers heartbeat, token
# invalidation and the cancel flag; RUNNING -> SCHEDULED re-arms recurring
# jobs and retries; RUNNING -> PAUSED ends a manual run of a paused job.
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.SCHEDULED: frozenset(
        {JobStatus.RUNNING, JobStatus.PAUSED, JobStatus.CANCELLED}
    ),
    JobStatus.PAUSED: frozenset(
        {JobStatus.RUNNING, JobStatus.SCHEDULED, JobStatus.CANCELLED}
    ),
    JobStatus.RUNNING: frozenset(
        {
            JobStatus.RUNNING,
            JobStatus.COMPLETED,
            JobStatus.FAILED,
            JobStatus.CANCELLED,
            JobStatus.SCHEDULED,
            JobStatus.PAUSED,
        }
    ),
    JobStatus.COMPLETED: frozenset(
        {JobStatus.RUNNING, JobStatus.SCHEDULED, JobStatus.PAUSED}
    ),
    JobStatus.FAILED: frozenset(
        {JobStatus.RUNNING, JobStatus.SCHEDULED, JobStatus.PAUSED}
    ),
    JobStatus.CANCELLED: frozenset({JobStatus.RUNNING, JobStatus.SCHEDULED}),
}

# Statuses from which the scheduler tick may claim a job.
CLAIMABLE_STATUSES = (JobStatus.SCHEDULED, JobStatus.PAUSED)

# Statuses from which an operator "run now" may claim a job.
MANUALLY_CLAIMABLE_STATUSES = (
    JobStatus.SCHEDULED,
    JobStatus.PAUSED,
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
)

SYSTEM_ACTOR = "system"


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def is_transition_allowed(current: JobStatus, new: JobStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class JobResult:
    """
    Counters reported by a job handler.

    For batch jobs `processed` counts payment events while
    succeeded/failed/skipped count riders (or settlement items).
    """

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["JobResult"]:
        if data is None:
            return None
        return cls(
            processed=int(data.get("processed", 0)),
            succeeded=int(data.get("succeeded", 0)),
            failed=int(data.get("failed", 0)),
            skipped=int(data.get("skipped", 0)),
            details=dict(data.get("details") or {}),
        )


@dataclass(frozen=True)
class Job:
    """
    Durable job definition and its current state.

    Mutated only through JobStore.compare_and_transition: by the scheduler
    core (claim, next_run_at) and the executor (status, result, timing,
    retry fields).
    """

    job_id: str
    name: str
    job_type: JobType
    status: JobStatus
    scheduled_at: datetime
    cron_expression: Optional[str] = None
    is_recurring: bool = False
    config: dict = field(default_factory=dict)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    result: Optional[JobResult] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    last_retry_at: Optional[datetime] = None
    is_enabled: bool = True
    created_by: Optional[str] = None
    execution_token: Optional[str] = None
    heartbeat_at: Optional[datetime] = None
    cancel_requested: bool = False
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @classmethod
    def create(
        cls,
        name: str,
        job_type: JobType,
        cron_expression: Optional[str] = None,
        is_recurring: Optional[bool] = None,
        config: Optional[dict] = None,
        scheduled_at: Optional[datetime] = None,
        max_retries: int = 3,
        created_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Job":
        """Create a new SCHEDULED job with generated ID."""
        now = now or utc_now()
        return cls(
            job_id=generate_uuid(),
            name=name,
            job_type=JobType(job_type),
            status=JobStatus.SCHEDULED,
            scheduled_at=scheduled_at or now,
            cron_expression=cron_expression,
            is_recurring=(
                is_recurring if is_recurring is not None else bool(cron_expression)
            ),
            config=dict(config or {}),
            max_retries=max_retries,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )


@dataclass(frozen=True)
class JobHistory:
    """
    Record of a single execution attempt.

    Created RUNNING when execution starts, finalized once when it ends.
    Immutable after ended_at is set.
    """

    history_id: str
    job_id: str
    job_name: str
    status: JobStatus
    started_at: datetime
    triggered_by: str = SYSTEM_ACTOR
    ended_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    result: Optional[JobResult] = None
    error_message: Optional[str] = None
    execution_token: Optional[str] = None
    idempotency_key: Optional[str] = None

    @classmethod
    def start(
        cls,
        job: Job,
        started_at: datetime,
        triggered_by: str = SYSTEM_ACTOR,
        execution_token: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> "JobHistory":
        """Create a RUNNING history row for a job that is starting."""
        return cls(
            history_id=generate_uuid(),
            job_id=job.job_id,
            job_name=job.name,
            status=JobStatus.RUNNING,
            started_at=started_at,
            triggered_by=triggered_by,
            execution_token=execution_token,
            idempotency_key=idempotency_key,
        )

    def is_final(self) -> bool:
        return self.ended_at is not None


def duration_ms_between(start: Optional[datetime], end: datetime) -> int:
    if start is None:
        return 0
    return max(0, int((end - start).total_seconds() * 1000))


def summarize_result(result: Optional[JobResult]) -> dict[str, Any]:
    """Flat counter view used in log lines."""
    if result is None:
        return {}
    return {
        "processed": result.processed,
        "succeeded": result.succeeded,
        "failed": result.failed,
        "skipped": result.skipped,
    }
