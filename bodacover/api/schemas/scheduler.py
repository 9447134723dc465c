"""
Scheduler API schemas.

Request/response models for the /scheduler operator endpoints.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from ...scheduler.entities import JobType


# =============================================================================
# Job Schemas
# =============================================================================


class JobCreateRequest(BaseModel):
    """Request to create a new job."""

    name: str = Field(..., min_length=1, max_length=200, description="Job name")
    job_type: JobType = Field(..., description="Job type")
    cron_expression: Optional[str] = Field(
        default=None,
        description="5-field cron expression evaluated in EAT (recurring jobs)"
    )
    is_recurring: Optional[bool] = Field(
        default=None,
        description="Defaults to true when a cron expression is given"
    )
    config: dict = Field(default_factory=dict, description="Job configuration")
    scheduled_at: Optional[datetime] = Field(
        default=None,
        description="First eligible run time (default: now)"
    )
    max_retries: int = Field(default=3, ge=0, le=20, description="Retry budget")
    created_by: Optional[str] = Field(default=None, description="Operator id")


class JobTriggerRequest(BaseModel):
    """Request to run a job immediately."""

    triggered_by: str = Field(default="api", description="Operator id recorded in history")
    window_id: Optional[str] = Field(
        default=None,
        description="Batch window to (re)process, e.g. 20240301-B1"
    )


class JobResultResponse(BaseModel):
    """Counters of a run."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    details: dict = Field(default_factory=dict)


class JobResponse(BaseModel):
    """Response representing a Job."""

    job_id: str = Field(..., description="Unique job identifier")
    name: str
    job_type: str
    status: str
    cron_expression: Optional[str] = None
    is_recurring: bool = False
    is_enabled: bool = True
    config: dict = Field(default_factory=dict)
    scheduled_at: str = Field(..., description="First eligible run time (ISO format)")
    next_run_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_ms: Optional[int] = None
    result: Optional[JobResultResponse] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    cancel_requested: bool = False
    created_by: Optional[str] = None
    created_at: str
    updated_at: str


class JobListResponse(BaseModel):
    """Response for job list endpoint."""

    jobs: List[JobResponse] = Field(default_factory=list)
    total: int = Field(..., description="Total number of matching jobs")
    page: int = 1
    limit: int = 20


class JobHistoryResponse(BaseModel):
    """Response representing one execution attempt."""

    history_id: str
    job_id: str
    job_name: str
    status: str
    triggered_by: str
    started_at: str
    ended_at: Optional[str] = None
    duration_ms: Optional[int] = None
    result: Optional[JobResultResponse] = None
    error_message: Optional[str] = None
    idempotency_key: Optional[str] = None


class JobHistoryListResponse(BaseModel):
    history: List[JobHistoryResponse] = Field(default_factory=list)
    total: int = 0


# =============================================================================
# Window Schemas
# =============================================================================


class BatchWindowResponse(BaseModel):
    window_id: str
    slot_index: int
    range_start: str
    range_end: str


class WindowListResponse(BaseModel):
    windows: List[BatchWindowResponse] = Field(default_factory=list)
    next_trigger_at: Optional[str] = None


# =============================================================================
# Scheduler Control Schemas
# =============================================================================


class SchedulerStartRequest(BaseModel):
    """Request to start the scheduler."""

    run_recovery: bool = Field(
        default=True,
        description="Whether to run stale lease recovery on startup"
    )


class SchedulerStartResponse(BaseModel):
    """Response from scheduler start."""

    success: bool
    message: str
    recovery_stats: Optional[dict] = Field(
        default=None,
        description="Recovery statistics if recovery was run"
    )


class SchedulerStopRequest(BaseModel):
    """Request to stop the scheduler."""

    timeout: float = Field(
        default=30.0,
        ge=1.0,
        le=300.0,
        description="Maximum wait time for the tick loop to stop (seconds)"
    )


class SchedulerStopResponse(BaseModel):
    success: bool
    message: str


class SchedulerStatusResponse(BaseModel):
    """Response from scheduler status endpoint."""

    is_running: bool = Field(..., description="Whether the tick loop is running")
    ticker_state: str
    tick_interval_seconds: float
    running_jobs: List[dict] = Field(default_factory=list)
    active_executions: dict = Field(default_factory=dict)


class SchedulerStatsResponse(BaseModel):
    total_jobs: int = 0
    active_jobs: int = 0
    recurring_jobs: int = 0
    recent_executions: int = 0
    failed_recent: int = 0
    average_duration_ms: Optional[float] = None
    jobs_by_status: dict = Field(default_factory=dict)
    active_executions: dict = Field(default_factory=dict)


class SeedResponse(BaseModel):
    created: int
