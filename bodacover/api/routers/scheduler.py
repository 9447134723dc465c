"""
Scheduler router for the operator control plane.

Endpoints under /scheduler/*:
- GET  /status, /stats                 - scheduler and execution state
- GET  /jobs, /jobs/{job_id}           - job listing and details
- POST /jobs                           - create a job
- POST /jobs/{job_id}/trigger          - run now (optional window_id)
- PUT  /jobs/{job_id}/pause|resume|cancel
- GET  /jobs/{job_id}/history, /history
- GET  /windows                        - settlement windows of a day
- POST /seed, /start, /stop
"""

from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from ...scheduler.entities import Job, JobHistory, JobResult, JobStatus, JobType
from ...scheduler.errors import (
    InvalidOperationError,
    InvalidTransitionError,
    JobNotFoundError,
)
from ...settlement.windows import BatchWindow
from ..schemas.scheduler import (
    BatchWindowResponse,
    JobCreateRequest,
    JobHistoryListResponse,
    JobHistoryResponse,
    JobListResponse,
    JobResponse,
    JobResultResponse,
    JobTriggerRequest,
    SchedulerStartRequest,
    SchedulerStartResponse,
    SchedulerStatsResponse,
    SchedulerStatusResponse,
    SchedulerStopRequest,
    SchedulerStopResponse,
    SeedResponse,
    WindowListResponse,
)
from .._scheduler_state import get_scheduler_service, get_window_coordinator


router = APIRouter()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _result_to_response(result: Optional[JobResult]) -> Optional[JobResultResponse]:
    if result is None:
        return None
    return JobResultResponse(**result.to_dict())


def _job_to_response(job: Job) -> JobResponse:
    """Convert scheduler Job entity to API response."""
    return JobResponse(
        job_id=job.job_id,
        name=job.name,
        job_type=job.job_type.value,
        status=job.status.value,
        cron_expression=job.cron_expression,
        is_recurring=job.is_recurring,
        is_enabled=job.is_enabled,
        config=job.config,
        scheduled_at=job.scheduled_at.isoformat(),
        next_run_at=_iso(job.next_run_at),
        started_at=_iso(job.started_at),
        completed_at=_iso(job.completed_at),
        duration_ms=job.duration_ms,
        result=_result_to_response(job.result),
        error_message=job.error_message,
        retry_count=job.retry_count,
        max_retries=job.max_retries,
        cancel_requested=job.cancel_requested,
        created_by=job.created_by,
        created_at=job.created_at.isoformat(),
        updated_at=job.updated_at.isoformat(),
    )


def _history_to_response(entry: JobHistory) -> JobHistoryResponse:
    return JobHistoryResponse(
        history_id=entry.history_id,
        job_id=entry.job_id,
        job_name=entry.job_name,
        status=entry.status.value,
        triggered_by=entry.triggered_by,
        started_at=entry.started_at.isoformat(),
        ended_at=_iso(entry.ended_at),
        duration_ms=entry.duration_ms,
        result=_result_to_response(entry.result),
        error_message=entry.error_message,
        idempotency_key=entry.idempotency_key,
    )


def _window_to_response(window: BatchWindow) -> BatchWindowResponse:
    return BatchWindowResponse(**window.to_dict())


def _raise_http(e: Exception, action: str) -> None:
    if isinstance(e, HTTPException):
        raise e
    if isinstance(e, JobNotFoundError):
        raise HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (InvalidOperationError, InvalidTransitionError)):
        raise HTTPException(status_code=409, detail=str(e))
    raise HTTPException(status_code=500, detail=f"Failed to {action}: {str(e)}")


# =============================================================================
# Scheduler Control
# =============================================================================


@router.post("/start", response_model=SchedulerStartResponse)
async def start_scheduler(request: SchedulerStartRequest = SchedulerStartRequest()):
    """
    Start the tick loop.

    Idempotent: If scheduler is already running, returns success with message.
    """
    service = get_scheduler_service()

    if service.is_running:
        return SchedulerStartResponse(
            success=True,
            message="Scheduler is already running",
            recovery_stats=None,
        )

    try:
        recovery_stats = service.start(
            run_recovery=request.run_recovery,
            blocking=False,
        )

        return SchedulerStartResponse(
            success=True,
            message="Scheduler started successfully",
            recovery_stats=recovery_stats if recovery_stats else None,
        )

    except Exception as e:
        _raise_http(e, "start scheduler")


@router.post("/stop", response_model=SchedulerStopResponse)
async def stop_scheduler(request: SchedulerStopRequest = SchedulerStopRequest()):
    """
    Stop the tick loop gracefully.

    Running jobs are not preempted. Idempotent.
    """
    service = get_scheduler_service()

    if not service.is_running:
        return SchedulerStopResponse(
            success=True,
            message="Scheduler is already stopped",
        )

    try:
        service.stop(timeout=request.timeout)

        return SchedulerStopResponse(
            success=True,
            message="Scheduler stopped successfully",
        )

    except Exception as e:
        _raise_http(e, "stop scheduler")


@router.get("/status", response_model=SchedulerStatusResponse)
async def get_scheduler_status():
    """Tick loop state, running jobs and active executions per job type."""
    service = get_scheduler_service()

    try:
        return SchedulerStatusResponse(**service.get_status())
    except Exception as e:
        _raise_http(e, "get scheduler status")


@router.get("/stats", response_model=SchedulerStatsResponse)
async def get_scheduler_stats():
    """Job totals and execution figures for the last 24 hours."""
    service = get_scheduler_service()

    try:
        return SchedulerStatsResponse(**service.get_stats())
    except Exception as e:
        _raise_http(e, "get scheduler stats")


@router.post("/seed", response_model=SeedResponse)
async def seed_default_jobs():
    """Create the default jobs that don't exist yet (idempotent by name)."""
    service = get_scheduler_service()

    try:
        return SeedResponse(created=service.seed_default_jobs())
    except Exception as e:
        _raise_http(e, "seed default jobs")


# =============================================================================
# Jobs
# =============================================================================


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(
    job_type: Optional[JobType] = Query(default=None, description="Filter by job type"),
    status: Optional[JobStatus] = Query(default=None, description="Filter by status"),
    is_recurring: Optional[bool] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=200),
):
    """List jobs, newest first."""
    service = get_scheduler_service()

    try:
        jobs, total = service.list_jobs(
            job_type=job_type,
            status=status,
            is_recurring=is_recurring,
            page=page,
            limit=limit,
        )
        return JobListResponse(
            jobs=[_job_to_response(job) for job in jobs],
            total=total,
            page=page,
            limit=limit,
        )
    except Exception as e:
        _raise_http(e, "list jobs")


@router.post("/jobs", response_model=JobResponse, status_code=201)
async def create_job(request: JobCreateRequest):
    """
    Create a job.

    Recurring jobs need a valid cron expression; their first run is the next
    firing after scheduled_at (or now).
    """
    service = get_scheduler_service()

    try:
        job = service.create_job(
            name=request.name,
            job_type=request.job_type,
            cron_expression=request.cron_expression,
            is_recurring=request.is_recurring,
            config=request.config,
            scheduled_at=request.scheduled_at,
            max_retries=request.max_retries,
            created_by=request.created_by,
        )
        return _job_to_response(job)
    except InvalidOperationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        _raise_http(e, "create job")


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: str):
    service = get_scheduler_service()

    try:
        return _job_to_response(service.require_job(job_id))
    except Exception as e:
        _raise_http(e, "get job")


@router.post("/jobs/{job_id}/trigger", response_model=JobResponse, status_code=202)
async def trigger_job(job_id: str, request: JobTriggerRequest = JobTriggerRequest()):
    """
    Run a job now.

    Batch jobs process the most recently closed window unless window_id
    names another one. A window that already completed is a no-op.
    """
    service = get_scheduler_service()

    try:
        job = service.run_now(
            job_id,
            triggered_by=request.triggered_by,
            window_id=request.window_id,
        )
        return _job_to_response(job)
    except Exception as e:
        _raise_http(e, "trigger job")


@router.put("/jobs/{job_id}/pause", response_model=JobResponse)
async def pause_job(job_id: str):
    service = get_scheduler_service()

    try:
        return _job_to_response(service.pause(job_id))
    except Exception as e:
        _raise_http(e, "pause job")


@router.put("/jobs/{job_id}/resume", response_model=JobResponse)
async def resume_job(job_id: str):
    service = get_scheduler_service()

    try:
        return _job_to_response(service.resume(job_id))
    except Exception as e:
        _raise_http(e, "resume job")


@router.put("/jobs/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(job_id: str):
    """
    Cancel a job.

    A RUNNING job is flagged and stops at its next checkpoint.
    """
    service = get_scheduler_service()

    try:
        return _job_to_response(service.cancel(job_id))
    except Exception as e:
        _raise_http(e, "cancel job")


# =============================================================================
# History & Windows
# =============================================================================


@router.get("/jobs/{job_id}/history", response_model=JobHistoryListResponse)
async def get_job_history(
    job_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=200),
):
    """Execution attempts of a job, newest first."""
    service = get_scheduler_service()

    try:
        entries, total = service.get_job_history(job_id, page=page, limit=limit)
        return JobHistoryListResponse(
            history=[_history_to_response(entry) for entry in entries],
            total=total,
        )
    except Exception as e:
        _raise_http(e, "get job history")


@router.get("/history", response_model=JobHistoryListResponse)
async def get_recent_history(
    hours: int = Query(default=24, ge=1, le=720),
    limit: int = Query(default=100, ge=1, le=1000),
):
    """Execution attempts of all jobs started in the last `hours` hours."""
    service = get_scheduler_service()

    try:
        entries = service.get_recent_history(hours=hours, limit=limit)
        return JobHistoryListResponse(
            history=[_history_to_response(entry) for entry in entries],
            total=len(entries),
        )
    except Exception as e:
        _raise_http(e, "get recent history")


@router.get("/windows", response_model=WindowListResponse)
async def list_windows(
    day: Optional[date] = Query(default=None, description="Local (EAT) date, default today"),
):
    """Settlement windows closing on a day, and the next trigger time."""
    service = get_scheduler_service()
    coordinator = get_window_coordinator()

    now = service.clock()
    if day is None:
        day = now.astimezone(coordinator.tz).date()

    return WindowListResponse(
        windows=[_window_to_response(w) for w in coordinator.windows_for_day(day)],
        next_trigger_at=coordinator.next_trigger_after(now).isoformat(),
    )
