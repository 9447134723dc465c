"""
API Schemas package.

Pydantic models for request/response validation.
"""

from .scheduler import (
    JobCreateRequest,
    JobTriggerRequest,
    JobResultResponse,
    JobResponse,
    JobListResponse,
    JobHistoryResponse,
    JobHistoryListResponse,
    BatchWindowResponse,
    WindowListResponse,
    SchedulerStartRequest,
    SchedulerStartResponse,
    SchedulerStopRequest,
    SchedulerStopResponse,
    SchedulerStatusResponse,
    SchedulerStatsResponse,
    SeedResponse,
)

__all__ = [
    "JobCreateRequest",
    "JobTriggerRequest",
    "JobResultResponse",
    "JobResponse",
    "JobListResponse",
    "JobHistoryResponse",
    "JobHistoryListResponse",
    "BatchWindowResponse",
    "WindowListResponse",
    "SchedulerStartRequest",
    "SchedulerStartResponse",
    "SchedulerStopRequest",
    "SchedulerStopResponse",
    "SchedulerStatusResponse",
    "SchedulerStatsResponse",
    "SeedResponse",
]
