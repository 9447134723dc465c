"""
Job Scheduler Core Module.

- entities / persistence: Job and JobHistory records, SQLite JobStore
- schedule: cron evaluation (croniter) and due-ness
- core / executor: tick-based claiming and deadline-bounded execution
- retry_controller / recovery: bounded retry and stale lease sweeps
- service: operator facade
"""

from .entities import (
    JobType,
    JobStatus,
    Job,
    JobHistory,
    JobResult,
    ALLOWED_TRANSITIONS,
    SYSTEM_ACTOR,
)
from .errors import (
    SchedulerError,
    ConfigurationError,
    InvalidOperationError,
    InvalidTransitionError,
    JobNotFoundError,
    JobHistoryNotFoundError,
    TransientFailure,
    CollaboratorUnavailableError,
    PermanentFailure,
    UnknownJobTypeError,
    PartialFailure,
    JobCancelledError,
    StaleExecutionTokenError,
    JobTimeoutError,
)
from .persistence import JobStore, ANY_TOKEN
from .schedule import EAT, due_time, next_fire_after, validate_cron
from .registry import JobTypeRegistry, JobTypeSpec, PartialFailurePolicy
from .retry_controller import RetryController, RetryPlan
from .executor import ExecutionContext, JobExecutor
from .recovery import RecoveryManager
from .core import SchedulerCore, TickReport, IntervalTicker
from .service import SchedulerService, JobDefinition

__all__ = [
    # Entities
    "JobType",
    "JobStatus",
    "Job",
    "JobHistory",
    "JobResult",
    "ALLOWED_TRANSITIONS",
    "SYSTEM_ACTOR",
    # Errors
    "SchedulerError",
    "ConfigurationError",
    "InvalidOperationError",
    "InvalidTransitionError",
    "JobNotFoundError",
    "JobHistoryNotFoundError",
    "TransientFailure",
    "CollaboratorUnavailableError",
    "PermanentFailure",
    "UnknownJobTypeError",
    "PartialFailure",
    "JobCancelledError",
    "StaleExecutionTokenError",
    "JobTimeoutError",
    # Persistence
    "JobStore",
    "ANY_TOKEN",
    # Schedule
    "EAT",
    "due_time",
    "next_fire_after",
    "validate_cron",
    # Registry
    "JobTypeRegistry",
    "JobTypeSpec",
    "PartialFailurePolicy",
    # Retry
    "RetryController",
    "RetryPlan",
    # Executor
    "ExecutionContext",
    "JobExecutor",
    # Recovery
    "RecoveryManager",
    # Core
    "SchedulerCore",
    "TickReport",
    "IntervalTicker",
    # Service
    "SchedulerService",
    "JobDefinition",
]
