"""
Job type registry.

Maps every JobType to a JobTypeSpec: the handler callable plus the
per-type execution policy (batch window resolution, partial-failure
policy, concurrency ceiling, timeout). The table is closed: building a
registry that leaves any JobType without a handler fails at startup.
"""

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterable, Iterator, Optional

from .entities import Job, JobResult, JobType
from .errors import UnknownJobTypeError

if TYPE_CHECKING:
    from .executor import ExecutionContext


# Observed default for heavy batch jobs
DEFAULT_BATCH_CONCURRENCY = 2
DEFAULT_ROUTINE_CONCURRENCY = 4


class PartialFailurePolicy(str, Enum):
    """
    How a batch result with failed items maps to a job outcome.

    TOLERATE: COMPLETED with failures recorded; FAILED only when every
              attempted item failed.
    STRICT:   any failed item fails the run (and it is retried).
    """

    TOLERATE = "TOLERATE"
    STRICT = "STRICT"


JobHandlerFn = Callable[[Job, "ExecutionContext"], JobResult]
WindowResolverFn = Callable[[Job, "ExecutionContext"], Any]


@dataclass(frozen=True)
class JobTypeSpec:
    """Handler and execution policy for one job type."""

    job_type: JobType
    handler: JobHandlerFn
    default_cron: Optional[str] = None
    resolve_window: Optional[WindowResolverFn] = None
    partial_failure_policy: PartialFailurePolicy = PartialFailurePolicy.TOLERATE
    max_concurrency: int = DEFAULT_ROUTINE_CONCURRENCY
    timeout_seconds: Optional[float] = None

    @property
    def is_batch(self) -> bool:
        """Batch types resolve a settlement window and run once per window."""
        return self.resolve_window is not None


class JobTypeRegistry:
    """Closed dispatch table from JobType to JobTypeSpec."""

    def __init__(self, specs: Iterable[JobTypeSpec]):
        self._specs: dict[JobType, JobTypeSpec] = {}

        for spec in specs:
            if spec.job_type in self._specs:
                raise ValueError(f"Duplicate handler for job type: {spec.job_type.value}")
            if spec.max_concurrency < 1:
                raise ValueError(
                    f"max_concurrency must be >= 1 for job type {spec.job_type.value}"
                )
            self._specs[spec.job_type] = spec

        missing = [job_type.value for job_type in JobType if job_type not in self._specs]
        if missing:
            raise ValueError(f"No handler registered for job types: {', '.join(missing)}")

    def get(self, job_type: JobType) -> JobTypeSpec:
        """
        Get the JobTypeSpec for a job type.

        Raises:
            UnknownJobTypeError: If the type has no registered handler
        """
        try:
            return self._specs[JobType(job_type)]
        except (KeyError, ValueError):
            raise UnknownJobTypeError(str(getattr(job_type, "value", job_type)))

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._specs

    def __iter__(self) -> Iterator[JobTypeSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)
