"""
Scheduler Test Fixtures.

Base fixtures:
  - Empty database (temporary SQLite file)
  - Mocked clock at a fixed UTC instant
  - Recording handlers for every job type

Per-test fixtures:
  - Job factory writing directly to the store
"""

import threading
import pytest
import tempfile
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Generator, Optional

from bodacover.infra.alerts import Alert
from bodacover.scheduler import (
    Job,
    JobExecutor,
    JobResult,
    JobStatus,
    JobStore,
    JobType,
    JobTypeRegistry,
    JobTypeSpec,
    RecoveryManager,
    SchedulerCore,
    next_fire_after,
)


# 2026-03-02 08:00 EAT
FIXED_DATETIME = datetime(2026, 3, 2, 5, 0, 0, tzinfo=timezone.utc)


class MockClock:
    """
    Mock clock for deterministic time control.

    - Starts at a fixed, timezone-aware UTC instant
    - Advances only when explicitly ticked
    """

    def __init__(self, start_time: datetime = FIXED_DATETIME):
        self._current = start_time

    def now(self) -> datetime:
        return self._current

    def tick(self, seconds: float = 1) -> None:
        """Advance time by specified seconds."""
        self._current += timedelta(seconds=seconds)

    def set(self, time: datetime) -> None:
        """Set time to specific value."""
        self._current = time


class RecordingHandler:
    """
    Job handler for tests.

    Records every call and returns `result`, or raises `error`. With `block`
    set, waits on the event first (used for timeout tests).
    """

    def __init__(self, result: Optional[JobResult] = None):
        self.result = result or JobResult(processed=1, succeeded=1)
        self.error: Optional[BaseException] = None
        self.block: Optional[threading.Event] = None
        self.side_effect: Optional[Callable] = None
        self.finished = threading.Event()
        self.calls = []

    def __call__(self, job, context) -> JobResult:
        self.calls.append((job, context))
        try:
            if self.block is not None:
                self.block.wait(timeout=5)
            if self.side_effect is not None:
                self.side_effect(job, context)
            if self.error is not None:
                raise self.error
            return self.result
        finally:
            self.finished.set()


class RecordingAlertSink:
    def __init__(self):
        self.alerts: list[Alert] = []

    def send(self, alert: Alert) -> None:
        self.alerts.append(alert)

    @property
    def events(self) -> list[str]:
        return [alert.event for alert in self.alerts]


def make_registry(handlers: dict, **overrides) -> JobTypeRegistry:
    """Registry with one JobTypeSpec per job type; overrides map JobType -> JobTypeSpec kwargs."""
    specs = []
    for job_type, handler in handlers.items():
        specs.append(JobTypeSpec(job_type, handler, **overrides.get(job_type, {})))
    return JobTypeRegistry(specs)


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def temp_db_path() -> Generator[str, None, None]:
    """Create a temporary database file."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    yield db_path

    # Cleanup
    Path(db_path).unlink(missing_ok=True)
    # Also cleanup WAL and SHM files
    Path(f"{db_path}-wal").unlink(missing_ok=True)
    Path(f"{db_path}-shm").unlink(missing_ok=True)


@pytest.fixture
def store(temp_db_path: str) -> Generator[JobStore, None, None]:
    """Create a fresh JobStore with empty database."""
    job_store = JobStore(temp_db_path)
    yield job_store
    job_store.close()


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def mock_clock() -> MockClock:
    """Create a mock clock at fixed time."""
    return MockClock()


@pytest.fixture
def handlers() -> dict:
    """One RecordingHandler per job type."""
    return {job_type: RecordingHandler() for job_type in JobType}


@pytest.fixture
def registry(handlers: dict) -> JobTypeRegistry:
    return make_registry(handlers)


@pytest.fixture
def alert_sink() -> RecordingAlertSink:
    return RecordingAlertSink()


@pytest.fixture
def executor(
    store: JobStore,
    registry: JobTypeRegistry,
    mock_clock: MockClock,
    alert_sink: RecordingAlertSink,
) -> JobExecutor:
    """Inline JobExecutor with a fast heartbeat."""
    return JobExecutor(
        store=store,
        registry=registry,
        alert_sink=alert_sink,
        clock=mock_clock.now,
        heartbeat_interval_seconds=0.05,
        max_workers=0,
    )


@pytest.fixture
def recovery_manager(store: JobStore, alert_sink: RecordingAlertSink) -> RecoveryManager:
    return RecoveryManager(store, lease_timeout_seconds=300, alert_sink=alert_sink)


@pytest.fixture
def core(
    store: JobStore,
    executor: JobExecutor,
    mock_clock: MockClock,
    recovery_manager: RecoveryManager,
) -> SchedulerCore:
    return SchedulerCore(
        store=store,
        executor=executor,
        clock=mock_clock.now,
        tick_interval_seconds=60,
        recovery=recovery_manager,
    )


# =============================================================================
# Job Factory Fixtures
# =============================================================================


@pytest.fixture
def create_job(store: JobStore, mock_clock: MockClock) -> Callable:
    """
    Factory fixture for creating jobs.

    Recurring jobs get next_run_at from their cron expression unless one is
    given explicitly.
    """

    def _create(
        name: str = "test-job",
        job_type: JobType = JobType.CUSTOM,
        cron_expression: Optional[str] = None,
        status: JobStatus = JobStatus.SCHEDULED,
        scheduled_at: Optional[datetime] = None,
        next_run_at: Optional[datetime] = None,
        max_retries: int = 3,
        config: Optional[dict] = None,
        **fields,
    ) -> Job:
        now = mock_clock.now()
        job = Job.create(
            name=name,
            job_type=job_type,
            cron_expression=cron_expression,
            config=config,
            scheduled_at=scheduled_at or now,
            max_retries=max_retries,
            now=now,
        )

        if job.is_recurring and next_run_at is None:
            next_run_at = next_fire_after(cron_expression, now)

        job = replace(job, status=status, next_run_at=next_run_at, **fields)
        return store.create_job(job)

    return _create
