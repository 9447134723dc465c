"""
Lease Ownership Tests.

A job's lease must only exist while its attempt is actually running:
- A pooled executor never claims a job it cannot start right away
- An attempt whose lease is gone before it starts does nothing
- Across retries, a timeout, a lease sweep and a manual run, the history
  rows of one job never overlap in time
"""

import threading
import time

import pytest

from bodacover.scheduler import (
    ExecutionContext,
    JobExecutor,
    JobResult,
    JobStatus,
    JobType,
    SchedulerCore,
    TransientFailure,
)
from bodacover.scheduler.recovery import LEASE_EXPIRED_MESSAGE

from .conftest import make_registry


def _history(store, job_id):
    rows, _ = store.list_history(job_id=job_id)
    return rows


def _wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


# =============================================================================
# Pooled reservation
# =============================================================================


@pytest.fixture
def blocking_custom(handlers):
    """CUSTOM handler that holds its worker until `release` is set."""
    started = threading.Event()
    release = threading.Event()

    def handler(job, context):
        started.set()
        release.wait(timeout=5)
        return JobResult(processed=1, succeeded=1)

    handlers[JobType.CUSTOM] = handler
    yield started, release
    release.set()


@pytest.fixture
def single_worker(store, handlers, blocking_custom, alert_sink, mock_clock, recovery_manager):
    executor = JobExecutor(
        store=store,
        registry=make_registry(handlers),
        alert_sink=alert_sink,
        clock=mock_clock.now,
        heartbeat_interval_seconds=0.05,
        max_workers=1,
    )
    core = SchedulerCore(
        store=store,
        executor=executor,
        clock=mock_clock.now,
        recovery=recovery_manager,
    )
    yield executor, core
    blocking_custom[1].set()
    executor.shutdown(wait=True)


class TestPooledReservation:
    def test_busy_pool_refuses_reservation(self, single_worker):
        executor, _ = single_worker

        assert executor.try_reserve(JobType.CUSTOM)
        assert not executor.try_reserve(JobType.LAPSE_CHECK)
        assert executor.active_counts()["LAPSE_CHECK"] == 0

        executor.release(JobType.CUSTOM)
        assert executor.try_reserve(JobType.LAPSE_CHECK)
        executor.release(JobType.LAPSE_CHECK)

    def test_job_waiting_for_a_worker_is_not_claimed(
        self, single_worker, blocking_custom, store, create_job, handlers, alert_sink, mock_clock
    ):
        """
        One worker is busy when a second job falls due.

        Assertions:
        - The second job stays SCHEDULED instead of holding a lease it
          cannot heartbeat
        - A tick past the lease timeout sweeps nothing
        - Once the worker frees up the second job runs exactly once
        """
        executor, core = single_worker
        started, release = blocking_custom

        busy = create_job(name="busy")
        assert core.tick().started == [busy.job_id]
        assert started.wait(timeout=5)

        waiting = create_job(name="lapse", job_type=JobType.LAPSE_CHECK, max_retries=1)
        report = core.tick()

        assert report.deferred == [waiting.job_id]
        assert store.get_job(waiting.job_id).status == JobStatus.SCHEDULED
        assert store.get_job(waiting.job_id).execution_token is None

        # Let the busy job heartbeat at the new time so only leases are judged
        mock_clock.tick(301)
        assert _wait_until(lambda: store.get_job(busy.job_id).heartbeat_at == mock_clock.now())

        report = core.tick()

        assert report.swept == []
        assert report.deferred == [waiting.job_id]
        assert _history(store, waiting.job_id) == []
        assert handlers[JobType.LAPSE_CHECK].calls == []

        release.set()
        assert _wait_until(lambda: core.tick().started == [waiting.job_id])
        executor.shutdown(wait=True)

        final = store.get_job(waiting.job_id)
        assert final.status == JobStatus.COMPLETED
        assert len(handlers[JobType.LAPSE_CHECK].calls) == 1
        assert [row.status for row in _history(store, waiting.job_id)] == [JobStatus.COMPLETED]
        assert store.get_job(busy.job_id).status == JobStatus.COMPLETED
        assert alert_sink.alerts == []


# =============================================================================
# Lease lost before start
# =============================================================================


class TestLeaseLostBeforeStart:
    def test_superseded_attempt_does_not_start(self, executor, store, create_job, handlers, mock_clock):
        job = create_job(
            status=JobStatus.RUNNING,
            execution_token="current-attempt",
            started_at=mock_clock.now(),
            heartbeat_at=mock_clock.now(),
        )
        context = ExecutionContext(
            job_id=job.job_id,
            execution_token="earlier-attempt",
            triggered_at=mock_clock.now(),
        )
        before = store.get_job(job.job_id)

        assert executor.execute(job, context) is None

        assert handlers[JobType.CUSTOM].calls == []
        assert _history(store, job.job_id) == []
        assert store.get_job(job.job_id) == before

    def test_swept_attempt_does_not_start(
        self, executor, recovery_manager, store, create_job, handlers, alert_sink, mock_clock
    ):
        """The lease expired while the attempt waited; the sweep outcome stands."""
        job = create_job(max_retries=1)
        claimed = store.compare_and_transition(
            job.job_id,
            JobStatus.SCHEDULED,
            JobStatus.RUNNING,
            execution_token="queued-attempt",
            started_at=mock_clock.now(),
            heartbeat_at=mock_clock.now(),
        )

        mock_clock.tick(301)
        recovery_manager.sweep_stale_leases(mock_clock.now())
        swept = store.get_job(job.job_id)

        context = ExecutionContext(
            job_id=job.job_id,
            execution_token="queued-attempt",
            triggered_at=mock_clock.now(),
        )
        assert executor.execute(claimed, context) is None

        assert handlers[JobType.CUSTOM].calls == []
        assert store.get_job(job.job_id) == swept
        assert swept.status == JobStatus.FAILED
        assert swept.error_message == LEASE_EXPIRED_MESSAGE
        assert alert_sink.events == ["job.retries_exhausted"]


# =============================================================================
# History intervals
# =============================================================================


@pytest.fixture
def slow_heartbeat_core(store, registry, alert_sink, mock_clock, recovery_manager):
    """Heartbeats stay out of the way so a lease sweep can be staged."""
    executor = JobExecutor(
        store=store,
        registry=registry,
        alert_sink=alert_sink,
        clock=mock_clock.now,
        heartbeat_interval_seconds=10,
        max_workers=0,
    )
    return SchedulerCore(
        store=store,
        executor=executor,
        clock=mock_clock.now,
        recovery=recovery_manager,
    )


class TestHistoryIntervals:
    def test_attempts_of_one_job_never_overlap(
        self, slow_heartbeat_core, recovery_manager, store, create_job, handlers, mock_clock
    ):
        """
        One job through every way an attempt can end.

        1. Transient failure, retried after the 120s backoff
        2. Deadline exceeded, retried after 240s
        3. Lease swept while the handler still runs
        4. Manual run to completion

        Assertions:
        - Every history row is final
        - Sorted by start, each row ends no later than the next one starts
        """
        core = slow_heartbeat_core
        handler = handlers[JobType.CUSTOM]
        job = create_job(max_retries=5, config={"timeout_seconds": 0.5})

        handler.error = TransientFailure("payment feed timeout")
        core.tick()
        assert store.get_job(job.job_id).retry_count == 1

        handler.error = None
        handler.block = threading.Event()
        handler.finished.clear()
        mock_clock.tick(120)
        core.tick()
        handler.block.set()
        assert handler.finished.wait(timeout=5)
        assert store.get_job(job.job_id).retry_count == 2

        def lease_expires_midway(job, context):
            mock_clock.tick(301)
            recovery_manager.sweep_stale_leases(mock_clock.now())

        handler.block = None
        handler.side_effect = lease_expires_midway
        mock_clock.tick(240)
        core.tick()
        after_sweep = store.get_job(job.job_id)
        assert after_sweep.status == JobStatus.SCHEDULED
        assert after_sweep.error_message == LEASE_EXPIRED_MESSAGE
        assert after_sweep.retry_count == 3

        handler.side_effect = None
        core.run_now(job.job_id, triggered_by="ops")
        assert store.get_job(job.job_id).status == JobStatus.COMPLETED

        history = sorted(_history(store, job.job_id), key=lambda row: row.started_at)

        assert len(history) == 4
        assert len(handler.calls) == 4
        assert all(row.is_final() for row in history)
        assert [row.status for row in history] == [
            JobStatus.FAILED,
            JobStatus.FAILED,
            JobStatus.FAILED,
            JobStatus.COMPLETED,
        ]
        assert history[2].error_message == LEASE_EXPIRED_MESSAGE
        for earlier, later in zip(history, history[1:]):
            assert earlier.ended_at <= later.started_at
