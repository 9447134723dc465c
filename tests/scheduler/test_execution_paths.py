"""
Execution Path Tests.

Drives SchedulerCore.tick() with an inline executor and a mocked clock:
- Success (one-off and recurring re-arm)
- Transient failure, retry exhaustion, permanent failure
- Partial failure policies
- Deadline enforcement with late outcome discarded
- Cooperative cancellation
- Stale execution token
- Claim contention, capacity and catch-up
"""

import threading
from datetime import timedelta

import pytest

from bodacover.scheduler import (
    InvalidOperationError,
    JobCancelledError,
    JobExecutor,
    JobResult,
    JobStatus,
    JobType,
    PartialFailurePolicy,
    PermanentFailure,
    SchedulerCore,
    TransientFailure,
)

from .conftest import make_registry


def _history(store, job_id):
    rows, _ = store.list_history(job_id=job_id)
    return rows


# =============================================================================
# Success
# =============================================================================


class TestSuccess:
    def test_one_off_job_completes(self, core, store, create_job, handlers):
        job = create_job()

        report = core.tick()

        assert report.started == [job.job_id]
        assert len(handlers[JobType.CUSTOM].calls) == 1

        final = store.get_job(job.job_id)
        assert final.status == JobStatus.COMPLETED
        assert final.result == JobResult(processed=1, succeeded=1)
        assert final.execution_token is None
        assert final.next_run_at is None

        history = _history(store, job.job_id)
        assert len(history) == 1
        assert history[0].status == JobStatus.COMPLETED
        assert history[0].is_final()

    def test_recurring_job_rearms(self, core, store, create_job, mock_clock):
        job = create_job(cron_expression="0 8,14,20 * * *", next_run_at=mock_clock.now())

        core.tick()

        final = store.get_job(job.job_id)
        assert final.status == JobStatus.SCHEDULED
        # 14:00 EAT
        assert final.next_run_at == mock_clock.now() + timedelta(hours=6)
        assert final.retry_count == 0
        assert final.completed_at == mock_clock.now()

    def test_job_not_yet_due_is_left_alone(self, core, store, create_job, mock_clock, handlers):
        job = create_job(scheduled_at=mock_clock.now() + timedelta(minutes=5))

        report = core.tick()

        assert report.started == []
        assert handlers[JobType.CUSTOM].calls == []
        assert store.get_job(job.job_id).status == JobStatus.SCHEDULED

    def test_disabled_job_never_runs(self, core, create_job, handlers):
        create_job(is_enabled=False)

        core.tick()

        assert handlers[JobType.CUSTOM].calls == []

    def test_paused_enabled_job_is_claimable(self, core, store, create_job):
        job = create_job(status=JobStatus.PAUSED)

        core.tick()

        assert store.get_job(job.job_id).status == JobStatus.COMPLETED

    def test_handler_receives_context(self, core, create_job, handlers, mock_clock):
        job = create_job()

        core.tick()

        claimed, context = handlers[JobType.CUSTOM].calls[0]
        assert claimed.status == JobStatus.RUNNING
        assert claimed.execution_token == context.execution_token
        assert context.triggered_at == mock_clock.now()
        assert context.triggered_by == "system"
        assert context.deadline is not None


# =============================================================================
# Failure and retry
# =============================================================================


class TestFailures:
    def test_transient_failure_schedules_retry(self, core, store, create_job, handlers, mock_clock):
        handlers[JobType.CUSTOM].error = TransientFailure("payment feed timeout")
        job = create_job()

        core.tick()

        final = store.get_job(job.job_id)
        assert final.status == JobStatus.SCHEDULED
        assert final.retry_count == 1
        assert final.scheduled_at == mock_clock.now() + timedelta(seconds=120)
        assert final.error_message == "payment feed timeout"
        assert final.is_enabled is True

        history = _history(store, job.job_id)
        assert history[0].status == JobStatus.FAILED
        assert history[0].error_message == "payment feed timeout"

    def test_unexpected_exception_is_retryable(self, core, store, create_job, handlers):
        handlers[JobType.CUSTOM].error = RuntimeError("boom")
        job = create_job()

        core.tick()

        assert store.get_job(job.job_id).status == JobStatus.SCHEDULED

    def test_retry_runs_after_backoff(self, core, store, create_job, handlers, mock_clock):
        handler = handlers[JobType.CUSTOM]
        handler.error = TransientFailure("down")
        job = create_job()
        core.tick()

        handler.error = None
        mock_clock.tick(60)
        assert core.tick().started == []

        mock_clock.tick(60)
        core.tick()

        final = store.get_job(job.job_id)
        assert final.status == JobStatus.COMPLETED
        assert final.retry_count == 0
        assert len(_history(store, job.job_id)) == 2

    def test_exhausted_retries_fail_and_alert(
        self, core, store, create_job, handlers, alert_sink, mock_clock
    ):
        handlers[JobType.CUSTOM].error = TransientFailure("ledger down")
        job = create_job(max_retries=2)

        core.tick()
        mock_clock.tick(120)
        core.tick()

        final = store.get_job(job.job_id)
        assert final.status == JobStatus.FAILED
        assert final.retry_count == 2
        assert final.is_enabled is True
        assert alert_sink.events == ["job.retries_exhausted"]
        assert alert_sink.alerts[0].job_id == job.job_id

    def test_permanent_failure_is_not_retried(self, core, store, create_job, handlers, alert_sink):
        handlers[JobType.CUSTOM].error = PermanentFailure("invalid report_type")
        job = create_job()

        core.tick()

        final = store.get_job(job.job_id)
        assert final.status == JobStatus.FAILED
        assert final.retry_count == 1
        assert alert_sink.events == ["job.failed_permanently"]

    def test_failing_alert_sink_does_not_break_execution(
        self, core, store, create_job, handlers, alert_sink
    ):
        def broken(alert):
            raise ConnectionError("webhook unreachable")

        alert_sink.send = broken
        handlers[JobType.CUSTOM].error = PermanentFailure("bad")
        job = create_job()

        core.tick()

        assert store.get_job(job.job_id).status == JobStatus.FAILED


# =============================================================================
# Partial failure
# =============================================================================


@pytest.fixture
def strict_core(store, handlers, alert_sink, mock_clock):
    registry = make_registry(
        handlers,
        CUSTOM={"partial_failure_policy": PartialFailurePolicy.STRICT},
    )
    executor = JobExecutor(
        store=store,
        registry=registry,
        alert_sink=alert_sink,
        clock=mock_clock.now,
        heartbeat_interval_seconds=0.05,
    )
    return SchedulerCore(store=store, executor=executor, clock=mock_clock.now)


class TestPartialFailure:
    def test_tolerate_completes_with_failures(self, core, store, create_job, handlers):
        handlers[JobType.CUSTOM].result = JobResult(processed=5, succeeded=1, failed=1, skipped=3)
        job = create_job()

        core.tick()

        final = store.get_job(job.job_id)
        assert final.status == JobStatus.COMPLETED
        assert final.result.failed == 1

    def test_tolerate_fails_when_every_item_failed(self, core, store, create_job, handlers):
        handlers[JobType.CUSTOM].result = JobResult(processed=2, failed=2)
        job = create_job()

        core.tick()

        final = store.get_job(job.job_id)
        assert final.status == JobStatus.SCHEDULED
        assert final.retry_count == 1
        assert final.result.failed == 2

    def test_strict_fails_on_any_failed_item(self, strict_core, store, create_job, handlers):
        handlers[JobType.CUSTOM].result = JobResult(processed=3, succeeded=2, failed=1)
        job = create_job()

        strict_core.tick()

        final = store.get_job(job.job_id)
        assert final.status == JobStatus.SCHEDULED
        assert final.retry_count == 1
        assert final.error_message == "1 of 3 items failed"
        assert _history(store, job.job_id)[0].result.failed == 1


# =============================================================================
# Deadline
# =============================================================================


class TestDeadline:
    def test_timeout_invalidates_token_and_discards_late_outcome(
        self, core, store, create_job, handlers
    ):
        """
        Handler outlives its deadline.

        Assertions:
        - The attempt fails with a timeout and a retry is planned
        - The late completion does not touch the job
        """
        handler = handlers[JobType.CUSTOM]
        handler.block = threading.Event()
        job = create_job(config={"timeout_seconds": 0.2})

        core.tick()

        after_timeout = store.get_job(job.job_id)
        assert after_timeout.status == JobStatus.SCHEDULED
        assert after_timeout.retry_count == 1
        assert "deadline" in after_timeout.error_message
        assert after_timeout.execution_token is None

        handler.block.set()
        assert handler.finished.wait(timeout=5)

        assert store.get_job(job.job_id) == after_timeout
        assert _history(store, job.job_id)[0].status == JobStatus.FAILED


# =============================================================================
# Cancellation
# =============================================================================


class TestCancellation:
    def test_running_job_honours_cancel_request(self, core, executor, store, create_job, handlers):
        def cancel_midway(job, context):
            executor.request_cancel(job.job_id)
            if context.is_cancel_requested():
                raise JobCancelledError(JobResult(processed=10, succeeded=3, skipped=7))

        handlers[JobType.CUSTOM].side_effect = cancel_midway
        job = create_job()

        core.tick()

        final = store.get_job(job.job_id)
        assert final.status == JobStatus.CANCELLED
        assert final.result.skipped == 7
        assert final.cancel_requested is False

        history = _history(store, job.job_id)[0]
        assert history.status == JobStatus.CANCELLED
        assert history.result.succeeded == 3

    def test_cancel_request_requires_running_job(self, executor, create_job):
        job = create_job()

        with pytest.raises(InvalidOperationError):
            executor.request_cancel(job.job_id)


# =============================================================================
# Stale execution token
# =============================================================================


class TestStaleToken:
    def _supersede(self, store):
        def side_effect(job, context):
            store.compare_and_transition(
                job.job_id,
                JobStatus.RUNNING,
                JobStatus.RUNNING,
                execution_token="other-attempt",
            )

        return side_effect

    def test_outcome_of_superseded_attempt_is_discarded(self, core, store, create_job, handlers):
        handlers[JobType.CUSTOM].side_effect = self._supersede(store)
        job = create_job()

        core.tick()

        final = store.get_job(job.job_id)
        assert final.status == JobStatus.RUNNING
        assert final.execution_token == "other-attempt"
        assert final.result is None

        history = _history(store, job.job_id)[0]
        assert history.status == JobStatus.FAILED
        assert history.error_message.startswith("Execution token superseded")

    def test_side_effect_guard_raises(self, core, store, create_job, handlers):
        supersede = self._supersede(store)

        def guarded(job, context):
            supersede(job, context)
            context.ensure_valid()

        handlers[JobType.CUSTOM].side_effect = guarded
        job = create_job()

        core.tick()

        assert store.get_job(job.job_id).execution_token == "other-attempt"
        assert _history(store, job.job_id)[0].status == JobStatus.FAILED


# =============================================================================
# Claiming
# =============================================================================


class TestClaiming:
    def test_running_job_is_skipped(self, core, store, create_job, mock_clock, handlers):
        job = create_job(
            status=JobStatus.RUNNING,
            execution_token="t",
            started_at=mock_clock.now(),
            heartbeat_at=mock_clock.now(),
        )

        report = core.tick()

        assert report.skipped_running == [job.job_id]
        assert handlers[JobType.CUSTOM].calls == []

    def test_no_capacity_defers_without_claiming(
        self, store, handlers, alert_sink, mock_clock, create_job
    ):
        registry = make_registry(handlers, CUSTOM={"max_concurrency": 1})
        executor = JobExecutor(store=store, registry=registry, alert_sink=alert_sink, clock=mock_clock.now)
        core = SchedulerCore(store=store, executor=executor, clock=mock_clock.now)
        job = create_job()

        assert executor.try_reserve(JobType.CUSTOM)
        report = core.tick()

        assert report.deferred == [job.job_id]
        assert store.get_job(job.job_id).status == JobStatus.SCHEDULED

        executor.release(JobType.CUSTOM)
        assert core.tick().started == [job.job_id]
        assert executor.active_counts()["CUSTOM"] == 0

    def test_late_run_is_flagged_catch_up(self, core, create_job, handlers, mock_clock):
        create_job(name="late", scheduled_at=mock_clock.now() - timedelta(minutes=10))
        create_job(name="on-time", scheduled_at=mock_clock.now())

        core.tick()

        flags = {job.name: context.catch_up for job, context in handlers[JobType.CUSTOM].calls}
        assert flags == {"late": True, "on-time": False}

    def test_missed_firings_run_once(self, core, store, create_job, mock_clock, handlers):
        # Three firings (08:00, 14:00, 20:00) missed while down
        create_job(cron_expression="0 8,14,20 * * *", next_run_at=mock_clock.now())
        mock_clock.tick(14 * 3600)

        core.tick()

        assert len(handlers[JobType.CUSTOM].calls) == 1

    def test_stale_snapshot_loses_claim(
        self, core, executor, store, create_job, mock_clock, monkeypatch, handlers
    ):
        """Second scheduler acting on a snapshot taken before the first claimed."""
        job = create_job()
        snapshot = store.list_enabled_due(mock_clock.now())
        other = SchedulerCore(store=store, executor=executor, clock=mock_clock.now)

        core.tick()
        monkeypatch.setattr(store, "list_enabled_due", lambda now: snapshot)
        report = other.tick()

        assert report.already_claimed == [job.job_id]
        assert report.started == []
        assert len(handlers[JobType.CUSTOM].calls) == 1


# =============================================================================
# Manual run
# =============================================================================


class TestRunNow:
    def test_run_completed_job_again(self, core, store, create_job, handlers):
        job = create_job()
        core.tick()

        core.run_now(job.job_id, triggered_by="ops@bodacover")

        assert len(handlers[JobType.CUSTOM].calls) == 2
        history = _history(store, job.job_id)
        assert sorted(row.triggered_by for row in history) == ["ops@bodacover", "system"]

    def test_run_now_ignores_schedule(self, core, store, create_job, mock_clock):
        job = create_job(scheduled_at=mock_clock.now() + timedelta(days=1))

        core.run_now(job.job_id)

        assert store.get_job(job.job_id).status == JobStatus.COMPLETED

    def test_running_job_cannot_be_run_now(self, core, create_job, mock_clock):
        job = create_job(status=JobStatus.RUNNING, heartbeat_at=mock_clock.now())

        with pytest.raises(InvalidOperationError):
            core.run_now(job.job_id)
