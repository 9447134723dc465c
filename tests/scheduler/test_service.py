"""
SchedulerService Tests.

Operator facade: job creation, pause/resume/cancel, seeding, history and
statistics.
"""

from datetime import timedelta

import pytest

from bodacover.config import SchedulerSettings
from bodacover.scheduler import (
    InvalidOperationError,
    JobDefinition,
    JobNotFoundError,
    JobStatus,
    JobType,
    SchedulerService,
    TransientFailure,
)


DEFAULT_JOBS = [
    JobDefinition(name="Policy Lapse Check", job_type=JobType.LAPSE_CHECK, cron_expression="0 0 * * *"),
    JobDefinition(name="Ad-hoc", job_type=JobType.CUSTOM),
]


@pytest.fixture
def service(temp_db_path, registry, alert_sink, mock_clock):
    svc = SchedulerService.create(
        SchedulerSettings(),
        registry,
        default_jobs=DEFAULT_JOBS,
        alert_sink=alert_sink,
        clock=mock_clock.now,
        db_path=temp_db_path,
        max_workers=0,
    )
    yield svc
    svc.close()


class TestCreateJob:
    def test_recurring_job_gets_next_run(self, service, mock_clock):
        job = service.create_job(
            name="Daily Reconciliation",
            job_type=JobType.RECONCILIATION,
            cron_expression="0 6 * * *",
        )

        assert job.is_recurring is True
        assert job.status == JobStatus.SCHEDULED
        # 06:00 EAT the next day
        assert job.next_run_at == mock_clock.now() + timedelta(hours=22)
        assert service.get_job(job.job_id) == job

    def test_one_off_job(self, service, mock_clock):
        job = service.create_job(name="Rerun", job_type=JobType.CUSTOM, created_by="ops")

        assert job.is_recurring is False
        assert job.scheduled_at == mock_clock.now()
        assert job.next_run_at is None
        assert job.created_by == "ops"

    def test_invalid_cron_rejected(self, service):
        with pytest.raises(InvalidOperationError, match="Invalid cron"):
            service.create_job(name="bad", job_type=JobType.CUSTOM, cron_expression="every day")

    def test_recurring_without_cron_rejected(self, service):
        with pytest.raises(InvalidOperationError):
            service.create_job(name="bad", job_type=JobType.CUSTOM, is_recurring=True)

    def test_negative_max_retries_rejected(self, service):
        with pytest.raises(InvalidOperationError):
            service.create_job(name="bad", job_type=JobType.CUSTOM, max_retries=-1)


class TestLifecycleOperations:
    def test_pause_and_resume(self, service, mock_clock):
        job = service.create_job(name="lapse", job_type=JobType.LAPSE_CHECK, cron_expression="0 0 * * *")

        paused = service.pause(job.job_id)
        assert paused.status == JobStatus.PAUSED
        assert paused.is_enabled is False
        assert paused.next_run_at is None

        mock_clock.tick(24 * 3600)
        assert service.tick().started == []

        resumed = service.resume(job.job_id)
        assert resumed.status == JobStatus.SCHEDULED
        assert resumed.is_enabled is True
        assert resumed.next_run_at > mock_clock.now()

    def test_resume_resets_retry_budget(self, service):
        job = service.create_job(name="once", job_type=JobType.CUSTOM)
        service.store.compare_and_transition(
            job.job_id,
            JobStatus.SCHEDULED,
            JobStatus.RUNNING,
        )
        service.store.compare_and_transition(
            job.job_id,
            JobStatus.RUNNING,
            JobStatus.FAILED,
            retry_count=3,
            error_message="ledger down",
        )

        resumed = service.resume(job.job_id)

        assert resumed.retry_count == 0
        assert resumed.error_message is None

    def test_pause_twice_rejected(self, service):
        job = service.create_job(name="once", job_type=JobType.CUSTOM)
        service.pause(job.job_id)

        with pytest.raises(InvalidOperationError):
            service.pause(job.job_id)

    def test_resume_scheduled_rejected(self, service):
        job = service.create_job(name="once", job_type=JobType.CUSTOM)

        with pytest.raises(InvalidOperationError):
            service.resume(job.job_id)

    def test_cancel_scheduled_job(self, service, mock_clock):
        job = service.create_job(name="once", job_type=JobType.CUSTOM)

        cancelled = service.cancel(job.job_id)

        assert cancelled.status == JobStatus.CANCELLED
        assert cancelled.completed_at == mock_clock.now()
        assert service.tick().started == []

    def test_cancel_finished_job_rejected(self, service):
        job = service.create_job(name="once", job_type=JobType.CUSTOM)
        service.tick()

        with pytest.raises(InvalidOperationError):
            service.cancel(job.job_id)

    def test_cancel_running_job_sets_flag(self, service):
        job = service.create_job(name="once", job_type=JobType.CUSTOM)
        service.store.compare_and_transition(job.job_id, JobStatus.SCHEDULED, JobStatus.RUNNING)

        flagged = service.cancel(job.job_id)

        assert flagged.status == JobStatus.RUNNING
        assert flagged.cancel_requested is True

    def test_run_now_returns_updated_job(self, service):
        job = service.create_job(
            name="later",
            job_type=JobType.CUSTOM,
            scheduled_at=service.clock() + timedelta(days=1),
        )

        ran = service.run_now(job.job_id, triggered_by="ops")

        assert ran.status == JobStatus.COMPLETED

    def test_run_now_of_paused_job_stays_paused(self, service, handlers):
        """A manual run does not re-arm a job the operator paused."""
        job = service.create_job(name="lapse", job_type=JobType.LAPSE_CHECK, cron_expression="0 0 * * *")
        service.pause(job.job_id)

        ran = service.run_now(job.job_id, triggered_by="ops")

        assert len(handlers[JobType.LAPSE_CHECK].calls) == 1
        assert ran.status == JobStatus.PAUSED
        assert ran.is_enabled is False
        assert ran.next_run_at is None
        assert ran.execution_token is None
        history, _ = service.get_job_history(job.job_id)
        assert history[0].status == JobStatus.COMPLETED

        resumed = service.resume(job.job_id)
        assert resumed.status == JobStatus.SCHEDULED
        assert resumed.is_enabled is True

    def test_failed_run_now_of_paused_job_stays_paused(self, service, handlers):
        handlers[JobType.LAPSE_CHECK].error = TransientFailure("policy registry down")
        job = service.create_job(name="lapse", job_type=JobType.LAPSE_CHECK, cron_expression="0 0 * * *")
        service.pause(job.job_id)

        ran = service.run_now(job.job_id, triggered_by="ops")

        assert ran.status == JobStatus.PAUSED
        assert ran.is_enabled is False
        assert ran.next_run_at is None
        assert ran.retry_count == 1
        assert ran.error_message == "policy registry down"

    def test_unknown_job(self, service):
        with pytest.raises(JobNotFoundError):
            service.pause("missing")
        with pytest.raises(JobNotFoundError):
            service.get_job_history("missing")
        with pytest.raises(JobNotFoundError):
            service.run_now("missing")


class TestSeeding:
    def test_seed_is_idempotent(self, service):
        assert service.seed_default_jobs() == 2
        assert service.seed_default_jobs() == 0

        jobs, total = service.list_jobs()
        assert total == 2
        assert {job.created_by for job in jobs} == {"system"}

    def test_seed_fills_in_missing_jobs(self, service):
        service.create_job(name="Ad-hoc", job_type=JobType.CUSTOM)

        assert service.seed_default_jobs() == 1


class TestReadModels:
    def test_history_and_stats(self, service, mock_clock):
        job = service.create_job(name="once", job_type=JobType.CUSTOM)
        service.tick()

        history, total = service.get_job_history(job.job_id)
        assert total == 1
        assert history[0].status == JobStatus.COMPLETED
        assert len(service.get_recent_history(hours=1)) == 1

        stats = service.get_stats()
        assert stats["total_jobs"] == 1
        assert stats["recent_executions"] == 1
        assert stats["jobs_by_status"]["COMPLETED"] == 1
        assert stats["active_executions"]["CUSTOM"] == 0

    def test_status_before_start(self, service):
        status = service.get_status()

        assert status["is_running"] is False
        assert status["ticker_state"] == "STOPPED"
        assert status["running_jobs"] == []
        assert set(status["active_executions"]) == {job_type.value for job_type in JobType}

    def test_upcoming_runs_ordered(self, service, mock_clock):
        later = service.create_job(name="later", job_type=JobType.CUSTOM, cron_expression="0 20 * * *")
        sooner = service.create_job(name="sooner", job_type=JobType.CUSTOM, cron_expression="0 9 * * *")
        service.pause(service.create_job(name="paused", job_type=JobType.CUSTOM).job_id)

        assert [job.job_id for job in service.upcoming_runs()] == [sooner.job_id, later.job_id]

    def test_start_and_stop(self, service):
        service.ticker.interval_seconds = 0.05

        service.start(run_recovery=True)
        try:
            assert service.is_running
            with pytest.raises(RuntimeError):
                service.start()
        finally:
            service.stop()

        assert service.is_running is False
