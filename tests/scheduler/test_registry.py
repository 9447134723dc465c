"""
Job Type Registry Tests.

The registry is a closed table: every JobType has exactly one handler.
"""

import pytest

from bodacover.config import SchedulerSettings
from bodacover.scheduler import (
    JobType,
    JobTypeRegistry,
    JobTypeSpec,
    PartialFailurePolicy,
    UnknownJobTypeError,
)
from bodacover.settlement import build_coordinator, build_registry, in_memory_collaborators

from .conftest import RecordingHandler


def _specs(**kwargs):
    return [JobTypeSpec(job_type, RecordingHandler(), **kwargs) for job_type in JobType]


class TestRegistryConstruction:
    def test_complete_registry(self):
        registry = JobTypeRegistry(_specs())

        assert len(registry) == len(JobType)
        for job_type in JobType:
            assert job_type in registry
            assert registry.get(job_type).job_type == job_type

    def test_missing_type_fails(self):
        specs = [spec for spec in _specs() if spec.job_type != JobType.SETTLEMENT]

        with pytest.raises(ValueError, match="SETTLEMENT"):
            JobTypeRegistry(specs)

    def test_duplicate_type_fails(self):
        specs = _specs() + [JobTypeSpec(JobType.CUSTOM, RecordingHandler())]

        with pytest.raises(ValueError, match="Duplicate"):
            JobTypeRegistry(specs)

    def test_zero_concurrency_fails(self):
        with pytest.raises(ValueError, match="max_concurrency"):
            JobTypeRegistry(_specs(max_concurrency=0))

    def test_unknown_type_lookup(self):
        registry = JobTypeRegistry(_specs())

        with pytest.raises(UnknownJobTypeError):
            registry.get("DATA_EXPORT")


class TestBodaCoverRegistry:
    @pytest.fixture
    def registry(self):
        settings = SchedulerSettings()
        return build_registry(in_memory_collaborators(), build_coordinator(settings), settings)

    def test_every_type_has_a_handler(self, registry):
        assert {spec.job_type for spec in registry} == set(JobType)

    def test_batch_types_resolve_windows(self, registry):
        assert registry.get(JobType.POLICY_BATCH).is_batch
        assert registry.get(JobType.SETTLEMENT).is_batch
        assert not registry.get(JobType.PAYMENT_REMINDER).is_batch

    def test_partial_failure_policies(self, registry):
        assert registry.get(JobType.POLICY_BATCH).partial_failure_policy == PartialFailurePolicy.TOLERATE
        assert registry.get(JobType.SETTLEMENT).partial_failure_policy == PartialFailurePolicy.STRICT

    def test_routine_default_crons(self, registry):
        assert registry.get(JobType.PAYMENT_REMINDER).default_cron == "0 9 * * *"
        assert registry.get(JobType.LAPSE_CHECK).default_cron == "0 0 * * *"
        assert registry.get(JobType.REPORT_GENERATION).default_cron == "0 2 * * *"
        assert registry.get(JobType.RECONCILIATION).default_cron == "0 6 * * *"
