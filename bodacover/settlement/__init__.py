"""
Batch settlement.

- windows: trigger-time partition of the payment stream
- processor: per-window policy issuance and service-fee settlement
- postings: journal lines (integer cents)
- collaborators: external service interfaces and in-memory doubles
- handlers: job type handlers and scheduler wiring
"""

from .windows import (
    BatchWindow,
    BatchWindowCoordinator,
    OVERNIGHT_ABSORBED_BY_FIRST_WINDOW,
    missed_windows,
)
from .collaborators import (
    Collaborators,
    JournalLine,
    PaymentEvent,
    InMemoryLedger,
    InMemoryPaymentFeed,
    InMemoryPolicyRegistry,
    InMemoryReminderService,
    InMemoryReportService,
    in_memory_collaborators,
)
from .postings import GLAccount, Partner, policy_issuance_lines, service_fee_settlement_lines
from .processor import BatchProcessor, ServiceFeeSettlementProcessor
from .handlers import (
    JobHandler,
    WindowResolver,
    build_coordinator,
    build_registry,
    build_scheduler_service,
    default_job_definitions,
)

__all__ = [
    # Windows
    "BatchWindow",
    "BatchWindowCoordinator",
    "OVERNIGHT_ABSORBED_BY_FIRST_WINDOW",
    "missed_windows",
    # Collaborators
    "Collaborators",
    "JournalLine",
    "PaymentEvent",
    "InMemoryLedger",
    "InMemoryPaymentFeed",
    "InMemoryPolicyRegistry",
    "InMemoryReminderService",
    "InMemoryReportService",
    "in_memory_collaborators",
    # Postings
    "GLAccount",
    "Partner",
    "policy_issuance_lines",
    "service_fee_settlement_lines",
    # Processing
    "BatchProcessor",
    "ServiceFeeSettlementProcessor",
    # Wiring
    "JobHandler",
    "WindowResolver",
    "build_coordinator",
    "build_registry",
    "build_scheduler_service",
    "default_job_definitions",
]
