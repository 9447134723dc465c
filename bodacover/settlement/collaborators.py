"""
Collaborator interfaces consumed by the batch engine.

The ledger, policy administration, payment feed, reminder and reporting
services live outside this repository. They are reached only through the
Protocols below. Every write operation is idempotent by a caller-supplied
key so that a retried or re-run window never double-posts.

The in-memory implementations back local runs and tests.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, Sequence

from ..scheduler.entities import generate_uuid
from ..scheduler.errors import CollaboratorUnavailableError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentEvent:
    """A confirmed rider payment."""

    payment_id: str
    rider_id: str
    amount_cents: int
    confirmed_at: datetime


@dataclass(frozen=True)
class JournalLine:
    """One line of a double-entry journal entry."""

    account_code: str
    debit_cents: int = 0
    credit_cents: int = 0
    description: str = ""


# =============================================================================
# Interfaces
# =============================================================================


class AccountingCollaborator(Protocol):
    def post_journal_entry(self, source_ref: str, lines: Sequence[JournalLine]) -> str:
        """Post a balanced entry; idempotent by source_ref. Returns entry id."""
        ...

    def reconcile(self, start: datetime, end: datetime) -> dict:
        ...


class PolicyCollaborator(Protocol):
    def issue_policy(self, rider_id: str, window_id: str) -> str:
        """Issue (or return the existing) policy for a rider. Returns policy id."""
        ...

    def lapse_overdue_policies(self, as_of: datetime) -> int:
        ...


class PaymentCollaborator(Protocol):
    def list_confirmed_payments(self, start: datetime, end: datetime) -> Sequence[PaymentEvent]:
        """Confirmed payments with start <= confirmed_at < end, in stable order."""
        ...


class ReminderCollaborator(Protocol):
    def send_payment_reminders(self, as_of: datetime) -> int:
        ...


class ReportCollaborator(Protocol):
    def generate_report(self, report_type: str, start: datetime, end: datetime) -> str:
        ...


@dataclass
class Collaborators:
    """The set of collaborators handlers are built from."""

    accounting: AccountingCollaborator
    policies: PolicyCollaborator
    payments: PaymentCollaborator
    reminders: ReminderCollaborator
    reports: ReportCollaborator


# =============================================================================
# In-memory implementations
# =============================================================================


class _Availability:
    """Simulated outage switch shared by the in-memory collaborators."""

    name = "collaborator"

    def __init__(self) -> None:
        self.available = True
        self._lock = threading.Lock()

    def _check_available(self) -> None:
        if not self.available:
            raise CollaboratorUnavailableError(self.name, "marked unavailable")


@dataclass(frozen=True)
class PostedEntry:
    entry_id: str
    source_ref: str
    lines: tuple[JournalLine, ...]


class InMemoryLedger(_Availability):
    """Balanced-entry ledger, idempotent by source_ref."""

    name = "accounting"

    def __init__(self) -> None:
        super().__init__()
        self.entries: dict[str, PostedEntry] = {}
        self.post_calls = 0

    def post_journal_entry(self, source_ref: str, lines: Sequence[JournalLine]) -> str:
        self._check_available()

        debits = sum(line.debit_cents for line in lines)
        credits = sum(line.credit_cents for line in lines)
        if debits != credits:
            raise ValueError(
                f"Unbalanced entry {source_ref}: debits {debits} != credits {credits}"
            )

        with self._lock:
            self.post_calls += 1
            existing = self.entries.get(source_ref)
            if existing is not None:
                return existing.entry_id

            entry = PostedEntry(
                entry_id=generate_uuid(),
                source_ref=source_ref,
                lines=tuple(lines),
            )
            self.entries[source_ref] = entry

        logger.debug(f"Posted journal entry {entry.entry_id} for {source_ref}")
        return entry.entry_id

    def balance(self, account_code: str) -> int:
        """Credit-minus-debit balance of an account."""
        with self._lock:
            return sum(
                line.credit_cents - line.debit_cents
                for entry in self.entries.values()
                for line in entry.lines
                if line.account_code == account_code
            )

    def reconcile(self, start: datetime, end: datetime) -> dict:
        self._check_available()
        with self._lock:
            unbalanced = [
                entry.source_ref
                for entry in self.entries.values()
                if sum(l.debit_cents for l in entry.lines) != sum(l.credit_cents for l in entry.lines)
            ]
            return {
                "entries": len(self.entries),
                "unbalanced": unbalanced,
                "period_start": start.isoformat(),
                "period_end": end.isoformat(),
            }


class InMemoryPolicyRegistry(_Availability):
    """Policy issuance, idempotent per rider."""

    name = "policy"

    def __init__(self) -> None:
        super().__init__()
        self.policies: dict[str, str] = {}
        self.issued_windows: dict[str, str] = {}
        self.lapsed_runs = 0

    def issue_policy(self, rider_id: str, window_id: str) -> str:
        self._check_available()
        with self._lock:
            policy_id = self.policies.get(rider_id)
            if policy_id is None:
                policy_id = generate_uuid()
                self.policies[rider_id] = policy_id
                self.issued_windows[rider_id] = window_id
            return policy_id

    def lapse_overdue_policies(self, as_of: datetime) -> int:
        self._check_available()
        with self._lock:
            self.lapsed_runs += 1
        return 0


class InMemoryPaymentFeed(_Availability):
    """Confirmed payments held in memory."""

    name = "payments"

    def __init__(self, payments: Optional[Sequence[PaymentEvent]] = None) -> None:
        super().__init__()
        self.payments: list[PaymentEvent] = list(payments or [])

    def add(self, payment: PaymentEvent) -> None:
        with self._lock:
            self.payments.append(payment)

    def list_confirmed_payments(self, start: datetime, end: datetime) -> Sequence[PaymentEvent]:
        self._check_available()
        with self._lock:
            selected = [p for p in self.payments if start <= p.confirmed_at < end]
        return sorted(selected, key=lambda p: (p.confirmed_at, p.payment_id))


class InMemoryReminderService(_Availability):
    name = "reminders"

    def __init__(self, riders_due: int = 0) -> None:
        super().__init__()
        self.riders_due = riders_due
        self.sent_at: list[datetime] = []

    def send_payment_reminders(self, as_of: datetime) -> int:
        self._check_available()
        with self._lock:
            self.sent_at.append(as_of)
        return self.riders_due


class InMemoryReportService(_Availability):
    name = "reports"

    def __init__(self) -> None:
        super().__init__()
        self.reports: list[tuple[str, datetime, datetime]] = []

    def generate_report(self, report_type: str, start: datetime, end: datetime) -> str:
        self._check_available()
        with self._lock:
            self.reports.append((report_type, start, end))
        return f"{report_type}-{start:%Y%m%d}-{end:%Y%m%d}"


def in_memory_collaborators() -> Collaborators:
    """Collaborators for local runs without external services."""
    return Collaborators(
        accounting=InMemoryLedger(),
        policies=InMemoryPolicyRegistry(),
        payments=InMemoryPaymentFeed(),
        reminders=InMemoryReminderService(),
        reports=InMemoryReportService(),
    )
