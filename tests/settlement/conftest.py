"""
Settlement Test Fixtures.

Base fixtures:
  - Clock at 2026-03-02 14:00:30 EAT, just after the second trigger
  - In-memory collaborators
  - Payment factory placing payments at local (EAT) times
"""

import itertools
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

import pytest

from bodacover.scheduler import EAT, ExecutionContext
from bodacover.settlement import (
    BatchWindowCoordinator,
    PaymentEvent,
    in_memory_collaborators,
)


# 2026-03-02 14:00:30 EAT
NOW = datetime(2026, 3, 2, 11, 0, 30, tzinfo=timezone.utc)
DAY = date(2026, 3, 2)


class Clock:
    def __init__(self, start: datetime = NOW):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def tick(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class ListAlertSink:
    def __init__(self):
        self.alerts = []

    def send(self, alert) -> None:
        self.alerts.append(alert)


def local(hour: int, minute: int = 0, day: date = DAY) -> datetime:
    """An EAT wall-clock time as an aware UTC datetime."""
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=EAT).astimezone(timezone.utc)


def make_context(**fields) -> ExecutionContext:
    """Context not bound to a store: tokens are always current."""
    defaults = {"job_id": "job-1", "execution_token": "token-1", "triggered_at": NOW}
    defaults.update(fields)
    return ExecutionContext(**defaults)


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def coordinator() -> BatchWindowCoordinator:
    return BatchWindowCoordinator()


@pytest.fixture
def collaborators():
    return in_memory_collaborators()


@pytest.fixture
def pay(collaborators) -> Callable:
    """
    Factory fixture adding a confirmed payment to the feed.

    `at` defaults to 10:00 EAT on 2026-03-02 (inside window 20260302-B2).
    """
    counter = itertools.count(1)

    def _pay(rider_id: str, amount_cents: int, at: Optional[datetime] = None) -> PaymentEvent:
        payment = PaymentEvent(
            payment_id=f"pay-{next(counter):04d}",
            rider_id=rider_id,
            amount_cents=amount_cents,
            confirmed_at=at or local(10),
        )
        collaborators.payments.add(payment)
        return payment

    return _pay
