"""
Batch processing for settlement windows.

BatchProcessor:
1. Fetch confirmed payments in [range_start, range_end) plus the
   coverage-cycle look-back [range_start - cycle, range_start)
2. Group window payments by rider (order of first payment)
3. A rider is eligible when the window's payments carry the cycle total
   across the threshold: prior < threshold <= prior + window total
4. Per eligible rider: issue the policy, then post the journal entry, both
   idempotent by (rider, window)

Rider-level errors are tallied and never abort the window. Collaborator
outages and a stale execution token abort the whole run.
"""

import logging
from collections import defaultdict
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Optional

from ..scheduler.entities import JobResult
from ..scheduler.errors import (
    CollaboratorUnavailableError,
    JobCancelledError,
    StaleExecutionTokenError,
)
from .collaborators import (
    AccountingCollaborator,
    PaymentCollaborator,
    PaymentEvent,
    PolicyCollaborator,
)
from .postings import DEPOSIT_CENTS, Partner, policy_issuance_lines, service_fee_settlement_lines
from .windows import BatchWindow

if TYPE_CHECKING:
    from ..scheduler.executor import ExecutionContext


logger = logging.getLogger(__name__)


DEFAULT_CYCLE = timedelta(days=30)

# Errors that abort the run instead of being tallied per item
ABORTING_ERRORS = (CollaboratorUnavailableError, StaleExecutionTokenError)


def _window_payments(
    payments: PaymentCollaborator,
    window: BatchWindow,
) -> list[PaymentEvent]:
    # Re-filter closed-open in case the feed is inclusive at range_end
    return [
        payment
        for payment in payments.list_confirmed_payments(window.range_start, window.range_end)
        if window.contains(payment.confirmed_at)
    ]


class BatchProcessor:
    """Policy issuance for riders whose deposit completed in a window."""

    def __init__(
        self,
        payments: PaymentCollaborator,
        policies: PolicyCollaborator,
        accounting: AccountingCollaborator,
        threshold_cents: int = DEPOSIT_CENTS,
        cycle: timedelta = DEFAULT_CYCLE,
    ):
        self.payments = payments
        self.policies = policies
        self.accounting = accounting
        self.threshold_cents = threshold_cents
        self.cycle = cycle

    def is_eligible(self, prior_cents: int, window_cents: int) -> bool:
        return prior_cents < self.threshold_cents <= prior_cents + window_cents

    def process(self, window: BatchWindow, context: "ExecutionContext") -> JobResult:
        """
        Process one window.

        Returns:
            JobResult with processed = payment events in the window and
            succeeded/failed/skipped counted per rider

        Raises:
            JobCancelledError: Cancellation was requested between riders;
                carries the partial result
            CollaboratorUnavailableError: A collaborator could not be reached
            StaleExecutionTokenError: The attempt lost its lease
        """
        window_payments = _window_payments(self.payments, window)

        lookback_start = window.range_start - self.cycle
        prior_totals: dict[str, int] = defaultdict(int)
        for payment in self.payments.list_confirmed_payments(lookback_start, window.range_start):
            if lookback_start <= payment.confirmed_at < window.range_start:
                prior_totals[payment.rider_id] += payment.amount_cents

        by_rider: dict[str, list[PaymentEvent]] = {}
        for payment in window_payments:
            by_rider.setdefault(payment.rider_id, []).append(payment)

        eligible = [
            rider_id
            for rider_id, rider_payments in by_rider.items()
            if self.is_eligible(
                prior_totals[rider_id],
                sum(p.amount_cents for p in rider_payments),
            )
        ]

        below_threshold = len(by_rider) - len(eligible)
        succeeded = 0
        failures: list[dict[str, Any]] = []

        logger.info(
            f"Window {window.window_id}: {len(window_payments)} payments, "
            f"{len(by_rider)} riders, {len(eligible)} eligible"
        )

        for index, rider_id in enumerate(eligible):
            if context.is_cancel_requested():
                remaining = len(eligible) - index
                logger.info(
                    f"Window {window.window_id}: cancelled after {index} of "
                    f"{len(eligible)} riders, {remaining} skipped"
                )
                raise JobCancelledError(
                    self._result(
                        window,
                        processed=len(window_payments),
                        succeeded=succeeded,
                        failures=failures,
                        skipped=below_threshold + remaining,
                        riders=len(by_rider),
                        cancelled=True,
                    )
                )

            try:
                self._settle_rider(window, rider_id, by_rider[rider_id], context)
                succeeded += 1
            except ABORTING_ERRORS:
                raise
            except Exception as e:
                logger.warning(f"Window {window.window_id}: rider {rider_id} failed: {e}")
                failures.append({"rider_id": rider_id, "error": str(e) or type(e).__name__})

        return self._result(
            window,
            processed=len(window_payments),
            succeeded=succeeded,
            failures=failures,
            skipped=below_threshold,
            riders=len(by_rider),
        )

    def _settle_rider(
        self,
        window: BatchWindow,
        rider_id: str,
        rider_payments: list[PaymentEvent],
        context: "ExecutionContext",
    ) -> None:
        lines = policy_issuance_lines(rider_id, rider_payments)

        context.ensure_valid()
        policy_id = self.policies.issue_policy(rider_id, window.window_id)

        context.ensure_valid()
        entry_id = self.accounting.post_journal_entry(f"{window.window_id}:{rider_id}", lines)

        logger.debug(
            f"Window {window.window_id}: rider {rider_id} policy {policy_id}, entry {entry_id}"
        )

    def _result(
        self,
        window: BatchWindow,
        processed: int,
        succeeded: int,
        failures: list[dict[str, Any]],
        skipped: int,
        riders: int,
        cancelled: bool = False,
    ) -> JobResult:
        details: dict[str, Any] = {
            "window_id": window.window_id,
            "range_start": window.range_start.isoformat(),
            "range_end": window.range_end.isoformat(),
            "riders": riders,
        }
        if failures:
            details["failures"] = failures
        if cancelled:
            details["cancelled"] = True

        return JobResult(
            processed=processed,
            succeeded=succeeded,
            failed=len(failures),
            skipped=skipped,
            details=details,
        )


class ServiceFeeSettlementProcessor:
    """
    Settles the KBA and Robs service fees accrued in a window.

    One journal entry per partner per window, idempotent by
    "<window_id>:fee:<partner>".
    """

    def __init__(
        self,
        payments: PaymentCollaborator,
        accounting: AccountingCollaborator,
        partners: Optional[list[Partner]] = None,
    ):
        self.payments = payments
        self.accounting = accounting
        self.partners = partners or list(Partner)

    def process(self, window: BatchWindow, context: "ExecutionContext") -> JobResult:
        transaction_count = len(_window_payments(self.payments, window))
        succeeded = 0
        skipped = 0
        failures: list[dict[str, Any]] = []

        for index, partner in enumerate(self.partners):
            if context.is_cancel_requested():
                raise JobCancelledError(
                    JobResult(
                        processed=transaction_count,
                        succeeded=succeeded,
                        failed=len(failures),
                        skipped=skipped + len(self.partners) - index,
                        details={"window_id": window.window_id, "cancelled": True},
                    )
                )

            if transaction_count == 0:
                skipped += 1
                continue

            source_ref = f"{window.window_id}:fee:{partner.value.lower()}"
            try:
                context.ensure_valid()
                self.accounting.post_journal_entry(
                    source_ref,
                    service_fee_settlement_lines(partner, transaction_count),
                )
                succeeded += 1
            except ABORTING_ERRORS:
                raise
            except Exception as e:
                logger.warning(f"Fee settlement {source_ref} failed: {e}")
                failures.append({"partner": partner.value, "error": str(e) or type(e).__name__})

        details: dict[str, Any] = {
            "window_id": window.window_id,
            "transactions": transaction_count,
        }
        if failures:
            details["failures"] = failures

        return JobResult(
            processed=transaction_count,
            succeeded=succeeded,
            failed=len(failures),
            skipped=skipped,
            details=details,
        )
