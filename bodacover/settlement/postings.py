"""
Journal posting lines for batch settlement.

Amounts are integer cents. Every confirmed payment carries a KES 3 service
fee split evenly between the platform, KBA and Robs Insurance; the rest is
premium payable to the underwriter.
"""

from enum import Enum
from typing import Sequence

from .collaborators import JournalLine, PaymentEvent


class GLAccount(str, Enum):
    """General-ledger account codes."""

    CASH_UBA_ESCROW = "1001"
    CASH_PLATFORM_OPERATING = "1002"
    PREMIUM_PAYABLE_DEFINITE = "2001"
    SERVICE_FEE_PAYABLE_KBA = "2002"
    SERVICE_FEE_PAYABLE_ROBS = "2003"
    SERVICE_FEE_INCOME_PLATFORM = "4001"


class Partner(str, Enum):
    """Service-fee settlement partners."""

    KBA = "KBA"
    ROBS = "ROBS"


# Per confirmed payment, in cents
SERVICE_FEE_KBA_CENTS = 100
SERVICE_FEE_ROBS_CENTS = 100
SERVICE_FEE_PLATFORM_CENTS = 100
SERVICE_FEE_TOTAL_CENTS = (
    SERVICE_FEE_KBA_CENTS + SERVICE_FEE_ROBS_CENTS + SERVICE_FEE_PLATFORM_CENTS
)

DEPOSIT_CENTS = 104_800
DAILY_PAYMENT_CENTS = 8_700

PARTNER_PAYABLE_ACCOUNT = {
    Partner.KBA: GLAccount.SERVICE_FEE_PAYABLE_KBA,
    Partner.ROBS: GLAccount.SERVICE_FEE_PAYABLE_ROBS,
}

PARTNER_FEE_CENTS = {
    Partner.KBA: SERVICE_FEE_KBA_CENTS,
    Partner.ROBS: SERVICE_FEE_ROBS_CENTS,
}


def policy_issuance_lines(rider_id: str, payments: Sequence[PaymentEvent]) -> list[JournalLine]:
    """
    Lines recognising a rider's window payments at policy issuance.

    DR escrow cash for the total; CR premium payable for the total less
    service fees; CR each service-fee account per payment.

    Raises:
        ValueError: If there are no payments or fees exceed the total
    """
    if not payments:
        raise ValueError(f"No payments for rider {rider_id}")

    count = len(payments)
    total = sum(payment.amount_cents for payment in payments)
    fee_kba = SERVICE_FEE_KBA_CENTS * count
    fee_robs = SERVICE_FEE_ROBS_CENTS * count
    fee_platform = SERVICE_FEE_PLATFORM_CENTS * count
    premium = total - fee_kba - fee_robs - fee_platform

    if premium < 0:
        raise ValueError(
            f"Payments of rider {rider_id} ({total} cents) do not cover service fees"
        )

    return [
        JournalLine(
            GLAccount.CASH_UBA_ESCROW.value,
            debit_cents=total,
            description=f"Payments received from rider {rider_id} ({count})",
        ),
        JournalLine(
            GLAccount.PREMIUM_PAYABLE_DEFINITE.value,
            credit_cents=premium,
            description="Premium payable to Definite Assurance",
        ),
        JournalLine(
            GLAccount.SERVICE_FEE_PAYABLE_KBA.value,
            credit_cents=fee_kba,
            description="Service fee payable to KBA",
        ),
        JournalLine(
            GLAccount.SERVICE_FEE_PAYABLE_ROBS.value,
            credit_cents=fee_robs,
            description="Service fee payable to Robs Insurance",
        ),
        JournalLine(
            GLAccount.SERVICE_FEE_INCOME_PLATFORM.value,
            credit_cents=fee_platform,
            description="Service fee income - Platform",
        ),
    ]


def service_fee_settlement_lines(partner: Partner, transaction_count: int) -> list[JournalLine]:
    """
    Lines paying a partner its accrued service fees.

    DR the partner's fee-payable account; CR platform operating cash.
    """
    amount = PARTNER_FEE_CENTS[partner] * transaction_count
    return [
        JournalLine(
            PARTNER_PAYABLE_ACCOUNT[partner].value,
            debit_cents=amount,
            description=f"Settlement to {partner.value}",
        ),
        JournalLine(
            GLAccount.CASH_PLATFORM_OPERATING.value,
            credit_cents=amount,
            description=f"Cash paid for {partner.value} service fees",
        ),
    ]
