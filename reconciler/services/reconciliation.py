"""
Reconciliation decision for a matched order.

decide() is pure: (order, transaction, provider, config, now) -> Decision. Applying a
decision is a single conditional write done by the webhook service, so a paid order
is never moved back to needs_review whatever order deliveries arrive in.
"""
import re
from dataclasses import dataclass, field
from datetime import datetime

from reconciler.core.clock import as_utc
from reconciler.core.config import Settings
from reconciler.models import PaymentOrder
from reconciler.models.payment import (
    ORDER_PAID,
    ORDER_TYPE_MEMBERSHIP,
    TX_ACCOUNT_MISMATCH,
    TX_AMOUNT_MISMATCH,
    TX_RECEIVED,
    TX_RECEIVED_LATE,
)
from reconciler.schemas.payment import CanonicalTransaction

# Decision actions
ACTION_MARK_PAID = "mark_paid"
ACTION_FULFILL = "fulfill_membership"
ACTION_REVIEW = "needs_review"
ACTION_KEEP = "keep"  # order already paid; only the transaction is recorded

REASON_PROVIDER_MISMATCH = "provider_mismatch"
REASON_ACCOUNT_MISMATCH = "account_mismatch"
REASON_EXPIRED = "expired"
REASON_AMOUNT_MISMATCH = "amount_mismatch"
REASON_INVALID_PLAN = "invalid_plan"
REASON_USER_NOT_FOUND = "user_not_found"


@dataclass(frozen=True)
class ReconcileConfig:
    account_number: str = ""
    amount_tolerance: int = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReconcileConfig":
        return cls(
            account_number=normalize_account_number(settings.payment_account_number),
            amount_tolerance=max(0, settings.payment_amount_tolerance_vnd),
        )


@dataclass(frozen=True)
class Decision:
    action: str
    # None when the transaction is not recorded against the order (provider mismatch)
    transaction_status: str | None
    review_reason: str | None = None
    review_meta: dict = field(default_factory=dict)


def normalize_account_number(value) -> str:
    return re.sub(r"\D", "", str(value or ""))


def is_order_late(order: PaymentOrder, now: datetime) -> bool:
    if order.status == ORDER_PAID or order.expires_at is None:
        return False
    return as_utc(order.expires_at) < as_utc(now)


def is_account_ok(received_account: str | None, config: ReconcileConfig) -> bool:
    """An empty configured or received account is not enforced."""
    received = normalize_account_number(received_account)
    return not config.account_number or not received or config.account_number == received


def is_amount_ok(expected_amount: int, actual_amount: int, tolerance: int) -> bool:
    """Orders without a positive expected amount can never settle automatically."""
    expected = int(expected_amount or 0)
    return expected > 0 and abs(expected - int(actual_amount or 0)) <= max(0, tolerance)


def decide(
    order: PaymentOrder,
    tx: CanonicalTransaction,
    provider: str,
    config: ReconcileConfig,
    now: datetime,
) -> Decision:
    already_paid = order.status == ORDER_PAID

    if (order.provider or "").lower() != provider.lower():
        if already_paid:
            return Decision(ACTION_KEEP, None)
        return Decision(
            ACTION_REVIEW,
            None,
            REASON_PROVIDER_MISMATCH,
            {"expected_provider": provider, "actual_provider": order.provider or None},
        )

    account_ok = is_account_ok(tx.account_number, config)
    late = is_order_late(order, now)
    amount_ok = is_amount_ok(order.amount_vnd, tx.transfer_amount, config.amount_tolerance)

    if not account_ok:
        tx_status = TX_ACCOUNT_MISMATCH
    elif late:
        tx_status = TX_RECEIVED_LATE
    elif amount_ok:
        tx_status = TX_RECEIVED
    else:
        tx_status = TX_AMOUNT_MISMATCH

    if already_paid:
        return Decision(ACTION_KEEP, tx_status)

    if not account_ok:
        return Decision(
            ACTION_REVIEW,
            tx_status,
            REASON_ACCOUNT_MISMATCH,
            {
                "expected_account": config.account_number or None,
                "received_account": normalize_account_number(tx.account_number) or None,
            },
        )
    if late:
        return Decision(
            ACTION_REVIEW,
            tx_status,
            REASON_EXPIRED,
            {"expires_at": as_utc(order.expires_at).isoformat(), "received_at": as_utc(now).isoformat()},
        )
    if not amount_ok:
        return Decision(
            ACTION_REVIEW,
            tx_status,
            REASON_AMOUNT_MISMATCH,
            {
                "expected_amount": int(order.amount_vnd or 0),
                "actual_amount": tx.transfer_amount,
                "tolerance": config.amount_tolerance,
            },
        )
    if (order.type or "").lower() == ORDER_TYPE_MEMBERSHIP:
        return Decision(ACTION_FULFILL, tx_status)
    return Decision(ACTION_MARK_PAID, tx_status)
