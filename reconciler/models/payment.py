from datetime import datetime

from sqlalchemy import JSON, BigInteger, Column
from sqlmodel import Field, SQLModel

from reconciler.core.clock import utcnow

ORDER_PENDING = "pending"
ORDER_PAID = "paid"
ORDER_NEEDS_REVIEW = "needs_review"

ORDER_TYPE_ONE_OFF = "one_off"
ORDER_TYPE_MEMBERSHIP = "membership"

TX_RECEIVED = "received"
TX_UNMATCHED = "unmatched"
TX_ACCOUNT_MISMATCH = "account_mismatch"
TX_AMOUNT_MISMATCH = "amount_mismatch"
TX_RECEIVED_LATE = "received_late"


class PaymentOrder(SQLModel, table=True):
    """Merchant-issued payment intent. Settled by a bank transfer whose content carries order_code."""

    id: int | None = Field(default=None, primary_key=True)
    order_code: str = Field(unique=True, index=True)
    provider: str = "sepay"  # gateway expected to settle this order
    user_id: int | None = Field(default=None, index=True)
    amount_vnd: int = Field(default=0, sa_type=BigInteger)
    type: str = ORDER_TYPE_ONE_OFF  # one_off | membership
    plan_id: str | None = None
    tier: str | None = None
    duration_days: int | None = None
    status: str = Field(default=ORDER_PENDING, index=True)  # pending | paid | needs_review
    expires_at: datetime | None = None
    paid_at: datetime | None = None
    provider_transaction_id: str | None = Field(default=None, index=True)
    # Snapshot of the settling transaction
    payment: dict | None = Field(default=None, sa_column=Column(JSON))
    # {type, applied_at, user_id} once the purchase effect has been applied
    fulfillment: dict | None = Field(default=None, sa_column=Column(JSON))
    review_reason: str | None = None
    review_meta: dict | None = Field(default=None, sa_column=Column(JSON))
    admin_note: str | None = None  # set when an operator resolves a review
    created_at: datetime | None = Field(default_factory=utcnow)
    updated_at: datetime | None = None


class PaymentOrderCode(SQLModel, table=True):
    """order_code -> order id index, written by checkout."""

    code: str = Field(primary_key=True)
    order_id: int = Field(index=True)


class PaymentTransaction(SQLModel, table=True):
    """Processing outcome per provider transaction. Key fields are set on first insert only."""

    id: str = Field(primary_key=True)  # "<provider>:tx:<provider_transaction_id>"
    provider: str = Field(index=True)
    provider_transaction_id: str = Field(index=True)
    status: str = Field(index=True)  # received | unmatched | account_mismatch | amount_mismatch | received_late
    order_id: int | None = Field(default=None, index=True)
    order_code: str | None = None
    gateway: str | None = None
    transaction_date: str | None = None
    account_number: str | None = None
    transfer_amount: int | None = Field(default=None, sa_type=BigInteger)
    transfer_type: str | None = None
    content: str | None = None
    note: str | None = None
    payload: dict | str | None = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None


class WebhookEvent(SQLModel, table=True):
    """Receipt log: one row per (provider, provider transaction id), inserted once and never rewritten."""

    id: str = Field(primary_key=True)  # "<provider>:webhook:<provider_transaction_id>"
    provider: str = Field(index=True)
    provider_event_id: str = Field(index=True)
    headers: dict | None = Field(default=None, sa_column=Column(JSON))
    body: dict | str | None = Field(default=None, sa_column=Column(JSON))
    received_at: datetime = Field(default_factory=utcnow)
