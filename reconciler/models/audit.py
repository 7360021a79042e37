"""Append-only reconciliation log: one row per decision, used for manual follow-up of needs_review cases."""
from datetime import datetime

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from reconciler.core.clock import utcnow


class PaymentAuditLog(SQLModel, table=True):
    __tablename__ = "payment_audit_logs"
    id: int | None = Field(default=None, primary_key=True)
    event: str = Field(index=True)  # webhook_decision | manual_resolve
    provider: str | None = None
    provider_transaction_id: str | None = Field(default=None, index=True)
    order_id: int | None = Field(default=None, index=True)
    outcome: str | None = None
    reason: str | None = None
    detail: dict | None = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)
