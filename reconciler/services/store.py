"""
Persistence capability for the reconciliation pipeline.

One PaymentStore wraps one SQLModel session (per request). Components receive it
explicitly, so tests can hand them a store bound to an in-memory database.
"""
import logging
from datetime import datetime

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from reconciler.models import (
    PaymentAuditLog,
    PaymentOrder,
    PaymentOrderCode,
    PaymentTransaction,
    User,
    WebhookEvent,
)
from reconciler.models.payment import ORDER_NEEDS_REVIEW, ORDER_PAID

log = logging.getLogger("reconciler.store")


def webhook_event_key(provider: str, provider_transaction_id: str) -> str:
    return f"{provider}:webhook:{str(provider_transaction_id).strip()}"


def transaction_key(provider: str, provider_transaction_id: str) -> str:
    return f"{provider}:tx:{str(provider_transaction_id).strip()}"


class PaymentStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def rollback(self) -> None:
        self.session.rollback()

    # Ledger

    def record_webhook_event(
        self,
        provider: str,
        provider_transaction_id: str,
        *,
        headers: dict | None,
        body,
        now: datetime,
    ) -> bool:
        """Insert-if-absent. True when this call created the row."""
        key = webhook_event_key(provider, provider_transaction_id)
        if self.session.get(WebhookEvent, key) is not None:
            return False
        self.session.add(
            WebhookEvent(
                id=key,
                provider=provider,
                provider_event_id=provider_transaction_id,
                headers=headers,
                body=body,
                received_at=now,
            )
        )
        try:
            self.session.commit()
        except IntegrityError:
            # Concurrent delivery inserted the same key first
            self.session.rollback()
            return False
        return True

    # Transactions

    def upsert_transaction(self, provider: str, provider_transaction_id: str, *, on_insert: dict, on_update: dict) -> PaymentTransaction:
        """
        on_insert fields are written only when the row is created; on_update fields
        are refreshed on every delivery.
        """
        key = transaction_key(provider, provider_transaction_id)
        row = self.session.get(PaymentTransaction, key)
        if row is None:
            row = PaymentTransaction(
                id=key,
                provider=provider,
                provider_transaction_id=provider_transaction_id,
                **{**on_insert, **on_update},
            )
            self.session.add(row)
            try:
                self.session.commit()
                return row
            except IntegrityError:
                self.session.rollback()
                row = self.session.get(PaymentTransaction, key)
                if row is None:
                    raise
        for field, value in on_update.items():
            setattr(row, field, value)
        self.session.add(row)
        self.session.commit()
        return row

    def list_transactions(self, status: str | None = None, limit: int = 100) -> list[PaymentTransaction]:
        stmt = select(PaymentTransaction).order_by(PaymentTransaction.created_at.desc()).limit(limit)
        if status:
            stmt = stmt.where(PaymentTransaction.status == status)
        return list(self.session.exec(stmt).all())

    # Orders

    def get_order(self, order_id: int) -> PaymentOrder | None:
        return self.session.get(PaymentOrder, order_id)

    def find_order_by_code(self, code: str | None) -> PaymentOrder | None:
        """Code index first; a direct scan on order_code covers a missing or stale index entry."""
        code = (code or "").strip()
        if not code:
            return None
        try:
            mapping = self.session.get(PaymentOrderCode, code)
            if mapping is not None:
                order = self.session.get(PaymentOrder, mapping.order_id)
                if order is not None and (order.order_code or "").upper() == code.upper():
                    return order
        except Exception as e:
            log.warning("Order code index lookup failed: code=%s error=%s", code, e)
            self.session.rollback()
        stmt = select(PaymentOrder).where(func.upper(PaymentOrder.order_code) == code.upper()).limit(1)
        return self.session.exec(stmt).first()

    def update_order(self, order_id: int, patch: dict, *, unless_paid: bool = True) -> bool:
        """
        Single conditional UPDATE. With unless_paid the row is only written while its
        persisted status is not 'paid', re-checked by the database at write time.
        Returns False when nothing was written; the pending unit of work is then
        rolled back with it.
        """
        stmt = update(PaymentOrder).where(PaymentOrder.id == order_id)
        if unless_paid:
            stmt = stmt.where(PaymentOrder.status != ORDER_PAID)
        stmt = stmt.values(**patch).execution_options(synchronize_session=False)
        result = self.session.exec(stmt)
        if not result.rowcount:
            self.session.rollback()
            return False
        self.session.commit()
        return True

    def list_orders_needing_review(self, limit: int = 100) -> list[PaymentOrder]:
        stmt = (
            select(PaymentOrder)
            .where(PaymentOrder.status == ORDER_NEEDS_REVIEW)
            .order_by(PaymentOrder.updated_at.desc())
            .limit(limit)
        )
        return list(self.session.exec(stmt).all())

    # Users

    def find_user(self, user_id: int | None) -> User | None:
        if user_id is None:
            return None
        return self.session.get(User, user_id)

    def set_membership(self, user_id: int, membership, *, source: str, order_id: int) -> bool:
        """
        Writes the membership unless it already belongs to order_id. Not committed
        here: the caller commits it together with the order update.
        """
        stmt = (
            update(User)
            .where(User.id == user_id)
            .where(or_(User.membership_order_id.is_(None), User.membership_order_id != order_id))
            .values(
                membership_tier=membership.tier,
                membership_status=membership.status,
                membership_started_at=membership.started_at,
                membership_expires_at=membership.expires_at,
                membership_source=source,
                membership_order_id=order_id,
            )
            .execution_options(synchronize_session=False)
        )
        result = self.session.exec(stmt)
        return (result.rowcount or 0) > 0

    # Append-only logs

    def log_decision(
        self,
        event: str,
        *,
        provider: str | None = None,
        provider_transaction_id: str | None = None,
        order_id: int | None = None,
        outcome: str | None = None,
        reason: str | None = None,
        detail: dict | None = None,
    ) -> None:
        try:
            self.session.add(
                PaymentAuditLog(
                    event=event,
                    provider=provider,
                    provider_transaction_id=provider_transaction_id,
                    order_id=order_id,
                    outcome=outcome,
                    reason=reason,
                    detail=detail,
                )
            )
            self.session.commit()
        except Exception as e:
            log.warning("PaymentAuditLog write failed: %s", e)
            self.session.rollback()
