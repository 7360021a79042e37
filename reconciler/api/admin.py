"""Review queue for orders the webhook could not settle automatically. X-Admin-Secret protected."""
import logging

from fastapi import APIRouter, Depends, Header, HTTPException

from reconciler.api.deps import get_store
from reconciler.core.clock import utcnow
from reconciler.core.config import settings
from reconciler.core.security import constant_time_equals
from reconciler.models import PaymentOrder, PaymentTransaction
from reconciler.models.payment import ORDER_NEEDS_REVIEW, ORDER_PAID, ORDER_TYPE_MEMBERSHIP
from reconciler.schemas.payment import ResolveOrderRequest
from reconciler.services.fulfillment import apply_membership
from reconciler.services.store import PaymentStore

log = logging.getLogger("reconciler.admin")

router = APIRouter(prefix="/admin/payments", tags=["admin-payments"])


def require_admin(x_admin_secret: str | None = Header(None, alias="X-Admin-Secret")) -> None:
    expected = (settings.admin_secret or "").strip()
    if not expected:
        raise HTTPException(status_code=503, detail="Admin API is not configured (ADMIN_SECRET).")
    if not constant_time_equals(x_admin_secret or "", expected):
        raise HTTPException(status_code=403, detail="Forbidden")


def _order_row(o: PaymentOrder) -> dict:
    return {
        "id": o.id,
        "order_code": o.order_code,
        "provider": o.provider,
        "user_id": o.user_id,
        "type": o.type,
        "amount_vnd": o.amount_vnd,
        "status": o.status,
        "review_reason": o.review_reason,
        "review_meta": o.review_meta,
        "provider_transaction_id": o.provider_transaction_id,
        "payment": o.payment,
        "expires_at": o.expires_at.isoformat() if o.expires_at else None,
        "updated_at": o.updated_at.isoformat() if o.updated_at else None,
    }


def _transaction_row(t: PaymentTransaction) -> dict:
    return {
        "id": t.id,
        "provider": t.provider,
        "provider_transaction_id": t.provider_transaction_id,
        "status": t.status,
        "order_id": t.order_id,
        "order_code": t.order_code,
        "transfer_amount": t.transfer_amount,
        "content": t.content,
        "note": t.note,
        "created_at": t.created_at.isoformat() if t.created_at else None,
    }


@router.get("/review")
def review_queue(limit: int = 100, _=Depends(require_admin), store: PaymentStore = Depends(get_store)):
    orders = store.list_orders_needing_review(limit=min(max(limit, 1), 500))
    return {"orders": [_order_row(o) for o in orders]}


@router.get("/transactions")
def transactions(status: str | None = None, limit: int = 100, _=Depends(require_admin), store: PaymentStore = Depends(get_store)):
    rows = store.list_transactions(status=status, limit=min(max(limit, 1), 500))
    return {"transactions": [_transaction_row(t) for t in rows]}


@router.post("/{order_id}/resolve")
def resolve_order(
    order_id: int,
    body: ResolveOrderRequest,
    _=Depends(require_admin),
    store: PaymentStore = Depends(get_store),
):
    """Operator accepts the order: membership orders are fulfilled (same idempotency guards), others marked paid."""
    order = store.get_order(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found.")
    if order.status == ORDER_PAID:
        return {"ok": True, "already_paid": True}

    now = utcnow()
    previous_reason = order.review_reason
    extra = {"admin_note": body.note}
    if (order.type or "").lower() == ORDER_TYPE_MEMBERSHIP:
        result = apply_membership(store, order, settings.membership_plans, now, source="manual", extra_patch=extra)
        if result.status == ORDER_NEEDS_REVIEW:
            raise HTTPException(status_code=409, detail=f"Order cannot be fulfilled: {result.reason}")
        written = result.written
    else:
        written = store.update_order(order_id, {**extra, "status": ORDER_PAID, "paid_at": order.paid_at or now, "updated_at": now})

    store.log_decision(
        "manual_resolve",
        order_id=order_id,
        outcome=ORDER_PAID,
        reason=previous_reason,
        detail={"note": body.note, "written": written},
    )
    log.info("Order resolved manually: order_id=%s previous_reason=%s", order_id, previous_reason)
    if not written:
        return {"ok": True, "already_paid": True}
    return {"ok": True}
