"""Applies a membership order's effect exactly once per order."""
import logging
from dataclasses import dataclass
from datetime import datetime

from reconciler.core.config import MembershipPlan
from reconciler.models import PaymentOrder
from reconciler.models.payment import ORDER_NEEDS_REVIEW, ORDER_PAID, ORDER_TYPE_MEMBERSHIP
from reconciler.services.membership import Membership, compute_new_membership, resolve_plan
from reconciler.services.reconciliation import REASON_INVALID_PLAN, REASON_USER_NOT_FOUND
from reconciler.services.store import PaymentStore

log = logging.getLogger("reconciler.fulfillment")


@dataclass(frozen=True)
class FulfillmentResult:
    status: str  # paid | needs_review
    reason: str | None = None
    # False when the membership had already been applied for this order
    applied: bool = False
    written: bool = True


def _parse_applied_at(fulfillment: dict | None) -> datetime | None:
    raw = (fulfillment or {}).get("applied_at")
    if not raw:
        return None
    if isinstance(raw, datetime):
        return raw
    try:
        return datetime.fromisoformat(str(raw))
    except ValueError:
        return None


def apply_membership(
    store: PaymentStore,
    order: PaymentOrder,
    plans: dict[str, MembershipPlan],
    now: datetime,
    *,
    source: str,
    extra_patch: dict | None = None,
) -> FulfillmentResult:
    """
    Extends the buyer's membership and marks the order paid.

    The membership is skipped (but the order still marked paid) when the order's
    fulfillment is already stamped or the user's membership already points at this
    order: a previous attempt may have written the membership and died before the
    order update.
    """
    extra_patch = dict(extra_patch or {})
    applied_at = _parse_applied_at(order.fulfillment)

    plan = resolve_plan(plans, order.plan_id, order.tier)
    if plan is None and applied_at is None:
        written = store.update_order(
            order.id,
            {**extra_patch, "status": ORDER_NEEDS_REVIEW, "review_reason": REASON_INVALID_PLAN,
             "review_meta": {"plan_id": order.plan_id, "tier": order.tier}, "updated_at": now},
        )
        return FulfillmentResult(ORDER_NEEDS_REVIEW, REASON_INVALID_PLAN, written=written)

    user = store.find_user(order.user_id)
    if user is None:
        written = store.update_order(
            order.id,
            {**extra_patch, "status": ORDER_NEEDS_REVIEW, "review_reason": REASON_USER_NOT_FOUND,
             "review_meta": {"user_id": order.user_id}, "updated_at": now},
        )
        return FulfillmentResult(ORDER_NEEDS_REVIEW, REASON_USER_NOT_FOUND, written=written)

    current = Membership.from_user(user)
    already_applied = applied_at is not None or current.order_id == order.id
    paid_at = order.paid_at or now

    applied = False
    if not already_applied:
        duration_days = order.duration_days or plan.duration_days
        new_membership = compute_new_membership(current, plan.tier, duration_days, paid_at)
        applied = store.set_membership(user.id, new_membership, source=source, order_id=order.id)

    written = store.update_order(
        order.id,
        {
            **extra_patch,
            "status": ORDER_PAID,
            "paid_at": paid_at,
            "updated_at": now,
            "fulfillment": {
                "type": ORDER_TYPE_MEMBERSHIP,
                "applied_at": (applied_at or now).isoformat(),
                "user_id": user.id,
            },
        },
    )
    if not written:
        # Order turned paid concurrently; the membership write was rolled back with it
        return FulfillmentResult(ORDER_PAID, applied=False, written=False)
    if applied:
        log.info(
            "Membership applied: order_id=%s user_id=%s tier=%s expires_at=%s",
            order.id, user.id, new_membership.tier, new_membership.expires_at,
        )
    return FulfillmentResult(ORDER_PAID, applied=applied)
