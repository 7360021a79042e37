"""
Webhook pipeline: normalize -> ledger -> order code -> match -> decide -> apply.

Every business outcome is returned as a 200 body so the gateway stops retrying;
only unexpected errors escape (and become 5xx, which the gateway retries).
"""
import logging
from datetime import datetime
from typing import Any, Mapping

from reconciler.core.config import Settings
from reconciler.models import PaymentOrder
from reconciler.models.payment import ORDER_NEEDS_REVIEW, ORDER_PAID, TX_UNMATCHED
from reconciler.schemas.payment import CanonicalTransaction
from reconciler.services.fulfillment import apply_membership
from reconciler.services.normalizer import normalize_payload
from reconciler.services.order_code import resolve_order_code
from reconciler.services.reconciliation import (
    ACTION_FULFILL,
    ACTION_KEEP,
    ACTION_MARK_PAID,
    ACTION_REVIEW,
    REASON_PROVIDER_MISMATCH,
    Decision,
    ReconcileConfig,
    decide,
)
from reconciler.services.store import PaymentStore

log = logging.getLogger("reconciler.webhook")

AUDIT_EVENT = "webhook_decision"


def redact_headers(headers: Mapping[str, str] | None) -> dict:
    headers = headers or {}
    return {
        "authorization": "[REDACTED]" if headers.get("authorization") else None,
        "x-forwarded-for": headers.get("x-forwarded-for") or None,
        "user-agent": headers.get("user-agent") or None,
    }


def record_delivery(
    store: PaymentStore,
    provider: str,
    tx: CanonicalTransaction,
    *,
    headers: Mapping[str, str] | None,
    body: Any,
    now: datetime,
) -> None:
    """Receipt ledger write. Best-effort: a failure is logged and the pipeline continues."""
    try:
        inserted = store.record_webhook_event(
            provider,
            tx.provider_transaction_id,
            headers=redact_headers(headers),
            body=body,
            now=now,
        )
        if not inserted:
            log.info("Duplicate webhook delivery: provider=%s tx=%s", provider, tx.provider_transaction_id)
    except Exception as e:
        log.warning("Webhook event persist failed: provider=%s tx=%s error=%s", provider, tx.provider_transaction_id, e)
        store.rollback()


def _record_unmatched(store: PaymentStore, provider: str, tx: CanonicalTransaction, *, order_code: str | None, note: str, payload: Any, now: datetime) -> dict:
    store.upsert_transaction(
        provider,
        tx.provider_transaction_id,
        on_insert={"status": TX_UNMATCHED, "created_at": now},
        on_update={
            "updated_at": now,
            "order_code": order_code,
            "transfer_amount": tx.transfer_amount,
            "transfer_type": tx.transfer_type,
            "content": tx.content,
            "payload": payload,
            "note": note,
        },
    )
    store.log_decision(
        AUDIT_EVENT,
        provider=provider,
        provider_transaction_id=tx.provider_transaction_id,
        outcome=TX_UNMATCHED,
        reason=note,
        detail={"order_code": order_code},
    )
    log.info("Unmatched transfer: provider=%s tx=%s order_code=%s note=%s", provider, tx.provider_transaction_id, order_code, note)
    return {"success": True, "unmatched": True}


def apply_decision(
    store: PaymentStore,
    order: PaymentOrder,
    decision: Decision,
    tx: CanonicalTransaction,
    provider: str,
    settings: Settings,
    now: datetime,
) -> dict:
    """Turns a Decision into at most one conditional order write (two for membership fulfillment)."""
    order_id = order.id
    settlement = {
        "provider_transaction_id": tx.provider_transaction_id,
        "payment": tx.payment_snapshot(provider),
        "updated_at": now,
    }

    if decision.action == ACTION_KEEP:
        return {"success": True, "already_paid": True}

    if decision.action == ACTION_REVIEW:
        patch = {
            "status": ORDER_NEEDS_REVIEW,
            "review_reason": decision.review_reason,
            "review_meta": decision.review_meta,
            "updated_at": now,
        }
        if decision.review_reason != REASON_PROVIDER_MISMATCH:
            patch.update(settlement)
        if not store.update_order(order_id, patch):
            log.info("Review skipped, order already paid: order_id=%s", order_id)
            return {"success": True, "already_paid": True}
        return {"success": True, "needs_review": True, "reason": decision.review_reason}

    if decision.action == ACTION_MARK_PAID:
        written = store.update_order(
            order_id,
            {**settlement, "status": ORDER_PAID, "paid_at": order.paid_at or now},
        )
        if not written:
            return {"success": True, "already_paid": True}
        return {"success": True}

    if decision.action == ACTION_FULFILL:
        result = apply_membership(store, order, settings.membership_plans, now, source=provider, extra_patch=settlement)
        if result.status == ORDER_NEEDS_REVIEW:
            return {"success": True, "needs_review": True, "reason": result.reason}
        if not result.written:
            return {"success": True, "already_paid": True}
        return {"success": True}

    raise ValueError(f"Unknown reconciliation action: {decision.action}")


def process_webhook(
    store: PaymentStore,
    provider: str,
    body: Any,
    *,
    headers: Mapping[str, str] | None,
    settings: Settings,
    now: datetime,
) -> dict:
    tx = normalize_payload(body, fingerprint_missing_id=settings.webhook_fingerprint_missing_id)
    stored_payload = tx.raw if settings.webhook_store_raw_payload else None

    if not tx.provider_transaction_id:
        log.info("Webhook ignored, no transaction id: provider=%s", provider)
        return {"success": True, "ignored": True, "reason": "missing_transaction_id"}

    record_delivery(store, provider, tx, headers=headers, body=stored_payload, now=now)

    if tx.transfer_type != "in":
        return {"success": True, "ignored": True, "reason": "transfer_type_not_in"}

    order_code = resolve_order_code(tx.content, tx.description, tx.code, settings.order_code_pattern)
    if not order_code:
        return _record_unmatched(store, provider, tx, order_code=None, note="missing_order_code", payload=stored_payload, now=now)

    order = store.find_order_by_code(order_code)
    if order is None:
        return _record_unmatched(store, provider, tx, order_code=order_code, note="order_not_found", payload=stored_payload, now=now)

    order_id = order.id
    decision = decide(order, tx, provider, ReconcileConfig.from_settings(settings), now)

    if decision.transaction_status is not None:
        store.upsert_transaction(
            provider,
            tx.provider_transaction_id,
            on_insert={"created_at": now},
            on_update={
                "updated_at": now,
                "status": decision.transaction_status,
                "order_id": order_id,
                "order_code": order_code,
                "gateway": tx.gateway,
                "transaction_date": tx.transaction_date,
                "account_number": tx.account_number,
                "transfer_amount": tx.transfer_amount,
                "transfer_type": tx.transfer_type,
                "content": tx.content,
                "payload": stored_payload,
            },
        )

    response = apply_decision(store, order, decision, tx, provider, settings, now)
    store.log_decision(
        AUDIT_EVENT,
        provider=provider,
        provider_transaction_id=tx.provider_transaction_id,
        order_id=order_id,
        outcome=decision.action,
        reason=response.get("reason"),
        detail={
            "order_code": order_code,
            "transaction_status": decision.transaction_status,
            "response": response,
            "review_meta": decision.review_meta or None,
        },
    )
    log.info(
        "Webhook reconciled: provider=%s tx=%s order_id=%s action=%s tx_status=%s",
        provider, tx.provider_transaction_id, order_id, decision.action, decision.transaction_status,
    )
    return response
