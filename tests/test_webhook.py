"""POST /payments/{provider}/webhook end to end: reconciliation outcomes, idempotency, fulfillment."""
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, select

from reconciler.core.clock import as_utc, utcnow
from reconciler.core.config import settings
from reconciler.core.database import engine
from reconciler.main import app
from reconciler.models import (
    ErrorLog,
    PaymentAuditLog,
    PaymentOrder,
    PaymentTransaction,
    User,
    WebhookEvent,
)
from reconciler.services.store import PaymentStore


def _all(model) -> list:
    with Session(engine) as session:
        rows = list(session.exec(select(model)).all())
        for row in rows:
            session.expunge(row)
        return rows


@pytest.fixture
def member(make_user):
    return make_user()


@pytest.fixture
def membership_order(make_order, member):
    return make_order(type="membership", plan_id="pro_month", user_id=member.id)


def test_membership_purchase_is_fulfilled(post_webhook, sepay_payload, membership_order, member, fetch):
    before = utcnow()
    r = post_webhook(sepay_payload())
    after = utcnow()
    assert r.status_code == 200
    assert r.json() == {"success": True}

    order = fetch(PaymentOrder, membership_order.id)
    assert order.status == "paid"
    assert order.provider_transaction_id == "92704"
    assert order.payment["gateway"] == "Vietcombank"
    assert order.payment["transfer_amount"] == 99000
    assert order.fulfillment["type"] == "membership"
    assert order.fulfillment["user_id"] == member.id

    user = fetch(User, member.id)
    assert user.membership_tier == "pro"
    assert user.membership_order_id == membership_order.id
    assert user.membership_source == "sepay"
    assert before + timedelta(days=30) <= as_utc(user.membership_expires_at) <= after + timedelta(days=30)

    [tx] = _all(PaymentTransaction)
    assert tx.id == "sepay:tx:92704"
    assert tx.status == "received"
    assert tx.order_id == membership_order.id
    assert tx.order_code == "ABC123"

    [audit] = _all(PaymentAuditLog)
    assert audit.event == "webhook_decision"
    assert audit.outcome == "fulfill_membership"


def test_duplicate_delivery_extends_membership_once(post_webhook, sepay_payload, membership_order, member, fetch):
    assert post_webhook(sepay_payload()).json() == {"success": True}
    expires_after_first = fetch(User, member.id).membership_expires_at

    r = post_webhook(sepay_payload())
    assert r.status_code == 200
    assert r.json() == {"success": True, "already_paid": True}
    assert fetch(User, member.id).membership_expires_at == expires_after_first
    assert len(_all(WebhookEvent)) == 1
    assert len(_all(PaymentTransaction)) == 1


def test_purchase_stacks_on_active_membership(post_webhook, sepay_payload, make_user, make_order, fetch):
    current_expiry = utcnow() + timedelta(days=10)
    user = make_user(membership_tier="pro", membership_expires_at=current_expiry)
    make_order(type="membership", plan_id="pro_month", user_id=user.id)
    assert post_webhook(sepay_payload()).json() == {"success": True}
    row = fetch(User, user.id)
    assert row.membership_tier == "pro"
    assert as_utc(row.membership_expires_at) == current_expiry + timedelta(days=30)


def test_membership_already_applied_before_crash_is_not_reapplied(post_webhook, sepay_payload, make_user, make_order, fetch):
    current_expiry = utcnow() + timedelta(days=30)
    user = make_user(membership_tier="pro", membership_expires_at=current_expiry)
    order = make_order(type="membership", plan_id="pro_month", user_id=user.id)
    with Session(engine) as session:
        row = session.get(User, user.id)
        row.membership_order_id = order.id
        session.add(row)
        session.commit()

    assert post_webhook(sepay_payload()).json() == {"success": True}
    assert fetch(PaymentOrder, order.id).status == "paid"
    assert fetch(PaymentOrder, order.id).fulfillment["user_id"] == user.id
    assert as_utc(fetch(User, user.id).membership_expires_at) == current_expiry


def test_one_off_order_marked_paid(post_webhook, sepay_payload, make_order, fetch):
    order = make_order()
    assert post_webhook(sepay_payload()).json() == {"success": True}
    row = fetch(PaymentOrder, order.id)
    assert row.status == "paid"
    assert row.paid_at is not None
    assert row.fulfillment is None


def test_underpayment_needs_review(post_webhook, sepay_payload, membership_order, member, fetch):
    r = post_webhook(sepay_payload(transferAmount=50000))
    assert r.status_code == 200
    assert r.json() == {"success": True, "needs_review": True, "reason": "amount_mismatch"}

    order = fetch(PaymentOrder, membership_order.id)
    assert order.status == "needs_review"
    assert order.review_reason == "amount_mismatch"
    assert order.review_meta == {"expected_amount": 99000, "actual_amount": 50000, "tolerance": 0}
    assert order.provider_transaction_id == "92704"
    assert fetch(User, member.id).membership_tier == "free"
    [tx] = _all(PaymentTransaction)
    assert tx.status == "amount_mismatch"


def test_review_order_settles_on_later_correct_transfer(post_webhook, sepay_payload, membership_order, fetch):
    post_webhook(sepay_payload(transferAmount=50000))
    r = post_webhook(sepay_payload(id=92705, transferAmount=99000))
    assert r.json() == {"success": True}
    assert fetch(PaymentOrder, membership_order.id).status == "paid"


def test_paid_order_is_never_downgraded(post_webhook, sepay_payload, make_order, fetch):
    order = make_order()
    post_webhook(sepay_payload())
    paid_at = fetch(PaymentOrder, order.id).paid_at

    r = post_webhook(sepay_payload(id=92799, transferAmount=50000))
    assert r.json() == {"success": True, "already_paid": True}
    row = fetch(PaymentOrder, order.id)
    assert row.status == "paid"
    assert row.review_reason is None
    assert row.paid_at == paid_at
    assert row.provider_transaction_id == "92704"
    assert fetch(PaymentTransaction, "sepay:tx:92799").status == "amount_mismatch"


def test_amount_tolerance(post_webhook, sepay_payload, make_order, fetch, monkeypatch):
    monkeypatch.setattr(settings, "payment_amount_tolerance_vnd", 1000)
    inside = make_order(order_code="ABC123")
    outside = make_order(order_code="XYZ789")
    assert post_webhook(sepay_payload(id=1, transferAmount=98000)).json() == {"success": True}
    r = post_webhook(sepay_payload(id=2, transferAmount=97999, content="CK XYZ789"))
    assert r.json()["reason"] == "amount_mismatch"
    assert fetch(PaymentOrder, inside.id).status == "paid"
    assert fetch(PaymentOrder, outside.id).status == "needs_review"


def test_account_mismatch(post_webhook, sepay_payload, make_order, fetch):
    order = make_order()
    r = post_webhook(sepay_payload(accountNumber="999888777"))
    assert r.json() == {"success": True, "needs_review": True, "reason": "account_mismatch"}
    assert fetch(PaymentOrder, order.id).review_meta == {"expected_account": "0123456789", "received_account": "999888777"}
    assert fetch(PaymentTransaction, "sepay:tx:92704").status == "account_mismatch"


def test_expired_order(post_webhook, sepay_payload, make_order, fetch):
    order = make_order(expires_at=utcnow() - timedelta(minutes=1))
    r = post_webhook(sepay_payload())
    assert r.json() == {"success": True, "needs_review": True, "reason": "expired"}
    assert fetch(PaymentOrder, order.id).status == "needs_review"
    assert fetch(PaymentTransaction, "sepay:tx:92704").status == "received_late"


def test_provider_mismatch(post_webhook, sepay_payload, make_order, fetch):
    order = make_order(provider="vietqr")
    r = post_webhook(sepay_payload())
    assert r.json() == {"success": True, "needs_review": True, "reason": "provider_mismatch"}
    row = fetch(PaymentOrder, order.id)
    assert row.review_meta == {"expected_provider": "sepay", "actual_provider": "vietqr"}
    assert row.payment is None
    assert _all(PaymentTransaction) == []


def test_invalid_plan(post_webhook, sepay_payload, make_order, member, fetch):
    order = make_order(type="membership", plan_id="gold_month", user_id=member.id)
    r = post_webhook(sepay_payload())
    assert r.json() == {"success": True, "needs_review": True, "reason": "invalid_plan"}
    assert fetch(PaymentOrder, order.id).review_reason == "invalid_plan"
    assert fetch(User, member.id).membership_tier == "free"


def test_user_not_found(post_webhook, sepay_payload, make_order, fetch):
    order = make_order(type="membership", plan_id="pro_month", user_id=9999)
    r = post_webhook(sepay_payload())
    assert r.json() == {"success": True, "needs_review": True, "reason": "user_not_found"}
    assert fetch(PaymentOrder, order.id).review_meta == {"user_id": 9999}


def test_transfer_without_order_code_is_unmatched(post_webhook, sepay_payload):
    r = post_webhook(sepay_payload(content="chuyen tien"))
    assert r.status_code == 200
    assert r.json() == {"success": True, "unmatched": True}
    [tx] = _all(PaymentTransaction)
    assert tx.status == "unmatched"
    assert tx.note == "missing_order_code"
    assert tx.order_code is None


def test_unknown_order_code_is_unmatched(post_webhook, sepay_payload):
    r = post_webhook(sepay_payload(content="CK ZZZ999"))
    assert r.json() == {"success": True, "unmatched": True}
    [tx] = _all(PaymentTransaction)
    assert tx.note == "order_not_found"
    assert tx.order_code == "ZZZ999"


def test_missing_transaction_id_is_ignored(post_webhook, sepay_payload, make_order, fetch):
    order = make_order()
    r = post_webhook(sepay_payload(id=None, referenceCode=None))
    assert r.status_code == 200
    assert r.json() == {"success": True, "ignored": True, "reason": "missing_transaction_id"}
    assert _all(WebhookEvent) == []
    assert fetch(PaymentOrder, order.id).status == "pending"


def test_missing_transaction_id_fingerprinted_when_enabled(post_webhook, sepay_payload, make_order, fetch, monkeypatch):
    monkeypatch.setattr(settings, "webhook_fingerprint_missing_id", True)
    order = make_order()
    assert post_webhook(sepay_payload(id=None, referenceCode=None)).json() == {"success": True}
    assert fetch(PaymentOrder, order.id).status == "paid"
    [event] = _all(WebhookEvent)
    assert len(event.provider_event_id) == 32


def test_outgoing_transfer_is_ignored(post_webhook, sepay_payload, make_order, fetch):
    order = make_order()
    r = post_webhook(sepay_payload(transferType="out"))
    assert r.json() == {"success": True, "ignored": True, "reason": "transfer_type_not_in"}
    assert len(_all(WebhookEvent)) == 1
    assert fetch(PaymentOrder, order.id).status == "pending"


def test_form_encoded_delivery(client, make_order, fetch):
    order = make_order()
    r = client.post(
        "/payments/sepay/webhook",
        data={"id": "555", "transferType": "in", "transferAmount": "99000", "content": "CK ABC123", "accountNumber": "0123456789"},
        headers={"Authorization": "Apikey test-key-current", "X-Forwarded-For": "203.0.113.5"},
    )
    assert r.json() == {"success": True}
    assert fetch(PaymentOrder, order.id).provider_transaction_id == "555"


def test_ledger_redacts_api_key(post_webhook, sepay_payload):
    post_webhook(sepay_payload())
    [event] = _all(WebhookEvent)
    assert event.id == "sepay:webhook:92704"
    assert event.headers["authorization"] == "[REDACTED]"
    assert "test-key-current" not in str(event.headers)


def test_raw_payload_not_stored_when_disabled(post_webhook, sepay_payload, monkeypatch):
    monkeypatch.setattr(settings, "webhook_store_raw_payload", False)
    post_webhook(sepay_payload(content="CK ZZZ999"))
    [tx] = _all(PaymentTransaction)
    assert tx.payload is None
    assert _all(WebhookEvent)[0].body is None


def test_ledger_failure_does_not_block_reconciliation(post_webhook, sepay_payload, make_order, fetch, monkeypatch):
    def broken(self, *args, **kwargs):
        raise RuntimeError("ledger unavailable")

    monkeypatch.setattr(PaymentStore, "record_webhook_event", broken)
    order = make_order()
    assert post_webhook(sepay_payload()).json() == {"success": True}
    assert fetch(PaymentOrder, order.id).status == "paid"


def test_unexpected_error_returns_500(sepay_payload, make_order, monkeypatch):
    def broken(self, code):
        raise RuntimeError("database went away")

    monkeypatch.setattr(PaymentStore, "find_order_by_code", broken)
    make_order()
    with TestClient(app, raise_server_exceptions=False) as c:
        r = c.post(
            "/payments/sepay/webhook",
            json=sepay_payload(),
            headers={"Authorization": "Apikey test-key-current", "X-Forwarded-For": "203.0.113.5"},
        )
    assert r.status_code == 500
    assert r.json() == {"error": "Unexpected server error"}
    [error] = _all(ErrorLog)
    assert error.endpoint == "/payments/sepay/webhook"
    assert "database went away" in error.error_message


@pytest.mark.parametrize("amount", ["99999999999999999999", "9" * 5000, 10**20])
def test_oversized_amount_goes_to_review(post_webhook, sepay_payload, make_order, fetch, amount):
    order = make_order()
    r = post_webhook(sepay_payload(transferAmount=amount))
    assert r.status_code == 200
    assert r.json() == {"success": True, "needs_review": True, "reason": "amount_mismatch"}
    assert fetch(PaymentOrder, order.id).review_meta["actual_amount"] == 0
    assert fetch(PaymentTransaction, "sepay:tx:92704").transfer_amount == 0


def test_large_amount_fits_amount_columns(post_webhook, sepay_payload, make_order, fetch):
    order = make_order(amount_vnd=5_000_000_000)
    assert post_webhook(sepay_payload(transferAmount=5_000_000_000)).json() == {"success": True}
    assert fetch(PaymentOrder, order.id).status == "paid"
    assert fetch(PaymentTransaction, "sepay:tx:92704").transfer_amount == 5_000_000_000
