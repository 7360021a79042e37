"""Pytest fixtures: test client, in-memory SQLite, order/user factories, webhook poster."""
import itertools
import os
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

# Must be set before the app (and its Settings) is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("WEBHOOK_API_KEYS", "test-key-current,test-key-previous")
os.environ.setdefault("FORWARDED_ALLOW_IPS", "*")
os.environ.setdefault("PAYMENT_ACCOUNT_NUMBER", "0123456789")
os.environ.setdefault("ADMIN_SECRET", "admin-test-secret")
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "1000")

from sqlmodel import Session, SQLModel  # noqa: E402

from reconciler.core.clock import utcnow  # noqa: E402
from reconciler.core.database import engine  # noqa: E402
from reconciler.core.rate_limit import limiter  # noqa: E402
from reconciler.main import app  # noqa: E402
from reconciler.models import PaymentOrder, PaymentOrderCode, User  # noqa: E402

API_KEY = "test-key-current"
CLIENT_IP = "203.0.113.5"

_emails = itertools.count(1)


@pytest.fixture(autouse=True)
def fresh_db():
    """Every test starts from empty tables and an empty rate-limit window."""
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    limiter.reset()
    yield


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    with Session(engine) as session:
        yield session


@pytest.fixture
def make_user():
    def _make(**overrides) -> User:
        values = {"email": f"user{next(_emails)}@example.com", "full_name": "Test User"}
        values.update(overrides)
        with Session(engine) as session:
            user = User(**values)
            session.add(user)
            session.commit()
            session.refresh(user)
            return user

    return _make


@pytest.fixture
def make_order():
    def _make(index: bool = True, **overrides) -> PaymentOrder:
        values = {
            "order_code": "ABC123",
            "provider": "sepay",
            "amount_vnd": 99000,
            "type": "one_off",
            "expires_at": utcnow() + timedelta(hours=1),
        }
        values.update(overrides)
        with Session(engine) as session:
            order = PaymentOrder(**values)
            session.add(order)
            session.commit()
            session.refresh(order)
            if index:
                session.add(PaymentOrderCode(code=order.order_code, order_id=order.id))
                session.commit()
                session.refresh(order)
            return order

    return _make


@pytest.fixture
def fetch():
    """Fresh read of one row, bypassing any session cache."""
    def _fetch(model, key):
        with Session(engine) as session:
            row = session.get(model, key)
            if row is not None:
                session.expunge(row)
            return row

    return _fetch


@pytest.fixture
def sepay_payload():
    """SePay-shaped transfer notification for order ABC123, overridable per field."""
    def _payload(**overrides) -> dict:
        payload = {
            "id": 92704,
            "gateway": "Vietcombank",
            "transactionDate": "2024-07-02 11:20:00",
            "accountNumber": "0123456789",
            "code": None,
            "content": "CK ABC123 thanh toan",
            "transferType": "in",
            "transferAmount": 99000,
            "accumulated": 19077000,
            "subAccount": None,
            "referenceCode": "MBVCB.3278907687",
            "description": "",
        }
        payload.update(overrides)
        return payload

    return _payload


@pytest.fixture
def post_webhook(client):
    def _post(payload, provider: str = "sepay", key: str | None = API_KEY, ip: str = CLIENT_IP, headers: dict | None = None):
        h = {"X-Forwarded-For": ip}
        if key is not None:
            h["Authorization"] = f"Apikey {key}"
        h.update(headers or {})
        return client.post(f"/payments/{provider}/webhook", json=payload, headers=h)

    return _post
