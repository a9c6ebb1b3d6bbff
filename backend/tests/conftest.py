import os
import time
from datetime import timedelta

# must be set before payguard is imported: db.py and mongo.py read them at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["MONGO_ENABLED"] = "false"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from payguard.db import Base, get_db
from payguard.main import app
from payguard.models.payments import Payment, PaymentAttempt, utcnow
from payguard.routers.payments import get_gateway
from payguard.services.gateway import CashfreeAdapter, GatewayRouter, SandboxAdapter, StripeAdapter
from payguard.services.ledger import CreditLedger
from payguard.services.signature import compute_signature

SECRETS = {
    "sandbox": "whsec_sandbox_test",
    "cashfree": "whsec_cashfree_test",
    "stripe": "whsec_stripe_test",
}


@pytest.fixture(autouse=True)
def _payment_env(monkeypatch):
    for provider, secret in SECRETS.items():
        monkeypatch.setenv(f"{provider.upper()}_WEBHOOK_SECRET", secret)
    monkeypatch.setenv("PAYMENT_PROVIDERS", "sandbox,cashfree,stripe")
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setenv("CASHFREE_APP_ID", "cf_app_test")
    monkeypatch.setenv("CASHFREE_SECRET_KEY", "cf_secret_test")
    monkeypatch.delenv("CREDIT_PLANS", raising=False)
    monkeypatch.delenv("RISK_BLOCK_THRESHOLD", raising=False)
    monkeypatch.delenv("ADMIN_USER_IDS", raising=False)
    yield


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def gateway():
    return GatewayRouter([SandboxAdapter(), CashfreeAdapter(), StripeAdapter()])


@pytest.fixture
def client(session_factory, gateway):
    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


class RecordingLedger(CreditLedger):
    def __init__(self):
        self.calls = []

    def add_credits(self, user_id, amount, related_payment_id=None):
        self.calls.append((user_id, amount))


@pytest.fixture
def ledger():
    return RecordingLedger()


def signed_headers(provider, body: bytes, timestamp=None, secret=None):
    ts = str(int(time.time()) if timestamp is None else timestamp)
    sig = compute_signature(body, ts, secret or SECRETS[provider])
    if provider == "stripe":
        return {"Stripe-Signature": f"t={ts},v1={sig}", "Content-Type": "application/json"}
    if provider == "cashfree":
        return {"x-webhook-signature": sig, "x-webhook-timestamp": ts, "Content-Type": "application/json"}
    return {"X-Signature": sig, "X-Timestamp": ts, "Content-Type": "application/json"}


def make_payment(db, **overrides):
    data = dict(
        user_id="user_1",
        provider="sandbox",
        provider_order_id="sbx_order_1",
        plan_id="starter",
        amount=10.0,
        currency="USD",
        credits=100,
        status="pending",
        meta={"provider_response": {"order_id": "sbx_order_1"}},
    )
    data.update(overrides)
    p = Payment(**data)
    db.add(p)
    db.commit()
    db.refresh(p)
    return p


def make_attempt(db, ago=timedelta(minutes=5), **overrides):
    data = dict(
        user_id="user_1",
        ip_address="10.0.0.1",
        user_agent="pytest",
        amount=10.0,
        currency="USD",
        status="success",
        risk_score=0,
        created_at=utcnow() - ago,
    )
    data.update(overrides)
    a = PaymentAttempt(**data)
    db.add(a)
    db.commit()
    return a
