from sqlalchemy import Column, String, Float, Integer, DateTime, Text, JSON, UniqueConstraint
from ..db import Base
from uuid import uuid4
from datetime import datetime, timezone


def utcnow() -> datetime:
    # stored naive, always UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PaymentAttempt(Base):
    __tablename__ = "payment_attempts"

    id = Column(String, primary_key=True, index=True, default=lambda: str(uuid4()))
    user_id = Column(String, nullable=False, index=True)
    ip_address = Column(String, nullable=False, default="unknown")
    user_agent = Column(String, nullable=True)
    payment_method = Column(String, nullable=True)
    amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String, nullable=False, default="initiated")  # initiated, success, blocked, failed
    risk_score = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, index=True)


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (UniqueConstraint("provider", "provider_order_id", name="uq_payments_provider_order"),)

    id = Column(String, primary_key=True, index=True, default=lambda: str(uuid4()))
    user_id = Column(String, nullable=False, index=True)
    provider = Column(String, nullable=False)
    provider_order_id = Column(String, nullable=False, index=True)
    provider_payment_id = Column(String, nullable=True)
    plan_id = Column(String, nullable=True)
    amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False)
    credits = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="pending")  # pending, paid, failed
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=utcnow, index=True)


class WebhookLog(Base):
    __tablename__ = "webhook_logs"

    id = Column(String, primary_key=True, index=True, default=lambda: str(uuid4()))
    provider = Column(String, nullable=False, index=True)
    raw_headers = Column(JSON, nullable=False, default=dict)
    payload = Column(Text, nullable=True)
    signature = Column(String, nullable=False, default="")
    status = Column(String, nullable=False)  # verified, signature_failed
    created_at = Column(DateTime, default=utcnow, index=True)


class CreditBalance(Base):
    __tablename__ = "credit_balances"

    user_id = Column(String, primary_key=True, index=True)
    credits = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class CreditLedgerEntry(Base):
    __tablename__ = "credit_ledger"

    id = Column(String, primary_key=True, index=True, default=lambda: str(uuid4()))
    user_id = Column(String, nullable=False, index=True)
    change = Column(Integer, nullable=False)
    reason = Column(String, nullable=True)
    related_payment_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
