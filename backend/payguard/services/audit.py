"""Append-only audit records: inbound webhooks and outbound payment attempts.

Every write here commits on its own so the record survives whatever happens
later in the request.
"""
import logging
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from ..models.payments import PaymentAttempt, WebhookLog

logger = logging.getLogger("uvicorn.error")

REDACTED_HEADERS = {"authorization", "cookie", "x-client-secret", "x-api-key"}


def redact_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {k: ("[redacted]" if k.lower() in REDACTED_HEADERS else v) for k, v in headers.items()}


def record_webhook(
    db: Session,
    provider: str,
    headers: Mapping[str, str],
    raw_body: bytes,
    signature: Optional[str],
    status: str,
) -> WebhookLog:
    entry = WebhookLog(
        provider=provider,
        raw_headers=redact_headers(headers),
        payload=raw_body.decode("utf-8", errors="replace"),
        signature=signature or "",
        status=status,
    )
    db.add(entry)
    db.commit()
    db.refresh(entry)
    logger.info("webhook logged: provider=%s status=%s id=%s", provider, status, entry.id)
    return entry


def list_webhook_logs(
    db: Session, provider: Optional[str] = None, status: Optional[str] = None, limit: int = 50
) -> List[WebhookLog]:
    q = db.query(WebhookLog)
    if provider:
        q = q.filter(WebhookLog.provider == provider)
    if status:
        q = q.filter(WebhookLog.status == status)
    return q.order_by(WebhookLog.created_at.desc()).limit(limit).all()


def open_attempt(
    db: Session,
    user_id: str,
    ip_address: str,
    user_agent: Optional[str],
    payment_method: Optional[str],
    amount: float,
    currency: str,
) -> PaymentAttempt:
    attempt = PaymentAttempt(
        user_id=user_id,
        ip_address=ip_address or "unknown",
        user_agent=user_agent,
        payment_method=payment_method,
        amount=amount,
        currency=currency,
        status="initiated",
        risk_score=0,
    )
    db.add(attempt)
    db.commit()
    db.refresh(attempt)
    return attempt


def resolve_attempt(db: Session, attempt: PaymentAttempt, status: str, risk_score: Any) -> PaymentAttempt:
    attempt.status = status
    attempt.risk_score = int(risk_score)
    db.add(attempt)
    db.commit()
    return attempt
