"""Heuristic fraud-risk scoring for payment attempts.

Each signal owns a fixed point budget; the score is their sum clamped to
0..100. The scorer only reads history. Whether a score blocks a payment is
decided by the checkout flow.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.payments import Payment, PaymentAttempt, utcnow

logger = logging.getLogger("uvicorn.error")

VELOCITY_POINTS = 30
VELOCITY_WINDOW = timedelta(hours=1)
VELOCITY_MAX_FAILURES = 3

AMOUNT_ANOMALY_POINTS = 20
AMOUNT_ANOMALY_MULTIPLIER = 3

IP_FANOUT_POINTS = 25
IP_FANOUT_WINDOW = timedelta(hours=24)
IP_FANOUT_MAX_ADDRESSES = 5

MAX_SCORE = 100


@dataclass
class RiskAssessment:
    score: int
    signals: List[str] = field(default_factory=list)


def _recent_failures(db: Session, user_id: str, since: datetime) -> int:
    return (
        db.query(func.count(PaymentAttempt.id))
        .filter(
            PaymentAttempt.user_id == user_id,
            PaymentAttempt.status == "failed",
            PaymentAttempt.created_at >= since,
        )
        .scalar()
        or 0
    )


def _paid_amounts(db: Session, user_id: str) -> List[float]:
    rows = db.query(Payment.amount).filter(Payment.user_id == user_id, Payment.status == "paid").all()
    return [float(r[0]) for r in rows]


def _recent_ips(db: Session, user_id: str, since: datetime) -> set:
    rows = (
        db.query(PaymentAttempt.ip_address)
        .filter(PaymentAttempt.user_id == user_id, PaymentAttempt.created_at >= since)
        .distinct()
        .all()
    )
    return {r[0] for r in rows if r[0]}


def assess(db: Session, user_id: str, ip_address: str, amount: float, now: Optional[datetime] = None) -> RiskAssessment:
    now = now or utcnow()
    assessment = RiskAssessment(score=0)

    if _recent_failures(db, user_id, now - VELOCITY_WINDOW) > VELOCITY_MAX_FAILURES:
        assessment.score += VELOCITY_POINTS
        assessment.signals.append("velocity")

    # no completed history means no baseline, so a first purchase never trips this
    amounts = _paid_amounts(db, user_id)
    if amounts:
        mean = sum(amounts) / len(amounts)
        if float(amount) > AMOUNT_ANOMALY_MULTIPLIER * mean:
            assessment.score += AMOUNT_ANOMALY_POINTS
            assessment.signals.append("amount_anomaly")

    ips = _recent_ips(db, user_id, now - IP_FANOUT_WINDOW)
    if ip_address:
        ips.add(ip_address)
    if len(ips) > IP_FANOUT_MAX_ADDRESSES:
        assessment.score += IP_FANOUT_POINTS
        assessment.signals.append("ip_fanout")

    assessment.score = max(0, min(assessment.score, MAX_SCORE))
    if assessment.signals:
        logger.info("risk signals for user=%s: %s (score=%s)", user_id, ",".join(assessment.signals), assessment.score)
    return assessment


def score(db: Session, user_id: str, ip_address: str, amount: float, now: Optional[datetime] = None) -> int:
    return assess(db, user_id, ip_address, amount, now=now).score
