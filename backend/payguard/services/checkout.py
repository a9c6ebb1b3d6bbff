"""Outbound checkout: record the attempt, score it, then route it or block it.

Each step commits before the next one starts, so a crash or provider failure
part way through still leaves an auditable attempt row.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from ..config import credit_plans, risk_block_threshold
from ..errors import PaymentError, ValidationError
from ..models.payments import Payment, PaymentAttempt
from ..schemas.payments import AuthenticatedUser, CreatePaymentRequest
from . import audit, risk
from .gateway import GatewayRouter, ProviderIntent

logger = logging.getLogger("uvicorn.error")

BLOCKED_MESSAGE = "Payment blocked due to suspicious activity"


@dataclass
class CheckoutResult:
    attempt: PaymentAttempt
    risk_score: int
    blocked: bool = False
    payment: Optional[Payment] = None
    intent: Optional[ProviderIntent] = None


async def initiate_payment(
    db: Session,
    router: GatewayRouter,
    request: CreatePaymentRequest,
    user: AuthenticatedUser,
    ip_address: str,
    user_agent: Optional[str] = None,
    threshold: Optional[int] = None,
) -> CheckoutResult:
    plans = credit_plans()
    if request.plan_id not in plans:
        raise ValidationError(f"plan_id: unknown plan {request.plan_id!r}")
    # raises UnsupportedProvider before anything is recorded
    router.adapter(request.provider)

    attempt = audit.open_attempt(
        db,
        user_id=user.id,
        ip_address=ip_address,
        user_agent=user_agent,
        payment_method=request.payment_method,
        amount=request.amount,
        currency=request.currency,
    )

    assessment = risk.assess(db, user.id, ip_address, request.amount)
    limit = risk_block_threshold() if threshold is None else threshold
    if assessment.score > limit:
        audit.resolve_attempt(db, attempt, "blocked", assessment.score)
        logger.warning("payment attempt %s blocked for user=%s (score=%s)", attempt.id, user.id, assessment.score)
        return CheckoutResult(attempt=attempt, risk_score=assessment.score, blocked=True)

    try:
        intent = await router.create_payment(request.provider, request.plan_id, request.amount, request.currency, user)
    except PaymentError:
        audit.resolve_attempt(db, attempt, "failed", assessment.score)
        raise

    payment = Payment(
        user_id=user.id,
        provider=intent.provider,
        provider_order_id=intent.order_id,
        plan_id=request.plan_id,
        amount=request.amount,
        currency=request.currency,
        credits=plans[request.plan_id],
        status="pending",
        meta={
            "attempt_id": attempt.id,
            "payment_method": request.payment_method,
            "provider_response": intent.raw,
        },
    )
    try:
        db.add(payment)
        db.commit()
        db.refresh(payment)
    except Exception:
        db.rollback()
        # the provider already has this order; keep its id in the log for reconciliation
        logger.exception("failed to store payment for %s order %s", intent.provider, intent.order_id)
        audit.resolve_attempt(db, attempt, "failed", assessment.score)
        raise

    audit.resolve_attempt(db, attempt, "success", assessment.score)
    logger.info("payment %s created: provider=%s order=%s user=%s", payment.id, intent.provider, intent.order_id, user.id)
    return CheckoutResult(attempt=attempt, risk_score=assessment.score, payment=payment, intent=intent)
