from datetime import timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..config import admin_user_ids
from ..db import get_db
from ..errors import AuthenticationError, NotFound, PermissionDenied
from ..models.payments import Payment, utcnow
from ..schemas.payments import (
    AuthenticatedUser,
    CreatePaymentRequest,
    CreatePaymentResponse,
    CreditBalanceResponse,
    FailedPaymentsResponse,
    PaymentStatusResponse,
    WebhookLogEntry,
)
from ..services import audit
from ..services.checkout import BLOCKED_MESSAGE, initiate_payment
from ..services.gateway import GatewayRouter, default_router
from ..services.ledger import get_balance
from ..services.webhooks import WebhookProcessor
import logging

router = APIRouter()
logger = logging.getLogger("uvicorn.error")


def get_gateway() -> GatewayRouter:
    return default_router()


def get_current_user(
    x_user_id: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
) -> AuthenticatedUser:
    # Identity is established by the auth layer in front of this service; it forwards the user in headers.
    if not x_user_id:
        raise AuthenticationError("missing caller identity")
    return AuthenticatedUser(id=x_user_id, email=x_user_email, name=x_user_name)


def require_operator(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
    """Webhook logs and cross-user reports carry other users' data; only ADMIN_USER_IDS may read them."""
    if user.id not in admin_user_ids():
        logger.warning("operator endpoint refused for user=%s", user.id)
        raise PermissionDenied(f"user {user.id} is not an operator")
    return user


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _status(p: Payment) -> PaymentStatusResponse:
    return PaymentStatusResponse(
        order_id=p.provider_order_id,
        provider=p.provider,
        user_id=p.user_id,
        plan_id=p.plan_id,
        amount=p.amount,
        currency=p.currency,
        credits=p.credits,
        status=p.status,
        provider_payment_id=p.provider_payment_id,
        created_at=p.created_at,
    )


@router.post("/create", response_model=CreatePaymentResponse)
async def create_payment(
    payload: CreatePaymentRequest,
    request: Request,
    db: Session = Depends(get_db),
    gateway: GatewayRouter = Depends(get_gateway),
    user: AuthenticatedUser = Depends(get_current_user),
):
    """Score the attempt and, unless it is blocked, create the payment intent with the chosen provider."""
    result = await initiate_payment(
        db,
        gateway,
        payload,
        user,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    if result.blocked:
        # never tell the caller which signal fired or what the score was
        return JSONResponse(status_code=403, content={"error": BLOCKED_MESSAGE})
    intent = result.intent
    return CreatePaymentResponse(
        order_id=intent.order_id,
        provider=intent.provider,
        checkout_url=intent.checkout_url,
        session_token=intent.session_token,
        payment_intent=intent.raw,
    )


@router.post("/webhook/{provider}")
async def payments_webhook(
    provider: str,
    request: Request,
    db: Session = Depends(get_db),
    gateway: GatewayRouter = Depends(get_gateway),
):
    # raw bytes: the signature covers the body exactly as sent
    body = await request.body()
    # processing is blocking SQL work, keep it off the event loop
    processor = WebhookProcessor(db, gateway)
    outcome = await run_in_threadpool(processor.process, provider.lower(), body, dict(request.headers))
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)


@router.get("/credits/{user_id}", response_model=CreditBalanceResponse)
async def get_credits(
    user_id: str,
    db: Session = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
):
    if user.id != user_id:
        raise NotFound("User not found")
    return CreditBalanceResponse(user_id=user_id, credits=get_balance(db, user_id))


@router.get("/failed", response_model=FailedPaymentsResponse)
async def list_failed_payments(
    days: int = Query(14, ge=1, le=90),
    db: Session = Depends(get_db),
    operator: AuthenticatedUser = Depends(require_operator),
):
    """Failed payments in the trailing window, newest first, for recovery follow-up."""
    since = utcnow() - timedelta(days=days)
    rows = (
        db.query(Payment)
        .filter(Payment.status == "failed", Payment.created_at >= since)
        .order_by(Payment.created_at.desc())
        .all()
    )
    return FailedPaymentsResponse(failed_payments=len(rows), payments=[_status(p) for p in rows])


@router.get("/webhooks/logs", response_model=List[WebhookLogEntry])
async def webhook_logs(
    provider: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
    operator: AuthenticatedUser = Depends(require_operator),
):
    rows = audit.list_webhook_logs(db, provider=provider, status=status, limit=limit)
    return [
        WebhookLogEntry(
            id=r.id,
            provider=r.provider,
            status=r.status,
            signature=r.signature,
            raw_headers=r.raw_headers or {},
            payload=r.payload,
            created_at=r.created_at,
        )
        for r in rows
    ]


@router.get("/sandbox/checkout/{order_id}")
async def sandbox_checkout(
    order_id: str,
    db: Session = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
):
    """Return the sandbox order so a local client can drive it; completion happens through a signed webhook."""
    p = (
        db.query(Payment)
        .filter(Payment.provider == "sandbox", Payment.provider_order_id == order_id, Payment.user_id == user.id)
        .one_or_none()
    )
    if not p:
        raise NotFound("Payment not found")
    return {
        "order_id": p.provider_order_id,
        "amount": p.amount,
        "currency": p.currency,
        "credits": p.credits,
        "webhook_url": "/payments/webhook/sandbox",
    }


@router.get("/{order_id}", response_model=PaymentStatusResponse)
async def get_payment(
    order_id: str,
    provider: Optional[str] = None,
    db: Session = Depends(get_db),
    user: AuthenticatedUser = Depends(get_current_user),
):
    # someone else's order looks the same as a missing one
    q = db.query(Payment).filter(Payment.provider_order_id == order_id, Payment.user_id == user.id)
    if provider:
        q = q.filter(Payment.provider == provider)
    p: Optional[Payment] = q.first()
    if not p:
        raise NotFound("Payment not found")
    return _status(p)
