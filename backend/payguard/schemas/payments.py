from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator


class AuthenticatedUser(BaseModel):
    """Caller identity as handed over by the auth layer in front of this service."""
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None


class CreatePaymentRequest(BaseModel):
    provider: str
    plan_id: str = Field(min_length=1, validation_alias=AliasChoices("plan_id", "planId"))
    amount: float = Field(gt=0)
    currency: str
    payment_method: Optional[str] = Field(default=None, validation_alias=AliasChoices("payment_method", "paymentMethod"))

    @field_validator("provider")
    @classmethod
    def _normalize_provider(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("currency")
    @classmethod
    def _check_currency(cls, v: str) -> str:
        v = v.strip().upper()
        if len(v) != 3:
            raise ValueError("Currency must be 3 characters")
        return v


class CreatePaymentResponse(BaseModel):
    success: bool = True
    order_id: str
    provider: str
    checkout_url: Optional[str] = None
    session_token: Optional[str] = None
    payment_intent: Dict[str, Any] = {}


class PaymentStatusResponse(BaseModel):
    order_id: str
    provider: str
    user_id: str
    plan_id: Optional[str] = None
    amount: float
    currency: str
    credits: int
    status: str
    provider_payment_id: Optional[str] = None
    created_at: Optional[datetime] = None


class CreditBalanceResponse(BaseModel):
    user_id: str
    credits: int


class FailedPaymentsResponse(BaseModel):
    failed_payments: int
    payments: List[PaymentStatusResponse]


class WebhookLogEntry(BaseModel):
    id: str
    provider: str
    status: str
    signature: str
    raw_headers: Dict[str, Any] = {}
    payload: Optional[str] = None
    created_at: Optional[datetime] = None
