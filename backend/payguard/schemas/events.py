"""Provider webhook payloads and the canonical event variants they map to.

Provider models only validate what the processor reads. Anything else in the
payload is kept verbatim in ``payload`` and ends up in the payment metadata.
"""
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError


def describe_validation_error(exc: PydanticValidationError, prefix: str = "") -> str:
    """First error as 'path.to.field: message'."""
    errors = exc.errors()
    if not errors:
        return "Validation failed"
    first = errors[0]
    path = ".".join(str(p) for p in (prefix.split(".") if prefix else []) + list(first.get("loc", ())))
    return f"{path}: {first.get('msg', 'invalid')}" if path else str(first.get("msg", "invalid"))


class PaymentSucceeded(BaseModel):
    kind: Literal["payment_success"] = "payment_success"
    event_type: str
    order_id: str
    provider_payment_id: Optional[str] = None
    payload: Dict[str, Any] = {}


class PaymentFailed(BaseModel):
    kind: Literal["payment_failed"] = "payment_failed"
    event_type: str
    order_id: str
    payload: Dict[str, Any] = {}


class UnknownEvent(BaseModel):
    kind: Literal["unknown"] = "unknown"
    event_type: str
    payload: Dict[str, Any] = {}


WebhookEvent = Annotated[Union[PaymentSucceeded, PaymentFailed, UnknownEvent], Field(discriminator="kind")]


# --- cashfree / sandbox: {type, data: {order: {order_id, cf_payment_id?}}} ---
class OrderRef(BaseModel):
    model_config = ConfigDict(extra="allow")

    order_id: str = Field(min_length=1)
    cf_payment_id: Optional[str] = None
    order_amount: Optional[float] = None
    order_currency: Optional[str] = None
    order_status: Optional[str] = None

    @field_validator("cf_payment_id", mode="before")
    @classmethod
    def _payment_id_as_str(cls, v: Any) -> Any:
        # cashfree sends numeric payment ids
        return str(v) if isinstance(v, int) else v


class OrderEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    order: OrderRef


class OrderEventEnvelope(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = Field(min_length=1)
    data: Dict[str, Any] = {}


# --- stripe: {id, type, data: {object: {id, latest_charge?}}} ---
class StripeObject(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    # a charge id, or the charge object when the event was expanded
    latest_charge: Optional[Union[str, Dict[str, Any]]] = None


class StripeEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: StripeObject


class StripeEventEnvelope(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    type: str = Field(min_length=1)
    data: Dict[str, Any] = {}
