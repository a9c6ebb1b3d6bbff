"""Provider adapters and the router that dispatches to them.

An adapter translates a local "create payment" request into its provider's
wire format and returns the provider's answer. It also knows the provider's
webhook dialect: where the signature and timestamp live and how the event JSON
maps onto the canonical event variants. Risk checks, persistence and
idempotency belong to the callers.
"""
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from uuid import uuid4

import httpx
from pydantic import ValidationError as PydanticValidationError

from ..config import enabled_providers, get_server_secret, provider_timeout_seconds, require_secret
from ..errors import ProviderError, UnsupportedProvider, ValidationError
from ..schemas.events import (
    OrderEventData,
    OrderEventEnvelope,
    PaymentFailed,
    PaymentSucceeded,
    StripeEventData,
    StripeEventEnvelope,
    UnknownEvent,
    WebhookEvent,
    describe_validation_error,
)
from ..schemas.payments import AuthenticatedUser

logger = logging.getLogger("uvicorn.error")


@dataclass
class ProviderIntent:
    provider: str
    order_id: str
    checkout_url: Optional[str] = None
    session_token: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class ProviderAdapter:
    name: str = ""
    signature_header: str = "x-signature"
    timestamp_header: str = "x-timestamp"

    def __init__(self, timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.timeout = timeout if timeout is not None else provider_timeout_seconds()
        self.transport = transport

    async def create_intent(
        self, plan_id: str, amount: float, currency: str, user: AuthenticatedUser
    ) -> ProviderIntent:
        raise NotImplementedError

    def signature_headers(self, headers: Mapping[str, str]) -> Tuple[Optional[str], Optional[str]]:
        """Return (signature, timestamp) from lower-cased request headers."""
        return headers.get(self.signature_header), headers.get(self.timestamp_header)

    def parse_event(self, payload: Any) -> WebhookEvent:
        raise NotImplementedError

    async def _request(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                r = await client.request(method, url, **kwargs)
                r.raise_for_status()
                body = r.json()
        except httpx.TimeoutException as e:
            logger.warning("%s request timed out after %ss", self.name, self.timeout)
            raise ProviderError(self.name, "request timed out") from e
        except httpx.HTTPStatusError as e:
            text = e.response.text[:500]
            logger.warning("%s API error: status=%s body=%s", self.name, e.response.status_code, text)
            raise ProviderError(self.name, f"HTTP {e.response.status_code}: {text}") from e
        except httpx.HTTPError as e:
            logger.warning("%s request failed: %s", self.name, e)
            raise ProviderError(self.name, str(e)) from e
        except ValueError as e:
            raise ProviderError(self.name, "response was not JSON") from e
        if not isinstance(body, dict):
            raise ProviderError(self.name, "unexpected response shape")
        return body


def _parse_order_event(payload: Any, success_types: Iterable[str], failed_types: Iterable[str]) -> WebhookEvent:
    """Shared dialect for providers sending {type, data: {order: {...}}}."""
    try:
        envelope = OrderEventEnvelope.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(describe_validation_error(e))

    if envelope.type not in success_types and envelope.type not in failed_types:
        return UnknownEvent(event_type=envelope.type, payload=envelope.data)

    try:
        data = OrderEventData.model_validate(envelope.data)
    except PydanticValidationError as e:
        raise ValidationError(describe_validation_error(e, prefix="data"))

    if envelope.type in success_types:
        return PaymentSucceeded(
            event_type=envelope.type,
            order_id=data.order.order_id,
            provider_payment_id=data.order.cf_payment_id,
            payload=envelope.data,
        )
    return PaymentFailed(event_type=envelope.type, order_id=data.order.order_id, payload=envelope.data)


class StripeAdapter(ProviderAdapter):
    name = "stripe"
    signature_header = "stripe-signature"
    api_url = "https://api.stripe.com/v1/payment_intents"

    success_types = ("payment_intent.succeeded",)
    failed_types = ("payment_intent.payment_failed",)

    async def create_intent(self, plan_id, amount, currency, user):
        stripe_key = require_secret("STRIPE_SECRET_KEY")
        headers = {"Authorization": f"Bearer {stripe_key}"}
        # form-encoded, amounts in minor units
        params = {
            "amount": str(int(round(float(amount) * 100))),
            "currency": currency.lower(),
            "metadata[plan_id]": plan_id,
            "metadata[user_id]": user.id,
        }
        body = await self._request("POST", self.api_url, headers=headers, data=params)
        intent_id = body.get("id")
        if not intent_id:
            raise ProviderError(self.name, "payment intent id missing from response")
        return ProviderIntent(
            provider=self.name,
            order_id=intent_id,
            session_token=body.get("client_secret"),
            raw=body,
        )

    def signature_headers(self, headers):
        """Stripe-Signature: t=<unix>,v1=<hex>[,v0=...]; the first v1 is used."""
        raw = headers.get(self.signature_header)
        if not raw:
            return None, None
        timestamp = signature = None
        for part in raw.split(","):
            key, _, value = part.strip().partition("=")
            if key == "t" and timestamp is None:
                timestamp = value
            elif key == "v1" and signature is None:
                signature = value
        return signature, timestamp

    def parse_event(self, payload):
        try:
            envelope = StripeEventEnvelope.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(describe_validation_error(e))

        if envelope.type not in self.success_types and envelope.type not in self.failed_types:
            return UnknownEvent(event_type=envelope.type, payload=envelope.data)

        try:
            data = StripeEventData.model_validate(envelope.data)
        except PydanticValidationError as e:
            raise ValidationError(describe_validation_error(e, prefix="data"))

        intent = data.object
        if envelope.type in self.failed_types:
            return PaymentFailed(event_type=envelope.type, order_id=intent.id, payload=envelope.data)

        charge = intent.latest_charge
        if isinstance(charge, dict):
            charge = charge.get("id")
        return PaymentSucceeded(
            event_type=envelope.type,
            order_id=intent.id,
            provider_payment_id=charge or intent.id,
            payload=envelope.data,
        )


class CashfreeAdapter(ProviderAdapter):
    name = "cashfree"
    signature_header = "x-webhook-signature"
    timestamp_header = "x-webhook-timestamp"
    api_version = "2023-08-01"

    success_types = ("PAYMENT_SUCCESS",)
    failed_types = ("PAYMENT_FAILED",)

    @staticmethod
    def base_url() -> str:
        env = str(get_server_secret("CASHFREE_ENVIRONMENT", "sandbox")).lower()
        return "https://api.cashfree.com/pg" if env == "production" else "https://sandbox.cashfree.com/pg"

    @staticmethod
    def new_order_id() -> str:
        return f"order_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"

    async def create_intent(self, plan_id, amount, currency, user):
        app_id = require_secret("CASHFREE_APP_ID")
        secret_key = require_secret("CASHFREE_SECRET_KEY")
        order_id = self.new_order_id()
        customer = {
            "customer_id": user.id,
            "customer_name": user.name or (user.email.split("@")[0] if user.email else user.id),
            "customer_email": user.email,
            "customer_phone": user.phone or "9999999999",
        }
        payload: Dict[str, Any] = {
            "order_id": order_id,
            "order_amount": round(float(amount), 2),
            "order_currency": currency,
            "customer_details": customer,
            "order_note": f"Payment for plan: {plan_id}",
        }
        order_meta = {
            k: v
            for k, v in (
                ("return_url", get_server_secret("CASHFREE_RETURN_URL")),
                ("notify_url", get_server_secret("CASHFREE_NOTIFY_URL")),
            )
            if v
        }
        if order_meta:
            payload["order_meta"] = order_meta

        headers = {
            "x-api-version": self.api_version,
            "x-client-id": app_id,
            "x-client-secret": secret_key,
        }
        body = await self._request("POST", f"{self.base_url()}/orders", headers=headers, json=payload)
        return ProviderIntent(
            provider=self.name,
            order_id=body.get("order_id") or order_id,
            checkout_url=body.get("payment_link"),
            session_token=body.get("payment_session_id") or body.get("order_token"),
            raw=body,
        )

    def parse_event(self, payload):
        return _parse_order_event(payload, self.success_types, self.failed_types)


class SandboxAdapter(ProviderAdapter):
    """Local provider for development: no network, cashfree-shaped webhooks."""
    name = "sandbox"

    success_types = ("PAYMENT_SUCCESS",)
    failed_types = ("PAYMENT_FAILED",)

    async def create_intent(self, plan_id, amount, currency, user):
        order_id = f"sbx_{uuid4().hex}"
        return ProviderIntent(
            provider=self.name,
            order_id=order_id,
            checkout_url=f"/payments/sandbox/checkout/{order_id}",
            raw={"order_id": order_id, "plan_id": plan_id, "amount": amount, "currency": currency},
        )

    def parse_event(self, payload):
        return _parse_order_event(payload, self.success_types, self.failed_types)


ADAPTERS = {cls.name: cls for cls in (StripeAdapter, CashfreeAdapter, SandboxAdapter)}


class GatewayRouter:
    """Dispatch table from provider id to adapter. Unknown ids are an error, never a default."""

    def __init__(self, adapters: Iterable[ProviderAdapter]) -> None:
        self._adapters: Dict[str, ProviderAdapter] = {a.name: a for a in adapters}

    @property
    def providers(self) -> List[str]:
        return sorted(self._adapters)

    def adapter(self, provider: str) -> ProviderAdapter:
        try:
            return self._adapters[provider]
        except KeyError:
            raise UnsupportedProvider(provider)

    async def create_payment(
        self, provider: str, plan_id: str, amount: float, currency: str, user: AuthenticatedUser
    ) -> ProviderIntent:
        return await self.adapter(provider).create_intent(plan_id, amount, currency, user)


def default_router(transport: Optional[httpx.AsyncBaseTransport] = None) -> GatewayRouter:
    adapters = []
    for provider in enabled_providers():
        cls = ADAPTERS.get(provider)
        if cls is None:
            logger.warning("PAYMENT_PROVIDERS lists unknown provider %r; ignoring", provider)
            continue
        adapters.append(cls(transport=transport))
    return GatewayRouter(adapters)
