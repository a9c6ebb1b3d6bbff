import asyncio
import json
from urllib.parse import parse_qs

import httpx
import pytest

from payguard.errors import ConfigurationError, ProviderError, UnsupportedProvider, ValidationError
from payguard.schemas.events import PaymentFailed, PaymentSucceeded, UnknownEvent
from payguard.schemas.payments import AuthenticatedUser
from payguard.services.gateway import (
    CashfreeAdapter,
    GatewayRouter,
    SandboxAdapter,
    StripeAdapter,
    default_router,
)

USER = AuthenticatedUser(id="user_1", email="ana@example.com", name="Ana")


def _run(coro):
    return asyncio.run(coro)


def test_unknown_provider_is_rejected_not_defaulted(gateway):
    with pytest.raises(UnsupportedProvider):
        _run(gateway.create_payment("paypal", "starter", 10, "USD", USER))


def test_router_dispatches_by_provider_id():
    calls = []

    class Fake(SandboxAdapter):
        name = "fake"

        async def create_intent(self, plan_id, amount, currency, user):
            calls.append((plan_id, amount, currency, user.id))
            return await super().create_intent(plan_id, amount, currency, user)

    router = GatewayRouter([SandboxAdapter(), Fake()])
    intent = _run(router.create_payment("fake", "pro", 25.0, "EUR", USER))
    assert calls == [("pro", 25.0, "EUR", "user_1")]
    assert router.providers == ["fake", "sandbox"]
    assert intent.order_id.startswith("sbx_")


def test_sandbox_intent_needs_no_network():
    intent = _run(SandboxAdapter().create_intent("starter", 10.0, "USD", USER))
    assert intent.provider == "sandbox"
    assert intent.checkout_url == f"/payments/sandbox/checkout/{intent.order_id}"


def test_stripe_adapter_sends_form_encoded_minor_units():
    seen = {}

    def handler(request: httpx.Request):
        seen["auth"] = request.headers["authorization"]
        seen["url"] = str(request.url)
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(200, json={"id": "pi_123", "client_secret": "pi_123_secret"})

    adapter = StripeAdapter(transport=httpx.MockTransport(handler))
    intent = _run(adapter.create_intent("pro", 10.5, "USD", USER))

    assert seen["auth"] == "Bearer sk_test_123"
    assert seen["url"] == "https://api.stripe.com/v1/payment_intents"
    assert seen["form"]["amount"] == ["1050"]
    assert seen["form"]["currency"] == ["usd"]
    assert seen["form"]["metadata[plan_id]"] == ["pro"]
    assert seen["form"]["metadata[user_id]"] == ["user_1"]
    assert intent.order_id == "pi_123"
    assert intent.session_token == "pi_123_secret"


def test_cashfree_adapter_builds_order_and_uses_sandbox_base():
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"order_id": seen["body"]["order_id"], "payment_session_id": "session_abc"})

    adapter = CashfreeAdapter(transport=httpx.MockTransport(handler))
    intent = _run(adapter.create_intent("starter", 99.999, "INR", USER))

    assert seen["url"] == "https://sandbox.cashfree.com/pg/orders"
    assert seen["headers"]["x-client-id"] == "cf_app_test"
    assert seen["headers"]["x-client-secret"] == "cf_secret_test"
    assert seen["headers"]["x-api-version"] == "2023-08-01"
    assert seen["body"]["order_amount"] == 100.0
    assert seen["body"]["customer_details"]["customer_email"] == "ana@example.com"
    assert seen["body"]["order_id"].startswith("order_")
    assert intent.order_id == seen["body"]["order_id"]
    assert intent.session_token == "session_abc"


def test_cashfree_production_base(monkeypatch):
    monkeypatch.setenv("CASHFREE_ENVIRONMENT", "production")
    assert CashfreeAdapter.base_url() == "https://api.cashfree.com/pg"


def test_provider_http_error_becomes_provider_error():
    adapter = StripeAdapter(transport=httpx.MockTransport(lambda r: httpx.Response(402, json={"error": "card"})))
    with pytest.raises(ProviderError) as exc:
        _run(adapter.create_intent("pro", 10, "USD", USER))
    assert exc.value.provider == "stripe"


def test_provider_timeout_becomes_provider_error():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    adapter = CashfreeAdapter(timeout=0.5, transport=httpx.MockTransport(handler))
    with pytest.raises(ProviderError) as exc:
        _run(adapter.create_intent("pro", 10, "INR", USER))
    assert "timed out" in str(exc.value)


def test_missing_credentials_are_a_configuration_error(monkeypatch):
    monkeypatch.delenv("STRIPE_SECRET_KEY")
    adapter = StripeAdapter(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"id": "pi"})))
    with pytest.raises(ConfigurationError):
        _run(adapter.create_intent("pro", 10, "USD", USER))


def test_default_router_only_exposes_enabled_providers(monkeypatch):
    monkeypatch.setenv("PAYMENT_PROVIDERS", "sandbox, cashfree, bogus")
    assert default_router().providers == ["cashfree", "sandbox"]


def test_cashfree_event_parsing():
    adapter = CashfreeAdapter()
    ok = adapter.parse_event({"type": "PAYMENT_SUCCESS", "data": {"order": {"order_id": "o1", "cf_payment_id": 998}}})
    assert isinstance(ok, PaymentSucceeded)
    assert ok.order_id == "o1"
    assert ok.provider_payment_id == "998"

    failed = adapter.parse_event({"type": "PAYMENT_FAILED", "data": {"order": {"order_id": "o1"}}})
    assert isinstance(failed, PaymentFailed)

    unknown = adapter.parse_event({"type": "SUBSCRIPTION_RENEWED", "data": {}})
    assert isinstance(unknown, UnknownEvent)


def test_cashfree_event_schema_errors():
    adapter = CashfreeAdapter()
    with pytest.raises(ValidationError) as exc:
        adapter.parse_event({"type": "PAYMENT_SUCCESS", "data": {}})
    assert str(exc.value).startswith("data.order")
    with pytest.raises(ValidationError):
        adapter.parse_event({"data": {"order": {"order_id": "o1"}}})


def test_stripe_signature_header_parsing():
    adapter = StripeAdapter()
    assert adapter.signature_headers({"stripe-signature": "t=123,v1=abc,v0=zzz"}) == ("abc", "123")
    assert adapter.signature_headers({}) == (None, None)
    assert adapter.signature_headers({"stripe-signature": "garbage"}) == (None, None)


def test_stripe_event_parsing():
    adapter = StripeAdapter()
    ok = adapter.parse_event(
        {"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1", "latest_charge": "ch_1"}}}
    )
    assert isinstance(ok, PaymentSucceeded)
    assert (ok.order_id, ok.provider_payment_id) == ("pi_1", "ch_1")

    expanded = adapter.parse_event(
        {"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_2", "latest_charge": {"id": "ch_2"}}}}
    )
    assert expanded.provider_payment_id == "ch_2"

    assert isinstance(
        adapter.parse_event({"type": "payment_intent.payment_failed", "data": {"object": {"id": "pi_1"}}}),
        PaymentFailed,
    )
    assert isinstance(adapter.parse_event({"type": "charge.refunded", "data": {}}), UnknownEvent)
