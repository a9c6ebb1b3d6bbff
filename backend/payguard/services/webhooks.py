"""Inbound webhook processing.

received -> signature_checked -> rejected
                              -> parsed -> applied

The signature gate runs before anything reads the payload. A WebhookLog row is
committed on both branches of the gate, before any business write. Business
writes for one event share a single transaction; if they fail the provider gets
a 500 and redelivers.
"""
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..config import webhook_secret, webhook_tolerance_seconds
from ..errors import PaymentError, ReconciliationError, SecurityError, ValidationError
from ..models.payments import Payment
from ..schemas.events import PaymentFailed, PaymentSucceeded, UnknownEvent
from . import audit
from .gateway import GatewayRouter, ProviderAdapter
from .ledger import CreditLedger, SqlCreditLedger
from .signature import verify

logger = logging.getLogger("uvicorn.error")


@dataclass
class WebhookOutcome:
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def received(cls) -> "WebhookOutcome":
        return cls(200, {"received": True})

    @classmethod
    def from_error(cls, exc: PaymentError) -> "WebhookOutcome":
        return cls(exc.status_code, {"error": exc.public_message})


def merge_metadata(existing: Optional[Dict[str, Any]], event_type: str, payload: Dict[str, Any], received_at: str) -> Dict[str, Any]:
    """Append this delivery to the payment metadata; earlier entries are kept."""
    merged = dict(existing or {})
    history = list(merged.get("webhooks") or [])
    history.append({"event_type": event_type, "payload": payload, "received_at": received_at})
    merged["webhooks"] = history
    merged["webhook_received_at"] = received_at
    return merged


class WebhookProcessor:
    def __init__(
        self,
        db: Session,
        router: GatewayRouter,
        ledger: Optional[CreditLedger] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db = db
        self.router = router
        self.ledger = ledger if ledger is not None else SqlCreditLedger(db)
        self.clock = clock

    def process(self, provider: str, raw_body: bytes, headers: Mapping[str, str]) -> WebhookOutcome:
        headers = {k.lower(): v for k, v in headers.items()}
        logger.info("webhook received: provider=%s bytes=%s", provider, len(raw_body))

        try:
            adapter = self.router.adapter(provider)
            secret = webhook_secret(provider)
        except PaymentError as e:
            # no way to verify, so this delivery is recorded as a failed check
            logger.error("webhook for %s cannot be verified: %s", provider, e)
            audit.record_webhook(self.db, provider, headers, raw_body, None, "signature_failed")
            return WebhookOutcome.from_error(e)

        signature, timestamp = adapter.signature_headers(headers)
        if not verify(raw_body, signature, timestamp, secret, now=self.clock(), tolerance=webhook_tolerance_seconds()):
            audit.record_webhook(self.db, provider, headers, raw_body, signature, "signature_failed")
            logger.warning("webhook signature rejected: provider=%s", provider)
            return WebhookOutcome.from_error(SecurityError())

        try:
            audit.record_webhook(self.db, provider, headers, raw_body, signature, "verified")
            event = self._decode(adapter, raw_body)
        except ValidationError as e:
            logger.warning("webhook payload rejected: provider=%s reason=%s", provider, e)
            return WebhookOutcome.from_error(e)
        except Exception:
            self.db.rollback()
            logger.exception("webhook audit write failed: provider=%s", provider)
            return WebhookOutcome(500, {"error": "Webhook processing failed"})

        try:
            self._apply(provider, event)
        except PaymentError as e:
            self.db.rollback()
            logger.error("webhook %s for %s not applied: %s", event.event_type, provider, e)
            return WebhookOutcome.from_error(e)
        except Exception:
            self.db.rollback()
            logger.exception("webhook %s for %s failed", event.event_type, provider)
            return WebhookOutcome(500, {"error": "Webhook processing failed"})
        return WebhookOutcome.received()

    def _decode(self, adapter: ProviderAdapter, raw_body: bytes):
        try:
            payload = json.loads(raw_body)
        except ValueError:
            raise ValidationError("Invalid JSON payload")
        if not isinstance(payload, dict):
            raise ValidationError("Payload must be a JSON object")
        return adapter.parse_event(payload)

    def _received_at(self) -> str:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc).isoformat()

    def _transition(self, payment_id: str, values: Dict[Any, Any]) -> bool:
        """Conditional write; True only for the delivery that moved the row out of a non-paid state."""
        result = self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status != "paid")
            .values(values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _append_metadata(self, payment_id: str, meta: Dict[str, Any]) -> None:
        self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id)
            .values({Payment.meta: meta})
            .execution_options(synchronize_session=False)
        )

    def _apply(self, provider: str, event) -> None:
        if isinstance(event, UnknownEvent):
            logger.info("unhandled webhook event type %r from %s", event.event_type, provider)
            return

        payment = (
            self.db.query(Payment)
            .filter(Payment.provider == provider, Payment.provider_order_id == event.order_id)
            .one_or_none()
        )
        if payment is None:
            raise ReconciliationError(f"no {provider} payment with order id {event.order_id!r}")

        meta = merge_metadata(payment.meta, event.event_type, event.payload, self._received_at())

        if isinstance(event, PaymentSucceeded):
            values = {Payment.status: "paid", Payment.meta: meta}
            if event.provider_payment_id:
                values[Payment.provider_payment_id] = event.provider_payment_id
            if self._transition(payment.id, values):
                if payment.credits and payment.credits > 0:
                    self.ledger.add_credits(payment.user_id, payment.credits, related_payment_id=payment.id)
                    logger.info("granted %s credits to user=%s for payment %s", payment.credits, payment.user_id, payment.id)
            else:
                logger.info("payment %s already paid; redelivery of %s recorded only", payment.id, event.order_id)
                self._append_metadata(payment.id, meta)
        elif isinstance(event, PaymentFailed):
            if not self._transition(payment.id, {Payment.status: "failed", Payment.meta: meta}):
                logger.warning("failure event for already paid payment %s; status kept", payment.id)
                self._append_metadata(payment.id, meta)
            else:
                logger.info("payment %s marked failed", payment.id)
        self.db.commit()
