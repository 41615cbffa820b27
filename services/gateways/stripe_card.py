"""Stripe card adapter built on the official ``stripe`` SDK."""

from __future__ import annotations

import datetime
import json
import logging
from decimal import Decimal
from typing import Optional

import stripe

from errors import GatewayError, GatewayTransientError, SignatureError
from services.gateways.base import GatewayResult, GatewayAdapter, WebhookEvent
from utils import from_minor_units, to_minor_units

logger = logging.getLogger(__name__)

WEBHOOK_EVENT_TYPES = {
    "customer.subscription.created": "subscription.created",
    "customer.subscription.updated": "subscription.updated",
    "customer.subscription.deleted": "subscription.deleted",
    "invoice.paid": "invoice.paid",
    "invoice.payment_failed": "invoice.payment_failed",
    "payment_intent.succeeded": "payment.succeeded",
    "payment_intent.payment_failed": "payment.failed",
    "charge.refunded": "refund.processed",
}


def _timestamp(value) -> Optional[datetime.datetime]:
    if not value:
        return None
    return datetime.datetime.fromtimestamp(int(value), datetime.timezone.utc)


def _metadata(value) -> dict:
    return dict(value) if isinstance(value, dict) else {}


class StripeCardAdapter(GatewayAdapter):
    name = "stripe"

    def __init__(self, config):
        super().__init__(config)
        # Per-adapter transport; the SDK's module-level client is left alone
        self.http_client = stripe.RequestsClient(timeout=self.timeout)
        self._client: Optional[stripe.StripeClient] = None

    def is_configured(self) -> bool:
        return bool(self.config.enabled and self.config.secret_key)

    @property
    def client(self) -> stripe.StripeClient:
        if self._client is None:
            self._client = stripe.StripeClient(self.config.secret_key,
                                               http_client=self.http_client)
        return self._client

    def _call(self, func, *args, **kwargs):
        """Invoke an SDK call, mapping transport errors onto the billing taxonomy.

        Card declines propagate as ``stripe.CardError`` so callers can turn
        them into a declined result.
        """
        try:
            return func(*args, **kwargs)
        except stripe.CardError:
            raise
        except stripe.APIConnectionError as e:
            logger.error("Stripe connection error: %s", e)
            raise GatewayTransientError(f"Could not reach Stripe: {e}", timed_out=True)
        except stripe.RateLimitError as e:
            logger.warning("Stripe rate limit: %s", e)
            raise GatewayTransientError("Stripe rate limit exceeded", error_code="RATE_LIMIT")
        except stripe.APIError as e:
            logger.error("Stripe API error: %s", e)
            raise GatewayTransientError(f"Stripe API error: {e}", timed_out=True)
        except stripe.StripeError as e:
            logger.error("Stripe request failed: %s", e)
            raise GatewayError(f"Stripe request failed: {e.user_message or e}", error_code=e.code)

    @staticmethod
    def _declined(e: "stripe.CardError", **kwargs) -> GatewayResult:
        return GatewayResult.declined(
            e.user_message or "Card declined", e.code or "card_declined", **kwargs
        )

    @staticmethod
    def _from_intent(intent, currency: str) -> GatewayResult:
        if intent.status == "succeeded":
            return GatewayResult(
                success=True,
                gateway_reference=intent.id,
                order_id=intent.id,
                amount=from_minor_units(intent.amount_received or intent.amount, currency),
                currency=currency,
                raw={"id": intent.id, "status": intent.status},
            )
        if intent.status == "processing":
            raise GatewayTransientError(
                f"Payment {intent.id} is still processing", timed_out=True, error_code="PROCESSING"
            )
        error = intent.last_payment_error
        reason = (error.message if error else None) or f"Payment status {intent.status}"
        return GatewayResult.declined(
            reason,
            (error.code if error else None) or intent.status,
            gateway_reference=intent.id,
            order_id=intent.id,
            raw={"id": intent.id, "status": intent.status},
        )

    # -- orders -------------------------------------------------------------

    def create_order(self, amount, currency, *, receipt, metadata=None, return_url=None):
        intent = self._call(
            self.client.payment_intents.create,
            params={
                "amount": to_minor_units(amount, currency),
                "currency": currency.lower(),
                "automatic_payment_methods": {"enabled": True},
                "description": receipt,
                "metadata": {str(k): str(v) for k, v in (metadata or {}).items()},
            },
            options={"idempotency_key": f"order-{receipt}"},
        )
        return GatewayResult(
            success=True,
            order_id=intent.id,
            amount=Decimal(str(amount)),
            currency=currency,
            public_key=self.config.publishable_key,
            client_secret=intent.client_secret,
            raw={"id": intent.id, "status": intent.status},
        )

    def verify_or_capture(self, payload: dict) -> GatewayResult:
        intent_id = payload.get("orderId") or payload.get("paymentIntentId")
        if not intent_id:
            raise SignatureError("Missing Stripe payment intent id")
        intent = self._call(self.client.payment_intents.retrieve, intent_id)
        if intent.status == "requires_capture":
            intent = self._call(self.client.payment_intents.capture, intent_id)
        return self._from_intent(intent, intent.currency.upper())

    def charge_stored_method(self, method, amount, currency, *, idempotency_key,
                             description="", metadata=None):
        if not (method.stripe_customer_id and method.stripe_payment_method_id):
            return GatewayResult.declined("Payment method has no Stripe card", "NO_TOKEN")
        try:
            intent = self._call(
                self.client.payment_intents.create,
                params={
                    "amount": to_minor_units(amount, currency),
                    "currency": currency.lower(),
                    "customer": method.stripe_customer_id,
                    "payment_method": method.stripe_payment_method_id,
                    "off_session": True,
                    "confirm": True,
                    "description": description,
                    "metadata": {str(k): str(v) for k, v in (metadata or {}).items()},
                },
                options={"idempotency_key": idempotency_key},
            )
        except stripe.CardError as e:
            intent_id = getattr(getattr(e.error, "payment_intent", None), "id", None)
            return self._declined(e, gateway_reference=intent_id, order_id=intent_id)
        return self._from_intent(intent, currency)

    def refund(self, gateway_payment_id, amount, currency, *, reason=None):
        try:
            refund = self._call(
                self.client.refunds.create,
                params={
                    "payment_intent": gateway_payment_id,
                    "amount": to_minor_units(amount, currency),
                    "metadata": {"reason": reason or ""},
                },
            )
        except stripe.CardError as e:
            return self._declined(e)
        if refund.status in ("failed", "canceled"):
            return GatewayResult.declined(
                refund.failure_reason or "Refund failed", refund.status, gateway_reference=refund.id
            )
        return GatewayResult(
            success=True,
            gateway_reference=refund.id,
            amount=from_minor_units(refund.amount, currency),
            currency=currency,
        )

    def set_remote_cancel(self, stripe_subscription_id: str, *, immediate: bool,
                          undo: bool = False) -> None:
        """Mirror a local cancel (or its undo) onto a Stripe-managed subscription."""
        if immediate and not undo:
            self._call(self.client.subscriptions.cancel, stripe_subscription_id)
        else:
            self._call(
                self.client.subscriptions.update,
                stripe_subscription_id,
                params={"cancel_at_period_end": not undo},
            )
        logger.info("Stripe subscription %s updated (immediate=%s, undo=%s)",
                    stripe_subscription_id, immediate, undo)

    # -- webhooks -----------------------------------------------------------

    def parse_webhook(self, body: bytes, headers) -> WebhookEvent:
        if not self.config.webhook_secret:
            raise SignatureError("Stripe webhook secret not configured")
        sig_header = headers.get("Stripe-Signature", "")
        try:
            stripe.Webhook.construct_event(body, sig_header, self.config.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise SignatureError(f"Invalid Stripe signature: {e}", error_code="INVALID_SIGNATURE")
        except ValueError as e:
            raise SignatureError(f"Malformed Stripe payload: {e}")

        event = json.loads(body)
        source_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}
        parsed = WebhookEvent(
            gateway=self.name,
            event_id=event.get("id", ""),
            event_type=WEBHOOK_EVENT_TYPES.get(source_type),
            source_type=source_type,
            occurred_at=_timestamp(event.get("created")),
            customer_ref=obj.get("customer"),
            metadata=_metadata(obj.get("metadata")),
            raw=event,
        )
        currency = (obj.get("currency") or "usd").upper()
        parsed.currency = currency

        if source_type.startswith("customer.subscription."):
            item = ((obj.get("items") or {}).get("data") or [{}])[0]
            parsed.subscription_ref = obj.get("id")
            parsed.status = obj.get("status")
            parsed.cancel_at_period_end = bool(obj.get("cancel_at_period_end"))
            parsed.period_start = _timestamp(
                obj.get("current_period_start") or item.get("current_period_start")
            )
            parsed.period_end = _timestamp(
                obj.get("current_period_end") or item.get("current_period_end")
            )
        elif source_type.startswith("invoice."):
            line = ((obj.get("lines") or {}).get("data") or [{}])[0]
            period = line.get("period") or {}
            parent = (obj.get("parent") or {}).get("subscription_details") or {}
            parsed.invoice_ref = obj.get("id")
            parsed.subscription_ref = obj.get("subscription") or parent.get("subscription")
            parsed.payment_id = obj.get("payment_intent")
            parsed.amount = from_minor_units(
                obj.get("amount_paid") or obj.get("amount_due") or 0, currency
            )
            parsed.period_start = _timestamp(period.get("start") or obj.get("period_start"))
            parsed.period_end = _timestamp(period.get("end") or obj.get("period_end"))
            if not parsed.metadata:
                parsed.metadata = _metadata(parent.get("metadata"))
        elif source_type.startswith("payment_intent."):
            error = obj.get("last_payment_error") or {}
            parsed.order_id = obj.get("id")
            parsed.payment_id = obj.get("id")
            parsed.invoice_ref = obj.get("invoice")
            parsed.amount = from_minor_units(
                obj.get("amount_received") or obj.get("amount") or 0, currency
            )
            parsed.failure_reason = error.get("message")
        elif source_type == "charge.refunded":
            refunds = (obj.get("refunds") or {}).get("data") or []
            latest = refunds[0] if refunds else {}
            parsed.payment_id = obj.get("payment_intent")
            parsed.refund_id = latest.get("id") or f"{obj.get('id')}_{obj.get('amount_refunded')}"
            parsed.amount = from_minor_units(
                latest.get("amount") or obj.get("amount_refunded") or 0, currency
            )
        return parsed
