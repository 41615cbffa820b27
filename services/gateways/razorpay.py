"""Razorpay adapter (REST over ``requests``)."""

from __future__ import annotations

import datetime
import hashlib
import hmac
import json
import logging
from decimal import Decimal
from typing import Optional

from errors import GatewayError, GatewayTransientError, SignatureError
from services.gateways.base import GatewayResult, RestGatewayAdapter, WebhookEvent
from utils import from_minor_units, to_minor_units

logger = logging.getLogger(__name__)

WEBHOOK_EVENT_TYPES = {
    "payment.captured": "payment.succeeded",
    "payment.failed": "payment.failed",
    "refund.processed": "refund.processed",
}


def compute_signature(secret: str, message: str | bytes) -> str:
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _notes(metadata: Optional[dict]) -> dict:
    # Razorpay allows at most 15 string notes
    return {str(k): str(v)[:256] for k, v in list((metadata or {}).items())[:15]}


class RazorpayAdapter(RestGatewayAdapter):
    name = "razorpay"

    def is_configured(self) -> bool:
        return bool(self.config.enabled and self.config.key_id and self.config.key_secret)

    @property
    def _auth(self):
        return (self.config.key_id, self.config.key_secret)

    def _url(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}{path}"

    @staticmethod
    def _error(body: dict) -> tuple[str, Optional[str]]:
        error = body.get("error") or {}
        return error.get("description") or "Razorpay request failed", error.get("code")

    # -- orders -------------------------------------------------------------

    def _create_order(self, amount: Decimal, currency: str, receipt: str, metadata) -> dict:
        response = self._request(
            "POST",
            self._url("/v1/orders"),
            auth=self._auth,
            json={
                "amount": to_minor_units(amount, currency),
                "currency": currency,
                "receipt": receipt[:40],
                "notes": _notes(metadata),
                "payment_capture": 1,
            },
        )
        body = self._json(response)
        if response.status_code not in (200, 201) or not body.get("id"):
            message, code = self._error(body)
            logger.error("Razorpay order creation failed: %s", message)
            raise GatewayError(f"Razorpay order creation failed: {message}", error_code=code)
        return body

    def create_order(self, amount, currency, *, receipt, metadata=None, return_url=None):
        body = self._create_order(amount, currency, receipt, metadata)
        return GatewayResult(
            success=True,
            order_id=body["id"],
            amount=from_minor_units(body.get("amount"), currency),
            currency=body.get("currency", currency),
            public_key=self.config.key_id,
            raw=body,
        )

    def verify_or_capture(self, payload: dict) -> GatewayResult:
        """Check the checkout callback signature over ``order_id|payment_id``."""
        order_id = payload.get("razorpay_order_id") or payload.get("orderId") or ""
        payment_id = payload.get("razorpay_payment_id") or payload.get("paymentId") or ""
        signature = payload.get("razorpay_signature") or payload.get("signature") or ""
        if not (order_id and payment_id and signature):
            raise SignatureError("Missing Razorpay payment signature fields")
        expected = compute_signature(self.config.key_secret, f"{order_id}|{payment_id}")
        if not hmac.compare_digest(expected, signature):
            raise SignatureError("Invalid Razorpay payment signature", error_code="INVALID_SIGNATURE")
        return GatewayResult(success=True, gateway_reference=payment_id, order_id=order_id)

    # -- stored methods -----------------------------------------------------

    def charge_stored_method(self, method, amount, currency, *, idempotency_key,
                             description="", metadata=None):
        """Charge a stored token through a recurring payment on a receipt-keyed order.

        The idempotency key doubles as the order receipt.  A retried charge
        finds the earlier order and settles from its payments instead of
        charging the token a second time.
        """
        if not (method.razorpay_customer_id and method.razorpay_token_id):
            return GatewayResult.declined("Payment method has no Razorpay token", "NO_TOKEN")
        order = self._find_order(idempotency_key)
        if order is None:
            order = self._create_order(amount, currency, idempotency_key, metadata)
        else:
            live = [p for p in self._order_payments(order["id"]) if p.get("status") != "failed"]
            if live:
                logger.info("Reusing Razorpay order %s for receipt %s", order["id"],
                            idempotency_key)
                return self._charge_outcome(live[0], order["id"], amount, currency)
        response = self._request(
            "POST",
            self._url("/v1/payments/create/recurring"),
            auth=self._auth,
            json={
                "amount": to_minor_units(amount, currency),
                "currency": currency,
                "order_id": order["id"],
                "customer_id": method.razorpay_customer_id,
                "token": method.razorpay_token_id,
                "recurring": "1",
                "description": description[:255],
                "notes": _notes(metadata),
            },
        )
        body = self._json(response)
        if response.status_code not in (200, 201):
            message, code = self._error(body)
            return GatewayResult.declined(message, code, order_id=order["id"], raw=body)

        payment_id = body.get("razorpay_payment_id")
        status = self._payment_status(payment_id) if payment_id else {}
        return self._charge_outcome(status, order["id"], amount, currency, payment_id)

    def _charge_outcome(self, status: dict, order_id: str, amount, currency,
                        payment_id: Optional[str] = None) -> GatewayResult:
        payment_id = payment_id or status.get("id")
        if status.get("status") in ("captured", "authorized"):
            return GatewayResult(
                success=True,
                gateway_reference=payment_id,
                order_id=order_id,
                amount=Decimal(str(amount)),
                currency=currency,
                raw=status,
            )
        if status.get("status") == "failed":
            return GatewayResult.declined(
                status.get("error_description") or "Recurring payment failed",
                status.get("error_code"),
                gateway_reference=payment_id,
                order_id=order_id,
                raw=status,
            )
        # Created but not settled yet; the payment webhook finishes it
        raise GatewayTransientError(
            f"Razorpay recurring payment {payment_id or order_id} still pending",
            timed_out=True,
            error_code="PENDING",
        )

    def _find_order(self, receipt: str) -> Optional[dict]:
        response = self._request(
            "GET", self._url("/v1/orders"), auth=self._auth, params={"receipt": receipt[:40]}
        )
        if response.status_code != 200:
            return None
        items = self._json(response).get("items") or []
        return items[0] if items else None

    def _order_payments(self, order_id: str) -> list:
        response = self._request(
            "GET", self._url(f"/v1/orders/{order_id}/payments"), auth=self._auth
        )
        if response.status_code != 200:
            return []
        return self._json(response).get("items") or []

    def _payment_status(self, payment_id: str) -> dict:
        response = self._request("GET", self._url(f"/v1/payments/{payment_id}"), auth=self._auth)
        return self._json(response) if response.status_code == 200 else {}

    def refund(self, gateway_payment_id, amount, currency, *, reason=None):
        response = self._request(
            "POST",
            self._url(f"/v1/payments/{gateway_payment_id}/refund"),
            auth=self._auth,
            json={"amount": to_minor_units(amount, currency), "notes": _notes({"reason": reason})},
        )
        body = self._json(response)
        if response.status_code not in (200, 201) or body.get("status") == "failed":
            message, code = self._error(body)
            return GatewayResult.declined(message, code, raw=body)
        return GatewayResult(
            success=True,
            gateway_reference=body.get("id"),
            amount=from_minor_units(body.get("amount"), currency),
            currency=currency,
            raw=body,
        )

    # -- webhooks -----------------------------------------------------------

    def parse_webhook(self, body: bytes, headers) -> WebhookEvent:
        signature = headers.get("X-Razorpay-Signature", "")
        if not self.config.webhook_secret:
            raise SignatureError("Razorpay webhook secret not configured")
        expected = compute_signature(self.config.webhook_secret, body)
        if not signature or not hmac.compare_digest(expected, signature):
            raise SignatureError("Invalid Razorpay webhook signature", error_code="INVALID_SIGNATURE")

        try:
            event = json.loads(body)
        except ValueError:
            raise SignatureError("Malformed Razorpay webhook payload")

        source_type = event.get("event", "")
        payload = event.get("payload") or {}
        payment = (payload.get("payment") or {}).get("entity") or {}
        refund = (payload.get("refund") or {}).get("entity") or {}
        entity = refund or payment
        currency = (entity.get("currency") or "INR").upper()
        created = event.get("created_at")

        return WebhookEvent(
            gateway=self.name,
            event_id=headers.get("X-Razorpay-Event-Id") or hashlib.sha256(body).hexdigest(),
            event_type=WEBHOOK_EVENT_TYPES.get(source_type),
            source_type=source_type,
            occurred_at=(
                datetime.datetime.fromtimestamp(created, datetime.timezone.utc) if created else None
            ),
            order_id=payment.get("order_id"),
            payment_id=refund.get("payment_id") or payment.get("id"),
            refund_id=refund.get("id"),
            amount=from_minor_units(entity.get("amount"), currency) if entity.get("amount") else None,
            currency=currency,
            failure_reason=payment.get("error_description"),
            metadata=dict(entity.get("notes") or {}) if isinstance(entity.get("notes"), dict) else {},
            raw=event,
        )
