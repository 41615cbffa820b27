"""PayPal wallet adapter (Orders v2 REST API over ``requests``)."""

from __future__ import annotations

import json
import logging
import time
from decimal import Decimal
from typing import Optional

from errors import GatewayError, GatewayTransientError, SignatureError
from services.gateways.base import GatewayResult, RestGatewayAdapter, WebhookEvent
from utils import ZERO_DECIMAL_CURRENCIES, format_amount, load_json, parse_datetime

logger = logging.getLogger(__name__)

WEBHOOK_EVENT_TYPES = {
    "PAYMENT.CAPTURE.COMPLETED": "payment.succeeded",
    "PAYMENT.CAPTURE.DENIED": "payment.failed",
    "PAYMENT.CAPTURE.REFUNDED": "refund.processed",
}

VERIFY_HEADERS = {
    "auth_algo": "PAYPAL-AUTH-ALGO",
    "cert_url": "PAYPAL-CERT-URL",
    "transmission_id": "PAYPAL-TRANSMISSION-ID",
    "transmission_sig": "PAYPAL-TRANSMISSION-SIG",
    "transmission_time": "PAYPAL-TRANSMISSION-TIME",
}


def _money(amount, currency: str) -> dict:
    value = format_amount(amount)
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        value = str(int(Decimal(value)))
    return {"currency_code": currency.upper(), "value": value}


def _custom_id(metadata: Optional[dict]) -> Optional[str]:
    if not metadata:
        return None
    return json.dumps(metadata, separators=(",", ":"), default=str)[:127]


def _first_capture(order: dict) -> dict:
    for unit in order.get("purchase_units") or []:
        captures = (unit.get("payments") or {}).get("captures") or []
        if captures:
            return captures[0]
    return {}


class PayPalAdapter(RestGatewayAdapter):
    name = "paypal"

    def __init__(self, config):
        super().__init__(config)
        self._token: Optional[str] = None
        self._token_expires = 0.0

    def is_configured(self) -> bool:
        return bool(self.config.enabled and self.config.client_id and self.config.client_secret)

    def _url(self, path: str) -> str:
        return f"{self.config.base_url}{path}"

    def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires:
            return self._token
        response = self._request(
            "POST",
            self._url("/v1/oauth2/token"),
            auth=(self.config.client_id, self.config.client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        body = self._json(response)
        if response.status_code != 200 or not body.get("access_token"):
            logger.error("PayPal authentication failed: HTTP %s", response.status_code)
            raise GatewayError("PayPal authentication failed", error_code="AUTH_FAILED")
        self._token = body["access_token"]
        self._token_expires = time.monotonic() + int(body.get("expires_in", 300)) - 60
        return self._token

    def _api(self, method: str, path: str, *, request_id: Optional[str] = None, **kwargs):
        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Content-Type": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return self._request(method, self._url(path), headers=headers, **kwargs)

    @staticmethod
    def _issue(body: dict) -> tuple[str, Optional[str]]:
        details = body.get("details") or [{}]
        issue = details[0].get("issue") or body.get("name")
        message = details[0].get("description") or body.get("message") or "PayPal request failed"
        return message, issue

    def _capture_result(self, order: dict, currency: Optional[str] = None) -> GatewayResult:
        capture = _first_capture(order)
        status = capture.get("status") or order.get("status")
        amount = capture.get("amount") or {}
        currency = amount.get("currency_code") or currency
        if status == "COMPLETED":
            return GatewayResult(
                success=True,
                gateway_reference=capture.get("id"),
                order_id=order.get("id"),
                amount=Decimal(amount["value"]) if amount.get("value") else None,
                currency=currency,
                raw=order,
            )
        if status == "PENDING":
            raise GatewayTransientError(
                f"PayPal capture for order {order.get('id')} is pending",
                timed_out=True,
                error_code="PENDING",
            )
        reason = (capture.get("status_details") or {}).get("reason") or f"Capture status {status}"
        return GatewayResult.declined(
            reason, status, gateway_reference=capture.get("id"), order_id=order.get("id"), raw=order
        )

    # -- orders -------------------------------------------------------------

    def create_order(self, amount, currency, *, receipt, metadata=None, return_url=None):
        unit = {
            "reference_id": receipt[:256],
            "amount": _money(amount, currency),
        }
        custom_id = _custom_id(metadata)
        if custom_id:
            unit["custom_id"] = custom_id
        payload = {"intent": "CAPTURE", "purchase_units": [unit]}
        if return_url:
            payload["application_context"] = {
                "return_url": return_url,
                "cancel_url": return_url,
                "user_action": "PAY_NOW",
            }
        response = self._api("POST", "/v2/checkout/orders", json=payload, request_id=f"order-{receipt}")
        body = self._json(response)
        if response.status_code not in (200, 201):
            message, issue = self._issue(body)
            raise GatewayError(f"PayPal order creation failed: {message}", error_code=issue)
        approval_url = next(
            (link["href"] for link in body.get("links") or []
             if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        return GatewayResult(
            success=True,
            order_id=body.get("id"),
            amount=Decimal(str(amount)),
            currency=currency,
            public_key=self.config.client_id,
            approval_url=approval_url,
            raw=body,
        )

    def verify_or_capture(self, payload: dict) -> GatewayResult:
        order_id = payload.get("orderId") or payload.get("token")
        if not order_id:
            raise SignatureError("Missing PayPal order id")
        response = self._api(
            "POST", f"/v2/checkout/orders/{order_id}/capture", request_id=f"capture-{order_id}", json={}
        )
        body = self._json(response)
        if response.status_code in (200, 201):
            return self._capture_result(body)

        message, issue = self._issue(body)
        if issue == "ORDER_ALREADY_CAPTURED":
            existing = self._api("GET", f"/v2/checkout/orders/{order_id}")
            return self._capture_result(self._json(existing))
        if response.status_code == 404:
            raise SignatureError(f"Unknown PayPal order {order_id}")
        return GatewayResult.declined(message, issue, order_id=order_id, raw=body)

    def charge_stored_method(self, method, amount, currency, *, idempotency_key,
                             description="", metadata=None):
        if not method.paypal_vault_id:
            return GatewayResult.declined("Payment method has no PayPal vault id", "NO_TOKEN")
        unit = {
            "reference_id": idempotency_key[:256],
            "description": description[:127],
            "amount": _money(amount, currency),
        }
        custom_id = _custom_id(metadata)
        if custom_id:
            unit["custom_id"] = custom_id
        response = self._api(
            "POST",
            "/v2/checkout/orders",
            request_id=idempotency_key,
            json={
                "intent": "CAPTURE",
                "purchase_units": [unit],
                "payment_source": {"paypal": {"vault_id": method.paypal_vault_id}},
            },
        )
        body = self._json(response)
        if response.status_code not in (200, 201):
            message, issue = self._issue(body)
            return GatewayResult.declined(message, issue, raw=body)
        if body.get("status") == "APPROVED":
            return self.verify_or_capture({"orderId": body.get("id")})
        return self._capture_result(body, currency)

    def refund(self, gateway_payment_id, amount, currency, *, reason=None):
        payload = {"amount": _money(amount, currency)}
        if reason:
            payload["note_to_payer"] = reason[:255]
        response = self._api(
            "POST", f"/v2/payments/captures/{gateway_payment_id}/refund", json=payload
        )
        body = self._json(response)
        if response.status_code not in (200, 201) or body.get("status") in ("CANCELLED", "FAILED"):
            message, issue = self._issue(body)
            return GatewayResult.declined(message, issue or body.get("status"), raw=body)
        return GatewayResult(
            success=True,
            gateway_reference=body.get("id"),
            amount=Decimal(str(amount)),
            currency=currency,
            raw=body,
        )

    # -- webhooks -----------------------------------------------------------

    def parse_webhook(self, body: bytes, headers) -> WebhookEvent:
        if not self.config.webhook_id:
            raise SignatureError("PayPal webhook id not configured")
        try:
            event = json.loads(body)
        except ValueError:
            raise SignatureError("Malformed PayPal webhook payload")

        verification = {key: headers.get(header) for key, header in VERIFY_HEADERS.items()}
        if not all(verification.values()):
            raise SignatureError("Missing PayPal transmission headers")
        verification["webhook_id"] = self.config.webhook_id
        verification["webhook_event"] = event
        response = self._api("POST", "/v1/notifications/verify-webhook-signature", json=verification)
        if self._json(response).get("verification_status") != "SUCCESS":
            raise SignatureError("Invalid PayPal webhook signature", error_code="INVALID_SIGNATURE")

        source_type = event.get("event_type", "")
        resource = event.get("resource") or {}
        amount = resource.get("amount") or {}
        related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
        parsed = WebhookEvent(
            gateway=self.name,
            event_id=event.get("id", ""),
            event_type=WEBHOOK_EVENT_TYPES.get(source_type),
            source_type=source_type,
            occurred_at=parse_datetime(event.get("create_time")),
            order_id=related.get("order_id"),
            payment_id=resource.get("id"),
            amount=Decimal(amount["value"]) if amount.get("value") else None,
            currency=amount.get("currency_code"),
            failure_reason=(resource.get("status_details") or {}).get("reason"),
            metadata=load_json(resource.get("custom_id")),
            raw=event,
        )
        if source_type == "PAYMENT.CAPTURE.REFUNDED":
            # Resource is the refund; its "up" link points at the capture
            parsed.refund_id = resource.get("id")
            parsed.payment_id = related.get("capture_id") or next(
                (link["href"].rstrip("/").rsplit("/", 1)[-1]
                 for link in resource.get("links") or [] if link.get("rel") == "up"),
                None,
            )
        return parsed
