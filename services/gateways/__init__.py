"""Payment gateway adapters.

``get_adapter(name)`` builds the adapter for a gateway from the active
application configuration.
"""

from __future__ import annotations

from flask import current_app

from errors import NotFoundError, ValidationError
from services.gateways.base import GatewayAdapter, GatewayResult, WebhookEvent
from services.gateways.paypal import PayPalAdapter
from services.gateways.razorpay import RazorpayAdapter
from services.gateways.stripe_card import StripeCardAdapter

ADAPTERS = {
    "stripe": (StripeCardAdapter, "STRIPE_CONFIG"),
    "razorpay": (RazorpayAdapter, "RAZORPAY_CONFIG"),
    "paypal": (PayPalAdapter, "PAYPAL_CONFIG"),
}

__all__ = [
    "ADAPTERS",
    "GatewayAdapter",
    "GatewayResult",
    "WebhookEvent",
    "get_adapter",
    "enabled_gateways",
]


def get_adapter(gateway: str) -> GatewayAdapter:
    try:
        adapter_cls, config_key = ADAPTERS[gateway]
    except KeyError:
        raise NotFoundError(f"Unknown payment gateway: {gateway}", error_code="UNKNOWN_GATEWAY")
    adapter = adapter_cls(current_app.config[config_key])
    if not adapter.is_configured():
        raise ValidationError(
            f"Payment gateway {gateway} is not enabled", error_code="GATEWAY_DISABLED"
        )
    return adapter


def enabled_gateways() -> list[str]:
    return [
        name for name, (adapter_cls, config_key) in ADAPTERS.items()
        if adapter_cls(current_app.config[config_key]).is_configured()
    ]
