"""Checkout, verification and registration payment routes."""

from flask import Blueprint, jsonify, request

from errors import ValidationError
from extensions import limiter
from routes.serializers import subscription_json
from services import reconciler
from services.auth import require_site
from utils import safe_int

payments_bp = Blueprint("payments", __name__)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _plan_id(data: dict) -> int:
    plan_id = safe_int(data.get("planId"), default=None)
    if plan_id is None:
        raise ValidationError("planId is required")
    return plan_id


# ---------------------------------------------------------------------------
# Existing sites
# ---------------------------------------------------------------------------

@payments_bp.route("/sites/<int:site_id>/payments/<gateway>/create-order", methods=["POST"])
@limiter.limit("10 per minute")
@require_site
def create_order(site_id, gateway):
    data = _json_body()
    order = reconciler.create_checkout_order(
        site_id,
        gateway,
        _plan_id(data),
        data.get("billingCycle", "monthly"),
        amount=data.get("amount"),
        currency=data.get("currency"),
        coupon_code=data.get("couponCode"),
        return_url=data.get("returnUrl"),
    )
    return jsonify(order), 201


@payments_bp.route("/sites/<int:site_id>/payments/<gateway>/verify", methods=["POST"])
@limiter.limit("20 per minute")
@require_site
def verify(site_id, gateway):
    result = reconciler.verify_payment(gateway, _json_body(), site_id=site_id)
    if result.get("pending"):
        return jsonify(result), 202
    return jsonify(result), 200 if result["success"] else 400


# ---------------------------------------------------------------------------
# Registration (no site yet)
# ---------------------------------------------------------------------------

@payments_bp.route("/payments/<gateway>/create-registration-order", methods=["POST"])
@limiter.limit("5 per minute")
def create_registration_order(gateway):
    data = _json_body()
    order = reconciler.create_registration_order(
        gateway,
        _plan_id(data),
        data.get("billingCycle", "monthly"),
        email=(data.get("email") or "").strip(),
        amount=data.get("amount"),
        currency=data.get("currency"),
        return_url=data.get("returnUrl"),
    )
    return jsonify(order), 201


@payments_bp.route("/payments/<gateway>/verify-registration", methods=["POST"])
@limiter.limit("10 per minute")
def verify_registration(gateway):
    data = _json_body()
    reference = (data.get("paymentReference") or "").strip()
    if not reference:
        raise ValidationError("paymentReference is required")
    result = reconciler.verify_payment(gateway, data, payment_reference=reference)
    result["paymentReference"] = reference
    if result.get("pending"):
        return jsonify(result), 202
    return jsonify(result), 200 if result["success"] else 400


@payments_bp.route("/payments/registration/<payment_reference>/complete", methods=["POST"])
@limiter.limit("5 per minute")
def complete_registration(payment_reference):
    data = _json_body()
    sub = reconciler.complete_registration(
        payment_reference,
        (data.get("siteName") or "").strip(),
        (data.get("domain") or "").strip(),
        (data.get("email") or "").strip(),
    )
    return jsonify({"siteId": sub.site_id, "subscription": subscription_json(sub)}), 201


@payments_bp.route("/payments/log-event", methods=["POST"])
@limiter.limit("30 per minute")
def log_event():
    """Record a client-side checkout event (failure, cancel, dismiss)."""
    data = _json_body()
    reconciler.log_client_payment_event(
        data.get("event", ""),
        data.get("gateway"),
        site_id=safe_int(data.get("siteId"), default=None),
        order_id=data.get("orderId"),
        payment_reference=data.get("paymentReference"),
        error_message=data.get("errorMessage"),
        error_code=data.get("errorCode"),
        metadata=data.get("metadata") if isinstance(data.get("metadata"), dict) else None,
    )
    return jsonify({"status": "logged"}), 201
