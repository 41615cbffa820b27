"""Site subscription, usage, payment method, plan and coupon routes."""

from flask import Blueprint, jsonify, request

from errors import NotFoundError, ValidationError
from extensions import db
from models import SubscriptionPlan
from routes.serializers import (
    history_json,
    payment_method_json,
    plan_json,
    subscription_json,
)
from services import coupons, ledger, lifecycle, usage
from services.auth import require_site
from utils import safe_int

subscriptions_bp = Blueprint("subscriptions", __name__)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _subscription_response(sub, status=200):
    plan = db.session.get(SubscriptionPlan, sub.plan_id)
    return jsonify(subscription_json(sub, plan)), status


# ---------------------------------------------------------------------------
# Subscription
# ---------------------------------------------------------------------------

@subscriptions_bp.route("/sites/<int:site_id>/subscription")
@require_site
def get_subscription(site_id):
    sub = ledger.get_live_subscription(site_id)
    if sub is None:
        raise NotFoundError(f"Site {site_id} has no active subscription")
    return _subscription_response(sub)


@subscriptions_bp.route("/sites/<int:site_id>/subscription", methods=["POST"])
@require_site
def create_subscription(site_id):
    data = _json_body()
    plan_id = safe_int(data.get("planId"), default=None)
    if plan_id is None:
        raise ValidationError("planId is required")
    sub = lifecycle.start_subscription(
        site_id,
        plan_id,
        data.get("billingCycle", "monthly"),
        actor="user",
        payment_method_id=safe_int(data.get("paymentMethodId"), default=None),
    )
    return _subscription_response(sub, 201)


@subscriptions_bp.route("/sites/<int:site_id>/subscription/change-plan", methods=["POST"])
@require_site
def change_plan(site_id):
    data = _json_body()
    plan_id = safe_int(data.get("planId"), default=None)
    if plan_id is None:
        raise ValidationError("planId is required")
    sub = lifecycle.change_plan(site_id, plan_id, data.get("billingCycle"), actor="user")
    return _subscription_response(sub)


@subscriptions_bp.route("/sites/<int:site_id>/subscription/cancel", methods=["POST"])
@require_site
def cancel(site_id):
    data = _json_body()
    sub = lifecycle.cancel_subscription(
        site_id,
        immediate=bool(data.get("immediate", False)),
        reason=data.get("reason"),
        actor="user",
    )
    return _subscription_response(sub)


@subscriptions_bp.route("/sites/<int:site_id>/subscription/reactivate", methods=["POST"])
@require_site
def reactivate(site_id):
    sub = lifecycle.reactivate_subscription(site_id, actor="user")
    return _subscription_response(sub)


@subscriptions_bp.route("/sites/<int:site_id>/subscription/history")
@require_site
def history(site_id):
    return jsonify([history_json(row) for row in ledger.list_history(site_id)])


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------

@subscriptions_bp.route("/sites/<int:site_id>/usage")
@require_site
def usage_summary(site_id):
    return jsonify(usage.get_usage_summary(site_id))


@subscriptions_bp.route("/sites/<int:site_id>/limits/<metric>")
@require_site
def check_limit(site_id, metric):
    return jsonify(usage.check_limit(site_id, metric).to_dict())


@subscriptions_bp.route("/sites/<int:site_id>/usage/<metric>", methods=["POST"])
@require_site
def record_usage(site_id, metric):
    data = _json_body()
    quantity = data.get("quantity", 1)
    if not isinstance(quantity, int) or isinstance(quantity, bool):
        raise ValidationError("quantity must be an integer")
    total = usage.record_usage(site_id, metric, quantity)
    return jsonify({"metric": metric, "current": total}), 201


# ---------------------------------------------------------------------------
# Payment methods
# ---------------------------------------------------------------------------

@subscriptions_bp.route("/sites/<int:site_id>/payment-methods")
@require_site
def list_payment_methods(site_id):
    return jsonify([payment_method_json(m) for m in ledger.list_payment_methods(site_id)])


@subscriptions_bp.route("/sites/<int:site_id>/payment-methods", methods=["POST"])
@require_site
def add_payment_method(site_id):
    data = _json_body()
    fields = {
        "method_type": data.get("type"),
        "stripe_customer_id": data.get("stripeCustomerId"),
        "stripe_payment_method_id": data.get("stripePaymentMethodId"),
        "razorpay_customer_id": data.get("razorpayCustomerId"),
        "razorpay_token_id": data.get("razorpayTokenId"),
        "paypal_vault_id": data.get("paypalVaultId"),
        "paypal_payer_id": data.get("paypalPayerId"),
        "last4": data.get("last4"),
        "brand": data.get("brand"),
        "exp_month": safe_int(data.get("expMonth"), default=None),
        "exp_year": safe_int(data.get("expYear"), default=None),
    }
    method = lifecycle.attach_payment_method(
        site_id, data.get("gateway", ""), fields, make_default=bool(data.get("makeDefault"))
    )
    return jsonify(payment_method_json(method)), 201


@subscriptions_bp.route("/sites/<int:site_id>/payment-methods/<int:method_id>",
                        methods=["DELETE"])
@require_site
def delete_payment_method(site_id, method_id):
    lifecycle.detach_payment_method(site_id, method_id)
    return "", 204


# ---------------------------------------------------------------------------
# Plans and coupons (public)
# ---------------------------------------------------------------------------

@subscriptions_bp.route("/plans")
def list_plans():
    return jsonify([plan_json(p) for p in ledger.list_plans(public_only=True)])


@subscriptions_bp.route("/coupons/validate", methods=["POST"])
def validate_coupon():
    """Preview a coupon against a plan price; nothing is redeemed here."""
    data = _json_body()
    code = (data.get("code") or "").strip()
    if not code:
        raise ValidationError("code is required")
    site_id = safe_int(data.get("siteId"), default=None)
    plan_id = safe_int(data.get("planId"), default=None)
    amount = currency = None
    if plan_id is not None:
        plan = ledger.get_plan(plan_id, active_only=True)
        amount, currency = lifecycle.resolve_price(
            plan, data.get("billingCycle", "monthly"), data.get("currency")
        )
    coupon = coupons.validate_coupon(code, site_id=site_id,
                                     currency=currency or data.get("currency"))
    return jsonify(dict(coupons.describe(coupon, amount), valid=True))
