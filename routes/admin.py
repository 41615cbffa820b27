"""Admin API: ledger browsing, plan and coupon maintenance, refunds, settings.

Every route requires the ``X-Admin-Key`` header.
"""

from flask import Blueprint, current_app, jsonify, request

from config import masked_config, reload_config
from errors import ValidationError
from models import Coupon, Invoice, Payment, PaymentLog, Subscription
from routes.serializers import (
    coupon_json,
    invoice_json,
    money,
    payment_json,
    payment_log_json,
    plan_json,
    refund_json,
    subscription_json,
)
from services import autopay, catalog, ledger, lifecycle, reconciler
from services.auth import admin_required
from utils import parse_datetime, safe_int

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _page_args() -> tuple[int, int]:
    page = max(1, safe_int(request.args.get("page"), default=1))
    per_page = safe_int(request.args.get("per_page"), default=25)
    return page, per_page


def _paginated(query, serializer):
    page, per_page = _page_args()
    items, total = ledger.paginate(query, page, per_page)
    return jsonify({
        "items": [serializer(item) for item in items],
        "page": page,
        "perPage": min(max(1, per_page), 100),
        "total": total,
    })


def _filter_site(query, model):
    site_id = safe_int(request.args.get("site_id"), default=None)
    if site_id is not None:
        query = query.filter(model.site_id == site_id)
    return query


def _filter_created(query, model):
    since = parse_datetime(request.args.get("from"))
    until = parse_datetime(request.args.get("to"))
    if since:
        query = query.filter(model.created_at >= since)
    if until:
        query = query.filter(model.created_at < until)
    return query


# ---------------------------------------------------------------------------
# Ledger browsing
# ---------------------------------------------------------------------------

@admin_bp.route("/payment-logs")
@admin_required
def payment_logs():
    query = _filter_created(_filter_site(PaymentLog.query, PaymentLog), PaymentLog)
    for arg in ("action", "status", "gateway"):
        value = request.args.get(arg, "").strip()
        if value:
            query = query.filter(getattr(PaymentLog, arg) == value)
    return _paginated(query.order_by(PaymentLog.created_at.desc(), PaymentLog.id.desc()),
                      payment_log_json)


@admin_bp.route("/invoices")
@admin_required
def invoices():
    query = _filter_created(_filter_site(Invoice.query, Invoice), Invoice)
    status = request.args.get("status", "").strip()
    if status:
        query = query.filter(Invoice.status == status)
    return _paginated(query.order_by(Invoice.created_at.desc(), Invoice.id.desc()), invoice_json)


@admin_bp.route("/payments")
@admin_required
def payments():
    query = _filter_created(_filter_site(Payment.query, Payment), Payment)
    for arg in ("status", "gateway"):
        value = request.args.get(arg, "").strip()
        if value:
            query = query.filter(getattr(Payment, arg) == value)
    return _paginated(query.order_by(Payment.created_at.desc(), Payment.id.desc()), payment_json)


@admin_bp.route("/payments/stats")
@admin_required
def payment_stats():
    stats = ledger.payment_stats()
    return jsonify({
        "byStatus": stats["byStatus"],
        "collected": {cur: money(v) for cur, v in stats["collected"].items()},
        "refunded": {cur: money(v) for cur, v in stats["refunded"].items()},
        "orphaned": PaymentLog.query.filter_by(action="orphaned_payment").count(),
    })


@admin_bp.route("/payments/orphaned")
@admin_required
def orphaned_payments():
    query = PaymentLog.query.filter_by(action="orphaned_payment")
    return _paginated(query.order_by(PaymentLog.created_at.desc(), PaymentLog.id.desc()),
                      payment_log_json)


@admin_bp.route("/payments/<int:payment_id>/refund", methods=["POST"])
@admin_required
def refund(payment_id):
    data = request.get_json(silent=True) or {}
    result = reconciler.refund_payment(payment_id, data.get("amount"), data.get("reason"))
    payment = ledger.get_payment(payment_id)
    return jsonify({
        "refund": refund_json(result),
        "payment": payment_json(payment, ledger.refunded_total(payment_id)),
    }), 201


@admin_bp.route("/subscriptions")
@admin_required
def subscriptions():
    query = _filter_site(Subscription.query, Subscription)
    status = request.args.get("status", "").strip()
    if status:
        query = query.filter(Subscription.status == status)
    return _paginated(query.order_by(Subscription.id.desc()), subscription_json)


@admin_bp.route("/subscriptions/<int:subscription_id>/extend", methods=["POST"])
@admin_required
def extend(subscription_id):
    data = _json_body()
    days = data.get("days")
    if not isinstance(days, int) or isinstance(days, bool):
        raise ValidationError("days must be a positive integer")
    sub = lifecycle.extend_subscription(subscription_id, days, actor="admin",
                                        reason=data.get("reason"))
    return jsonify(subscription_json(sub))


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------

@admin_bp.route("/plans")
@admin_required
def list_plans():
    return jsonify([
        dict(plan_json(p), liveSubscribers=ledger.count_live_subscribers(p.id))
        for p in ledger.list_plans(public_only=False)
    ])


@admin_bp.route("/plans", methods=["POST"])
@admin_required
def create_plan():
    return jsonify(plan_json(catalog.create_plan(_json_body()))), 201


@admin_bp.route("/plans/<int:plan_id>", methods=["PUT", "PATCH"])
@admin_required
def update_plan(plan_id):
    return jsonify(plan_json(catalog.update_plan(plan_id, _json_body())))


@admin_bp.route("/plans/<int:plan_id>", methods=["DELETE"])
@admin_required
def delete_plan(plan_id):
    catalog.delete_plan(plan_id)
    return "", 204


# ---------------------------------------------------------------------------
# Coupons
# ---------------------------------------------------------------------------

@admin_bp.route("/coupons")
@admin_required
def list_coupons():
    return _paginated(Coupon.query.order_by(Coupon.id.desc()), coupon_json)


@admin_bp.route("/coupons", methods=["POST"])
@admin_required
def create_coupon():
    return jsonify(coupon_json(catalog.create_coupon(_json_body()))), 201


@admin_bp.route("/coupons/<int:coupon_id>", methods=["PUT", "PATCH"])
@admin_required
def update_coupon(coupon_id):
    return jsonify(coupon_json(catalog.update_coupon(coupon_id, _json_body())))


@admin_bp.route("/coupons/<int:coupon_id>", methods=["DELETE"])
@admin_required
def delete_coupon(coupon_id):
    deleted = catalog.delete_coupon(coupon_id)
    return jsonify({"deleted": deleted, "deactivated": not deleted})


# ---------------------------------------------------------------------------
# Settings and billing cycle
# ---------------------------------------------------------------------------

@admin_bp.route("/settings")
@admin_required
def settings():
    return jsonify({
        "active": masked_config(current_app),
        "overrides": catalog.list_setting_overrides(),
    })


@admin_bp.route("/settings", methods=["PUT"])
@admin_required
def save_settings():
    """Store overrides; they apply after ``POST /admin/settings/reload``."""
    saved = catalog.save_setting_overrides(_json_body())
    return jsonify({"saved": saved, "overrides": catalog.list_setting_overrides(),
                    "reloadRequired": True})


@admin_bp.route("/settings/reload", methods=["POST"])
@admin_required
def reload_settings():
    reload_config(current_app._get_current_object())
    return jsonify({"active": masked_config(current_app)})


@admin_bp.route("/billing/run-cycle", methods=["POST"])
@admin_required
def run_cycle():
    """Run one auto-pay / boundary / trial-warning pass synchronously."""
    data = request.get_json(silent=True) or {}
    now = parse_datetime(data.get("now")) if data.get("now") else None
    return jsonify(autopay.run_billing_cycle(now))
