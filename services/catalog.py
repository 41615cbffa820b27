"""Admin maintenance of plans, coupons and stored configuration overrides.

Plan edits only change future pricing: issued invoices carry their own
amounts and are never recalculated.
"""

from __future__ import annotations

import logging
import re
from decimal import Decimal
from typing import Optional

from config import OVERRIDABLE_SETTINGS
from errors import NotFoundError, ValidationError
from extensions import db
from models import VALID_DISCOUNT_TYPES, AppSetting, Coupon, SubscriptionPlan
from services import ledger
from utils import Patch, as_utc, parse_datetime, safe_decimal, safe_int

logger = logging.getLogger(__name__)

# JSON key -> SubscriptionPlan column
PLAN_FIELDS = {
    "name": "name",
    "slug": "slug",
    "description": "description",
    "monthlyPrice": "monthly_price",
    "annualPrice": "annual_price",
    "currency": "currency",
    "monthlyPriceInr": "monthly_price_inr",
    "annualPriceInr": "annual_price_inr",
    "inrEnabled": "inr_enabled",
    "trialDays": "trial_days",
    "maxAgents": "max_agents",
    "maxConversationsPerMonth": "max_conversations_per_month",
    "maxMessagesPerMonth": "max_messages_per_month",
    "maxStorageMb": "max_storage_mb",
    "maxAiAnalysesPerMonth": "max_ai_analyses_per_month",
    "maxAiAutoRepliesPerMonth": "max_ai_auto_replies_per_month",
    "maxFileSizeMb": "max_file_size_mb",
    "messageHistoryDays": "message_history_days",
    "aiAnalysisEnabled": "ai_analysis_enabled",
    "aiAutoReplyEnabled": "ai_auto_reply_enabled",
    "isActive": "is_active",
    "isPublic": "is_public",
    "sortOrder": "sort_order",
}

PLAN_REQUIRED = {"name", "slug", "monthly_price", "currency"}

COUPON_FIELDS = {
    "code": "code",
    "description": "description",
    "discountType": "discount_type",
    "discountValue": "discount_value",
    "currency": "currency",
    "maxRedemptions": "max_redemptions",
    "validFrom": "valid_from",
    "validUntil": "valid_until",
    "isActive": "is_active",
}

COUPON_REQUIRED = {"code", "discount_type", "discount_value"}

SLUG_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")


def _non_negative_decimal(value) -> Decimal:
    amount = safe_decimal(value)
    if amount is None or amount < 0:
        raise ValidationError(f"Invalid amount: {value!r}")
    return amount


def _non_negative_int(value) -> int:
    number = safe_int(value, default=-1)
    if number < 0:
        raise ValidationError(f"Invalid number: {value!r}")
    return number


def _datetime(value):
    parsed = parse_datetime(value)
    if parsed is None:
        raise ValidationError(f"Invalid datetime: {value!r}")
    return parsed


PLAN_CONVERTERS = {
    "monthly_price": _non_negative_decimal,
    "annual_price": _non_negative_decimal,
    "monthly_price_inr": _non_negative_decimal,
    "annual_price_inr": _non_negative_decimal,
    "currency": lambda v: str(v).upper(),
    "slug": lambda v: str(v).strip().lower(),
    "inr_enabled": bool,
    "ai_analysis_enabled": bool,
    "ai_auto_reply_enabled": bool,
    "is_active": bool,
    "is_public": bool,
    "trial_days": _non_negative_int,
    "max_agents": _non_negative_int,
    "max_conversations_per_month": _non_negative_int,
    "max_messages_per_month": _non_negative_int,
    "max_storage_mb": _non_negative_int,
    "max_ai_analyses_per_month": _non_negative_int,
    "max_ai_auto_replies_per_month": _non_negative_int,
    "max_file_size_mb": _non_negative_int,
    "message_history_days": _non_negative_int,
    "sort_order": safe_int,
}

COUPON_CONVERTERS = {
    "code": lambda v: str(v).strip().upper(),
    "discount_value": _non_negative_decimal,
    "currency": lambda v: str(v).upper(),
    "max_redemptions": _non_negative_int,
    "valid_from": _datetime,
    "valid_until": _datetime,
    "is_active": bool,
}


def _patch(data: Optional[dict], fields: dict) -> Patch:
    data = data or {}
    renamed = {column: data[key] for key, column in fields.items() if key in data}
    return Patch.from_json(renamed, fields.values())


def _check_required(patch: Patch, required: set) -> None:
    cleared = [name for name in required if name in patch and patch.get(name) in (None, "")]
    if cleared:
        raise ValidationError(f"Field(s) cannot be empty: {', '.join(sorted(cleared))}")


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------

def _validate_plan(plan: SubscriptionPlan) -> None:
    if not SLUG_RE.match(plan.slug or ""):
        raise ValidationError("slug may contain lowercase letters, digits and dashes only")
    with db.session.no_autoflush:
        existing = SubscriptionPlan.query.filter_by(slug=plan.slug).first()
    if existing is not None and existing.id != plan.id:
        raise ValidationError(f"Plan slug {plan.slug} already exists")
    if plan.inr_enabled and plan.monthly_price_inr is None:
        raise ValidationError("INR pricing requires monthlyPriceInr")


def create_plan(data: dict) -> SubscriptionPlan:
    patch = _patch(data, PLAN_FIELDS)
    missing = [name for name in PLAN_REQUIRED - {"currency"} if name not in patch]
    if missing:
        raise ValidationError(f"Missing field(s): {', '.join(sorted(missing))}")
    _check_required(patch, PLAN_REQUIRED)
    plan = SubscriptionPlan(currency="USD", trial_days=0, is_active=True, is_public=True,
                            sort_order=0, inr_enabled=False)
    patch.apply(plan, PLAN_CONVERTERS)
    _validate_plan(plan)
    db.session.add(plan)
    db.session.commit()
    logger.info("Created plan %s (%s)", plan.slug, plan.id)
    return plan


def update_plan(plan_id: int, data: dict) -> SubscriptionPlan:
    plan = ledger.get_plan(plan_id)
    patch = _patch(data, PLAN_FIELDS)
    if not patch:
        raise ValidationError("No plan fields supplied")
    _check_required(patch, PLAN_REQUIRED)
    applied = patch.apply(plan, PLAN_CONVERTERS)
    _validate_plan(plan)
    db.session.commit()
    logger.info("Updated plan %s: %s", plan.slug, ", ".join(applied))
    return plan


def delete_plan(plan_id: int) -> None:
    plan = ledger.get_plan(plan_id)
    live = ledger.count_live_subscribers(plan.id)
    if live:
        raise ValidationError(
            f"Plan {plan.slug} still has {live} active subscriber(s); deactivate it instead",
            error_code="PLAN_IN_USE",
        )
    # Historic subscriptions and payments still point at the row
    plan.is_active = False
    plan.is_public = False
    db.session.commit()
    logger.info("Retired plan %s", plan.slug)


# ---------------------------------------------------------------------------
# Coupons
# ---------------------------------------------------------------------------

def _get_coupon(coupon_id: int) -> Coupon:
    coupon = db.session.get(Coupon, coupon_id)
    if coupon is None:
        raise NotFoundError(f"Coupon {coupon_id} not found")
    return coupon


def _validate_coupon(coupon: Coupon) -> None:
    if coupon.discount_type not in VALID_DISCOUNT_TYPES:
        raise ValidationError(f"Invalid discount type: {coupon.discount_type}")
    if coupon.discount_type == "percentage" and Decimal(coupon.discount_value) > 100:
        raise ValidationError("A percentage discount cannot exceed 100")
    if coupon.discount_type == "fixed" and not coupon.currency:
        raise ValidationError("A fixed discount requires a currency")
    if coupon.valid_from and coupon.valid_until and (
        as_utc(coupon.valid_until) <= as_utc(coupon.valid_from)
    ):
        raise ValidationError("validUntil must be after validFrom")
    with db.session.no_autoflush:
        existing = ledger.get_coupon_by_code(coupon.code)
    if existing is not None and existing.id != coupon.id:
        raise ValidationError(f"Coupon {coupon.code} already exists")


def create_coupon(data: dict) -> Coupon:
    patch = _patch(data, COUPON_FIELDS)
    missing = [name for name in COUPON_REQUIRED if name not in patch]
    if missing:
        raise ValidationError(f"Missing field(s): {', '.join(sorted(missing))}")
    _check_required(patch, COUPON_REQUIRED)
    coupon = Coupon(times_redeemed=0, is_active=True)
    patch.apply(coupon, COUPON_CONVERTERS)
    _validate_coupon(coupon)
    db.session.add(coupon)
    db.session.commit()
    logger.info("Created coupon %s", coupon.code)
    return coupon


def update_coupon(coupon_id: int, data: dict) -> Coupon:
    coupon = _get_coupon(coupon_id)
    patch = _patch(data, COUPON_FIELDS)
    if not patch:
        raise ValidationError("No coupon fields supplied")
    if "code" in patch and coupon.times_redeemed:
        raise ValidationError("Cannot rename a coupon that has been redeemed")
    _check_required(patch, COUPON_REQUIRED)
    patch.apply(coupon, COUPON_CONVERTERS)
    _validate_coupon(coupon)
    db.session.commit()
    return coupon


def delete_coupon(coupon_id: int) -> bool:
    """Delete an unused coupon, or deactivate a redeemed one.  True if deleted."""
    coupon = _get_coupon(coupon_id)
    if coupon.times_redeemed:
        coupon.is_active = False
        db.session.commit()
        return False
    db.session.delete(coupon)
    db.session.commit()
    return True


# ---------------------------------------------------------------------------
# Stored configuration overrides
# ---------------------------------------------------------------------------

def list_setting_overrides() -> dict:
    return {
        row.key: row.value
        for row in AppSetting.query.order_by(AppSetting.key).all()
        if row.key in OVERRIDABLE_SETTINGS
    }


def save_setting_overrides(data: dict) -> list[str]:
    """Upsert overrides; ``None`` removes one.  Returns the keys touched.

    Values are validated here but only take effect on the next reload.
    """
    unknown = sorted(set(data) - set(OVERRIDABLE_SETTINGS))
    if unknown:
        raise ValidationError(f"Unknown setting(s): {', '.join(unknown)}")
    for key, value in data.items():
        row = AppSetting.query.filter_by(key=key).first()
        if value is None:
            if row is not None:
                db.session.delete(row)
            continue
        coerce = OVERRIDABLE_SETTINGS[key]
        if coerce is bool:
            if not isinstance(value, bool):
                raise ValidationError(f"{key} must be true or false")
            stored = "true" if value else "false"
        else:
            try:
                stored = str(coerce(value))
            except (TypeError, ValueError):
                raise ValidationError(f"Invalid value for {key}: {value!r}")
            minimum = 0 if key == "billing.grace_period_days" else 1
            if coerce is int and int(stored) < minimum:
                raise ValidationError(f"{key} must be at least {minimum}")
            if key == "paypal.mode" and stored not in ("sandbox", "live"):
                raise ValidationError("paypal.mode must be sandbox or live")
        if row is None:
            db.session.add(AppSetting(key=key, value=stored))
        else:
            row.value = stored
    db.session.commit()
    logger.info("Saved setting overrides: %s", ", ".join(sorted(data)))
    return sorted(data)
