"""SQLAlchemy models for the billing ledger.

Rows reference each other by id only; lookups go through ``services.ledger``.
"""

from __future__ import annotations

from sqlalchemy import text

from extensions import db
from utils import utc_now

# ---------------------------------------------------------------------------
# Vocabularies
# ---------------------------------------------------------------------------

VALID_SUBSCRIPTION_STATUSES = {"trialing", "active", "past_due", "canceled"}
VALID_BILLING_CYCLES = {"monthly", "annual"}
VALID_INVOICE_STATUSES = {"draft", "open", "paid", "void", "uncollectible"}
VALID_PAYMENT_STATUSES = {"pending", "succeeded", "failed", "refunded", "partially_refunded"}
VALID_GATEWAYS = {"stripe", "razorpay", "paypal"}
VALID_DISCOUNT_TYPES = {"percentage", "fixed"}
VALID_ACTORS = {"user", "admin", "system", "webhook", "autopay"}

HISTORY_ACTIONS = {
    "created",
    "superseded",
    "upgraded",
    "downgraded",
    "renewed",
    "trial_converted",
    "renewal_failed",
    "trial_expired",
    "grace_expired",
    "cancel_scheduled",
    "canceled",
    "reactivated",
    "extended",
}

PAYMENT_LOG_STATUSES = {"initiated", "processing", "success", "failed", "error", "timeout"}


# ---------------------------------------------------------------------------
# Site
# ---------------------------------------------------------------------------

class Site(db.Model):
    """A tenant account. Owns exactly one live subscription."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    domain = db.Column(db.String(255), unique=True, nullable=False)
    owner_email = db.Column(db.String(255))
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------

class SubscriptionPlan(db.Model):
    """Defines available subscription tiers. NULL limits mean unlimited."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(60), nullable=False)
    slug = db.Column(db.String(60), unique=True, nullable=False)
    description = db.Column(db.Text)
    monthly_price = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False, default=0)
    annual_price = db.Column(db.Numeric(10, 2, asdecimal=True))
    currency = db.Column(db.String(3), nullable=False, default="USD")
    # Secondary currency, honoured only when inr_enabled is set
    monthly_price_inr = db.Column(db.Numeric(10, 2, asdecimal=True))
    annual_price_inr = db.Column(db.Numeric(10, 2, asdecimal=True))
    inr_enabled = db.Column(db.Boolean, default=False)
    trial_days = db.Column(db.Integer, default=0)
    max_agents = db.Column(db.Integer)
    max_conversations_per_month = db.Column(db.Integer)
    max_messages_per_month = db.Column(db.Integer)
    max_storage_mb = db.Column(db.Integer)
    max_ai_analyses_per_month = db.Column(db.Integer)
    max_ai_auto_replies_per_month = db.Column(db.Integer)
    max_file_size_mb = db.Column(db.Integer)
    message_history_days = db.Column(db.Integer)
    ai_analysis_enabled = db.Column(db.Boolean, default=False)
    ai_auto_reply_enabled = db.Column(db.Boolean, default=False)
    is_active = db.Column(db.Boolean, default=True)
    is_public = db.Column(db.Boolean, default=True)
    sort_order = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

class Subscription(db.Model):
    """One billing relationship between a site and a plan.

    Rows are never deleted: plan changes close the old row and open a new
    one.  ``version`` is an optimistic-lock counter maintained by the ORM, so
    two concurrent writers of the same row cannot both commit.
    """
    id = db.Column(db.Integer, primary_key=True)
    site_id = db.Column(db.Integer, db.ForeignKey("site.id"), nullable=False, index=True)
    plan_id = db.Column(db.Integer, db.ForeignKey("subscription_plan.id"), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="trialing")
    billing_cycle = db.Column(db.String(10), nullable=False, default="monthly")
    current_period_start = db.Column(db.DateTime, nullable=False)
    current_period_end = db.Column(db.DateTime, nullable=False)
    trial_start = db.Column(db.DateTime)
    trial_end = db.Column(db.DateTime)
    canceled_at = db.Column(db.DateTime)
    cancel_at = db.Column(db.DateTime)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False)
    grace_ends_at = db.Column(db.DateTime)
    auto_pay_enabled = db.Column(db.Boolean, nullable=False, default=False)
    preferred_gateway = db.Column(db.String(20))
    default_payment_method_id = db.Column(db.Integer, db.ForeignKey("payment_method.id"))
    stripe_customer_id = db.Column(db.String(120), index=True)
    stripe_subscription_id = db.Column(db.String(120), index=True)
    gateway_event_at = db.Column(db.DateTime)
    superseded_by_id = db.Column(db.Integer, db.ForeignKey("subscription.id"))
    version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        # At most one live (non-canceled) subscription per site
        db.Index(
            "uq_subscription_live_site",
            "site_id",
            unique=True,
            sqlite_where=text("status != 'canceled'"),
            postgresql_where=text("status != 'canceled'"),
        ),
    )


class SubscriptionHistory(db.Model):
    """Append-only audit trail of subscription transitions."""
    id = db.Column(db.Integer, primary_key=True)
    site_id = db.Column(db.Integer, db.ForeignKey("site.id"), nullable=False, index=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscription.id"), index=True)
    action = db.Column(db.String(40), nullable=False)
    from_plan_id = db.Column(db.Integer, db.ForeignKey("subscription_plan.id"))
    to_plan_id = db.Column(db.Integer, db.ForeignKey("subscription_plan.id"))
    from_status = db.Column(db.String(20))
    to_status = db.Column(db.String(20))
    reason = db.Column(db.Text)
    actor = db.Column(db.String(20), nullable=False, default="system")
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.Index("ix_subscription_history_created_at", "created_at"),
    )


class UsageRecord(db.Model):
    """Accumulated usage of one metric during one subscription period."""
    id = db.Column(db.Integer, primary_key=True)
    site_id = db.Column(db.Integer, db.ForeignKey("site.id"), nullable=False, index=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscription.id"), nullable=False)
    metric = db.Column(db.String(40), nullable=False)
    period_start = db.Column(db.DateTime, nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        db.UniqueConstraint(
            "subscription_id", "metric", "period_start", name="uq_usage_record_key"
        ),
    )


# ---------------------------------------------------------------------------
# Payment methods
# ---------------------------------------------------------------------------

class PaymentMethod(db.Model):
    """Stored gateway credential used for off-session (auto-pay) charges."""
    id = db.Column(db.Integer, primary_key=True)
    site_id = db.Column(db.Integer, db.ForeignKey("site.id"), nullable=False, index=True)
    gateway = db.Column(db.String(20), nullable=False)
    method_type = db.Column(db.String(20), default="card")
    stripe_customer_id = db.Column(db.String(120))
    stripe_payment_method_id = db.Column(db.String(120))
    razorpay_customer_id = db.Column(db.String(120))
    razorpay_token_id = db.Column(db.String(120))
    paypal_vault_id = db.Column(db.String(120))
    paypal_payer_id = db.Column(db.String(120))
    last4 = db.Column(db.String(4))
    brand = db.Column(db.String(30))
    exp_month = db.Column(db.Integer)
    exp_year = db.Column(db.Integer)
    is_default = db.Column(db.Boolean, default=False)
    is_deleted = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=utc_now)


# ---------------------------------------------------------------------------
# Invoices & payments
# ---------------------------------------------------------------------------

class Invoice(db.Model):
    """Billing document.  Once past draft, amount_paid + amount_due == total."""
    id = db.Column(db.Integer, primary_key=True)
    number = db.Column(db.String(40), unique=True, nullable=False)
    site_id = db.Column(db.Integer, db.ForeignKey("site.id"), index=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscription.id"), index=True)
    status = db.Column(db.String(20), nullable=False, default="draft")
    subtotal = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False, default=0)
    tax = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False, default=0)
    discount = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False, default=0)
    total = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False, default=0)
    amount_paid = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False, default=0)
    amount_due = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    period_start = db.Column(db.DateTime)
    period_end = db.Column(db.DateTime)
    due_date = db.Column(db.DateTime)
    paid_at = db.Column(db.DateTime)
    external_invoice_id = db.Column(db.String(120), unique=True)
    description = db.Column(db.String(255))
    metadata_json = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        db.Index("ix_invoice_created_at", "created_at"),
    )


class Payment(db.Model):
    """A charge attempt.  Refunds are child rows, never edits of ``amount``."""
    id = db.Column(db.Integer, primary_key=True)
    site_id = db.Column(db.Integer, db.ForeignKey("site.id"), index=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoice.id"), index=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscription.id"))
    payment_method_id = db.Column(db.Integer, db.ForeignKey("payment_method.id"))
    plan_id = db.Column(db.Integer, db.ForeignKey("subscription_plan.id"))
    billing_cycle = db.Column(db.String(10))
    amount = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    status = db.Column(db.String(30), nullable=False, default="pending")
    gateway = db.Column(db.String(20), nullable=False)
    gateway_order_id = db.Column(db.String(120), index=True)
    gateway_payment_id = db.Column(db.String(120), index=True)
    payment_reference = db.Column(db.String(64), unique=True)
    failure_reason = db.Column(db.Text)
    paid_at = db.Column(db.DateTime)
    metadata_json = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        db.UniqueConstraint("gateway", "gateway_order_id", name="uq_payment_gateway_order"),
    )


class PaymentRefund(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payment.id"), nullable=False, index=True)
    amount = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    reason = db.Column(db.String(255))
    status = db.Column(db.String(20), default="succeeded")
    gateway_refund_id = db.Column(db.String(120), unique=True)
    created_at = db.Column(db.DateTime, default=utc_now)


# ---------------------------------------------------------------------------
# Coupons
# ---------------------------------------------------------------------------

class Coupon(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(40), unique=True, nullable=False)
    description = db.Column(db.String(255))
    discount_type = db.Column(db.String(20), nullable=False, default="percentage")
    discount_value = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    currency = db.Column(db.String(3))
    max_redemptions = db.Column(db.Integer)
    times_redeemed = db.Column(db.Integer, nullable=False, default=0)
    valid_from = db.Column(db.DateTime)
    valid_until = db.Column(db.DateTime)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)


class CouponRedemption(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    coupon_id = db.Column(db.Integer, db.ForeignKey("coupon.id"), nullable=False)
    site_id = db.Column(db.Integer, db.ForeignKey("site.id"), nullable=False)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoice.id"))
    discount_amount = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False, default=0)
    redeemed_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.UniqueConstraint("coupon_id", "site_id", name="uq_coupon_redemption_site"),
    )


# ---------------------------------------------------------------------------
# Audit & idempotency
# ---------------------------------------------------------------------------

class PaymentLog(db.Model):
    """Append-only record of every gateway interaction (secrets masked)."""
    id = db.Column(db.Integer, primary_key=True)
    site_id = db.Column(db.Integer, db.ForeignKey("site.id"), index=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscription.id"))
    payment_id = db.Column(db.Integer, db.ForeignKey("payment.id"))
    payment_method_id = db.Column(db.Integer, db.ForeignKey("payment_method.id"))
    action = db.Column(db.String(60), nullable=False)
    gateway = db.Column(db.String(20))
    status = db.Column(db.String(20), nullable=False, default="initiated")
    request_data = db.Column(db.Text)
    response_data = db.Column(db.Text)
    error_message = db.Column(db.Text)
    error_code = db.Column(db.String(60))
    transaction_id = db.Column(db.String(120))
    order_id = db.Column(db.String(120))
    payment_reference = db.Column(db.String(64))
    amount = db.Column(db.Numeric(10, 2, asdecimal=True))
    currency = db.Column(db.String(3))
    ip_address = db.Column(db.String(64))
    user_agent = db.Column(db.String(255))
    metadata_json = db.Column(db.Text)
    duration_ms = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.Index("ix_payment_log_created_at", "created_at"),
        db.Index("ix_payment_log_action", "action"),
    )


class ProcessedEvent(db.Model):
    """Durable idempotency claim (webhook event, auto-pay period, notification)."""
    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(200), unique=True, nullable=False)
    source = db.Column(db.String(40))
    # "timeout" marks an auto-pay charge whose outcome is unknown and may be retried
    status = db.Column(db.String(20))
    attempts = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now)


# ---------------------------------------------------------------------------
# Application settings
# ---------------------------------------------------------------------------

class AppSetting(db.Model):
    """Admin overrides of the billing configuration (see ``config.py``)."""
    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(80), unique=True, nullable=False)
    value = db.Column(db.Text)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)
